# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory and HTTP schemas for the campaign mailer.

Endpoints:

- ``GET|POST /cron/process``: run one queue-processor round. Authorised by
  the cron bearer secret, a same-origin manual trigger from a logged-in user,
  or the automation bypass header.
- ``/auth/register``, ``/auth/login``, ``/auth/logout``: minimal owner
  accounts with a ``session_token`` cookie.
- ``/campaigns`` and ``/jobs``: owner-scoped campaign management.
- ``/track/...``: open pixel, click redirect and survey responses.
- ``/health`` and ``/metrics``.

Example:
    Creating and running the API application::

        core = CampaignMailerCore(load_settings())
        app = create_app(core)
        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from typing import Optional, Dict, Any, List, Callable, AsyncContextManager
from urllib.parse import unquote
import logging

from fastapi import FastAPI, HTTPException, APIRouter, Depends, status, Request
from fastapi.responses import Response, JSONResponse, HTMLResponse, RedirectResponse
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel

from .auth import tokens_match
from .campaigns import (
    CampaignNotFound,
    JobAlreadyFinished,
    cancel_campaign,
    cancel_job,
    campaign_view,
    delete_campaign,
    get_owned_campaign,
    list_campaign_jobs,
    list_campaigns,
)
from .config_loader import ConfigurationError
from .continuation import CONTINUATION_HEADER
from .core import CampaignMailerCore, RegistrationError
from .models import CampaignCreate
from .processor import CONTINUATION_SOURCE, Trigger
from .tracking import (
    PIXEL_HEADERS,
    TRANSPARENT_PIXEL,
    client_ip,
    confirmation_page_html,
    decode_click_target,
    should_count_open,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Campaign Mailer")
service: CampaignMailerCore | None = None
SESSION_COOKIE = "session_token"
MANUAL_TRIGGER_HEADER = "x-manual-trigger"


def _service() -> CampaignMailerCore:
    if not service:
        raise HTTPException(500, "Service not initialized")
    return service


async def current_user(request: Request) -> Dict[str, Any]:
    """Resolve the session cookie to a user or reply ``401``."""
    svc = _service()
    user = await svc.session_user(request.cookies.get(SESSION_COOKIE))
    if not user:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Not authenticated")
    return user


user_dependency = Depends(current_user)


class Credentials(BaseModel):
    email: str
    password: str


class UserInfo(BaseModel):
    id: str
    email: str


class CommandStatus(BaseModel):
    ok: bool
    error: Optional[str] = None


class CampaignCreated(BaseModel):
    id: str
    kind: str
    jobs: int
    first_send_at: int
    last_send_at: int


class CampaignInfo(BaseModel):
    id: str
    kind: str
    name: Optional[str] = None
    host: str
    port: int
    secure: bool
    created_at: int
    total: Optional[int] = None
    pending: Optional[int] = None
    sending: Optional[int] = None
    sent: Optional[int] = None
    failed: Optional[int] = None
    cancelled: Optional[int] = None
    opened: Optional[int] = None


class JobInfo(BaseModel):
    id: str
    recipient: Optional[str] = None
    status: str
    scheduled_for: int
    original_scheduled_for: Optional[int] = None
    sent_at: Optional[int] = None
    error: Optional[str] = None
    retry_count: int = 0
    max_retries: Optional[int] = None
    next_retry_at: Optional[int] = None
    open_count: int = 0
    opened_at: Optional[int] = None
    survey_choice: Optional[str] = None


class CancelResponse(CommandStatus):
    cancelled: int = 0


def _is_same_origin(request: Request, base_url: str) -> bool:
    """Same-origin check for manual triggers.

    ``Sec-Fetch-Site`` decides when the browser sent it; otherwise an
    ``Origin`` header, when present, must match the configured base URL.
    """
    fetch_site = request.headers.get("sec-fetch-site")
    if fetch_site is not None:
        return fetch_site.lower() == "same-origin"
    origin = request.headers.get("origin")
    if origin is not None:
        return origin.rstrip("/") == base_url.rstrip("/")
    return True


def _trusted_source(manual: bool, chained: bool, default: str) -> str:
    if chained:
        return CONTINUATION_SOURCE
    return "manual" if manual else default


async def resolve_trigger(request: Request, svc: CampaignMailerCore) -> Optional[Trigger]:
    """Work out who is calling ``/cron/process``; None means unauthorised."""
    settings = svc.settings
    manual_flag = request.headers.get(MANUAL_TRIGGER_HEADER, "").strip().lower() == "true"
    # only trusted callers may mark a round as a continuation
    chained = request.headers.get(CONTINUATION_HEADER, "").strip().lower() == "true"

    auth_header = request.headers.get("authorization") or ""
    bearer = auth_header[7:].strip() if auth_header.lower().startswith("bearer ") else None
    if tokens_match(bearer, settings.cron_secret):
        return Trigger(manual=manual_flag, source=_trusted_source(manual_flag, chained, "scheduler"))

    if tokens_match(request.headers.get(settings.bypass_header), settings.bypass_secret):
        return Trigger(manual=manual_flag, source=_trusted_source(manual_flag, chained, "bypass"))

    if manual_flag:
        user = await svc.session_user(request.cookies.get(SESSION_COOKIE))
        if user and _is_same_origin(request, settings.base_url):
            return Trigger(manual=True, source="manual")

    if not settings.is_production:
        return Trigger(manual=False, source="development")
    return None


def create_app(
    svc: CampaignMailerCore,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        The :class:`CampaignMailerCore` implementing the business logic.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    global service
    service = svc

    if lifespan is not None:
        api = FastAPI(title="Campaign Mailer", lifespan=lifespan)
    else:
        api = app

    auth_router = APIRouter(prefix="/auth", tags=["auth"])
    campaign_router = APIRouter(tags=["campaigns"], dependencies=[user_dependency])
    tracking_router = APIRouter(prefix="/track", tags=["tracking"])

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Log validation errors with full details."""
        body = await request.body()
        logger.error("Validation error on %s %s", request.method, request.url.path)
        logger.error("Request body: %s", body.decode("utf-8", errors="replace"))
        logger.error("Validation errors: %s", exc.errors())
        return JSONResponse(status_code=422, content={"detail": exc.errors()})

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return {"status": "ok"}

    @api.get("/metrics")
    async def metrics():
        """Expose Prometheus metrics collected by the processor."""
        svc = _service()
        return Response(content=svc.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    # ------------------------------------------------------------------ cron
    @api.api_route("/cron/process", methods=["GET", "POST"])
    async def cron_process(request: Request):
        """Run one processing round of the email queue."""
        svc = _service()
        trigger = await resolve_trigger(request, svc)
        if trigger is None:
            return JSONResponse(status_code=401, content={"error": "Unauthorized"})
        try:
            return await svc.process(trigger)
        except ConfigurationError as exc:
            logger.error("Queue processor misconfigured: %s", exc)
            return JSONResponse(status_code=500, content={"error": str(exc)})
        except Exception as exc:
            logger.exception("Queue processor failed")
            return JSONResponse(status_code=500, content={"error": str(exc)})

    # ------------------------------------------------------------------ auth
    @auth_router.post("/register", response_model=UserInfo, status_code=201)
    async def register(payload: Credentials):
        svc = _service()
        try:
            user = await svc.register_user(payload.email, payload.password)
        except RegistrationError as exc:
            raise HTTPException(400, str(exc))
        return UserInfo(**user)

    @auth_router.post("/login", response_model=CommandStatus, response_model_exclude_none=True)
    async def login(payload: Credentials, response: Response):
        svc = _service()
        token = await svc.login(payload.email, payload.password)
        if not token:
            raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid email or password")
        response.set_cookie(
            SESSION_COOKIE,
            token,
            max_age=svc.settings.session_ttl_seconds,
            httponly=True,
            samesite="lax",
            secure=svc.settings.is_production,
        )
        return CommandStatus(ok=True)

    @auth_router.post("/logout", response_model=CommandStatus, response_model_exclude_none=True)
    async def logout(request: Request, response: Response):
        svc = _service()
        await svc.logout(request.cookies.get(SESSION_COOKIE))
        response.delete_cookie(SESSION_COOKIE)
        return CommandStatus(ok=True)

    @auth_router.get("/me", response_model=UserInfo)
    async def me(user: Dict[str, Any] = user_dependency):
        return UserInfo(**user)

    # ------------------------------------------------------------- campaigns
    @campaign_router.post("/campaigns", response_model=CampaignCreated, status_code=201)
    async def add_campaign(payload: CampaignCreate, user: Dict[str, Any] = user_dependency):
        svc = _service()
        try:
            summary = await svc.create_campaign(user["id"], payload)
        except ConfigurationError as exc:
            raise HTTPException(500, str(exc))
        return CampaignCreated(**summary)

    @campaign_router.get("/campaigns", response_model=List[CampaignInfo], response_model_exclude_none=True)
    async def get_campaigns(user: Dict[str, Any] = user_dependency):
        svc = _service()
        return await list_campaigns(svc.persistence, user["id"], svc.encryption_key)

    @campaign_router.get("/campaigns/{campaign_id}", response_model=CampaignInfo, response_model_exclude_none=True)
    async def get_campaign(campaign_id: str, user: Dict[str, Any] = user_dependency):
        svc = _service()
        try:
            campaign = await get_owned_campaign(svc.persistence, user["id"], campaign_id)
        except CampaignNotFound as exc:
            raise HTTPException(404, str(exc))
        return campaign_view(campaign, svc.encryption_key)

    @campaign_router.get("/campaigns/{campaign_id}/jobs", response_model=List[JobInfo])
    async def get_campaign_jobs(campaign_id: str, user: Dict[str, Any] = user_dependency):
        svc = _service()
        try:
            return await list_campaign_jobs(svc.persistence, user["id"], campaign_id, svc.encryption_key)
        except CampaignNotFound as exc:
            raise HTTPException(404, str(exc))

    @campaign_router.patch("/campaigns/{campaign_id}/cancel", response_model=CancelResponse)
    async def cancel_campaign_jobs(campaign_id: str, user: Dict[str, Any] = user_dependency):
        svc = _service()
        try:
            count = await cancel_campaign(svc.persistence, user["id"], campaign_id)
        except CampaignNotFound as exc:
            raise HTTPException(404, str(exc))
        await svc._refresh_queue_gauge()
        return CancelResponse(ok=True, cancelled=count)

    @campaign_router.delete("/campaigns/{campaign_id}", response_model=CommandStatus, response_model_exclude_none=True)
    async def remove_campaign(campaign_id: str, user: Dict[str, Any] = user_dependency):
        svc = _service()
        try:
            await delete_campaign(svc.persistence, user["id"], campaign_id)
        except CampaignNotFound as exc:
            raise HTTPException(404, str(exc))
        await svc._refresh_queue_gauge()
        return CommandStatus(ok=True)

    @campaign_router.patch("/jobs/{job_id}/cancel", response_model=CommandStatus, response_model_exclude_none=True)
    async def cancel_single_job(job_id: str, user: Dict[str, Any] = user_dependency):
        svc = _service()
        try:
            await cancel_job(svc.persistence, user["id"], job_id)
        except CampaignNotFound as exc:
            raise HTTPException(404, str(exc))
        except JobAlreadyFinished as exc:
            raise HTTPException(400, str(exc))
        await svc._refresh_queue_gauge()
        return CommandStatus(ok=True)

    # -------------------------------------------------------------- tracking
    @tracking_router.get("/open/{tracking_id}/pixel.png")
    async def track_open(tracking_id: str, request: Request):
        """Record an open and always return the transparent pixel."""
        svc = _service()
        try:
            job = await svc.persistence.get_job_by_tracking_id(tracking_id)
            now = svc._clock()
            if job and should_count_open(job, request.headers.get("user-agent"), now):
                ip = client_ip(request.headers.get("x-forwarded-for"))
                await svc.persistence.record_open(tracking_id, now, ip)
            elif job:
                logger.debug("Prefetch detected for %s", tracking_id)
        except Exception:
            logger.exception("Open tracking failed for %s", tracking_id)
        return Response(content=TRANSPARENT_PIXEL, media_type="image/png", headers=PIXEL_HEADERS)

    @tracking_router.get("/click/{tracking_id}")
    async def track_click(tracking_id: str, url: Optional[str] = None):
        """Record a click and redirect to the original link."""
        svc = _service()
        target = decode_click_target(url)
        if not target:
            return RedirectResponse("/", status_code=307)
        try:
            job = await svc.persistence.get_job_by_tracking_id(tracking_id)
            if job:
                await svc.persistence.record_click(job["id"], target, svc._clock())
        except Exception:
            logger.exception("Click tracking failed for %s", tracking_id)
        return RedirectResponse(target, status_code=307)

    @tracking_router.get("/survey/{tracking_id}/{choice}", response_class=HTMLResponse)
    async def track_survey(tracking_id: str, choice: str):
        """Store a survey answer and show a confirmation page."""
        svc = _service()
        decoded = unquote(choice).strip().lower()
        if not decoded:
            return Response("Invalid choice", status_code=400)
        try:
            await svc.persistence.record_survey_choice(tracking_id, decoded, svc._clock())
        except Exception:
            logger.exception("Survey tracking failed for %s", tracking_id)
            return HTMLResponse(confirmation_page_html("yes"))
        return HTMLResponse(confirmation_page_html(decoded), headers={"Cache-Control": PIXEL_HEADERS["Cache-Control"]})

    api.include_router(auth_router)
    api.include_router(campaign_router)
    api.include_router(tracking_router)
    return api
