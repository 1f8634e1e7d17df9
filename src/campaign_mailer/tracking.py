# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Open and click tracking for outgoing messages.

Every job carries an opaque ``tracking_id``. Before sending, links in the
HTML body are rewritten to pass through ``/track/click/<id>`` and a 1x1
transparent pixel pointing at ``/track/open/<id>/pixel.png`` is appended.
The HTTP endpoints serving those URLs live in :mod:`campaign_mailer.api`;
this module holds the rewriting and the decisions they rely on.
"""

from __future__ import annotations

import base64
import binascii
import html as html_lib
import re
from urllib.parse import quote

from bs4 import BeautifulSoup

TRANSPARENT_PIXEL = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
)

PIXEL_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

# Mail clients and scanners that fetch images before a human opens the message
PREFETCH_AGENTS = (
    "GoogleImageProxy",
    "OutlookProxy",
    "YahooMailProxy",
    "AppleMailProxy",
    "mailgun/tracking",
    "MailScanner",
)

MIN_SECONDS_BEFORE_OPEN = 30

_URL_RE = re.compile(r"(https?://[^\s<]+)", re.IGNORECASE)
_UNTRACKED_PREFIXES = ("mailto:", "tel:", "#")


def _base(base_url: str) -> str:
    return base_url.rstrip("/")


def pixel_url(tracking_id: str, base_url: str) -> str:
    return f"{_base(base_url)}/track/open/{tracking_id}/pixel.png"


def click_url(tracking_id: str, url: str, base_url: str) -> str:
    encoded = base64.b64encode(url.encode("utf-8")).decode("ascii")
    return f"{_base(base_url)}/track/click/{tracking_id}?url={quote(encoded, safe='')}"


def decode_click_target(encoded: str | None) -> str | None:
    """Decode the ``url`` query parameter of a click link, None if unusable."""
    if not encoded:
        return None
    try:
        target = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        return None
    return target or None


def inject_tracking(html: str, tracking_id: str, base_url: str) -> str:
    """Rewrite links through the click endpoint and append the open pixel.

    ``mailto:``, ``tel:`` and in-page ``#`` links are left untouched. The
    pixel goes at the end of ``<body>`` when present, otherwise at the end.
    """
    soup = BeautifulSoup(html, "html.parser")
    for link in soup.find_all("a", href=True):
        url = link["href"].strip()
        if not url or url.startswith(_UNTRACKED_PREFIXES):
            continue
        link["href"] = click_url(tracking_id, url, base_url)

    pixel = soup.new_tag(
        "img",
        attrs={
            "src": pixel_url(tracking_id, base_url),
            "alt": "",
            "width": "1",
            "height": "1",
            "style": "display:none;width:1px;height:1px;border:0;",
        },
    )
    (soup.body or soup).append(pixel)
    return str(soup)


def text_to_html_with_tracking(text: str, tracking_id: str, base_url: str) -> str:
    """Render a plain-text body as a minimal HTML document with tracking."""
    content = (
        text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;").replace("\n", "<br>")
    )
    content = _URL_RE.sub(lambda m: f'<a href="{m.group(1)}">{m.group(1)}</a>', content)
    document = (
        "<!DOCTYPE html>\n"
        "<html>\n"
        '<head><meta charset="utf-8"></head>\n'
        "<body style=\"font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; "
        'line-height: 1.6;">\n'
        f"{content}\n"
        "</body>\n"
        "</html>"
    )
    return inject_tracking(document, tracking_id, base_url)


def looks_like_html(body: str) -> bool:
    return bool(re.search(r"<(html|body|p|div|br|a|table|span|h[1-6])\b", body, re.IGNORECASE))


def html_to_text(html: str) -> str:
    """Plain-text alternative of an HTML body."""
    soup = BeautifulSoup(html, "html.parser")
    for br in soup.find_all("br"):
        br.replace_with("\n")
    text = soup.get_text()
    lines = [line.strip() for line in text.splitlines()]
    return "\n".join(lines).strip()


def is_prefetch_agent(user_agent: str | None) -> bool:
    agent = (user_agent or "").lower()
    return any(bot.lower() in agent for bot in PREFETCH_AGENTS)


def should_count_open(job: dict, user_agent: str | None, now: int) -> bool:
    """Decide whether a pixel fetch is a genuine open.

    A job already opened always counts again. Otherwise the fetch must not
    come from a known prefetch proxy and must happen more than
    :data:`MIN_SECONDS_BEFORE_OPEN` seconds after the send.
    """
    if job.get("opened_at") is not None:
        return True
    sent_at = job.get("sent_at")
    if sent_at is None or is_prefetch_agent(user_agent):
        return False
    return now - sent_at > MIN_SECONDS_BEFORE_OPEN


def client_ip(forwarded_for: str | None, fallback: str | None = None) -> str:
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return fallback or "Unknown"


_CHOICE_LABELS = {
    "yes": "Thank you for your interest! We will be in touch shortly.",
    "maybe": "Thank you! We will send you a little more information.",
    "no": "Thank you for letting us know. We will not contact you about this again.",
}


def confirmation_page_html(choice: str) -> str:
    message = _CHOICE_LABELS.get(choice, "Thank you for your response!")
    return (
        "<!DOCTYPE html>\n"
        "<html>\n"
        '<head><meta charset="utf-8"><title>Thank you</title></head>\n'
        '<body style="font-family: sans-serif; text-align: center; padding: 48px;">\n'
        f"<h1>Thank you</h1>\n<p>{html_lib.escape(message)}</p>\n"
        "</body>\n"
        "</html>"
    )
