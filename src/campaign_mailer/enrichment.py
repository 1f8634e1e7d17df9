# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Company placeholders and company-name lookup from recipient domains.

Subjects and bodies may contain a company placeholder, optionally preceded by
``at `` or ``bei ``::

    "Quick question about your work at XXX"

Before a job is sent the recipient's domain homepage is fetched and its
company name extracted from ``og:site_name``, ``application-name`` or the
``<title>``. With a name the token is substituted (``at Acme``); without one
the whole phrase is removed so the sentence still reads naturally.

Example:
    Looking up and substituting::

        lookup = CompanyLookup(timeout=2.0)
        company = await lookup.lookup("jane@acme.example")
        subject = replace_placeholders(subject, company)
        await lookup.close()
"""

from __future__ import annotations

import re
from typing import Optional

import aiohttp
from bs4 import BeautifulSoup

from .logger import get_logger

logger = get_logger("Enrichment")

PLACEHOLDER_RE = re.compile(
    r"((?:at\s+|bei\s+)?(?:XXX|xxx|\{\{Company\}\}|\{\{Firma\}\}|\[Company\]|\[Firma\]))"
)
_TOKEN_RE = re.compile(r"(XXX|xxx|\{\{Company\}\}|\{\{Firma\}\}|\[Company\]|\[Firma\])")

GENERIC_DOMAINS = frozenset({
    "gmail.com", "googlemail.com", "yahoo.com", "yahoo.de", "ymail.com",
    "hotmail.com", "hotmail.de", "outlook.com", "outlook.de", "live.com", "live.de",
    "icloud.com", "me.com", "mac.com",
    "aol.com", "aol.de",
    "gmx.de", "gmx.net", "gmx.at", "gmx.ch",
    "web.de",
    "t-online.de",
    "freenet.de",
    "arcor.de",
    "protonmail.com", "proton.me",
    "yandex.com", "yandex.ru",
    "mail.com", "mail.ru",
})

TITLE_SEPARATORS = ("|", "-", "–", "—", "•", ":")
GENERIC_TITLE_PARTS = frozenset({"Home", "Startseite", "Index", "Welcome", "Start", "Willkommen"})

USER_AGENT = "Mozilla/5.0 (compatible; CampaignMailer/1.0)"
DEFAULT_TIMEOUT = 2.0


def has_placeholder(text: str | None) -> bool:
    return bool(text) and PLACEHOLDER_RE.search(text) is not None


def replace_placeholders(text: str | None, company: str | None) -> str:
    """Substitute or remove company placeholders.

    With ``company`` the token is replaced and any ``at``/``bei`` prefix kept;
    with ``None`` the whole matched phrase disappears.
    """
    if not text:
        return ""

    def _sub(match: re.Match) -> str:
        if not company:
            return ""
        return _TOKEN_RE.sub(lambda _m: company, match.group(0), count=1)

    return PLACEHOLDER_RE.sub(_sub, text)


def is_generic_domain(address: str) -> bool:
    _, _, domain = address.partition("@")
    return bool(domain) and domain.lower() in GENERIC_DOMAINS


def _usable_part(part: str) -> bool:
    return 2 < len(part) < 60 and part not in GENERIC_TITLE_PARTS


def company_from_html(html: str) -> Optional[str]:
    """Extract a company name from a homepage.

    Order of preference: ``og:site_name``, ``application-name`` and finally
    the title. For titles the first separator found (in
    :data:`TITLE_SEPARATORS` order) splits it; the first segment wins, or the
    second when the first is generic. A title without a usable segment is
    returned whole if shorter than 40 characters.
    """
    soup = BeautifulSoup(html, "html.parser")

    for attrs in ({"property": "og:site_name"}, {"name": "application-name"}):
        tag = soup.find("meta", attrs=attrs)
        content = tag.get("content") if tag else None
        if content and content.strip():
            return content.strip()

    title = soup.title.get_text() if soup.title else ""
    title = title.strip()
    if not title:
        return None

    for sep in TITLE_SEPARATORS:
        if sep in title:
            parts = title.split(sep)
            first = parts[0].strip()
            if _usable_part(first):
                return first
            second = parts[1].strip() if len(parts) > 1 else ""
            if _usable_part(second):
                return second
            break

    if len(title) < 40:
        return title
    return None


async def extract_company_from_email(
    address: str,
    session: aiohttp.ClientSession,
    timeout: float = DEFAULT_TIMEOUT,
) -> Optional[str]:
    """Return the company behind ``address``'s domain, or None.

    Malformed addresses and public mailbox providers give None without any
    network access. Network errors, non-2xx replies and timeouts also give
    None.
    """
    _, _, domain = address.strip().partition("@")
    domain = domain.strip().lower()
    if not domain or "@" in domain:
        return None
    if domain in GENERIC_DOMAINS:
        return None

    url = f"https://{domain}"
    try:
        async with session.get(
            url,
            headers={"User-Agent": USER_AGENT},
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as response:
            if response.status >= 400:
                return None
            html = await response.text(errors="replace")
    except Exception as exc:
        logger.debug("Company lookup for %s failed: %s", domain, exc)
        return None
    return company_from_html(html)


class CompanyLookup:
    """Company-name lookup sharing one :class:`aiohttp.ClientSession`."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        self.timeout = timeout
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def lookup(self, address: str) -> Optional[str]:
        session = await self._get_session()
        return await extract_company_from_email(address, session, timeout=self.timeout)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
