import aiohttp
import pytest
from aioresponses import aioresponses

from campaign_mailer.enrichment import (
    CompanyLookup,
    USER_AGENT,
    company_from_html,
    extract_company_from_email,
    has_placeholder,
    is_generic_domain,
    replace_placeholders,
)


@pytest.mark.parametrize(
    "text",
    ["Hi XXX", "at xxx", "{{Company}} rocks", "Team {{Firma}}", "[Company]", "bei [Firma]"],
)
def test_has_placeholder(text):
    assert has_placeholder(text)


def test_has_placeholder_ignores_plain_text():
    assert not has_placeholder("Hello there")
    assert not has_placeholder("")
    assert not has_placeholder(None)


def test_replace_placeholders_keeps_prefix():
    assert replace_placeholders("Your work at XXX", "Acme") == "Your work at Acme"
    assert replace_placeholders("Grüße bei {{Firma}}", "Muster GmbH") == "Grüße bei Muster GmbH"
    assert replace_placeholders("[Company] and xxx", "Acme") == "Acme and Acme"


def test_replace_placeholders_removes_phrase_without_company():
    assert replace_placeholders("Your work at XXX today", None) == "Your work  today"
    assert replace_placeholders("{{Company}}", None) == ""
    assert replace_placeholders(None, "Acme") == ""


def test_generic_domains():
    assert is_generic_domain("someone@gmail.com")
    assert is_generic_domain("someone@GMX.DE")
    assert not is_generic_domain("someone@acme.example")
    assert not is_generic_domain("not-an-address")


def test_company_prefers_og_site_name():
    html = """
    <html><head>
      <meta property="og:site_name" content=" Acme Corp ">
      <meta name="application-name" content="Acme App">
      <title>Home | Something else</title>
    </head></html>
    """
    assert company_from_html(html) == "Acme Corp"


def test_company_falls_back_to_application_name():
    html = '<html><head><meta name="application-name" content="Acme App"><title>x</title></head></html>'
    assert company_from_html(html) == "Acme App"


@pytest.mark.parametrize(
    "title,expected",
    [
        ("Acme Corp | Industrial Widgets", "Acme Corp"),
        ("Home | Acme Corp", "Acme Corp"),
        ("Startseite - Muster GmbH", "Muster GmbH"),
        ("Acme – Widgets since 1900", "Acme"),
        ("Acme", "Acme"),
        ("AB | CD", "AB | CD"),
    ],
)
def test_company_from_title(title, expected):
    assert company_from_html(f"<html><head><title>{title}</title></head></html>") == expected


def test_company_uses_first_separator_only():
    # "|" is present, so "-" is never tried even though its parts would be usable
    html = "<title>Home | X - Acme Widgets Incorporated</title>"
    assert company_from_html(html) == "X - Acme Widgets Incorporated"


def test_long_title_without_usable_part_is_rejected():
    long_title = "A" * 70
    assert company_from_html(f"<title>{long_title}</title>") is None
    assert company_from_html("<html><body>no title</body></html>") is None


@pytest.mark.asyncio
async def test_extract_company_fetches_domain_homepage():
    with aioresponses() as m:
        m.get("https://acme.example", status=200, body="<title>Acme Corp | Widgets</title>")

        async with aiohttp.ClientSession() as session:
            company = await extract_company_from_email("jane@acme.example", session)

        assert company == "Acme Corp"
        (requests,) = m.requests.values()
        request = requests[0]
        assert request.kwargs["headers"]["User-Agent"] == USER_AGENT


@pytest.mark.asyncio
async def test_extract_company_returns_none_on_error_status():
    with aioresponses() as m:
        m.get("https://acme.example", status=404, body="<title>Not Found Corp</title>")

        async with aiohttp.ClientSession() as session:
            assert await extract_company_from_email("jane@acme.example", session) is None


@pytest.mark.asyncio
async def test_extract_company_returns_none_on_network_error():
    with aioresponses() as m:
        m.get("https://acme.example", exception=aiohttp.ClientConnectionError("down"))

        async with aiohttp.ClientSession() as session:
            assert await extract_company_from_email("jane@acme.example", session) is None


@pytest.mark.asyncio
async def test_extract_company_skips_generic_and_malformed_addresses():
    with aioresponses() as m:
        async with aiohttp.ClientSession() as session:
            assert await extract_company_from_email("someone@gmail.com", session) is None
            assert await extract_company_from_email("no-at-sign", session) is None
            assert await extract_company_from_email("a@b@c.example", session) is None
        assert len(m.requests) == 0


@pytest.mark.asyncio
async def test_company_lookup_reuses_session():
    lookup = CompanyLookup(timeout=1.0)
    with aioresponses() as m:
        m.get("https://acme.example", status=200, body='<meta property="og:site_name" content="Acme">')
        m.get("https://other.example", status=200, body="<title>Other Ltd</title>")

        assert await lookup.lookup("a@acme.example") == "Acme"
        session = lookup._session
        assert await lookup.lookup("b@other.example") == "Other Ltd"
        assert lookup._session is session

    await lookup.close()
    assert lookup._session is None
