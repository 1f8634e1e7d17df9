import base64
from urllib.parse import parse_qs, urlparse

from campaign_mailer.tracking import (
    MIN_SECONDS_BEFORE_OPEN,
    TRANSPARENT_PIXEL,
    click_url,
    client_ip,
    confirmation_page_html,
    decode_click_target,
    html_to_text,
    inject_tracking,
    is_prefetch_agent,
    looks_like_html,
    pixel_url,
    should_count_open,
    text_to_html_with_tracking,
)

BASE = "https://mailer.test/"


def test_pixel_is_png():
    assert TRANSPARENT_PIXEL.startswith(b"\x89PNG")


def test_urls_use_base_without_trailing_slash():
    assert pixel_url("tid", BASE) == "https://mailer.test/track/open/tid/pixel.png"
    assert click_url("tid", "https://example.org", BASE).startswith("https://mailer.test/track/click/tid?url=")


def test_click_url_round_trips_target():
    target = "https://example.org/path?a=1&b=two+three"
    parsed = urlparse(click_url("tid", target, BASE))
    (encoded,) = parse_qs(parsed.query)["url"]
    assert decode_click_target(encoded) == target


def test_decode_click_target_rejects_garbage():
    assert decode_click_target(None) is None
    assert decode_click_target("") is None
    assert decode_click_target("%%% not base64") is None
    assert decode_click_target(base64.b64encode(b"\xff\xfe").decode()) is None


def test_inject_tracking_rewrites_links_and_appends_pixel():
    html = (
        "<html><body>"
        '<a href="https://example.org">site</a>'
        "<a href='mailto:me@example.org'>mail</a>"
        '<a href="tel:+4912345">call</a>'
        '<a href="#top">top</a>'
        "</body></html>"
    )
    tracked = inject_tracking(html, "tid", BASE)

    assert click_url("tid", "https://example.org", BASE) in tracked
    assert 'href="mailto:me@example.org"' in tracked
    assert 'href="tel:+4912345"' in tracked
    assert 'href="#top"' in tracked
    assert tracked.index(pixel_url("tid", BASE)) < tracked.index("</body>")


def test_inject_tracking_without_body_appends_pixel_at_end():
    tracked = inject_tracking("<p>hello</p>", "tid", BASE)
    assert tracked.startswith("<p>hello</p><img ")
    assert pixel_url("tid", BASE) in tracked


def test_inject_tracking_handles_unquoted_and_uppercase_links():
    html = '<BODY><A HREF=https://example.org/a>a</A><a href=" https://example.org/b ">b</a></BODY>'
    tracked = inject_tracking(html, "tid", BASE)

    assert click_url("tid", "https://example.org/a", BASE) in tracked
    assert click_url("tid", "https://example.org/b", BASE) in tracked
    assert "href=https" not in tracked
    assert tracked.index(pixel_url("tid", BASE)) < tracked.index("</body>")


def test_plain_text_becomes_html_with_escaped_content_and_links():
    tracked = text_to_html_with_tracking("a < b\nsee https://example.org now", "tid", BASE)

    assert "a &lt; b<br/>see " in tracked
    assert click_url("tid", "https://example.org", BASE) in tracked
    assert pixel_url("tid", BASE) in tracked
    assert tracked.startswith("<!DOCTYPE html>")


def test_looks_like_html():
    assert looks_like_html("<p>Hello</p>")
    assert looks_like_html("Line<br>break")
    assert not looks_like_html("a < b and c > d")
    assert not looks_like_html("plain text")


def test_html_to_text():
    assert html_to_text("<p>Hello<br>World</p>\n<div> <b>Bye</b> </div>") == "Hello\nWorld\nBye"


def test_prefetch_agents_are_detected_case_insensitively():
    assert is_prefetch_agent("Mozilla/5.0 (via ggpht.com GoogleImageProxy)")
    assert is_prefetch_agent("yahoomailproxy/1.0")
    assert not is_prefetch_agent("Mozilla/5.0 (Macintosh)")
    assert not is_prefetch_agent(None)


def test_open_counted_only_after_delay_and_for_humans():
    job = {"sent_at": 1000, "opened_at": None}
    browser = "Mozilla/5.0 (Windows NT 10.0)"

    assert not should_count_open(job, browser, 1000 + MIN_SECONDS_BEFORE_OPEN)
    assert should_count_open(job, browser, 1000 + MIN_SECONDS_BEFORE_OPEN + 1)
    assert not should_count_open(job, "GoogleImageProxy", 5000)
    assert not should_count_open({"sent_at": None, "opened_at": None}, browser, 5000)


def test_already_opened_job_always_counts():
    job = {"sent_at": 1000, "opened_at": 1100}
    assert should_count_open(job, "GoogleImageProxy", 1001)


def test_client_ip_prefers_first_forwarded_address():
    assert client_ip("203.0.113.7, 10.0.0.1", "127.0.0.1") == "203.0.113.7"
    assert client_ip(None, "127.0.0.1") == "127.0.0.1"
    assert client_ip(None) == "Unknown"


def test_confirmation_page_mentions_choice():
    assert "in touch shortly" in confirmation_page_html("yes")
    assert "Thank you for your response!" in confirmation_page_html("whatever")
