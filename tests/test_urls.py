import pytest

from auditor.core.urls import extract_internal_links, is_internal, is_page_url, normalize_domain, normalize_url


def test_normalize_url_strips_tracking_params_and_default_port() -> None:
    normalized = normalize_url("HTTPS://Example.com:443/Guides/?utm_source=feed&b=2&a=1&fbclid=x#section")
    assert normalized == "https://example.com/Guides?a=1&b=2"


def test_normalize_url_keeps_root_slash() -> None:
    assert normalize_url("https://example.com") == "https://example.com/"
    assert normalize_url("https://example.com/") == "https://example.com/"


def test_normalize_domain_accepts_urls_and_rejects_garbage() -> None:
    assert normalize_domain(" https://WWW.Example.com/pricing ") == "www.example.com"
    assert normalize_domain("example.com:8080") == "example.com"
    with pytest.raises(ValueError):
        normalize_domain("not a domain")


def test_is_internal_tolerates_www_prefix() -> None:
    assert is_internal("https://www.example.com/a", "example.com")
    assert is_internal("https://example.com/a", "www.example.com")
    assert not is_internal("https://blog.example.com/a", "example.com")


def test_is_page_url_skips_assets() -> None:
    assert is_page_url("https://example.com/docs/setup")
    assert is_page_url("https://example.com/index.html")
    assert not is_page_url("https://example.com/logo.png")
    assert not is_page_url("https://example.com/sitemap.xml")


def test_extract_internal_links_filters_and_limits() -> None:
    html = """
    <a href="/about/">About</a>
    <a href="https://www.example.com/pricing?utm_campaign=x">Pricing</a>
    <a href="/about">About again</a>
    <a href="https://other.org/">Other</a>
    <a href="mailto:hi@example.com">Mail</a>
    <a href="/brochure.pdf">PDF</a>
    <a href="/blog">Blog</a>
    """
    links = extract_internal_links(html, "https://example.com/", "example.com", limit=2)
    assert links == ["https://example.com/about", "https://www.example.com/pricing"]


def test_extract_internal_links_decodes_entities_and_skips_fragments() -> None:
    html = """
    <a href="#top">Top</a>
    <!-- <a href="/retired">Retired</a> -->
    <a href="/search?a=1&amp;b=2">Search</a>
    <a class="nav" href = '/team' >Team</a>
    """
    links = extract_internal_links(html, "https://example.com/", "example.com", limit=10)
    assert links == ["https://example.com/search?a=1&b=2", "https://example.com/team"]
