"""Tests for URL canonicalization and identity keys."""

import pytest

from src.utils.url import (
    canonicalize_url,
    generate_identity_key,
    get_registrable_domain,
    hash_url,
    is_valid_http_url,
    parse_identity_key,
)


def test_canonicalize_url_strips_tracking_and_sorts_params():
    """Tracking params, empty params and fragments are removed; the rest is sorted."""
    url = "HTTP://WWW.SGAmmo.com/product/foo/?utm_source=news&b=2&a=1&empty=&fbclid=xyz#reviews"

    assert canonicalize_url(url) == "https://www.sgammo.com/product/foo?a=1&b=2"


def test_canonicalize_url_keeps_root_and_custom_port():
    assert canonicalize_url("https://sgammo.com/") == "https://sgammo.com/"
    assert canonicalize_url("https://sgammo.com") == "https://sgammo.com/"
    assert canonicalize_url("https://example.com:8443/x/") == "https://example.com:8443/x"


def test_canonicalize_url_is_stable():
    once = canonicalize_url("https://www.brownells.com/ammo/?sku=100033145&ref=home")
    assert canonicalize_url(once) == once


def test_canonicalize_url_requires_host():
    with pytest.raises(ValueError):
        canonicalize_url("/relative/path")


def test_identity_key_precedence():
    """Product id wins over SKU, SKU over the URL hash."""
    url = "https://sgammo.com/product/a"

    assert generate_identity_key("123", "ABC", url) == "PID:123"
    assert generate_identity_key(None, "ABC", url) == "SKU:ABC"
    assert generate_identity_key(None, None, url) == f"URL:{hash_url(url)}"


def test_identity_key_ignores_blank_values():
    url = "https://sgammo.com/product/a"

    assert generate_identity_key("   ", "ABC", url) == "SKU:ABC"
    assert generate_identity_key("", "", url).startswith("URL:")
    assert generate_identity_key(" 42 ", None, url) == "PID:42"


def test_hash_url_is_short_and_deterministic():
    first = hash_url("https://sgammo.com/product/a")

    assert len(first) == 16
    assert first == hash_url("https://sgammo.com/product/a")
    assert first != hash_url("https://sgammo.com/product/b")


@pytest.mark.parametrize(
    "key,expected",
    [
        ("PID:123", ("PID", "123")),
        ("SKU:AE9DP", ("SKU", "AE9DP")),
        ("URL:0123456789abcdef", ("URL", "0123456789abcdef")),
        ("PID:", None),
        ("FOO:bar", None),
        ("no-separator", None),
        ("SKU:a:b", None),
        ("SKU:" + "x" * 256, None),
        ("", None),
    ],
)
def test_parse_identity_key(key, expected):
    assert parse_identity_key(key) == expected


def test_registrable_domain():
    """Rate limit keys collapse subdomains to eTLD+1."""
    assert get_registrable_domain("https://www.sgammo.com/product/x") == "sgammo.com"
    assert get_registrable_domain("https://shop.example.co.uk/item") == "example.co.uk"
    assert get_registrable_domain("http://8.8.8.8/path") == "8.8.8.8"
    assert get_registrable_domain("not a url") == ""


def test_is_valid_http_url():
    assert is_valid_http_url("https://sgammo.com/product/x")
    assert is_valid_http_url("http://sgammo.com")
    assert not is_valid_http_url("ftp://sgammo.com/file")
    assert not is_valid_http_url("sgammo.com/product")
    assert not is_valid_http_url(None)
    assert not is_valid_http_url("")
