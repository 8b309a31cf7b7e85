"""
Tests for the cookie store and its cookie-jar adaptor.

## Test Perspectives Table
| Case ID | Input / Precondition | Perspective (Equivalence / Boundary) | Expected Result | Notes |
|---------|----------------------|---------------------------------------|-----------------|-------|
| TC-CK-01 | add() then match() | Equivalence – normal | Same cookie back | - |
| TC-CK-02 | Cookie with max-age | Equivalence – expiry | Absolute expiry computed | - |
| TC-CK-03 | Expired cookie | Boundary – expiry | Deletes stored cookie | - |
| TC-CK-04 | Unknown host | Equivalence – empty | Empty list | - |
| TC-CK-05 | remove()/clear() | Abnormal – unsupported | UNSUPPORTED, store intact | - |
| TC-CK-06 | Header building | Equivalence – matching | Domain, path and secure honored | - |
| TC-CK-07 | Set-Cookie headers | Equivalence – extraction | Stored with request host | - |
| TC-CK-08 | Parent domain cookie | Equivalence – matching | Applies to subdomain | - |
"""

import time

import pytest

from src.crawler.cookies import (
    CookieOperationResult,
    CookieStoreAdaptor,
    HttpCookie,
    SimpleCookieStore,
    StoredCookie,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def adaptor(cookie_store) -> CookieStoreAdaptor:
    return CookieStoreAdaptor(cookie_store)


class TestStoredCookie:
    def test_session_cookie_never_expires(self):
        cookie = StoredCookie(name="a", value="1", domain="example.test")

        assert not cookie.is_expired()

    def test_domain_match(self):
        cookie = StoredCookie(name="a", value="1", domain=".example.test")

        assert cookie.matches_domain("example.test")
        assert cookie.matches_domain("www.example.test")
        assert not cookie.matches_domain("badexample.test")

    def test_path_match(self):
        cookie = StoredCookie(name="a", value="1", domain="example.test", path="/docs")

        assert cookie.matches_path("/docs")
        assert cookie.matches_path("/docs/page")
        assert not cookie.matches_path("/docsearch")
        assert not cookie.matches_path("/")


class TestAdaptorRoundTrip:
    def test_add_then_match(self, adaptor):
        # Given: a cookie for the origin
        cookie = HttpCookie(name="sid", value="abc", domain="example.test", path="/", secure=True, http_only=True)

        # When: added and matched by origin host
        assert adaptor.add(cookie) is True
        matched = adaptor.match("example.test:443")

        # Then: the same cookie comes back
        assert len(matched) == 1
        got = matched[0]
        assert (got.name, got.value, got.domain, got.path) == ("sid", "abc", "example.test", "/")
        assert got.secure and got.http_only

    def test_max_age_converted_to_expiry(self, adaptor, cookie_store):
        before = time.time()

        adaptor.add(HttpCookie(name="sid", value="abc", domain="example.test", max_age=60))

        stored = cookie_store.cookie_store_for("example.test")[0]
        assert before + 60 <= stored.expires <= time.time() + 60

    def test_expired_cookie_deletes(self, adaptor, cookie_store):
        adaptor.add(HttpCookie(name="sid", value="abc", domain="example.test"))

        adaptor.add(HttpCookie(name="sid", value="", domain="example.test", expires=time.time() - 10))

        assert adaptor.match("example.test") == []
        assert len(cookie_store) == 0

    def test_unknown_host(self, adaptor):
        assert adaptor.match("nowhere.test") == []

    def test_remove_and_clear_unsupported(self, adaptor):
        cookie = HttpCookie(name="sid", value="abc", domain="example.test")
        adaptor.add(cookie)

        assert adaptor.remove(cookie) is CookieOperationResult.UNSUPPORTED
        assert adaptor.clear() is CookieOperationResult.UNSUPPORTED
        assert len(adaptor.match("example.test")) == 1


class TestCookieHeader:
    def test_path_and_secure_filtering(self, adaptor):
        adaptor.add(HttpCookie(name="root", value="1", domain="example.test", path="/"))
        adaptor.add(HttpCookie(name="docs", value="2", domain="example.test", path="/docs"))
        adaptor.add(HttpCookie(name="tls", value="3", domain="example.test", secure=True))

        assert adaptor.cookie_header("http://example.test/") == "root=1"
        assert adaptor.cookie_header("http://example.test/docs/a") == "docs=2; root=1"
        assert adaptor.cookie_header("https://example.test/docs/a") == "docs=2; root=1; tls=3"

    def test_parent_domain_cookie(self, adaptor):
        adaptor.add(HttpCookie(name="wide", value="1", domain=".example.test"))

        assert adaptor.cookie_header("http://www.example.test/") == "wide=1"

    def test_no_cookies(self, adaptor):
        assert adaptor.cookie_header("http://example.test/") is None


class TestExtraction:
    def test_extract_from_headers(self, adaptor, cookie_store):
        headers = [
            ("Set-Cookie", "JSESSIONID=s1; Path=/"),
            ("Set-Cookie", "pref=dark; Max-Age=3600; Path=/app"),
        ]

        adaptor.extract_from_headers("https://example.test/app/x", 200, headers)

        stored = {c.name: c for c in cookie_store.cookie_store_for("example.test")}
        assert set(stored) == {"JSESSIONID", "pref"}
        assert stored["JSESSIONID"].domain == "example.test"
        assert stored["JSESSIONID"].expires is None
        assert stored["pref"].path == "/app"
        assert stored["pref"].expires > time.time()

    def test_foreign_domain_rejected(self, adaptor, cookie_store):
        adaptor.extract_from_headers(
            "https://example.test/",
            200,
            [("Set-Cookie", "evil=1; Domain=other.test; Path=/")],
        )

        assert cookie_store.cookie_store_for("other.test") is None

    def test_store_is_per_domain(self):
        store = SimpleCookieStore()
        store.add_cookie(StoredCookie(name="a", value="1", domain="one.test"))
        store.add_cookie(StoredCookie(name="b", value="2", domain="two.test"))

        assert [c.name for c in store.cookie_store_for("one.test")] == ["a"]
        assert [c.name for c in store.cookie_store_for("two.test")] == ["b"]
        assert len(store) == 2
