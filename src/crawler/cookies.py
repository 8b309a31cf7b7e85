"""
Cookie handling for the fetch engine.

The crawler keeps cookies in its own per-host store. CookieStoreAdaptor puts
that store behind the http.cookiejar interface the connection layer expects:
Set-Cookie headers flow into the store, and Cookie request headers are built
from it.

remove() and clear() are unsupported; the external store owns
cookie lifecycle and eviction.
"""

import http.cookiejar
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol
from urllib.parse import urlsplit

import httpx
from pydantic import BaseModel, ConfigDict, Field

from src.utils.logging import get_logger

logger = get_logger(__name__)


class StoredCookie(BaseModel):
    """Cookie as kept by the crawler's cookie store."""

    model_config = ConfigDict(frozen=False)

    name: str = Field(..., description="Cookie name")
    value: str = Field(..., description="Cookie value")
    domain: str = Field(..., description="Cookie domain, without leading dot")
    path: str = Field(default="/", description="Cookie path")
    version: int = Field(default=0, description="Cookie version")
    comment: str | None = Field(default=None, description="Cookie comment")
    secure: bool = Field(default=False, description="Secure flag")
    http_only: bool = Field(default=False, description="HttpOnly flag")
    expires: float | None = Field(default=None, description="Expiration as Unix timestamp")

    def is_expired(self, now: float | None = None) -> bool:
        if self.expires is None:
            return False  # Session cookie
        return (now if now is not None else time.time()) >= self.expires

    def matches_domain(self, host: str) -> bool:
        target = host.lower()
        cookie_domain = self.domain.lower().lstrip(".")
        return target == cookie_domain or target.endswith("." + cookie_domain)

    def matches_path(self, path: str) -> bool:
        cookie_path = self.path or "/"
        if path == cookie_path:
            return True
        if path.startswith(cookie_path):
            return cookie_path.endswith("/") or path[len(cookie_path)] == "/"
        return False

    def to_header_value(self) -> str:
        return f"{self.name}={self.value}"


class CookieStore(Protocol):
    """External per-host cookie store consumed by the adaptor."""

    def add_cookie(self, cookie: StoredCookie) -> None: ...

    def cookie_store_for(self, host: str) -> list[StoredCookie] | None:
        """Cookies applicable to host, or None if the store knows nothing of it."""
        ...


class SimpleCookieStore:
    """In-memory CookieStore keyed by cookie domain.

    Each domain has its own lock so readers of one host never wait on
    writers of another.
    """

    def __init__(self) -> None:
        self._domains: dict[str, dict[tuple[str, str], StoredCookie]] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, domain: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(domain)
            if lock is None:
                lock = threading.Lock()
                self._locks[domain] = lock
            return lock

    def add_cookie(self, cookie: StoredCookie) -> None:
        domain = cookie.domain.lower().lstrip(".")
        key = (cookie.name, cookie.path)
        with self._lock_for(domain):
            cookies = self._domains.setdefault(domain, {})
            if cookie.is_expired():
                # An already-expired Set-Cookie deletes the cookie
                cookies.pop(key, None)
            else:
                cookies[key] = cookie

    def cookie_store_for(self, host: str) -> list[StoredCookie] | None:
        host = host.lower()
        with self._locks_guard:
            domains = [d for d in self._locks if host == d or host.endswith("." + d)]
        if not domains:
            return None

        now = time.time()
        result: list[StoredCookie] = []
        for domain in domains:
            with self._lock_for(domain):
                cookies = list(self._domains.get(domain, {}).values())
            result.extend(c for c in cookies if not c.is_expired(now))
        return result

    def __len__(self) -> int:
        return sum(len(cookies) for cookies in self._domains.values())


@dataclass
class HttpCookie:
    """Cookie as seen by the connection layer."""

    name: str
    value: str
    domain: str
    path: str = "/"
    version: int = 0
    comment: str | None = None
    secure: bool = False
    http_only: bool = False
    expires: float | None = None  # Absolute, seconds since epoch
    max_age: int | None = None  # Relative to receipt

    @classmethod
    def from_cookiejar(cls, cookie: http.cookiejar.Cookie, request_host: str) -> "HttpCookie":
        domain = cookie.domain if cookie.domain_specified else request_host
        return cls(
            name=cookie.name,
            value=cookie.value or "",
            domain=domain.lstrip("."),
            path=cookie.path or "/",
            version=cookie.version or 0,
            comment=cookie.comment,
            secure=cookie.secure,
            http_only=cookie.has_nonstandard_attr("HttpOnly"),
            expires=cookie.expires,
        )

    @classmethod
    def from_stored(cls, cookie: StoredCookie) -> "HttpCookie":
        return cls(
            name=cookie.name,
            value=cookie.value,
            domain=cookie.domain,
            path=cookie.path,
            version=cookie.version,
            comment=cookie.comment,
            secure=cookie.secure,
            http_only=cookie.http_only,
            expires=cookie.expires,
        )


class CookieOperationResult(Enum):
    UNSUPPORTED = "unsupported"


def _host_of(value: str) -> str:
    """Strip any port from an origin host string."""
    if value.startswith("["):
        return value[: value.find("]") + 1].lower()
    return value.rsplit(":", 1)[0].lower() if value.count(":") == 1 else value.lower()


class CookieStoreAdaptor(http.cookiejar.CookieJar):
    """Bridges a CookieStore to the connection layer's cookie jar.

    The jar's own storage stays empty; everything goes through the store.
    """

    def __init__(self, store: CookieStore, policy: http.cookiejar.CookiePolicy | None = None):
        super().__init__(policy)
        self.store = store

    def add(self, cookie: HttpCookie) -> bool:
        """Translate and store a cookie. Expiry comes from expires or max-age."""
        expires = cookie.expires
        if expires is None and cookie.max_age is not None:
            expires = time.time() + cookie.max_age
        self.store.add_cookie(
            StoredCookie(
                name=cookie.name,
                value=cookie.value,
                domain=cookie.domain.lstrip("."),
                path=cookie.path or "/",
                version=cookie.version,
                comment=cookie.comment,
                secure=cookie.secure,
                http_only=cookie.http_only,
                expires=expires,
            )
        )
        return True

    def match(self, origin_host: str) -> list[HttpCookie]:
        """All stored cookies for a host; empty if the store does not know it."""
        cookies = self.store.cookie_store_for(_host_of(origin_host))
        if cookies is None:
            return []
        return [HttpCookie.from_stored(c) for c in cookies]

    def remove(self, cookie: HttpCookie) -> CookieOperationResult:
        logger.debug("Cookie removal not supported", name=cookie.name, domain=cookie.domain)
        return CookieOperationResult.UNSUPPORTED

    def clear(self, domain=None, path=None, name=None) -> CookieOperationResult:
        logger.debug("Cookie clear not supported", domain=domain)
        return CookieOperationResult.UNSUPPORTED

    def cookie_header(self, url: str) -> str | None:
        """Build the Cookie request header for a URL, or None if nothing applies."""
        parts = urlsplit(url)
        host = (parts.hostname or "").lower()
        path = parts.path or "/"
        secure = parts.scheme == "https"

        cookies = self.store.cookie_store_for(host)
        if not cookies:
            return None

        now = time.time()
        applicable = [
            c
            for c in cookies
            if not c.is_expired(now)
            and c.matches_domain(host)
            and c.matches_path(path)
            and (secure or not c.secure)
        ]
        if not applicable:
            return None
        # Longer paths first
        applicable.sort(key=lambda c: len(c.path), reverse=True)
        return "; ".join(c.to_header_value() for c in applicable)

    def extract_cookies(self, response, request) -> None:
        """Store Set-Cookie headers from a response. Called by the connection layer."""
        host = (urlsplit(request.get_full_url()).hostname or "").lower()
        # make_cookies() resolves max-age and expiry against the jar clock
        self._policy._now = self._now = int(time.time())
        for cookie in self.make_cookies(response, request):
            if self._policy.set_ok(cookie, request):
                self.add(HttpCookie.from_cookiejar(cookie, host))

    def extract_from_headers(self, url: str, status: int, headers: Iterable[tuple[str, str]]) -> None:
        """Store Set-Cookie headers from a response that bypassed the jar."""
        response = httpx.Response(
            status,
            headers=list(headers),
            request=httpx.Request("GET", url),
        )
        httpx.Cookies(self).extract_cookies(response)
