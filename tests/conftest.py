"""
Pytest fixtures and configuration for Skein tests.

=============================================================================
Test Classification
=============================================================================

- @pytest.mark.unit: Single class/function, no external dependencies
  - DEFAULT: Tests without marker are auto-classified as unit
- @pytest.mark.integration: Several components wired together, network mocked

=============================================================================
Mock Strategy
=============================================================================

- Network: never touched. HTTP/1.1 and HTTP/2 routes run over
  httpx.MockTransport; the HTTP/3 route uses a fake curl session factory.
- File I/O: use tmp_path / temp_dir.
- Globals: registry, credential store and engine singletons are reset
  around every test.
"""

import asyncio
import os
import tempfile
from collections.abc import Generator
from pathlib import Path
from urllib.parse import parse_qs

import httpx
import pytest
import pytest_asyncio

# Set test environment before importing anything else
os.environ["SKEIN_CONFIG_DIR"] = str(Path(__file__).parent.parent / "config")
os.environ["SKEIN_GENERAL__LOG_LEVEL"] = "DEBUG"

DEFAULT_PAYLOAD = b"abcdefghijklmnopqrstuvwxyz0123456789\n"
# sha1 of DEFAULT_PAYLOAD, base32
DEFAULT_PAYLOAD_SHA1 = "sha1:TQ5R6YVOZLTQENRIIENVGXHOPX3YCRNJ"

FORM_AUTH_LOGIN = "form-auth-login"
FORM_AUTH_PASSWORD = "form-auth-password"


def pytest_configure(config):
    """Register custom markers for test classification."""
    config.addinivalue_line(
        "markers", "unit: Unit tests with no external dependencies (fast, <1s/test)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests with mocked network (<5s/test)"
    )


def pytest_collection_modifyitems(config, items):
    """Tests without explicit markers are assumed to be unit tests."""
    for item in items:
        has_classification = any(
            marker.name in ("unit", "integration") for marker in item.iter_markers()
        )
        if not has_classification:
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Mock servers
# =============================================================================


def streamed_response(status: int, headers=None, body: bytes = b"", chunk_size: int | None = None) -> httpx.Response:
    """Build an unread mock response so the engine sees the raw body stream.

    httpx.Response(content=...) is read (and content-decoded) eagerly, which
    would leave nothing for aiter_raw().
    """
    header_list = list(headers.items()) if isinstance(headers, dict) else list(headers or [])
    if not any(name.lower() == "content-length" for name, _ in header_list):
        header_list.append(("Content-Length", str(len(body))))
    if chunk_size:
        stream = ChunkedStream(body, chunk_size)
    else:
        stream = httpx.ByteStream(body)
    return httpx.Response(status, headers=header_list, stream=stream)


class ChunkedStream(httpx.AsyncByteStream):
    """Async body stream delivered in fixed-size pieces, optionally with a stall."""

    def __init__(self, body: bytes, chunk_size: int, stall_after: int | None = None, stall_seconds: float = 0):
        self.body = body
        self.chunk_size = chunk_size
        self.stall_after = stall_after
        self.stall_seconds = stall_seconds
        self.closed = False

    async def __aiter__(self):
        for index, start in enumerate(range(0, len(self.body), self.chunk_size)):
            if self.stall_after is not None and index == self.stall_after:
                await asyncio.sleep(self.stall_seconds)
            yield self.body[start : start + self.chunk_size]

    async def aclose(self) -> None:
        self.closed = True


class FormAuthServer:
    """httpx.MockTransport handler emulating a servlet container's form login.

    - GET /            -> 200 with the default payload
    - GET /auth/*      -> 302 to /login.html until the session is authenticated
    - POST /j_security_check with the right form fields
                       -> 302 back to the page that triggered the login
    - GET /login.html  -> 200 login form
    """

    LOGIN_HTML = (
        b"<html><head><title>Log In</title></head><body>"
        b'<form action="/j_security_check" method="post">'
        b'<input name="j_username"/><input type="password" name="j_password"/>'
        b"</form></body></html>"
    )

    def __init__(self, username: str = FORM_AUTH_LOGIN, password: str = FORM_AUTH_PASSWORD):
        self.username = username
        self.password = password
        self.sessions: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self._next_session = 0

    def _session_id(self, request: httpx.Request) -> str | None:
        cookie = request.headers.get("cookie", "")
        for part in cookie.split(";"):
            name, _, value = part.strip().partition("=")
            if name == "JSESSIONID" and value in self.sessions:
                return value
        return None

    def _new_session(self) -> str:
        self._next_session += 1
        session_id = f"session{self._next_session:04d}"
        self.sessions[session_id] = {"authenticated": False, "saved_path": None}
        return session_id

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/":
            return streamed_response(200, {"Content-Type": "text/plain"}, DEFAULT_PAYLOAD)

        if path == "/login.html":
            return streamed_response(200, {"Content-Type": "text/html"}, self.LOGIN_HTML)

        if path == "/j_security_check" and request.method == "POST":
            session_id = self._session_id(request)
            form = parse_qs(request.content.decode("ascii"))
            ok = (
                session_id is not None
                and form.get("j_username") == [self.username]
                and form.get("j_password") == [self.password]
            )
            if not ok:
                return streamed_response(403, {"Content-Type": "text/plain"}, b"login failed\n")
            session = self.sessions[session_id]
            session["authenticated"] = True
            return streamed_response(302, {"Location": session["saved_path"] or "/"})

        if path.startswith("/auth/"):
            session_id = self._session_id(request)
            if session_id is not None and self.sessions[session_id]["authenticated"]:
                return streamed_response(200, {"Content-Type": "text/plain"}, DEFAULT_PAYLOAD)
            headers = [("Location", "/login.html")]
            if session_id is None:
                session_id = self._new_session()
                headers.append(("Set-Cookie", f"JSESSIONID={session_id}; Path=/"))
            self.sessions[session_id]["saved_path"] = path
            return streamed_response(302, headers)

        return streamed_response(404, {"Content-Type": "text/plain"}, b"not found\n")


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fetch_config():
    """Fetch configuration with HTTP/3 off and short timeouts."""
    from src.utils.config import FetchConfig

    return FetchConfig(
        timeout_seconds=5,
        connect_timeout_seconds=5,
        use_http2=True,
        use_http3=False,
        user_agent="skein-test/0.1",
    )


@pytest.fixture
def server_registry():
    """Registry with the hosts used by the mock servers resolved."""
    from src.crawler.server_registry import ServerRegistry

    registry = ServerRegistry()
    registry.set_resolved("localhost", "127.0.0.1")
    registry.set_resolved("example.test", "192.0.2.10")
    return registry


@pytest.fixture
def cookie_store():
    from src.crawler.cookies import SimpleCookieStore

    return SimpleCookieStore()


@pytest.fixture
def form_auth_server() -> FormAuthServer:
    return FormAuthServer()


@pytest_asyncio.fixture
async def engine(fetch_config, server_registry, cookie_store, form_auth_server):
    """Started FetchEngine talking to the FormAuthServer mock."""
    from src.crawler.http_fetcher import FetchEngine

    fetch_engine = FetchEngine(
        fetch_config,
        server_registry=server_registry,
        cookie_store=cookie_store,
        transport=httpx.MockTransport(form_auth_server),
    )
    await fetch_engine.start()
    yield fetch_engine
    await fetch_engine.stop()


@pytest.fixture(autouse=True)
def reset_globals():
    """Reset process-wide singletons around each test."""
    from src.crawler.credentials import reset_credential_store
    from src.crawler.http_fetcher import reset_fetch_engine
    from src.crawler.server_registry import reset_server_registry
    from src.utils.config import get_settings

    reset_server_registry()
    reset_credential_store()
    reset_fetch_engine()
    get_settings.cache_clear()
    yield
    reset_server_registry()
    reset_credential_store()
    reset_fetch_engine()
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def make_engine(fetch_config, server_registry, cookie_store):
    """Factory for started engines over a custom MockTransport handler.

    Keyword arguments other than http3_session_factory override FetchConfig fields.
    """
    from src.crawler.http_fetcher import FetchEngine

    engines = []

    async def _make(handler, http3_session_factory=None, **overrides):
        config = fetch_config.model_copy(update=overrides) if overrides else fetch_config
        fetch_engine = FetchEngine(
            config,
            server_registry=server_registry,
            cookie_store=cookie_store,
            transport=httpx.MockTransport(handler),
            http3_session_factory=http3_session_factory,
        )
        await fetch_engine.start()
        engines.append(fetch_engine)
        return fetch_engine

    yield _make
    for fetch_engine in engines:
        await fetch_engine.stop()
