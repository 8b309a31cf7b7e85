"""HTTP fetch engine.

Performs one fetch attempt at a time per call, against a shared, long-lived
connection layer:

- HTTP/1.1 and HTTP/2 (ALPN) go through an httpx client whose pool connects
  to addresses from the server registry.
- HTTP/3 goes through curl_cffi, only when an origin advertised it via Alt-Svc.

The response is streamed into the attempt's ByteRecorder under the configured
length, time and throughput limits. Transport problems never raise out of
fetch(): they become a status code, a non-fatal failure on the attempt and a
tagged FetchOutcome. Cancellation always propagates.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import httpx
from curl_cffi import CurlECode, CurlError, CurlHttpVersion, CurlOpt
from curl_cffi.requests import AsyncSession

from src.crawler.address_resolution import RegistryHTTPTransport, resolve_socket_address
from src.crawler.content_decoding import UnsupportedContentEncodingError
from src.crawler.cookies import CookieStore, CookieStoreAdaptor, SimpleCookieStore
from src.crawler.fetch_attempt import (
    LENGTH_TRUNC,
    TIMER_TRUNC,
    UNSATISFIABLE_CONTENT_ENCODING,
    FetchAttempt,
    FetchOutcome,
    FetchStatus,
    OutcomeKind,
)
from src.crawler.http3_policy import (
    ProtocolVersion,
    apply_alt_svc,
    curl_supports_http3,
    select_protocol,
)
from src.crawler.recorder import DEFAULT_CHARSET, RecordingLimits, RecordingStatus
from src.crawler.server_registry import ResolutionState, ServerRegistry, get_server_registry
from src.utils.config import FetchConfig, get_settings
from src.utils.logging import LogContext, get_logger

logger = get_logger(__name__)

ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
ACCEPT_ENCODING = "gzip, deflate, br"


class FetcherNotRunningError(RuntimeError):
    """fetch() called on an engine that is not started."""


@dataclass
class WireResponse:
    """Response headers and body stream, independent of the route taken."""

    status: int
    reason: str
    version: ProtocolVersion
    raw_version: str
    headers: list[tuple[str, str]]
    peer_ip: str | None
    body: AsyncIterator[bytes]
    close: Callable[[], Awaitable[None]]

    def header_values(self, name: str) -> list[str]:
        name = name.lower()
        return [value for key, value in self.headers if key.lower() == name]

    def last_header(self, name: str) -> str | None:
        values = self.header_values(name)
        return values[-1] if values else None


@dataclass
class _HostSlot:
    semaphore: asyncio.Semaphore
    users: int = 0


def charset_from_content_type(content_type: str | None) -> str | None:
    """Extract the charset parameter of a Content-Type value."""
    if not content_type:
        return None
    for param in content_type.split(";")[1:]:
        name, _, value = param.partition("=")
        if name.strip().lower() == "charset":
            value = value.strip().strip("\"'")
            return value or None
    return None


def format_request_header(method: str, target: str, headers: list[tuple[str, str]], version: str = "HTTP/1.1") -> bytes:
    """Reconstruct a request header block in HTTP/1.x form, whatever protocol was used."""
    record_version = "HTTP/1.0" if version == "HTTP/1.0" else "HTTP/1.1"
    lines = [f"{method} {target} {record_version}\r\n"]
    lines.extend(f"{name}: {value}\r\n" for name, value in headers)
    lines.append("\r\n")
    return "".join(lines).encode("latin-1", errors="replace")


def format_response_header(response: WireResponse) -> bytes:
    """Reconstruct the response header block in HTTP/1.x form.

    Transfer-Encoding is dropped because the recorded body is already
    transfer-decoded.
    """
    record_version = "HTTP/1.0" if response.raw_version == "HTTP/1.0" else "HTTP/1.1"
    lines = [f"{record_version} {response.status} {response.reason}\r\n"]
    lines.extend(
        f"{name}: {value}\r\n"
        for name, value in response.headers
        if name.lower() != "transfer-encoding"
    )
    lines.append("\r\n")
    return "".join(lines).encode("latin-1", errors="replace")


def _curl_version_to_protocol(http_version: Any) -> ProtocolVersion:
    if http_version in (CurlHttpVersion.V3, CurlHttpVersion.V3ONLY):
        return ProtocolVersion.HTTP_3
    if http_version in (CurlHttpVersion.V2_0, CurlHttpVersion.V2TLS, CurlHttpVersion.V2_PRIOR_KNOWLEDGE):
        return ProtocolVersion.HTTP_2
    return ProtocolVersion.HTTP_1_1


def _is_timeout(error: BaseException) -> bool:
    if isinstance(error, (TimeoutError, httpx.TimeoutException)):
        return True
    return isinstance(error, CurlError) and getattr(error, "code", None) == CurlECode.OPERATION_TIMEDOUT


class FetchEngine:
    """Fetches FetchAttempts over a shared connection pool.

    Example:
        async with FetchEngine(config, server_registry=registry) as engine:
            outcome = await engine.fetch(attempt)
    """

    def __init__(
        self,
        config: FetchConfig | None = None,
        *,
        server_registry: ServerRegistry | None = None,
        cookie_store: CookieStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        http3_session_factory: Callable[..., Any] | None = None,
    ):
        self.config = config or get_settings().fetch
        self.server_registry = server_registry or get_server_registry()
        self.cookie_adaptor = CookieStoreAdaptor(cookie_store if cookie_store is not None else SimpleCookieStore())
        self._transport = transport
        self._http3_session_factory = http3_session_factory or AsyncSession

        self._client: httpx.AsyncClient | None = None
        self._start_lock = asyncio.Lock()
        self._running = False
        self._host_slots: dict[str, _HostSlot] = {}

    # -- lifecycle --------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Build the connection layer on first start. Safe to call concurrently."""
        async with self._start_lock:
            if self._running:
                return
            if self.config.use_http3 and not curl_supports_http3():
                logger.warning("curl build lacks HTTP/3 support, disabling HTTP/3")
                self.config = self.config.model_copy(update={"use_http3": False})
            if self._client is None:
                self._client = self._create_client()
            self._running = True
            logger.info(
                "Fetch engine started",
                http2=self.config.use_http2,
                http3=self.config.use_http3,
                timeout_seconds=self.config.timeout_seconds,
            )

    async def stop(self) -> None:
        async with self._start_lock:
            if not self._running:
                return
            self._running = False
            client, self._client = self._client, None
            if client is not None:
                await client.aclose()
            logger.info("Fetch engine stopped")

    async def __aenter__(self) -> "FetchEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    def _create_client(self) -> httpx.AsyncClient:
        limits = httpx.Limits(keepalive_expiry=self.config.idle_timeout_seconds)
        transport = self._transport or RegistryHTTPTransport(
            self.server_registry,
            http2=self.config.use_http2,
            limits=limits,
        )
        return httpx.AsyncClient(
            transport=transport,
            follow_redirects=False,
            timeout=httpx.Timeout(
                self.config.timeout_seconds,
                connect=self.config.connect_timeout_seconds,
            ),
            cookies=self.cookie_adaptor,
            trust_env=False,
        )

    @asynccontextmanager
    async def _host_slot(self, server_key: str):
        """Cap concurrent fetches per origin.

        A slot lives only while some fetch holds or awaits it.
        """
        slot = self._host_slots.get(server_key)
        if slot is None:
            slot = _HostSlot(asyncio.Semaphore(self.config.max_connections_per_host))
            self._host_slots[server_key] = slot
        slot.users += 1
        try:
            async with slot.semaphore:
                yield
        finally:
            slot.users -= 1
            if slot.users == 0:
                del self._host_slots[server_key]

    # -- fetch ------------------------------------------------------------

    def should_process(self, attempt: FetchAttempt) -> bool:
        """Reject attempts that must not touch the network."""
        if attempt.scheme not in ("http", "https"):
            attempt.status = FetchStatus.UNFETCHABLE_URI
            return False
        try:
            httpx.URL(attempt.url)
        except httpx.InvalidURL as e:
            logger.debug("Malformed URL", url=attempt.url, error=str(e))
            attempt.status = FetchStatus.UNFETCHABLE_URI
            return False
        address = self.server_registry.get_resolved_address(attempt.host)
        if address.state is ResolutionState.UNRESOLVABLE:
            attempt.status = FetchStatus.DOMAIN_PREREQUISITE_FAILURE
            return False
        return True

    async def fetch(self, attempt: FetchAttempt, limits: RecordingLimits | None = None) -> FetchOutcome:
        """Fetch one attempt and record it.

        Returns when the attempt has reached a terminal state. The attempt's
        outcome fields are updated in place.

        Raises:
            FetcherNotRunningError: If the engine is not started.
            asyncio.CancelledError: If the caller cancels; cleanup has run.
        """
        if not self._running or self._client is None:
            raise FetcherNotRunningError("fetch engine is not running")

        if not self.should_process(attempt):
            logger.debug("Attempt not eligible", url=attempt.url, status=int(attempt.status))
            return FetchOutcome(OutcomeKind.NOT_ELIGIBLE, int(attempt.status))

        with LogContext(url=attempt.url, attempt=attempt.fetch_attempts):
            async with self._host_slot(attempt.server_key):
                return await self._fetch(attempt, limits or RecordingLimits.from_config(self.config))

    async def _fetch(self, attempt: FetchAttempt, limits: RecordingLimits) -> FetchOutcome:
        recorder = attempt.recorder
        recorder.begin(limits, self.config.digest_algorithm)
        attempt.mark_fetch_begin()

        protocol = select_protocol(
            attempt.scheme,
            attempt.server_key,
            attempt.port,
            attempt.fetch_attempts,
            self.server_registry,
            use_http2=self.config.use_http2,
            use_http3=self.config.use_http3,
        )
        headers = self._request_headers(attempt)

        kind = OutcomeKind.SUCCESS
        error: BaseException | None = None
        response: WireResponse | None = None
        try:
            if protocol is ProtocolVersion.HTTP_3:
                response = await self._send_http3(attempt, headers)
            else:
                response = await self._send_http(attempt, headers)

            self._handle_alt_svc(attempt, response)
            self._update_with_response_header(attempt, response)
            recorder.write_response_header(format_response_header(response))

            status = await recorder.read_body(response.body)
            if status is RecordingStatus.LENGTH_EXCEEDED:
                attempt.annotate(LENGTH_TRUNC)
                kind = OutcomeKind.LENGTH_TRUNCATED
                logger.debug("Response truncated at length limit", max_length_bytes=limits.max_length_bytes)
            elif status is RecordingStatus.TIMEOUT:
                attempt.annotate(TIMER_TRUNC)
                kind = OutcomeKind.TIMER_TRUNCATED
                logger.debug("Response truncated at time limit", timeout_seconds=limits.timeout_seconds)
            if recorder.decode_error is not None:
                attempt.non_fatal_failures.append(recorder.decode_error)
        except (TimeoutError, httpx.HTTPError, OSError, CurlError) as e:
            error = e
            logger.info("Fetch failed", error=repr(e))
            attempt.non_fatal_failures.append(e)
            if _is_timeout(e):
                attempt.status = FetchStatus.TIMEOUT
                kind = OutcomeKind.TIMEOUT
            else:
                attempt.status = FetchStatus.CONNECT_FAILED
                kind = OutcomeKind.CONNECT_FAILED
        finally:
            if response is not None:
                await response.close()
            recorder.close()
            self._update_on_completion(attempt)

        return FetchOutcome(kind, int(attempt.status), error)

    def _request_headers(self, attempt: FetchAttempt) -> list[tuple[str, str]]:
        headers = [
            ("User-Agent", self.config.user_agent),
            ("Accept", ACCEPT),
            ("Accept-Encoding", ACCEPT_ENCODING),
        ]
        cookie = self.cookie_adaptor.cookie_header(attempt.url)
        if cookie:
            headers.append(("Cookie", cookie))
        if attempt.is_post and attempt.request_content_type:
            headers.append(("Content-Type", attempt.request_content_type))
        return headers

    def _record_request(self, attempt: FetchAttempt, headers: list[tuple[str, str]]) -> None:
        attempt.recorder.write_request(format_request_header(attempt.method, attempt.target, headers))

    async def _send_http(self, attempt: FetchAttempt, headers: list[tuple[str, str]]) -> WireResponse:
        """HTTP/1.1 or ALPN-negotiated HTTP/2 through the pooled httpx client."""
        client = self._client
        request = client.build_request(
            "POST" if attempt.is_post else "GET",
            attempt.url,
            headers=headers,
            content=attempt.request_body if attempt.is_post else None,
        )
        send = asyncio.ensure_future(client.send(request, stream=True))
        try:
            self._record_request(attempt, [(k.decode("latin-1"), v.decode("latin-1")) for k, v in request.headers.raw])
            response = await asyncio.wait_for(send, self.config.timeout_seconds)
        except BaseException:
            send.cancel()
            raise

        return WireResponse(
            status=response.status_code,
            reason=response.reason_phrase or "",
            version=ProtocolVersion.from_string(response.http_version),
            raw_version=response.http_version,
            headers=[(k.decode("latin-1"), v.decode("latin-1")) for k, v in response.headers.raw],
            peer_ip=self._peer_ip(attempt, response),
            body=response.aiter_raw(),
            close=response.aclose,
        )

    def _peer_ip(self, attempt: FetchAttempt, response: httpx.Response) -> str | None:
        stream = response.extensions.get("network_stream")
        if stream is not None:
            server_addr = stream.get_extra_info("server_addr")
            if server_addr:
                return server_addr[0]
        return self.server_registry.get_resolved_address(attempt.host).ip

    async def _send_http3(self, attempt: FetchAttempt, headers: list[tuple[str, str]]) -> WireResponse:
        """HTTP/3 through curl, pinned to the registry address."""
        ip = resolve_socket_address(self.server_registry, attempt.host)
        port = attempt.effective_port
        session = self._http3_session_factory(
            curl_options={
                CurlOpt.RESOLVE: [f"{attempt.host}:{port}:{ip}"],
                CurlOpt.HTTP_CONTENT_DECODING: 0,
            }
        )
        send = None
        try:
            send = asyncio.ensure_future(
                session.request(
                    "POST" if attempt.is_post else "GET",
                    attempt.url,
                    headers=dict(headers),
                    data=attempt.request_body if attempt.is_post else None,
                    stream=True,
                    allow_redirects=False,
                    http_version=CurlHttpVersion.V3ONLY,
                    accept_encoding=None,
                    timeout=(self.config.connect_timeout_seconds, self.config.timeout_seconds),
                )
            )
            host_header = attempt.host if attempt.port is None else f"{attempt.host}:{attempt.port}"
            self._record_request(attempt, [("Host", host_header), *headers])
            response = await asyncio.wait_for(send, self.config.timeout_seconds)
        except BaseException:
            if send is not None:
                send.cancel()
            await session.close()
            raise

        response_headers = list(response.headers.multi_items())
        self.cookie_adaptor.extract_from_headers(attempt.url, response.status_code, response_headers)

        async def close() -> None:
            try:
                await response.aclose()
            finally:
                await session.close()

        return WireResponse(
            status=response.status_code,
            reason=response.reason or "",
            version=_curl_version_to_protocol(response.http_version),
            raw_version="HTTP/3",
            headers=response_headers,
            peer_ip=getattr(response, "primary_ip", None) or ip,
            body=response.aiter_content(),
            close=close,
        )

    def _handle_alt_svc(self, attempt: FetchAttempt, response: WireResponse) -> None:
        if not self.config.use_http3 or attempt.scheme != "https":
            return
        values = response.header_values("alt-svc")
        if values:
            apply_alt_svc(self.server_registry, attempt.server_key, attempt.host, values)

    def _update_with_response_header(self, attempt: FetchAttempt, response: WireResponse) -> None:
        attempt.status = response.status
        attempt.server_ip = response.peer_ip
        if not attempt.is_post:
            attempt.method = "GET"

        content_type = response.last_header("content-type")
        attempt.content_type = content_type
        recorder = attempt.recorder
        charset = charset_from_content_type(content_type) or DEFAULT_CHARSET
        try:
            recorder.set_charset(charset)
        except LookupError:
            recorder.set_charset(DEFAULT_CHARSET)

        content_encoding = response.last_header("content-encoding")
        if content_encoding:
            try:
                recorder.set_content_encoding(content_encoding)
            except UnsupportedContentEncodingError:
                attempt.annotate(f"{UNSATISFIABLE_CONTENT_ENCODING}:{content_encoding}")

        attempt.response_headers = httpx.Headers(response.headers)

        annotation = response.version.annotation
        if annotation:
            attempt.annotate(annotation)

    def _update_on_completion(self, attempt: FetchAttempt) -> None:
        recorder = attempt.recorder
        attempt.mark_fetch_completed()
        if self.config.digest_algorithm:
            attempt.content_digest_algorithm = self.config.digest_algorithm
            attempt.content_digest = recorder.digest_value
        attempt.content_size = recorder.content_size
        attempt.recorded_size = recorder.recorded_size
        attempt.content_length = recorder.message_body_size
        attempt.extra_info["contentSize"] = recorder.content_size


# Global engine instance
_fetch_engine: FetchEngine | None = None


def get_fetch_engine() -> FetchEngine:
    """Get or create the process-wide fetch engine. Start it explicitly."""
    global _fetch_engine
    if _fetch_engine is None:
        _fetch_engine = FetchEngine()
    return _fetch_engine


def reset_fetch_engine() -> None:
    """Reset the global fetch engine (for testing)."""
    global _fetch_engine
    _fetch_engine = None
