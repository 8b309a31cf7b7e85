"""
HTTP/3 (QUIC) policy for the fetch engine.

- Plain http always uses HTTP/1.1.
- https lets the connection layer negotiate HTTP/2 or HTTP/1.1 via ALPN.
- HTTP/3 is only attempted on the first attempt for a URL, and only when the
  origin has advertised an unexpired "h3" Alt-Svc on the request's own port.

Alt-Svc handling accepts only "h3", only the same host,
only privileged ports (1-1023), and the first acceptable advertisement wins.
"""

import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from curl_cffi import Curl, CurlError

from src.crawler.server_registry import AltSvcEntry, ServerRegistry
from src.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_ALT_SVC_MAX_AGE_SECONDS = 24 * 60 * 60
SUPPORTED_ALT_SVC_PROTOCOL = "h3"


class ProtocolVersion(Enum):
    """HTTP protocol versions.

    As a selection, HTTP_2 means "negotiate HTTP/2 or HTTP/1.1 via ALPN".
    """

    HTTP_1_1 = "h1"
    HTTP_2 = "h2"
    HTTP_3 = "h3"
    UNKNOWN = "unknown"

    @classmethod
    def from_string(cls, value: str) -> "ProtocolVersion":
        """Parse protocol version from string.

        Args:
            value: Protocol string (e.g., "h3", "h2", "HTTP/1.1", "HTTP/2").

        Returns:
            ProtocolVersion enum value.
        """
        if not value:
            return cls.UNKNOWN

        value_lower = value.lower()

        if value_lower.startswith("h3") or value_lower in ("http/3", "http/3.0"):
            return cls.HTTP_3

        if value_lower in ("h2", "http/2", "http/2.0"):
            return cls.HTTP_2

        if value_lower in ("h1", "http/1.1", "http/1.0", "1.1", "1.0"):
            return cls.HTTP_1_1

        return cls.UNKNOWN

    @property
    def annotation(self) -> str | None:
        """Attempt annotation for this version. HTTP/1.1 is the implicit default."""
        if self in (ProtocolVersion.HTTP_2, ProtocolVersion.HTTP_3):
            return self.value
        return None


@dataclass(frozen=True)
class AltSvcAdvertisement:
    """One parsed Alt-Svc alternative."""

    protocol: str
    host: str
    port: int
    max_age_seconds: int = DEFAULT_ALT_SVC_MAX_AGE_SECONDS
    params: dict[str, str] = field(default_factory=dict, compare=False)


def _split_quoted(value: str, separator: str) -> list[str]:
    """Split on a separator that is not inside double quotes."""
    parts: list[str] = []
    current: list[str] = []
    in_quotes = False
    for char in value:
        if char == '"':
            in_quotes = not in_quotes
        if char == separator and not in_quotes:
            parts.append("".join(current))
            current = []
            continue
        current.append(char)
    parts.append("".join(current))
    return [part.strip() for part in parts if part.strip()]


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value


def split_alt_svc(header_values: Iterable[str]) -> list[str]:
    """Flatten Alt-Svc header lines into individual alternatives."""
    alternatives: list[str] = []
    for header_value in header_values:
        alternatives.extend(_split_quoted(header_value, ","))
    return alternatives


def parse_alt_svc_value(value: str) -> AltSvcAdvertisement | None:
    """Parse one `protocol-id="host:port"; ma=N` alternative.

    Returns None for malformed input. Missing, unparsable or negative ma
    falls back to 24 hours.
    """
    pieces = _split_quoted(value, ";")
    if not pieces:
        return None

    protocol, sep, authority = pieces[0].partition("=")
    protocol = protocol.strip()
    if not sep or not protocol:
        return None
    authority = _unquote(authority)

    colon = authority.rfind(":")
    if colon < 0:
        return None
    if "[" in authority:
        # [2001:db8::1]:443 - the port separator must follow the closing bracket
        close_bracket = authority.rfind("]")
        if close_bracket < 0 or colon <= close_bracket:
            return None

    host = authority[:colon]
    try:
        port = int(authority[colon + 1 :])
    except ValueError:
        return None

    params: dict[str, str] = {}
    for piece in pieces[1:]:
        key, _, param_value = piece.partition("=")
        params[key.strip().lower()] = _unquote(param_value)

    max_age = DEFAULT_ALT_SVC_MAX_AGE_SECONDS
    if "ma" in params:
        try:
            max_age = int(params["ma"])
        except ValueError:
            max_age = DEFAULT_ALT_SVC_MAX_AGE_SECONDS
        if max_age < 0:
            max_age = DEFAULT_ALT_SVC_MAX_AGE_SECONDS

    return AltSvcAdvertisement(
        protocol=protocol,
        host=host,
        port=port,
        max_age_seconds=max_age,
        params=params,
    )


def is_acceptable_advertisement(advertisement: AltSvcAdvertisement, request_host: str) -> bool:
    """Only same-host "h3" alternatives on privileged ports are honored."""
    if advertisement.protocol != SUPPORTED_ALT_SVC_PROTOCOL:
        return False
    if advertisement.host and advertisement.host.lower() != request_host.lower():
        return False
    return 1 <= advertisement.port < 1024


def apply_alt_svc(
    registry: ServerRegistry,
    server_key: str,
    request_host: str,
    header_values: Iterable[str],
    now_ms: int | None = None,
) -> AltSvcEntry | None:
    """Update the registry from a response's Alt-Svc header lines.

    "clear" wipes the origin's entry and parsing continues. The first
    acceptable advertisement is recorded and the rest are ignored.

    Returns:
        The entry recorded, or None.
    """
    if now_ms is None:
        now_ms = int(time.time() * 1000)

    for value in split_alt_svc(header_values):
        if value.lower() == "clear":
            registry.clear_alt_svc(server_key)
            continue

        advertisement = parse_alt_svc_value(value)
        if advertisement is None:
            logger.debug("Malformed Alt-Svc alternative skipped", server=server_key, value=value)
            continue
        if not is_acceptable_advertisement(advertisement, request_host):
            continue

        expiry_ms = now_ms + advertisement.max_age_seconds * 1000
        registry.record_alt_svc(server_key, advertisement.port, expiry_ms, advertisement.protocol)
        return AltSvcEntry(advertisement.protocol, advertisement.port, expiry_ms)

    return None


def select_protocol(
    scheme: str,
    server_key: str,
    port: int | None,
    fetch_attempts: int,
    registry: ServerRegistry,
    use_http2: bool = True,
    use_http3: bool = False,
    now_ms: int | None = None,
) -> ProtocolVersion:
    """Pick the protocol for a request.

    Args:
        scheme: URL scheme.
        server_key: Registry key of the origin.
        port: Explicit port of the URL, or None.
        fetch_attempts: Prior attempts for this URL.
        registry: Source of Alt-Svc hints.
        use_http2: Allow ALPN negotiation of HTTP/2.
        use_http3: Allow Alt-Svc driven HTTP/3.
        now_ms: Clock override for expiry checks.

    Returns:
        HTTP_1_1, HTTP_2 (negotiate) or HTTP_3.
    """
    if scheme != "https":
        return ProtocolVersion.HTTP_1_1

    # An Alt-Svc upgrade is never retried after a failed first attempt
    if use_http3 and fetch_attempts == 0:
        http3_port = registry.get_http3_alt_svc_port(server_key, now_ms)
        if http3_port is not None:
            if http3_port == port or (port is None and http3_port == 443):
                return ProtocolVersion.HTTP_3

    return ProtocolVersion.HTTP_2 if use_http2 else ProtocolVersion.HTTP_1_1


def curl_supports_http3() -> bool:
    """Check whether the installed curl build can speak HTTP/3."""
    try:
        version = Curl().version()
    except CurlError as e:
        logger.warning("Could not query curl version", error=str(e))
        return False
    if isinstance(version, bytes):
        version = version.decode("ascii", errors="replace")
    version = version.lower()
    return "nghttp3" in version or "quiche" in version
