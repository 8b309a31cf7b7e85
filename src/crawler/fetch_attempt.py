"""Fetch attempt data model.

A FetchAttempt is one unit of retrieval work handed to the fetch engine by
the frontier. The engine mutates its outcome fields in place; downstream
stages read them back.
"""

import base64
import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

import httpx

from src.crawler.recorder import ByteRecorder

if TYPE_CHECKING:
    from src.crawler.credentials import Credential


class FetchStatus(IntEnum):
    """Sentinel fetch status codes. Positive statuses are HTTP status codes."""

    UNATTEMPTED = 0
    DOMAIN_UNRESOLVABLE = -1
    CONNECT_FAILED = -2
    CONNECT_LOST = -3
    TIMEOUT = -4
    RUNTIME_EXCEPTION = -5
    DOMAIN_PREREQUISITE_FAILURE = -6
    UNFETCHABLE_URI = -7
    OTHER_PREREQUISITE_FAILURE = -62


# Annotation tags
LENGTH_TRUNC = "lenTrunc"
TIMER_TRUNC = "timeTrunc"
HTTP2_ANNOTATION = "h2"
HTTP3_ANNOTATION = "h3"
UNSATISFIABLE_CONTENT_ENCODING = "unsatisfiableContentEncoding"

DEFAULT_PORTS = {"http": 80, "https": 443}


class OutcomeKind(Enum):
    """How a fetch attempt ended."""

    SUCCESS = "success"
    LENGTH_TRUNCATED = "length_truncated"
    TIMER_TRUNCATED = "timer_truncated"
    TIMEOUT = "timeout"
    CONNECT_FAILED = "connect_failed"
    NOT_ELIGIBLE = "not_eligible"  # Rejected before any network I/O


@dataclass(frozen=True)
class FetchOutcome:
    """Tagged result of FetchEngine.fetch().

    The attempt carries the full detail; the outcome says which path was taken.
    """

    kind: OutcomeKind
    status: int
    error: BaseException | None = None

    @property
    def is_truncated(self) -> bool:
        return self.kind in (OutcomeKind.LENGTH_TRUNCATED, OutcomeKind.TIMER_TRUNCATED)

    @property
    def is_failure(self) -> bool:
        return self.kind in (
            OutcomeKind.TIMEOUT,
            OutcomeKind.CONNECT_FAILED,
            OutcomeKind.NOT_ELIGIBLE,
        )


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class FetchAttempt:
    """One fetch operation against one URL.

    Identity fields are set by the caller. Outcome fields start empty and are
    written by the fetch engine.
    """

    url: str
    method: str = "GET"
    fetch_attempts: int = 0
    request_body: bytes | None = None
    request_content_type: str | None = None

    # Outcome
    status: int = FetchStatus.UNATTEMPTED
    fetch_begin_time: int | None = None
    fetch_completed_time: int | None = None
    server_ip: str | None = None
    content_type: str | None = None
    content_digest_algorithm: str | None = None
    content_digest: bytes | None = None
    content_size: int = 0
    recorded_size: int = 0
    content_length: int = 0
    response_headers: httpx.Headers = field(default_factory=httpx.Headers)
    annotations: list[str] = field(default_factory=list)
    non_fatal_failures: list[BaseException] = field(default_factory=list)
    extra_info: dict[str, Any] = field(default_factory=dict)

    # Prerequisite linkage
    prerequisite: "FetchAttempt | None" = None
    is_login_prerequisite: bool = False
    via: "FetchAttempt | None" = None
    credentials: list["Credential"] = field(default_factory=list)

    recorder: ByteRecorder = field(default_factory=ByteRecorder, repr=False)

    def __post_init__(self) -> None:
        self.method = self.method.upper()
        parts = urlsplit(self.url)
        self.scheme = parts.scheme.lower()
        self.host = (parts.hostname or "").lower()
        self.port = parts.port  # None when the URL gives no explicit port
        path = parts.path or "/"
        self.target = f"{path}?{parts.query}" if parts.query else path

    # -- identity helpers -------------------------------------------------

    @property
    def effective_port(self) -> int | None:
        if self.port is not None:
            return self.port
        return DEFAULT_PORTS.get(self.scheme)

    @property
    def server_key(self) -> str:
        """Registry key for this attempt's origin, host:port with the default port filled in."""
        port = self.effective_port
        if port is None:
            return self.host
        return f"{self.host}:{port}"

    @property
    def is_post(self) -> bool:
        return self.method == "POST"

    # -- outcome helpers --------------------------------------------------

    def annotate(self, tag: str) -> None:
        """Add an annotation tag; annotations form an ordered set."""
        if tag not in self.annotations:
            self.annotations.append(tag)

    def mark_fetch_begin(self) -> None:
        self.fetch_begin_time = _now_ms()

    def mark_fetch_completed(self) -> None:
        self.fetch_completed_time = _now_ms()

    @property
    def fetch_duration_ms(self) -> int | None:
        if self.fetch_begin_time is None or self.fetch_completed_time is None:
            return None
        return self.fetch_completed_time - self.fetch_begin_time

    @property
    def content_digest_scheme_string(self) -> str | None:
        """Digest as "<algorithm>:<BASE32 value>", or None if not computed."""
        if self.content_digest_algorithm is None or self.content_digest is None:
            return None
        encoded = base64.b32encode(self.content_digest).decode("ascii")
        return f"{self.content_digest_algorithm}:{encoded}"

    @property
    def is_success(self) -> bool:
        return self.status > 0

    def is_redirect(self) -> bool:
        return 300 <= self.status < 400

    def has_prerequisite(self) -> bool:
        return self.prerequisite is not None

    def clear_prerequisite(self) -> None:
        self.prerequisite = None

    def finalize(self) -> None:
        """Release the capture once downstream stages are done with it."""
        self.recorder.release()

    def prepare_for_retry(self) -> None:
        """Reset outcome fields so the same attempt can be fetched again."""
        self.recorder.release()
        self.recorder = ByteRecorder(self.recorder.config)
        self.fetch_attempts += 1
        self.status = FetchStatus.UNATTEMPTED
        self.fetch_begin_time = None
        self.fetch_completed_time = None
        self.server_ip = None
        self.content_type = None
        self.content_digest_algorithm = None
        self.content_digest = None
        self.content_size = 0
        self.recorded_size = 0
        self.content_length = 0
        self.response_headers = httpx.Headers()
        self.annotations = []
        self.extra_info = {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        result: dict[str, Any] = {
            "url": self.url,
            "method": self.method,
            "fetch_attempts": self.fetch_attempts,
            "status": int(self.status),
            "server_ip": self.server_ip,
            "content_type": self.content_type,
            "content_digest": self.content_digest_scheme_string,
            "content_size": self.content_size,
            "recorded_size": self.recorded_size,
            "content_length": self.content_length,
            "fetch_begin_time": self.fetch_begin_time,
            "fetch_completed_time": self.fetch_completed_time,
            "annotations": list(self.annotations),
            "non_fatal_failures": [repr(e) for e in self.non_fatal_failures],
        }
        if self.extra_info:
            result["extra_info"] = dict(self.extra_info)
        if self.prerequisite is not None:
            result["prerequisite"] = self.prerequisite.url
        if self.is_login_prerequisite:
            result["is_login_prerequisite"] = True
        return result
