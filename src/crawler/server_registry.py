"""
Server registry for the fetch engine.

Holds per-host resolution facts and per-origin Alt-Svc hints. The registry
never performs network I/O: addresses are supplied by an external resolver
through set_resolved()/mark_unresolvable(), and Alt-Svc entries come from
response headers.

Alt-Svc entries expire lazily: a lookup past the expiry reports no entry but
leaves the record in place.
"""

import threading
import time
from dataclasses import dataclass
from enum import Enum

from src.utils.logging import get_logger

logger = get_logger(__name__)


class ResolutionState(Enum):
    """Outcome of a resolved-address lookup."""

    RESOLVED = "resolved"
    NOT_LOOKED_UP = "not_looked_up"  # DNS has not run yet
    UNRESOLVABLE = "unresolvable"  # DNS ran and produced no address


@dataclass(frozen=True)
class ResolvedAddress:
    host: str
    state: ResolutionState
    ip: str | None = None

    @property
    def is_resolved(self) -> bool:
        return self.state is ResolutionState.RESOLVED


@dataclass
class HostRecord:
    """Resolution facts for one host name."""

    host: str
    ip: str | None = None
    looked_up: bool = False


@dataclass(frozen=True)
class AltSvcEntry:
    """Cached alternative service. Only "h3" on the same host is kept."""

    protocol: str
    port: int
    expiry_ms: int

    def is_expired(self, now_ms: int | None = None) -> bool:
        if now_ms is None:
            now_ms = int(time.time() * 1000)
        return now_ms >= self.expiry_ms


@dataclass
class ServerRecord:
    """Per-origin facts."""

    server_key: str
    alt_svc: AltSvcEntry | None = None


class ServerRegistry:
    """Thread-safe lookup/update structure for host and server records.

    Records are created lazily on first access and live as long as the registry.
    """

    def __init__(self) -> None:
        self._hosts: dict[str, HostRecord] = {}
        self._servers: dict[str, ServerRecord] = {}
        self._lock = threading.Lock()

    # -- hosts ------------------------------------------------------------

    def _host_record(self, host: str) -> HostRecord:
        key = host.lower()
        record = self._hosts.get(key)
        if record is None:
            record = HostRecord(host=key)
            self._hosts[key] = record
        return record

    def get_host(self, host: str) -> HostRecord:
        with self._lock:
            record = self._host_record(host)
            return HostRecord(host=record.host, ip=record.ip, looked_up=record.looked_up)

    def set_resolved(self, host: str, ip: str) -> None:
        """Record a successful lookup."""
        with self._lock:
            record = self._host_record(host)
            record.ip = ip
            record.looked_up = True

    def mark_unresolvable(self, host: str) -> None:
        """Record that a lookup ran and produced no address."""
        with self._lock:
            record = self._host_record(host)
            record.ip = None
            record.looked_up = True

    def get_resolved_address(self, host: str) -> ResolvedAddress:
        """Return the cached IP, or say whether DNS is pending or has failed."""
        with self._lock:
            record = self._host_record(host)
            if record.ip is not None:
                return ResolvedAddress(record.host, ResolutionState.RESOLVED, record.ip)
            if record.looked_up:
                return ResolvedAddress(record.host, ResolutionState.UNRESOLVABLE)
            return ResolvedAddress(record.host, ResolutionState.NOT_LOOKED_UP)

    # -- servers / Alt-Svc ------------------------------------------------

    def _server_record(self, server_key: str) -> ServerRecord:
        key = server_key.lower()
        record = self._servers.get(key)
        if record is None:
            record = ServerRecord(server_key=key)
            self._servers[key] = record
        return record

    def record_alt_svc(self, server_key: str, port: int, expiry_ms: int, protocol: str = "h3") -> None:
        """Store an Alt-Svc hint for an origin. Last writer wins."""
        entry = AltSvcEntry(protocol=protocol, port=port, expiry_ms=expiry_ms)
        with self._lock:
            self._server_record(server_key).alt_svc = entry
        logger.debug("Alt-Svc recorded", server=server_key, protocol=protocol, port=port, expiry_ms=expiry_ms)

    def clear_alt_svc(self, server_key: str) -> None:
        with self._lock:
            self._server_record(server_key).alt_svc = None
        logger.debug("Alt-Svc cleared", server=server_key)

    def get_alt_svc(self, server_key: str, now_ms: int | None = None) -> AltSvcEntry | None:
        """Return the origin's Alt-Svc entry if it has not expired."""
        with self._lock:
            entry = self._server_record(server_key).alt_svc
        if entry is None or entry.is_expired(now_ms):
            return None
        return entry

    def get_http3_alt_svc_port(self, server_key: str, now_ms: int | None = None) -> int | None:
        entry = self.get_alt_svc(server_key, now_ms)
        if entry is None or entry.protocol != "h3":
            return None
        return entry.port


# Global registry instance
_registry: ServerRegistry | None = None


def get_server_registry() -> ServerRegistry:
    """Get or create the process-wide server registry."""
    global _registry
    if _registry is None:
        _registry = ServerRegistry()
    return _registry


def reset_server_registry() -> None:
    """Reset the global registry (for testing)."""
    global _registry
    _registry = None
