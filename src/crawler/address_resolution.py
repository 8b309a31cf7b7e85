"""
Socket-address resolution through the server registry.

The fetch engine never performs live DNS. Connections are opened to the IP
the registry holds for a host, while TLS keeps using the original hostname
for SNI and certificate checks (httpcore takes server_hostname from the
request origin, not from the address we connect to). This avoids SAN
mismatches when the registry's address came from a CNAME target.
"""

import ipaddress
from collections.abc import Iterable

import httpcore
import httpx

from src.crawler.server_registry import ServerRegistry
from src.utils.logging import get_logger

logger = get_logger(__name__)


class UnresolvedHostError(OSError):
    """The registry holds no address for a host."""

    def __init__(self, host: str, reason: str = "no resolved address"):
        super().__init__(f"{reason} for host {host!r}")
        self.host = host


def _is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return False
    return True


def resolve_socket_address(registry: ServerRegistry, host: str) -> str:
    """Return the IP to connect to for host.

    Raises:
        UnresolvedHostError: If the registry has no address for host.
    """
    if _is_ip_literal(host):
        return host.strip("[]")
    address = registry.get_resolved_address(host)
    if address.ip is None:
        raise UnresolvedHostError(host, f"no resolved address ({address.state.value})")
    return address.ip


class RegistryNetworkBackend(httpcore.AsyncNetworkBackend):
    """httpcore network backend that connects to registry addresses."""

    def __init__(self, registry: ServerRegistry, backend: httpcore.AsyncNetworkBackend | None = None):
        self._registry = registry
        self._backend = backend or httpcore.AnyIOBackend()

    async def connect_tcp(
        self,
        host: str,
        port: int,
        timeout: float | None = None,
        local_address: str | None = None,
        socket_options: Iterable | None = None,
    ) -> httpcore.AsyncNetworkStream:
        ip = resolve_socket_address(self._registry, host)
        logger.debug("Connecting via registry address", host=host, ip=ip, port=port)
        return await self._backend.connect_tcp(
            ip,
            port,
            timeout=timeout,
            local_address=local_address,
            socket_options=socket_options,
        )

    async def connect_unix_socket(
        self,
        path: str,
        timeout: float | None = None,
        socket_options: Iterable | None = None,
    ) -> httpcore.AsyncNetworkStream:
        return await self._backend.connect_unix_socket(path, timeout=timeout, socket_options=socket_options)

    async def sleep(self, seconds: float) -> None:
        await self._backend.sleep(seconds)


class RegistryHTTPTransport(httpx.AsyncHTTPTransport):
    """httpx transport whose connection pool resolves through the registry."""

    def __init__(
        self,
        registry: ServerRegistry,
        *,
        http2: bool = True,
        limits: httpx.Limits | None = None,
        network_backend: httpcore.AsyncNetworkBackend | None = None,
    ):
        limits = limits or httpx.Limits()
        super().__init__(http1=True, http2=http2, limits=limits)
        self._pool = httpcore.AsyncConnectionPool(
            ssl_context=httpx.create_ssl_context(),
            max_connections=limits.max_connections,
            max_keepalive_connections=limits.max_keepalive_connections,
            keepalive_expiry=limits.keepalive_expiry,
            http1=True,
            http2=http2,
            network_backend=RegistryNetworkBackend(registry, network_backend),
        )
