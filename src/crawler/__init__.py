"""
Skein Crawler Module.

Provides the HTTP fetch engine, per-attempt byte recording, cookie and
credential handling, and Alt-Svc driven HTTP/3 selection.
"""

from src.crawler.address_resolution import (
    RegistryHTTPTransport,
    RegistryNetworkBackend,
    UnresolvedHostError,
    resolve_socket_address,
)
from src.crawler.content_decoding import (
    ContentDecodingError,
    UnsupportedContentEncodingError,
    get_decoder,
)
from src.crawler.cookies import (
    CookieStore,
    CookieStoreAdaptor,
    HttpCookie,
    SimpleCookieStore,
    StoredCookie,
)
from src.crawler.credentials import (
    Credential,
    CredentialStore,
    get_credential_store,
    reset_credential_store,
)
from src.crawler.fetch_attempt import (
    FetchAttempt,
    FetchOutcome,
    FetchStatus,
    OutcomeKind,
)
from src.crawler.http3_policy import (
    ProtocolVersion,
    apply_alt_svc,
    parse_alt_svc_value,
    select_protocol,
)
from src.crawler.http_fetcher import (
    FetchEngine,
    FetcherNotRunningError,
    get_fetch_engine,
    reset_fetch_engine,
)
from src.crawler.precondition import (
    CredentialLoginError,
    CredentialPreconditionEngine,
    PreconditionResult,
    PreconditionState,
    PreconditionVerdict,
)
from src.crawler.recorder import (
    ByteRecorder,
    RecorderStateError,
    RecordingLimits,
    RecordingStatus,
)
from src.crawler.server_registry import (
    AltSvcEntry,
    ResolutionState,
    ResolvedAddress,
    ServerRegistry,
    get_server_registry,
    reset_server_registry,
)

__all__ = [
    # Fetch engine
    "FetchEngine",
    "FetcherNotRunningError",
    "get_fetch_engine",
    "reset_fetch_engine",
    # Attempts
    "FetchAttempt",
    "FetchOutcome",
    "FetchStatus",
    "OutcomeKind",
    # Recording
    "ByteRecorder",
    "RecorderStateError",
    "RecordingLimits",
    "RecordingStatus",
    "ContentDecodingError",
    "UnsupportedContentEncodingError",
    "get_decoder",
    # Server registry
    "AltSvcEntry",
    "ResolutionState",
    "ResolvedAddress",
    "ServerRegistry",
    "get_server_registry",
    "reset_server_registry",
    "RegistryHTTPTransport",
    "RegistryNetworkBackend",
    "UnresolvedHostError",
    "resolve_socket_address",
    # Protocol selection
    "ProtocolVersion",
    "apply_alt_svc",
    "parse_alt_svc_value",
    "select_protocol",
    # Cookies
    "CookieStore",
    "CookieStoreAdaptor",
    "HttpCookie",
    "SimpleCookieStore",
    "StoredCookie",
    # Credentials
    "Credential",
    "CredentialStore",
    "get_credential_store",
    "reset_credential_store",
    "CredentialLoginError",
    "CredentialPreconditionEngine",
    "PreconditionResult",
    "PreconditionState",
    "PreconditionVerdict",
]
