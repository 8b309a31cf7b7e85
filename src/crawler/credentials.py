"""
Credential store for form-based login.

Credentials are keyed by an arbitrary store key and scoped to a domain,
written as "host" or "host:port". Lookups are safe from concurrent workers.
Credentials are read-only to the precondition engine.
"""

import re
import threading
from pathlib import Path
from typing import Any
from urllib.parse import urlencode, urljoin, urlsplit

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_LOGIN_PAGE_PATTERN = r"(?i)(login|logon|signin|sign-in)"


class Credential(BaseModel):
    """HTML form credential."""

    model_config = ConfigDict(frozen=True)

    key: str = Field(..., description="Store key")
    domain: str = Field(..., description='Target domain, "host" or "host:port"')
    login_uri: str = Field(..., description="Login form action, absolute or a path on the domain")
    form_items: dict[str, str] = Field(default_factory=dict, description="Form field names and values")
    http_method: str = Field(default="POST", description="Login request method")
    login_page_pattern: str = Field(
        default=DEFAULT_LOGIN_PAGE_PATTERN,
        description="Regex recognising a login page path in a redirect Location",
    )

    @field_validator("domain")
    @classmethod
    def _normalize_domain(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("http_method")
    @classmethod
    def _normalize_method(cls, value: str) -> str:
        value = value.upper()
        if value not in ("GET", "POST"):
            raise ValueError(f"unsupported login method: {value}")
        return value

    @field_validator("login_page_pattern")
    @classmethod
    def _check_pattern(cls, value: str) -> str:
        re.compile(value)
        return value

    def applies_to(self, host: str, port: int | None) -> bool:
        """Whether this credential covers host (and port, if the domain names one)."""
        host = host.lower()
        if port is not None and self.domain == f"{host}:{port}":
            return True
        return self.domain == host

    def login_url(self, base_url: str) -> str:
        """Absolute login URL, resolving a relative login_uri on the credential's domain."""
        if urlsplit(self.login_uri).scheme:
            return self.login_uri
        scheme = urlsplit(base_url).scheme or "http"
        return urljoin(f"{scheme}://{self.domain}/", self.login_uri)

    @property
    def login_path(self) -> str:
        return urlsplit(self.login_uri).path or "/"

    def is_login_location(self, location_url: str) -> bool:
        """Whether an absolute redirect target is this credential's login page."""
        parts = urlsplit(location_url)
        host = (parts.hostname or "").lower()
        if not self.applies_to(host, parts.port):
            return False
        path = parts.path or "/"
        if path == self.login_path:
            return True
        return re.search(self.login_page_pattern, path) is not None

    def encoded_form(self) -> bytes:
        """Form items URL-encoded for a login request body."""
        return urlencode(self.form_items).encode("ascii")


class CredentialStore:
    """Thread-safe mapping from store key to credential."""

    def __init__(self, credentials: dict[str, Credential] | None = None):
        self._credentials: dict[str, Credential] = dict(credentials or {})
        self._lock = threading.Lock()

    def put(self, credential: Credential) -> None:
        with self._lock:
            self._credentials[credential.key] = credential

    def get(self, key: str) -> Credential | None:
        with self._lock:
            return self._credentials.get(key)

    def remove(self, key: str) -> Credential | None:
        with self._lock:
            return self._credentials.pop(key, None)

    def credentials_for(self, host: str, port: int | None = None) -> list[Credential]:
        """All credentials applicable to a host, in insertion order."""
        with self._lock:
            candidates = list(self._credentials.values())
        return [c for c in candidates if c.applies_to(host, port)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._credentials)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CredentialStore":
        """Build from a mapping of key -> credential fields."""
        store = cls()
        for key, fields in (data or {}).items():
            store.put(Credential(key=key, **fields))
        return store

    @classmethod
    def load_yaml(cls, path: str | Path) -> "CredentialStore":
        """Load credentials from a YAML file.

        Example:
            credentials:
              form-auth-credential:
                domain: "localhost:7779"
                login_uri: /j_security_check
                form_items:
                  j_username: alice
                  j_password: secret
        """
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        store = cls.from_dict(data.get("credentials", {}))
        logger.info("Credentials loaded", path=str(path), count=len(store))
        return store


# Global credential store instance
_credential_store: CredentialStore | None = None


def get_credential_store() -> CredentialStore:
    """Get or create the process-wide credential store."""
    global _credential_store
    if _credential_store is None:
        _credential_store = CredentialStore()
    return _credential_store


def reset_credential_store() -> None:
    """Reset the global credential store (for testing)."""
    global _credential_store
    _credential_store = None
