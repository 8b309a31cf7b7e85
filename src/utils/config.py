"""
Configuration management for Skein.
Loads and validates settings from YAML files and environment variables.
"""

import hashlib
import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; skein/0.1.0; +https://example.org/skein)"


class FetchConfig(BaseModel):
    """Fetch engine configuration.

    Every option the fetch engine recognizes is enumerated here. Limits use
    0 to mean "no limit".
    """

    model_config = ConfigDict(extra="forbid")

    timeout_seconds: int = Field(default=20, ge=1)
    max_length_bytes: int = Field(default=0, ge=0)
    max_fetch_kb_sec: int = Field(default=0, ge=0)
    digest_algorithm: str | None = "sha1"
    use_http2: bool = True
    use_http3: bool = False  # Experimental, requires a curl build with HTTP/3

    # Connection pool
    connect_timeout_seconds: int = Field(default=20, ge=1)
    max_connections_per_host: int = Field(default=6, ge=1)
    idle_timeout_seconds: int = Field(default=300, ge=0)

    user_agent: str = DEFAULT_USER_AGENT

    @field_validator("digest_algorithm")
    @classmethod
    def _check_digest_algorithm(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.lower()
        try:
            hashlib.new(value)
        except ValueError as e:
            raise ValueError(f"unsupported digest algorithm: {value}") from e
        return value


class RecorderConfig(BaseModel):
    """Byte recorder configuration."""

    model_config = ConfigDict(extra="forbid")

    in_memory_bytes: int = Field(default=512 * 1024, ge=0)  # Spill to a temp file beyond this
    read_chunk_bytes: int = Field(default=16 * 1024, ge=1)


class GeneralConfig(BaseModel):
    """General configuration."""

    project_name: str = "skein"
    version: str = "0.1.0"
    log_level: str = "INFO"
    logs_dir: str = "logs"


class Settings(BaseModel):
    """Main settings container."""

    general: GeneralConfig = Field(default_factory=GeneralConfig)
    fetch: FetchConfig = Field(default_factory=FetchConfig)
    recorder: RecorderConfig = Field(default_factory=RecorderConfig)


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dictionaries.

    Args:
        base: Base dictionary.
        override: Override dictionary.

    Returns:
        Merged dictionary.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_local_overrides(config_dir: Path) -> dict[str, Any]:
    """Load local.yaml overrides.

    Top-level keys correspond to config file names (without .yaml extension).

    Example local.yaml:
        settings:
          fetch:
            use_http3: true

    Args:
        config_dir: Configuration directory path.

    Returns:
        Local overrides dictionary.
    """
    local_path = config_dir / "local.yaml"
    if not local_path.exists():
        return {}
    with open(local_path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _load_yaml_with_local_override(
    config_dir: Path,
    filename: str,
    section_key: str | None = None,
) -> dict[str, Any]:
    """Load YAML file with local.yaml override support.

    Args:
        config_dir: Configuration directory path.
        filename: YAML filename (e.g., "settings.yaml").
        section_key: Key in local.yaml for overrides.
                     Defaults to filename without extension.

    Returns:
        Merged configuration dictionary.
    """
    config: dict[str, Any] = {}

    base_path = config_dir / filename
    if base_path.exists():
        with open(base_path, encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}

    local_overrides = _load_local_overrides(config_dir)
    if section_key is None:
        section_key = Path(filename).stem

    if section_key in local_overrides:
        config = _deep_merge(config, local_overrides[section_key])

    return config


def _apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides.

    Environment variables should be prefixed with SKEIN_ and use
    double underscores for nested keys.

    Example:
        SKEIN_FETCH__MAX_LENGTH_BYTES=1048576

    Args:
        config: Configuration dictionary.

    Returns:
        Configuration with environment overrides.
    """
    prefix = "SKEIN_"

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        if key == "SKEIN_CONFIG_DIR":
            continue

        key_path = key[len(prefix) :].lower().split("__")

        current = config
        for part in key_path[:-1]:
            if part not in current:
                current[part] = {}
            current = current[part]

        # Coerce to bool, float or int where the value looks like one
        final_key = key_path[-1]
        try:
            if value.lower() in ("true", "false"):
                current[final_key] = value.lower() == "true"
            elif "." in value:
                current[final_key] = float(value)
            else:
                current[final_key] = int(value)
        except ValueError:
            current[final_key] = value

    return config


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get application settings.

    Settings are loaded from:
    1. Default values
    2. YAML configuration files
    3. Environment variables (highest priority)

    Returns:
        Settings instance.
    """
    config_dir = Path(os.environ.get("SKEIN_CONFIG_DIR", "config"))

    config = _load_yaml_with_local_override(config_dir, "settings.yaml", "settings")
    config = _apply_env_overrides(config)

    return Settings(**config)


def get_project_root() -> Path:
    """Get the project root directory.

    Returns:
        Project root path.
    """
    # Assuming this file is at src/utils/config.py
    return Path(__file__).parent.parent.parent
