"""
Config Loader — Load client configuration from a master key or env vars.

Supports two modes:
1. Master JSON key: single JOURNAL_MEDIA_CONFIG env var with all settings
2. Individual keys: separate env vars for each setting (fallback)

## Usage

    # Option 1: Master config
    export JOURNAL_MEDIA_CONFIG='{"api_url": "https://journal.example.com", "api_key": "xxx"}'

    # Option 2: Individual keys
    export JOURNAL_API_URL="https://journal.example.com"
    export JOURNAL_API_KEY="xxx"

Values from the master config win; individual env vars fill the gaps.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..errors import ConfigurationError

logger = logging.getLogger(__name__)

MASTER_ENV_VAR = "JOURNAL_MEDIA_CONFIG"

DEFAULT_API_URL = "http://localhost:3000"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_REFRESH_MARGIN_SECONDS = 60
DEFAULT_MAX_SIZE_MB = 1.0
DEFAULT_MAX_DIMENSION = 1920

UPLOAD_ENDPOINT = "/api/media/upload"
SIGN_ENDPOINT = "/api/media/sign"


@dataclass
class ClientConfig:
    """Everything the media pipeline needs to talk to the journal API."""

    api_url: str = DEFAULT_API_URL
    api_key: Optional[str] = None
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS

    # Signing
    sign_expiry_ms: Optional[int] = None
    refresh_margin_seconds: int = DEFAULT_REFRESH_MARGIN_SECONDS

    # Image normalization
    max_size_mb: float = DEFAULT_MAX_SIZE_MB
    max_dimension: int = DEFAULT_MAX_DIMENSION

    @property
    def refresh_margin_ms(self) -> int:
        return self.refresh_margin_seconds * 1000

    def has_api_key(self) -> bool:
        return bool(self.api_key)

    def validate(self) -> None:
        """Raise ConfigurationError on the first invalid value."""
        if not self.api_url.startswith(("http://", "https://")):
            raise ConfigurationError(f"Invalid API URL: {self.api_url}", field="api_url")
        if self.timeout_seconds <= 0:
            raise ConfigurationError("must be positive", field="timeout_seconds")
        if self.refresh_margin_seconds < 0:
            raise ConfigurationError("must not be negative", field="refresh_margin_seconds")
        if self.sign_expiry_ms is not None and self.sign_expiry_ms <= 0:
            raise ConfigurationError("must be positive", field="sign_expiry_ms")
        if self.max_size_mb <= 0:
            raise ConfigurationError("must be positive", field="max_size_mb")
        if self.max_dimension <= 0:
            raise ConfigurationError("must be positive", field="max_dimension")


def load_config() -> ClientConfig:
    """
    Load configuration from the master key or individual env vars.

    Priority:
    1. JOURNAL_MEDIA_CONFIG (master JSON)
    2. Individual environment variables
    3. Defaults

    Raises:
        ConfigurationError: if a numeric setting cannot be parsed.
    """
    data: Dict[str, Any] = {}

    master_config = os.environ.get(MASTER_ENV_VAR)
    if master_config:
        try:
            data = json.loads(master_config)
            logger.info(f"Loaded configuration from {MASTER_ENV_VAR}")
        except json.JSONDecodeError as e:
            logger.error(f"Invalid {MASTER_ENV_VAR} JSON: {e}")
            data = {}

    def pick(key: str, env_var: str) -> Optional[Any]:
        value = data.get(key)
        if value is None:
            value = data.get(env_var)
        if value is None:
            value = os.environ.get(env_var)
        return value

    config = ClientConfig(
        api_url=(pick("api_url", "JOURNAL_API_URL") or DEFAULT_API_URL).rstrip("/"),
        api_key=pick("api_key", "JOURNAL_API_KEY") or None,
        timeout_seconds=_as_number(
            pick("timeout_seconds", "JOURNAL_API_TIMEOUT"),
            DEFAULT_TIMEOUT_SECONDS, float, "timeout_seconds",
        ),
        sign_expiry_ms=_as_number(
            pick("sign_expiry_ms", "JOURNAL_SIGN_EXPIRY_MS"),
            None, int, "sign_expiry_ms",
        ),
        refresh_margin_seconds=_as_number(
            pick("refresh_margin_seconds", "JOURNAL_REFRESH_MARGIN_SECONDS"),
            DEFAULT_REFRESH_MARGIN_SECONDS, int, "refresh_margin_seconds",
        ),
        max_size_mb=_as_number(
            pick("max_size_mb", "JOURNAL_IMAGE_MAX_SIZE_MB"),
            DEFAULT_MAX_SIZE_MB, float, "max_size_mb",
        ),
        max_dimension=_as_number(
            pick("max_dimension", "JOURNAL_IMAGE_MAX_DIMENSION"),
            DEFAULT_MAX_DIMENSION, int, "max_dimension",
        ),
    )
    config.validate()
    return config


def _as_number(value: Any, default: Any, cast: type, field: str) -> Any:
    if value is None or value == "":
        return default
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"not a number: {value!r}", field=field)
