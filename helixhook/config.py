from __future__ import annotations

import os
from typing import Any, Optional
from urllib.parse import urlsplit

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigurationError

load_dotenv()

DEFAULT_BASE_API_URL = "https://api.twitch.tv/helix/"


class Settings(BaseModel):
    CLIENT_ID: Optional[str] = Field(default=None, description="Twitch application Client ID")
    CALLBACK_URL: Optional[str] = Field(default=None, description="Public URL the hub calls back")
    SECRET: Optional[str] = Field(default=None)  # enables notification signing
    LEASE_SECONDS: int = Field(default=864000, ge=0)
    BASE_API_URL: str = Field(default=DEFAULT_BASE_API_URL)
    LISTEN_HOST: str = Field(default="0.0.0.0")
    LISTEN_PORT: int = Field(default=8443, ge=0, le=65535)
    SSL_KEYFILE: Optional[str] = Field(default=None)
    SSL_CERTFILE: Optional[str] = Field(default=None)
    MAX_BODY_BYTES: int = Field(default=1_000_000, gt=0)
    HUB_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)
    LOG_LEVEL: str = Field(default="INFO")
    METRICS_ENABLED: bool = Field(default=False)

    @field_validator("CALLBACK_URL", "BASE_API_URL")
    @classmethod
    def _trailing_slash(cls, value: Optional[str]) -> Optional[str]:
        if value and not value.endswith("/"):
            value += "/"
        return value

    @property
    def hub_url(self) -> str:
        return self.BASE_API_URL + "webhooks/hub"

    @property
    def base_path(self) -> str:
        return urlsplit(self.BASE_API_URL).path or "/"

    @property
    def signing(self) -> bool:
        return bool(self.SECRET)


def load_settings(**overrides: Any) -> Settings:
    """Build settings from keyword overrides, then the environment, then defaults.

    Override keys are the lower-case field names (``client_id=...``).
    """

    unknown = sorted(k for k in overrides if k.upper() not in Settings.model_fields)
    if unknown:
        raise ConfigurationError(f"Unknown options: {', '.join(unknown)}")

    values: dict[str, Any] = {}
    for name, field in Settings.model_fields.items():
        if name.lower() in overrides:
            value = overrides[name.lower()]
            if value is None and not field.is_required():
                values[name] = field.get_default(call_default_factory=True)
            else:
                values[name] = value
            continue
        env_value = os.getenv(name)
        if env_value is not None:
            values[name] = env_value

    try:
        return Settings(**values)
    except ValidationError as exc:
        fields = sorted({str(error["loc"][0]) for error in exc.errors() if error.get("loc")})
        raise ConfigurationError(f"Invalid options: {', '.join(fields)}") from exc


def ensure_required(settings: Settings) -> Settings:
    if not settings.CLIENT_ID:
        raise ConfigurationError("Twitch Client ID not provided!")
    if not settings.CALLBACK_URL:
        raise ConfigurationError("Callback URL not provided!")
    return settings
