import os
from enum import Enum
from typing import Any, Mapping
from urllib.parse import urlparse

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from cmsfacade.services.errors import ConfigurationError

load_dotenv()


class ProviderKind(str, Enum):
    """Supported content backends."""

    BASEROW = "baserow"
    AIRTABLE = "airtable"


DEFAULT_BASE_URLS = {
    ProviderKind.BASEROW: "https://api.baserow.io",
    ProviderKind.AIRTABLE: "https://api.airtable.com/v0",
}


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Provider Configuration
    cms_provider: str = Field(default="baserow", alias="CMS_PROVIDER")
    cms_api_url: str = Field(default="", alias="CMS_API_URL")
    cms_api_token: str = Field(default="", alias="CMS_API_TOKEN")
    cms_project_id: str | None = Field(default=None, alias="CMS_PROJECT_ID")

    # Cache Configuration
    cache_enabled: bool = Field(default=True, alias="CMS_CACHE_ENABLED")
    cache_time: int = Field(default=3600, alias="CMS_CACHE_TIME")
    cache_max_size: int = Field(default=1000, alias="CMS_CACHE_MAX_SIZE")
    stale_while_revalidate: int = Field(default=300, alias="CMS_STALE_WHILE_REVALIDATE")

    # Retry Configuration (milliseconds)
    retry_attempts: int = Field(default=3, alias="CMS_RETRY_ATTEMPTS")
    retry_delay: int = Field(default=1000, alias="CMS_RETRY_DELAY")
    retry_max_delay: int = Field(default=10000, alias="CMS_RETRY_MAX_DELAY")
    timeout: int = Field(default=15000, alias="CMS_TIMEOUT")

    # Circuit Breaker Configuration
    enable_circuit_breaker: bool = Field(default=True, alias="CMS_ENABLE_CIRCUIT_BREAKER")
    circuit_breaker_threshold: int = Field(default=5, alias="CMS_CIRCUIT_BREAKER_THRESHOLD")
    circuit_breaker_reset: int = Field(default=30, alias="CMS_CIRCUIT_BREAKER_RESET")

    # Revalidation webhook
    revalidation_secret: str | None = Field(default=None, alias="REVALIDATION_SECRET")

    debug: bool = Field(default=False, alias="CMS_DEBUG")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """Read settings from environment variables (or a given mapping)."""
        env = os.environ if environ is None else environ
        known = {f.alias for f in cls.model_fields.values() if f.alias}
        try:
            return cls.model_validate({k: v for k, v in env.items() if k in known})
        except ValidationError as e:
            errors = [f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors()]
            raise ConfigurationError(
                "Invalid environment configuration:\n- " + "\n- ".join(errors), errors
            ) from e


class ProviderConfig(BaseModel):
    """Validated, immutable configuration for the selected provider."""

    model_config = ConfigDict(frozen=True)

    kind: ProviderKind
    base_url: str
    token: str
    dataset_id: str | None = None

    cache_enabled: bool = True
    cache_ttl_seconds: int = 3600
    stale_while_revalidate_seconds: int = 300
    cache_max_size: int = 1000

    retry_attempts: int = 3
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 10000
    timeout_ms: int = 15000

    circuit_breaker_enabled: bool = True
    circuit_breaker_threshold: int = 5
    circuit_breaker_reset_seconds: int = 30

    debug: bool = False

    @classmethod
    def create(cls, **values: Any) -> "ProviderConfig":
        """Build and validate, raising ConfigurationError with every problem."""
        try:
            config = cls(**values)
        except ValidationError as e:
            errors = [f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors()]
            raise ConfigurationError(
                "CMS configuration validation failed:\n- " + "\n- ".join(errors), errors
            ) from e

        errors = config.validation_errors()
        if errors:
            raise ConfigurationError(
                "CMS configuration validation failed:\n- " + "\n- ".join(errors), errors
            )
        return config

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderConfig":
        try:
            kind = ProviderKind(settings.cms_provider.lower())
        except ValueError as e:
            supported = ", ".join(k.value for k in ProviderKind)
            msg = f"Unknown provider '{settings.cms_provider}' (supported: {supported})"
            raise ConfigurationError(msg, [msg]) from e

        return cls.create(
            kind=kind,
            base_url=settings.cms_api_url or DEFAULT_BASE_URLS[kind],
            token=settings.cms_api_token,
            dataset_id=settings.cms_project_id or None,
            cache_enabled=settings.cache_enabled,
            cache_ttl_seconds=settings.cache_time,
            stale_while_revalidate_seconds=settings.stale_while_revalidate,
            cache_max_size=settings.cache_max_size,
            retry_attempts=settings.retry_attempts,
            retry_base_delay_ms=settings.retry_delay,
            retry_max_delay_ms=settings.retry_max_delay,
            timeout_ms=settings.timeout,
            circuit_breaker_enabled=settings.enable_circuit_breaker,
            circuit_breaker_threshold=settings.circuit_breaker_threshold,
            circuit_breaker_reset_seconds=settings.circuit_breaker_reset,
            debug=settings.debug,
        )

    def validation_errors(self) -> list[str]:
        errors: list[str] = []

        parsed = urlparse(self.base_url)
        if not self.base_url:
            errors.append("API URL is required")
        elif parsed.scheme not in ("http", "https") or not parsed.netloc:
            errors.append("API URL must be a valid http(s) URL")

        if not self.token:
            errors.append(f"{self.kind.value} requires an API token")

        if self.kind == ProviderKind.AIRTABLE and not self.dataset_id:
            errors.append("Airtable requires projectId (Base ID)")

        if self.cache_ttl_seconds < 0:
            errors.append("Cache time must be non-negative")
        if not 0 <= self.stale_while_revalidate_seconds <= self.cache_ttl_seconds:
            errors.append("Stale window must be between 0 and the cache time")
        if self.cache_max_size < 1:
            errors.append("Cache max size must be at least 1")

        if self.retry_attempts < 1:
            errors.append("Retry attempts must be at least 1")
        if self.retry_base_delay_ms < 0 or self.retry_max_delay_ms < self.retry_base_delay_ms:
            errors.append("Retry delays must satisfy 0 <= delay <= max delay")
        if self.timeout_ms < 1000:
            errors.append("Timeout must be at least 1000ms")

        if self.circuit_breaker_threshold < 1:
            errors.append("Circuit breaker threshold must be at least 1")
        if self.circuit_breaker_reset_seconds < 0:
            errors.append("Circuit breaker reset must be non-negative")

        return errors

    def safe_dict(self) -> dict[str, Any]:
        """Configuration without secrets, for logging."""
        data = self.model_dump(mode="json", exclude={"token"})
        data["has_token"] = bool(self.token)
        return data
