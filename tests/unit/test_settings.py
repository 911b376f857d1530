"""Tests for Settings and ProviderConfig."""

import pytest
from pydantic import ValidationError

from cmsfacade.services.errors import ConfigurationError
from cmsfacade.settings import ProviderConfig, ProviderKind, Settings


class TestSettingsFromEnv:
    """Tests for reading the environment."""

    def test_defaults(self) -> None:
        settings = Settings.from_env({})

        assert settings.cms_provider == "baserow"
        assert settings.cache_enabled is True
        assert settings.cache_time == 3600
        assert settings.stale_while_revalidate == 300
        assert settings.retry_attempts == 3
        assert settings.timeout == 15000
        assert settings.circuit_breaker_threshold == 5
        assert settings.circuit_breaker_reset == 30

    def test_reads_aliases_and_ignores_unknown(self) -> None:
        settings = Settings.from_env(
            {
                "CMS_PROVIDER": "airtable",
                "CMS_CACHE_ENABLED": "false",
                "CMS_CACHE_TIME": "120",
                "CMS_DEBUG": "true",
                "PATH": "/usr/bin",
            }
        )

        assert settings.cms_provider == "airtable"
        assert settings.cache_enabled is False
        assert settings.cache_time == 120
        assert settings.debug is True

    def test_malformed_number_is_configuration_error(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Settings.from_env({"CMS_RETRY_ATTEMPTS": "three"})

        assert any("CMS_RETRY_ATTEMPTS" in error for error in exc_info.value.errors)


class TestProviderConfig:
    """Tests for provider selection and validation."""

    def test_baserow_from_settings(self) -> None:
        settings = Settings.from_env(
            {"CMS_API_TOKEN": "secret", "CMS_TIMEOUT": "5000", "CMS_RETRY_DELAY": "250"}
        )

        config = ProviderConfig.from_settings(settings)

        assert config.kind == ProviderKind.BASEROW
        assert config.base_url == "https://api.baserow.io"
        assert config.timeout_ms == 5000
        assert config.retry_base_delay_ms == 250

    def test_provider_name_is_case_insensitive(self) -> None:
        settings = Settings.from_env(
            {"CMS_PROVIDER": "Airtable", "CMS_API_TOKEN": "pat", "CMS_PROJECT_ID": "appX"}
        )

        config = ProviderConfig.from_settings(settings)

        assert config.kind == ProviderKind.AIRTABLE
        assert config.base_url == "https://api.airtable.com/v0"
        assert config.dataset_id == "appX"

    def test_unknown_provider(self) -> None:
        settings = Settings.from_env({"CMS_PROVIDER": "sanity", "CMS_API_TOKEN": "t"})

        with pytest.raises(ConfigurationError, match="Unknown provider 'sanity'"):
            ProviderConfig.from_settings(settings)

    def test_missing_token(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            ProviderConfig.from_settings(Settings.from_env({}))

        assert exc_info.value.errors == ["baserow requires an API token"]

    def test_airtable_requires_base_id(self) -> None:
        settings = Settings.from_env({"CMS_PROVIDER": "airtable", "CMS_API_TOKEN": "pat"})

        with pytest.raises(ConfigurationError) as exc_info:
            ProviderConfig.from_settings(settings)

        assert exc_info.value.errors == ["Airtable requires projectId (Base ID)"]

    def test_reports_every_problem(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            ProviderConfig.create(
                kind=ProviderKind.BASEROW,
                base_url="ftp://example.com",
                token="t",
                cache_ttl_seconds=60,
                stale_while_revalidate_seconds=120,
                retry_attempts=0,
                retry_base_delay_ms=5000,
                retry_max_delay_ms=1000,
                timeout_ms=10,
                circuit_breaker_threshold=0,
            )

        assert len(exc_info.value.errors) == 6

    def test_wrong_type_is_configuration_error(self) -> None:
        with pytest.raises(ConfigurationError):
            ProviderConfig.create(kind="sanity", base_url="https://x.io", token="t")

    def test_config_is_immutable(self) -> None:
        config = ProviderConfig.create(
            kind=ProviderKind.BASEROW, base_url="https://api.baserow.io", token="t"
        )

        with pytest.raises(ValidationError):
            config.token = "other"

    def test_safe_dict_hides_token(self) -> None:
        config = ProviderConfig.create(
            kind=ProviderKind.BASEROW, base_url="https://api.baserow.io", token="secret"
        )

        data = config.safe_dict()

        assert "token" not in data
        assert data["has_token"] is True
        assert data["kind"] == "baserow"
