"""Tests for settings loading."""
import pytest
from pydantic import ValidationError

from invoice_ledger.config import Settings, load_settings
from invoice_ledger.core.exceptions import ConfigurationError
from invoice_ledger.core.models import ExtractionStrategy


def test_defaults():
    settings = Settings(gemini_api_key="k")
    assert settings.extraction_model == "gemini-2.5-flash"
    assert settings.extraction_strategy == ExtractionStrategy.LINES
    assert settings.circuit_breaker_threshold == 5
    assert settings.api_client_kwargs == {"api_key": "k"}


def test_empty_api_key_rejected():
    with pytest.raises(ValidationError):
        Settings(gemini_api_key="  ")


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("BLOCKED_PROVIDERS", "Proveedor Vetado SL, , Otro Vetado SA")
    monkeypatch.setenv("VALIDATE_EXTRACTIONS", "no")
    monkeypatch.setenv("QUOTA_LIMIT", "3")

    settings = Settings(gemini_api_key="k")

    assert settings.blocked_providers == ["Proveedor Vetado SL", "Otro Vetado SA"]
    assert settings.validate_extractions is False
    assert settings.quota_limit == 3


def test_vertex_client_kwargs():
    settings = Settings(
        gemini_api_key="k", use_vertex_ai="true", google_cloud_project="proj", google_cloud_location="europe-west1"
    )
    assert settings.api_client_kwargs == {"vertexai": True, "project": "proj", "location": "europe-west1"}


@pytest.mark.parametrize("field", ["quota_limit", "min_concurrency", "circuit_breaker_threshold"])
def test_limits_must_be_positive(field):
    with pytest.raises(ValidationError):
        Settings(gemini_api_key="k", **{field: 0})


def test_vertex_requires_project():
    settings = Settings(gemini_api_key="k", use_vertex_ai="true")
    with pytest.raises(ConfigurationError) as exc_info:
        settings.api_client_kwargs
    assert exc_info.value.setting_name == "google_cloud_project"


def test_load_settings_reports_invalid_field():
    with pytest.raises(ConfigurationError) as exc_info:
        load_settings(gemini_api_key="k", quota_limit=0)
    assert exc_info.value.setting_name == "quota_limit"
    assert load_settings(gemini_api_key="k").quota_limit == 10
