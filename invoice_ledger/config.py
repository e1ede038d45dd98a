"""Configuration management for invoice ledger processing."""
from pathlib import Path
from typing import Annotated

from pydantic import ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, NoDecode

from .core.exceptions import ConfigurationError
from .core.models import ExtractionStrategy


class Settings(BaseSettings):
    """Centralized configuration for extraction, batching and ingestion."""

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # API Configuration
    gemini_api_key: str = Field(..., description="Gemini API key for document processing")
    use_vertex_ai: bool = Field(default=False, description="Use Vertex AI instead of standard Gemini API")
    google_cloud_project: str = Field(default="not-set", description="Google Cloud project for Vertex AI")
    google_cloud_location: str = Field(default="not-set", description="Google Cloud location for Vertex AI")

    # Model Configuration
    extraction_model: str = Field(default="gemini-2.5-flash", description="Model for data extraction")
    validation_model: str = Field(default="gemini-2.5-flash", description="Model for validation round-trips")
    extraction_strategy: ExtractionStrategy = Field(
        default=ExtractionStrategy.LINES, description="Encoding for single-document calls"
    )
    max_output_tokens: int = Field(default=8192, description="Output token cap per extraction call")
    temperature: float = Field(default=0.2, description="Sampling temperature for extraction")

    # Storage
    ledger_path: Path = Field(default=Path("ledger.db"), description="SQLite ledger file")
    scratch_directory: Path = Field(default=Path("scratch"), description="Scratch area for batch payloads and outputs")
    logs_directory: Path = Field(default=Path("logs"), description="Folder for log files")

    # Batch Configuration
    max_chunk_bytes: int = Field(default=50_000_000, description="Maximum JSONL payload bytes per remote job")
    max_document_mb: float = Field(default=20.0, description="Maximum accepted document size")
    validate_extractions: bool = Field(default=True, description="Run a validation round-trip after batch extraction")
    validation_chunk_size: int = Field(default=50, description="Documents per validation job")
    poll_interval_seconds: float = Field(default=60.0, description="Delay between reconciliation sweeps")
    batch_stagger_seconds: float = Field(default=2.0, description="Delay between batches of one user")
    account_stagger_seconds: float = Field(default=0.5, description="Delay between users in one sweep")

    # Output file handling
    output_stable_checks: int = Field(default=3, description="Equal size readings before trusting a file")
    output_stable_interval: float = Field(default=0.5, description="Seconds between size readings")
    output_recent_window_seconds: float = Field(default=600.0, description="Recency window for fallback output selection")

    # Concurrency Configuration
    quota_limit: int = Field(default=10, description="API concurrency limit")
    min_concurrency: int = Field(default=1, description="Floor for adaptive concurrency")
    small_batch_size: int = Field(default=5, description="Uploads at or below this size start at full concurrency; larger ones start at half")
    memory_soft_limit_mb: float = Field(default=512.0, description="Heap growth that halves concurrency")
    memory_hard_limit_mb: float = Field(default=1024.0, description="Heap growth that drops to minimum concurrency")
    circuit_breaker_threshold: int = Field(default=5, description="Consecutive failures before halting an upload")

    # Retry Configuration
    retry_max_attempts: int = Field(default=3, description="Maximum retry attempts per operation")
    retry_base_delay: float = Field(default=2.0, description="Base delay for exponential backoff")
    retry_max_delay: float = Field(default=10.0, description="Maximum delay between retries")
    retry_jitter_range: float = Field(default=3.0, description="Jitter range for retry delays")
    transient_retry_delay: float = Field(default=1.0, description="Fixed delay for non-rate-limit transient errors")

    # Policy
    blocked_providers: Annotated[list[str], NoDecode] = Field(default_factory=list, description="Provider names that are never ingested")

    # History
    history_window_seconds: float = Field(default=300.0, description="Batches created within this window form one session")
    history_max_groups: int = Field(default=10, description="Maximum sessions returned by history")

    # Debug Configuration
    debug_responses: bool = Field(default=False, description="Log raw extraction responses")

    @field_validator("gemini_api_key")
    @classmethod
    def api_key_must_not_be_empty(cls, v):
        """Ensure API key is provided."""
        if not v or v.strip() == "":
            raise ValueError("GEMINI_API_KEY must be provided")
        return v

    @field_validator("use_vertex_ai", "validate_extractions", mode="before")
    @classmethod
    def parse_bool_flag(cls, v):
        """Parse boolean flags from strings."""
        if isinstance(v, str):
            return v.lower() in ("1", "true", "yes")
        return v

    @field_validator("debug_responses", mode="before")
    @classmethod
    def parse_debug_flag(cls, v):
        """Parse debug flag from string."""
        if isinstance(v, str):
            return v == "1" or v.lower() == "true"
        return v

    @field_validator("blocked_providers", mode="before")
    @classmethod
    def parse_blocked_providers(cls, v):
        """Accept a comma-separated list."""
        if isinstance(v, str):
            return [name.strip() for name in v.split(",") if name.strip()]
        return v

    @field_validator("min_concurrency", "quota_limit", "circuit_breaker_threshold")
    @classmethod
    def must_be_positive(cls, v):
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @property
    def api_client_kwargs(self) -> dict:
        """Get API client configuration."""
        if self.use_vertex_ai:
            if self.google_cloud_project == "not-set":
                raise ConfigurationError("google_cloud_project", "required when USE_VERTEX_AI is set")
            return {
                "vertexai": True,
                "project": self.google_cloud_project,
                "location": self.google_cloud_location,
            }
        return {"api_key": self.gemini_api_key}


def load_settings(**overrides) -> Settings:
    """Build Settings from the environment, reporting the first invalid field."""
    try:
        return Settings(**overrides)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or "settings"
        raise ConfigurationError(field, first.get("msg", str(e))) from e
