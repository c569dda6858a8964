"""
Configuration Models

Pydantic models for reconciliation configuration validation.
"""

import json
from pathlib import Path
from pydantic import BaseModel, Field, ValidationInfo, field_validator


class MatchingConfig(BaseModel):
    """Deterministic matching configuration."""

    exact_confidence: int = Field(default=100, ge=0, le=100)
    prefix_confidence: int = Field(default=90, ge=0, le=100)
    prefix_length: int = Field(default=7, gt=0, le=32)

    @field_validator("prefix_confidence")
    @classmethod
    def validate_confidence_ordering(cls, v: int, info: ValidationInfo) -> int:
        """Validate that a prefix match never outranks an exact match."""
        exact = info.data.get("exact_confidence", 100)
        if v > exact:
            raise ValueError(
                f"prefix_confidence ({v}) must not exceed exact_confidence ({exact})"
            )
        return v


class ContextConfig(BaseModel):
    """Prompt context sizing."""

    max_example_entries: int = Field(default=10, ge=0, le=100)
    context_byte_budget: int = Field(
        default=400_000,
        gt=0,
        description="Upper bound for the serialized context; examples are dropped first",
    )


class AnomalyConfig(BaseModel):
    """Thresholds for the batch-level anomaly scan."""

    code_reuse_threshold: int = Field(default=3, ge=2)
    name_similarity_threshold: float = Field(default=0.6, gt=0.0, le=1.0)
    uniform_confidence_min_count: int = Field(default=5, ge=2)
    uniform_confidence_share: float = Field(default=0.5, gt=0.0, le=1.0)
    suspiciously_high: int = Field(default=98, ge=0, le=100)
    suspiciously_low: int = Field(default=20, ge=0, le=100)

    @field_validator("suspiciously_low")
    @classmethod
    def validate_band_ordering(cls, v: int, info: ValidationInfo) -> int:
        """Validate that suspiciously_low < suspiciously_high."""
        high = info.data.get("suspiciously_high", 98)
        if v >= high:
            raise ValueError(
                f"suspiciously_low ({v}) must be less than suspiciously_high ({high})"
            )
        return v


class ReconciliationConfig(BaseModel):
    """Reconciliation configuration model."""

    matching: MatchingConfig = Field(default_factory=MatchingConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    anomalies: AnomalyConfig = Field(default_factory=AnomalyConfig)
    confidence_flag_threshold: int = Field(default=75, ge=0, le=100)
    max_batch_size: int = Field(default=100, gt=0, le=1000)
    external_call_timeout: float = Field(default=120.0, gt=0)
    max_run_attempts: int = Field(default=3, ge=1, le=10)
    dry_run: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(valid_levels)}")
        return v.upper()

    @classmethod
    def load(cls, config_path: Path | str | None = None) -> "ReconciliationConfig":
        """Load reconciliation configuration from a JSON file.

        Args:
            config_path: Path to reconciliation.json (defaults to config/reconciliation.json)

        Returns:
            ReconciliationConfig: Validated configuration

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config validation fails
        """
        if config_path is None:
            config_path = Path("config/reconciliation.json")
        else:
            config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(
                f"Config file not found: {config_path}. "
                f"Copy {config_path.stem}.example.json to {config_path.name}"
            )

        with open(config_path, "r", encoding="utf-8") as f:
            config_data = json.load(f)

        return cls(**config_data)
