"""
Mapping Session Model

Immutable audit record of one reconciliation run: counts per stage, every
external call attempted, every validation finding, and how the run ended.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class SessionStatus(str, Enum):
    """How a reconciliation run ended."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FindingKind(str, Enum):
    """Kind of validation finding recorded against a run."""

    INVALID_CODE = "invalid_code"
    LOW_CONFIDENCE = "low_confidence"
    MALFORMED_RESPONSE = "malformed_response"
    CONFIDENCE_OUT_OF_RANGE = "confidence_out_of_range"
    UNKNOWN_RECORD = "unknown_record"
    REPORTED_ERROR = "reported_error"
    ANOMALY = "anomaly"


class ValidationFinding(BaseModel):
    """One problem found while validating AI output."""

    model_config = ConfigDict(frozen=True)

    kind: FindingKind
    detail: str
    record_id: Optional[str] = None
    code: Optional[str] = None


class ExternalCallRecord(BaseModel):
    """One attempted call to the AI matching endpoint."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    request_size: int = Field(..., ge=0, description="Serialized request bytes")
    response_size: int = Field(default=0, ge=0, description="Response bytes")
    success: bool
    error: Optional[str] = None
    error_type: Optional[str] = None
    duration_ms: int = Field(default=0, ge=0)


class SessionError(BaseModel):
    """Whole-run failure that aborted a session."""

    model_config = ConfigDict(frozen=True)

    kind: str
    message: str


class SessionStats(BaseModel):
    """Per-stage counts for one run.

    ``total`` always equals the number of input records, including for
    aborted runs. ``semantic_matches`` counts semantic results that ended
    ``mapped``; flagged results of any method are counted in ``flagged``.
    """

    model_config = ConfigDict(frozen=True)

    total: int = Field(default=0, ge=0)
    exact_matches: int = Field(default=0, ge=0)
    prefix_matches: int = Field(default=0, ge=0)
    semantic_matches: int = Field(default=0, ge=0)
    flagged: int = Field(default=0, ge=0)
    unmapped: int = Field(default=0, ge=0)
    validation_rejections: int = Field(default=0, ge=0)
    mapped: int = Field(default=0, ge=0)
    success_rate: float = Field(default=0.0, ge=0.0, le=100.0)


class MappingSession(BaseModel):
    """Finalized audit record of one reconciliation run."""

    model_config = ConfigDict(frozen=True)

    id: str
    correlation_id: str
    status: SessionStatus
    started_at: datetime
    completed_at: datetime
    duration_ms: int = Field(default=0, ge=0)
    stats: SessionStats
    external_calls: tuple[ExternalCallRecord, ...] = ()
    validation_findings: tuple[ValidationFinding, ...] = ()
    warnings: tuple[str, ...] = ()
    error: Optional[SessionError] = None
    configuration: dict[str, Any] = Field(default_factory=dict)
    catalog_size: int = Field(default=0, ge=0)
    results_digest: str = ""

    def with_failure(self, kind: str, message: str) -> "MappingSession":
        """Failed copy of a session whose commit never became durable."""
        return self.model_copy(
            update={
                "status": SessionStatus.FAILED,
                "error": SessionError(kind=kind, message=message),
            }
        )
