"""
Mapping Result Model

Pydantic model for one reconciliation decision. Mapping results live in
their own store, separate from the source records they describe; a record
reconciled again in a later session gets a new result rather than an edit.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from course_reconciler.models.source_record import SourceSnapshot


class MatchMethod(str, Enum):
    """Strategy that produced a mapping."""

    EXACT_CODE = "exact_code"
    PREFIX_MATCH = "prefix_match"
    SEMANTIC_MATCH = "semantic_match"


class MappingStatus(str, Enum):
    """Outcome persisted for a source record."""

    MAPPED = "mapped"
    FLAGGED = "flagged"
    UNMAPPED = "unmapped"


# Flags a mapping result may carry
MAPPING_FLAGS = {
    "low_confidence",  # Confidence below the flag threshold
    "confidence_clamped",  # AI confidence was outside 0-100
    "ambiguous_alternatives",  # Several catalog codes were plausible
    "flagged_by_matcher",  # Matching service asked for review
    "candidate_rejected",  # A semantic candidate failed validation
    "not_found_by_matcher",  # Matching service reported no match
    "matcher_reported_error",  # Matching service reported an input error
    "no_response_entry",  # Matching service skipped the record
}


class MappingResult(BaseModel):
    """Reconciliation decision for one source record within one session.

    Attributes:
        id: Unique identifier (UUID4)
        source_record_id: SourceRecord.id this result describes
        source_snapshot: Source fields as they were when reconciled
        mapped_code: Canonical catalog code (None when unmapped)
        confidence: Confidence 0-100
        match_method: Strategy that produced the result
        status: mapped, flagged or unmapped
        alternative_codes: Other plausible canonical codes
        reasoning: Explanation from the matching stage
        flags: Flags from MAPPING_FLAGS
        session_id: MappingSession.id that produced this result
        created_at: Creation timestamp (UTC)
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source_record_id: str
    source_snapshot: SourceSnapshot
    mapped_code: Optional[str] = None
    confidence: int = Field(default=0, ge=0, le=100)
    match_method: MatchMethod
    status: MappingStatus
    alternative_codes: list[str] = Field(default_factory=list)
    reasoning: Optional[str] = None
    flags: list[str] = Field(default_factory=list)
    session_id: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("flags")
    @classmethod
    def validate_flags(cls, v: list[str]) -> list[str]:
        """Validate that every flag is a known mapping flag."""
        unknown = [flag for flag in v if flag not in MAPPING_FLAGS]
        if unknown:
            raise ValueError(
                f"Invalid mapping flags: {unknown}. Must be one of {sorted(MAPPING_FLAGS)}"
            )
        return v
