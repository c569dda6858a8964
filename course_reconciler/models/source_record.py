"""Source record model: one extracted course awaiting a canonical code."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class SourceRecord(BaseModel):
    """An extracted, unreconciled course entry.

    Owned by the extraction collaborator. The reconciliation engine only
    reads these; the model is frozen so nothing downstream can write to it.

    Attributes:
        id: Identifier assigned by the extraction collaborator
        name: Course name as extracted
        raw_code: Course code as extracted, if any
        description: Course description, if any
        grade_context: Grade level or other grade context, if any
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: str
    raw_code: Optional[str] = None
    description: Optional[str] = None
    grade_context: Optional[str] = None

    def snapshot(self) -> "SourceSnapshot":
        """Copy of the fields a mapping result keeps for audit."""
        return SourceSnapshot(
            name=self.name, raw_code=self.raw_code, description=self.description
        )


class SourceSnapshot(BaseModel):
    """Source fields copied into a MappingResult at creation time."""

    model_config = ConfigDict(frozen=True)

    name: str
    raw_code: Optional[str] = None
    description: Optional[str] = None
