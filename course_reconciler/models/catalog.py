"""Catalog Entry Model

Pydantic model for one canonical course in the reference catalog.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CatalogEntry(BaseModel):
    """Canonical course from the reference catalog.

    The code is the primary key within one catalog snapshot. Extra metadata
    columns from the catalog source (level, term, graduation requirement,
    ...) are kept as-is.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    code: str = Field(..., min_length=1, description="Canonical course code")
    name: str = Field(..., description="Canonical course name")
    category: str = Field(default="Uncategorized", description="Subject category")
    sub_category: Optional[str] = Field(None, description="Subject sub-category")
    credit: Optional[str] = Field(None, description="Credit value as listed")
