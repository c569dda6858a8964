"""
Source and Catalog Loading

Read-only adapters for the two upstream collaborators: the extraction
output (source records) and the reference catalog. Both are JSON documents
whose field names vary between producers, so each field is looked up under
a list of known variants.

Example Usage:
    from course_reconciler.utils.source_loader import JsonCatalogStore, JsonSourceStore

    records = JsonSourceStore("data/extractions").fetch_source_records("school-42")
    catalog = JsonCatalogStore("data/catalog.json", max_age_seconds=600).fetch_catalog()
"""

import json
import re
import time
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from course_reconciler.models.catalog import CatalogEntry
from course_reconciler.models.source_record import SourceRecord
from course_reconciler.utils.errors import InputValidationError
from course_reconciler.utils.logger import get_logger

# Known field-name variants, first non-empty value wins
FIELD_VARIANTS: dict[str, list[str]] = {
    "id": ["id", "record_id", "_id", "ID"],
    "name": ["name", "CourseName", "title", "courseName", "course_name", "Name"],
    "code": ["code", "CourseCode", "course_id", "courseCode", "course_code", "Code"],
    "description": [
        "description",
        "CourseDescription",
        "Description",
        "desc",
        "overview",
        "Overview",
    ],
    "grade_context": [
        "grade_context",
        "grade_level",
        "GradeLevel",
        "grade",
        "Grade",
        "level",
        "gradeLevel",
    ],
    "category": [
        "category",
        "Category",
        "CategoryName",
        "subject",
        "Subject",
        "Department",
        "department",
    ],
    "sub_category": ["sub_category", "SubCategory", "subCategory", "subcategory"],
    "credit": ["credit", "credits", "Credit", "Credits", "units", "Units"],
}

PLACEHOLDER_VALUES = {"-", "null", "none", "n/a"}

# "English 1-4", "Math 101-102"
_COMPOUND_NAME = re.compile(r"^(.+?)\s*(\d+)\s*-\s*(\d+)$")
MAX_COMPOUND_RANGE = 10

_ROOT_KEYS = ("records", "courses", "entries", "items")


def get_field(raw: dict[str, Any], field: str) -> Optional[str]:
    """Return the first usable value among a field's name variants.

    Placeholder values ("-", "null", blank) count as missing. Numbers are
    accepted and converted to strings.
    """
    for variant in FIELD_VARIANTS[field]:
        value = raw.get(variant)
        if isinstance(value, bool) or value is None:
            continue
        if isinstance(value, (int, float)):
            value = str(value)
        if not isinstance(value, str):
            continue
        value = value.strip()
        if value and value.lower() not in PLACEHOLDER_VALUES:
            return value
    return None


def split_compound_name(name: str) -> list[str]:
    """Split a compound course name into its numbered parts.

    "English 1-4" becomes ["English 1", "English 2", "English 3", "English 4"].
    Ranges wider than MAX_COMPOUND_RANGE, or running backwards, are left whole.
    """
    match = _COMPOUND_NAME.match(name)
    if not match:
        return [name]

    subject, start, end = match.group(1).strip(), int(match.group(2)), int(match.group(3))
    if end < start or end - start > MAX_COMPOUND_RANGE:
        return [name]

    return [f"{subject} {i}" for i in range(start, end + 1)]


def clean_source_records(
    items: list[Any], batch_ref: str = "batch"
) -> list[SourceRecord]:
    """Turn loosely-shaped extraction dicts into SourceRecords.

    Entries without a name are skipped. Compound entries are split, and
    duplicates by name and code are removed keeping the first. An id that is
    already taken gets a "~n" suffix so every record id stays unique.

    Args:
        items: Raw extraction entries
        batch_ref: Prefix for ids of entries that carry none

    Returns:
        SourceRecords in input order
    """
    logger = get_logger(phase="ingestion", component="source_loader")
    records: list[SourceRecord] = []
    seen: set[tuple[str, str]] = set()
    used_ids: set[str] = set()
    renamed: list[str] = []
    skipped = 0

    for position, raw in enumerate(items):
        if not isinstance(raw, dict):
            skipped += 1
            continue

        name = get_field(raw, "name")
        if not name:
            skipped += 1
            continue

        base_id = get_field(raw, "id") or f"{batch_ref}-{position}"
        code = get_field(raw, "code")
        parts = split_compound_name(name)

        for part_number, part in enumerate(parts, start=1):
            key = (part, code or "")
            if key in seen:
                continue
            seen.add(key)

            record_id = base_id if len(parts) == 1 else f"{base_id}#{part_number}"
            if record_id in used_ids:
                suffix = 2
                while f"{record_id}~{suffix}" in used_ids:
                    suffix += 1
                renamed.append(record_id)
                record_id = f"{record_id}~{suffix}"
            used_ids.add(record_id)

            records.append(
                SourceRecord(
                    id=record_id,
                    name=part,
                    raw_code=code,
                    description=get_field(raw, "description"),
                    grade_context=get_field(raw, "grade_context"),
                )
            )

    if skipped:
        logger.warning("Skipped unusable source entries", batch_ref=batch_ref, skipped=skipped)
    if renamed:
        logger.warning(
            "Duplicate source ids suffixed",
            batch_ref=batch_ref,
            duplicates=len(renamed),
            ids=sorted(set(renamed))[:20],
        )

    return records


def catalog_entry_from_dict(raw: dict[str, Any]) -> Optional[CatalogEntry]:
    """Build a CatalogEntry from a catalog row, or None if it has no code."""
    code = get_field(raw, "code")
    if not code:
        return None

    consumed = {
        variant
        for field in ("code", "name", "category", "sub_category", "credit")
        for variant in FIELD_VARIANTS[field]
    }
    extras = {k: v for k, v in raw.items() if k not in consumed}

    return CatalogEntry(
        code=code,
        name=get_field(raw, "name") or code,
        category=get_field(raw, "category") or "Uncategorized",
        sub_category=get_field(raw, "sub_category"),
        credit=get_field(raw, "credit"),
        **extras,
    )


def _load_items(path: Path) -> list[Any]:
    if not path.exists():
        raise InputValidationError(f"Input file not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise InputValidationError(f"Invalid JSON in {path}: {e}") from e

    if isinstance(data, dict):
        for key in _ROOT_KEYS:
            if isinstance(data.get(key), list):
                return data[key]
        raise InputValidationError(
            f"{path} has no list under any of {', '.join(_ROOT_KEYS)}"
        )
    if not isinstance(data, list):
        raise InputValidationError(f"{path} must contain a JSON list")
    return data


class JsonSourceStore:
    """Read-only source record store backed by JSON files."""

    def __init__(self, base_dir: str | Path = "data/extractions"):
        self.base_dir = Path(base_dir)

    def _path_for(self, batch_ref: str) -> Path:
        candidate = Path(batch_ref)
        if candidate.suffix == ".json" and candidate.exists():
            return candidate
        return self.base_dir / f"{batch_ref}.json"

    def fetch_source_records(self, batch_ref: str) -> list[SourceRecord]:
        """Load the source records of one extraction batch.

        Args:
            batch_ref: Batch name under base_dir, or a path to a JSON file

        Returns:
            Cleaned SourceRecords

        Raises:
            InputValidationError: If the batch file is missing or malformed
        """
        path = self._path_for(batch_ref)
        items = _load_items(path)
        return clean_source_records(items, batch_ref=Path(batch_ref).stem)


class JsonCatalogStore:
    """Read-only catalog store with an in-process cache.

    The cached snapshot is reused until it is older than ``max_age_seconds``;
    ``refresh()`` forces a reload.
    """

    def __init__(self, path: str | Path, max_age_seconds: float = 300.0):
        self.path = Path(path)
        self.max_age_seconds = max_age_seconds
        self._entries: Optional[list[CatalogEntry]] = None
        self._loaded_at: float = 0.0
        self.logger = get_logger(phase="ingestion", component="catalog_store")

    @property
    def is_stale(self) -> bool:
        return (
            self._entries is None
            or time.monotonic() - self._loaded_at > self.max_age_seconds
        )

    def refresh(self) -> list[CatalogEntry]:
        """Reload the catalog from disk.

        Raises:
            InputValidationError: If the file is missing, malformed, or a row
                fails validation
        """
        entries: list[CatalogEntry] = []
        skipped = 0
        for row in _load_items(self.path):
            if not isinstance(row, dict):
                skipped += 1
                continue
            try:
                entry = catalog_entry_from_dict(row)
            except ValidationError as e:
                raise InputValidationError(f"Invalid catalog row in {self.path}: {e}") from e
            if entry is None:
                skipped += 1
                continue
            entries.append(entry)

        if skipped:
            self.logger.warning("Skipped catalog rows without a code", skipped=skipped)

        self._entries = entries
        self._loaded_at = time.monotonic()
        self.logger.info("Catalog loaded", path=str(self.path), entries=len(entries))
        return list(entries)

    def fetch_catalog(self) -> list[CatalogEntry]:
        """Return the cached catalog snapshot, reloading it when stale."""
        if self.is_stale:
            return self.refresh()
        return list(self._entries or [])
