"""Deterministic matching pass: exact and prefix code comparison.

Zero external calls. A record either matches the catalog by code or passes
through to the semantic stage untouched.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field

from course_reconciler.models.catalog import CatalogEntry
from course_reconciler.models.config import ReconciliationConfig
from course_reconciler.models.mapping import MatchMethod
from course_reconciler.models.source_record import SourceRecord
from course_reconciler.utils.catalog_index import CatalogIndex
from course_reconciler.utils.logger import get_logger
from course_reconciler.utils.normalizer import normalize


class DeterministicMatch(BaseModel):
    """A record resolved by code comparison."""

    record: SourceRecord
    entry: CatalogEntry
    method: MatchMethod
    confidence: int = Field(..., ge=0, le=100)
    alternative_codes: list[str] = Field(default_factory=list)
    reasoning: str


class DeterministicPass:
    """Result of the deterministic pass.

    Attributes:
        matched: Records resolved by exact or prefix code comparison
        unmatched: Records left for the semantic stage, in input order
        exact_matches: Count of exact-code matches
        prefix_matches: Count of prefix matches
    """

    def __init__(self) -> None:
        self.matched: list[DeterministicMatch] = []
        self.unmatched: list[SourceRecord] = []

    @property
    def exact_matches(self) -> int:
        return sum(1 for m in self.matched if m.method == MatchMethod.EXACT_CODE)

    @property
    def prefix_matches(self) -> int:
        return sum(1 for m in self.matched if m.method == MatchMethod.PREFIX_MATCH)


class DeterministicMatcher:
    """Matches records to catalog entries by normalized code."""

    def __init__(
        self,
        index: CatalogIndex,
        config: ReconciliationConfig,
        correlation_id: Optional[str] = None,
    ):
        """Initialize matcher.

        Args:
            index: Catalog index for this run
            config: Reconciliation configuration (prefix length, confidences)
            correlation_id: Correlation ID for logging
        """
        self.index = index
        self.matching = config.matching
        self.logger: Any = get_logger(
            correlation_id=correlation_id,
            phase="deterministic",
            component="deterministic_matcher",
        )

    def match_record(self, record: SourceRecord) -> Optional[DeterministicMatch]:
        """Try exact then prefix lookup for one record.

        Args:
            record: Source record to match

        Returns:
            DeterministicMatch, or None when the record has no usable code or
            no catalog entry matches
        """
        key = normalize(record.raw_code or "")
        if not key:
            return None

        entry = self.index.lookup_exact(key)
        if entry is not None:
            return DeterministicMatch(
                record=record,
                entry=entry,
                method=MatchMethod.EXACT_CODE,
                confidence=self.matching.exact_confidence,
                reasoning=f"Code {record.raw_code!r} matches {entry.code!r} after normalization",
            )

        prefix_len = self.matching.prefix_length
        candidates = self.index.prefix_candidates(key, prefix_len)
        if candidates:
            entry = candidates[0]
            return DeterministicMatch(
                record=record,
                entry=entry,
                method=MatchMethod.PREFIX_MATCH,
                confidence=self.matching.prefix_confidence,
                alternative_codes=[c.code for c in candidates[1:]],
                reasoning=(
                    f"First {prefix_len} characters of {record.raw_code!r} "
                    f"match {entry.code!r}"
                ),
            )

        return None

    def match(self, records: list[SourceRecord]) -> DeterministicPass:
        """Run the deterministic pass over a batch.

        Args:
            records: Source records in input order

        Returns:
            DeterministicPass with matched and unmatched records
        """
        result = DeterministicPass()

        for record in records:
            match = self.match_record(record)
            if match is None:
                result.unmatched.append(record)
                continue

            self.logger.debug(
                "Deterministic match",
                record_id=record.id,
                method=match.method.value,
                mapped_code=match.entry.code,
            )
            result.matched.append(match)

        self.logger.info(
            "Deterministic pass complete",
            total=len(records),
            exact_matches=result.exact_matches,
            prefix_matches=result.prefix_matches,
            unmatched=len(result.unmatched),
        )
        return result
