"""Prompt context construction for the semantic matching stage.

Assembles the bounded payload sent to the matching service for records the
deterministic pass could not resolve: a fixed rule set, a catalog summary
whose valid-code list is always complete, and the unmatched records as-is.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field

from course_reconciler.models.config import ReconciliationConfig
from course_reconciler.models.source_record import SourceRecord
from course_reconciler.utils.catalog_index import CatalogIndex
from course_reconciler.utils.errors import InputValidationError
from course_reconciler.utils.logger import get_logger
from course_reconciler.utils.prompt_loader import PromptLoader

MATCHING_RULES = (
    "Output only course codes copied verbatim from the valid_codes list. "
    "A code that is not in the list is discarded and treated as a failure.",
    "Score confidence as an integer from 0 to 100 using the confidence bands.",
    "Return exactly one entry for every input record_id, in matches, unmatched or errors.",
    "Use \"unmatched\" with a reason when no valid code fits; never guess to fill a match.",
    "When two or more codes are equally plausible, list the others in "
    "alternative_codes and set should_flag to true.",
    "Report unreadable or nonsensical input records in errors instead of mapping them.",
)


class SampleEntry(BaseModel):
    """Catalog entry shown to the matching service as an example."""

    code: str
    name: str
    category: str


class CatalogSummary(BaseModel):
    """Catalog overview sent with each matching request."""

    total_entries: int
    by_category: dict[str, int]
    valid_codes: list[str]
    sample_entries: list[SampleEntry] = Field(default_factory=list)
    examples_truncated: bool = False


class MatchingContext(BaseModel):
    """Instruction payload for one semantic matching call."""

    rules: list[str]
    system_prompt: str
    user_prompt: str
    catalog_summary: CatalogSummary
    records: list[SourceRecord]
    confidence_flag_threshold: int
    grade_context: Optional[str] = None
    estimated_tokens: int = 0

    def to_request_json(self) -> str:
        """Serialized request body."""
        return self.model_dump_json()

    def request_size(self) -> int:
        """Serialized request size in bytes."""
        return len(self.to_request_json().encode("utf-8"))


class PromptContextBuilder:
    """Builds MatchingContext payloads within a byte budget."""

    def __init__(
        self,
        index: CatalogIndex,
        config: ReconciliationConfig,
        prompt_loader: Optional[PromptLoader] = None,
        correlation_id: Optional[str] = None,
    ):
        """Initialize builder.

        Args:
            index: Catalog index for this run
            config: Reconciliation configuration
            prompt_loader: Template loader (defaults to the project prompts)
            correlation_id: Correlation ID for logging
        """
        self.index = index
        self.config = config
        self.prompt_loader = prompt_loader or PromptLoader()
        self.correlation_id = correlation_id
        self.logger: Any = get_logger(
            correlation_id=correlation_id,
            phase="context",
            component="context_builder",
        )

    def _validate_input(self, records: list[SourceRecord]) -> None:
        if not records:
            raise InputValidationError("Unmatched batch is empty; nothing to match")

        if len(records) > self.config.max_batch_size:
            raise InputValidationError(
                f"Unmatched batch has {len(records)} records, "
                f"max_batch_size is {self.config.max_batch_size}"
            )

        if len(self.index) == 0:
            raise InputValidationError("Catalog is empty; nothing to match against")

        for record in records:
            if not record.name or not record.name.strip():
                raise InputValidationError(
                    f"Record {record.id!r} has no name to match semantically"
                )

    def _select_samples(self) -> list[SampleEntry]:
        """Pick example entries, one per category first, in catalog order."""
        limit = self.config.context.max_example_entries
        chosen: list[SampleEntry] = []
        seen_categories: set[str] = set()
        chosen_codes: set[str] = set()

        for entry in self.index.entries:
            if len(chosen) >= limit:
                break
            category = entry.category or "Uncategorized"
            if category in seen_categories:
                continue
            seen_categories.add(category)
            chosen_codes.add(entry.code)
            chosen.append(SampleEntry(code=entry.code, name=entry.name, category=category))

        for entry in self.index.entries:
            if len(chosen) >= limit:
                break
            if entry.code in chosen_codes:
                continue
            chosen_codes.add(entry.code)
            chosen.append(
                SampleEntry(
                    code=entry.code,
                    name=entry.name,
                    category=entry.category or "Uncategorized",
                )
            )

        return chosen

    def _assemble(
        self,
        records: list[SourceRecord],
        summary: CatalogSummary,
        grade_context: Optional[str],
    ) -> MatchingContext:
        threshold = self.config.confidence_flag_threshold
        system_prompt = self.prompt_loader.render_system_rules(
            MATCHING_RULES, threshold, correlation_id=self.correlation_id
        )
        user_prompt = self.prompt_loader.render_batch_request(
            summary, records, grade_context=grade_context, correlation_id=self.correlation_id
        )
        context = MatchingContext(
            rules=list(MATCHING_RULES),
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            catalog_summary=summary,
            records=records,
            confidence_flag_threshold=threshold,
            grade_context=grade_context,
        )
        context.estimated_tokens = -(-context.request_size() // 4)
        return context

    def build(
        self, records: list[SourceRecord], grade_context: Optional[str] = None
    ) -> MatchingContext:
        """Build the matching context for an unmatched batch.

        Sample entries are dropped from the end until the serialized context
        fits ``context_byte_budget``. The valid-code list is never shortened;
        if it alone exceeds the budget the context is returned over budget.

        Args:
            records: Unmatched source records, passed through verbatim
            grade_context: Optional grade context shared by the whole batch

        Returns:
            MatchingContext ready for the matching client

        Raises:
            InputValidationError: If the batch is empty, exceeds max_batch_size,
                the catalog is empty, or a record has no name
        """
        self._validate_input(records)

        samples = self._select_samples()
        summary = CatalogSummary(
            total_entries=len(self.index),
            by_category=self.index.categories(),
            valid_codes=self.index.canonical_codes(),
            sample_entries=samples,
        )
        context = self._assemble(records, summary, grade_context)

        budget = self.config.context.context_byte_budget
        while context.request_size() > budget and summary.sample_entries:
            summary = summary.model_copy(
                update={
                    "sample_entries": summary.sample_entries[:-1],
                    "examples_truncated": True,
                }
            )
            context = self._assemble(records, summary, grade_context)

        if summary.examples_truncated:
            self.logger.warning(
                "Catalog examples truncated to fit context budget",
                samples_kept=len(summary.sample_entries),
                samples_selected=len(samples),
                context_byte_budget=budget,
            )

        if context.request_size() > budget:
            self.logger.warning(
                "Context exceeds budget with full valid-code list",
                request_size=context.request_size(),
                context_byte_budget=budget,
                valid_codes=len(summary.valid_codes),
            )

        self.logger.info(
            "Matching context built",
            records=len(records),
            valid_codes=len(summary.valid_codes),
            sample_entries=len(summary.sample_entries),
            estimated_tokens=context.estimated_tokens,
        )
        return context
