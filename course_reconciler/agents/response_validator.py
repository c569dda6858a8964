"""Response Validator: the gate between AI output and persisted mappings.

Every candidate the matching service proposes is checked against the
catalog index before it can become a mapping. Nothing here raises for a bad
candidate; problems are returned as findings and the candidate is rejected.
"""

import json
from collections import Counter, defaultdict
from difflib import SequenceMatcher
from typing import Any, Optional

from jsonschema import Draft7Validator
from jsonschema.exceptions import best_match
from pydantic import BaseModel, Field

from course_reconciler.models.config import ReconciliationConfig
from course_reconciler.models.mapping import MappingStatus
from course_reconciler.models.session import FindingKind, ValidationFinding
from course_reconciler.models.source_record import SourceRecord
from course_reconciler.utils.catalog_index import CatalogIndex
from course_reconciler.utils.confidence import validate_confidence_score
from course_reconciler.utils.logger import get_logger
from course_reconciler.utils.matching_client import extract_json_from_markdown
from course_reconciler.utils.normalizer import normalize

RESPONSE_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["matches", "unmatched", "errors"],
    "properties": {
        "matches": {"type": "array"},
        "unmatched": {"type": "array"},
        "errors": {"type": "array"},
    },
}

_response_validator = Draft7Validator(RESPONSE_SCHEMA)


class ValidatedMatch(BaseModel):
    """A semantic candidate that passed every validation rule."""

    record: SourceRecord
    code: str = Field(..., description="Canonical catalog code")
    confidence: int = Field(..., ge=0, le=100)
    status: MappingStatus
    reasoning: Optional[str] = None
    alternative_codes: list[str] = Field(default_factory=list)
    flags: list[str] = Field(default_factory=list)


class RejectedCandidate(BaseModel):
    """A semantic candidate that failed validation. Its code is never persisted."""

    record_id: Optional[str] = None
    code: Optional[str] = None
    kind: FindingKind
    detail: str


class ValidationOutcome:
    """Result of validating one matching response.

    Attributes:
        accepted: Candidates mapped without review
        flagged: Valid candidates that need human review
        rejected: Candidates that failed a rule
        unmatched_ids: Batch record ids left without a valid candidate, in input order
        not_found: Record id -> reason, for records the service could not match
        reported_errors: Record id -> message, for records the service reported errors on
        findings: Validation findings for the session
        warnings: Batch-level warnings for the session
    """

    def __init__(self) -> None:
        self.accepted: list[ValidatedMatch] = []
        self.flagged: list[ValidatedMatch] = []
        self.rejected: list[RejectedCandidate] = []
        self.unmatched_ids: list[str] = []
        self.not_found: dict[str, str] = {}
        self.reported_errors: dict[str, str] = {}
        self.findings: list[ValidationFinding] = []
        self.warnings: list[str] = []

    @property
    def matches(self) -> list[ValidatedMatch]:
        return self.accepted + self.flagged

    @property
    def rejected_ids(self) -> set[str]:
        return {c.record_id for c in self.rejected if c.record_id}

    def unmapped_flags(self, record_id: str) -> list[str]:
        """Flags explaining why an unmatched record ended unmapped."""
        flags = []
        if record_id in self.rejected_ids:
            flags.append("candidate_rejected")
        if record_id in self.not_found:
            flags.append("not_found_by_matcher")
        if record_id in self.reported_errors:
            flags.append("matcher_reported_error")
        if not flags:
            flags.append("no_response_entry")
        return flags


class ResponseValidator:
    """Validates raw matching responses against the catalog index."""

    def __init__(
        self,
        index: CatalogIndex,
        config: ReconciliationConfig,
        correlation_id: Optional[str] = None,
    ):
        self.index = index
        self.config = config
        self.correlation_id = correlation_id
        self.logger: Any = get_logger(
            correlation_id=correlation_id,
            phase="validation",
            component="response_validator",
        )

    def _finding(
        self,
        outcome: ValidationOutcome,
        kind: FindingKind,
        detail: str,
        record_id: Optional[str] = None,
        code: Optional[str] = None,
    ) -> None:
        outcome.findings.append(
            ValidationFinding(kind=kind, detail=detail, record_id=record_id, code=code)
        )

    def _reject(
        self,
        outcome: ValidationOutcome,
        kind: FindingKind,
        detail: str,
        record_id: Optional[str] = None,
        code: Optional[str] = None,
    ) -> None:
        outcome.rejected.append(
            RejectedCandidate(record_id=record_id, code=code, kind=kind, detail=detail)
        )
        self._finding(outcome, kind, detail, record_id=record_id, code=code)
        self.logger.warning(
            "Candidate rejected",
            kind=kind.value,
            record_id=record_id,
            code=code,
            detail=detail,
        )

    def parse(self, raw: str) -> tuple[Optional[dict[str, Any]], Optional[str]]:
        """Parse a raw response into the top-level document.

        Returns:
            Tuple of (document, error); document is None when malformed
        """
        try:
            document = json.loads(extract_json_from_markdown(raw or ""))
        except json.JSONDecodeError as e:
            return None, f"Response is not valid JSON: {e.msg}"
        except (ValueError, RecursionError) as e:
            return None, f"Response could not be decoded: {type(e).__name__}"

        error = best_match(_response_validator.iter_errors(document))
        if error is not None:
            return None, f"Response does not match expected shape: {error.message}"

        return document, None

    def _validate_alternatives(
        self,
        outcome: ValidationOutcome,
        record_id: str,
        code: str,
        raw_alternatives: Any,
    ) -> list[str]:
        if raw_alternatives is None:
            return []
        if not isinstance(raw_alternatives, list):
            self._finding(
                outcome,
                FindingKind.MALFORMED_RESPONSE,
                "alternative_codes is not a list; ignored",
                record_id=record_id,
            )
            return []

        valid: list[str] = []
        for alternative in raw_alternatives:
            entry = self.index.lookup_exact(normalize(alternative))
            if entry is None:
                self._finding(
                    outcome,
                    FindingKind.INVALID_CODE,
                    "Alternative code not in catalog; dropped",
                    record_id=record_id,
                    code=str(alternative),
                )
                continue
            if entry.code != code and entry.code not in valid:
                valid.append(entry.code)
        return valid

    def _validate_candidate(
        self,
        outcome: ValidationOutcome,
        item: Any,
        batch: dict[str, SourceRecord],
        decided: set[str],
    ) -> None:
        if not isinstance(item, dict):
            self._reject(
                outcome, FindingKind.MALFORMED_RESPONSE, "Match entry is not an object"
            )
            return

        record_id = item.get("record_id")
        raw_code = item.get("code")
        if not isinstance(record_id, str) or not isinstance(raw_code, str):
            self._reject(
                outcome,
                FindingKind.MALFORMED_RESPONSE,
                "Match entry needs string record_id and code",
                record_id=record_id if isinstance(record_id, str) else None,
                code=raw_code if isinstance(raw_code, str) else None,
            )
            return

        entry = self.index.lookup_exact(normalize(raw_code))
        if entry is None:
            self._reject(
                outcome,
                FindingKind.INVALID_CODE,
                "Code not in catalog",
                record_id=record_id,
                code=raw_code,
            )
            return

        confidence, confidence_flags = validate_confidence_score(
            item.get("confidence"), record_id, self.correlation_id
        )
        if confidence is None:
            self._reject(
                outcome,
                FindingKind.MALFORMED_RESPONSE,
                f"Confidence {str(item.get('confidence'))[:50]!r} is not numeric",
                record_id=record_id,
                code=raw_code,
            )
            return

        if record_id not in batch:
            self._reject(
                outcome,
                FindingKind.UNKNOWN_RECORD,
                "record_id is not in the unmatched batch",
                record_id=record_id,
                code=raw_code,
            )
            return

        if record_id in decided:
            self._reject(
                outcome,
                FindingKind.MALFORMED_RESPONSE,
                "Duplicate candidate for an already-decided record",
                record_id=record_id,
                code=raw_code,
            )
            return
        decided.add(record_id)

        flags: list[str] = []
        if "confidence_out_of_range" in confidence_flags:
            self._finding(
                outcome,
                FindingKind.CONFIDENCE_OUT_OF_RANGE,
                f"Confidence {item.get('confidence')!r} clamped to {confidence}",
                record_id=record_id,
                code=entry.code,
            )
            flags.append("confidence_clamped")

        if confidence < self.config.confidence_flag_threshold:
            self._finding(
                outcome,
                FindingKind.LOW_CONFIDENCE,
                f"Confidence {confidence} below {self.config.confidence_flag_threshold}",
                record_id=record_id,
                code=entry.code,
            )
            flags.append("low_confidence")

        alternatives = self._validate_alternatives(
            outcome, record_id, entry.code, item.get("alternative_codes")
        )
        if alternatives:
            flags.append("ambiguous_alternatives")
        if item.get("should_flag") is True:
            flags.append("flagged_by_matcher")

        reasoning = item.get("reasoning")
        match = ValidatedMatch(
            record=batch[record_id],
            code=entry.code,
            confidence=confidence,
            status=MappingStatus.FLAGGED if flags else MappingStatus.MAPPED,
            reasoning=reasoning if isinstance(reasoning, str) else None,
            alternative_codes=alternatives,
            flags=flags,
        )
        if flags:
            outcome.flagged.append(match)
        else:
            outcome.accepted.append(match)

    def _collect_reports(
        self,
        outcome: ValidationOutcome,
        document: dict[str, Any],
        batch: dict[str, SourceRecord],
    ) -> None:
        for item in document["unmatched"]:
            record_id = item.get("record_id") if isinstance(item, dict) else None
            if not isinstance(record_id, str) or record_id not in batch:
                self._finding(
                    outcome,
                    FindingKind.UNKNOWN_RECORD,
                    "Unmatched entry refers to a record outside the batch",
                    record_id=record_id if isinstance(record_id, str) else None,
                )
                continue
            reason = item.get("reason")
            outcome.not_found[record_id] = reason if isinstance(reason, str) else ""

        for item in document["errors"]:
            if not isinstance(item, dict):
                self._finding(
                    outcome, FindingKind.MALFORMED_RESPONSE, "Error entry is not an object"
                )
                continue
            record_id = item.get("record_id")
            message = str(item.get("message", ""))
            error_type = str(item.get("error_type", "unknown"))
            known = isinstance(record_id, str) and record_id in batch
            self._finding(
                outcome,
                FindingKind.REPORTED_ERROR,
                f"{error_type}: {message}"[:500],
                record_id=record_id if isinstance(record_id, str) else None,
            )
            if known:
                outcome.reported_errors[record_id] = message
            elif record_id is not None:
                self._finding(
                    outcome,
                    FindingKind.UNKNOWN_RECORD,
                    "Error entry refers to a record outside the batch",
                    record_id=str(record_id),
                )

    def _scan_anomalies(self, outcome: ValidationOutcome) -> None:
        """Batch-level plausibility checks. Adds findings, never revokes."""
        anomalies = self.config.anomalies
        matches = outcome.matches

        by_code: dict[str, list[ValidatedMatch]] = defaultdict(list)
        for match in matches:
            by_code[match.code].append(match)

        for code, group in by_code.items():
            if len(group) < anomalies.code_reuse_threshold:
                continue
            distinct: list[str] = []
            for match in group:
                name = match.record.name.strip().lower()
                if all(
                    SequenceMatcher(None, name, kept).ratio()
                    < anomalies.name_similarity_threshold
                    for kept in distinct
                ):
                    distinct.append(name)
            if len(distinct) >= anomalies.code_reuse_threshold:
                detail = f"Code {code} assigned to {len(distinct)} dissimilar course names"
                self._finding(outcome, FindingKind.ANOMALY, detail, code=code)
                outcome.warnings.append(detail)

        if len(matches) >= anomalies.uniform_confidence_min_count:
            value, count = Counter(m.confidence for m in matches).most_common(1)[0]
            if value % 5 != 0 and count / len(matches) >= anomalies.uniform_confidence_share:
                detail = (
                    f"Confidence {value} repeated on {count} of {len(matches)} matches"
                )
                self._finding(outcome, FindingKind.ANOMALY, detail)
                outcome.warnings.append(detail)

        high = sum(1 for m in matches if m.confidence > anomalies.suspiciously_high)
        if high:
            detail = f"{high} matches with suspiciously high confidence (>{anomalies.suspiciously_high})"
            self._finding(outcome, FindingKind.ANOMALY, detail)
            outcome.warnings.append(detail)

        low = sum(1 for m in matches if m.confidence < anomalies.suspiciously_low)
        if low:
            detail = f"{low} matches with suspiciously low confidence (<{anomalies.suspiciously_low})"
            self._finding(outcome, FindingKind.ANOMALY, detail)
            outcome.warnings.append(detail)

    def validate(self, raw: str, unmatched: list[SourceRecord]) -> ValidationOutcome:
        """Validate a raw matching response for one unmatched batch.

        Args:
            raw: Response text from the matching client
            unmatched: The batch the request was built from

        Returns:
            ValidationOutcome; a malformed document yields one
            malformed_response finding and no candidates
        """
        outcome = ValidationOutcome()
        batch = {record.id: record for record in unmatched}

        document, error = self.parse(raw)
        if document is None:
            self._finding(outcome, FindingKind.MALFORMED_RESPONSE, error or "Malformed response")
            self.logger.error("Malformed matching response", error=error)
        else:
            decided: set[str] = set()
            for item in document["matches"]:
                self._validate_candidate(outcome, item, batch, decided)
            self._collect_reports(outcome, document, batch)
            self._scan_anomalies(outcome)

        matched_ids = {m.record.id for m in outcome.matches}
        outcome.unmatched_ids = [r.id for r in unmatched if r.id not in matched_ids]

        silent = [
            rid
            for rid in outcome.unmatched_ids
            if rid not in outcome.not_found
            and rid not in outcome.reported_errors
            and rid not in outcome.rejected_ids
        ]
        if document is not None and silent:
            outcome.warnings.append(
                f"{len(silent)} records missing from the matching response"
            )

        self.logger.info(
            "Response validated",
            accepted=len(outcome.accepted),
            flagged=len(outcome.flagged),
            rejected=len(outcome.rejected),
            unmatched=len(outcome.unmatched_ids),
            findings=len(outcome.findings),
        )
        return outcome
