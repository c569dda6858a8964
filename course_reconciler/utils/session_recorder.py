"""
Mapping Session Recorder

Append-only audit trail for one reconciliation run. Stages report into the
recorder as the run progresses; ``finalize`` turns it into an immutable
MappingSession exactly once, whether the run completed, failed or was
cancelled.

Example Usage:
    recorder = SessionRecorder(config, total=len(records), catalog_size=len(index))
    recorder.record_deterministic(exact=3, prefix=1)
    recorder.record_external_call(request_size=2048, response_size=512, success=True)
    recorder.record_results(results)
    session = recorder.finalize(SessionStatus.COMPLETED)
"""

import hashlib
import json
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from course_reconciler.models.config import ReconciliationConfig
from course_reconciler.models.mapping import MappingResult, MappingStatus, MatchMethod
from course_reconciler.models.session import (
    ExternalCallRecord,
    MappingSession,
    SessionError,
    SessionStats,
    SessionStatus,
    ValidationFinding,
)
from course_reconciler.utils.errors import SessionFinalizedError
from course_reconciler.utils.logger import session_logger


def compute_results_digest(results: Iterable[MappingResult]) -> str:
    """SHA-256 over the canonical JSON of a run's results.

    Args:
        results: Mapping results in persisted order

    Returns:
        Hex digest
    """
    payload = json.dumps(
        [result.model_dump(mode="json") for result in results],
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class SessionRecorder:
    """Collects one run's audit data and finalizes it into a MappingSession."""

    def __init__(
        self,
        config: ReconciliationConfig,
        total: int,
        catalog_size: int,
        correlation_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ):
        """Start a session.

        Args:
            config: Configuration snapshot stored with the session
            total: Number of input records
            catalog_size: Number of catalog entries used
            correlation_id: Correlation ID (defaults to the session id)
            session_id: Session id (defaults to a new UUID4)
        """
        self.session_id = session_id or str(uuid.uuid4())
        self.correlation_id = correlation_id or self.session_id
        self.config = config
        self.total = total
        self.catalog_size = catalog_size
        self.started_at = datetime.now(timezone.utc)
        self._started_monotonic = time.monotonic()

        self.exact_matches = 0
        self.prefix_matches = 0
        self.validation_rejections = 0
        self.external_calls: list[ExternalCallRecord] = []
        self.findings: list[ValidationFinding] = []
        self.warnings: list[str] = []
        self.results: list[MappingResult] = []
        self._session: Optional[MappingSession] = None

        self.logger: Any = session_logger(
            self.session_id,
            phase="session",
            component="session_recorder",
            correlation_id=self.correlation_id,
        )
        self.logger.info(
            "Session started",
            total=total,
            catalog_size=catalog_size,
        )

    def _ensure_open(self) -> None:
        if self._session is not None:
            raise SessionFinalizedError(
                f"Session {self.session_id} is already finalized"
            )

    def record_deterministic(self, exact: int, prefix: int) -> None:
        """Record deterministic pass counts."""
        self._ensure_open()
        self.exact_matches += exact
        self.prefix_matches += prefix

    def record_external_call(
        self,
        request_size: int,
        success: bool,
        response_size: int = 0,
        error: Optional[str] = None,
        error_type: Optional[str] = None,
        duration_ms: int = 0,
    ) -> ExternalCallRecord:
        """Record one attempted call to the matching endpoint."""
        self._ensure_open()
        call = ExternalCallRecord(
            timestamp=datetime.now(timezone.utc),
            request_size=request_size,
            response_size=response_size,
            success=success,
            error=error,
            error_type=error_type,
            duration_ms=duration_ms,
        )
        self.external_calls.append(call)
        return call

    def record_findings(
        self, findings: Iterable[ValidationFinding], rejections: int = 0
    ) -> None:
        """Record validation findings and the number of rejected candidates."""
        self._ensure_open()
        self.findings.extend(findings)
        self.validation_rejections += rejections

    def record_warnings(self, warnings: Iterable[str]) -> None:
        self._ensure_open()
        self.warnings.extend(warnings)

    def record_results(self, results: Iterable[MappingResult]) -> None:
        self._ensure_open()
        self.results.extend(results)

    def _compute_stats(self) -> SessionStats:
        mapped = sum(1 for r in self.results if r.status == MappingStatus.MAPPED)
        flagged = sum(1 for r in self.results if r.status == MappingStatus.FLAGGED)
        semantic = sum(
            1
            for r in self.results
            if r.status == MappingStatus.MAPPED
            and r.match_method == MatchMethod.SEMANTIC_MATCH
        )
        # Records without a result (aborted runs) count as unmapped
        unmapped = max(self.total - mapped - flagged, 0)
        success_rate = (
            round((mapped + flagged) / self.total * 100, 2) if self.total else 0.0
        )

        return SessionStats(
            total=self.total,
            exact_matches=self.exact_matches,
            prefix_matches=self.prefix_matches,
            semantic_matches=semantic,
            flagged=flagged,
            unmapped=unmapped,
            validation_rejections=self.validation_rejections,
            mapped=mapped,
            success_rate=success_rate,
        )

    def finalize(
        self,
        status: SessionStatus,
        error: Optional[BaseException] = None,
    ) -> MappingSession:
        """Finalize the session. Allowed exactly once.

        Args:
            status: Terminal status (completed, failed or cancelled)
            error: Exception that aborted the run, if any

        Returns:
            Immutable MappingSession

        Raises:
            SessionFinalizedError: If the session was already finalized
            ValueError: If status is in_progress
        """
        self._ensure_open()
        if status == SessionStatus.IN_PROGRESS:
            raise ValueError("A session cannot be finalized as in_progress")

        completed_at = datetime.now(timezone.utc)
        duration_ms = int((time.monotonic() - self._started_monotonic) * 1000)

        session_error = None
        if error is not None:
            session_error = SessionError(
                kind=getattr(error, "kind", type(error).__name__),
                message=str(error),
            )

        self._session = MappingSession(
            id=self.session_id,
            correlation_id=self.correlation_id,
            status=status,
            started_at=self.started_at,
            completed_at=completed_at,
            duration_ms=duration_ms,
            stats=self._compute_stats(),
            external_calls=tuple(self.external_calls),
            validation_findings=tuple(self.findings),
            warnings=tuple(self.warnings),
            error=session_error,
            configuration=self.config.model_dump(mode="json"),
            catalog_size=self.catalog_size,
            results_digest=compute_results_digest(self.results),
        )

        log = self.logger.error if status == SessionStatus.FAILED else self.logger.info
        log(
            "Session finalized",
            status=status.value,
            duration_ms=duration_ms,
            error=session_error.message if session_error else None,
            **self._session.stats.model_dump(),
        )
        return self._session
