"""
Reconciliation Coordinator Module

Orchestrates one reconciliation run end to end: deterministic pass, context
build, the single AI matching call, response validation, session
finalization and the atomic commit. Also drives batched and retried runs.
"""

import asyncio
import logging
import time
import uuid
from typing import Iterable, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from course_reconciler.agents.context_builder import PromptContextBuilder
from course_reconciler.agents.deterministic_matcher import DeterministicMatcher
from course_reconciler.agents.response_validator import ResponseValidator
from course_reconciler.models.catalog import CatalogEntry
from course_reconciler.models.config import ReconciliationConfig
from course_reconciler.models.mapping import MappingResult, MappingStatus, MatchMethod
from course_reconciler.models.session import MappingSession, SessionStats, SessionStatus
from course_reconciler.models.source_record import SourceRecord
from course_reconciler.utils.catalog_index import CatalogIndex
from course_reconciler.utils.errors import (
    ExternalCallError,
    InputValidationError,
    PersistenceError,
    ReconciliationError,
)
from course_reconciler.utils.logger import session_context, session_logger
from course_reconciler.utils.mapping_store import MappingStore
from course_reconciler.utils.matching_client import MatchingClient
from course_reconciler.utils.progress_tracker import ProgressTracker
from course_reconciler.utils.prompt_loader import PromptLoader
from course_reconciler.utils.session_recorder import SessionRecorder

T = TypeVar("T")

retry_logger = structlog.get_logger(__name__)


def divide_into_batches(items: list[T], batch_size: int) -> list[list[T]]:
    """
    Divide a list of items into batches of specified size.

    Args:
        items: List of items to batch
        batch_size: Number of items per batch

    Returns:
        List of batches, where each batch is a list of items

    Raises:
        ValueError: If batch_size <= 0

    Example:
        >>> divide_into_batches([1, 2, 3, 4, 5, 6, 7], 3)
        [[1, 2, 3], [4, 5, 6], [7]]
    """
    if batch_size <= 0:
        raise ValueError("batch_size must be greater than 0")

    if not items:
        return []

    return [items[i : i + batch_size] for i in range(0, len(items), batch_size)]


class RunCancelled(Exception):
    """Raised inside a run when its cancel event is set."""


class RunOutcome:
    """Session of one run plus the results it computed.

    Attributes:
        session: Finalized session
        results: Results computed by the run. For aborted runs these are the
            deterministic results only, and they were not persisted.
        committed: True when the run is durable in the mapping store
    """

    def __init__(
        self,
        session: MappingSession,
        results: list[MappingResult],
        committed: bool = False,
    ) -> None:
        self.session = session
        self.results = results
        self.committed = committed


def _is_retryable(outcome: RunOutcome) -> bool:
    error = outcome.session.error
    return (
        outcome.session.status == SessionStatus.FAILED
        and error is not None
        and error.kind == ExternalCallError.kind
    )


class ReconciliationCoordinator:
    """
    Runs reconciliations against one matching client and one mapping store.

    The catalog is supplied per run; nothing about it is cached here.
    """

    def __init__(
        self,
        client: MatchingClient,
        store: Optional[MappingStore] = None,
        config: Optional[ReconciliationConfig] = None,
        prompt_loader: Optional[PromptLoader] = None,
    ):
        """
        Initialize coordinator.

        Args:
            client: AI matching client
            store: Mapping store (required unless config.dry_run)
            config: Reconciliation configuration (defaults if None)
            prompt_loader: Template loader for the context builder
        """
        self.client = client
        self.store = store
        self.config = config or ReconciliationConfig()
        self.prompt_loader = prompt_loader or PromptLoader()
        self.sessions: dict[str, MappingSession] = {}
        self.retry_wait = wait_exponential(multiplier=1, min=2, max=10)

        if self.store is None and not self.config.dry_run:
            raise ValueError("A mapping store is required unless dry_run is enabled")

    def _mapping_result(
        self,
        record: SourceRecord,
        session_id: str,
        method: MatchMethod,
        status: MappingStatus,
        mapped_code: Optional[str] = None,
        confidence: int = 0,
        alternative_codes: Optional[list[str]] = None,
        reasoning: Optional[str] = None,
        flags: Optional[list[str]] = None,
    ) -> MappingResult:
        return MappingResult(
            source_record_id=record.id,
            source_snapshot=record.snapshot(),
            mapped_code=mapped_code,
            confidence=confidence,
            match_method=method,
            status=status,
            alternative_codes=alternative_codes or [],
            reasoning=reasoning,
            flags=flags or [],
            session_id=session_id,
        )

    async def _call_matcher(self, recorder: SessionRecorder, context, log) -> str:
        request_size = context.request_size()
        started = time.monotonic()

        try:
            raw = await asyncio.wait_for(
                self.client.match(context), timeout=self.config.external_call_timeout
            )
        except asyncio.TimeoutError as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            message = f"Matching call exceeded {self.config.external_call_timeout}s"
            recorder.record_external_call(
                request_size=request_size,
                success=False,
                error=message,
                error_type="timeout",
                duration_ms=duration_ms,
            )
            raise ExternalCallError(message, error_type="timeout") from e
        except ExternalCallError as e:
            recorder.record_external_call(
                request_size=request_size,
                success=False,
                error=str(e),
                error_type=e.error_type,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            raise
        except Exception as e:
            recorder.record_external_call(
                request_size=request_size,
                success=False,
                error=str(e),
                error_type="other",
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            raise ExternalCallError(f"Matching call failed: {e}") from e

        duration_ms = int((time.monotonic() - started) * 1000)
        recorder.record_external_call(
            request_size=request_size,
            response_size=len(raw.encode("utf-8")),
            success=True,
            duration_ms=duration_ms,
        )
        log.info("External call completed", response_size=len(raw), duration_ms=duration_ms)
        return raw

    async def _reconcile(
        self,
        records: list[SourceRecord],
        index: CatalogIndex,
        recorder: SessionRecorder,
        results: list[MappingResult],
        grade_context: Optional[str],
        cancel_event: Optional[asyncio.Event],
        log,
    ) -> None:
        """Fill ``results`` in place so aborted runs keep their deterministic results."""
        session_id = recorder.session_id
        cid = recorder.correlation_id

        def check_cancelled(stage: str) -> None:
            if cancel_event is not None and cancel_event.is_set():
                raise RunCancelled(f"Run cancelled {stage}")

        check_cancelled("before start")

        ids = [record.id for record in records]
        if len(set(ids)) != len(ids):
            raise InputValidationError("Source records must have unique ids")

        deterministic = DeterministicMatcher(index, self.config, correlation_id=cid).match(records)
        recorder.record_deterministic(
            exact=deterministic.exact_matches, prefix=deterministic.prefix_matches
        )

        by_record: dict[str, MappingResult] = {}
        for match in deterministic.matched:
            by_record[match.record.id] = self._mapping_result(
                match.record,
                session_id,
                method=match.method,
                status=MappingStatus.MAPPED,
                mapped_code=match.entry.code,
                confidence=match.confidence,
                alternative_codes=match.alternative_codes,
                reasoning=match.reasoning,
            )
        results[:] = [by_record[r.id] for r in records if r.id in by_record]

        unmatched = deterministic.unmatched
        if unmatched:
            builder = PromptContextBuilder(
                index, self.config, prompt_loader=self.prompt_loader, correlation_id=cid
            )
            context = builder.build(unmatched, grade_context=grade_context)

            check_cancelled("before external call")
            raw = await self._call_matcher(recorder, context, log)
            check_cancelled("after external call")

            outcome = ResponseValidator(index, self.config, correlation_id=cid).validate(
                raw, unmatched
            )
            recorder.record_findings(outcome.findings, rejections=len(outcome.rejected))
            recorder.record_warnings(outcome.warnings)

            for match in outcome.matches:
                by_record[match.record.id] = self._mapping_result(
                    match.record,
                    session_id,
                    method=MatchMethod.SEMANTIC_MATCH,
                    status=match.status,
                    mapped_code=match.code,
                    confidence=match.confidence,
                    alternative_codes=match.alternative_codes,
                    reasoning=match.reasoning,
                    flags=match.flags,
                )

            unmatched_by_id = {r.id: r for r in unmatched}
            for record_id in outcome.unmatched_ids:
                reason = outcome.not_found.get(record_id) or outcome.reported_errors.get(
                    record_id
                )
                by_record[record_id] = self._mapping_result(
                    unmatched_by_id[record_id],
                    session_id,
                    method=MatchMethod.SEMANTIC_MATCH,
                    status=MappingStatus.UNMAPPED,
                    reasoning=reason or None,
                    flags=outcome.unmapped_flags(record_id),
                )

        results[:] = [by_record[r.id] for r in records]

    def _commit(
        self, results: list[MappingResult], session: MappingSession, log
    ) -> tuple[MappingSession, bool]:
        if self.config.dry_run or self.store is None:
            log.info("Dry run: nothing persisted", status=session.status.value)
            return session, False

        try:
            self.store.commit_run(results, session)
        except PersistenceError as e:
            log.error("Commit failed; run is not durable", error=str(e))
            if session.status == SessionStatus.COMPLETED:
                return session.with_failure(PersistenceError.kind, str(e)), False
            return session, False

        return session, True

    async def execute_run(
        self,
        records: list[SourceRecord],
        catalog: CatalogIndex | Iterable[CatalogEntry],
        grade_context: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RunOutcome:
        """
        Reconcile one batch of source records against a catalog snapshot.

        Every run finalizes exactly one session. Whole-run failures produce a
        failed session that is committed without results; a cancelled run
        persists nothing.

        Args:
            records: Source records to reconcile
            catalog: Catalog entries or an already-built CatalogIndex
            grade_context: Optional grade context for the semantic stage
            cancel_event: Set to cancel the run cooperatively

        Returns:
            RunOutcome with the finalized session and computed results
        """
        session_id = str(uuid.uuid4())
        with session_context(session_id):
            return await self._run_session(
                session_id, records, catalog, grade_context, cancel_event
            )

    async def _run_session(
        self,
        session_id: str,
        records: list[SourceRecord],
        catalog: CatalogIndex | Iterable[CatalogEntry],
        grade_context: Optional[str],
        cancel_event: Optional[asyncio.Event],
    ) -> RunOutcome:
        entries = None if isinstance(catalog, CatalogIndex) else list(catalog)
        catalog_size = len(catalog) if entries is None else len(entries)

        recorder = SessionRecorder(
            self.config,
            total=len(records),
            catalog_size=catalog_size,
            correlation_id=session_id,
            session_id=session_id,
        )
        log = session_logger(session_id, phase="coordinator", component="coordinator")
        results: list[MappingResult] = []

        try:
            index = catalog if entries is None else CatalogIndex(entries)
            await self._reconcile(
                records, index, recorder, results, grade_context, cancel_event, log
            )

        except RunCancelled as e:
            session = recorder.finalize(SessionStatus.CANCELLED)
            log.warning("Run cancelled; nothing persisted", reason=str(e))
            self.sessions[session.id] = session
            return RunOutcome(session, results)

        except asyncio.CancelledError:
            self.sessions[session_id] = recorder.finalize(SessionStatus.CANCELLED)
            log.warning("Run task cancelled; nothing persisted")
            raise

        except ReconciliationError as e:
            log.error("Run aborted", error_kind=e.kind, error=str(e))
            session = recorder.finalize(SessionStatus.FAILED, error=e)
            session, committed = self._commit([], session, log)
            self.sessions[session.id] = session
            return RunOutcome(session, results, committed=committed)

        except Exception as e:
            log.exception("Run aborted by unexpected error", error=str(e))
            session = recorder.finalize(SessionStatus.FAILED, error=e)
            session, committed = self._commit([], session, log)
            self.sessions[session.id] = session
            return RunOutcome(session, results, committed=committed)

        recorder.record_results(results)
        session = recorder.finalize(SessionStatus.COMPLETED)
        session, committed = self._commit(results, session, log)
        self.sessions[session.id] = session
        return RunOutcome(session, results, committed=committed)

    async def run_reconciliation(
        self,
        records: list[SourceRecord],
        catalog: CatalogIndex | Iterable[CatalogEntry],
        grade_context: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> MappingSession:
        """Reconcile a batch and return its finalized session."""
        outcome = await self.execute_run(
            records, catalog, grade_context=grade_context, cancel_event=cancel_event
        )
        return outcome.session

    async def run_with_retry(
        self,
        records: list[SourceRecord],
        catalog: CatalogIndex | Iterable[CatalogEntry],
        grade_context: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RunOutcome:
        """
        Run a reconciliation, starting a fresh run after an ExternalCallError.

        Each attempt is an independent run with its own session; at most
        ``max_run_attempts`` runs are made. The last outcome is returned.
        """
        catalog_arg = catalog if isinstance(catalog, CatalogIndex) else list(catalog)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.max_run_attempts),
            wait=self.retry_wait,
            retry=retry_if_result(_is_retryable),
            before_sleep=before_sleep_log(retry_logger, logging.WARNING),
            retry_error_callback=lambda state: state.outcome.result(),
        )
        return await retrying(
            self.execute_run,
            records,
            catalog_arg,
            grade_context=grade_context,
            cancel_event=cancel_event,
        )

    async def reconcile_in_batches(
        self,
        records: list[SourceRecord],
        catalog: Iterable[CatalogEntry],
        grade_context: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        retry: bool = True,
        tracker: Optional[ProgressTracker] = None,
    ) -> list[RunOutcome]:
        """
        Reconcile a large input as consecutive runs of at most max_batch_size records.

        Stops early once a run is cancelled.

        Returns:
            One RunOutcome per run, in input order
        """
        entries = list(catalog)
        batches = divide_into_batches(records, self.config.max_batch_size)
        outcomes: list[RunOutcome] = []

        if tracker is not None:
            tracker.start("Reconciling", total_records=len(records))

        try:
            for batch_num, batch in enumerate(batches, start=1):
                if tracker is not None:
                    tracker.update_batch(batch_num, len(batches))

                if retry:
                    outcome = await self.run_with_retry(
                        batch, entries, grade_context=grade_context, cancel_event=cancel_event
                    )
                else:
                    outcome = await self.execute_run(
                        batch, entries, grade_context=grade_context, cancel_event=cancel_event
                    )
                outcomes.append(outcome)

                if tracker is not None:
                    tracker.advance(len(batch))
                if outcome.session.status == SessionStatus.CANCELLED:
                    break
        finally:
            if tracker is not None:
                tracker.complete()

        return outcomes

    def get_session_stats(self, session_id: str) -> SessionStats:
        """
        Stats of a session run by this coordinator or committed to the store.

        Raises:
            PersistenceError: If the session is unknown
        """
        session = self.sessions.get(session_id)
        if session is None and self.store is not None:
            session = self.store.get_session(session_id)
        if session is None:
            raise PersistenceError(f"Unknown session {session_id}")
        return session.stats
