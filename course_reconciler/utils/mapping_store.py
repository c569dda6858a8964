"""
Mapping Store Module

Append-only JSONL persistence for mapping results and their sessions.

Layout under the store directory:
    results/<session_id>.jsonl   one MappingResult per line
    sessions/<session_id>.json   published MappingSession (completion marker)

A run is committed by writing and fsyncing its results file first and then
publishing the session document with an atomic rename. Readers only trust results
whose session document is published, so a crash mid-commit leaves nothing
visible.

Example Usage:
    from course_reconciler.utils.mapping_store import MappingStore

    store = MappingStore("mappings")
    store.commit_run(results, session)
    latest = store.read_latest_mapping("rec-42")
"""

import json
import os
from pathlib import Path
from typing import Optional, Sequence

import jsonlines
from pydantic import ValidationError

from course_reconciler.models.mapping import MappingResult
from course_reconciler.models.session import MappingSession, SessionStatus
from course_reconciler.utils.errors import PersistenceError
from course_reconciler.utils.logger import get_logger
from course_reconciler.utils.session_recorder import compute_results_digest


class MappingStore:
    """Durable store for committed reconciliation runs."""

    def __init__(self, store_dir: str | Path = "mappings"):
        """
        Initialize MappingStore.

        Args:
            store_dir: Directory path for the store (default: "mappings")
        """
        self.store_dir = Path(store_dir)
        self.results_dir = self.store_dir / "results"
        self.sessions_dir = self.store_dir / "sessions"
        self.results_dir.mkdir(parents=True, exist_ok=True)
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(phase="persistence", component="mapping_store")

    def _results_file(self, session_id: str) -> Path:
        return self.results_dir / f"{session_id}.jsonl"

    def _session_file(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.json"

    def _write_results(self, path: Path, results: Sequence[MappingResult]) -> None:
        with open(path, "w", encoding="utf-8") as f:
            writer = jsonlines.Writer(f)
            for result in results:
                writer.write(result.model_dump(mode="json"))
            writer.close()
            f.flush()
            os.fsync(f.fileno())
        self._fsync_dir(self.results_dir)

    def _fsync_dir(self, directory: Path) -> None:
        fd = os.open(directory, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)

    def _publish_session(self, session: MappingSession) -> None:
        target = self._session_file(session.id)
        temp = self.sessions_dir / f".{session.id}.json.tmp"
        with open(temp, "w", encoding="utf-8") as f:
            f.write(session.model_dump_json(indent=2))
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp, target)
        self._fsync_dir(self.sessions_dir)

    def commit_run(
        self, results: Sequence[MappingResult], session: MappingSession
    ) -> None:
        """
        Commit a run's results and publish its session.

        Failed and cancelled sessions are committed as session-only audit
        records and must not carry results.

        Args:
            results: Mapping results produced by the session
            session: Finalized session

        Raises:
            PersistenceError: If anything could not be written; no partial
                run is left visible
        """
        log = self.logger.bind(correlation_id=session.correlation_id, session_id=session.id)

        if session.status == SessionStatus.IN_PROGRESS:
            raise PersistenceError(f"Session {session.id} is not finalized")
        if session.status != SessionStatus.COMPLETED and results:
            raise PersistenceError(
                f"Session {session.id} is {session.status.value}; only completed runs carry results"
            )
        if self._session_file(session.id).exists():
            raise PersistenceError(f"Session {session.id} is already committed")
        for result in results:
            if result.session_id != session.id:
                raise PersistenceError(
                    f"Result {result.id} belongs to session {result.session_id}, not {session.id}"
                )

        results_file = self._results_file(session.id)
        try:
            if session.status == SessionStatus.COMPLETED:
                self._write_results(results_file, results)
            self._publish_session(session)
        except Exception as e:
            results_file.unlink(missing_ok=True)
            self._session_file(session.id).unlink(missing_ok=True)
            (self.sessions_dir / f".{session.id}.json.tmp").unlink(missing_ok=True)
            log.error("Commit failed", error=str(e))
            raise PersistenceError(f"Failed to commit session {session.id}: {e}") from e

        log.info(
            "Run committed",
            status=session.status.value,
            results=len(results),
        )

    def get_session(self, session_id: str) -> Optional[MappingSession]:
        """
        Load a published session.

        Returns:
            MappingSession, or None if the session was never published

        Raises:
            PersistenceError: If the session document is corrupted
        """
        path = self._session_file(session_id)
        if not path.exists():
            return None

        try:
            with open(path, "r", encoding="utf-8") as f:
                return MappingSession.model_validate_json(f.read())
        except (ValidationError, OSError) as e:
            raise PersistenceError(f"Corrupted session file {path}: {e}") from e

    def list_sessions(self) -> list[MappingSession]:
        """Published sessions, most recently completed first."""
        sessions = []
        for path in self.sessions_dir.glob("*.json"):
            session = self.get_session(path.stem)
            if session is not None:
                sessions.append(session)
        return sorted(sessions, key=lambda s: (s.completed_at, s.id), reverse=True)

    def load_results(self, session_id: str) -> list[MappingResult]:
        """
        Load the results of a published session.

        Results files without a published session are ignored.

        Raises:
            PersistenceError: If the results file is corrupted
        """
        if not self._session_file(session_id).exists():
            return []

        path = self._results_file(session_id)
        if not path.exists():
            return []

        results = []
        try:
            with jsonlines.open(path) as reader:
                for record in reader:
                    results.append(MappingResult.model_validate(record))
        except (json.JSONDecodeError, jsonlines.InvalidLineError, ValidationError) as e:
            raise PersistenceError(f"Corrupted results file {path}: {e}") from e

        return results

    def read_latest_mapping(self, source_record_id: str) -> Optional[MappingResult]:
        """
        Return the record's result from the most recently completed published session.

        Args:
            source_record_id: SourceRecord.id

        Returns:
            MappingResult, or None if no completed session mapped the record
        """
        for session in self.list_sessions():
            if session.status != SessionStatus.COMPLETED:
                continue
            for result in self.load_results(session.id):
                if result.source_record_id == source_record_id:
                    return result
        return None

    def verify_session(self, session_id: str) -> bool:
        """
        Recompute a published session's results digest.

        Returns:
            True if the stored results still match the session's digest

        Raises:
            PersistenceError: If the session is unknown
        """
        session = self.get_session(session_id)
        if session is None:
            raise PersistenceError(f"Unknown session {session_id}")

        digest = compute_results_digest(self.load_results(session_id))
        intact = digest == session.results_digest
        if not intact:
            self.logger.warning(
                "Results digest mismatch",
                session_id=session_id,
                expected=session.results_digest,
                actual=digest,
            )
        return intact
