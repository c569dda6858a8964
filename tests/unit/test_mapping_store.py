"""
Unit tests for mapping_store module.
"""

import json
import os
from datetime import datetime, timedelta, timezone

import pytest

from course_reconciler.models.mapping import MappingResult, MappingStatus, MatchMethod
from course_reconciler.models.session import SessionStatus
from course_reconciler.models.source_record import SourceSnapshot
from course_reconciler.utils.errors import InputValidationError, PersistenceError
from course_reconciler.utils.mapping_store import MappingStore
from course_reconciler.utils.session_recorder import SessionRecorder

BASE_TIME = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


def _run(config, code, minutes, status=SessionStatus.COMPLETED, record_id="rec-1"):
    """Finalized session plus results, completed at BASE_TIME + minutes."""
    recorder = SessionRecorder(config, total=1, catalog_size=7)
    results = []
    if status == SessionStatus.COMPLETED:
        results = [
            MappingResult(
                source_record_id=record_id,
                source_snapshot=SourceSnapshot(name="Algebra I"),
                mapped_code=code,
                confidence=100,
                match_method=MatchMethod.EXACT_CODE,
                status=MappingStatus.MAPPED,
                session_id=recorder.session_id,
            )
        ]
        recorder.record_results(results)
    error = InputValidationError("bad input") if status == SessionStatus.FAILED else None
    session = recorder.finalize(status, error=error)
    session = session.model_copy(
        update={"completed_at": BASE_TIME + timedelta(minutes=minutes)}
    )
    return results, session


class TestMappingStoreCommit:
    """Test cases for committing runs."""

    def test_initialization_creates_directories(self, tmp_path):
        """Test that the store lays out its directories."""
        # Act
        MappingStore(tmp_path / "store")

        # Assert
        assert (tmp_path / "store" / "results").is_dir()
        assert (tmp_path / "store" / "sessions").is_dir()

    def test_commit_writes_results_and_publishes_session(self, tmp_path, config):
        """Test the committed layout."""
        # Arrange
        store = MappingStore(tmp_path)
        results, session = _run(config, "1200310", 0)

        # Act
        store.commit_run(results, session)

        # Assert
        results_file = tmp_path / "results" / f"{session.id}.jsonl"
        session_file = tmp_path / "sessions" / f"{session.id}.json"
        assert session_file.exists()
        lines = results_file.read_text().splitlines()
        assert json.loads(lines[0])["mapped_code"] == "1200310"
        assert store.get_session(session.id) == session

    def test_failed_session_committed_without_results(self, tmp_path, config):
        """Test session-only audit records for failed runs."""
        # Arrange
        store = MappingStore(tmp_path)
        _, session = _run(config, None, 0, status=SessionStatus.FAILED)

        # Act
        store.commit_run([], session)

        # Assert
        assert store.get_session(session.id).status == SessionStatus.FAILED
        assert not (tmp_path / "results" / f"{session.id}.jsonl").exists()

    def test_failed_session_with_results_rejected(self, tmp_path, config):
        """Test that only completed sessions carry results."""
        # Arrange
        store = MappingStore(tmp_path)
        results, _ = _run(config, "1200310", 0)
        _, failed = _run(config, None, 1, status=SessionStatus.FAILED)

        # Act & Assert
        with pytest.raises(PersistenceError):
            store.commit_run(results, failed)

    def test_results_from_other_session_rejected(self, tmp_path, config):
        """Test that results must belong to the committed session."""
        # Arrange
        store = MappingStore(tmp_path)
        results, _ = _run(config, "1200310", 0)
        _, other = _run(config, "1200330", 1)

        # Act & Assert
        with pytest.raises(PersistenceError):
            store.commit_run(results, other)

    def test_session_committed_once(self, tmp_path, config):
        """Test that a published session cannot be overwritten."""
        # Arrange
        store = MappingStore(tmp_path)
        results, session = _run(config, "1200310", 0)
        store.commit_run(results, session)

        # Act & Assert
        with pytest.raises(PersistenceError, match="already committed"):
            store.commit_run(results, session)

    def test_failure_during_publish_leaves_nothing_visible(self, tmp_path, config, mocker):
        """Test atomic commit when the publishing rename fails."""
        # Arrange
        store = MappingStore(tmp_path)
        old_results, old_session = _run(config, "1200310", 0)
        store.commit_run(old_results, old_session)
        new_results, new_session = _run(config, "1200330", 5)
        mocker.patch(
            "course_reconciler.utils.mapping_store.os.replace",
            side_effect=OSError("disk full"),
        )

        # Act
        with pytest.raises(PersistenceError, match="disk full"):
            store.commit_run(new_results, new_session)

        # Assert
        assert store.get_session(new_session.id) is None
        assert not (tmp_path / "results" / f"{new_session.id}.jsonl").exists()
        assert list((tmp_path / "sessions").glob(".*.tmp")) == []
        assert store.read_latest_mapping("rec-1").mapped_code == "1200310"

    def test_results_synced_before_session_published(self, tmp_path, config, mocker):
        """Test that results and both directories reach disk around the rename."""
        # Arrange
        store = MappingStore(tmp_path)
        results, session = _run(config, "1200310", 0)
        calls = []
        real_fsync = os.fsync
        real_replace = os.replace

        def record_fsync(fd):
            calls.append(("fsync", os.fstat(fd).st_ino))
            real_fsync(fd)

        def record_replace(src, dst):
            calls.append(("replace", None))
            real_replace(src, dst)

        mocker.patch("course_reconciler.utils.mapping_store.os.fsync", side_effect=record_fsync)
        mocker.patch("course_reconciler.utils.mapping_store.os.replace", side_effect=record_replace)

        # Act
        store.commit_run(results, session)

        # Assert
        results_inode = (tmp_path / "results" / f"{session.id}.jsonl").stat().st_ino
        session_inode = (tmp_path / "sessions" / f"{session.id}.json").stat().st_ino
        assert calls == [
            ("fsync", results_inode),
            ("fsync", (tmp_path / "results").stat().st_ino),
            ("fsync", session_inode),
            ("replace", None),
            ("fsync", (tmp_path / "sessions").stat().st_ino),
        ]

    def test_failed_directory_sync_unpublishes_session(self, tmp_path, config, mocker):
        """Test that a session is withdrawn when its rename cannot be synced."""
        # Arrange
        store = MappingStore(tmp_path)
        results, session = _run(config, "1200310", 0)
        mocker.patch.object(store, "_fsync_dir", side_effect=[None, OSError("I/O error")])

        # Act
        with pytest.raises(PersistenceError, match="I/O error"):
            store.commit_run(results, session)

        # Assert
        assert store.get_session(session.id) is None
        assert not (tmp_path / "results" / f"{session.id}.jsonl").exists()
        assert store.read_latest_mapping("rec-1") is None

    def test_failure_while_writing_results(self, tmp_path, config, mocker):
        """Test atomic commit when results cannot be written."""
        # Arrange
        store = MappingStore(tmp_path)
        results, session = _run(config, "1200310", 0)
        mocker.patch.object(store, "_write_results", side_effect=OSError("read-only file system"))

        # Act
        with pytest.raises(PersistenceError):
            store.commit_run(results, session)

        # Assert
        assert store.list_sessions() == []
        assert store.read_latest_mapping("rec-1") is None


class TestMappingStoreReads:
    """Test cases for reading committed runs."""

    def test_latest_mapping_from_most_recent_completed_session(self, tmp_path, config):
        """Test that the most recently completed session wins."""
        # Arrange
        store = MappingStore(tmp_path)
        newer_results, newer = _run(config, "1200330", 10)
        older_results, older = _run(config, "1200310", 0)
        store.commit_run(newer_results, newer)
        store.commit_run(older_results, older)

        # Act
        latest = store.read_latest_mapping("rec-1")

        # Assert
        assert latest.mapped_code == "1200330"
        assert latest.session_id == newer.id

    def test_failed_sessions_do_not_shadow_results(self, tmp_path, config):
        """Test that a later failed run leaves the previous mapping in place."""
        # Arrange
        store = MappingStore(tmp_path)
        results, completed = _run(config, "1200310", 0)
        _, failed = _run(config, None, 10, status=SessionStatus.FAILED)
        store.commit_run(results, completed)
        store.commit_run([], failed)

        # Act
        latest = store.read_latest_mapping("rec-1")

        # Assert
        assert latest.mapped_code == "1200310"

    def test_unpublished_results_ignored(self, tmp_path, config):
        """Test that a results file without a session document is invisible."""
        # Arrange
        store = MappingStore(tmp_path)
        results, session = _run(config, "1200310", 0)
        store._write_results(tmp_path / "results" / f"{session.id}.jsonl", results)

        # Act & Assert
        assert store.load_results(session.id) == []
        assert store.read_latest_mapping("rec-1") is None

    def test_unknown_record_and_session(self, tmp_path):
        """Test reads for ids the store has never seen."""
        # Arrange
        store = MappingStore(tmp_path)

        # Act & Assert
        assert store.read_latest_mapping("nobody") is None
        assert store.get_session("missing") is None

    def test_corrupted_session_file_raises(self, tmp_path):
        """Test that unreadable session documents are reported."""
        # Arrange
        store = MappingStore(tmp_path)
        (tmp_path / "sessions" / "broken.json").write_text("{not json")

        # Act & Assert
        with pytest.raises(PersistenceError):
            store.get_session("broken")


class TestVerifySession:
    """Test cases for results digest verification."""

    def test_untouched_session_verifies(self, tmp_path, config):
        """Test that committed results match their digest."""
        # Arrange
        store = MappingStore(tmp_path)
        results, session = _run(config, "1200310", 0)
        store.commit_run(results, session)

        # Act & Assert
        assert store.verify_session(session.id) is True

    def test_edited_results_fail_verification(self, tmp_path, config):
        """Test that editing a committed result is detected."""
        # Arrange
        store = MappingStore(tmp_path)
        results, session = _run(config, "1200310", 0)
        store.commit_run(results, session)
        results_file = tmp_path / "results" / f"{session.id}.jsonl"
        record = json.loads(results_file.read_text())
        record["mapped_code"] = "1200330"
        results_file.write_text(json.dumps(record) + "\n")

        # Act & Assert
        assert store.verify_session(session.id) is False

    def test_failed_session_verifies_with_no_results(self, tmp_path, config):
        """Test that session-only records verify against an empty result set."""
        # Arrange
        store = MappingStore(tmp_path)
        _, session = _run(config, None, 0, status=SessionStatus.FAILED)
        store.commit_run([], session)

        # Act & Assert
        assert store.verify_session(session.id) is True

    def test_unknown_session_raises(self, tmp_path):
        """Test verification of a session that was never committed."""
        # Arrange
        store = MappingStore(tmp_path)

        # Act & Assert
        with pytest.raises(PersistenceError):
            store.verify_session("missing")
