"""
Unit tests for logger module.
"""

from unittest.mock import MagicMock

import pytest
import structlog
from structlog.testing import capture_logs

from course_reconciler.utils.logger import (
    MASK,
    configure_logging,
    get_logger,
    mask_credentials,
    session_context,
    session_logger,
)


class TestMaskCredentials:
    """Test cases for mask_credentials processor."""

    @pytest.mark.parametrize(
        "field",
        ["api_key", "MATCHING_API_KEY", "access_token", "matching-secret", "auth_header", "authorization"],
    )
    def test_masks_credential_fields(self, field):
        """Test that fields named like credentials are replaced."""
        # Arrange
        event_dict = {"event": "Matching request sending", field: "hunter2"}

        # Act
        result = mask_credentials(MagicMock(), "info", event_dict)

        # Assert
        assert result[field] == MASK

    def test_keeps_lookalike_fields(self):
        """Test that counters and ids containing sensitive words survive."""
        # Arrange
        event_dict = {
            "event": "Context built",
            "estimated_tokens": 1200,
            "authority": "state",
            "record_id": "r-1",
        }

        # Act
        result = mask_credentials(MagicMock(), "info", event_dict)

        # Assert
        assert result == {
            "event": "Context built",
            "estimated_tokens": 1200,
            "authority": "state",
            "record_id": "r-1",
        }

    def test_masks_keys_embedded_in_messages(self):
        """Test that bearer tokens and sk- keys inside free text are masked."""
        # Arrange
        event_dict = {
            "event": "Matching request failed",
            "error": "401 for header Authorization: Bearer abc.def.ghi (key sk-live_0123456789)",
        }

        # Act
        result = mask_credentials(MagicMock(), "error", event_dict)

        # Assert
        assert "abc.def.ghi" not in result["error"]
        assert "sk-live_0123456789" not in result["error"]
        assert f"Bearer {MASK}" in result["error"]
        assert result["error"].startswith("401 for header")


class TestConfigureLogging:
    """Test cases for configure_logging function."""

    def test_log_file_from_environment(self, mocker, monkeypatch):
        """Test that the log path can be redirected per deployment."""
        # Arrange
        monkeypatch.setenv("COURSE_RECONCILER_LOG_FILE", "/var/log/reconciler/run.log")
        mock_path = mocker.patch("course_reconciler.utils.logger.Path")
        mocker.patch("course_reconciler.utils.logger.logging")
        mocker.patch("course_reconciler.utils.logger.structlog")

        # Act
        configure_logging()

        # Assert
        mock_path.assert_called_once_with("/var/log/reconciler/run.log")
        mock_path.return_value.parent.mkdir.assert_called_once_with(
            parents=True, exist_ok=True
        )

    def test_explicit_log_file_wins(self, mocker, monkeypatch):
        """Test that a passed log file overrides the environment."""
        # Arrange
        monkeypatch.setenv("COURSE_RECONCILER_LOG_FILE", "/var/log/reconciler/run.log")
        mock_path = mocker.patch("course_reconciler.utils.logger.Path")
        mocker.patch("course_reconciler.utils.logger.logging")
        mocker.patch("course_reconciler.utils.logger.structlog")

        # Act
        configure_logging(log_file="logs/test.log")

        # Assert
        mock_path.assert_called_once_with("logs/test.log")

    def test_masking_runs_before_rendering(self, mocker):
        """Test that credentials are masked before JSON rendering."""
        # Arrange
        mocker.patch("course_reconciler.utils.logger.Path")
        mocker.patch("course_reconciler.utils.logger.logging")
        mock_structlog = mocker.patch("course_reconciler.utils.logger.structlog")

        # Act
        configure_logging()

        # Assert
        processors = mock_structlog.configure.call_args.kwargs["processors"]
        assert processors[0] is mock_structlog.contextvars.merge_contextvars
        assert processors.index(mask_credentials) == len(processors) - 2


class TestGetLogger:
    """Test cases for get_logger function."""

    def test_binds_run_context(self):
        """Test that correlation id, phase and component reach every event."""
        # Act
        with capture_logs() as logs:
            log = get_logger(
                correlation_id="session-1", phase="validation", component="response_validator"
            )
            log.info("Candidate rejected", record_id="r-1")

        # Assert
        assert logs[0]["correlation_id"] == "session-1"
        assert logs[0]["phase"] == "validation"
        assert logs[0]["component"] == "response_validator"
        assert logs[0]["record_id"] == "r-1"

    def test_generates_correlation_id_if_not_provided(self):
        """Test that a UUID correlation id is generated and phase is optional."""
        # Act
        with capture_logs() as logs:
            get_logger().warning("Started")

        # Assert
        assert len(logs[0]["correlation_id"]) == 36
        assert "phase" not in logs[0]
        assert logs[0]["log_level"] == "warning"


class TestSessionLogging:
    """Test cases for session-scoped logging."""

    def test_session_logger_binds_session(self):
        """Test that the session id doubles as the correlation id."""
        # Act
        with capture_logs() as logs:
            session_logger("s-1", phase="session", component="session_recorder").info("Session started")

        # Assert
        assert logs[0]["session_id"] == "s-1"
        assert logs[0]["correlation_id"] == "s-1"
        assert logs[0]["component"] == "session_recorder"

    def test_session_logger_keeps_explicit_correlation_id(self):
        """Test that a caller's correlation id is not replaced."""
        # Act
        with capture_logs() as logs:
            session_logger("s-1", phase="session", component="x", correlation_id="batch-7").info("e")

        # Assert
        assert logs[0]["session_id"] == "s-1"
        assert logs[0]["correlation_id"] == "batch-7"

    def test_session_context_tags_other_components(self):
        """Test that loggers without a session id pick it up inside the block."""
        # Act
        with session_context("s-9"):
            inside = structlog.contextvars.get_contextvars()
        after = structlog.contextvars.get_contextvars()

        # Assert
        assert inside["session_id"] == "s-9"
        assert "session_id" not in after
