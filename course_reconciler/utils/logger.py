"""
Structured Logger Module

JSON logging for reconciliation runs. Every event a run emits carries its
session id, so one session's deterministic decisions, matching call,
validation findings and commit can be pulled out of a shared log file with
a single filter.

Example Usage:
    from course_reconciler.utils.logger import session_context, session_logger

    with session_context(session_id):
        log = session_logger(session_id, phase="coordinator", component="coordinator")
        log.info("Deterministic pass complete", exact=12, prefix=3)

Components that are not handed the session id (validator, store, loaders)
still get ``session_id`` on their events while a ``session_context`` is
active, through structlog's contextvars merge.

Log Levels:
    - DEBUG: Per-record matching decisions, rendered prompt sizes
    - INFO: Stage progress, session finalization, commits
    - WARNING: Rejected or flagged candidates, anomalies, skipped input rows
    - ERROR: Aborted runs, external call failures, persistence failures
"""

import logging
import os
import re
import sys
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

import structlog
from structlog.types import BindableLogger, EventDict, WrappedLogger

DEFAULT_LOG_FILE = "logs/course-reconciler.log"
MASK = "***MASKED***"

# Matches api_key, matching_api_key, auth-header, access_token ...
# but not estimated_tokens or authority.
_SENSITIVE_KEY = re.compile(
    r"(?:^|[_-])(?:password|api_key|apikey|token|secret|credential|auth|authorization)(?:$|[_-])",
    re.IGNORECASE,
)
# Credentials that leak into free text, e.g. httpx errors echoing headers.
_SENSITIVE_VALUE = re.compile(r"(Bearer\s+)\S+|\bsk-[A-Za-z0-9_-]{8,}", re.IGNORECASE)


def _mask_text(text: str) -> str:
    return _SENSITIVE_VALUE.sub(
        lambda m: f"{m.group(1)}{MASK}" if m.group(1) else MASK, text
    )


def mask_credentials(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Processor that masks the matching endpoint's credentials.

    Fields named like a credential are replaced outright; bearer tokens and
    ``sk-`` keys embedded in any other string value are masked in place.
    """
    for key, value in list(event_dict.items()):
        if _SENSITIVE_KEY.search(key):
            event_dict[key] = MASK
        elif isinstance(value, str):
            event_dict[key] = _mask_text(value)
    return event_dict


def configure_logging(
    log_file: Optional[str] = None, log_level: str = "INFO"
) -> None:
    """
    Configure structlog for JSON lines to a file and to stderr.

    Stdout is left to the CLI's report tables.

    Args:
        log_file: Log path; defaults to $COURSE_RECONCILER_LOG_FILE, then
            logs/course-reconciler.log
        log_level: Logging level name
    """
    log_path = Path(log_file or os.getenv("COURSE_RECONCILER_LOG_FILE") or DEFAULT_LOG_FILE)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper()),
        handlers=[logging.FileHandler(log_path), logging.StreamHandler(sys.stderr)],
        force=True,
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            mask_credentials,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(
    correlation_id: Optional[str] = None,
    phase: Optional[str] = None,
    component: Optional[str] = None,
) -> BindableLogger:
    """
    Get a logger bound to a correlation id, pipeline phase and component.

    Args:
        correlation_id: Correlation ID (a new UUID when omitted)
        phase: Pipeline phase ("ingestion", "deterministic", "semantic",
            "validation", "session", "persistence", "cli")
        component: Emitting component
    """
    logger = structlog.get_logger().bind(correlation_id=correlation_id or str(uuid.uuid4()))
    if phase:
        logger = logger.bind(phase=phase)
    if component:
        logger = logger.bind(component=component)
    return logger


def session_logger(
    session_id: str,
    phase: str,
    component: str,
    correlation_id: Optional[str] = None,
) -> Any:
    """Logger for code that owns a session: the coordinator and its recorder."""
    return get_logger(
        correlation_id=correlation_id or session_id, phase=phase, component=component
    ).bind(session_id=session_id)


@contextmanager
def session_context(session_id: str) -> Iterator[None]:
    """Tag every event logged inside the block with ``session_id``."""
    with structlog.contextvars.bound_contextvars(session_id=session_id):
        yield


configure_logging()
