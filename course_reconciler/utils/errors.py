"""Exception taxonomy for reconciliation runs.

Whole-run failures are raised as these exceptions and caught by the
coordinator, which finalizes the run's session with the error recorded.
Per-candidate validation problems are never raised; they become session
findings instead.
"""

from typing import Optional


class ReconciliationError(Exception):
    """Base exception for reconciliation failures."""

    kind = "ReconciliationError"


class InputValidationError(ReconciliationError):
    """Raised when a stage receives empty or out-of-bounds input."""

    kind = "InputValidationError"


class DuplicateCodeError(ReconciliationError):
    """Raised when two catalog entries normalize to the same code."""

    kind = "DuplicateCodeError"

    def __init__(self, normalized_code: str, codes: list[str]):
        self.normalized_code = normalized_code
        self.codes = codes
        super().__init__(
            f"Catalog codes {codes} all normalize to '{normalized_code}'"
        )


class ExternalCallError(ReconciliationError):
    """Raised when the AI matching endpoint cannot produce a response.

    Attributes:
        error_type: Failure class (timeout, rate_limit, auth_error,
            invalid_request, server_error, network, empty_response, other)
        status_code: HTTP status when the endpoint answered with non-2xx
    """

    kind = "ExternalCallError"

    def __init__(
        self,
        message: str,
        error_type: str = "other",
        status_code: Optional[int] = None,
    ):
        self.error_type = error_type
        self.status_code = status_code
        super().__init__(message)


class PersistenceError(ReconciliationError):
    """Raised when a run cannot be committed to the mapping store."""

    kind = "PersistenceError"


class SessionFinalizedError(ReconciliationError):
    """Raised when a finalized session recorder is written to again."""

    kind = "SessionFinalizedError"
