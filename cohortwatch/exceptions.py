"""
Engine Exceptions.

One base class with an error code and structured details, and one subclass
per failure kind the engine distinguishes. Per-student failures are caught
by the engine and reported as ``BatchError`` entries; only the HTTP layer
turns these into responses.
"""

from enum import StrEnum
from typing import Any, Optional


class ErrorCode(StrEnum):
    """Error codes for client handling."""

    INTERNAL_ERROR = "E1000"
    NOT_FOUND = "E1002"
    CONFLICT = "E1003"

    CONFIGURATION_ERROR = "E4000"
    STAGE_REGRESSION = "E4001"

    TRANSIENT_DELIVERY = "E5000"
    ENGINE_BUSY = "E5001"

    DATA_INTEGRITY_ERROR = "E6001"
    CONCURRENCY_CONFLICT = "E6002"


class CohortWatchError(Exception):
    """Base exception for the monitoring engine."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    status_code: int = 500
    kind: str = "unexpected"

    def __init__(
        self,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "kind": self.kind,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(CohortWatchError):
    """A rule names an unknown trigger, condition, or action."""

    code = ErrorCode.CONFIGURATION_ERROR
    status_code = 422
    kind = "configuration"


class TransientDeliveryError(CohortWatchError):
    """The message dispatcher could not deliver a message."""

    code = ErrorCode.TRANSIENT_DELIVERY
    status_code = 502
    kind = "transient_delivery"


class DataIntegrityError(CohortWatchError):
    """A student record is missing or carries invalid fields."""

    code = ErrorCode.DATA_INTEGRITY_ERROR
    status_code = 422
    kind = "data_integrity"


class ConcurrencyConflict(CohortWatchError):
    """Two writers updated the same student concurrently."""

    code = ErrorCode.CONCURRENCY_CONFLICT
    status_code = 409
    kind = "concurrency_conflict"


class StageRegressionError(CohortWatchError):
    """An update_stage action tried to move a student backwards."""

    code = ErrorCode.STAGE_REGRESSION
    status_code = 422
    kind = "stage_regression"


class EngineBusyError(CohortWatchError):
    """A batch run is already in progress for the institution."""

    code = ErrorCode.ENGINE_BUSY
    status_code = 409
    kind = "busy"


class NotFoundError(CohortWatchError):
    """Institution, student, rule, or alert does not exist."""

    code = ErrorCode.NOT_FOUND
    status_code = 404
    kind = "not_found"
