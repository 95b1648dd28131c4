"""Error taxonomy surfaced by the workflow engine."""
from __future__ import annotations

from typing import Any


class TransactionError(Exception):
    """Base for every error the engine hands to the UI."""

    def __init__(self, message: str, user_message: str | None = None):
        super().__init__(message)
        self.message = message
        self.user_message = user_message or message


class FieldValidationError(TransactionError):
    def __init__(self, field_id: str, message: str):
        super().__init__(message)
        self.field_id = field_id


class StepBlocked(TransactionError):
    """The strategy rejected the step's data; `data` holds its diagnostics."""

    def __init__(self, message: str = "Step was rejected", data: dict[str, str] | None = None):
        super().__init__(message)
        self.data = dict(data or {})


class StepLocked(TransactionError):
    """A resumed transaction tried to move into or edit a locked step."""

    def __init__(self, step_index: int, message: str | None = None):
        super().__init__(message or f"Step {step_index} of a resumed transaction is locked")
        self.step_index = step_index


class ApiError(TransactionError):
    def __init__(self, code: int, message: str):
        super().__init__(f"API {code}: {message}", message)
        self.code = code

    @property
    def is_unauthorized(self) -> bool:
        return self.code == 401


class EligibilityRejected(TransactionError):
    def __init__(self, message: str, action: Any = None):
        super().__init__(message)
        self.action = action


class UnknownError(TransactionError):
    def __init__(self, cause: BaseException | None = None):
        detail = str(cause) if cause is not None else "unknown error"
        super().__init__(detail, "Something went wrong, please try again.")
        self.cause = cause


def to_transaction_error(exc: BaseException) -> TransactionError:
    """Map any exception to the nearest taxonomy member."""
    if isinstance(exc, TransactionError):
        return exc
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return ApiError(0, str(exc) or type(exc).__name__)
    return UnknownError(exc)
