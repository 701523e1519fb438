from __future__ import annotations

import traceback
from typing import Any

from .types import ExecutionFailure

EMPTY_CODE = "EMPTY_CODE"
TIMEOUT = "TIMEOUT"
TIMER_LIMIT = "TIMER_LIMIT"
INVALID_TIMER_HANDLER = "INVALID_TIMER_HANDLER"
ASYNC_CALLBACK_ERROR = "ASYNC_CALLBACK_ERROR"
EXECUTION_ERROR = "EXECUTION_ERROR"
SERIALIZATION_ERROR = "SERIALIZATION_ERROR"


class ExecutionError(Exception):
    """Error carrying an explicit failure code and optional details.

    Capability implementations raise this to control the ``error.code`` a
    script caller sees.

    Example:
        ```python
        raise ExecutionError("REPO_NOT_FOUND", "Unknown repository", details={"repoId": "r1"})
        ```
    """

    def __init__(self, code: str, message: str, details: Any = None) -> None:
        """Store code and details next to the message.

        Example:
            ```python
            err = ExecutionError("TIMER_LIMIT", "Too many timers")
            ```
        """
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details


def _format_stack(error: BaseException) -> str | None:
    return "".join(traceback.format_exception(error)).rstrip() or None


def _message_of(error: BaseException) -> str:
    try:
        message = str(error)
    except Exception:
        message = ""
    if isinstance(error, SyntaxError) and not message:
        message = "invalid syntax"
    return message or type(error).__name__


def normalize_failure(error: Any) -> ExecutionFailure:
    """Convert any raised value into an ``ExecutionFailure``.

    A string ``code`` attribute and a ``details`` attribute are passed through
    unchanged; everything else becomes ``EXECUTION_ERROR``.

    Example:
        ```python
        failure = normalize_failure(ValueError("boom"))
        assert failure.code == "EXECUTION_ERROR" and failure.message == "boom"
        ```
    """
    if isinstance(error, SystemExit):
        return ExecutionFailure(
            code=EXECUTION_ERROR,
            message=f"SystemExit: {error.code}",
            stack=_format_stack(error),
        )
    if isinstance(error, BaseException):
        code = getattr(error, "code", None)
        details = getattr(error, "details", None)
        return ExecutionFailure(
            code=code if isinstance(code, str) and code else EXECUTION_ERROR,
            message=_message_of(error),
            stack=_format_stack(error),
            details=details,
        )
    try:
        message = str(error)
    except Exception:
        message = f"<unprintable {type(error).__name__}>"
    return ExecutionFailure(code=EXECUTION_ERROR, message=message)


def async_callback_failure(timer_id: int, error: BaseException) -> ExecutionFailure:
    """Build the failure for an error raised inside a timer callback.

    Example:
        ```python
        failure = async_callback_failure(3, RuntimeError("late"))
        assert failure.code == "ASYNC_CALLBACK_ERROR"
        ```
    """
    cause = normalize_failure(error)
    details: dict[str, Any] = {"timerId": timer_id, "errorType": type(error).__name__}
    if cause.code != EXECUTION_ERROR:
        details["originalCode"] = cause.code
    if cause.details is not None:
        details["originalDetails"] = cause.details
    return ExecutionFailure(
        code=ASYNC_CALLBACK_ERROR,
        message=cause.message,
        stack=cause.stack,
        details=details,
    )
