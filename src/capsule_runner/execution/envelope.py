from __future__ import annotations

import logging
import time
from collections.abc import Sequence

from .encoder import to_jsonable
from .errors import SERIALIZATION_ERROR
from .types import ExecutionEnvelope, ExecutionFailure, ExecutionMeta, LogEntry, ScriptOutcome

logger = logging.getLogger(__name__)


def elapsed_ms(started_at: float) -> int:
    """Return whole milliseconds elapsed since a ``time.monotonic()`` mark.

    Example:
        ```python
        started = time.monotonic()
        duration = elapsed_ms(started)
        ```
    """
    return max(0, int((time.monotonic() - started_at) * 1000))


def fallback_envelope(
    *,
    started_at: float,
    timeout_ms: int,
    message: str,
    logs: Sequence[LogEntry] = (),
    truncated_logs: bool = False,
) -> ExecutionEnvelope:
    """Build the last-resort ``SERIALIZATION_ERROR`` envelope.

    Example:
        ```python
        envelope = fallback_envelope(started_at=started, timeout_ms=30_000, message="broken details")
        ```
    """
    return ExecutionEnvelope(
        ok=False,
        result=None,
        logs=list(logs),
        error=ExecutionFailure(code=SERIALIZATION_ERROR, message=message),
        meta=ExecutionMeta(
            timeout_ms=timeout_ms,
            duration_ms=elapsed_ms(started_at),
            truncated_logs=truncated_logs,
        ),
    )


def build_envelope(
    outcome: ScriptOutcome,
    *,
    logs: Sequence[LogEntry],
    truncated_logs: bool,
    started_at: float,
    timeout_ms: int,
) -> ExecutionEnvelope:
    """Assemble the final envelope for a settled outcome; never raises.

    Example:
        ```python
        envelope = build_envelope(
            ScriptOutcome.succeeded(3), logs=[], truncated_logs=False,
            started_at=started, timeout_ms=30_000,
        )
        ```
    """
    try:
        meta = ExecutionMeta(
            timeout_ms=timeout_ms,
            duration_ms=elapsed_ms(started_at),
            truncated_logs=truncated_logs,
        )
        if outcome.failure is not None:
            source = outcome.failure
            failure = ExecutionFailure(
                code=str(source.code),
                message=str(source.message),
                stack=source.stack,
                details=to_jsonable(source.details) if source.details is not None else None,
            )
            return ExecutionEnvelope(ok=False, result=None, logs=list(logs), error=failure, meta=meta)

        meta.truncated_result = outcome.truncated
        meta.result_was_undefined = outcome.kind == "no_value"
        result = outcome.value if outcome.kind == "value" else None
        return ExecutionEnvelope(ok=True, result=result, logs=list(logs), error=None, meta=meta)
    except Exception as exc:
        logger.exception("Failed to build execution envelope")
        return fallback_envelope(
            started_at=started_at,
            timeout_ms=timeout_ms,
            message=f"Failed to build execution envelope ({type(exc).__name__})",
            logs=logs,
            truncated_logs=truncated_logs,
        )
