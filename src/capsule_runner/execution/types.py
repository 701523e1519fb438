from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Literal

LogLevel = Literal["log", "info", "warn", "error"]
OutcomeKind = Literal["no_value", "value", "failed"]


@dataclass(frozen=True, slots=True)
class LogEntry:
    """One captured console entry.

    Example:
        ```python
        entry = LogEntry(level="info", message="ready", timestamp="2024-01-01T00:00:00.000Z")
        ```
    """

    level: LogLevel
    message: str
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON shape of the entry.

        Example:
            ```python
            payload = entry.to_dict()
            ```
        """
        return {"level": self.level, "message": self.message, "timestamp": self.timestamp}


@dataclass(slots=True)
class ExecutionFailure:
    """Normalized failure carried by an envelope.

    Example:
        ```python
        failure = ExecutionFailure(code="TIMEOUT", message="Execution timed out after 30000ms")
        ```
    """

    code: str
    message: str
    stack: str | None = None
    details: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON shape, omitting absent optional fields.

        Example:
            ```python
            payload = failure.to_dict()
            ```
        """
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.stack:
            payload["stack"] = self.stack
        if self.details is not None:
            payload["details"] = self.details
        return payload


@dataclass(frozen=True, slots=True)
class ScriptOutcome:
    """Settled outcome of one invocation: no value, a value, or a failure.

    Example:
        ```python
        outcome = ScriptOutcome.succeeded({"answer": 42})
        ```
    """

    kind: OutcomeKind
    value: Any = None
    truncated: bool = False
    failure: ExecutionFailure | None = None

    @classmethod
    def no_value(cls) -> "ScriptOutcome":
        """Build the outcome of a script that returned nothing.

        Example:
            ```python
            outcome = ScriptOutcome.no_value()
            ```
        """
        return cls(kind="no_value")

    @classmethod
    def succeeded(cls, value: Any, *, truncated: bool = False) -> "ScriptOutcome":
        """Build the outcome of a script that returned an encoded value.

        Example:
            ```python
            outcome = ScriptOutcome.succeeded([1, 2, 3])
            ```
        """
        return cls(kind="value", value=value, truncated=truncated)

    @classmethod
    def failed(cls, failure: ExecutionFailure) -> "ScriptOutcome":
        """Build a failed outcome.

        Example:
            ```python
            outcome = ScriptOutcome.failed(ExecutionFailure(code="EXECUTION_ERROR", message="boom"))
            ```
        """
        return cls(kind="failed", failure=failure)


@dataclass(slots=True)
class ExecutionMeta:
    """Diagnostics attached to every envelope.

    Example:
        ```python
        meta = ExecutionMeta(timeout_ms=30_000, duration_ms=12)
        ```
    """

    timeout_ms: int
    duration_ms: int
    truncated_result: bool = False
    truncated_logs: bool = False
    result_was_undefined: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Return the camelCase JSON shape.

        Example:
            ```python
            payload = meta.to_dict()
            ```
        """
        return {
            "timeoutMs": self.timeout_ms,
            "durationMs": self.duration_ms,
            "truncatedResult": self.truncated_result,
            "truncatedLogs": self.truncated_logs,
            "resultWasUndefined": self.result_was_undefined,
        }


@dataclass(slots=True)
class ExecutionEnvelope:
    """Structured response returned for every invocation.

    Example:
        ```python
        envelope = engine.execute("return 1 + 1")
        assert envelope.ok and envelope.result == 2
        ```
    """

    ok: bool
    result: Any
    meta: ExecutionMeta
    logs: list[LogEntry] = field(default_factory=list)
    error: ExecutionFailure | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON-compatible envelope shape.

        Example:
            ```python
            payload = envelope.to_dict()
            ```
        """
        return {
            "ok": self.ok,
            "result": self.result,
            "logs": [entry.to_dict() for entry in self.logs],
            "error": self.error.to_dict() if self.error is not None else None,
            "meta": self.meta.to_dict(),
        }

    def to_json(self, indent: int | None = 2) -> str:
        """Serialize the envelope, degrading to a minimal failure on error.

        Example:
            ```python
            text = envelope.to_json()
            ```
        """
        try:
            return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False, allow_nan=False)
        except (TypeError, ValueError) as exc:
            fallback = ExecutionEnvelope(
                ok=False,
                result=None,
                error=ExecutionFailure(
                    code="SERIALIZATION_ERROR",
                    message=f"Failed to serialize execution envelope: {exc}",
                ),
                meta=ExecutionMeta(timeout_ms=self.meta.timeout_ms, duration_ms=self.meta.duration_ms),
            )
            return json.dumps(fallback.to_dict(), indent=indent)
