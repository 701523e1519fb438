import json
import time

from capsule_runner.execution.envelope import build_envelope, elapsed_ms, fallback_envelope
from capsule_runner.execution.types import (
    ExecutionEnvelope,
    ExecutionFailure,
    ExecutionMeta,
    LogEntry,
    ScriptOutcome,
)

LOGS = [LogEntry(level="info", message="hello", timestamp="2024-01-01T00:00:00.000Z")]


def test_no_value_outcome_sets_undefined_flag() -> None:
    envelope = build_envelope(
        ScriptOutcome.no_value(), logs=LOGS, truncated_logs=False, started_at=time.monotonic(), timeout_ms=1000
    )
    assert envelope.ok is True
    assert envelope.result is None
    assert envelope.error is None
    assert envelope.meta.result_was_undefined is True
    assert envelope.logs == LOGS


def test_value_outcome_carries_truncation_flags() -> None:
    envelope = build_envelope(
        ScriptOutcome.succeeded({"_truncated": True}, truncated=True),
        logs=[],
        truncated_logs=True,
        started_at=time.monotonic(),
        timeout_ms=1000,
    )
    assert envelope.ok is True
    assert envelope.meta.truncated_result is True
    assert envelope.meta.truncated_logs is True
    assert envelope.meta.result_was_undefined is False


def test_failed_outcome_encodes_details() -> None:
    failure = ExecutionFailure(code="REPO_NOT_FOUND", message="missing", details={"ids": {"r1"}, "n": 2**60})
    envelope = build_envelope(
        ScriptOutcome.failed(failure), logs=LOGS, truncated_logs=False, started_at=time.monotonic(), timeout_ms=1000
    )
    assert envelope.ok is False
    assert envelope.result is None
    assert envelope.error.code == "REPO_NOT_FOUND"
    assert envelope.error.details == {"ids": ["r1"], "n": f"[BigInt: {2**60}]"}
    assert envelope.logs == LOGS


def test_unwalkable_details_fall_back_to_serialization_error() -> None:
    class Hostile(list):
        def __iter__(self):
            raise RuntimeError("no iteration")

    failure = ExecutionFailure(code="X", message="boom", details=Hostile([1]))
    envelope = build_envelope(
        ScriptOutcome.failed(failure), logs=LOGS, truncated_logs=True, started_at=time.monotonic(), timeout_ms=500
    )
    assert envelope.ok is False
    assert envelope.error.code == "SERIALIZATION_ERROR"
    assert envelope.error.message == "Failed to build execution envelope (RuntimeError)"
    assert envelope.logs == LOGS
    assert envelope.meta.truncated_logs is True
    assert envelope.meta.timeout_ms == 500


def test_fallback_envelope_shape() -> None:
    envelope = fallback_envelope(started_at=time.monotonic(), timeout_ms=100, message="broken")
    assert envelope.to_dict() == {
        "ok": False,
        "result": None,
        "logs": [],
        "error": {"code": "SERIALIZATION_ERROR", "message": "broken"},
        "meta": {
            "timeoutMs": 100,
            "durationMs": envelope.meta.duration_ms,
            "truncatedResult": False,
            "truncatedLogs": False,
            "resultWasUndefined": False,
        },
    }


def test_to_json_degrades_when_result_is_not_json() -> None:
    envelope = ExecutionEnvelope(
        ok=True, result={"bad": object()}, meta=ExecutionMeta(timeout_ms=10, duration_ms=1)
    )
    payload = json.loads(envelope.to_json())
    assert payload["ok"] is False
    assert payload["error"]["code"] == "SERIALIZATION_ERROR"
    assert payload["error"]["message"].startswith("Failed to serialize execution envelope")
    assert payload["meta"]["timeoutMs"] == 10


def test_elapsed_ms_is_never_negative() -> None:
    assert elapsed_ms(time.monotonic() + 10) == 0
    assert elapsed_ms(time.monotonic() - 0.1) >= 90
