from __future__ import annotations

import asyncio
import concurrent.futures
import contextlib
import logging
import threading
import time
import types
from typing import Any

from ..policy import EnginePolicy
from .capabilities import CapabilitySurface
from .context import NO_VALUE, ExecutionContext, wrap_script
from .encoder import encode_result
from .envelope import build_envelope, fallback_envelope
from .errors import EMPTY_CODE, EXECUTION_ERROR, TIMEOUT, async_callback_failure, normalize_failure
from .output import OutputCollector
from .timers import TimerGovernor
from .types import ExecutionEnvelope, ExecutionFailure, ScriptOutcome

logger = logging.getLogger(__name__)


class _ScriptExit(Exception):
    """Carries a ``SystemExit``/``KeyboardInterrupt`` raised by the script."""


async def _contained(entrypoint: Any) -> Any:
    try:
        return await entrypoint()
    except (SystemExit, KeyboardInterrupt) as exc:
        # A task re-raises these out of the event loop, tearing down the runner.
        raise _ScriptExit() from exc


class _Invocation:
    """Everything one script run owns: scope, logs, timers and its outcome.

    Three parties may settle the outcome: the script finishing, a timer
    callback failing while the script is still running, and the caller's
    deadline. The first one wins; later ones are ignored.

    The script runs on a private event loop in a daemon thread. Python
    cannot stop a thread, so a script that loses the race is abandoned: it
    is sent a cooperative cancel, which a synchronous busy loop never sees.
    The caller is still released on time, and every timer the script
    registered is cancelled and fenced off during finalization.
    """

    def __init__(
        self,
        surface: CapabilitySurface,
        policy: EnginePolicy,
        host_loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self.policy = policy
        self.collector = OutputCollector(
            max_entries=policy.max_log_entries,
            max_entry_chars=policy.max_log_entry_chars,
            max_total_chars=policy.max_log_total_chars,
        )
        self.governor = TimerGovernor(max_timers=policy.max_timers, on_error=self._on_timer_error)
        self.context = ExecutionContext(
            surface=surface,
            policy=policy,
            collector=self.collector,
            governor=self.governor,
            host_loop=host_loop,
        )
        self._outcome: concurrent.futures.Future[ScriptOutcome] = concurrent.futures.Future()
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._task: asyncio.Task[Any] | None = None

    def settle(self, outcome: ScriptOutcome) -> bool:
        with self._lock:
            if self._outcome.done():
                return False
            self._outcome.set_result(outcome)
            return True

    def race(self, compiled: types.CodeType, started_at: float) -> ScriptOutcome:
        thread = threading.Thread(
            target=self._run, args=(compiled,), name="capsule-script", daemon=True
        )
        thread.start()
        try:
            remaining = self.policy.timeout_seconds - (time.monotonic() - started_at)
            return self._outcome.result(timeout=max(0.0, remaining))
        except concurrent.futures.TimeoutError:
            timed_out = self.settle(
                ScriptOutcome.failed(
                    ExecutionFailure(
                        code=TIMEOUT,
                        message=f"Execution timed out after {self.policy.timeout_ms}ms",
                    )
                )
            )
            if timed_out:
                logger.warning(
                    f"Script exceeded its {self.policy.timeout_ms}ms budget; abandoning execution"
                )
            return self._outcome.result()

    def finalize(self) -> None:
        self.governor.dispose()
        self._cancel_script()
        self.collector.seal()

    def _run(self, compiled: types.CodeType) -> None:
        try:
            with asyncio.Runner() as runner:
                runner.run(self._drive(compiled))
        except BaseException as exc:
            # Nothing above this thread can receive the error; it becomes the outcome.
            self.settle(ScriptOutcome.failed(normalize_failure(exc)))

    async def _drive(self, compiled: types.CodeType) -> None:
        loop = asyncio.get_running_loop()
        self.governor.attach(loop)
        try:
            entrypoint = self.context.load(compiled)
            with self._lock:
                if self._outcome.done():
                    return
                self._loop = loop
                self._task = loop.create_task(_contained(entrypoint))
            value = await self._task
        except _ScriptExit as exc:
            self.settle(ScriptOutcome.failed(normalize_failure(exc.__cause__)))
        except asyncio.CancelledError:
            self.settle(
                ScriptOutcome.failed(
                    ExecutionFailure(code=EXECUTION_ERROR, message="Script execution was cancelled")
                )
            )
        except Exception as exc:
            self.settle(ScriptOutcome.failed(normalize_failure(exc)))
        else:
            self.settle(self._encode(value))
        finally:
            self.governor.dispose()

    def _encode(self, value: Any) -> ScriptOutcome:
        if value is NO_VALUE:
            return ScriptOutcome.no_value()
        encoded = encode_result(value, max_chars=self.policy.max_result_chars)
        return ScriptOutcome.succeeded(encoded.value, truncated=encoded.truncated)

    def _on_timer_error(self, timer_id: int, error: BaseException) -> None:
        failure = async_callback_failure(timer_id, error)
        self.collector.emit("error", [f"Uncaught error in timer {timer_id}: {failure.message}"])
        if self.settle(ScriptOutcome.failed(failure)):
            logger.warning(f"Timer {timer_id} failed before the script settled: {failure.message}")
            self._cancel_script()

    def _cancel_script(self) -> None:
        with self._lock:
            loop, task = self._loop, self._task
        if loop is None or task is None or task.done():
            return
        # RuntimeError: the runner thread already closed its loop.
        with contextlib.suppress(RuntimeError):
            loop.call_soon_threadsafe(task.cancel)


class ScriptEngine:
    """Run caller-supplied scripts against a capability surface.

    ``execute`` always returns an ``ExecutionEnvelope``; script errors,
    timeouts and engine faults are reported in ``envelope.error`` and never
    raised. Each call gets its own scope, timers and logs, so one engine may
    serve many concurrent invocations.

    Example:
        ```python
        engine = ScriptEngine(surface, policy=EnginePolicy(timeout_ms=5_000))
        envelope = engine.execute("repos_list = await repos.list()\\nreturn len(repos_list)")
        ```
    """

    def __init__(
        self,
        surface: CapabilitySurface | None = None,
        *,
        policy: EnginePolicy | None = None,
    ) -> None:
        """Bind an engine to a capability surface and policy.

        Example:
            ```python
            engine = ScriptEngine(CapabilitySurface({"repos": Repos()}))
            ```
        """
        self._surface = surface if surface is not None else CapabilitySurface()
        self._policy = policy if policy is not None else EnginePolicy()

    @property
    def policy(self) -> EnginePolicy:
        """Return the policy applied to every invocation.

        Example:
            ```python
            timeout = engine.policy.timeout_ms
            ```
        """
        return self._policy

    @property
    def surface(self) -> CapabilitySurface:
        """Return the capability surface bound into scripts.

        Example:
            ```python
            doc = engine.surface.describe()
            ```
        """
        return self._surface

    def execute(self, code: str) -> ExecutionEnvelope:
        """Run one script and return its envelope; blocks for at most the timeout.

        Example:
            ```python
            envelope = engine.execute("return 1 + 1")
            assert envelope.ok and envelope.result == 2
            ```
        """
        return self._execute_guarded(code, time.monotonic(), None)

    async def execute_async(self, code: str) -> ExecutionEnvelope:
        """Run one script without blocking the calling event loop.

        Capability operations run on the calling loop. Each call gets its own
        thread, so concurrent calls never queue behind each other and the
        caller is released within the timeout.

        Example:
            ```python
            envelope = await engine.execute_async("return await repos.list()")
            ```
        """
        host_loop = asyncio.get_running_loop()
        started_at = time.monotonic()
        done: concurrent.futures.Future[ExecutionEnvelope] = concurrent.futures.Future()

        def dispatch() -> None:
            try:
                envelope = self._execute_guarded(code, started_at, host_loop)
            except BaseException as exc:
                with contextlib.suppress(concurrent.futures.InvalidStateError):
                    done.set_exception(exc)
            else:
                # InvalidStateError: the awaiting caller was cancelled.
                with contextlib.suppress(concurrent.futures.InvalidStateError):
                    done.set_result(envelope)

        threading.Thread(target=dispatch, name="capsule-dispatch", daemon=True).start()
        return await asyncio.wrap_future(done)

    def _execute_guarded(
        self,
        code: str,
        started_at: float,
        host_loop: asyncio.AbstractEventLoop | None,
    ) -> ExecutionEnvelope:
        try:
            return self._execute(code, started_at, host_loop)
        except Exception as exc:
            logger.exception("Script engine failed outside the script boundary")
            return fallback_envelope(
                started_at=started_at,
                timeout_ms=self._policy.timeout_ms,
                message=f"Engine failure ({type(exc).__name__})",
            )

    def _execute(
        self,
        code: str,
        started_at: float,
        host_loop: asyncio.AbstractEventLoop | None,
    ) -> ExecutionEnvelope:
        timeout_ms = self._policy.timeout_ms
        if not isinstance(code, str) or not code.strip():
            return build_envelope(
                ScriptOutcome.failed(ExecutionFailure(code=EMPTY_CODE, message="Code cannot be empty")),
                logs=[],
                truncated_logs=False,
                started_at=started_at,
                timeout_ms=timeout_ms,
            )

        logger.debug(f"Starting script invocation ({len(code)} chars, timeout={timeout_ms}ms)")
        invocation = _Invocation(self._surface, self._policy, host_loop)
        try:
            try:
                compiled = wrap_script(code)
            except (SyntaxError, ValueError, RecursionError) as exc:
                outcome = ScriptOutcome.failed(normalize_failure(exc))
            else:
                outcome = invocation.race(compiled, started_at)
        finally:
            invocation.finalize()

        logs, truncated_logs = invocation.collector.snapshot()
        envelope = build_envelope(
            outcome,
            logs=logs,
            truncated_logs=truncated_logs,
            started_at=started_at,
            timeout_ms=timeout_ms,
        )
        logger.debug(
            f"Script finished ok={envelope.ok} "
            f"code={envelope.error.code if envelope.error else None} "
            f"duration={envelope.meta.duration_ms}ms"
        )
        return envelope
