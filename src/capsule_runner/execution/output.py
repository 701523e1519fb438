from __future__ import annotations

import threading
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any, Callable

from .encoder import best_effort_preview, safe_serialize
from .types import LogEntry, LogLevel

LOG_LEVELS: tuple[LogLevel, ...] = ("log", "info", "warn", "error")
TRUNCATION_SUFFIX = "... [truncated]"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def format_log_value(value: Any) -> str:
    """Render one console argument as text.

    Strings pass through; anything else goes through the result encoder's
    serializer and falls back to ``repr``/``str`` when that fails.

    Example:
        ```python
        assert format_log_value({"a": 1}) == '{"a": 1}'
        ```
    """
    if isinstance(value, str):
        return value
    try:
        return safe_serialize(value)
    except Exception:
        return best_effort_preview(value)


class OutputCollector:
    """Ordered, bounded log capture for one invocation.

    Truncation runs in a fixed order: entry-count cap, per-entry character
    cap, then the cumulative character budget. The first entry that would
    overflow the budget ends capture. Every cut sets ``truncated``.

    Example:
        ```python
        collector = OutputCollector(max_entries=200)
        collector.emit("info", ["hello", 1])
        entries, truncated = collector.snapshot()
        ```
    """

    def __init__(
        self,
        *,
        max_entries: int = 200,
        max_entry_chars: int = 2_000,
        max_total_chars: int = 20_000,
    ) -> None:
        """Create an empty collector with the given limits.

        Example:
            ```python
            collector = OutputCollector(max_entries=10, max_entry_chars=100, max_total_chars=500)
            ```
        """
        self._max_entries = max_entries
        self._max_entry_chars = max_entry_chars
        self._max_total_chars = max_total_chars
        self._entries: list[LogEntry] = []
        self._total_chars = 0
        self._truncated = False
        self._budget_exhausted = False
        self._sealed = False
        self._lock = threading.Lock()

    @property
    def truncated(self) -> bool:
        """Return whether any entry was dropped or shortened.

        Example:
            ```python
            if collector.truncated: ...
            ```
        """
        return self._truncated

    def emit(self, level: LogLevel, values: Sequence[Any], sep: str = " ") -> None:
        """Capture one entry built from console arguments.

        Example:
            ```python
            collector.emit("warn", ["disk at", 91, "%"])
            ```
        """
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level: {level!r}")
        timestamp = _timestamp()
        with self._lock:
            if self._sealed:
                return
            if self._budget_exhausted or len(self._entries) >= self._max_entries:
                self._truncated = True
                return

        # Formatting may run script-defined __repr__ code, which may itself log.
        message = sep.join(format_log_value(value) for value in values)

        with self._lock:
            if self._sealed:
                return
            if len(self._entries) >= self._max_entries:
                self._truncated = True
                return
            if len(message) > self._max_entry_chars:
                message = message[: self._max_entry_chars] + TRUNCATION_SUFFIX
                self._truncated = True
            if self._budget_exhausted or self._total_chars + len(message) > self._max_total_chars:
                # Latched: nothing after the first overflow is kept.
                self._budget_exhausted = True
                self._truncated = True
                return
            self._total_chars += len(message)
            self._entries.append(LogEntry(level=level, message=message, timestamp=timestamp))

    def seal(self) -> None:
        """Stop accepting entries; later output from an abandoned script is ignored.

        Example:
            ```python
            collector.seal()
            ```
        """
        with self._lock:
            self._sealed = True

    def snapshot(self) -> tuple[list[LogEntry], bool]:
        """Return a copy of the captured entries and the truncation flag.

        Example:
            ```python
            entries, truncated = collector.snapshot()
            ```
        """
        with self._lock:
            return list(self._entries), self._truncated


class ScriptConsole:
    """Console object bound into the script scope.

    Example:
        ```python
        console = ScriptConsole(collector)
        console.info("loaded", 3, "repos")
        ```
    """

    __slots__ = ("_collector",)

    def __init__(self, collector: OutputCollector) -> None:
        """Wire the console to a collector.

        Example:
            ```python
            console = ScriptConsole(OutputCollector())
            ```
        """
        self._collector = collector

    def log(self, *values: Any) -> None:
        """Capture a ``log`` entry.

        Example:
            ```python
            console.log("value", 1)
            ```
        """
        self._collector.emit("log", values)

    def info(self, *values: Any) -> None:
        """Capture an ``info`` entry.

        Example:
            ```python
            console.info("ready")
            ```
        """
        self._collector.emit("info", values)

    def warn(self, *values: Any) -> None:
        """Capture a ``warn`` entry.

        Example:
            ```python
            console.warn("slow call")
            ```
        """
        self._collector.emit("warn", values)

    def error(self, *values: Any) -> None:
        """Capture an ``error`` entry.

        Example:
            ```python
            console.error("failed", {"id": 1})
            ```
        """
        self._collector.emit("error", values)

    def __repr__(self) -> str:
        return "<console>"


def make_print(collector: OutputCollector) -> Callable[..., None]:
    """Build a ``print`` replacement that writes ``log`` entries.

    Example:
        ```python
        print_ = make_print(collector)
        print_("a", "b", sep="-")
        ```
    """

    def _print(
        *values: Any,
        sep: str | None = " ",
        end: str | None = "\n",
        file: Any = None,
        flush: bool = False,
    ) -> None:
        collector.emit("log", values, sep=" " if sep is None else sep)

    return _print
