from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


def _default_policy_path() -> Path:
    """Return bundled default policy TOML path.

    Example:
        ```python
        path = _default_policy_path()
        ```
    """
    return Path(__file__).with_name("default_policy.toml")


def _read_policy_toml(path: Path) -> dict[str, Any]:
    """Read policy TOML and return normalized policy dictionary.

    Example:
        ```python
        raw = _read_policy_toml(Path("/tmp/policy.toml"))
        ```
    """
    if not path.exists():
        return {
            "mode": "restrict",
            "timeout_ms": 30_000,
            "max_timers": 100,
            "max_log_entries": 200,
            "max_log_entry_chars": 2_000,
            "max_log_total_chars": 20_000,
            "max_result_chars": 50_000,
            "blocked_imports": ["os", "sys", "subprocess", "socket", "ctypes", "importlib", "asyncio"],
            "blocked_builtins": ["eval", "exec", "open", "compile", "breakpoint", "input", "exit", "quit"],
            "allowed_imports": [],
            "allowed_builtins": [],
        }
    raw = tomllib.loads(path.read_text(encoding="utf-8"))
    policy_obj = raw.get("policy", raw)
    if not isinstance(policy_obj, dict):
        raise ValueError("Policy config must be a TOML table")
    return policy_obj


def _list_of_str(value: Any, field_name: str) -> list[str]:
    """Validate and normalize a list-of-strings policy field.

    Example:
        ```python
        blocked = _list_of_str(["os", "subprocess"], "blocked_imports")
        ```
    """
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"'{field_name}' must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ValueError(f"'{field_name}' must contain only strings")
        out.append(item)
    return out


def _positive_int(value: Any, field_name: str) -> int:
    """Validate a strictly positive integer limit.

    Example:
        ```python
        limit = _positive_int(100, "max_timers")
        ```
    """
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"'{field_name}' must be a positive integer")
    return value


_DEFAULT_POLICY_RAW = _read_policy_toml(_default_policy_path())
DEFAULT_MODE = str(_DEFAULT_POLICY_RAW.get("mode", "restrict"))
DEFAULT_TIMEOUT_MS = int(_DEFAULT_POLICY_RAW.get("timeout_ms", 30_000))
DEFAULT_MAX_TIMERS = int(_DEFAULT_POLICY_RAW.get("max_timers", 100))
DEFAULT_MAX_LOG_ENTRIES = int(_DEFAULT_POLICY_RAW.get("max_log_entries", 200))
DEFAULT_MAX_LOG_ENTRY_CHARS = int(_DEFAULT_POLICY_RAW.get("max_log_entry_chars", 2_000))
DEFAULT_MAX_LOG_TOTAL_CHARS = int(_DEFAULT_POLICY_RAW.get("max_log_total_chars", 20_000))
DEFAULT_MAX_RESULT_CHARS = int(_DEFAULT_POLICY_RAW.get("max_result_chars", 50_000))
DEFAULT_BLOCKED_IMPORTS = _list_of_str(
    _DEFAULT_POLICY_RAW.get("blocked_imports", []), "blocked_imports"
)
DEFAULT_BLOCKED_BUILTINS = _list_of_str(
    _DEFAULT_POLICY_RAW.get("blocked_builtins", []), "blocked_builtins"
)
DEFAULT_ALLOWED_IMPORTS = _list_of_str(
    _DEFAULT_POLICY_RAW.get("allowed_imports", []), "allowed_imports"
)
DEFAULT_ALLOWED_BUILTINS = _list_of_str(
    _DEFAULT_POLICY_RAW.get("allowed_builtins", []), "allowed_builtins"
)

_LIMIT_FIELDS = (
    "timeout_ms",
    "max_timers",
    "max_log_entries",
    "max_log_entry_chars",
    "max_log_total_chars",
    "max_result_chars",
)


@dataclass(slots=True)
class EnginePolicy:
    """Execution policy and resource quotas for one script engine.

    Example:
        ```python
        policy = EnginePolicy(timeout_ms=5_000, max_timers=10, blocked_imports=["os"])
        ```
    """

    mode: str = DEFAULT_MODE
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_timers: int = DEFAULT_MAX_TIMERS
    max_log_entries: int = DEFAULT_MAX_LOG_ENTRIES
    max_log_entry_chars: int = DEFAULT_MAX_LOG_ENTRY_CHARS
    max_log_total_chars: int = DEFAULT_MAX_LOG_TOTAL_CHARS
    max_result_chars: int = DEFAULT_MAX_RESULT_CHARS
    allowed_imports: list[str] = field(default_factory=lambda: DEFAULT_ALLOWED_IMPORTS.copy())
    blocked_imports: list[str] = field(default_factory=lambda: DEFAULT_BLOCKED_IMPORTS.copy())
    allowed_builtins: list[str] = field(default_factory=lambda: DEFAULT_ALLOWED_BUILTINS.copy())
    blocked_builtins: list[str] = field(default_factory=lambda: DEFAULT_BLOCKED_BUILTINS.copy())
    extra_globals: dict[str, Any] = field(default_factory=dict)
    config_path: str | None = None

    def __post_init__(self) -> None:
        """Validate mode and limits after dataclass initialization.

        Example:
            ```python
            EnginePolicy(mode="restrict")
            ```
        """
        if self.mode not in {"allow", "restrict"}:
            raise ValueError("mode must be 'allow' or 'restrict'")
        for name in _LIMIT_FIELDS:
            _positive_int(getattr(self, name), name)
        if not isinstance(self.extra_globals, dict):
            raise ValueError("'extra_globals' must be a mapping")

    @property
    def timeout_seconds(self) -> float:
        """Return the race deadline in seconds.

        Example:
            ```python
            EnginePolicy(timeout_ms=1500).timeout_seconds  # 1.5
            ```
        """
        return self.timeout_ms / 1000

    @classmethod
    def from_file(cls, config_path: str) -> "EnginePolicy":
        """Create a policy instance from a TOML file.

        Example:
            ```python
            policy = EnginePolicy.from_file("/tmp/policy.toml")
            ```
        """
        raw = _read_policy_toml(Path(config_path))
        extra_globals_raw = raw.get("extra_globals", {})
        if not isinstance(extra_globals_raw, dict):
            raise ValueError("'extra_globals' must be a TOML table")
        return cls(
            mode=str(raw.get("mode", DEFAULT_MODE)),
            timeout_ms=raw.get("timeout_ms", DEFAULT_TIMEOUT_MS),
            max_timers=raw.get("max_timers", DEFAULT_MAX_TIMERS),
            max_log_entries=raw.get("max_log_entries", DEFAULT_MAX_LOG_ENTRIES),
            max_log_entry_chars=raw.get("max_log_entry_chars", DEFAULT_MAX_LOG_ENTRY_CHARS),
            max_log_total_chars=raw.get("max_log_total_chars", DEFAULT_MAX_LOG_TOTAL_CHARS),
            max_result_chars=raw.get("max_result_chars", DEFAULT_MAX_RESULT_CHARS),
            allowed_imports=_list_of_str(raw.get("allowed_imports", []), "allowed_imports"),
            blocked_imports=_list_of_str(
                raw.get("blocked_imports", DEFAULT_BLOCKED_IMPORTS), "blocked_imports"
            ),
            allowed_builtins=_list_of_str(
                raw.get("allowed_builtins", []), "allowed_builtins"
            ),
            blocked_builtins=_list_of_str(
                raw.get("blocked_builtins", DEFAULT_BLOCKED_BUILTINS), "blocked_builtins"
            ),
            extra_globals=extra_globals_raw,
            config_path=config_path,
        )
