from pathlib import Path

import pytest

from capsule_runner import EnginePolicy, run_code
from capsule_runner.policy import DEFAULT_BLOCKED_IMPORTS, DEFAULT_TIMEOUT_MS


def test_policy_file_path_blocks_imports_and_builtins(tmp_path: Path) -> None:
    policy_file = tmp_path / "policy.toml"
    policy_file.write_text(
        (
            "[policy]\n"
            "mode = \"restrict\"\n"
            "timeout_ms = 4000\n"
            "blocked_imports = [\"math\"]\n"
            "blocked_builtins = [\"len\"]\n"
            "\n"
            "[policy.extra_globals]\n"
            "answer = 42\n"
        ),
        encoding="utf-8",
    )

    import_result = run_code("import math", policy_file=str(policy_file))
    assert import_result.ok is False
    assert "blocked by policy" in import_result.error.message
    assert import_result.meta.timeout_ms == 4000

    builtin_result = run_code("return len([1, 2, 3])", policy_file=str(policy_file))
    assert builtin_result.ok is False
    assert "name 'len' is not defined" in builtin_result.error.message

    globals_result = run_code("return answer", policy_file=str(policy_file))
    assert globals_result.ok is True
    assert globals_result.result == 42


def test_allow_mode_allows_only_selected_symbols() -> None:
    policy = EnginePolicy(
        mode="allow",
        allowed_imports=["math"],
        allowed_builtins=["len", "sum", "range"],
        extra_globals={"helper": 9},
    )

    allowed = run_code("import math\nreturn math.sqrt(16) + helper + sum(range(3))", policy=policy)
    assert allowed.ok is True
    assert allowed.result == 16.0

    blocked_import = run_code("import json", policy=policy)
    assert blocked_import.ok is False
    assert "not allowed by policy" in blocked_import.error.message

    blocked_builtin = run_code("return abs(-1)", policy=policy)
    assert blocked_builtin.ok is False
    assert "name 'abs' is not defined" in blocked_builtin.error.message


def test_extra_globals_cannot_replace_bindings() -> None:
    policy = EnginePolicy(extra_globals={"console": "fake", "limit": 3})
    result = run_code("console.log('real')\nreturn limit", policy=policy)
    assert result.ok is True
    assert result.result == 3
    assert [entry.message for entry in result.logs] == ["real"]


def test_missing_policy_keys_use_defaults(tmp_path: Path) -> None:
    policy_file = tmp_path / "policy.toml"
    policy_file.write_text("max_timers = 5\n", encoding="utf-8")

    policy = EnginePolicy.from_file(str(policy_file))
    assert policy.max_timers == 5
    assert policy.timeout_ms == DEFAULT_TIMEOUT_MS
    assert policy.blocked_imports == DEFAULT_BLOCKED_IMPORTS
    assert policy.config_path == str(policy_file)


@pytest.mark.parametrize(
    "kwargs, match",
    [
        ({"mode": "deny"}, "mode must be 'allow' or 'restrict'"),
        ({"timeout_ms": 0}, "'timeout_ms' must be a positive integer"),
        ({"max_timers": -1}, "'max_timers' must be a positive integer"),
        ({"max_result_chars": True}, "'max_result_chars' must be a positive integer"),
        ({"extra_globals": [("x", 1)]}, "'extra_globals' must be a mapping"),
    ],
)
def test_policy_validation(kwargs: dict, match: str) -> None:
    with pytest.raises(ValueError, match=match):
        EnginePolicy(**kwargs)


def test_policy_file_rejects_bad_lists(tmp_path: Path) -> None:
    policy_file = tmp_path / "policy.toml"
    policy_file.write_text("[policy]\nblocked_imports = \"os\"\n", encoding="utf-8")

    with pytest.raises(ValueError, match="'blocked_imports' must be a list of strings"):
        EnginePolicy.from_file(str(policy_file))


def test_run_code_rejects_policy_and_policy_file_together(tmp_path: Path) -> None:
    policy_file = tmp_path / "policy.toml"
    policy_file.write_text("[policy]\nmode = \"restrict\"\n", encoding="utf-8")

    with pytest.raises(ValueError, match="Provide either 'policy' or 'policy_file'"):
        run_code("return 1", policy=EnginePolicy(), policy_file=str(policy_file))
