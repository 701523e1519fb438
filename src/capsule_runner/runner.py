from __future__ import annotations

from .execution.capabilities import CapabilitySurface
from .execution.engine import ScriptEngine
from .execution.types import ExecutionEnvelope
from .policy import EnginePolicy


def _resolve_policy(policy: EnginePolicy | None, policy_file: str | None) -> EnginePolicy:
    """Resolve the effective policy object for a run.

    Example:
        ```python
        policy = _resolve_policy(None, "/tmp/policy.toml")
        ```
    """
    if policy is not None and policy_file is not None:
        raise ValueError("Provide either 'policy' or 'policy_file', not both")
    if policy is None and policy_file is not None:
        return EnginePolicy.from_file(policy_file)
    if policy is None:
        return EnginePolicy()
    if policy.config_path is not None:
        return EnginePolicy.from_file(policy.config_path)
    return policy


def run_code(
    code: str,
    surface: CapabilitySurface | None = None,
    policy: EnginePolicy | None = None,
    policy_file: str | None = None,
) -> ExecutionEnvelope:
    """Execute one script against a capability surface and return its envelope.

    Example:
        ```python
        from capsule_runner import run_code
        envelope = run_code("console.log('hi')\\nreturn 2 + 2")
        assert envelope.result == 4
        ```
    """
    engine = ScriptEngine(surface, policy=_resolve_policy(policy, policy_file))
    return engine.execute(code)


async def run_code_async(
    code: str,
    surface: CapabilitySurface | None = None,
    policy: EnginePolicy | None = None,
    policy_file: str | None = None,
) -> ExecutionEnvelope:
    """Async variant of ``run_code`` that keeps the host event loop free.

    Example:
        ```python
        envelope = await run_code_async("return await repos.list()", surface=surface)
        ```
    """
    engine = ScriptEngine(surface, policy=_resolve_policy(policy, policy_file))
    return await engine.execute_async(code)
