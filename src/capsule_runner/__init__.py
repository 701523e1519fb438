from .execution.capabilities import CapabilityNamespace, CapabilitySurface
from .execution.engine import ScriptEngine
from .execution.errors import ExecutionError
from .execution.types import ExecutionEnvelope, ExecutionFailure, LogEntry
from .policy import EnginePolicy
from .runner import run_code, run_code_async

__all__ = [
    "CapabilityNamespace",
    "CapabilitySurface",
    "EnginePolicy",
    "ExecutionEnvelope",
    "ExecutionError",
    "ExecutionFailure",
    "LogEntry",
    "ScriptEngine",
    "run_code",
    "run_code_async",
]
