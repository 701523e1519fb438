from .capabilities import CapabilityNamespace, CapabilitySurface
from .engine import ScriptEngine
from .errors import ExecutionError
from .types import ExecutionEnvelope, ExecutionFailure, LogEntry

__all__ = [
    "CapabilityNamespace",
    "CapabilitySurface",
    "ExecutionEnvelope",
    "ExecutionError",
    "ExecutionFailure",
    "LogEntry",
    "ScriptEngine",
]
