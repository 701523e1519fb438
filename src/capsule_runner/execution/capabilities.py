from __future__ import annotations

import asyncio
import copy
import inspect
import keyword
from collections.abc import Mapping, Sequence
from types import SimpleNamespace
from typing import Any, Callable, Coroutine

HELP_VERSION = 1

SCRIPT_BINDINGS = frozenset(
    {
        "console",
        "help",
        "set_timeout",
        "clear_timeout",
        "set_interval",
        "clear_interval",
        "sleep",
        "gather",
    }
)

ENVELOPE_HELP: dict[str, Any] = {
    "ok": "true on success, false on failure",
    "result": "returned value from your code, or null when no return value exists",
    "logs": "captured console output entries from this execution",
    "error": "null on success, otherwise { code, message, stack?, details? }",
    "meta": {
        "timeoutMs": "execution timeout limit in milliseconds",
        "durationMs": "elapsed runtime in milliseconds",
        "truncatedResult": "true when result is truncated to output limit",
        "truncatedLogs": "true when logs are truncated to output limit",
        "resultWasUndefined": "true when code finished without an explicit return value",
    },
}

BINDINGS_HELP: list[dict[str, str]] = [
    {"signature": "console.log(*values)", "description": "Capture a log entry (also used by print)"},
    {"signature": "console.info(*values)", "description": "Capture an info entry"},
    {"signature": "console.warn(*values)", "description": "Capture a warning entry"},
    {"signature": "console.error(*values)", "description": "Capture an error entry"},
    {"signature": "set_timeout(handler, delay_ms?, *args)", "description": "Run handler once after a delay"},
    {"signature": "set_interval(handler, delay_ms?, *args)", "description": "Run handler repeatedly"},
    {"signature": "clear_timeout(timer_id)", "description": "Cancel a pending timeout"},
    {"signature": "clear_interval(timer_id)", "description": "Cancel a repeating timer"},
    {"signature": "await sleep(delay_ms)", "description": "Suspend the script for a number of milliseconds"},
    {"signature": "await gather(*awaitables)", "description": "Await several calls concurrently"},
    {"signature": "help(namespace?)", "description": "Return this document, or one namespace's operations"},
]

AsyncOperation = Callable[..., Coroutine[Any, Any, Any]]


class CapabilityNamespace:
    """Base class for a group of async operations exposed to scripts.

    Every public ``async def`` method becomes ``<namespace>.<method>`` inside
    the script; the first docstring line becomes its help description.

    Example:
        ```python
        class Repos(CapabilityNamespace):
            async def list(self) -> list[dict]:
                \"\"\"List registered repositories\"\"\"
                return await store.list_repos()

        surface = CapabilitySurface({"repos": Repos()})
        ```
    """

    def operations(self) -> dict[str, AsyncOperation]:
        """Return the public coroutine methods of this namespace.

        Example:
            ```python
            ops = Repos().operations()
            ```
        """
        found: dict[str, AsyncOperation] = {}
        for name in dir(type(self)):
            if name.startswith("_"):
                continue
            attr = getattr(self, name)
            if inspect.iscoroutinefunction(attr):
                found[name] = attr
        return found


def _collect_operations(namespace: str, source: Any) -> dict[str, AsyncOperation]:
    if isinstance(source, CapabilityNamespace):
        found = source.operations()
    elif isinstance(source, Mapping):
        found = dict(source)
    else:
        found = {
            name: getattr(source, name)
            for name in dir(source)
            if not name.startswith("_") and inspect.iscoroutinefunction(getattr(source, name))
        }
    if not found:
        raise ValueError(f"Capability namespace '{namespace}' exposes no async operations")
    for name, func in found.items():
        if not isinstance(name, str) or not name.isidentifier() or name.startswith("_"):
            raise ValueError(f"Invalid operation name {name!r} in namespace '{namespace}'")
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"Operation '{namespace}.{name}' must be an async function")
    return found


def _format_signature(namespace: str, name: str, func: AsyncOperation) -> str:
    try:
        parameters = inspect.signature(func).parameters.values()
    except (TypeError, ValueError):
        return f"{namespace}.{name}(...)"
    rendered: list[str] = []
    for param in parameters:
        if param.kind is inspect.Parameter.VAR_POSITIONAL:
            rendered.append(f"*{param.name}")
        elif param.kind is inspect.Parameter.VAR_KEYWORD:
            rendered.append(f"**{param.name}")
        elif param.default is not inspect.Parameter.empty:
            rendered.append(f"{param.name}?")
        else:
            rendered.append(param.name)
    return f"{namespace}.{name}({', '.join(rendered)})"


def _bind_operation(
    namespace: str,
    name: str,
    func: AsyncOperation,
    host_loop: asyncio.AbstractEventLoop | None = None,
) -> AsyncOperation:
    # Plain wrapper so scripts reach the operation, not the object behind it.
    async def call(*args: Any, **kwargs: Any) -> Any:
        if host_loop is None or host_loop is asyncio.get_running_loop():
            return await func(*args, **kwargs)
        # Run on the host loop that owns the surface's locks, sessions and pools.
        return await asyncio.wrap_future(
            asyncio.run_coroutine_threadsafe(func(*args, **kwargs), host_loop)
        )

    call.__name__ = name
    call.__qualname__ = f"{namespace}.{name}"
    call.__doc__ = inspect.getdoc(func)
    return call


class CapabilitySurface:
    """Host-supplied async operations grouped into named namespaces.

    The surface is shared across invocations and never mutated by the
    engine; each invocation gets fresh namespace views from ``bind``.

    Operations run on the event loop of the caller of
    ``ScriptEngine.execute_async``, even though the script itself runs on a
    private loop, so they may hold loop-bound state such as an
    ``asyncio.Lock`` or a client session. ``ScriptEngine.execute`` has no
    caller loop; operations then run on the invocation's own loop and must
    not rely on state bound to another loop.

    Example:
        ```python
        async def list_repos() -> list[dict]:
            return [{"id": "r1"}]

        surface = CapabilitySurface({"repos": {"list": list_repos}})
        envelope = ScriptEngine(surface).execute("return await repos.list()")
        ```
    """

    def __init__(
        self,
        namespaces: Mapping[str, Any] | None = None,
        *,
        examples: Sequence[Mapping[str, str]] = (),
    ) -> None:
        """Validate and index the host namespaces.

        Example:
            ```python
            surface = CapabilitySurface({"git": GitApi()}, examples=[{"title": "Status", "code": "..."}])
            ```
        """
        self._namespaces: dict[str, dict[str, AsyncOperation]] = {}
        for name, source in (namespaces or {}).items():
            if not isinstance(name, str) or not name.isidentifier() or keyword.iskeyword(name):
                raise ValueError(f"Invalid capability namespace name: {name!r}")
            if name in SCRIPT_BINDINGS or name.startswith("_"):
                raise ValueError(f"Capability namespace '{name}' collides with a reserved binding")
            self._namespaces[name] = _collect_operations(name, source)
        self._examples = [
            {"title": str(example["title"]), "code": str(example["code"])} for example in examples
        ]

    @property
    def namespaces(self) -> tuple[str, ...]:
        """Return namespace names in registration order.

        Example:
            ```python
            assert surface.namespaces == ("repos", "git")
            ```
        """
        return tuple(self._namespaces)

    def bind(self, host_loop: asyncio.AbstractEventLoop | None = None) -> dict[str, SimpleNamespace]:
        """Build fresh per-invocation namespace views for the script scope.

        When ``host_loop`` is given, every operation call is dispatched to it.

        Example:
            ```python
            scope.update(surface.bind(asyncio.get_running_loop()))
            ```
        """
        return {
            namespace: SimpleNamespace(
                **{
                    name: _bind_operation(namespace, name, func, host_loop)
                    for name, func in operations.items()
                }
            )
            for namespace, operations in self._namespaces.items()
        }

    def describe(self, namespace: str | None = None) -> Any:
        """Return the help document, or one namespace's method list.

        Example:
            ```python
            doc = surface.describe()
            repos_methods = surface.describe("repos")
            ```
        """
        apis = {
            ns: [
                {
                    "signature": _format_signature(ns, name, func),
                    "description": (inspect.getdoc(func) or "").split("\n", 1)[0],
                }
                for name, func in sorted(operations.items())
            ]
            for ns, operations in self._namespaces.items()
        }
        if namespace is not None:
            if namespace not in apis:
                raise LookupError(f"Unknown capability namespace: {namespace!r}")
            return apis[namespace]
        return {
            "version": HELP_VERSION,
            "envelope": copy.deepcopy(ENVELOPE_HELP),
            "bindings": copy.deepcopy(BINDINGS_HELP),
            "apis": apis,
            "examples": copy.deepcopy(self._examples),
        }

    def tool_description(self) -> str:
        """Render the markdown description published for an execute tool.

        Example:
            ```python
            text = surface.tool_description()
            ```
        """
        lines = [
            "Run Python scripts against the host capability APIs.",
            "",
            "Execution always returns a structured JSON envelope:",
            "`{ ok, result, logs, error, meta }`",
            "",
            "In-sandbox discovery helper:",
            "- `help()`",
        ]
        for namespace, methods in self.describe()["apis"].items():
            lines.extend(["", f"`{namespace}` APIs:"])
            lines.extend(f"- `{m['signature']}` - {m['description']}" for m in methods)
        lines.extend(["", "Use `return` in your code to set the envelope `result` field."])
        return "\n".join(lines)
