from __future__ import annotations

import ast
import asyncio
import builtins
import types
from typing import Any, Callable, Coroutine

from ..policy import EnginePolicy
from .capabilities import SCRIPT_BINDINGS, CapabilitySurface
from .output import OutputCollector, ScriptConsole, make_print
from .timers import TimerGovernor

SCRIPT_FILENAME = "<script>"
ENTRYPOINT_NAME = "__capsule_main__"
NO_VALUE_NAME = "__capsule_no_value__"


class _NoValue:
    __slots__ = ()

    def __repr__(self) -> str:
        return "<no value>"


NO_VALUE = _NoValue()

RESERVED_NAMES = SCRIPT_BINDINGS | {"__builtins__", "__name__", ENTRYPOINT_NAME, NO_VALUE_NAME}


class _ReturnRewriter(ast.NodeTransformer):
    """Point bare top-level ``return`` statements at the no-value sentinel."""

    def visit_Yield(self, node: ast.AST) -> ast.AST:
        raise SyntaxError(
            "'yield' is not allowed at the top level of a script",
            (SCRIPT_FILENAME, node.lineno, node.col_offset + 1, None),
        )

    visit_YieldFrom = visit_Yield

    def visit_Return(self, node: ast.Return) -> ast.Return:
        if node.value is None:
            node.value = ast.copy_location(ast.Name(id=NO_VALUE_NAME, ctx=ast.Load()), node)
        return node

    def _skip(self, node: ast.AST) -> ast.AST:
        return node

    visit_FunctionDef = _skip
    visit_AsyncFunctionDef = _skip
    visit_Lambda = _skip
    visit_ClassDef = _skip


def wrap_script(code: str) -> types.CodeType:
    """Compile script text into a module defining one async entrypoint.

    The script body becomes the body of ``async def`` so top-level ``await``
    and ``return`` are legal. Falling off the end, or a bare ``return``,
    returns ``NO_VALUE``. Raises ``SyntaxError`` for invalid scripts.

    Example:
        ```python
        compiled = wrap_script("x = await sleep(1)\\nreturn x")
        ```
    """
    module = ast.parse(code, filename=SCRIPT_FILENAME)
    template = ast.parse(f"async def {ENTRYPOINT_NAME}():\n    return {NO_VALUE_NAME}\n")
    entrypoint = template.body[0]
    rewriter = _ReturnRewriter()
    body = [rewriter.visit(statement) for statement in module.body]
    trailer = entrypoint.body[-1]
    last_line = body[-1].end_lineno if body and body[-1].end_lineno else 1
    ast.increment_lineno(trailer, last_line - trailer.lineno + 1)
    entrypoint.body = body + [trailer]
    ast.fix_missing_locations(template)
    return compile(template, SCRIPT_FILENAME, "exec")


def _safe_import_factory_mode(
    mode: str,
    allowed_imports: set[str],
    blocked_imports: set[str],
) -> Callable[..., Any]:
    def _safe_import(
        name: str,
        globals: dict[str, Any] | None = None,
        locals: dict[str, Any] | None = None,
        fromlist: Any = (),
        level: int = 0,
    ) -> Any:
        if level:
            raise ImportError("Relative imports are not available to scripts")
        if name == "importlib" or name.startswith("importlib."):
            raise ImportError("Import 'importlib' is blocked by policy")

        root = name.split(".")[0]
        if mode == "allow":
            if root not in allowed_imports:
                raise ImportError(f"Import '{name}' is not allowed by policy")
        elif root in blocked_imports:
            raise ImportError(f"Import '{name}' is blocked by policy")
        return __import__(name, globals, locals, fromlist, level)

    return _safe_import


def _build_safe_builtins(
    mode: str,
    allowed_builtins: set[str],
    blocked_builtins: set[str],
    safe_import: Any,
) -> dict[str, Any]:
    safe = {}
    for name, value in vars(builtins).items():
        if mode == "allow":
            if name not in allowed_builtins:
                continue
        elif name in blocked_builtins:
            continue
        safe[name] = value

    safe["__import__"] = safe_import
    return safe


async def _sleep(delay_ms: float = 0) -> None:
    await asyncio.sleep(max(0.0, float(delay_ms)) / 1000)


class ExecutionContext:
    """Isolated scope for one invocation.

    Binds the capability namespaces, the console, the timer primitives and
    the help accessor into a fresh globals dict with policy-gated builtins.
    Nothing in this scope is shared with another invocation.

    Restricted builtins scope what a script is handed; they are not a
    security boundary. CPython object introspection can still reach host
    globals, so only run scripts from callers you would let call the
    capability surface directly.

    Example:
        ```python
        context = ExecutionContext(surface=surface, policy=policy, collector=collector, governor=governor)
        entrypoint = context.load(wrap_script("return 1"))
        ```
    """

    def __init__(
        self,
        *,
        surface: CapabilitySurface,
        policy: EnginePolicy,
        collector: OutputCollector,
        governor: TimerGovernor,
        host_loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        """Build the scope for one invocation.

        Example:
            ```python
            context = ExecutionContext(surface=surface, policy=EnginePolicy(), collector=c, governor=g)
            ```
        """
        self._surface = surface
        self._policy = policy
        self._host_loop = host_loop
        self.namespace = self._build_namespace(collector, governor)

    def _build_namespace(self, collector: OutputCollector, governor: TimerGovernor) -> dict[str, Any]:
        policy = self._policy
        safe_import = _safe_import_factory_mode(
            policy.mode, set(policy.allowed_imports), set(policy.blocked_imports)
        )
        safe_builtins = _build_safe_builtins(
            policy.mode, set(policy.allowed_builtins), set(policy.blocked_builtins), safe_import
        )
        safe_builtins["print"] = make_print(collector)

        namespace: dict[str, Any] = {
            key: value for key, value in policy.extra_globals.items() if key not in RESERVED_NAMES
        }
        namespace.update(self._surface.bind(self._host_loop))
        namespace.update(
            {
                "__builtins__": safe_builtins,
                "__name__": "__script__",
                NO_VALUE_NAME: NO_VALUE,
                "console": ScriptConsole(collector),
                "help": self._surface.describe,
                "set_timeout": governor.set_timeout,
                "clear_timeout": governor.clear_timeout,
                "set_interval": governor.set_interval,
                "clear_interval": governor.clear_interval,
                "sleep": _sleep,
                "gather": asyncio.gather,
            }
        )
        return namespace

    def load(self, compiled: types.CodeType) -> Callable[[], Coroutine[Any, Any, Any]]:
        """Define the wrapped entrypoint in this scope and return it.

        Example:
            ```python
            entrypoint = context.load(wrap_script("return 2"))
            coroutine = entrypoint()
            ```
        """
        exec(compiled, self.namespace)
        return self.namespace.pop(ENTRYPOINT_NAME)
