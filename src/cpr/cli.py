from __future__ import annotations

import argparse
import dataclasses
import importlib
import json
import sys
from collections.abc import Mapping
from functools import partial
from pathlib import Path
from typing import Any, Never, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.pretty import Pretty
from rich.table import Table
from rich_argparse import RawTextRichHelpFormatter
from capsule_runner import CapabilitySurface, EnginePolicy, ExecutionEnvelope, ScriptEngine

_CONSOLE = Console(no_color=False)

_LEVEL_STYLES = {"log": "white", "info": "cyan", "warn": "yellow", "error": "bold red"}


class _CLIHelpFormatter(RawTextRichHelpFormatter):
    """Rich formatter with explicit high-contrast CLI styles.

    Example:
        ```python
        parser = argparse.ArgumentParser(formatter_class=_CLIHelpFormatter)
        ```
    """

    styles = {
        "argparse.args": "bold cyan",
        "argparse.groups": "bold magenta",
        "argparse.help": "white",
        "argparse.metavar": "bold yellow",
        "argparse.prog": "bold bright_blue",
        "argparse.syntax": "bold bright_white",
        "argparse.text": "bright_white",
    }


_HELP_FORMATTER = partial(
    _CLIHelpFormatter,
    max_help_position=34,
    width=120,
)


class _RichArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that renders errors via Rich.

    Example:
        ```python
        parser = _RichArgumentParser(prog="python -m cpr")
        ```
    """

    def error(self, message: str) -> Never:
        """Render parse errors with Rich and exit.

        Example:
            ```python
            # parser.error("invalid usage")
            ```
        """
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {message}", border_style="red"))
        self.print_help()
        raise SystemExit(2)


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser for running and describing scripts.

    Example:
        ```python
        parser = build_parser()
        ```
    """
    parser = _RichArgumentParser(
        prog="python -m cpr",
        description=(
            "capsule-runner CLI\n"
            "Run Python scripts against a capability surface and print the envelope.\n"
            "Scripts may use top-level `await` and `return`."
        ),
        epilog=(
            "Quick Examples:\n"
            "  python -m cpr run script.py\n"
            "  python -m cpr run -c \"return 1 + 1\"\n"
            "  echo \"console.log('hi')\" | python -m cpr run -\n"
            "  python -m cpr run script.py --capabilities myapp.caps:build_surface --json\n"
            "  python -m cpr describe --capabilities myapp.caps:build_surface --markdown"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    sub = parser.add_subparsers(
        dest="command",
        required=True,
        parser_class=_RichArgumentParser,
    )

    run_cmd = sub.add_parser(
        "run",
        help="Execute one script and print its envelope.",
        description=(
            "Execute a script file, stdin (`-`), or inline code (`-c`).\n"
            "Exit code is 0 when the envelope is ok, 1 otherwise."
        ),
        formatter_class=_HELP_FORMATTER,
    )
    run_cmd.add_argument("script", nargs="?", help="Script path, or `-` to read stdin.")
    run_cmd.add_argument("-c", "--code", help="Inline script text.")
    _add_capabilities_argument(run_cmd)
    run_cmd.add_argument(
        "--policy-file",
        help="TOML policy file ([policy] table) overriding the bundled defaults.",
    )
    run_cmd.add_argument(
        "--timeout-ms",
        type=int,
        help="Override the execution timeout in milliseconds.",
    )
    run_cmd.add_argument(
        "--json",
        action="store_true",
        help="Print the raw JSON envelope instead of rich panels.",
    )

    describe_cmd = sub.add_parser(
        "describe",
        help="Print the capability help document.",
        description="Print what `help()` returns inside scripts for the given capabilities.",
        formatter_class=_HELP_FORMATTER,
    )
    _add_capabilities_argument(describe_cmd)
    describe_cmd.add_argument(
        "--markdown",
        action="store_true",
        help="Print the markdown tool description instead of the JSON document.",
    )
    return parser


def _add_capabilities_argument(command: argparse.ArgumentParser) -> None:
    command.add_argument(
        "--capabilities",
        metavar="MODULE:ATTR",
        help=(
            "Import path of a CapabilitySurface, a mapping of namespaces,\n"
            "or a zero-argument factory returning either."
        ),
    )


def load_surface(target: str | None) -> CapabilitySurface:
    """Resolve a ``MODULE:ATTR`` reference into a capability surface.

    Example:
        ```python
        surface = load_surface("myapp.caps:build_surface")
        ```
    """
    if not target:
        return CapabilitySurface()
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Capabilities must be given as MODULE:ATTR, got {target!r}")
    obj: Any = getattr(importlib.import_module(module_name), attr)
    if callable(obj) and not isinstance(obj, CapabilitySurface):
        obj = obj()
    if isinstance(obj, CapabilitySurface):
        return obj
    if isinstance(obj, Mapping):
        return CapabilitySurface(obj)
    raise ValueError(f"{target} did not resolve to a CapabilitySurface or mapping")


def _read_script(args: argparse.Namespace) -> str:
    if args.code is not None:
        return args.code
    if args.script in (None, "-"):
        return sys.stdin.read()
    return Path(args.script).read_text(encoding="utf-8")


def _print_envelope(envelope: ExecutionEnvelope) -> None:
    """Render an envelope with rich panels and a log table.

    Example:
        ```python
        _print_envelope(engine.execute("return 1"))
        ```
    """
    if envelope.logs:
        table = Table(title="Logs")
        table.add_column("Time", style="dim")
        table.add_column("Level")
        table.add_column("Message")
        for entry in envelope.logs:
            style = _LEVEL_STYLES.get(entry.level, "white")
            table.add_row(entry.timestamp, f"[{style}]{entry.level}[/{style}]", entry.message)
        _CONSOLE.print(table)

    if envelope.ok:
        body: Any = Pretty(envelope.result) if not envelope.meta.result_was_undefined else "(no return value)"
        _CONSOLE.print(Panel.fit(body, title="Result", border_style="green"))
    else:
        error = envelope.error.to_dict() if envelope.error else {}
        _CONSOLE.print(
            Panel.fit(
                Pretty({key: value for key, value in error.items() if key != "stack"}),
                title=f"Error {error.get('code', '')}",
                border_style="red",
            )
        )
    _CONSOLE.print(Pretty(envelope.meta.to_dict()))


def main(argv: Sequence[str] | None = None) -> int:
    """Run the `cpr` CLI command handler.

    Example:
        ```python
        code = main(["run", "-c", "return 1"])
        ```
    """
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        surface = load_surface(args.capabilities)
    except (ImportError, AttributeError, TypeError, ValueError) as exc:
        parser.error(f"Could not load capabilities: {exc}")

    if args.command == "describe":
        if args.markdown:
            _CONSOLE.print(surface.tool_description(), markup=False, highlight=False)
        else:
            _CONSOLE.print_json(json.dumps(surface.describe()))
        return 0

    if args.command == "run":
        if args.code is not None and args.script is not None:
            parser.error("Provide either a script path or --code, not both")
        try:
            policy = EnginePolicy.from_file(args.policy_file) if args.policy_file else EnginePolicy()
            if args.timeout_ms is not None:
                policy = dataclasses.replace(policy, timeout_ms=args.timeout_ms)
        except ValueError as exc:
            parser.error(f"Invalid policy: {exc}")
        try:
            code = _read_script(args)
        except OSError as exc:
            parser.error(f"Could not read script: {exc}")

        envelope = ScriptEngine(surface, policy=policy).execute(code)
        if args.json:
            _CONSOLE.print(envelope.to_json(), markup=False, highlight=False, soft_wrap=True)
        else:
            _print_envelope(envelope)
        return 0 if envelope.ok else 1

    parser.error("Unhandled command")
    return 2
