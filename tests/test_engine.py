import asyncio
import json
import textwrap
import time

from capsule_runner import CapabilitySurface, EnginePolicy, ExecutionError, ScriptEngine


async def _list_repos() -> list[dict]:
    return [{"id": "r1", "name": "alpha"}, {"id": "r2", "name": "beta"}]


async def _get_repo(repo_id: str) -> dict:
    if repo_id == "missing":
        raise ExecutionError("REPO_NOT_FOUND", f"Unknown repository: {repo_id}", details={"repoId": repo_id})
    return {"id": repo_id}


SURFACE = CapabilitySurface({"repos": {"list": _list_repos, "get": _get_repo}})
ENGINE = ScriptEngine(SURFACE, policy=EnginePolicy(timeout_ms=5_000))


def _script(text: str) -> str:
    return textwrap.dedent(text).strip("\n")


def test_plain_value_is_returned() -> None:
    envelope = ENGINE.execute("return {'a': [1, 2, 3], 'b': 'x', 'c': None, 'd': 1.5, 'e': True}")

    assert envelope.ok is True
    assert envelope.error is None
    assert envelope.result == {"a": [1, 2, 3], "b": "x", "c": None, "d": 1.5, "e": True}
    assert envelope.meta.result_was_undefined is False


def test_script_without_return_is_undefined() -> None:
    envelope = ENGINE.execute("x = 1 + 1")

    assert envelope.ok is True
    assert envelope.result is None
    assert envelope.meta.result_was_undefined is True


def test_bare_return_is_undefined_but_return_none_is_not() -> None:
    bare = ENGINE.execute("if True:\n    return")
    explicit = ENGINE.execute("return None")

    assert bare.meta.result_was_undefined is True
    assert explicit.ok is True
    assert explicit.result is None
    assert explicit.meta.result_was_undefined is False


def test_nested_function_return_does_not_leak_sentinel() -> None:
    envelope = ENGINE.execute(
        _script(
            """
            def helper():
                return
            return [helper()]
            """
        )
    )
    assert envelope.result == [None]


def test_raised_exception_becomes_execution_error() -> None:
    envelope = ENGINE.execute('raise Exception("boom")')

    assert envelope.ok is False
    assert envelope.result is None
    assert envelope.error is not None
    assert envelope.error.code == "EXECUTION_ERROR"
    assert envelope.error.message == "boom"
    assert "<script>" in (envelope.error.stack or "")


def test_empty_code_skips_execution() -> None:
    for code in ("", "   \n\t  "):
        envelope = ENGINE.execute(code)
        assert envelope.ok is False
        assert envelope.error is not None
        assert envelope.error.code == "EMPTY_CODE"
        assert envelope.logs == []
        assert envelope.meta.timeout_ms == 5_000


def test_syntax_error_is_reported() -> None:
    envelope = ENGINE.execute("def broken(:\n    pass")

    assert envelope.ok is False
    assert envelope.error is not None
    assert envelope.error.code == "EXECUTION_ERROR"
    assert "SyntaxError" in (envelope.error.stack or "")


def test_top_level_yield_is_rejected() -> None:
    envelope = ENGINE.execute("yield 1")

    assert envelope.ok is False
    assert envelope.error is not None
    assert "yield" in envelope.error.message


def test_capabilities_are_awaited_at_top_level() -> None:
    envelope = ENGINE.execute(
        _script(
            """
            all_repos = await repos.list()
            details = await gather(*(repos.get(repo["id"]) for repo in all_repos))
            return {"names": [repo["name"] for repo in all_repos], "ids": [d["id"] for d in details]}
            """
        )
    )

    assert envelope.ok is True
    assert envelope.result == {"names": ["alpha", "beta"], "ids": ["r1", "r2"]}


def test_capability_error_code_and_details_pass_through() -> None:
    envelope = ENGINE.execute("return await repos.get('missing')")

    assert envelope.ok is False
    assert envelope.error is not None
    assert envelope.error.code == "REPO_NOT_FOUND"
    assert envelope.error.message == "Unknown repository: missing"
    assert envelope.error.details == {"repoId": "missing"}


def test_script_that_never_settles_times_out() -> None:
    engine = ScriptEngine(SURFACE, policy=EnginePolicy(timeout_ms=200))
    started = time.monotonic()
    envelope = engine.execute("console.log('waiting')\nawait sleep(60_000)")
    elapsed = time.monotonic() - started

    assert envelope.ok is False
    assert envelope.error is not None
    assert envelope.error.code == "TIMEOUT"
    assert envelope.meta.timeout_ms == 200
    assert elapsed < 2.0
    assert [entry.message for entry in envelope.logs] == ["waiting"]


def test_busy_loop_releases_caller_on_deadline() -> None:
    engine = ScriptEngine(policy=EnginePolicy(timeout_ms=100))
    started = time.monotonic()
    envelope = engine.execute(
        _script(
            """
            total = 0
            for i in range(20_000_000):
                total += i
            return total
            """
        )
    )

    assert envelope.error is not None
    assert envelope.error.code == "TIMEOUT"
    assert time.monotonic() - started < 2.0


def test_timers_are_reclaimed_after_timeout() -> None:
    ticks: list[float] = []

    async def tick() -> None:
        ticks.append(time.monotonic())

    surface = CapabilitySurface({"meter": {"tick": tick}})
    engine = ScriptEngine(surface, policy=EnginePolicy(timeout_ms=200))

    envelope = engine.execute("set_interval(meter.tick, 10)\nawait sleep(60_000)")
    assert envelope.error is not None
    assert envelope.error.code == "TIMEOUT"

    time.sleep(0.05)
    settled = len(ticks)
    time.sleep(0.3)

    assert settled > 0
    assert len(ticks) == settled


def test_timer_limit_fails_only_the_extra_registration() -> None:
    engine = ScriptEngine(policy=EnginePolicy(max_timers=100))
    envelope = engine.execute(
        _script(
            """
            ids = [set_timeout(lambda: None, 60_000) for _ in range(100)]
            try:
                set_timeout(lambda: None, 60_000)
            except Exception as exc:
                return {"count": len(ids), "code": exc.code}
            """
        )
    )

    assert envelope.ok is True
    assert envelope.result == {"count": 100, "code": "TIMER_LIMIT"}


def test_uncaught_timer_limit_fails_the_call() -> None:
    engine = ScriptEngine(policy=EnginePolicy(max_timers=5))
    envelope = engine.execute("for _ in range(6):\n    set_timeout(lambda: None, 60_000)")

    assert envelope.error is not None
    assert envelope.error.code == "TIMER_LIMIT"


def test_non_callable_timer_handler_is_rejected() -> None:
    envelope = ENGINE.execute("set_timeout('not a function', 10)")

    assert envelope.error is not None
    assert envelope.error.code == "INVALID_TIMER_HANDLER"


def test_timer_handlers_run_while_script_is_suspended() -> None:
    envelope = ENGINE.execute(
        _script(
            """
            fired = []
            set_timeout(fired.append, 10, "first")
            cancelled = set_timeout(fired.append, 20, "never")
            clear_timeout(cancelled)
            await sleep(100)
            return fired
            """
        )
    )

    assert envelope.result == ["first"]


def test_timer_error_before_settlement_fails_the_call() -> None:
    started = time.monotonic()
    envelope = ENGINE.execute(
        _script(
            """
            def explode():
                raise ValueError("late boom")
            set_timeout(explode, 10)
            await sleep(4_000)
            return "unreachable"
            """
        )
    )

    assert envelope.ok is False
    assert envelope.result is None
    assert envelope.error is not None
    assert envelope.error.code == "ASYNC_CALLBACK_ERROR"
    assert envelope.error.message == "late boom"
    assert any(entry.level == "error" and "late boom" in entry.message for entry in envelope.logs)
    assert time.monotonic() - started < 3.0


def test_timer_error_after_return_does_not_override_result() -> None:
    envelope = ENGINE.execute(
        _script(
            """
            def explode():
                raise ValueError("too late")
            set_timeout(explode, 0)
            return "done"
            """
        )
    )

    assert envelope.ok is True
    assert envelope.result == "done"


def test_console_and_print_are_captured_in_order() -> None:
    envelope = ENGINE.execute(
        _script(
            """
            print("hello", "world")
            console.info({"a": 1})
            console.warn("careful", 3)
            console.error("bad")
            """
        )
    )

    assert [(entry.level, entry.message) for entry in envelope.logs] == [
        ("log", "hello world"),
        ("info", '{"a": 1}'),
        ("warn", "careful 3"),
        ("error", "bad"),
    ]
    assert all(entry.timestamp.endswith("Z") for entry in envelope.logs)


def test_log_entry_cap_truncates() -> None:
    envelope = ENGINE.execute("for i in range(250):\n    console.log(i)")

    assert envelope.ok is True
    assert len(envelope.logs) == 200
    assert envelope.meta.truncated_logs is True


def test_logs_are_preserved_on_failure() -> None:
    envelope = ENGINE.execute("console.log('before')\nraise RuntimeError('after')")

    assert envelope.ok is False
    assert [entry.message for entry in envelope.logs] == ["before"]


def test_self_reference_serializes_with_marker() -> None:
    envelope = ENGINE.execute("a = {'name': 'a'}\na['self'] = a\nreturn a")

    assert envelope.ok is True
    assert envelope.result == {"name": "a", "self": "[Circular]"}


def test_exotic_values_become_placeholders() -> None:
    envelope = ENGINE.execute("return {'big': 2 ** 80, 'fn': len, 'inf': float('inf')}")

    assert envelope.ok is True
    assert envelope.result == {
        "big": "[BigInt: 1208925819614629174706176]",
        "fn": "[Function: len]",
        "inf": "[Float: inf]",
    }


def test_oversized_result_is_truncated() -> None:
    engine = ScriptEngine(policy=EnginePolicy(max_result_chars=100))
    envelope = engine.execute("return 'x' * 500")

    assert envelope.ok is True
    assert envelope.meta.truncated_result is True
    assert envelope.result["_truncated"] is True
    assert envelope.result["originalSize"] == 502
    assert len(envelope.result["preview"]) == 100


def test_unwalkable_result_still_succeeds() -> None:
    envelope = ENGINE.execute(
        _script(
            """
            class Hostile(list):
                def __iter__(self):
                    raise RuntimeError("no iteration")
            return Hostile([1])
            """
        )
    )

    assert envelope.ok is True
    assert envelope.result["_unserializable"] is True
    assert envelope.result["preview"] == "[1]"


def test_deterministic_script_returns_same_result_twice() -> None:
    code = "return sorted({'b': 2, 'a': 1}.items())"

    assert ENGINE.execute(code).result == ENGINE.execute(code).result == [["a", 1], ["b", 2]]


def test_invocations_do_not_share_scope() -> None:
    first = ENGINE.execute("repos.injected = 1\n__builtins__['len'] = None\nreturn 'mutated'")
    second = ENGINE.execute("return [hasattr(repos, 'injected'), len([1, 2])]")

    assert first.ok is True
    assert second.result == [False, 2]


def test_help_binding_lists_capabilities() -> None:
    envelope = ENGINE.execute("return [help('repos'), sorted(help()['apis'])]")

    methods, namespaces = envelope.result
    assert {"signature": "repos.get(repo_id)", "description": ""} in methods
    assert namespaces == ["repos"]


def test_execute_async_runs_invocations_concurrently() -> None:
    async def scenario() -> list:
        return await asyncio.gather(
            *(ENGINE.execute_async(f"await sleep(100)\nreturn {n}") for n in range(4))
        )

    envelopes = asyncio.run(scenario())

    assert [envelope.result for envelope in envelopes] == [0, 1, 2, 3]


def test_every_envelope_round_trips_through_json() -> None:
    scripts = [
        "return {'a': 1}",
        "x = 1",
        "raise ValueError('nope')",
        "",
        "a = []\na.append(a)\nreturn a",
        "console.log({1, 2})\nreturn b'raw'",
    ]
    for code in scripts:
        envelope = ENGINE.execute(code)
        payload = json.loads(envelope.to_json())

        assert payload == envelope.to_dict()
        assert set(payload) == {"ok", "result", "logs", "error", "meta"}
        assert set(payload["meta"]) == {
            "timeoutMs",
            "durationMs",
            "truncatedResult",
            "truncatedLogs",
            "resultWasUndefined",
        }
        assert isinstance(payload["logs"], list)
        assert (payload["error"] is None) == payload["ok"]
        if not payload["ok"]:
            assert payload["result"] is None


def test_equal_tuple_constants_are_returned_intact() -> None:
    pairs = ENGINE.execute("return [(1, 2), (1, 2)]")
    empties = ENGINE.execute("return {'a': (), 'b': ()}")

    assert pairs.result == [[1, 2], [1, 2]]
    assert empties.result == {"a": [], "b": []}


def test_capabilities_share_loop_bound_state_across_concurrent_calls() -> None:
    async def scenario() -> tuple[list, list]:
        host_loop = asyncio.get_running_loop()
        guard = asyncio.Lock()
        seen_loops: list = []

        async def guarded() -> str:
            seen_loops.append(asyncio.get_running_loop())
            async with guard:
                await asyncio.sleep(0.1)
            return "done"

        engine = ScriptEngine(
            CapabilitySurface({"store": {"guarded": guarded}}),
            policy=EnginePolicy(timeout_ms=3_000),
        )
        envelopes = await asyncio.gather(
            *(engine.execute_async("return await store.guarded()") for _ in range(3))
        )
        return envelopes, [loop is host_loop for loop in seen_loops]

    envelopes, on_host_loop = asyncio.run(scenario())

    assert [(e.ok, e.result) for e in envelopes] == [(True, "done")] * 3
    assert on_host_loop == [True, True, True]


def test_concurrent_async_callers_are_released_on_deadline() -> None:
    engine = ScriptEngine(policy=EnginePolicy(timeout_ms=400))

    async def scenario() -> list:
        return await asyncio.gather(
            *(engine.execute_async("import time\ntime.sleep(3)") for _ in range(12))
        )

    started = time.monotonic()
    envelopes = asyncio.run(scenario())
    elapsed_ms = (time.monotonic() - started) * 1000

    assert all(e.error is not None and e.error.code == "TIMEOUT" for e in envelopes)
    assert elapsed_ms < 1_100
    assert all(390 <= e.meta.duration_ms <= elapsed_ms + 50 for e in envelopes)
