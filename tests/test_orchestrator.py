from __future__ import annotations

import threading
import time
from typing import List

import pytest

from lsql.connector import DatabaseConnector
from lsql.environments import EnvironmentContext
from lsql.orchestrator import ExecutionMode, ExecutionResult, Orchestrator, PingRecord
from lsql.util.errors import SecretLookupError, StructuralError

URL = "postgres://u:p@postgres-main.db:5432/app"


def _ctx(name: str, space: str = "dev", region: str = "use1") -> EnvironmentContext:
    return EnvironmentContext(name=name, space=space, region=region, application="greenhouse")


class FakeLotus:
    def __init__(self, *, fail_for=(), login_ok: bool = True) -> None:
        self._lock = threading.Lock()
        self.fail_for = set(fail_for)
        self.login_ok = login_ok
        self.lookups: List[str] = []
        self.pings: List[tuple] = []
        self.logins = 0

    def get_database_url(self, ctx):
        with self._lock:
            self.lookups.append(ctx.name)
        if ctx.name in self.fail_for:
            raise SecretLookupError(f"Failed to retrieve DATABASE_MAIN_URL for environment: {ctx.name}")
        return URL

    def ping(self, space, region):
        time.sleep(0.01)
        with self._lock:
            self.pings.append((space, region))
        return True

    def login(self):
        self.logins += 1
        if isinstance(self.login_ok, Exception):
            raise self.login_ok
        return self.login_ok


class FakeCache:
    def __init__(self, cached=()) -> None:
        self._lock = threading.Lock()
        self.data = {name: URL for name in cached}

    def has_credential(self, ctx):
        return ctx.name in self.data

    def get_credential(self, ctx):
        return self.data.get(ctx.name)

    def set_credential(self, ctx, url):
        with self._lock:
            self.data[ctx.name] = url


class ResolveOperation:
    requires_interactive = False

    def __init__(self, connector: DatabaseConnector, fail_for=()) -> None:
        self.connector = connector
        self.fail_for = set(fail_for)
        self.executed: List[str] = []

    def execute(self, ctx):
        self.connector.resolve_url(ctx)
        if ctx.name in self.fail_for:
            raise RuntimeError(f"psql failed for {ctx.name}")
        self.executed.append(ctx.name)


class InteractiveOperation:
    requires_interactive = True

    def execute(self, ctx):
        raise AssertionError("must not run")


def _setup(cached=(), **lotus_kw):
    lotus = FakeLotus(**lotus_kw)
    cache = FakeCache(cached)
    pings = PingRecord()
    connector = DatabaseConnector(lotus, cache, pings)
    return lotus, cache, pings, connector


@pytest.mark.parametrize("mode", [ExecutionMode.sequential(), ExecutionMode.parallel(4)])
def test_ping_happens_once_per_space_region(mode) -> None:
    lotus, cache, pings, connector = _setup()
    contexts = [_ctx("dev01"), _ctx("dev02"), _ctx("dev03"), _ctx("prod", "prod"), _ctx("prod-s2", "prod")]

    results = Orchestrator(cache, lotus, pings).run(contexts, mode, ResolveOperation(connector))

    assert all(r.success for r in results)
    assert sorted(lotus.pings) == [("dev", "use1"), ("prod", "use1")]
    assert pings.pinged == frozenset({("dev", "use1"), ("prod", "use1")})


def test_cached_contexts_skip_lookup() -> None:
    lotus, cache, pings, connector = _setup(cached=["a", "c", "e"])
    contexts = [_ctx(n) for n in ["a", "b", "c", "d", "e"]]

    results = Orchestrator(cache, lotus, pings).run(contexts, ExecutionMode.parallel(3), ResolveOperation(connector))

    assert [r.environment for r in results] == ["a", "b", "c", "d", "e"]
    assert sorted(lotus.lookups) == ["b", "d"]


def test_no_ping_when_everything_is_cached() -> None:
    lotus, cache, pings, connector = _setup(cached=["a", "b"])

    Orchestrator(cache, lotus, pings).run([_ctx("a"), _ctx("b")], ExecutionMode.parallel(2), ResolveOperation(connector))

    assert lotus.pings == []
    assert lotus.logins == 0


def test_single_failure_is_isolated() -> None:
    lotus, cache, pings, connector = _setup()
    contexts = [_ctx(f"env{i:02d}") for i in range(10)]
    operation = ResolveOperation(connector, fail_for={"env04"})

    results = Orchestrator(cache, lotus, pings).run(contexts, ExecutionMode.parallel(4), operation)

    assert len(results) == 10
    failed = [r for r in results if not r.success]
    assert [r.environment for r in failed] == ["env04"]
    assert "psql failed for env04" in failed[0].error
    assert sorted(operation.executed) == sorted(c.name for c in contexts if c.name != "env04")


def test_lookup_failure_becomes_failed_result() -> None:
    lotus, cache, pings, connector = _setup(fail_for={"b"})

    results = Orchestrator(cache, lotus, pings).run(
        [_ctx("a"), _ctx("b")], ExecutionMode.sequential(), ResolveOperation(connector)
    )

    assert results[0] == ExecutionResult(environment="a", success=True)
    assert results[1].success is False
    assert isinstance(results[1].exception, SecretLookupError)


def test_interactive_with_multiple_targets_is_structural() -> None:
    lotus, cache, pings, _ = _setup()

    with pytest.raises(StructuralError):
        Orchestrator(cache, lotus, pings).run([_ctx("a"), _ctx("b")], ExecutionMode.sequential(), InteractiveOperation())
    assert lotus.pings == []


def test_empty_targets_is_structural() -> None:
    lotus, cache, pings, connector = _setup()
    with pytest.raises(StructuralError):
        Orchestrator(cache, lotus, pings).run([], ExecutionMode.parallel(), ResolveOperation(connector))


def test_preauth_runs_once_in_parallel_with_several_lookups() -> None:
    lotus, cache, pings, connector = _setup()

    Orchestrator(cache, lotus, pings).run([_ctx("a"), _ctx("b")], ExecutionMode.parallel(2), ResolveOperation(connector))

    assert lotus.logins == 1


def test_preauth_skipped_in_sequential_mode() -> None:
    lotus, cache, pings, connector = _setup()

    Orchestrator(cache, lotus, pings).run([_ctx("a"), _ctx("b")], ExecutionMode.sequential(), ResolveOperation(connector))

    assert lotus.logins == 0


@pytest.mark.parametrize("login_ok", [False, RuntimeError("sso down")])
def test_preauth_failure_is_not_fatal(login_ok) -> None:
    lotus, cache, pings, connector = _setup(login_ok=login_ok)

    results = Orchestrator(cache, lotus, pings).run(
        [_ctx("a"), _ctx("b")], ExecutionMode.parallel(2), ResolveOperation(connector)
    )

    assert lotus.logins == 1
    assert all(r.success for r in results)


def test_ping_record_claims_each_pair_once_under_contention() -> None:
    record = PingRecord()
    calls = []
    barrier = threading.Barrier(8)

    def worker() -> None:
        barrier.wait()
        record.ensure_pinged("dev", "use1", lambda s, r: calls.append((s, r)) or True)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert calls == [("dev", "use1")]
    record.reset()
    assert record.pinged == frozenset()


def test_run_timeout_abandons_unfinished_units() -> None:
    lotus, cache, pings, connector = _setup(cached=["fast", "slow"])
    release = threading.Event()

    class SlowOperation:
        requires_interactive = False

        def execute(self, ctx):
            if ctx.name == "slow":
                release.wait(2)

    try:
        results = Orchestrator(cache, lotus, pings, run_timeout=0.2).run(
            [_ctx("fast"), _ctx("slow")], ExecutionMode.parallel(2), SlowOperation()
        )
    finally:
        release.set()

    assert results[0].success is True
    assert results[1].success is False
    assert "timeout" in results[1].error


def test_progress_receives_completion_counts() -> None:
    lotus, cache, pings, connector = _setup(cached=["a", "b", "c"])

    class Progress:
        def __init__(self) -> None:
            self.total = None
            self.completed = []

        def start_environments(self, total):
            self.total = total

        def set_current(self, env):
            pass

        def set_completed(self, n):
            self.completed.append(n)

    progress = Progress()
    Orchestrator(cache, lotus, pings, progress=progress).run(
        [_ctx("a"), _ctx("b"), _ctx("c")], ExecutionMode.parallel(2), ResolveOperation(connector)
    )

    assert progress.total == 3
    assert progress.completed[-1] == 3
