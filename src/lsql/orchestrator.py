from __future__ import annotations

import sys
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Protocol, Sequence, Set, Tuple, runtime_checkable

from .environments import EnvironmentContext
from .logging import get_logger
from .util.concurrency import parallel_map_bounded, resolve_worker_count
from .util.errors import StructuralError
from .util.redact import redact_text

LOG = get_logger(__name__)

SpaceRegion = Tuple[str, str]

PROGRESS_INTERVAL_SECONDS = 0.2


class PingRecord:
    """
    (space, region) pairs already pinged during this run. Check-and-insert is
    atomic, so concurrent workers ping each pair at most once.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pinged: Set[SpaceRegion] = set()

    def claim(self, space: str, region: str) -> bool:
        with self._lock:
            key = (space, region)
            if key in self._pinged:
                return False
            self._pinged.add(key)
            return True

    def ensure_pinged(self, space: str, region: str, ping: Callable[[str, str], bool]) -> bool:
        """Ping unless already claimed. Returns True when this call issued the ping."""
        if not self.claim(space, region):
            return False
        try:
            ok = ping(space, region)
        except Exception as e:
            LOG.warning("Ping raised for %s/%s: %s", space, region, e)
            ok = False
        if not ok:
            LOG.warning("Ping failed for %s/%s; continuing", space, region)
        return True

    @property
    def pinged(self) -> FrozenSet[SpaceRegion]:
        with self._lock:
            return frozenset(self._pinged)

    def reset(self) -> None:
        with self._lock:
            self._pinged.clear()


@dataclass(frozen=True)
class ExecutionMode:
    is_parallel: bool = False
    workers: int = 1

    @classmethod
    def sequential(cls) -> ExecutionMode:
        return cls(is_parallel=False, workers=1)

    @classmethod
    def parallel(cls, workers: int = 0) -> ExecutionMode:
        return cls(is_parallel=True, workers=workers)


@dataclass(frozen=True)
class ExecutionResult:
    environment: str
    success: bool
    error: Optional[str] = None
    exception: Optional[BaseException] = field(default=None, compare=False, repr=False)


@runtime_checkable
class Operation(Protocol):
    """
    One unit of work per environment. execute() raises on failure; the
    orchestrator turns any exception into a failed ExecutionResult.
    """

    requires_interactive: bool

    def execute(self, ctx: EnvironmentContext) -> None:
        ...


class _CompletionCounter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0

    def increment(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


class _ProgressReporter(threading.Thread):
    def __init__(self, counter: _CompletionCounter, progress: Any, interval: float) -> None:
        super().__init__(name="lsql-progress", daemon=True)
        self._counter = counter
        self._progress = progress
        self._interval = interval
        self._stop_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.wait(self._interval):
            self._progress.set_completed(self._counter.value)
        self._progress.set_completed(self._counter.value)

    def stop(self) -> None:
        self._stop_event.set()
        self.join()


class Orchestrator:
    """
    Fans an Operation out over environment contexts.

    Before dispatch: contexts with a cached credential are separated from those
    needing a lookup, each distinct (space, region) of the latter is pinged once,
    and in parallel mode with several lookups pending a single `lotus login`
    runs up front. Per-environment failures never abort the run.
    """

    def __init__(
        self,
        cache: Any,
        lotus: Any,
        pings: Optional[PingRecord] = None,
        *,
        progress: Any = None,
        verbose: bool = False,
        run_timeout: Optional[float] = None,
    ) -> None:
        self.cache = cache
        self.lotus = lotus
        self.pings = pings if pings is not None else PingRecord()
        self.progress = progress
        self.verbose = verbose
        self.run_timeout = run_timeout

    def _has_credential(self, ctx: EnvironmentContext) -> bool:
        if self.cache is None:
            return False
        try:
            return bool(self.cache.has_credential(ctx))
        except Exception as e:
            LOG.warning("Credential cache check failed: %s", e, extra={"environment": ctx.name})
            return False

    def prescan(self, contexts: Sequence[EnvironmentContext]) -> List[EnvironmentContext]:
        """Contexts that need a secret lookup, in input order."""
        needs = [ctx for ctx in contexts if not self._has_credential(ctx)]
        LOG.debug(
            "Credential pre-scan: %d cached, %d need lookup",
            len(contexts) - len(needs),
            len(needs),
            extra={"step": "prescan", "phase": "complete"},
        )
        return needs

    def preping(self, needs_lookup: Sequence[EnvironmentContext]) -> None:
        pairs: Dict[SpaceRegion, None] = {}
        for ctx in needs_lookup:
            pairs.setdefault(ctx.space_region, None)
        for space, region in pairs:
            self.pings.ensure_pinged(space, region, self.lotus.ping)

    def preauthenticate(self) -> bool:
        try:
            ok = bool(self.lotus.login())
        except Exception as e:
            LOG.warning("Pre-authentication raised: %s", e)
            return False
        if not ok:
            LOG.warning("Pre-authentication failed; workers will authenticate individually")
        return ok

    def _execute_unit(self, ctx: EnvironmentContext, operation: Operation) -> ExecutionResult:
        try:
            operation.execute(ctx)
        except Exception as e:
            message = redact_text(str(e)) or type(e).__name__
            LOG.warning("Environment failed: %s", message, extra={"environment": ctx.name})
            return ExecutionResult(environment=ctx.name, success=False, error=message, exception=e)
        return ExecutionResult(environment=ctx.name, success=True)

    def _abandoned(self, ctx: EnvironmentContext) -> ExecutionResult:
        LOG.warning("Abandoned after run timeout", extra={"environment": ctx.name})
        return ExecutionResult(environment=ctx.name, success=False, error="abandoned after run timeout")

    def run(
        self,
        contexts: Sequence[EnvironmentContext],
        mode: ExecutionMode,
        operation: Operation,
    ) -> List[ExecutionResult]:
        contexts = list(contexts)
        if not contexts:
            raise StructuralError("No target environments to run against")
        if getattr(operation, "requires_interactive", False) and len(contexts) > 1:
            raise StructuralError(
                "Interactive sessions require a single environment; provide a SQL command for multiple environments"
            )

        needs_lookup = self.prescan(contexts)
        self.preping(needs_lookup)
        if mode.is_parallel and len(needs_lookup) > 1:
            self.preauthenticate()

        if self.progress is not None:
            self.progress.start_environments(len(contexts))
        if mode.is_parallel:
            return self._run_parallel(contexts, mode, operation)
        return self._run_sequential(contexts, operation)

    def _run_sequential(
        self, contexts: Sequence[EnvironmentContext], operation: Operation
    ) -> List[ExecutionResult]:
        results: List[ExecutionResult] = []
        total = len(contexts)
        for index, ctx in enumerate(contexts, start=1):
            if self.verbose and total > 1:
                print(f"\n=== [{index}/{total}] {ctx.name} ({ctx.space}/{ctx.region}) ===", file=sys.stderr)
            if self.progress is not None:
                self.progress.set_current(ctx.name)
            results.append(self._execute_unit(ctx, operation))
            if self.progress is not None:
                self.progress.set_completed(index)
        return results

    def _run_parallel(
        self,
        contexts: Sequence[EnvironmentContext],
        mode: ExecutionMode,
        operation: Operation,
    ) -> List[ExecutionResult]:
        workers = resolve_worker_count(mode.workers, len(contexts))
        LOG.debug("Running %d environments on %d workers", len(contexts), workers)
        counter = _CompletionCounter()
        reporter = None
        if self.progress is not None:
            reporter = _ProgressReporter(counter, self.progress, PROGRESS_INTERVAL_SECONDS)
            reporter.start()
        try:
            return parallel_map_bounded(
                lambda ctx: self._execute_unit(ctx, operation),
                contexts,
                workers,
                timeout=self.run_timeout,
                on_abandoned=self._abandoned,
                on_done=lambda _ctx, _result: counter.increment(),
            )
        finally:
            if reporter is not None:
                reporter.stop()
