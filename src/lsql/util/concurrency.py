from __future__ import annotations

import os
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from time import monotonic
from typing import Callable, Dict, List, Optional, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


def resolve_worker_count(requested: int, item_count: int) -> int:
    """
    Map a requested pool size to a usable one. 0 (or negative) means auto-detect
    from the available CPUs; the result never exceeds the number of items.
    """
    if requested <= 0:
        requested = os.cpu_count() or 1
    return max(1, min(requested, max(item_count, 1)))


def parallel_map_bounded(
    func: Callable[[T], R],
    items: Sequence[T],
    max_workers: int,
    *,
    timeout: Optional[float] = None,
    on_abandoned: Optional[Callable[[T], R]] = None,
    on_done: Optional[Callable[[T, R], None]] = None,
) -> List[R]:
    """
    Execute func over items in a bounded thread pool and return results in input
    order. func is expected to handle its own errors; an exception escaping it
    is propagated once every other item has finished.

    When timeout (seconds) elapses before all items finish, the unfinished ones
    are abandoned: their result comes from on_abandoned(item), queued work is
    cancelled and the pool is shut down without waiting. Abandoned threads keep
    running until their blocking call returns.
    """
    if not items:
        return []
    if timeout is not None and on_abandoned is None:
        raise ValueError("on_abandoned is required when a timeout is set")

    results: Dict[int, R] = {}
    errors: List[BaseException] = []
    deadline = monotonic() + timeout if timeout is not None else None

    executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="lsql-worker")
    inflight: Dict[Future[R], int] = {executor.submit(func, item): idx for idx, item in enumerate(items)}
    try:
        while inflight:
            remaining = None if deadline is None else max(0.0, deadline - monotonic())
            done, _ = wait(inflight.keys(), timeout=remaining, return_when=FIRST_COMPLETED)
            if not done:
                break
            for fut in done:
                idx = inflight.pop(fut)
                try:
                    results[idx] = fut.result()
                except BaseException as e:  # collect and continue
                    errors.append(e)
                    continue
                if on_done is not None:
                    on_done(items[idx], results[idx])
    finally:
        # Work is either finished or abandoned at this point; never block on stragglers.
        executor.shutdown(wait=not inflight, cancel_futures=True)

    if inflight and on_abandoned is not None:
        for idx in inflight.values():
            results[idx] = on_abandoned(items[idx])

    if errors:
        raise errors[0]
    return [results[idx] for idx in range(len(items))]
