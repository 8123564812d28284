from __future__ import annotations

from concurrent.futures import Executor, Future, ThreadPoolExecutor


class SynchronousExecutor(Executor):
    """Executor that calls functions immediately, returning resolved futures.

    Used in deterministic mode so verification passes and reputation updates
    happen inline and in a reproducible order.
    """

    def submit(self, fn, /, *args, **kwargs) -> Future:  # type: ignore[override]
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future


def make_executor(*, deterministic: bool, max_workers: int, prefix: str) -> Executor:
    if deterministic:
        return SynchronousExecutor()
    return ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix=prefix)
