from __future__ import annotations

import threading
import time

from taskmaster.channel import MessageChannel
from taskmaster.executors import SynchronousExecutor, make_executor
from taskmaster.locks import KeyedLock
from taskmaster.schemas import ActionType, AgentAction, AgentTransaction


def test_keyed_lock_serializes_same_key_only() -> None:
    locks = KeyedLock()
    active: dict[str, int] = {"a": 0, "b": 0}
    peak: dict[str, int] = {"a": 0, "b": 0}
    guard = threading.Lock()

    def work(key: str) -> None:
        with locks.hold(key):
            with guard:
                active[key] += 1
                peak[key] = max(peak[key], active[key])
            time.sleep(0.01)
            with guard:
                active[key] -= 1

    threads = [threading.Thread(target=work, args=(k,)) for k in "aabbaabb"]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert peak == {"a": 1, "b": 1}
    # idle locks are dropped
    assert len(locks) == 0


def test_channel_fans_out_and_keeps_recent_history() -> None:
    channel = MessageChannel(history_limit=2)
    seen: list[object] = []
    unsubscribe = channel.subscribe(seen.append)

    for i in range(3):
        channel.publish(AgentAction(type=ActionType.JOB_RECEIVED, job_id=i, timestamp=float(i)))
    channel.publish(AgentTransaction(action="Add task", tx_hash="0x1", timestamp=3.0))

    assert len(seen) == 4
    assert [a.job_id for a in channel.recent_actions()] == [2, 1]
    assert [t.tx_hash for t in channel.recent_transactions()] == ["0x1"]

    unsubscribe()
    channel.publish(AgentAction(type=ActionType.JOB_RECEIVED, timestamp=4.0))
    assert len(seen) == 4


def test_failing_subscriber_does_not_block_others() -> None:
    channel = MessageChannel()
    received: list[object] = []

    def broken(_message: object) -> None:
        raise RuntimeError("socket closed")

    channel.subscribe(broken)
    channel.subscribe(received.append)
    channel.publish(AgentAction(type=ActionType.JOB_STALLED, timestamp=0.0))
    assert len(received) == 1


def test_synchronous_executor_resolves_inline() -> None:
    pool = make_executor(deterministic=True, max_workers=4, prefix="t")
    assert isinstance(pool, SynchronousExecutor)
    assert pool.submit(lambda x: x * 2, 21).result() == 42

    failed = pool.submit(lambda: 1 / 0)
    assert isinstance(failed.exception(), ZeroDivisionError)
