from __future__ import annotations

import logging
import threading
from collections.abc import Iterator, Sequence
from itertools import groupby

from taskmaster.checkpoint import CheckpointStore
from taskmaster.engine import TaskLifecycleEngine
from taskmaster.errors import TaskmasterError
from taskmaster.ledger import Ledger
from taskmaster.schemas import LedgerEvent
from taskmaster.state import replay_events

logger = logging.getLogger(__name__)


def _by_block(events: Sequence[LedgerEvent]) -> Iterator[tuple[int, list[LedgerEvent]]]:
    ordered = sorted(events, key=lambda e: e.key)
    for block, group in groupby(ordered, key=lambda e: e.block_number):
        yield block, list(group)


class EventWatcher:
    """Feeds ledger events to the engine in ledger order.

    `recover()` must run first: it rebuilds the engine's state from the last
    checkpoint plus every later event, without side effects, and only then
    lets the engine re-drive interrupted work. Live polling refuses to run
    before that.
    """

    def __init__(
        self,
        *,
        ledger: Ledger,
        engine: TaskLifecycleEngine,
        checkpoints: CheckpointStore,
        deployment_block: int = 0,
        poll_interval_s: float = 2.0,
    ) -> None:
        self._ledger = ledger
        self._engine = engine
        self._checkpoints = checkpoints
        self._deployment_block = deployment_block
        self._poll_interval_s = poll_interval_s
        self._recovered = False
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def recovered(self) -> bool:
        return self._recovered

    def recover(self) -> int:
        """Replay history into the engine's state; returns the number of events replayed."""
        state = self._engine.state
        cp = self._checkpoints.load()
        if cp.snapshot is not None:
            state.restore(cp.snapshot)
            from_block = cp.block + 1
            logger.info("resuming from checkpoint at block %d", cp.block)
        else:
            state.clear()
            from_block = max(self._deployment_block, cp.block + 1)
            logger.info("no checkpoint snapshot, replaying from block %d", from_block)

        events = self._ledger.get_events(from_block)
        replay_events(sorted(events, key=lambda e: e.key), state=state)
        logger.info(
            "replayed %d events: %d jobs, %d tasks", len(events), len(state.jobs()), len(state.tasks())
        )

        self._checkpoints.save(max(state.applied_through, from_block - 1), state.snapshot())
        self._recovered = True
        self._engine.reconcile()
        return len(events)

    def poll_once(self) -> int:
        """Process every event after the checkpoint; returns how many were dispatched."""
        if not self._recovered:
            raise RuntimeError("recover() must complete before live event processing")
        self._engine.retry_deferred()
        events = self._ledger.get_events(self._checkpoints.current.block + 1)
        state = self._engine.state
        for block, group in _by_block(events):
            for event in group:
                try:
                    self._engine.handle_event(event)
                except TaskmasterError:
                    logger.exception("handling %s at %s failed", event.name.value, event.key)
            state.mark_block_processed(block)
            self._checkpoints.save(block, state.snapshot())
        return len(events)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("event poll failed; retrying next interval")
            self._stop.wait(self._poll_interval_s)

    def start(self) -> None:
        if self._thread is not None:
            return
        if not self._recovered:
            self.recover()
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="event-watcher", daemon=True)
        self._thread.start()

    def stop(self, timeout_s: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout_s)
            self._thread = None
