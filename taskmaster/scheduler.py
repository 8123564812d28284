from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from taskmaster.config import EngineConfig
from taskmaster.costing import FixedPriceFeed, PriceFeed, format_ether
from taskmaster.costs import CostLedger
from taskmaster.engine import TaskLifecycleEngine
from taskmaster.errors import ConfigurationError, LedgerTransactionError
from taskmaster.ledger import Ledger
from taskmaster.schemas import ActionType, AgentAction, AgentTransaction

logger = logging.getLogger(__name__)


class Scheduler:
    """Periodic expiry and reimbursement sweeps.

    Both sweeps can run alongside live event processing: expiry goes through
    the engine's per-task locks, and reimbursement holds its own lock while it
    reads the outstanding amount, transfers, and records the payment.
    """

    def __init__(
        self,
        *,
        engine: TaskLifecycleEngine,
        ledger: Ledger,
        costs: CostLedger,
        config: EngineConfig,
        price_feed: PriceFeed | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if config.reimbursement_enabled and not config.operator_address:
            raise ConfigurationError("reimbursement requires an operator address")
        self._engine = engine
        self._ledger = ledger
        self._costs = costs
        self._config = config
        self._price_feed = price_feed or FixedPriceFeed(config.eth_usd_price)
        self._clock = clock or time.time
        self._reimburse_lock = threading.Lock()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def sweep_expired(self, now: int | None = None) -> list[str]:
        """Expire every Open or Accepted task whose deadline is before `now`."""
        now = int(self._clock()) if now is None else now
        hashes: list[str] = []
        for task in self._engine.state.expirable(now):
            tx_hash = self._engine.expire_task(task.id, now=now)
            if tx_hash is not None:
                hashes.append(tx_hash)
        if hashes:
            logger.info("expired %d tasks", len(hashes))
        return hashes

    def reimburse(self) -> str | None:
        """Pay the operator back for off-ledger spend once it crosses the threshold."""
        if not self._config.reimbursement_enabled:
            return None
        with self._reimburse_lock:
            owed = self._costs.unreimbursed_offchain_cost()
            if owed <= self._config.reimbursement_threshold_usd:
                return None
            amount = self._price_feed.usd_to_wei(owed)
            operator = str(self._config.operator_address)
            try:
                tx_hash = self._ledger.transfer(operator, amount)
            except LedgerTransactionError as e:
                logger.error("reimbursement of $%.4f failed: %s", owed, e)
                self._engine.channel.publish(
                    AgentAction(
                        type=ActionType.TRANSACTION_FAILED,
                        timestamp=self._clock(),
                        details={"operation": "reimburse", "error": str(e)},
                    )
                )
                return None
            self._costs.mark_reimbursed(owed, tx_hash)
            self._costs.log_cost(f"reimburse-{len(self._costs.reimbursements)}")

        logger.info("reimbursed $%.4f (%s ETH) to %s", owed, format_ether(amount), operator)
        self._engine.channel.publish(
            AgentAction(
                type=ActionType.COMPUTE_REIMBURSED,
                timestamp=self._clock(),
                details={"amount_usd": owed, "amount": format_ether(amount), "to": operator},
            )
        )
        self._engine.channel.publish(
            AgentTransaction(
                action="Reimburse compute", tx_hash=tx_hash, amount=format_ether(amount), timestamp=self._clock()
            )
        )
        return tx_hash

    def _loop(self, interval_s: float, sweep: Callable[[], object], name: str) -> None:
        while not self._stop.wait(interval_s):
            try:
                sweep()
            except Exception:
                logger.exception("%s sweep failed", name)

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        loops: list[tuple[str, float, Callable[[], object]]] = [
            ("expiry", self._config.expiry_interval_s, self.sweep_expired),
        ]
        if self._config.reimbursement_enabled:
            loops.append(("reimbursement", self._config.reimbursement_interval_s, self.reimburse))
        for name, interval, sweep in loops:
            t = threading.Thread(target=self._loop, args=(interval, sweep, name), name=f"sweep-{name}", daemon=True)
            t.start()
            self._threads.append(t)

    @property
    def threads(self) -> tuple[threading.Thread, ...]:
        return tuple(self._threads)

    def stop(self, timeout_s: float = 5.0) -> None:
        self._stop.set()
        for t in self._threads:
            t.join(timeout=timeout_s)
        self._threads = []
