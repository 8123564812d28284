from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel

from taskmaster.costing import PriceTable
from taskmaster.jsonutil import stable_json_dumps
from taskmaster.schemas import (
    CostCategory,
    CostEntry,
    ReimbursementEntry,
    RevenueCategory,
    RevenueEntry,
)

logger = logging.getLogger(__name__)

_OFFCHAIN = frozenset({CostCategory.ORACLE_CALL, CostCategory.STORAGE})


class CostStore(Protocol):
    def load(self) -> tuple[list[CostEntry], list[RevenueEntry], list[ReimbursementEntry]]: ...

    def append(self, entry: CostEntry | RevenueEntry | ReimbursementEntry) -> None: ...


class JsonlCostStore:
    """Append-only JSONL files, one per record kind."""

    _FILES = {
        CostEntry: "costs.jsonl",
        RevenueEntry: "revenues.jsonl",
        ReimbursementEntry: "reimbursements.jsonl",
    }

    def __init__(self, root: Path) -> None:
        self._root = root

    def _path(self, kind: type[BaseModel]) -> Path:
        return self._root / self._FILES[kind]

    def _read(self, kind: type[BaseModel]) -> list:
        path = self._path(kind)
        if not path.exists():
            return []
        out = []
        with path.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    out.append(kind.model_validate_json(line))
        return out

    def load(self) -> tuple[list[CostEntry], list[RevenueEntry], list[ReimbursementEntry]]:
        return self._read(CostEntry), self._read(RevenueEntry), self._read(ReimbursementEntry)

    def append(self, entry: CostEntry | RevenueEntry | ReimbursementEntry) -> None:
        path = self._path(type(entry))
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as f:
            f.write(stable_json_dumps(entry.model_dump(mode="json")))
            f.write("\n")


class OperationLine(BaseModel):
    label: str
    calls: int
    cost_per_call: float
    total_cost: float


class RevenueLine(BaseModel):
    label: str
    amount: float
    count: int


class AutonomyMetrics(BaseModel):
    cost_coverage_ratio: float
    revenue_per_job: float
    cost_per_job: float
    profit_margin_pct: float
    category_share_pct: dict[str, float]


class StorageUsage(BaseModel):
    gateway_fetches: int


class ProfitReport(BaseModel):
    lines: dict[str, list[OperationLine]]
    revenue_lines: list[RevenueLine]
    autonomy: AutonomyMetrics
    total_cost: float
    total_revenue: float
    net_profit: float


class JobEconomics(BaseModel):
    job_id: int
    cost: float
    revenue: float

    @property
    def net(self) -> float:
        return self.revenue - self.cost


_REVENUE_LABELS = {
    RevenueCategory.JOB_PROFIT: "Job Completions",
    RevenueCategory.SERVICE_FEE: "Service Fees",
}


class CostLedger:
    """Append-only cost/revenue record for the agent's own operations.

    In-memory aggregates are authoritative for the process lifetime; the
    backing store is best effort and its failures are logged, never raised.
    """

    def __init__(
        self,
        *,
        store: CostStore | None = None,
        prices: PriceTable | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self.prices = prices or PriceTable()
        self._now = now or (lambda: datetime.now(tz=UTC))
        self._lock = threading.Lock()
        self._costs: list[CostEntry] = []
        self._revenues: list[RevenueEntry] = []
        self._reimbursements: list[ReimbursementEntry] = []
        self._gateway_fetches = 0
        self._running = False

    # -- lifecycle ----------------------------------------------------------

    def init(self) -> "CostLedger":
        if self._store is not None:
            try:
                costs, revenues, reimbursements = self._store.load()
            except Exception as e:
                logger.warning("could not load cost ledger history, starting empty: %s", e)
            else:
                with self._lock:
                    self._costs = list(costs)
                    self._revenues = list(revenues)
                    self._reimbursements = list(reimbursements)
                    self._gateway_fetches = sum(1 for c in self._costs if c.operation == "storage-gateway")
                logger.info("loaded %d costs, %d revenues", len(costs), len(revenues))
        self._running = True
        return self

    def shutdown(self) -> None:
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def _persist(self, entry: CostEntry | RevenueEntry | ReimbursementEntry) -> None:
        if self._store is None:
            return
        try:
            self._store.append(entry)
        except Exception as e:
            logger.error("failed to persist %s: %s", type(entry).__name__, e)

    def _require_running(self) -> None:
        if not self._running:
            raise RuntimeError("cost ledger is not running (call init() first)")

    # -- recording ----------------------------------------------------------

    def log_cost(
        self,
        operation: str,
        *,
        amount_usd: float | None = None,
        category: CostCategory | None = None,
        job_id: int | None = None,
    ) -> CostEntry:
        self._require_running()
        op = self.prices.lookup(operation)
        if category is None:
            if op is None:
                raise ValueError(f"unknown operation {operation!r}; pass category explicitly")
            category = op.category
        if amount_usd is None:
            amount_usd = op.usd_per_call if op is not None else 0.0
        entry = CostEntry(
            category=category, amount_usd=amount_usd, operation=operation, job_id=job_id, ts=self._now()
        )
        with self._lock:
            self._costs.append(entry)
        self._persist(entry)
        return entry

    def log_revenue(
        self,
        category: RevenueCategory,
        amount_usd: float,
        *,
        operation: str = "",
        job_id: int | None = None,
    ) -> RevenueEntry:
        self._require_running()
        entry = RevenueEntry(
            category=category, amount_usd=amount_usd, operation=operation, job_id=job_id, ts=self._now()
        )
        with self._lock:
            self._revenues.append(entry)
        self._persist(entry)
        return entry

    def log_storage_fetch(self, *, job_id: int | None = None) -> CostEntry:
        with self._lock:
            self._gateway_fetches += 1
        return self.log_cost("storage-gateway", job_id=job_id)

    def mark_reimbursed(self, amount_usd: float, tx_hash: str) -> ReimbursementEntry:
        self._require_running()
        entry = ReimbursementEntry(amount_usd=amount_usd, tx_hash=tx_hash, ts=self._now())
        with self._lock:
            self._reimbursements.append(entry)
        self._persist(entry)
        return entry

    # -- queries ------------------------------------------------------------

    @property
    def costs(self) -> list[CostEntry]:
        with self._lock:
            return list(self._costs)

    @property
    def revenues(self) -> list[RevenueEntry]:
        with self._lock:
            return list(self._revenues)

    @property
    def reimbursements(self) -> list[ReimbursementEntry]:
        with self._lock:
            return list(self._reimbursements)

    def unreimbursed_offchain_cost(self) -> float:
        with self._lock:
            offchain = sum(c.amount_usd for c in self._costs if c.category in _OFFCHAIN)
            reimbursed = sum(r.amount_usd for r in self._reimbursements)
        return offchain - reimbursed

    def total_cost(self) -> float:
        with self._lock:
            return sum(c.amount_usd for c in self._costs)

    def total_revenue(self) -> float:
        with self._lock:
            return sum(r.amount_usd for r in self._revenues)

    def breakdown(self) -> dict[str, float]:
        out: dict[str, float] = {c.value: 0.0 for c in CostCategory}
        out.update({r.value: 0.0 for r in RevenueCategory})
        with self._lock:
            for c in self._costs:
                out[c.category.value] += c.amount_usd
            for r in self._revenues:
                out[r.category.value] += r.amount_usd
        return out

    def sustainability_ratio(self) -> float:
        cost = self.total_cost()
        return self.total_revenue() / cost if cost > 0 else 0.0

    def jobs_completed(self) -> int:
        with self._lock:
            return sum(1 for r in self._revenues if r.category == RevenueCategory.JOB_PROFIT)

    def job_economics(self, job_id: int) -> JobEconomics:
        with self._lock:
            cost = sum(c.amount_usd for c in self._costs if c.job_id == job_id)
            revenue = sum(r.amount_usd for r in self._revenues if r.job_id == job_id)
        return JobEconomics(job_id=job_id, cost=cost, revenue=revenue)

    def all_job_economics(self) -> list[JobEconomics]:
        with self._lock:
            ids = {c.job_id for c in self._costs} | {r.job_id for r in self._revenues}
        return [self.job_economics(j) for j in sorted(i for i in ids if i is not None)]

    def storage_usage(self) -> StorageUsage:
        with self._lock:
            return StorageUsage(gateway_fetches=self._gateway_fetches)

    def _operation_lines(self, category: CostCategory, entries: list[CostEntry]) -> list[OperationLine]:
        ops = [op for op in self.prices.operations if op.category == category]
        matched: set[int] = set()
        lines: list[OperationLine] = []
        for op in ops:
            idx = [
                i for i, c in enumerate(entries) if i not in matched and c.operation.startswith(op.prefix)
            ]
            matched.update(idx)
            hits = [entries[i] for i in idx]
            if hits:
                lines.append(
                    OperationLine(
                        label=op.label,
                        calls=len(hits),
                        cost_per_call=op.usd_per_call,
                        total_cost=sum(c.amount_usd for c in hits),
                    )
                )
        other = [c for i, c in enumerate(entries) if i not in matched]
        if other:
            total = sum(c.amount_usd for c in other)
            lines.append(
                OperationLine(
                    label="Other", calls=len(other), cost_per_call=total / len(other), total_cost=total
                )
            )
        lines.sort(key=lambda line: line.total_cost, reverse=True)
        return lines

    def report(self) -> ProfitReport:
        costs = self.costs
        revenues = self.revenues
        total_cost = sum(c.amount_usd for c in costs)
        total_revenue = sum(r.amount_usd for r in revenues)
        net = total_revenue - total_cost
        jobs = sum(1 for r in revenues if r.category == RevenueCategory.JOB_PROFIT)

        lines = {
            cat.value: self._operation_lines(cat, [c for c in costs if c.category == cat])
            for cat in CostCategory
        }
        revenue_lines = []
        for cat in RevenueCategory:
            hits = [r for r in revenues if r.category == cat]
            if hits:
                revenue_lines.append(
                    RevenueLine(
                        label=_REVENUE_LABELS[cat],
                        amount=sum(r.amount_usd for r in hits),
                        count=len(hits),
                    )
                )

        share = {
            cat.value: (
                sum(c.amount_usd for c in costs if c.category == cat) / total_cost * 100
                if total_cost > 0
                else 0.0
            )
            for cat in CostCategory
        }
        autonomy = AutonomyMetrics(
            cost_coverage_ratio=total_revenue / total_cost if total_cost > 0 else 0.0,
            revenue_per_job=total_revenue / jobs if jobs else 0.0,
            cost_per_job=total_cost / jobs if jobs else 0.0,
            profit_margin_pct=net / total_revenue * 100 if total_revenue > 0 else 0.0,
            category_share_pct=share,
        )
        return ProfitReport(
            lines=lines,
            revenue_lines=revenue_lines,
            autonomy=autonomy,
            total_cost=total_cost,
            total_revenue=total_revenue,
            net_profit=net,
        )
