from __future__ import annotations

import json
import logging
import threading
from pathlib import Path

from taskmaster.jsonutil import stable_json_dumps
from taskmaster.schemas import ReputationTier, VerificationResult, WorkerReputation
from taskmaster.verifier import WEIGHTS

logger = logging.getLogger(__name__)

MIN_COMPLETED_FOR_TIER = 3

# (tier, minimum reputation score, bonus share of the task reward)
TIERS: tuple[tuple[ReputationTier, float, float], ...] = (
    (ReputationTier.GOLD, 0.85, 0.10),
    (ReputationTier.SILVER, 0.70, 0.05),
    (ReputationTier.BRONZE, 0.50, 0.02),
)

_SUB_SCORES = tuple(WEIGHTS)


def score_reputation(rep: WorkerReputation) -> float:
    if rep.decisions == 0:
        return 0.0
    weighted = sum(WEIGHTS[k] * getattr(rep, f"avg_{k}") for k in _SUB_SCORES)
    return weighted * (rep.tasks_completed / rep.decisions)


def tier_for(rep: WorkerReputation) -> ReputationTier:
    if rep.tasks_completed < MIN_COMPLETED_FOR_TIER:
        return ReputationTier.NONE
    for tier, minimum, _bonus in TIERS:
        if rep.reputation_score >= minimum:
            return tier
    return ReputationTier.NONE


def bonus_pct(tier: ReputationTier) -> float:
    for t, _minimum, pct in TIERS:
        if t == tier:
            return pct
    return 0.0


class ReputationBook:
    """Per-worker running aggregates of verification outcomes.

    Updates are additive. With a path, the whole book is rewritten as JSON after
    every change; write failures are logged and the in-memory book stays current.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._book: dict[str, WorkerReputation] = {}
        if path is not None and path.exists():
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
                self._book = {w: WorkerReputation.model_validate(r) for w, r in raw.items()}
            except (OSError, ValueError) as e:
                logger.warning("could not load reputation book %s: %s", path, e)

    def get(self, worker: str) -> WorkerReputation:
        with self._lock:
            return self._book.get(worker) or WorkerReputation(worker=worker)

    def all(self) -> list[WorkerReputation]:
        with self._lock:
            return sorted(self._book.values(), key=lambda r: r.worker)

    def record(self, worker: str, result: VerificationResult) -> WorkerReputation:
        with self._lock:
            rep = self._book.get(worker) or WorkerReputation(worker=worker)
            n = rep.decisions + 1
            scores = result.scores.as_dict()
            update: dict[str, float | int] = {
                f"avg_{k}": getattr(rep, f"avg_{k}") + (scores[k] - getattr(rep, f"avg_{k}")) / n
                for k in _SUB_SCORES
            }
            if result.approved:
                update["tasks_completed"] = rep.tasks_completed + 1
            else:
                update["tasks_rejected"] = rep.tasks_rejected + 1
            rep = rep.model_copy(update=update)
            rep = rep.model_copy(update={"reputation_score": score_reputation(rep)})
            rep = rep.model_copy(update={"tier": tier_for(rep)})
            self._book[worker] = rep
            self._save()
            return rep

    def add_bonus(self, worker: str, amount: int) -> WorkerReputation:
        with self._lock:
            rep = self._book.get(worker) or WorkerReputation(worker=worker)
            rep = rep.model_copy(update={"total_bonus_paid": rep.total_bonus_paid + int(amount)})
            self._book[worker] = rep
            self._save()
            return rep

    def bonus_for(self, worker: str, reward: int) -> int:
        rep = self.get(worker)
        return int(reward * bonus_pct(rep.tier))

    def _save(self) -> None:
        if self._path is None:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            payload = {w: r.model_dump(mode="json") for w, r in self._book.items()}
            self._path.write_text(stable_json_dumps(payload), encoding="utf-8")
        except OSError as e:
            logger.error("failed to persist reputation book: %s", e)
