from __future__ import annotations

import json
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from taskmaster.channel import MessageChannel
from taskmaster.checkpoint import CheckpointStore
from taskmaster.config import EngineConfig
from taskmaster.content import to_http_url
from taskmaster.costs import CostLedger, JsonlCostStore
from taskmaster.engine import TaskLifecycleEngine
from taskmaster.errors import ContentResolutionError, OracleError
from taskmaster.ledger import InMemoryLedger
from taskmaster.llm_openai import Usage
from taskmaster.reputation import ReputationBook
from taskmaster.scheduler import Scheduler
from taskmaster.schemas import ActionType, AgentAction
from taskmaster.verifier import VerificationPipeline
from taskmaster.watcher import EventWatcher

GATEWAY = "https://gw.test"


class ScriptedOracle:
    """Oracle that answers by schema name.

    A script entry is a dict (validated against the requested schema), a model
    instance, an exception to raise, or a list of those consumed in order with
    the last one repeating.
    """

    def __init__(self, script: dict[str, Any] | None = None) -> None:
        self.script: dict[str, Any] = dict(script or {})
        self.calls: list[tuple[str, tuple[str, ...]]] = []
        self._lock = threading.Lock()

    def call_json(
        self,
        *,
        system: str,
        user: str,
        schema: type[BaseModel],
        images: Sequence[str] = (),
    ) -> tuple[Any, Usage, str]:
        with self._lock:
            self.calls.append((schema.__name__, tuple(images)))
            entry = self.script.get(schema.__name__)
            if isinstance(entry, list):
                entry = entry.pop(0) if len(entry) > 1 else entry[0]
        if entry is None:
            raise OracleError(f"{schema.__name__}: no scripted response")
        if isinstance(entry, Exception):
            raise entry
        model = entry if isinstance(entry, BaseModel) else schema.model_validate(entry)
        return model, Usage(calls=1, input_tokens=0, output_tokens=0), json.dumps(model.model_dump(mode="json"))

    def count(self, schema_name: str) -> int:
        with self._lock:
            return sum(1 for name, _ in self.calls if name == schema_name)


class StaticResolver:
    """Maps ipfs:// and http(s) references to gateway URLs; manifests are given up front."""

    def __init__(self, manifests: dict[str, list[str]] | None = None) -> None:
        self.manifests = dict(manifests or {})
        self.resolved: list[str] = []

    def resolve(self, ref: str) -> list[str]:
        self.resolved.append(ref)
        if ref in self.manifests:
            return list(self.manifests[ref])
        url = to_http_url(ref, gateway=GATEWAY)
        if url is None:
            raise ContentResolutionError(f"unsupported content reference: {ref!r}")
        return [url]


class FakeClock:
    def __init__(self, start: int = 1_700_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


def plan_script(*rewards: str, ai: Sequence[str] = ()) -> dict[str, Any]:
    tasks: list[dict[str, Any]] = [
        {"description": d, "executorType": "ai", "reward": "0", "deadlineMinutes": 5} for d in ai
    ]
    tasks.extend(
        {
            "description": f"Step {i}",
            "proofRequirements": "1. Photo shows the result",
            "reward": r,
            "deadlineMinutes": 60,
            "dependsOnPrevious": i > 0,
            "tags": ["Errand", "photo"],
            "executorType": "human",
        }
        for i, r in enumerate(rewards)
    )
    return {"tasks": tasks}


GOOD_FRAUD = {"authenticity_score": 0.95, "fraud_flags": [], "reasoning": "genuine photo"}
GOOD_REQUIREMENTS = {
    "relevance_score": 0.9,
    "relevance_evidence": "shows the item",
    "completeness_score": 0.9,
    "completeness_evidence": "all criteria visible",
    "quality_score": 0.9,
    "quality_evidence": "sharp",
    "overall_reasoning": "meets requirements",
}
POOR_REQUIREMENTS = {
    "relevance_score": 0.2,
    "relevance_evidence": "unrelated image",
    "completeness_score": 0.1,
    "completeness_evidence": "criterion 1 missing",
    "quality_score": 0.5,
    "quality_evidence": "blurry",
    "overall_reasoning": "does not meet requirements",
}
GOOD_CONSISTENCY = {"consistency_score": 0.9, "matching_elements": ["same flyer"], "mismatches": [], "reasoning": "ok"}


def happy_script(*rewards: str) -> dict[str, Any]:
    return {
        "DecompositionPlan": plan_script(*(rewards or ("0.003", "0.004"))),
        "FraudAnalysis": GOOD_FRAUD,
        "RequirementsAnalysis": GOOD_REQUIREMENTS,
        "ConsistencyAnalysis": GOOD_CONSISTENCY,
        "AiTaskOutput": {"deliverable": "found it", "keyFacts": ["Open 9-5", "Costs $10"]},
    }


@dataclass
class Harness:
    ledger: InMemoryLedger
    oracle: ScriptedOracle
    resolver: StaticResolver
    clock: FakeClock
    costs: CostLedger
    engine: TaskLifecycleEngine
    watcher: EventWatcher
    checkpoints: CheckpointStore
    scheduler: Scheduler
    messages: list[Any] = field(default_factory=list)

    def pump(self, limit: int = 50) -> int:
        """Poll until the ledger has no unprocessed events; returns events handled."""
        total = 0
        for _ in range(limit):
            n = self.watcher.poll_once()
            if n == 0:
                return total
            total += n
        raise AssertionError("event processing did not settle")

    def actions(self, kind: ActionType) -> list[AgentAction]:
        return [m for m in self.messages if isinstance(m, AgentAction) and m.type == kind]

    def work(self, task_id: int, proof: str, *, worker: str = "0xworker") -> None:
        task = self.engine.state.task(task_id)
        assert task is not None
        self.ledger.accept_task(task.job_id, task_id, worker=worker)
        self.ledger.submit_proof(task.job_id, task_id, proof, worker=worker)


def build_harness(
    tmp_path: Path | None = None,
    *,
    script: dict[str, Any] | None = None,
    ledger: InMemoryLedger | None = None,
    clock: FakeClock | None = None,
    config: EngineConfig | None = None,
    oracle: ScriptedOracle | None = None,
) -> Harness:
    clock = clock or FakeClock()
    ledger = ledger or InMemoryLedger(clock=clock)
    oracle = oracle or ScriptedOracle(script if script is not None else happy_script())
    resolver = StaticResolver()
    cfg = config or EngineConfig(state_dir=tmp_path or Path("."))
    store = JsonlCostStore(tmp_path) if tmp_path is not None else None
    costs = CostLedger(store=store).init()
    channel = MessageChannel()
    engine = TaskLifecycleEngine(
        ledger=ledger,
        oracle=oracle,
        verifier=VerificationPipeline(
            oracle=oracle, resolver=resolver, threshold=cfg.verification_threshold, deterministic=True
        ),
        costs=costs,
        config=cfg,
        channel=channel,
        reputation=ReputationBook(),
        deterministic=True,
        clock=clock,
    )
    checkpoints = CheckpointStore(tmp_path / "checkpoint.json" if tmp_path is not None else None)
    watcher = EventWatcher(ledger=ledger, engine=engine, checkpoints=checkpoints)
    scheduler = Scheduler(engine=engine, ledger=ledger, costs=costs, config=cfg, clock=clock)
    h = Harness(
        ledger=ledger,
        oracle=oracle,
        resolver=resolver,
        clock=clock,
        costs=costs,
        engine=engine,
        watcher=watcher,
        checkpoints=checkpoints,
        scheduler=scheduler,
    )
    channel.subscribe(h.messages.append)
    return h
