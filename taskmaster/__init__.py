from __future__ import annotations

from taskmaster.channel import MessageChannel
from taskmaster.checkpoint import CheckpointStore
from taskmaster.clarifier import ClarifyResult, ClarifyTurn, clarify
from taskmaster.config import EngineConfig, load_config
from taskmaster.costs import CostLedger, JsonlCostStore
from taskmaster.engine import TaskLifecycleEngine
from taskmaster.ledger import InMemoryLedger, Ledger
from taskmaster.oracle import Oracle, RouterOracle
from taskmaster.planner import DecompositionPlan, PlannedTask, decompose_job, normalize_plan
from taskmaster.reputation import ReputationBook
from taskmaster.scheduler import Scheduler
from taskmaster.schemas import (
    EventType,
    Job,
    JobStatus,
    LedgerEvent,
    Task,
    TaskStatus,
    VerificationResult,
    VerificationScores,
    WorkerReputation,
)
from taskmaster.state import WorldState, replay_events
from taskmaster.verifier import VerificationPipeline
from taskmaster.watcher import EventWatcher

__all__ = [
    "__version__",
    # Engine
    "TaskLifecycleEngine",
    "EngineConfig",
    "load_config",
    # Collaborators
    "Ledger",
    "InMemoryLedger",
    "Oracle",
    "RouterOracle",
    # Verification
    "VerificationPipeline",
    "VerificationResult",
    "VerificationScores",
    # Planning
    "DecompositionPlan",
    "PlannedTask",
    "decompose_job",
    "normalize_plan",
    "ClarifyResult",
    "ClarifyTurn",
    "clarify",
    # State and recovery
    "WorldState",
    "replay_events",
    "EventWatcher",
    "CheckpointStore",
    "Scheduler",
    # Accounting
    "CostLedger",
    "JsonlCostStore",
    "ReputationBook",
    "WorkerReputation",
    "MessageChannel",
    # Schemas
    "EventType",
    "Job",
    "JobStatus",
    "LedgerEvent",
    "Task",
    "TaskStatus",
]

__version__ = "0.1.0"
