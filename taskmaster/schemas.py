from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class JobStatus(str, Enum):
    CREATED = "Created"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class TaskStatus(str, Enum):
    PENDING = "Pending"
    OPEN = "Open"
    ACCEPTED = "Accepted"
    PENDING_VERIFICATION = "PendingVerification"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED})
TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED})


def _coerce_ordinal(enum_cls: type[Enum], v: Any) -> Any:
    # Ledgers report enum fields as small integers in declaration order.
    if isinstance(v, bool):
        return v
    if isinstance(v, int):
        members = list(enum_cls)
        if 0 <= v < len(members):
            return members[v]
        raise ValueError(f"{enum_cls.__name__} ordinal out of range: {v}")
    return v


class EventType(str, Enum):
    JOB_CREATED = "JobCreated"
    JOB_CANCELLED = "JobCancelled"
    JOB_COMPLETED = "JobCompleted"

    TASK_ADDED = "TaskAdded"
    TASK_AVAILABLE = "TaskAvailable"
    TASK_ACCEPTED = "TaskAccepted"
    TASK_COMPLETED = "TaskCompleted"
    TASK_EXPIRED = "TaskExpired"

    PROOF_SUBMITTED = "ProofSubmitted"
    PROOF_REJECTED = "ProofRejected"


class LedgerEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    block_number: int = Field(ge=0)
    log_index: int = Field(default=0, ge=0)
    tx_hash: str
    name: EventType
    args: dict[str, Any] = Field(default_factory=dict)
    timestamp: int = Field(default=0, ge=0)

    @property
    def key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


class Job(BaseModel):
    id: int = Field(ge=0)
    client: str
    description: str = ""
    budget: int = Field(ge=0)
    committed: int = Field(default=0, ge=0)
    spent: int = Field(default=0, ge=0)
    task_count: int = Field(default=0, ge=0)
    status: JobStatus = JobStatus.CREATED
    created_at: int = Field(default=0, ge=0)

    @field_validator("status", mode="before")
    @classmethod
    def _status_from_ordinal(cls, v: Any) -> Any:
        return _coerce_ordinal(JobStatus, v)

    @model_validator(mode="after")
    def _check_accounting(self) -> "Job":
        if self.committed > self.budget:
            raise ValueError(f"job {self.id}: committed {self.committed} exceeds budget {self.budget}")
        if self.spent > self.committed:
            raise ValueError(f"job {self.id}: spent {self.spent} exceeds committed {self.committed}")
        return self

    @property
    def residual(self) -> int:
        return self.budget - self.spent


class Task(BaseModel):
    id: int = Field(ge=0)
    job_id: int = Field(ge=0)
    sequence_index: int = Field(ge=0)
    worker: str | None = None
    description: str = ""
    proof_requirements: str = ""
    reward: int = Field(ge=0)
    deadline_offset: int = Field(default=0, ge=0)
    deadline: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    retry_count: int = Field(default=0, ge=0)
    status: TaskStatus = TaskStatus.PENDING
    proof_uri: str = ""
    rejection_reason: str = ""

    @field_validator("status", mode="before")
    @classmethod
    def _status_from_ordinal(cls, v: Any) -> Any:
        return _coerce_ordinal(TaskStatus, v)

    @field_validator("worker", mode="before")
    @classmethod
    def _empty_worker_is_none(cls, v: Any) -> Any:
        if v is None:
            return None
        s = str(v).strip()
        if not s or s.lower() in {"0x", "0x0000000000000000000000000000000000000000"}:
            return None
        return s

    @model_validator(mode="after")
    def _check_retries(self) -> "Task":
        if self.retry_count > self.max_retries:
            raise ValueError(
                f"task {self.id}: retry_count {self.retry_count} exceeds max_retries {self.max_retries}"
            )
        return self

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


class VerificationScores(BaseModel):
    authenticity: float = Field(ge=0.0, le=1.0)
    relevance: float = Field(ge=0.0, le=1.0)
    completeness: float = Field(ge=0.0, le=1.0)
    quality: float = Field(ge=0.0, le=1.0)
    consistency: float = Field(ge=0.0, le=1.0)

    def as_dict(self) -> dict[str, float]:
        return {
            "authenticity": self.authenticity,
            "relevance": self.relevance,
            "completeness": self.completeness,
            "quality": self.quality,
            "consistency": self.consistency,
        }


class VerificationResult(BaseModel):
    approved: bool
    confidence: float = Field(ge=0.0, le=1.0)
    scores: VerificationScores
    reasoning: str = ""
    suggestion: str = ""
    kill_switch: bool = False
    degraded: list[str] = Field(default_factory=list)
    flags: list[str] = Field(default_factory=list)


class ReputationTier(str, Enum):
    GOLD = "gold"
    SILVER = "silver"
    BRONZE = "bronze"
    NONE = "none"


class WorkerReputation(BaseModel):
    worker: str
    tasks_completed: int = Field(default=0, ge=0)
    tasks_rejected: int = Field(default=0, ge=0)
    avg_authenticity: float = 0.0
    avg_relevance: float = 0.0
    avg_completeness: float = 0.0
    avg_quality: float = 0.0
    avg_consistency: float = 0.0
    reputation_score: float = 0.0
    total_bonus_paid: int = Field(default=0, ge=0)
    tier: ReputationTier = ReputationTier.NONE

    @property
    def decisions(self) -> int:
        return self.tasks_completed + self.tasks_rejected


class CostCategory(str, Enum):
    ORACLE_CALL = "oracle-call"
    LEDGER_FEE = "ledger-fee"
    STORAGE = "storage"


class RevenueCategory(str, Enum):
    JOB_PROFIT = "job-profit"
    SERVICE_FEE = "service-fee"


class CostEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: CostCategory
    amount_usd: float = Field(ge=0.0)
    operation: str
    job_id: int | None = None
    ts: datetime


class RevenueEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: RevenueCategory
    amount_usd: float
    operation: str = ""
    job_id: int | None = None
    ts: datetime


class ReimbursementEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    amount_usd: float = Field(ge=0.0)
    tx_hash: str
    ts: datetime


class Checkpoint(BaseModel):
    block: int = Field(default=-1, ge=-1)
    snapshot: dict[str, Any] | None = None
    saved_at: datetime | None = None


class ActionType(str, Enum):
    JOB_RECEIVED = "job_received"
    JOB_DECOMPOSED = "job_decomposed"
    AI_TASK_STARTED = "ai_task_started"
    AI_TASK_COMPLETED = "ai_task_completed"
    TASK_POSTED = "task_posted"
    TASK_ACCEPTED = "task_accepted"
    PROOF_SUBMITTED = "proof_submitted"
    PROOF_VERIFIED = "proof_verified"
    PROOF_REJECTED = "proof_rejected"
    WORKER_PAID = "worker_paid"
    BONUS_PAID = "bonus_paid"
    NEXT_TASK_OPENED = "next_task_opened"
    TASK_EXPIRED = "task_expired"
    JOB_COMPLETED = "job_completed"
    JOB_CANCELLED = "job_cancelled"
    JOB_STALLED = "job_stalled"
    COMPUTE_REIMBURSED = "compute_reimbursed"
    TRANSACTION_FAILED = "transaction_failed"


class AgentAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: ActionType
    job_id: int | None = None
    task_id: int | None = None
    timestamp: float
    details: dict[str, Any] = Field(default_factory=dict)


class AgentTransaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: str
    tx_hash: str
    amount: str | None = None
    timestamp: float
