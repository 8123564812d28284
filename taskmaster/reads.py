from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from taskmaster.errors import LedgerReadError
from taskmaster.ledger import Ledger
from taskmaster.schemas import Job, Task

# Ledger record field -> model field. Every listed field is required.
_JOB_FIELDS = {
    "id": "id",
    "client": "client",
    "description": "description",
    "totalBudget": "budget",
    "totalCommitted": "committed",
    "totalSpent": "spent",
    "taskCount": "task_count",
    "status": "status",
    "createdAt": "created_at",
}

_TASK_FIELDS = {
    "id": "id",
    "jobId": "job_id",
    "sequenceIndex": "sequence_index",
    "worker": "worker",
    "description": "description",
    "proofRequirements": "proof_requirements",
    "reward": "reward",
    "deadline": "deadline",
    "maxRetries": "max_retries",
    "retryCount": "retry_count",
    "status": "status",
    "proofURI": "proof_uri",
    "rejectionReason": "rejection_reason",
}


def _remap(kind: str, raw: Any, fields: Mapping[str, str]) -> dict[str, Any]:
    if not isinstance(raw, Mapping) or not raw:
        raise LedgerReadError(f"{kind} read returned no record")
    missing = sorted(k for k in fields if k not in raw)
    if missing:
        raise LedgerReadError(f"{kind} record missing fields: {', '.join(missing)}")
    return {dst: raw[src] for src, dst in fields.items()}


def decode_job(raw: Any) -> Job:
    data = _remap("job", raw, _JOB_FIELDS)
    try:
        return Job.model_validate(data)
    except ValidationError as e:
        raise LedgerReadError(f"malformed job record: {e}") from e


def decode_task(raw: Any) -> Task:
    data = _remap("task", raw, _TASK_FIELDS)
    if "deadlineOffset" in raw:
        data["deadline_offset"] = raw["deadlineOffset"]
    try:
        return Task.model_validate(data)
    except ValidationError as e:
        raise LedgerReadError(f"malformed task record: {e}") from e


def read_job(ledger: Ledger, job_id: int) -> Job:
    return decode_job(ledger.get_job(job_id))


def read_task(ledger: Ledger, task_id: int) -> Task:
    return decode_task(ledger.get_task(task_id))


def read_job_tasks(ledger: Ledger, job_id: int) -> list[Task]:
    return [decode_task(raw) for raw in ledger.get_job_tasks(job_id)]


def read_open_tasks(ledger: Ledger) -> list[Task]:
    return [decode_task(raw) for raw in ledger.get_open_tasks()]
