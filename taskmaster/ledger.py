from __future__ import annotations

import hashlib
import threading
import time
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from taskmaster.errors import LedgerTransactionError
from taskmaster.jsonutil import stable_json_dumps
from taskmaster.schemas import EventType, JobStatus, LedgerEvent, TaskStatus

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


@runtime_checkable
class Ledger(Protocol):
    """Structural interface to the marketplace ledger.

    Mutating calls return the transaction hash and raise LedgerTransactionError
    when the transaction reverts or cannot be submitted. Reads return the raw
    record mappings; decode them with `taskmaster.reads`.
    """

    # Mutating calls issued by the agent.
    def add_task(
        self,
        job_id: int,
        *,
        description: str,
        proof_requirements: str,
        reward: int,
        deadline_offset: int,
        max_retries: int,
    ) -> str: ...

    def approve_task(self, job_id: int, task_id: int) -> str: ...

    def reject_proof(self, job_id: int, task_id: int, reason: str) -> str: ...

    def expire_task(self, job_id: int, task_id: int) -> str: ...

    def complete_job(self, job_id: int) -> str: ...

    def transfer(self, to: str, amount: int) -> str: ...

    def set_agent(self, address: str) -> str: ...

    # Mutating calls issued by clients and workers.
    def create_job(self, *, client: str, description: str, budget: int) -> str: ...

    def accept_task(self, job_id: int, task_id: int, *, worker: str) -> str: ...

    def submit_proof(self, job_id: int, task_id: int, proof_uri: str, *, worker: str) -> str: ...

    def cancel_job(self, job_id: int, *, client: str) -> str: ...

    # Reads.
    def get_job(self, job_id: int) -> dict[str, Any]: ...

    def get_task(self, task_id: int) -> dict[str, Any]: ...

    def get_job_tasks(self, job_id: int) -> list[dict[str, Any]]: ...

    def get_open_tasks(self) -> list[dict[str, Any]]: ...

    def get_previous_deliverable(self, job_id: int, task_id: int) -> str: ...

    def get_events(self, from_block: int = 0) -> list[LedgerEvent]: ...

    def block_number(self) -> int: ...


def _sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


# Contract storage keeps enum fields as declaration-order ordinals.
_TASK_ORDINAL = {s: i for i, s in enumerate(TaskStatus)}
_JOB_ORDINAL = {s: i for i, s in enumerate(JobStatus)}
_TASK_STATUSES = list(TaskStatus)
_JOB_STATUSES = list(JobStatus)


def _task_status(task: dict[str, Any]) -> TaskStatus:
    return _TASK_STATUSES[task["status"]]


def _job_status(job: dict[str, Any]) -> JobStatus:
    return _JOB_STATUSES[job["status"]]


class InMemoryLedger:
    """In-process simulation of the marketplace contract.

    Every successful mutating call mines one block, so events emitted by the
    same call share a block number and are ordered by log index. Transaction
    hashes are chained over the call payloads. Rule violations revert with
    LedgerTransactionError and leave no trace.
    """

    def __init__(
        self,
        *,
        agent: str = "0xagent",
        owner: str = "0xowner",
        clock: Callable[[], int] | None = None,
        start_block: int = 0,
    ) -> None:
        self._lock = threading.RLock()
        self._clock = clock or (lambda: int(time.time()))
        self._agent = agent
        self._owner = owner
        self._block = start_block
        self._tail_hash = "0x" + "0" * 64
        self._jobs: dict[int, dict[str, Any]] = {}
        self._tasks: dict[int, dict[str, Any]] = {}
        self._job_tasks: dict[int, list[int]] = {}
        self._events: list[LedgerEvent] = []
        self._balances: dict[str, int] = {}
        self._next_job_id = 0
        self._next_task_id = 0
        self._fail_next: dict[str, str] = {}
        self.calls: list[str] = []
        self._now = 0

    @property
    def agent(self) -> str:
        return self._agent

    def fail_next(self, call: str, reason: str = "execution reverted") -> None:
        """Make the next invocation of `call` revert (failure injection for tests)."""
        with self._lock:
            self._fail_next[call] = reason

    def balance_of(self, address: str) -> int:
        with self._lock:
            return self._balances.get(address, 0)

    def fund(self, address: str, amount: int) -> None:
        with self._lock:
            self._balances[address] = self._balances.get(address, 0) + int(amount)

    # -- mining -------------------------------------------------------------

    def _begin(self, call: str) -> None:
        self.calls.append(call)
        self._now = int(self._clock())
        reason = self._fail_next.pop(call, None)
        if reason is not None:
            raise LedgerTransactionError(call, reason)

    def _mine(self, call: str, payload: dict[str, Any], emitted: list[tuple[EventType, dict]]) -> str:
        self._block += 1
        ts = self._now
        tx_hash = "0x" + _sha256_hex(
            stable_json_dumps(
                {"prev": self._tail_hash, "block": self._block, "call": call, "payload": payload}
            )
        )
        self._tail_hash = tx_hash
        for log_index, (name, args) in enumerate(emitted):
            self._events.append(
                LedgerEvent(
                    block_number=self._block,
                    log_index=log_index,
                    tx_hash=tx_hash,
                    name=name,
                    args=args,
                    timestamp=ts,
                )
            )
        return tx_hash

    def _job(self, call: str, job_id: int) -> dict[str, Any]:
        job = self._jobs.get(job_id)
        if job is None:
            raise LedgerTransactionError(call, f"job {job_id} does not exist")
        return job

    def _task(self, call: str, job_id: int, task_id: int) -> dict[str, Any]:
        task = self._tasks.get(task_id)
        if task is None or task["jobId"] != job_id:
            raise LedgerTransactionError(call, f"task {task_id} does not belong to job {job_id}")
        return task

    def _require_agent(self, call: str, sender: str) -> None:
        if sender != self._agent:
            raise LedgerTransactionError(call, "caller is not the agent")

    def _open(self, task: dict[str, Any], now: int, previous_deliverable: str) -> tuple[EventType, dict]:
        task["status"] = _TASK_ORDINAL[TaskStatus.OPEN]
        task["deadline"] = now + task["deadlineOffset"]
        return (
            EventType.TASK_AVAILABLE,
            {
                "jobId": task["jobId"],
                "taskId": task["id"],
                "previousDeliverableURI": previous_deliverable,
            },
        )

    def _release(self, job: dict[str, Any], task: dict[str, Any]) -> None:
        task["status"] = _TASK_ORDINAL[TaskStatus.CANCELLED]
        job["totalCommitted"] -= task["reward"]

    # -- client / worker calls ----------------------------------------------

    def create_job(self, *, client: str, description: str, budget: int) -> str:
        with self._lock:
            self._begin("createJob")
            if budget <= 0:
                raise LedgerTransactionError("createJob", "budget must be positive")
            job_id = self._next_job_id
            self._next_job_id += 1
            self._jobs[job_id] = {
                "id": job_id,
                "client": client,
                "description": description,
                "totalBudget": int(budget),
                "totalCommitted": 0,
                "totalSpent": 0,
                "taskCount": 0,
                "status": 0,
                "createdAt": self._now,
            }
            self._job_tasks[job_id] = []
            return self._mine(
                "createJob",
                {"client": client, "budget": budget},
                [
                    (
                        EventType.JOB_CREATED,
                        {"jobId": job_id, "client": client, "budget": int(budget), "description": description},
                    )
                ],
            )

    def accept_task(self, job_id: int, task_id: int, *, worker: str) -> str:
        with self._lock:
            self._begin("acceptTask")
            task = self._task("acceptTask", job_id, task_id)
            if _task_status(task) != TaskStatus.OPEN:
                raise LedgerTransactionError("acceptTask", f"task {task_id} is not open")
            task["worker"] = worker
            task["status"] = _TASK_ORDINAL[TaskStatus.ACCEPTED]
            task["deadline"] = self._now + task["deadlineOffset"]
            return self._mine(
                "acceptTask",
                {"taskId": task_id, "worker": worker},
                [(EventType.TASK_ACCEPTED, {"jobId": job_id, "taskId": task_id, "worker": worker})],
            )

    def submit_proof(self, job_id: int, task_id: int, proof_uri: str, *, worker: str) -> str:
        with self._lock:
            self._begin("submitProof")
            task = self._task("submitProof", job_id, task_id)
            if _task_status(task) != TaskStatus.ACCEPTED:
                raise LedgerTransactionError("submitProof", f"task {task_id} is not accepted")
            if task["worker"] != worker:
                raise LedgerTransactionError("submitProof", "caller is not the assigned worker")
            task["proofURI"] = proof_uri
            task["status"] = _TASK_ORDINAL[TaskStatus.PENDING_VERIFICATION]
            return self._mine(
                "submitProof",
                {"taskId": task_id, "proofURI": proof_uri},
                [(EventType.PROOF_SUBMITTED, {"jobId": job_id, "taskId": task_id, "proofURI": proof_uri})],
            )

    def cancel_job(self, job_id: int, *, client: str) -> str:
        with self._lock:
            self._begin("cancelJob")
            job = self._job("cancelJob", job_id)
            if job["client"] != client:
                raise LedgerTransactionError("cancelJob", "caller is not the job client")
            if _job_status(job) not in (JobStatus.CREATED, JobStatus.IN_PROGRESS):
                raise LedgerTransactionError("cancelJob", f"job {job_id} is already finished")
            for tid in self._job_tasks[job_id]:
                task = self._tasks[tid]
                if _task_status(task) not in (TaskStatus.COMPLETED, TaskStatus.CANCELLED):
                    self._release(job, task)
            refund = job["totalBudget"] - job["totalSpent"]
            job["status"] = _JOB_ORDINAL[JobStatus.CANCELLED]
            self._balances[client] = self._balances.get(client, 0) + refund
            return self._mine(
                "cancelJob",
                {"jobId": job_id},
                [(EventType.JOB_CANCELLED, {"jobId": job_id, "refund": refund})],
            )

    # -- agent calls ----------------------------------------------------------

    def add_task(
        self,
        job_id: int,
        *,
        description: str,
        proof_requirements: str,
        reward: int,
        deadline_offset: int,
        max_retries: int,
        sender: str | None = None,
    ) -> str:
        with self._lock:
            self._begin("addTask")
            self._require_agent("addTask", sender or self._agent)
            job = self._job("addTask", job_id)
            if _job_status(job) not in (JobStatus.CREATED, JobStatus.IN_PROGRESS):
                raise LedgerTransactionError("addTask", f"job {job_id} is not active")
            if job["totalCommitted"] + reward > job["totalBudget"]:
                raise LedgerTransactionError("addTask", "reward exceeds remaining budget")

            task_id = self._next_task_id
            self._next_task_id += 1
            seq = len(self._job_tasks[job_id])
            task = {
                "id": task_id,
                "jobId": job_id,
                "sequenceIndex": seq,
                "worker": ZERO_ADDRESS,
                "description": description,
                "proofRequirements": proof_requirements,
                "deliverableURI": "",
                "reward": int(reward),
                "deadlineOffset": int(deadline_offset),
                "deadline": 0,
                "maxRetries": int(max_retries),
                "retryCount": 0,
                "status": 0,
                "proofURI": "",
                "rejectionReason": "",
            }
            self._tasks[task_id] = task
            self._job_tasks[job_id].append(task_id)
            job["totalCommitted"] += int(reward)
            job["taskCount"] += 1
            job["status"] = _JOB_ORDINAL[JobStatus.IN_PROGRESS]

            emitted: list[tuple[EventType, dict]] = [
                (
                    EventType.TASK_ADDED,
                    {
                        "jobId": job_id,
                        "taskId": task_id,
                        "sequenceIndex": seq,
                        "reward": int(reward),
                        "description": description,
                        "proofRequirements": proof_requirements,
                        "deadlineOffset": int(deadline_offset),
                        "maxRetries": int(max_retries),
                    },
                )
            ]
            predecessors = [self._tasks[t] for t in self._job_tasks[job_id][:-1]]
            if all(_task_status(p) == TaskStatus.COMPLETED for p in predecessors):
                prev = predecessors[-1]["deliverableURI"] if predecessors else ""
                emitted.append(self._open(task, self._now, prev))
            return self._mine("addTask", {"jobId": job_id, "taskId": task_id}, emitted)

    def approve_task(self, job_id: int, task_id: int) -> str:
        with self._lock:
            self._begin("approveTask")
            job = self._job("approveTask", job_id)
            task = self._task("approveTask", job_id, task_id)
            if _task_status(task) != TaskStatus.PENDING_VERIFICATION:
                raise LedgerTransactionError("approveTask", f"task {task_id} is not pending verification")
            task["status"] = _TASK_ORDINAL[TaskStatus.COMPLETED]
            task["deliverableURI"] = task["proofURI"]
            job["totalSpent"] += task["reward"]
            self._balances[task["worker"]] = self._balances.get(task["worker"], 0) + task["reward"]

            emitted: list[tuple[EventType, dict]] = [
                (
                    EventType.TASK_COMPLETED,
                    {"jobId": job_id, "taskId": task_id, "worker": task["worker"], "payout": task["reward"]},
                )
            ]
            ids = self._job_tasks[job_id]
            pos = ids.index(task_id)
            if pos + 1 < len(ids):
                nxt = self._tasks[ids[pos + 1]]
                if _task_status(nxt) == TaskStatus.PENDING:
                    emitted.append(self._open(nxt, self._now, task["deliverableURI"]))
            return self._mine("approveTask", {"taskId": task_id}, emitted)

    def reject_proof(self, job_id: int, task_id: int, reason: str) -> str:
        with self._lock:
            self._begin("rejectProof")
            job = self._job("rejectProof", job_id)
            task = self._task("rejectProof", job_id, task_id)
            if _task_status(task) != TaskStatus.PENDING_VERIFICATION:
                raise LedgerTransactionError("rejectProof", f"task {task_id} is not pending verification")
            task["retryCount"] += 1
            task["rejectionReason"] = reason
            if task["retryCount"] >= task["maxRetries"]:
                self._release(job, task)
            else:
                task["status"] = _TASK_ORDINAL[TaskStatus.ACCEPTED]
            return self._mine(
                "rejectProof",
                {"taskId": task_id, "reason": reason},
                [(EventType.PROOF_REJECTED, {"jobId": job_id, "taskId": task_id, "reason": reason})],
            )

    def expire_task(self, job_id: int, task_id: int) -> str:
        with self._lock:
            self._begin("expireTask")
            job = self._job("expireTask", job_id)
            task = self._task("expireTask", job_id, task_id)
            if _task_status(task) not in (TaskStatus.OPEN, TaskStatus.ACCEPTED):
                raise LedgerTransactionError("expireTask", f"task {task_id} is not expirable")
            if task["deadline"] <= 0 or self._now < task["deadline"]:
                raise LedgerTransactionError("expireTask", f"task {task_id} deadline has not passed")
            previous_worker = task["worker"]
            self._release(job, task)
            return self._mine(
                "expireTask",
                {"taskId": task_id},
                [
                    (
                        EventType.TASK_EXPIRED,
                        {"jobId": job_id, "taskId": task_id, "previousWorker": previous_worker},
                    )
                ],
            )

    def complete_job(self, job_id: int) -> str:
        with self._lock:
            self._begin("completeJob")
            job = self._job("completeJob", job_id)
            if _job_status(job) not in (JobStatus.CREATED, JobStatus.IN_PROGRESS):
                raise LedgerTransactionError("completeJob", f"job {job_id} is not active")
            for tid in self._job_tasks[job_id]:
                if _task_status(self._tasks[tid]) != TaskStatus.COMPLETED:
                    raise LedgerTransactionError("completeJob", f"task {tid} is not completed")
            profit = job["totalBudget"] - job["totalSpent"]
            job["status"] = _JOB_ORDINAL[JobStatus.COMPLETED]
            self._balances[self._agent] = self._balances.get(self._agent, 0) + profit
            return self._mine(
                "completeJob",
                {"jobId": job_id},
                [(EventType.JOB_COMPLETED, {"jobId": job_id, "profit": profit})],
            )

    def transfer(self, to: str, amount: int) -> str:
        with self._lock:
            self._begin("transfer")
            if amount <= 0:
                raise LedgerTransactionError("transfer", "amount must be positive")
            if self._balances.get(self._agent, 0) < amount:
                raise LedgerTransactionError("transfer", "insufficient funds")
            self._balances[self._agent] -= amount
            self._balances[to] = self._balances.get(to, 0) + amount
            return self._mine("transfer", {"to": to, "amount": amount}, [])

    def set_agent(self, address: str, *, sender: str | None = None) -> str:
        with self._lock:
            self._begin("setAgent")
            if (sender or self._owner) != self._owner:
                raise LedgerTransactionError("setAgent", "caller is not the owner")
            self._agent = address
            return self._mine("setAgent", {"agent": address}, [])

    # -- reads --------------------------------------------------------------

    def get_job(self, job_id: int) -> dict[str, Any]:
        with self._lock:
            job = self._jobs.get(job_id)
            return dict(job) if job is not None else {}

    def get_task(self, task_id: int) -> dict[str, Any]:
        with self._lock:
            task = self._tasks.get(task_id)
            return dict(task) if task is not None else {}

    def get_job_tasks(self, job_id: int) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(self._tasks[t]) for t in self._job_tasks.get(job_id, [])]

    def get_open_tasks(self) -> list[dict[str, Any]]:
        open_ordinal = _TASK_ORDINAL[TaskStatus.OPEN]
        with self._lock:
            return [dict(t) for t in self._tasks.values() if t["status"] == open_ordinal]

    def get_previous_deliverable(self, job_id: int, task_id: int) -> str:
        with self._lock:
            ids = self._job_tasks.get(job_id, [])
            if task_id not in ids:
                return ""
            pos = ids.index(task_id)
            if pos == 0:
                return ""
            return str(self._tasks[ids[pos - 1]]["deliverableURI"] or "")

    def get_events(self, from_block: int = 0) -> list[LedgerEvent]:
        with self._lock:
            return [e for e in self._events if e.block_number >= from_block]

    def block_number(self) -> int:
        with self._lock:
            return self._block
