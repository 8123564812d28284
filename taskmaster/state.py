from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ValidationError

from taskmaster.errors import InvalidTransitionError
from taskmaster.schemas import (
    TERMINAL_TASK_STATUSES,
    EventType,
    Job,
    JobStatus,
    LedgerEvent,
    Task,
    TaskStatus,
)

logger = logging.getLogger(__name__)

REFUSED_PER_JOB = 32

# Cancellation edges out of Pending and PendingVerification exist only for
# client cancellation and retry exhaustion respectively.
TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.OPEN, TaskStatus.CANCELLED}),
    TaskStatus.OPEN: frozenset({TaskStatus.ACCEPTED, TaskStatus.CANCELLED}),
    TaskStatus.ACCEPTED: frozenset({TaskStatus.PENDING_VERIFICATION, TaskStatus.CANCELLED}),
    TaskStatus.PENDING_VERIFICATION: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.ACCEPTED, TaskStatus.CANCELLED}
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}

JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.CREATED: frozenset({JobStatus.IN_PROGRESS, JobStatus.COMPLETED, JobStatus.CANCELLED}),
    JobStatus.IN_PROGRESS: frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def _check_task_edge(task: Task, new: TaskStatus) -> None:
    if new not in TASK_TRANSITIONS[task.status]:
        raise InvalidTransitionError(f"task {task.id}: {task.status.value} -> {new.value} not permitted")


def _check_job_edge(job: Job, new: JobStatus) -> None:
    if new != job.status and new not in JOB_TRANSITIONS[job.status]:
        raise InvalidTransitionError(f"job {job.id}: {job.status.value} -> {new.value} not permitted")


def _replace(model: BaseModel, **update: Any) -> Any:
    # Re-validate so record invariants (committed/spent, retry bounds) are enforced.
    try:
        return type(model).model_validate({**model.model_dump(), **update})
    except ValidationError as e:
        raise InvalidTransitionError(str(e)) from e


@dataclass(frozen=True)
class JobSnapshot:
    job: Job
    tasks: dict[int, Task]


class WorldState:
    """The engine's in-process view of every job and task.

    All mutation goes through the transition methods below, which validate the
    whole step before changing anything. `apply_event` maps ledger events onto
    the same transitions; it is deterministic (deadlines come from ledger
    timestamps) and idempotent (duplicate deliveries and events whose effect was
    already applied optimistically are no-ops).
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._jobs: dict[int, Job] = {}
        self._tasks: dict[int, Task] = {}
        self.applied_through = -1
        self._applied_keys: set[tuple[int, int]] = set()
        # Human tasks each job's plan calls for; off-ledger, kept in checkpoints only.
        self._planned: dict[int, int] = {}
        self._refused: dict[int, deque[LedgerEvent]] = {}

    # -- queries ------------------------------------------------------------

    def job(self, job_id: int) -> Job | None:
        with self._lock:
            return self._jobs.get(job_id)

    def task(self, task_id: int) -> Task | None:
        with self._lock:
            return self._tasks.get(task_id)

    def jobs(self) -> list[Job]:
        with self._lock:
            return [self._jobs[k] for k in sorted(self._jobs)]

    def tasks(self) -> list[Task]:
        with self._lock:
            return [self._tasks[k] for k in sorted(self._tasks)]

    def tasks_for_job(self, job_id: int) -> list[Task]:
        with self._lock:
            return sorted(
                (t for t in self._tasks.values() if t.job_id == job_id), key=lambda t: t.sequence_index
            )

    def is_last_task(self, task: Task) -> bool:
        siblings = self.tasks_for_job(task.job_id)
        return bool(siblings) and siblings[-1].id == task.id

    def planned_tasks(self, job_id: int) -> int | None:
        with self._lock:
            return self._planned.get(job_id)

    def set_planned_tasks(self, job_id: int, count: int) -> None:
        with self._lock:
            self._planned[job_id] = int(count)

    def expirable(self, now: int) -> list[Task]:
        with self._lock:
            return [
                t
                for t in self.tasks()
                if t.status in (TaskStatus.OPEN, TaskStatus.ACCEPTED) and 0 < t.deadline < now
            ]

    # -- rollback -----------------------------------------------------------

    def snapshot_job(self, job_id: int) -> JobSnapshot:
        # Records are replaced, never mutated in place, so holding references is enough.
        with self._lock:
            job = self._jobs[job_id]
            return JobSnapshot(job=job, tasks={t.id: t for t in self.tasks_for_job(job_id)})

    def rollback(self, before: JobSnapshot, after: JobSnapshot) -> None:
        """Undo an optimistic update, leaving alone records someone else changed since."""
        with self._lock:
            job_id = before.job.id
            if self._jobs.get(job_id) is after.job:
                self._jobs[job_id] = before.job
            else:
                logger.warning("job %s changed during a failed transaction; keeping newer state", job_id)
            for tid, old in before.tasks.items():
                new = after.tasks.get(tid)
                if new is old:
                    continue
                if self._tasks.get(tid) is new:
                    self._tasks[tid] = old
                else:
                    logger.warning("task %s changed during a failed transaction; keeping newer state", tid)

    # -- transitions ----------------------------------------------------------

    def _require_job(self, job_id: int) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise InvalidTransitionError(f"unknown job {job_id}")
        return job

    def _require_task(self, task_id: int) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise InvalidTransitionError(f"unknown task {task_id}")
        return task

    def add_job(self, *, job_id: int, client: str, description: str, budget: int, created_at: int) -> Job:
        with self._lock:
            if job_id in self._jobs:
                raise InvalidTransitionError(f"job {job_id} already exists")
            try:
                job = Job(id=job_id, client=client, description=description, budget=budget, created_at=created_at)
            except ValidationError as e:
                raise InvalidTransitionError(str(e)) from e
            self._jobs[job_id] = job
            return job

    def add_task(
        self,
        *,
        job_id: int,
        task_id: int,
        sequence_index: int,
        reward: int,
        description: str,
        proof_requirements: str,
        deadline_offset: int,
        max_retries: int,
    ) -> Task:
        with self._lock:
            job = self._require_job(job_id)
            if task_id in self._tasks:
                raise InvalidTransitionError(f"task {task_id} already exists")
            if job.status not in (JobStatus.CREATED, JobStatus.IN_PROGRESS):
                raise InvalidTransitionError(f"job {job_id} is {job.status.value}")
            _check_job_edge(job, JobStatus.IN_PROGRESS)
            try:
                task = Task(
                    id=task_id,
                    job_id=job_id,
                    sequence_index=sequence_index,
                    reward=reward,
                    description=description,
                    proof_requirements=proof_requirements,
                    deadline_offset=deadline_offset,
                    max_retries=max_retries,
                )
            except ValidationError as e:
                raise InvalidTransitionError(str(e)) from e
            new_job = _replace(
                job,
                committed=job.committed + reward,
                task_count=job.task_count + 1,
                status=JobStatus.IN_PROGRESS,
            )
            self._jobs[job_id] = new_job
            self._tasks[task_id] = task
            return task

    def open_task(self, task_id: int, *, at: int) -> Task:
        with self._lock:
            task = self._require_task(task_id)
            _check_task_edge(task, TaskStatus.OPEN)
            for prior in self.tasks_for_job(task.job_id):
                if prior.sequence_index < task.sequence_index and prior.status != TaskStatus.COMPLETED:
                    raise InvalidTransitionError(
                        f"task {task_id} cannot open before task {prior.id} completes"
                    )
            task = _replace(task, status=TaskStatus.OPEN, deadline=at + task.deadline_offset)
            self._tasks[task_id] = task
            return task

    def accept_task(self, task_id: int, *, worker: str, at: int) -> Task:
        with self._lock:
            task = self._require_task(task_id)
            _check_task_edge(task, TaskStatus.ACCEPTED)
            if task.status != TaskStatus.OPEN:
                raise InvalidTransitionError(f"task {task_id} is not open")
            task = _replace(
                task, status=TaskStatus.ACCEPTED, worker=worker, deadline=at + task.deadline_offset
            )
            self._tasks[task_id] = task
            return task

    def submit_proof(self, task_id: int, *, proof_uri: str) -> Task:
        with self._lock:
            task = self._require_task(task_id)
            _check_task_edge(task, TaskStatus.PENDING_VERIFICATION)
            task = _replace(task, status=TaskStatus.PENDING_VERIFICATION, proof_uri=proof_uri)
            self._tasks[task_id] = task
            return task

    def complete_task(self, task_id: int) -> Task:
        with self._lock:
            task = self._require_task(task_id)
            _check_task_edge(task, TaskStatus.COMPLETED)
            job = self._require_job(task.job_id)
            new_job = _replace(job, spent=job.spent + task.reward)
            task = _replace(task, status=TaskStatus.COMPLETED)
            self._jobs[job.id] = new_job
            self._tasks[task_id] = task
            return task

    def _cancel(self, task: Task, **update: Any) -> tuple[Task, Job]:
        _check_task_edge(task, TaskStatus.CANCELLED)
        job = self._require_job(task.job_id)
        return (
            _replace(task, status=TaskStatus.CANCELLED, **update),
            _replace(job, committed=job.committed - task.reward),
        )

    def reject_proof(self, task_id: int, *, reason: str) -> Task:
        """Count a failed attempt: back to Accepted, or Cancelled once retries run out."""
        with self._lock:
            task = self._require_task(task_id)
            if task.status != TaskStatus.PENDING_VERIFICATION:
                raise InvalidTransitionError(f"task {task_id} is not pending verification")
            retries = task.retry_count + 1
            if retries >= task.max_retries:
                task, job = self._cancel(task, retry_count=retries, rejection_reason=reason)
                self._jobs[job.id] = job
            else:
                task = _replace(
                    task, status=TaskStatus.ACCEPTED, retry_count=retries, rejection_reason=reason
                )
            self._tasks[task_id] = task
            return task

    def expire_task(self, task_id: int) -> Task:
        with self._lock:
            task = self._require_task(task_id)
            if task.status not in (TaskStatus.OPEN, TaskStatus.ACCEPTED):
                raise InvalidTransitionError(f"task {task_id} is {task.status.value}, not expirable")
            task, job = self._cancel(task)
            self._jobs[job.id] = job
            self._tasks[task_id] = task
            return task

    def complete_job(self, job_id: int) -> Job:
        with self._lock:
            job = self._require_job(job_id)
            _check_job_edge(job, JobStatus.COMPLETED)
            pending = [t.id for t in self.tasks_for_job(job_id) if t.status != TaskStatus.COMPLETED]
            if pending:
                raise InvalidTransitionError(f"job {job_id} has unfinished tasks {pending}")
            job = _replace(job, status=JobStatus.COMPLETED)
            self._jobs[job_id] = job
            return job

    def cancel_job(self, job_id: int) -> Job:
        with self._lock:
            job = self._require_job(job_id)
            _check_job_edge(job, JobStatus.CANCELLED)
            released = 0
            cancelled: dict[int, Task] = {}
            for t in self.tasks_for_job(job_id):
                if t.status in TERMINAL_TASK_STATUSES:
                    continue
                _check_task_edge(t, TaskStatus.CANCELLED)
                cancelled[t.id] = _replace(t, status=TaskStatus.CANCELLED)
                released += t.reward
            job = _replace(job, status=JobStatus.CANCELLED, committed=job.committed - released)
            self._tasks.update(cancelled)
            self._jobs[job_id] = job
            return job

    # -- ledger events --------------------------------------------------------

    def seen(self, event: LedgerEvent) -> bool:
        with self._lock:
            return event.block_number <= self.applied_through or event.key in self._applied_keys

    def apply_event(self, event: LedgerEvent) -> bool:
        """Apply one ledger event. Returns False for a duplicate delivery."""
        with self._lock:
            if self.seen(event):
                return False
            self._applied_keys.add(event.key)
            try:
                self._apply(event)
            except InvalidTransitionError as e:
                logger.warning(
                    "ignoring %s at %s: %s", event.name.value, event.key, e
                )
                if "jobId" in event.args:
                    job_id = int(event.args["jobId"])
                    self._refused.setdefault(job_id, deque(maxlen=REFUSED_PER_JOB)).append(event)
            return True

    def reapply_refused(self, job_id: int) -> int:
        """Retry events of a job that were refused, e.g. against a since rolled-back record.

        Events that still do not apply are dropped. Returns how many applied.
        """
        with self._lock:
            refused = self._refused.pop(job_id, None)
            if not refused:
                return 0
            applied = 0
            for event in refused:
                try:
                    self._apply(event)
                except InvalidTransitionError as e:
                    logger.debug("dropping refused %s at %s: %s", event.name.value, event.key, e)
                else:
                    applied += 1
            return applied

    def mark_block_processed(self, block: int) -> None:
        with self._lock:
            if block <= self.applied_through:
                return
            self.applied_through = block
            self._applied_keys = {k for k in self._applied_keys if k[0] > block}

    def _apply(self, event: LedgerEvent) -> None:
        a = event.args
        name = event.name

        if name == EventType.JOB_CREATED:
            if int(a["jobId"]) in self._jobs:
                return
            self.add_job(
                job_id=int(a["jobId"]),
                client=str(a["client"]),
                description=str(a.get("description", "")),
                budget=int(a["budget"]),
                created_at=event.timestamp,
            )
            return

        if name == EventType.JOB_COMPLETED:
            job = self._require_job(int(a["jobId"]))
            if job.status != JobStatus.COMPLETED:
                self.complete_job(job.id)
            return

        if name == EventType.JOB_CANCELLED:
            job = self._require_job(int(a["jobId"]))
            if job.status != JobStatus.CANCELLED:
                self.cancel_job(job.id)
            return

        task_id = int(a["taskId"])

        if name == EventType.TASK_ADDED:
            if task_id in self._tasks:
                return
            self.add_task(
                job_id=int(a["jobId"]),
                task_id=task_id,
                sequence_index=int(a["sequenceIndex"]),
                reward=int(a["reward"]),
                description=str(a.get("description", "")),
                proof_requirements=str(a.get("proofRequirements", "")),
                deadline_offset=int(a.get("deadlineOffset", 0)),
                max_retries=int(a.get("maxRetries", 3)),
            )
            return

        task = self._require_task(task_id)

        if name == EventType.TASK_AVAILABLE:
            if task.status == TaskStatus.OPEN:
                self._tasks[task_id] = _replace(task, deadline=event.timestamp + task.deadline_offset)
            else:
                self.open_task(task_id, at=event.timestamp)
            return

        if name == EventType.TASK_ACCEPTED:
            if task.status == TaskStatus.ACCEPTED and task.worker == a.get("worker"):
                return
            self.accept_task(task_id, worker=str(a["worker"]), at=event.timestamp)
            return

        if name == EventType.PROOF_SUBMITTED:
            if task.status == TaskStatus.PENDING_VERIFICATION and task.proof_uri == a.get("proofURI"):
                return
            self.submit_proof(task_id, proof_uri=str(a["proofURI"]))
            return

        if name == EventType.TASK_COMPLETED:
            if task.status != TaskStatus.COMPLETED:
                self.complete_task(task_id)
            return

        if name == EventType.PROOF_REJECTED:
            # Accepted/Cancelled here means the engine already applied its own rejection.
            if task.status in (TaskStatus.ACCEPTED, TaskStatus.CANCELLED):
                return
            self.reject_proof(task_id, reason=str(a.get("reason", "")))
            return

        if name == EventType.TASK_EXPIRED:
            if task.status != TaskStatus.CANCELLED:
                self.expire_task(task_id)
            return

    # -- persistence ----------------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "jobs": [j.model_dump(mode="json") for j in self.jobs()],
                "tasks": [t.model_dump(mode="json") for t in self.tasks()],
                "applied_through": self.applied_through,
                "applied_keys": sorted([list(k) for k in self._applied_keys]),
                "planned_tasks": {str(k): v for k, v in sorted(self._planned.items())},
            }

    def restore(self, data: dict[str, Any]) -> None:
        """Replace the whole state with a snapshot taken by `snapshot()`."""
        jobs = {j.id: j for j in (Job.model_validate(r) for r in data.get("jobs", []))}
        tasks = {t.id: t for t in (Task.model_validate(r) for r in data.get("tasks", []))}
        with self._lock:
            self._jobs = jobs
            self._tasks = tasks
            self.applied_through = int(data.get("applied_through", -1))
            self._applied_keys = {(int(b), int(i)) for b, i in data.get("applied_keys", [])}
            self._planned = {int(k): int(v) for k, v in data.get("planned_tasks", {}).items()}
            self._refused = {}

    def clear(self) -> None:
        self.restore({})

    @classmethod
    def from_snapshot(cls, data: dict[str, Any]) -> "WorldState":
        state = cls()
        state.restore(data)
        return state

    def fingerprint(self) -> dict[str, Any]:
        """Snapshot without delivery bookkeeping, for comparing two histories."""
        snap = self.snapshot()
        return {"jobs": snap["jobs"], "tasks": snap["tasks"]}


def replay_events(events: Iterable[LedgerEvent], *, state: WorldState | None = None) -> WorldState:
    """Fold ledger events, in ledger order, into a WorldState."""
    state = state or WorldState()
    current: int | None = None
    for event in events:
        if current is not None and event.block_number != current:
            state.mark_block_processed(current)
        current = event.block_number
        state.apply_event(event)
    if current is not None:
        state.mark_block_processed(current)
    return state
