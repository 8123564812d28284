from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import Future
from contextlib import ExitStack, contextmanager
from typing import Any

from taskmaster.ai_executor import AiTaskResult, execute_ai_task
from taskmaster.channel import MessageChannel
from taskmaster.clarifier import ClarifyResult, ClarifyTurn, clarify
from taskmaster.config import EngineConfig
from taskmaster.costing import FixedPriceFeed, PriceFeed, format_ether
from taskmaster.costs import CostLedger
from taskmaster.errors import InvalidTransitionError, LedgerReadError, LedgerTransactionError, OracleError
from taskmaster.executors import make_executor
from taskmaster.ledger import Ledger
from taskmaster.locks import KeyedLock
from taskmaster.oracle import Oracle
from taskmaster.planner import DecompositionPlan, PlannedTask, decompose_job, plan_problem
from taskmaster.reputation import ReputationBook
from taskmaster.schemas import (
    TERMINAL_JOB_STATUSES,
    ActionType,
    AgentAction,
    AgentTransaction,
    EventType,
    JobStatus,
    LedgerEvent,
    RevenueCategory,
    Task,
    TaskStatus,
    VerificationResult,
)
from taskmaster.state import WorldState
from taskmaster.verifier import VerificationPipeline

logger = logging.getLogger(__name__)

MAX_INJECTED_FACTS = 4


def _job_key(job_id: int) -> str:
    return f"job:{job_id}"


def notes_for(task: PlannedTask, ai_results: dict[int, AiTaskResult]) -> list[str]:
    """Key facts from completed agent tasks that a human task should carry.

    Tasks that name no relevant agent tasks get every fact.
    """
    done = {i: r for i, r in ai_results.items() if r.status == "completed" and r.key_facts}
    facts: list[str] = []
    if task.relevant_ai_tasks:
        for idx in task.relevant_ai_tasks:
            if idx in done:
                facts.extend(done[idx].key_facts)
    else:
        for idx in sorted(done):
            facts.extend(done[idx].key_facts)
    return facts[:MAX_INJECTED_FACTS]


def with_notes(description: str, facts: Sequence[str]) -> str:
    if not facts:
        return description
    return description + "\n\nNotes:\n" + "\n".join(f"- {f}" for f in facts)


class TaskLifecycleEngine:
    """Drives jobs and tasks through their lifecycle.

    The only component that issues ledger-mutating transactions. Every
    transition runs under a per-task (or per-job) lock, is applied to
    `state` optimistically, and is rolled back if the transaction fails.
    Ledger events arrive through `handle_event`; the state applies them
    idempotently, so the engine's own transitions echoing back are no-ops.
    """

    def __init__(
        self,
        *,
        ledger: Ledger,
        oracle: Oracle,
        verifier: VerificationPipeline,
        costs: CostLedger,
        config: EngineConfig | None = None,
        state: WorldState | None = None,
        channel: MessageChannel | None = None,
        reputation: ReputationBook | None = None,
        price_feed: PriceFeed | None = None,
        deterministic: bool = False,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.ledger = ledger
        self.oracle = oracle
        self.verifier = verifier
        self.costs = costs
        self.state = state or WorldState()
        self.channel = channel or MessageChannel()
        self.reputation = reputation or ReputationBook()
        self.price_feed = price_feed or FixedPriceFeed(self.config.eth_usd_price)
        self._clock = clock or time.time
        self._locks = KeyedLock()
        self._background = make_executor(deterministic=deterministic, max_workers=2, prefix="reputation")
        # Work parked after a transient failure, re-driven by `retry_deferred`.
        self._deferred_lock = threading.Lock()
        self._deferred_verifications: set[tuple[int, int]] = set()
        self._unposted: dict[int, list[tuple[str, PlannedTask]]] = {}

    def shutdown(self) -> None:
        self._background.shutdown(wait=True)
        self.verifier.shutdown()

    # -- publishing -----------------------------------------------------------

    def _act(self, kind: ActionType, *, job_id: int | None = None, task_id: int | None = None, **details: Any) -> None:
        self.channel.publish(
            AgentAction(type=kind, job_id=job_id, task_id=task_id, timestamp=self._clock(), details=details)
        )

    def _transaction(self, action: str, tx_hash: str, amount: int | None = None) -> None:
        self.channel.publish(
            AgentTransaction(
                action=action,
                tx_hash=tx_hash,
                amount=format_ether(amount) if amount is not None else None,
                timestamp=self._clock(),
            )
        )

    # -- transaction wrapper ----------------------------------------------------

    def _transact(
        self,
        operation: str,
        action: str,
        *,
        job_id: int,
        call: Callable[[], str],
        optimistic: Callable[[], Any] | None = None,
        task_id: int | None = None,
        amount: int | None = None,
    ) -> str | None:
        """Apply `optimistic` to state, submit `call`, and roll back if it fails.

        Returns the transaction hash, or None when the step was refused or the
        transaction failed. Failures are not retried here.
        """
        before = self.state.snapshot_job(job_id)
        try:
            if optimistic is not None:
                optimistic()
        except InvalidTransitionError as e:
            logger.warning("%s skipped: %s", operation, e)
            return None
        after = self.state.snapshot_job(job_id)

        try:
            tx_hash = call()
        except LedgerTransactionError as e:
            self.state.rollback(before, after)
            logger.error("%s failed, state rolled back: %s", operation, e)
            replayed = self.state.reapply_refused(job_id)
            if replayed:
                logger.info("job %s: re-applied %d events refused during %s", job_id, replayed, operation)
            self._act(
                ActionType.TRANSACTION_FAILED,
                job_id=job_id,
                task_id=task_id,
                operation=operation,
                error=str(e),
            )
            return None

        self.costs.log_cost(operation, job_id=job_id)
        self._transaction(action, tx_hash, amount)
        return tx_hash

    # -- API boundary -----------------------------------------------------------

    def clarify(self, description: str, budget: int, history: Sequence[ClarifyTurn] = ()) -> ClarifyResult:
        self.costs.log_cost("clarify-job")
        return clarify(
            self.oracle,
            description=description,
            budget=budget,
            history=history,
            max_rounds=self.config.clarify_max_rounds,
        )

    def decompose(self, description: str, budget: int, *, job_id: int | None = None) -> DecompositionPlan:
        self.costs.log_cost("decompose-job", job_id=job_id)
        return decompose_job(
            self.oracle, description=description, budget=budget, margin=self.config.profit_margin
        )

    # -- ledger events ----------------------------------------------------------

    @contextmanager
    def _event_locks(self, event: LedgerEvent) -> Iterator[None]:
        # Task events wait for any in-flight transition of their task; job events
        # wait for the job and every task in it. Lock order is job key, then task ids.
        a = event.args
        with ExitStack() as stack:
            if "taskId" in a:
                stack.enter_context(self._locks.hold(int(a["taskId"])))
            elif "jobId" in a:
                job_id = int(a["jobId"])
                stack.enter_context(self._locks.hold(_job_key(job_id)))
                for task in self.state.tasks_for_job(job_id):
                    stack.enter_context(self._locks.hold(task.id))
            yield

    def handle_event(self, event: LedgerEvent) -> None:
        """Apply one ledger event to state, then run its side effects.

        The state update runs under the same locks as the engine's own
        transitions, so an event never lands on an optimistic record that a
        failing transaction is about to roll back. Side effects run after the
        locks are released.
        """
        with self._event_locks(event):
            applied = self.state.apply_event(event)
        if not applied:
            logger.debug("duplicate delivery of %s at %s", event.name.value, event.key)
            return

        a = event.args
        name = event.name
        if name == EventType.JOB_CREATED:
            job_id = int(a["jobId"])
            self._act(
                ActionType.JOB_RECEIVED,
                job_id=job_id,
                client=a.get("client"),
                budget=format_ether(int(a.get("budget", 0))),
            )
            self.process_job(job_id)
            return

        if name == EventType.TASK_ACCEPTED:
            self._act(
                ActionType.TASK_ACCEPTED, job_id=int(a["jobId"]), task_id=int(a["taskId"]), worker=a.get("worker")
            )
            return

        if name == EventType.PROOF_SUBMITTED:
            job_id, task_id = int(a["jobId"]), int(a["taskId"])
            self._act(ActionType.PROOF_SUBMITTED, job_id=job_id, task_id=task_id, proof_uri=a.get("proofURI"))
            self.handle_proof_submitted(job_id, task_id)
            return

        if name == EventType.JOB_CANCELLED:
            with self._deferred_lock:
                self._unposted.pop(int(a["jobId"]), None)
            self._act(
                ActionType.JOB_CANCELLED,
                job_id=int(a["jobId"]),
                refund=format_ether(int(a.get("refund", 0))),
            )
            return

    # -- job processing ---------------------------------------------------------

    def process_job(self, job_id: int) -> list[str] | None:
        """Decompose a newly created job, run its agent tasks, and post the human tasks.

        Returns the posted transaction hashes, or None when nothing could be posted.
        """
        with self._locks.hold(_job_key(job_id)):
            job = self.state.job(job_id)
            if job is None or job.status != JobStatus.CREATED or self.state.tasks_for_job(job_id):
                return None

            try:
                plan = self.decompose(job.description, job.budget, job_id=job_id)
            except OracleError as e:
                logger.error("job %s: decomposition failed: %s", job_id, e)
                return None
            problem = plan_problem(plan, job.budget)
            if problem is not None:
                logger.error("job %s: bad decomposition: %s", job_id, problem)
                return None

            human = plan.human_tasks
            self._act(
                ActionType.JOB_DECOMPOSED,
                job_id=job_id,
                task_count=len(plan.tasks),
                ai_task_count=len(plan.tasks) - len(human),
                human_task_count=len(human),
                margin=format_ether(job.budget - plan.human_reward_total()),
            )

            ai_results = self._run_ai_tasks(job_id, plan)
            # The job may only complete once every planned human task exists on the ledger.
            self.state.set_planned_tasks(job_id, len(human))
            pending = [(with_notes(p.description, notes_for(p, ai_results)), p) for p in human]
            hashes = self._post_tasks(job_id, pending, first_index=0)

        if not human:
            # Agent-only plan: nothing to post, the whole budget is profit.
            tx_hash = self.complete_job(job_id)
            return [tx_hash] if tx_hash is not None else None
        return hashes or None

    def _post_tasks(self, job_id: int, pending: list[tuple[str, PlannedTask]], *, first_index: int) -> list[str]:
        """Post planned tasks in order; on failure park the rest for `retry_deferred`.

        Caller holds the job lock.
        """
        hashes: list[str] = []
        for offset, (description, planned) in enumerate(pending):
            index = first_index + offset
            reward = planned.reward_wei
            tx_hash = self._transact(
                f"addTask-{index}",
                "Add task",
                job_id=job_id,
                call=lambda d=description, p=planned, r=reward: self.ledger.add_task(
                    job_id,
                    description=d,
                    proof_requirements=p.proof_requirements,
                    reward=r,
                    deadline_offset=p.deadline_minutes * 60,
                    max_retries=self.config.default_max_retries,
                ),
            )
            if tx_hash is None:
                remaining = pending[offset:]
                with self._deferred_lock:
                    self._unposted[job_id] = remaining
                logger.error("job %s: posting stopped at task %d, %d left to post", job_id, index, len(remaining))
                self._act(
                    ActionType.JOB_STALLED, job_id=job_id, cause="posting failed", unposted=len(remaining)
                )
                break
            hashes.append(tx_hash)
            self._act(
                ActionType.TASK_POSTED,
                job_id=job_id,
                description=planned.description,
                reward=planned.reward,
                tags=planned.tags,
            )
        return hashes

    def resume_posting(self, job_id: int) -> list[str]:
        """Post the tasks a job still owes after an earlier addTask failure."""
        with self._locks.hold(_job_key(job_id)):
            with self._deferred_lock:
                pending = self._unposted.pop(job_id, [])
            if not pending:
                return []
            job = self.state.job(job_id)
            if job is None or job.status in TERMINAL_JOB_STATUSES:
                return []
            first_index = len(self.state.tasks_for_job(job_id))
            logger.info("job %s: resuming posting of %d tasks", job_id, len(pending))
            return self._post_tasks(job_id, pending, first_index=first_index)

    def retry_deferred(self) -> None:
        """Re-drive work parked after a transient failure.

        Called by the event watcher before every poll.
        """
        with self._deferred_lock:
            verifications = sorted(self._deferred_verifications)
            jobs = sorted(self._unposted)
        for job_id, task_id in verifications:
            self.handle_proof_submitted(job_id, task_id)
        for job_id in jobs:
            self.resume_posting(job_id)

    def _run_ai_tasks(self, job_id: int, plan: DecompositionPlan) -> dict[int, AiTaskResult]:
        results: dict[int, AiTaskResult] = {}
        for idx, planned in enumerate(plan.tasks):
            if not planned.is_ai:
                continue
            self._act(ActionType.AI_TASK_STARTED, job_id=job_id, sequence_index=idx, description=planned.description)
            result = execute_ai_task(
                self.oracle,
                job_id=job_id,
                sequence_index=idx,
                description=planned.description,
                previous=list(results.values()),
            )
            self.costs.log_cost(f"ai-task-{idx}", job_id=job_id)
            results[idx] = result
            self._act(
                ActionType.AI_TASK_COMPLETED,
                job_id=job_id,
                sequence_index=idx,
                description=planned.description,
                status=result.status,
            )
        return results

    # -- verification -----------------------------------------------------------

    def handle_proof_submitted(self, job_id: int, task_id: int) -> VerificationResult | None:
        """Verify the pending proof of a task and approve or reject it.

        A task that is no longer pending verification (a duplicate delivery, or
        a decision already made) is left alone.
        """
        with self._locks.hold(task_id):
            with self._deferred_lock:
                self._deferred_verifications.discard((job_id, task_id))
            task = self.state.task(task_id)
            if task is None or task.status != TaskStatus.PENDING_VERIFICATION:
                logger.info("task %s: no proof pending, skipping verification", task_id)
                return None

            previous = ""
            if task.sequence_index > 0:
                try:
                    previous = self.ledger.get_previous_deliverable(job_id, task_id)
                except LedgerReadError as e:
                    logger.warning("task %s: previous deliverable unreadable, verification deferred: %s", task_id, e)
                    with self._deferred_lock:
                        self._deferred_verifications.add((job_id, task_id))
                    return None
            result = self.verifier.verify(task, task.proof_uri, previous_deliverable=previous)
            self.costs.log_cost(f"verify-task-{task_id}", job_id=job_id)
            logger.info(
                "task %s: %s (confidence %.2f)",
                task_id,
                "approved" if result.approved else "rejected",
                result.confidence,
            )

            if result.approved:
                tx_hash = self._approve(task, result)
            else:
                tx_hash = self._reject(task, result)

        if tx_hash is not None and task.worker:
            future = self._background.submit(self._record_reputation, task, task.worker, result)
            future.add_done_callback(self._log_background_failure)

        if tx_hash is not None and result.approved and self._all_tasks_completed(job_id):
            self.complete_job(job_id)
        return result

    def _approve(self, task: Task, result: VerificationResult) -> str | None:
        tx_hash = self._transact(
            f"approveTask-{task.id}",
            "Approve task + pay worker",
            job_id=task.job_id,
            task_id=task.id,
            amount=task.reward,
            optimistic=lambda: self.state.complete_task(task.id),
            call=lambda: self.ledger.approve_task(task.job_id, task.id),
        )
        if tx_hash is None:
            return None
        self._act(
            ActionType.PROOF_VERIFIED,
            job_id=task.job_id,
            task_id=task.id,
            confidence=result.confidence,
            scores=result.scores.as_dict(),
        )
        self._act(
            ActionType.WORKER_PAID,
            job_id=task.job_id,
            task_id=task.id,
            worker=task.worker,
            amount=format_ether(task.reward),
        )
        if not self.state.is_last_task(task):
            self._act(ActionType.NEXT_TASK_OPENED, job_id=task.job_id, after_task=task.id)
        return tx_hash

    def _reject(self, task: Task, result: VerificationResult) -> str | None:
        reason = result.suggestion or result.reasoning
        tx_hash = self._transact(
            f"rejectProof-{task.id}",
            "Reject proof",
            job_id=task.job_id,
            task_id=task.id,
            optimistic=lambda: self.state.reject_proof(task.id, reason=reason),
            call=lambda: self.ledger.reject_proof(task.job_id, task.id, reason),
        )
        if tx_hash is None:
            return None
        after = self.state.task(task.id)
        self._act(
            ActionType.PROOF_REJECTED,
            job_id=task.job_id,
            task_id=task.id,
            reason=reason,
            confidence=result.confidence,
            kill_switch=result.kill_switch,
            retry_count=after.retry_count if after else None,
        )
        if after is not None and after.status == TaskStatus.CANCELLED:
            self._act(ActionType.JOB_STALLED, job_id=task.job_id, task_id=task.id, cause="retries exhausted")
        return tx_hash

    def _record_reputation(self, task: Task, worker: str, result: VerificationResult) -> None:
        self.reputation.record(worker, result)
        if not (result.approved and self.config.bonuses_enabled):
            return
        bonus = self.reputation.bonus_for(worker, task.reward)
        if bonus <= 0:
            return
        try:
            tx_hash = self.ledger.transfer(worker, bonus)
        except LedgerTransactionError as e:
            logger.error("bonus for %s failed: %s", worker, e)
            self._act(
                ActionType.TRANSACTION_FAILED,
                job_id=task.job_id,
                task_id=task.id,
                operation="reputation-bonus",
                error=str(e),
            )
            return
        self.costs.log_cost("reputation-bonus", job_id=task.job_id)
        rep = self.reputation.add_bonus(worker, bonus)
        self._transaction("Reputation bonus", tx_hash, bonus)
        self._act(
            ActionType.BONUS_PAID,
            job_id=task.job_id,
            task_id=task.id,
            worker=worker,
            amount=format_ether(bonus),
            tier=rep.tier.value,
        )

    @staticmethod
    def _log_background_failure(future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("reputation update failed", exc_info=exc)

    # -- expiry and completion --------------------------------------------------

    def expire_task(self, task_id: int, *, now: int | None = None) -> str | None:
        """Expire an Open or Accepted task whose deadline has passed."""
        with self._locks.hold(task_id):
            task = self.state.task(task_id)
            if task is None or task.status not in (TaskStatus.OPEN, TaskStatus.ACCEPTED):
                return None
            if task.deadline <= 0 or (now is not None and task.deadline >= now):
                return None
            tx_hash = self._transact(
                f"expireTask-{task_id}",
                "Expire task",
                job_id=task.job_id,
                task_id=task_id,
                optimistic=lambda: self.state.expire_task(task_id),
                call=lambda: self.ledger.expire_task(task.job_id, task_id),
            )
        if tx_hash is None:
            return None
        self._act(ActionType.TASK_EXPIRED, job_id=task.job_id, task_id=task_id, previous_worker=task.worker)
        self._act(ActionType.JOB_STALLED, job_id=task.job_id, task_id=task_id, cause="expired")
        return tx_hash

    def _all_tasks_completed(self, job_id: int) -> bool:
        tasks = self.state.tasks_for_job(job_id)
        planned = self.state.planned_tasks(job_id)
        if planned is not None and len(tasks) < planned:
            return False
        return bool(tasks) and all(t.status == TaskStatus.COMPLETED for t in tasks)

    def complete_job(self, job_id: int) -> str | None:
        """Close a job whose tasks are all completed and book the residual budget as profit."""
        with self._locks.hold(_job_key(job_id)):
            job = self.state.job(job_id)
            if job is None or job.status in TERMINAL_JOB_STATUSES:
                return None
            profit = job.budget - job.spent
            tx_hash = self._transact(
                f"completeJob-{job_id}",
                "Complete job + withdraw profit",
                job_id=job_id,
                amount=profit,
                optimistic=lambda: self.state.complete_job(job_id),
                call=lambda: self.ledger.complete_job(job_id),
            )
        if tx_hash is None:
            return None
        profit_usd = self.price_feed.wei_to_usd(profit)
        self.costs.log_revenue(
            RevenueCategory.JOB_PROFIT, profit_usd, operation=f"job-{job_id}", job_id=job_id
        )
        self._act(
            ActionType.JOB_COMPLETED, job_id=job_id, profit=format_ether(profit), profit_usd=profit_usd
        )
        return tx_hash

    # -- recovery ---------------------------------------------------------------

    def reconcile(self) -> None:
        """Re-drive work that was in flight when the process stopped.

        Jobs that never got tasks are decomposed again, proofs still pending
        verification are verified, and jobs whose tasks all completed are closed.
        """
        for job in self.state.jobs():
            if job.status in TERMINAL_JOB_STATUSES:
                continue
            tasks = self.state.tasks_for_job(job.id)
            if not tasks:
                if job.status == JobStatus.CREATED:
                    logger.info("job %s has no tasks, decomposing again", job.id)
                    self.process_job(job.id)
                continue
            for task in tasks:
                if task.status == TaskStatus.PENDING_VERIFICATION:
                    logger.info("task %s was awaiting verification, verifying again", task.id)
                    self.handle_proof_submitted(job.id, task.id)
            planned = self.state.planned_tasks(job.id)
            if planned is not None and len(tasks) < planned:
                logger.warning(
                    "job %s has %d of %d planned tasks posted; it stays open until cancelled",
                    job.id,
                    len(tasks),
                    planned,
                )
            if self._all_tasks_completed(job.id):
                self.complete_job(job.id)
