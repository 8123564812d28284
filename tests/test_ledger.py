from __future__ import annotations

import pytest

from taskmaster.costing import to_wei
from taskmaster.errors import LedgerReadError, LedgerTransactionError
from taskmaster.ledger import InMemoryLedger, Ledger
from taskmaster.reads import decode_task, read_job, read_job_tasks, read_open_tasks, read_task
from taskmaster.schemas import EventType, JobStatus, TaskStatus

from tests.helpers import FakeClock


def _ledger_with_tasks(*rewards: str) -> InMemoryLedger:
    ledger = InMemoryLedger(clock=FakeClock(1000))
    ledger.create_job(client="0xc", description="job", budget=to_wei("0.01"))
    for i, r in enumerate(rewards):
        ledger.add_task(
            0,
            description=f"step {i}",
            proof_requirements="1. photo",
            reward=to_wei(r),
            deadline_offset=60,
            max_retries=2,
        )
    return ledger


def test_in_memory_ledger_satisfies_protocol() -> None:
    assert isinstance(InMemoryLedger(), Ledger)


def test_each_call_mines_one_block_with_ordered_logs() -> None:
    ledger = _ledger_with_tasks("0.003", "0.004")
    events = ledger.get_events(0)
    assert [(e.block_number, e.log_index, e.name) for e in events] == [
        (1, 0, EventType.JOB_CREATED),
        (2, 0, EventType.TASK_ADDED),
        (2, 1, EventType.TASK_AVAILABLE),
        (3, 0, EventType.TASK_ADDED),
    ]
    assert len({e.tx_hash for e in events}) == 3
    assert ledger.get_events(3)[0].args["sequenceIndex"] == 1
    assert ledger.block_number() == 3


def test_only_first_task_opens_and_approval_opens_the_next() -> None:
    ledger = _ledger_with_tasks("0.003", "0.004")
    assert [t.id for t in read_open_tasks(ledger)] == [0]

    ledger.accept_task(0, 0, worker="0xw")
    ledger.submit_proof(0, 0, "ipfs://deliverable", worker="0xw")
    ledger.approve_task(0, 0)

    assert read_task(ledger, 0).status == TaskStatus.COMPLETED
    assert read_task(ledger, 1).status == TaskStatus.OPEN
    assert ledger.get_previous_deliverable(0, 1) == "ipfs://deliverable"
    available = [e for e in ledger.get_events(0) if e.name == EventType.TASK_AVAILABLE]
    assert available[-1].args["previousDeliverableURI"] == "ipfs://deliverable"
    assert ledger.balance_of("0xw") == to_wei("0.003")


def test_commitments_cannot_exceed_budget() -> None:
    ledger = _ledger_with_tasks("0.006")
    with pytest.raises(LedgerTransactionError, match="remaining budget"):
        ledger.add_task(0, description="x", proof_requirements="", reward=to_wei("0.005"), deadline_offset=60, max_retries=3)
    assert read_job(ledger, 0).committed == to_wei("0.006")


def test_only_agent_may_add_tasks() -> None:
    ledger = _ledger_with_tasks()
    with pytest.raises(LedgerTransactionError, match="not the agent"):
        ledger.add_task(
            0, description="x", proof_requirements="", reward=1, deadline_offset=60, max_retries=3, sender="0xmallory"
        )


def test_proof_must_come_from_assigned_worker() -> None:
    ledger = _ledger_with_tasks("0.003")
    ledger.accept_task(0, 0, worker="0xw")
    with pytest.raises(LedgerTransactionError, match="assigned worker"):
        ledger.submit_proof(0, 0, "ipfs://p", worker="0xother")


def test_rejections_exhaust_retries_and_release_reward() -> None:
    ledger = _ledger_with_tasks("0.003")
    ledger.accept_task(0, 0, worker="0xw")
    ledger.submit_proof(0, 0, "ipfs://a", worker="0xw")
    ledger.reject_proof(0, 0, "blurry")
    assert read_task(ledger, 0).status == TaskStatus.ACCEPTED
    assert ledger.get_task(0)["rejectionReason"] == "blurry"

    ledger.submit_proof(0, 0, "ipfs://b", worker="0xw")
    ledger.reject_proof(0, 0, "still blurry")
    task = read_task(ledger, 0)
    assert task.status == TaskStatus.CANCELLED
    assert task.retry_count == 2
    assert read_job(ledger, 0).committed == 0


def test_expiry_requires_passed_deadline() -> None:
    clock = FakeClock(1000)
    ledger = InMemoryLedger(clock=clock)
    ledger.create_job(client="0xc", description="job", budget=to_wei("0.01"))
    ledger.add_task(0, description="x", proof_requirements="", reward=to_wei("0.001"), deadline_offset=60, max_retries=3)

    clock.advance(59)
    with pytest.raises(LedgerTransactionError, match="deadline"):
        ledger.expire_task(0, 0)
    clock.advance(1)
    ledger.expire_task(0, 0)
    assert read_task(ledger, 0).status == TaskStatus.CANCELLED
    # a cancelled task cannot be expired twice
    with pytest.raises(LedgerTransactionError):
        ledger.expire_task(0, 0)


def test_complete_job_pays_residual_to_agent() -> None:
    ledger = _ledger_with_tasks("0.003")
    with pytest.raises(LedgerTransactionError, match="not completed"):
        ledger.complete_job(0)
    ledger.accept_task(0, 0, worker="0xw")
    ledger.submit_proof(0, 0, "ipfs://p", worker="0xw")
    ledger.approve_task(0, 0)
    ledger.complete_job(0)

    assert read_job(ledger, 0).status == JobStatus.COMPLETED
    assert ledger.balance_of(ledger.agent) == to_wei("0.007")
    assert ledger.get_events(0)[-1].args["profit"] == to_wei("0.007")


def test_cancel_job_refunds_unspent_budget_to_client() -> None:
    ledger = _ledger_with_tasks("0.003", "0.004")
    with pytest.raises(LedgerTransactionError, match="not the job client"):
        ledger.cancel_job(0, client="0xsomeone")
    ledger.cancel_job(0, client="0xc")
    assert ledger.balance_of("0xc") == to_wei("0.01")
    assert [t.status for t in read_job_tasks(ledger, 0)] == [TaskStatus.CANCELLED, TaskStatus.CANCELLED]


def test_failed_call_leaves_no_trace() -> None:
    ledger = _ledger_with_tasks("0.003")
    before = ledger.block_number()
    ledger.fail_next("acceptTask", "nonce too low")
    with pytest.raises(LedgerTransactionError, match="nonce too low"):
        ledger.accept_task(0, 0, worker="0xw")
    assert ledger.block_number() == before
    assert read_task(ledger, 0).status == TaskStatus.OPEN
    # the injected failure is used up
    ledger.accept_task(0, 0, worker="0xw")


def test_set_agent_is_owner_only() -> None:
    ledger = InMemoryLedger()
    with pytest.raises(LedgerTransactionError, match="not the owner"):
        ledger.set_agent("0xnew", sender="0xagent")
    ledger.set_agent("0xnew")
    assert ledger.agent == "0xnew"


def test_reads_decode_ordinals_and_empty_worker() -> None:
    ledger = _ledger_with_tasks("0.003")
    raw = ledger.get_task(0)
    assert raw["status"] == 1
    task = decode_task(raw)
    assert task.status == TaskStatus.OPEN
    assert task.worker is None
    assert task.deadline == 1060
    assert task.deadline_offset == 60


def test_reads_reject_missing_records_and_fields() -> None:
    ledger = InMemoryLedger()
    with pytest.raises(LedgerReadError, match="no record"):
        read_job(ledger, 42)
    raw = _ledger_with_tasks("0.003").get_task(0)
    del raw["reward"]
    with pytest.raises(LedgerReadError, match="reward"):
        decode_task(raw)
    with pytest.raises(LedgerReadError, match="malformed"):
        decode_task({**_ledger_with_tasks("0.003").get_task(0), "status": 9})
