from __future__ import annotations

import pytest
from pydantic import ValidationError

from taskmaster.schemas import (
    EventType,
    Job,
    JobStatus,
    LedgerEvent,
    Task,
    TaskStatus,
    VerificationScores,
)


def test_job_rejects_overcommitted_budget() -> None:
    with pytest.raises(ValidationError, match="exceeds budget"):
        Job(id=1, client="0xc", budget=10, committed=11)


def test_job_rejects_spending_beyond_commitments() -> None:
    with pytest.raises(ValidationError, match="exceeds committed"):
        Job(id=1, client="0xc", budget=10, committed=5, spent=6)


def test_job_residual_is_budget_minus_spent() -> None:
    assert Job(id=1, client="0xc", budget=10, committed=7, spent=4).residual == 6


def test_statuses_decode_from_ledger_ordinals() -> None:
    assert Task(id=1, job_id=1, sequence_index=0, reward=1, status=3).status == TaskStatus.PENDING_VERIFICATION
    assert Job(id=1, client="0xc", budget=1, status=1).status == JobStatus.IN_PROGRESS
    assert Job(id=1, client="0xc", budget=1, status="Cancelled").status == JobStatus.CANCELLED
    with pytest.raises(ValidationError, match="ordinal out of range"):
        Task(id=1, job_id=1, sequence_index=0, reward=1, status=6)


def test_task_retry_count_is_bounded() -> None:
    with pytest.raises(ValidationError, match="exceeds max_retries"):
        Task(id=1, job_id=1, sequence_index=0, reward=1, max_retries=2, retry_count=3)


def test_task_zero_address_worker_means_unassigned() -> None:
    task = Task(
        id=1, job_id=1, sequence_index=0, reward=1, worker="0x0000000000000000000000000000000000000000"
    )
    assert task.worker is None
    assert Task(id=1, job_id=1, sequence_index=0, reward=1, worker=" 0xabc ").worker == "0xabc"


def test_terminal_statuses() -> None:
    done = Task(id=1, job_id=1, sequence_index=0, reward=1, status=TaskStatus.COMPLETED)
    waiting = Task(id=2, job_id=1, sequence_index=1, reward=1)
    assert done.terminal
    assert not waiting.terminal


def test_ledger_event_is_frozen_and_keyed_by_position() -> None:
    event = LedgerEvent(block_number=5, log_index=2, tx_hash="0xabc", name=EventType.TASK_ADDED)
    assert event.key == (5, 2)
    with pytest.raises(ValidationError):
        event.block_number = 6  # type: ignore[misc]


def test_verification_scores_must_be_in_unit_range() -> None:
    with pytest.raises(ValidationError):
        VerificationScores(authenticity=1.2, relevance=0, completeness=0, quality=0, consistency=0)
