from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from taskmaster.errors import OracleError
from taskmaster.oracle import Oracle

logger = logging.getLogger(__name__)


class AiTaskOutput(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    deliverable: str
    key_facts: list[str] = Field(default_factory=list)


class AiTaskResult(BaseModel):
    job_id: int
    sequence_index: int
    description: str
    status: Literal["completed", "failed"]
    deliverable: str = ""
    key_facts: list[str] = Field(default_factory=list)
    error: str | None = None


def executor_system_prompt(*, description: str, previous: Sequence[AiTaskResult]) -> str:
    lines = [
        "You are a research assistant executing a task on behalf of a client.",
        "Complete the task thoroughly and produce a clear, structured deliverable.",
        "",
        f"Task: {description}",
    ]
    done = [r for r in previous if r.status == "completed"]
    if done:
        lines.extend(["", "Context from previous research:"])
        lines.extend(f"- {r.description}: {r.deliverable}" for r in done)
    lines.extend(
        [
            "",
            "Instructions:",
            "- Be specific: include dates, prices, places and sources.",
            "- If you cannot fully complete the task, say what you found and what remains unclear.",
            "",
            "Return JSON only:",
            '{ "deliverable": "markdown text with all findings",',
            '  "keyFacts": ["3-7 short, actionable facts a human worker can use at a glance"] }',
        ]
    )
    return "\n".join(lines)


def execute_ai_task(
    oracle: Oracle,
    *,
    job_id: int,
    sequence_index: int,
    description: str,
    previous: Sequence[AiTaskResult] = (),
) -> AiTaskResult:
    """Run one agent-executable task. A failure is recorded, never raised."""
    try:
        out, _usage, _raw = oracle.call_json(
            system=executor_system_prompt(description=description, previous=previous),
            user="Execute the task now.",
            schema=AiTaskOutput,
        )
    except OracleError as e:
        logger.warning("job %s ai task %d failed: %s", job_id, sequence_index, e)
        return AiTaskResult(
            job_id=job_id,
            sequence_index=sequence_index,
            description=description,
            status="failed",
            error=str(e),
        )
    return AiTaskResult(
        job_id=job_id,
        sequence_index=sequence_index,
        description=description,
        status="completed",
        deliverable=out.deliverable,
        key_facts=[f.strip() for f in out.key_facts if f.strip()],
    )
