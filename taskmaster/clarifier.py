from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from taskmaster.costing import format_ether
from taskmaster.oracle import Oracle

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROUNDS = 5
MAX_QUESTIONS_PER_ROUND = 3


class ClarifyTurn(BaseModel):
    question: str
    answer: str
    # Questions asked in the same call share a round number.
    round: int | None = None


class TaskPreview(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    description: str
    proof_requirements: str = ""
    reward: str = "0"
    executor_type: Literal["ai", "human"] | None = None


class ClarifyResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    ready: bool
    questions: list[str] = Field(default_factory=list)
    enriched_description: str | None = None
    task_preview: list[TaskPreview] = Field(default_factory=list)
    assumptions: list[str] = Field(default_factory=list)


class ClarifyResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    ready: bool
    questions: list[str] = Field(default_factory=list)
    enriched_description: str | None = None
    task_preview: list[TaskPreview] = Field(default_factory=list)
    round: int
    forced: bool = False


def rounds_completed(history: Sequence[ClarifyTurn]) -> int:
    seen: set[int] = set()
    unnumbered = 0
    for turn in history:
        if turn.round is None:
            unnumbered += 1
        else:
            seen.add(turn.round)
    return len(seen) + unnumbered


def clarify_system_prompt() -> str:
    return "\n".join(
        [
            "You are TaskMaster, an agent that manages real-world tasks. Before a job is created you",
            "gather enough detail to write precise, unambiguous task requirements.",
            "",
            "You receive a job description, a budget, and the prior Q&A rounds (possibly none).",
            "Decide whether the job can be decomposed into tasks with exact, measurable acceptance criteria.",
            "Ask about anything unclear: exact text or copy, quantities, brand or style references,",
            "audience, deliverable form, locations, constraints.",
            "",
            "Rules:",
            f"- Ask 1-{MAX_QUESTIONS_PER_ROUND} focused questions per round; build on earlier answers, never repeat them.",
            "- Only return ready=true when every task can be completed with zero ambiguity.",
            "- Always include taskPreview, your best current guess at the breakdown.",
            "- Human rewards in the preview must sum to less than the budget (leave a 20-30% margin).",
            '- executorType is "ai" for information lookup (reward "0", proofRequirements "N/A - AI executed"), otherwise "human".',
            "- List any assumptions you are making in assumptions.",
            "",
            "Return JSON only:",
            '{ "ready": false, "questions": [..], "taskPreview": [ { "description": "...", "proofRequirements": "...",',
            '  "reward": "0.003", "executorType": "human" } ], "assumptions": [..] }',
            "or, when ready:",
            '{ "ready": true, "enrichedDescription": "complete job brief incorporating all answers", "taskPreview": [..], "assumptions": [..] }',
        ]
    )


def clarify_user_prompt(
    *, description: str, budget: int, history: Sequence[ClarifyTurn], final_round: bool
) -> str:
    lines = [f'Job: "{description.strip()}"', f"Budget: {format_ether(budget)} ETH"]
    if history:
        lines.extend(["", "Prior Q&A:"])
        for i, turn in enumerate(history, start=1):
            lines.append(f"Q{i}: {turn.question}")
            lines.append(f"A{i}: {turn.answer}")
    if final_round:
        lines.extend(
            [
                "",
                "This is the final round. Return ready=true with an enrichedDescription and state",
                "every assumption you had to make.",
            ]
        )
    return "\n".join(lines)


def enriched_brief(
    *, description: str, history: Sequence[ClarifyTurn], assumptions: Sequence[str], draft: str | None
) -> str:
    parts = [draft.strip() if draft and draft.strip() else description.strip()]
    if draft and draft.strip() and description.strip() not in draft:
        parts.append(f"Original request: {description.strip()}")
    if history:
        parts.append(
            "Clarifications:\n" + "\n".join(f"- {t.question} {t.answer}".rstrip() for t in history)
        )
    if assumptions:
        parts.append("Assumptions:\n" + "\n".join(f"- {a}" for a in assumptions))
    return "\n\n".join(parts)


def clarify(
    oracle: Oracle,
    *,
    description: str,
    budget: int,
    history: Sequence[ClarifyTurn] = (),
    max_rounds: int = DEFAULT_MAX_ROUNDS,
) -> ClarifyResult:
    """Run one clarification round.

    Stateless between calls: the caller passes the full Q&A history every time.
    At the round limit the result is ready regardless of the oracle's answer,
    with the oracle's assumptions written into the enriched description.
    """
    current = rounds_completed(history) + 1
    final_round = current >= max_rounds
    resp, _usage, _raw = oracle.call_json(
        system=clarify_system_prompt(),
        user=clarify_user_prompt(
            description=description, budget=budget, history=history, final_round=final_round
        ),
        schema=ClarifyResponse,
    )

    questions = [q.strip() for q in resp.questions if q.strip()][:MAX_QUESTIONS_PER_ROUND]
    if resp.ready:
        return ClarifyResult(
            ready=True,
            enriched_description=enriched_brief(
                description=description,
                history=history,
                assumptions=resp.assumptions,
                draft=resp.enriched_description,
            ),
            task_preview=resp.task_preview,
            round=current,
        )

    if final_round or not questions:
        logger.info("clarification forced ready at round %d (limit %d)", current, max_rounds)
        return ClarifyResult(
            ready=True,
            enriched_description=enriched_brief(
                description=description,
                history=history,
                assumptions=resp.assumptions or [f"Open question left to worker judgment: {q}" for q in questions],
                draft=resp.enriched_description,
            ),
            task_preview=resp.task_preview,
            round=current,
            forced=True,
        )

    return ClarifyResult(
        ready=False,
        questions=questions,
        task_preview=resp.task_preview,
        round=current,
    )
