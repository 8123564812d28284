from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from taskmaster.costing import format_ether, to_wei
from taskmaster.oracle import Oracle

logger = logging.getLogger(__name__)

AI_PROOF_SENTINEL = "N/A - AI executed"
DEFAULT_PROFIT_MARGIN = 0.2


class PlannedTask(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    description: str = Field(min_length=1)
    proof_requirements: str = ""
    reward: str = "0"
    deadline_minutes: int = Field(default=60, ge=1)
    depends_on_previous: bool = False
    tags: list[str] = Field(default_factory=list)
    executor_type: Literal["ai", "human"] | None = None
    relevant_ai_tasks: list[int] = Field(default_factory=list)

    @field_validator("reward", mode="before")
    @classmethod
    def _reward_is_decimal(cls, v: Any) -> str:
        s = str(v if v is not None else "0").strip() or "0"
        to_wei(s)
        return s

    @field_validator("tags", mode="before")
    @classmethod
    def _lower_tags(cls, v: Any) -> list[str]:
        if v is None:
            return []
        return [str(t).strip().lower() for t in v if str(t).strip()][:5]

    @property
    def reward_wei(self) -> int:
        return to_wei(self.reward)

    @property
    def is_ai(self) -> bool:
        return self.executor_type == "ai"


class DecompositionPlan(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    tasks: list[PlannedTask] = Field(default_factory=list)
    total_worker_cost: str | None = None
    agent_profit: str | None = None

    @property
    def human_tasks(self) -> list[PlannedTask]:
        return [t for t in self.tasks if not t.is_ai]

    def human_reward_total(self) -> int:
        return sum(t.reward_wei for t in self.human_tasks)


def plan_problem(plan: DecompositionPlan, budget: int) -> str | None:
    """Why a plan must not be posted, or None when it is acceptable."""
    if not plan.tasks:
        return "empty decomposition"
    total = plan.human_reward_total()
    if plan.human_tasks and total >= budget:
        return f"human rewards {format_ether(total)} are not below budget {format_ether(budget)}"
    return None


def normalize_plan(
    plan: DecompositionPlan, *, budget: int, margin: float = DEFAULT_PROFIT_MARGIN
) -> DecompositionPlan:
    if budget <= 0:
        raise ValueError(f"budget must be positive, got {budget}")
    tasks: list[PlannedTask] = []
    for t in plan.tasks:
        executor = t.executor_type or "human"
        if executor == "ai":
            t = t.model_copy(
                update={
                    "executor_type": "ai",
                    "reward": "0",
                    "proof_requirements": AI_PROOF_SENTINEL,
                    "relevant_ai_tasks": [],
                }
            )
        else:
            t = t.model_copy(update={"executor_type": "human"})
        tasks.append(t)

    total = sum(t.reward_wei for t in tasks if not t.is_ai)
    if total > 0 and total >= budget:
        cap = min(int(Decimal(budget) * (1 - Decimal(str(margin)))), budget - 1)
        logger.warning(
            "scaling human rewards %s down to %s (budget %s)",
            format_ether(total),
            format_ether(cap),
            format_ether(budget),
        )
        tasks = [
            t if t.is_ai else t.model_copy(update={"reward": format_ether(t.reward_wei * cap // total)})
            for t in tasks
        ]

    worker_cost = sum(t.reward_wei for t in tasks if not t.is_ai)
    return DecompositionPlan(
        tasks=tasks,
        total_worker_cost=format_ether(worker_cost),
        agent_profit=format_ether(max(0, budget - worker_cost)),
    )


def decompose_system_prompt() -> str:
    return "\n".join(
        [
            "You are TaskMaster, an agent that breaks real-world jobs into sequential subtasks.",
            "You can execute information-lookup tasks yourself and delegate everything else to human workers.",
            "",
            "Given a job description and a budget, return the tasks in execution order. Each task has:",
            "- description: what needs to be done",
            f'- proofRequirements: 3-5 numbered, yes/no-checkable criteria for the proof image ("{AI_PROOF_SENTINEL}" for ai tasks)',
            '- reward: amount as a decimal string like "0.003" ("0" for ai tasks)',
            "- deadlineMinutes: time allowed",
            "- dependsOnPrevious: true if the task needs the previous task's deliverable",
            "- tags: 3-5 lowercase skill tags",
            '- executorType: "ai" or "human"',
            "- relevantAiTasks: 0-based indices of ai tasks whose findings help this human task ([] for ai tasks)",
            "",
            "Executor rules:",
            '- "ai" only for pure information lookup (facts, prices, dates, regulations) the worker would not know.',
            '- "human" for anything physical, visual, purchased, printed, posted, delivered, or producing a file.',
            "- Put ai tasks before the human tasks they support, and prefer one ai task over several narrow ones.",
            '- When in doubt, use "human".',
            "",
            "Rules:",
            "- Merge steps that the same person would do into one task.",
            "- Human rewards must sum to LESS than the budget; keep at least a 20-30% margin.",
            "- Each human task is proven by exactly ONE image (a collage if several photos are needed).",
            "- Describe what the deliverable must contain, not how to make it. No file formats, DPI, or tool instructions.",
            '- Never use vague words like "appropriate", "suitable" or "professional-looking".',
            "",
            "Return JSON only:",
            '{ "tasks": [ ... ], "totalWorkerCost": "0.007", "agentProfit": "0.003" }',
        ]
    )


def decompose_user_prompt(*, description: str, budget: int) -> str:
    return f'Job: "{description.strip()}"\nBudget: {format_ether(budget)} ETH'


def decompose_job(
    oracle: Oracle,
    *,
    description: str,
    budget: int,
    margin: float = DEFAULT_PROFIT_MARGIN,
) -> DecompositionPlan:
    """Ask the oracle for a task plan and normalize it against `budget` (wei).

    Oracle failures propagate as OracleError; no plan is invented.
    """
    if budget <= 0:
        raise ValueError(f"budget must be positive, got {budget}")
    plan, _usage, _raw = oracle.call_json(
        system=decompose_system_prompt(),
        user=decompose_user_prompt(description=description, budget=budget),
        schema=DecompositionPlan,
    )
    normalized = normalize_plan(plan, budget=budget, margin=margin)
    logger.info(
        "decomposed job into %d tasks (%d ai, %d human)",
        len(normalized.tasks),
        sum(1 for t in normalized.tasks if t.is_ai),
        len(normalized.human_tasks),
    )
    return normalized
