from __future__ import annotations

import logging
from collections.abc import Sequence
from concurrent.futures import Executor
from dataclasses import dataclass

from pydantic import BaseModel, Field, field_validator

from taskmaster.content import ContentResolver
from taskmaster.errors import ContentResolutionError, OracleError
from taskmaster.executors import make_executor
from taskmaster.oracle import Oracle
from taskmaster.schemas import Task, VerificationResult, VerificationScores

logger = logging.getLogger(__name__)

WEIGHTS = {
    "authenticity": 0.30,
    "relevance": 0.25,
    "completeness": 0.25,
    "quality": 0.10,
    "consistency": 0.10,
}
SCORE_FLOOR = 0.6
KILL_SWITCH = 0.5
DEFAULT_THRESHOLD = 0.75

FRAUD_UNAVAILABLE = "fraud detection unavailable"
REQUIREMENTS_UNAVAILABLE = "requirements check unavailable"
CONSISTENCY_UNAVAILABLE = "cross-verification unavailable"


def _clamp(v: float) -> float:
    return min(1.0, max(0.0, float(v)))


class FraudAnalysis(BaseModel):
    authenticity_score: float
    fraud_flags: list[str] = Field(default_factory=list)
    reasoning: str = ""

    @field_validator("authenticity_score")
    @classmethod
    def _clamp_score(cls, v: float) -> float:
        return _clamp(v)


class RequirementsAnalysis(BaseModel):
    relevance_score: float
    relevance_evidence: str = ""
    completeness_score: float
    completeness_evidence: str = ""
    quality_score: float
    quality_evidence: str = ""
    overall_reasoning: str = ""

    @field_validator("relevance_score", "completeness_score", "quality_score")
    @classmethod
    def _clamp_scores(cls, v: float) -> float:
        return _clamp(v)


class ConsistencyAnalysis(BaseModel):
    consistency_score: float
    matching_elements: list[str] = Field(default_factory=list)
    mismatches: list[str] = Field(default_factory=list)
    reasoning: str = ""

    @field_validator("consistency_score")
    @classmethod
    def _clamp_score(cls, v: float) -> float:
        return _clamp(v)


def fraud_system_prompt(task: Task) -> str:
    return "\n".join(
        [
            "You are an image forensics expert. Analyze the submitted image(s) for signs of fraud or gaming.",
            "The worker may have submitted several images as proof; evaluate ALL of them together.",
            "",
            "The worker was hired to do the following task:",
            f"Task: {task.description}",
            f"Required proof: {task.proof_requirements}",
            "",
            "If the task itself requires screenshots, stock images, browser content or similar elements,",
            "do NOT flag those as fraud. Only flag things that are suspicious GIVEN what the task asked for.",
            'For example, if the task says "take a screenshot of a website", browser chrome is expected.',
            "",
            "Check for (only when genuinely suspicious in this context):",
            "1. AI-generated content: warped text, impossible geometry, inconsistent lighting, repeating patterns.",
            "2. Stock photos: watermarks, staged studio compositions, unless the task asked for stock images.",
            "3. Screenshots of other work: browser chrome, cursors, recording overlays, unless screenshots were requested.",
            "4. Recycled or irrelevant images: predates the task, unrelated content, memes.",
            "5. Manipulation: cloned regions, mismatched resolution, edit artifacts.",
            "6. Suspicious capture: tiny thumbnails (<400px) or photos of a screen, unless requested.",
            "",
            "Return JSON only:",
            '{ "authenticity_score": 0..1, "fraud_flags": [..], "reasoning": "..." }',
        ]
    )


def requirements_system_prompt(task: Task) -> str:
    return "\n".join(
        [
            "You are a strict quality inspector. A worker submitted image(s) as proof of a task.",
            "Evaluate ALL images together as one combined submission. Real money is paid on your assessment.",
            "",
            f"Task they were hired for: {task.description}",
            f"Proof requirements they must meet: {task.proof_requirements}",
            "",
            "Score three dimensions, each with specific evidence from the images:",
            "1. relevance (0..1): do the images show the work described? 0 if unrelated to the task.",
            "2. completeness (0..1): check every requirement one by one; score proportionally, deduct heavily for missing required elements.",
            "3. quality (0..1): is the work clear, professional and usable? 0 for blurry or unreadable work.",
            "",
            "Return JSON only:",
            '{ "relevance_score": 0..1, "relevance_evidence": "...", "completeness_score": 0..1,',
            '  "completeness_evidence": "...", "quality_score": 0..1, "quality_evidence": "...",',
            '  "overall_reasoning": "..." }',
        ]
    )


def consistency_system_prompt(task: Task, previous_url: str) -> str:
    return "\n".join(
        [
            "You are verifying consistency between two sequential tasks in a project.",
            "",
            f"Current task: {task.description}",
            f"The worker was given the previous task's deliverable and told to use it: {previous_url}",
            "",
            "The first image is the previous task's approved deliverable; the remaining images are the current proof.",
            "Verify:",
            "1. Does the current proof clearly USE or REFERENCE the previous deliverable?",
            "2. Which identifiable elements (logos, text, colors, layout) match between them?",
            "3. Could the worker have ignored the previous deliverable and done something unrelated?",
            "",
            "Return JSON only:",
            '{ "consistency_score": 0..1, "matching_elements": [..], "mismatches": [..], "reasoning": "..." }',
        ]
    )


def combine_confidence(scores: VerificationScores) -> float:
    values = scores.as_dict()
    return _clamp(sum(WEIGHTS[k] * values[k] for k in WEIGHTS))


def decide(scores: VerificationScores, *, threshold: float = DEFAULT_THRESHOLD) -> tuple[bool, bool, float]:
    """Return (approved, kill_switch, confidence)."""
    confidence = combine_confidence(scores)
    kill_switch = scores.authenticity < KILL_SWITCH
    above_floor = all(v >= SCORE_FLOOR for v in scores.as_dict().values())
    approved = (not kill_switch) and above_floor and confidence >= threshold
    return approved, kill_switch, confidence


def build_remediation(
    *,
    scores: VerificationScores,
    confidence: float,
    threshold: float,
    fraud: FraudAnalysis,
    requirements: RequirementsAnalysis,
    consistency: ConsistencyAnalysis | None,
) -> str:
    issues: list[str] = []
    if scores.authenticity < KILL_SWITCH:
        flags = ", ".join(fraud.fraud_flags) or fraud.reasoning or "authenticity too low"
        issues.append(f"Fraud detected: {flags}")
    if scores.relevance < SCORE_FLOOR:
        detail = requirements.relevance_evidence or "image doesn't appear related to the task"
        issues.append(f"Not related to the task: {detail}")
    if scores.completeness < SCORE_FLOOR:
        issues.append(f"Missing requirements: {requirements.completeness_evidence or 'not all requirements shown'}")
    if scores.quality < SCORE_FLOOR:
        issues.append(f"Quality too low: {requirements.quality_evidence or 'proof is unclear'}")
    if scores.consistency < SCORE_FLOOR:
        mismatches = ", ".join(consistency.mismatches) if consistency is not None else ""
        issues.append(f"Doesn't match previous deliverable: {mismatches or 'no matching elements'}")
    if confidence < threshold and not issues:
        issues.append(
            f"Overall confidence too low ({confidence * 100:.0f}%). Please submit clearer proof."
        )
    return " | ".join(issues)


def _invalid_reference(proof_ref: str, reason: str) -> VerificationResult:
    return VerificationResult(
        approved=False,
        confidence=0.0,
        scores=VerificationScores(
            authenticity=0.0, relevance=0.0, completeness=0.0, quality=0.0, consistency=0.0
        ),
        reasoning=f"invalid proof reference: {proof_ref!r} ({reason})",
        suggestion="The submitted proof reference is invalid or could not be fetched. Please re-upload a valid image.",
    )


@dataclass(frozen=True)
class _PassOutcome:
    analysis: BaseModel
    degraded: bool


class VerificationPipeline:
    def __init__(
        self,
        *,
        oracle: Oracle,
        resolver: ContentResolver,
        threshold: float = DEFAULT_THRESHOLD,
        executor: Executor | None = None,
        deterministic: bool = False,
        max_workers: int = 3,
    ) -> None:
        self._oracle = oracle
        self._resolver = resolver
        self._threshold = threshold
        self._pool = executor or make_executor(
            deterministic=deterministic, max_workers=max_workers, prefix="verify"
        )

    @property
    def threshold(self) -> float:
        return self._threshold

    def shutdown(self) -> None:
        self._pool.shutdown(wait=True)

    def _run_pass(
        self,
        name: str,
        *,
        system: str,
        user: str,
        schema: type[BaseModel],
        images: Sequence[str],
        fallback: BaseModel,
    ) -> _PassOutcome:
        try:
            analysis, _usage, _raw = self._oracle.call_json(
                system=system, user=user, schema=schema, images=images
            )
        except OracleError as e:
            logger.warning("%s pass failed, using neutral default: %s", name, e)
            return _PassOutcome(analysis=fallback, degraded=True)
        return _PassOutcome(analysis=analysis, degraded=False)

    def verify(self, task: Task, proof_ref: str, *, previous_deliverable: str = "") -> VerificationResult:
        """Judge a submitted proof for `task`.

        Never raises for oracle or content failures: an unresolvable reference
        is an immediate rejection, and a failed analysis pass is replaced by its
        neutral default with the degradation named in the result.
        """
        try:
            images = self._resolver.resolve(proof_ref)
        except ContentResolutionError as e:
            logger.info("task %s: rejecting unresolvable proof %r: %s", task.id, proof_ref, e)
            return _invalid_reference(proof_ref, str(e))
        if not images:
            return _invalid_reference(proof_ref, "no images")

        fraud_f = self._pool.submit(
            self._run_pass,
            "fraud",
            system=fraud_system_prompt(task),
            user="Analyze the attached proof image(s).",
            schema=FraudAnalysis,
            images=images,
            fallback=FraudAnalysis(
                authenticity_score=0.5,
                fraud_flags=[FRAUD_UNAVAILABLE],
                reasoning=FRAUD_UNAVAILABLE,
            ),
        )
        req_f = self._pool.submit(
            self._run_pass,
            "requirements",
            system=requirements_system_prompt(task),
            user="Score the attached proof image(s) against the requirements.",
            schema=RequirementsAnalysis,
            images=images,
            fallback=RequirementsAnalysis(
                relevance_score=0.0,
                relevance_evidence=REQUIREMENTS_UNAVAILABLE,
                completeness_score=0.0,
                completeness_evidence=REQUIREMENTS_UNAVAILABLE,
                quality_score=0.0,
                quality_evidence=REQUIREMENTS_UNAVAILABLE,
                overall_reasoning=REQUIREMENTS_UNAVAILABLE,
            ),
        )

        consistency_fallback = ConsistencyAnalysis(
            consistency_score=0.5, mismatches=[CONSISTENCY_UNAVAILABLE], reasoning=CONSISTENCY_UNAVAILABLE
        )
        cons_f = None
        cons_prefail = False
        if task.sequence_index > 0 and previous_deliverable:
            try:
                previous_images = self._resolver.resolve(previous_deliverable)
            except ContentResolutionError as e:
                logger.warning("task %s: previous deliverable unresolvable: %s", task.id, e)
                cons_prefail = True
            else:
                cons_f = self._pool.submit(
                    self._run_pass,
                    "consistency",
                    system=consistency_system_prompt(task, previous_images[0]),
                    user="Compare the previous deliverable with the current proof.",
                    schema=ConsistencyAnalysis,
                    images=[*previous_images[:1], *images],
                    fallback=consistency_fallback,
                )

        fraud_out = fraud_f.result()
        req_out = req_f.result()
        if cons_f is not None:
            cons_out: _PassOutcome | None = cons_f.result()
        elif cons_prefail:
            cons_out = _PassOutcome(analysis=consistency_fallback, degraded=True)
        else:
            cons_out = None

        fraud: FraudAnalysis = fraud_out.analysis  # type: ignore[assignment]
        requirements: RequirementsAnalysis = req_out.analysis  # type: ignore[assignment]
        consistency: ConsistencyAnalysis | None = (
            cons_out.analysis if cons_out is not None else None  # type: ignore[assignment]
        )

        scores = VerificationScores(
            authenticity=fraud.authenticity_score,
            relevance=requirements.relevance_score,
            completeness=requirements.completeness_score,
            quality=requirements.quality_score,
            consistency=consistency.consistency_score if consistency is not None else 1.0,
        )
        approved, kill_switch, confidence = decide(scores, threshold=self._threshold)

        degraded: list[str] = []
        if fraud_out.degraded:
            degraded.append("fraud")
        if req_out.degraded:
            degraded.append("requirements")
        if cons_out is not None and cons_out.degraded:
            degraded.append("consistency")

        reasoning = [f"Fraud: {fraud.reasoning}", f"Requirements: {requirements.overall_reasoning}"]
        if consistency is not None:
            reasoning.append(f"Cross-verify: {consistency.reasoning}")
        if degraded:
            reasoning.append("Unavailable analyses: " + ", ".join(degraded))
        if kill_switch:
            reasoning.append(f"Kill switch: authenticity {scores.authenticity:.2f} < {KILL_SWITCH}")

        suggestion = ""
        if not approved:
            suggestion = build_remediation(
                scores=scores,
                confidence=confidence,
                threshold=self._threshold,
                fraud=fraud,
                requirements=requirements,
                consistency=consistency,
            )

        return VerificationResult(
            approved=approved,
            confidence=confidence,
            scores=scores,
            reasoning="\n\n".join(reasoning),
            suggestion=suggestion,
            kill_switch=kill_switch,
            degraded=degraded,
            flags=list(fraud.fraud_flags),
        )
