"""
Quality Gate — milestone review that scores a project and feeds rewards back.

Phases run in fixed order:
  requirements -> quality -> coverage -> criteria -> score -> fixes
  -> contributor rewards -> self outcome -> persistence

Behavioral Contract:
- A failing or missing analyzer never aborts the review and never lets it
  pass: the affected criteria are degraded to failing values.
- Critical-issue and security failures veto the milestone regardless of score.
- Contributor rewards are recorded as "architect_review"; the gate's own
  outcome is recorded separately as "architect_self_review".
- Reviews hold no shared mutable state, so several projects can be reviewed
  concurrently. The only shared writes go through the selector's atomic
  outcome update.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from delivery_kernel.agents.registry import AgentRegistry
from delivery_kernel.errors import DegradedInputError, InvalidStateError
from delivery_kernel.events.bus import EventBus
from delivery_kernel.learning.selector import PolicySelector
from delivery_kernel.models.agent import AgentStatus
from delivery_kernel.models.config import SuccessCriteria
from delivery_kernel.models.events import EventType
from delivery_kernel.models.policy import Outcome
from delivery_kernel.models.review import (
    CriterionResult,
    ReviewResult,
    RewardApplication,
)
from delivery_kernel.review.analyzers import (
    CoverageAnalyzer,
    QualityAnalyzer,
    RequirementsAnalyzer,
)
from delivery_kernel.review.criteria import (
    BOOLEAN_CRITERIA,
    COUNT_CRITERIA,
    CRITERIA_ORDER,
    CRITERION_LABELS,
    calculate_score,
    critical_issue_count,
    evaluate_criteria,
    generate_fixes,
    grade_for,
    overall_pass,
)
from delivery_kernel.review.rewards import (
    ARCHITECT_REVIEW_EVENT,
    ARCHITECT_SELF_REVIEW_EVENT,
    ReviewSignals,
    compute_reward,
    self_review_reward,
)
from delivery_kernel.review.store import ReviewStore

logger = logging.getLogger(__name__)

REVIEWER_AGENT_TYPE = "architect"
PHASES = ("requirements", "quality", "coverage")


def reviewer_agent_id_for(project_id: str) -> str:
    return f"quality-gate:{project_id}"


def _measured(criterion: CriterionResult) -> Optional[float]:
    return None if criterion.degraded else criterion.value


class QualityGate:
    """
    Runs milestone reviews.

    Analyzers, selector, registry and store are injected; any of the three
    analyzers may be None, in which case its criteria are degraded.
    """

    def __init__(
        self,
        selector: PolicySelector,
        requirements_analyzer: Optional[RequirementsAnalyzer] = None,
        quality_analyzer: Optional[QualityAnalyzer] = None,
        coverage_analyzer: Optional[CoverageAnalyzer] = None,
        registry: Optional[AgentRegistry] = None,
        review_store: Optional[ReviewStore] = None,
        event_bus: Optional[EventBus] = None,
        criteria: Optional[SuccessCriteria] = None,
    ):
        self.selector = selector
        self.analyzers = {
            "requirements": requirements_analyzer,
            "quality": quality_analyzer,
            "coverage": coverage_analyzer,
        }
        self.registry = registry
        self.review_store = review_store
        self.event_bus = event_bus
        self.criteria = criteria or SuccessCriteria()

    def _emit(self, event_type: EventType, subject_id: str, payload: dict) -> None:
        if self.event_bus is not None:
            self.event_bus.emit(event_type, subject_id=subject_id, payload=payload)

    def _resolve_criteria(self, overrides: Optional[Dict[str, Any]]) -> SuccessCriteria:
        if not overrides:
            return self.criteria
        return SuccessCriteria(**{**self.criteria.model_dump(), **overrides})

    def _run_phase(
        self, phase: str, project_id: str, milestone: str
    ) -> Tuple[Any, Optional[DegradedInputError]]:
        analyzer = self.analyzers[phase]
        try:
            if analyzer is None:
                raise RuntimeError("no analyzer configured")
            return analyzer.analyze(project_id, milestone), None
        except Exception as exc:
            degraded = DegradedInputError(phase, exc)
            logger.warning(
                "%s; criteria from this phase will fail", degraded,
                extra={"kernel_project_id": project_id, "kernel_phase": phase},
            )
            return None, degraded

    # --- Review ---

    def run_review(
        self,
        project_id: str,
        milestone: str,
        criteria_overrides: Optional[Dict[str, Any]] = None,
    ) -> ReviewResult:
        """Review one milestone of one project and distribute rewards."""
        if not project_id or not project_id.strip():
            raise InvalidStateError("A review needs a project id")
        if not milestone or not milestone.strip():
            raise InvalidStateError("A review needs a milestone")

        criteria = self._resolve_criteria(criteria_overrides)
        review_id = f"rev_{uuid4().hex[:12]}"
        started = time.monotonic()

        # One stable reviewer identity per project, so past reviews never
        # show up as contributors of later ones
        reviewer_agent_id = reviewer_agent_id_for(project_id)
        reviewer_policy = self.selector.select_policy(REVIEWER_AGENT_TYPE)
        reviewer_policy_id = reviewer_policy.id if reviewer_policy else None
        if self.registry is not None:
            self.registry.register_agent(
                reviewer_agent_id,
                REVIEWER_AGENT_TYPE,
                project_id=project_id,
                policy_id=reviewer_policy_id,
                status=AgentStatus.WORKING,
            )

        self._emit(EventType.REVIEW_STARTED, review_id, {
            "project_id": project_id,
            "milestone": milestone,
            "reviewer_agent_id": reviewer_agent_id,
        })

        try:
            result = self._review(
                review_id, project_id, milestone, criteria,
                reviewer_agent_id, reviewer_policy_id, started,
            )
        except Exception:
            if self.registry is not None:
                self.registry.set_status(reviewer_agent_id, AgentStatus.FAILED)
            raise

        if self.registry is not None:
            self.registry.set_status(
                reviewer_agent_id,
                AgentStatus.COMPLETED if result.overall_pass else AgentStatus.FAILED,
            )

        logger.info(
            "Review of %s/%s finished: %d/100 (%s), %s\n%s",
            project_id, milestone, result.score, result.grade.value,
            "approved" if result.overall_pass else "needs work",
            render_summary(result),
            extra={"kernel_project_id": project_id, "kernel_review_id": result.id},
        )
        self._emit(EventType.REVIEW_COMPLETED, result.id, {
            "project_id": project_id,
            "milestone": milestone,
            "score": result.score,
            "grade": result.grade.value,
            "overall_pass": result.overall_pass,
            "degraded_inputs": result.degraded_inputs,
        })
        return result

    def _review(
        self,
        review_id: str,
        project_id: str,
        milestone: str,
        criteria: SuccessCriteria,
        reviewer_agent_id: str,
        reviewer_policy_id: Optional[str],
        started: float,
    ) -> ReviewResult:
        reports: Dict[str, Any] = {}
        degraded: List[DegradedInputError] = []
        for phase in PHASES:
            report, error = self._run_phase(phase, project_id, milestone)
            reports[phase] = report
            if error is not None:
                degraded.append(error)
            self._emit(EventType.REVIEW_PHASE_COMPLETED, review_id, {
                "project_id": project_id,
                "phase": phase,
                "degraded": error is not None,
            })

        requirements = reports["requirements"]
        quality = reports["quality"]
        coverage = reports["coverage"]

        results = evaluate_criteria(requirements, quality, coverage, criteria)
        score = calculate_score(results)
        grade = grade_for(score)
        passed = overall_pass(results, score)

        critical_fixes, recommended_fixes = generate_fixes(requirements, quality, coverage)
        for error in degraded:
            critical_fixes.append(f"[CRITICAL] {error}")

        # Degraded criteria carry placeholder values; strategies see None instead
        signals = ReviewSignals(
            score=score,
            code_quality_score=_measured(results["code_quality_score"]),
            test_coverage=_measured(results["test_coverage"]),
            requirements_coverage=_measured(results["requirements_coverage"]),
            critical_issue_count=critical_issue_count(quality) if quality is not None else 0,
        )
        rewards = self._apply_rewards(
            project_id, milestone, signals, exclude_agent_id=reviewer_agent_id
        )

        self_reward = None
        if reviewer_policy_id is not None:
            self_reward = self_review_reward(passed)
            self.selector.record_outcome(
                reviewer_policy_id,
                Outcome.SUCCESS if passed else Outcome.FAILURE,
                self_reward,
                project_id=project_id,
                agent_id=reviewer_agent_id,
                event_type=ARCHITECT_SELF_REVIEW_EVENT,
                context={
                    "milestone": milestone,
                    "score": score,
                    "grade": grade.value,
                    "criteria_pass_count": sum(1 for c in results.values() if c.passed),
                    "critical_fixes_count": len(critical_fixes),
                },
            )

        result = ReviewResult(
            id=review_id,
            project_id=project_id,
            milestone=milestone,
            created_at=datetime.now(timezone.utc),
            duration_seconds=time.monotonic() - started,
            criteria=results,
            score=score,
            grade=grade,
            overall_pass=passed,
            critical_fixes=critical_fixes,
            recommended_fixes=recommended_fixes,
            rewards_applied=rewards,
            reviewer_agent_id=reviewer_agent_id,
            reviewer_policy_id=reviewer_policy_id,
            self_reward=self_reward,
            requirements_report=requirements,
            quality_report=quality,
            coverage_report=coverage,
            degraded_inputs=[e.analyzer for e in degraded],
        )
        if self.review_store is not None:
            result = self.review_store.append(result)
        return result

    def _apply_rewards(
        self,
        project_id: str,
        milestone: str,
        signals: ReviewSignals,
        exclude_agent_id: str,
    ) -> List[RewardApplication]:
        """Record one reward per contributing agent. Storage errors propagate."""
        if self.registry is None:
            return []

        applied = []
        for agent in self.registry.list_contributors(project_id):
            if agent.id == exclude_agent_id:
                continue
            reward, reason = compute_reward(agent.agent_type, signals)
            self.selector.record_outcome(
                agent.policy_id,
                Outcome.SUCCESS if reward >= 0 else Outcome.FAILURE,
                reward,
                project_id=project_id,
                agent_id=agent.id,
                event_type=ARCHITECT_REVIEW_EVENT,
                context={
                    "milestone": milestone,
                    "overall_score": signals.score,
                    "agent_type": agent.agent_type,
                    "reason": reason,
                },
            )
            applied.append(RewardApplication(
                agent_id=agent.id,
                agent_type=agent.agent_type,
                policy_id=agent.policy_id,
                reward=reward,
                reason=reason,
            ))
            logger.info(
                "Reward %+.3f -> %s (%s): %s", reward, agent.id, agent.agent_type, reason,
                extra={"kernel_project_id": project_id, "kernel_policy_id": agent.policy_id},
            )
        return applied


# --- Presentation ---

def _format_value(name: str, criterion: CriterionResult) -> str:
    if criterion.degraded:
        return "n/a"
    if name in BOOLEAN_CRITERIA:
        return "Yes" if criterion.value else "No"
    if name in COUNT_CRITERIA:
        return f"{criterion.value:g}"
    return f"{criterion.value:g}%"


def _format_threshold(name: str, criterion: CriterionResult) -> str:
    if name in BOOLEAN_CRITERIA:
        return "Yes" if criterion.threshold else "No"
    if name in COUNT_CRITERIA:
        return f"<= {criterion.threshold:g}"
    return f">= {criterion.threshold:g}%"


def render_summary(result: ReviewResult) -> str:
    """Plain-text criteria table and verdict for a review."""
    lines = [
        f"{'Criteria':<26} | {'Value':<8} | {'Threshold':<9} | Status",
        "-" * 60,
    ]
    for name in CRITERIA_ORDER:
        criterion = result.criteria.get(name)
        if criterion is None:
            continue
        lines.append(
            f"{CRITERION_LABELS[name]:<26} | {_format_value(name, criterion):<8} | "
            f"{_format_threshold(name, criterion):<9} | "
            f"{'PASS' if criterion.passed else 'FAIL'}"
        )
    lines.append("-" * 60)
    lines.append(
        f"Overall Score: {result.score}/100 (Grade: {result.grade.value}) "
        f"in {result.duration_seconds:.1f}s"
    )
    if result.critical_fixes:
        lines.append(f"Critical fixes required ({len(result.critical_fixes)}):")
        lines.extend(f"  - {fix}" for fix in result.critical_fixes[:10])
    verdict = "APPROVED" if result.overall_pass else "NEEDS WORK"
    lines.append(f"Milestone {result.milestone}: {verdict}")
    return "\n".join(lines)
