"""
Reward strategies — how a milestone review turns into a reward per agent type.

Every contributor gets base = (score - 70) / 100. Agent types with a strategy
in REWARD_STRATEGIES add a term for the part of the work they own. The sum is
clamped to [-1, 1].

A strategy whose input was unavailable for this review returns None, and the
contributor is paid the base reward alone.
"""

from typing import Callable, Dict, Optional, Tuple

from pydantic import BaseModel

ARCHITECT_REVIEW_EVENT = "architect_review"
ARCHITECT_SELF_REVIEW_EVENT = "architect_self_review"

SELF_REWARD_PASS = 0.5
SELF_REWARD_FAIL = -0.2


class ReviewSignals(BaseModel):
    """The review numbers reward strategies are allowed to see. None means not measured."""

    score: float
    code_quality_score: Optional[float] = None
    test_coverage: Optional[float] = None
    requirements_coverage: Optional[float] = None
    critical_issue_count: int = 0


# A strategy returns (term added to the base reward, human-readable reason),
# or None when the signal it reads is missing.
RewardStrategy = Callable[[ReviewSignals], Optional[Tuple[float, str]]]


def _developer(s: ReviewSignals) -> Optional[Tuple[float, str]]:
    if s.code_quality_score is None:
        return None
    term = (s.code_quality_score - 70) / 100 - 0.1 * s.critical_issue_count
    return term, f"Quality: {s.code_quality_score:g}%, Critical issues: {s.critical_issue_count}"


def _tester(s: ReviewSignals) -> Optional[Tuple[float, str]]:
    if s.test_coverage is None:
        return None
    return (s.test_coverage - 50) / 100, f"Test coverage: {s.test_coverage:g}%"


def _architect(s: ReviewSignals) -> Optional[Tuple[float, str]]:
    if s.requirements_coverage is None:
        return None
    return (
        (s.requirements_coverage - 70) / 100,
        f"Requirements coverage: {s.requirements_coverage:g}%",
    )


def _qa(s: ReviewSignals) -> Tuple[float, str]:
    # Finding critical issues is QA doing its job
    return (0.1 if s.critical_issue_count > 0 else 0.0), f"Overall score: {s.score:g}%"


REWARD_STRATEGIES: Dict[str, RewardStrategy] = {
    "developer": _developer,
    "tester": _tester,
    "architect": _architect,
    "qa": _qa,
}


def clamp(value: float, low: float = -1.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def base_reward(score: float) -> float:
    return (score - 70) / 100


def compute_reward(
    agent_type: str,
    signals: ReviewSignals,
    strategies: Optional[Dict[str, RewardStrategy]] = None,
) -> Tuple[float, str]:
    """Reward in [-1, 1] for one contributor, with the reason it was given."""
    strategies = REWARD_STRATEGIES if strategies is None else strategies
    base = base_reward(signals.score)
    strategy = strategies.get(agent_type)
    if strategy is None:
        return clamp(base), f"Overall score: {signals.score:g}%"
    result = strategy(signals)
    if result is None:
        return clamp(base), f"Overall score: {signals.score:g}% ({agent_type} input unavailable)"
    term, reason = result
    return clamp(base + term), reason


def self_review_reward(passed: bool) -> float:
    return SELF_REWARD_PASS if passed else SELF_REWARD_FAIL
