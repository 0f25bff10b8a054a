"""
Policy Selector — Thompson Sampling over versioned agent policies.

Selection order for one call:
1. Explore: with probability exploration_rate, pick uniformly among eligible policies.
2. Candidate bias: otherwise, with probability candidate_rate, restrict the pool
   to candidate policies (if any exist).
3. Exploit: draw Beta(alpha, beta) for every policy in the pool, take the arg-max.

Outcomes move belief by the reward strength: alpha += max(0, r), beta += max(0, -r).
After each outcome the policy's lifecycle is re-evaluated (promotion/demotion).
"""

import logging
import math
import random
from datetime import datetime, timezone
from typing import List, Optional, Union
from uuid import uuid4

from delivery_kernel.errors import ConflictError, InvalidStateError, NotFoundError
from delivery_kernel.events.bus import EventBus
from delivery_kernel.learning.outcome_store import OutcomeStore
from delivery_kernel.learning.sampling import sample_beta
from delivery_kernel.models.config import SelectorConfig
from delivery_kernel.models.events import EventType
from delivery_kernel.models.policy import (
    ELIGIBLE_STATUSES,
    LearningEvent,
    Outcome,
    Policy,
    PolicyComparison,
    PolicyStats,
    PolicyStatus,
    StatusTransition,
)
from delivery_kernel.models.review import Severity

logger = logging.getLogger(__name__)

# Penalty applied to a developer policy when a bug of this severity is found.
BUG_PENALTIES = {
    Severity.CRITICAL: -1.0,
    Severity.HIGH: -0.7,
    Severity.MEDIUM: -0.4,
    Severity.LOW: -0.2,
    Severity.INFO: -0.1,
}
DEFAULT_BUG_PENALTY = -0.4
BUG_FIX_REWARD = 0.5

# Minimum uses before a variant is compared against the others.
COMPARISON_MIN_USES = 10


def clamp_reward(reward: float) -> float:
    return max(-1.0, min(1.0, reward))


def confidence_interval(successes: int, uses: int, z: float = 1.96):
    """Normal-approximation interval on the success rate, clipped to [0, 1]."""
    if uses == 0:
        return (0.0, 1.0)
    p = successes / uses
    margin = z * math.sqrt(p * (1 - p) / uses)
    return (max(0.0, p - margin), min(1.0, p + margin))


class PolicySelector:
    """
    Picks a policy for an agent type and learns from the outcomes it produces.
    Sole writer of policy state and learning events.
    """

    def __init__(
        self,
        store: OutcomeStore,
        config: Optional[SelectorConfig] = None,
        event_bus: Optional[EventBus] = None,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.config = config or SelectorConfig()
        self.event_bus = event_bus
        self._rng = rng or random.Random()

    # --- Selection ---

    def select_policy(self, agent_type: str) -> Optional[Policy]:
        """Return one eligible policy for the agent type, or None if it has none."""
        eligible = self.store.list_policies(agent_type, ELIGIBLE_STATUSES)
        if not eligible:
            return None

        if self._rng.random() < self.config.exploration_rate:
            return self._rng.choice(eligible)

        pool = eligible
        if self._rng.random() < self.config.candidate_rate:
            candidates = [p for p in eligible if p.status == PolicyStatus.CANDIDATE]
            if candidates:
                pool = candidates

        return max(pool, key=lambda p: sample_beta(p.alpha, p.beta, self._rng))

    # --- Outcomes ---

    def record_outcome(
        self,
        policy_id: str,
        outcome: Union[Outcome, str],
        reward: float,
        project_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        task_id: Optional[str] = None,
        event_type: Optional[str] = None,
        context: Optional[dict] = None,
    ) -> Policy:
        """
        Apply one outcome to a policy and persist its learning event.

        Storage failures propagate; a reward is never dropped silently.
        """
        outcome = Outcome(outcome)
        reward = clamp_reward(reward)
        context = dict(context or {})
        if event_type is None:
            event_type = context.get("type") or (
                "positive_reward" if reward >= 0 else "negative_reward"
            )

        event = LearningEvent(
            id=f"lev_{uuid4().hex[:12]}",
            policy_id=policy_id,
            project_id=project_id,
            agent_id=agent_id,
            task_id=task_id,
            event_type=event_type,
            outcome=outcome,
            reward=reward,
            context=context,
            created_at=datetime.now(timezone.utc),
        )
        policy = self.store.apply_outcome(
            event,
            alpha_delta=max(0.0, reward),
            beta_delta=max(0.0, -reward),
        )

        transition = self.evaluate_lifecycle(policy)
        if transition is not None:
            policy = self.store.get_policy(policy_id)
        return policy

    def penalize_developer(
        self,
        policy_id: str,
        severity: Union[Severity, str],
        project_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        context: Optional[dict] = None,
    ) -> Policy:
        """Record a bug found in a developer's work as a severity-weighted failure."""
        try:
            penalty = BUG_PENALTIES[Severity(severity)]
        except ValueError:
            penalty = DEFAULT_BUG_PENALTY
        ctx = {**(context or {}), "severity": str(getattr(severity, "value", severity))}
        return self.record_outcome(
            policy_id, Outcome.FAILURE, penalty,
            project_id=project_id, agent_id=agent_id,
            event_type="bug_found", context=ctx,
        )

    def reward_bug_fix(
        self,
        policy_id: str,
        project_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        context: Optional[dict] = None,
    ) -> Policy:
        return self.record_outcome(
            policy_id, Outcome.SUCCESS, BUG_FIX_REWARD,
            project_id=project_id, agent_id=agent_id,
            event_type="bug_fixed", context=context,
        )

    # --- Lifecycle ---

    def evaluate_lifecycle(self, policy: Policy) -> Optional[StatusTransition]:
        """
        Promote or demote a policy whose evidence crossed a threshold.

        Status changes are compare-and-set: if another writer moved the policy
        first, nothing happens here.
        """
        lc = self.config.lifecycle

        if policy.status == PolicyStatus.EXPERIMENTAL:
            if (
                policy.total_uses >= lc.candidate_min_uses
                and policy.success_rate >= lc.candidate_min_success_rate
            ):
                if self.store.compare_and_set_status(
                    policy.id, PolicyStatus.EXPERIMENTAL, PolicyStatus.CANDIDATE
                ):
                    return self._announce(StatusTransition(
                        policy_id=policy.id,
                        agent_type=policy.agent_type,
                        from_status=PolicyStatus.EXPERIMENTAL,
                        to_status=PolicyStatus.CANDIDATE,
                        reason=(
                            f"{policy.total_uses} uses at "
                            f"{policy.success_rate:.0%} success"
                        ),
                    ))

        elif policy.status == PolicyStatus.CANDIDATE:
            if (
                policy.total_uses >= lc.production_min_uses
                and policy.success_rate >= lc.production_min_success_rate
            ):
                promoted, replaced = self.store.promote_to_production(
                    policy.id, PolicyStatus.CANDIDATE
                )
                if promoted:
                    return self._announce(StatusTransition(
                        policy_id=policy.id,
                        agent_type=policy.agent_type,
                        from_status=PolicyStatus.CANDIDATE,
                        to_status=PolicyStatus.PRODUCTION,
                        reason=(
                            f"{policy.total_uses} uses at "
                            f"{policy.success_rate:.0%} success"
                        ),
                        replaced_policy_id=replaced,
                    ))

        elif policy.status == PolicyStatus.PRODUCTION:
            trailing = self.store.trailing_success_rate(policy.id, lc.demotion_window)
            if trailing is not None and trailing < lc.demotion_max_success_rate:
                if self.store.compare_and_set_status(
                    policy.id, PolicyStatus.PRODUCTION, PolicyStatus.DEPRECATED
                ):
                    return self._announce(StatusTransition(
                        policy_id=policy.id,
                        agent_type=policy.agent_type,
                        from_status=PolicyStatus.PRODUCTION,
                        to_status=PolicyStatus.DEPRECATED,
                        reason=(
                            f"trailing success {trailing:.0%} over the last "
                            f"{lc.demotion_window} uses"
                        ),
                    ))

        return None

    def _announce(self, transition: StatusTransition) -> StatusTransition:
        promoted = transition.to_status != PolicyStatus.DEPRECATED
        logger.info(
            "Policy %s (%s) %s: %s -> %s (%s)",
            transition.policy_id,
            transition.agent_type,
            "promoted" if promoted else "demoted",
            transition.from_status.value,
            transition.to_status.value,
            transition.reason,
            extra={"kernel_policy_id": transition.policy_id},
        )
        if self.event_bus is not None:
            self.event_bus.emit(
                EventType.POLICY_PROMOTED if promoted else EventType.POLICY_DEMOTED,
                subject_id=transition.policy_id,
                payload=transition.model_dump(mode="json"),
            )
            if transition.replaced_policy_id:
                self.event_bus.emit(
                    EventType.POLICY_DEMOTED,
                    subject_id=transition.replaced_policy_id,
                    payload={
                        "policy_id": transition.replaced_policy_id,
                        "agent_type": transition.agent_type,
                        "from_status": PolicyStatus.PRODUCTION.value,
                        "to_status": PolicyStatus.DEPRECATED.value,
                        "reason": f"replaced by {transition.policy_id}",
                    },
                )
        return transition

    # --- Registration ---

    def register_policy(
        self,
        agent_type: str,
        content: str,
        status: PolicyStatus = PolicyStatus.EXPERIMENTAL,
        variables: Optional[List[str]] = None,
    ) -> Policy:
        """Create the next version for an agent type with a flat Beta(1, 1) belief."""
        status = PolicyStatus(status)
        if status == PolicyStatus.PRODUCTION:
            policy = self.store.insert_policy(
                agent_type, content, PolicyStatus.EXPERIMENTAL, variables
            )
            return self.set_policy_status(policy.id, PolicyStatus.PRODUCTION)
        return self.store.insert_policy(agent_type, content, status, variables)

    def ensure_policy(self, agent_type: str, default_content: str) -> Policy:
        """Return the production policy, or create it when the agent type is first used."""
        production = self.store.get_production_policy(agent_type)
        if production is not None:
            return production
        eligible = self.store.list_policies(agent_type, ELIGIBLE_STATUSES)
        if eligible:
            return eligible[0]
        return self.register_policy(agent_type, default_content, PolicyStatus.PRODUCTION)

    def create_policy_variant(
        self,
        base_policy_id: str,
        content: str,
        variables: Optional[List[str]] = None,
    ) -> Policy:
        base = self.store.get_policy(base_policy_id)
        if base is None:
            raise NotFoundError(f"Policy {base_policy_id} not found")
        return self.store.insert_policy(
            base.agent_type,
            content,
            PolicyStatus.EXPERIMENTAL,
            variables if variables is not None else base.variables,
        )

    def set_policy_status(self, policy_id: str, status: PolicyStatus) -> Policy:
        """
        Manually move a policy between lifecycle states.

        Deprecated is terminal. Promoting to production deprecates the
        current holder.
        """
        status = PolicyStatus(status)
        policy = self.store.get_policy(policy_id)
        if policy is None:
            raise NotFoundError(f"Policy {policy_id} not found")
        if policy.status == status:
            return policy
        if policy.status == PolicyStatus.DEPRECATED:
            raise InvalidStateError(f"Policy {policy_id} is deprecated")

        if status == PolicyStatus.PRODUCTION:
            changed, replaced = self.store.promote_to_production(policy_id, policy.status)
        else:
            changed = self.store.compare_and_set_status(policy_id, policy.status, status)
            replaced = None
        if not changed:
            raise ConflictError(f"Policy {policy_id} changed status concurrently")

        self._announce(StatusTransition(
            policy_id=policy_id,
            agent_type=policy.agent_type,
            from_status=policy.status,
            to_status=status,
            reason="manual override",
            replaced_policy_id=replaced,
        ))
        return self.store.get_policy(policy_id)

    # --- Reporting ---

    def _stats_for(self, policy: Policy) -> PolicyStats:
        return PolicyStats(
            policy_id=policy.id,
            agent_type=policy.agent_type,
            version=policy.version,
            status=policy.status,
            thompson_score=policy.thompson_score,
            total_uses=policy.total_uses,
            successful_uses=policy.successful_uses,
            success_rate=policy.success_rate,
            confidence_interval=confidence_interval(
                policy.successful_uses, policy.total_uses
            ),
        )

    def get_policy_stats(self, agent_type: str) -> List[PolicyStats]:
        """Per-version aggregates, newest version first. Empty for unknown agent types."""
        return [self._stats_for(p) for p in self.store.list_policies(agent_type)]

    def get_policy_comparison(self, agent_type: str) -> PolicyComparison:
        stats = [
            self._stats_for(p)
            for p in self.store.list_policies(agent_type, ELIGIBLE_STATUSES)
        ]
        production = next((s for s in stats if s.status == PolicyStatus.PRODUCTION), None)
        candidates = [s for s in stats if s.status == PolicyStatus.CANDIDATE]
        experimental = [s for s in stats if s.status == PolicyStatus.EXPERIMENTAL]

        qualified = [s for s in stats if s.total_uses >= COMPARISON_MIN_USES]
        best = max(qualified, key=lambda s: s.thompson_score) if qualified else None

        lc = self.config.lifecycle
        recommendations = []
        if production is None:
            recommendations.append(
                "No production policy exists. Consider promoting a candidate."
            )
        elif best is not None and best.policy_id != production.policy_id:
            if best.thompson_score > production.thompson_score * 1.1:
                lift = (best.thompson_score / production.thompson_score - 1) * 100
                recommendations.append(
                    f"Policy v{best.version} is outperforming production "
                    f"v{production.version} by {lift:.1f}%."
                )

        ready = [
            c for c in candidates
            if c.total_uses >= lc.production_min_uses
            and c.success_rate >= lc.production_min_success_rate
        ]
        if ready:
            recommendations.append(
                f"{len(ready)} candidate policy(ies) ready for promotion to production."
            )

        for s in candidates + experimental:
            if s.total_uses < lc.candidate_min_uses:
                recommendations.append(
                    f"Policy v{s.version} needs more data "
                    f"({s.total_uses}/{lc.candidate_min_uses} uses)."
                )
            elif (
                s.status == PolicyStatus.EXPERIMENTAL
                and s.success_rate < lc.candidate_min_success_rate
            ):
                recommendations.append(
                    f"Consider deprecating experimental v{s.version} "
                    f"({s.success_rate:.0%} success)."
                )

        if not experimental:
            recommendations.append(
                "No experimental policies. Consider creating variants for testing."
            )

        return PolicyComparison(
            agent_type=agent_type,
            total_policies=len(stats),
            production=production,
            candidates=candidates,
            experimental=experimental,
            best_performer=best,
            recommendations=recommendations,
        )

    def get_events(self, policy_id: str, limit: int = 50) -> List[LearningEvent]:
        return self.store.get_events(policy_id, limit)
