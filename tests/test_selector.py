"""Tests for the Policy Selector."""

import random
import threading

import pytest

from delivery_kernel.errors import InvalidStateError, NotFoundError
from delivery_kernel.events.bus import EventBus
from delivery_kernel.learning.outcome_store import OutcomeStore
from delivery_kernel.learning.sampling import sample_beta
from delivery_kernel.learning.selector import PolicySelector, confidence_interval
from delivery_kernel.models.config import LifecycleThresholds, SelectorConfig
from delivery_kernel.models.events import EventType
from delivery_kernel.models.policy import Outcome, PolicyStatus


def _greedy_config(**lifecycle) -> SelectorConfig:
    return SelectorConfig(
        exploration_rate=0.0,
        candidate_rate=0.0,
        lifecycle=LifecycleThresholds(**lifecycle),
    )


def _set_belief(store: OutcomeStore, policy_id: str, alpha: float, beta: float) -> None:
    store._conn.execute(
        "UPDATE policies SET alpha = ?, beta = ? WHERE id = ?", (alpha, beta, policy_id)
    )


class TestSampling:
    def test_beta_samples_in_unit_interval(self):
        rng = random.Random(7)
        for _ in range(200):
            assert 0.0 <= sample_beta(2.0, 5.0, rng) <= 1.0

    def test_beta_sample_mean(self):
        rng = random.Random(11)
        draws = [sample_beta(8.0, 2.0, rng) for _ in range(4000)]
        assert sum(draws) / len(draws) == pytest.approx(0.8, abs=0.02)


class TestSelection:
    def setup_method(self):
        self.store = OutcomeStore(retry_backoff_seconds=0)

    def test_unknown_agent_type_returns_none(self):
        selector = PolicySelector(self.store, _greedy_config(), rng=random.Random(1))
        assert selector.select_policy("nobody") is None

    def test_bandit_prefers_strong_policy(self):
        strong = self.store.insert_policy("developer", "strong")
        weak = self.store.insert_policy("developer", "weak")
        _set_belief(self.store, strong.id, 10.0, 1.0)
        _set_belief(self.store, weak.id, 1.0, 10.0)
        selector = PolicySelector(self.store, _greedy_config(), rng=random.Random(42))

        picks = [selector.select_policy("developer").id for _ in range(1000)]

        assert picks.count(strong.id) >= 700

    def test_deprecated_policies_are_never_selected(self):
        live = self.store.insert_policy("developer", "live")
        dead = self.store.insert_policy("developer", "dead", status=PolicyStatus.DEPRECATED)
        _set_belief(self.store, dead.id, 50.0, 1.0)
        selector = PolicySelector(self.store, _greedy_config(), rng=random.Random(3))

        picks = {selector.select_policy("developer").id for _ in range(100)}
        assert picks == {live.id}

    def test_only_deprecated_policies_returns_none(self):
        self.store.insert_policy("developer", "dead", status=PolicyStatus.DEPRECATED)
        selector = PolicySelector(self.store, _greedy_config(), rng=random.Random(3))
        assert selector.select_policy("developer") is None

    def test_full_exploration_is_uniform(self):
        strong = self.store.insert_policy("developer", "strong")
        weak = self.store.insert_policy("developer", "weak")
        _set_belief(self.store, strong.id, 100.0, 1.0)
        _set_belief(self.store, weak.id, 1.0, 100.0)
        selector = PolicySelector(
            self.store,
            SelectorConfig(exploration_rate=1.0, candidate_rate=0.0),
            rng=random.Random(5),
        )

        picks = [selector.select_policy("developer").id for _ in range(400)]

        assert 120 <= picks.count(weak.id) <= 280

    def test_candidate_bias_restricts_pool(self):
        production = self.store.insert_policy("developer", "prod", status=PolicyStatus.PRODUCTION)
        candidate = self.store.insert_policy("developer", "cand", status=PolicyStatus.CANDIDATE)
        _set_belief(self.store, production.id, 100.0, 1.0)
        _set_belief(self.store, candidate.id, 1.0, 100.0)
        selector = PolicySelector(
            self.store,
            SelectorConfig(exploration_rate=0.0, candidate_rate=1.0),
            rng=random.Random(9),
        )

        picks = {selector.select_policy("developer").id for _ in range(50)}
        assert picks == {candidate.id}

    def test_candidate_bias_without_candidates_falls_through(self):
        only = self.store.insert_policy("developer", "exp")
        selector = PolicySelector(
            self.store,
            SelectorConfig(exploration_rate=0.0, candidate_rate=1.0),
            rng=random.Random(9),
        )
        assert selector.select_policy("developer").id == only.id

    def test_selection_does_not_touch_counters(self):
        policy = self.store.insert_policy("developer", "p")
        selector = PolicySelector(self.store, _greedy_config(), rng=random.Random(1))
        selector.select_policy("developer")
        assert self.store.get_policy(policy.id).total_uses == 0


class TestRecordOutcome:
    def setup_method(self):
        self.store = OutcomeStore(retry_backoff_seconds=0)
        self.bus = EventBus()
        self.selector = PolicySelector(
            self.store, _greedy_config(), event_bus=self.bus, rng=random.Random(0)
        )
        self.policy = self.selector.register_policy("developer", "prompt")

    def test_success_updates_alpha(self):
        updated = self.selector.record_outcome(self.policy.id, Outcome.SUCCESS, 0.6)

        assert updated.total_uses == 1
        assert updated.successful_uses == 1
        assert updated.alpha == pytest.approx(1.6)
        assert updated.beta == pytest.approx(1.0)

    def test_negative_reward_updates_beta(self):
        updated = self.selector.record_outcome(self.policy.id, "failure", -0.5)

        assert updated.total_uses == 1
        assert updated.successful_uses == 0
        assert updated.alpha == pytest.approx(1.0)
        assert updated.beta == pytest.approx(1.5)

    def test_total_uses_increments_by_exactly_one(self):
        previous = self.store.get_policy(self.policy.id).total_uses
        for reward in (0.3, -0.9, 0.0, 1.0, -1.0):
            updated = self.selector.record_outcome(
                self.policy.id, Outcome.SUCCESS if reward >= 0 else Outcome.FAILURE, reward
            )
            assert updated.total_uses == previous + 1
            assert updated.alpha >= 1.0 and updated.beta >= 1.0
            previous = updated.total_uses

    def test_reward_is_clamped(self):
        updated = self.selector.record_outcome(self.policy.id, Outcome.SUCCESS, 3.0)
        assert updated.alpha == pytest.approx(2.0)
        assert self.selector.get_events(self.policy.id)[0].reward == 1.0

    def test_event_is_persisted_with_context(self):
        self.selector.record_outcome(
            self.policy.id, Outcome.SUCCESS, 0.2,
            project_id="proj_1", agent_id="dev_1", task_id="task_9",
            event_type="task_completed", context={"files": 3},
        )
        event = self.selector.get_events(self.policy.id)[0]

        assert event.project_id == "proj_1"
        assert event.agent_id == "dev_1"
        assert event.task_id == "task_9"
        assert event.event_type == "task_completed"
        assert event.context == {"files": 3}

    def test_unknown_policy_propagates(self):
        with pytest.raises(NotFoundError):
            self.selector.record_outcome("pol_missing", Outcome.SUCCESS, 0.5)

    def test_penalize_developer_uses_severity_table(self):
        updated = self.selector.penalize_developer(self.policy.id, "critical")
        assert updated.beta == pytest.approx(2.0)

        updated = self.selector.penalize_developer(self.policy.id, "something-else")
        assert updated.beta == pytest.approx(2.4)

        event = self.selector.get_events(self.policy.id)[0]
        assert event.event_type == "bug_found"
        assert event.outcome == Outcome.FAILURE

    def test_reward_bug_fix(self):
        updated = self.selector.reward_bug_fix(self.policy.id)
        assert updated.alpha == pytest.approx(1.5)
        assert self.selector.get_events(self.policy.id)[0].event_type == "bug_fixed"

    def test_concurrent_outcomes_lose_no_updates(self, tmp_path):
        db_path = str(tmp_path / "kernel.db")
        setup_store = OutcomeStore(db_path)
        policy = setup_store.insert_policy("developer", "shared")
        errors = []

        def worker(seed: int):
            store = OutcomeStore(db_path, max_write_retries=50, retry_backoff_seconds=0.01)
            selector = PolicySelector(store, _greedy_config(), rng=random.Random(seed))
            try:
                for _ in range(25):
                    selector.record_outcome(policy.id, Outcome.SUCCESS, 0.1)
            except Exception as exc:
                errors.append(exc)
            finally:
                store.close()

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        final = setup_store.get_policy(policy.id)
        assert final.total_uses == 100
        assert final.successful_uses == 100
        assert final.alpha == pytest.approx(11.0)
        assert setup_store.count_events() == 100


class TestLifecycle:
    def setup_method(self):
        self.store = OutcomeStore(retry_backoff_seconds=0)
        self.bus = EventBus()

    def _selector(self, **lifecycle) -> PolicySelector:
        return PolicySelector(
            self.store, _greedy_config(**lifecycle), event_bus=self.bus, rng=random.Random(0)
        )

    def test_experimental_promoted_to_candidate(self):
        selector = self._selector()
        policy = selector.register_policy("developer", "p")

        for _ in range(19):
            selector.record_outcome(policy.id, Outcome.SUCCESS, 0.5)
        assert self.store.get_policy(policy.id).status == PolicyStatus.EXPERIMENTAL

        updated = selector.record_outcome(policy.id, Outcome.SUCCESS, 0.5)
        assert updated.status == PolicyStatus.CANDIDATE
        assert len(self.bus.recent(event_type=EventType.POLICY_PROMOTED)) == 1

    def test_weak_experimental_stays_experimental(self):
        selector = self._selector()
        policy = selector.register_policy("developer", "p")
        for i in range(30):
            outcome = Outcome.SUCCESS if i % 3 == 0 else Outcome.FAILURE
            selector.record_outcome(policy.id, outcome, 0.1 if outcome == Outcome.SUCCESS else -0.1)
        assert self.store.get_policy(policy.id).status == PolicyStatus.EXPERIMENTAL

    def test_candidate_replaces_production(self):
        selector = self._selector(production_min_uses=5, production_min_success_rate=0.65)
        old = selector.register_policy("developer", "old", status=PolicyStatus.PRODUCTION)
        new = selector.register_policy("developer", "new", status=PolicyStatus.CANDIDATE)
        events_before = len(self.bus.recent())

        for _ in range(5):
            selector.record_outcome(new.id, Outcome.SUCCESS, 0.5)

        assert self.store.get_policy(new.id).status == PolicyStatus.PRODUCTION
        assert self.store.get_policy(old.id).status == PolicyStatus.DEPRECATED
        new_events = self.bus.recent()[events_before:]
        assert [e.type for e in new_events] == [EventType.POLICY_PROMOTED, EventType.POLICY_DEMOTED]
        assert new_events[1].subject_id == old.id

    def test_failing_production_is_demoted(self):
        selector = self._selector(demotion_window=5, demotion_max_success_rate=0.4)
        policy = selector.register_policy("developer", "p", status=PolicyStatus.PRODUCTION)

        for _ in range(4):
            selector.record_outcome(policy.id, Outcome.FAILURE, -0.5)
        assert self.store.get_policy(policy.id).status == PolicyStatus.PRODUCTION

        updated = selector.record_outcome(policy.id, Outcome.FAILURE, -0.5)
        assert updated.status == PolicyStatus.DEPRECATED
        demoted = self.bus.recent(event_type=EventType.POLICY_DEMOTED)
        assert demoted[-1].subject_id == policy.id


class TestPolicyManagement:
    def setup_method(self):
        self.store = OutcomeStore(retry_backoff_seconds=0)
        self.selector = PolicySelector(self.store, _greedy_config(), rng=random.Random(0))

    def test_ensure_policy_creates_production_once(self):
        first = self.selector.ensure_policy("tester", "default tester prompt")
        second = self.selector.ensure_policy("tester", "ignored")

        assert first.status == PolicyStatus.PRODUCTION
        assert second.id == first.id
        assert len(self.store.list_policies("tester")) == 1

    def test_create_variant_copies_variables(self):
        base = self.selector.register_policy("developer", "Use {lang}", variables=["lang"])
        variant = self.selector.create_policy_variant(base.id, "Write {lang} carefully")

        assert variant.version == 2
        assert variant.status == PolicyStatus.EXPERIMENTAL
        assert variant.variables == ["lang"]

    def test_create_variant_of_unknown_policy(self):
        with pytest.raises(NotFoundError):
            self.selector.create_policy_variant("pol_missing", "x")

    def test_manual_promotion_replaces_production(self):
        old = self.selector.register_policy("developer", "a", status=PolicyStatus.PRODUCTION)
        new = self.selector.register_policy("developer", "b")

        self.selector.set_policy_status(new.id, PolicyStatus.PRODUCTION)

        assert self.store.get_production_policy("developer").id == new.id
        assert self.store.get_policy(old.id).status == PolicyStatus.DEPRECATED

    def test_deprecated_is_terminal(self):
        policy = self.selector.register_policy("developer", "a")
        self.selector.set_policy_status(policy.id, PolicyStatus.DEPRECATED)
        with pytest.raises(InvalidStateError):
            self.selector.set_policy_status(policy.id, PolicyStatus.CANDIDATE)

    def test_set_status_of_unknown_policy(self):
        with pytest.raises(NotFoundError):
            self.selector.set_policy_status("pol_missing", PolicyStatus.CANDIDATE)


class TestReporting:
    def setup_method(self):
        self.store = OutcomeStore(retry_backoff_seconds=0)
        self.selector = PolicySelector(self.store, _greedy_config(), rng=random.Random(0))

    def test_stats_for_unknown_type_is_empty(self):
        assert self.selector.get_policy_stats("nobody") == []

    def test_stats_ordered_by_version_descending(self):
        p1 = self.selector.register_policy("developer", "a")
        self.selector.register_policy("developer", "b")
        self.selector.record_outcome(p1.id, Outcome.SUCCESS, 1.0)

        stats = self.selector.get_policy_stats("developer")

        assert [s.version for s in stats] == [2, 1]
        assert stats[1].thompson_score == pytest.approx(2.0 / 3.0)
        assert stats[1].success_rate == 1.0
        assert stats[0].total_uses == 0

    def test_confidence_interval_bounds(self):
        assert confidence_interval(0, 0) == (0.0, 1.0)
        low, high = confidence_interval(8, 10)
        assert 0.0 <= low < 0.8 < high <= 1.0
        assert confidence_interval(10, 10) == (1.0, 1.0)

    def test_comparison_without_production(self):
        self.selector.register_policy("developer", "a")
        comparison = self.selector.get_policy_comparison("developer")

        assert comparison.production is None
        assert comparison.total_policies == 1
        assert any("No production policy" in r for r in comparison.recommendations)
        assert any("needs more data" in r for r in comparison.recommendations)

    def test_comparison_flags_outperforming_variant(self):
        prod = self.selector.register_policy("developer", "a", status=PolicyStatus.PRODUCTION)
        exp = self.selector.register_policy("developer", "b")
        _set_belief(self.store, prod.id, 5.0, 6.0)
        _set_belief(self.store, exp.id, 12.0, 2.0)
        self.store._conn.execute(
            "UPDATE policies SET total_uses = 12, successful_uses = 10 WHERE id IN (?, ?)",
            (prod.id, exp.id),
        )

        comparison = self.selector.get_policy_comparison("developer")

        assert comparison.best_performer.policy_id == exp.id
        assert any("outperforming production" in r for r in comparison.recommendations)
