"""Tests for entropy measurement and adaptive phase control."""

from __future__ import annotations

import pytest

from quorum.adaptive import (
    AdaptiveController,
    calculate_entropy,
    extract_claims,
    get_preset_config,
    jaccard,
    learned_adjustments,
    load_stats,
    mean_pairwise_similarity,
    record_outcome,
)
from quorum.models import AdaptiveAction, AdaptiveDecision, AdaptivePreset, AdaptiveState

AGREEING = {
    "a": "Caching should improve latency considerably.",
    "b": "Caching should improve latency considerably.",
    "c": "Caching should improve latency considerably.",
}
DIVERGENT = {
    "a": "Python is fastest language.",
    "b": "Rust should replace everything.",
    "c": "Haskell will dominate research.",
}
COUNCIL_REMAINING = ["plan", "formulate", "debate", "adjust", "rebuttal", "vote", "synthesize"]


class TestEntropy:
    def test_single_response_is_zero(self):
        result = calculate_entropy({"a": "Anything at all."})
        assert result.score == 0.0
        assert "Insufficient" in result.details

    def test_empty_responses_ignored(self):
        assert calculate_entropy({"a": "Python is great.", "b": ""}).score == 0.0

    def test_identical_responses_are_zero(self):
        result = calculate_entropy(AGREEING)
        assert result.term_divergence == 0.0
        assert result.position_entropy == 0.0
        assert result.score == 0.0

    def test_fully_divergent_responses(self):
        result = calculate_entropy(DIVERGENT)
        assert result.term_divergence == pytest.approx(1.0)
        assert result.position_entropy == pytest.approx(1.0)
        assert result.score == pytest.approx(1.0)

    def test_score_in_unit_interval(self):
        result = calculate_entropy({"a": "Tests should always run quickly.", "b": "Quickly written tests never help."})
        assert 0.0 <= result.score <= 1.0

    def test_jaccard_of_empty_sets(self):
        assert jaccard(set(), set()) == 1.0

    def test_mean_similarity_without_pairs(self):
        assert mean_pairwise_similarity(["only one"]) == 1.0

    def test_claims_need_assertions(self):
        claims = extract_claims("Python is popular. Maybe later perhaps.")
        assert claims == ["popular|python"]


class TestPresets:
    def test_balanced(self):
        cfg = get_preset_config("balanced")
        assert (cfg.skip_threshold, cfg.add_round_threshold, cfg.max_extra_rounds) == (0.2, 0.8, 2)
        assert cfg.never_skip_phases == ["gather", "vote", "synthesize"]

    def test_adjustments_applied(self):
        cfg = get_preset_config(AdaptivePreset.FAST, 0.05, -0.05)
        assert cfg.skip_threshold == pytest.approx(0.30)
        assert cfg.add_round_threshold == pytest.approx(0.80)

    def test_off_ignores_adjustments(self):
        cfg = get_preset_config("off", 0.05, 0.05)
        assert cfg.skip_threshold == -1.0
        assert cfg.never_skip_phases == []


class TestController:
    def test_off_always_continues(self):
        state = AdaptiveState()
        decision = AdaptiveController.from_preset("off").evaluate(state, "gather", AGREEING, COUNCIL_REMAINING)
        assert decision.action == AdaptiveAction.CONTINUE
        assert decision.reason == "Adaptive control disabled"
        assert state.decisions == [decision]

    def test_gather_agreement_skips_to_vote(self):
        state = AdaptiveState()
        decision = AdaptiveController.from_preset("balanced").evaluate(
            state, "gather", AGREEING, COUNCIL_REMAINING
        )
        assert decision.action == AdaptiveAction.SKIP_TO_VOTE
        assert decision.skip_phases == ["plan", "formulate", "debate", "adjust", "rebuttal"]
        assert state.phase_entropies["gather"] == 0.0

    def test_gather_agreement_without_vote_skips_to_synthesize(self):
        decision = AdaptiveController.from_preset("balanced").evaluate(
            AdaptiveState(), "gather", AGREEING, ["debate", "synthesize"]
        )
        assert decision.action == AdaptiveAction.SKIP_TO_SYNTHESIZE
        assert decision.skip_phases == ["debate"]

    def test_protected_phase_blocks_skip(self):
        decision = AdaptiveController.from_preset("critical").evaluate(
            AdaptiveState(), "gather", AGREEING, COUNCIL_REMAINING
        )
        assert decision.action == AdaptiveAction.CONTINUE
        assert "protected" in decision.reason

    def test_debate_disagreement_adds_round_until_budget_spent(self):
        controller = AdaptiveController.from_preset("balanced")
        state = AdaptiveState()
        remaining = ["adjust", "vote", "synthesize"]
        actions = [controller.evaluate(state, "debate", DIVERGENT, remaining).action for _ in range(3)]
        assert actions == [AdaptiveAction.ADD_ROUND, AdaptiveAction.ADD_ROUND, AdaptiveAction.CONTINUE]
        assert state.extra_rounds_used == 2
        assert state.decisions[0].extra_phase == "debate"

    def test_debate_agreement_skips_to_vote(self):
        decision = AdaptiveController.from_preset("balanced").evaluate(
            AdaptiveState(), "debate", AGREEING, ["adjust", "rebuttal", "vote", "synthesize"]
        )
        assert decision.action == AdaptiveAction.SKIP_TO_VOTE
        assert decision.skip_phases == ["adjust", "rebuttal"]

    def test_adjust_disagreement_adds_rebuttal(self):
        decision = AdaptiveController.from_preset("balanced").evaluate(
            AdaptiveState(), "adjust", DIVERGENT, ["rebuttal", "vote", "synthesize"]
        )
        assert decision.action == AdaptiveAction.ADD_ROUND
        assert decision.extra_phase == "rebuttal"

    def test_never_skips_protected_phases(self):
        controller = AdaptiveController.from_preset("critical")
        for completed in ("gather", "debate"):
            decision = controller.evaluate(AdaptiveState(), completed, AGREEING, COUNCIL_REMAINING)
            for phase in decision.skip_phases or []:
                assert phase not in controller.config.never_skip_phases


class TestOutcomeLearning:
    def test_record_and_reload(self, tmp_path):
        path = tmp_path / "stats.json"
        decisions = [
            AdaptiveDecision(action=AdaptiveAction.SKIP_TO_VOTE, reason="agree", entropy=0.1),
            AdaptiveDecision(action=AdaptiveAction.ADD_ROUND, reason="split", entropy=0.9, extra_phase="debate"),
        ]
        record_outcome(path, decisions, 0.9, ["b", "a"])
        stats = load_stats(path)
        assert stats.total_sessions == 1
        assert stats.phase_skips["skip-to-vote"].count == 1
        assert stats.extra_rounds["debate"].average == pytest.approx(0.9)
        assert stats.provider_pair_entropy["a:b"].average == pytest.approx(0.5)

    def test_learned_adjustments(self, tmp_path):
        path = tmp_path / "stats.json"
        skip = [AdaptiveDecision(action=AdaptiveAction.SKIP_TO_VOTE, reason="agree", entropy=0.1)]
        record_outcome(path, skip, 0.95, ["a", "b"])
        assert learned_adjustments(load_stats(path)) == (0.05, 0.0)

    def test_low_confidence_lowers_threshold(self, tmp_path):
        path = tmp_path / "stats.json"
        add = [AdaptiveDecision(action=AdaptiveAction.ADD_ROUND, reason="split", entropy=0.9, extra_phase="debate")]
        record_outcome(path, add, 0.3, ["a", "b"])
        assert learned_adjustments(load_stats(path)) == (0.0, -0.05)

    def test_unreadable_stats_start_fresh(self, tmp_path):
        path = tmp_path / "stats.json"
        path.write_text("{not json", encoding="utf-8")
        assert load_stats(path).total_sessions == 0
