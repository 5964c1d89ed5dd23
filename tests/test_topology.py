"""Tests for topology plans."""

from __future__ import annotations

import json

import pytest

from quorum.deliberation import prompts
from quorum.models import BlockPriority, PhaseOutput, Profile, TopologyConfig, TopologyName
from quorum.topology import (
    AUTO,
    POSITIONS,
    PhaseContext,
    TopologyError,
    build_topology_plan,
    build_vote_phase,
    extra_round,
    list_topologies,
    parse_sub_questions,
    seed_bracket,
    validate_topology_config,
)

THREE = ["a", "b", "c"]


def _ctx(provider, visible=None, providers=THREE, **kwargs):
    return PhaseContext(
        input="Which database?",
        provider=provider,
        all_providers=tuple(providers),
        visible=visible or {},
        **kwargs,
    )


class TestValidation:
    @pytest.mark.parametrize(
        "name,providers,config,fragment",
        [
            ("ring", THREE, None, "Unknown topology"),
            ("mesh", [], None, "At least one provider"),
            ("mesh", ["a", "a"], None, "unique"),
            ("tournament", ["a", "b"], None, "Tournament requires"),
            ("adversarial_tree", ["a"], None, "Adversarial tree requires"),
            ("pipeline", ["a"], None, "Pipeline requires"),
            ("panel", ["a"], None, "Panel requires"),
            ("map_reduce", THREE, TopologyConfig(sub_questions=0), "at least 1"),
            ("map_reduce", THREE, TopologyConfig(sub_questions=4), "should not exceed"),
            ("star", THREE, TopologyConfig(hub="z"), "Hub provider"),
            ("panel", THREE, TopologyConfig(moderator="z"), "Moderator"),
        ],
    )
    def test_errors(self, name, providers, config, fragment):
        assert fragment in validate_topology_config(name, providers, config)

    def test_valid(self):
        assert validate_topology_config("tournament", THREE) is None

    def test_build_raises(self):
        with pytest.raises(TopologyError, match="Tournament requires"):
            build_topology_plan("tournament", ["a", "b"])


class TestMesh:
    def test_default_phases(self):
        plan = build_topology_plan("mesh", THREE)
        assert [p.name for p in plan.phases] == ["Gather", "Plan", "Formulate", "Debate", "Adjust", "Rebuttal"]
        assert plan.voting_enabled
        assert plan.synthesizer == AUTO

    def test_extra_rounds(self):
        plan = build_topology_plan("mesh", THREE, profile=Profile(rounds=2))
        names = [p.name for p in plan.phases]
        assert names.index("Debate (Round 2)") == names.index("Debate") + 1
        assert plan.phases[names.index("Debate (Round 2)")].visible_source == "debate"

    def test_custom_phases(self):
        plan = build_topology_plan("mesh", THREE, profile=Profile(phases=["debate", "synthesize"]))
        assert [p.name for p in plan.phases] == ["Gather", "Debate"]
        assert not plan.voting_enabled

    def test_gather_is_independent(self):
        gather = build_topology_plan("mesh", THREE).phases[0]
        assert all(gather.visible_to(p) == () for p in THREE)
        assert gather.produces_position

    def test_debate_sees_everyone_else(self):
        debate = build_topology_plan("mesh", THREE).phases[3]
        assert debate.visible_to("a") == ("b", "c")
        assert debate.visible_source == POSITIONS

    def test_rebuttal_gate_and_priorities(self):
        rebuttal = build_topology_plan("mesh", THREE).phases[-1]
        assert rebuttal.convergence_gate
        assert rebuttal.visible_priority == BlockPriority.FULL
        assert rebuttal.own_priority == BlockPriority.TRIMMABLE
        assert rebuttal.own_sources == ("debate",)

    def test_devils_advocate_is_last_provider(self):
        plan = build_topology_plan("mesh", THREE, profile=Profile(devils_advocate=True))
        debate = next(p for p in plan.phases if p.kind == "debate")
        assert debate.system_prompt(_ctx("c")) == prompts.DEVILS_ADVOCATE_SYSTEM
        assert debate.system_prompt(_ctx("a")) != prompts.DEVILS_ADVOCATE_SYSTEM

    def test_memory_appended_to_gather(self):
        plan = build_topology_plan("mesh", THREE, memory_context="Earlier we chose Postgres.")
        assert plan.phases[0].system_prompt(_ctx("a")).endswith("Earlier we chose Postgres.")

    def test_formulate_truncates_summaries(self):
        formulate = build_topology_plan("mesh", THREE).phases[2]
        prompt = formulate.user_prompt(_ctx("a", {"b": "x" * 900}, own={"gather": "mine"}))
        assert "x" * prompts.FORMULATE_SUMMARY_CHARS in prompt
        assert "x" * (prompts.FORMULATE_SUMMARY_CHARS + 1) not in prompt
        assert "(no plan)" in prompt

    def test_debate_prompt_names_positions(self):
        debate = build_topology_plan("mesh", THREE).phases[3]
        prompt = debate.user_prompt(_ctx("a", {"b": "Use Postgres."}))
        assert "[b]'s Position" in prompt
        assert "Use Postgres." in prompt


class TestExtraRounds:
    def test_debate(self):
        phase = extra_round("debate", 3, THREE)
        assert phase.name == "Debate (Round 3)"
        assert "round 3" in phase.system_prompt(_ctx("a"))

    def test_rebuttal_is_not_gated(self):
        phase = extra_round("rebuttal", 2, THREE)
        assert phase.name == "Rebuttal (Round 2)"
        assert not phase.convergence_gate

    def test_unknown_kind(self):
        with pytest.raises(TopologyError):
            extra_round("gather", 2, THREE)


class TestVotePhase:
    def test_labels_and_sections(self):
        phase = build_vote_phase(["a", "b"], voters=THREE)
        assert phase.participants == ("a", "b", "c")
        assert phase.visible_to("c") == ("a", "b")
        prompt = phase.user_prompt(_ctx("c", {"a": "first", "b": "second"}))
        assert "positions to rank (A, B)" in prompt
        assert "## Position A\nfirst" in prompt
        assert "## Position B\nsecond" in prompt


class TestStar:
    def test_hub_sees_spokes(self):
        plan = build_topology_plan("star", THREE, TopologyConfig(hub="b"))
        gather, hub = plan.phases
        assert gather.participants == ("a", "c")
        assert hub.participants == ("b",)
        assert hub.visible_to("b") == ("a", "c")
        assert not hub.parallel
        assert plan.synthesizer == "b"
        assert not plan.voting_enabled


class TestTournament:
    def test_ranked_pairs(self):
        assert seed_bracket(["a", "b", "c", "d"], "ranked") == ([("a", "d"), ("b", "c")], None)

    def test_three_providers_leftover_judges(self):
        plan = build_topology_plan("tournament", THREE, TopologyConfig(bracket_seed="ranked"))
        assert plan.pairs == (("a", "c"),)
        assert plan.byes == ()
        judging = plan.phases[-1]
        assert judging.name == "Round 1: a vs c - Judging"
        assert judging.participants == ("b",)

    def test_bye_excluded_from_judging(self):
        providers = ["a", "b", "c", "d", "e"]
        plan = build_topology_plan("tournament", providers, TopologyConfig(bracket_seed="ranked"))
        assert plan.byes == ("c",)
        judging = next(p for p in plan.phases if p.kind == "judging")
        assert "c" not in judging.participants
        assert plan.phases[-1].name == "Round 1: c - Bye Position"

    def test_critique_sees_opponent(self):
        plan = build_topology_plan("tournament", THREE, TopologyConfig(bracket_seed="ranked"))
        critique = plan.phases[1]
        assert critique.visible_to("a") == ("c",)
        assert critique.visible_to("c") == ("a",)

    def test_random_seed_reproducible(self):
        providers = ["a", "b", "c", "d", "e", "f"]
        first = build_topology_plan("tournament", providers, TopologyConfig(seed=7))
        second = build_topology_plan("tournament", providers, TopologyConfig(seed=7))
        assert first.pairs == second.pairs
        assert sorted(p for pair in first.pairs for p in pair) == providers


class TestMapReduce:
    def test_sub_question_assignment(self):
        plan = build_topology_plan("map_reduce", THREE, TopologyConfig(sub_questions=2))
        decompose, map_phase, reduce_phase = plan.phases
        assert decompose.participants == ("a",)
        history = (
            PhaseOutput(phase="Decompose", timestamp=1, duration=1,
                        responses={"a": "1. Cost?\n2. Scale?"}),
        )
        assert map_phase.user_prompt(_ctx("a", history=history)) == "Cost?"
        assert map_phase.user_prompt(_ctx("b", history=history)) == "Scale?"
        assert map_phase.user_prompt(_ctx("c", history=history)) == "Cost?"
        assert reduce_phase.visible_to("b") == ("a", "c")
        assert plan.synthesizer == "a"

    def test_without_decomposition_uses_question(self):
        map_phase = build_topology_plan("map_reduce", THREE).phases[1]
        assert map_phase.user_prompt(_ctx("b")) == "Which database?"

    def test_parse_sub_questions(self):
        assert parse_sub_questions("Intro\n1. First\n2) Second\n  3: Third ") == ["First", "Second", "Third"]


class TestAdversarialTree:
    def test_alternates(self):
        plan = build_topology_plan("adversarial_tree", ["a", "b", "c", "d"])
        assert [p.name for p in plan.phases] == ["Thesis", "Challenge - b", "Defend - c", "Challenge - d"]
        assert plan.phases[2].visible_to("c") == ("a", "b")
        assert plan.voting_enabled


class TestPipeline:
    def test_each_step_sees_predecessors(self):
        plan = build_topology_plan("pipeline", THREE)
        assert [p.name for p in plan.phases] == ["Step 1: a", "Step 2: b", "Step 3: c"]
        assert plan.phases[0].visible_to("a") == ()
        assert plan.phases[2].visible_to("c") == ("a", "b")
        assert plan.synthesizer == "c"


class TestPanel:
    def test_moderated(self):
        plan = build_topology_plan("panel", THREE, TopologyConfig(moderator="c"))
        assert [p.name for p in plan.phases] == [
            "Opening Statements", "Moderator Questions", "Panelist Responses", "Moderator Synthesis",
        ]
        assert plan.phases[0].participants == ("a", "b")
        assert plan.phases[2].visible_to("a") == ("c",)
        assert plan.synthesizer == "c"
        prompt = plan.phases[2].system_prompt(_ctx("a", {"c": "Why now?"}))
        assert "Why now?" in prompt


class TestCatalogue:
    def test_lists_every_topology(self):
        names = [t["name"] for t in list_topologies()]
        assert names == [t.value for t in TopologyName]

    def test_plan_serializes(self):
        plan = build_topology_plan("tournament", ["a", "b", "c", "d", "e"])
        data = json.loads(json.dumps(plan.to_dict()))
        assert data["topology"] == "tournament"
        assert len(data["phases"]) == len(plan.phases)
