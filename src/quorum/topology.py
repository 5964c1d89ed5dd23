"""Topology engine: builds the phase graph for each deliberation shape.

A plan is an ordered list of :class:`Phase` descriptors. Each phase names its
participants, and for each participant exactly which other participants'
text it may read (the visibility map), whether participants run in parallel,
and how to build the system and user prompts from a :class:`PhaseContext`.
Builders are pure: the same providers and config always give the same plan
(tournament ``random`` seeding is reproducible through ``TopologyConfig.seed``).
"""

from __future__ import annotations

import json
import random
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from quorum.deliberation import prompts
from quorum.models import (
    BlockPriority,
    PhaseOutput,
    Profile,
    TopologyConfig,
    TopologyName,
)
from quorum.voting import position_labels

AUTO = "auto"
# Source marker: each participant's most recent position-producing output.
POSITIONS = "@positions"
DEFAULT_SUB_QUESTIONS = 3

_NUMBERED_LINE = re.compile(r"^\s*\d+[\.\):]\s*(.+?)\s*$")


class TopologyError(ValueError):
    """Raised when a topology cannot be built for the given providers and config."""


@dataclass(frozen=True)
class PhaseContext:
    """Everything a prompt builder may look at for one participant."""

    input: str
    provider: str
    all_providers: tuple[str, ...]
    visible: Mapping[str, str]
    own: Mapping[str, str] = field(default_factory=dict)
    phase_index: int = 0
    history: tuple[PhaseOutput, ...] = ()


PromptBuilder = Callable[[PhaseContext], str]


@dataclass(frozen=True)
class Phase:
    name: str
    kind: str
    participants: tuple[str, ...]
    visibility: Mapping[str, tuple[str, ...]]
    system_prompt: PromptBuilder
    user_prompt: PromptBuilder
    parallel: bool = True
    # Phase kind whose output supplies visible text; None means each
    # visible participant's latest output.
    visible_source: str | None = None
    own_sources: tuple[str, ...] = ()
    visible_priority: BlockPriority = BlockPriority.TRIMMABLE
    own_priority: BlockPriority = BlockPriority.FULL
    produces_position: bool = False
    convergence_gate: bool = False

    def visible_to(self, participant: str) -> tuple[str, ...]:
        return self.visibility.get(participant, ())

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "participants": list(self.participants),
            "visibility": {p: list(v) for p, v in self.visibility.items()},
            "parallel": self.parallel,
            "visible_source": self.visible_source,
            "own_sources": list(self.own_sources),
            "produces_position": self.produces_position,
            "convergence_gate": self.convergence_gate,
        }


@dataclass(frozen=True)
class TopologyPlan:
    topology: TopologyName
    phases: tuple[Phase, ...]
    synthesizer: str
    voting_enabled: bool
    description: str
    pairs: tuple[tuple[str, str], ...] = ()
    byes: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "topology": self.topology.value,
            "synthesizer": self.synthesizer,
            "voting_enabled": self.voting_enabled,
            "description": self.description,
            "pairs": [list(p) for p in self.pairs],
            "byes": list(self.byes),
            "phases": [p.describe() for p in self.phases],
        }


# --- Helpers ---


def _phase(
    name: str,
    kind: str,
    participants: Sequence[str],
    visibility: Mapping[str, Sequence[str]],
    system_prompt: PromptBuilder,
    user_prompt: PromptBuilder,
    **kwargs: Any,
) -> Phase:
    return Phase(
        name=name,
        kind=kind,
        participants=tuple(participants),
        visibility=MappingProxyType({p: tuple(v) for p, v in visibility.items()}),
        system_prompt=system_prompt,
        user_prompt=user_prompt,
        **kwargs,
    )


def _no_visibility(participants: Sequence[str]) -> dict[str, tuple[str, ...]]:
    return {p: () for p in participants}


def _full_visibility(
    participants: Sequence[str], providers: Sequence[str]
) -> dict[str, tuple[str, ...]]:
    return {p: tuple(o for o in providers if o != p) for p in participants}


def _render(visible: Mapping[str, str], template: str = "**{name}:** {text}", sep: str = "\n\n") -> str:
    return sep.join(template.format(name=name, text=text) for name, text in visible.items())


def _static(text: str) -> PromptBuilder:
    return lambda ctx: text


def _question(ctx: PhaseContext) -> str:
    return ctx.input


def _with_memory(text: str, memory_context: str | None) -> str:
    return f"{text}\n\n{memory_context}" if memory_context else text


def _about(template: str) -> PromptBuilder:
    return lambda ctx: template.format(question=ctx.input)


def _seeing(template: str, key: str) -> PromptBuilder:
    return lambda ctx: template.format(**{key: _render(ctx.visible)})


# --- Catalogue & validation ---

_CATALOGUE: dict[TopologyName, tuple[str, str]] = {
    TopologyName.MESH: ("All-vs-all council debate (default)", "general deliberation"),
    TopologyName.STAR: ("Hub-and-spoke, fast synthesis", "quick polls, cost-sensitive"),
    TopologyName.TOURNAMENT: ("Bracket elimination", 'competitive comparison, "which is best?"'),
    TopologyName.MAP_REDUCE: ("Split into sub-questions, merge", "complex multi-part questions"),
    TopologyName.ADVERSARIAL_TREE: ("Attack/defend binary tree", "stress-testing claims"),
    TopologyName.PIPELINE: ("Sequential refinement chain", "iterative improvement"),
    TopologyName.PANEL: ("Moderated discussion", "structured exploration, interviews"),
}


def list_topologies() -> list[dict[str, str]]:
    return [
        {"name": name.value, "description": desc, "best_for": best}
        for name, (desc, best) in _CATALOGUE.items()
    ]


def validate_topology_config(
    name: TopologyName | str,
    providers: Sequence[str],
    config: TopologyConfig | None = None,
) -> str | None:
    """Why ``name`` cannot run with these providers, or None when it can."""
    try:
        name = TopologyName(name)
    except ValueError:
        return f"Unknown topology '{name}'. Available: {', '.join(t.value for t in TopologyName)}"
    config = config or TopologyConfig()
    n = len(providers)
    if n == 0:
        return "At least one provider is required"
    if len(set(providers)) != n:
        return "Provider names must be unique"
    if name == TopologyName.TOURNAMENT and n < 3:
        return "Tournament requires at least 3 providers (2 to debate, 1 to judge)"
    if name == TopologyName.ADVERSARIAL_TREE and n < 2:
        return "Adversarial tree requires at least 2 providers"
    if name == TopologyName.PIPELINE and n < 2:
        return "Pipeline requires at least 2 providers"
    if name == TopologyName.PANEL and n < 2:
        return "Panel requires at least 2 providers (a moderator and a panelist)"
    if name == TopologyName.MAP_REDUCE and config.sub_questions is not None:
        if config.sub_questions < 1:
            return "map_reduce sub_questions must be at least 1"
        if config.sub_questions > n:
            return (
                f"map_reduce sub_questions ({config.sub_questions}) should not exceed "
                f"provider count ({n})"
            )
    if name == TopologyName.STAR and config.hub and config.hub not in providers:
        return f"Hub provider '{config.hub}' is not in the provider list"
    if name == TopologyName.PANEL and config.moderator and config.moderator not in providers:
        return f"Moderator '{config.moderator}' is not in the provider list"
    return None


def build_topology_plan(
    name: TopologyName | str,
    providers: Sequence[str],
    config: TopologyConfig | None = None,
    profile: Profile | None = None,
    memory_context: str | None = None,
) -> TopologyPlan:
    """Validate and build the phase plan; raises :class:`TopologyError` on bad input."""
    error = validate_topology_config(name, providers, config)
    if error:
        raise TopologyError(error)
    name = TopologyName(name)
    providers = list(providers)
    config = config or TopologyConfig()
    profile = profile or Profile()

    if name == TopologyName.STAR:
        return _build_star(providers, config, memory_context)
    if name == TopologyName.TOURNAMENT:
        return _build_tournament(providers, config, memory_context)
    if name == TopologyName.MAP_REDUCE:
        return _build_map_reduce(providers, config, memory_context)
    if name == TopologyName.ADVERSARIAL_TREE:
        return _build_adversarial_tree(providers, memory_context)
    if name == TopologyName.PIPELINE:
        return _build_pipeline(providers, memory_context)
    if name == TopologyName.PANEL:
        return _build_panel(providers, config, memory_context)
    return _build_mesh(providers, profile, memory_context)


# --- mesh (council) ---


def _debate_system(count: int, style: str, devil: str | None) -> PromptBuilder:
    def build(ctx: PhaseContext) -> str:
        if ctx.provider == devil:
            return prompts.DEVILS_ADVOCATE_SYSTEM
        return prompts.DEBATE_SYSTEM.format(count=count, style=style)

    return build


def _debate_user(ctx: PhaseContext) -> str:
    positions = _render(ctx.visible, "### [{name}]'s Position:\n{text}", "\n\n---\n\n")
    return prompts.DEBATE_USER.format(question=ctx.input, positions=positions)


def _plan_user(ctx: PhaseContext) -> str:
    return prompts.PLAN_USER.format(others=_render(ctx.visible, "[{name}]: {text}", "\n\n---\n\n"))


def _formulate_user(ctx: PhaseContext) -> str:
    summaries = {k: v[: prompts.FORMULATE_SUMMARY_CHARS] for k, v in ctx.visible.items()}
    return prompts.FORMULATE_USER.format(
        question=ctx.input,
        own_gather=ctx.own.get("gather", ""),
        own_plan=ctx.own.get("plan", "(no plan)"),
        others=_render(summaries, "[{name}]: {text}"),
    )


def _adjust_user(ctx: PhaseContext) -> str:
    return prompts.ADJUST_USER.format(
        position=ctx.own.get(POSITIONS, ""),
        critiques=_render(ctx.visible, "[{name}]:\n{text}", "\n\n---\n\n"),
    )


def _rebuttal_user(ctx: PhaseContext) -> str:
    return prompts.REBUTTAL_USER.format(
        critique=ctx.own.get("debate", ""),
        revisions=_render(ctx.visible, "### [{name}]'s Revised Position:\n{text}", "\n\n---\n\n"),
    )


def _debate_phase(name: str, providers: Sequence[str], system: PromptBuilder, source: str) -> Phase:
    return _phase(
        name, "debate", providers, _full_visibility(providers, providers),
        system, _debate_user, visible_source=source,
    )


def _rebuttal_phase(name: str, providers: Sequence[str], gated: bool) -> Phase:
    return _phase(
        name, "rebuttal", providers, _full_visibility(providers, providers),
        _static(prompts.REBUTTAL_SYSTEM), _rebuttal_user,
        visible_source=POSITIONS,
        own_sources=("debate",),
        visible_priority=BlockPriority.FULL,
        own_priority=BlockPriority.TRIMMABLE,
        convergence_gate=gated,
    )


def _build_mesh(providers: list[str], profile: Profile, memory_context: str | None) -> TopologyPlan:
    kinds = profile.phases
    devil = providers[-1] if profile.devils_advocate and len(providers) > 1 else None
    full = _full_visibility(providers, providers)
    gather_system = _with_memory(
        prompts.GATHER_SYSTEM.format(focus=", ".join(profile.focus)), memory_context
    )

    phases = [
        _phase("Gather", "gather", providers, _no_visibility(providers),
               _static(gather_system), _question, produces_position=True),
    ]
    if "plan" in kinds:
        phases.append(_phase("Plan", "plan", providers, full, _static(prompts.PLAN_SYSTEM),
                             _plan_user, visible_source="gather"))
    if "formulate" in kinds:
        phases.append(_phase("Formulate", "formulate", providers, full,
                             _static(prompts.FORMULATE_SYSTEM), _formulate_user,
                             visible_source="gather", own_sources=("gather", "plan"),
                             produces_position=True))
    if "debate" in kinds:
        system = _debate_system(len(providers) - 1, profile.challenge_style.value, devil)
        phases.append(_debate_phase("Debate", providers, system, POSITIONS))
        for r in range(2, profile.rounds + 1):
            phases.append(_debate_phase(f"Debate (Round {r})", providers, system, "debate"))
    if "adjust" in kinds:
        phases.append(_phase("Adjust", "adjust", providers, full,
                             _static(prompts.ADJUST_SYSTEM), _adjust_user,
                             visible_source="debate", own_sources=(POSITIONS,),
                             produces_position=True))
    if "rebuttal" in kinds:
        phases.append(_rebuttal_phase("Rebuttal", providers, gated=True))

    voting = "vote" in kinds
    flow = " -> ".join([p.kind for p in phases] + (["vote"] if voting else []) + ["synthesize"])
    return TopologyPlan(
        topology=TopologyName.MESH,
        phases=tuple(phases),
        synthesizer=AUTO,
        voting_enabled=voting,
        description=f"All-vs-all council: {flow}",
    )


def extra_round(kind: str, number: int, providers: Sequence[str]) -> Phase:
    """An additional debate or rebuttal instance inserted by adaptive control."""
    if kind == "debate":
        system = _static(prompts.EXTRA_DEBATE_SYSTEM.format(round=number))
        return _debate_phase(f"Debate (Round {number})", providers, system, "debate")
    if kind == "rebuttal":
        return _rebuttal_phase(f"Rebuttal (Round {number})", providers, gated=False)
    raise TopologyError(f"Cannot insert an extra '{kind}' round")


def build_vote_phase(candidates: Sequence[str], voters: Sequence[str] | None = None) -> Phase:
    """Terminal vote: every voter ranks every candidate's position, labelled A, B, C, ..."""
    candidates = list(candidates)
    voters = list(voters) if voters is not None else candidates
    labels = position_labels(len(candidates))

    def user(ctx: PhaseContext) -> str:
        positions = "\n\n---\n\n".join(
            f"## Position {label}\n{ctx.visible.get(c, '[no response]')}"
            for label, c in zip(labels, candidates, strict=True)
        )
        example = json.dumps(
            {"rankings": [{"position": l, "rank": i + 1, "reason": "..."} for i, l in enumerate(labels)]},
            indent=2,
        )
        lines = "\n".join(f"{i + 1}. {l} - reason" for i, l in enumerate(labels[:3]))
        return prompts.VOTE_USER.format(
            question=ctx.input,
            count=len(candidates),
            labels=", ".join(labels),
            positions=positions,
            example=example,
            lines=lines,
        )

    return _phase(
        "Vote", "vote", voters, {v: candidates for v in voters},
        _static(prompts.VOTE_SYSTEM), user, visible_source=POSITIONS,
    )


# --- star ---


def _build_star(providers: list[str], config: TopologyConfig, memory_context: str | None) -> TopologyPlan:
    hub = config.hub or providers[0]
    spokes = [p for p in providers if p != hub] or [hub]
    phases = (
        _phase("Gather", "gather", spokes, _no_visibility(spokes),
               _static(_with_memory(prompts.INDEPENDENT_SYSTEM, memory_context)), _question,
               produces_position=True),
        _phase("Hub Analysis", "hub", [hub], {hub: [s for s in spokes if s != hub]},
               _seeing(prompts.HUB_SYSTEM, "responses"), _about(prompts.HUB_USER),
               parallel=False, produces_position=True),
    )
    return TopologyPlan(
        topology=TopologyName.STAR,
        phases=phases,
        synthesizer=hub,
        voting_enabled=False,
        description=f"Hub-and-spoke: spokes respond independently, {hub} synthesizes",
    )


# --- tournament ---


def seed_bracket(
    providers: Sequence[str], seeding: str, seed: int | None = None
) -> tuple[list[tuple[str, str]], str | None]:
    """Pair providers for round one; returns (pairs, unpaired provider or None).

    ``ranked`` pairs first vs last, second vs second-last, leaving the middle
    provider unpaired when the count is odd. ``random`` shuffles, then pairs
    neighbours, leaving the last one unpaired.
    """
    working = list(providers)
    pairs: list[tuple[str, str]] = []
    if seeding == "ranked":
        while len(working) > 1:
            pairs.append((working.pop(0), working.pop()))
        return pairs, working[0] if working else None

    random.Random(seed).shuffle(working)
    for i in range(0, len(working) - 1, 2):
        pairs.append((working[i], working[i + 1]))
    return pairs, working[-1] if len(working) % 2 else None


def _build_tournament(providers: list[str], config: TopologyConfig, memory_context: str | None) -> TopologyPlan:
    pairs, unpaired = seed_bracket(providers, config.bracket_seed, config.seed)
    # With three providers the unpaired one is the only possible judge.
    byes = [unpaired] if unpaired and len(providers) > 3 else []
    system = _static(_with_memory(prompts.TOURNAMENT_SYSTEM, memory_context))

    phases: list[Phase] = []
    for a, b in pairs:
        prefix = f"Round 1: {a} vs {b}"
        phases.append(_phase(f"{prefix} - Position", "position", [a, b], _no_visibility([a, b]),
                             system, _question, produces_position=True))
        phases.append(_phase(f"{prefix} - Critique", "critique", [a, b], {a: [b], b: [a]},
                             _seeing(prompts.CRITIQUE_SYSTEM, "opponent"),
                             _about(prompts.CRITIQUE_USER), produces_position=True))
        judges = [p for p in providers if p not in (a, b) and p not in byes]
        if judges:
            phases.append(_phase(f"{prefix} - Judging", "judging", judges, {j: [a, b] for j in judges},
                                 _seeing(prompts.JUDGE_SYSTEM, "responses"),
                                 _static(prompts.JUDGE_USER)))
    for p in byes:
        phases.append(_phase(f"Round 1: {p} - Bye Position", "position", [p], _no_visibility([p]),
                             system, _question, parallel=False, produces_position=True))

    bye_note = f" ({', '.join(byes)} gets a bye)" if byes else ""
    return TopologyPlan(
        topology=TopologyName.TOURNAMENT,
        phases=tuple(phases),
        synthesizer=AUTO,
        voting_enabled=True,
        description=f"Bracket elimination tournament with {len(pairs)} match(es){bye_note}",
        pairs=tuple(pairs),
        byes=tuple(byes),
    )


# --- map_reduce ---


def parse_sub_questions(text: str) -> list[str]:
    return [m.group(1) for line in text.splitlines() if (m := _NUMBERED_LINE.match(line))]


def _assigned_sub_question(ctx: PhaseContext) -> str | None:
    decomposed = next((o for o in reversed(ctx.history) if o.phase == "Decompose"), None)
    if decomposed is None or not decomposed.responses:
        return None
    subs = parse_sub_questions(next(iter(decomposed.responses.values())))
    if not subs:
        return None
    return subs[ctx.all_providers.index(ctx.provider) % len(subs)]


def _map_system(ctx: PhaseContext) -> str:
    sub = _assigned_sub_question(ctx)
    return prompts.MAP_SYSTEM.format(sub_question=sub or "Answer the question.")


def _map_user(ctx: PhaseContext) -> str:
    return _assigned_sub_question(ctx) or ctx.input


def _build_map_reduce(providers: list[str], config: TopologyConfig, memory_context: str | None) -> TopologyPlan:
    count = config.sub_questions or min(DEFAULT_SUB_QUESTIONS, len(providers))
    decomposer = providers[0]
    phases = (
        _phase("Decompose", "decompose", [decomposer], _no_visibility([decomposer]),
               _static(_with_memory(prompts.DECOMPOSE_SYSTEM.format(count=count), memory_context)),
               _question, parallel=False),
        _phase("Map", "map", providers, _no_visibility(providers), _map_system, _map_user,
               produces_position=True),
        _phase("Reduce", "reduce", providers, _full_visibility(providers, providers),
               _seeing(prompts.REDUCE_SYSTEM, "answers"), _about(prompts.REDUCE_USER),
               produces_position=True),
    )
    return TopologyPlan(
        topology=TopologyName.MAP_REDUCE,
        phases=phases,
        synthesizer=decomposer,
        voting_enabled=False,
        description=f"Divide and conquer: decompose into {count} sub-questions, map to providers, reduce",
    )


# --- adversarial_tree ---


def _build_adversarial_tree(providers: list[str], memory_context: str | None) -> TopologyPlan:
    thesis = providers[0]
    phases = [
        _phase("Thesis", "thesis", [thesis], _no_visibility([thesis]),
               _static(_with_memory(prompts.THESIS_SYSTEM, memory_context)), _question,
               parallel=False, produces_position=True),
    ]
    for i, participant in enumerate(providers[1:]):
        previous = providers[: i + 1]
        if i % 2 == 0:
            phases.append(_phase(f"Challenge - {participant}", "challenge", [participant],
                                 {participant: previous},
                                 _seeing(prompts.CHALLENGE_SYSTEM, "previous"),
                                 _about(prompts.CHALLENGE_USER), parallel=False,
                                 produces_position=True))
        else:
            phases.append(_phase(f"Defend - {participant}", "defend", [participant],
                                 {participant: previous},
                                 _seeing(prompts.DEFEND_SYSTEM, "previous"),
                                 _about(prompts.DEFEND_USER), parallel=False,
                                 produces_position=True))
    return TopologyPlan(
        topology=TopologyName.ADVERSARIAL_TREE,
        phases=tuple(phases),
        synthesizer=AUTO,
        voting_enabled=True,
        description="Attack/defend tree: thesis -> challenge -> defend -> counter, with final vote",
    )


# --- pipeline ---


def _build_pipeline(providers: list[str], memory_context: str | None) -> TopologyPlan:
    phases = []
    for i, provider in enumerate(providers):
        if i == 0:
            phases.append(_phase(f"Step 1: {provider}", "step", [provider], _no_visibility([provider]),
                                 _static(_with_memory(prompts.PIPELINE_FIRST_SYSTEM, memory_context)),
                                 _question, parallel=False, produces_position=True))
        else:
            phases.append(_phase(f"Step {i + 1}: {provider}", "step", [provider],
                                 {provider: providers[:i]},
                                 _seeing(prompts.PIPELINE_STEP_SYSTEM, "previous"),
                                 _about(prompts.PIPELINE_STEP_USER), parallel=False,
                                 produces_position=True))
    return TopologyPlan(
        topology=TopologyName.PIPELINE,
        phases=tuple(phases),
        synthesizer=providers[-1],
        voting_enabled=False,
        description=f"Sequential refinement chain: {' -> '.join(providers)}",
    )


# --- panel ---


def _panel_answer_system(moderator: str) -> PromptBuilder:
    return lambda ctx: prompts.PANEL_ANSWER_SYSTEM.format(questions=ctx.visible.get(moderator, ""))


def _build_panel(providers: list[str], config: TopologyConfig, memory_context: str | None) -> TopologyPlan:
    moderator = config.moderator or providers[0]
    panelists = [p for p in providers if p != moderator]
    phases = (
        _phase("Opening Statements", "opening", panelists, _no_visibility(panelists),
               _static(_with_memory(prompts.PANEL_OPENING_SYSTEM, memory_context)), _question,
               produces_position=True),
        _phase("Moderator Questions", "questions", [moderator], {moderator: panelists},
               _seeing(prompts.PANEL_QUESTIONS_SYSTEM, "statements"),
               _about(prompts.PANEL_QUESTIONS_USER), parallel=False),
        _phase("Panelist Responses", "answers", panelists, {p: [moderator] for p in panelists},
               _panel_answer_system(moderator), _about(prompts.PANEL_ANSWER_USER),
               produces_position=True),
        _phase("Moderator Synthesis", "moderation", [moderator], {moderator: panelists},
               _seeing(prompts.PANEL_SYNTHESIS_SYSTEM, "responses"),
               _about(prompts.PANEL_SYNTHESIS_USER), parallel=False, produces_position=True),
    )
    return TopologyPlan(
        topology=TopologyName.PANEL,
        phases=phases,
        synthesizer=moderator,
        voting_enabled=False,
        description=f"Moderated panel: {moderator} moderates {', '.join(panelists)}",
    )
