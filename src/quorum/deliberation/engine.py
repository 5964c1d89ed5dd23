"""Phase orchestrator: runs a topology plan against providers and records the session."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from quorum.adaptive import (
    AdaptiveController,
    get_preset_config,
    learned_adjustments,
    load_stats,
    mean_pairwise_similarity,
    record_outcome,
)
from quorum.attestation import PhaseEvidence, build_attestation_chain
from quorum.context import available_input, estimate_tokens, fit_to_budget
from quorum.deliberation import prompts
from quorum.display.renderer import Renderer
from quorum.integrity import IntegrityChain, canonical_serialize
from quorum.models import (
    SYNTHESIZE,
    VOTE,
    AdaptiveAction,
    AdaptiveConfig,
    AdaptivePreset,
    AdaptiveState,
    BlockPriority,
    ContextBlock,
    DeliberationConfig,
    DeliberationResult,
    ParticipantFailure,
    PhaseOutput,
    Session,
    SessionIndexEntry,
    Synthesis,
    TopologyName,
    VoteResult,
    VoterDetail,
    now_ms,
)
from quorum.output.store import SessionStore, new_session_id
from quorum.providers.base import (
    EmptyResponseError,
    LLMProvider,
    collect_stream,
    format_provider_error,
    generate_with_timeout,
    retry_with_backoff,
    sanitize_secrets,
    supports_streaming,
)
from quorum.topology import (
    AUTO,
    POSITIONS,
    Phase,
    PhaseContext,
    TopologyPlan,
    build_topology_plan,
    build_vote_phase,
    extra_round,
)
from quorum.voting import SELF_VOTE_DISCOUNT, extract_ballots, tally

logger = logging.getLogger(__name__)

ADAPTIVE_KINDS = frozenset({"gather", "debate", "adjust"})
RATIONALE_CHARS = 500
SYNTHESIS_PHASE = "Synthesize"

_CONSENSUS_RE = re.compile(r"Consensus[\s:*]*([\d.]+)", re.IGNORECASE)
_CONFIDENCE_RE = re.compile(r"Confidence[\s:*]*([\d.]+)", re.IGNORECASE)
_MINORITY_RE = re.compile(r"##\s*Minority Report\s*\n([\s\S]*?)(?=\n##\s|$)", re.IGNORECASE)
_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")


class DeliberationError(RuntimeError):
    """Raised when a deliberation cannot produce a result."""


@dataclass
class RunState:
    """Mutable bookkeeping for one run, owned by the engine."""

    session: Session
    plan: TopologyPlan
    outputs: list[PhaseOutput] = field(default_factory=list)
    kinds: list[str] = field(default_factory=list)
    positions: dict[str, str] = field(default_factory=dict)
    latest: dict[str, str] = field(default_factory=dict)
    failures: list[ParticipantFailure] = field(default_factory=list)
    evidence: list[PhaseEvidence] = field(default_factory=list)
    chain: IntegrityChain = field(default_factory=IntegrityChain)
    adaptive: AdaptiveState = field(default_factory=AdaptiveState)


def parse_score(pattern: re.Pattern[str], text: str, default: float = 0.5) -> float:
    m = pattern.search(text)
    if not m:
        return default
    try:
        return min(1.0, max(0.0, float(m.group(1).rstrip("."))))
    except ValueError:
        return default


def parse_minority_report(text: str) -> str | None:
    m = _MINORITY_RE.search(text)
    if not m:
        return None
    report = m.group(1).strip()
    return report or None


def find_contributions(content: str, providers: list[str]) -> dict[str, list[str]]:
    """Sentences of the synthesis that credit each provider by name."""
    sentences = [s.strip() for s in _SENTENCE_RE.split(content) if s.strip()]
    found: dict[str, list[str]] = {}
    for name in providers:
        cited = [s for s in sentences if name.lower() in s.lower()]
        if cited:
            found[name] = cited
    return found


class DeliberationEngine:
    """Drives one deliberation from plan to stored, verified session."""

    def __init__(
        self,
        config: DeliberationConfig,
        providers: Mapping[str, LLMProvider],
        renderer: Renderer | None = None,
        store: SessionStore | None = None,
        *,
        stats_path: Path | None = None,
        adaptive_config: AdaptiveConfig | None = None,
    ) -> None:
        missing = [n for n in config.provider_names if n not in providers]
        if missing:
            raise ValueError(f"No provider instance for: {', '.join(missing)}")
        self.config = config
        self.providers = dict(providers)
        self.renderer = renderer or Renderer(config.verbosity)
        self.store = store or SessionStore(config.sessions_dir)
        self.stats_path = stats_path
        self.controller = AdaptiveController(adaptive_config or self._adaptive_config())
        self._specs = {s.name: s for s in config.providers}

    def _adaptive_config(self) -> AdaptiveConfig:
        preset = self.config.profile.adaptive
        if self.stats_path and preset != AdaptivePreset.OFF:
            skip, add_round = learned_adjustments(load_stats(self.stats_path))
            return get_preset_config(preset, skip, add_round)
        return get_preset_config(preset)

    async def run(self) -> DeliberationResult:
        cfg = self.config
        names = cfg.provider_names
        plan = build_topology_plan(
            cfg.topology, names, cfg.topology_config, cfg.profile, cfg.memory_context
        )
        session = Session(
            id=new_session_id(cfg.input),
            input=cfg.input,
            profile=cfg.profile,
            providers=names,
            topology=cfg.topology,
        )
        session_dir = self.store.create(session)
        self.store.write_topology_plan(session.id, plan.to_dict())
        logger.info("Session %s: %s with %s", session.id, plan.topology.value, ", ".join(names))
        self.renderer.start_session(cfg.input, names, plan.topology.value)

        run = RunState(session=session, plan=plan)
        voting = await self._run_plan(run)

        votes = await self._vote(run) if voting else None
        synthesis = await self._synthesize(run, votes)
        self._finish(run, synthesis, votes)

        return DeliberationResult(
            session_id=session.id,
            session_path=str(session_dir),
            synthesis=synthesis,
            votes=votes,
            phases=list(run.outputs),
            hash_chain=run.chain.entries,
            decisions=list(run.adaptive.decisions),
            failures=list(run.failures),
            duration=(session.completed_at or now_ms()) - session.started_at,
        )

    # --- Phase loop ---

    async def _run_plan(self, run: RunState) -> bool:
        """Execute the plan phases, following adaptive decisions; returns whether to vote."""
        queue = list(run.plan.phases)
        voting = run.plan.voting_enabled
        forced: set[int] = set()
        adaptive = run.plan.topology == TopologyName.MESH

        i = 0
        while i < len(queue):
            phase = queue[i]
            i += 1
            if phase.convergence_gate and id(phase) not in forced:
                similarity = self._position_similarity(run, phase.participants)
                if similarity is not None and similarity >= self.config.profile.convergence_threshold:
                    reason = f"positions converged (similarity {similarity:.3f})"
                    logger.info("Skipping %s: %s", phase.name, reason)
                    self.renderer.show_skip(phase.name, reason)
                    continue

            output = await self._run_phase(run, phase)
            if not adaptive or phase.kind not in ADAPTIVE_KINDS or not output.responses:
                continue

            remaining = [p.kind for p in queue[i:]] + ([VOTE] if voting else []) + [SYNTHESIZE]
            decision = self.controller.evaluate(run.adaptive, phase.kind, output.responses, remaining)
            self.renderer.show_decision(decision)

            if decision.action == AdaptiveAction.SKIP_TO_VOTE:
                del queue[i:]
            elif decision.action == AdaptiveAction.SKIP_TO_SYNTHESIZE:
                del queue[i:]
                voting = False
            elif decision.action == AdaptiveAction.DONE:
                del queue[i:]
            elif decision.action == AdaptiveAction.ADD_ROUND and decision.extra_phase:
                kind = decision.extra_phase
                pending = next((p for p in queue[i:] if p.kind == kind), None)
                if kind == "rebuttal" and pending is not None:
                    forced.add(id(pending))
                else:
                    number = sum(1 for p in queue[:i] if p.kind == kind) + 1
                    queue.insert(i, extra_round(kind, number, phase.participants))
        return voting

    def _position_similarity(self, run: RunState, participants: tuple[str, ...]) -> float | None:
        texts = [run.positions[p] for p in participants if p in run.positions]
        if len(texts) < 2:
            return None
        return mean_pairwise_similarity(texts)

    async def _run_phase(self, run: RunState, phase: Phase) -> PhaseOutput:
        self.renderer.start_phase(phase.name)
        started = now_ms()
        t0 = time.monotonic()
        responses: dict[str, str] = {}
        inputs: dict[str, dict[str, str]] = {}

        if phase.parallel and len(phase.participants) > 1:
            self.renderer.start_work(phase.participants, phase.name)
            try:
                results = await asyncio.gather(
                    *(self._run_participant(run, phase, p, {}, show_stream=False) for p in phase.participants),
                    return_exceptions=True,
                )
            finally:
                self.renderer.stop_work()
            for p, result in zip(phase.participants, results, strict=True):
                if isinstance(result, Exception):
                    self._record_failure(run, phase, p, result)
                elif isinstance(result, BaseException):
                    raise result
                else:
                    inputs[p], responses[p] = result
        else:
            for p in phase.participants:
                try:
                    inputs[p], responses[p] = await self._run_participant(
                        run, phase, p, responses, show_stream=True
                    )
                except Exception as e:
                    self._record_failure(run, phase, p, e)

        output = PhaseOutput(
            phase=phase.name,
            timestamp=started,
            duration=int((time.monotonic() - t0) * 1000),
            responses=responses,
        )
        self._record_output(run, phase.kind, output, inputs, produces_position=phase.produces_position)
        return output

    def _record_output(
        self,
        run: RunState,
        kind: str,
        output: PhaseOutput,
        inputs: dict[str, dict[str, str]],
        *,
        produces_position: bool = False,
    ) -> None:
        run.outputs.append(output)
        run.kinds.append(kind)
        run.latest.update(output.responses)
        if produces_position:
            run.positions.update(output.responses)
        self.store.write_phase(run.session.id, len(run.outputs), output)
        entry = run.chain.append(output)
        run.evidence.append(
            PhaseEvidence(
                phase=output.phase,
                inputs=canonical_serialize(inputs),
                responses=dict(output.responses),
                providers=list(output.responses),
                timestamp=output.timestamp,
                chain_entry_hash=entry.hash,
            )
        )
        logger.debug("Phase %s recorded (%d responses)", output.phase, len(output.responses))

    def _record_failure(self, run: RunState, phase: Phase, participant: str, error: Exception) -> None:
        category, message = format_provider_error(error)
        run.failures.append(
            ParticipantFailure(phase=phase.name, provider=participant, category=category, message=message)
        )
        logger.warning("Phase %s: %s failed (%s): %s", phase.name, participant, category, message)
        self.renderer.show_error(participant, message)

    # --- Participant prompts ---

    def _lookup(self, run: RunState, source: str | None, participant: str,
                current: Mapping[str, str], *, fallback: bool = True) -> str | None:
        if source is None:
            return current.get(participant) or run.latest.get(participant)
        if source == POSITIONS:
            text = run.positions.get(participant)
            return text if text is not None or not fallback else run.latest.get(participant)
        for kind, output in zip(reversed(run.kinds), reversed(run.outputs), strict=True):
            if kind == source and participant in output.responses:
                return output.responses[participant]
        if not fallback:
            return None
        return run.positions.get(participant) or run.latest.get(participant)

    def _with_role(self, participant: str, system_prompt: str) -> str:
        role = self.config.profile.roles.get(participant)
        return prompts.ROLE_PREFIX.format(role=role) + system_prompt if role else system_prompt

    def _context(self, run: RunState, phase: Phase, participant: str,
                 current: Mapping[str, str]) -> PhaseContext:
        visible: dict[str, str] = {}
        for other in phase.visible_to(participant):
            text = self._lookup(run, phase.visible_source, other, current)
            if text:
                visible[other] = text
        own: dict[str, str] = {}
        for kind in phase.own_sources:
            text = self._lookup(run, kind, participant, current, fallback=False)
            if text:
                own[kind] = text

        def context(visible_text: Mapping[str, str], own_text: Mapping[str, str]) -> PhaseContext:
            return PhaseContext(
                input=self.config.input,
                provider=participant,
                all_providers=tuple(self.config.provider_names),
                visible=visible_text,
                own=own_text,
                phase_index=len(run.outputs),
                history=tuple(run.outputs),
            )

        # Token cost of the prompt scaffolding without any participant text.
        bare = context({k: "" for k in visible}, {k: "" for k in own})
        overhead = estimate_tokens(
            self._with_role(participant, phase.system_prompt(bare)) + phase.user_prompt(bare)
        )
        budget = max(0, available_input(self._specs[participant].provider, overhead))
        blocks = [ContextBlock(key=f"visible:{k}", text=v, priority=phase.visible_priority)
                  for k, v in visible.items()]
        blocks += [ContextBlock(key=f"own:{k}", text=v, priority=phase.own_priority)
                   for k, v in own.items()]
        fitted = fit_to_budget(blocks, budget)
        return context(
            {k: fitted[f"visible:{k}"] for k in visible},
            {k: fitted[f"own:{k}"] for k in own},
        )

    async def _run_participant(
        self,
        run: RunState,
        phase: Phase,
        participant: str,
        current: Mapping[str, str],
        *,
        show_stream: bool,
    ) -> tuple[dict[str, str], str]:
        ctx = self._context(run, phase, participant, current)
        system_prompt = self._with_role(participant, phase.system_prompt(ctx))
        user_prompt = phase.user_prompt(ctx)
        text = await self._call(participant, user_prompt, system_prompt, show_stream=show_stream)
        return {"system": system_prompt, "user": user_prompt}, text

    # --- Provider calls ---

    async def _attempt(self, participant: str, prompt: str, system_prompt: str, show_stream: bool) -> str:
        provider = self.providers[participant]
        timeout = self._specs[participant].timeout
        if self.config.streaming and supports_streaming(provider):
            displayed = show_stream and self.renderer.verbose
            if displayed:
                self.renderer.start_provider_stream(participant)
            try:
                text = await collect_stream(
                    provider.stream(prompt, system_prompt=system_prompt),  # type: ignore[attr-defined]
                    self.renderer.stream_chunk if displayed else None,
                    total_timeout=timeout,
                )
            except Exception as e:
                logger.warning(
                    "Streaming from %s failed, falling back to generate: %s",
                    participant, sanitize_secrets(str(e)),
                )
            else:
                if text.strip():
                    if not displayed:
                        self.renderer.show_response(participant, text)
                    return text
            finally:
                if displayed:
                    self.renderer.end_provider_stream()
        text = await generate_with_timeout(provider, prompt, system_prompt, timeout)
        if text.strip():
            self.renderer.show_response(participant, text)
        return text

    async def _call(self, participant: str, prompt: str, system_prompt: str, *, show_stream: bool = False) -> str:
        """Call a provider with retries; an empty answer is retried once, then fails."""
        for attempt in range(2):
            text = await retry_with_backoff(
                self._attempt, participant, prompt, system_prompt, show_stream,
                max_retries=self.config.max_retries,
                base_delay=self.config.retry_delay,
            )
            if text.strip():
                return text
            if attempt == 0:
                logger.warning("Empty response from %s; retrying once", participant)
        raise EmptyResponseError(f"{participant} returned an empty response")

    # --- Voting & synthesis ---

    async def _vote(self, run: RunState) -> VoteResult | None:
        names = self.config.provider_names
        candidates = [p for p in names if p in run.positions]
        if len(candidates) < 2:
            logger.info("Skipping vote: %d candidate position(s)", len(candidates))
            return None

        output = await self._run_phase(run, build_vote_phase(candidates, names))
        ballots = extract_ballots(output.responses, candidates)
        if not ballots:
            logger.warning("No parseable ballots; continuing without a vote")
            return None

        profile = self.config.profile
        result = tally(
            ballots,
            candidates,
            profile.voting_method,
            weights=profile.weights or None,
            self_vote_discount=SELF_VOTE_DISCOUNT,
            approval_k=profile.approval_k,
        )
        voters = {
            b.voter: VoterDetail(ranks=b.rankings, rationale=output.responses[b.voter][:RATIONALE_CHARS])
            for b in ballots
        }
        result = result.model_copy(update={"voters": voters})
        self.renderer.show_votes(result)
        return result

    def _synthesizer_order(self, plan: TopologyPlan, votes: VoteResult | None) -> list[str]:
        names = self.config.provider_names
        if plan.synthesizer != AUTO:
            chosen = plan.synthesizer
        elif votes and len(votes.rankings) > 1:
            # The runner-up synthesizes so the winner does not grade its own answer.
            chosen = votes.rankings[1].provider
        else:
            chosen = names[1] if len(names) > 1 else names[0]
        return [chosen] + [n for n in names if n != chosen]

    def _synthesis_prompts(self, run: RunState, synthesizer: str, votes: VoteResult | None) -> tuple[str, str]:
        plan = run.plan
        if plan.topology == TopologyName.MESH:
            system_prompt = prompts.COUNCIL_SYNTHESIS_SYSTEM
        else:
            system_prompt = prompts.TOPOLOGY_SYNTHESIS_SYSTEM.format(description=plan.description)
        system_prompt = self._with_role(synthesizer, system_prompt)

        extra = ""
        if votes:
            ranking = ", ".join(f"{r.provider} ({r.score:g})" for r in votes.rankings)
            extra = prompts.VOTE_RANKINGS_NOTE.format(rankings=ranking) + "\n"

        finals = run.positions or run.latest
        overhead = estimate_tokens(system_prompt + prompts.SYNTHESIS_USER + extra + self.config.input)
        budget = max(0, available_input(self._specs[synthesizer].provider, overhead))
        fitted = fit_to_budget(
            [ContextBlock(key=name, text=text, priority=BlockPriority.TRIMMABLE) for name, text in finals.items()],
            budget,
        )
        positions = "\n\n---\n\n".join(f"### [{name}]\n{text}" for name, text in fitted.items())
        user_prompt = prompts.SYNTHESIS_USER.format(question=self.config.input, positions=positions, extra=extra)
        return system_prompt, user_prompt

    async def _synthesize(self, run: RunState, votes: VoteResult | None) -> Synthesis:
        self.renderer.start_phase(SYNTHESIS_PHASE)
        started = now_ms()
        t0 = time.monotonic()
        content = synthesizer = None
        inputs: dict[str, dict[str, str]] = {}
        for candidate in self._synthesizer_order(run.plan, votes):
            system_prompt, user_prompt = self._synthesis_prompts(run, candidate, votes)
            try:
                content = await self._call(candidate, user_prompt, system_prompt, show_stream=True)
            except Exception as e:
                category, message = format_provider_error(e)
                run.failures.append(
                    ParticipantFailure(phase=SYNTHESIS_PHASE, provider=candidate, category=category, message=message)
                )
                logger.warning("Synthesis by %s failed (%s): %s", candidate, category, message)
                self.renderer.show_error(candidate, message)
                continue
            synthesizer = candidate
            inputs[candidate] = {"system": system_prompt, "user": user_prompt}
            break
        if content is None or synthesizer is None:
            raise DeliberationError("Every provider failed to produce a synthesis")

        output = PhaseOutput(
            phase=SYNTHESIS_PHASE,
            timestamp=started,
            duration=int((time.monotonic() - t0) * 1000),
            responses={synthesizer: content},
        )
        self._record_output(run, SYNTHESIZE, output, inputs)

        synthesis = Synthesis(
            content=content,
            synthesizer=synthesizer,
            consensus_score=parse_score(_CONSENSUS_RE, content),
            confidence_score=parse_score(_CONFIDENCE_RE, content),
            controversial=votes.controversial if votes else False,
            minority_report=parse_minority_report(content),
            contributions=find_contributions(content, self.config.provider_names),
        )
        if self.config.profile.what_would_change:
            synthesis.what_would_change = await self._what_would_change(synthesizer, content)
        self.renderer.show_synthesis(synthesis)
        return synthesis

    async def _what_would_change(self, synthesizer: str, conclusion: str) -> str | None:
        try:
            return await self._call(
                synthesizer,
                prompts.WHAT_WOULD_CHANGE_USER.format(conclusion=conclusion),
                prompts.WHAT_WOULD_CHANGE_SYSTEM,
            )
        except Exception as e:
            _, message = format_provider_error(e)
            logger.warning("What-would-change follow-up by %s failed: %s", synthesizer, message)
            return None

    # --- Completion ---

    def _finish(self, run: RunState, synthesis: Synthesis, votes: VoteResult | None) -> None:
        session = run.session
        store = self.store
        store.write_synthesis(session.id, synthesis, votes)
        store.write_integrity(session.id, run.chain.entries)
        store.write_adaptive(session.id, self.controller.config, run.adaptive)
        store.write_attestation(
            session.id, build_attestation_chain(session.id, run.evidence, run.chain.entries)
        )

        completed_at = now_ms()
        store.append_index(
            SessionIndexEntry(
                session_id=session.id,
                timestamp=session.started_at,
                question=session.input,
                winner=votes.winner if votes else synthesis.synthesizer,
                duration=completed_at - session.started_at,
            )
        )
        if self.stats_path and self.controller.config.preset != AdaptivePreset.OFF:
            record_outcome(
                self.stats_path, run.adaptive.decisions, synthesis.confidence_score, session.providers
            )
        session.completed_at = completed_at
        store.write_meta(session)
        self.renderer.show_output_path(str(store.session_dir(session.id)))
        logger.info("Session %s complete (%d phases)", session.id, len(run.outputs))
