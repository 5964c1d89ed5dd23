"""Pydantic data models for Quorum."""

from __future__ import annotations

import time
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

COUNCIL_PHASES: tuple[str, ...] = (
    "gather",
    "plan",
    "formulate",
    "debate",
    "adjust",
    "rebuttal",
    "vote",
)
SYNTHESIZE = "synthesize"
VOTE = "vote"


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class Verbosity(StrEnum):
    VERBOSE = "verbose"
    QUIET = "quiet"


class ChallengeStyle(StrEnum):
    ADVERSARIAL = "adversarial"
    COLLABORATIVE = "collaborative"
    SOCRATIC = "socratic"


class VotingMethod(StrEnum):
    BORDA = "borda"
    RANKED_CHOICE = "ranked-choice"
    APPROVAL = "approval"
    CONDORCET = "condorcet"


class AdaptivePreset(StrEnum):
    FAST = "fast"
    BALANCED = "balanced"
    CRITICAL = "critical"
    OFF = "off"


class AdaptiveAction(StrEnum):
    CONTINUE = "continue"
    SKIP_TO_VOTE = "skip-to-vote"
    SKIP_TO_SYNTHESIZE = "skip-to-synthesize"
    ADD_ROUND = "add-round"
    DONE = "done"


class TopologyName(StrEnum):
    MESH = "mesh"
    STAR = "star"
    TOURNAMENT = "tournament"
    MAP_REDUCE = "map_reduce"
    ADVERSARIAL_TREE = "adversarial_tree"
    PIPELINE = "pipeline"
    PANEL = "panel"


class BlockPriority(StrEnum):
    FULL = "full"
    TRIMMABLE = "trimmable"


# --- Configuration models ---


class Profile(BaseModel):
    """Deliberation profile: how the council runs, independent of who sits on it."""

    name: str = "default"
    rounds: int = 1
    focus: list[str] = Field(default_factory=lambda: ["accuracy", "reasoning", "completeness"])
    challenge_style: ChallengeStyle = ChallengeStyle.ADVERSARIAL
    phases: list[str] = Field(default_factory=lambda: list(COUNCIL_PHASES))
    voting_method: VotingMethod = VotingMethod.BORDA
    approval_k: int | None = None
    adaptive: AdaptivePreset = AdaptivePreset.OFF
    convergence_threshold: float = 0.85
    weights: dict[str, float] = Field(default_factory=dict)
    roles: dict[str, str] = Field(default_factory=dict)
    devils_advocate: bool = False
    what_would_change: bool = True

    @field_validator("rounds")
    @classmethod
    def rounds_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("rounds must be at least 1")
        return v

    @field_validator("convergence_threshold")
    @classmethod
    def threshold_in_range(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("convergence_threshold must be between 0.0 and 1.0")
        return v

    @field_validator("phases")
    @classmethod
    def phases_known(cls, v: list[str]) -> list[str]:
        phases: list[str] = []
        for p in v:
            name = p.strip().lower()
            if name == SYNTHESIZE:
                continue
            if name not in COUNCIL_PHASES:
                raise ValueError(
                    f"Invalid phase '{p}'. Valid phases: {', '.join(COUNCIL_PHASES + (SYNTHESIZE,))}"
                )
            if name not in phases:
                phases.append(name)
        if "gather" in phases:
            phases.remove("gather")
        return ["gather", *phases]


class TopologyConfig(BaseModel):
    hub: str | None = None
    moderator: str | None = None
    bracket_seed: Literal["random", "ranked"] = "random"
    sub_questions: int | None = None
    seed: int | None = None


class ProviderSpec(BaseModel):
    """One seat at the table: participant name, backing provider kind and model."""

    name: str
    provider: str
    model: str | None = None
    timeout: float = 120.0

    @field_validator("timeout")
    @classmethod
    def timeout_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeout must be positive")
        return v


class DeliberationConfig(BaseModel):
    input: str
    providers: list[ProviderSpec]
    profile: Profile = Field(default_factory=Profile)
    topology: TopologyName = TopologyName.MESH
    topology_config: TopologyConfig = Field(default_factory=TopologyConfig)
    sessions_dir: str = "./quorum-sessions"
    streaming: bool = False
    verbosity: Verbosity = Verbosity.QUIET
    max_retries: int = 1
    retry_delay: float = 2.0
    memory_context: str | None = None

    @field_validator("providers")
    @classmethod
    def providers_unique(cls, v: list[ProviderSpec]) -> list[ProviderSpec]:
        if not v:
            raise ValueError("At least one provider is required")
        names = [p.name for p in v]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"Duplicate provider names: {', '.join(dupes)}")
        return v

    @property
    def provider_names(self) -> list[str]:
        return [p.name for p in self.providers]


# --- Session & phase records ---


class FrozenProfile(Profile):
    """Read-only copy of a profile, attached to a completed session."""

    model_config = ConfigDict(frozen=True)

    focus: tuple[str, ...] = ()
    phases: tuple[str, ...] = ()

    @field_validator("focus", "phases")
    @classmethod
    def as_tuple(cls, v: list[str] | tuple[str, ...]) -> tuple[str, ...]:
        return tuple(v)


class Session(BaseModel):
    """A single deliberation. Frozen once ``completed_at`` is set."""

    model_config = ConfigDict(validate_assignment=True)

    id: str
    input: str
    profile: Profile
    providers: tuple[str, ...]
    topology: TopologyName = TopologyName.MESH
    started_at: int = Field(default_factory=now_ms)
    completed_at: int | None = None

    def __setattr__(self, name: str, value: Any) -> None:
        if self.__dict__.get("completed_at") is not None:
            raise ValueError(f"Session {self.id} is completed and can no longer be modified")
        super().__setattr__(name, value)
        if name == "completed_at" and value is not None:
            self._freeze_profile()

    @model_validator(mode="after")
    def freeze_completed(self) -> Session:
        if self.completed_at is not None:
            self._freeze_profile()
        return self

    def _freeze_profile(self) -> None:
        if not isinstance(self.profile, FrozenProfile):
            self.__dict__["profile"] = FrozenProfile.model_validate(self.profile.model_dump())

    @property
    def completed(self) -> bool:
        return self.completed_at is not None


class PhaseOutput(BaseModel):
    model_config = ConfigDict(frozen=True)

    phase: str
    timestamp: int
    duration: int
    responses: dict[str, str] = Field(default_factory=dict)


class ParticipantFailure(BaseModel):
    phase: str
    provider: str
    category: str
    message: str


class ContextBlock(BaseModel):
    key: str
    text: str
    priority: BlockPriority = BlockPriority.TRIMMABLE


# --- Integrity & attestation ---


class HashChainEntry(BaseModel):
    phase: str
    hash: str
    previous_hash: str | None
    timestamp: int


class VerificationResult(BaseModel):
    valid: bool
    broken_at: str | None = None
    kind: Literal["length-mismatch", "first-entry", "linkage", "hash-mismatch"] | None = None
    details: str | None = None


class AttestationRecord(BaseModel):
    phase: str
    inputs_hash: str
    outputs_hash: str
    provider_id: str
    timestamp: int
    previous_attestation_hash: str | None
    hash: str
    chain_entry_hash: str | None = None


class AttestationChain(BaseModel):
    version: int = 1
    session_id: str
    records: list[AttestationRecord] = Field(default_factory=list)
    created_at: int = Field(default_factory=now_ms)


# --- Adaptive control ---


class EntropyResult(BaseModel):
    score: float
    term_divergence: float
    position_entropy: float
    details: str


class AdaptiveConfig(BaseModel):
    preset: AdaptivePreset
    skip_threshold: float
    add_round_threshold: float
    max_extra_rounds: int
    never_skip_phases: list[str] = Field(default_factory=list)


class AdaptiveDecision(BaseModel):
    action: AdaptiveAction
    reason: str
    entropy: float
    skip_phases: list[str] | None = None
    extra_phase: str | None = None


class AdaptiveState(BaseModel):
    """Mutable controller state, threaded explicitly through evaluations."""

    extra_rounds_used: int = 0
    decisions: list[AdaptiveDecision] = Field(default_factory=list)
    phase_entropies: dict[str, float] = Field(default_factory=dict)


class StatBucket(BaseModel):
    count: int = 0
    total: float = 0.0
    average: float = 0.0

    def add(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.average = self.total / self.count


class AdaptiveStats(BaseModel):
    total_sessions: int = 0
    phase_skips: dict[str, StatBucket] = Field(default_factory=dict)
    extra_rounds: dict[str, StatBucket] = Field(default_factory=dict)
    provider_pair_entropy: dict[str, StatBucket] = Field(default_factory=dict)
    last_updated: int = Field(default_factory=now_ms)


# --- Voting ---


class Ballot(BaseModel):
    """One voter's ranking, best first."""

    voter: str
    rankings: list[str]

    @field_validator("rankings")
    @classmethod
    def no_duplicates(cls, v: list[str]) -> list[str]:
        if len(set(v)) != len(v):
            raise ValueError("A ballot may rank each candidate only once")
        return v


class RankedCandidate(BaseModel):
    provider: str
    score: float


class VoterDetail(BaseModel):
    ranks: list[str] = Field(default_factory=list)
    rationale: str = ""


class VoteResult(BaseModel):
    winner: str
    rankings: list[RankedCandidate] = Field(default_factory=list)
    controversial: bool = False
    method: VotingMethod = VotingMethod.BORDA
    details: str = ""
    voters: dict[str, VoterDetail] = Field(default_factory=dict)

    @model_validator(mode="after")
    def winner_is_ranked(self) -> VoteResult:
        if self.rankings and self.winner not in {r.provider for r in self.rankings}:
            raise ValueError(f"Winner '{self.winner}' is not among the ranked candidates")
        return self


# --- Results ---


class Synthesis(BaseModel):
    content: str
    synthesizer: str
    consensus_score: float = 0.5
    confidence_score: float = 0.5
    controversial: bool = False
    minority_report: str | None = None
    contributions: dict[str, list[str]] = Field(default_factory=dict)
    what_would_change: str | None = None


class SessionIndexEntry(BaseModel):
    session_id: str
    timestamp: int
    question: str
    winner: str
    duration: int


class DeliberationResult(BaseModel):
    session_id: str
    session_path: str
    synthesis: Synthesis
    votes: VoteResult | None = None
    phases: list[PhaseOutput] = Field(default_factory=list)
    hash_chain: list[HashChainEntry] = Field(default_factory=list)
    decisions: list[AdaptiveDecision] = Field(default_factory=list)
    failures: list[ParticipantFailure] = Field(default_factory=list)
    duration: int = 0


class CanonicalPhase(BaseModel):
    name: str
    timestamp: int
    duration: int
    responses: dict[str, str]


class CanonicalRecord(BaseModel):
    """Self-describing record of one session, including its integrity status."""

    schema_version: Literal[1] = 1
    session_id: str = Field(min_length=1)
    meta: Session
    phases: list[CanonicalPhase] = Field(default_factory=list)
    votes: VoteResult | None = None
    synthesis: Synthesis | None = None
    hash_chain: list[HashChainEntry] = Field(default_factory=list)
    integrity: VerificationResult
