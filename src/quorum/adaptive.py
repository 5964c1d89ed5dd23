"""Adaptive control: measure disagreement after a phase and decide what runs next."""

from __future__ import annotations

import itertools
import json
import logging
import math
import re
from collections.abc import Iterable, Sequence
from pathlib import Path

from pydantic import ValidationError

from quorum.models import (
    SYNTHESIZE,
    VOTE,
    AdaptiveAction,
    AdaptiveConfig,
    AdaptiveDecision,
    AdaptivePreset,
    AdaptiveState,
    AdaptiveStats,
    EntropyResult,
    StatBucket,
    now_ms,
)
from quorum.output.store import atomic_write_text

logger = logging.getLogger(__name__)

TERM_WEIGHT = 0.6
POSITION_WEIGHT = 0.4

_ASSERTION_RE = re.compile(r"\b(must|should|is|will|always|never|best|worst)\b", re.IGNORECASE)
_WORD_RE = re.compile(r"\b[a-z]{5,}\b")
_SENTENCE_SPLIT_RE = re.compile(r"[.!?\n]+")

_PRESETS: dict[AdaptivePreset, tuple[float, float, int, list[str]]] = {
    AdaptivePreset.FAST: (0.25, 0.85, 1, ["gather", SYNTHESIZE]),
    AdaptivePreset.BALANCED: (0.2, 0.8, 2, ["gather", VOTE, SYNTHESIZE]),
    AdaptivePreset.CRITICAL: (0.1, 0.7, 3, ["gather", "debate", VOTE, SYNTHESIZE]),
    AdaptivePreset.OFF: (-1.0, 2.0, 0, []),
}


# --- Entropy ---


def significant_words(text: str) -> set[str]:
    """Lowercase words of five or more letters."""
    return set(_WORD_RE.findall(text.lower()))


def jaccard(a: set[str], b: set[str]) -> float:
    union = a | b
    if not union:
        return 1.0
    return len(a & b) / len(union)


def mean_pairwise_similarity(texts: Sequence[str]) -> float:
    """Mean Jaccard similarity of significant-word sets over every pair of texts."""
    sets = [significant_words(t) for t in texts]
    pairs = list(itertools.combinations(sets, 2))
    if not pairs:
        return 1.0
    return sum(jaccard(a, b) for a, b in pairs) / len(pairs)


def extract_claims(text: str) -> list[str]:
    """Assertive sentences, each reduced to a key of its sorted significant words."""
    claims: list[str] = []
    for sentence in _SENTENCE_SPLIT_RE.split(text):
        sentence = sentence.strip()
        if not sentence or not _ASSERTION_RE.search(sentence):
            continue
        keywords = sorted(significant_words(sentence))
        if keywords:
            claims.append("|".join(keywords))
    return claims


def _position_entropy(texts: Sequence[str]) -> float:
    """Normalized Shannon entropy of who authored the contested claims.

    Claims every responder made are agreement, not disagreement, so they
    are left out of the counts.
    """
    n = len(texts)
    if n < 2:
        return 0.0
    authors: dict[str, set[int]] = {}
    for i, text in enumerate(texts):
        for claim in extract_claims(text):
            authors.setdefault(claim, set()).add(i)

    counts = [0] * n
    for who in authors.values():
        if len(who) == n:
            continue
        for i in who:
            counts[i] += 1

    total = sum(counts)
    if total == 0:
        return 0.0
    entropy = -sum((c / total) * math.log2(c / total) for c in counts if c > 0)
    return entropy / math.log2(n)


def calculate_entropy(responses: dict[str, str]) -> EntropyResult:
    """Composite disagreement score in [0, 1]: 0.6 x term divergence + 0.4 x position entropy."""
    texts = [t for t in responses.values() if t]
    if len(texts) < 2:
        return EntropyResult(
            score=0.0,
            term_divergence=0.0,
            position_entropy=0.0,
            details="Insufficient responses for entropy calculation",
        )
    term_divergence = 1.0 - mean_pairwise_similarity(texts)
    position_entropy = _position_entropy(texts)
    score = min(1.0, max(0.0, TERM_WEIGHT * term_divergence + POSITION_WEIGHT * position_entropy))
    return EntropyResult(
        score=score,
        term_divergence=term_divergence,
        position_entropy=position_entropy,
        details=(
            f"Entropy {score:.3f} (term divergence: {term_divergence:.3f}, "
            f"position entropy: {position_entropy:.3f}) across {len(texts)} providers"
        ),
    )


# --- Controller ---


def get_preset_config(
    preset: AdaptivePreset | str,
    skip_adjust: float = 0.0,
    add_round_adjust: float = 0.0,
) -> AdaptiveConfig:
    """Thresholds for a preset, optionally nudged by learned adjustments."""
    preset = AdaptivePreset(preset)
    skip, add_round, max_extra, never_skip = _PRESETS[preset]
    if preset != AdaptivePreset.OFF:
        skip += skip_adjust
        add_round += add_round_adjust
    return AdaptiveConfig(
        preset=preset,
        skip_threshold=skip,
        add_round_threshold=add_round,
        max_extra_rounds=max_extra,
        never_skip_phases=list(never_skip),
    )


class AdaptiveController:
    """Applies the phase rules for one configuration.

    The controller keeps no state of its own: the extra-round count, decision
    log and per-phase entropy live in the ``AdaptiveState`` passed to
    :meth:`evaluate`, which the caller owns and persists.
    """

    def __init__(self, config: AdaptiveConfig) -> None:
        self.config = config

    @classmethod
    def from_preset(cls, preset: AdaptivePreset | str) -> AdaptiveController:
        return cls(get_preset_config(preset))

    def can_skip_to(self, target: str, remaining: Sequence[str]) -> bool:
        if target not in remaining:
            return False
        skipped = remaining[: list(remaining).index(target)]
        return not any(p in self.config.never_skip_phases for p in skipped)

    def _skip(self, action: AdaptiveAction, target: str, reason: str, entropy: float,
              remaining: Sequence[str]) -> AdaptiveDecision:
        skipped = list(remaining[: list(remaining).index(target)])
        return AdaptiveDecision(action=action, reason=reason, entropy=entropy, skip_phases=skipped)

    def _decide(self, state: AdaptiveState, completed: str, entropy: float,
                remaining: Sequence[str]) -> AdaptiveDecision:
        cfg = self.config
        budget_left = state.extra_rounds_used < cfg.max_extra_rounds

        if completed == "gather" and entropy < cfg.skip_threshold:
            reason = f"Providers already agree (entropy {entropy:.3f})"
            if self.can_skip_to(VOTE, remaining):
                return self._skip(AdaptiveAction.SKIP_TO_VOTE, VOTE, reason, entropy, remaining)
            if self.can_skip_to(SYNTHESIZE, remaining):
                return self._skip(AdaptiveAction.SKIP_TO_SYNTHESIZE, SYNTHESIZE, reason, entropy, remaining)
            return AdaptiveDecision(
                action=AdaptiveAction.CONTINUE,
                reason="Low entropy but cannot skip protected phases",
                entropy=entropy,
            )

        if completed == "debate":
            if entropy < cfg.skip_threshold + 0.1:
                if self.can_skip_to(VOTE, remaining):
                    return self._skip(
                        AdaptiveAction.SKIP_TO_VOTE, VOTE,
                        f"Low disagreement after debate (entropy {entropy:.3f})", entropy, remaining,
                    )
                return AdaptiveDecision(
                    action=AdaptiveAction.CONTINUE,
                    reason="Low entropy but cannot skip protected phases",
                    entropy=entropy,
                )
            if entropy > cfg.add_round_threshold and budget_left:
                state.extra_rounds_used += 1
                return AdaptiveDecision(
                    action=AdaptiveAction.ADD_ROUND,
                    reason=f"High disagreement, adding debate round (entropy {entropy:.3f})",
                    entropy=entropy,
                    extra_phase="debate",
                )
            return AdaptiveDecision(
                action=AdaptiveAction.CONTINUE,
                reason=f"Entropy {entropy:.3f} within normal range",
                entropy=entropy,
            )

        if completed == "adjust":
            if entropy > cfg.add_round_threshold - 0.1 and budget_left:
                state.extra_rounds_used += 1
                return AdaptiveDecision(
                    action=AdaptiveAction.ADD_ROUND,
                    reason=f"Still high disagreement after adjustment (entropy {entropy:.3f})",
                    entropy=entropy,
                    extra_phase="rebuttal",
                )
            return AdaptiveDecision(
                action=AdaptiveAction.CONTINUE,
                reason=f"Entropy {entropy:.3f} acceptable after adjustment",
                entropy=entropy,
            )

        return AdaptiveDecision(
            action=AdaptiveAction.CONTINUE,
            reason=f"Phase {completed} complete (entropy {entropy:.3f})",
            entropy=entropy,
        )

    def evaluate(
        self,
        state: AdaptiveState,
        completed: str,
        responses: dict[str, str],
        remaining: Sequence[str],
    ) -> AdaptiveDecision:
        """Decide what follows ``completed``, recording the decision in ``state``.

        ``remaining`` lists the phase kinds still to run, in order, ending with
        ``vote`` (when voting) and ``synthesize``.
        """
        if self.config.preset == AdaptivePreset.OFF:
            decision = AdaptiveDecision(
                action=AdaptiveAction.CONTINUE, reason="Adaptive control disabled", entropy=0.0
            )
        else:
            entropy = calculate_entropy(responses).score
            state.phase_entropies[completed] = entropy
            decision = self._decide(state, completed, entropy, remaining)
        state.decisions.append(decision)
        logger.debug("Adaptive decision after %s: %s (%s)", completed, decision.action, decision.reason)
        return decision


# --- Outcome learning ---


def load_stats(path: Path) -> AdaptiveStats:
    if not path.is_file():
        return AdaptiveStats()
    try:
        return AdaptiveStats.model_validate_json(path.read_text(encoding="utf-8"))
    except (ValidationError, json.JSONDecodeError) as e:
        logger.warning("Ignoring unreadable adaptive stats at %s: %s", path, e)
        return AdaptiveStats()


def save_stats(path: Path, stats: AdaptiveStats) -> None:
    stats.last_updated = now_ms()
    atomic_write_text(path, stats.model_dump_json(indent=2))


def update_stats(
    stats: AdaptiveStats,
    decisions: Iterable[AdaptiveDecision],
    confidence: float,
    providers: Iterable[str],
) -> AdaptiveStats:
    decisions = list(decisions)
    stats.total_sessions += 1
    for d in decisions:
        if d.action in (AdaptiveAction.SKIP_TO_VOTE, AdaptiveAction.SKIP_TO_SYNTHESIZE):
            stats.phase_skips.setdefault(d.action.value, StatBucket()).add(confidence)
        if d.action == AdaptiveAction.ADD_ROUND and d.extra_phase:
            stats.extra_rounds.setdefault(d.extra_phase, StatBucket()).add(confidence)

    avg_entropy = sum(d.entropy for d in decisions) / len(decisions) if decisions else 0.0
    for a, b in itertools.combinations(sorted(providers), 2):
        stats.provider_pair_entropy.setdefault(f"{a}:{b}", StatBucket()).add(avg_entropy)
    return stats


def record_outcome(
    stats_path: Path,
    decisions: Iterable[AdaptiveDecision],
    confidence: float,
    providers: Iterable[str],
) -> AdaptiveStats:
    """Fold one finished session's decisions and final confidence into the stats file."""
    stats = update_stats(load_stats(stats_path), decisions, confidence, providers)
    save_stats(stats_path, stats)
    return stats


def _nudge(buckets: dict[str, StatBucket]) -> float:
    count = sum(b.count for b in buckets.values())
    if not count:
        return 0.0
    weighted = sum(b.total for b in buckets.values()) / count
    if weighted > 0.7:
        return 0.05
    if weighted < 0.5:
        return -0.05
    return 0.0


def learned_adjustments(stats: AdaptiveStats) -> tuple[float, float]:
    """(skip, add-round) threshold nudges learned from past outcomes."""
    return _nudge(stats.phase_skips), _nudge(stats.extra_rounds)
