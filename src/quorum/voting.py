"""Vote tallying: Borda, instant-runoff, approval and Condorcet."""

from __future__ import annotations

import json
import logging
import math
import re
import string
from collections.abc import Sequence

from quorum.models import Ballot, RankedCandidate, VoteResult, VotingMethod

logger = logging.getLogger(__name__)

SELF_VOTE_DISCOUNT = 0.5

_JSON_BLOCK_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_JSON_BARE_RE = re.compile(r"(\{[\s\S]*\"rankings\"[\s\S]*\})")
_RANK_LINE_RE = re.compile(r"^\s*(?:#?\s*)?(\d+)[\.\)\-:\s]\s*")
_POSITION_RE = re.compile(r"(?i:position)\s+[\*\"']*([A-Z])(?![A-Za-z])")
_BARE_LABEL_RE = re.compile(r"(?<![A-Za-z])([A-Z])(?![A-Za-z])")


def position_labels(n: int) -> list[str]:
    """Anonymous labels for ``n`` positions: A, B, C, ..."""
    if n > len(string.ascii_uppercase):
        raise ValueError(f"Cannot label more than {len(string.ascii_uppercase)} positions")
    return list(string.ascii_uppercase[:n])


def _fmt(score: float) -> str:
    return f"{score:g}"


def _complete(ballot: Ballot, candidates: Sequence[str]) -> list[str]:
    """Ballot order restricted to known candidates, unranked ones appended in candidate order."""
    ranked = [c for c in ballot.rankings if c in candidates]
    return ranked + [c for c in candidates if c not in ranked]


def _ranked(scores: dict[str, float], candidates: Sequence[str]) -> list[RankedCandidate]:
    # sorted() is stable, so ties keep candidate order
    order = sorted(candidates, key=lambda c: -scores.get(c, 0))
    return [RankedCandidate(provider=c, score=scores.get(c, 0)) for c in order]


def _gap_controversial(rankings: list[RankedCandidate]) -> bool:
    return len(rankings) >= 2 and abs(rankings[0].score - rankings[1].score) <= 1


def _check(candidates: Sequence[str]) -> None:
    if not candidates:
        raise ValueError("No candidates to vote on")


def borda(
    ballots: Sequence[Ballot],
    candidates: Sequence[str],
    *,
    weights: dict[str, float] | None = None,
    self_vote_discount: float = 1.0,
) -> VoteResult:
    """Each voter awards N - position points (position 0-based, so the top pick earns N).

    ``weights`` scales the points a candidate receives; ``self_vote_discount``
    scales points a voter gives to itself.
    """
    _check(candidates)
    weights = weights or {}
    n = len(candidates)
    scores: dict[str, float] = {c: 0 for c in candidates}
    for ballot in ballots:
        for position, candidate in enumerate(_complete(ballot, candidates)):
            weight = weights.get(candidate, 1.0)
            if ballot.voter == candidate:
                weight *= self_vote_discount
            scores[candidate] += (n - position) * weight

    rankings = _ranked(scores, candidates)
    weighted = " (weighted)" if weights or self_vote_discount != 1.0 else ""
    breakdown = ", ".join(f"{r.provider}: {_fmt(r.score)} pts" for r in rankings)
    return VoteResult(
        winner=rankings[0].provider,
        rankings=rankings,
        controversial=_gap_controversial(rankings),
        method=VotingMethod.BORDA,
        details=f"Borda count{weighted}, each voter awards N - position points. {breakdown}.",
    )


def ranked_choice(ballots: Sequence[Ballot], candidates: Sequence[str]) -> VoteResult:
    """Instant-runoff: drop the weakest first-preference candidates until one has a majority.

    Candidates tied at the bottom are eliminated together, unless that would
    eliminate everyone left; then only the weakest under Borda goes.
    """
    _check(candidates)
    orders = [_complete(b, candidates) for b in ballots]
    remaining = list(candidates)
    eliminated: list[str] = []
    last_count: dict[str, int] = {}
    log: list[str] = []
    round_num = 0

    while True:
        round_num += 1
        if len(remaining) == 1:
            log.append(f"Round {round_num}: {remaining[0]} wins (last standing).")
            break

        counts = {c: 0 for c in remaining}
        for order in orders:
            top = next(c for c in order if c in counts)
            counts[top] += 1
        last_count.update(counts)

        total = sum(counts.values())
        standings = sorted(remaining, key=lambda c: -counts[c])
        prefs = ", ".join(f"{c}={counts[c]}" for c in standings)
        leader = standings[0]
        if total and counts[leader] > total / 2:
            log.append(f"Round {round_num}: {prefs}. {leader} has majority ({counts[leader]}/{total}).")
            remaining = standings
            break

        low = min(counts.values())
        losers = [c for c in remaining if counts[c] == low]
        if len(losers) == len(remaining):
            restricted = [Ballot(voter=b.voter, rankings=[c for c in o if c in counts])
                          for b, o in zip(ballots, orders, strict=True)]
            tiebreak = borda(restricted, remaining)
            losers = [tiebreak.rankings[-1].provider]
            log.append(f"Round {round_num}: {prefs}. All tied; Borda tiebreak eliminates {losers[0]}.")
        else:
            log.append(f"Round {round_num}: {prefs}. Eliminated: {', '.join(losers)}.")
        for c in losers:
            remaining.remove(c)
        eliminated.extend(losers)

    order = remaining + list(reversed(eliminated))
    rankings = [RankedCandidate(provider=c, score=last_count.get(c, 0)) for c in order]
    return VoteResult(
        winner=order[0],
        rankings=rankings,
        controversial=_gap_controversial(rankings),
        method=VotingMethod.RANKED_CHOICE,
        details="Instant-runoff voting:\n" + "\n".join(log),
    )


def approval(
    ballots: Sequence[Ballot], candidates: Sequence[str], *, k: int | None = None
) -> VoteResult:
    """Each voter approves its top ``k`` choices (default: top half, rounded up)."""
    _check(candidates)
    n = len(candidates)
    k = math.ceil(n / 2) if k is None else max(1, min(k, n))
    approvals: dict[str, float] = {c: 0 for c in candidates}
    lines: list[str] = []
    for ballot in ballots:
        approved = _complete(ballot, candidates)[:k]
        for c in approved:
            approvals[c] += 1
        lines.append(f"{ballot.voter} approves: {', '.join(approved)}")

    rankings = _ranked(approvals, candidates)
    results = ", ".join(f"{r.provider}={_fmt(r.score)}" for r in rankings)
    return VoteResult(
        winner=rankings[0].provider,
        rankings=rankings,
        controversial=_gap_controversial(rankings),
        method=VotingMethod.APPROVAL,
        details=f"Approval voting (top {k} approved):\n" + "\n".join(lines) + f"\nResults: {results}.",
    )


def condorcet(ballots: Sequence[Ballot], candidates: Sequence[str]) -> VoteResult:
    """Pairwise-majority winner, falling back to Borda when no candidate beats all others."""
    _check(candidates)
    wins: dict[str, dict[str, int]] = {a: {b: 0 for b in candidates} for a in candidates}
    for ballot in ballots:
        order = _complete(ballot, candidates)
        for i, a in enumerate(order):
            for b in order[i + 1:]:
                wins[a][b] += 1

    pairwise = [
        f"{a} vs {b}: {wins[a][b]}-{wins[b][a]}"
        for i, a in enumerate(candidates)
        for b in candidates[i + 1:]
    ]
    winner = next(
        (
            c
            for c in candidates
            if all(wins[c][o] > wins[o][c] for o in candidates if o != c)
        ),
        None,
    )

    if winner is None:
        fallback = borda(ballots, candidates)
        return fallback.model_copy(
            update={
                "method": VotingMethod.CONDORCET,
                "details": (
                    f"No Condorcet winner (cycle detected). Pairwise: {'; '.join(pairwise)}.\n"
                    f"Fallback to {fallback.details}"
                ),
            }
        )

    beaten = {c: sum(1 for o in candidates if o != c and wins[c][o] > wins[o][c]) for c in candidates}
    order = sorted(candidates, key=lambda c: (c != winner, -beaten[c]))
    rankings = [RankedCandidate(provider=c, score=beaten[c]) for c in order]
    margins = [wins[winner][o] - wins[o][winner] for o in candidates if o != winner]
    return VoteResult(
        winner=winner,
        rankings=rankings,
        controversial=bool(margins) and min(margins) <= 1,
        method=VotingMethod.CONDORCET,
        details=(
            f"Condorcet winner found: {winner} beats all others head-to-head.\n"
            f"Pairwise: {'; '.join(pairwise)}."
        ),
    )


def tally(
    ballots: Sequence[Ballot],
    candidates: Sequence[str],
    method: VotingMethod | str = VotingMethod.BORDA,
    *,
    weights: dict[str, float] | None = None,
    self_vote_discount: float = 1.0,
    approval_k: int | None = None,
) -> VoteResult:
    """Tally ``ballots`` over ``candidates`` with the chosen method.

    Every method takes the same ballots and returns the same result shape.
    Weights and the self-vote discount only apply to Borda.
    """
    method = VotingMethod(method)
    if method == VotingMethod.RANKED_CHOICE:
        return ranked_choice(ballots, candidates)
    if method == VotingMethod.APPROVAL:
        return approval(ballots, candidates, k=approval_k)
    if method == VotingMethod.CONDORCET:
        return condorcet(ballots, candidates)
    return borda(ballots, candidates, weights=weights, self_vote_discount=self_vote_discount)


# --- Ballot extraction ---


def _json_rankings(text: str, label_map: dict[str, str]) -> list[str]:
    match = _JSON_BLOCK_RE.search(text) or _JSON_BARE_RE.search(text)
    if not match:
        return []
    try:
        parsed = json.loads(match.group(1).strip())
    except json.JSONDecodeError:
        return []
    entries = parsed.get("rankings", []) if isinstance(parsed, dict) else parsed
    if not isinstance(entries, list):
        return []

    ranked: list[tuple[int, str]] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        target = label_map.get(str(entry.get("position", "")).strip().upper())
        try:
            rank = int(entry.get("rank", len(ranked) + 1))
        except (TypeError, ValueError):
            continue
        if target and target not in (t for _, t in ranked):
            ranked.append((rank, target))
    return [t for _, t in sorted(ranked, key=lambda item: item[0])]


def _identify(rest: str, label_map: dict[str, str], candidates: Sequence[str]) -> str | None:
    m = _POSITION_RE.search(rest)
    if m and m.group(1) in label_map:
        return label_map[m.group(1)]
    for m in _BARE_LABEL_RE.finditer(rest):
        if m.group(1) in label_map:
            return label_map[m.group(1)]
    lower = rest.lower()
    for c in candidates:
        if c.lower() in lower:
            return c
    return None


def _line_rankings(text: str, label_map: dict[str, str], candidates: Sequence[str]) -> list[str]:
    n = len(candidates)
    ranked: list[tuple[int, str]] = []
    running = 1
    for line in text.splitlines():
        m = _RANK_LINE_RE.match(line)
        if not m:
            continue
        line_rank = int(m.group(1))
        rank = line_rank if 1 <= line_rank <= n else running
        if rank > n:
            continue
        target = _identify(line[m.end():], label_map, candidates)
        if target and target not in (t for _, t in ranked):
            ranked.append((rank, target))
            running += 1
    return [t for _, t in sorted(ranked, key=lambda item: item[0])]


def extract_ballots(
    vote_responses: dict[str, str],
    candidates: Sequence[str],
    labels: Sequence[str] | None = None,
) -> list[Ballot]:
    """Parse each voter's free-text response into a ballot.

    A fenced JSON block like ``{"rankings": [{"position": "A", "rank": 1}]}``
    wins; otherwise numbered lines naming a position label or a candidate
    are used. Voters whose text yields no ranking cast no ballot.
    """
    labels = list(labels) if labels is not None else position_labels(len(candidates))
    label_map = dict(zip(labels, candidates, strict=True))

    ballots: list[Ballot] = []
    for voter, text in vote_responses.items():
        rankings = _json_rankings(text, label_map) or _line_rankings(text, label_map, candidates)
        if not rankings:
            logger.warning("%s failed to produce parseable rankings", voter)
            continue
        ballots.append(Ballot(voter=voter, rankings=rankings))
    return ballots
