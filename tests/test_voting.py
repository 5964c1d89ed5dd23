"""Tests for vote tallying and ballot extraction."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from quorum.models import Ballot, VotingMethod
from quorum.voting import (
    approval,
    borda,
    condorcet,
    extract_ballots,
    position_labels,
    ranked_choice,
    tally,
)

CANDIDATES = ["a", "b", "c"]


def _ballots(*orders):
    return [Ballot(voter=f"v{i}", rankings=list(o)) for i, o in enumerate(orders)]


class TestBallot:
    def test_rejects_duplicate_rankings(self):
        with pytest.raises(ValidationError):
            Ballot(voter="v", rankings=["a", "a", "b"])

    def test_labels(self):
        assert position_labels(3) == ["A", "B", "C"]


class TestBorda:
    def test_top_choice_earns_n(self):
        result = borda(_ballots("abc", "bac", "abc"), CANDIDATES)
        scores = {r.provider: r.score for r in result.rankings}
        assert scores == {"a": 8, "b": 7, "c": 3}
        assert result.winner == "a"
        assert result.controversial is True

    def test_symmetric_ballots_tie(self):
        result = borda(_ballots("abc", "cba"), CANDIDATES)
        assert {r.score for r in result.rankings} == {4}
        assert result.winner == "a"
        assert result.controversial is True

    def test_clear_winner_not_controversial(self):
        result = borda(_ballots("abc", "abc", "abc"), CANDIDATES)
        assert result.winner == "a"
        assert result.controversial is False

    def test_self_vote_discount(self):
        ballots = [Ballot(voter="a", rankings=["a", "b", "c"]), Ballot(voter="b", rankings=["a", "b", "c"])]
        result = borda(ballots, CANDIDATES, self_vote_discount=0.5)
        scores = {r.provider: r.score for r in result.rankings}
        assert scores == {"a": 4.5, "b": 3, "c": 2}
        assert "weighted" in result.details

    def test_weights(self):
        result = borda(_ballots("abc", "bac"), CANDIDATES, weights={"b": 2.0})
        assert result.winner == "b"

    def test_partial_ballot_completed_in_candidate_order(self):
        result = borda(_ballots("c"), CANDIDATES)
        assert [r.provider for r in result.rankings] == ["c", "a", "b"]

    def test_no_candidates(self):
        with pytest.raises(ValueError):
            borda([], [])


class TestRankedChoice:
    def test_elimination_until_majority(self):
        result = ranked_choice(_ballots("abc", "acb", "bca", "cba", "bac"), CANDIDATES)
        assert result.winner == "b"
        assert [r.provider for r in result.rankings] == ["b", "a", "c"]
        assert result.method == VotingMethod.RANKED_CHOICE
        assert "Eliminated: c" in result.details

    def test_first_round_majority(self):
        result = ranked_choice(_ballots("abc", "abc", "bca"), CANDIDATES)
        assert result.winner == "a"

    def test_full_tie_uses_borda_tiebreak(self):
        result = ranked_choice(_ballots("abc", "bca", "cab"), CANDIDATES)
        assert "tiebreak" in result.details
        assert result.winner in CANDIDATES


class TestApproval:
    def test_top_k(self):
        result = approval(_ballots("abc", "bac", "acb"), CANDIDATES, k=1)
        scores = {r.provider: r.score for r in result.rankings}
        assert scores == {"a": 2, "b": 1, "c": 0}
        assert result.winner == "a"

    def test_default_k_is_half_rounded_up(self):
        result = approval(_ballots("abc"), CANDIDATES)
        assert "top 2" in result.details


class TestCondorcet:
    def test_winner_beats_all(self):
        result = condorcet(_ballots("abc", "acb", "bac", "abc", "cab"), CANDIDATES)
        assert result.winner == "a"
        assert result.method == VotingMethod.CONDORCET
        assert "Condorcet winner found" in result.details

    def test_narrow_margin_is_controversial(self):
        result = condorcet(_ballots("abc", "acb", "bac"), CANDIDATES)
        assert result.winner == "a"
        assert result.controversial is True

    def test_cycle_falls_back_to_borda(self):
        result = condorcet(_ballots("abc", "bca", "cab"), CANDIDATES)
        assert result.method == VotingMethod.CONDORCET
        assert "cycle" in result.details
        assert result.winner == "a"


class TestTally:
    @pytest.mark.parametrize("method", list(VotingMethod))
    def test_same_shape_for_every_method(self, method):
        result = tally(_ballots("abc", "abc", "bca"), CANDIDATES, method)
        assert result.method == method
        assert result.winner in CANDIDATES
        assert sorted(r.provider for r in result.rankings) == CANDIDATES


class TestExtractBallots:
    def test_json_block(self):
        text = 'Here you go:\n```json\n{"rankings": [{"position": "B", "rank": 1}, {"position": "A", "rank": 2}]}\n```'
        ballots = extract_ballots({"v": text}, ["x", "y"])
        assert ballots[0].voter == "v"
        assert ballots[0].rankings == ["y", "x"]

    def test_numbered_lines(self):
        text = "My ranking:\n1. Position C - most complete\n2. Position A - solid\n3. Position B - weak"
        ballots = extract_ballots({"v": text}, ["x", "y", "z"])
        assert ballots[0].rankings == ["z", "x", "y"]

    def test_candidate_names(self):
        text = "1) bravo\n2) alpha"
        ballots = extract_ballots({"v": text}, ["alpha", "bravo"])
        assert ballots[0].rankings == ["bravo", "alpha"]

    def test_unparseable_voter_skipped(self):
        ballots = extract_ballots({"v": "I cannot decide.", "w": "1. Position A"}, ["x", "y"])
        assert [b.voter for b in ballots] == ["w"]
