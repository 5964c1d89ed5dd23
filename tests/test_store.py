"""Tests for the session store and reader."""

from __future__ import annotations

import json
import re

import click
import pytest
from pydantic import ValidationError

from quorum.integrity import build_hash_chain
from quorum.models import (
    PhaseOutput,
    Profile,
    RankedCandidate,
    Session,
    SessionIndexEntry,
    Synthesis,
    VoteResult,
)
from quorum.output.reader import (
    build_canonical_record,
    find_sessions,
    load_index,
    load_meta,
    load_phases,
    load_synthesis,
    resolve_session,
    validate_canonical_record,
    verify_session,
)
from quorum.output.store import SessionStore, atomic_write_text, new_session_id, phase_filename

OUTPUTS = [
    PhaseOutput(phase="Gather", timestamp=1000, duration=10, responses={"a": "one", "b": "two"}),
    PhaseOutput(phase="Debate", timestamp=2000, duration=20, responses={"a": "three", "b": "four"}),
    PhaseOutput(phase="Vote", timestamp=3000, duration=5, responses={"a": "1. A", "b": "1. B"}),
]


def _stored_session(root, session_id="2026-01-02T03-04-05_which-db_abc123"):
    store = SessionStore(root)
    session = Session(id=session_id, input="Which db?", profile=Profile(), providers=["a", "b"])
    path = store.create(session)
    for i, output in enumerate(OUTPUTS, 1):
        store.write_phase(session.id, i, output)
    store.write_integrity(session.id, build_hash_chain(OUTPUTS))
    votes = VoteResult(winner="a", rankings=[RankedCandidate(provider="a", score=2),
                                             RankedCandidate(provider="b", score=1)])
    store.write_synthesis(session.id, Synthesis(content="Use Postgres.", synthesizer="b"), votes)
    return store, path


class TestNaming:
    def test_session_id(self):
        session_id = new_session_id("Which database should we use?")
        assert re.fullmatch(
            r"\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}_which-database-should-we-use_[0-9a-f]{6}", session_id
        )

    def test_session_id_without_slug(self):
        assert "_session_" in new_session_id("???")

    def test_phase_filename(self):
        assert phase_filename(3, "Debate (Round 2)") == "03-debate-round-2.json"
        assert phase_filename(12, "Round 1: a vs b - Critique") == "12-round-1-a-vs-b-critique.json"


class TestSessionStore:
    def test_round_trip(self, tmp_path):
        _, path = _stored_session(tmp_path)
        assert load_meta(path).input == "Which db?"
        assert load_phases(path) == OUTPUTS
        synthesis, votes = load_synthesis(path)
        assert synthesis.content == "Use Postgres."
        assert votes.winner == "a"

    def test_phases_load_in_numeric_order(self, tmp_path):
        store = SessionStore(tmp_path)
        session = Session(id="2026-01-02T03-04-05_x_000000", input="x", profile=Profile(), providers=["a"])
        path = store.create(session)
        for index in (10, 2, 9):
            store.write_phase(session.id, index, PhaseOutput(phase=f"P{index}", timestamp=index, duration=0))
        assert [p.phase for p in load_phases(path)] == ["P2", "P9", "P10"]

    def test_no_temp_files_left(self, tmp_path):
        _, path = _stored_session(tmp_path)
        assert not [f for f in path.iterdir() if f.name.endswith(".tmp")]

    def test_failed_write_leaves_original(self, tmp_path, monkeypatch):
        target = tmp_path / "file.json"
        target.write_text("original", encoding="utf-8")

        def fail(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr("quorum.output.store.os.replace", fail)
        with pytest.raises(OSError):
            atomic_write_text(target, "new")
        assert target.read_text(encoding="utf-8") == "original"
        assert list(tmp_path.iterdir()) == [target]

    def test_index_deduplicates(self, tmp_path):
        store = SessionStore(tmp_path)
        store.append_index(SessionIndexEntry(session_id="s1", timestamp=1, question="q", winner="a", duration=5))
        store.append_index(SessionIndexEntry(session_id="s2", timestamp=2, question="q", winner="b", duration=5))
        store.append_index(SessionIndexEntry(session_id="s1", timestamp=3, question="q", winner="c", duration=5))
        entries = load_index(tmp_path)
        assert [e.session_id for e in entries] == ["s2", "s1"]
        assert entries[1].winner == "c"


class TestSessionImmutability:
    def test_completed_session_is_frozen(self):
        session = Session(id="s", input="q", profile=Profile(), providers=["a"])
        session.providers = ["a", "b"]
        session.completed_at = 123
        assert session.completed
        with pytest.raises(ValueError, match="completed"):
            session.input = "changed"

    def test_nested_fields_frozen_on_completion(self):
        profile = Profile(rounds=2)
        session = Session(id="s", input="q", profile=profile, providers=["a", "b"])
        session.completed_at = 123
        assert session.providers == ("a", "b")
        with pytest.raises(AttributeError):
            session.providers.append("c")
        with pytest.raises(ValidationError):
            session.profile.rounds = 9
        assert session.profile.rounds == 2
        assert isinstance(session.profile.phases, tuple)
        profile.rounds = 3
        assert session.profile.rounds == 2

    def test_loaded_completed_session_is_frozen(self):
        data = Session(id="s", input="q", profile=Profile(), providers=["a"], completed_at=5).model_dump()
        loaded = Session.model_validate(data)
        with pytest.raises(ValidationError):
            loaded.profile.rounds = 4


class TestVerifySession:
    def test_untouched_session_verifies(self, tmp_path):
        _, path = _stored_session(tmp_path)
        assert verify_session(path).valid

    def test_edited_phase_file_detected(self, tmp_path):
        _, path = _stored_session(tmp_path)
        phase_file = path / "02-debate.json"
        data = json.loads(phase_file.read_text(encoding="utf-8"))
        data["responses"]["a"] = "edited"
        phase_file.write_text(json.dumps(data), encoding="utf-8")
        result = verify_session(path)
        assert not result.valid
        assert result.broken_at == "Debate"

    def test_deleted_phase_file_detected(self, tmp_path):
        _, path = _stored_session(tmp_path)
        (path / "03-vote.json").unlink()
        assert verify_session(path).kind == "length-mismatch"


class TestResolveSession:
    def test_most_recent(self, tmp_path):
        _stored_session(tmp_path, "2026-01-01T00-00-00_old_aaaaaa")
        _stored_session(tmp_path, "2026-02-01T00-00-00_new_bbbbbb")
        assert resolve_session(None, tmp_path).name == "2026-02-01T00-00-00_new_bbbbbb"
        assert len(find_sessions(tmp_path)) == 2

    def test_by_id_and_path(self, tmp_path):
        _, path = _stored_session(tmp_path)
        assert resolve_session(path.name, tmp_path) == path
        assert resolve_session(str(path), "elsewhere") == path

    def test_missing(self, tmp_path):
        with pytest.raises(click.ClickException, match="Session not found"):
            resolve_session("nope", tmp_path)
        with pytest.raises(click.ClickException, match="No sessions found"):
            resolve_session(None, tmp_path)


class TestCanonicalRecord:
    def test_build(self, tmp_path):
        _, path = _stored_session(tmp_path)
        record = build_canonical_record(path)
        assert record.schema_version == 1
        assert [p.name for p in record.phases] == ["Gather", "Debate", "Vote"]
        assert record.integrity.valid
        assert record.votes.winner == "a"

    def test_validates_own_output(self, tmp_path):
        _, path = _stored_session(tmp_path)
        data = json.loads(build_canonical_record(path).model_dump_json())
        assert validate_canonical_record(data) == []

    def test_reports_schema_errors(self, tmp_path):
        _, path = _stored_session(tmp_path)
        data = json.loads(build_canonical_record(path).model_dump_json())
        data["schema_version"] = 2
        del data["integrity"]
        errors = validate_canonical_record(data)
        assert any(e.startswith("schema_version") for e in errors)
        assert any(e.startswith("integrity") for e in errors)
