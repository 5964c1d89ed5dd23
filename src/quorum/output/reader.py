"""Read, verify and export stored deliberation sessions."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

import click
from pydantic import ValidationError

from quorum.integrity import verify_hash_chain
from quorum.models import (
    AttestationChain,
    CanonicalPhase,
    CanonicalRecord,
    HashChainEntry,
    PhaseOutput,
    Session,
    SessionIndexEntry,
    Synthesis,
    VerificationResult,
    VoteResult,
)
from quorum.output.store import (
    ATTESTATION_FILE,
    INDEX_FILE,
    INTEGRITY_FILE,
    META_FILE,
    SYNTHESIS_FILE,
)

_SESSION_DIR = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}_")
_PHASE_FILE = re.compile(r"^(\d{2,})-.+\.json$")


def find_sessions(root: str | Path) -> list[Path]:
    """Session directories, most recent first."""
    base = Path(root)
    if not base.is_dir():
        return []
    dirs = [d for d in base.iterdir() if d.is_dir() and _SESSION_DIR.match(d.name)]
    return sorted(dirs, key=lambda d: d.name, reverse=True)


def resolve_session(session: str | None, root: str | Path) -> Path:
    """A session path, a session id under ``root``, or the most recent session."""
    if session:
        for candidate in (Path(session), Path(root) / session):
            if (candidate / META_FILE).is_file():
                return candidate
        raise click.ClickException(f"Session not found: {session}")
    sessions = find_sessions(root)
    if not sessions:
        raise click.ClickException(f"No sessions found in {root}")
    return sessions[0]


def _read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def load_index(root: str | Path) -> list[SessionIndexEntry]:
    path = Path(root) / INDEX_FILE
    if not path.is_file():
        return []
    return [SessionIndexEntry.model_validate(e) for e in _read_json(path)]


def load_meta(session_dir: Path) -> Session:
    path = session_dir / META_FILE
    if not path.is_file():
        raise click.ClickException(f"Session meta not found: {path}")
    return Session.model_validate(_read_json(path))


def phase_files(session_dir: Path) -> list[Path]:
    """Phase files in execution order (by their numeric prefix)."""
    found = []
    for f in session_dir.iterdir():
        m = _PHASE_FILE.match(f.name)
        if m and f.is_file():
            found.append((int(m.group(1)), f))
    return [f for _, f in sorted(found)]


def load_phases(session_dir: Path) -> list[PhaseOutput]:
    return [PhaseOutput.model_validate(_read_json(f)) for f in phase_files(session_dir)]


def load_hash_chain(session_dir: Path) -> list[HashChainEntry]:
    path = session_dir / INTEGRITY_FILE
    if not path.is_file():
        return []
    return [HashChainEntry.model_validate(e) for e in _read_json(path)]


def load_synthesis(session_dir: Path) -> tuple[Synthesis | None, VoteResult | None]:
    path = session_dir / SYNTHESIS_FILE
    if not path.is_file():
        return None, None
    data = _read_json(path)
    votes = data.pop("votes", None)
    return Synthesis.model_validate(data), VoteResult.model_validate(votes) if votes else None


def load_attestation(session_dir: Path) -> AttestationChain | None:
    path = session_dir / ATTESTATION_FILE
    if not path.is_file():
        return None
    return AttestationChain.model_validate_json(path.read_text(encoding="utf-8"))


def verify_session(session_dir: Path) -> VerificationResult:
    """Recompute the stored hash chain against the stored phase files."""
    return verify_hash_chain(load_hash_chain(session_dir), load_phases(session_dir))


def build_canonical_record(session_dir: Path) -> CanonicalRecord:
    meta = load_meta(session_dir)
    phases = load_phases(session_dir)
    chain = load_hash_chain(session_dir)
    synthesis, votes = load_synthesis(session_dir)
    return CanonicalRecord(
        session_id=session_dir.name,
        meta=meta,
        phases=[
            CanonicalPhase(name=p.phase, timestamp=p.timestamp, duration=p.duration, responses=p.responses)
            for p in phases
        ],
        votes=votes,
        synthesis=synthesis,
        hash_chain=chain,
        integrity=verify_hash_chain(chain, phases),
    )


def validate_canonical_record(data: dict[str, Any]) -> list[str]:
    """Schema errors for a canonical record, empty when it is valid."""
    try:
        CanonicalRecord.model_validate(data)
    except ValidationError as e:
        return [
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        ]
    return []
