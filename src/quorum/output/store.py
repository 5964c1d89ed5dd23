"""Session store: one JSON-file directory per deliberation under an explicit root."""

from __future__ import annotations

import json
import os
import tempfile
import uuid
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

from slugify import slugify

from quorum.models import (
    AdaptiveConfig,
    AdaptiveState,
    AttestationChain,
    HashChainEntry,
    PhaseOutput,
    Session,
    SessionIndexEntry,
    Synthesis,
    VoteResult,
)

META_FILE = "meta.json"
SYNTHESIS_FILE = "synthesis.json"
INTEGRITY_FILE = "integrity.json"
ADAPTIVE_FILE = "adaptive.json"
TOPOLOGY_FILE = "topology-plan.json"
ATTESTATION_FILE = "attestation.json"
INDEX_FILE = "index.json"


def atomic_write_text(path: Path, content: str) -> None:
    """Write ``content`` to a temp file beside ``path``, then rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def atomic_write_json(path: Path, data: Any) -> None:
    atomic_write_text(path, json.dumps(data, indent=2, ensure_ascii=False) + "\n")


def new_session_id(question: str) -> str:
    slug = slugify(question[:60]) or "session"
    timestamp = datetime.now().strftime("%Y-%m-%dT%H-%M-%S")
    return f"{timestamp}_{slug}_{uuid.uuid4().hex[:6]}"


def phase_filename(index: int, phase: str) -> str:
    return f"{index:02d}-{slugify(phase) or 'phase'}.json"


class SessionStore:
    """Writes session artifacts under ``root``; every write is atomic."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def session_dir(self, session_id: str) -> Path:
        return self.root / session_id

    def create(self, session: Session) -> Path:
        path = self.session_dir(session.id)
        path.mkdir(parents=True, exist_ok=True)
        self.write_meta(session)
        return path

    def write_meta(self, session: Session) -> None:
        atomic_write_json(self.session_dir(session.id) / META_FILE, session.model_dump(mode="json"))

    def write_phase(self, session_id: str, index: int, output: PhaseOutput) -> Path:
        path = self.session_dir(session_id) / phase_filename(index, output.phase)
        atomic_write_json(path, output.model_dump(mode="json"))
        return path

    def write_synthesis(self, session_id: str, synthesis: Synthesis, votes: VoteResult | None) -> None:
        data = synthesis.model_dump(mode="json")
        data["votes"] = votes.model_dump(mode="json") if votes else None
        atomic_write_json(self.session_dir(session_id) / SYNTHESIS_FILE, data)

    def write_integrity(self, session_id: str, entries: Sequence[HashChainEntry]) -> None:
        atomic_write_json(
            self.session_dir(session_id) / INTEGRITY_FILE,
            [e.model_dump(mode="json") for e in entries],
        )

    def write_adaptive(self, session_id: str, config: AdaptiveConfig, state: AdaptiveState) -> None:
        atomic_write_json(
            self.session_dir(session_id) / ADAPTIVE_FILE,
            {"config": config.model_dump(mode="json"), "state": state.model_dump(mode="json")},
        )

    def write_topology_plan(self, session_id: str, plan: dict[str, Any]) -> None:
        atomic_write_json(self.session_dir(session_id) / TOPOLOGY_FILE, plan)

    def write_attestation(self, session_id: str, chain: AttestationChain) -> None:
        atomic_write_text(
            self.session_dir(session_id) / ATTESTATION_FILE, chain.model_dump_json(indent=2) + "\n"
        )

    def read_index(self) -> list[SessionIndexEntry]:
        path = self.root / INDEX_FILE
        if not path.is_file():
            return []
        return [SessionIndexEntry.model_validate(e) for e in json.loads(path.read_text(encoding="utf-8"))]

    def append_index(self, entry: SessionIndexEntry) -> None:
        entries = [e for e in self.read_index() if e.session_id != entry.session_id]
        entries.append(entry)
        atomic_write_json(self.root / INDEX_FILE, [e.model_dump(mode="json") for e in entries])
