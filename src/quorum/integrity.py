"""SHA-256 hash chain over phase outputs for tamper-evident session records."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Sequence
from typing import Any

from pydantic import BaseModel

from quorum.models import HashChainEntry, PhaseOutput, VerificationResult


def canonical_serialize(value: Any) -> str:
    """Serialize to JSON with object keys sorted at every depth.

    Two values with the same content serialize identically regardless of
    key insertion order. Pydantic models are dumped in JSON mode first.
    """
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_hex(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def compute_phase_hash(output: PhaseOutput, previous_hash: str | None) -> str:
    """SHA-256 of the canonical phase output followed by the previous hash."""
    return sha256_hex(canonical_serialize(output) + (previous_hash or ""))


class IntegrityChain:
    """Append-only hash chain, one entry per executed phase."""

    def __init__(self) -> None:
        self._entries: list[HashChainEntry] = []

    @property
    def entries(self) -> list[HashChainEntry]:
        return list(self._entries)

    @property
    def last_hash(self) -> str | None:
        return self._entries[-1].hash if self._entries else None

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, output: PhaseOutput) -> HashChainEntry:
        previous = self.last_hash
        entry = HashChainEntry(
            phase=output.phase,
            hash=compute_phase_hash(output, previous),
            previous_hash=previous,
            timestamp=output.timestamp,
        )
        self._entries.append(entry)
        return entry

    def verify(self, outputs: Sequence[PhaseOutput]) -> VerificationResult:
        return verify_hash_chain(self._entries, outputs)


def build_hash_chain(outputs: Sequence[PhaseOutput]) -> list[HashChainEntry]:
    chain = IntegrityChain()
    for output in outputs:
        chain.append(output)
    return chain.entries


def verify_hash_chain(
    entries: Sequence[HashChainEntry], outputs: Sequence[PhaseOutput]
) -> VerificationResult:
    """Recompute every hash and check linkage; report the first failure found."""
    if len(entries) != len(outputs):
        return VerificationResult(
            valid=False,
            kind="length-mismatch",
            details=f"Chain length mismatch: {len(entries)} entries but {len(outputs)} phases",
        )
    if not entries:
        return VerificationResult(valid=True)

    if entries[0].previous_hash is not None:
        return VerificationResult(
            valid=False,
            broken_at=entries[0].phase,
            kind="first-entry",
            details="First entry has a non-null previous_hash",
        )

    previous: str | None = None
    for entry, output in zip(entries, outputs, strict=True):
        if entry.previous_hash != previous:
            return VerificationResult(
                valid=False,
                broken_at=entry.phase,
                kind="linkage",
                details=(
                    f"Chain broken: expected previous_hash {previous!r} "
                    f"but got {entry.previous_hash!r}"
                ),
            )
        expected = compute_phase_hash(output, previous)
        if entry.hash != expected:
            return VerificationResult(
                valid=False,
                broken_at=entry.phase,
                kind="hash-mismatch",
                details=f"Hash mismatch at phase {entry.phase!r}: expected {expected} but got {entry.hash}",
            )
        previous = entry.hash

    return VerificationResult(valid=True)
