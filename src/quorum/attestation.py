"""Attestation records: per-phase provenance layered over the hash chain.

Each record binds a phase's inputs and outputs to the participant that
produced them (``multi`` when several did) and links to the previous record
by hash. Chains export as JSON or as a small binary envelope::

    b"QATT" | version (1 byte) | payload length (uint32, big-endian) | JSON payload
"""

from __future__ import annotations

import json
import struct
from collections.abc import Sequence
from dataclasses import dataclass, field

from pydantic import ValidationError

from quorum.integrity import canonical_serialize, sha256_hex
from quorum.models import (
    AttestationChain,
    AttestationRecord,
    HashChainEntry,
    VerificationResult,
    now_ms,
)

MAGIC = b"QATT"
FORMAT_VERSION = 1
MULTI_PROVIDER = "multi"
_HEADER = struct.Struct(">4sBI")


class AttestationFormatError(ValueError):
    """Raised when a binary attestation export cannot be parsed."""


@dataclass(frozen=True)
class PhaseEvidence:
    """What went into and came out of one executed phase."""

    phase: str
    inputs: str
    responses: dict[str, str]
    providers: list[str]
    timestamp: int
    chain_entry_hash: str | None = field(default=None)


def compute_attestation_hash(
    phase: str,
    inputs_hash: str,
    outputs_hash: str,
    provider_id: str,
    timestamp: int,
    previous_attestation_hash: str | None,
    chain_entry_hash: str | None,
) -> str:
    payload = "|".join(
        [
            phase,
            inputs_hash,
            outputs_hash,
            provider_id,
            str(timestamp),
            previous_attestation_hash or "",
            chain_entry_hash or "",
        ]
    )
    return sha256_hex(payload)


def _record_hash(record: AttestationRecord) -> str:
    return compute_attestation_hash(
        record.phase,
        record.inputs_hash,
        record.outputs_hash,
        record.provider_id,
        record.timestamp,
        record.previous_attestation_hash,
        record.chain_entry_hash,
    )


def create_attestation_record(
    evidence: PhaseEvidence, previous_attestation_hash: str | None
) -> AttestationRecord:
    provider_id = evidence.providers[0] if len(evidence.providers) == 1 else MULTI_PROVIDER
    inputs_hash = sha256_hex(evidence.inputs)
    outputs_hash = sha256_hex(canonical_serialize(evidence.responses))
    return AttestationRecord(
        phase=evidence.phase,
        inputs_hash=inputs_hash,
        outputs_hash=outputs_hash,
        provider_id=provider_id,
        timestamp=evidence.timestamp,
        previous_attestation_hash=previous_attestation_hash,
        chain_entry_hash=evidence.chain_entry_hash,
        hash=compute_attestation_hash(
            evidence.phase,
            inputs_hash,
            outputs_hash,
            provider_id,
            evidence.timestamp,
            previous_attestation_hash,
            evidence.chain_entry_hash,
        ),
    )


def build_attestation_chain(
    session_id: str,
    evidence: Sequence[PhaseEvidence],
    entries: Sequence[HashChainEntry] | None = None,
) -> AttestationChain:
    """Chain one record per phase, optionally pointing each at its hash-chain entry."""
    records: list[AttestationRecord] = []
    previous: str | None = None
    for i, item in enumerate(evidence):
        if entries is not None:
            if i >= len(entries):
                break
            item = PhaseEvidence(
                phase=item.phase,
                inputs=item.inputs,
                responses=item.responses,
                providers=item.providers,
                timestamp=item.timestamp,
                chain_entry_hash=entries[i].hash,
            )
        record = create_attestation_record(item, previous)
        records.append(record)
        previous = record.hash
    return AttestationChain(session_id=session_id, records=records, created_at=now_ms())


def verify_attestation_chain(
    chain: AttestationChain, entries: Sequence[HashChainEntry] | None = None
) -> VerificationResult:
    """Check record linkage and self-hashes, and optionally the hash-chain references."""
    if entries is not None and len(entries) != len(chain.records):
        return VerificationResult(
            valid=False,
            kind="length-mismatch",
            details=f"{len(chain.records)} attestation records but {len(entries)} chain entries",
        )
    if not chain.records:
        return VerificationResult(valid=True)

    first = chain.records[0]
    if first.previous_attestation_hash is not None:
        return VerificationResult(
            valid=False,
            broken_at=first.phase,
            kind="first-entry",
            details="First attestation has a non-null previous_attestation_hash",
        )

    previous: str | None = None
    for i, record in enumerate(chain.records):
        if record.previous_attestation_hash != previous:
            return VerificationResult(
                valid=False,
                broken_at=record.phase,
                kind="linkage",
                details=(
                    f"Chain linkage broken: expected {previous!r} "
                    f"but got {record.previous_attestation_hash!r}"
                ),
            )
        expected = _record_hash(record)
        if record.hash != expected:
            return VerificationResult(
                valid=False,
                broken_at=record.phase,
                kind="hash-mismatch",
                details=f"Hash mismatch at {record.phase!r}: expected {expected} got {record.hash}",
            )
        if entries is not None and record.chain_entry_hash != entries[i].hash:
            return VerificationResult(
                valid=False,
                broken_at=record.phase,
                kind="linkage",
                details=f"Attestation for {record.phase!r} does not reference its hash-chain entry",
            )
        previous = record.hash

    return VerificationResult(valid=True)


def export_attestation_json(chain: AttestationChain) -> str:
    return chain.model_dump_json(indent=2)


def export_attestation_binary(chain: AttestationChain) -> bytes:
    payload = canonical_serialize(chain).encode("utf-8")
    return _HEADER.pack(MAGIC, FORMAT_VERSION, len(payload)) + payload


def import_attestation_binary(data: bytes) -> AttestationChain:
    if len(data) < _HEADER.size:
        raise AttestationFormatError(
            f"Invalid attestation binary: truncated header ({len(data)} of {_HEADER.size} bytes)"
        )
    magic, version, length = _HEADER.unpack_from(data)
    if magic != MAGIC:
        raise AttestationFormatError(f"Invalid attestation binary: bad magic {magic!r}")
    if version != FORMAT_VERSION:
        raise AttestationFormatError(f"Unsupported attestation binary version: {version}")
    payload = data[_HEADER.size:_HEADER.size + length]
    if len(payload) < length:
        raise AttestationFormatError(
            f"Invalid attestation binary: truncated payload ({len(payload)} of {length} bytes)"
        )
    try:
        return AttestationChain.model_validate(json.loads(payload.decode("utf-8")))
    except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as e:
        raise AttestationFormatError(f"Invalid attestation binary: malformed payload ({e})") from e
