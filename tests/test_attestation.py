"""Tests for attestation records and the QATT binary format."""

from __future__ import annotations

import struct

import pytest

from quorum.attestation import (
    FORMAT_VERSION,
    MAGIC,
    MULTI_PROVIDER,
    AttestationFormatError,
    PhaseEvidence,
    build_attestation_chain,
    export_attestation_binary,
    export_attestation_json,
    import_attestation_binary,
    verify_attestation_chain,
)
from quorum.integrity import build_hash_chain
from quorum.models import AttestationChain, PhaseOutput


def _evidence():
    return [
        PhaseEvidence(phase="Gather", inputs='{"q":"why"}', responses={"a": "x", "b": "y"},
                      providers=["a", "b"], timestamp=1000),
        PhaseEvidence(phase="Hub Analysis", inputs='{"q":"hub"}', responses={"a": "z"},
                      providers=["a"], timestamp=2000),
    ]


def _entries():
    return build_hash_chain([
        PhaseOutput(phase="Gather", timestamp=1000, duration=1, responses={"a": "x", "b": "y"}),
        PhaseOutput(phase="Hub Analysis", timestamp=2000, duration=1, responses={"a": "z"}),
    ])


class TestAttestationChain:
    def test_records_link(self):
        chain = build_attestation_chain("s1", _evidence())
        first, second = chain.records
        assert first.previous_attestation_hash is None
        assert second.previous_attestation_hash == first.hash
        assert first.provider_id == MULTI_PROVIDER
        assert second.provider_id == "a"
        assert verify_attestation_chain(chain).valid

    def test_references_hash_chain(self):
        entries = _entries()
        chain = build_attestation_chain("s1", _evidence(), entries)
        assert [r.chain_entry_hash for r in chain.records] == [e.hash for e in entries]
        assert verify_attestation_chain(chain, entries).valid

    def test_wrong_hash_chain_reference(self):
        entries = _entries()
        chain = build_attestation_chain("s1", _evidence(), entries)
        other = build_hash_chain([
            PhaseOutput(phase="Gather", timestamp=1000, duration=1, responses={"a": "changed"}),
            PhaseOutput(phase="Hub Analysis", timestamp=2000, duration=1, responses={"a": "z"}),
        ])
        result = verify_attestation_chain(chain, other)
        assert not result.valid
        assert result.broken_at == "Gather"

    def test_tampered_record(self):
        chain = build_attestation_chain("s1", _evidence())
        chain.records[1] = chain.records[1].model_copy(update={"outputs_hash": "0" * 64})
        result = verify_attestation_chain(chain)
        assert result.kind == "hash-mismatch"
        assert result.broken_at == "Hub Analysis"

    def test_empty_chain_valid(self):
        assert verify_attestation_chain(AttestationChain(session_id="s")).valid


class TestExport:
    def test_json_export_parses_back(self):
        chain = build_attestation_chain("s1", _evidence())
        assert AttestationChain.model_validate_json(export_attestation_json(chain)) == chain

    def test_binary_layout(self):
        chain = build_attestation_chain("s1", _evidence())
        data = export_attestation_binary(chain)
        magic, version, length = struct.unpack(">4sBI", data[:9])
        assert magic == MAGIC == b"QATT"
        assert version == FORMAT_VERSION == 1
        assert length == len(data) - 9
        assert import_attestation_binary(data) == chain

    def test_bad_magic(self):
        data = export_attestation_binary(build_attestation_chain("s1", _evidence()))
        with pytest.raises(AttestationFormatError, match="bad magic"):
            import_attestation_binary(b"XXXX" + data[4:])

    def test_unsupported_version(self):
        data = bytearray(export_attestation_binary(build_attestation_chain("s1", _evidence())))
        data[4] = 2
        with pytest.raises(AttestationFormatError, match="version"):
            import_attestation_binary(bytes(data))

    def test_truncated_payload(self):
        data = export_attestation_binary(build_attestation_chain("s1", _evidence()))
        with pytest.raises(AttestationFormatError, match="truncated payload"):
            import_attestation_binary(data[:-5])

    def test_truncated_header(self):
        with pytest.raises(AttestationFormatError, match="truncated header"):
            import_attestation_binary(b"QAT")
