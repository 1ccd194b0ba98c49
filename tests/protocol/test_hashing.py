"""Tests for identifier validation and hashing helpers."""

import pytest

from calibra.errors import ValidationError
from calibra.protocol.hashing import (
    batch_id_to_hash,
    compute_hash,
    is_bytes32_hex,
    is_hex_address,
    keccak256,
    normalize_address,
    normalize_bytes32,
)


class TestValidation:

    def test_address_shapes(self):
        assert is_hex_address("0x" + "aB" * 20)
        assert not is_hex_address("0x" + "ab" * 19)
        assert not is_hex_address("ab" * 20 + "00")
        assert not is_hex_address(None)

    def test_bytes32_shapes(self):
        assert is_bytes32_hex("0x" + "Cd" * 32)
        assert not is_bytes32_hex("0x" + "cd" * 31)
        assert not is_bytes32_hex("0x" + "zz" * 32)

    def test_normalize_address_lowercases_and_strips(self):
        assert normalize_address("  0x" + "AB" * 20 + " ") == "0x" + "ab" * 20

    def test_normalize_rejects_with_field_code(self):
        with pytest.raises(ValidationError) as exc:
            normalize_address("0x1234", "provider")
        assert exc.value.code == "invalid_provider"
        assert exc.value.http_status == 400
        with pytest.raises(ValidationError) as exc:
            normalize_bytes32("", "batch_hash")
        assert exc.value.code == "invalid_batch_hash"


class TestHashes:

    def test_keccak_known_vector(self):
        assert keccak256(b"").hex() == "c5d2460186f7233c927e7db2dcc703c0e500b653ca82273b7bfad8045d85a470"

    def test_batch_id_hash_is_utf8_keccak(self):
        assert batch_id_to_hash("batch-1") == compute_hash("batch-1")
        assert batch_id_to_hash("batch-1") != batch_id_to_hash("batch-2")
        assert len(batch_id_to_hash("é")) == 66

    def test_blank_batch_id_rejected(self):
        with pytest.raises(ValidationError):
            batch_id_to_hash("   ")
