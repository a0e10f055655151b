"""
Unit tests for the key store: envelopes, vkey extraction, hydra key generation.
"""
import pytest

from hydrahead.errors import KeyNotFound, MalformedKeyFile
from hydrahead.services import key_store


def test_extract_vkey_hex_strips_cbor_prefix():
    key = "ab" * 32
    extracted = key_store.extract_vkey_hex("5820" + key)
    assert extracted == key
    assert len(extracted) == 64


def test_extract_vkey_hex_passes_through_without_prefix():
    assert key_store.extract_vkey_hex("ab" * 32) == "ab" * 32
    assert key_store.extract_vkey_hex("deadbeef") == "deadbeef"


def test_load_envelope_missing_file(tmp_path):
    with pytest.raises(KeyNotFound) as exc:
        key_store.load_envelope(tmp_path / "payment.vkey")
    assert exc.value.path.endswith("payment.vkey")


def test_load_envelope_rejects_bad_json(tmp_path):
    path = tmp_path / "hydra.vkey"
    path.write_text("{not json")
    with pytest.raises(MalformedKeyFile):
        key_store.load_envelope(path)


def test_load_envelope_requires_cbor_hex(tmp_path):
    path = tmp_path / "hydra.vkey"
    path.write_text('{"type": "HydraVerificationKey_ed25519"}')
    with pytest.raises(MalformedKeyFile):
        key_store.load_envelope(path)


def test_generated_hydra_key_round_trips(tmp_path):
    result = key_store.generate_hydra_keypair(tmp_path / "alice")

    verify_key = key_store.load_hydra_verify_key(tmp_path / "alice" / key_store.HYDRA_VKEY)
    assert bytes(verify_key).hex() == result["vkey"]
    envelope = key_store.load_envelope(tmp_path / "alice" / key_store.HYDRA_VKEY)
    assert envelope["type"] == "HydraVerificationKey_ed25519"
    assert envelope["cborHex"] == "5820" + result["vkey"]


def test_load_hydra_verify_key_rejects_short_key(tmp_path):
    key_store.save_envelope(tmp_path / "hydra.vkey", "HydraVerificationKey_ed25519", "", "5820abcd")
    with pytest.raises(MalformedKeyFile):
        key_store.load_hydra_verify_key(tmp_path / "hydra.vkey")


def test_read_cached_address(tmp_path):
    assert key_store.read_cached_address(tmp_path) is None
    (tmp_path / key_store.ADDRESS_FILE).write_text("addr_test1xyz\n")
    assert key_store.read_cached_address(tmp_path) == "addr_test1xyz"
