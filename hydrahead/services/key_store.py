"""
Key Store - Per-party key material stored as cardano text envelopes under <wallets>/<party>/
"""
import json
from pathlib import Path
from typing import Dict, Optional, Union
from nacl import signing
from nacl import exceptions as nacl_exceptions

from hydrahead.errors import KeyNotFound, MalformedKeyFile

PAYMENT_VKEY = "payment.vkey"
PAYMENT_SKEY = "payment.skey"
HYDRA_VKEY = "hydra.vkey"
HYDRA_SKEY = "hydra.sk"
ADDRESS_FILE = "address.txt"

# CBOR header for a 32-byte bytestring
CBOR_BYTES32_PREFIX = "5820"

PathLike = Union[str, Path]


def party_dir(wallets_dir: PathLike, party: str) -> Path:
    return Path(wallets_dir) / party


def load_envelope(path: PathLike) -> Dict[str, str]:
    """Load a text envelope ({type, description, cborHex}) from disk"""
    path = Path(path)
    if not path.exists():
        raise KeyNotFound(f"Key file not found: {path}", path=str(path))
    try:
        with open(path, "r") as f:
            envelope = json.load(f)
    except json.JSONDecodeError as e:
        raise MalformedKeyFile(f"Invalid JSON in key file {path}: {e}") from e
    if not isinstance(envelope, dict) or not isinstance(envelope.get("cborHex"), str):
        raise MalformedKeyFile(f"Key file {path} has no cborHex field")
    return envelope


def save_envelope(path: PathLike, key_type: str, description: str, cbor_hex: str) -> Path:
    path = Path(path)
    data = {"type": key_type, "description": description, "cborHex": cbor_hex}
    with open(path, "w") as f:
        json.dump(data, f, indent=4)
    return path


def extract_vkey_hex(cbor_hex: str) -> str:
    """Strip the CBOR bytestring header; hex without it is returned unchanged."""
    if cbor_hex.startswith(CBOR_BYTES32_PREFIX):
        return cbor_hex[len(CBOR_BYTES32_PREFIX):]
    return cbor_hex


def load_hydra_verify_key(path: PathLike) -> signing.VerifyKey:
    """Load a hydra.vkey envelope as an Ed25519 VerifyKey"""
    envelope = load_envelope(path)
    try:
        return signing.VerifyKey(bytes.fromhex(extract_vkey_hex(envelope["cborHex"])))
    except (ValueError, nacl_exceptions.CryptoError) as e:
        raise MalformedKeyFile(f"Invalid Ed25519 verification key in {path}: {e}") from e


def read_cached_address(directory: PathLike) -> Optional[str]:
    """Address written next to the keys at wallet creation time, if any"""
    path = Path(directory) / ADDRESS_FILE
    if not path.exists():
        return None
    address = path.read_text().strip()
    return address or None


def generate_hydra_keypair(directory: PathLike) -> Dict[str, str]:
    """Generate an Ed25519 hydra keypair as hydra.sk / hydra.vkey, return the vkey hex."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    signer = signing.SigningKey.generate()
    seed_hex = bytes(signer).hex()
    vkey_hex = bytes(signer.verify_key).hex()
    save_envelope(directory / HYDRA_SKEY, "HydraSigningKey_ed25519", "",
                  CBOR_BYTES32_PREFIX + seed_hex)
    save_envelope(directory / HYDRA_VKEY, "HydraVerificationKey_ed25519", "",
                  CBOR_BYTES32_PREFIX + vkey_hex)
    return {"vkey": vkey_hex, "path": str(directory / HYDRA_VKEY)}
