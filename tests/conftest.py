"""
Shared fixtures: a key store on disk, a fake cardano-cli and a fake Hydra node.
"""
import json
import socket
from contextlib import asynccontextmanager
from pathlib import Path

import pytest
from websockets.asyncio.server import serve

from hydrahead.errors import CliFailure
from hydrahead.services import key_store
from hydrahead.services.ledger_cli import LedgerCli
from hydrahead.services.party_directory import PartyDirectory

PARTIES = ("alice", "bob", "carol")
SIGNED_CBOR = "84a300d9010281825820" + "ab" * 32 + "00"


def address_for(party: str) -> str:
    return f"addr_test1_{party}"


class FakeLedgerCli(LedgerCli):
    """Records calls and writes the files cardano-cli would write"""

    def __init__(self, fail_on=None, signed_content=None, l1_utxos=None, submit_stderr="submit failed"):
        super().__init__(cli_path="cardano-cli", testnet_magic=1, era="conway", timeout=5)
        self.address_calls = []
        self.build_calls = []
        self.sign_calls = []
        self.work_files = []
        self.fail_on = fail_on
        self.signed_content = signed_content
        self.l1_utxos = l1_utxos or {}
        self.submit_stderr = submit_stderr
        self.query_calls = []
        self.sign_tx_calls = []
        self.submit_calls = []

    async def address_build(self, payment_vkey, timeout=None):
        self.address_calls.append(Path(payment_vkey))
        return address_for(Path(payment_vkey).parent.name)

    async def build_raw(self, tx_in, tx_outs, out_file, fee=0, timeout=None):
        self.build_calls.append({"tx_in": tx_in, "tx_outs": list(tx_outs), "fee": fee})
        self.work_files.append(Path(out_file))
        if self.fail_on == "build":
            raise CliFailure("cardano-cli failed with exit code 1", ["cardano-cli", "build-raw"],
                             stderr="bad tx-in", returncode=1)
        Path(out_file).write_text(json.dumps({"type": "TxBodyConway", "cborHex": "a300"}))

    async def sign(self, tx_body_file, signing_key_file, out_file, timeout=None):
        self.sign_calls.append(Path(signing_key_file))
        self.work_files.append(Path(out_file))
        if self.fail_on == "sign":
            raise CliFailure("cardano-cli failed with exit code 1", ["cardano-cli", "sign"],
                             stderr="bad key", returncode=1)
        content = self.signed_content
        if content is None:
            content = json.dumps({"type": "Tx ConwayEra", "description": "", "cborHex": SIGNED_CBOR})
        Path(out_file).write_text(content)

    async def query_utxo(self, address, timeout=None):
        self.query_calls.append(address)
        return dict(self.l1_utxos)

    async def sign_tx(self, tx_file, signing_key_file, out_file, timeout=None):
        self.sign_tx_calls.append((json.loads(Path(tx_file).read_text()), Path(signing_key_file)))
        self.work_files.append(Path(out_file))
        Path(out_file).write_text(Path(tx_file).read_text())

    async def submit(self, tx_file, timeout=None):
        self.submit_calls.append(json.loads(Path(tx_file).read_text()))
        if self.fail_on == "submit":
            raise CliFailure("cardano-cli failed with exit code 1", ["cardano-cli", "submit"],
                             stderr=self.submit_stderr, returncode=1)
        return "Transaction successfully submitted.\n"


def make_party(wallets_dir: Path, party: str, with_skey: bool = True) -> Path:
    directory = wallets_dir / party
    directory.mkdir(parents=True, exist_ok=True)
    key_store.save_envelope(directory / key_store.PAYMENT_VKEY, "PaymentVerificationKeyShelley_ed25519",
                            "Payment Verification Key", "5820" + "11" * 32)
    if with_skey:
        key_store.save_envelope(directory / key_store.PAYMENT_SKEY, "PaymentSigningKeyShelley_ed25519",
                                "Payment Signing Key", "5820" + "22" * 32)
    key_store.generate_hydra_keypair(directory)
    return directory


@pytest.fixture
def wallets_dir(tmp_path):
    root = tmp_path / "wallets"
    for party in PARTIES:
        make_party(root, party)
    return root


@pytest.fixture
def ledger_cli():
    return FakeLedgerCli()


@pytest.fixture
def directory(wallets_dir, ledger_cli):
    return PartyDirectory(
        wallets_dir=str(wallets_dir),
        ledger_cli=ledger_cli,
        node_ports={"alice": 4001, "bob": 4002},
        base_port=4001,
    )


@pytest.fixture
def free_port():
    """A local port with nothing listening on it"""
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def fake_node():
    """Start a WebSocket server running ``handler`` and yield its port"""

    @asynccontextmanager
    async def _start(handler):
        async with serve(handler, "127.0.0.1", 0) as server:
            port = next(iter(server.sockets)).getsockname()[1]
            yield port

    return _start
