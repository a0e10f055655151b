"""
Unit tests for PartyDirectory.

Coverage targets:
- Address derivation and the permanent address cache
- UTXO ownership resolution and the assumed-owner fallback
- Key lookups and API port allocation
"""
import pytest

from conftest import FakeLedgerCli, address_for, make_party
from hydrahead.errors import InvalidInput, KeyNotFound, SigningKeyNotFound
from hydrahead.services import key_store
from hydrahead.services.party_directory import AddressCache, PartyDirectory


@pytest.mark.asyncio
async def test_address_of_is_idempotent_and_cached(directory, ledger_cli):
    first = await directory.address_of("alice")
    second = await directory.address_of("alice")

    assert first == second == address_for("alice")
    assert len(ledger_cli.address_calls) == 1
    assert directory.cache.get("alice") == first


@pytest.mark.asyncio
async def test_address_of_missing_vkey(directory, wallets_dir):
    (wallets_dir / "dave").mkdir()
    with pytest.raises(KeyNotFound) as exc:
        await directory.address_of("dave")
    assert exc.value.party == "dave"


@pytest.mark.asyncio
async def test_address_file_is_used_before_cli(directory, wallets_dir, ledger_cli):
    (wallets_dir / "bob" / key_store.ADDRESS_FILE).write_text("addr_test1_from_file\n")

    assert await directory.address_of("bob") == "addr_test1_from_file"
    assert ledger_cli.address_calls == []


@pytest.mark.asyncio
async def test_caches_are_independent_per_directory(wallets_dir):
    cli = FakeLedgerCli()
    one = PartyDirectory(wallets_dir=str(wallets_dir), ledger_cli=cli, cache=AddressCache())
    two = PartyDirectory(wallets_dir=str(wallets_dir), ledger_cli=cli, cache=AddressCache())

    await one.address_of("alice")
    assert two.cache.get("alice") is None
    await two.address_of("alice")
    assert len(cli.address_calls) == 2


@pytest.mark.asyncio
async def test_resolve_owner_matches_address(directory):
    resolution = await directory.resolve_owner(address_for("bob"), assumed_owner="alice")

    assert resolution.party == "bob"
    assert resolution.verified is True
    # every party's address is cached as a side effect
    assert len(directory.cache) == 3


@pytest.mark.asyncio
async def test_resolve_owner_falls_back_to_assumed_owner(directory):
    resolution = await directory.resolve_owner("addr_test1_stranger", assumed_owner="alice")

    assert resolution.party == "alice"
    assert resolution.verified is False


@pytest.mark.asyncio
async def test_resolve_owner_skips_parties_without_keys(directory, wallets_dir):
    (wallets_dir / "broken").mkdir()

    resolution = await directory.resolve_owner(address_for("carol"), assumed_owner="alice")
    assert resolution.party == "carol"


def test_signing_key_path(directory, wallets_dir):
    assert directory.signing_key_path("bob") == wallets_dir / "bob" / key_store.PAYMENT_SKEY

    make_party(wallets_dir, "dave", with_skey=False)
    with pytest.raises(SigningKeyNotFound):
        directory.signing_key_path("dave")


def test_hydra_vkey_hex(directory, wallets_dir):
    envelope = key_store.load_envelope(wallets_dir / "carol" / key_store.HYDRA_VKEY)
    assert directory.hydra_vkey_hex("carol") == key_store.extract_vkey_hex(envelope["cborHex"])


def test_list_parties_sorted(directory, tmp_path):
    assert directory.list_parties() == ["alice", "bob", "carol"]
    empty = PartyDirectory(wallets_dir=str(tmp_path / "missing"), ledger_cli=FakeLedgerCli())
    assert empty.list_parties() == []


def test_api_port_allocation(directory):
    assert directory.api_port("alice") == 4001
    assert directory.api_port("bob") == 4002
    # carol is third in sorted order
    assert directory.api_port("carol") == 4003
    assert directory.api_port("carol", override=5555) == 5555

    with pytest.raises(InvalidInput):
        directory.api_port("mallory")
