"""
Party Directory - party -> key material / address lookup, and UTXO ownership resolution
"""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from hydrahead.config import settings
from hydrahead.errors import CliFailure, InvalidInput, KeyNotFound, MalformedCliOutput, SigningKeyNotFound
from hydrahead.services import key_store
from hydrahead.services.ledger_cli import LedgerCli

logger = logging.getLogger(__name__)


class AddressCache:
    """Append-only party -> address store. Addresses never change for a key pair."""

    def __init__(self):
        self._addresses: Dict[str, str] = {}

    def get(self, party: str) -> Optional[str]:
        return self._addresses.get(party)

    def put(self, party: str, address: str) -> None:
        # Re-deriving gives the same address, last writer wins
        self._addresses[party] = address

    def __len__(self) -> int:
        return len(self._addresses)


@dataclass
class OwnerResolution:
    party: str
    verified: bool


class PartyDirectory:

    def __init__(
        self,
        wallets_dir: Optional[str] = None,
        ledger_cli: Optional[LedgerCli] = None,
        cache: Optional[AddressCache] = None,
        node_ports: Optional[Dict[str, int]] = None,
        base_port: Optional[int] = None,
    ):
        self.wallets_dir = Path(wallets_dir or settings.HYDRA_WALLETS_DIR)
        self.ledger_cli = ledger_cli or LedgerCli()
        self.cache = cache if cache is not None else AddressCache()
        self.node_ports = dict(settings.HYDRA_NODE_PORTS if node_ports is None else node_ports)
        self.base_port = base_port if base_port is not None else settings.HYDRA_BASE_PORT

    def party_dir(self, party: str) -> Path:
        return key_store.party_dir(self.wallets_dir, party)

    def list_parties(self) -> List[str]:
        if not self.wallets_dir.exists():
            return []
        return sorted(p.name for p in self.wallets_dir.iterdir() if p.is_dir())

    async def address_of(self, party: str) -> str:
        """Payment address of a party, cached forever after the first lookup"""
        cached = self.cache.get(party)
        if cached:
            return cached

        directory = self.party_dir(party)
        vkey_path = directory / key_store.PAYMENT_VKEY
        if not vkey_path.exists():
            raise KeyNotFound(
                f"Verification key not found for {party}", path=str(vkey_path), party=party
            )

        address = key_store.read_cached_address(directory)
        if address:
            logger.debug(f"Read {party}'s address from {key_store.ADDRESS_FILE}")
        else:
            address = await self.ledger_cli.address_build(vkey_path)
            logger.info(f"Derived address for {party}: {address}")

        self.cache.put(party, address)
        return address

    async def try_address_of(self, party: str) -> Optional[str]:
        """Best-effort address lookup used during resolution"""
        try:
            return await self.address_of(party)
        except (KeyNotFound, CliFailure, MalformedCliOutput, OSError) as e:
            logger.warning(f"Could not resolve address for {party}: {e}")
            return None

    async def resolve_owner(self, utxo_address: str, assumed_owner: str) -> OwnerResolution:
        """
        Find the party whose address holds the UTXO.

        Every party sees the same head UTXO set, so the caller's idea of the
        owner can be wrong. When no address matches, the assumed owner is
        returned unverified and the ledger decides whether the spend is valid.
        """
        owner: Optional[str] = None
        for party in self.list_parties():
            address = await self.try_address_of(party)
            if address and address == utxo_address and owner is None:
                owner = party
                logger.info(f"UTXO belongs to {party} (verified via address match)")

        if owner is None:
            logger.warning(
                f"No party address matches {utxo_address}, assuming {assumed_owner} owns it"
            )
            return OwnerResolution(party=assumed_owner, verified=False)
        return OwnerResolution(party=owner, verified=True)

    def signing_key_path(self, party: str) -> Path:
        path = self.party_dir(party) / key_store.PAYMENT_SKEY
        if not path.exists():
            raise SigningKeyNotFound(
                f"Payment signing key not found for {party}", path=str(path), party=party
            )
        return path

    def hydra_vkey_hex(self, party: str) -> str:
        """Hex of the party's hydra verification key, as sent in Init otherParties"""
        path = self.party_dir(party) / key_store.HYDRA_VKEY
        verify_key = key_store.load_hydra_verify_key(path)
        return bytes(verify_key).hex()

    def api_port(self, party: str, override: Optional[int] = None) -> int:
        if override:
            return int(override)
        if party in self.node_ports:
            return self.node_ports[party]
        parties = self.list_parties()
        if party not in parties:
            raise InvalidInput(f"Invalid party or unable to determine port: {party}")
        return self.base_port + parties.index(party)
