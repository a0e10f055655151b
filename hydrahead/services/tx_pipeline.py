"""
Transaction Pipeline - build, sign and return a fee-less head transaction for a UTXO

Resolves who actually owns the UTXO (every party sees the same head ledger, so
the caller's sender may be wrong), signs with that party's payment key and
optionally splits the UTXO into a payment and a change output.
"""
import logging
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from hydrahead.config import settings
from hydrahead.errors import InvalidInput
from hydrahead.models import BuildTxRequest, BuildTxResult, lovelace_to_ada, parse_utxo_ref, split_lovelace
from hydrahead.services.head_service import HeadService
from hydrahead.services.ledger_cli import LedgerCli
from hydrahead.services.party_directory import PartyDirectory

logger = logging.getLogger(__name__)

# Head transactions are fee-less
HEAD_TX_FEE = 0


class TransactionPipeline:

    def __init__(
        self,
        directory: Optional[PartyDirectory] = None,
        ledger_cli: Optional[LedgerCli] = None,
        tmp_dir: Optional[str] = None,
    ):
        self.directory = directory or PartyDirectory()
        self.ledger_cli = ledger_cli or self.directory.ledger_cli
        self.tmp_dir = tmp_dir or settings.tx_tmp_dir

    async def build_transaction(
        self,
        request: Union[BuildTxRequest, Dict[str, Any]],
        timeout: Optional[float] = None,
    ) -> BuildTxResult:
        """
        Build and sign a head transaction spending ``request.utxo_ref``.

        Args:
            request: BuildTxRequest or its camelCase JSON payload
            timeout: deadline applied to each cardano-cli call

        Returns:
            BuildTxResult with the signed CBOR hex and bookkeeping fields

        Raises:
            InvalidInput, SigningKeyNotFound, CliFailure, MalformedCliOutput
        """
        if not isinstance(request, BuildTxRequest):
            request = BuildTxRequest.from_payload(request)
        start = time.perf_counter()

        # Step 1: validate the reference and split the value
        tx_hash, index = parse_utxo_ref(request.utxo_ref)
        total_lovelace = request.utxo.lovelace
        send_lovelace, change_lovelace = split_lovelace(total_lovelace, request.send_half)
        if send_lovelace <= 0:
            raise InvalidInput(
                f"UTXO {request.utxo_ref} holds {lovelace_to_ada(total_lovelace)}, nothing to send"
            )
        logger.info(
            f"📦 Step 1: UTXO {tx_hash}#{index}, total={lovelace_to_ada(total_lovelace)}, "
            f"sending={lovelace_to_ada(send_lovelace)}"
            + (f", change={lovelace_to_ada(change_lovelace)}" if request.send_half else "")
        )

        # Step 2: who owns the UTXO, and where does the payment go
        ownership = await self.directory.resolve_owner(request.utxo.address, request.from_party)
        actual_owner = ownership.party
        target_address = await self.directory.try_address_of(request.to_party)
        if target_address:
            logger.info(f"🔍 Step 2: Sending to {request.to_party}'s address: {target_address}")
        else:
            target_address = request.target_address
            logger.info(f"🔍 Step 2: Using provided target address: {target_address}")
        logger.info(f"   Actual owner: {actual_owner}, To: {request.to_party}")

        signing_key = self.directory.signing_key_path(actual_owner)
        logger.info(f"   Using payment signing key for {actual_owner}: {signing_key}")

        tx_outs: List[Tuple[str, int]] = [(target_address, send_lovelace)]
        if request.send_half and change_lovelace > 0:
            owner_address = await self.directory.try_address_of(actual_owner)
            if owner_address:
                tx_outs.append((owner_address, change_lovelace))
                logger.info(f"   Adding change output: {owner_address}+{change_lovelace}")
            else:
                logger.warning(
                    f"Could not find address for {actual_owner} to send change, skipping change output"
                )

        # Steps 3-4: build raw and sign; artifacts are removed on every exit path
        with tempfile.TemporaryDirectory(prefix="hydra-tx-", dir=self.tmp_dir) as workdir:
            body_file = Path(workdir) / "tx.raw"
            signed_file = Path(workdir) / "tx.signed"

            logger.info("🔨 Step 3: Building raw transaction...")
            await self.ledger_cli.build_raw(
                request.utxo_ref, tx_outs, body_file, fee=HEAD_TX_FEE, timeout=timeout
            )

            logger.info("✍️  Step 4: Signing transaction...")
            await self.ledger_cli.sign(body_file, signing_key, signed_file, timeout=timeout)

            cbor_hex = self.ledger_cli.read_signed_cbor(signed_file)

        change_output = len(tx_outs) > 1
        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info(f"✅ Transaction built and signed in {elapsed_ms:.2f}ms, CBOR: {cbor_hex[:50]}...")

        return BuildTxResult(
            transaction=cbor_hex,
            utxo_ref=request.utxo_ref,
            from_party=request.from_party,
            actual_owner=actual_owner,
            owner_verified=ownership.verified,
            to_party=request.to_party,
            target_address=target_address,
            amount=lovelace_to_ada(send_lovelace),
            change=lovelace_to_ada(change_lovelace) if change_output else None,
            send_half=request.send_half,
        )

    async def send(
        self,
        head: HeadService,
        request: Union[BuildTxRequest, Dict[str, Any]],
        timeout: Optional[float] = None,
    ) -> Tuple[BuildTxResult, Any]:
        """Build, sign and submit to the owning party's head"""
        result = await self.build_transaction(request, timeout=timeout)
        response = await head.submit_transaction(result.actual_owner, result.transaction)
        return result, response
