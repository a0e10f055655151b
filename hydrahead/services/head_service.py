"""
Head Service - Hydra node HTTP endpoints, lifecycle command fan-out and commits
"""
import asyncio
import json
import logging
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from hydrahead.config import settings
from hydrahead.errors import (
    CliFailure,
    HeadNotOpen,
    HydraError,
    InvalidInput,
    MalformedCliOutput,
    TransactionRejected,
    UpstreamError,
    UpstreamUnavailable,
)
from hydrahead.models import (
    CommandResult,
    CommitResult,
    HeadAction,
    HeadStatus,
    HeadTag,
    HistoryEntry,
    Utxo,
    lovelace_to_ada,
    parse_utxo_ref,
)
from hydrahead.services import key_store
from hydrahead.services.command_channel import CommandChannel
from hydrahead.services.history_tracker import SnapshotHistoryStore
from hydrahead.services.party_directory import PartyDirectory

logger = logging.getLogger(__name__)

# Ledger validation failures mapped to readable messages
VALIDATION_MESSAGES = {
    "BadInputsUTxO": (
        "The UTXO you're trying to spend doesn't exist in the Hydra head. "
        "It may have already been spent or the head state is out of sync."
    ),
    "ValueNotConserved": "Transaction value is not conserved. Inputs and outputs don't match.",
    "FeeTooSmall": "Transaction fee is too small.",
}

# Node refusals of POST /commit
COMMIT_ERROR_MESSAGES = {
    "MissingScript": (
        "Commit failed: The Hydra validator script is missing on-chain. "
        "Wait for the Init transaction to be confirmed, then try again."
    ),
    "NotEnoughFuel": (
        "Commit failed: Insufficient funds for transaction fees or collateral. "
        "The node wallet needs a fuel UTXO of a few ADA."
    ),
}

# Layer-one rejections of a signed commit
L1_SUBMIT_MESSAGES = {
    "InsufficientCollateral": "Commit transaction is missing collateral. Keep at least 5 ADA free in the wallet.",
    "NoCollateralInputs": "Commit transaction is missing collateral. Keep at least 5 ADA free in the wallet.",
    "BadInputsUTxO": "The UTXO being committed has already been spent or does not exist.",
    "ValueNotConservedUTxO": "Transaction value mismatch, the committed UTXO may have been spent.",
    "TranslationLogicMissingInput": "Transaction references a UTXO that does not exist or has been spent.",
}


class HeadService:
    """Talks to each party's Hydra node over HTTP, and drives head commands"""

    def __init__(
        self,
        directory: Optional[PartyDirectory] = None,
        history: Optional[SnapshotHistoryStore] = None,
        host: Optional[str] = None,
        http_timeout: Optional[float] = None,
        head_query_timeout: Optional[float] = None,
        command_timeout: Optional[float] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        debug_mode: bool = False,
        tmp_dir: Optional[str] = None,
    ):
        self.directory = directory or PartyDirectory()
        self.history = history if history is not None else SnapshotHistoryStore()
        self.host = host or settings.HYDRA_HOST
        self.http_timeout = http_timeout if http_timeout is not None else settings.HYDRA_HTTP_TIMEOUT
        self.head_query_timeout = (
            head_query_timeout if head_query_timeout is not None else settings.HYDRA_HEAD_QUERY_TIMEOUT
        )
        self.command_timeout = command_timeout
        self.http_transport = http_transport
        self.tmp_dir = tmp_dir or settings.tx_tmp_dir
        # Debug mode: log all HTTP requests and responses
        self.debug_mode = debug_mode or settings.HYDRA_DEBUG
        # Last observed head status per party
        self.status_cache: Dict[str, HeadStatus] = {}

    def _base_url(self, port: int) -> str:
        return f"http://{self.host}:{port}"

    def _client(self, timeout: Optional[float] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout if timeout is not None else self.http_timeout,
            transport=self.http_transport,
        )

    def _log_http_request(self, method: str, url: str, payload: Any = None):
        """Log HTTP request details (only in debug mode)"""
        if not self.debug_mode:
            return

        print("\n" + "=" * 80)
        print(f"🔵 HTTP REQUEST: {method} {url}")
        print("=" * 80)
        if payload:
            print("\nPayload:")
            if isinstance(payload, (dict, list)):
                print(json.dumps(payload, indent=2, ensure_ascii=False))
            else:
                print(payload)
        print("=" * 80)

    def _log_http_response(self, method: str, url: str, status_code: int, response_data: Any = None,
                           error: Optional[str] = None):
        """Log HTTP response details (only in debug mode)"""
        if not self.debug_mode:
            return

        print("\n" + "=" * 80)
        if error:
            print(f"🔴 HTTP RESPONSE ERROR: {method} {url}")
        else:
            print(f"🟢 HTTP RESPONSE: {method} {url}")
        print("=" * 80)
        print(f"Status Code: {status_code}")

        if error:
            print(f"\nError: {error}")
        if response_data:
            print("\nResponse Data:")
            if isinstance(response_data, (dict, list)):
                print(json.dumps(response_data, indent=2, ensure_ascii=False))
            else:
                print(response_data)
        print("=" * 80 + "\n")

    @staticmethod
    def _response_body(r: httpx.Response) -> Any:
        try:
            return r.json()
        except ValueError:
            return r.text

    @staticmethod
    def _error_message(body: Any, status_code: int) -> str:
        if isinstance(body, dict):
            return str(body.get("error") or body.get("message") or f"Hydra node returned error {status_code}")
        if isinstance(body, str) and body:
            return body[:200]
        return f"Hydra node returned error {status_code}"

    async def _get(self, party: str, path: str, port: Optional[int] = None,
                   timeout: Optional[float] = None) -> Any:
        port = self.directory.api_port(party, port)
        url = f"{self._base_url(port)}{path}"
        self._log_http_request("GET", url)
        try:
            async with self._client(timeout) as client:
                r = await client.get(url, headers={"Accept": "application/json"})
        except httpx.TimeoutException as e:
            self._log_http_response("GET", url, 0, error=str(e))
            raise UpstreamUnavailable(
                f"Request timeout: The Hydra node for {party} did not respond in time.",
                port=port, party=party, reason="timeout",
                hint="Please check if the node is running.",
            ) from e
        except httpx.ConnectError as e:
            self._log_http_response("GET", url, 0, error=str(e))
            raise UpstreamUnavailable(
                f"Connection refused: Unable to connect to {party}'s Hydra node.",
                port=port, party=party, reason="connection",
                hint=f"Please check if the node is running on port {port}.",
            ) from e
        except httpx.HTTPError as e:
            self._log_http_response("GET", url, 0, error=str(e))
            raise UpstreamUnavailable(
                f"Network error: Failed to connect to {party}'s Hydra node: {e}",
                port=port, party=party, reason="network",
                hint="Please check if the node is running.",
            ) from e

        body = self._response_body(r)
        self._log_http_response("GET", url, r.status_code, body)
        if not r.is_success:
            logger.error(f"GET {path} for {party} returned {r.status_code}: {body}")
            raise UpstreamError(self._error_message(body, r.status_code), r.status_code, body, party)
        return body

    # ========== QUERIES ==========
    async def get_head_status(self, party: str, port: Optional[int] = None) -> HeadStatus:
        """GET /head"""
        data = await self._get(party, "/head", port=port, timeout=self.head_query_timeout)
        if not isinstance(data, dict) or not isinstance(data.get("tag"), str):
            raise UpstreamError(f"Unexpected /head response for {party}", 200, data, party)
        status = HeadStatus.model_validate(data)
        self.status_cache[party] = status
        logger.info(f"{party} head status: {status.tag}")
        return status

    async def get_snapshot_utxo(self, party: str, port: Optional[int] = None) -> Dict[str, Utxo]:
        """GET /snapshot/utxo"""
        data = await self._get(party, "/snapshot/utxo", port=port)
        if not isinstance(data, dict):
            raise UpstreamError(f"Unexpected /snapshot/utxo response for {party}", 200, data, party)
        try:
            return {ref: Utxo.model_validate(output) for ref, output in data.items()}
        except ValidationError as e:
            raise UpstreamError(f"Malformed UTXO in /snapshot/utxo response for {party}: {e}", 200, data, party) from e

    async def get_balance(self, party: str, port: Optional[int] = None) -> int:
        """Lovelace held by the party's address in its view of the head"""
        address = await self.directory.address_of(party)
        utxos = await self.get_snapshot_utxo(party, port=port)
        return sum(u.lovelace for u in utxos.values() if u.address == address)

    async def get_history(self, party: str, port: Optional[int] = None) -> List[HistoryEntry]:
        """Accumulated confirmed transactions plus pending ones from the head state"""
        head = await self._get(party, "/head", port=port, timeout=self.head_query_timeout)
        contents = head.get("contents") if isinstance(head, dict) else None
        coordinated = (contents or {}).get("coordinatedHeadState") or {}
        all_txs = coordinated.get("allTxs") or {}
        confirmed = (coordinated.get("confirmedSnapshot") or {}).get("snapshot") or {}
        confirmed_txs = confirmed.get("confirmed") or []
        snapshot_number = confirmed.get("number") or 0
        head_id = confirmed.get("headId")

        if snapshot_number > 0 and confirmed_txs:
            self.history.put(party, snapshot_number, confirmed_txs)

        entries = self.history.transactions(party)
        known = {e.tx_id for e in entries}
        now = time.time()
        for tx_id, tx in all_txs.items():
            if tx_id in known:
                continue
            entries.append(HistoryEntry(
                txId=tx_id,
                cborHex=tx.get("cborHex") if isinstance(tx, dict) else tx,
                snapshot_number=None,
                type="pending",
                timestamp=now,
                headId=head_id,
            ))

        entries.sort(key=lambda e: (e.snapshot_number or 0, e.timestamp), reverse=True)
        return entries

    # ========== COMMANDS ==========
    def _other_party_vkeys(self, party: str, others: List[str]) -> List[str]:
        vkeys = []
        for other in others:
            if other == party:
                continue
            try:
                vkeys.append(self.directory.hydra_vkey_hex(other))
            except HydraError as e:
                logger.warning(f"⚠️ Failed to read vkey for {other}, proceeding without it: {e}")
        return vkeys

    async def run_action(
        self,
        action: str,
        parties: List[str],
        other_parties: Optional[List[str]] = None,
        ports: Optional[Dict[str, int]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, CommandResult]:
        """
        Send one lifecycle command to every selected party concurrently.

        For Init, each party is told about the hydra vkeys of ``other_parties``
        (defaults to the rest of the selection).
        """
        head_action = HeadAction.parse(action)
        if not parties:
            raise InvalidInput("At least one party is required")
        ports = ports or {}
        # Unknown parties are rejected before anything is sent
        resolved_ports = {p: self.directory.api_port(p, ports.get(p)) for p in parties}

        async def _one(party: str) -> CommandResult:
            port = resolved_ports[party]
            vkeys: List[str] = []
            if head_action is HeadAction.INIT:
                vkeys = self._other_party_vkeys(party, other_parties or parties)
                if not vkeys:
                    logger.warning(f"⚠️ No other party vkeys for {party}, sending Init without them")
            channel = CommandChannel(
                port,
                party=party,
                host=self.host,
                timeout=self.command_timeout,
                http_timeout=self.http_timeout,
                http_transport=self.http_transport,
            )
            return await channel.send(head_action, other_parties=vkeys, body=body)

        results = await asyncio.gather(*(_one(p) for p in parties))
        return dict(zip(parties, results))

    async def submit_transaction(self, party: str, cbor_hex: str, port: Optional[int] = None) -> Any:
        """
        Submit a signed transaction to a party's head.

        Refused unless the party's head is Open or SnapshotConfirmed.
        """
        if not cbor_hex or not isinstance(cbor_hex, str):
            raise InvalidInput("Transaction CBOR hex is required")

        # A cached refusal may be stale, re-read the head once before refusing
        status = self.status_cache.get(party)
        if status is None or not status.accepts_transactions:
            status = await self.get_head_status(party, port=port)
        if not status.accepts_transactions:
            raise HeadNotOpen(f"Head for {party} is {status.tag}, transactions need an Open head")

        port = self.directory.api_port(party, port)
        url = f"{self._base_url(port)}/transaction"
        payload: Dict[str, Any] = {"cborHex": cbor_hex}
        logger.info(f"Submitting transaction to {party} (port {port}), CBOR length {len(cbor_hex)}")

        try:
            async with self._client() as client:
                self._log_http_request("POST", url, payload)
                r = await client.post(url, json=payload)
                body = self._response_body(r)
                self._log_http_response("POST", url, r.status_code, body)

                # Older nodes only expose /new-transaction
                if r.status_code in (404, 501):
                    logger.info(f"/transaction returned {r.status_code}, trying /new-transaction")
                    url = f"{self._base_url(port)}/new-transaction"
                    payload = {"transaction": cbor_hex}
                    self._log_http_request("POST", url, payload)
                    r = await client.post(url, json=payload)
                    body = self._response_body(r)
                    self._log_http_response("POST", url, r.status_code, body)
        except httpx.HTTPError as e:
            self._log_http_response("POST", url, 0, error=str(e))
            raise UpstreamUnavailable(
                f"Failed to submit transaction to {party}'s Hydra node: {e}",
                port=port, party=party, reason="connection",
                hint=f"Please check if the node is running on port {port}.",
            ) from e

        if r.is_success:
            logger.info(f"Successfully submitted transaction to {party}")
            return body

        if isinstance(body, dict) and body.get("tag") == "SubmitTxInvalid":
            validation_error = str(body.get("validationError") or "")
            logger.error(f"Validation error details: {validation_error}")
            raise TransactionRejected(self._validation_message(validation_error),
                                      validation_error=validation_error, party=party)

        logger.error(f"Hydra node error response ({r.status_code}): {body}")
        raise UpstreamError(self._error_message(body, r.status_code), r.status_code, body, party)

    async def commit(
        self,
        party: str,
        utxo_refs: List[str],
        port: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> CommitResult:
        """
        Commit layer-one UTXOs from the party's wallet into the head.

        The node drafts the commit transaction (POST /commit); the party signs
        it with its payment key and it is submitted on layer one. While the
        head is Open the same flow produces an incremental deposit.

        Raises:
            InvalidInput, HeadNotOpen (head still Idle), UpstreamError,
            UpstreamUnavailable, CliFailure, TransactionRejected
        """
        if not utxo_refs:
            raise InvalidInput("At least one UTXO reference is required")
        for ref in utxo_refs:
            parse_utxo_ref(ref)
        port = self.directory.api_port(party, port)
        ledger_cli = self.directory.ledger_cli

        # Step 1: the UTXOs must sit at the party's own address on layer one
        address = await self.directory.address_of(party)
        wallet = await ledger_cli.query_utxo(address, timeout=timeout)
        logger.info(f"🔍 Step 1: {len(wallet)} layer-one UTXOs at {party}'s address")
        by_lower = {key.lower(): key for key in wallet}
        selected: Dict[str, Any] = {}
        for ref in utxo_refs:
            key = ref if ref in wallet else by_lower.get(ref.lower())
            if key is None:
                raise InvalidInput(
                    f"UTXO {ref} not found or already spent in {party}'s wallet "
                    f"({len(wallet)} UTXOs available)"
                )
            output = wallet[key]
            if isinstance(output, dict) and output.get("address") not in (None, address):
                raise InvalidInput(f"UTXO {ref} does not belong to {party}'s address {address}")
            selected[key] = output
        try:
            lovelace = sum(Utxo.model_validate(output).lovelace for output in selected.values())
        except ValidationError as e:
            raise MalformedCliOutput(f"Unexpected UTXO shape from cardano-cli: {e}") from e

        # Step 2: the head must at least be initialized
        head_tag = None
        try:
            head_tag = (await self.get_head_status(party, port=port)).tag
        except (UpstreamUnavailable, UpstreamError) as e:
            logger.warning(f"⚠️ Could not check head status for {party}, committing anyway: {e.message}")
        if head_tag == HeadTag.IDLE.value:
            raise HeadNotOpen(f"Head for {party} is Idle, send Init before committing")
        logger.info(f"📦 Step 2: Committing {lovelace_to_ada(lovelace)} from {party} (head {head_tag})")

        # Step 3: node drafts the commit transaction
        url = f"{self._base_url(port)}/commit"
        try:
            async with self._client() as client:
                self._log_http_request("POST", url, selected)
                r = await client.post(url, json=selected)
                body = self._response_body(r)
                self._log_http_response("POST", url, r.status_code, body)
        except httpx.HTTPError as e:
            self._log_http_response("POST", url, 0, error=str(e))
            raise UpstreamUnavailable(
                f"Failed to request a commit from {party}'s Hydra node: {e}",
                port=port, party=party, reason="connection",
                hint=f"Please check if the node is running on port {port}.",
            ) from e

        if not r.is_success:
            text = body if isinstance(body, str) else json.dumps(body)
            message = next(
                (msg for marker, msg in COMMIT_ERROR_MESSAGES.items() if marker in text),
                self._error_message(body, r.status_code),
            )
            logger.error(f"Commit refused for {party} ({r.status_code}): {text[:500]}")
            raise UpstreamError(message, r.status_code, body, party)
        if not isinstance(body, dict) or not body.get("cborHex"):
            raise UpstreamError(f"Commit response for {party} has no cborHex", r.status_code, body, party)

        # Step 4: sign the draft and submit it on layer one
        signing_key = self.directory.signing_key_path(party)
        with tempfile.TemporaryDirectory(prefix="hydra-commit-", dir=self.tmp_dir) as workdir:
            draft_file = Path(workdir) / "commit.draft"
            signed_file = Path(workdir) / "commit.signed"
            key_store.save_envelope(
                draft_file,
                body.get("type") or "Tx ConwayEra",
                body.get("description") or "",
                body["cborHex"],
            )
            logger.info("✍️  Step 4: Signing and submitting commit transaction...")
            await ledger_cli.sign_tx(draft_file, signing_key, signed_file, timeout=timeout)
            try:
                output = await ledger_cli.submit(signed_file, timeout=timeout)
            except CliFailure as e:
                message = next(
                    (msg for marker, msg in L1_SUBMIT_MESSAGES.items() if marker in e.stderr), None
                )
                if message is None:
                    raise
                raise TransactionRejected(message, validation_error=e.stderr, party=party) from e

        logger.info(f"✅ Commit submitted for {party}: {', '.join(selected)}")
        return CommitResult(
            party=party,
            utxo_refs=list(selected),
            lovelace=lovelace,
            head_tag=head_tag,
            tx_id=body.get("txId"),
            submit_output=output.strip(),
        )

    @staticmethod
    def _validation_message(validation_error: str) -> str:
        for marker, message in VALIDATION_MESSAGES.items():
            if marker in validation_error:
                return message
        if "UtxoFailure" in validation_error:
            return f"Transaction validation failed: {validation_error}"
        return f"Transaction validation failed: {validation_error or 'Invalid transaction'}"


def create_head_service_with_debug(debug_mode: bool = False) -> HeadService:
    """Create Head Service instance with specified debug mode"""
    return HeadService(debug_mode=debug_mode)
