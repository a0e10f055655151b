"""
Ledger CLI - cardano-cli subprocess wrapper (address derivation, raw build, signing, layer-one query and submit)
"""
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from hydrahead.config import settings
from hydrahead.errors import CliFailure, MalformedCliOutput

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

# cardano-cli is heavy on memory and the node socket; keep concurrency low
MAX_CONCURRENT_CLI = 2


class LedgerCli:
    """Thin async wrapper around the cardano-cli binary"""

    def __init__(
        self,
        cli_path: Optional[str] = None,
        testnet_magic: Optional[int] = None,
        era: Optional[str] = None,
        timeout: Optional[float] = None,
        socket_path: Optional[str] = None,
    ):
        self.cli_path = cli_path or settings.CARDANO_CLI_PATH
        self.testnet_magic = testnet_magic if testnet_magic is not None else settings.TESTNET_MAGIC
        self.era = settings.CARDANO_ERA if era is None else era
        self.timeout = timeout if timeout is not None else settings.CARDANO_CLI_TIMEOUT
        self.socket_path = socket_path or settings.CARDANO_NODE_SOCKET_PATH
        self._semaphore = asyncio.Semaphore(MAX_CONCURRENT_CLI)

    def _transaction_args(self, *args: str) -> List[str]:
        prefix = [self.era] if self.era else []
        return [*prefix, "transaction", *args]

    async def run(self, args: Sequence[str], timeout: Optional[float] = None) -> str:
        """Run cardano-cli with args, return stdout. Timeout or cancellation kills the child."""
        command = [self.cli_path, *args]
        deadline = timeout if timeout is not None else self.timeout
        logger.debug(f"Running: {' '.join(command)}")

        async with self._semaphore:
            try:
                proc = await asyncio.create_subprocess_exec(
                    *command,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except FileNotFoundError as e:
                raise CliFailure(f"cardano-cli not found at {self.cli_path}", command) from e
            except PermissionError as e:
                raise CliFailure(f"cardano-cli at {self.cli_path} is not executable", command) from e

            try:
                stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=deadline)
            except asyncio.TimeoutError as e:
                await self._kill(proc)
                raise CliFailure(
                    f"cardano-cli timed out after {deadline}s", command
                ) from e
            except asyncio.CancelledError:
                await self._kill(proc)
                raise

        out = stdout.decode("utf-8", errors="replace")
        err = stderr.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            logger.error(f"cardano-cli exited with {proc.returncode}: {err.strip()}")
            raise CliFailure(
                f"cardano-cli failed with exit code {proc.returncode}",
                command,
                stdout=out,
                stderr=err,
                returncode=proc.returncode,
            )
        return out

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()

    async def address_build(self, payment_vkey: PathLike, timeout: Optional[float] = None) -> str:
        stdout = await self.run(
            [
                "address", "build",
                "--payment-verification-key-file", str(payment_vkey),
                "--testnet-magic", str(self.testnet_magic),
            ],
            timeout=timeout,
        )
        address = stdout.strip()
        if not address:
            raise MalformedCliOutput("cardano-cli address build returned an empty address")
        return address

    async def build_raw(
        self,
        tx_in: str,
        tx_outs: Sequence[Tuple[str, int]],
        out_file: PathLike,
        fee: int = 0,
        timeout: Optional[float] = None,
    ) -> None:
        args = ["build-raw", "--tx-in", tx_in]
        for address, lovelace in tx_outs:
            args += ["--tx-out", f"{address}+{lovelace}"]
        args += ["--fee", str(fee), "--out-file", str(out_file)]
        await self.run(self._transaction_args(*args), timeout=timeout)

    async def sign(
        self,
        tx_body_file: PathLike,
        signing_key_file: PathLike,
        out_file: PathLike,
        timeout: Optional[float] = None,
    ) -> None:
        await self.run(
            self._transaction_args(
                "sign",
                "--tx-body-file", str(tx_body_file),
                "--signing-key-file", str(signing_key_file),
                "--out-file", str(out_file),
            ),
            timeout=timeout,
        )

    async def sign_tx(
        self,
        tx_file: PathLike,
        signing_key_file: PathLike,
        out_file: PathLike,
        timeout: Optional[float] = None,
    ) -> None:
        """Sign a complete transaction (e.g. a node-drafted commit), not a raw body"""
        await self.run(
            self._transaction_args(
                "sign",
                "--tx-file", str(tx_file),
                "--signing-key-file", str(signing_key_file),
                "--testnet-magic", str(self.testnet_magic),
                "--out-file", str(out_file),
            ),
            timeout=timeout,
        )

    async def query_utxo(self, address: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Layer-one UTXOs at an address, keyed by txHash#index"""
        stdout = await self.run(
            [
                "query", "utxo",
                "--address", address,
                "--testnet-magic", str(self.testnet_magic),
                "--socket-path", str(self.socket_path),
                "--out-file", "/dev/stdout",
            ],
            timeout=timeout,
        )
        try:
            utxos = json.loads(stdout)
        except json.JSONDecodeError as e:
            raise MalformedCliOutput(f"Failed to parse UTXO data from cardano-cli: {e}") from e
        if not isinstance(utxos, dict):
            raise MalformedCliOutput(f"Invalid UTXO response from cardano-cli: {type(utxos).__name__}")
        return utxos

    async def submit(self, tx_file: PathLike, timeout: Optional[float] = None) -> str:
        """Submit a signed transaction to the layer-one node"""
        return await self.run(
            self._transaction_args(
                "submit",
                "--tx-file", str(tx_file),
                "--testnet-magic", str(self.testnet_magic),
                "--socket-path", str(self.socket_path),
            ),
            timeout=timeout,
        )

    @staticmethod
    def read_signed_cbor(signed_file: PathLike) -> str:
        """Extract cborHex from a signed transaction envelope"""
        path = Path(signed_file)
        try:
            content = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise MalformedCliOutput(f"Failed to read signed transaction {path}: {e}") from e

        cbor_hex = content.get("cborHex") if isinstance(content, dict) else None
        if not isinstance(cbor_hex, str) or not cbor_hex:
            keys = list(content.keys()) if isinstance(content, dict) else type(content).__name__
            raise MalformedCliOutput(
                f"Invalid transaction format - cborHex not found (got {keys})"
            )
        try:
            bytes.fromhex(cbor_hex)
        except ValueError as e:
            raise MalformedCliOutput(f"Signed transaction cborHex is not hex: {e}") from e
        return cbor_hex
