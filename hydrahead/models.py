"""
Boundary models for head node responses, build requests and command results.
"""
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from hydrahead.errors import InvalidInput

LOVELACE_PER_ADA = 1_000_000


class HeadAction(str, Enum):
    INIT = "init"
    CLOSE = "close"
    FANOUT = "fanout"

    @property
    def tag(self) -> str:
        return self.value.capitalize()

    @classmethod
    def parse(cls, action: str) -> "HeadAction":
        try:
            return cls(str(action).lower())
        except ValueError:
            valid = ", ".join(a.value for a in cls)
            raise InvalidInput(f"Invalid action '{action}', expected one of: {valid}")


class HeadTag(str, Enum):
    IDLE = "Idle"
    INITIAL = "Initial"
    INITIALIZING = "Initializing"
    OPEN = "Open"
    SNAPSHOT_CONFIRMED = "SnapshotConfirmed"
    CLOSED = "Closed"
    FANOUT_POSSIBLE = "FanoutPossible"
    FINAL = "Final"
    FINALIZED = "Finalized"


# Statuses in which the head accepts new transactions
SUBMITTABLE_TAGS = (HeadTag.OPEN.value, HeadTag.SNAPSHOT_CONFIRMED.value)


class ChannelState(str, Enum):
    CONNECTING = "connecting"
    AWAITING_GREETING = "awaiting_greeting"
    COMMAND_SENT = "command_sent"
    AWAITING_RESPONSE = "awaiting_response"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


class CommandOutcome(str, Enum):
    COMPLETED = "completed"
    ACCEPTED_ASYNC = "accepted_async"
    FALLBACK = "fallback"
    FAILED = "failed"


class CommandResult(BaseModel):
    """Outcome of one lifecycle command delivered to one party's node"""

    party: Optional[str] = None
    action: HeadAction
    outcome: CommandOutcome
    state: ChannelState
    message: str
    response: Optional[Any] = None
    note: Optional[str] = None
    error_kind: Optional[str] = None
    http_status: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.outcome is not CommandOutcome.FAILED

    @property
    def tag(self) -> str:
        return self.action.tag


class UtxoValue(BaseModel):
    model_config = ConfigDict(extra="allow")

    lovelace: int = Field(default=0, ge=0)


class Utxo(BaseModel):
    model_config = ConfigDict(extra="allow")

    address: str
    value: UtxoValue = Field(default_factory=UtxoValue)

    @property
    def lovelace(self) -> int:
        return self.value.lovelace


class HeadStatus(BaseModel):
    model_config = ConfigDict(extra="allow")

    tag: str

    @property
    def accepts_transactions(self) -> bool:
        return self.tag in SUBMITTABLE_TAGS


class BuildTxRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_party: str = Field(alias="fromParty", min_length=1)
    to_party: str = Field(alias="toParty", min_length=1)
    utxo_ref: str = Field(alias="utxoRef", min_length=1)
    utxo: Utxo
    target_address: str = Field(alias="targetAddress", min_length=1)
    send_half: bool = Field(default=False, alias="sendHalf")

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "BuildTxRequest":
        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            missing = [str(err["loc"][0]) for err in e.errors() if err.get("loc")]
            raise InvalidInput(f"Missing or invalid parameters: {', '.join(missing)}") from e


class BuildTxResult(BaseModel):
    transaction: str
    utxo_ref: str
    from_party: str
    actual_owner: str
    owner_verified: bool
    to_party: str
    target_address: str
    amount: str
    change: Optional[str] = None
    send_half: bool = False

    @property
    def transaction_bytes(self) -> bytes:
        return bytes.fromhex(self.transaction)


class CommitResult(BaseModel):
    """A node-drafted commit, signed by the party and submitted on layer one"""

    party: str
    utxo_refs: List[str]
    lovelace: int
    head_tag: Optional[str] = None
    tx_id: Optional[str] = None
    submit_output: str = ""

    @property
    def amount(self) -> str:
        return lovelace_to_ada(self.lovelace)


class SnapshotRecord(BaseModel):
    snapshot_number: int
    transactions: List[Dict[str, Any]]
    timestamp: float


class HistoryEntry(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    tx_id: Optional[str] = Field(default=None, alias="txId")
    snapshot_number: Optional[int] = None
    type: str
    timestamp: float

    @field_validator("type")
    @classmethod
    def _known_type(cls, v: str) -> str:
        if v not in ("confirmed", "pending"):
            raise ValueError(f"unknown history entry type {v}")
        return v


def parse_utxo_ref(utxo_ref: str) -> Tuple[str, int]:
    """Split ``txHash#index``; anything but two non-empty parts is rejected."""
    parts = str(utxo_ref).split("#")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise InvalidInput(
            f"Invalid UTXO reference format: {utxo_ref}. Expected: txHash#index"
        )
    tx_hash, index = parts
    if not index.isdigit():
        raise InvalidInput(f"Invalid UTXO output index in {utxo_ref}")
    return tx_hash, int(index)


def split_lovelace(total_lovelace: int, send_half: bool) -> Tuple[int, int]:
    """Return (send, change); halving floors and leaves the remainder as change."""
    if not send_half:
        return total_lovelace, 0
    send = total_lovelace // 2
    return send, total_lovelace - send


def lovelace_to_ada(lovelace: int) -> str:
    return f"{lovelace / LOVELACE_PER_ADA:.6f} ADA"
