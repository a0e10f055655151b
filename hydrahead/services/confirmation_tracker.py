"""
Confirmation Tracker - watch balances after a send until the transfer shows up

There is no transaction-id lookup: a transfer counts as confirmed once the
sender's balance dropped by 90% of the expected amount, or any recipient's
balance rose by 10% of it. The tolerance absorbs fees and rounding.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from hydrahead.config import settings

logger = logging.getLogger(__name__)

BalanceReader = Callable[[str], Awaitable[int]]

SENDER_DROP_RATIO = 0.9
RECIPIENT_RISE_RATIO = 0.1


class TrackingStatus(str, Enum):
    CONFIRMED = "confirmed"
    GAVE_UP = "gave_up"
    CANCELLED = "cancelled"


@dataclass
class PendingTransaction:
    from_party: str
    recipients: List[str]
    # None where the baseline read failed; such parties never confirm
    initial_balances: Dict[str, Optional[int]]
    expected_total: int
    created_at: float = field(default_factory=time.time)

    def is_confirmed(self, balances: Dict[str, Optional[int]]) -> bool:
        sender_before = self.initial_balances.get(self.from_party)
        sender_now = balances.get(self.from_party)
        if sender_before is not None and sender_now is not None:
            dropped = sender_before - sender_now
            if dropped >= self.expected_total * SENDER_DROP_RATIO:
                return True
        for recipient in self.recipients:
            before = self.initial_balances.get(recipient)
            current = balances.get(recipient)
            if before is None or current is None:
                continue
            risen = current - before
            if risen >= self.expected_total * RECIPIENT_RISE_RATIO:
                return True
        return False


@dataclass
class TrackingOutcome:
    status: TrackingStatus
    polls: int
    balances: Dict[str, Optional[int]] = field(default_factory=dict)

    @property
    def confirmed(self) -> bool:
        return self.status is TrackingStatus.CONFIRMED


class TrackingHandle:
    """Owned by the caller; wait() for the outcome or cancel() to stop polling"""

    def __init__(self, pending: PendingTransaction, task: "asyncio.Task[TrackingOutcome]"):
        self.pending = pending
        self._task = task

    @property
    def done(self) -> bool:
        return self._task.done()

    async def wait(self) -> TrackingOutcome:
        try:
            return await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if self._task.cancelled():
                return TrackingOutcome(TrackingStatus.CANCELLED, polls=0)
            raise

    async def cancel(self) -> TrackingOutcome:
        self._task.cancel()
        return await self.wait()


class ConfirmationTracker:

    def __init__(
        self,
        balance_reader: BalanceReader,
        poll_interval: Optional[float] = None,
        max_polls: Optional[int] = None,
    ):
        self.balance_reader = balance_reader
        self.poll_interval = poll_interval if poll_interval is not None else settings.CONFIRM_POLL_INTERVAL
        self.max_polls = max_polls if max_polls is not None else settings.CONFIRM_MAX_POLLS

    async def _read_balances(self, parties: List[str]) -> Dict[str, Optional[int]]:
        results = await asyncio.gather(
            *(self.balance_reader(p) for p in parties), return_exceptions=True
        )
        balances: Dict[str, Optional[int]] = {}
        for party, result in zip(parties, results):
            if isinstance(result, Exception):
                logger.warning(f"Balance read failed for {party}: {result}")
                balances[party] = None
            else:
                balances[party] = result
        return balances

    async def snapshot(self, from_party: str, recipients: List[str], expected_total: int) -> PendingTransaction:
        """
        Read the baseline balances. Call this before the transaction is
        submitted: the head applies it almost at once, so a later baseline
        already includes the transfer.
        """
        recipients = [r for r in recipients if r != from_party]
        initial = await self._read_balances([from_party] + recipients)
        for party, balance in initial.items():
            if balance is None:
                logger.warning(f"No baseline balance for {party}, its balance changes are ignored")
        return PendingTransaction(
            from_party=from_party,
            recipients=recipients,
            initial_balances=initial,
            expected_total=expected_total,
        )

    def start(self, pending: PendingTransaction) -> TrackingHandle:
        """Poll in the background against a baseline taken by snapshot()"""
        task = asyncio.create_task(self._poll(pending, [pending.from_party] + pending.recipients))
        return TrackingHandle(pending, task)

    async def begin_tracking(self, from_party: str, recipients: List[str], expected_total: int) -> TrackingHandle:
        """Snapshot current balances and start polling in the background"""
        pending = await self.snapshot(from_party, recipients, expected_total)
        return self.start(pending)

    async def _poll(self, pending: PendingTransaction, parties: List[str]) -> TrackingOutcome:
        balances: Dict[str, Optional[int]] = {}
        for poll in range(1, self.max_polls + 1):
            await asyncio.sleep(self.poll_interval)
            logger.debug(f"Polling for transaction confirmation (attempt {poll}/{self.max_polls})...")
            balances = await self._read_balances(parties)
            if pending.is_confirmed(balances):
                logger.info(
                    f"Transaction confirmed! {pending.from_party}: "
                    f"{pending.initial_balances.get(pending.from_party)} -> {balances.get(pending.from_party)}"
                )
                return TrackingOutcome(TrackingStatus.CONFIRMED, polls=poll, balances=balances)

        logger.info("Max polls reached, clearing pending transaction (transaction may still be processing)")
        return TrackingOutcome(TrackingStatus.GAVE_UP, polls=self.max_polls, balances=balances)
