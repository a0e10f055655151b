"""
Snapshot history - accumulates confirmed snapshot transactions per party across polls
"""
import time
from typing import Any, Dict, List

from hydrahead.models import HistoryEntry, SnapshotRecord


class SnapshotHistoryStore:
    """In-memory party -> snapshot number -> SnapshotRecord"""

    def __init__(self):
        self._store: Dict[str, Dict[int, SnapshotRecord]] = {}

    def get(self, party: str) -> List[SnapshotRecord]:
        """Snapshots seen for a party, newest first"""
        snapshots = self._store.get(party, {})
        return sorted(snapshots.values(), key=lambda s: s.snapshot_number, reverse=True)

    def put(self, party: str, snapshot_number: int, transactions: List[Any]) -> None:
        # Some node versions list confirmed transactions by id only
        transactions = [tx if isinstance(tx, dict) else {"txId": str(tx)} for tx in transactions]
        party_history = self._store.setdefault(party, {})
        existing = party_history.get(snapshot_number)
        if existing is None:
            party_history[snapshot_number] = SnapshotRecord(
                snapshot_number=snapshot_number,
                transactions=list(transactions),
                timestamp=time.time(),
            )
            return

        # Same snapshot seen again, merge in transactions not recorded yet
        known = {tx.get("txId") for tx in existing.transactions}
        new_txs = [tx for tx in transactions if tx.get("txId") and tx.get("txId") not in known]
        if new_txs:
            party_history[snapshot_number] = existing.model_copy(
                update={"transactions": existing.transactions + new_txs}
            )

    def transactions(self, party: str) -> List[HistoryEntry]:
        entries = []
        for snapshot in self.get(party):
            for tx in snapshot.transactions:
                entries.append(HistoryEntry.model_validate({
                    **tx,
                    "snapshot_number": snapshot.snapshot_number,
                    "type": "confirmed",
                    "timestamp": snapshot.timestamp,
                }))
        return entries
