from hydrahead.services.history_tracker import SnapshotHistoryStore


def test_snapshots_are_newest_first():
    store = SnapshotHistoryStore()
    store.put("alice", 1, [{"txId": "a"}])
    store.put("alice", 3, [{"txId": "c"}])
    store.put("alice", 2, [{"txId": "b"}])

    assert [s.snapshot_number for s in store.get("alice")] == [3, 2, 1]
    assert [e.tx_id for e in store.transactions("alice")] == ["c", "b", "a"]


def test_parties_are_isolated():
    store = SnapshotHistoryStore()
    store.put("alice", 1, [{"txId": "a"}])

    assert store.get("bob") == []
    assert store.transactions("bob") == []


def test_repeated_snapshot_merges_new_transactions():
    store = SnapshotHistoryStore()
    store.put("alice", 4, [{"txId": "x", "cborHex": "84a1"}])
    first_seen = store.get("alice")[0].timestamp
    store.put("alice", 4, [{"txId": "x"}, "y"])

    [snapshot] = store.get("alice")
    assert [tx["txId"] for tx in snapshot.transactions] == ["x", "y"]
    assert snapshot.transactions[0]["cborHex"] == "84a1"
    assert snapshot.timestamp == first_seen


def test_transaction_entries_carry_snapshot_details():
    store = SnapshotHistoryStore()
    store.put("bob", 7, ["tx7"])

    [entry] = store.transactions("bob")
    assert entry.tx_id == "tx7"
    assert entry.snapshot_number == 7
    assert entry.type == "confirmed"
    assert entry.model_dump(by_alias=True)["txId"] == "tx7"
