"""Tests for the in-memory document store."""

import asyncio
from datetime import datetime

import pytest

from core import MemoryDocumentStore, SERVER_TIMESTAMP
from core.errors import ConnectivityError, NotFoundError, TransactionConflict, ValidationError
from tests.conftest import settle


@pytest.mark.asyncio
async def test_set_resolves_server_timestamp(store):
    await store.set("queue", "a", {"status": "waiting", "created_at": SERVER_TIMESTAMP})

    snapshot = await store.get("queue", "a")
    assert snapshot.exists
    assert isinstance(snapshot.get("created_at"), datetime)
    assert snapshot.version is not None


@pytest.mark.asyncio
async def test_missing_document_snapshot(store):
    snapshot = await store.get("queue", "nope")
    assert not snapshot.exists
    assert snapshot.get("status", "gone") == "gone"


@pytest.mark.asyncio
async def test_query_filters_orders_and_limits(store):
    for doc_id, role, added_at in [("c", "venter", 3), ("a", "venter", 1), ("b", "listener", 2), ("d", "venter", 4)]:
        await store.set("queue", doc_id, {"role": role, "status": "waiting", "added_at": added_at})

    query = store.collection("queue").where("role", "==", "venter").order_by("added_at").limit(2)
    results = await store.query(query)

    assert [doc.id for doc in results] == ["a", "c"]
    assert await store.count(store.collection("queue").where("added_at", ">=", 2)) == 3


@pytest.mark.asyncio
async def test_documents_without_filtered_field_never_match(store):
    await store.set("queue", "a", {"role": "listener"})
    query = store.collection("queue").where("room_status", "!=", "open")
    assert await store.query(query) == []


@pytest.mark.asyncio
async def test_update_of_missing_document_raises(store):
    with pytest.raises(NotFoundError):
        await store.update("queue", "missing", {"status": "matched"})


@pytest.mark.asyncio
async def test_delete_reports_whether_document_existed(store):
    await store.set("queue", "a", {"status": "waiting"})
    assert await store.delete("queue", "a") is True
    assert await store.delete("queue", "a") is False


@pytest.mark.asyncio
async def test_concurrent_transactions_rerun_on_conflict(store):
    await store.set("counters", "c", {"value": 0})

    async def increment(txn):
        snapshot = await txn.get("counters", "c")
        txn.update("counters", "c", {"value": snapshot.get("value") + 1})

    await asyncio.gather(*(store.run_transaction(increment) for _ in range(3)))

    assert (await store.get("counters", "c")).get("value") == 3


@pytest.mark.asyncio
async def test_transaction_gives_up_after_max_attempts():
    store = MemoryDocumentStore(transaction_max_attempts=2)
    await store.set("counters", "c", {"value": 0})
    attempts = []

    async def always_conflicting(txn):
        attempts.append(1)
        snapshot = await txn.get("counters", "c")
        # Someone else writes between our read and our commit.
        await store.update("counters", "c", {"value": snapshot.get("value") + 10})
        txn.update("counters", "c", {"value": -1})

    with pytest.raises(TransactionConflict):
        await store.run_transaction(always_conflicting)
    assert len(attempts) == 2
    assert (await store.get("counters", "c")).get("value") == 20


@pytest.mark.asyncio
async def test_transaction_function_errors_are_not_retried(store):
    calls = []

    async def rejecting(txn):
        calls.append(1)
        await txn.get("queue", "x")
        raise ValidationError("nope")

    with pytest.raises(ValidationError):
        await store.run_transaction(rejecting)
    assert calls == [1]


@pytest.mark.asyncio
async def test_transaction_reads_must_precede_writes(store):
    async def misordered(txn):
        txn.set("queue", "a", {"status": "waiting"})
        await txn.get("queue", "a")

    with pytest.raises(RuntimeError):
        await store.run_transaction(misordered)
    assert not (await store.get("queue", "a")).exists


@pytest.mark.asyncio
async def test_batch_commits_atomically(store):
    await store.set("queue", "a", {"status": "waiting"})

    batch = store.batch()
    batch.delete("queue", "a")
    batch.update("queue", "missing", {"status": "matched"})
    with pytest.raises(NotFoundError):
        await batch.commit()

    assert (await store.get("queue", "a")).exists


@pytest.mark.asyncio
async def test_subscription_delivers_changes_until_unsubscribed(store):
    seen = []
    query = store.collection("queue").where("status", "==", "waiting").order_by("added_at")
    unsubscribe = store.subscribe(query, lambda docs: seen.append([d.id for d in docs]))

    await settle()
    await store.set("queue", "a", {"status": "waiting", "added_at": 1})
    await settle()
    await store.set("other", "x", {"status": "waiting", "added_at": 0})
    await settle()
    unsubscribe()
    await store.set("queue", "b", {"status": "waiting", "added_at": 2})
    await settle()

    assert seen == [[], ["a"]]
    assert store.listener_count == 0


@pytest.mark.asyncio
async def test_watch_reports_deletion(store):
    seen = []
    await store.set("queue", "a", {"status": "waiting"})
    store.watch("queue", "a", lambda snapshot: seen.append(snapshot.exists))

    await settle()
    await store.delete("queue", "a")
    await settle()

    assert seen == [True, False]


@pytest.mark.asyncio
async def test_listener_errors_go_to_error_callback(store):
    errors = []

    def broken(docs):
        raise ValueError("boom")

    store.subscribe(store.collection("queue"), broken, on_error=errors.append)
    await settle()

    assert len(errors) == 1
    assert isinstance(errors[0], ValueError)


@pytest.mark.asyncio
async def test_offline_store_raises_connectivity_error(store):
    store.set_online(False)

    with pytest.raises(ConnectivityError):
        await store.get("queue", "a")
    with pytest.raises(ConnectivityError):
        await store.ping()

    store.set_online(True)
    await store.ping()
