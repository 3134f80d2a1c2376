"""Tests for the document stores and the audit storage built on them."""

import typing
from typing import AbstractSet

import gspread
import pytest

from receipt_desk.audit import AuditLogger
from receipt_desk.models.audit import AuditEventBuilder
from receipt_desk.revisions import RevisionEngine
from receipt_desk.services.storage import (
    DocumentAuditStorage,
    DocumentStore,
    DuplicateError,
    InMemoryDocumentStore,
    NotFoundError,
    StorageError,
    Transaction,
    TransactionConflictError,
)
from receipt_desk.services.storage import collections
from receipt_desk.services.storage.google_sheets import COLUMNS, GoogleSheetsDocumentStore

from conftest import MEMBER, SEEDED_RECEIPT


class TestInMemoryBasics:

    @pytest.mark.asyncio
    async def test_get_missing_document(self):
        store = InMemoryDocumentStore()
        assert await store.get("things", "nope") is None
        assert await store.get_versioned("things", "nope") == (None, 0)

    @pytest.mark.asyncio
    async def test_set_get_and_versions(self):
        store = InMemoryDocumentStore()
        await store.set("things", "a", {"n": 1})
        await store.set("things", "a", {"n": 2})
        assert await store.get_versioned("things", "a") == ({"n": 2}, 2)

    @pytest.mark.asyncio
    async def test_returned_documents_are_copies(self):
        store = InMemoryDocumentStore(seed={"things": {"a": {"tags": ["x"]}}})
        doc = await store.get("things", "a")
        doc["tags"].append("y")
        assert await store.get("things", "a") == {"tags": ["x"]}

    @pytest.mark.asyncio
    async def test_query_filters_on_equality(self):
        store = InMemoryDocumentStore(seed={"things": {
            "a": {"kind": "x", "n": 1},
            "b": {"kind": "y", "n": 2},
            "c": {"kind": "x", "n": 3},
        }})
        assert set(await store.query("things", {"kind": "x"})) == {"a", "c"}
        assert set(await store.query("things")) == {"a", "b", "c"}
        assert await store.query("empty") == {}

    @pytest.mark.asyncio
    async def test_update_merges_and_requires_existing(self):
        store = InMemoryDocumentStore(seed={"things": {"a": {"n": 1, "keep": True}}})
        merged = await store.update("things", "a", {"n": 2})
        assert merged == {"n": 2, "keep": True}
        with pytest.raises(NotFoundError):
            await store.update("things", "missing", {"n": 1})

    @pytest.mark.asyncio
    async def test_delete_leaves_a_tombstone_version(self):
        store = InMemoryDocumentStore(seed={"things": {"a": {"n": 1}}})
        await store.delete("things", "a")
        assert await store.get_versioned("things", "a") == (None, 2)


class TestTransactions:
    """Optimistic transactions: read versions are checked at commit."""

    @pytest.mark.asyncio
    async def test_writes_commit_together(self):
        store = InMemoryDocumentStore(seed={"things": {"a": {"n": 1}}})

        async def fn(tx):
            current = await tx.get("things", "a")
            tx.update("things", "a", {"n": current["n"] + 1})
            tx.create("log", "entry-1", {"from": current["n"]})
            return "done"

        assert await store.run_transaction(fn) == "done"
        assert await store.get("things", "a") == {"n": 2}
        assert await store.get("log", "entry-1") == {"from": 1}
        assert store.commit_count == 1

    @pytest.mark.asyncio
    async def test_conflict_is_retried_with_fresh_reads(self):
        store = InMemoryDocumentStore(seed={"things": {"a": {"n": 1}}})
        attempts = []

        async def fn(tx):
            current = await tx.get("things", "a")
            attempts.append(current["n"])
            if len(attempts) == 1:
                # Someone else writes between our read and our commit
                await store.set("things", "a", {"n": 10})
            tx.update("things", "a", {"n": current["n"] + 1})

        await store.run_transaction(fn)
        assert attempts == [1, 10]
        assert await store.get("things", "a") == {"n": 11}

    @pytest.mark.asyncio
    async def test_conflicts_exhaust_the_retry_budget(self):
        store = InMemoryDocumentStore(seed={"things": {"a": {"n": 1}}}, max_attempts=3)
        attempts = []

        async def fn(tx):
            current = await tx.get("things", "a")
            attempts.append(current["n"])
            await store.set("things", "a", {"n": current["n"] + 100})
            tx.update("things", "a", {"n": -1})

        with pytest.raises(TransactionConflictError):
            await store.run_transaction(fn)
        assert len(attempts) == 3
        assert (await store.get("things", "a"))["n"] != -1

    @pytest.mark.asyncio
    async def test_other_errors_abort_without_writing(self):
        store = InMemoryDocumentStore(seed={"things": {"a": {"n": 1}}})
        attempts = []

        async def fn(tx):
            attempts.append(1)
            await tx.get("things", "a")
            tx.update("things", "a", {"n": 2})
            raise ValueError("changed my mind")

        with pytest.raises(ValueError):
            await store.run_transaction(fn)
        assert attempts == [1]
        assert await store.get("things", "a") == {"n": 1}
        assert store.commit_count == 0

    @pytest.mark.asyncio
    async def test_reads_after_writes_are_refused(self):
        store = InMemoryDocumentStore()

        async def fn(tx):
            tx.set("things", "a", {"n": 1})
            await tx.get("things", "b")

        with pytest.raises(StorageError):
            await store.run_transaction(fn)

    @pytest.mark.asyncio
    async def test_create_over_a_read_document_is_a_duplicate(self):
        store = InMemoryDocumentStore(seed={"things": {"a": {"n": 1}}})

        async def fn(tx):
            await tx.get("things", "a")
            tx.create("things", "a", {"n": 2})

        with pytest.raises(DuplicateError):
            await store.run_transaction(fn)

    @pytest.mark.asyncio
    async def test_delete_and_recreate_between_read_and_commit_conflicts(self):
        store = InMemoryDocumentStore(seed={"things": {"a": {"n": 1}}}, max_attempts=1)

        async def fn(tx):
            await tx.get("things", "a")
            await store.delete("things", "a")
            await store.set("things", "a", {"n": 1})
            tx.update("things", "a", {"n": 2})

        with pytest.raises(TransactionConflictError):
            await store.run_transaction(fn)

    @pytest.mark.asyncio
    async def test_recreating_a_deleted_document(self):
        store = InMemoryDocumentStore(seed={"things": {"a": {"n": 1}}})
        await store.delete("things", "a")

        async def fn(tx):
            assert await tx.get("things", "a") is None
            tx.create("things", "a", {"n": 5})

        await store.run_transaction(fn)
        assert await store.get_versioned("things", "a") == ({"n": 5}, 3)


class TestSubscriptions:

    @pytest.mark.asyncio
    async def test_initial_snapshot_and_updates(self):
        store = InMemoryDocumentStore(seed={"things": {"a": {"owner": "u1"}}})
        snapshots = []

        await store.subscribe("things", snapshots.append)
        await store.set("things", "b", {"owner": "u2"})

        assert [set(s) for s in snapshots] == [{"a"}, {"a", "b"}]

    @pytest.mark.asyncio
    async def test_filtered_subscription(self):
        store = InMemoryDocumentStore(seed={"things": {"a": {"owner": "u1"}}})
        snapshots = []

        await store.subscribe("things", snapshots.append, where={"owner": "u1"})
        await store.set("things", "b", {"owner": "u2"})

        assert all(set(s) == {"a"} for s in snapshots)

    @pytest.mark.asyncio
    async def test_other_collections_do_not_notify(self):
        store = InMemoryDocumentStore()
        snapshots = []

        await store.subscribe("things", snapshots.append)
        await store.set("other", "x", {})

        assert snapshots == [{}]

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_updates(self):
        store = InMemoryDocumentStore()
        snapshots = []

        subscription = await store.subscribe("things", snapshots.append)
        subscription.unsubscribe()
        await store.set("things", "a", {})

        assert snapshots == [{}]
        assert not subscription.active

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_undo_the_write(self):
        store = InMemoryDocumentStore()
        calls = []

        def listener(snapshot):
            calls.append(snapshot)
            if snapshot:
                raise RuntimeError("listener bug")

        await store.subscribe("things", listener)
        await store.set("things", "a", {"n": 1})

        assert await store.get("things", "a") == {"n": 1}
        assert len(calls) == 2


class TestDocumentAuditStorage:

    @pytest.mark.asyncio
    async def test_events_by_entity_and_recent(self):
        storage = DocumentAuditStorage(InMemoryDocumentStore())
        first = AuditEventBuilder.receipt_mutated("create", "r1", "u1")
        second = AuditEventBuilder.receipt_mutated("update", "r1", "u1")
        other = AuditEventBuilder.receipt_mutated("create", "r2", "u1")
        for event in (first, second, other):
            assert await storage.append_event(event)

        by_entity = await storage.get_events_by_entity("receipt", "r1")
        assert [e.event_id for e in by_entity] == [first.event_id, second.event_id]

        recent = await storage.get_recent_events(limit=2)
        assert len(recent) == 2
        assert recent[0].timestamp >= recent[1].timestamp


class FakeWorksheet:
    """Just enough of gspread.Worksheet for the document store."""

    def __init__(self, failing: bool = False):
        self.rows = [list(COLUMNS)]
        self.row_count = 3
        self.failing = failing

    def get_all_values(self):
        return [list(row) for row in self.rows]

    def add_rows(self, rows):
        self.row_count += rows

    def update(self, range_name, values, value_input_option=None):
        if self.failing:
            raise gspread.exceptions.GSpreadException("quota exceeded")
        index = int(range_name.split(":")[0][1:])
        if index > self.row_count:
            raise gspread.exceptions.GSpreadException("exceeds grid limits")
        while len(self.rows) < index:
            self.rows.append([""] * len(COLUMNS))
        self.rows[index - 1] = list(values[0])


class FakeSheetsClient:

    def __init__(self):
        self.sheets = {}

    def get_collection_sheet(self, collection):
        return self.sheets.setdefault(collection, FakeWorksheet())


class TestGoogleSheetsDocumentStore:
    """The sheets-backed store, against an in-process fake worksheet."""

    @pytest.fixture
    def client(self):
        return FakeSheetsClient()

    @pytest.fixture
    def store(self, client):
        return GoogleSheetsDocumentStore(client=client, retry_wait_seconds=0.0)

    @pytest.mark.asyncio
    async def test_documents_round_trip_through_rows(self, store, client):
        await store.set("receipts", "r1", {"amount_cents": 1234, "owner_user_id": "u1"})
        assert await store.get_versioned("receipts", "r1") == (
            {"amount_cents": 1234, "owner_user_id": "u1"}, 1
        )
        row = client.sheets["receipts"].rows[1]
        assert row[0] == "r1"
        assert row[1] == "1"

    @pytest.mark.asyncio
    async def test_update_rewrites_the_same_row(self, store, client):
        await store.set("receipts", "r1", {"n": 1})
        await store.update("receipts", "r1", {"n": 2})
        assert len(client.sheets["receipts"].rows) == 2
        assert await store.get_versioned("receipts", "r1") == ({"n": 2}, 2)

    @pytest.mark.asyncio
    async def test_delete_keeps_a_tombstone_row(self, store, client):
        await store.set("receipts", "r1", {"n": 1})
        await store.delete("receipts", "r1")
        assert await store.get_versioned("receipts", "r1") == (None, 2)
        assert await store.query("receipts") == {}

    @pytest.mark.asyncio
    async def test_stale_transaction_conflicts(self, store):
        await store.set("receipts", "r1", {"n": 1})

        async def fn(tx):
            await tx.get("receipts", "r1")
            await store.set("receipts", "r1", {"n": 5})
            tx.update("receipts", "r1", {"n": 2})

        store._max_attempts = 1
        with pytest.raises(TransactionConflictError):
            await store.run_transaction(fn)
        assert await store.get("receipts", "r1") == {"n": 5}

    def test_malformed_rows_are_reported(self):
        with pytest.raises(StorageError):
            GoogleSheetsDocumentStore._parse_rows([COLUMNS, ["r1", "x", "", "{}"]])

    def test_blank_rows_are_skipped(self):
        rows = GoogleSheetsDocumentStore._parse_rows([COLUMNS, [], ["", "1"], ["r1", "3", "", ""]])
        assert list(rows) == ["r1"]
        assert rows["r1"].index == 4
        assert rows["r1"].data is None

    def test_duplicate_rows_keep_the_newest_version(self):
        rows = GoogleSheetsDocumentStore._parse_rows([
            COLUMNS,
            ["r1", "2", "", '{"n": 2}'],
            ["r1", "1", "", '{"n": 1}'],
        ])
        assert rows["r1"].index == 2
        assert rows["r1"].data == {"n": 2}

    @pytest.mark.asyncio
    async def test_new_rows_grow_the_grid(self, store, client):
        for n in range(5):
            await store.set("receipts", f"r{n}", {"n": n})

        sheet = client.sheets["receipts"]
        assert sheet.row_count >= 6
        assert [row[0] for row in sheet.rows[1:]] == ["r0", "r1", "r2", "r3", "r4"]

    @pytest.mark.asyncio
    async def test_failed_write_restores_the_rows_already_written(self, store, client):
        await store.set("receipts", "r1", {"n": 1})
        before = client.sheets["receipts"].get_all_values()
        client.sheets["revisions"] = FakeWorksheet(failing=True)

        async def fn(tx):
            await tx.get("receipts", "r1")
            tx.update("receipts", "r1", {"n": 2})
            tx.create("receipts", "r2", {"n": 3})
            tx.create("revisions", "v1", {"receipt_id": "r1"})

        with pytest.raises(StorageError):
            await store.run_transaction(fn)

        assert await store.get_versioned("receipts", "r1") == ({"n": 1}, 1)
        assert await store.query("receipts") == {"r1": {"n": 1}}
        rows = client.sheets["receipts"].get_all_values()
        assert rows[:2] == before
        assert rows[2] == ["", "", "", ""]

    @pytest.mark.asyncio
    async def test_receipt_edit_is_undone_when_its_revision_fails(
        self, store, client, seed, settings
    ):
        for collection, docs in seed.items():
            for doc_id, data in docs.items():
                await store.set(collection, doc_id, data)
        client.sheets[collections.REVISIONS] = FakeWorksheet(failing=True)
        engine = RevisionEngine(store, audit_logger=AuditLogger(), settings=settings)

        with pytest.raises(StorageError):
            await engine.update(SEEDED_RECEIPT, MEMBER, {"amount_cents": 2000})

        receipt = await store.get(collections.RECEIPTS, SEEDED_RECEIPT)
        assert receipt["amount_cents"] == 1000
        assert receipt["edit_count"] == 0
        assert await store.query(collections.REVISIONS) == {}


class TestAnnotations:
    """The store classes define methods named after builtins."""

    def test_collection_sets_resolve(self):
        assert typing.get_type_hints(DocumentStore._notify)["collections"] == AbstractSet[str]
        assert typing.get_type_hints(Transaction.collections.fget)["return"] == AbstractSet[str]
