"""
Integration tests for the CRUD engine over the in-memory backend.

Two tenants share one store; every test checks what one tenant can and
cannot see or change.

Tests cover:
- Isolation of reads and mutations
- Tenant stamping on create, create_many, upsert and update
- Shared table access
- Filter composition and pagination
- Bulk update/remove
- Errors returned as values vs raised usage errors
- Per-call timeouts
- Tenant-scoped subscriptions
"""

import asyncio

import pytest

from tenantdb import (
    ChangeType,
    Filter,
    InMemoryBackend,
    OrderBy,
    QueryOptions,
    TenantDb,
    TenantPolicy,
)
from tenantdb.errors import (
    ConflictError,
    ConnectionError,
    MultipleRowsError,
    NotFoundError,
    OperationTimeoutError,
    UnknownOperatorError,
    UsageError,
)


class SlowBackend(InMemoryBackend):
    """In-memory backend whose queries take longer than any sane timeout."""

    async def _execute(self, query):
        await asyncio.sleep(5)
        return await super()._execute(query)


class TestIsolation:
    """Tests for cross-tenant isolation."""

    @pytest.mark.asyncio
    async def test_create_read_round_trip(self, db, other_db, backend):
        """Created rows carry the tenant and are invisible to other tenants."""
        book, error = await db.create("books", {"title": "X", "author": "Y"})

        assert error is None
        assert book["app_id"] == "bookbuddy"
        assert backend.rows("books")[0]["app_id"] == "bookbuddy"

        found, error = await db.fetch_by_id("books", book["id"])
        assert error is None
        assert found["title"] == "X"

        missing, error = await other_db.fetch_by_id("books", book["id"])
        assert missing is None
        assert isinstance(error, NotFoundError)
        assert error.record_id == book["id"]

    @pytest.mark.asyncio
    async def test_fetch_all_only_sees_own_rows(self, db, other_db):
        await db.create_many("books", [{"title": "A"}, {"title": "B"}])
        await other_db.create("books", {"title": "C"})

        rows, error, count = await db.fetch_all("books")
        assert error is None
        assert count == 2
        assert sorted(r["title"] for r in rows) == ["A", "B"]

        rows, error, count = await other_db.fetch_all("books")
        assert [r["title"] for r in rows] == ["C"]
        assert count == 1

    @pytest.mark.asyncio
    async def test_skip_tenant_filter_sees_everything(self, db, other_db):
        await db.create("books", {"title": "A"})
        await other_db.create("books", {"title": "B"})

        rows, error, count = await db.fetch_all("books", skip_tenant_filter=True)

        assert count == 2

    @pytest.mark.asyncio
    async def test_update_other_tenant_is_not_found(self, db, other_db, backend):
        """A foreign id looks exactly like a missing id and is left intact."""
        book, _ = await db.create("books", {"title": "Mine"})

        data, error = await other_db.update("books", book["id"], {"title": "Stolen"})

        assert data is None
        assert isinstance(error, NotFoundError)
        assert backend.rows("books")[0]["title"] == "Mine"

    @pytest.mark.asyncio
    async def test_remove_other_tenant_is_not_found(self, db, other_db, backend):
        book, _ = await db.create("books", {"title": "Mine"})

        data, error = await other_db.remove("books", book["id"])

        assert data is None
        assert isinstance(error, NotFoundError)
        assert len(backend.rows("books")) == 1

    @pytest.mark.asyncio
    async def test_empty_result_is_not_an_error(self, db):
        rows, error, count = await db.fetch_all("books")
        assert (rows, error, count) == ([], None, 0)


class TestStamping:
    """Tests for tenant stamping on writes."""

    @pytest.mark.asyncio
    async def test_create_overrides_caller_tenant(self, db, backend):
        book, _ = await db.create("books", {"title": "X", "app_id": "otherapp"})
        assert book["app_id"] == "bookbuddy"
        assert backend.rows("books")[0]["app_id"] == "bookbuddy"

    @pytest.mark.asyncio
    async def test_create_many_stamps_every_row(self, db):
        rows, error, count = await db.create_many(
            "notes", [{"body": "a"}, {"body": "b", "app_id": "otherapp"}]
        )
        assert error is None
        assert count == 2
        assert {r["app_id"] for r in rows} == {"bookbuddy"}

    @pytest.mark.asyncio
    async def test_create_many_empty(self, db, backend):
        assert tuple(await db.create_many("notes", [])) == ([], None, 0)
        assert backend.rows("notes") == []

    @pytest.mark.asyncio
    async def test_update_cannot_move_row_to_other_tenant(self, db, backend):
        book, _ = await db.create("books", {"title": "X"})

        updated, error = await db.update("books", book["id"], {"app_id": "otherapp", "title": "Y"})

        assert error is None
        assert updated["app_id"] == "bookbuddy"
        assert updated["title"] == "Y"

    @pytest.mark.asyncio
    async def test_upsert_conflict_resolution(self, db, backend):
        """Two upserts on the same key leave one row with the second value."""
        for streak in (1, 2):
            data, error = await db.upsert(
                "reading_streaks",
                {"user_id": "u1", "current_streak": streak},
                on_conflict="user_id,app_id",
            )
            assert error is None

        rows = backend.rows("reading_streaks")
        assert len(rows) == 1
        assert rows[0]["current_streak"] == 2
        assert rows[0]["app_id"] == "bookbuddy"

    @pytest.mark.asyncio
    async def test_upsert_is_per_tenant(self, db, other_db, backend):
        await db.upsert("reading_streaks", {"user_id": "u1", "current_streak": 1}, on_conflict="user_id,app_id")
        await other_db.upsert(
            "reading_streaks", {"user_id": "u1", "current_streak": 9}, on_conflict="user_id,app_id"
        )
        assert len(backend.rows("reading_streaks")) == 2


class TestSharedTables:
    """Tests for shared table access."""

    @pytest.mark.asyncio
    async def test_shared_table_bypass(self, db, other_db, backend):
        profile, error = await db.create(
            "profiles", {"id": "u1", "email": "a@b.com"}, skip_tenant_filter=True
        )
        assert error is None
        assert "app_id" not in backend.rows("profiles")[0]

        found, error = await other_db.fetch_by_id("profiles", "u1")
        assert error is None
        assert found["email"] == "a@b.com"

    @pytest.mark.asyncio
    async def test_shared_table_never_stamped(self, db, backend):
        await db.create("app_registry", {"app_id": "newapp", "name": "New"})
        assert backend.rows("app_registry")[0]["app_id"] == "newapp"


class TestQueries:
    """Tests for filters, ordering and pagination through fetch_all."""

    @pytest.fixture
    def seeded(self, backend):
        backend.seed(
            "books",
            [{"id": f"b{i:02d}", "app_id": "bookbuddy", "a": i % 2, "b": i} for i in range(40)]
            + [{"id": "x", "app_id": "otherapp", "a": 1, "b": 99}],
        )
        return backend

    @pytest.mark.asyncio
    async def test_filter_order_does_not_matter(self, db, seeded):
        first, _, _ = await db.fetch_all("books", filters=[("a", "eq", 1), ("b", "gt", 5)])
        second, _, _ = await db.fetch_all("books", filters=[("b", "gt", 5), ("a", "eq", 1)])

        assert first == second
        assert all(r["a"] == 1 and r["b"] > 5 for r in first)
        assert len(first) == 17

    @pytest.mark.asyncio
    async def test_pagination_positions(self, db, seeded):
        """limit=10, offset=20 returns ordered positions 20-29."""
        rows, error, count = await db.fetch_all(
            "books", order_by=OrderBy("b"), limit=10, offset=20
        )
        assert error is None
        assert [r["b"] for r in rows] == list(range(20, 30))
        assert count == 40

    @pytest.mark.asyncio
    async def test_offset_without_limit_uses_page_size(self, backend, seeded):
        db = TenantDb(backend, TenantPolicy("bookbuddy"), default_page_size=5)
        rows, _, _ = await db.fetch_all("books", order_by=OrderBy("b"), offset=10)
        assert [r["b"] for r in rows] == [10, 11, 12, 13, 14]

    @pytest.mark.asyncio
    async def test_query_options_object(self, db, seeded):
        options = QueryOptions(
            select="id,b",
            order_by=OrderBy("b", ascending=False),
            limit=3,
            filters=[Filter("a", "eq", 0)],
        )
        rows, error, count = await db.fetch_all("books", options)
        assert rows == [{"id": "b38", "b": 38}, {"id": "b36", "b": 36}, {"id": "b34", "b": 34}]
        assert count == 20

    @pytest.mark.asyncio
    async def test_count_can_be_skipped(self, db, seeded):
        rows, error, count = await db.fetch_all("books", count=False, limit=1)
        assert len(rows) == 1
        assert count is None

    @pytest.mark.asyncio
    async def test_unknown_operator_raises_before_io(self, db, backend):
        backend.inject_failure(ConnectionError("should not be reached"))
        with pytest.raises(UnknownOperatorError):
            await db.fetch_all("books", filters=[("a", "between", 1)])
        # The injected failure was never consumed
        _, error, _ = await db.fetch_all("books")
        assert isinstance(error, ConnectionError)

    @pytest.mark.asyncio
    async def test_negative_paging_raises(self, db, seeded):
        with pytest.raises(UsageError):
            await db.fetch_all("books", order_by=OrderBy("b"), limit=-3)
        with pytest.raises(UsageError):
            await db.fetch_all("books", offset=-1)


class TestBulk:
    """Tests for update_where and remove_where."""

    @pytest.fixture
    def seeded(self, backend):
        backend.seed(
            "books",
            [
                {"id": "1", "app_id": "bookbuddy", "status": "reading"},
                {"id": "2", "app_id": "bookbuddy", "status": "reading"},
                {"id": "3", "app_id": "bookbuddy", "status": "done"},
                {"id": "4", "app_id": "otherapp", "status": "reading"},
            ],
        )
        return backend

    @pytest.mark.asyncio
    async def test_update_where(self, db, seeded):
        rows, error, count = await db.update_where(
            "books", {"status": "done"}, [("status", "eq", "reading")]
        )
        assert error is None
        assert count == 2
        statuses = {r["id"]: r["status"] for r in seeded.rows("books")}
        assert statuses == {"1": "done", "2": "done", "3": "done", "4": "reading"}

    @pytest.mark.asyncio
    async def test_remove_where(self, db, seeded):
        rows, error, count = await db.remove_where("books", [("status", "eq", "reading")])
        assert count == 2
        assert sorted(r["id"] for r in seeded.rows("books")) == ["3", "4"]

    @pytest.mark.asyncio
    async def test_remove_where_no_match(self, db, seeded):
        rows, error, count = await db.remove_where("books", [("status", "eq", "abandoned")])
        assert (rows, error, count) == ([], None, 0)


class TestErrors:
    """Tests for returned and raised errors."""

    @pytest.mark.asyncio
    async def test_missing_table_raises(self, db):
        with pytest.raises(UsageError):
            await db.fetch_all("")

    @pytest.mark.asyncio
    async def test_missing_id_raises(self, db):
        with pytest.raises(UsageError):
            await db.fetch_by_id("books", None)

    @pytest.mark.asyncio
    async def test_non_mapping_record_raises(self, db):
        with pytest.raises(UsageError):
            await db.create("books", ["title", "X"])

    @pytest.mark.asyncio
    async def test_backend_failure_is_returned(self, db, backend):
        backend.inject_failure(ConnectionError("reset"))
        data, error = await db.create("books", {"title": "X"})
        assert data is None
        assert isinstance(error, ConnectionError)
        assert error.retryable
        assert backend.rows("books") == []

    @pytest.mark.asyncio
    async def test_conflict_is_returned(self, db):
        await db.create("books", {"id": "1"})
        data, error = await db.create("books", {"id": "1"})
        assert isinstance(error, ConflictError)

    @pytest.mark.asyncio
    async def test_duplicate_ids_give_multiple_rows(self, db, backend):
        backend.seed("books", [{"id": "d", "app_id": "bookbuddy"}, {"id": "d", "app_id": "bookbuddy"}])
        data, error = await db.fetch_by_id("books", "d")
        assert isinstance(error, MultipleRowsError)

    @pytest.mark.asyncio
    async def test_timeout_is_returned(self):
        backend = SlowBackend()
        await backend.connect()
        db = TenantDb(backend, TenantPolicy("bookbuddy"), timeout=0.01)

        rows, error, count = await db.fetch_all("books")

        assert rows is None
        assert isinstance(error, OperationTimeoutError)
        assert error.retryable
        await backend.close()

    def test_page_size_must_be_positive(self):
        with pytest.raises(UsageError):
            TenantDb(InMemoryBackend(), TenantPolicy("bookbuddy"), default_page_size=0)


class TestSubscriptions:
    """Tests for tenant-scoped change subscriptions through the engine."""

    @pytest.mark.asyncio
    async def test_events_scoped_to_tenant(self, db, other_db):
        mine, theirs = [], []
        db.subscribe("books", mine.append)
        other_db.subscribe("books", theirs.append)

        book, _ = await db.create("books", {"title": "X"})
        await db.update("books", book["id"], {"title": "Y"})
        await db.remove("books", book["id"])

        assert [e.type for e in mine] == [ChangeType.INSERTED, ChangeType.UPDATED, ChangeType.DELETED]
        assert mine[1].old["title"] == "X"
        assert mine[1].new["title"] == "Y"
        assert theirs == []

    @pytest.mark.asyncio
    async def test_no_events_after_unsubscribe(self, db):
        received = []
        unsubscribe = db.subscribe("books", received.append, event="insert")
        await db.create("books", {"title": "X"})
        unsubscribe()
        await db.create("books", {"title": "Y"})

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_failed_mutation_emits_nothing(self, db, other_db):
        received = []
        db.subscribe("books", received.append)
        book, _ = await db.create("books", {"title": "X"})
        await other_db.update("books", book["id"], {"title": "Stolen"})

        assert [e.type for e in received] == [ChangeType.INSERTED]
