"""
Unit tests for the PostgREST backend.

Requests go through httpx.MockTransport; no network is used.

Tests cover:
- Filter value encoding
- Request rendering (params, Prefer and Accept headers)
- Response and error mapping
- Storage and identity endpoints
"""

import json

import httpx
import pytest

from tenantdb.backend.postgrest import (
    OBJECT_MEDIA_TYPE,
    PostgrestBackend,
    format_filter,
    parse_content_range,
)
from tenantdb.errors import (
    BackendError,
    ConflictError,
    ConnectionError,
    MultipleRowsError,
    NotFoundError,
    OperationTimeoutError,
)


class Recorder:
    """MockTransport handler that records requests and replays one response."""

    def __init__(self, response=None):
        self.requests = []
        self.response = response or httpx.Response(200, json=[])

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if isinstance(self.response, Exception):
            raise self.response
        return self.response

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


def make_backend(recorder, **kwargs):
    return PostgrestBackend(
        "https://xyz.supabase.co",
        "anon-key",
        transport=httpx.MockTransport(recorder),
        **kwargs,
    )


class TestEncoding:
    """Tests for filter value encoding."""

    def test_scalars(self):
        assert format_filter("eq", "bookbuddy") == "eq.bookbuddy"
        assert format_filter("eq", True) == "eq.true"
        assert format_filter("neq", None) == "neq.null"
        assert format_filter("gte", 4) == "gte.4"

    def test_in_list_quotes_reserved(self):
        assert format_filter("in", ["a", "b"]) == "in.(a,b)"
        assert format_filter("in", ["a,b", "c"]) == 'in.("a,b",c)'

    def test_contains(self):
        assert format_filter("cs", ["scifi", "classic"]) == "cs.{scifi,classic}"
        assert format_filter("cs", {"k": 1}) == 'cs.{"k":1}'

    def test_content_range(self):
        assert parse_content_range("0-9/42") == 42
        assert parse_content_range("*/0") == 0
        assert parse_content_range("0-9/*") is None
        assert parse_content_range(None) is None


class TestQueries:
    """Tests for query rendering and response mapping."""

    @pytest.mark.asyncio
    async def test_select_request(self):
        recorder = Recorder(
            httpx.Response(200, json=[{"id": "1"}], headers={"Content-Range": "20-20/21"})
        )
        backend = make_backend(recorder)
        await backend.connect()

        resp = await (
            backend.table("books")
            .select("*", count="exact")
            .eq("app_id", "bookbuddy")
            .in_("status", ["reading", "done"])
            .order("title", ascending=False)
            .range(20, 29)
            .execute()
        )

        request = recorder.last
        assert request.method == "GET"
        assert request.url.path == "/rest/v1/books"
        assert request.url.params.multi_items() == [
            ("select", "*"),
            ("app_id", "eq.bookbuddy"),
            ("status", "in.(reading,done)"),
            ("order", "title.desc"),
            ("limit", "10"),
            ("offset", "20"),
        ]
        assert request.headers["Prefer"] == "count=exact"
        assert request.headers["apikey"] == "anon-key"
        assert request.headers["Authorization"] == "Bearer anon-key"
        assert resp.data == [{"id": "1"}]
        assert resp.count == 21
        await backend.close()

    @pytest.mark.asyncio
    async def test_insert_single_returning(self):
        recorder = Recorder(httpx.Response(201, json={"id": "1", "title": "X"}))
        backend = make_backend(recorder)
        await backend.connect()

        resp = await backend.table("books").insert({"title": "X"}).returning().single().execute()

        request = recorder.last
        assert request.method == "POST"
        assert json.loads(request.content) == {"title": "X"}
        assert request.headers["Prefer"] == "return=representation"
        assert request.headers["Accept"] == OBJECT_MEDIA_TYPE
        assert request.url.params["select"] == "*"
        assert resp.data == {"id": "1", "title": "X"}

    @pytest.mark.asyncio
    async def test_upsert_request(self):
        recorder = Recorder(httpx.Response(201, json=[]))
        backend = make_backend(recorder)
        await backend.connect()

        await backend.table("user_settings").upsert({"user_id": "u"}, on_conflict="user_id,app_id").execute()

        request = recorder.last
        assert request.url.params["on_conflict"] == "user_id,app_id"
        assert "resolution=merge-duplicates" in request.headers["Prefer"]
        assert "select" not in request.url.params

    @pytest.mark.asyncio
    async def test_mutation_without_body(self):
        """204 No Content yields data None."""
        backend = make_backend(Recorder(httpx.Response(204)))
        await backend.connect()
        resp = await backend.table("books").delete().eq("id", "1").execute()
        assert resp.data is None

    @pytest.mark.asyncio
    async def test_not_connected(self):
        backend = make_backend(Recorder())
        with pytest.raises(ConnectionError):
            await backend.table("books").select().execute()


class TestErrorMapping:
    """Tests for HTTP error to error taxonomy mapping."""

    async def run(self, response):
        backend = make_backend(Recorder(response))
        await backend.connect()
        return await backend.table("books").select().single().execute()

    @pytest.mark.asyncio
    async def test_single_zero_rows(self):
        body = {
            "code": "PGRST116",
            "details": "The result contains 0 rows",
            "message": "JSON object requested, multiple (or no) rows returned",
        }
        with pytest.raises(NotFoundError):
            await self.run(httpx.Response(406, json=body))

    @pytest.mark.asyncio
    async def test_single_many_rows(self):
        body = {"code": "PGRST116", "details": "The result contains 3 rows", "message": "..."}
        with pytest.raises(MultipleRowsError) as exc:
            await self.run(httpx.Response(406, json=body))
        assert exc.value.rows == 3

    @pytest.mark.asyncio
    async def test_unique_violation(self):
        body = {"code": "23505", "message": "duplicate key value violates unique constraint"}
        with pytest.raises(ConflictError) as exc:
            await self.run(httpx.Response(409, json=body))
        assert exc.value.code == "23505"
        assert exc.value.status == 409

    @pytest.mark.asyncio
    async def test_backend_detail_preserved(self):
        body = {"code": "42501", "message": "permission denied", "hint": "check RLS"}
        with pytest.raises(BackendError) as exc:
            await self.run(httpx.Response(403, json=body))
        assert exc.value.code == "42501"
        assert exc.value.hint == "check RLS"
        assert not exc.value.retryable

    @pytest.mark.asyncio
    async def test_non_json_error(self):
        with pytest.raises(BackendError) as exc:
            await self.run(httpx.Response(502, text="Bad Gateway"))
        assert exc.value.status == 502

    @pytest.mark.asyncio
    async def test_timeout(self):
        with pytest.raises(OperationTimeoutError) as exc:
            await self.run(httpx.ReadTimeout("slow"))
        assert exc.value.retryable

    @pytest.mark.asyncio
    async def test_transport_error(self):
        with pytest.raises(ConnectionError):
            await self.run(httpx.ConnectError("refused"))


class TestStorageAndAuth:
    """Tests for storage and identity endpoints."""

    @pytest.mark.asyncio
    async def test_upload(self):
        recorder = Recorder(httpx.Response(200, json={"Key": "bookbuddy-covers/b 1.jpg"}))
        backend = make_backend(recorder)
        await backend.connect()

        path = await backend.upload("bookbuddy-covers", "b 1.jpg", b"img", content_type="image/jpeg")

        request = recorder.last
        assert path == "b 1.jpg"
        assert request.url.raw_path.decode() == "/storage/v1/object/bookbuddy-covers/b%201.jpg"
        assert request.headers["x-upsert"] == "false"
        assert request.headers["Content-Type"] == "image/jpeg"
        assert request.content == b"img"

    def test_public_url(self):
        backend = make_backend(Recorder())
        assert (
            backend.public_url("bookbuddy-covers", "b1.jpg")
            == "https://xyz.supabase.co/storage/v1/object/public/bookbuddy-covers/b1.jpg"
        )

    @pytest.mark.asyncio
    async def test_remove_objects(self):
        recorder = Recorder(httpx.Response(200, json=[{"name": "a.jpg"}]))
        backend = make_backend(recorder)
        await backend.connect()

        removed = await backend.remove_objects("bookbuddy-covers", ["a.jpg", "b.jpg"])

        assert removed == ["a.jpg"]
        assert recorder.last.method == "DELETE"
        assert json.loads(recorder.last.content) == {"prefixes": ["a.jpg", "b.jpg"]}

    @pytest.mark.asyncio
    async def test_get_user_without_session(self):
        recorder = Recorder()
        backend = make_backend(recorder)
        await backend.connect()
        assert await backend.get_user() is None
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_get_user_with_session(self):
        recorder = Recorder(httpx.Response(200, json={"id": "u1", "email": "a@b.c"}))
        backend = make_backend(recorder)
        await backend.connect()
        backend.set_session("user-jwt")

        user = await backend.get_user()

        assert user.id == "u1"
        assert user.email == "a@b.c"
        assert recorder.last.url.path == "/auth/v1/user"
        assert recorder.last.headers["Authorization"] == "Bearer user-jwt"

    @pytest.mark.asyncio
    async def test_get_user_rejected_token(self):
        backend = make_backend(Recorder(httpx.Response(401, json={"msg": "invalid JWT"})))
        await backend.connect()
        backend.set_session("expired")
        assert await backend.get_user() is None
