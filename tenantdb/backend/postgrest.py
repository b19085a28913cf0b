"""
PostgREST backend over httpx.

Speaks the three HTTP APIs of a hosted Postgres service:
- /rest/v1/<table>     PostgREST queries
- /storage/v1/object   blob storage
- /auth/v1/user        identity of the bearer token

Change events use the realtime websocket client in realtime_ws.

Invariants:
    - Every non-2xx response becomes an OperationError subclass
    - single() is enforced server side (object Accept header), so a
      mutation matching the wrong number of rows is rolled back
    - The api key is never logged

How to change safely:
    - Keep value encoding in sync with PostgREST's operator syntax
    - Test against httpx.MockTransport before touching a live project
"""

from __future__ import annotations

import json
import logging
import re
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx

from ..errors import (
    BackendError,
    ConflictError,
    ConnectionError,
    MultipleRowsError,
    NotFoundError,
    OperationError,
    OperationTimeoutError,
)
from .base import ChangeCallback, QueryResponse, Row, User
from .realtime_ws import RealtimeChannel, realtime_url

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)

OBJECT_MEDIA_TYPE = "application/vnd.pgrst.object+json"
_RESERVED = re.compile(r'[,.:()"\s]')


def format_value(value: Any) -> str:
    """Render a scalar the way PostgREST expects it in a filter."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _quote_item(value: Any) -> str:
    text = format_value(value)
    if _RESERVED.search(text):
        return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'
    return text


def format_filter(op: str, value: Any) -> str:
    """Render ``op.value`` for a PostgREST query parameter.

    >>> format_filter("in", ["a", "b"])
    'in.(a,b)'
    >>> format_filter("cs", ["fantasy"])
    'cs.{fantasy}'
    """
    if op == "in":
        return "in.(" + ",".join(_quote_item(v) for v in value) + ")"
    if op == "cs":
        if isinstance(value, dict):
            return "cs." + json.dumps(value, separators=(",", ":"))
        if isinstance(value, (list, tuple, set)):
            return "cs.{" + ",".join(_quote_item(v) for v in value) + "}"
    return f"{op}.{format_value(value)}"


def parse_content_range(header: Optional[str]) -> Optional[int]:
    """Total count from a ``Content-Range`` header such as ``0-9/42``."""
    if not header or "/" not in header:
        return None
    total = header.rsplit("/", 1)[1]
    return int(total) if total.isdigit() else None


def error_from_response(response: httpx.Response, table: Optional[str] = None) -> OperationError:
    """Map an HTTP error response to the error taxonomy."""
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {"message": str(body)}

    code = str(body.get("code") or body.get("error") or response.status_code)
    message = body.get("message") or body.get("msg") or response.reason_phrase or "Request failed"
    details = body.get("details")
    hint = body.get("hint")

    if code == "PGRST116":
        text = str(details or message)
        match = re.search(r"(\d+) rows", text)
        rows = int(match.group(1)) if match else 0
        if rows == 0:
            return NotFoundError(text, table=table)
        return MultipleRowsError(text, table=table, rows=rows)
    if response.status_code == 409 or code in ("23505", "23503"):
        return ConflictError(
            message, code=code, status=response.status_code, hint=hint,
            details={"details": details},
        )
    return BackendError(
        message, code=code, status=response.status_code, hint=hint,
        details={"details": details},
    )


class PostgrestQuery:
    """Query builder that renders to a PostgREST HTTP request."""

    def __init__(self, backend: PostgrestBackend, table: str) -> None:
        self._backend = backend
        self._table = table
        self._method = "GET"
        self._params: List[Tuple[str, str]] = []
        self._prefer: List[str] = []
        self._headers: Dict[str, str] = {}
        self._body: Any = None
        self._select: Optional[str] = "*"
        self._order: List[str] = []
        self._limit: Optional[int] = None
        self._offset: Optional[int] = None

    def select(self, columns: str = "*", count: Optional[str] = None) -> PostgrestQuery:
        self._method = "GET"
        self._select = columns
        if count:
            self._prefer.append(f"count={count}")
        return self

    def insert(self, rows: Row | List[Row]) -> PostgrestQuery:
        self._method = "POST"
        self._body = rows
        self._select = None
        return self

    def update(self, values: Row) -> PostgrestQuery:
        self._method = "PATCH"
        self._body = values
        self._select = None
        return self

    def delete(self) -> PostgrestQuery:
        self._method = "DELETE"
        self._select = None
        return self

    def upsert(self, rows: Row | List[Row], on_conflict: Optional[str] = None) -> PostgrestQuery:
        self._method = "POST"
        self._body = rows
        self._select = None
        self._prefer.append("resolution=merge-duplicates")
        if on_conflict:
            self._params.append(("on_conflict", on_conflict))
        return self

    def returning(self, columns: str = "*") -> PostgrestQuery:
        self._select = columns
        self._prefer.append("return=representation")
        return self

    def _filter(self, column: str, op: str, value: Any) -> PostgrestQuery:
        self._params.append((column, format_filter(op, value)))
        return self

    def eq(self, column: str, value: Any) -> PostgrestQuery:
        return self._filter(column, "eq", value)

    def neq(self, column: str, value: Any) -> PostgrestQuery:
        return self._filter(column, "neq", value)

    def gt(self, column: str, value: Any) -> PostgrestQuery:
        return self._filter(column, "gt", value)

    def gte(self, column: str, value: Any) -> PostgrestQuery:
        return self._filter(column, "gte", value)

    def lt(self, column: str, value: Any) -> PostgrestQuery:
        return self._filter(column, "lt", value)

    def lte(self, column: str, value: Any) -> PostgrestQuery:
        return self._filter(column, "lte", value)

    def like(self, column: str, value: Any) -> PostgrestQuery:
        return self._filter(column, "like", value)

    def ilike(self, column: str, value: Any) -> PostgrestQuery:
        return self._filter(column, "ilike", value)

    def in_(self, column: str, value: Any) -> PostgrestQuery:
        return self._filter(column, "in", value)

    def contains(self, column: str, value: Any) -> PostgrestQuery:
        return self._filter(column, "cs", value)

    def order(self, column: str, ascending: bool = True) -> PostgrestQuery:
        self._order.append(f"{column}.{'asc' if ascending else 'desc'}")
        return self

    def limit(self, count: int) -> PostgrestQuery:
        self._limit = count
        return self

    def range(self, start: int, end: int) -> PostgrestQuery:
        self._offset = start
        self._limit = end - start + 1
        return self

    def single(self) -> PostgrestQuery:
        self._headers["Accept"] = OBJECT_MEDIA_TYPE
        return self

    def build_request(self) -> Tuple[str, str, List[Tuple[str, str]], Dict[str, str], Any]:
        """Method, path, params, headers and JSON body of this query."""
        params = list(self._params)
        if self._select is not None:
            params.insert(0, ("select", self._select))
        if self._order:
            params.append(("order", ",".join(self._order)))
        if self._limit is not None:
            params.append(("limit", str(self._limit)))
        if self._offset is not None:
            params.append(("offset", str(self._offset)))
        headers = dict(self._headers)
        if self._prefer:
            headers["Prefer"] = ",".join(self._prefer)
        return self._method, f"/rest/v1/{self._table}", params, headers, self._body

    async def execute(self) -> QueryResponse:
        method, path, params, headers, body = self.build_request()
        response = await self._backend._request(
            method, path, params=params, headers=headers, json_body=body, table=self._table
        )
        data = response.json() if response.content else None
        return QueryResponse(
            data=data,
            count=parse_content_range(response.headers.get("content-range")),
        )


class PostgrestBackend:
    """Backend for a hosted PostgREST + Storage + Auth + Realtime service.

    Attributes:
        url: Project base URL, e.g. https://xyz.supabase.co
        schema: Postgres schema exposed by PostgREST

    Example:
        >>> backend = PostgrestBackend("https://xyz.supabase.co", "anon-key")
        >>> await backend.connect()
        >>> resp = await backend.table("books").select().eq("app_id", "bookbuddy").execute()
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        *,
        access_token: Optional[str] = None,
        schema: str = "public",
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url.rstrip("/")
        self.schema = schema
        self._api_key = api_key
        self._access_token = access_token
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._channels: List[RealtimeChannel] = []

    @classmethod
    def from_settings(cls, settings: "Settings") -> PostgrestBackend:
        return cls(
            url=settings.url,
            api_key=settings.api_key.get_secret_value(),
            schema=settings.db_schema,
            timeout=settings.request_timeout,
        )

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    def _auth_headers(self) -> Dict[str, str]:
        return {
            "apikey": self._api_key,
            "Authorization": f"Bearer {self._access_token or self._api_key}",
        }

    async def connect(self) -> None:
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            base_url=self.url,
            headers={
                **self._auth_headers(),
                "Accept-Profile": self.schema,
                "Content-Profile": self.schema,
            },
            timeout=self._timeout,
            transport=self._transport,
        )
        logger.info("PostgrestBackend connected", extra={"url": self.url})

    async def close(self) -> None:
        for channel in list(self._channels):
            channel.close()
        self._channels.clear()
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        logger.info("PostgrestBackend closed", extra={"url": self.url})

    def set_session(self, access_token: Optional[str]) -> None:
        """Use a signed-in user's JWT for subsequent requests."""
        self._access_token = access_token
        if self._client is not None:
            self._client.headers.update(self._auth_headers())

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[List[Tuple[str, str]]] = None,
        headers: Optional[Dict[str, str]] = None,
        json_body: Any = None,
        content: Optional[bytes] = None,
        table: Optional[str] = None,
    ) -> httpx.Response:
        if self._client is None:
            raise ConnectionError("Not connected", address=self.url)
        try:
            response = await self._client.request(
                method,
                path,
                params=params,
                headers=headers,
                json=json_body,
                content=content,
            )
        except httpx.TimeoutException as e:
            raise OperationTimeoutError(f"Request timed out: {e}", timeout=self._timeout) from e
        except httpx.TransportError as e:
            raise ConnectionError(f"Request failed: {e}", address=self.url) from e

        logger.debug(
            "PostgREST request",
            extra={"method": method, "path": path, "status": response.status_code},
        )
        if response.is_error:
            raise error_from_response(response, table)
        return response

    def table(self, name: str) -> PostgrestQuery:
        return PostgrestQuery(self, name)

    def subscribe(
        self,
        channel: str,
        table: str,
        callback: ChangeCallback,
        event: str = "*",
        filter: Optional[str] = None,
    ) -> RealtimeChannel:
        handle = RealtimeChannel(
            url=realtime_url(self.url, self._api_key),
            name=channel,
            table=table,
            callback=callback,
            event=event,
            filter=filter,
            schema=self.schema,
            access_token=self._access_token or self._api_key,
            on_close=self._forget_channel,
        )
        self._channels.append(handle)
        handle.start()
        return handle

    def _forget_channel(self, handle: RealtimeChannel) -> None:
        if handle in self._channels:
            self._channels.remove(handle)

    async def upload(
        self,
        bucket: str,
        path: str,
        payload: bytes,
        content_type: Optional[str] = None,
        upsert: bool = False,
    ) -> str:
        headers = {
            "Content-Type": content_type or "application/octet-stream",
            "x-upsert": "true" if upsert else "false",
        }
        await self._request(
            "POST",
            f"/storage/v1/object/{bucket}/{quote(path, safe='/')}",
            headers=headers,
            content=bytes(payload),
        )
        return path

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.url}/storage/v1/object/public/{bucket}/{quote(str(path), safe='/')}"

    async def remove_objects(self, bucket: str, paths: List[str]) -> List[str]:
        response = await self._request(
            "DELETE",
            f"/storage/v1/object/{bucket}",
            json_body={"prefixes": list(paths)},
        )
        body = response.json() if response.content else []
        return [item.get("name") for item in body if isinstance(item, dict)]

    async def get_user(self) -> Optional[User]:
        if not self._access_token:
            return None
        try:
            response = await self._request("GET", "/auth/v1/user")
        except OperationError as e:
            logger.warning("Failed to resolve current user", extra={"code": e.code})
            return None
        body = response.json()
        return User(id=body["id"], email=body.get("email"))
