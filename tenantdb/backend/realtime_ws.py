"""
Realtime change stream over websockets.

Implements the small subset of the Phoenix channel protocol needed to
receive ``postgres_changes`` for one table: join, heartbeat, decode.
Each RealtimeChannel owns one socket and one background task.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from collections.abc import Callable
from typing import Any, Dict, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

import websockets

from .base import ChangeCallback

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "1.0.0"


def realtime_url(base_url: str, api_key: str) -> str:
    """Websocket endpoint for a project URL.

    >>> realtime_url("https://xyz.supabase.co", "k")
    'wss://xyz.supabase.co/realtime/v1/websocket?apikey=k&vsn=1.0.0'
    """
    parts = urlsplit(base_url)
    scheme = "wss" if parts.scheme == "https" else "ws"
    path = parts.path.rstrip("/") + "/realtime/v1/websocket"
    query = urlencode({"apikey": api_key, "vsn": PROTOCOL_VERSION})
    return urlunsplit((scheme, parts.netloc, path, query, ""))


class RealtimeChannel:
    """One ``postgres_changes`` subscription.

    Attributes:
        name: Channel name (topic is ``realtime:<name>``)
        table: Watched table
        event: INSERT, UPDATE, DELETE or *
        filter: Server-side filter expression
    """

    def __init__(
        self,
        url: str,
        name: str,
        table: str,
        callback: ChangeCallback,
        event: str = "*",
        filter: Optional[str] = None,
        schema: str = "public",
        access_token: Optional[str] = None,
        heartbeat_interval: float = 25.0,
        on_close: Optional[Callable[[RealtimeChannel], None]] = None,
    ) -> None:
        self.url = url
        self.name = name
        self.table = table
        self.event = event
        self.filter = filter
        self.schema = schema
        self._callback = callback
        self._access_token = access_token
        self._heartbeat_interval = heartbeat_interval
        self._on_close = on_close
        self._refs = itertools.count(1)
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self._reconnect_delay = 1.0

    @property
    def topic(self) -> str:
        return f"realtime:{self.name}"

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Start the listener task on the running loop."""
        if self._task is None and not self._closed:
            self._task = asyncio.get_running_loop().create_task(self._run())

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._task is not None:
            self._task.cancel()
        if self._on_close is not None:
            self._on_close(self)
        logger.debug("Realtime channel closed", extra={"channel": self.name})

    def join_message(self) -> Dict[str, Any]:
        change: Dict[str, Any] = {"event": self.event, "schema": self.schema, "table": self.table}
        if self.filter:
            change["filter"] = self.filter
        ref = str(next(self._refs))
        return {
            "topic": self.topic,
            "event": "phx_join",
            "payload": {
                "config": {
                    "broadcast": {"self": False},
                    "presence": {"key": ""},
                    "postgres_changes": [change],
                },
                "access_token": self._access_token,
            },
            "ref": ref,
            "join_ref": ref,
        }

    def heartbeat_message(self) -> Dict[str, Any]:
        return {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": str(next(self._refs))}

    def handle_message(self, message: Dict[str, Any]) -> None:
        """Route one decoded socket message."""
        event = message.get("event")
        payload = message.get("payload") or {}
        if event == "postgres_changes":
            data = payload.get("data")
            if data and not self._closed:
                try:
                    self._callback(data)
                except Exception:
                    logger.exception(
                        "Change callback failed",
                        extra={"channel": self.name, "table": self.table},
                    )
        elif event == "phx_reply" and message.get("topic") == self.topic:
            if payload.get("status") != "ok":
                logger.error(
                    "Realtime join rejected",
                    extra={"channel": self.name, "response": payload.get("response")},
                )
        elif event in ("phx_error", "phx_close") and message.get("topic") == self.topic:
            logger.warning("Realtime channel %s: %s", event, self.name)

    async def _heartbeat(self, ws: Any) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            await ws.send(json.dumps(self.heartbeat_message()))

    async def _listen_once(self) -> None:
        async with websockets.connect(self.url) as ws:
            await ws.send(json.dumps(self.join_message()))
            self._reconnect_delay = 1.0
            heartbeat = asyncio.get_running_loop().create_task(self._heartbeat(ws))
            try:
                async for raw in ws:
                    if self._closed:
                        return
                    try:
                        message = json.loads(raw)
                    except json.JSONDecodeError:
                        logger.warning("Undecodable realtime frame", extra={"channel": self.name})
                        continue
                    self.handle_message(message)
            finally:
                heartbeat.cancel()

    async def _run(self) -> None:
        logger.info("Realtime channel started", extra={"channel": self.name, "table": self.table})
        while not self._closed:
            try:
                await self._listen_once()
            except (websockets.ConnectionClosed, OSError) as e:
                logger.warning("Realtime socket lost: %s", e, extra={"channel": self.name})
            if self._closed:
                break
            await asyncio.sleep(self._reconnect_delay)
            self._reconnect_delay = min(self._reconnect_delay * 2, 60.0)
