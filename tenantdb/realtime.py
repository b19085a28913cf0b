"""
Change subscription bridge.

Opens a backend change channel for one table, injects the tenant filter,
and normalizes every delivered payload into a ChangeEvent before handing
it to the caller.

Invariants:
    - A tenant-scoped channel is filtered server side; the callback never
      sees another tenant's rows
    - Channel names are distinct per (table, tenant)
    - After unsubscribe() returns, the callback is not invoked again
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from .backend.base import Backend
from .errors import UsageError
from .policy import TenantPolicy
from .tables import Table, table_name

logger = logging.getLogger(__name__)


class ChangeType(str, Enum):
    """Kind of row change."""

    INSERTED = "INSERT"
    UPDATED = "UPDATE"
    DELETED = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    """A normalized row change.

    Attributes:
        type: What happened
        table: Table the row belongs to
        new: Row after the change (None on delete)
        old: Row before the change (None on insert)
        commit_timestamp: Store commit time, when provided
    """

    type: ChangeType
    table: Optional[str]
    new: Optional[dict[str, Any]]
    old: Optional[dict[str, Any]]
    commit_timestamp: Optional[str] = None


ChangeHandler = Callable[[ChangeEvent], Union[None, Awaitable[None]]]
Unsubscribe = Callable[[], None]


def normalize_change(payload: dict[str, Any], table: Optional[str] = None) -> ChangeEvent:
    """Build a ChangeEvent from either payload shape a store may send.

    Accepts the client-library shape (``eventType``/``new``/``old``) and the
    realtime wire shape (``type``/``record``/``old_record``).

    Raises:
        ValueError: If the payload has no recognizable event type
    """
    kind = payload.get("eventType") or payload.get("type")
    try:
        change_type = ChangeType(str(kind).upper())
    except ValueError:
        raise ValueError(f"Unrecognized change payload type: {kind!r}") from None

    new = payload["new"] if "new" in payload else payload.get("record")
    old = payload["old"] if "old" in payload else payload.get("old_record")
    new = new or None
    old = old or None
    if change_type == ChangeType.INSERTED:
        old = None
    elif change_type == ChangeType.DELETED:
        new = None

    return ChangeEvent(
        type=change_type,
        table=payload.get("table") or table,
        new=new,
        old=old,
        commit_timestamp=payload.get("commit_timestamp"),
    )


def _event_name(event: Union[ChangeType, str]) -> str:
    if isinstance(event, ChangeType):
        return event.value
    name = str(event).upper()
    if name != "*" and name not in {t.value for t in ChangeType}:
        raise UsageError(f"Unknown change event {event!r}", event=str(event))
    return name


def open_subscription(
    backend: Backend,
    policy: TenantPolicy,
    table: Union[str, Table],
    callback: ChangeHandler,
    event: Union[ChangeType, str] = "*",
    skip_tenant_filter: bool = False,
) -> Unsubscribe:
    """Subscribe to changes of one table.

    Args:
        backend: Backing store
        policy: Tenant rules of the engine
        table: Table to watch
        callback: Receives ChangeEvent; may be a coroutine function
        event: One ChangeType or ``*`` for all
        skip_tenant_filter: Watch every tenant's rows

    Returns:
        An idempotent unsubscribe function
    """
    name = table_name(table)
    event_name = _event_name(event)
    is_async = inspect.iscoroutinefunction(callback)
    closed = False
    pending: set[asyncio.Task] = set()

    async def deliver_async(change: ChangeEvent) -> None:
        if closed:
            return
        try:
            await callback(change)
        except Exception:
            logger.exception(
                "Change callback failed", extra={"table": name, "channel": channel}
            )

    def on_payload(payload: dict[str, Any]) -> None:
        if closed:
            return
        change = normalize_change(payload, name)
        if is_async:
            task = asyncio.get_running_loop().create_task(deliver_async(change))
            pending.add(task)
            task.add_done_callback(pending.discard)
        else:
            callback(change)

    channel = policy.channel_name(name)
    change_filter = policy.change_filter(name, skip_tenant_filter)
    handle = backend.subscribe(channel, name, on_payload, event=event_name, filter=change_filter)
    logger.debug(
        "Subscribed to changes",
        extra={"table": name, "channel": channel, "event": event_name, "filter": change_filter},
    )

    def unsubscribe() -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        handle.close()
        logger.debug("Unsubscribed from changes", extra={"table": name, "channel": channel})

    return unsubscribe
