"""
In-process realtime layer.

``RealtimeBus`` is the one place change events come from: services publish to
it after they commit (row changes on ``workspace-{id}`` channels, plus the
``notification`` and ``file_update`` broadcasts), and both websocket clients
and ``RealtimeSyncClient`` instances consume from it.

``RealtimeSyncClient`` turns bursts of events into cache invalidations. Each
matching event restarts a short debounce timer so a batch upload that touches
dozens of rows causes a single refresh. Events that change how a folder is
drawn (its generated link appearing or disappearing) skip the debounce.
"""

import asyncio
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, DefaultDict, Dict, Hashable, Iterable, List, Optional, Set, Tuple

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from foldly.config import config
from foldly.db.models.link import Link
from foldly.db.models.workspace import Workspace
from foldly.logger import get_logger
from foldly.utils.dates import utcnow

logger = get_logger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"
CHANGE_EVENTS = frozenset({INSERT, UPDATE, DELETE})

NOTIFICATION_EVENT = "notification"
FILE_UPDATE_EVENT = "file_update"
LINK_CREATED_EVENT = "generated_link_created"
LINK_DELETED_EVENT = "generated_link_deleted"
IMMEDIATE_EVENTS = frozenset({LINK_CREATED_EVENT, LINK_DELETED_EVENT})


def notifications_channel(user_id: str) -> str:
    return f"notifications:{user_id}"


def user_files_channel(user_id: str) -> str:
    return f"files:user:{user_id}"


def link_files_channel(link_id: uuid.UUID) -> str:
    return f"files:link:{link_id}"


def workspace_channel(workspace_id: uuid.UUID) -> str:
    return f"workspace-{workspace_id}"


def channel_owner_key(channel: str) -> Tuple[str, str]:
    """Split a channel name into (kind, id) for ownership checks."""
    if channel.startswith("workspace-"):
        return "workspace", channel[len("workspace-"):]
    if channel.startswith("files:link:"):
        return "link", channel[len("files:link:"):]
    if channel.startswith("files:user:"):
        return "user", channel[len("files:user:"):]
    if channel.startswith("notifications:"):
        return "user", channel[len("notifications:"):]
    return "unknown", channel


@dataclass
class RealtimeEvent:
    channel: str
    event: str
    payload: Dict[str, Any]
    timestamp: float = field(default_factory=lambda: utcnow().timestamp())

    @property
    def table(self) -> Optional[str]:
        return self.payload.get("table")

    @property
    def record(self) -> Dict[str, Any]:
        return self.payload.get("record") or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "event": self.event,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }


Handler = Callable[[RealtimeEvent], None]


class Subscription:
    def __init__(self, bus: "RealtimeBus", channels: Iterable[str], handler: Optional[Handler] = None):
        self.bus = bus
        self.channels: Set[str] = set(channels)
        self.handler = handler
        self.queue: "asyncio.Queue[RealtimeEvent]" = asyncio.Queue()
        self.closed = False

    def deliver(self, event: RealtimeEvent) -> None:
        if self.handler is not None:
            self.handler(event)
        else:
            self.queue.put_nowait(event)

    async def get(self) -> RealtimeEvent:
        return await self.queue.get()

    def close(self) -> None:
        if not self.closed:
            self.bus.unsubscribe(self)
            self.closed = True


class RealtimeBus:
    def __init__(self):
        self._subscriptions: DefaultDict[str, List[Subscription]] = defaultdict(list)

    def subscribe(self, channels: Iterable[str], handler: Optional[Handler] = None) -> Subscription:
        subscription = Subscription(self, channels, handler)
        for channel in subscription.channels:
            self._subscriptions[channel].append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        for channel in subscription.channels:
            subscribers = self._subscriptions.get(channel)
            if not subscribers:
                continue
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                del self._subscriptions[channel]

    async def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> int:
        message = RealtimeEvent(channel=channel, event=event, payload=payload)
        delivered = 0
        for subscription in list(self._subscriptions.get(channel, ())):
            try:
                subscription.deliver(message)
                delivered += 1
            except Exception:
                logger.exception("Realtime subscriber on %s failed handling %s", channel, event)
        return delivered


async def safe_publish(bus: Optional[RealtimeBus], channel: str, event: str, payload: Dict[str, Any]) -> None:
    """Publish and swallow failures; realtime delivery never fails a write."""
    if bus is None:
        return
    try:
        await bus.publish(channel, event, payload)
    except Exception:
        logger.warning("Broadcast of %s on %s failed", event, channel, exc_info=True)


CacheKey = Tuple[Hashable, ...]


class QueryCache:
    """Client-side query cache with prefix invalidation."""

    def __init__(self):
        self._entries: Dict[CacheKey, Any] = {}
        self.invalidations: List[Tuple[CacheKey, ...]] = []

    def get(self, key: CacheKey, default: Any = None) -> Any:
        return self._entries.get(key, default)

    def set(self, key: CacheKey, value: Any) -> None:
        self._entries[key] = value

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._entries

    def invalidate(self, *prefixes: CacheKey) -> int:
        removed = 0
        for key in list(self._entries):
            if any(key[:len(prefix)] == prefix for prefix in prefixes):
                del self._entries[key]
                removed += 1
        self.invalidations.append(tuple(prefixes))
        return removed


TABLE_CACHE_KEYS: Dict[str, Tuple[CacheKey, ...]] = {
    "workspaces": (("workspace",),),
    "files": (("workspace",), ("files",)),
    "folders": (("workspace",),),
    "links": (("links",),),
    "batches": (("links",), ("files",)),
    "notifications": (("notifications",), ("links",)),
}

EVENT_CACHE_KEYS: Dict[str, Tuple[CacheKey, ...]] = {
    NOTIFICATION_EVENT: (("notifications",), ("links",)),
    FILE_UPDATE_EVENT: (("files",), ("links",), ("workspace",)),
    LINK_CREATED_EVENT: (("workspace",), ("links",)),
    LINK_DELETED_EVENT: (("workspace",), ("links",)),
}


class RealtimeSyncClient:
    def __init__(
            self,
            bus: RealtimeBus,
            cache: QueryCache,
            debounce_ms: int = config.REALTIME_DEBOUNCE_MS
    ):
        self.bus = bus
        self.cache = cache
        self.debounce = debounce_ms / 1000
        self._subscriptions: List[Subscription] = []
        self._pending: Set[CacheKey] = set()
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def has_pending(self) -> bool:
        return self._timer is not None

    def subscribe(
            self,
            channel: str,
            *,
            table: Optional[str] = None,
            filter: Optional[Tuple[str, Any]] = None,
            events: Optional[Iterable[str]] = None,
            on_data: Optional[Handler] = None
    ) -> Subscription:
        wanted = frozenset(events) if events else None

        def handle(event: RealtimeEvent) -> None:
            if wanted is not None and event.event not in wanted:
                return
            if table is not None and event.event in CHANGE_EVENTS and event.table != table:
                return
            if filter is not None and event.event in CHANGE_EVENTS:
                column, value = filter
                if str(event.record.get(column)) != str(value):
                    return

            if on_data is not None:
                on_data(event)
            self._on_event(event)

        subscription = self.bus.subscribe([channel], handle)
        self._subscriptions.append(subscription)
        return subscription

    def _keys_for(self, event: RealtimeEvent) -> Tuple[CacheKey, ...]:
        if event.event in CHANGE_EVENTS:
            return TABLE_CACHE_KEYS.get(event.table or "", ())
        return EVENT_CACHE_KEYS.get(event.event, ())

    def _on_event(self, event: RealtimeEvent) -> None:
        keys = self._keys_for(event)
        if not keys:
            return

        if event.event in IMMEDIATE_EVENTS:
            self.cache.invalidate(*keys)
            return

        self._pending.update(keys)
        if self._timer is not None:
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().call_later(self.debounce, self._flush)

    def _flush(self) -> None:
        self._timer = None
        keys, self._pending = self._pending, set()
        if keys:
            self.cache.invalidate(*sorted(keys, key=str))

    def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.close()
        self._subscriptions.clear()

        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending.clear()


async def authorize_channels(db: AsyncSession, user_id: str, channels: Iterable[str]) -> List[str]:
    """Return the channels ``user_id`` may listen on; raises PermissionError otherwise."""
    allowed = []
    for channel in channels:
        kind, key = channel_owner_key(channel)
        if kind == "user":
            ok = key == user_id
        elif kind in ("workspace", "link"):
            try:
                row_id = uuid.UUID(key)
            except ValueError:
                ok = False
            else:
                model = Workspace if kind == "workspace" else Link
                owner = await db.scalar(sa.select(model.user_id).where(model.id == row_id))
                ok = owner == user_id
        else:
            ok = False

        if not ok:
            raise PermissionError(f"Not allowed to subscribe to '{channel}'.")
        allowed.append(channel)
    return allowed
