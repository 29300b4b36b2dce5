"""
Live tracking feed: pushes order and location changes to subscribed sessions.

Scopes:
  user : orders whose user_id is the subscriber
  agent: orders assigned to the agent, plus pending orders (open pool)
  admin: everything

Inserts make subscribers re-fetch their list, updates carry only the changed
fields and are merged into the cached record. Missed deltas are not buffered:
an overflowing or reconnecting subscriber gets a `resync` and re-fetches.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from config import settings
from core.exceptions import InvalidTransition, Unauthorized
from database import db
from models.common import OrderStatus, ACTIVE_STATUSES
from models.tracking import FeedEvent, FeedEventType, LocationUpdate

logger = logging.getLogger(__name__)


class FeedScope(str, Enum):
    USER  = "user"
    AGENT = "agent"
    ADMIN = "admin"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def resync_event() -> FeedEvent:
    return FeedEvent(type=FeedEventType.RESYNC, timestamp=_now())


# Queued by close(): wakes a waiting consumer and ends its iteration
_CLOSED = object()


class Subscription:
    """One observer session. Iterate it to receive FeedEvents."""

    def __init__(self, scope: FeedScope, subject_id: Optional[str], maxsize: int, order_id: Optional[str] = None):
        self.subscription_id = f"sub_{uuid.uuid4().hex[:12]}"
        self.scope = scope
        self.subject_id = subject_id
        self.order_id = order_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False
        self.dropped = 0

    def can_see(self, order: Optional[dict]) -> bool:
        if not order:
            return False
        if self.order_id and order.get("order_id") != self.order_id:
            return False
        if self.scope == FeedScope.ADMIN:
            return True
        if self.scope == FeedScope.USER:
            return order.get("user_id") == self.subject_id
        return (
            order.get("assigned_agent_id") == self.subject_id
            or order.get("status") == OrderStatus.PENDING.value
        )

    def _drop_backlog(self) -> None:
        self.dropped += self.queue.qsize()
        while not self.queue.empty():
            self.queue.get_nowait()

    def push(self, event: FeedEvent) -> None:
        if self.closed:
            return
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            # the subscriber fell behind: drop the backlog, force a full re-fetch
            self._drop_backlog()
            self.queue.put_nowait(resync_event())
            logger.warning("Feed subscriber %s overflowed, resync forced", self.subscription_id)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.queue.full():
            self._drop_backlog()
        self.queue.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> FeedEvent:
        event = await self.queue.get()
        if event is _CLOSED:
            # keep the marker for any other waiter
            self.queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return event


class TrackingFeed:

    def __init__(self, queue_size: Optional[int] = None):
        self.queue_size = queue_size or settings.FEED_QUEUE_SIZE
        self._subscriptions: Dict[str, Subscription] = {}

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(
        self,
        scope: FeedScope,
        subject_id: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> Subscription:
        """`order_id` narrows the subscription to a single order (tracking page)."""
        scope = FeedScope(scope)
        if scope != FeedScope.ADMIN and not subject_id:
            raise ValueError(f"A {scope.value} subscription needs a subject id")
        sub = Subscription(scope, subject_id, self.queue_size, order_id=order_id)
        self._subscriptions[sub.subscription_id] = sub
        logger.info("Feed subscription %s opened (%s=%s)", sub.subscription_id, scope.value, subject_id)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        sub.close()
        self._subscriptions.pop(sub.subscription_id, None)
        logger.info("Feed subscription %s closed", sub.subscription_id)

    def _broadcast(self, event: FeedEvent, *snapshots: Optional[dict]) -> int:
        delivered = 0
        for sub in list(self._subscriptions.values()):
            if any(sub.can_see(s) for s in snapshots):
                sub.push(event)
                delivered += 1
        return delivered

    def publish_insert(self, order: dict) -> int:
        event = FeedEvent(
            type=FeedEventType.INSERT,
            order_id=order["order_id"],
            data=order,
            timestamp=_now(),
        )
        return self._broadcast(event, order)

    def publish_update(self, order: dict, changed: dict, previous: Optional[dict] = None) -> int:
        """
        `order` is the state after the write, `previous` before it; a
        subscriber that could see either one receives the delta (so an agent's
        pending list learns that an order was taken by someone else).
        """
        event = FeedEvent(
            type=FeedEventType.UPDATE,
            order_id=order["order_id"],
            data=changed,
            timestamp=_now(),
        )
        return self._broadcast(event, order, previous)

    def publish_location(self, order: dict, ping: dict) -> int:
        event = FeedEvent(
            type=FeedEventType.LOCATION,
            order_id=order["order_id"],
            data=ping,
            timestamp=_now(),
        )
        return self._broadcast(event, order)


feed = TrackingFeed()


# ── Client-side view ──────────────────────────────────────────────────────────
class OrderListView:
    """
    Local cache of one observer's orders.
    apply(insert)  → full re-fetch of the list
    apply(update)  → field-by-field merge into the cached record
    apply(resync) / resync() → full re-fetch (reconnection)
    """

    def __init__(self, fetch: Callable[[], Awaitable[List[dict]]]):
        self._fetch = fetch
        self.orders: Dict[str, dict] = {}
        self.locations: Dict[str, dict] = {}
        self.fetch_count = 0

    async def resync(self) -> None:
        rows = await self._fetch()
        self.orders = {row["order_id"]: dict(row) for row in rows}
        self.fetch_count += 1

    async def apply(self, event: FeedEvent) -> None:
        if event.type in (FeedEventType.INSERT, FeedEventType.RESYNC):
            await self.resync()
        elif event.type == FeedEventType.UPDATE:
            cached = self.orders.get(event.order_id)
            if cached is None:
                # newly visible to this observer
                await self.resync()
            else:
                cached.update(event.data)
        elif event.type == FeedEventType.LOCATION:
            self.locations[event.order_id] = event.data

    async def follow(self, sub: Subscription) -> None:
        await self.resync()
        async for event in sub:
            await self.apply(event)


# ── Location pings ────────────────────────────────────────────────────────────
def _ping_id() -> str:
    return f"loc_{uuid.uuid4().hex[:12]}"


async def record_location(order_id: str, actor_agent_id: str, body: LocationUpdate) -> dict:
    """Stores the assigned agent's position and pushes it to the order's observers."""
    from services.order_service import get_order

    order = await get_order(order_id)
    if order.get("assigned_agent_id") != actor_agent_id:
        raise Unauthorized("Only the assigned agent can report a position")
    if order["status"] not in [s.value for s in ACTIVE_STATUSES]:
        raise InvalidTransition("This order is not in progress")

    ping = {
        "ping_id":         _ping_id(),
        "order_id":        order_id,
        "agent_id":        actor_agent_id,
        "lat":             body.lat,
        "lng":             body.lng,
        "heading":         body.heading,
        "speed":           body.speed,
        "tracking_status": body.tracking_status.value,
        "timestamp":       _now(),
    }
    await db.delivery_tracking.insert_one(ping)
    ping.pop("_id", None)
    feed.publish_location(order, ping)
    return ping


async def get_latest_locations(order_id: str, limit: int = 10) -> list:
    cursor = db.delivery_tracking.find(
        {"order_id": order_id},
        {"_id": 0},
    ).sort("timestamp", -1).limit(limit)
    return await cursor.to_list(length=limit)
