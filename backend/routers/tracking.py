"""
Router tracking: WebSocket live feed of order / location changes.

Protocol (server → client):
  connection_established, snapshot{orders}, insert, update{changed fields},
  location{ping}, then snapshot again after any resync.
Client → server: {"type": "resync"} forces a fresh snapshot.
A reconnecting client always starts from a snapshot: missed deltas are not replayed.
"""
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query, status
from fastapi.encoders import jsonable_encoder

from core.dependencies import user_from_token
from core.exceptions import DispatchError
from models.common import UserRole, ACTIVE_STATUSES
from models.tracking import FeedEventType
from services.agent_service import get_agent_by_user
from services.order_service import (
    get_order, list_all_orders, list_orders_for_user, list_orders_for_agent, list_pending_orders,
)
from services.tracking_service import feed, FeedScope, Subscription, resync_event

router = APIRouter()
logger = logging.getLogger(__name__)


async def _snapshot(sub: Subscription) -> list:
    if sub.order_id:
        order = await get_order(sub.order_id)
        return [order] if sub.can_see(order) else []
    if sub.scope == FeedScope.ADMIN:
        orders, _total = await list_all_orders(limit=200)
        return orders
    if sub.scope == FeedScope.USER:
        return await list_orders_for_user(sub.subject_id)
    return await list_orders_for_agent(sub.subject_id, ACTIVE_STATUSES) + await list_pending_orders()


async def _pump(websocket: WebSocket, sub: Subscription) -> None:
    async for event in sub:
        if event.type == FeedEventType.RESYNC:
            orders = await _snapshot(sub)
            await websocket.send_json(jsonable_encoder({"type": "snapshot", "orders": orders}))
        else:
            await websocket.send_json(jsonable_encoder(event))


def _close_on_failure(websocket: WebSocket, sub: Subscription):
    """Closes the socket with 1011 once the pump dies with an error."""
    def _done(task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is None:
            return
        logger.error("Feed pump for %s failed: %r", sub.subscription_id, task.exception())
        asyncio.ensure_future(websocket.close(code=status.WS_1011_INTERNAL_ERROR))
    return _done


@router.websocket("/orders")
async def orders_feed(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
    order_id: Optional[str] = Query(None),
):
    user = user_from_token(token)
    if not user:
        await websocket.close(code=4001, reason="Authentication required")
        return

    if user["role"] == UserRole.ADMIN.value:
        scope, subject_id = FeedScope.ADMIN, None
    elif user["role"] == UserRole.AGENT.value:
        try:
            agent = await get_agent_by_user(user["user_id"])
        except DispatchError:
            await websocket.close(code=4003, reason="No agent profile")
            return
        scope, subject_id = FeedScope.AGENT, agent["agent_id"]
    else:
        scope, subject_id = FeedScope.USER, user["user_id"]

    # subscribe before the snapshot so nothing falls in between
    sub = feed.subscribe(scope, subject_id, order_id=order_id)
    if order_id:
        try:
            visible = sub.can_see(await get_order(order_id))
        except DispatchError:
            visible = False
        if not visible:
            feed.unsubscribe(sub)
            await websocket.close(code=4003, reason="Order not visible")
            return
    await websocket.accept()
    pump: Optional[asyncio.Task] = None
    try:
        await websocket.send_json({
            "type":            "connection_established",
            "subscription_id": sub.subscription_id,
            "scope":           scope.value,
        })
        sub.push(resync_event())
        pump = asyncio.create_task(_pump(websocket, sub))
        pump.add_done_callback(_close_on_failure(websocket, sub))

        while True:
            message = await websocket.receive_json()
            if pump.done():
                break
            if message.get("type") == "resync":
                sub.push(resync_event())
    except WebSocketDisconnect:
        logger.info("Feed client %s disconnected", sub.subscription_id)
    finally:
        if pump:
            pump.cancel()
        feed.unsubscribe(sub)
