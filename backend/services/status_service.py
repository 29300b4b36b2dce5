"""
Order status state machine: legal transitions, actor checks, timestamps.

  pending → agent_assigned → picked_up → in_transit → delivered
  pending → cancelled (administrator)

pending → agent_assigned belongs to the matching engine (services/matching_service.py).
"""
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional, List

from core.exceptions import InvalidTransition, Unauthorized, ConflictingAssignment, ProofRequired
from core.utils import as_utc
from database import db
from models.common import OrderStatus, UserRole
from services.order_service import ORDER_PROJECTION, get_order, conditional_update, credit_effect, effective_fee

logger = logging.getLogger(__name__)

# ── State machine ─────────────────────────────────────────────────────────────
ALLOWED_TRANSITIONS: dict[OrderStatus, list[OrderStatus]] = {
    OrderStatus.PENDING: [
        OrderStatus.AGENT_ASSIGNED,   # matching engine only
        OrderStatus.CANCELLED,        # administrator only
    ],
    OrderStatus.AGENT_ASSIGNED: [OrderStatus.PICKED_UP],
    OrderStatus.PICKED_UP:      [OrderStatus.IN_TRANSIT],
    OrderStatus.IN_TRANSIT:     [OrderStatus.DELIVERED],
    # Terminal states
    OrderStatus.DELIVERED: [],
    OrderStatus.CANCELLED: [],
}

# Steps the assigned agent drives through advance_status
AGENT_TRANSITIONS: dict[OrderStatus, OrderStatus] = {
    OrderStatus.AGENT_ASSIGNED: OrderStatus.PICKED_UP,
    OrderStatus.PICKED_UP:      OrderStatus.IN_TRANSIT,
    OrderStatus.IN_TRANSIT:     OrderStatus.DELIVERED,
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return OrderStatus(target) in ALLOWED_TRANSITIONS.get(OrderStatus(current), [])


def next_status(current: OrderStatus) -> Optional[OrderStatus]:
    return AGENT_TRANSITIONS.get(OrderStatus(current))


async def advance_status(
    order_id: str,
    actor_agent_id: str,
    target_status: OrderStatus,
    proof_images: Optional[List[str]] = None,
    notes: Optional[str] = None,
) -> dict:
    """
    Moves an order one step forward on behalf of its assigned agent.
    delivered requires proof images and credits the agent in the same operation.
    """
    target = OrderStatus(target_status)
    order = await get_order(order_id)
    current = OrderStatus(order["status"])

    if AGENT_TRANSITIONS.get(current) != target:
        raise InvalidTransition(f"Illegal transition: {current.value} → {target.value}")
    if order.get("assigned_agent_id") != actor_agent_id:
        raise Unauthorized("Only the assigned agent can update this order")

    now = datetime.now(timezone.utc)
    fields: dict = {"status": target.value}
    effects: list = []
    if target == OrderStatus.PICKED_UP:
        fields["pickup_time"] = now
    elif target == OrderStatus.DELIVERED:
        images = [uri for uri in (proof_images or []) if uri]
        if not images:
            raise ProofRequired()
        fields["delivery_time"] = now
        fields["proof_of_delivery_images"] = images
        fields["delivery_notes"] = notes
        effects.append(credit_effect(order_id, actor_agent_id, effective_fee(order)))

    updated = await conditional_update(
        order_id,
        expected_status=current,
        fields=fields,
        event_type="STATUS_CHANGED",
        actor_id=actor_agent_id,
        actor_role=UserRole.AGENT.value,
        notes=notes,
        effects=effects,
    )
    if updated is None:
        logger.warning("Stale transition on %s: %s → %s by %s", order_id, current.value, target.value, actor_agent_id)
        raise ConflictingAssignment("The order changed meanwhile, reload it")

    logger.info("Order %s: %s → %s", order_id, current.value, target.value)
    return updated


async def complete_delivery(order_id: str, actor_agent_id: str, uploads: list, notes: Optional[str] = None) -> dict:
    """Uploads the proof images, then moves in_transit → delivered."""
    from services.storage_service import save_proof_image

    order = await get_order(order_id)
    if order["status"] != OrderStatus.IN_TRANSIT.value:
        raise InvalidTransition(f"Illegal transition: {order['status']} → delivered")
    if order.get("assigned_agent_id") != actor_agent_id:
        raise Unauthorized("Only the assigned agent can update this order")
    if not uploads:
        raise ProofRequired()

    images = [await save_proof_image(order_id, upload) for upload in uploads]
    return await advance_status(order_id, actor_agent_id, OrderStatus.DELIVERED, images, notes)


async def cancel_order(order_id: str, actor: dict, reason: Optional[str] = None) -> dict:
    """Administrator-only cancellation of a pending order."""
    if actor.get("role") != UserRole.ADMIN.value:
        raise Unauthorized("Only administrators can cancel orders")

    order = await get_order(order_id)
    if order["status"] != OrderStatus.PENDING.value:
        raise InvalidTransition(f"Illegal transition: {order['status']} → cancelled")

    updated = await conditional_update(
        order_id,
        expected_status=OrderStatus.PENDING,
        fields={"status": OrderStatus.CANCELLED.value, "cancelled_at": datetime.now(timezone.utc)},
        event_type="ORDER_CANCELLED",
        actor_id=actor.get("user_id"),
        actor_role=UserRole.ADMIN.value,
        notes=reason,
    )
    if updated is None:
        raise ConflictingAssignment("The order was assigned before it could be cancelled")
    logger.info("Order %s cancelled by %s", order_id, actor.get("user_id"))
    return updated


async def expire_stale_pending_orders(timeout_minutes: int, now: Optional[datetime] = None) -> int:
    """Cancels pending orders nobody picked up within `timeout_minutes`, oldest first."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=timeout_minutes)

    stale = []
    cursor = db.delivery_orders.find(
        {"status": OrderStatus.PENDING.value}, ORDER_PROJECTION
    ).sort("created_at", 1)
    async for order in cursor:
        if as_utc(order["created_at"]) >= cutoff:
            break
        stale.append(order["order_id"])

    expired = 0
    for order_id in stale:
        updated = await conditional_update(
            order_id,
            expected_status=OrderStatus.PENDING,
            fields={"status": OrderStatus.CANCELLED.value, "cancelled_at": now},
            event_type="ORDER_EXPIRED",
            actor_id="system",
            actor_role="system",
            notes=f"No agent within {timeout_minutes} min",
        )
        if updated:
            expired += 1
    return expired
