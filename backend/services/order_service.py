"""
Order store: creation, queries, and the single conditional-write chokepoint
through which every order mutation goes (history, live feed and
follow-up writes included).
"""
import logging
import uuid
from datetime import datetime, timezone, timedelta
from typing import Optional, Iterable, List

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from core.exceptions import DispatchError, NotFound, StorageUnavailable
from database import db
from models.common import OrderStatus
from models.order import OrderCreate, FeeQuoteRequest
from services.agent_service import get_agent, record_delivery_completed
from services.eta_service import eta_minutes
from services.pricing_service import calculate_delivery_fee
from services.tracking_service import feed

logger = logging.getLogger(__name__)

# Statuses that must carry an agent, and those that must not
_AGENT_REQUIRED = {
    OrderStatus.AGENT_ASSIGNED.value,
    OrderStatus.PICKED_UP.value,
    OrderStatus.IN_TRANSIT.value,
    OrderStatus.DELIVERED.value,
}
_AGENT_FORBIDDEN = {OrderStatus.PENDING.value, OrderStatus.CANCELLED.value}

# The effect queue is bookkeeping, never part of an order read
ORDER_PROJECTION = {"_id": 0, "pending_effects": 0}


def _order_id() -> str:
    return f"ord_{uuid.uuid4().hex[:12]}"


def _event_id() -> str:
    return f"evt_{uuid.uuid4().hex[:12]}"


def effective_fee(order: dict) -> float:
    """agent_adjusted_fee wins over total_fee when set."""
    adjusted = order.get("agent_adjusted_fee")
    if adjusted is not None:
        return adjusted
    return order.get("total_fee") or 0.0


async def create_order(data: OrderCreate, user_id: str) -> dict:
    """Creates a pending, unassigned order priced by the fee calculator."""
    if data.preferred_agent_id:
        await get_agent(data.preferred_agent_id)

    quote = await calculate_delivery_fee(FeeQuoteRequest(
        distance_km=data.distance_km,
        weight_kg=data.weight_kg,
        is_fragile=data.is_fragile,
        weather_condition=data.weather_condition,
        urgency=data.urgency,
        service_id=data.service_id,
    ))

    now = datetime.now(timezone.utc)
    order_doc = {
        "order_id":                 _order_id(),
        "user_id":                  user_id,
        "assigned_agent_id":        None,
        "preferred_agent_id":       data.preferred_agent_id,
        "pickup":                   data.pickup.model_dump(),
        "delivery":                 data.delivery.model_dump(),
        "weight_kg":                data.weight_kg,
        "is_fragile":               data.is_fragile,
        "package_description":      data.package_description,
        "distance_km":              data.distance_km,
        "weather_condition":        data.weather_condition.value,
        "total_fee":                quote.total_fee,
        "fee_breakdown":            [line.model_dump() for line in quote.breakdown],
        "agent_adjusted_fee":       None,
        "fee_adjustment_reason":    None,
        "promo_code":               data.promo_code,
        "status":                   OrderStatus.PENDING.value,
        "urgency":                  data.urgency.value,
        "delivery_notes":           None,
        "proof_of_delivery_images": [],
        "estimated_delivery_time":  now + timedelta(
            minutes=eta_minutes(data.distance_km, OrderStatus.PENDING)
        ),
        "created_at":               now,
        "updated_at":               now,
        "assigned_at":              None,
        "pickup_time":              None,
        "delivery_time":            None,
        "cancelled_at":             None,
    }
    created = event_effect(build_event(
        order_id=order_doc["order_id"],
        event_type="ORDER_CREATED",
        to_status=OrderStatus.PENDING,
        actor_id=user_id,
        actor_role="customer",
    ))
    order_doc["pending_effects"] = [created]
    try:
        await db.delivery_orders.insert_one(order_doc)
    except PyMongoError as exc:
        logger.error("Order insert failed: %s", exc)
        raise StorageUnavailable() from exc

    order = {k: v for k, v in order_doc.items() if k not in ("_id", "pending_effects")}
    feed.publish_insert(order)
    await apply_effects(order["order_id"], [created])
    logger.info("Order %s created by %s (fee=%s)", order["order_id"], user_id, quote.total_fee)
    return order


async def get_order(order_id: str) -> dict:
    order = await db.delivery_orders.find_one({"order_id": order_id}, ORDER_PROJECTION)
    if not order:
        raise NotFound("Order")
    return order


async def list_orders_for_user(user_id: str, status: Optional[str] = None, limit: int = 50) -> list:
    query: dict = {"user_id": user_id}
    if status:
        query["status"] = status
    cursor = db.delivery_orders.find(query, ORDER_PROJECTION).sort("created_at", -1).limit(limit)
    return await cursor.to_list(length=limit)


async def list_orders_for_agent(
    agent_id: str,
    statuses: Optional[Iterable[OrderStatus]] = None,
    limit: int = 50,
) -> list:
    query: dict = {"assigned_agent_id": agent_id}
    if statuses:
        query["status"] = {"$in": [OrderStatus(s).value for s in statuses]}
    cursor = db.delivery_orders.find(query, ORDER_PROJECTION).sort("created_at", -1).limit(limit)
    return await cursor.to_list(length=limit)


async def list_pending_orders(limit: int = 100) -> list:
    """Open pool: every pending order, preferred agent or not."""
    cursor = db.delivery_orders.find(
        {"status": OrderStatus.PENDING.value}, ORDER_PROJECTION
    ).sort("created_at", -1).limit(limit)
    return await cursor.to_list(length=limit)


async def list_all_orders(status: Optional[str] = None, skip: int = 0, limit: int = 100) -> tuple[list, int]:
    query: dict = {}
    if status:
        query["status"] = status
    cursor = db.delivery_orders.find(query, ORDER_PROJECTION).sort("created_at", -1).skip(skip).limit(limit)
    orders = await cursor.to_list(length=limit)
    total = await db.delivery_orders.count_documents(query)
    return orders, total


def _check_invariants(fields: dict) -> None:
    new_status = fields.get("status")
    if new_status in _AGENT_REQUIRED and "assigned_agent_id" in fields and not fields["assigned_agent_id"]:
        raise ValueError(f"Status {new_status} requires an assigned agent")
    if new_status == OrderStatus.AGENT_ASSIGNED.value and not fields.get("assigned_agent_id"):
        raise ValueError("An agent must be assigned together with the agent_assigned status")
    if new_status in _AGENT_FORBIDDEN and fields.get("assigned_agent_id"):
        raise ValueError(f"Status {new_status} cannot carry an assigned agent")
    if "assigned_agent_id" in fields and "status" not in fields:
        raise ValueError("Assigning an agent without moving the status is not allowed")


async def conditional_update(
    order_id: str,
    expected_status: OrderStatus,
    fields: dict,
    event_type: str,
    actor_id: Optional[str] = None,
    actor_role: Optional[str] = None,
    notes: Optional[str] = None,
    metadata: Optional[dict] = None,
    effects: Optional[List[dict]] = None,
) -> Optional[dict]:
    """
    Applies `fields` only if the order is still in `expected_status`.
    Returns the updated order, or None when the guard did not match
    (order missing or already moved on).

    The history event and any `effects` (see `credit_effect`, `response_effect`)
    are queued on the order in the same atomic write, then applied right away.
    One that fails to apply stays queued and is replayed by `settle_pending_effects`.
    """
    _check_invariants(fields)
    changes = {**fields, "updated_at": datetime.now(timezone.utc)}
    new_status = changes.get("status")
    event = event_effect(build_event(
        order_id=order_id,
        event_type=event_type,
        from_status=expected_status if new_status else None,
        to_status=OrderStatus(new_status) if new_status else None,
        actor_id=actor_id,
        actor_role=actor_role,
        notes=notes,
        metadata=metadata or {},
    ))
    pending = [event] + list(effects or [])
    try:
        previous = await db.delivery_orders.find_one_and_update(
            {"order_id": order_id, "status": expected_status.value},
            {"$set": changes, "$push": {"pending_effects": {"$each": pending}}},
            projection=ORDER_PROJECTION,
            return_document=ReturnDocument.BEFORE,
        )
    except PyMongoError as exc:
        logger.error("Order %s update failed: %s", order_id, exc)
        raise StorageUnavailable() from exc

    if previous is None:
        return None

    updated = {**previous, **changes}
    feed.publish_update(updated, {"order_id": order_id, **changes}, previous)
    await apply_effects(order_id, pending)
    return updated


def build_event(
    order_id: str,
    event_type: str,
    from_status: Optional[OrderStatus] = None,
    to_status: Optional[OrderStatus] = None,
    actor_id: Optional[str] = None,
    actor_role: Optional[str] = None,
    notes: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> dict:
    """An OrderEvent document for order_events."""
    return {
        "event_id":    _event_id(),
        "order_id":    order_id,
        "event_type":  event_type,
        "from_status": from_status.value if from_status else None,
        "to_status":   to_status.value if to_status else None,
        "actor_id":    actor_id,
        "actor_role":  actor_role,
        "notes":       notes,
        "metadata":    metadata or {},
        "created_at":  datetime.now(timezone.utc),
    }


# ── Queued effects ────────────────────────────────────────────────────────────
# Writes to other collections that belong to an order mutation. Each one is
# idempotent, so replaying an effect that already landed changes nothing.

def event_effect(event: dict) -> dict:
    return {"effect_id": event["event_id"], "kind": "event", "doc": event}


def response_effect(response: dict) -> dict:
    return {"effect_id": response["response_id"], "kind": "response", "doc": response}


def credit_effect(order_id: str, agent_id: str, fee: float) -> dict:
    return {
        "effect_id": f"crd_{order_id}",
        "kind":      "credit",
        "order_id":  order_id,
        "agent_id":  agent_id,
        "fee":       fee,
    }


async def _apply_event(effect: dict) -> None:
    doc = effect["doc"]
    await db.order_events.update_one({"event_id": doc["event_id"]}, {"$setOnInsert": doc}, upsert=True)


async def _apply_response(effect: dict) -> None:
    doc = effect["doc"]
    await db.agent_order_responses.update_one(
        {"response_id": doc["response_id"]}, {"$setOnInsert": doc}, upsert=True,
    )


async def _apply_credit(effect: dict) -> None:
    await record_delivery_completed(effect["agent_id"], effect["fee"], effect["order_id"])


_APPLIERS = {
    "event":    _apply_event,
    "response": _apply_response,
    "credit":   _apply_credit,
}


async def apply_effects(order_id: str, effects: List[dict]) -> bool:
    """
    Applies queued effects in order and acknowledges each one on the order.
    Stops at the first failure, leaving it and the rest queued.
    """
    for effect in effects:
        try:
            await _APPLIERS[effect["kind"]](effect)
            await db.delivery_orders.update_one(
                {"order_id": order_id},
                {"$pull": {"pending_effects": {"effect_id": effect["effect_id"]}}},
            )
        except (PyMongoError, DispatchError) as exc:
            logger.error("Order %s: %s effect %s deferred: %s", order_id, effect["kind"], effect["effect_id"], exc)
            return False
    return True


async def settle_pending_effects(limit: int = 500) -> int:
    """Replays effects left queued by a failed write. Returns the number of orders settled."""
    cursor = db.delivery_orders.find(
        {"pending_effects.0": {"$exists": True}},
        {"_id": 0, "order_id": 1, "pending_effects": 1},
    ).limit(limit)
    settled = 0
    async for order in cursor:
        if await apply_effects(order["order_id"], order.get("pending_effects") or []):
            settled += 1
    if settled:
        logger.info("Settled queued effects on %d orders", settled)
    return settled


async def get_order_timeline(order_id: str) -> list:
    """Events in chronological order."""
    cursor = db.order_events.find(
        {"order_id": order_id},
        {"_id": 0},
    ).sort("created_at", 1)
    return await cursor.to_list(length=200)
