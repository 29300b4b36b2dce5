"""
Agent registry and availability tracker.

Availability is self-reported: only the owning agent session writes its row.
Lifetime aggregates are only ever moved by an atomic $inc on delivery, guarded
by the ledger of credited orders so a replayed credit is a no-op.
"""
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional

from pymongo import ASCENDING
from pymongo.errors import PyMongoError

from core.exceptions import NotFound, Unauthorized, StorageUnavailable
from core.utils import as_utc, start_of_day
from database import db
from models.agent import EarningsSummary
from models.common import AvailabilityStatus, OrderStatus, ACTIVE_STATUSES

logger = logging.getLogger(__name__)

# Ledger of credited order ids stays internal
AGENT_PROJECTION = {"_id": 0, "credited_order_ids": 0}


async def get_agent(agent_id: str) -> dict:
    agent = await db.delivery_agents.find_one({"agent_id": agent_id}, AGENT_PROJECTION)
    if not agent:
        raise NotFound("Agent")
    return agent


async def get_agent_by_user(user_id: str) -> dict:
    """Identity mapping user_id → agent profile."""
    agent = await db.delivery_agents.find_one({"user_id": user_id}, AGENT_PROJECTION)
    if not agent:
        raise Unauthorized("No delivery agent profile for this account")
    return agent


def is_eligible(agent: dict) -> bool:
    return bool(agent.get("is_active")) and bool(agent.get("is_verified"))


async def list_eligible_agents(service_area_id: Optional[str] = None) -> list:
    """Active and verified agents, in stable registry order."""
    query: dict = {"is_active": True, "is_verified": True}
    if service_area_id:
        query["service_area_id"] = service_area_id
    cursor = db.delivery_agents.find(query, AGENT_PROJECTION).sort(
        [("created_at", ASCENDING), ("agent_id", ASCENDING)]
    )
    return await cursor.to_list(length=1000)


async def get_availability(agent_id: str) -> dict:
    row = await db.agent_availability.find_one({"agent_id": agent_id}, {"_id": 0})
    if not row:
        return {"agent_id": agent_id, "status": AvailabilityStatus.OFFLINE.value, "last_seen_at": None}
    return row


async def set_availability(agent_id: str, status: AvailabilityStatus, actor_agent_id: str) -> dict:
    """Presence is owned by the agent: nobody else may flip it."""
    if agent_id != actor_agent_id:
        raise Unauthorized("Agents can only change their own availability")
    await get_agent(agent_id)

    now = datetime.now(timezone.utc)
    try:
        await db.agent_availability.update_one(
            {"agent_id": agent_id},
            {"$set": {"status": AvailabilityStatus(status).value, "last_seen_at": now}},
            upsert=True,
        )
    except PyMongoError as exc:
        logger.error("Availability write failed for %s: %s", agent_id, exc)
        raise StorageUnavailable() from exc
    logger.info("Agent %s is now %s", agent_id, AvailabilityStatus(status).value)
    return {"agent_id": agent_id, "status": AvailabilityStatus(status).value, "last_seen_at": now}


async def count_active_orders(agent_id: str) -> int:
    return await db.delivery_orders.count_documents({
        "assigned_agent_id": agent_id,
        "status": {"$in": [s.value for s in ACTIVE_STATUSES]},
    })


async def record_delivery_completed(agent_id: str, fee: float, order_id: str) -> bool:
    """
    Credits one delivered order: both counters move in a single $inc together with
    the ledger entry, never read-modify-write. Returns False when already credited.
    """
    now = datetime.now(timezone.utc)
    try:
        result = await db.delivery_agents.update_one(
            {"agent_id": agent_id, "credited_order_ids": {"$ne": order_id}},
            {
                "$inc":      {"total_deliveries": 1, "total_earnings": fee},
                "$addToSet": {"credited_order_ids": order_id},
                "$set":      {"updated_at": now},
            },
        )
    except PyMongoError as exc:
        logger.error("Aggregate update failed for %s: %s", agent_id, exc)
        raise StorageUnavailable() from exc
    if result.matched_count == 0:
        await get_agent(agent_id)
        logger.info("Order %s already credited to %s", order_id, agent_id)
        return False
    logger.info("Agent %s credited %s for order %s", agent_id, fee, order_id)
    return True


async def list_agents_with_status() -> list:
    """Admin roster: every agent with presence and current load."""
    cursor = db.delivery_agents.find({}, AGENT_PROJECTION).sort(
        [("created_at", ASCENDING), ("agent_id", ASCENDING)]
    )
    agents = await cursor.to_list(length=1000)
    for a in agents:
        availability = await get_availability(a["agent_id"])
        a["availability_status"] = availability["status"]
        a["last_seen_at"] = availability.get("last_seen_at")
        a["active_orders_count"] = await count_active_orders(a["agent_id"])
    return agents


async def get_earnings_summary(agent_id: str, now: Optional[datetime] = None) -> EarningsSummary:
    """Today / week (from Monday) / month from delivered orders, plus lifetime total."""
    from services.order_service import effective_fee

    agent = await get_agent(agent_id)
    now = as_utc(now or datetime.now(timezone.utc))
    today = start_of_day(now)
    week_start = today - timedelta(days=today.weekday())
    month_start = today.replace(day=1)
    # the week can start in the previous month
    oldest = min(week_start, month_start)

    cursor = db.delivery_orders.find(
        {"assigned_agent_id": agent_id, "status": OrderStatus.DELIVERED.value},
        {"_id": 0, "delivery_time": 1, "total_fee": 1, "agent_adjusted_fee": 1},
    ).sort("delivery_time", -1)

    summary = EarningsSummary(total=agent.get("total_earnings") or 0.0)
    async for order in cursor:
        if not order.get("delivery_time"):
            continue
        delivered_at = as_utc(order["delivery_time"])
        if delivered_at < oldest:
            break
        fee = effective_fee(order)
        if delivered_at >= today:
            summary.today += fee
            summary.deliveries_today += 1
        if delivered_at >= week_start:
            summary.week += fee
            summary.deliveries_week += 1
        if delivered_at >= month_start:
            summary.month += fee
            summary.deliveries_month += 1
    return summary
