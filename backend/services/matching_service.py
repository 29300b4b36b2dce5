"""
Matching engine: binds exactly one agent to a pending order.

Three entry points share one conditional write (status must still be pending):
  auto_assign: first online, idle, eligible agent in registry order
  assign     : administrator picks the agent (optionally with a negotiated fee)
  respond    : agent accepts / counter-offers / declines from the open pool

A caller that lost the race gets ConflictingAssignment; a caller that arrives
after the order left pending gets InvalidTransition. Never a silent reassignment.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from pymongo.errors import PyMongoError

from core.exceptions import (
    InvalidTransition, Unauthorized, NoFreeAgent, ConflictingAssignment, DispatchValidationError,
    StorageUnavailable,
)
from database import db
from models.common import OrderStatus, ResponseAction, AvailabilityStatus, UserRole
from services.agent_service import (
    get_agent, is_eligible, list_eligible_agents, get_availability, count_active_orders,
)
from services.order_service import get_order, conditional_update, response_effect

logger = logging.getLogger(__name__)


def _response_id() -> str:
    return f"rsp_{uuid.uuid4().hex[:12]}"


async def _require_pending(order_id: str) -> dict:
    order = await get_order(order_id)
    if order["status"] != OrderStatus.PENDING.value:
        raise InvalidTransition("This order is no longer available")
    return order


async def _require_eligible(agent_id: str) -> dict:
    agent = await get_agent(agent_id)
    if not is_eligible(agent):
        raise Unauthorized("Agent is not active or not verified")
    return agent


def _check_fee(fee: Optional[float]) -> None:
    if fee is not None and fee <= 0:
        raise DispatchValidationError("The adjusted fee must be positive")


async def _claim(
    order_id: str,
    agent_id: str,
    actor_id: Optional[str],
    actor_role: str,
    mode: str,
    adjusted_fee: Optional[float] = None,
    reason: Optional[str] = None,
    response: Optional[dict] = None,
) -> dict:
    """
    Agent + status in one write, guarded on status == pending.
    `response` is logged by the same write, so the loser leaves no trace.
    """
    fields = {
        "assigned_agent_id": agent_id,
        "status":            OrderStatus.AGENT_ASSIGNED.value,
        "assigned_at":       datetime.now(timezone.utc),
    }
    if adjusted_fee is not None:
        fields["agent_adjusted_fee"] = adjusted_fee
        fields["fee_adjustment_reason"] = reason

    updated = await conditional_update(
        order_id,
        expected_status=OrderStatus.PENDING,
        fields=fields,
        event_type="AGENT_ASSIGNED",
        actor_id=actor_id,
        actor_role=actor_role,
        notes=reason,
        metadata={"mode": mode, "agent_id": agent_id, "adjusted_fee": adjusted_fee},
        effects=[response_effect(response)] if response else None,
    )
    if updated is None:
        logger.warning("Assignment race lost on %s by agent %s (%s)", order_id, agent_id, mode)
        raise ConflictingAssignment()
    logger.info("Order %s assigned to %s (%s)", order_id, agent_id, mode)
    return updated


def _build_response(
    order_id: str,
    agent_id: str,
    action: ResponseAction,
    proposed_fee: Optional[float] = None,
    message: Optional[str] = None,
) -> dict:
    """An entry of the append-only negotiation log."""
    return {
        "response_id":      _response_id(),
        "order_id":         order_id,
        "agent_id":         agent_id,
        "action":           action.value,
        "proposed_fee":     proposed_fee,
        "response_message": message,
        "created_at":       datetime.now(timezone.utc),
    }


async def find_free_agent(service_area_id: Optional[str] = None) -> Optional[dict]:
    """
    First eligible agent that is online with no active order.
    Deterministic first match in registry order, no proximity or fairness weighting.
    """
    for agent in await list_eligible_agents(service_area_id):
        availability = await get_availability(agent["agent_id"])
        if availability.get("status") != AvailabilityStatus.ONLINE.value:
            continue
        if await count_active_orders(agent["agent_id"]) > 0:
            continue
        return agent
    return None


async def auto_assign(order_id: str, actor: dict, service_area_id: Optional[str] = None) -> dict:
    if actor.get("role") != UserRole.ADMIN.value:
        raise Unauthorized("Only administrators can trigger automatic assignment")
    await _require_pending(order_id)

    agent = await find_free_agent(service_area_id)
    if not agent:
        logger.info("No free agent for order %s", order_id)
        raise NoFreeAgent()
    return await _claim(
        order_id, agent["agent_id"],
        actor_id=actor.get("user_id"), actor_role=UserRole.ADMIN.value, mode="auto",
    )


async def assign(
    order_id: str,
    agent_id: str,
    adjusted_fee: Optional[float] = None,
    reason: Optional[str] = None,
    actor: Optional[dict] = None,
) -> dict:
    """Administrator manual assignment; an adjusted fee is recorded as the agent's counter-offer."""
    if not actor or actor.get("role") != UserRole.ADMIN.value:
        raise Unauthorized("Only administrators can assign orders manually")
    _check_fee(adjusted_fee)
    await _require_pending(order_id)
    await _require_eligible(agent_id)

    response = None
    if adjusted_fee is not None:
        response = _build_response(order_id, agent_id, ResponseAction.COUNTER_OFFER, adjusted_fee, reason)
    return await _claim(
        order_id, agent_id,
        actor_id=actor.get("user_id"), actor_role=UserRole.ADMIN.value, mode="manual",
        adjusted_fee=adjusted_fee, reason=reason, response=response,
    )


async def respond(
    order_id: str,
    agent_id: str,
    action: ResponseAction,
    proposed_fee: Optional[float] = None,
    message: Optional[str] = None,
) -> dict:
    """
    Agent's answer to a pending order.
    Returns {"order": ..., "response": ...}; decline leaves the order untouched.
    """
    action = ResponseAction(action)
    await _require_eligible(agent_id)

    if action == ResponseAction.COUNTER_OFFER:
        if proposed_fee is None:
            raise DispatchValidationError("A counter-offer needs a proposed fee")
        _check_fee(proposed_fee)

    order = await _require_pending(order_id)

    if action == ResponseAction.DECLINED:
        response = _build_response(order_id, agent_id, action, None, message)
        try:
            await db.agent_order_responses.insert_one(response)
        except PyMongoError as exc:
            logger.error("Response log write failed for %s: %s", order_id, exc)
            raise StorageUnavailable() from exc
        response.pop("_id", None)
        logger.info("Agent %s declined order %s", agent_id, order_id)
        return {"order": order, "response": response}

    adjusted = proposed_fee if action == ResponseAction.COUNTER_OFFER else None
    response = _build_response(order_id, agent_id, action, adjusted, message)
    updated = await _claim(
        order_id, agent_id,
        actor_id=agent_id, actor_role=UserRole.AGENT.value, mode="self_service",
        adjusted_fee=adjusted, reason=message if adjusted is not None else None,
        response=response,
    )
    return {"order": updated, "response": response}


async def list_responses(order_id: str) -> list:
    cursor = db.agent_order_responses.find({"order_id": order_id}, {"_id": 0}).sort("created_at", 1)
    return await cursor.to_list(length=200)
