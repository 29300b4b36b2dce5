"""
Router orders: customer side, create / list / follow delivery orders.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from core.dependencies import get_current_user, require_customer
from core.exceptions import Unauthorized
from models.common import OrderStatus, UserRole
from models.order import DeliveryOrder, OrderCreate, OrderDetail, FeeQuoteRequest, FeeQuote
from services.eta_service import estimate_eta
from services.order_service import create_order, get_order, list_orders_for_user, get_order_timeline
from services.pricing_service import calculate_delivery_fee
from services.tracking_service import get_latest_locations

router = APIRouter()

AGENT_CARD_FIELDS = ("agent_id", "full_name", "agent_code", "phone", "avatar_url", "vehicle_type", "rating")


async def ensure_can_view(order: dict, current_user: dict) -> None:
    role = current_user["role"]
    if role == UserRole.ADMIN.value:
        return
    if role == UserRole.CUSTOMER.value and order["user_id"] == current_user["user_id"]:
        return
    if role == UserRole.AGENT.value and order.get("assigned_agent_id"):
        from services.agent_service import get_agent_by_user
        agent = await get_agent_by_user(current_user["user_id"])
        if agent["agent_id"] == order["assigned_agent_id"]:
            return
    raise Unauthorized("You cannot view this order")


@router.post("/quote", response_model=FeeQuote, summary="Compute a delivery fee (no order created)")
async def quote_order(body: FeeQuoteRequest):
    return await calculate_delivery_fee(body)


@router.get("/eta", summary="Estimate delivery time")
async def eta(
    distance_km: float = Query(..., ge=0),
    status: OrderStatus = Query(OrderStatus.PENDING),
):
    return {"distance_km": distance_km, "status": status.value, "eta": estimate_eta(distance_km, status)}


@router.post("", response_model=DeliveryOrder, summary="Request a delivery")
async def create_order_endpoint(
    body: OrderCreate,
    current_user: dict = Depends(require_customer),
):
    return await create_order(body, user_id=current_user["user_id"])


@router.get("", summary="My orders")
async def list_my_orders(
    status: Optional[OrderStatus] = None,
    limit: int = Query(50, ge=1, le=200),
    current_user: dict = Depends(require_customer),
):
    orders = await list_orders_for_user(
        current_user["user_id"], status.value if status else None, limit=limit,
    )
    return {"orders": orders, "total": len(orders)}


@router.get("/{order_id}", response_model=OrderDetail, summary="Order detail + timeline")
async def order_detail(order_id: str, current_user: dict = Depends(get_current_user)):
    order = await get_order(order_id)
    await ensure_can_view(order, current_user)
    timeline = await get_order_timeline(order_id)
    return {
        "order":    order,
        "timeline": timeline,
        "eta":      estimate_eta(order.get("distance_km"), order["status"]),
    }


@router.get("/{order_id}/tracking", summary="Live tracking snapshot")
async def order_tracking(order_id: str, current_user: dict = Depends(get_current_user)):
    """Order, agent card and last positions; live changes come from /ws/orders."""
    order = await get_order(order_id)
    await ensure_can_view(order, current_user)

    agent_card = None
    if order.get("assigned_agent_id"):
        from services.agent_service import get_agent
        agent = await get_agent(order["assigned_agent_id"])
        agent_card = {k: agent.get(k) for k in AGENT_CARD_FIELDS}

    history = await get_latest_locations(order_id, limit=10)
    return {
        "order":            order,
        "agent":            agent_card,
        "latest_location":  history[0] if history else None,
        "location_history": history,
        "eta":              estimate_eta(order.get("distance_km"), order["status"]),
    }
