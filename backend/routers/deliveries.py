"""
Router deliveries: agent side, open pool, negotiation, status steps, proof, GPS.
"""
from typing import List, Optional, Literal

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile

from core.dependencies import get_current_agent
from models.common import OrderStatus, ACTIVE_STATUSES
from models.order import DeliveryOrder, RespondRequest, AdvanceStatusRequest
from models.tracking import LocationUpdate, LocationPing
from services.eta_service import estimate_eta
from services.matching_service import respond
from services.order_service import list_pending_orders, list_orders_for_agent
from services.status_service import advance_status, complete_delivery
from services.tracking_service import record_location

router = APIRouter()


@router.get("/pending", summary="Open orders (agents)")
async def pending_orders(agent: dict = Depends(get_current_agent)):
    """
    Every pending order. Those where the customer asked for this agent are
    flagged and listed first; the preference never reserves the order.
    """
    orders = await list_pending_orders()
    for o in orders:
        o["is_preferred"] = o.get("preferred_agent_id") == agent["agent_id"]
        o["eta"] = estimate_eta(o.get("distance_km"), o["status"])
    orders.sort(key=lambda o: not o["is_preferred"])
    return {"orders": orders}


@router.get("/my", summary="My orders (agent)")
async def my_orders(
    tab: Literal["active", "completed"] = Query("active"),
    agent: dict = Depends(get_current_agent),
):
    if tab == "active":
        orders = await list_orders_for_agent(agent["agent_id"], ACTIVE_STATUSES)
    else:
        orders = await list_orders_for_agent(agent["agent_id"], [OrderStatus.DELIVERED], limit=20)
    return {"orders": orders}


@router.post("/{order_id}/respond", summary="Accept, counter-offer or decline")
async def respond_to_order(
    order_id: str,
    body: RespondRequest,
    agent: dict = Depends(get_current_agent),
):
    return await respond(
        order_id, agent["agent_id"], body.action,
        proposed_fee=body.proposed_fee, message=body.message,
    )


@router.post("/{order_id}/status", response_model=DeliveryOrder, summary="Next delivery step")
async def update_status(
    order_id: str,
    body: AdvanceStatusRequest,
    agent: dict = Depends(get_current_agent),
):
    return await advance_status(
        order_id, agent["agent_id"], body.target_status,
        proof_images=body.proof_images, notes=body.notes,
    )


@router.post("/{order_id}/complete", response_model=DeliveryOrder, summary="Deliver with photo proof")
async def complete_order(
    order_id: str,
    images: List[UploadFile] = File(...),
    notes: Optional[str] = Form(None),
    agent: dict = Depends(get_current_agent),
):
    return await complete_delivery(order_id, agent["agent_id"], images, notes)


@router.put("/{order_id}/location", response_model=LocationPing, summary="Report GPS position")
async def update_location(
    order_id: str,
    body: LocationUpdate,
    agent: dict = Depends(get_current_agent),
):
    return await record_location(order_id, agent["agent_id"], body)
