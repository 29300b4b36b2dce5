"""
Router admin: supervision of all orders, manual / automatic dispatch, cancellation.
"""
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from core.dependencies import require_admin
from core.utils import as_utc, start_of_day
from database import db
from models.common import OrderStatus, AvailabilityStatus
from models.order import AdminOrderDetail, AssignRequest, DeliveryOrder
from services.agent_service import list_agents_with_status
from services.eta_service import estimate_eta
from services.matching_service import assign, auto_assign, list_responses
from services.order_service import list_all_orders, get_order, get_order_timeline
from services.status_service import cancel_order

router = APIRouter()


class CancelRequest(BaseModel):
    reason: Optional[str] = None


@router.get("/dashboard", summary="Live KPIs")
async def dashboard(_admin=Depends(require_admin)):
    today_start = start_of_day(datetime.now(timezone.utc))

    by_status = {}
    for status in OrderStatus:
        by_status[status.value] = await db.delivery_orders.count_documents({"status": status.value})
    orders_today = 0
    async for row in db.delivery_orders.find({}, {"_id": 0, "created_at": 1}).sort("created_at", -1):
        if as_utc(row["created_at"]) < today_start:
            break
        orders_today += 1
    online_agents = await db.agent_availability.count_documents({"status": AvailabilityStatus.ONLINE.value})

    # Revenue: effective fee of delivered orders
    pipeline = [
        {"$match": {"status": OrderStatus.DELIVERED.value}},
        {"$group": {"_id": None, "total": {"$sum": {"$ifNull": ["$agent_adjusted_fee", "$total_fee"]}}}},
    ]
    revenue = await db.delivery_orders.aggregate(pipeline).to_list(length=1)

    return {
        "orders_by_status": by_status,
        "orders_today":     orders_today,
        "online_agents":    online_agents,
        "revenue":          revenue[0]["total"] if revenue else 0.0,
    }


@router.get("/orders", summary="All orders with filters")
async def admin_list_orders(
    status: Optional[OrderStatus] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    _admin=Depends(require_admin),
):
    orders, total = await list_all_orders(status.value if status else None, skip=skip, limit=limit)
    for o in orders:
        o["eta"] = estimate_eta(o.get("distance_km"), o["status"])
    return {"orders": orders, "total": total}


@router.get("/orders/{order_id}", response_model=AdminOrderDetail, summary="Order detail with negotiation log")
async def admin_order_detail(order_id: str, _admin=Depends(require_admin)):
    order = await get_order(order_id)
    return {
        "order":     order,
        "timeline":  await get_order_timeline(order_id),
        "responses": await list_responses(order_id),
        "eta":       estimate_eta(order.get("distance_km"), order["status"]),
    }


@router.post("/orders/{order_id}/assign", response_model=DeliveryOrder, summary="Assign an agent manually")
async def admin_assign(order_id: str, body: AssignRequest, admin=Depends(require_admin)):
    return await assign(order_id, body.agent_id, body.adjusted_fee, body.reason, actor=admin)


@router.post("/orders/{order_id}/auto-assign", response_model=DeliveryOrder, summary="Assign the first free agent")
async def admin_auto_assign(
    order_id: str,
    service_area_id: Optional[str] = None,
    admin=Depends(require_admin),
):
    return await auto_assign(order_id, actor=admin, service_area_id=service_area_id)


@router.post("/orders/{order_id}/cancel", response_model=DeliveryOrder, summary="Cancel a pending order")
async def admin_cancel(order_id: str, body: Optional[CancelRequest] = None, admin=Depends(require_admin)):
    return await cancel_order(order_id, actor=admin, reason=body.reason if body else None)


@router.get("/agents", summary="Agents with presence and load")
async def admin_agents(_admin=Depends(require_admin)):
    return {"agents": await list_agents_with_status()}
