"""
Router agents: the calling agent's profile, presence and earnings.
"""
from fastapi import APIRouter, Depends

from core.dependencies import get_current_agent
from models.agent import AgentAvailability, AgentProfile, AvailabilityUpdate, EarningsSummary
from services.agent_service import get_availability, set_availability, count_active_orders, get_earnings_summary

router = APIRouter()


@router.get("/me", response_model=AgentProfile, summary="My agent profile")
async def my_profile(agent: dict = Depends(get_current_agent)):
    availability = await get_availability(agent["agent_id"])
    return {
        **agent,
        "availability_status": availability["status"],
        "last_seen_at":        availability.get("last_seen_at"),
        "active_orders_count": await count_active_orders(agent["agent_id"]),
    }


@router.put("/me/availability", response_model=AgentAvailability, summary="Go online / busy / offline")
async def update_availability(body: AvailabilityUpdate, agent: dict = Depends(get_current_agent)):
    return await set_availability(agent["agent_id"], body.status, actor_agent_id=agent["agent_id"])


@router.get("/me/earnings", response_model=EarningsSummary, summary="Earnings today / week / month")
async def my_earnings(agent: dict = Depends(get_current_agent)):
    return await get_earnings_summary(agent["agent_id"])
