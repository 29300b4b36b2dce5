from datetime import datetime
from typing import Optional
from pydantic import BaseModel
from models.common import VehicleType, AvailabilityStatus, ResponseAction


class DeliveryAgent(BaseModel):
    agent_id:   str
    user_id:    str
    agent_code: str        # "DRP-XXXX", human readable
    # Profile
    full_name:       str
    phone:           Optional[str] = None
    email:           Optional[str] = None
    avatar_url:      Optional[str] = None
    vehicle_type:    VehicleType = VehicleType.BIKE
    service_area_id: Optional[str] = None
    # Trust / state
    is_verified: bool = False
    is_active:   bool = True
    # Lifetime aggregates, only ever incremented
    rating:           Optional[float] = None
    total_deliveries: int   = 0
    total_earnings:   float = 0.0
    # Timestamps
    created_at: datetime
    updated_at: datetime


class AgentAvailability(BaseModel):
    agent_id:     str
    status:       AvailabilityStatus = AvailabilityStatus.OFFLINE
    last_seen_at: Optional[datetime] = None


class AvailabilityUpdate(BaseModel):
    status: AvailabilityStatus


class AgentOrderResponse(BaseModel):
    response_id:      str
    order_id:         str
    agent_id:         str
    action:           ResponseAction
    proposed_fee:     Optional[float] = None
    response_message: Optional[str] = None
    created_at:       datetime


class EarningsSummary(BaseModel):
    today:            float = 0.0
    week:             float = 0.0
    month:            float = 0.0
    total:            float = 0.0
    deliveries_today: int   = 0
    deliveries_week:  int   = 0
    deliveries_month: int   = 0


class AgentProfile(DeliveryAgent):
    availability_status: AvailabilityStatus = AvailabilityStatus.OFFLINE
    last_seen_at:        Optional[datetime] = None
    active_orders_count: int = 0
