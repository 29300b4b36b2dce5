from datetime import datetime
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field
from models.agent import AgentOrderResponse
from models.common import OrderStatus, Urgency, WeatherCondition, ContactPoint, ResponseAction


class DeliveryOrder(BaseModel):
    order_id:   str
    # Parties
    user_id:            str
    assigned_agent_id:  Optional[str] = None
    preferred_agent_id: Optional[str] = None   # advisory only
    # Endpoints
    pickup:   ContactPoint
    delivery: ContactPoint
    # Cargo
    weight_kg:           float = 1.0
    is_fragile:          bool  = False
    package_description: Optional[str] = None
    distance_km:         float = 0.0
    weather_condition:   WeatherCondition = WeatherCondition.CLEAR
    # Commercial
    total_fee:             float
    fee_breakdown:         List[Dict[str, Any]] = []
    agent_adjusted_fee:    Optional[float] = None   # authoritative when set
    fee_adjustment_reason: Optional[str] = None
    promo_code:            Optional[str] = None
    # Lifecycle
    status:                  OrderStatus = OrderStatus.PENDING
    urgency:                 Urgency = Urgency.NORMAL
    delivery_notes:          Optional[str] = None
    proof_of_delivery_images: List[str] = []
    estimated_delivery_time: Optional[datetime] = None
    # Timestamps
    created_at:    datetime
    updated_at:    datetime
    assigned_at:   Optional[datetime] = None
    pickup_time:   Optional[datetime] = None
    delivery_time: Optional[datetime] = None
    cancelled_at:  Optional[datetime] = None


class OrderCreate(BaseModel):
    pickup:              ContactPoint
    delivery:            ContactPoint
    weight_kg:           float = Field(1.0, ge=0)
    is_fragile:          bool  = False
    package_description: Optional[str] = None
    distance_km:         float = Field(..., ge=0)
    weather_condition:   WeatherCondition = WeatherCondition.CLEAR
    urgency:             Urgency = Urgency.NORMAL
    preferred_agent_id:  Optional[str] = None
    promo_code:          Optional[str] = None
    service_id:          Optional[str] = None   # selects a delivery_pricing row


class OrderEvent(BaseModel):
    event_id:    str
    order_id:    str
    event_type:  str            # "ORDER_CREATED", "AGENT_ASSIGNED", "STATUS_CHANGED", ...
    from_status: Optional[OrderStatus] = None
    to_status:   Optional[OrderStatus] = None
    actor_id:    Optional[str] = None
    actor_role:  Optional[str] = None
    notes:       Optional[str] = None
    metadata:    Dict[str, Any] = {}
    created_at:  datetime


class FeeQuoteRequest(BaseModel):
    distance_km:       float = Field(..., ge=0)
    weight_kg:         float = Field(1.0, ge=0)
    is_fragile:        bool  = False
    weather_condition: WeatherCondition = WeatherCondition.CLEAR
    urgency:           Urgency = Urgency.NORMAL
    service_id:        Optional[str] = None


class FeeLine(BaseModel):
    label:  str
    amount: float


class FeeQuote(BaseModel):
    base_fee:     float
    distance_fee: float
    weight_fee:   float
    fragile_fee:  float
    weather_fee:  float
    urgency_fee:  float
    total_fee:    float
    breakdown:    List[FeeLine] = []


class AssignRequest(BaseModel):
    agent_id:     str
    adjusted_fee: Optional[float] = Field(None, gt=0)
    reason:       Optional[str] = None


class RespondRequest(BaseModel):
    action:       ResponseAction
    proposed_fee: Optional[float] = Field(None, gt=0)
    message:      Optional[str] = None


class AdvanceStatusRequest(BaseModel):
    target_status: OrderStatus
    proof_images:  List[str] = []
    notes:         Optional[str] = None


class OrderDetail(BaseModel):
    order:    DeliveryOrder
    timeline: List[OrderEvent] = []
    eta:      str


class AdminOrderDetail(OrderDetail):
    responses: List[AgentOrderResponse] = []
