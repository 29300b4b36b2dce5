from enum import Enum
from typing import Optional
from pydantic import BaseModel


class OrderStatus(str, Enum):
    PENDING        = "pending"
    AGENT_ASSIGNED = "agent_assigned"
    PICKED_UP      = "picked_up"
    IN_TRANSIT     = "in_transit"
    DELIVERED      = "delivered"
    CANCELLED      = "cancelled"


# Statuses during which an order occupies its agent
ACTIVE_STATUSES = (
    OrderStatus.AGENT_ASSIGNED,
    OrderStatus.PICKED_UP,
    OrderStatus.IN_TRANSIT,
)


class Urgency(str, Enum):
    NORMAL    = "normal"
    URGENT    = "urgent"
    SCHEDULED = "scheduled"


class WeatherCondition(str, Enum):
    CLEAR      = "clear"
    RAIN       = "rain"
    HEAVY_RAIN = "heavy_rain"


class VehicleType(str, Enum):
    BIKE = "bike"
    CAR  = "car"
    FOOT = "foot"


class AvailabilityStatus(str, Enum):
    ONLINE  = "online"
    BUSY    = "busy"
    OFFLINE = "offline"


class ResponseAction(str, Enum):
    ACCEPTED      = "accepted"
    COUNTER_OFFER = "counter_offer"
    DECLINED      = "declined"


class UserRole(str, Enum):
    CUSTOMER = "customer"
    AGENT    = "agent"
    ADMIN    = "admin"


class ContactPoint(BaseModel):
    address:       str
    contact_name:  str
    contact_phone: str
    notes:         Optional[str] = None   # gate code, floor, landmark
