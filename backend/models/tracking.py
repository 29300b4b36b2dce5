from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field


class TrackingStatus(str, Enum):
    EN_ROUTE_PICKUP   = "en_route_pickup"
    AT_PICKUP         = "at_pickup"
    EN_ROUTE_DELIVERY = "en_route_delivery"
    AT_DELIVERY       = "at_delivery"


class LocationUpdate(BaseModel):
    lat:             float = Field(..., ge=-90, le=90)
    lng:             float = Field(..., ge=-180, le=180)
    heading:         float = 0.0
    speed:           float = 0.0    # km/h
    tracking_status: TrackingStatus = TrackingStatus.EN_ROUTE_PICKUP


class LocationPing(BaseModel):
    ping_id:         str
    order_id:        str
    agent_id:        str
    lat:             float
    lng:             float
    heading:         float = 0.0
    speed:           float = 0.0
    tracking_status: TrackingStatus
    timestamp:       datetime


class FeedEventType(str, Enum):
    INSERT   = "insert"
    UPDATE   = "update"
    LOCATION = "location"
    RESYNC   = "resync"


class FeedEvent(BaseModel):
    type:      FeedEventType
    order_id:  Optional[str] = None
    data:      Dict[str, Any] = {}
    timestamp: datetime
