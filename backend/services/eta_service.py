"""
ETA service: human-facing delivery time estimate from distance and status.

  minutes = ceil(distance_km × 60 / AVERAGE_SPEED_KMH + buffer(status))

Pure function, recomputed on demand, never persisted.
"""
import math
from typing import Optional, Union

from config import settings
from models.common import OrderStatus


def _buffer_minutes(status: OrderStatus) -> int:
    """Margin for the steps the agent still has to go through."""
    return {
        OrderStatus.PENDING:        settings.ETA_BUFFER_PENDING,
        OrderStatus.AGENT_ASSIGNED: settings.ETA_BUFFER_AGENT_ASSIGNED,
        OrderStatus.PICKED_UP:      settings.ETA_BUFFER_PICKED_UP,
        OrderStatus.IN_TRANSIT:     settings.ETA_BUFFER_IN_TRANSIT,
    }.get(status, 0)


def eta_minutes(distance_km: float, status: Union[OrderStatus, str]) -> int:
    if distance_km < 0:
        raise ValueError("distance_km must be >= 0")
    base = distance_km * 60 / settings.AVERAGE_SPEED_KMH
    try:
        buffer = _buffer_minutes(OrderStatus(status))
    except ValueError:
        buffer = 0   # unknown status
    return math.ceil(base + buffer)


def format_eta(total_mins: int) -> str:
    if total_mins < 60:
        return f"~{total_mins} mins"
    return f"~{total_mins // 60}h {total_mins % 60}m"


def estimate_eta(distance_km: Optional[float], status: Union[OrderStatus, str]) -> str:
    """Ex: estimate_eta(10, "pending") -> "~39 mins"."""
    if distance_km is None:
        return "Unknown"
    return format_eta(eta_minutes(distance_km, status))
