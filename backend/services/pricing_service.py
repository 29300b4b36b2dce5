"""
Delivery fee calculator.

Formula:
  total = base + distance_km × per_km
        + max(0, weight_kg - FREE_WEIGHT_KG) × per_kg
        + fragile / weather / urgency surcharges (fractions of base)
  total = clamp(total, min_fee, max_fee), rounded to 2 decimals

Pricing comes from the `delivery_pricing` collection (per service) with
the settings defaults as fallback.
"""
import logging
from typing import Optional

from config import settings
from core.exceptions import DispatchValidationError
from database import db
from models.common import WeatherCondition, Urgency
from models.order import FeeQuoteRequest, FeeQuote, FeeLine

logger = logging.getLogger(__name__)


def _default_pricing() -> dict:
    return {
        "base_price":         settings.BASE_PRICE,
        "price_per_km":       settings.PRICE_PER_KM,
        "price_per_kg":       settings.PRICE_PER_KG,
        "fragile_multiplier": settings.FRAGILE_MULTIPLIER,
        "rain_multiplier":    settings.RAIN_MULTIPLIER,
        "urgent_multiplier":  settings.URGENT_MULTIPLIER,
        "min_fee":            settings.MIN_FEE,
        "max_fee":            settings.MAX_FEE,
    }


async def get_pricing(service_id: Optional[str] = None) -> dict:
    query = {"service_id": service_id} if service_id else {}
    row = await db.delivery_pricing.find_one(query, {"_id": 0})
    if not row:
        logger.debug("No delivery_pricing row for service=%s, using defaults", service_id)
        return _default_pricing()
    return {**_default_pricing(), **{k: v for k, v in row.items() if v is not None}}


def _round(value: float) -> float:
    return round(value, 2)


def compute_fee(req: FeeQuoteRequest, pricing: dict) -> FeeQuote:
    if req.distance_km < 0:
        raise DispatchValidationError("Invalid distance_km")

    base_fee     = pricing["base_price"]
    distance_fee = req.distance_km * pricing["price_per_km"]
    extra_kg     = max(0.0, req.weight_kg - settings.FREE_WEIGHT_KG)
    weight_fee   = extra_kg * pricing["price_per_kg"]
    fragile_fee  = base_fee * (pricing["fragile_multiplier"] - 1) if req.is_fragile else 0.0

    weather_fee = 0.0
    if req.weather_condition == WeatherCondition.RAIN:
        weather_fee = base_fee * (pricing["rain_multiplier"] - 1)
    elif req.weather_condition == WeatherCondition.HEAVY_RAIN:
        weather_fee = base_fee * (pricing["rain_multiplier"] - 1) * 1.5

    urgency_fee = base_fee * (pricing["urgent_multiplier"] - 1) if req.urgency == Urgency.URGENT else 0.0

    total = base_fee + distance_fee + weight_fee + fragile_fee + weather_fee + urgency_fee
    total = max(pricing["min_fee"], min(pricing["max_fee"], total))

    breakdown = [
        FeeLine(label="Base Fee", amount=_round(base_fee)),
        FeeLine(label=f"Distance ({req.distance_km:.1f} km)", amount=_round(distance_fee)),
    ]
    if weight_fee > 0:
        breakdown.append(FeeLine(label=f"Weight ({req.weight_kg:g} kg)", amount=_round(weight_fee)))
    if fragile_fee > 0:
        breakdown.append(FeeLine(label="Fragile Handling", amount=_round(fragile_fee)))
    if weather_fee > 0:
        breakdown.append(FeeLine(label=f"Weather ({req.weather_condition.value})", amount=_round(weather_fee)))
    if urgency_fee > 0:
        breakdown.append(FeeLine(label="Urgent Delivery", amount=_round(urgency_fee)))

    return FeeQuote(
        base_fee=_round(base_fee),
        distance_fee=_round(distance_fee),
        weight_fee=_round(weight_fee),
        fragile_fee=_round(fragile_fee),
        weather_fee=_round(weather_fee),
        urgency_fee=_round(urgency_fee),
        total_fee=_round(total),
        breakdown=breakdown,
    )


async def calculate_delivery_fee(req: FeeQuoteRequest) -> FeeQuote:
    pricing = await get_pricing(req.service_id)
    return compute_fee(req, pricing)
