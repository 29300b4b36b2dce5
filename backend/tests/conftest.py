import itertools
from datetime import datetime, timezone, timedelta

import pytest
from mongomock_motor import AsyncMongoMockClient
from pymongo.errors import PyMongoError

import database
from config import settings
from core.security import create_access_token
from models.order import OrderCreate
from services.order_service import create_order
from services.tracking_service import feed

ADMIN = {"user_id": "usr_admin", "role": "admin"}
CUSTOMER_ID = "usr_customer"

_REGISTRY_EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


class _FailingWrites:
    def __init__(self, collection):
        self._collection = collection

    def __getattr__(self, name):
        return getattr(self._collection, name)

    async def update_one(self, *args, **kwargs):
        raise PyMongoError("connection reset by peer")

    async def insert_one(self, *args, **kwargs):
        raise PyMongoError("connection reset by peer")


class FailingWritesDb:
    """Database stand-in whose writes to `broken` collections fail; everything else passes through."""

    def __init__(self, real, *broken: str):
        self._real = real
        self._broken = set(broken)

    def __getattr__(self, name):
        collection = getattr(self._real, name)
        return _FailingWrites(collection) if name in self._broken else collection


def make_token(user_id: str, role: str) -> str:
    return create_access_token({"sub": user_id, "role": role})


def auth_headers(user_id: str, role: str) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


def order_payload(distance_km: float = 7.0, **overrides) -> dict:
    payload = {
        "pickup":      {"address": "12 MG Road", "contact_name": "Asha", "contact_phone": "+910000000001"},
        "delivery":    {"address": "4 Park Street", "contact_name": "Ravi", "contact_phone": "+910000000002"},
        "distance_km": distance_km,
        "weight_kg":   1.0,
    }
    payload.update(overrides)
    return payload


@pytest.fixture(autouse=True)
def mock_db(monkeypatch, tmp_path):
    instance = AsyncMongoMockClient()["dropee_test"]
    database.use_database(instance)
    monkeypatch.setattr(settings, "PROOF_UPLOAD_DIR", str(tmp_path / "proofs"))
    feed._subscriptions.clear()
    yield instance
    feed._subscriptions.clear()
    database.use_database(None)


@pytest.fixture
def make_agent(mock_db):
    """Registers an agent; registry order follows creation order."""
    counter = itertools.count()

    async def _make(
        agent_id: str,
        online: bool = True,
        is_verified: bool = True,
        is_active: bool = True,
        service_area_id=None,
        total_deliveries: int = 0,
        total_earnings: float = 0.0,
    ) -> dict:
        created_at = _REGISTRY_EPOCH + timedelta(minutes=next(counter))
        doc = {
            "agent_id":         agent_id,
            "user_id":          f"usr_{agent_id}",
            "agent_code":       f"DRP-{agent_id.upper()}",
            "full_name":        f"Agent {agent_id}",
            "phone":            "+910000000099",
            "vehicle_type":     "bike",
            "service_area_id":  service_area_id,
            "is_verified":      is_verified,
            "is_active":        is_active,
            "rating":           4.8,
            "total_deliveries": total_deliveries,
            "total_earnings":   total_earnings,
            "created_at":       created_at,
            "updated_at":       created_at,
        }
        await mock_db.delivery_agents.insert_one(doc)
        if online:
            await mock_db.agent_availability.insert_one(
                {"agent_id": agent_id, "status": "online", "last_seen_at": created_at}
            )
        doc.pop("_id", None)
        return doc

    return _make


@pytest.fixture
def make_order(mock_db):
    async def _make(distance_km: float = 7.0, user_id: str = CUSTOMER_ID, **overrides) -> dict:
        return await create_order(OrderCreate(**order_payload(distance_km, **overrides)), user_id=user_id)

    return _make
