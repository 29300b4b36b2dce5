from datetime import datetime, timezone, timedelta
from io import BytesIO

import pytest
from starlette.datastructures import Headers, UploadFile

from conftest import ADMIN, FailingWritesDb
from core.exceptions import (
    ConflictingAssignment, DispatchValidationError, InvalidTransition, ProofRequired, Unauthorized,
)
from models.common import OrderStatus, ResponseAction
from services import agent_service, order_service
from services.agent_service import get_agent, record_delivery_completed
from services.matching_service import assign, respond
from services.order_service import get_order, get_order_timeline, settle_pending_effects
from services.status_service import (
    advance_status, cancel_order, can_transition, complete_delivery, expire_stale_pending_orders, next_status,
)

PROOF = ["https://media.example/ord/proof1.jpg"]


def _upload(content: bytes, content_type: str = "image/jpeg", name: str = "proof.jpg") -> UploadFile:
    return UploadFile(file=BytesIO(content), filename=name, headers=Headers({"content-type": content_type}))


async def _in_transit(make_agent, make_order, agent_id="agt_1"):
    await make_agent(agent_id)
    order = await make_order()
    await respond(order["order_id"], agent_id, ResponseAction.ACCEPTED)
    await advance_status(order["order_id"], agent_id, OrderStatus.PICKED_UP)
    await advance_status(order["order_id"], agent_id, OrderStatus.IN_TRANSIT)
    return order


class TestTransitionTable:

    def test_forward_path(self):
        assert can_transition(OrderStatus.PENDING, OrderStatus.AGENT_ASSIGNED)
        assert can_transition(OrderStatus.AGENT_ASSIGNED, OrderStatus.PICKED_UP)
        assert can_transition(OrderStatus.PICKED_UP, OrderStatus.IN_TRANSIT)
        assert can_transition(OrderStatus.IN_TRANSIT, OrderStatus.DELIVERED)
        assert can_transition(OrderStatus.PENDING, OrderStatus.CANCELLED)

    def test_no_skipping_no_going_back(self):
        assert not can_transition(OrderStatus.PENDING, OrderStatus.PICKED_UP)
        assert not can_transition(OrderStatus.AGENT_ASSIGNED, OrderStatus.DELIVERED)
        assert not can_transition(OrderStatus.IN_TRANSIT, OrderStatus.PICKED_UP)
        assert not can_transition(OrderStatus.AGENT_ASSIGNED, OrderStatus.CANCELLED)

    def test_terminal_states(self):
        for status in OrderStatus:
            assert not can_transition(OrderStatus.DELIVERED, status)
            assert not can_transition(OrderStatus.CANCELLED, status)
        assert next_status(OrderStatus.DELIVERED) is None


class TestAdvanceStatus:

    async def test_full_delivery(self, make_agent, make_order):
        order = await _in_transit(make_agent, make_order)

        delivered = await advance_status(
            order["order_id"], "agt_1", OrderStatus.DELIVERED, proof_images=PROOF, notes="left at door",
        )

        assert delivered["status"] == OrderStatus.DELIVERED.value
        assert delivered["proof_of_delivery_images"] == PROOF
        assert delivered["delivery_notes"] == "left at door"
        stored = await get_order(order["order_id"])
        assert stored["pickup_time"] is not None
        assert stored["delivery_time"] is not None
        timeline = await get_order_timeline(order["order_id"])
        assert [e["to_status"] for e in timeline] == [
            "pending", "agent_assigned", "picked_up", "in_transit", "delivered",
        ]

    async def test_pending_cannot_be_picked_up(self, make_agent, make_order):
        await make_agent("agt_1")
        order = await make_order()
        with pytest.raises(InvalidTransition):
            await advance_status(order["order_id"], "agt_1", OrderStatus.PICKED_UP)

    async def test_cannot_skip_steps(self, make_agent, make_order):
        await make_agent("agt_1")
        order = await make_order()
        await respond(order["order_id"], "agt_1", ResponseAction.ACCEPTED)
        with pytest.raises(InvalidTransition):
            await advance_status(order["order_id"], "agt_1", OrderStatus.IN_TRANSIT)
        assert (await get_order(order["order_id"]))["status"] == OrderStatus.AGENT_ASSIGNED.value

    async def test_only_assigned_agent(self, make_agent, make_order):
        await make_agent("agt_other")
        order = await _in_transit(make_agent, make_order)
        with pytest.raises(Unauthorized):
            await advance_status(order["order_id"], "agt_other", OrderStatus.DELIVERED, proof_images=PROOF)

    async def test_delivery_needs_proof(self, make_agent, make_order):
        order = await _in_transit(make_agent, make_order)

        with pytest.raises(ProofRequired):
            await advance_status(order["order_id"], "agt_1", OrderStatus.DELIVERED, proof_images=[])
        with pytest.raises(DispatchValidationError):
            await advance_status(order["order_id"], "agt_1", OrderStatus.DELIVERED, proof_images=[""])

        stored = await get_order(order["order_id"])
        assert stored["status"] == OrderStatus.IN_TRANSIT.value
        assert (await get_agent("agt_1"))["total_deliveries"] == 0

    async def test_stale_write_is_rejected(self, make_agent, make_order, monkeypatch):
        order = await _in_transit(make_agent, make_order)
        from services import status_service

        async def stale_get_order(order_id):
            # snapshot taken before the order moved to in_transit
            current = await get_order(order_id)
            return {**current, "status": OrderStatus.PICKED_UP.value}

        monkeypatch.setattr(status_service, "get_order", stale_get_order)
        with pytest.raises(ConflictingAssignment):
            await advance_status(order["order_id"], "agt_1", OrderStatus.IN_TRANSIT)


class TestAggregates:

    async def test_delivery_credits_adjusted_fee(self, make_agent, make_order):
        await make_agent("agt_1", total_deliveries=5, total_earnings=500.0)
        order = await make_order()
        await assign(order["order_id"], "agt_1", adjusted_fee=80, actor=ADMIN)
        await advance_status(order["order_id"], "agt_1", OrderStatus.PICKED_UP)
        await advance_status(order["order_id"], "agt_1", OrderStatus.IN_TRANSIT)

        await advance_status(order["order_id"], "agt_1", OrderStatus.DELIVERED, proof_images=PROOF)

        agent = await get_agent("agt_1")
        assert agent["total_deliveries"] == 6
        assert agent["total_earnings"] == pytest.approx(580.0)

    async def test_delivery_credits_total_fee_without_adjustment(self, make_agent, make_order):
        order = await _in_transit(make_agent, make_order)
        await advance_status(order["order_id"], "agt_1", OrderStatus.DELIVERED, proof_images=PROOF)

        agent = await get_agent("agt_1")
        assert agent["total_deliveries"] == 1
        assert agent["total_earnings"] == pytest.approx(order["total_fee"])

    async def test_repeated_delivery_credits_once(self, make_agent, make_order):
        order = await _in_transit(make_agent, make_order)
        await advance_status(order["order_id"], "agt_1", OrderStatus.DELIVERED, proof_images=PROOF)

        with pytest.raises(InvalidTransition):
            await advance_status(order["order_id"], "agt_1", OrderStatus.DELIVERED, proof_images=PROOF)
        assert (await get_agent("agt_1"))["total_deliveries"] == 1

    async def test_failed_credit_is_replayed_once(self, make_agent, make_order, mock_db):
        await make_agent("agt_1", total_deliveries=5, total_earnings=500.0)
        order = await make_order()
        await assign(order["order_id"], "agt_1", adjusted_fee=80, actor=ADMIN)
        await advance_status(order["order_id"], "agt_1", OrderStatus.PICKED_UP)
        await advance_status(order["order_id"], "agt_1", OrderStatus.IN_TRANSIT)

        with pytest.MonkeyPatch.context() as patch:
            patch.setattr(agent_service, "db", FailingWritesDb(mock_db, "delivery_agents"))
            delivered = await advance_status(
                order["order_id"], "agt_1", OrderStatus.DELIVERED, proof_images=PROOF,
            )

        assert delivered["status"] == OrderStatus.DELIVERED.value
        assert "pending_effects" not in delivered
        assert (await get_agent("agt_1"))["total_deliveries"] == 5
        stored = await mock_db.delivery_orders.find_one({"order_id": order["order_id"]})
        assert [e["kind"] for e in stored["pending_effects"]] == ["credit"]
        # the history entry landed before the credit failed
        timeline = await get_order_timeline(order["order_id"])
        assert timeline[-1]["to_status"] == OrderStatus.DELIVERED.value

        assert await settle_pending_effects() == 1
        agent = await get_agent("agt_1")
        assert agent["total_deliveries"] == 6
        assert agent["total_earnings"] == pytest.approx(580.0)

        # replaying again changes nothing
        assert await settle_pending_effects() == 0
        assert await record_delivery_completed("agt_1", 80.0, order["order_id"]) is False
        assert (await get_agent("agt_1"))["total_deliveries"] == 6

    async def test_failed_history_write_is_replayed(self, make_agent, make_order, mock_db):
        order = await _in_transit(make_agent, make_order)

        with pytest.MonkeyPatch.context() as patch:
            patch.setattr(order_service, "db", FailingWritesDb(mock_db, "order_events"))
            await advance_status(order["order_id"], "agt_1", OrderStatus.DELIVERED, proof_images=PROOF)

        # the event blocks the effects queued behind it, the order itself is delivered
        assert (await get_order(order["order_id"]))["status"] == OrderStatus.DELIVERED.value
        assert (await get_agent("agt_1"))["total_deliveries"] == 0
        timeline = await get_order_timeline(order["order_id"])
        assert OrderStatus.DELIVERED.value not in [e["to_status"] for e in timeline]

        await settle_pending_effects()

        timeline = await get_order_timeline(order["order_id"])
        assert [e["to_status"] for e in timeline].count(OrderStatus.DELIVERED.value) == 1
        assert (await get_agent("agt_1"))["total_deliveries"] == 1


class TestCancellation:

    async def test_cancel_pending_then_no_advance(self, make_agent, make_order):
        await make_agent("agt_1")
        order = await make_order()

        cancelled = await cancel_order(order["order_id"], actor=ADMIN, reason="customer called")

        assert cancelled["status"] == OrderStatus.CANCELLED.value
        assert cancelled["assigned_agent_id"] is None
        for target in (OrderStatus.PICKED_UP, OrderStatus.IN_TRANSIT, OrderStatus.DELIVERED):
            with pytest.raises(InvalidTransition):
                await advance_status(order["order_id"], "agt_1", target, proof_images=PROOF)
        with pytest.raises(InvalidTransition):
            await respond(order["order_id"], "agt_1", ResponseAction.ACCEPTED)

    async def test_only_admin_cancels(self, make_order):
        order = await make_order()
        with pytest.raises(Unauthorized):
            await cancel_order(order["order_id"], actor={"user_id": "usr_customer", "role": "customer"})

    async def test_assigned_order_cannot_be_cancelled(self, make_agent, make_order):
        await make_agent("agt_1")
        order = await make_order()
        await respond(order["order_id"], "agt_1", ResponseAction.ACCEPTED)
        with pytest.raises(InvalidTransition):
            await cancel_order(order["order_id"], actor=ADMIN)


class TestIdleSweep:

    async def test_expires_only_old_pending_orders(self, make_agent, make_order, mock_db):
        await make_agent("agt_1")
        old = await make_order()
        fresh = await make_order()
        taken = await make_order()
        await respond(taken["order_id"], "agt_1", ResponseAction.ACCEPTED)
        long_ago = datetime.now(timezone.utc) - timedelta(hours=2)
        await mock_db.delivery_orders.update_many(
            {"order_id": {"$in": [old["order_id"], taken["order_id"]]}},
            {"$set": {"created_at": long_ago}},
        )

        expired = await expire_stale_pending_orders(timeout_minutes=30)

        assert expired == 1
        assert (await get_order(old["order_id"]))["status"] == OrderStatus.CANCELLED.value
        assert (await get_order(fresh["order_id"]))["status"] == OrderStatus.PENDING.value
        assert (await get_order(taken["order_id"]))["status"] == OrderStatus.AGENT_ASSIGNED.value

    async def test_oldest_orders_expire_beyond_page_size(self, mock_db):
        now = datetime.now(timezone.utc)
        rows = [{
            "order_id":          "ord_old",
            "user_id":           "usr_customer",
            "assigned_agent_id": None,
            "status":            "pending",
            "created_at":        now - timedelta(hours=5),
        }]
        rows += [{
            "order_id":          f"ord_fresh_{n}",
            "user_id":           "usr_customer",
            "assigned_agent_id": None,
            "status":            "pending",
            "created_at":        now - timedelta(seconds=n % 60),
        } for n in range(1200)]
        await mock_db.delivery_orders.insert_many(rows)

        expired = await expire_stale_pending_orders(timeout_minutes=60, now=now)

        assert expired == 1
        assert (await get_order("ord_old"))["status"] == OrderStatus.CANCELLED.value
        assert await mock_db.delivery_orders.count_documents({"status": "pending"}) == 1200


class TestCompleteDelivery:

    async def test_uploads_then_delivers(self, make_agent, make_order, tmp_path):
        order = await _in_transit(make_agent, make_order)

        delivered = await complete_delivery(
            order["order_id"], "agt_1", [_upload(b"\xff\xd8jpegdata")], notes="handed over",
        )

        assert delivered["status"] == OrderStatus.DELIVERED.value
        assert len(delivered["proof_of_delivery_images"]) == 1
        uri = delivered["proof_of_delivery_images"][0]
        assert f"/{order['order_id']}/" in uri
        stored_files = list((tmp_path / "proofs" / order["order_id"]).iterdir())
        assert len(stored_files) == 1

    async def test_rejects_non_image(self, make_agent, make_order):
        order = await _in_transit(make_agent, make_order)
        with pytest.raises(DispatchValidationError):
            await complete_delivery(order["order_id"], "agt_1", [_upload(b"%PDF", "application/pdf", "x.pdf")])
        assert (await get_order(order["order_id"]))["status"] == OrderStatus.IN_TRANSIT.value

    async def test_needs_at_least_one_image(self, make_agent, make_order):
        order = await _in_transit(make_agent, make_order)
        with pytest.raises(ProofRequired):
            await complete_delivery(order["order_id"], "agt_1", [])
