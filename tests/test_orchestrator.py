"""Tests for the host coordinator: persistence, audit trail and single-writer guarantees."""

import asyncio
import json

import pytest
from sqlalchemy import select, update

from grouppay.audit.logger import get_trail
from grouppay.engine.orchestrator import GatewayNotFoundError, PaymentCoordinator
from grouppay.engine.retry import TransportError
from grouppay.engine.workflow import PaymentWorkflow
from grouppay.models.enums import LineItemStatus, OrderStatus, PaymentPhase
from grouppay.models.records import AuditLog, PaymentOrderRecord
from grouppay.providers.mock_bank import MockBankGateway
from grouppay.repository import ConcurrentUpdateError, OrderNotFoundError, OrderRepository


def _workflow(bank, clock) -> PaymentWorkflow:
    return PaymentWorkflow(bank, max_execution_attempts=3, read_retry_base_delay=0, clock=clock)


async def _actions(session, order_id):
    return [entry.action for entry in await get_trail(session, order_id)]


class TestRepository:
    @pytest.mark.asyncio
    async def test_create_and_load(self, seeded_session, make_order):
        repo = OrderRepository(seeded_session)
        await repo.create(make_order("ORD-1", rows=2))
        await seeded_session.commit()

        loaded = await repo.get("ORD-1")

        assert loaded.version == 0
        assert loaded.gateway_id == "tourism-test"
        assert [i.row_number for i in loaded.line_items] == [1, 2]
        assert loaded.total_amount == 2_000_000

    @pytest.mark.asyncio
    async def test_create_assigns_id(self, seeded_session, make_order):
        order = make_order(order_id="")

        await OrderRepository(seeded_session).create(order)

        assert order.order_id
        assert all(i.order_id == order.order_id for i in order.line_items)

    @pytest.mark.asyncio
    async def test_save_bumps_version(self, seeded_session, make_order):
        repo = OrderRepository(seeded_session)
        order = await repo.create(make_order("ORD-1"))
        order.status = OrderStatus.BANK_SUCCEEDED
        order.line_items[0].status = LineItemStatus.BANK_SUCCEEDED

        await repo.save(order)
        await seeded_session.commit()

        assert order.version == 1
        loaded = await repo.get("ORD-1")
        assert loaded.version == 1
        assert loaded.status == OrderStatus.BANK_SUCCEEDED
        assert loaded.line_items[0].status == LineItemStatus.BANK_SUCCEEDED

    @pytest.mark.asyncio
    async def test_stale_save_is_rejected(self, seeded_session, make_order):
        repo = OrderRepository(seeded_session)
        await repo.create(make_order("ORD-1"))
        await seeded_session.commit()

        first = await repo.get("ORD-1")
        second = await repo.get("ORD-1")
        await repo.save(first)

        second.status = OrderStatus.BANK_REJECTED
        with pytest.raises(ConcurrentUpdateError) as exc_info:
            await repo.save(second)
        assert exc_info.value.expected_version == 0

    @pytest.mark.asyncio
    async def test_notes_accumulate(self, seeded_session, make_order):
        repo = OrderRepository(seeded_session)
        await repo.create(make_order("ORD-1"))

        await repo.add_note("ORD-1", "first")
        await repo.add_note("ORD-1", "second")

        notes = await repo.get_notes("ORD-1")
        assert notes.splitlines()[0].endswith("first")
        assert notes.splitlines()[1].endswith("second")

    @pytest.mark.asyncio
    async def test_missing_order(self, seeded_session):
        with pytest.raises(OrderNotFoundError):
            await OrderRepository(seeded_session).get_or_raise("NOPE")


class TestCoordinator:
    @pytest.mark.asyncio
    async def test_submit_stores_and_registers(self, seeded_session, workflow, mock_bank, make_order):
        coordinator = PaymentCoordinator(workflow)

        result = await coordinator.submit(seeded_session, make_order("ORD-1"))

        assert result.success
        stored = await OrderRepository(seeded_session).get("ORD-1")
        assert stored.tracking_id.startswith("MOCK-")
        assert stored.version == 1
        assert stored.get_metadata().current_phase == PaymentPhase.REGISTERED
        assert all(i.status == LineItemStatus.WAIT_FOR_EXECUTION for i in stored.line_items)
        assert await _actions(seeded_session, "ORD-1") == ["order_created", "order_registered"]

    @pytest.mark.asyncio
    async def test_submit_unknown_gateway(self, seeded_session, workflow, make_order):
        coordinator = PaymentCoordinator(workflow)
        order = make_order("ORD-1")
        order.gateway_id = "missing"

        with pytest.raises(GatewayNotFoundError):
            await coordinator.submit(seeded_session, order)
        assert await OrderRepository(seeded_session).get("ORD-1") is None

    @pytest.mark.asyncio
    async def test_register_stored_order_once(self, seeded_session, workflow, mock_bank, make_order):
        coordinator = PaymentCoordinator(workflow)
        await OrderRepository(seeded_session).create(make_order("ORD-1"))
        await seeded_session.commit()

        first = await coordinator.register(seeded_session, "ORD-1")
        second = await coordinator.register(seeded_session, "ORD-1")

        assert first.success
        assert not second.success
        assert mock_bank.calls["register"] == 1
        assert await _actions(seeded_session, "ORD-1") == ["order_registered", "registration_failed"]

    @pytest.mark.asyncio
    async def test_inquire_persists_full_lifecycle(self, seeded_session, workflow, mock_bank, make_order):
        coordinator = PaymentCoordinator(workflow)
        await coordinator.submit(seeded_session, make_order("ORD-1", rows=2))

        result = await coordinator.inquire(seeded_session, "ORD-1")

        assert result.success
        stored = await OrderRepository(seeded_session).get("ORD-1")
        assert stored.status == OrderStatus.BANK_SUCCEEDED
        assert stored.get_metadata().current_phase == PaymentPhase.COMPLETED
        assert stored.get_metadata().execution_attempts == 1
        assert all(i.reference_number for i in stored.line_items)
        # register save, checkpoint save, final save
        assert stored.version == 3

        actions = await _actions(seeded_session, "ORD-1")
        assert actions == [
            "order_created",
            "order_registered",
            "execute_attempted",
            "execute_completed",
            "inquiry_completed",
        ]
        notes = await OrderRepository(seeded_session).get_notes("ORD-1")
        assert "Detailed inquiry complete" in notes

    @pytest.mark.asyncio
    async def test_attempt_is_committed_before_do_payment(self, seeded_session, clock, make_order):
        observed = []

        class ObservingBank(MockBankGateway):
            async def execute(self, tracking_id, gateway_info):
                result = await seeded_session.execute(
                    select(PaymentOrderRecord.metadata_json).where(PaymentOrderRecord.tracking_id == tracking_id)
                )
                observed.append(json.loads(result.scalar_one())["executionAttempts"])
                await super().execute(tracking_id, gateway_info)

        coordinator = PaymentCoordinator(_workflow(ObservingBank(latency_ms=0), clock))
        await coordinator.submit(seeded_session, make_order("ORD-1"))

        await coordinator.inquire(seeded_session, "ORD-1")

        assert observed == [1]

    @pytest.mark.asyncio
    async def test_failed_execute_is_audited(self, seeded_session, workflow, mock_bank, make_order):
        coordinator = PaymentCoordinator(workflow)
        await coordinator.submit(seeded_session, make_order("ORD-1"))
        mock_bank.fail_next("execute", TransportError("Service unavailable", status_code=503))

        result = await coordinator.inquire(seeded_session, "ORD-1")

        assert result.retry_after == 5.0
        stored = await OrderRepository(seeded_session).get("ORD-1")
        assert stored.get_metadata().execution_attempts == 1
        assert stored.get_metadata().current_phase == PaymentPhase.READY_FOR_EXECUTION

        entry = await seeded_session.execute(
            select(AuditLog.details).where(AuditLog.order_id == "ORD-1").where(AuditLog.action == "execute_failed")
        )
        details = json.loads(entry.scalar_one())
        assert details["attempt"] == 1
        assert details["error"] == "Service unavailable"

    @pytest.mark.asyncio
    async def test_lost_race_never_reaches_do_payment(self, seeded_session, clock, make_order):
        class RacingBank(MockBankGateway):
            async def check_readiness(self, tracking_id, gateway_info):
                # Another writer saves the order while this poll is in flight.
                await seeded_session.execute(
                    update(PaymentOrderRecord)
                    .where(PaymentOrderRecord.tracking_id == tracking_id)
                    .values(version=PaymentOrderRecord.version + 1)
                )
                return await super().check_readiness(tracking_id, gateway_info)

        bank = RacingBank(latency_ms=0)
        coordinator = PaymentCoordinator(_workflow(bank, clock))
        await coordinator.submit(seeded_session, make_order("ORD-1"))

        with pytest.raises(ConcurrentUpdateError):
            await coordinator.inquire(seeded_session, "ORD-1")

        assert bank.calls["execute"] == 0
        stored = await OrderRepository(seeded_session).get("ORD-1")
        assert stored.get_metadata().execution_attempts == 0

    @pytest.mark.asyncio
    async def test_unknown_order(self, seeded_session, workflow):
        with pytest.raises(OrderNotFoundError):
            await PaymentCoordinator(workflow).inquire(seeded_session, "NOPE")

    @pytest.mark.asyncio
    async def test_line_item_inquiry(self, seeded_session, workflow, mock_bank, make_order):
        coordinator = PaymentCoordinator(workflow)
        await coordinator.submit(seeded_session, make_order("ORD-1", rows=2))
        await coordinator.inquire(seeded_session, "ORD-1")
        stored = await OrderRepository(seeded_session).get("ORD-1")
        mock_bank.set_line_status(stored.tracking_id, 2, "REFUNDED")

        result = await coordinator.inquire_line_item(seeded_session, "ORD-1", 2)

        assert result.success
        reloaded = await OrderRepository(seeded_session).get("ORD-1")
        assert reloaded.find_line_item(2).status == LineItemStatus.TRANSACTION_ROLLBACK
        assert reloaded.find_line_item(1).status == LineItemStatus.BANK_SUCCEEDED
        assert reloaded.version == stored.version
        assert (await _actions(seeded_session, "ORD-1"))[-1] == "line_inquiry_completed"

    @pytest.mark.asyncio
    async def test_line_item_inquiry_unknown_row(self, seeded_session, workflow, make_order):
        coordinator = PaymentCoordinator(workflow)
        await coordinator.submit(seeded_session, make_order("ORD-1", rows=2))

        with pytest.raises(OrderNotFoundError):
            await coordinator.inquire_line_item(seeded_session, "ORD-1", 9)

    @pytest.mark.asyncio
    async def test_order_lock_serializes_and_is_released(self, workflow):
        coordinator = PaymentCoordinator(workflow)
        entered = []

        async def hold(tag):
            async with coordinator.lock_for("ORD-1"):
                entered.append(tag)
                await asyncio.sleep(0)
                entered.append(tag)

        await asyncio.gather(hold("a"), hold("b"))

        assert entered == ["a", "a", "b", "b"]
        assert coordinator._locks == {}

    @pytest.mark.asyncio
    async def test_no_locks_retained_after_lifecycle(self, seeded_session, workflow, mock_bank, make_order):
        coordinator = PaymentCoordinator(workflow)
        await coordinator.submit(seeded_session, make_order("ORD-1"))
        await coordinator.inquire(seeded_session, "ORD-1")
        await coordinator.inquire_line_item(seeded_session, "ORD-1", 1)

        assert coordinator._locks == {}
        assert not coordinator._lock_users
