"""
Host coordinator: runs the payment workflow against the order store.

For each entry point the coordinator:

  1. Loads the order and its gateway credentials
  2. Runs the workflow under a per-order lock
  3. Persists the returned order with a compare-and-swap on its version
  4. Writes audit entries for every step (registration, readiness, DoPayment)

Single-writer guarantees:
  - Inside one process, a per-order asyncio.Lock serializes inquiries
  - Across processes, the versioned save rejects a second writer
  - Before DoPayment goes out, the incremented attempt count is saved and
    committed, so a crash mid-call still counts as a used attempt
"""

import asyncio
import logging
from collections import Counter
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from grouppay.audit.logger import log_event
from grouppay.config import settings
from grouppay.engine.workflow import PaymentWorkflow, WorkflowResult
from grouppay.models.order import LineItem, PaymentOrder
from grouppay.providers.base import BankGateway, GatewayInfo
from grouppay.providers.mock_bank import MockBankGateway
from grouppay.providers.tourism_bank import TourismBankGateway
from grouppay.repository import (
    ConcurrentUpdateError,
    GatewayRepository,
    OrderNotFoundError,
    OrderRepository,
)

logger = logging.getLogger("grouppay.orchestrator")


class GatewayNotFoundError(Exception):
    def __init__(self, gateway_id: Optional[str]):
        super().__init__(f"Gateway not found: {gateway_id}")
        self.gateway_id = gateway_id


class PaymentCoordinator:
    """Persists workflow results and enforces one writer per order."""

    def __init__(self, workflow: PaymentWorkflow):
        self.workflow = workflow
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: Counter = Counter()

    @asynccontextmanager
    async def lock_for(self, order_id: str):
        """Hold the order's lock. The lock is dropped once no caller holds or awaits it."""
        lock = self._locks.setdefault(order_id, asyncio.Lock())
        self._lock_users[order_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[order_id] -= 1
            if not self._lock_users[order_id]:
                del self._lock_users[order_id]
                del self._locks[order_id]

    async def _gateway_info(self, session: AsyncSession, gateway_id: Optional[str]) -> GatewayInfo:
        info = await GatewayRepository(session).get(gateway_id) if gateway_id else None
        if info is None:
            raise GatewayNotFoundError(gateway_id)
        return info

    async def submit(self, session: AsyncSession, order: PaymentOrder) -> WorkflowResult:
        """
        Store a new order and register it with the bank.

        The order is persisted before the bank call so a registered batch
        always has a local record.
        """
        gateway_info = await self._gateway_info(session, order.gateway_id)
        repo = OrderRepository(session)

        await repo.create(order)
        await log_event(session, "order_created", order_id=order.order_id, details={
            "gateway_id": order.gateway_id,
            "lines": len(order.line_items),
            "total_amount": order.total_amount,
        })
        await session.commit()

        async with self.lock_for(order.order_id):
            return await self._register(session, repo, order, gateway_info)

    async def register(self, session: AsyncSession, order_id: str) -> WorkflowResult:
        """Register an already stored order. A second call for a registered order fails."""
        async with self.lock_for(order_id):
            repo = OrderRepository(session)
            order = await repo.get_or_raise(order_id)
            gateway_info = await self._gateway_info(session, order.gateway_id)
            return await self._register(session, repo, order, gateway_info)

    async def _register(
        self,
        session: AsyncSession,
        repo: OrderRepository,
        order: PaymentOrder,
        gateway_info: GatewayInfo,
    ) -> WorkflowResult:
        result = await self.workflow.register_payment(order, gateway_info)

        action = "order_registered" if result.success else "registration_failed"
        await log_event(session, action, order_id=order.order_id, details={
            "tracking_id": order.tracking_id,
            "message": result.message,
        })
        await repo.save(order)
        await repo.add_note(order.order_id, result.message)
        await session.commit()

        logger.info("Order %s registration: %s", order.order_id, result.message)
        return result

    async def inquire(self, session: AsyncSession, order_id: str, force_refresh: bool = False) -> WorkflowResult:
        """
        Run one reconciliation pass for an order.

        Raises:
            OrderNotFoundError: Unknown order id.
            GatewayNotFoundError: The order's gateway is not configured.
            ConcurrentUpdateError: Another writer advanced the order first.
        """
        async with self.lock_for(order_id):
            repo = OrderRepository(session)
            order = await repo.get_or_raise(order_id)
            gateway_info = await self._gateway_info(session, order.gateway_id)

            before = order.get_metadata()
            lost_race: list[ConcurrentUpdateError] = []

            async def checkpoint(current: PaymentOrder) -> None:
                try:
                    await repo.save(current)
                except ConcurrentUpdateError as e:
                    lost_race.append(e)
                    raise
                await log_event(session, "execute_attempted", order_id=current.order_id, details={
                    "attempt": current.get_metadata().execution_attempts,
                    "max_attempts": self.workflow.max_execution_attempts,
                })
                await session.commit()

            result = await self.workflow.inquiry_payment(
                order, gateway_info, force_refresh=force_refresh, checkpoint=checkpoint
            )
            if lost_race:
                await session.rollback()
                raise lost_race[0]

            after = order.get_metadata()
            if after.execution_attempts > before.execution_attempts:
                action = "execute_completed" if after.is_do_payment_completed else "execute_failed"
                await log_event(session, action, order_id=order_id, details={
                    "attempt": after.execution_attempts,
                    "error": after.last_execution_error,
                    "retry_after": result.retry_after,
                })

            await log_event(session, "inquiry_completed", order_id=order_id, details={
                "success": result.success,
                "message": result.message,
                "status": order.status.value,
                "phase": after.current_phase.value if after.current_phase else None,
                "bank_status": after.last_bank_status,
                "has_exception": result.has_exception,
            })

            await repo.save(order)
            if after.current_phase != before.current_phase or not result.success:
                await repo.add_note(order_id, result.message)
            await session.commit()

        return result

    async def inquire_line_item(self, session: AsyncSession, order_id: str, row_number: int) -> WorkflowResult:
        """Single-transfer inquiry. Updates only that line item."""
        repo = OrderRepository(session)
        order = await repo.get_or_raise(order_id)
        item: Optional[LineItem] = order.find_line_item(row_number)
        if item is None:
            raise OrderNotFoundError(f"{order_id}/{row_number}")
        gateway_info = await self._gateway_info(session, order.gateway_id)

        result = await self.workflow.inquire_single_line_item(item, gateway_info)

        await log_event(session, "line_inquiry_completed", order_id=order_id, details={
            "row_number": row_number,
            "success": result.success,
            "status": item.status.value,
            "message": result.message,
        })
        if result.success:
            await repo.save_line_item(order_id, item)
        await session.commit()
        return result


def build_gateway() -> BankGateway:
    """Pick the gateway implementation from settings."""
    if settings.use_mock_gateway:
        logger.info("Using in-memory mock bank gateway")
        return MockBankGateway(polls_until_ready=1)
    return TourismBankGateway()


def build_coordinator(gateway: Optional[BankGateway] = None) -> PaymentCoordinator:
    return PaymentCoordinator(PaymentWorkflow(gateway or build_gateway()))
