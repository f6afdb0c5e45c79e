"""
Reference host store for payment orders and gateway credentials.

The workflow works on plain PaymentOrder dataclasses. This module maps them
to and from SQLAlchemy records, and enforces single-writer updates with a
compare-and-swap on the order's version column:

    UPDATE payment_orders SET ..., version = version + 1
    WHERE id = :id AND version = :loaded_version

A save that matches no row lost a race with another writer and raises
ConcurrentUpdateError. Nothing is retried here; the caller decides.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from grouppay.audit.logger import append_note
from grouppay.models.enums import LineItemStatus, OrderStatus, ReasonCode
from grouppay.models.order import LineItem, PaymentOrder
from grouppay.models.records import GatewayRecord, LineItemRecord, PaymentOrderRecord
from grouppay.providers.base import GatewayInfo

logger = logging.getLogger("grouppay.repository")


class OrderNotFoundError(Exception):
    def __init__(self, order_id: str):
        super().__init__(f"Payment order not found: {order_id}")
        self.order_id = order_id


class ConcurrentUpdateError(Exception):
    """Another writer saved the order since it was loaded."""

    def __init__(self, order_id: str, expected_version: int):
        super().__init__(
            f"Payment order {order_id} was modified concurrently (expected version {expected_version})"
        )
        self.order_id = order_id
        self.expected_version = expected_version


# --- Mapping ---


def _reason_code(value: Optional[str]) -> ReasonCode:
    try:
        return ReasonCode(value)
    except ValueError:
        return ReasonCode.GENERAL_AND_DAILY_COSTS


def _to_line_item(record: LineItemRecord) -> LineItem:
    return LineItem(
        row_number=record.row_number,
        destination_iban=record.destination_iban,
        amount=record.amount,
        recipient_name=record.recipient_name,
        reason_code=_reason_code(record.reason_code),
        description=record.description or "",
        status=LineItemStatus(record.status),
        tracking_id=record.tracking_id,
        reference_number=record.reference_number,
        provider_message=record.provider_message,
        order_id=record.order_id,
    )


def _to_order(record: PaymentOrderRecord) -> PaymentOrder:
    return PaymentOrder(
        order_id=record.id,
        line_items=[_to_line_item(r) for r in record.line_items],
        status=OrderStatus(record.status),
        tracking_id=record.tracking_id,
        metadata=record.metadata_json,
        gateway_id=record.gateway_id,
        description=record.description or "",
        version=record.version,
    )


class OrderRepository:
    """Find, create and save payment orders."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, order_id: str) -> Optional[PaymentOrder]:
        record = await self._get_record(order_id)
        return _to_order(record) if record else None

    async def get_or_raise(self, order_id: str) -> PaymentOrder:
        order = await self.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def list_orders(self, status: Optional[str] = None, limit: int = 100) -> list[PaymentOrder]:
        stmt = select(PaymentOrderRecord).options(selectinload(PaymentOrderRecord.line_items))
        if status:
            stmt = stmt.where(PaymentOrderRecord.status == status)
        stmt = stmt.order_by(PaymentOrderRecord.created_at.desc()).limit(limit)
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return [_to_order(r) for r in result.scalars().all()]

    async def create(self, order: PaymentOrder) -> PaymentOrder:
        """Insert a new order and its line items. Assigns an id when missing."""
        order.order_id = order.order_id or str(uuid.uuid4())
        order.version = 0

        self._session.add(
            PaymentOrderRecord(
                id=order.order_id,
                gateway_id=order.gateway_id,
                tracking_id=order.tracking_id,
                status=order.status.value,
                description=order.description,
                metadata_json=order.metadata,
                version=0,
            )
        )
        for item in order.line_items:
            item.order_id = order.order_id
            self._session.add(
                LineItemRecord(
                    order_id=order.order_id,
                    row_number=item.row_number,
                    destination_iban=item.destination_iban,
                    amount=item.amount,
                    recipient_name=item.recipient_name,
                    reason_code=item.reason_code.value,
                    description=item.description,
                    status=item.status.value,
                    tracking_id=item.tracking_id,
                    reference_number=item.reference_number,
                    provider_message=item.provider_message,
                )
            )
        await self._session.flush()
        return order

    async def save(self, order: PaymentOrder) -> PaymentOrder:
        """
        Persist status, tracking id, metadata and line item outcomes.

        Raises:
            ConcurrentUpdateError: The stored version no longer matches order.version.
        """
        result = await self._session.execute(
            update(PaymentOrderRecord)
            .where(PaymentOrderRecord.id == order.order_id)
            .where(PaymentOrderRecord.version == order.version)
            .values(
                status=order.status.value,
                tracking_id=order.tracking_id,
                metadata_json=order.metadata,
                version=order.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning("Lost update race on order %s at version %d", order.order_id, order.version)
            raise ConcurrentUpdateError(order.order_id, order.version)

        for item in order.line_items:
            await self.save_line_item(order.order_id, item)

        order.version += 1
        return order

    async def save_line_item(self, order_id: str, item: LineItem) -> None:
        await self._session.execute(
            update(LineItemRecord)
            .where(LineItemRecord.order_id == order_id)
            .where(LineItemRecord.row_number == item.row_number)
            .values(
                status=item.status.value,
                tracking_id=item.tracking_id,
                reference_number=item.reference_number,
                provider_message=item.provider_message,
            )
            .execution_options(synchronize_session=False)
        )

    async def add_note(self, order_id: str, message: str) -> None:
        result = await self._session.execute(
            select(PaymentOrderRecord.notes).where(PaymentOrderRecord.id == order_id)
        )
        row = result.one_or_none()
        if row is None:
            raise OrderNotFoundError(order_id)
        await self._session.execute(
            update(PaymentOrderRecord)
            .where(PaymentOrderRecord.id == order_id)
            .values(notes=append_note(row.notes, message))
            .execution_options(synchronize_session=False)
        )

    async def get_notes(self, order_id: str) -> Optional[str]:
        result = await self._session.execute(
            select(PaymentOrderRecord.notes).where(PaymentOrderRecord.id == order_id)
        )
        return result.scalar_one_or_none()

    async def _get_record(self, order_id: str) -> Optional[PaymentOrderRecord]:
        result = await self._session.execute(
            select(PaymentOrderRecord)
            .options(selectinload(PaymentOrderRecord.line_items))
            .where(PaymentOrderRecord.id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()


class GatewayRepository:
    """Gateway-info lookup keyed by gateway id."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, gateway_id: str) -> Optional[GatewayInfo]:
        record = await self._session.get(GatewayRecord, gateway_id)
        if record is None:
            return None
        return GatewayInfo(
            gateway_id=record.id,
            account_number=record.account_number,
            private_key_pem=record.private_key_pem,
            meta_data=record.meta_data,
            name=record.name,
        )

    async def add(self, info: GatewayInfo) -> None:
        self._session.add(
            GatewayRecord(
                id=info.gateway_id,
                name=info.name or info.gateway_id,
                account_number=info.account_number,
                private_key_pem=info.private_key_pem,
                meta_data=info.meta_data,
            )
        )
        await self._session.flush()
