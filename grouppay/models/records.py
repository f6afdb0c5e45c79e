"""SQLAlchemy models for the host-side order store."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


class PaymentOrderRecord(Base):
    """
    A batch payment order as stored by the host.

    The metadata column carries the workflow's serialized state. The version
    column is the compare-and-swap token: every save must present the version
    it loaded, so two pollers cannot both advance the same order.
    """

    __tablename__ = "payment_orders"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    gateway_id = Column(String(50), ForeignKey("gateways.id"), nullable=False, index=True)
    tracking_id = Column(String(120), nullable=True, unique=True)
    status = Column(String(30), nullable=False, default="submitted_to_bank")
    description = Column(String(500), default="")
    metadata_json = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=0)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    line_items = relationship(
        "LineItemRecord",
        back_populates="order",
        lazy="raise",
        order_by="LineItemRecord.row_number",
    )


class LineItemRecord(Base):
    """A single transfer row belonging to a payment order."""

    __tablename__ = "line_items"
    __table_args__ = (
        UniqueConstraint("order_id", "row_number", name="uq_order_row"),
    )

    id = Column(String(12), primary_key=True, default=_new_id)
    order_id = Column(String(36), ForeignKey("payment_orders.id"), nullable=False, index=True)
    row_number = Column(Integer, nullable=False)
    destination_iban = Column(String(26), nullable=False)
    amount = Column(BigInteger, nullable=False)  # Minor units
    recipient_name = Column(String(200), nullable=False)
    reason_code = Column(String(40), nullable=False, default="general_and_daily_costs")
    description = Column(String(500), default="")
    status = Column(String(30), nullable=False, default="registered")
    tracking_id = Column(String(120), nullable=True)
    reference_number = Column(String(100), nullable=True)
    provider_message = Column(Text, nullable=True)

    order = relationship("PaymentOrderRecord", back_populates="line_items")


class GatewayRecord(Base):
    """
    Bank gateway credentials for a source account.

    meta_data is a JSON document with clientId, clientSecret, apiKey,
    customerNumber, branchCode and organizationCode.
    """

    __tablename__ = "gateways"

    id = Column(String(50), primary_key=True)
    name = Column(String(200), nullable=False)
    account_number = Column(String(50), nullable=False)
    private_key_pem = Column(Text, nullable=False)
    meta_data = Column(Text, nullable=False)


class AuditLog(Base):
    """
    Immutable audit trail entry.

    Every workflow step (registration, readiness poll, DoPayment attempt,
    detailed inquiry) gets an entry. These are append-only and never modified.
    """

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("payment_orders.id"), nullable=True, index=True)
    action = Column(String(50), nullable=False)
    details = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=_utcnow)
