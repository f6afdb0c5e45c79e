from grouppay.models.enums import (
    BankStatus,
    LineItemStatus,
    OrderStatus,
    PaymentMethod,
    PaymentPhase,
    ReasonCode,
)
from grouppay.models.metadata import PaymentOrderMetadata
from grouppay.models.order import LineItem, PaymentOrder
from grouppay.models.records import AuditLog, Base, GatewayRecord, LineItemRecord, PaymentOrderRecord

__all__ = [
    "Base",
    "PaymentOrderRecord",
    "LineItemRecord",
    "GatewayRecord",
    "AuditLog",
    "PaymentOrder",
    "LineItem",
    "PaymentOrderMetadata",
    "OrderStatus",
    "LineItemStatus",
    "PaymentPhase",
    "BankStatus",
    "PaymentMethod",
    "ReasonCode",
]
