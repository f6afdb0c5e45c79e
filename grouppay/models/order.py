"""
In-memory payment order model handed to (and returned by) the workflow.

The host order store owns persistence. The workflow only mutates status,
tracking id, line item outcomes and the serialized metadata blob, then
returns the order so the caller can save it.
"""

from dataclasses import dataclass, field
from typing import Optional

from grouppay.models.enums import LineItemStatus, OrderStatus, ReasonCode
from grouppay.models.metadata import PaymentOrderMetadata


@dataclass
class LineItem:
    """A single transfer (one row) inside a batch payment order."""

    row_number: int  # 1-based, unique within the order
    destination_iban: str
    amount: int  # Minor currency units
    recipient_name: str
    reason_code: ReasonCode = ReasonCode.GENERAL_AND_DAILY_COSTS
    description: str = ""
    status: LineItemStatus = LineItemStatus.REGISTERED
    tracking_id: Optional[str] = None  # Shared batch id, set at registration
    reference_number: Optional[str] = None  # Bank reference once the transfer succeeds
    provider_message: Optional[str] = None
    order_id: Optional[str] = None


@dataclass
class PaymentOrder:
    """A batch transfer request tracked under one bank-assigned id."""

    order_id: str
    line_items: list[LineItem] = field(default_factory=list)
    status: OrderStatus = OrderStatus.SUBMITTED_TO_BANK
    tracking_id: Optional[str] = None
    metadata: Optional[str] = None  # Serialized PaymentOrderMetadata
    gateway_id: Optional[str] = None
    description: str = ""
    version: int = 0  # Optimistic-concurrency counter, bumped by the store on every save

    def get_metadata(self) -> PaymentOrderMetadata:
        return PaymentOrderMetadata.from_json(self.metadata)

    def set_metadata(self, metadata: PaymentOrderMetadata) -> None:
        self.metadata = metadata.to_json()

    @property
    def total_amount(self) -> int:
        return sum(item.amount for item in self.line_items)

    def find_line_item(self, row_number: int) -> Optional[LineItem]:
        for item in self.line_items:
            if item.row_number == row_number:
                return item
        return None

    def status_breakdown(self) -> dict[str, int]:
        """Count line items per status, for logs and API summaries."""
        counts: dict[str, int] = {}
        for item in self.line_items:
            counts[item.status.value] = counts.get(item.status.value, 0) + 1
        return counts
