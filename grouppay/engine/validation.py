"""
Pre-submission checks for payment orders.

Before an order is registered with the bank, we verify:
  1. It carries at least one line item
  2. Every destination IBAN is exactly 26 characters
  3. Every amount is positive
  4. Row numbers are unique within the order
  5. Every line item has a recipient name

All failures are collected rather than stopping at the first, so the
caller gets the full list in one response. No check touches the network.
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Optional

from grouppay.models.order import PaymentOrder

IBAN_LENGTH = 26
MIN_TRACKING_ID_LENGTH = 10


@dataclass
class ValidationResult:
    """Result of a validation pass."""

    valid: bool
    errors: list[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        return "; ".join(self.errors)


def validate_order(order: PaymentOrder) -> ValidationResult:
    """
    Check whether an order is well-formed enough to register.

    Args:
        order: The payment order about to be submitted.

    Returns:
        ValidationResult listing every problem found.
    """
    errors: list[str] = []

    if not order.order_id:
        errors.append("Order id is required")

    if not order.line_items:
        errors.append("Order must contain at least one line item")
        return ValidationResult(valid=False, errors=errors)

    for item in order.line_items:
        iban = (item.destination_iban or "").strip()
        if len(iban) != IBAN_LENGTH:
            errors.append(
                f"Row {item.row_number}: IBAN must be {IBAN_LENGTH} characters (got {len(iban)})"
            )

        if item.amount is None or item.amount <= 0:
            errors.append(f"Row {item.row_number}: amount must be positive (got {item.amount})")

        if not (item.recipient_name or "").strip():
            errors.append(f"Row {item.row_number}: recipient name is required")

    duplicates = sorted(
        row for row, count in Counter(i.row_number for i in order.line_items).items() if count > 1
    )
    if duplicates:
        errors.append(f"Duplicate row numbers: {', '.join(str(r) for r in duplicates)}")

    return ValidationResult(valid=not errors, errors=errors)


def is_valid_tracking_id(tracking_id: Optional[str]) -> bool:
    """Tracking ids are long composite strings; anything short is a caller bug."""
    return bool(tracking_id) and len(tracking_id) > MIN_TRACKING_ID_LENGTH
