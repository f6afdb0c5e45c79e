"""
Translation of Tourism Bank status strings to internal enumerations.

All functions are pure, case-insensitive and total. The bank's vocabulary
is not contractually closed, so anything unrecognized is classified as
"still processing" (SubmittedToBank / WaitForBank) instead of failing.

Raw strings are parsed once into the closed BankStatus set; downstream
workflow code switches on BankStatus rather than comparing strings.
"""

from typing import Iterable, Optional

from grouppay.models.enums import BankStatus, LineItemStatus, OrderStatus

# Raw order-level states reported by the readiness inquiry
REGISTERED_STATE = "GROUP_PAYMENT_REGISTERED_STATE"
WAITING_STATE = "GROUP_PAYMENT_WAITING_STATE"
UPLOADING_STATE = "GROUP_PAYMENT_UPLOADING_STATE"
ERROR_STATE = "GROUP_PAYMENT_ERROR_STATE"

_BANK_STATUS: dict[str, BankStatus] = {
    WAITING_STATE: BankStatus.PROCESSING,
    REGISTERED_STATE: BankStatus.PROCESSING,
    UPLOADING_STATE: BankStatus.PROCESSING,
    "PROCESSING": BankStatus.PROCESSING,
    "READY": BankStatus.READY,
    "DONE": BankStatus.DONE,
    ERROR_STATE: BankStatus.ERROR,
    "FAILED": BankStatus.ERROR,
    "FAIL": BankStatus.ERROR,
    "CANCELED": BankStatus.CANCELED,
    "CANCELLED": BankStatus.CANCELED,
    "EXPIRED": BankStatus.EXPIRED,
    "TIMEOUT": BankStatus.EXPIRED,
}

_ORDER_STATUS: dict[BankStatus, OrderStatus] = {
    BankStatus.PROCESSING: OrderStatus.SUBMITTED_TO_BANK,
    BankStatus.READY: OrderStatus.SUBMITTED_TO_BANK,
    BankStatus.DONE: OrderStatus.BANK_SUCCEEDED,  # Still needs line-level confirmation
    BankStatus.ERROR: OrderStatus.BANK_REJECTED,
    BankStatus.CANCELED: OrderStatus.CANCELED,
    BankStatus.EXPIRED: OrderStatus.EXPIRED,
    BankStatus.UNKNOWN: OrderStatus.SUBMITTED_TO_BANK,
}

_LINE_ITEM_STATUS: dict[str, LineItemStatus] = {
    # Waiting
    "TODO": LineItemStatus.WAIT_FOR_EXECUTION,
    "REGISTERED": LineItemStatus.REGISTERED,
    # In flight
    WAITING_STATE: LineItemStatus.WAIT_FOR_BANK,
    REGISTERED_STATE: LineItemStatus.WAIT_FOR_BANK,
    UPLOADING_STATE: LineItemStatus.WAIT_FOR_BANK,
    "PROCESSING": LineItemStatus.WAIT_FOR_BANK,
    "READY": LineItemStatus.WAIT_FOR_BANK,
    "INPROGRESS": LineItemStatus.WAIT_FOR_BANK,
    # Succeeded
    "DONE": LineItemStatus.BANK_SUCCEEDED,
    "SUCCESS": LineItemStatus.BANK_SUCCEEDED,
    "SUCCESSFUL": LineItemStatus.BANK_SUCCEEDED,
    # Rejected
    ERROR_STATE: LineItemStatus.BANK_REJECTED,
    "FAILED": LineItemStatus.BANK_REJECTED,
    "FAIL": LineItemStatus.BANK_REJECTED,
    "ERROR": LineItemStatus.BANK_REJECTED,
    "REJECTED": LineItemStatus.BANK_REJECTED,
    # Reversed after success
    "ROLLBACK": LineItemStatus.TRANSACTION_ROLLBACK,
    "REVERSED": LineItemStatus.TRANSACTION_ROLLBACK,
    "REFUNDED": LineItemStatus.TRANSACTION_ROLLBACK,
    # Canceled / expired
    "CANCELED": LineItemStatus.CANCELED,
    "CANCELLED": LineItemStatus.CANCELED,
    "EXPIRED": LineItemStatus.EXPIRED,
    "TIMEOUT": LineItemStatus.EXPIRED,
}

_FINAL = {"DONE", "FAILED", "FAIL", ERROR_STATE, "CANCELED", "CANCELLED", "EXPIRED", "TIMEOUT"}
_SUCCESS = {"DONE", "SUCCESS", "SUCCESSFUL"}
_ERROR = {ERROR_STATE, "FAILED", "FAIL", "ERROR", "REJECTED"}

_DESCRIPTIONS: dict[str, str] = {
    WAITING_STATE: "Waiting for bank processing",
    REGISTERED_STATE: "Registered at bank",
    UPLOADING_STATE: "Uploading to bank",
    ERROR_STATE: "Bank processing error",
    "PROCESSING": "Processing",
    "READY": "Ready for execution",
    "DONE": "Completed",
    "FAILED": "Failed",
    "FAIL": "Failed",
    "CANCELED": "Canceled",
    "CANCELLED": "Canceled",
    "EXPIRED": "Expired",
    "TIMEOUT": "Expired",
    "TODO": "Waiting for execution",
    "INPROGRESS": "In progress",
    "REGISTERED": "Registered",
    "ROLLBACK": "Rolled back",
    "REVERSED": "Rolled back",
    "REFUNDED": "Refunded",
}


def _normalize(raw_status: Optional[str]) -> str:
    return (raw_status or "").strip().upper()


def parse_bank_status(raw_status: Optional[str]) -> BankStatus:
    """Parse a raw order-level status string into the closed BankStatus set."""
    return _BANK_STATUS.get(_normalize(raw_status), BankStatus.UNKNOWN)


def map_order_status(raw_status: Optional[str]) -> OrderStatus:
    return _ORDER_STATUS[parse_bank_status(raw_status)]


def map_line_item_status(raw_status: Optional[str]) -> LineItemStatus:
    return _LINE_ITEM_STATUS.get(_normalize(raw_status), LineItemStatus.WAIT_FOR_BANK)


def is_final(raw_status: Optional[str]) -> bool:
    return _normalize(raw_status) in _FINAL


def is_retryable(raw_status: Optional[str]) -> bool:
    """Whether polling again can still change the outcome. Unknown statuses are retryable."""
    return not is_final(raw_status)


def is_success_status(raw_status: Optional[str]) -> bool:
    return _normalize(raw_status) in _SUCCESS


def is_error_status(raw_status: Optional[str]) -> bool:
    return _normalize(raw_status) in _ERROR


def describe_status(raw_status: Optional[str]) -> str:
    normalized = _normalize(raw_status)
    if not normalized:
        return "Unknown"
    return _DESCRIPTIONS.get(normalized, raw_status.strip())


def determine_order_status_from_line_items(statuses: Iterable[LineItemStatus]) -> OrderStatus:
    """
    Derive the order status from per-line outcomes.

    This is the authority once detailed inquiry data is available; it
    overrides the coarse order-level mapping.
    """
    statuses = list(statuses)
    if not statuses:
        return OrderStatus.SUBMITTED_TO_BANK

    if all(s == LineItemStatus.BANK_SUCCEEDED for s in statuses):
        return OrderStatus.BANK_SUCCEEDED

    if all(s == LineItemStatus.BANK_REJECTED for s in statuses):
        return OrderStatus.BANK_REJECTED

    if LineItemStatus.BANK_SUCCEEDED in statuses and LineItemStatus.BANK_REJECTED in statuses:
        return OrderStatus.DONE_WITH_ERROR

    if all(s == LineItemStatus.CANCELED for s in statuses):
        return OrderStatus.CANCELED

    return OrderStatus.SUBMITTED_TO_BANK
