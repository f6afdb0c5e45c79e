"""Enumerations for the group payment domain model."""

from enum import Enum


class OrderStatus(str, Enum):
    """Order-level status exposed to the host platform."""

    SUBMITTED_TO_BANK = "submitted_to_bank"
    BANK_SUCCEEDED = "bank_succeeded"
    BANK_REJECTED = "bank_rejected"
    DONE_WITH_ERROR = "done_with_error"
    CANCELED = "canceled"
    EXPIRED = "expired"
    SYSTEM_ERROR = "system_error"


class LineItemStatus(str, Enum):
    """Status of a single transfer inside a batch."""

    WAIT_FOR_EXECUTION = "wait_for_execution"
    REGISTERED = "registered"
    WAIT_FOR_BANK = "wait_for_bank"
    BANK_SUCCEEDED = "bank_succeeded"
    BANK_REJECTED = "bank_rejected"
    TRANSACTION_ROLLBACK = "transaction_rollback"
    CANCELED = "canceled"
    EXPIRED = "expired"


class PaymentPhase(str, Enum):
    """Internal progress marker of the orchestration workflow."""

    REGISTERED = "Registered"
    PROCESSING = "Processing"
    READY_FOR_EXECUTION = "ReadyForExecution"
    EXECUTING = "Executing"
    EXECUTED = "Executed"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentPhase.COMPLETED, PaymentPhase.FAILED)


class BankStatus(str, Enum):
    """Closed set of order-level bank states, parsed once from raw strings."""

    READY = "ready"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"
    CANCELED = "canceled"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


class PaymentMethod(str, Enum):
    """Transfer rail the bank used for a line item."""

    INTERNAL = "internal"
    PAYA = "paya"
    SATNA = "satna"
    CARD = "card"
    UNKNOWN = "unknown"


class ReasonCode(str, Enum):
    """Categorized payment reasons, mapped to the bank's causeType table."""

    SALARY_DEPOSIT = "salary_deposit"
    SERVICES_INSURANCE = "services_insurance"
    THERAPEUTIC = "therapeutic"
    INVESTMENT_AND_BOURSE = "investment_and_bourse"
    LEGAL_CURRENCY_ACTIVITIES = "legal_currency_activities"
    DEBT_PAYMENT = "debt_payment"
    RETIREMENT = "retirement"
    MOVABLE_PROPERTIES = "movable_properties"
    IMMOVABLE_PROPERTIES = "immovable_properties"
    CASH_MANAGEMENT = "cash_management"
    CUSTOMS_DUTIES = "customs_duties"
    TAX_SETTLE = "tax_settle"
    OTHER_GOVERNMENT_SERVICES = "other_government_services"
    FACILITIES_AND_COMMITMENTS = "facilities_and_commitments"
    BOND_RETURN = "bond_return"
    GENERAL_AND_DAILY_COSTS = "general_and_daily_costs"
    CHARITY = "charity"
    STUFFS_PURCHASE = "stuffs_purchase"
    SERVICES_PURCHASE = "services_purchase"


# Bank causeType codes (1-19). Anything unmapped is reported as general costs.
CAUSE_TYPES: dict[ReasonCode, int] = {code: index for index, code in enumerate(ReasonCode, start=1)}
DEFAULT_CAUSE_TYPE = CAUSE_TYPES[ReasonCode.GENERAL_AND_DAILY_COSTS]


def cause_type_for(reason_code) -> int:
    """Translate a reason code (enum or raw value) to the bank causeType."""
    try:
        return CAUSE_TYPES[ReasonCode(reason_code)]
    except ValueError:
        return DEFAULT_CAUSE_TYPE
