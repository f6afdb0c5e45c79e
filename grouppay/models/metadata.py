"""
Workflow scratch state persisted on the payment order between polls.

Serialized as camelCase JSON into the order's metadata blob. Two counters
guard against duplicate money movement and are never reset for the
lifetime of an order:

  - execution_attempts only increases, and is incremented *before* the
    DoPayment call goes out
  - is_do_payment_completed flips to True exactly once; after that the
    workflow never calls DoPayment again
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from grouppay.models.enums import PaymentPhase

logger = logging.getLogger("grouppay.metadata")


class PaymentOrderMetadata(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    current_phase: Optional[PaymentPhase] = None
    last_bank_status: Optional[str] = None
    transaction_statuses: dict[int, str] = Field(default_factory=dict)  # row number -> raw bank status
    last_inquiry_time: Optional[datetime] = None
    execution_attempts: int = 0
    last_execution_error: Optional[str] = None
    execution_started_at: Optional[datetime] = None
    execution_completed_at: Optional[datetime] = None
    is_do_payment_completed: bool = False

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, blob: Optional[str]) -> "PaymentOrderMetadata":
        """Parse a stored blob. Empty or unreadable blobs yield fresh metadata."""
        if not blob or not blob.strip():
            return cls()
        try:
            return cls.model_validate_json(blob)
        except ValidationError as e:
            logger.warning("Discarding unreadable payment metadata: %s", e)
            return cls()

    @property
    def is_terminal(self) -> bool:
        return self.current_phase is not None and self.current_phase.is_terminal

    def can_attempt_execution(self, max_attempts: int) -> bool:
        return not self.is_do_payment_completed and self.execution_attempts < max_attempts

    def needs_refresh(self, now: datetime, threshold: timedelta) -> bool:
        """True when the last successful poll is older than the threshold (or never happened)."""
        if self.last_inquiry_time is None:
            return True
        return now - self.last_inquiry_time >= threshold

    def record_bank_status(self, raw_status: str, now: datetime) -> None:
        self.last_bank_status = raw_status
        self.last_inquiry_time = now

    def record_line_statuses(self, statuses: dict[int, str]) -> None:
        self.transaction_statuses.update(statuses)

    def mark_phase(self, phase: PaymentPhase) -> None:
        self.current_phase = phase

    def mark_execution_started(self, now: datetime) -> None:
        if self.is_do_payment_completed:
            raise RuntimeError("DoPayment already completed for this order")
        self.execution_attempts += 1
        self.execution_started_at = now
        self.current_phase = PaymentPhase.EXECUTING

    def mark_execution_completed(self, now: datetime) -> None:
        self.is_do_payment_completed = True
        self.execution_completed_at = now
        self.last_execution_error = None
        self.current_phase = PaymentPhase.EXECUTED

    def mark_execution_failed(self, error: str, now: datetime) -> None:
        self.last_execution_error = error
        self.execution_completed_at = now
