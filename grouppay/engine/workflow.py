"""
Payment orchestration workflow: register, poll readiness, execute once, poll details.

Phases advance as:

    Registered -> Processing -> ReadyForExecution -> Executing -> Executed -> Completed
                                                                 (Failed from any non-terminal phase)

The workflow is stateless between calls. Everything it needs to resume sits
in the metadata blob on the order, so any process can pick an order up. The
host must guarantee at most one concurrent inquiry per order; see
engine/orchestrator.py for the reference coordinator.

Entry points never raise. Each returns a WorkflowResult carrying the
(possibly mutated) order, which the caller must persist even on failure:
an incremented execution attempt counter is meaningful state on its own.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Iterable, Optional

from grouppay.config import settings
from grouppay.engine.retry import (
    BASE_DELAY,
    GatewayError,
    ValidationError,
    is_retryable_execute_error,
    with_retry,
)
from grouppay.engine.status_mapper import (
    REGISTERED_STATE,
    describe_status,
    determine_order_status_from_line_items,
    map_line_item_status,
    map_order_status,
    parse_bank_status,
)
from grouppay.engine.validation import validate_order
from grouppay.models.enums import BankStatus, LineItemStatus, OrderStatus, PaymentPhase
from grouppay.models.metadata import PaymentOrderMetadata
from grouppay.models.order import LineItem, PaymentOrder
from grouppay.providers.base import (
    BankGateway,
    DetailInquiryRequest,
    GatewayInfo,
    LineResult,
    ReadinessResult,
)

logger = logging.getLogger("grouppay.workflow")

# Expected failures from a gateway call. Anything else is a system error.
GATEWAY_FAILURES = (GatewayError, ValidationError)

_PENDING_LINE_STATUSES = {LineItemStatus.WAIT_FOR_EXECUTION, LineItemStatus.WAIT_FOR_BANK}

# Called with the order right after an execution attempt is counted and before
# DoPayment is sent. Raising aborts the attempt without contacting the bank.
Checkpoint = Callable[[PaymentOrder], Awaitable[None]]


@dataclass
class WorkflowResult:
    """Outcome of a workflow entry point."""

    success: bool
    message: str
    order: Optional[PaymentOrder] = None
    line_item: Optional[LineItem] = None
    retry_after: Optional[float] = None  # Seconds until the scheduler should call again
    has_exception: bool = False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentWorkflow:
    """
    Drives a batch payment order through the bank's group-payment lifecycle.

    Args:
        gateway: Bank gateway implementation.
        max_execution_attempts: Cap on DoPayment attempts per order.
        refresh_threshold: Settled orders polled more recently than this are
            answered from cache.
        retry_delay_seconds: Hint returned after a retryable DoPayment failure.
        retryable_status_codes: HTTP codes for which DoPayment may be retried.
        read_retry_attempts: In-process retries for read-only inquiries.
        clock: Returns the current time as an aware UTC datetime.
    """

    def __init__(
        self,
        gateway: BankGateway,
        max_execution_attempts: Optional[int] = None,
        refresh_threshold: Optional[timedelta] = None,
        retry_delay_seconds: Optional[float] = None,
        retryable_status_codes: Optional[Iterable[int]] = None,
        read_retry_attempts: Optional[int] = None,
        read_retry_base_delay: float = BASE_DELAY,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._gateway = gateway
        self._max_attempts = (
            max_execution_attempts if max_execution_attempts is not None else settings.max_execution_attempts
        )
        self._refresh_threshold = (
            refresh_threshold
            if refresh_threshold is not None
            else timedelta(minutes=settings.inquiry_refresh_minutes)
        )
        self._retry_delay = retry_delay_seconds if retry_delay_seconds is not None else settings.retry_delay_seconds
        self._retryable_codes = frozenset(
            retryable_status_codes if retryable_status_codes is not None else settings.retryable_status_codes
        )
        self._read_retries = read_retry_attempts if read_retry_attempts is not None else settings.read_retry_attempts
        self._read_base_delay = read_retry_base_delay
        self._clock = clock or _utcnow

    @property
    def max_execution_attempts(self) -> int:
        return self._max_attempts

    @property
    def gateway_name(self) -> str:
        return self._gateway.name

    async def aclose(self) -> None:
        await self._gateway.aclose()

    # --- Entry points ---

    async def register_payment(self, order: PaymentOrder, gateway_info: GatewayInfo) -> WorkflowResult:
        """Validate the order and register it with the bank."""
        try:
            return await self._register(order, gateway_info)
        except Exception as e:
            return self._system_error(order, "registration", e)

    async def inquiry_payment(
        self,
        order: PaymentOrder,
        gateway_info: GatewayInfo,
        force_refresh: bool = False,
        checkpoint: Optional[Checkpoint] = None,
    ) -> WorkflowResult:
        """
        Reconcile an order with the bank. Intended to be called repeatedly by
        a poller until the order settles.

        Pass a checkpoint to persist the order before DoPayment goes out.
        """
        try:
            return await self._inquire(order, gateway_info, force_refresh, checkpoint)
        except Exception as e:
            return self._system_error(order, "inquiry", e)

    async def inquire_single_line_item(self, line_item: LineItem, gateway_info: GatewayInfo) -> WorkflowResult:
        """Out-of-band inquiry for one transfer. Never touches order-level phase or metadata."""
        try:
            if not line_item.tracking_id:
                return WorkflowResult(
                    success=False,
                    message=f"Row {line_item.row_number} has no tracking id; the order is not registered",
                    line_item=line_item,
                )

            request = DetailInquiryRequest.single(line_item.tracking_id, line_item.row_number)
            try:
                results = await self._read(self._gateway.inquire_details, request, gateway_info)
            except GATEWAY_FAILURES as e:
                logger.warning("Single-line inquiry failed for row %d: %s", line_item.row_number, e)
                return WorkflowResult(success=False, message=f"Line inquiry failed: {e}", line_item=line_item)

            match = next((r for r in results if r.row_number == line_item.row_number), None)
            if match is None:
                return WorkflowResult(
                    success=False,
                    message=f"Bank returned no result for row {line_item.row_number}",
                    line_item=line_item,
                )

            _apply_line_result(line_item, match)
            return WorkflowResult(
                success=True,
                message=f"Row {line_item.row_number}: {line_item.status.value}",
                line_item=line_item,
            )
        except Exception as e:
            logger.exception("Unexpected error during line inquiry for row %s", line_item.row_number)
            return WorkflowResult(
                success=False,
                message=f"Unexpected error during line inquiry: {e}",
                line_item=line_item,
                has_exception=True,
            )

    # --- Registration ---

    async def _register(self, order: PaymentOrder, gateway_info: GatewayInfo) -> WorkflowResult:
        check = validate_order(order)
        if not check.valid:
            logger.warning("Order %s failed validation: %s", order.order_id, check.message)
            return WorkflowResult(success=False, message=f"Validation failed: {check.message}", order=order)

        if order.tracking_id:
            return WorkflowResult(
                success=False,
                message=f"Order already registered as {order.tracking_id}",
                order=order,
            )

        try:
            tracking_id = await self._gateway.register(order, gateway_info)
        except GATEWAY_FAILURES as e:
            logger.warning("Registration of order %s failed: %s", order.order_id, e)
            return WorkflowResult(success=False, message=f"Registration failed: {e}", order=order)

        order.tracking_id = tracking_id
        for item in order.line_items:
            item.status = LineItemStatus.WAIT_FOR_EXECUTION
            item.tracking_id = tracking_id
        order.status = OrderStatus.SUBMITTED_TO_BANK

        metadata = PaymentOrderMetadata(
            current_phase=PaymentPhase.REGISTERED,
            last_bank_status=REGISTERED_STATE,
            last_inquiry_time=self._clock(),
        )
        order.set_metadata(metadata)

        logger.info("Order %s registered as %s (%d lines)", order.order_id, tracking_id, len(order.line_items))
        return WorkflowResult(success=True, message=f"Registered as {tracking_id}", order=order)

    # --- Inquiry ---

    async def _inquire(
        self,
        order: PaymentOrder,
        gateway_info: GatewayInfo,
        force_refresh: bool,
        checkpoint: Optional[Checkpoint],
    ) -> WorkflowResult:
        metadata = order.get_metadata()
        now = self._clock()

        if not force_refresh and metadata.is_terminal and not metadata.needs_refresh(now, self._refresh_threshold):
            return WorkflowResult(
                success=order.status not in (OrderStatus.BANK_REJECTED, OrderStatus.SYSTEM_ERROR),
                message=f"Cached: {order.status.value} (phase {metadata.current_phase.value})",
                order=order,
            )

        if not order.tracking_id:
            return WorkflowResult(
                success=False,
                message="Order has no tracking id; register it first",
                order=order,
            )

        try:
            readiness = await self._read(self._gateway.check_readiness, order.tracking_id, gateway_info)
        except GATEWAY_FAILURES as e:
            logger.warning("Readiness inquiry for %s failed: %s", order.tracking_id, e)
            return WorkflowResult(success=False, message=f"Readiness inquiry failed: {e}", order=order)

        raw_status = readiness.raw_status
        metadata.record_bank_status(raw_status, now)
        order.status = map_order_status(raw_status)
        if metadata.current_phase in (None, PaymentPhase.REGISTERED) and raw_status.strip().upper() != REGISTERED_STATE:
            metadata.mark_phase(PaymentPhase.PROCESSING)

        bank_status = parse_bank_status(raw_status)
        logger.info("Order %s readiness: %s (%s)", order.order_id, raw_status, bank_status.value)

        if bank_status == BankStatus.READY:
            return await self._handle_ready(order, metadata, gateway_info, checkpoint)
        if bank_status == BankStatus.DONE:
            return await self._detailed_inquiry(order, metadata, gateway_info)
        if bank_status == BankStatus.ERROR:
            return self._handle_rejected(order, metadata, readiness)
        if bank_status in (BankStatus.CANCELED, BankStatus.EXPIRED):
            return self._handle_closed(order, metadata, bank_status)

        order.status = OrderStatus.SUBMITTED_TO_BANK
        order.set_metadata(metadata)
        return WorkflowResult(
            success=True,
            message=f"Still processing: {describe_status(raw_status)}",
            order=order,
        )

    async def _handle_ready(
        self,
        order: PaymentOrder,
        metadata: PaymentOrderMetadata,
        gateway_info: GatewayInfo,
        checkpoint: Optional[Checkpoint],
    ) -> WorkflowResult:
        if metadata.is_do_payment_completed:
            return await self._detailed_inquiry(order, metadata, gateway_info)

        # A permanent DoPayment failure is final even though the bank still reports READY.
        if metadata.current_phase == PaymentPhase.FAILED and metadata.can_attempt_execution(self._max_attempts):
            order.status = OrderStatus.BANK_REJECTED
            order.set_metadata(metadata)
            logger.warning("Order %s: DoPayment already failed, not executing again", order.order_id)
            return WorkflowResult(
                success=False,
                message=f"DoPayment failed: {metadata.last_execution_error or 'no error recorded'}",
                order=order,
            )

        metadata.mark_phase(PaymentPhase.READY_FOR_EXECUTION)
        if metadata.can_attempt_execution(self._max_attempts):
            return await self._execute(order, metadata, gateway_info, checkpoint)

        order.status = OrderStatus.BANK_REJECTED
        metadata.mark_phase(PaymentPhase.FAILED)
        order.set_metadata(metadata)
        logger.error(
            "Order %s exhausted %d execution attempts: %s",
            order.order_id,
            metadata.execution_attempts,
            metadata.last_execution_error,
        )
        return WorkflowResult(
            success=False,
            message=(
                f"Execution attempts exhausted ({metadata.execution_attempts}/{self._max_attempts}): "
                f"{metadata.last_execution_error or 'no error recorded'}"
            ),
            order=order,
        )

    def _handle_rejected(
        self, order: PaymentOrder, metadata: PaymentOrderMetadata, readiness: ReadinessResult
    ) -> WorkflowResult:
        error_text = readiness.error_text()
        order.status = OrderStatus.BANK_REJECTED
        for item in order.line_items:
            if item.status in _PENDING_LINE_STATUSES:
                item.status = LineItemStatus.BANK_REJECTED
                item.provider_message = error_text
        metadata.mark_phase(PaymentPhase.FAILED)
        order.set_metadata(metadata)

        logger.error("Order %s rejected by bank: %s", order.order_id, error_text)
        return WorkflowResult(success=False, message=f"Bank rejected the batch: {error_text}", order=order)

    def _handle_closed(
        self, order: PaymentOrder, metadata: PaymentOrderMetadata, bank_status: BankStatus
    ) -> WorkflowResult:
        if bank_status == BankStatus.CANCELED:
            order_status, line_status = OrderStatus.CANCELED, LineItemStatus.CANCELED
        else:
            order_status, line_status = OrderStatus.EXPIRED, LineItemStatus.EXPIRED

        order.status = order_status
        for item in order.line_items:
            if item.status != LineItemStatus.BANK_SUCCEEDED:
                item.status = line_status
        metadata.mark_phase(PaymentPhase.FAILED)
        order.set_metadata(metadata)

        logger.info("Order %s closed by bank: %s", order.order_id, order_status.value)
        return WorkflowResult(success=True, message=f"Payment {order_status.value} by bank", order=order)

    # --- Execute sub-flow ---

    async def _execute(
        self,
        order: PaymentOrder,
        metadata: PaymentOrderMetadata,
        gateway_info: GatewayInfo,
        checkpoint: Optional[Checkpoint],
    ) -> WorkflowResult:
        # The attempt is counted before the call and written to the order
        # right away; it is never rolled back.
        metadata.mark_execution_started(self._clock())
        order.set_metadata(metadata)
        if checkpoint is not None:
            await checkpoint(order)
        attempt = metadata.execution_attempts
        logger.info("Order %s: DoPayment attempt %d/%d", order.order_id, attempt, self._max_attempts)

        try:
            await self._gateway.execute(order.tracking_id, gateway_info)
        except GATEWAY_FAILURES as e:
            metadata.mark_execution_failed(str(e), self._clock())
            retryable = isinstance(e, GatewayError) and is_retryable_execute_error(e, self._retryable_codes)

            if retryable and metadata.execution_attempts < self._max_attempts:
                metadata.mark_phase(PaymentPhase.READY_FOR_EXECUTION)
                order.status = OrderStatus.SUBMITTED_TO_BANK
                order.set_metadata(metadata)
                logger.warning(
                    "Order %s: DoPayment attempt %d failed, retry in %.1fs: %s",
                    order.order_id,
                    attempt,
                    self._retry_delay,
                    e,
                )
                return WorkflowResult(
                    success=False,
                    message=f"DoPayment attempt {attempt}/{self._max_attempts} failed, retry scheduled: {e}",
                    order=order,
                    retry_after=self._retry_delay,
                )

            order.status = OrderStatus.BANK_REJECTED
            metadata.mark_phase(PaymentPhase.FAILED)
            order.set_metadata(metadata)
            logger.error("Order %s: DoPayment failed permanently on attempt %d: %s", order.order_id, attempt, e)
            return WorkflowResult(success=False, message=f"DoPayment failed: {e}", order=order)

        metadata.mark_execution_completed(self._clock())
        order.status = OrderStatus.SUBMITTED_TO_BANK
        for item in order.line_items:
            if item.status == LineItemStatus.WAIT_FOR_EXECUTION:
                item.status = LineItemStatus.WAIT_FOR_BANK
        order.set_metadata(metadata)
        logger.info("Order %s: DoPayment succeeded on attempt %d", order.order_id, attempt)

        return await self._detailed_inquiry(order, metadata, gateway_info)

    # --- Detailed inquiry ---

    async def _detailed_inquiry(
        self, order: PaymentOrder, metadata: PaymentOrderMetadata, gateway_info: GatewayInfo
    ) -> WorkflowResult:
        rows = [item.row_number for item in order.line_items]
        results: list[LineResult] = []

        if rows:
            request = DetailInquiryRequest.for_range(order.tracking_id, min(rows), max(rows))
            try:
                results = await self._read(self._gateway.inquire_details, request, gateway_info)
            except GATEWAY_FAILURES as e:
                order.set_metadata(metadata)
                logger.warning("Detailed inquiry for %s failed: %s", order.tracking_id, e)
                return WorkflowResult(success=False, message=f"Detailed inquiry failed: {e}", order=order)

        by_row = {r.row_number: r for r in results}
        reported: dict[int, str] = {}
        for item in order.line_items:
            result = by_row.get(item.row_number)
            if result is None:
                continue
            _apply_line_result(item, result)
            reported[item.row_number] = result.status or ""

        metadata.record_line_statuses(reported)
        order.status = determine_order_status_from_line_items(item.status for item in order.line_items)
        metadata.mark_phase(PaymentPhase.COMPLETED)
        order.set_metadata(metadata)

        breakdown = ", ".join(f"{k}={v}" for k, v in sorted(order.status_breakdown().items()))
        logger.info("Order %s detailed inquiry: %s [%s]", order.order_id, order.status.value, breakdown)
        return WorkflowResult(
            success=True,
            message=f"Detailed inquiry complete: {order.status.value} ({len(reported)}/{len(rows)} lines reported)",
            order=order,
        )

    # --- Helpers ---

    async def _read(self, func, *args):
        return await with_retry(func, *args, max_retries=self._read_retries, base_delay=self._read_base_delay)

    def _system_error(self, order: PaymentOrder, step: str, error: Exception) -> WorkflowResult:
        logger.exception("Unexpected error during %s of order %s", step, order.order_id)
        # Phase stays where it was so the next poll resumes from it.
        order.status = OrderStatus.SYSTEM_ERROR
        return WorkflowResult(
            success=False,
            message=f"Unexpected error during {step}: {error}",
            order=order,
            has_exception=True,
        )


def _apply_line_result(item: LineItem, result: LineResult) -> None:
    item.status = map_line_item_status(result.status)
    item.provider_message = result.message
    if item.status == LineItemStatus.BANK_SUCCEEDED and result.reference_number:
        item.reference_number = result.reference_number
