"""
In-memory bank simulator for tests and the demo server.

Simulates the Tourism Bank batch lifecycle:
  - register returns a tracking id, batch starts in the registered state
  - readiness reports processing for a configurable number of polls, then READY
  - execute moves every line to DONE, except rows configured to be rejected
  - failures can be scripted per operation to exercise retry paths

Every call is counted so tests can assert on exactly which bank calls happened.
"""

import asyncio
import random
import uuid
from collections import Counter, defaultdict, deque
from dataclasses import dataclass, field
from typing import Optional

from grouppay.config import settings
from grouppay.engine.retry import BankBusinessError, GatewayError
from grouppay.engine.status_mapper import REGISTERED_STATE
from grouppay.models.enums import PaymentMethod
from grouppay.models.order import PaymentOrder
from grouppay.providers.base import (
    BankGateway,
    DetailInquiryRequest,
    GatewayInfo,
    LineResult,
    PaymentSummary,
    ReadinessResult,
    RecordError,
)


@dataclass
class _MockBatch:
    tracking_id: str
    rows: dict[int, int]  # row number -> amount
    status: str = REGISTERED_STATE
    polls: int = 0
    executed: bool = False
    line_statuses: dict[int, str] = field(default_factory=dict)


class MockBankGateway(BankGateway):
    """
    Bank gateway double with scripted behavior.

    Args:
        polls_until_ready: Readiness polls answered with the registered state
            before the batch reports READY.
        reject_rows: Row numbers the bank fails after execution.
        latency_ms: Simulated per-call latency.
    """

    def __init__(
        self,
        polls_until_ready: int = 0,
        reject_rows: Optional[set[int]] = None,
        latency_ms: Optional[int] = None,
    ):
        self.polls_until_ready = polls_until_ready
        self.reject_rows = set(reject_rows or ())
        self._latency_ms = latency_ms if latency_ms is not None else settings.mock_latency_ms
        self.batches: dict[str, _MockBatch] = {}
        self.calls: Counter = Counter()
        self._failures: dict[str, deque] = defaultdict(deque)
        self._forced_status: dict[str, str] = {}
        self._record_errors: dict[str, list[RecordError]] = {}

    @property
    def name(self) -> str:
        return "mock_bank"

    # --- Scripting ---

    def fail_next(self, operation: str, error: GatewayError, times: int = 1) -> None:
        """Make the next `times` calls to `operation` raise `error`."""
        for _ in range(times):
            self._failures[operation].append(error)

    def set_status(self, tracking_id: str, raw_status: str, record_errors: Optional[list[RecordError]] = None) -> None:
        """Force the readiness status reported for a batch."""
        self._forced_status[tracking_id] = raw_status
        if record_errors is not None:
            self._record_errors[tracking_id] = record_errors

    def set_line_status(self, tracking_id: str, row_number: int, raw_status: str) -> None:
        self.batches[tracking_id].line_statuses[row_number] = raw_status

    def add_batch(self, tracking_id: str, rows: dict[int, int]) -> None:
        """Seed a batch that was registered outside this simulator."""
        self.batches[tracking_id] = _MockBatch(tracking_id=tracking_id, rows=dict(rows))

    # --- Internals ---

    async def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        if self._latency_ms > 0:
            jitter = random.uniform(0.5, 1.5)
            await asyncio.sleep(self._latency_ms * jitter / 1000)
        if self._failures[operation]:
            raise self._failures[operation].popleft()

    def _batch(self, tracking_id: str) -> _MockBatch:
        batch = self.batches.get(tracking_id)
        if batch is None:
            raise BankBusinessError(f"Unknown transaction id: {tracking_id}", error_code="404")
        return batch

    # --- BankGateway ---

    async def register(self, order: PaymentOrder, gateway_info: GatewayInfo) -> str:
        await self._enter("register")
        tracking_id = f"MOCK-{uuid.uuid4().hex}"
        self.batches[tracking_id] = _MockBatch(
            tracking_id=tracking_id,
            rows={item.row_number: item.amount for item in order.line_items},
        )
        return tracking_id

    async def execute(self, tracking_id: str, gateway_info: GatewayInfo) -> None:
        await self._enter("execute")
        batch = self._batch(tracking_id)
        if batch.executed:
            raise BankBusinessError("Transaction already executed", error_code="409")
        batch.executed = True
        batch.status = "DONE"
        for row in batch.rows:
            batch.line_statuses.setdefault(row, "FAILED" if row in self.reject_rows else "DONE")

    async def check_readiness(self, tracking_id: str, gateway_info: GatewayInfo) -> ReadinessResult:
        await self._enter("check_readiness")
        batch = self._batch(tracking_id)
        batch.polls += 1

        if tracking_id in self._forced_status:
            raw_status = self._forced_status[tracking_id]
        elif batch.executed:
            raw_status = batch.status
        elif batch.polls > self.polls_until_ready:
            raw_status = "READY"
        else:
            raw_status = batch.status

        summary = PaymentSummary(
            transaction_id=tracking_id,
            state=raw_status,
            line_count=str(len(batch.rows)),
            total_amount=str(sum(batch.rows.values())),
        )
        return ReadinessResult(
            raw_status=raw_status,
            summary=summary,
            record_errors=list(self._record_errors.get(tracking_id, [])),
        )

    async def inquire_details(
        self, request: DetailInquiryRequest, gateway_info: GatewayInfo
    ) -> list[LineResult]:
        await self._enter("inquire_details")
        request.validate()
        batch = self._batch(request.tracking_id)

        if request.is_single:
            wanted = [request.line_number]
        else:
            wanted = list(range(request.first_index, request.last_index + 1))

        results = []
        for row in wanted:
            raw = batch.line_statuses.get(row)
            if raw is None:
                continue
            succeeded = raw.upper() == "DONE"
            results.append(
                LineResult(
                    row_number=row,
                    status=raw,
                    amount=batch.rows.get(row),
                    final_state=raw,
                    final_message="Transfer completed" if succeeded else f"Transfer {raw.lower()}",
                    payment_method=PaymentMethod.PAYA,
                    reference_number=f"REF{row:04d}{request.tracking_id[-6:]}" if succeeded else None,
                    error_description=None if succeeded else "Destination account rejected the transfer",
                )
            )
        return results
