"""
Payment order endpoints.

POST /orders                             Create an order and register it with the bank.
GET  /orders                             List orders (optionally by status).
GET  /orders/{id}                        Order with line items and workflow state.
POST /orders/{id}/register               Register a stored order (e.g. seeded demo data).
POST /orders/{id}/inquiry                One reconciliation pass (?force=true skips the cache).
POST /orders/{id}/items/{row}/inquiry    Out-of-band inquiry for one transfer.
GET  /orders/{id}/trace                  Full audit trail for an order.
"""

import json
import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from grouppay.audit.logger import get_trail
from grouppay.database import get_session
from grouppay.engine.orchestrator import GatewayNotFoundError, PaymentCoordinator, build_coordinator
from grouppay.engine.validation import validate_order
from grouppay.engine.workflow import WorkflowResult
from grouppay.models.enums import ReasonCode
from grouppay.models.order import LineItem, PaymentOrder
from grouppay.repository import ConcurrentUpdateError, OrderNotFoundError, OrderRepository

router = APIRouter(prefix="/orders", tags=["orders"])

_coordinator: Optional[PaymentCoordinator] = None


def get_coordinator() -> PaymentCoordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = build_coordinator()
    return _coordinator


# --- Schemas ---


class LineItemIn(BaseModel):
    row_number: int = Field(ge=1)
    destination_iban: str
    amount: int
    recipient_name: str
    reason_code: ReasonCode = ReasonCode.GENERAL_AND_DAILY_COSTS
    description: str = ""


class CreateOrderRequest(BaseModel):
    gateway_id: str
    order_id: Optional[str] = None
    description: str = ""
    line_items: list[LineItemIn]


class LineItemDetail(BaseModel):
    row_number: int
    destination_iban: str
    amount: int
    recipient_name: str
    reason_code: str
    status: str
    tracking_id: Optional[str]
    reference_number: Optional[str]
    provider_message: Optional[str]


class WorkflowState(BaseModel):
    current_phase: Optional[str]
    last_bank_status: Optional[str]
    last_inquiry_time: Optional[datetime]
    execution_attempts: int
    last_execution_error: Optional[str]
    is_do_payment_completed: bool


class OrderDetail(BaseModel):
    id: str
    gateway_id: Optional[str]
    tracking_id: Optional[str]
    status: str
    description: str
    total_amount: int
    version: int
    status_breakdown: dict[str, int]
    workflow: WorkflowState
    line_items: list[LineItemDetail]


class ActionResponse(BaseModel):
    success: bool
    message: str
    retry_after: Optional[float] = None
    has_exception: bool = False
    order: Optional[OrderDetail] = None
    line_item: Optional[LineItemDetail] = None


class AuditEntry(BaseModel):
    id: int
    action: str
    details: Optional[dict] = None
    timestamp: Optional[str]


class OrderTrace(BaseModel):
    order: OrderDetail
    notes: Optional[str]
    audit_trail: list[AuditEntry]


# --- Mapping ---


def _line_to_detail(item: LineItem) -> LineItemDetail:
    return LineItemDetail(
        row_number=item.row_number,
        destination_iban=item.destination_iban,
        amount=item.amount,
        recipient_name=item.recipient_name,
        reason_code=item.reason_code.value,
        status=item.status.value,
        tracking_id=item.tracking_id,
        reference_number=item.reference_number,
        provider_message=item.provider_message,
    )


def _order_to_detail(order: PaymentOrder) -> OrderDetail:
    metadata = order.get_metadata()
    return OrderDetail(
        id=order.order_id,
        gateway_id=order.gateway_id,
        tracking_id=order.tracking_id,
        status=order.status.value,
        description=order.description,
        total_amount=order.total_amount,
        version=order.version,
        status_breakdown=order.status_breakdown(),
        workflow=WorkflowState(
            current_phase=metadata.current_phase.value if metadata.current_phase else None,
            last_bank_status=metadata.last_bank_status,
            last_inquiry_time=metadata.last_inquiry_time,
            execution_attempts=metadata.execution_attempts,
            last_execution_error=metadata.last_execution_error,
            is_do_payment_completed=metadata.is_do_payment_completed,
        ),
        line_items=[_line_to_detail(i) for i in order.line_items],
    )


def _result_to_response(result: WorkflowResult) -> ActionResponse:
    return ActionResponse(
        success=result.success,
        message=result.message,
        retry_after=result.retry_after,
        has_exception=result.has_exception,
        order=_order_to_detail(result.order) if result.order else None,
        line_item=_line_to_detail(result.line_item) if result.line_item else None,
    )


# --- Routes ---


@router.post("", response_model=ActionResponse, status_code=201)
async def create_order(
    body: CreateOrderRequest,
    session: AsyncSession = Depends(get_session),
    coordinator: PaymentCoordinator = Depends(get_coordinator),
):
    """
    Create a batch order and register it with the bank.

    Malformed orders are rejected with 422 before anything is stored or sent.
    A bank-side registration failure still stores the order and is reported
    in the response body with success=false.
    """
    order = PaymentOrder(
        order_id=body.order_id or str(uuid.uuid4()),
        gateway_id=body.gateway_id,
        description=body.description,
        line_items=[
            LineItem(
                row_number=i.row_number,
                destination_iban=i.destination_iban,
                amount=i.amount,
                recipient_name=i.recipient_name,
                reason_code=i.reason_code,
                description=i.description,
            )
            for i in body.line_items
        ],
    )

    check = validate_order(order)
    if not check.valid:
        raise HTTPException(status_code=422, detail=check.errors)

    if body.order_id and await OrderRepository(session).get(body.order_id):
        raise HTTPException(status_code=409, detail=f"Order already exists: {order.order_id}")

    try:
        result = await coordinator.submit(session, order)
    except GatewayNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _result_to_response(result)


@router.get("", response_model=list[OrderDetail])
async def list_orders(
    status: Optional[str] = Query(None, description="Filter by order status"),
    limit: int = Query(100, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
):
    """List orders, newest first."""
    orders = await OrderRepository(session).list_orders(status=status, limit=limit)
    return [_order_to_detail(o) for o in orders]


@router.get("/{order_id}", response_model=OrderDetail)
async def get_order(order_id: str, session: AsyncSession = Depends(get_session)):
    order = await OrderRepository(session).get(order_id)
    if not order:
        raise HTTPException(status_code=404, detail=f"Order not found: {order_id}")
    return _order_to_detail(order)


@router.post("/{order_id}/register", response_model=ActionResponse)
async def register_order(
    order_id: str,
    session: AsyncSession = Depends(get_session),
    coordinator: PaymentCoordinator = Depends(get_coordinator),
):
    """Register a stored order that has not been sent to the bank yet."""
    try:
        result = await coordinator.register(session, order_id)
    except (OrderNotFoundError, GatewayNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConcurrentUpdateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _result_to_response(result)


@router.post("/{order_id}/inquiry", response_model=ActionResponse)
async def inquire_order(
    order_id: str,
    force: bool = Query(False, description="Bypass the settled-order cache"),
    session: AsyncSession = Depends(get_session),
    coordinator: PaymentCoordinator = Depends(get_coordinator),
):
    """
    Run one reconciliation pass.

    Poll this until the order settles. When retry_after is set, wait that
    many seconds before the next call.
    """
    try:
        result = await coordinator.inquire(session, order_id, force_refresh=force)
    except (OrderNotFoundError, GatewayNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConcurrentUpdateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _result_to_response(result)


@router.post("/{order_id}/items/{row_number}/inquiry", response_model=ActionResponse)
async def inquire_line_item(
    order_id: str,
    row_number: int,
    session: AsyncSession = Depends(get_session),
    coordinator: PaymentCoordinator = Depends(get_coordinator),
):
    try:
        result = await coordinator.inquire_line_item(session, order_id, row_number)
    except (OrderNotFoundError, GatewayNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _result_to_response(result)


@router.get("/{order_id}/trace", response_model=OrderTrace)
async def get_order_trace(order_id: str, session: AsyncSession = Depends(get_session)):
    """
    Full audit trail for an order.

    Returns the order plus every audit log entry in chronological order.
    Every DoPayment attempt appears here, which is how operations confirms
    a batch was executed at most once.
    """
    repo = OrderRepository(session)
    order = await repo.get(order_id)
    if not order:
        raise HTTPException(status_code=404, detail=f"Order not found: {order_id}")

    audit_trail = []
    for log in await get_trail(session, order_id):
        details = None
        if log.details:
            try:
                details = json.loads(log.details)
            except (json.JSONDecodeError, TypeError):
                details = {"raw": log.details}

        audit_trail.append(AuditEntry(
            id=log.id,
            action=log.action,
            details=details,
            timestamp=log.timestamp.isoformat() if log.timestamp else None,
        ))

    return OrderTrace(
        order=_order_to_detail(order),
        notes=await repo.get_notes(order_id),
        audit_trail=audit_trail,
    )
