"""API endpoints for point balances, redemptions and order lifecycle events."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_ledger.api.dependencies.security import require_admin_api_key
from loyalty_ledger.api.dependencies.session import ensure_member_access, require_member_session
from loyalty_ledger.core.errors import (
    InsufficientBalanceError,
    InvalidTransitionError,
    LedgerSystemError,
    NotFoundError,
    PermissionDeniedError,
    PointsError,
    RedemptionLimitExceededError,
    ValidationError,
)
from loyalty_ledger.db.session import get_session
from loyalty_ledger.models.points import PointRedemption, PointsLedgerEntry
from loyalty_ledger.models.user import User
from loyalty_ledger.services.points import (
    LedgerQuery,
    OrderLineItem,
    OrderSnapshot,
    PointsService,
    ProductPointsRule,
    RecordedOrderSource,
    RefundSnapshot,
    StaticOrderSource,
    StaticProductPointsSource,
)


router = APIRouter(prefix="/points", tags=["points"])


_ERROR_STATUS: list[tuple[type[PointsError], int]] = [
    (InsufficientBalanceError, 402),
    (RedemptionLimitExceededError, 409),
    (InvalidTransitionError, 409),
    (NotFoundError, 404),
    (PermissionDeniedError, 403),
    (ValidationError, 400),
    (LedgerSystemError, 500),
]


def points_http_error(exc: PointsError) -> HTTPException:
    status_code = next((code for error_type, code in _ERROR_STATUS if isinstance(exc, error_type)), 500)
    return HTTPException(status_code=status_code, detail=exc.as_dict())


class LineItemPayload(BaseModel):
    productId: str
    quantity: int = Field(1, ge=0)
    lineTotal: Decimal = Field(..., ge=0)


class ProductRulePayload(BaseModel):
    type: Literal["fixed", "percentage"]
    value: Decimal = Field(..., ge=0)


class OrderPayload(BaseModel):
    userId: UUID
    total: Decimal = Field(..., ge=0)
    status: str = "pending"
    currency: str = "USD"
    lineItems: List[LineItemPayload] = Field(default_factory=list)
    productPoints: dict[str, ProductRulePayload] = Field(
        default_factory=dict,
        description="Product-level earning rules keyed by product id",
    )

    def to_snapshot(self, order_id: str) -> OrderSnapshot:
        return OrderSnapshot(
            order_id=order_id,
            user_id=self.userId,
            total=self.total,
            status=self.status,
            currency=self.currency,
            line_items=tuple(
                OrderLineItem(product_id=item.productId, quantity=item.quantity, line_total=item.lineTotal)
                for item in self.lineItems
            ),
        )

    def product_source(self) -> StaticProductPointsSource:
        return StaticProductPointsSource(
            {product_id: ProductPointsRule(type=rule.type, value=rule.value) for product_id, rule in self.productPoints.items()}
        )


class RefundPayload(BaseModel):
    order: OrderPayload
    refundTotal: Decimal = Field(..., ge=0)


class RefundReversalPayload(BaseModel):
    orderId: Optional[str] = None


class RedemptionCreateRequest(BaseModel):
    points: int
    orderId: Optional[str] = Field(None, description="Order the discount applies to; its recorded total sets the cap")


class RedemptionCancelRequest(BaseModel):
    reason: Optional[str] = None


class SweepRequest(BaseModel):
    userId: Optional[UUID] = None


class BalanceResponse(BaseModel):
    userId: UUID
    available: int
    pending: int
    earnedToDate: int
    expiredTotal: int
    redeemedTotal: int


class LedgerEntryResponse(BaseModel):
    id: int
    orderId: Optional[str]
    productId: Optional[str]
    actionType: str
    points: int
    status: str
    description: Optional[str]
    notes: Optional[str]
    expiresAt: Optional[datetime]
    createdAt: datetime


class HistoryResponse(BaseModel):
    items: List[LedgerEntryResponse]
    total: int
    page: int
    pageSize: int
    pages: int


class RedemptionResponse(BaseModel):
    redemptionId: UUID
    ledgerId: int
    points: int
    discountValue: float
    conversionRate: float
    currency: str
    orderId: Optional[str]
    status: str
    remainingBalance: int


class RedemptionRecordResponse(BaseModel):
    id: UUID
    ledgerId: int
    orderId: Optional[str]
    points: int
    discountValue: float
    currency: str
    status: str
    createdAt: datetime
    cancelledAt: Optional[datetime]


class RestoreResponse(BaseModel):
    redemptionId: UUID
    ledgerId: int
    restoredPoints: int
    newBalance: int


class OrderEventResponse(BaseModel):
    orderId: Optional[str]
    processed: bool


class ExpiryForecastResponse(BaseModel):
    ledgerId: int
    points: int
    expiresAt: datetime
    ruleName: str


class SweepResponse(BaseModel):
    users: int
    expiredEntries: int
    expiredPoints: int
    consumedEntries: int
    warnedEntries: int
    errors: int


def _serialize_entry(entry: PointsLedgerEntry) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        id=entry.id,
        orderId=entry.order_id,
        productId=entry.product_id,
        actionType=entry.action_type.value,
        points=entry.points_amount,
        status=entry.status.value,
        description=entry.description,
        notes=entry.notes,
        expiresAt=entry.expires_at,
        createdAt=entry.created_at,
    )


def _serialize_redemption(redemption: PointRedemption) -> RedemptionRecordResponse:
    return RedemptionRecordResponse(
        id=redemption.id,
        ledgerId=redemption.ledger_id,
        orderId=redemption.order_id,
        points=redemption.points,
        discountValue=float(redemption.discount_value),
        currency=redemption.currency,
        status=redemption.status.value,
        createdAt=redemption.created_at,
        cancelledAt=redemption.cancelled_at,
    )


@router.get("/users/{user_id}/balance", response_model=BalanceResponse)
async def get_balance(
    user_id: UUID,
    member: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> BalanceResponse:
    ensure_member_access(member, user_id)
    summary = await PointsService(db).get_balance_summary(user_id)
    return BalanceResponse(
        userId=summary.user_id,
        available=summary.available,
        pending=summary.pending,
        earnedToDate=summary.earned_to_date,
        expiredTotal=summary.expired_total,
        redeemedTotal=summary.redeemed_total,
    )


@router.get("/users/{user_id}/history", response_model=HistoryResponse)
async def get_history(
    user_id: UUID,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100, alias="pageSize"),
    statuses: Optional[List[str]] = Query(None, alias="status"),
    action_types: Optional[List[str]] = Query(None, alias="actionType"),
    member: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> HistoryResponse:
    """Paginated ledger history, newest first."""

    ensure_member_access(member, user_id)
    try:
        history = await PointsService(db).get_history(
            user_id,
            page=page,
            page_size=page_size,
            filters=LedgerQuery(statuses=statuses, action_types=action_types),
        )
    except PointsError as exc:
        raise points_http_error(exc) from exc
    return HistoryResponse(
        items=[_serialize_entry(entry) for entry in history.items],
        total=history.total,
        page=history.page,
        pageSize=history.page_size,
        pages=history.pages,
    )


@router.get("/users/{user_id}/redemptions", response_model=List[RedemptionRecordResponse])
async def list_redemptions(
    user_id: UUID,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    member: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> List[RedemptionRecordResponse]:
    ensure_member_access(member, user_id)
    redemptions = await PointsService(db).list_redemptions(user_id, limit=limit, offset=offset)
    return [_serialize_redemption(redemption) for redemption in redemptions]


@router.get("/users/{user_id}/expiry-forecast", response_model=List[ExpiryForecastResponse])
async def get_expiry_forecast(
    user_id: UUID,
    days: int = Query(30, ge=1, le=365),
    member: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> List[ExpiryForecastResponse]:
    ensure_member_access(member, user_id)
    items = await PointsService(db).expiry_forecast(user_id, days)
    return [
        ExpiryForecastResponse(
            ledgerId=item.ledger_id,
            points=item.points,
            expiresAt=item.expires_at,
            ruleName=item.rule_name,
        )
        for item in items
    ]


@router.post("/users/{user_id}/redemptions", response_model=RedemptionResponse, status_code=201)
async def create_redemption(
    user_id: UUID,
    request: RedemptionCreateRequest,
    member: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> RedemptionResponse:
    """Convert points into a discount at the configured rate, capped against a recorded order."""

    ensure_member_access(member, user_id)
    try:
        result = await PointsService(db, order_source=RecordedOrderSource(db)).redeem(
            user_id,
            request.points,
            order_id=request.orderId,
        )
    except PointsError as exc:
        raise points_http_error(exc) from exc

    return RedemptionResponse(
        redemptionId=result.redemption_id,
        ledgerId=result.ledger_id,
        points=result.points,
        discountValue=float(result.discount_value),
        conversionRate=float(result.conversion_rate),
        currency=result.currency,
        orderId=result.order_id,
        status=result.status.value,
        remainingBalance=result.remaining_balance,
    )


@router.post("/redemptions/{redemption_id}/cancel", response_model=RestoreResponse)
async def cancel_redemption(
    redemption_id: UUID,
    request: RedemptionCancelRequest | None = None,
    member: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> RestoreResponse:
    try:
        result = await PointsService(db).cancel_redemption(
            redemption_id,
            request.reason if request else None,
            owner_id=None if member.is_admin else member.id,
        )
    except PointsError as exc:
        raise points_http_error(exc) from exc
    return RestoreResponse(
        redemptionId=result.redemption_id,
        ledgerId=result.ledger_id,
        restoredPoints=result.restored_points,
        newBalance=result.new_balance,
    )


def _order_service(db: AsyncSession, order_id: str, order: OrderPayload) -> PointsService:
    return PointsService(
        db,
        order_source=StaticOrderSource([order.to_snapshot(order_id)]),
        product_points=order.product_source(),
    )


@router.post(
    "/orders/{order_id}/placed",
    response_model=OrderEventResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def order_placed(order_id: str, order: OrderPayload, db: AsyncSession = Depends(get_session)) -> OrderEventResponse:
    processed = await _order_service(db, order_id, order).process_order_placed(order_id)
    return OrderEventResponse(orderId=order_id, processed=processed)


@router.post(
    "/orders/{order_id}/completed",
    response_model=OrderEventResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def order_completed(order_id: str, order: OrderPayload, db: AsyncSession = Depends(get_session)) -> OrderEventResponse:
    processed = await _order_service(db, order_id, order).process_order_completed(order_id)
    return OrderEventResponse(orderId=order_id, processed=processed)


@router.post(
    "/orders/{order_id}/cancelled",
    response_model=OrderEventResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def order_cancelled(order_id: str, order: OrderPayload, db: AsyncSession = Depends(get_session)) -> OrderEventResponse:
    processed = await _order_service(db, order_id, order).process_order_cancelled(order_id)
    return OrderEventResponse(orderId=order_id, processed=processed)


@router.post(
    "/orders/{order_id}/refunds/{refund_id}",
    response_model=OrderEventResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def order_refunded(
    order_id: str,
    refund_id: str,
    request: RefundPayload,
    db: AsyncSession = Depends(get_session),
) -> OrderEventResponse:
    service = PointsService(
        db,
        order_source=StaticOrderSource(
            [request.order.to_snapshot(order_id)],
            [RefundSnapshot(refund_id=refund_id, parent_order_id=order_id, refund_total=request.refundTotal)],
        ),
    )
    processed = await service.process_refund(order_id, refund_id)
    return OrderEventResponse(orderId=order_id, processed=processed)


@router.post(
    "/refunds/{refund_id}/reverse",
    response_model=OrderEventResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def reverse_refund(
    refund_id: str,
    request: RefundReversalPayload | None = None,
    db: AsyncSession = Depends(get_session),
) -> OrderEventResponse:
    order_id = request.orderId if request else None
    processed = await PointsService(db, order_source=RecordedOrderSource(db)).reverse_refund(refund_id, order_id)
    return OrderEventResponse(orderId=order_id, processed=processed)


@router.post("/expiry/sweep", response_model=SweepResponse, dependencies=[Depends(require_admin_api_key)])
async def run_expiry_sweep(request: SweepRequest, db: AsyncSession = Depends(get_session)) -> SweepResponse:
    try:
        summary = await PointsService(db).run_expiry_sweep(request.userId)
    except PointsError as exc:
        raise points_http_error(exc) from exc
    return SweepResponse(
        users=summary["users"],
        expiredEntries=summary["expired_entries"],
        expiredPoints=summary["expired_points"],
        consumedEntries=summary["consumed_entries"],
        warnedEntries=summary["warned_entries"],
        errors=summary["errors"],
    )
