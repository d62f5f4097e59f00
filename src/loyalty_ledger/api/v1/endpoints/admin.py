"""Administrative endpoints for manual point adjustments and expiry rules."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_ledger.api.dependencies.security import require_admin_api_key
from loyalty_ledger.core.errors import PointsError
from loyalty_ledger.db.session import get_session
from loyalty_ledger.models.points import AdminActionType, ExpiryRule, PointsAuditLog
from loyalty_ledger.services.points import AdjustmentResult, AuditLogFilters, BulkAssignRow, PointsService

from .points import points_http_error


router = APIRouter(
    prefix="/points/admin",
    tags=["points-admin"],
    dependencies=[Depends(require_admin_api_key)],
)


class AdjustmentRequest(BaseModel):
    userId: UUID
    adminId: UUID
    points: int
    reason: str = Field(..., min_length=1)


class ResetRequest(BaseModel):
    userId: UUID
    adminId: UUID
    reason: str = Field(..., min_length=1)


class BulkAssignRowPayload(BaseModel):
    email: str
    points: int
    reason: str


class BulkAssignRequest(BaseModel):
    adminId: UUID
    rows: List[BulkAssignRowPayload]


class AdjustmentResponse(BaseModel):
    auditId: UUID
    userId: UUID
    action: str
    points: int
    ledgerId: Optional[int]
    newBalance: int


class BulkAssignResponse(BaseModel):
    processed: int
    succeeded: int
    results: List[dict]
    errors: List[dict]


class AuditLogResponse(BaseModel):
    id: UUID
    adminId: UUID
    userId: UUID
    action: str
    pointsInvolved: int
    ledgerId: Optional[int]
    notes: Optional[str]
    ipAddress: str
    createdAt: datetime


class ManualExpiryRequest(BaseModel):
    ledgerId: int
    adminId: UUID
    userId: Optional[UUID] = None
    reason: Optional[str] = None


class ManualExpiryResponse(BaseModel):
    ledgerId: int
    userId: UUID
    expiredPoints: int
    consumedPoints: int
    newBalance: int


class ExpiredSummaryResponse(BaseModel):
    userId: UUID
    totalExpirations: int
    totalExpiredPoints: int
    totalConsumedPoints: int
    firstExpiryAt: Optional[datetime]
    lastExpiryAt: Optional[datetime]


class OrderPointsSummaryResponse(BaseModel):
    orderId: str
    pointsAwarded: int
    pointsStatus: str
    refundedPoints: int
    createdAt: Optional[datetime]
    completedAt: Optional[datetime]
    cancelledAt: Optional[datetime]


class ExpiryRuleRequest(BaseModel):
    name: str
    expiryDays: int
    graceDays: int = 0
    actionTypes: List[str] = Field(default_factory=list)
    priority: int = 0
    status: str = "active"
    description: Optional[str] = None


class ExpiryRuleResponse(BaseModel):
    id: UUID
    name: str
    expiryDays: int
    graceDays: int
    actionTypes: List[str]
    priority: int
    status: str
    description: Optional[str]


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def _serialize_adjustment(result: AdjustmentResult) -> AdjustmentResponse:
    return AdjustmentResponse(
        auditId=result.audit_id,
        userId=result.user_id,
        action=result.action.value,
        points=result.points,
        ledgerId=result.ledger_id,
        newBalance=result.new_balance,
    )


def _serialize_audit(record: PointsAuditLog) -> AuditLogResponse:
    return AuditLogResponse(
        id=record.id,
        adminId=record.admin_id,
        userId=record.user_id,
        action=record.action_type.value,
        pointsInvolved=record.points_involved,
        ledgerId=record.ledger_id,
        notes=record.notes,
        ipAddress=record.ip_address,
        createdAt=record.created_at,
    )


def _serialize_rule(rule: ExpiryRule) -> ExpiryRuleResponse:
    return ExpiryRuleResponse(
        id=rule.id,
        name=rule.name,
        expiryDays=rule.expiry_days,
        graceDays=rule.grace_days,
        actionTypes=list(rule.action_types or []),
        priority=rule.priority,
        status=rule.status.value,
        description=rule.description,
    )


@router.post("/assign", response_model=AdjustmentResponse)
async def assign_points(
    payload: AdjustmentRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
) -> AdjustmentResponse:
    try:
        result = await PointsService(db).admin_assign(
            payload.userId, payload.points, payload.reason, payload.adminId, _client_ip(request)
        )
    except PointsError as exc:
        raise points_http_error(exc) from exc
    return _serialize_adjustment(result)


@router.post("/deduct", response_model=AdjustmentResponse)
async def deduct_points(
    payload: AdjustmentRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
) -> AdjustmentResponse:
    try:
        result = await PointsService(db).admin_deduct(
            payload.userId, payload.points, payload.reason, payload.adminId, _client_ip(request)
        )
    except PointsError as exc:
        raise points_http_error(exc) from exc
    return _serialize_adjustment(result)


@router.post("/reset", response_model=AdjustmentResponse)
async def reset_points(
    payload: ResetRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
) -> AdjustmentResponse:
    try:
        result = await PointsService(db).admin_reset(payload.userId, payload.reason, payload.adminId, _client_ip(request))
    except PointsError as exc:
        raise points_http_error(exc) from exc
    return _serialize_adjustment(result)


@router.post("/bulk-assign", response_model=BulkAssignResponse)
async def bulk_assign_points(
    payload: BulkAssignRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
) -> BulkAssignResponse:
    rows = [BulkAssignRow(email=row.email, points=row.points, reason=row.reason) for row in payload.rows]
    try:
        outcome = await PointsService(db).admin_bulk_assign(rows, payload.adminId, _client_ip(request))
    except PointsError as exc:
        raise points_http_error(exc) from exc
    return BulkAssignResponse(
        processed=outcome.processed,
        succeeded=outcome.succeeded,
        results=outcome.results,
        errors=outcome.errors,
    )


@router.get("/audit-log", response_model=List[AuditLogResponse])
async def get_audit_log(
    admin_id: Optional[UUID] = Query(None, alias="adminId"),
    user_id: Optional[UUID] = Query(None, alias="userId"),
    action: Optional[AdminActionType] = Query(None),
    created_from: Optional[datetime] = Query(None, alias="from"),
    created_to: Optional[datetime] = Query(None, alias="to"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_session),
) -> List[AuditLogResponse]:
    records = await PointsService(db).get_audit_log(
        AuditLogFilters(
            admin_id=admin_id,
            user_id=user_id,
            action_type=action,
            created_from=created_from,
            created_to=created_to,
            limit=limit,
            offset=offset,
        )
    )
    return [_serialize_audit(record) for record in records]


@router.get("/summary")
async def get_action_summary(
    days: int = Query(30, ge=1, le=365),
    db: AsyncSession = Depends(get_session),
) -> dict[str, dict[str, int]]:
    return await PointsService(db).admin_action_summary(days)


@router.get("/expiry-rules", response_model=List[ExpiryRuleResponse])
async def list_expiry_rules(db: AsyncSession = Depends(get_session)) -> List[ExpiryRuleResponse]:
    return [_serialize_rule(rule) for rule in await PointsService(db).list_expiry_rules()]


@router.put("/expiry-rules", response_model=ExpiryRuleResponse)
async def save_expiry_rule(payload: ExpiryRuleRequest, db: AsyncSession = Depends(get_session)) -> ExpiryRuleResponse:
    """Create or update an expiry rule by name."""

    try:
        rule = await PointsService(db).save_expiry_rule(
            name=payload.name,
            expiry_days=payload.expiryDays,
            grace_days=payload.graceDays,
            action_types=payload.actionTypes,
            priority=payload.priority,
            status=payload.status,
            description=payload.description,
        )
    except PointsError as exc:
        raise points_http_error(exc) from exc
    return _serialize_rule(rule)


@router.post("/expiry-rules/{rule_id}/deactivate", response_model=ExpiryRuleResponse)
async def deactivate_expiry_rule(rule_id: UUID, db: AsyncSession = Depends(get_session)) -> ExpiryRuleResponse:
    try:
        rule = await PointsService(db).deactivate_expiry_rule(rule_id)
    except PointsError as exc:
        raise points_http_error(exc) from exc
    return _serialize_rule(rule)


@router.post("/expire", response_model=ManualExpiryResponse)
async def expire_points(payload: ManualExpiryRequest, db: AsyncSession = Depends(get_session)) -> ManualExpiryResponse:
    """Expire one earned credit ahead of its rule; only the unspent part leaves the balance."""

    try:
        result = await PointsService(db).manually_expire_points(
            payload.ledgerId,
            payload.adminId,
            user_id=payload.userId,
            reason=payload.reason,
        )
    except PointsError as exc:
        raise points_http_error(exc) from exc
    return ManualExpiryResponse(
        ledgerId=result.ledger_id,
        userId=result.user_id,
        expiredPoints=result.expired_points,
        consumedPoints=result.consumed_points,
        newBalance=result.new_balance,
    )


@router.get("/users/{user_id}/expired-summary", response_model=ExpiredSummaryResponse)
async def get_expired_summary(user_id: UUID, db: AsyncSession = Depends(get_session)) -> ExpiredSummaryResponse:
    summary = await PointsService(db).get_expired_summary(user_id)
    return ExpiredSummaryResponse(
        userId=summary.user_id,
        totalExpirations=summary.total_expirations,
        totalExpiredPoints=summary.total_expired_points,
        totalConsumedPoints=summary.total_consumed_points,
        firstExpiryAt=summary.first_expiry_at,
        lastExpiryAt=summary.last_expiry_at,
    )


@router.get("/orders/{order_id}/summary", response_model=OrderPointsSummaryResponse)
async def get_order_points_summary(order_id: str, db: AsyncSession = Depends(get_session)) -> OrderPointsSummaryResponse:
    summary = await PointsService(db).get_order_points_summary(order_id)
    return OrderPointsSummaryResponse(
        orderId=summary.order_id,
        pointsAwarded=summary.points_awarded,
        pointsStatus=summary.points_status,
        refundedPoints=summary.refunded_points,
        createdAt=summary.created_at,
        completedAt=summary.completed_at,
        cancelledAt=summary.cancelled_at,
    )
