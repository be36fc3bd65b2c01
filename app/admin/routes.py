import uuid

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import Actor, require_admin
from app.models.audit_log import AuditLog
from app.models.booking import Booking
from app.models.earning import ProviderEarning
from app.models.enums import BookingStatus, EarningStatus, JobPaymentStatus, JobStatus, NotificationType
from app.models.job_request import JobPayment, JobRequest
from app.models.provider_profile import ProviderProfile
from app.schemas.admin import (
    AdminRefundRequest,
    AuditLogResponse,
    PayoutExceptionResponse,
    ProviderSuspendRequest,
    ProviderSuspensionResponse,
)
from app.services.cache import Cache, get_cache
from app.services.earnings import release_booking_payout
from app.services.notifications import notify_once
from app.services.refunds import (
    apply_refund_to_booking,
    issue_booking_refund,
    issue_job_payment_refund,
    refundable_amount,
    refunded_so_far,
)
from app.utils.booking_state import can_transition
from app.utils.dates import utcnow
from app.utils.job_state import can_transition_job
from app.utils.rate_limit import limiter

logger = structlog.get_logger()
router = APIRouter(prefix="/admin", tags=["admin"])


# --- Refunds ---


@router.post("/bookings/{booking_id}/refunds", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def refund_booking(
    request: Request,
    booking_id: uuid.UUID,
    body: AdminRefundRequest,
    admin: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    """Refund part or all of a booking's payment."""
    result = await db.execute(select(Booking).where(Booking.id == booking_id).with_for_update())
    booking = result.scalar_one_or_none()
    if not booking:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    if not (
        can_transition(booking.status, BookingStatus.REFUNDED)
        or can_transition(booking.status, BookingStatus.PARTIALLY_REFUNDED)
    ):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Cannot refund booking in status: {booking.status}",
        )

    remaining = await refundable_amount(db, booking)
    if remaining <= 0:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Booking is already fully refunded")
    amount = body.amount_cents or remaining
    if amount > remaining:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Refund amount exceeds refundable remainder of {remaining}",
        )

    already = await refunded_so_far(db, booking.id)
    refund = await issue_booking_refund(
        db,
        booking,
        amount,
        reason=body.reason,
        idempotency_key=f"admin_refund_{booking.id}_{already}_{amount}",
        processed_by=admin.user_id,
        initiated_by="admin",
        description=body.description,
    )
    new_status = await apply_refund_to_booking(db, booking, refund)

    db.add(AuditLog(
        action="refund_booking",
        admin_user_id=admin.user_id,
        target_type="booking",
        target_id=str(booking.id),
        detail=body.description,
        metadata_json={"refund_id": str(refund.id), "amount": amount, "reason": body.reason},
    ))
    await db.flush()

    await notify_once(
        cache, db, event=f"booking_refund_{refund.id}", booking_id=booking.id, user_id=booking.customer_id,
        notification_type=NotificationType.BOOKING_REFUNDED, title="Refund issued",
        body="A refund was issued for your booking.",
        data={"booking_id": str(booking.id), "amount": amount},
    )
    logger.info("admin_refund_issued", booking_id=str(booking.id), refund_id=str(refund.id), amount=amount)
    return {
        "refund_id": str(refund.id),
        "booking_id": str(booking.id),
        "amount": amount,
        "refund_status": refund.status,
        "platform_fee_refunded": refund.platform_fee_refunded,
        "provider_amount_refunded": refund.provider_amount_refunded,
        "booking_status": new_status.value,
        "refundable_remaining": remaining - amount,
    }


_JOB_PAID_STATUSES = (JobPaymentStatus.DEPOSIT_PAID, JobPaymentStatus.FULLY_PAID)


@router.post("/job-requests/{job_id}/refunds", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def refund_job_request(
    request: Request,
    job_id: uuid.UUID,
    body: AdminRefundRequest,
    admin: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    """Refund the latest settled payment of a job request, in part or in full."""
    result = await db.execute(select(JobRequest).where(JobRequest.id == job_id).with_for_update())
    job = result.scalar_one_or_none()
    if not job:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job request not found")

    payment_result = await db.execute(
        select(JobPayment)
        .where(JobPayment.job_request_id == job.id, JobPayment.payment_status.in_(_JOB_PAID_STATUSES))
        .order_by(JobPayment.created_at.desc())
        .limit(1)
        .with_for_update()
    )
    payment = payment_result.scalar_one_or_none()
    if payment is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="No refundable payment found")

    amount = body.amount_cents or payment.amount_total
    if amount > payment.amount_total:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Refund amount exceeds payment amount of {payment.amount_total}",
        )

    refund = await issue_job_payment_refund(
        db,
        payment,
        reason=body.reason,
        idempotency_key=f"admin_job_refund_{job.id}_{amount}",
        processed_by=admin.user_id,
        initiated_by="admin",
        amount_cents=amount,
        description=body.description,
    )

    remaining_result = await db.execute(
        select(func.count(JobPayment.id)).where(
            JobPayment.job_request_id == job.id,
            JobPayment.payment_status.in_(_JOB_PAID_STATUSES),
        )
    )
    if payment.payment_status == JobPaymentStatus.REFUNDED and not remaining_result.scalar():
        job.payment_status = JobPaymentStatus.REFUNDED
        if can_transition_job(job.status, JobStatus.CANCELLED):
            job.status = JobStatus.CANCELLED
    else:
        job.payment_status = JobPaymentStatus.PARTIALLY_REFUNDED
    job.lifecycle_updated_at = utcnow()

    db.add(AuditLog(
        action="refund_job_request",
        admin_user_id=admin.user_id,
        target_type="job_request",
        target_id=str(job.id),
        detail=body.description,
        metadata_json={
            "refund_id": str(refund.id),
            "job_payment_id": str(payment.id),
            "amount": amount,
            "reason": body.reason,
        },
    ))
    await db.flush()

    await notify_once(
        cache, db, event=f"job_refund_{refund.id}", booking_id=job.id, user_id=job.customer_id,
        notification_type=NotificationType.JOB_UPDATED, title="Refund issued",
        body=f"A refund was issued for {job.title}.",
        data={"job_request_id": str(job.id), "amount": amount},
    )
    logger.info("admin_job_refund_issued", job_request_id=str(job.id), refund_id=str(refund.id), amount=amount)
    return {
        "refund_id": str(refund.id),
        "job_request_id": str(job.id),
        "job_payment_id": str(payment.id),
        "amount": amount,
        "refund_status": refund.status,
        "platform_fee_refunded": refund.platform_fee_refunded,
        "provider_amount_refunded": refund.provider_amount_refunded,
        "payment_status": payment.payment_status,
        "job_status": job.status,
        "job_payment_status": job.payment_status,
    }


# --- Providers ---


async def _get_provider_for_update(db: AsyncSession, provider_id: uuid.UUID) -> ProviderProfile:
    result = await db.execute(
        select(ProviderProfile).where(ProviderProfile.id == provider_id).with_for_update()
    )
    provider = result.scalar_one_or_none()
    if not provider:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Provider not found")
    return provider


@router.post("/providers/{provider_id}/suspend", response_model=ProviderSuspensionResponse)
@limiter.limit("30/minute")
async def suspend_provider(
    request: Request,
    provider_id: uuid.UUID,
    body: ProviderSuspendRequest,
    admin: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Block a provider from transacting until unsuspended."""
    provider = await _get_provider_for_update(db, provider_id)
    if provider.is_suspended:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Provider is already suspended")

    provider.is_suspended = True
    provider.suspension_reason = body.reason
    provider.suspended_at = utcnow()
    db.add(AuditLog(
        action="suspend_provider",
        admin_user_id=admin.user_id,
        target_type="provider",
        target_id=str(provider.id),
        detail=body.reason,
    ))
    await db.flush()
    logger.info("provider_suspended", provider_id=str(provider.id))
    return provider


@router.post("/providers/{provider_id}/unsuspend", response_model=ProviderSuspensionResponse)
@limiter.limit("30/minute")
async def unsuspend_provider(
    request: Request,
    provider_id: uuid.UUID,
    admin: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    provider = await _get_provider_for_update(db, provider_id)
    if not provider.is_suspended:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Provider is not suspended")

    previous_reason = provider.suspension_reason
    provider.is_suspended = False
    provider.suspension_reason = None
    provider.suspended_at = None
    db.add(AuditLog(
        action="unsuspend_provider",
        admin_user_id=admin.user_id,
        target_type="provider",
        target_id=str(provider.id),
        metadata_json={"previous_reason": previous_reason},
    ))
    await db.flush()
    logger.info("provider_unsuspended", provider_id=str(provider.id))
    return provider


# --- Payouts ---


@router.get("/payout-exceptions")
@limiter.limit("30/minute")
async def list_payout_exceptions(
    request: Request,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0, le=10000),
    admin: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Earnings stuck in awaiting_payout, oldest first."""
    condition = ProviderEarning.status == EarningStatus.AWAITING_PAYOUT
    total_result = await db.execute(select(func.count(ProviderEarning.id)).where(condition))
    result = await db.execute(
        select(ProviderEarning)
        .where(condition)
        .order_by(ProviderEarning.updated_at.asc())
        .offset(offset)
        .limit(limit)
    )
    return {
        "total": total_result.scalar() or 0,
        "earnings": [
            PayoutExceptionResponse.model_validate(e).model_dump(mode="json")
            for e in result.scalars().all()
        ],
    }


@router.post("/earnings/{earning_id}/retry-payout")
@limiter.limit("10/minute")
async def retry_payout(
    request: Request,
    earning_id: uuid.UUID,
    admin: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(ProviderEarning).where(ProviderEarning.id == earning_id).with_for_update()
    )
    earning = result.scalar_one_or_none()
    if not earning:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Earning not found")
    if earning.status != EarningStatus.AWAITING_PAYOUT or earning.booking_id is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Earning is not awaiting payout (status: {earning.status})",
        )

    provider_result = await db.execute(select(ProviderProfile).where(ProviderProfile.id == earning.provider_id))
    provider = provider_result.scalar_one()
    outcome = await release_booking_payout(db, earning, provider, earning.booking_id)

    db.add(AuditLog(
        action="retry_payout",
        admin_user_id=admin.user_id,
        target_type="earning",
        target_id=str(earning.id),
        metadata_json={k: v for k, v in outcome.items() if v is not None},
    ))
    await db.flush()
    logger.info("admin_payout_retried", earning_id=str(earning.id), payout=outcome.get("payout"))
    return outcome


# --- Audit trail ---


@router.get("/audit-logs")
@limiter.limit("30/minute")
async def list_audit_logs(
    request: Request,
    action: str | None = Query(None, max_length=50),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0, le=10000),
    admin: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(AuditLog)
    count_stmt = select(func.count(AuditLog.id))
    if action:
        stmt = stmt.where(AuditLog.action == action)
        count_stmt = count_stmt.where(AuditLog.action == action)

    total_result = await db.execute(count_stmt)
    result = await db.execute(stmt.order_by(AuditLog.created_at.desc()).offset(offset).limit(limit))
    return {
        "total": total_result.scalar() or 0,
        "logs": [AuditLogResponse.model_validate(a).model_dump(mode="json") for a in result.scalars().all()],
    }
