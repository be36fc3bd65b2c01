import uuid

import structlog
from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.metrics import PAYMENTS_REFUNDED
from app.models.booking import Booking
from app.models.earning import ProviderEarning
from app.models.enums import BookingStatus, EarningStatus, JobPaymentStatus, PaymentType, RefundStatus
from app.models.job_request import JobPayment
from app.models.provider_profile import ProviderProfile
from app.models.refund import Refund
from app.services.pricing import compute_split, prorate_refund, resolve_final_amount
from app.services.stripe_service import StripeServiceError, create_marketplace_refund
from app.utils.booking_state import can_transition
from app.utils.dates import utcnow

logger = structlog.get_logger()


async def refunded_so_far(db: AsyncSession, booking_id: uuid.UUID) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(Refund.amount), 0)).where(
            Refund.booking_id == booking_id,
            Refund.status != RefundStatus.FAILED,
        )
    )
    return int(result.scalar_one())


async def refundable_amount(db: AsyncSession, booking: Booking) -> int:
    return max(resolve_final_amount(booking) - await refunded_so_far(db, booking.id), 0)


async def _original_fee(db: AsyncSession, booking: Booking) -> int:
    result = await db.execute(
        select(ProviderEarning.gross_amount, ProviderEarning.platform_fee_amount).where(
            ProviderEarning.booking_id == booking.id
        )
    )
    row = result.one_or_none()
    if row is not None:
        gross, fee = row
        if gross >= resolve_final_amount(booking):
            return fee
        # Earlier partial refunds shrank the earning by their fee parts
        earlier = await db.execute(
            select(func.coalesce(func.sum(Refund.platform_fee_refunded), 0)).where(
                Refund.booking_id == booking.id,
                Refund.status != RefundStatus.FAILED,
            )
        )
        return fee + int(earlier.scalar_one())
    plan = await db.execute(select(ProviderProfile.plan).where(ProviderProfile.id == booking.provider_id))
    return compute_split(resolve_final_amount(booking), plan.scalar_one(), PaymentType.FULL).platform_fee_cents


async def issue_booking_refund(
    db: AsyncSession,
    booking: Booking,
    amount_cents: int,
    reason: str,
    idempotency_key: str,
    processed_by: uuid.UUID | None = None,
    initiated_by: str = "customer",
    description: str | None = None,
) -> Refund:
    """Refund part or all of a booking's captured payment.

    The ``processing`` row is written before calling Stripe so a crash leaves
    a trace. On Stripe failure the row is committed as ``failed`` and the
    caller gets a 502.
    """
    if not booking.payment_intent_id:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Booking has no captured payment to refund",
        )

    refund = Refund(
        booking_id=booking.id,
        amount=amount_cents,
        reason=reason,
        description=description,
        status=RefundStatus.PROCESSING,
        processed_by=processed_by,
    )
    db.add(refund)
    await db.flush()

    try:
        result = await create_marketplace_refund(
            booking.payment_intent_id,
            amount_cents,
            metadata={"booking_id": str(booking.id), "refund_id": str(refund.id)},
            idempotency_key=f"{idempotency_key}:refund",
        )
    except StripeServiceError as e:
        refund.status = RefundStatus.FAILED
        refund.processed_at = utcnow()
        # Keep the failed row even though the request errors out
        await db.commit()
        logger.error("booking_refund_failed", booking_id=str(booking.id), refund_id=str(refund.id), code=e.code)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Refund could not be processed by the payment provider",
        )

    fee_refunded = result["refunded_platform_fee"]
    provider_refunded = result["refunded_provider_amount"]
    if fee_refunded is None or provider_refunded is None:
        split = prorate_refund(amount_cents, resolve_final_amount(booking), await _original_fee(db, booking))
        fee_refunded = split.platform_fee_refunded_cents
        provider_refunded = split.provider_amount_refunded_cents

    refund.stripe_refund_id = result["id"]
    refund.status = RefundStatus.COMPLETED if result["status"] == "succeeded" else RefundStatus.PROCESSING
    refund.platform_fee_refunded = fee_refunded
    refund.provider_amount_refunded = provider_refunded
    refund.processed_at = utcnow()
    await db.flush()
    PAYMENTS_REFUNDED.labels(initiated_by=initiated_by).inc()
    logger.info(
        "booking_refund_issued",
        booking_id=str(booking.id),
        refund_id=str(refund.id),
        amount=amount_cents,
        status=refund.status,
    )
    return refund


async def mark_booking_earning_refunded(db: AsyncSession, booking_id: uuid.UUID) -> None:
    result = await db.execute(
        select(ProviderEarning).where(ProviderEarning.booking_id == booking_id).with_for_update()
    )
    earning = result.scalar_one_or_none()
    if earning is not None and earning.status != EarningStatus.REFUNDED:
        earning.status = EarningStatus.REFUNDED
        await db.flush()


async def issue_job_payment_refund(
    db: AsyncSession,
    payment: JobPayment,
    reason: str,
    idempotency_key: str,
    processed_by: uuid.UUID | None = None,
    initiated_by: str = "customer",
    amount_cents: int | None = None,
    description: str | None = None,
) -> Refund:
    """Refund one settled job payment, all of it unless ``amount_cents`` is given.

    A full refund voids the payment's earning.
    """
    amount = amount_cents or payment.amount_total
    full_refund = amount >= payment.amount_total
    refund = Refund(
        job_request_id=payment.job_request_id,
        amount=amount,
        reason=reason,
        description=description,
        status=RefundStatus.PROCESSING,
        processed_by=processed_by,
    )
    db.add(refund)
    await db.flush()

    try:
        result = await create_marketplace_refund(
            payment.stripe_payment_intent_id,
            amount,
            metadata={"job_request_id": str(payment.job_request_id), "refund_id": str(refund.id)},
            idempotency_key=f"{idempotency_key}:{payment.id}:refund",
        )
    except StripeServiceError as e:
        refund.status = RefundStatus.FAILED
        refund.processed_at = utcnow()
        await db.commit()
        logger.error("job_refund_failed", payment_id=str(payment.id), refund_id=str(refund.id), code=e.code)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Refund could not be processed by the payment provider",
        )

    fee_refunded = result["refunded_platform_fee"]
    provider_refunded = result["refunded_provider_amount"]
    if fee_refunded is None or provider_refunded is None:
        split = prorate_refund(amount, payment.amount_total, payment.platform_fee_amount)
        fee_refunded = split.platform_fee_refunded_cents
        provider_refunded = split.provider_amount_refunded_cents

    refund.stripe_refund_id = result["id"]
    refund.status = RefundStatus.COMPLETED if result["status"] == "succeeded" else RefundStatus.PROCESSING
    refund.platform_fee_refunded = fee_refunded
    refund.provider_amount_refunded = provider_refunded
    refund.processed_at = utcnow()
    payment.payment_status = JobPaymentStatus.REFUNDED if full_refund else JobPaymentStatus.PARTIALLY_REFUNDED

    if full_refund:
        earning_result = await db.execute(
            select(ProviderEarning).where(ProviderEarning.job_payment_id == payment.id).with_for_update()
        )
        earning = earning_result.scalar_one_or_none()
        if earning is not None:
            earning.status = EarningStatus.REFUNDED
    await db.flush()
    PAYMENTS_REFUNDED.labels(initiated_by=initiated_by).inc()
    logger.info("job_refund_issued", payment_id=str(payment.id), refund_id=str(refund.id), amount=amount)
    return refund


async def apply_refund_to_booking(db: AsyncSession, booking: Booking, refund: Refund) -> BookingStatus:
    """Move the booking to ``refunded`` / ``partially_refunded`` after ``refund``.

    An unsettled earning shrinks by the refunded parts; a full refund voids it.
    """
    fully_refunded = await refundable_amount(db, booking) == 0
    target = BookingStatus.REFUNDED if fully_refunded else BookingStatus.PARTIALLY_REFUNDED
    if can_transition(booking.status, target):
        booking.status = target

    if fully_refunded:
        await mark_booking_earning_refunded(db, booking.id)
    else:
        result = await db.execute(
            select(ProviderEarning).where(ProviderEarning.booking_id == booking.id).with_for_update()
        )
        earning = result.scalar_one_or_none()
        if earning is not None and not earning.payout_settled and earning.status != EarningStatus.REFUNDED:
            earning.gross_amount -= refund.amount
            earning.platform_fee_amount -= refund.platform_fee_refunded
            earning.net_amount -= refund.provider_amount_refunded
    await db.flush()
    return BookingStatus(booking.status)
