"""Settlement of successful and failed PaymentIntents.

Shared by the pay endpoints (mock mode settles immediately), the
sync-payment recovery endpoint and the Stripe webhook.
"""
import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.metrics import PAYMENTS_SUCCEEDED
from app.models.booking import Booking
from app.models.enums import (
    BookingStatus,
    JobPaymentStatus,
    JobStatus,
    NotificationType,
    PaymentType,
    QuoteStatus,
)
from app.models.job_request import JobPayment, JobQuote, JobRequest
from app.models.provider_profile import ProviderProfile
from app.models.user import User
from app.services.cache import Cache
from app.services.earnings import ensure_booking_earning, record_job_earning
from app.services.notifications import notify_once
from app.utils.booking_state import can_transition
from app.utils.dates import utcnow

logger = structlog.get_logger()


async def mark_booking_paid(db: AsyncSession, booking: Booking, cache: Cache) -> bool:
    """Move a locked booking ``accepted -> paid`` and record the held earning.

    Returns False when the booking was not in a payable state (already paid,
    cancelled in the meantime...), which callers treat as a no-op.
    """
    if not can_transition(booking.status, BookingStatus.PAID):
        logger.info("booking_paid_skipped", booking_id=str(booking.id), status=booking.status)
        return False

    booking.status = BookingStatus.PAID
    booking.paid_at = utcnow()
    await db.flush()
    await ensure_booking_earning(db, booking)
    PAYMENTS_SUCCEEDED.labels(kind="booking").inc()

    provider_user = await db.execute(
        select(User.id, User.email)
        .join(ProviderProfile, ProviderProfile.user_id == User.id)
        .where(ProviderProfile.id == booking.provider_id)
    )
    row = provider_user.one_or_none()
    if row is not None:
        provider_user_id, provider_email = row
        await notify_once(
            cache,
            db,
            event="booking_paid",
            booking_id=booking.id,
            user_id=provider_user_id,
            notification_type=NotificationType.BOOKING_PAID,
            title="Booking paid",
            body="The customer has paid for this booking.",
            data={"booking_id": str(booking.id)},
            email=provider_email,
        )
    logger.info("booking_paid", booking_id=str(booking.id))
    return True


async def settle_job_payment(db: AsyncSession, payment: JobPayment, cache: Cache) -> bool:
    """Apply a succeeded job PaymentIntent to the payment row and its job."""
    if payment.payment_status in (JobPaymentStatus.DEPOSIT_PAID, JobPaymentStatus.FULLY_PAID):
        return False

    job_result = await db.execute(
        select(JobRequest).where(JobRequest.id == payment.job_request_id).with_for_update()
    )
    job = job_result.scalar_one()

    fully_paid = payment.payment_type in (PaymentType.FULL, PaymentType.REMAINDER) or not job.remaining_amount
    payment.payment_status = JobPaymentStatus.FULLY_PAID if fully_paid else JobPaymentStatus.DEPOSIT_PAID
    payment.paid_at = utcnow()
    job.payment_status = payment.payment_status

    if job.status == JobStatus.OPEN:
        job.status = JobStatus.ASSIGNED
        job.lifecycle_updated_at = utcnow()
        # The job is taken; every other offer is closed
        await db.execute(
            update(JobQuote)
            .where(
                JobQuote.job_request_id == job.id,
                JobQuote.id != payment.quote_id,
                JobQuote.status == QuoteStatus.SUBMITTED,
            )
            .values(status=QuoteStatus.REJECTED)
        )
    if fully_paid and job.status == JobStatus.COMPLETED:
        job.status = JobStatus.CLOSED

    provider_result = await db.execute(
        select(ProviderProfile).where(ProviderProfile.id == job.assigned_provider_id)
    )
    provider = provider_result.scalar_one()
    await db.flush()
    await record_job_earning(db, payment, provider)
    PAYMENTS_SUCCEEDED.labels(kind=f"job_{PaymentType(payment.payment_type).value}").inc()

    await notify_once(
        cache,
        db,
        event=f"job_payment_{payment.id}",
        booking_id=job.id,
        user_id=provider.user_id,
        notification_type=NotificationType.JOB_UPDATED,
        title="Job payment received",
        body="The customer has paid for the job.",
        data={"job_request_id": str(job.id), "payment_type": PaymentType(payment.payment_type).value},
    )
    logger.info(
        "job_payment_settled",
        job_request_id=str(job.id),
        payment_id=str(payment.id),
        payment_status=payment.payment_status,
    )
    return True


async def handle_failed_intent(db: AsyncSession, intent_id: str, cache: Cache, reason: str) -> None:
    """Detach a failed/cancelled PaymentIntent so the customer can pay again."""
    booking_result = await db.execute(
        select(Booking).where(Booking.payment_intent_id == intent_id).with_for_update()
    )
    booking = booking_result.scalar_one_or_none()
    if booking is not None and booking.status == BookingStatus.ACCEPTED:
        booking.payment_intent_id = None
        await db.flush()
        await notify_once(
            cache,
            db,
            event=f"payment_failed_{intent_id}",
            booking_id=booking.id,
            user_id=booking.customer_id,
            notification_type=NotificationType.PAYMENT_FAILED,
            title="Payment failed",
            body="Your payment did not go through. Please try again.",
            data={"booking_id": str(booking.id), "reason": reason},
        )
        logger.warning("booking_payment_failed", booking_id=str(booking.id), reason=reason)

    payment_result = await db.execute(
        select(JobPayment).where(JobPayment.stripe_payment_intent_id == intent_id).with_for_update()
    )
    payment = payment_result.scalar_one_or_none()
    if payment is not None and payment.payment_status == JobPaymentStatus.PENDING:
        payment.payment_status = JobPaymentStatus.FAILED
        await db.flush()
        job_result = await db.execute(select(JobRequest).where(JobRequest.id == payment.job_request_id))
        job = job_result.scalar_one()
        await notify_once(
            cache,
            db,
            event=f"payment_failed_{intent_id}",
            booking_id=job.id,
            user_id=job.customer_id,
            notification_type=NotificationType.PAYMENT_FAILED,
            title="Payment failed",
            body="Your job payment did not go through. Please try again.",
            data={"job_request_id": str(job.id), "reason": reason},
        )
        logger.warning("job_payment_failed", payment_id=str(payment.id), reason=reason)
