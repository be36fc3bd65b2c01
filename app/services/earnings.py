"""Provider earnings ledger and booking payouts.

A booking earning is created ``held`` when the charge settles and released
when the customer (or the auto-confirm job, or a dispute resolved for the
provider) confirms completion. Destination charges already route the funds
to the provider; a manual transfer is only created when the charge carries
none.
"""
import uuid

import structlog
from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.metrics import BOOKINGS_COMPLETED, PAYOUTS
from app.models.booking import Booking
from app.models.earning import ProviderEarning
from app.models.enums import BookingStatus, EarningStatus, PaymentType
from app.models.job_request import JobPayment
from app.models.provider_profile import ProviderProfile
from app.models.service import Service
from app.services.pricing import calculate_gst, compute_split, resolve_final_amount
from app.services.stripe_service import (
    StripeServiceError,
    create_transfer,
    get_charge_info,
    is_balance_insufficient,
)
from app.utils.booking_state import validate_transition
from app.utils.dates import utcnow

logger = structlog.get_logger()


async def _load_provider(db: AsyncSession, provider_id: uuid.UUID) -> ProviderProfile:
    result = await db.execute(select(ProviderProfile).where(ProviderProfile.id == provider_id))
    provider = result.scalar_one_or_none()
    if provider is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Provider not found")
    return provider


async def ensure_booking_earning(
    db: AsyncSession,
    booking: Booking,
    provider: ProviderProfile | None = None,
) -> ProviderEarning:
    """Return the booking's earning row, creating it ``held`` when missing."""
    result = await db.execute(
        select(ProviderEarning).where(ProviderEarning.booking_id == booking.id).with_for_update()
    )
    earning = result.scalar_one_or_none()
    if earning is not None:
        return earning

    if provider is None:
        provider = await _load_provider(db, booking.provider_id)
    service_result = await db.execute(select(Service.charges_gst).where(Service.id == booking.service_id))
    service_gst = service_result.scalar_one_or_none()
    charges_gst = service_gst if service_gst is not None else provider.charges_gst

    gross = resolve_final_amount(booking)
    split = compute_split(gross, provider.plan, PaymentType.FULL)
    earning = ProviderEarning(
        booking_id=booking.id,
        provider_id=provider.id,
        gross_amount=gross,
        platform_fee_amount=split.platform_fee_cents,
        gst_amount=calculate_gst(gross, charges_gst),
        net_amount=split.provider_amount_cents,
        currency=split.currency,
        status=EarningStatus.HELD,
        stripe_payment_intent_id=booking.payment_intent_id,
        paid_at=booking.paid_at or utcnow(),
    )
    db.add(earning)
    await db.flush()
    logger.info("earning_recorded", booking_id=str(booking.id), earning_id=str(earning.id), net=earning.net_amount)
    return earning


async def record_job_earning(
    db: AsyncSession,
    job_payment: JobPayment,
    provider: ProviderProfile,
) -> ProviderEarning:
    """Record a settled job payment. The destination charge already paid the provider."""
    result = await db.execute(
        select(ProviderEarning).where(ProviderEarning.job_payment_id == job_payment.id)
    )
    earning = result.scalar_one_or_none()
    if earning is not None:
        return earning

    now = utcnow()
    earning = ProviderEarning(
        job_payment_id=job_payment.id,
        provider_id=provider.id,
        gross_amount=job_payment.amount_total,
        platform_fee_amount=job_payment.platform_fee_amount,
        gst_amount=calculate_gst(job_payment.amount_total, provider.charges_gst),
        net_amount=job_payment.provider_amount,
        currency=settings.CURRENCY,
        status=EarningStatus.TRANSFERRED,
        stripe_payment_intent_id=job_payment.stripe_payment_intent_id,
        paid_at=now,
        transferred_at=now,
    )
    db.add(earning)
    await db.flush()
    return earning


def _payout_result(outcome: str, earning: ProviderEarning, reason: str | None = None) -> dict:
    PAYOUTS.labels(outcome=outcome).inc()
    result = {"payout": outcome, "earning_id": str(earning.id), "transfer_id": earning.stripe_transfer_id}
    if reason:
        result["reason"] = reason
    return result


async def release_booking_payout(
    db: AsyncSession,
    earning: ProviderEarning,
    provider: ProviderProfile,
    booking_id: uuid.UUID,
) -> dict:
    """Pay the provider for a completed booking, at most once.

    Never raises for Stripe failures: the earning stays ``awaiting_payout``
    and the result reports ``payout: "queued"`` with a reason.
    """
    if earning.payout_settled:
        return {"payout": earning.status, "earning_id": str(earning.id), "transfer_id": earning.stripe_transfer_id}
    if earning.status == EarningStatus.REFUNDED:
        return {"payout": "none", "earning_id": str(earning.id), "reason": "refunded"}

    earning.last_payout_attempt_at = utcnow()
    earning.status = EarningStatus.AWAITING_PAYOUT
    if settings.DISABLE_PAYOUTS:
        await db.flush()
        return _payout_result("queued", earning, "payouts_disabled")
    if not provider.has_connect_account:
        earning.payout_failure_reason = "missing_stripe_connect_id"
        await db.flush()
        return _payout_result("queued", earning, "missing_stripe_connect_id")

    # A destination charge carries its own transfer; never add a second one
    if earning.stripe_payment_intent_id:
        try:
            charge = await get_charge_info(earning.stripe_payment_intent_id)
        except StripeServiceError:
            logger.warning("payout_charge_lookup_failed", earning_id=str(earning.id))
        else:
            if charge.transfer_id:
                earning.status = EarningStatus.TRANSFERRED
                earning.stripe_transfer_id = charge.transfer_id
                earning.transferred_at = utcnow()
                earning.payout_failure_reason = None
                await db.flush()
                logger.info("payout_via_destination_charge", earning_id=str(earning.id))
                return _payout_result("transferred", earning)

    try:
        transfer = await create_transfer(
            amount_cents=earning.net_amount,
            destination_account_id=provider.stripe_connect_id,
            transfer_group=str(booking_id),
            idempotency_key=f"payout_{earning.id}",
            metadata={
                "booking_id": str(booking_id),
                "provider_id": str(provider.id),
                "earning_id": str(earning.id),
            },
        )
    except StripeServiceError as e:
        reason = "balance_insufficient" if is_balance_insufficient(e) else (e.code or "transfer_failed")
        earning.payout_failure_reason = reason
        await db.flush()
        logger.warning("payout_transfer_failed", earning_id=str(earning.id), reason=reason)
        return _payout_result("queued", earning, reason)

    earning.status = EarningStatus.PAID_OUT
    earning.stripe_transfer_id = transfer["id"]
    earning.transferred_at = utcnow()
    earning.payout_failure_reason = None
    await db.flush()
    logger.info("payout_transfer_created", earning_id=str(earning.id), transfer_id=transfer["id"])
    return _payout_result("paid_out", earning)


async def confirm_booking_completion(db: AsyncSession, booking: Booking, source: str) -> dict:
    """Complete a booking and release the provider payout.

    ``booking`` must be locked by the caller. Safe to call repeatedly: a
    booking that is already completed returns without side effects.
    """
    if booking.status in (BookingStatus.COMPLETED, BookingStatus.REVIEWED):
        return {
            "ok": True,
            "already_completed": True,
            "booking": {"id": str(booking.id), "status": booking.status},
        }

    validate_transition(booking.status, BookingStatus.COMPLETED, action="confirm completion of")

    provider = await _load_provider(db, booking.provider_id)
    earning = await ensure_booking_earning(db, booking, provider)
    if earning.status == EarningStatus.REFUNDED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Cannot confirm completion for a refunded booking",
        )

    booking.status = BookingStatus.COMPLETED
    booking.completed_at = utcnow()
    await db.flush()
    BOOKINGS_COMPLETED.labels(source=source).inc()

    payout = await release_booking_payout(db, earning, provider, booking.id)
    logger.info(
        "booking_completed",
        booking_id=str(booking.id),
        source=source,
        payout=payout["payout"],
    )
    return {
        "ok": True,
        "already_completed": False,
        "booking": {"id": str(booking.id), "status": BookingStatus.COMPLETED.value},
        **payout,
    }
