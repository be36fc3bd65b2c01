import uuid

import stripe
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import Actor, require_admin
from app.metrics import WEBHOOK_EVENTS
from app.models.audit_log import AuditLog
from app.models.booking import Booking
from app.models.dispute import DisputeCase
from app.models.enums import (
    BookingStatus,
    DisputeResolution,
    DisputeStatus,
    NotificationType,
    RefundStatus,
)
from app.models.job_request import JobPayment
from app.models.provider_profile import ProviderProfile
from app.models.refund import Refund
from app.models.webhook_event import ProcessedWebhookEvent
from app.schemas.payment import DisputeResolveRequest
from app.services.cache import Cache, get_cache
from app.services.earnings import confirm_booking_completion
from app.services.notifications import notify_once
from app.services.payments import handle_failed_intent, mark_booking_paid, settle_job_payment
from app.services.refunds import (
    apply_refund_to_booking,
    issue_booking_refund,
    mark_booking_earning_refunded,
    refundable_amount,
)
from app.services.stripe_service import verify_webhook_signature
from app.utils.booking_state import can_transition
from app.utils.dates import utcnow
from app.utils.rate_limit import limiter

logger = structlog.get_logger()
router = APIRouter()

MAX_WEBHOOK_PAYLOAD_BYTES = 65_536

_REFUND_STATUS_MAP = {
    "succeeded": RefundStatus.COMPLETED,
    "pending": RefundStatus.PROCESSING,
    "requires_action": RefundStatus.PROCESSING,
    "failed": RefundStatus.FAILED,
    "canceled": RefundStatus.FAILED,
}


def _field(obj, key: str, default=None):
    # Works for both StripeObject and plain dict payloads
    try:
        value = obj[key]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


async def _booking_for_intent(db: AsyncSession, intent_id: str | None, booking_id: str | None = None) -> Booking | None:
    if booking_id:
        try:
            parsed = uuid.UUID(booking_id)
        except ValueError:
            parsed = None
        if parsed is not None:
            result = await db.execute(select(Booking).where(Booking.id == parsed).with_for_update())
            booking = result.scalar_one_or_none()
            if booking is not None:
                return booking
    if not intent_id:
        return None
    result = await db.execute(
        select(Booking).where(Booking.payment_intent_id == intent_id).with_for_update()
    )
    return result.scalar_one_or_none()


async def _sync_refund_row(db: AsyncSession, stripe_refund) -> Refund | None:
    refund_id = _field(stripe_refund, "id")
    new_status = _REFUND_STATUS_MAP.get(_field(stripe_refund, "status", ""))
    if not refund_id or new_status is None:
        return None
    result = await db.execute(select(Refund).where(Refund.stripe_refund_id == refund_id).with_for_update())
    row = result.scalar_one_or_none()
    if row is not None and row.status != new_status:
        row.status = new_status
        row.processed_at = utcnow()
        await db.flush()
        logger.info("refund_status_synced", refund_id=str(row.id), status=new_status.value)
    return row


async def _dispatch_event(db: AsyncSession, cache: Cache, event_type: str, obj) -> bool:
    """Apply one Stripe event. Returns False for event types we ignore."""
    if event_type == "payment_intent.succeeded":
        intent_id = _field(obj, "id")
        metadata = _field(obj, "metadata", {})
        booking = await _booking_for_intent(db, intent_id, _field(metadata, "booking_id"))
        if booking is not None:
            if booking.payment_intent_id and booking.payment_intent_id != intent_id:
                logger.warning("payment_intent_mismatch", booking_id=str(booking.id))
                return True
            booking.payment_intent_id = intent_id
            if not await mark_booking_paid(db, booking, cache):
                logger.warning(
                    "payment_succeeded_for_unpayable_booking",
                    booking_id=str(booking.id),
                    status=booking.status,
                )
            return True

        result = await db.execute(
            select(JobPayment).where(JobPayment.stripe_payment_intent_id == intent_id).with_for_update()
        )
        payment = result.scalar_one_or_none()
        if payment is not None:
            await settle_job_payment(db, payment, cache)
        else:
            logger.warning("payment_intent_unmatched", intent_id=intent_id)

    elif event_type in ("payment_intent.payment_failed", "payment_intent.canceled"):
        error = _field(obj, "last_payment_error", {})
        reason = _field(error, "code") or _field(obj, "cancellation_reason") or event_type
        await handle_failed_intent(db, _field(obj, "id"), cache, reason)

    elif event_type == "charge.refunded":
        matched = False
        for stripe_refund in _field(_field(obj, "refunds", {}), "data", []):
            if await _sync_refund_row(db, stripe_refund) is not None:
                matched = True

        booking = await _booking_for_intent(db, _field(obj, "payment_intent"))
        if booking is not None and not matched:
            # Refund issued from the Stripe dashboard, not through the platform
            amount, refunded = _field(obj, "amount", 0), _field(obj, "amount_refunded", 0)
            if refunded and refunded >= amount:
                if can_transition(booking.status, BookingStatus.REFUNDED):
                    booking.status = BookingStatus.REFUNDED
                await mark_booking_earning_refunded(db, booking.id)
            elif refunded and can_transition(booking.status, BookingStatus.PARTIALLY_REFUNDED):
                booking.status = BookingStatus.PARTIALLY_REFUNDED
            await db.flush()
            logger.warning("booking_refunded_outside_platform", booking_id=str(booking.id), status=booking.status)

    elif event_type == "refund.updated":
        row = await _sync_refund_row(db, obj)
        if row is not None and row.status == RefundStatus.FAILED:
            logger.error("refund_failed", refund_id=str(row.id), failure_reason=_field(obj, "failure_reason"))

    elif event_type == "charge.dispute.created":
        stripe_dispute_id = _field(obj, "id")
        logger.warning(
            "stripe_dispute_created",
            dispute_id=str(stripe_dispute_id),
            dispute_reason=_field(obj, "reason"),
            dispute_amount=_field(obj, "amount"),
        )
        booking = await _booking_for_intent(db, _field(obj, "payment_intent"))
        if booking is None:
            return True
        existing = await db.execute(select(DisputeCase).where(DisputeCase.booking_id == booking.id))
        dispute = existing.scalar_one_or_none()
        if dispute is None:
            db.add(DisputeCase(
                booking_id=booking.id,
                opened_by=booking.customer_id,
                stripe_dispute_id=stripe_dispute_id,
                reason=_field(obj, "reason", "chargeback"),
                description=f"Opened from Stripe dispute {stripe_dispute_id}",
            ))
        elif dispute.stripe_dispute_id is None:
            dispute.stripe_dispute_id = stripe_dispute_id
        if can_transition(booking.status, BookingStatus.DISPUTED):
            booking.status = BookingStatus.DISPUTED
        await db.flush()

    elif event_type == "account.updated":
        account_id = _field(obj, "id")
        result = await db.execute(
            select(ProviderProfile).where(ProviderProfile.stripe_connect_id == account_id)
        )
        provider = result.scalar_one_or_none()
        if provider is None:
            logger.warning("stripe_account_updated_no_profile", account_id=account_id)
            return True
        provider.payouts_enabled = bool(_field(obj, "payouts_enabled", False))
        await db.flush()
        logger.info(
            "stripe_account_updated",
            provider_id=str(provider.id),
            payouts_enabled=provider.payouts_enabled,
        )

    else:
        return False
    return True


@router.post("/webhooks/stripe")
@limiter.limit("100/minute")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    """Handle Stripe webhook events."""
    content_length = request.headers.get("content-length")
    try:
        if content_length and int(content_length) > MAX_WEBHOOK_PAYLOAD_BYTES:
            raise HTTPException(status_code=413, detail="Payload too large")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid Content-Length header")

    payload = await request.body()
    if len(payload) > MAX_WEBHOOK_PAYLOAD_BYTES:
        raise HTTPException(status_code=413, detail="Payload too large")

    sig_header = request.headers.get("stripe-signature", "")
    try:
        event = verify_webhook_signature(payload, sig_header)
    except stripe.SignatureVerificationError as e:
        logger.error("stripe_webhook_signature_failed", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")

    event_id = _field(event, "id")
    event_type = _field(event, "type", "")
    if not event_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")

    # Never log the raw payload, only ids and types
    existing = await db.execute(
        select(ProcessedWebhookEvent).where(ProcessedWebhookEvent.event_id == event_id)
    )
    if existing.scalar_one_or_none():
        logger.info("stripe_webhook_duplicate_skipped", event_id=event_id)
        WEBHOOK_EVENTS.labels(event_type=event_type, outcome="duplicate").inc()
        return {"status": "already_processed"}

    # Inserted first so a concurrent delivery loses on the primary key
    try:
        db.add(ProcessedWebhookEvent(event_id=event_id, event_type=event_type))
        await db.flush()
    except IntegrityError:
        await db.rollback()
        logger.info("stripe_webhook_duplicate_race", event_id=event_id)
        WEBHOOK_EVENTS.labels(event_type=event_type, outcome="duplicate").inc()
        return {"status": "already_processed"}

    logger.info("stripe_webhook_received", event_type=event_type, event_id=event_id)
    obj = _field(_field(event, "data", {}), "object", {})
    try:
        handled = await _dispatch_event(db, cache, event_type, obj)
    except (SQLAlchemyError, HTTPException):
        # Rolled back with the dedup row, Stripe will retry
        WEBHOOK_EVENTS.labels(event_type=event_type, outcome="error").inc()
        raise
    except Exception:
        logger.exception("stripe_webhook_handler_failed", event_type=event_type, event_id=event_id)
        WEBHOOK_EVENTS.labels(event_type=event_type, outcome="handler_failed").inc()
        return {"status": "ok"}

    WEBHOOK_EVENTS.labels(event_type=event_type, outcome="handled" if handled else "ignored").inc()
    return {"status": "ok"}


@router.patch("/disputes/resolve", response_model=dict)
@limiter.limit("30/minute")
async def resolve_dispute(
    request: Request,
    body: DisputeResolveRequest,
    admin: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    """Admin resolves a dispute: 'customer' (refund) or 'provider' (complete and pay out)."""
    result = await db.execute(
        select(DisputeCase).where(DisputeCase.id == body.dispute_id).with_for_update()
    )
    dispute = result.scalar_one_or_none()
    if not dispute:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Dispute not found")
    if dispute.status != DisputeStatus.OPEN:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Dispute is already resolved")

    booking_result = await db.execute(
        select(Booking).where(Booking.id == dispute.booking_id).with_for_update()
    )
    booking = booking_result.scalar_one()
    outcome: dict = {}

    if body.resolution == DisputeResolution.CUSTOMER.value:
        if not can_transition(booking.status, BookingStatus.REFUNDED):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Cannot refund booking in status: {booking.status}",
            )
        remaining = await refundable_amount(db, booking)
        amount = body.refund_amount_cents or remaining
        if amount <= 0 or amount > remaining:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Refund amount must be between 1 and {remaining}",
            )
        refund = await issue_booking_refund(
            db,
            booking,
            amount,
            reason="dispute_resolved",
            idempotency_key=f"dispute_resolve_{dispute.id}",
            processed_by=admin.user_id,
            initiated_by="admin",
            description=body.resolution_notes or None,
        )
        await apply_refund_to_booking(db, booking, refund)
        dispute.refund_amount = amount
        outcome = {"refund_id": str(refund.id), "refund_amount": amount, "booking_status": booking.status}
        await notify_once(
            cache, db, event=f"dispute_refund_{dispute.id}", booking_id=booking.id, user_id=booking.customer_id,
            notification_type=NotificationType.BOOKING_REFUNDED, title="Refund issued",
            body="Your dispute was resolved and a refund was issued.",
            data={"booking_id": str(booking.id), "amount": amount},
        )
    else:
        completion = await confirm_booking_completion(db, booking, source="dispute")
        outcome = {
            "booking_status": booking.status,
            "payout": completion.get("payout"),
            "payout_reason": completion.get("reason"),
        }

    dispute.status = DisputeStatus.RESOLVED
    dispute.resolution = body.resolution
    dispute.resolved_at = utcnow()
    dispute.resolved_by_admin = admin.user_id
    dispute.resolution_notes = body.resolution_notes

    db.add(AuditLog(
        action=f"resolve_dispute_{body.resolution}",
        admin_user_id=admin.user_id,
        target_type="dispute",
        target_id=str(dispute.id),
        detail=body.resolution_notes,
        metadata_json={"booking_id": str(booking.id), "resolution": body.resolution, **{
            k: v for k, v in outcome.items() if isinstance(v, (str, int)) or v is None
        }},
    ))
    await db.flush()
    logger.info("dispute_resolved", dispute_id=str(dispute.id), resolution=body.resolution)
    return {"status": "resolved", "resolution": body.resolution, **outcome}
