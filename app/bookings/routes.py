import uuid

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.dependencies import Actor, get_actor, require_customer, require_provider
from app.metrics import BOOKINGS_CANCELLED, BOOKINGS_CREATED
from app.models.booking import Booking, BookingCancellation
from app.models.dispute import DisputeCase
from app.models.enums import (
    BookingStatus,
    CancellationActor,
    NotificationType,
    PaymentType,
    PricingType,
    ProviderBookingAction,
    RescheduleStatus,
    UserRole,
)
from app.models.provider_profile import ProviderProfile
from app.models.reschedule import BookingReschedule
from app.models.review import Review
from app.models.service import Service
from app.schemas.booking import (
    BookingCancelRequest,
    BookingCreateRequest,
    BookingResponse,
    BookingStatusUpdateRequest,
    DisputeOpenRequest,
    PayBookingResponse,
    RescheduleRequest,
    RescheduleRespondRequest,
    RescheduleResponse,
    ReviewCreateRequest,
)
from app.services.availability import check_booking_conflict, check_time_off, validate_availability
from app.services.cache import Cache, get_cache
from app.services.earnings import confirm_booking_completion, ensure_booking_earning
from app.services.idempotency import booking_idempotency_key, with_idempotency
from app.services.notifications import create_notification, notify_once
from app.services.payments import mark_booking_paid
from app.services.pricing import compute_split, resolve_final_amount
from app.services.refunds import issue_booking_refund, mark_booking_earning_refunded, refundable_amount
from app.services.stripe_service import (
    StripeServiceError,
    cancel_payment_intent,
    create_payment_intent,
    retrieve_payment_intent,
)
from app.utils.booking_state import ACTIVE_STATUSES, validate_transition
from app.utils.dates import ensure_aware, utcnow
from app.utils.rate_limit import LIST_RATE_LIMIT, MUTATION_RATE_LIMIT, PAYMENT_RATE_LIMIT, limiter

logger = structlog.get_logger()
router = APIRouter()


def _serialize_booking(booking: Booking) -> dict:
    return BookingResponse.model_validate(booking).model_dump(mode="json")


async def _get_booking(db: AsyncSession, booking_id: uuid.UUID, lock: bool = True) -> Booking:
    query = select(Booking).where(Booking.id == booking_id)
    if lock:
        query = query.with_for_update()
    result = await db.execute(query)
    booking = result.scalar_one_or_none()
    if not booking:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    return booking


async def _get_provider(db: AsyncSession, provider_id: uuid.UUID) -> ProviderProfile:
    result = await db.execute(select(ProviderProfile).where(ProviderProfile.id == provider_id))
    return result.scalar_one()


def _require_customer_of(actor: Actor, booking: Booking) -> None:
    if not actor.is_customer_of(booking):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your booking")


def _require_provider_of(actor: Actor, booking: Booking) -> None:
    if not actor.is_provider_of(booking):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your booking")


async def _notify_customer(
    cache: Cache, db: AsyncSession, booking: Booking, event: str,
    notification_type: NotificationType, title: str, body: str, **extra,
) -> None:
    await notify_once(
        cache, db, event=event, booking_id=booking.id, user_id=booking.customer_id,
        notification_type=notification_type, title=title, body=body,
        data={"booking_id": str(booking.id), **extra},
    )


async def _notify_provider(
    cache: Cache, db: AsyncSession, booking: Booking, event: str,
    notification_type: NotificationType, title: str, body: str, **extra,
) -> None:
    provider = await _get_provider(db, booking.provider_id)
    await notify_once(
        cache, db, event=event, booking_id=booking.id, user_id=provider.user_id,
        notification_type=notification_type, title=title, body=body,
        data={"booking_id": str(booking.id), **extra},
    )


@router.post("", status_code=status.HTTP_201_CREATED)
@limiter.limit(MUTATION_RATE_LIMIT)
async def create_booking(
    request: Request,
    body: BookingCreateRequest,
    actor: Actor = Depends(require_customer),
    db: AsyncSession = Depends(get_db),
):
    """Request a booking for a provider's service (customer only)."""
    result = await db.execute(select(Service).where(Service.id == body.service_id))
    service = result.scalar_one_or_none()
    if not service or not service.is_active:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Service not found")

    provider = await _get_provider(db, service.provider_id)
    if provider.is_suspended:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Provider is not accepting bookings")
    if provider.user_id == actor.user_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot book your own service")

    if body.scheduled_date <= utcnow():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="scheduled_date must be in the future")

    booking = Booking(
        customer_id=actor.user_id,
        provider_id=provider.id,
        service_id=service.id,
        status=BookingStatus.REQUESTED,
        scheduled_date=body.scheduled_date,
        price_at_booking=service.price_in_cents,
        customer_note=body.customer_note,
    )
    db.add(booking)
    await db.flush()
    await db.refresh(booking)
    BOOKINGS_CREATED.labels(pricing_type=service.pricing_type).inc()

    try:
        await create_notification(
            db=db,
            user_id=provider.user_id,
            notification_type=NotificationType.BOOKING_REQUESTED,
            title="New booking request",
            body=f"A customer requested {service.title}.",
            data={"booking_id": str(booking.id)},
        )
    except Exception:
        logger.exception("booking_request_notification_failed", booking_id=str(booking.id))

    logger.info("booking_created", booking_id=str(booking.id), service_id=str(service.id))
    return _serialize_booking(booking)


@router.get("/me")
@limiter.limit(LIST_RATE_LIMIT)
async def list_my_bookings(
    request: Request,
    status_filter: BookingStatus | None = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    query = select(Booking)
    if actor.role == UserRole.CUSTOMER:
        query = query.where(Booking.customer_id == actor.user_id)
    elif actor.provider is not None:
        query = query.where(Booking.provider_id == actor.provider.id)
    elif not actor.is_admin:
        return []
    if status_filter is not None:
        query = query.where(Booking.status == status_filter.value)
    result = await db.execute(
        query.order_by(Booking.scheduled_date.desc()).limit(limit).offset(offset)
    )
    return [_serialize_booking(b) for b in result.scalars().all()]


@router.get("/{booking_id}")
async def get_booking(
    booking_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    booking = await _get_booking(db, booking_id, lock=False)
    if not (actor.is_admin or actor.is_customer_of(booking) or actor.is_provider_of(booking)):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your booking")
    return _serialize_booking(booking)


@router.patch("/{booking_id}/status")
@limiter.limit(MUTATION_RATE_LIMIT)
async def update_booking_status(
    request: Request,
    booking_id: uuid.UUID,
    body: BookingStatusUpdateRequest,
    actor: Actor = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    """Provider actions on a booking: accept, decline, cancel, mark-completed."""
    booking = await _get_booking(db, booking_id)
    _require_provider_of(actor, booking)
    provider = actor.provider

    if body.action == ProviderBookingAction.CANCEL:
        key = booking_idempotency_key("cancel", actor.user_id, booking.id)
        return await with_idempotency(
            cache,
            key,
            settings.IDEMPOTENCY_TTL_SECONDS,
            lambda: _cancel_booking(db, cache, booking, actor, body.reason, key),
            db=db,
        )

    if body.action == ProviderBookingAction.ACCEPT:
        validate_transition(booking.status, BookingStatus.ACCEPTED, action="accept")
        if not provider.has_connect_account:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Connect your payout account before accepting bookings",
            )
        service_result = await db.execute(select(Service).where(Service.id == booking.service_id))
        service = service_result.scalar_one()
        if service.needs_quote:
            if body.final_price_in_cents is None:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="final_price_in_cents is required for quoted services",
                )
            if body.final_price_in_cents < settings.MIN_CHARGE_CENTS:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="amount_below_minimum")
            booking.provider_quoted_price = body.final_price_in_cents
        await check_time_off(db, provider.id, ensure_aware(booking.scheduled_date))
        await check_booking_conflict(db, provider.id, ensure_aware(booking.scheduled_date), booking.id)
        booking.status = BookingStatus.ACCEPTED
        booking.accepted_at = utcnow()
        notification = (NotificationType.BOOKING_ACCEPTED, "Booking accepted", "Your booking was accepted. You can now pay.")

    elif body.action == ProviderBookingAction.DECLINE:
        validate_transition(booking.status, BookingStatus.DECLINED, action="decline")
        booking.status = BookingStatus.DECLINED
        booking.decline_reason = body.reason.strip()
        notification = (NotificationType.BOOKING_DECLINED, "Booking declined", "The provider declined your booking.")

    else:
        validate_transition(booking.status, BookingStatus.COMPLETED_BY_PROVIDER, action="mark completed")
        booking.status = BookingStatus.COMPLETED_BY_PROVIDER
        booking.completed_by_provider_at = utcnow()
        await ensure_booking_earning(db, booking, provider)
        notification = (
            NotificationType.BOOKING_COMPLETED,
            "Job marked as done",
            "The provider marked the job as done. Please confirm completion.",
        )

    await db.flush()
    await _notify_customer(cache, db, booking, f"booking_{body.action.value}", *notification)
    logger.info("booking_status_updated", booking_id=str(booking.id), action=body.action.value, status=booking.status)
    return _serialize_booking(booking)


@router.post("/{booking_id}/pay", response_model=PayBookingResponse)
@limiter.limit(PAYMENT_RATE_LIMIT)
async def pay_booking(
    request: Request,
    booking_id: uuid.UUID,
    actor: Actor = Depends(require_customer),
    db: AsyncSession = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    """Start the destination charge for an accepted booking."""
    booking = await _get_booking(db, booking_id)
    _require_customer_of(actor, booking)
    validate_transition(booking.status, BookingStatus.PAID, action="pay for")

    service_result = await db.execute(select(Service).where(Service.id == booking.service_id))
    service = service_result.scalar_one()
    if service.pricing_type == PricingType.QUOTE and not booking.provider_quoted_price:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="The provider has not quoted a final price yet",
        )

    amount = resolve_final_amount(booking)
    if amount < settings.MIN_CHARGE_CENTS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="amount_below_minimum")

    provider = await _get_provider(db, booking.provider_id)
    if not provider.has_connect_account:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Provider cannot receive payments yet",
        )

    split = compute_split(amount, provider.plan, PaymentType.FULL)
    try:
        intent = await create_payment_intent(
            amount_cents=split.total_charge_cents,
            destination_account_id=provider.stripe_connect_id,
            application_fee_cents=split.platform_fee_cents,
            metadata={"booking_id": str(booking.id), "provider_id": str(provider.id)},
            idempotency_key=f"booking_pay_{booking.id}_{amount}",
        )
    except StripeServiceError:
        logger.exception("booking_payment_intent_failed", booking_id=str(booking.id))
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment provider unavailable, please retry",
        )

    booking.payment_intent_id = intent["id"]
    await db.flush()
    if intent["status"] == "succeeded":
        await mark_booking_paid(db, booking, cache)

    logger.info("booking_payment_started", booking_id=str(booking.id), amount=amount, fee=split.platform_fee_cents)
    return PayBookingResponse(
        booking_id=booking.id,
        payment_intent_id=intent["id"],
        client_secret=intent["client_secret"],
        status=booking.status,
        **split.as_dict(),
    )


@router.post("/{booking_id}/sync-payment")
@limiter.limit(PAYMENT_RATE_LIMIT)
async def sync_booking_payment(
    request: Request,
    booking_id: uuid.UUID,
    actor: Actor = Depends(require_customer),
    db: AsyncSession = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    """Re-read the PaymentIntent and settle the booking if the webhook was missed."""
    booking = await _get_booking(db, booking_id)
    _require_customer_of(actor, booking)
    if not booking.payment_intent_id:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="No payment started for this booking")
    if booking.status != BookingStatus.ACCEPTED:
        return {"booking_id": str(booking.id), "status": booking.status, "synced": False}

    try:
        intent = await retrieve_payment_intent(booking.payment_intent_id)
    except StripeServiceError:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Payment provider unavailable")

    metadata_booking = intent["metadata"].get("booking_id")
    if metadata_booking and metadata_booking != str(booking.id):
        logger.warning("sync_payment_metadata_mismatch", booking_id=str(booking.id))
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Payment does not belong to this booking")

    synced = False
    if intent["status"] == "succeeded":
        synced = await mark_booking_paid(db, booking, cache)
    return {
        "booking_id": str(booking.id),
        "status": booking.status,
        "payment_status": intent["status"],
        "synced": synced,
    }


async def _cancel_booking(
    db: AsyncSession,
    cache: Cache,
    booking: Booking,
    actor: Actor,
    reason: str | None,
    idempotency_key: str,
) -> dict:
    by_provider = actor.role == UserRole.PROVIDER
    target = BookingStatus.CANCELED_PROVIDER if by_provider else BookingStatus.CANCELED_CUSTOMER
    validate_transition(booking.status, target, action="cancel")

    was_paid = booking.status == BookingStatus.PAID
    if was_paid and by_provider and ensure_aware(booking.scheduled_date) <= utcnow():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Cannot cancel a paid booking after its scheduled start",
        )

    refund = None
    if was_paid:
        amount = await refundable_amount(db, booking)
        if amount > 0:
            refund = await issue_booking_refund(
                db,
                booking,
                amount,
                reason=f"canceled_by_{'provider' if by_provider else 'customer'}",
                idempotency_key=idempotency_key,
                processed_by=actor.user_id,
                initiated_by="provider" if by_provider else "customer",
            )
        await mark_booking_earning_refunded(db, booking.id)
    elif booking.payment_intent_id:
        # Unpaid intent: make sure it can no longer be confirmed
        try:
            await cancel_payment_intent(booking.payment_intent_id, idempotency_key=f"{idempotency_key}:cancel")
        except StripeServiceError:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail="Payment is still being processed, please retry",
            )

    booking.status = target
    db.add(BookingCancellation(
        booking_id=booking.id,
        actor=CancellationActor.PROVIDER if by_provider else CancellationActor.CUSTOMER,
        actor_user_id=actor.user_id,
        reason=reason,
    ))
    await db.flush()
    BOOKINGS_CANCELLED.labels(cancelled_by="provider" if by_provider else "customer", refunded=str(refund is not None)).inc()

    notify = _notify_customer if by_provider else _notify_provider
    await notify(
        cache, db, booking, "booking_cancelled", NotificationType.BOOKING_CANCELLED,
        "Booking cancelled", "The booking was cancelled by the other party.",
    )
    logger.info(
        "booking_cancelled",
        booking_id=str(booking.id),
        cancelled_by=target.value,
        refund_id=str(refund.id) if refund else None,
    )
    return {
        "booking_id": str(booking.id),
        "status": target.value,
        "refund": {
            "id": str(refund.id),
            "amount": refund.amount,
            "status": refund.status,
            "platform_fee_refunded": refund.platform_fee_refunded,
            "provider_amount_refunded": refund.provider_amount_refunded,
        } if refund else None,
    }


@router.post("/{booking_id}/cancel")
@limiter.limit(MUTATION_RATE_LIMIT)
async def cancel_booking(
    request: Request,
    booking_id: uuid.UUID,
    body: BookingCancelRequest | None = None,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    """Cancel a booking (customer or provider). Paid bookings are refunded."""
    booking = await _get_booking(db, booking_id)
    if actor.role == UserRole.CUSTOMER:
        _require_customer_of(actor, booking)
    elif actor.role == UserRole.PROVIDER:
        _require_provider_of(actor, booking)
    else:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admins refund bookings through the admin endpoints",
        )

    key = booking_idempotency_key("cancel", actor.user_id, booking.id)
    return await with_idempotency(
        cache,
        key,
        settings.IDEMPOTENCY_TTL_SECONDS,
        lambda: _cancel_booking(db, cache, booking, actor, body.reason if body else None, key),
        db=db,
    )


@router.post("/{booking_id}/confirm-completion")
@limiter.limit(PAYMENT_RATE_LIMIT)
async def confirm_completion(
    request: Request,
    booking_id: uuid.UUID,
    actor: Actor = Depends(require_customer),
    db: AsyncSession = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    """Customer confirms the job is done; releases the provider payout."""
    booking = await _get_booking(db, booking_id)
    _require_customer_of(actor, booking)
    if booking.status not in (
        BookingStatus.COMPLETED_BY_PROVIDER,
        BookingStatus.COMPLETED,
        BookingStatus.REVIEWED,
    ):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Cannot confirm completion for status: {booking.status}",
        )

    result = await confirm_booking_completion(db, booking, source="customer")
    if not result["already_completed"]:
        await _notify_provider(
            cache, db, booking, "booking_completed", NotificationType.BOOKING_COMPLETED,
            "Booking completed", "The customer confirmed the job is complete.",
        )
    return result


@router.post("/{booking_id}/reschedule", status_code=status.HTTP_201_CREATED, response_model=RescheduleResponse)
@limiter.limit(MUTATION_RATE_LIMIT)
async def request_reschedule(
    request: Request,
    booking_id: uuid.UUID,
    body: RescheduleRequest,
    actor: Actor = Depends(require_customer),
    db: AsyncSession = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    """Customer proposes a new date; the booking status is unchanged."""
    booking = await _get_booking(db, booking_id)
    _require_customer_of(actor, booking)
    if booking.status not in ACTIVE_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Booking cannot be rescheduled in its current state",
        )
    if body.proposed_date <= utcnow():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Proposed date must be in the future")

    pending = await db.execute(
        select(BookingReschedule.id).where(
            BookingReschedule.booking_id == booking.id,
            BookingReschedule.status == RescheduleStatus.PENDING,
        )
    )
    if pending.first() is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A reschedule request is already pending")

    await validate_availability(db, booking.provider_id, body.proposed_date, exclude_booking_id=booking.id)

    reschedule = BookingReschedule(
        booking_id=booking.id,
        requester_id=actor.user_id,
        proposed_date=body.proposed_date,
        status=RescheduleStatus.PENDING,
        customer_note=body.note,
    )
    db.add(reschedule)
    await db.flush()

    await _notify_provider(
        cache, db, booking, f"reschedule_requested_{reschedule.id}", NotificationType.RESCHEDULE_REQUESTED,
        "New reschedule request", "A customer requested to move this booking.",
        reschedule_id=str(reschedule.id),
    )
    logger.info("reschedule_requested", booking_id=str(booking.id), reschedule_id=str(reschedule.id))
    return reschedule


@router.post("/{booking_id}/reschedule/respond", response_model=RescheduleResponse)
@limiter.limit(MUTATION_RATE_LIMIT)
async def respond_reschedule(
    request: Request,
    booking_id: uuid.UUID,
    body: RescheduleRespondRequest,
    actor: Actor = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    """Provider approves (moves the booking) or declines a pending reschedule."""
    booking = await _get_booking(db, booking_id)
    _require_provider_of(actor, booking)

    query = select(BookingReschedule).where(
        BookingReschedule.booking_id == booking.id,
        BookingReschedule.status == RescheduleStatus.PENDING,
    )
    if body.reschedule_id is not None:
        query = query.where(BookingReschedule.id == body.reschedule_id)
    result = await db.execute(
        query.order_by(BookingReschedule.created_at.desc()).limit(1).with_for_update()
    )
    reschedule = result.scalar_one_or_none()
    if reschedule is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No pending reschedule request")

    if body.decision == "approve":
        if booking.status not in ACTIVE_STATUSES:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Booking cannot be rescheduled in its current state",
            )
        proposed = ensure_aware(reschedule.proposed_date)
        if proposed <= utcnow():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Proposed date is in the past")
        await validate_availability(db, booking.provider_id, proposed, exclude_booking_id=booking.id)
        reschedule.status = RescheduleStatus.APPROVED
        booking.scheduled_date = proposed
    else:
        reschedule.status = RescheduleStatus.DECLINED

    reschedule.responder_id = actor.user_id
    reschedule.provider_note = body.note
    reschedule.responded_at = utcnow()
    await db.flush()

    await _notify_customer(
        cache, db, booking, f"reschedule_responded_{reschedule.id}", NotificationType.RESCHEDULE_RESPONDED,
        "Reschedule update", f"Your reschedule request was {reschedule.status}.",
        reschedule_id=str(reschedule.id),
    )
    logger.info(
        "reschedule_responded",
        booking_id=str(booking.id),
        reschedule_id=str(reschedule.id),
        decision=body.decision,
    )
    return reschedule


@router.post("/{booking_id}/review", status_code=status.HTTP_201_CREATED)
@limiter.limit(MUTATION_RATE_LIMIT)
async def review_booking(
    request: Request,
    booking_id: uuid.UUID,
    body: ReviewCreateRequest,
    actor: Actor = Depends(require_customer),
    db: AsyncSession = Depends(get_db),
):
    booking = await _get_booking(db, booking_id)
    _require_customer_of(actor, booking)
    validate_transition(booking.status, BookingStatus.REVIEWED, action="review")

    existing = await db.execute(select(Review.id).where(Review.booking_id == booking.id))
    if existing.first() is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Booking already reviewed")

    review = Review(
        booking_id=booking.id,
        customer_id=actor.user_id,
        provider_id=booking.provider_id,
        rating=body.rating,
        comment=body.comment,
    )
    db.add(review)
    booking.status = BookingStatus.REVIEWED
    await db.flush()
    logger.info("booking_reviewed", booking_id=str(booking.id), rating=body.rating)
    return {"id": str(review.id), "booking_id": str(booking.id), "rating": review.rating, "status": booking.status}


@router.post("/{booking_id}/dispute", status_code=status.HTTP_201_CREATED)
@limiter.limit(MUTATION_RATE_LIMIT)
async def open_dispute(
    request: Request,
    booking_id: uuid.UUID,
    body: DisputeOpenRequest,
    actor: Actor = Depends(require_customer),
    db: AsyncSession = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    booking = await _get_booking(db, booking_id)
    _require_customer_of(actor, booking)
    validate_transition(booking.status, BookingStatus.DISPUTED, action="dispute")

    existing = await db.execute(select(DisputeCase.id).where(DisputeCase.booking_id == booking.id))
    if existing.first() is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A dispute already exists for this booking")

    dispute = DisputeCase(
        booking_id=booking.id,
        opened_by=actor.user_id,
        reason=body.reason,
        description=body.description,
    )
    db.add(dispute)
    booking.status = BookingStatus.DISPUTED
    await db.flush()

    await _notify_provider(
        cache, db, booking, "booking_disputed", NotificationType.BOOKING_DISPUTED,
        "Booking disputed", "The customer opened a dispute on this booking.",
        dispute_id=str(dispute.id),
    )
    logger.info("dispute_opened", booking_id=str(booking.id), dispute_id=str(dispute.id))
    return {"dispute_id": str(dispute.id), "booking_id": str(booking.id), "status": booking.status}
