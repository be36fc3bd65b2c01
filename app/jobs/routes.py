import uuid

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.dependencies import Actor, get_actor, require_customer, require_provider
from app.models.enums import (
    JobPaymentStatus,
    JobStatus,
    NotificationType,
    PaymentType,
    QuoteStatus,
    UserRole,
)
from app.models.job_request import JobPayment, JobQuote, JobRequest
from app.models.provider_profile import ProviderProfile
from app.models.review import Review
from app.schemas.job import (
    AcceptQuoteRequest,
    JobCreateRequest,
    JobLifecycleRequest,
    JobPaymentResponse,
    JobResponse,
    QuoteResponse,
    QuoteSubmitRequest,
)
from app.services.cache import Cache, get_cache
from app.services.notifications import create_notification, notify_once
from app.services.payments import settle_job_payment
from app.services.pricing import compute_split, job_payment_plan, score_quote
from app.services.refunds import issue_job_payment_refund
from app.services.stripe_service import StripeServiceError, cancel_payment_intent, create_payment_intent
from app.utils.dates import ensure_aware, utcnow
from app.utils.job_state import FINALIZED_JOB_STATUSES, validate_job_transition
from app.utils.rate_limit import LIST_RATE_LIMIT, MUTATION_RATE_LIMIT, PAYMENT_RATE_LIMIT, limiter

logger = structlog.get_logger()
router = APIRouter()

_PAID_STATUSES = (JobPaymentStatus.DEPOSIT_PAID, JobPaymentStatus.FULLY_PAID)


def _serialize_job(job: JobRequest) -> dict:
    return JobResponse.model_validate(job).model_dump(mode="json")


async def _get_job(db: AsyncSession, job_id: uuid.UUID, lock: bool = True) -> JobRequest:
    query = select(JobRequest).where(JobRequest.id == job_id)
    if lock:
        query = query.with_for_update()
    result = await db.execute(query)
    job = result.scalar_one_or_none()
    if not job:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job request not found")
    return job


async def _job_payments(db: AsyncSession, job_id: uuid.UUID) -> list[JobPayment]:
    result = await db.execute(
        select(JobPayment)
        .where(JobPayment.job_request_id == job_id)
        .order_by(JobPayment.created_at)
        .with_for_update()
    )
    return list(result.scalars().all())


async def _job_intent(
    job: JobRequest,
    quote: JobQuote,
    provider: ProviderProfile,
    payment_type: PaymentType,
    amount_cents: int,
    fee_cents: int,
    attempt: int,
) -> dict:
    # Parameters must be identical for a given key, a pending intent is fetched back this way
    try:
        return await create_payment_intent(
            amount_cents=amount_cents,
            destination_account_id=provider.stripe_connect_id,
            application_fee_cents=fee_cents,
            metadata={
                "job_request_id": str(job.id),
                "quote_id": str(quote.id),
                "payment_type": PaymentType(payment_type).value,
            },
            idempotency_key=f"job_{job.id}_{PaymentType(payment_type).value}_{attempt}",
        )
    except StripeServiceError:
        logger.exception("job_payment_intent_failed", job_request_id=str(job.id))
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment provider unavailable, please retry",
        )


async def _start_job_payment(
    db: AsyncSession,
    cache: Cache,
    job: JobRequest,
    quote: JobQuote,
    provider: ProviderProfile,
    payment_type: PaymentType,
    amount_cents: int,
    prior_fee_cents: int,
    attempt: int,
) -> tuple[JobPayment, dict]:
    split = compute_split(
        amount_cents,
        provider.plan,
        payment_type,
        prior_platform_fee_collected_cents=prior_fee_cents,
        job_total_cents=job.total_price if payment_type == PaymentType.REMAINDER else None,
    )
    intent = await _job_intent(
        job, quote, provider, payment_type, split.total_charge_cents, split.platform_fee_cents, attempt
    )

    payment = JobPayment(
        job_request_id=job.id,
        quote_id=quote.id,
        stripe_payment_intent_id=intent["id"],
        payment_type=payment_type,
        amount_total=split.total_charge_cents,
        platform_fee_amount=split.platform_fee_cents,
        provider_amount=split.provider_amount_cents,
        payment_status=JobPaymentStatus.PENDING,
    )
    db.add(payment)
    await db.flush()
    if intent["status"] == "succeeded":
        await settle_job_payment(db, payment, cache)
    return payment, intent


def _payment_response(job: JobRequest, payment: JobPayment, intent: dict) -> JobPaymentResponse:
    return JobPaymentResponse(
        job_request_id=job.id,
        payment_id=payment.id,
        payment_intent_id=payment.stripe_payment_intent_id,
        client_secret=intent.get("client_secret"),
        payment_type=payment.payment_type,
        payment_status=payment.payment_status,
        amount_total=payment.amount_total,
        platform_fee_amount=payment.platform_fee_amount,
        provider_amount=payment.provider_amount,
        remaining_amount=job.remaining_amount or 0,
    )


@router.post("", status_code=status.HTTP_201_CREATED)
@limiter.limit(MUTATION_RATE_LIMIT)
async def create_job(
    request: Request,
    body: JobCreateRequest,
    actor: Actor = Depends(require_customer),
    db: AsyncSession = Depends(get_db),
):
    job = JobRequest(
        customer_id=actor.user_id,
        title=body.title.strip(),
        description=body.description,
        budget_cents=body.budget_cents,
        status=JobStatus.OPEN,
    )
    db.add(job)
    await db.flush()
    await db.refresh(job)
    logger.info("job_request_created", job_request_id=str(job.id))
    return _serialize_job(job)


@router.get("")
@limiter.limit(LIST_RATE_LIMIT)
async def list_jobs(
    request: Request,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Customers see their own jobs, providers see the open marketplace."""
    query = select(JobRequest)
    if actor.role == UserRole.CUSTOMER:
        query = query.where(JobRequest.customer_id == actor.user_id)
    else:
        query = query.where(JobRequest.status == JobStatus.OPEN)
    result = await db.execute(query.order_by(JobRequest.created_at.desc()).limit(limit).offset(offset))
    return [_serialize_job(j) for j in result.scalars().all()]


@router.get("/{job_id}")
async def get_job(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    job = await _get_job(db, job_id, lock=False)
    if job.status != JobStatus.OPEN and not (
        actor.is_admin or actor.is_customer_of(job) or actor.is_provider_of(job)
    ):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your job request")
    return _serialize_job(job)


@router.post("/{job_id}/quotes", status_code=status.HTTP_201_CREATED, response_model=QuoteResponse)
@limiter.limit(MUTATION_RATE_LIMIT)
async def submit_quote(
    request: Request,
    job_id: uuid.UUID,
    body: QuoteSubmitRequest,
    actor: Actor = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
):
    """Submit or update this provider's single quote on an open job."""
    job = await _get_job(db, job_id)
    if job.status != JobStatus.OPEN:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Job is not open for quotes")

    result = await db.execute(
        select(JobQuote)
        .where(JobQuote.job_request_id == job.id, JobQuote.provider_id == actor.provider.id)
        .with_for_update()
    )
    quote = result.scalar_one_or_none()
    created = quote is None
    if quote is None:
        quote = JobQuote(job_request_id=job.id, provider_id=actor.provider.id)
        db.add(quote)
    elif quote.status != QuoteStatus.SUBMITTED:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Quote is already {quote.status}")

    quote.amount_total = body.amount_total
    quote.availability = body.availability
    quote.available_from = body.available_from
    quote.included = body.included
    quote.excluded = body.excluded
    quote.response_speed_hours = body.response_speed_hours
    quote.status = QuoteStatus.SUBMITTED
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Quote already submitted")

    if created:
        await create_notification(
            db=db,
            user_id=job.customer_id,
            notification_type=NotificationType.QUOTE_RECEIVED,
            title="New quote",
            body=f"You received a quote for {job.title}.",
            data={"job_request_id": str(job.id), "quote_id": str(quote.id)},
        )
    logger.info("quote_submitted", job_request_id=str(job.id), quote_id=str(quote.id), created=created)
    return quote


@router.get("/{job_id}/quotes")
@limiter.limit(LIST_RATE_LIMIT)
async def list_quotes(
    request: Request,
    job_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Quotes for a job, best first."""
    job = await _get_job(db, job_id, lock=False)
    if not (actor.is_admin or actor.is_customer_of(job)):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your job request")

    result = await db.execute(
        select(JobQuote).where(
            JobQuote.job_request_id == job.id,
            JobQuote.status != QuoteStatus.WITHDRAWN,
        )
    )
    quotes = list(result.scalars().all())
    if not quotes:
        return []

    ratings_result = await db.execute(
        select(Review.provider_id, func.avg(Review.rating))
        .where(Review.provider_id.in_([q.provider_id for q in quotes]))
        .group_by(Review.provider_id)
    )
    ratings = {provider_id: float(avg) for provider_id, avg in ratings_result.all()}
    lowest = min(q.amount_total for q in quotes)
    now = utcnow()

    ranked = []
    for quote in quotes:
        days = None
        if quote.available_from is not None:
            days = (ensure_aware(quote.available_from) - now).total_seconds() / 86400
        item = QuoteResponse.model_validate(quote)
        item.score = score_quote(
            quote.amount_total,
            lowest,
            ratings.get(quote.provider_id),
            days,
            quote.response_speed_hours,
        )
        ranked.append(item)
    ranked.sort(key=lambda q: q.score, reverse=True)
    return [q.model_dump(mode="json") for q in ranked]


@router.post("/{job_id}/accept-quote", response_model=JobPaymentResponse)
@limiter.limit(PAYMENT_RATE_LIMIT)
async def accept_quote(
    request: Request,
    job_id: uuid.UUID,
    body: AcceptQuoteRequest,
    actor: Actor = Depends(require_customer),
    db: AsyncSession = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    """Accept a quote and start the deposit (or full) payment."""
    job = await _get_job(db, job_id)
    if not actor.is_customer_of(job):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your job request")
    if job.status != JobStatus.OPEN:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Job is not open")
    if job.accepted_quote_id is not None and job.accepted_quote_id != body.quote_id:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Another quote has already been accepted")

    quote_result = await db.execute(
        select(JobQuote)
        .where(JobQuote.id == body.quote_id, JobQuote.job_request_id == job.id)
        .with_for_update()
    )
    quote = quote_result.scalar_one_or_none()
    if quote is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Quote not found")
    if quote.status not in (QuoteStatus.SUBMITTED, QuoteStatus.ACCEPTED):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Quote is {quote.status}")

    provider_result = await db.execute(select(ProviderProfile).where(ProviderProfile.id == quote.provider_id))
    provider = provider_result.scalar_one()
    if not provider.has_connect_account:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Provider cannot receive payments yet")

    payments = await _job_payments(db, job.id)
    if any(p.payment_status in _PAID_STATUSES for p in payments):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Job is already paid")

    plan = job_payment_plan(quote.amount_total)
    pending = next(
        (
            p for p in payments
            if p.payment_status == JobPaymentStatus.PENDING and p.payment_type == plan.first_payment_type
        ),
        None,
    )

    quote.status = QuoteStatus.ACCEPTED
    job.accepted_quote_id = quote.id
    job.assigned_provider_id = provider.id
    job.total_price = plan.total_cents
    job.deposit_amount = plan.deposit_cents
    job.remaining_amount = plan.remainder_cents
    job.payment_status = JobPaymentStatus.PENDING
    await db.flush()

    if pending is not None:
        intent = await _job_intent(
            job, quote, provider, pending.payment_type,
            pending.amount_total, pending.platform_fee_amount, payments.index(pending),
        )
        return _payment_response(job, pending, intent)

    payment, intent = await _start_job_payment(
        db, cache, job, quote, provider,
        plan.first_payment_type, plan.first_charge_cents,
        prior_fee_cents=0, attempt=len(payments),
    )
    await notify_once(
        cache, db, event=f"quote_accepted_{quote.id}", booking_id=job.id, user_id=provider.user_id,
        notification_type=NotificationType.QUOTE_ACCEPTED, title="Quote accepted",
        body=f"Your quote for {job.title} was accepted.",
        data={"job_request_id": str(job.id), "quote_id": str(quote.id)},
    )
    logger.info(
        "quote_accepted",
        job_request_id=str(job.id),
        quote_id=str(quote.id),
        payment_type=plan.first_payment_type.value,
        amount=payment.amount_total,
    )
    return _payment_response(job, payment, intent)


@router.post("/{job_id}/pay-remaining", response_model=JobPaymentResponse)
@limiter.limit(PAYMENT_RATE_LIMIT)
async def pay_remaining(
    request: Request,
    job_id: uuid.UUID,
    actor: Actor = Depends(require_customer),
    db: AsyncSession = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    job = await _get_job(db, job_id)
    if not actor.is_customer_of(job):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your job request")
    if job.accepted_quote_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No accepted quote")
    if job.payment_status == JobPaymentStatus.FULLY_PAID:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Job is already fully paid")
    if job.status == JobStatus.CANCELLED:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Job was cancelled")
    if not job.remaining_amount or job.payment_status != JobPaymentStatus.DEPOSIT_PAID:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Deposit must be paid first")

    payments = await _job_payments(db, job.id)
    quote_result = await db.execute(select(JobQuote).where(JobQuote.id == job.accepted_quote_id))
    quote = quote_result.scalar_one()
    provider_result = await db.execute(select(ProviderProfile).where(ProviderProfile.id == job.assigned_provider_id))
    provider = provider_result.scalar_one()

    pending = next(
        (
            p for p in payments
            if p.payment_type == PaymentType.REMAINDER and p.payment_status == JobPaymentStatus.PENDING
        ),
        None,
    )
    if pending is not None:
        intent = await _job_intent(
            job, quote, provider, PaymentType.REMAINDER,
            pending.amount_total, pending.platform_fee_amount, payments.index(pending),
        )
        return _payment_response(job, pending, intent)

    prior_fee = sum(p.platform_fee_amount for p in payments if p.payment_status in _PAID_STATUSES)
    payment, intent = await _start_job_payment(
        db, cache, job, quote, provider,
        PaymentType.REMAINDER, job.remaining_amount,
        prior_fee_cents=prior_fee, attempt=len(payments),
    )
    logger.info("job_remainder_started", job_request_id=str(job.id), amount=payment.amount_total)
    return _payment_response(job, payment, intent)


@router.patch("/{job_id}/lifecycle")
@limiter.limit(MUTATION_RATE_LIMIT)
async def update_job_lifecycle(
    request: Request,
    job_id: uuid.UUID,
    body: JobLifecycleRequest,
    actor: Actor = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    job = await _get_job(db, job_id)
    if not actor.is_provider_of(job):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your job")

    target = JobStatus(body.status)
    validate_job_transition(job.status, target)
    job.status = target
    if target == JobStatus.COMPLETED:
        # Closed straight away once nothing is owed
        if job.payment_status == JobPaymentStatus.FULLY_PAID or settings.FULL_PAYMENT_MODE:
            job.status = JobStatus.CLOSED
    job.lifecycle_updated_at = utcnow()
    await db.flush()

    await notify_once(
        cache, db, event=f"job_{job.status}", booking_id=job.id, user_id=job.customer_id,
        notification_type=NotificationType.JOB_UPDATED, title="Job update",
        body=f"Your job is now {job.status}.",
        data={"job_request_id": str(job.id), "status": JobStatus(job.status).value},
    )
    logger.info("job_lifecycle_updated", job_request_id=str(job.id), status=job.status)
    return _serialize_job(job)


@router.post("/{job_id}/cancel")
@limiter.limit(MUTATION_RATE_LIMIT)
async def cancel_job(
    request: Request,
    job_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    """Cancel a job; paid deposits or full payments are refunded."""
    job = await _get_job(db, job_id)
    by_provider = actor.is_provider_of(job)
    if not (actor.is_customer_of(job) or by_provider):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your job request")
    if job.status in FINALIZED_JOB_STATUSES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Job is already {job.status}")
    if job.status == JobStatus.IN_PROGRESS:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Job is in progress, contact support to cancel it",
        )

    payments = await _job_payments(db, job.id)
    refunds = []
    idem = f"job_cancel_{job.id}"
    for payment in payments:
        if payment.payment_status in _PAID_STATUSES:
            refunds.append(await issue_job_payment_refund(
                db, payment,
                reason="canceled_by_provider" if by_provider else "canceled_by_customer",
                idempotency_key=idem,
                processed_by=actor.user_id,
                initiated_by="provider" if by_provider else "customer",
            ))
        elif payment.payment_status == JobPaymentStatus.PENDING:
            try:
                await cancel_payment_intent(payment.stripe_payment_intent_id, idempotency_key=f"{idem}:{payment.id}")
            except StripeServiceError:
                raise HTTPException(
                    status_code=status.HTTP_502_BAD_GATEWAY,
                    detail="Payment is still being processed, please retry",
                )
            payment.payment_status = JobPaymentStatus.FAILED

    validate_job_transition(job.status, JobStatus.CANCELLED)
    job.status = JobStatus.CANCELLED
    job.lifecycle_updated_at = utcnow()
    if refunds:
        job.payment_status = JobPaymentStatus.REFUNDED
    await db.flush()

    other_party = job.customer_id
    if not by_provider and job.assigned_provider_id is not None:
        provider_result = await db.execute(
            select(ProviderProfile.user_id).where(ProviderProfile.id == job.assigned_provider_id)
        )
        other_party = provider_result.scalar_one()
    if other_party != actor.user_id:
        await notify_once(
            cache, db, event="job_cancelled", booking_id=job.id, user_id=other_party,
            notification_type=NotificationType.JOB_UPDATED, title="Job cancelled",
            body=f"{job.title} was cancelled.",
            data={"job_request_id": str(job.id)},
        )
    logger.info("job_cancelled", job_request_id=str(job.id), refunds=len(refunds))
    return {
        "job_request_id": str(job.id),
        "status": job.status,
        "payment_status": job.payment_status,
        "refunded_amount": sum(r.amount for r in refunds),
    }
