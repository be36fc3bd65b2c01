from collections import defaultdict
from datetime import datetime, timedelta, timezone

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.dependencies import Actor, require_provider
from app.models.availability import TimeOff, WeeklySchedule
from app.models.earning import ProviderEarning
from app.models.enums import EarningStatus, PayoutRequestStatus, PricingType
from app.models.payout_request import PayoutRequest
from app.models.service import Service
from app.schemas.payment import OnboardResponse
from app.schemas.provider import (
    EarningsSummaryResponse,
    PayoutRequestCreate,
    ScheduleUpdateRequest,
    ServiceCreateRequest,
    ServiceResponse,
    TaxDocMonth,
    TaxDocResponse,
    TaxDocTotals,
    TimeOffCreateRequest,
)
from app.services.stripe_service import StripeServiceError, create_connect_account
from app.utils.dates import ensure_aware, utcnow
from app.utils.rate_limit import MUTATION_RATE_LIMIT, PAYMENT_RATE_LIMIT, limiter

logger = structlog.get_logger()
router = APIRouter()

_PAID_OUT = (EarningStatus.PAID_OUT, EarningStatus.TRANSFERRED)
# Earnings that count as income for the year they were paid in
_TAXABLE = (EarningStatus.AWAITING_PAYOUT, *_PAID_OUT)


async def _sum_net(db: AsyncSession, provider_id, *conditions) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(ProviderEarning.net_amount), 0)).where(
            ProviderEarning.provider_id == provider_id, *conditions
        )
    )
    return int(result.scalar_one())


@router.get("/me/earnings", response_model=EarningsSummaryResponse)
async def get_my_earnings(
    actor: Actor = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
):
    provider_id = actor.provider.id
    since = utcnow() - timedelta(days=30)
    return EarningsSummaryResponse(
        currency=settings.CURRENCY,
        lifetime_paid_out_cents=await _sum_net(db, provider_id, ProviderEarning.status.in_(_PAID_OUT)),
        last_30_days_paid_out_cents=await _sum_net(
            db, provider_id, ProviderEarning.status.in_(_PAID_OUT), ProviderEarning.transferred_at >= since
        ),
        pending_payout_cents=await _sum_net(
            db, provider_id, ProviderEarning.status == EarningStatus.AWAITING_PAYOUT
        ),
        held_cents=await _sum_net(db, provider_id, ProviderEarning.status == EarningStatus.HELD),
        refunded_cents=await _sum_net(db, provider_id, ProviderEarning.status == EarningStatus.REFUNDED),
    )


@router.get("/me/earnings/tax-doc", response_model=TaxDocResponse)
async def get_tax_doc(
    year: int | None = Query(None, ge=2000, le=2100),
    actor: Actor = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
):
    """Earnings for one calendar year (UTC), with GST, for the provider's tax return."""
    provider = actor.provider
    year = year or utcnow().year
    start = datetime(year, 1, 1, tzinfo=timezone.utc)
    end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)

    result = await db.execute(
        select(ProviderEarning).where(
            ProviderEarning.provider_id == provider.id,
            ProviderEarning.status.in_(_TAXABLE),
            ProviderEarning.paid_at >= start,
            ProviderEarning.paid_at < end,
        )
    )
    earnings = result.scalars().all()

    # Bucketed here so the query stays portable across databases
    months: dict[str, dict[str, int]] = defaultdict(lambda: {"gross": 0, "fee": 0, "gst": 0, "net": 0})
    for earning in earnings:
        bucket = months[ensure_aware(earning.paid_at).strftime("%Y-%m")]
        bucket["gross"] += earning.gross_amount
        bucket["fee"] += earning.platform_fee_amount
        bucket["gst"] += earning.gst_amount
        bucket["net"] += earning.net_amount

    received = await _sum_net(
        db, provider.id,
        ProviderEarning.status.in_(_PAID_OUT),
        ProviderEarning.transferred_at >= start,
        ProviderEarning.transferred_at < end,
    )
    return TaxDocResponse(
        provider_id=provider.id,
        business_name=provider.business_name,
        charges_gst=provider.charges_gst,
        year=year,
        currency=settings.CURRENCY,
        totals=TaxDocTotals(
            gross=sum(e.gross_amount for e in earnings),
            fee=sum(e.platform_fee_amount for e in earnings),
            gst=sum(e.gst_amount for e in earnings),
            net=sum(e.net_amount for e in earnings),
            payouts_received=received,
            outstanding_net=sum(e.net_amount for e in earnings if e.status == EarningStatus.AWAITING_PAYOUT),
        ),
        monthly=[TaxDocMonth(month=month, **totals) for month, totals in sorted(months.items())],
    )


@router.post("/me/payouts/request", status_code=status.HTTP_201_CREATED)
@limiter.limit(PAYMENT_RATE_LIMIT)
async def request_payout(
    request: Request,
    body: PayoutRequestCreate,
    actor: Actor = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
):
    """Ask for everything awaiting payout to be paid. Replays return the first request."""
    provider_id = actor.provider.id
    existing = await db.execute(
        select(PayoutRequest).where(
            PayoutRequest.provider_id == provider_id,
            PayoutRequest.idempotency_key == body.idempotency_key,
        )
    )
    payout = existing.scalar_one_or_none()
    if payout is None:
        amount = await _sum_net(db, provider_id, ProviderEarning.status == EarningStatus.AWAITING_PAYOUT)
        if amount <= 0:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Nothing is awaiting payout")

        payout = PayoutRequest(
            provider_id=provider_id,
            amount=amount,
            currency=settings.CURRENCY,
            status=PayoutRequestStatus.QUEUED,
            idempotency_key=body.idempotency_key,
            payouts_disabled=settings.DISABLE_PAYOUTS,
            note=body.note,
        )
        db.add(payout)
        try:
            await db.flush()
        except IntegrityError:
            # Concurrent replay with the same key
            await db.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Payout request already in progress")
        logger.info(
            "payout_requested",
            provider_id=str(provider_id),
            payout_request_id=str(payout.id),
            amount=amount,
            payouts_disabled=settings.DISABLE_PAYOUTS,
        )

    return {
        "id": str(payout.id),
        "amount": payout.amount,
        "currency": payout.currency,
        "status": payout.status,
        "payouts_disabled": payout.payouts_disabled,
    }


@router.get("/me/services")
async def list_my_services(
    actor: Actor = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Service).where(Service.provider_id == actor.provider.id).order_by(Service.created_at.desc())
    )
    return {"services": [ServiceResponse.model_validate(s).model_dump(mode="json") for s in result.scalars().all()]}


@router.post("/me/services", status_code=status.HTTP_201_CREATED, response_model=ServiceResponse)
@limiter.limit(MUTATION_RATE_LIMIT)
async def create_service(
    request: Request,
    body: ServiceCreateRequest,
    actor: Actor = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
):
    """Add a bookable service. Quote-only services carry no list price."""
    service = Service(
        provider_id=actor.provider.id,
        title=body.title.strip(),
        description=body.description,
        pricing_type=body.pricing_type,
        price_in_cents=0 if body.pricing_type == PricingType.QUOTE else body.price_in_cents,
        charges_gst=body.charges_gst,
    )
    db.add(service)
    await db.flush()
    await db.refresh(service)
    logger.info(
        "service_created",
        provider_id=str(actor.provider.id),
        service_id=str(service.id),
        pricing_type=body.pricing_type.value,
    )
    return service


@router.put("/me/schedule")
@limiter.limit(MUTATION_RATE_LIMIT)
async def update_schedule(
    request: Request,
    body: ScheduleUpdateRequest,
    actor: Actor = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
):
    """Replace the weekly schedule. Days not listed are unavailable."""
    provider_id = actor.provider.id
    await db.execute(delete(WeeklySchedule).where(WeeklySchedule.provider_id == provider_id))
    for day in body.days:
        db.add(WeeklySchedule(
            provider_id=provider_id,
            day_of_week=day.day_of_week,
            start_time=day.start_time,
            end_time=day.end_time,
            is_enabled=day.is_enabled,
        ))
    await db.flush()
    logger.info("schedule_updated", provider_id=str(provider_id), days=len(body.days))
    return {"days": [d.model_dump(mode="json") for d in sorted(body.days, key=lambda d: d.day_of_week)]}


@router.post("/me/time-off", status_code=status.HTTP_201_CREATED)
@limiter.limit(MUTATION_RATE_LIMIT)
async def add_time_off(
    request: Request,
    body: TimeOffCreateRequest,
    actor: Actor = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
):
    block = TimeOff(
        provider_id=actor.provider.id,
        start_at=body.start_at,
        end_at=body.end_at,
        reason=body.reason,
    )
    db.add(block)
    await db.flush()
    logger.info("time_off_added", provider_id=str(actor.provider.id), time_off_id=str(block.id))
    return {
        "id": str(block.id),
        "start_at": block.start_at.isoformat(),
        "end_at": block.end_at.isoformat(),
        "reason": block.reason,
    }


@router.post("/me/connect/onboard", response_model=OnboardResponse)
@limiter.limit(PAYMENT_RATE_LIMIT)
async def onboard_connect(
    request: Request,
    actor: Actor = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
):
    """Create (or resume) Stripe Connect Express onboarding."""
    provider = actor.provider
    try:
        result = await create_connect_account(actor.user.email, existing_account_id=provider.stripe_connect_id)
    except StripeServiceError:
        logger.exception("connect_onboarding_failed", provider_id=str(provider.id))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Payment provider unavailable")

    if provider.stripe_connect_id != result["account_id"]:
        provider.stripe_connect_id = result["account_id"]
        await db.flush()
        logger.info("connect_account_linked", provider_id=str(provider.id))
    return OnboardResponse(**result)
