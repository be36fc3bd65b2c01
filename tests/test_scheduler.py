from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.booking import Booking
from app.models.enums import (
    BookingStatus,
    EarningStatus,
    JobPaymentStatus,
    JobStatus,
    QuoteStatus,
)
from app.models.job_request import JobQuote, JobRequest
from app.models.notification import Notification
from app.models.provider_profile import ProviderProfile
from app.models.service import Service
from app.models.user import User
from app.models.webhook_event import ProcessedWebhookEvent
from app.services import scheduler as scheduler_module
from app.services.cache import MemoryCache
from app.services.earnings import ensure_booking_earning
from tests.conftest import make_booking, make_provider


@pytest.fixture
def patched_session(db: AsyncSession, cache: MemoryCache, monkeypatch):
    """Route the jobs' own sessions and cache to the test ones."""

    @asynccontextmanager
    async def _session():
        yield db

    async def _get_cache():
        return cache

    monkeypatch.setattr(scheduler_module, "async_session", _session)
    monkeypatch.setattr(scheduler_module, "get_cache", _get_cache)
    return db


def _days_ago(days: float) -> datetime:
    return datetime.now(timezone.utc) - timedelta(days=days)


# ---------------------------------------------------------------------------
# retry_awaiting_payouts
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_retry_awaiting_payouts_pays_out(
    patched_session: AsyncSession, customer_user: User, provider_profile: ProviderProfile, service: Service
):
    db = patched_session
    booking = await make_booking(db, customer_user, provider_profile, service, status=BookingStatus.COMPLETED)
    earning = await ensure_booking_earning(db, booking, provider_profile)
    earning.status = EarningStatus.AWAITING_PAYOUT
    earning.payout_failure_reason = "balance_insufficient"
    await db.commit()

    await scheduler_module.retry_awaiting_payouts()

    assert earning.status == EarningStatus.PAID_OUT
    assert earning.stripe_transfer_id.startswith("tr_mock_")
    assert earning.payout_failure_reason is None


@pytest.mark.asyncio
async def test_retry_awaiting_payouts_keeps_queue_without_connect_account(
    patched_session: AsyncSession, customer_user: User, service: Service
):
    db = patched_session
    provider = await make_provider(db, "noconnect@test.com", connect_id=None)
    booking = await make_booking(db, customer_user, provider, service, status=BookingStatus.COMPLETED)
    earning = await ensure_booking_earning(db, booking, provider)
    earning.status = EarningStatus.AWAITING_PAYOUT
    await db.commit()

    await scheduler_module.retry_awaiting_payouts()

    assert earning.status == EarningStatus.AWAITING_PAYOUT
    assert earning.payout_failure_reason == "missing_stripe_connect_id"
    assert earning.last_payout_attempt_at is not None


@pytest.mark.asyncio
async def test_retry_awaiting_payouts_rotates_past_stuck_earnings(
    patched_session: AsyncSession, customer_user: User, provider_profile: ProviderProfile,
    service: Service, monkeypatch,
):
    db = patched_session
    monkeypatch.setattr(settings, "PAYOUT_RETRY_BATCH_SIZE", 2)
    unpayable = await make_provider(db, "stuck@test.com", connect_id=None)

    stuck = []
    for age in (5, 4):
        booking = await make_booking(db, customer_user, unpayable, service, status=BookingStatus.COMPLETED)
        earning = await ensure_booking_earning(db, booking, unpayable)
        earning.status = EarningStatus.AWAITING_PAYOUT
        earning.created_at = _days_ago(age)
        stuck.append(earning)
    booking = await make_booking(db, customer_user, provider_profile, service, status=BookingStatus.COMPLETED)
    newest = await ensure_booking_earning(db, booking, provider_profile)
    newest.status = EarningStatus.AWAITING_PAYOUT
    newest.created_at = _days_ago(1)
    await db.commit()

    await scheduler_module.retry_awaiting_payouts()
    assert newest.status == EarningStatus.AWAITING_PAYOUT
    assert all(e.last_payout_attempt_at is not None for e in stuck)

    await scheduler_module.retry_awaiting_payouts()
    assert newest.status == EarningStatus.PAID_OUT
    assert [e.status for e in stuck] == [EarningStatus.AWAITING_PAYOUT] * 2


@pytest.mark.asyncio
async def test_retry_awaiting_payouts_skips_when_disabled(
    patched_session: AsyncSession, customer_user: User, provider_profile: ProviderProfile,
    service: Service, monkeypatch,
):
    db = patched_session
    booking = await make_booking(db, customer_user, provider_profile, service, status=BookingStatus.COMPLETED)
    earning = await ensure_booking_earning(db, booking, provider_profile)
    earning.status = EarningStatus.AWAITING_PAYOUT
    await db.commit()
    monkeypatch.setattr(settings, "DISABLE_PAYOUTS", True)

    await scheduler_module.retry_awaiting_payouts()

    assert earning.status == EarningStatus.AWAITING_PAYOUT
    assert earning.stripe_transfer_id is None


# ---------------------------------------------------------------------------
# auto_confirm_completions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_auto_confirm_completes_old_bookings(
    patched_session: AsyncSession, customer_user: User, provider_profile: ProviderProfile, service: Service
):
    db = patched_session
    stale = await make_booking(
        db, customer_user, provider_profile, service,
        status=BookingStatus.COMPLETED_BY_PROVIDER, payment_intent_id="pi_mock_stale",
    )
    stale.completed_by_provider_at = _days_ago(4)
    fresh = await make_booking(
        db, customer_user, provider_profile, service,
        status=BookingStatus.COMPLETED_BY_PROVIDER, payment_intent_id="pi_mock_fresh",
    )
    fresh.completed_by_provider_at = _days_ago(1)
    await db.commit()

    await scheduler_module.auto_confirm_completions()

    assert stale.status == BookingStatus.COMPLETED
    assert stale.completed_at is not None
    assert fresh.status == BookingStatus.COMPLETED_BY_PROVIDER

    earning = await ensure_booking_earning(db, stale)
    assert earning.status == EarningStatus.PAID_OUT

    notes = (await db.execute(select(Notification).where(Notification.user_id == customer_user.id))).scalars().all()
    assert [n.type for n in notes] == ["booking_completed"]


@pytest.mark.asyncio
async def test_auto_confirm_runs_once_per_booking(
    patched_session: AsyncSession, customer_user: User, provider_profile: ProviderProfile, service: Service
):
    db = patched_session
    booking = await make_booking(
        db, customer_user, provider_profile, service,
        status=BookingStatus.COMPLETED_BY_PROVIDER, payment_intent_id="pi_mock_once",
    )
    booking.completed_by_provider_at = _days_ago(5)
    await db.commit()

    await scheduler_module.auto_confirm_completions()
    await scheduler_module.auto_confirm_completions()

    notes = (await db.execute(select(Notification))).scalars().all()
    assert len(notes) == 1
    completed = (await db.execute(select(Booking).where(Booking.status == BookingStatus.COMPLETED))).scalars().all()
    assert len(completed) == 1


@pytest.mark.asyncio
async def test_auto_confirm_rotates_past_failing_booking(
    patched_session: AsyncSession, customer_user: User, provider_profile: ProviderProfile,
    service: Service, monkeypatch,
):
    db = patched_session
    monkeypatch.setattr(scheduler_module, "SCHEDULER_BATCH_SIZE", 1)
    refunded = await make_booking(
        db, customer_user, provider_profile, service,
        status=BookingStatus.COMPLETED_BY_PROVIDER, payment_intent_id="pi_mock_refunded",
    )
    refunded.completed_by_provider_at = _days_ago(6)
    earning = await ensure_booking_earning(db, refunded, provider_profile)
    earning.status = EarningStatus.REFUNDED
    waiting = await make_booking(
        db, customer_user, provider_profile, service,
        status=BookingStatus.COMPLETED_BY_PROVIDER, payment_intent_id="pi_mock_waiting",
    )
    waiting.completed_by_provider_at = _days_ago(4)
    await db.commit()

    await scheduler_module.auto_confirm_completions()
    await scheduler_module.auto_confirm_completions()

    await db.refresh(refunded)
    await db.refresh(waiting)
    assert refunded.status == BookingStatus.COMPLETED_BY_PROVIDER
    assert refunded.auto_confirm_attempted_at is not None
    assert waiting.status == BookingStatus.COMPLETED


# ---------------------------------------------------------------------------
# expire_stale_job_requests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_expire_stale_job_requests(
    patched_session: AsyncSession, customer_user: User, provider_profile: ProviderProfile
):
    db = patched_session
    stale = JobRequest(customer_id=customer_user.id, title="Paint fence", created_at=_days_ago(31))
    recent = JobRequest(customer_id=customer_user.id, title="Fix tap", created_at=_days_ago(2))
    pending = JobRequest(
        customer_id=customer_user.id, title="Clean gutters", created_at=_days_ago(40),
        payment_status=JobPaymentStatus.PENDING,
    )
    db.add_all([stale, recent, pending])
    await db.flush()
    quote = JobQuote(job_request_id=stale.id, provider_id=provider_profile.id, amount_total=20_000)
    db.add(quote)
    await db.commit()

    await scheduler_module.expire_stale_job_requests()

    assert stale.status == JobStatus.EXPIRED
    assert stale.lifecycle_updated_at is not None
    assert recent.status == JobStatus.OPEN
    assert pending.status == JobStatus.OPEN

    await db.refresh(quote)
    assert quote.status == QuoteStatus.REJECTED


# ---------------------------------------------------------------------------
# cleanup_old_webhook_events
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cleanup_old_webhook_events(patched_session: AsyncSession):
    db = patched_session
    db.add_all([
        ProcessedWebhookEvent(event_id="evt_old", event_type="charge.refunded", processed_at=_days_ago(45)),
        ProcessedWebhookEvent(event_id="evt_new", event_type="charge.refunded", processed_at=_days_ago(3)),
    ])
    await db.commit()

    await scheduler_module.cleanup_old_webhook_events()

    remaining = (await db.execute(select(ProcessedWebhookEvent.event_id))).scalars().all()
    assert remaining == ["evt_new"]


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def test_start_scheduler_registers_jobs(monkeypatch):
    fresh = AsyncIOScheduler()
    monkeypatch.setattr(fresh, "start", lambda *args, **kwargs: None)
    monkeypatch.setattr(scheduler_module, "scheduler", fresh)

    scheduler_module.start_scheduler()

    assert sorted(job.id for job in fresh.get_jobs()) == [
        "auto_confirm_completions",
        "cleanup_webhook_events",
        "expire_stale_job_requests",
        "retry_awaiting_payouts",
    ]
