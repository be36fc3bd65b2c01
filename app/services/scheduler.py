# APScheduler job store configuration.
# When REDIS_URL is set, jobs are persisted in Redis and survive restarts.
# Without Redis the default MemoryJobStore is used (dev/test).

from datetime import timedelta
from urllib.parse import urlparse

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError
from apscheduler.events import EVENT_JOB_ERROR
from apscheduler.jobstores.redis import RedisJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy import delete, select, update

from app.config import settings
from app.database import async_session
from app.metrics import SCHEDULER_JOB_RUNS
from app.models.booking import Booking
from app.models.earning import ProviderEarning
from app.models.enums import (
    BookingStatus,
    EarningStatus,
    JobPaymentStatus,
    JobStatus,
    NotificationType,
    QuoteStatus,
)
from app.models.job_request import JobQuote, JobRequest
from app.models.provider_profile import ProviderProfile
from app.models.webhook_event import ProcessedWebhookEvent
from app.services.cache import get_cache
from app.services.earnings import confirm_booking_completion, release_booking_payout
from app.services.notifications import notify_once
from app.utils.dates import utcnow

logger = structlog.get_logger()

SCHEDULER_BATCH_SIZE = 20
WEBHOOK_EVENT_RETENTION_DAYS = 30


def _build_jobstores() -> dict:
    if not settings.REDIS_URL:
        return {}
    parsed = urlparse(settings.REDIS_URL)
    redis_kwargs: dict = {
        "host": parsed.hostname or "localhost",
        "port": parsed.port or 6379,
        "db": int(parsed.path.lstrip("/") or 0),
        "password": parsed.password,
    }
    # Keep TLS for rediss:// URLs
    if parsed.scheme == "rediss":
        redis_kwargs["ssl"] = True
    logger.info("scheduler_using_redis_jobstore", redis_url="[redacted]")
    return {"default": RedisJobStore(**redis_kwargs)}


scheduler = AsyncIOScheduler(jobstores=_build_jobstores())


async def _acquire_scheduler_lock(job_name: str, ttl: int = 300) -> bool:
    """Try to acquire a distributed Redis lock for a scheduler job.

    Returns True if the lock was acquired (this worker should run the job).
    Returns False if another worker already holds the lock.
    Falls back to True (allow execution) if Redis is unavailable.
    """
    if not settings.REDIS_URL:
        return True
    try:
        r = aioredis.from_url(settings.REDIS_URL, socket_connect_timeout=2)
        acquired = await r.set(f"scheduler_lock:{job_name}", "1", nx=True, ex=ttl)
        await r.aclose()
        return bool(acquired)
    except (RedisError, OSError):
        # Single-worker / dev mode
        return True


async def retry_awaiting_payouts() -> None:
    """Retry transfers for booking earnings stuck in awaiting_payout.

    Each retry reuses the earning's transfer idempotency key, so a transfer
    that actually went through is never duplicated.
    """
    if settings.DISABLE_PAYOUTS:
        logger.info("payout_retry_skipped_disabled")
        return
    if not await _acquire_scheduler_lock("retry_awaiting_payouts", ttl=900):
        return

    async with async_session() as db:
        result = await db.execute(
            select(ProviderEarning.id)
            .where(
                ProviderEarning.status == EarningStatus.AWAITING_PAYOUT,
                ProviderEarning.booking_id.is_not(None),
            )
            .order_by(
                ProviderEarning.last_payout_attempt_at.asc().nulls_first(),
                ProviderEarning.created_at.asc(),
            )
            .limit(settings.PAYOUT_RETRY_BATCH_SIZE)
        )
        earning_ids = result.scalars().all()
        if not earning_ids:
            return

        # Claim the batch first so rows that keep failing rotate to the back
        await db.execute(
            update(ProviderEarning)
            .where(ProviderEarning.id.in_(earning_ids))
            .values(last_payout_attempt_at=utcnow())
        )
        await db.commit()

        # Ids only: a rollback expires loaded rows
        for earning_id in earning_ids:
            try:
                earning_result = await db.execute(
                    select(ProviderEarning)
                    .where(
                        ProviderEarning.id == earning_id,
                        ProviderEarning.status == EarningStatus.AWAITING_PAYOUT,
                    )
                    .with_for_update(skip_locked=True)
                )
                earning = earning_result.scalar_one_or_none()
                if earning is None:
                    continue
                provider_result = await db.execute(
                    select(ProviderProfile).where(ProviderProfile.id == earning.provider_id)
                )
                provider = provider_result.scalar_one()
                outcome = await release_booking_payout(db, earning, provider, earning.booking_id)
                await db.commit()
                SCHEDULER_JOB_RUNS.labels(job_name="retry_awaiting_payouts", status=outcome["payout"]).inc()
                logger.info(
                    "payout_retried",
                    earning_id=str(earning.id),
                    payout=outcome["payout"],
                    reason=outcome.get("reason"),
                )
            except Exception as e:
                # Per-row rollback so one bad earning does not block the batch
                await db.rollback()
                SCHEDULER_JOB_RUNS.labels(job_name="retry_awaiting_payouts", status="error").inc()
                logger.exception("payout_retry_failed", earning_id=str(earning_id), error_type=type(e).__name__)


async def auto_confirm_completions() -> None:
    """Complete bookings the customer never confirmed after AUTO_CONFIRM_HOURS."""
    if not await _acquire_scheduler_lock("auto_confirm_completions", ttl=3600):
        return

    cache = await get_cache()
    cutoff = utcnow() - timedelta(hours=settings.AUTO_CONFIRM_HOURS)
    async with async_session() as db:
        result = await db.execute(
            select(Booking.id)
            .where(
                Booking.status == BookingStatus.COMPLETED_BY_PROVIDER,
                Booking.completed_by_provider_at < cutoff,
            )
            .order_by(
                Booking.auto_confirm_attempted_at.asc().nulls_first(),
                Booking.completed_by_provider_at.asc(),
            )
            .limit(SCHEDULER_BATCH_SIZE)
        )
        booking_ids = result.scalars().all()
        if not booking_ids:
            return

        await db.execute(
            update(Booking).where(Booking.id.in_(booking_ids)).values(auto_confirm_attempted_at=utcnow())
        )
        await db.commit()

        for booking_id in booking_ids:
            try:
                booking_result = await db.execute(
                    select(Booking)
                    .where(Booking.id == booking_id, Booking.status == BookingStatus.COMPLETED_BY_PROVIDER)
                    .with_for_update(skip_locked=True)
                )
                booking = booking_result.scalar_one_or_none()
                if booking is None:
                    continue
                outcome = await confirm_booking_completion(db, booking, source="auto")
                await notify_once(
                    cache,
                    db,
                    event="booking_auto_completed",
                    booking_id=booking.id,
                    user_id=booking.customer_id,
                    notification_type=NotificationType.BOOKING_COMPLETED,
                    title="Booking completed",
                    body="Your booking was marked complete automatically.",
                    data={"booking_id": str(booking.id)},
                )
                await db.commit()
                SCHEDULER_JOB_RUNS.labels(job_name="auto_confirm_completions", status="success").inc()
                logger.info("booking_auto_completed", booking_id=str(booking.id), payout=outcome.get("payout"))
            except Exception as e:
                await db.rollback()
                SCHEDULER_JOB_RUNS.labels(job_name="auto_confirm_completions", status="error").inc()
                logger.exception("booking_auto_complete_failed", booking_id=str(booking_id), error_type=type(e).__name__)


async def expire_stale_job_requests() -> None:
    """Expire open job requests older than JOB_REQUEST_EXPIRY_DAYS with no payment in flight."""
    if not await _acquire_scheduler_lock("expire_stale_job_requests", ttl=3600):
        return

    cutoff = utcnow() - timedelta(days=settings.JOB_REQUEST_EXPIRY_DAYS)
    async with async_session() as db:
        result = await db.execute(
            select(JobRequest.id)
            .where(
                JobRequest.status == JobStatus.OPEN,
                JobRequest.created_at < cutoff,
                JobRequest.payment_status.in_((JobPaymentStatus.UNPAID, JobPaymentStatus.FAILED)),
            )
            .limit(SCHEDULER_BATCH_SIZE)
        )
        job_ids = result.scalars().all()

        for job_id in job_ids:
            try:
                job_result = await db.execute(
                    select(JobRequest)
                    .where(JobRequest.id == job_id, JobRequest.status == JobStatus.OPEN)
                    .with_for_update(skip_locked=True)
                )
                job = job_result.scalar_one_or_none()
                if job is None:
                    continue
                job.status = JobStatus.EXPIRED
                job.lifecycle_updated_at = utcnow()
                await db.execute(
                    update(JobQuote)
                    .where(JobQuote.job_request_id == job.id, JobQuote.status == QuoteStatus.SUBMITTED)
                    .values(status=QuoteStatus.REJECTED)
                )
                await db.commit()
                SCHEDULER_JOB_RUNS.labels(job_name="expire_stale_job_requests", status="success").inc()
                logger.info("job_request_expired", job_request_id=str(job.id))
            except Exception as e:
                await db.rollback()
                SCHEDULER_JOB_RUNS.labels(job_name="expire_stale_job_requests", status="error").inc()
                logger.exception("job_request_expire_failed", job_request_id=str(job_id), error_type=type(e).__name__)


async def cleanup_old_webhook_events() -> None:
    """Delete processed webhook events older than 30 days."""
    if not await _acquire_scheduler_lock("cleanup_old_webhook_events"):
        return
    async with async_session() as db:
        cutoff = utcnow() - timedelta(days=WEBHOOK_EVENT_RETENTION_DAYS)
        result = await db.execute(
            delete(ProcessedWebhookEvent).where(ProcessedWebhookEvent.processed_at < cutoff)
        )
        count = result.rowcount
        await db.commit()
        SCHEDULER_JOB_RUNS.labels(job_name="cleanup_old_webhook_events", status="success").inc()
        if count:
            logger.info("webhook_events_cleaned_up", deleted_count=count)


def _job_error_listener(event):
    if event.exception:
        logger.error(
            "scheduler_job_failed",
            job_id=event.job_id,
            error=str(event.exception),
        )


def start_scheduler() -> None:
    """Start the APScheduler with recurring jobs."""
    scheduler.add_job(
        retry_awaiting_payouts,
        "interval",
        minutes=15,
        id="retry_awaiting_payouts",
        replace_existing=True,
        misfire_grace_time=300,
    )
    scheduler.add_job(
        auto_confirm_completions,
        "interval",
        hours=1,
        id="auto_confirm_completions",
        replace_existing=True,
        misfire_grace_time=900,
    )
    scheduler.add_job(
        expire_stale_job_requests,
        "cron",
        hour=2,
        minute=0,
        id="expire_stale_job_requests",
        replace_existing=True,
        misfire_grace_time=3600,
    )
    scheduler.add_job(
        cleanup_old_webhook_events,
        "cron",
        hour=3,
        minute=0,
        id="cleanup_webhook_events",
        replace_existing=True,
        misfire_grace_time=3600,
    )
    scheduler.add_listener(_job_error_listener, EVENT_JOB_ERROR)

    scheduler.start()
    logger.info("scheduler_started")
