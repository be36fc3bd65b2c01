import uuid

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.audit_log import AuditLog
from app.models.booking import Booking
from app.models.dispute import DisputeCase
from app.models.earning import ProviderEarning
from app.models.enums import BookingStatus, DisputeStatus, EarningStatus, JobPaymentStatus, JobStatus
from app.models.job_request import JobPayment, JobRequest
from app.models.notification import Notification
from app.models.provider_profile import ProviderProfile
from app.models.refund import Refund
from app.models.service import Service
from app.models.user import User
from app.services.earnings import ensure_booking_earning
from tests.conftest import auth_for, make_booking


async def _paid_booking(
    db: AsyncSession, customer: User, provider: ProviderProfile, service: Service,
    status: BookingStatus = BookingStatus.PAID,
) -> tuple[Booking, ProviderEarning]:
    booking = await make_booking(db, customer, provider, service, status=status, payment_intent_id="pi_mock_admin")
    earning = await ensure_booking_earning(db, booking, provider)
    return booking, earning


async def _open_dispute(db: AsyncSession, booking: Booking) -> DisputeCase:
    dispute = DisputeCase(booking_id=booking.id, opened_by=booking.customer_id, reason="poor_quality")
    db.add(dispute)
    await db.flush()
    return dispute


# ---------------------------------------------------------------------------
# Refunds
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_partial_then_full_refund(
    client: AsyncClient, db: AsyncSession, admin_user: User, customer_user: User,
    provider_profile: ProviderProfile, service: Service,
):
    booking, earning = await _paid_booking(db, customer_user, provider_profile, service)
    headers = auth_for(admin_user.id)

    response = await client.post(
        f"/admin/bookings/{booking.id}/refunds",
        json={"amount_cents": 4_000, "reason": "goodwill", "description": "Late arrival"},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    body = response.json()
    assert body["booking_status"] == "partially_refunded"
    assert body["platform_fee_refunded"] == 400
    assert body["provider_amount_refunded"] == 3_600
    assert body["refundable_remaining"] == 6_000
    assert body["refund_status"] == "completed"

    assert earning.status == EarningStatus.HELD
    assert (earning.gross_amount, earning.platform_fee_amount, earning.net_amount) == (6_000, 600, 5_400)

    rest = await client.post(f"/admin/bookings/{booking.id}/refunds", json={"reason": "goodwill"}, headers=headers)
    assert rest.status_code == 201, rest.text
    assert rest.json()["amount"] == 6_000
    assert rest.json()["platform_fee_refunded"] == 600
    assert rest.json()["booking_status"] == "refunded"
    assert earning.status == EarningStatus.REFUNDED

    refunds = (await db.execute(select(Refund).where(Refund.booking_id == booking.id))).scalars().all()
    assert sorted(r.amount for r in refunds) == [4_000, 6_000]

    audit = (await db.execute(select(AuditLog).where(AuditLog.action == "refund_booking"))).scalars().all()
    assert len(audit) == 2
    assert all(a.admin_user_id == admin_user.id for a in audit)

    notes = await db.execute(select(Notification.type).where(Notification.user_id == customer_user.id))
    assert notes.scalars().all() == ["booking_refunded", "booking_refunded"]


@pytest.mark.asyncio
async def test_refund_more_than_remaining(
    client: AsyncClient, db: AsyncSession, admin_user: User, customer_user: User,
    provider_profile: ProviderProfile, service: Service,
):
    booking, _ = await _paid_booking(db, customer_user, provider_profile, service)
    response = await client.post(
        f"/admin/bookings/{booking.id}/refunds",
        json={"amount_cents": 10_001, "reason": "goodwill"},
        headers=auth_for(admin_user.id),
    )
    assert response.status_code == 400
    assert booking.status == BookingStatus.PAID


@pytest.mark.asyncio
async def test_refund_unpaid_booking_conflict(
    client: AsyncClient, db: AsyncSession, admin_user: User, customer_user: User,
    provider_profile: ProviderProfile, service: Service,
):
    booking = await make_booking(db, customer_user, provider_profile, service, status=BookingStatus.ACCEPTED)
    response = await client.post(
        f"/admin/bookings/{booking.id}/refunds", json={"reason": "goodwill"}, headers=auth_for(admin_user.id)
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_refund_requires_admin(
    client: AsyncClient, db: AsyncSession, customer_user: User, provider_profile: ProviderProfile, service: Service
):
    booking, _ = await _paid_booking(db, customer_user, provider_profile, service)
    for user_id in (customer_user.id, provider_profile.user_id):
        response = await client.post(
            f"/admin/bookings/{booking.id}/refunds", json={"reason": "goodwill"}, headers=auth_for(user_id)
        )
        assert response.status_code == 403


@pytest.mark.asyncio
async def test_admin_cannot_cancel_through_booking_route(
    client: AsyncClient, db: AsyncSession, admin_user: User, customer_user: User,
    provider_profile: ProviderProfile, service: Service,
):
    booking, _ = await _paid_booking(db, customer_user, provider_profile, service)
    response = await client.post(f"/bookings/{booking.id}/cancel", headers=auth_for(admin_user.id))
    assert response.status_code == 403


# ---------------------------------------------------------------------------
# Payout exceptions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_payout_exceptions_and_retry(
    client: AsyncClient, db: AsyncSession, admin_user: User, customer_user: User,
    provider_profile: ProviderProfile, service: Service,
):
    booking, earning = await _paid_booking(db, customer_user, provider_profile, service, status=BookingStatus.COMPLETED)
    earning.status = EarningStatus.AWAITING_PAYOUT
    earning.payout_failure_reason = "balance_insufficient"
    await db.flush()
    headers = auth_for(admin_user.id)

    listing = await client.get("/admin/payout-exceptions", headers=headers)
    assert listing.status_code == 200
    assert listing.json()["total"] == 1
    assert listing.json()["earnings"][0]["payout_failure_reason"] == "balance_insufficient"

    retry = await client.post(f"/admin/earnings/{earning.id}/retry-payout", headers=headers)
    assert retry.status_code == 200, retry.text
    assert retry.json()["payout"] == "paid_out"
    assert earning.status == EarningStatus.PAID_OUT
    assert earning.payout_failure_reason is None

    again = await client.post(f"/admin/earnings/{earning.id}/retry-payout", headers=headers)
    assert again.status_code == 409

    logs = await client.get("/admin/audit-logs?action=retry_payout", headers=headers)
    assert logs.json()["total"] == 1
    assert logs.json()["logs"][0]["target_id"] == str(earning.id)


@pytest.mark.asyncio
async def test_retry_payout_unknown_earning(client: AsyncClient, admin_user: User):
    response = await client.post(
        "/admin/earnings/00000000-0000-0000-0000-000000000000/retry-payout", headers=auth_for(admin_user.id)
    )
    assert response.status_code == 404


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_resolve_dispute_for_customer(
    client: AsyncClient, db: AsyncSession, admin_user: User, customer_user: User,
    provider_profile: ProviderProfile, service: Service,
):
    booking, earning = await _paid_booking(db, customer_user, provider_profile, service, status=BookingStatus.DISPUTED)
    dispute = await _open_dispute(db, booking)

    response = await client.patch(
        "/payments/disputes/resolve",
        json={"dispute_id": str(dispute.id), "resolution": "customer", "resolution_notes": "Work not done"},
        headers=auth_for(admin_user.id),
    )
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["status"] == "resolved"
    assert body["refund_amount"] == 10_000
    assert body["booking_status"] == "refunded"

    assert dispute.status == DisputeStatus.RESOLVED
    assert dispute.resolution == "customer"
    assert dispute.resolved_by_admin == admin_user.id
    assert earning.status == EarningStatus.REFUNDED

    again = await client.patch(
        "/payments/disputes/resolve",
        json={"dispute_id": str(dispute.id), "resolution": "provider"},
        headers=auth_for(admin_user.id),
    )
    assert again.status_code == 409


@pytest.mark.asyncio
async def test_resolve_dispute_partial_refund(
    client: AsyncClient, db: AsyncSession, admin_user: User, customer_user: User,
    provider_profile: ProviderProfile, service: Service,
):
    booking, earning = await _paid_booking(db, customer_user, provider_profile, service, status=BookingStatus.DISPUTED)
    dispute = await _open_dispute(db, booking)

    response = await client.patch(
        "/payments/disputes/resolve",
        json={"dispute_id": str(dispute.id), "resolution": "customer", "refund_amount_cents": 3_000},
        headers=auth_for(admin_user.id),
    )
    assert response.status_code == 200
    assert response.json()["booking_status"] == "partially_refunded"
    assert dispute.refund_amount == 3_000
    assert earning.net_amount == 6_300


@pytest.mark.asyncio
async def test_resolve_dispute_for_provider_pays_out(
    client: AsyncClient, db: AsyncSession, admin_user: User, customer_user: User,
    provider_profile: ProviderProfile, service: Service,
):
    booking, earning = await _paid_booking(db, customer_user, provider_profile, service, status=BookingStatus.DISPUTED)
    dispute = await _open_dispute(db, booking)

    response = await client.patch(
        "/payments/disputes/resolve",
        json={"dispute_id": str(dispute.id), "resolution": "provider"},
        headers=auth_for(admin_user.id),
    )
    assert response.status_code == 200, response.text
    assert response.json()["booking_status"] == "completed"
    assert response.json()["payout"] == "paid_out"
    assert booking.status == BookingStatus.COMPLETED
    assert earning.status == EarningStatus.PAID_OUT

    audit = (await db.execute(select(AuditLog))).scalar_one()
    assert audit.action == "resolve_dispute_provider"
    assert audit.target_id == str(dispute.id)


@pytest.mark.asyncio
async def test_resolve_dispute_requires_admin(
    client: AsyncClient, db: AsyncSession, customer_user: User, provider_profile: ProviderProfile, service: Service
):
    booking, _ = await _paid_booking(db, customer_user, provider_profile, service, status=BookingStatus.DISPUTED)
    dispute = await _open_dispute(db, booking)
    response = await client.patch(
        "/payments/disputes/resolve",
        json={"dispute_id": str(dispute.id), "resolution": "customer"},
        headers=auth_for(customer_user.id),
    )
    assert response.status_code == 403


# ---------------------------------------------------------------------------
# Job request refunds
# ---------------------------------------------------------------------------


async def _deposit_paid_job(client: AsyncClient, db: AsyncSession, customer: User, provider: ProviderProfile) -> JobRequest:
    created = await client.post(
        "/jobs", json={"title": "Replace hot water cylinder", "budget_cents": 25_000}, headers=auth_for(customer.id)
    )
    job_id = created.json()["id"]
    quote = await client.post(
        f"/jobs/{job_id}/quotes", json={"amount_total": 20_000}, headers=auth_for(provider.user_id)
    )
    accepted = await client.post(
        f"/jobs/{job_id}/accept-quote", json={"quote_id": quote.json()["id"]}, headers=auth_for(customer.id)
    )
    assert accepted.status_code == 200, accepted.text
    result = await db.execute(select(JobRequest).where(JobRequest.id == uuid.UUID(job_id)))
    return result.scalar_one()


@pytest.mark.asyncio
async def test_partial_job_refund(
    client: AsyncClient, db: AsyncSession, admin_user: User, customer_user: User, provider_profile: ProviderProfile
):
    job = await _deposit_paid_job(client, db, customer_user, provider_profile)
    headers = auth_for(admin_user.id)

    too_much = await client.post(
        f"/admin/job-requests/{job.id}/refunds", json={"amount_cents": 7_000, "reason": "goodwill"}, headers=headers
    )
    assert too_much.status_code == 400

    response = await client.post(
        f"/admin/job-requests/{job.id}/refunds",
        json={"amount_cents": 2_000, "reason": "goodwill", "description": "Parts were cheaper"},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    body = response.json()
    assert body["amount"] == 2_000
    assert body["platform_fee_refunded"] == 200
    assert body["provider_amount_refunded"] == 1_800
    assert body["payment_status"] == "partially_refunded"
    assert body["job_status"] == "assigned"
    assert body["job_payment_status"] == "partially_refunded"

    assert job.status == JobStatus.ASSIGNED
    assert job.payment_status == JobPaymentStatus.PARTIALLY_REFUNDED
    earning = (await db.execute(select(ProviderEarning))).scalar_one()
    assert earning.status == EarningStatus.TRANSFERRED

    audit = (await db.execute(select(AuditLog).where(AuditLog.action == "refund_job_request"))).scalar_one()
    assert audit.target_id == str(job.id)
    assert audit.detail == "Parts were cheaper"
    assert audit.metadata_json["amount"] == 2_000

    # The deposit is no longer settled in full, so nothing else is refundable
    again = await client.post(f"/admin/job-requests/{job.id}/refunds", json={"reason": "goodwill"}, headers=headers)
    assert again.status_code == 409


@pytest.mark.asyncio
async def test_full_job_refund_cancels_job(
    client: AsyncClient, db: AsyncSession, admin_user: User, customer_user: User, provider_profile: ProviderProfile
):
    job = await _deposit_paid_job(client, db, customer_user, provider_profile)

    response = await client.post(
        f"/admin/job-requests/{job.id}/refunds", json={"reason": "no_show"}, headers=auth_for(admin_user.id)
    )
    assert response.status_code == 201, response.text
    body = response.json()
    assert body["amount"] == 6_000
    assert body["payment_status"] == "refunded"
    assert body["job_status"] == "cancelled"
    assert body["job_payment_status"] == "refunded"

    payment = (await db.execute(select(JobPayment))).scalar_one()
    assert payment.payment_status == JobPaymentStatus.REFUNDED
    earning = (await db.execute(select(ProviderEarning))).scalar_one()
    assert earning.status == EarningStatus.REFUNDED
    refund = (await db.execute(select(Refund).where(Refund.job_request_id == job.id))).scalar_one()
    assert refund.processed_by == admin_user.id

    notes = await db.execute(select(Notification.type).where(Notification.user_id == customer_user.id))
    assert "job_updated" in notes.scalars().all()


@pytest.mark.asyncio
async def test_job_refund_without_payment(
    client: AsyncClient, admin_user: User, customer_user: User
):
    created = await client.post("/jobs", json={"title": "Paint the fence"}, headers=auth_for(customer_user.id))
    job_id = created.json()["id"]

    response = await client.post(
        f"/admin/job-requests/{job_id}/refunds", json={"reason": "goodwill"}, headers=auth_for(admin_user.id)
    )
    assert response.status_code == 409

    missing = await client.post(
        f"/admin/job-requests/{uuid.uuid4()}/refunds", json={"reason": "goodwill"}, headers=auth_for(admin_user.id)
    )
    assert missing.status_code == 404


# ---------------------------------------------------------------------------
# Provider suspension
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_suspend_and_unsuspend_provider(
    client: AsyncClient, db: AsyncSession, admin_user: User, provider_profile: ProviderProfile
):
    headers = auth_for(admin_user.id)

    response = await client.post(
        f"/admin/providers/{provider_profile.id}/suspend",
        json={"reason": "Repeated no-shows"},
        headers=headers,
    )
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["is_suspended"] is True
    assert body["suspension_reason"] == "Repeated no-shows"
    assert body["suspended_at"] is not None
    assert provider_profile.is_suspended is True

    blocked = await client.get("/providers/me/earnings", headers=auth_for(provider_profile.user_id))
    assert blocked.status_code == 403

    twice = await client.post(
        f"/admin/providers/{provider_profile.id}/suspend", json={"reason": "Again"}, headers=headers
    )
    assert twice.status_code == 400

    restored = await client.post(f"/admin/providers/{provider_profile.id}/unsuspend", headers=headers)
    assert restored.status_code == 200, restored.text
    assert restored.json()["is_suspended"] is False
    assert restored.json()["suspension_reason"] is None
    assert provider_profile.suspended_at is None

    allowed = await client.get("/providers/me/earnings", headers=auth_for(provider_profile.user_id))
    assert allowed.status_code == 200

    not_suspended = await client.post(f"/admin/providers/{provider_profile.id}/unsuspend", headers=headers)
    assert not_suspended.status_code == 400

    audit = await db.execute(select(AuditLog).where(AuditLog.target_id == str(provider_profile.id)))
    rows = {a.action: a for a in audit.scalars().all()}
    assert sorted(rows) == ["suspend_provider", "unsuspend_provider"]
    assert rows["suspend_provider"].detail == "Repeated no-shows"
    assert rows["unsuspend_provider"].metadata_json == {"previous_reason": "Repeated no-shows"}
    assert all(a.admin_user_id == admin_user.id for a in rows.values())


@pytest.mark.asyncio
async def test_suspend_provider_not_found(client: AsyncClient, admin_user: User):
    response = await client.post(
        f"/admin/providers/{uuid.uuid4()}/suspend", json={"reason": "Fraud report"}, headers=auth_for(admin_user.id)
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_suspend_requires_admin(
    client: AsyncClient, customer_user: User, provider_profile: ProviderProfile
):
    response = await client.post(
        f"/admin/providers/{provider_profile.id}/suspend",
        json={"reason": "Fraud report"},
        headers=auth_for(customer_user.id),
    )
    assert response.status_code == 403
    assert provider_profile.is_suspended is False
