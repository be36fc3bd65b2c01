from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.availability import TimeOff, WeeklySchedule
from app.models.enums import BookingStatus, EarningStatus, PricingType
from app.models.payout_request import PayoutRequest
from app.models.provider_profile import ProviderProfile
from app.models.service import Service
from app.models.user import User
from app.services.earnings import ensure_booking_earning
from tests.conftest import auth_for, make_booking, make_provider


async def _earning(db, customer, provider, service, status: EarningStatus, transferred_days_ago: int | None = None):
    booking = await make_booking(db, customer, provider, service, status=BookingStatus.COMPLETED)
    earning = await ensure_booking_earning(db, booking, provider)
    earning.status = status
    if transferred_days_ago is not None:
        earning.transferred_at = datetime.now(timezone.utc) - timedelta(days=transferred_days_ago)
    await db.flush()
    return earning


# ---------------------------------------------------------------------------
# Earnings summary
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_earnings_summary_buckets(
    client: AsyncClient, db: AsyncSession, customer_user: User, provider_profile: ProviderProfile, service: Service
):
    await _earning(db, customer_user, provider_profile, service, EarningStatus.PAID_OUT, transferred_days_ago=2)
    await _earning(db, customer_user, provider_profile, service, EarningStatus.TRANSFERRED, transferred_days_ago=40)
    await _earning(db, customer_user, provider_profile, service, EarningStatus.AWAITING_PAYOUT)
    await _earning(db, customer_user, provider_profile, service, EarningStatus.HELD)
    await _earning(db, customer_user, provider_profile, service, EarningStatus.REFUNDED)

    rival = await make_provider(db, "rival@test.com")
    await _earning(db, customer_user, rival, service, EarningStatus.PAID_OUT, transferred_days_ago=1)

    response = await client.get("/providers/me/earnings", headers=auth_for(provider_profile.user_id))
    assert response.status_code == 200
    assert response.json() == {
        "currency": "nzd",
        "lifetime_paid_out_cents": 18_000,
        "last_30_days_paid_out_cents": 9_000,
        "pending_payout_cents": 9_000,
        "held_cents": 9_000,
        "refunded_cents": 9_000,
    }


@pytest.mark.asyncio
async def test_earnings_summary_empty(client: AsyncClient, provider_profile: ProviderProfile):
    response = await client.get("/providers/me/earnings", headers=auth_for(provider_profile.user_id))
    assert response.status_code == 200
    assert response.json()["lifetime_paid_out_cents"] == 0


@pytest.mark.asyncio
async def test_earnings_requires_provider(client: AsyncClient, customer_user: User):
    response = await client.get("/providers/me/earnings", headers=auth_for(customer_user.id))
    assert response.status_code == 403


# ---------------------------------------------------------------------------
# Payout requests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_payout_request_nothing_awaiting(client: AsyncClient, provider_profile: ProviderProfile):
    response = await client.post(
        "/providers/me/payouts/request",
        json={"idempotency_key": "payout-key-0001"},
        headers=auth_for(provider_profile.user_id),
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_payout_request_replays_same_key(
    client: AsyncClient, db: AsyncSession, customer_user: User, provider_profile: ProviderProfile, service: Service
):
    await _earning(db, customer_user, provider_profile, service, EarningStatus.AWAITING_PAYOUT)
    await _earning(db, customer_user, provider_profile, service, EarningStatus.AWAITING_PAYOUT)
    await _earning(db, customer_user, provider_profile, service, EarningStatus.HELD)
    headers = auth_for(provider_profile.user_id)
    payload = {"idempotency_key": "payout-key-0002", "note": "Weekly"}

    first = await client.post("/providers/me/payouts/request", json=payload, headers=headers)
    assert first.status_code == 201, first.text
    body = first.json()
    assert body["amount"] == 18_000
    assert body["status"] == "queued"
    assert body["payouts_disabled"] is False

    second = await client.post("/providers/me/payouts/request", json=payload, headers=headers)
    assert second.status_code == 201
    assert second.json()["id"] == body["id"]

    rows = (await db.execute(select(PayoutRequest))).scalars().all()
    assert len(rows) == 1
    assert rows[0].note == "Weekly"


@pytest.mark.asyncio
async def test_payout_request_key_too_short(client: AsyncClient, provider_profile: ProviderProfile):
    response = await client.post(
        "/providers/me/payouts/request",
        json={"idempotency_key": "short"},
        headers=auth_for(provider_profile.user_id),
    )
    assert response.status_code == 422


# ---------------------------------------------------------------------------
# Schedule and time off
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_schedule_replaces_previous_days(
    client: AsyncClient, db: AsyncSession, provider_profile: ProviderProfile
):
    headers = auth_for(provider_profile.user_id)
    response = await client.put(
        "/providers/me/schedule",
        json={"days": [
            {"day_of_week": 2, "start_time": "09:00", "end_time": "17:00"},
            {"day_of_week": 0, "start_time": "08:00", "end_time": "12:00", "is_enabled": False},
        ]},
        headers=headers,
    )
    assert response.status_code == 200, response.text
    assert [d["day_of_week"] for d in response.json()["days"]] == [0, 2]

    response = await client.put(
        "/providers/me/schedule",
        json={"days": [{"day_of_week": 4, "start_time": "10:00", "end_time": "14:00"}]},
        headers=headers,
    )
    assert response.status_code == 200

    rows = (
        await db.execute(select(WeeklySchedule).where(WeeklySchedule.provider_id == provider_profile.id))
    ).scalars().all()
    assert [r.day_of_week for r in rows] == [4]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "days",
    [
        [{"day_of_week": 1, "start_time": "17:00", "end_time": "09:00"}],
        [{"day_of_week": 7, "start_time": "09:00", "end_time": "17:00"}],
        [
            {"day_of_week": 1, "start_time": "09:00", "end_time": "12:00"},
            {"day_of_week": 1, "start_time": "13:00", "end_time": "17:00"},
        ],
    ],
)
async def test_schedule_validation(client: AsyncClient, provider_profile: ProviderProfile, days):
    response = await client.put(
        "/providers/me/schedule", json={"days": days}, headers=auth_for(provider_profile.user_id)
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_add_time_off(client: AsyncClient, db: AsyncSession, provider_profile: ProviderProfile):
    start = datetime.now(timezone.utc) + timedelta(days=5)
    response = await client.post(
        "/providers/me/time-off",
        json={
            "start_at": start.isoformat(),
            "end_at": (start + timedelta(days=2)).isoformat(),
            "reason": "Holiday",
        },
        headers=auth_for(provider_profile.user_id),
    )
    assert response.status_code == 201, response.text
    assert response.json()["reason"] == "Holiday"

    block = (await db.execute(select(TimeOff))).scalar_one()
    assert block.provider_id == provider_profile.id


@pytest.mark.asyncio
async def test_time_off_end_before_start(client: AsyncClient, provider_profile: ProviderProfile):
    start = datetime.now(timezone.utc) + timedelta(days=5)
    response = await client.post(
        "/providers/me/time-off",
        json={"start_at": start.isoformat(), "end_at": (start - timedelta(hours=1)).isoformat()},
        headers=auth_for(provider_profile.user_id),
    )
    assert response.status_code == 422


# ---------------------------------------------------------------------------
# Connect onboarding
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_onboard_creates_mock_account(client: AsyncClient, db: AsyncSession):
    provider = await make_provider(db, "fresh@test.com", connect_id=None)
    response = await client.post("/providers/me/connect/onboard", headers=auth_for(provider.user_id))
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["account_id"].startswith("acct_mock_")
    assert body["onboarding_url"]
    assert provider.stripe_connect_id == body["account_id"]


@pytest.mark.asyncio
async def test_onboard_keeps_existing_account(client: AsyncClient, provider_profile: ProviderProfile):
    response = await client.post("/providers/me/connect/onboard", headers=auth_for(provider_profile.user_id))
    assert response.status_code == 200
    assert response.json()["account_id"] == "acct_test_fixture"


# ---------------------------------------------------------------------------
# Tax document
# ---------------------------------------------------------------------------


def _utc(year: int, month: int, day: int) -> datetime:
    return datetime(year, month, day, 12, tzinfo=timezone.utc)


async def _dated_earning(db, customer, provider, service, status: EarningStatus, paid_at, transferred_at=None):
    earning = await _earning(db, customer, provider, service, status)
    earning.paid_at = paid_at
    earning.transferred_at = transferred_at
    await db.flush()
    return earning


@pytest.mark.asyncio
async def test_tax_doc_aggregates_year_with_gst(
    client: AsyncClient, db: AsyncSession, customer_user: User, provider_profile: ProviderProfile, service: Service
):
    gst_free = Service(
        provider_id=provider_profile.id,
        title="Green waste removal",
        pricing_type=PricingType.FIXED,
        price_in_cents=10_000,
        charges_gst=False,
    )
    db.add(gst_free)
    await db.flush()

    await _dated_earning(
        db, customer_user, provider_profile, service, EarningStatus.PAID_OUT, _utc(2025, 3, 5), _utc(2025, 3, 12)
    )
    await _dated_earning(db, customer_user, provider_profile, gst_free, EarningStatus.AWAITING_PAYOUT, _utc(2025, 3, 20))
    await _dated_earning(
        db, customer_user, provider_profile, service, EarningStatus.TRANSFERRED, _utc(2025, 7, 1), _utc(2025, 7, 1)
    )
    await _dated_earning(db, customer_user, provider_profile, service, EarningStatus.HELD, _utc(2025, 8, 1))
    await _dated_earning(db, customer_user, provider_profile, service, EarningStatus.REFUNDED, _utc(2025, 9, 1))
    # Earned in December, paid out in the new year
    await _dated_earning(
        db, customer_user, provider_profile, service, EarningStatus.PAID_OUT, _utc(2024, 12, 28), _utc(2025, 1, 4)
    )
    rival = await make_provider(db, "rival@test.com")
    await _dated_earning(db, customer_user, rival, service, EarningStatus.PAID_OUT, _utc(2025, 4, 1), _utc(2025, 4, 2))

    headers = auth_for(provider_profile.user_id)
    response = await client.get("/providers/me/earnings/tax-doc?year=2025", headers=headers)
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["provider_id"] == str(provider_profile.id)
    assert body["charges_gst"] is True
    assert body["year"] == 2025
    assert body["currency"] == "nzd"
    assert body["totals"] == {
        "gross": 30_000,
        "fee": 3_000,
        "gst": 2_608,
        "net": 27_000,
        "payouts_received": 27_000,
        "outstanding_net": 9_000,
    }
    assert body["monthly"] == [
        {"month": "2025-03", "gross": 20_000, "fee": 2_000, "gst": 1_304, "net": 18_000},
        {"month": "2025-07", "gross": 10_000, "fee": 1_000, "gst": 1_304, "net": 9_000},
    ]

    previous = await client.get("/providers/me/earnings/tax-doc?year=2024", headers=headers)
    assert previous.json()["totals"]["gross"] == 10_000
    assert previous.json()["totals"]["payouts_received"] == 0
    assert [m["month"] for m in previous.json()["monthly"]] == ["2024-12"]


@pytest.mark.asyncio
async def test_tax_doc_defaults_to_current_year(client: AsyncClient, provider_profile: ProviderProfile):
    response = await client.get("/providers/me/earnings/tax-doc", headers=auth_for(provider_profile.user_id))
    assert response.status_code == 200
    assert response.json()["year"] == datetime.now(timezone.utc).year
    assert response.json()["monthly"] == []


@pytest.mark.asyncio
async def test_tax_doc_rejects_out_of_range_year(client: AsyncClient, provider_profile: ProviderProfile):
    response = await client.get("/providers/me/earnings/tax-doc?year=1999", headers=auth_for(provider_profile.user_id))
    assert response.status_code == 422


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_fixed_and_quote_services(
    client: AsyncClient, db: AsyncSession, provider_profile: ProviderProfile
):
    headers = auth_for(provider_profile.user_id)

    fixed = await client.post(
        "/providers/me/services",
        json={"title": "  Hedge trimming ", "pricing_type": "fixed", "price_in_cents": 8_000},
        headers=headers,
    )
    assert fixed.status_code == 201, fixed.text
    body = fixed.json()
    assert body["title"] == "Hedge trimming"
    assert body["price_in_cents"] == 8_000
    assert body["provider_id"] == str(provider_profile.id)
    assert body["charges_gst"] is None
    assert body["is_active"] is True

    quote = await client.post(
        "/providers/me/services",
        json={"title": "Deck rebuild", "pricing_type": "quote", "price_in_cents": 50_000, "charges_gst": False},
        headers=headers,
    )
    assert quote.status_code == 201, quote.text
    assert quote.json()["price_in_cents"] == 0
    assert quote.json()["charges_gst"] is False

    rows = (await db.execute(select(Service).where(Service.provider_id == provider_profile.id))).scalars().all()
    assert sorted(s.title for s in rows) == ["Deck rebuild", "Hedge trimming"]

    listing = await client.get("/providers/me/services", headers=headers)
    assert listing.status_code == 200
    assert sorted(s["pricing_type"] for s in listing.json()["services"]) == ["fixed", "quote"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"title": "Hedge trimming", "pricing_type": "fixed"},
        {"title": "Hedge trimming", "pricing_type": "from"},
        {"title": "Hedge trimming", "pricing_type": "fixed", "price_in_cents": 0},
        {"title": "Hedge trimming", "pricing_type": "hourly", "price_in_cents": 8_000},
        {"title": "ab", "pricing_type": "fixed", "price_in_cents": 8_000},
    ],
)
async def test_create_service_validation(client: AsyncClient, provider_profile: ProviderProfile, payload):
    response = await client.post("/providers/me/services", json=payload, headers=auth_for(provider_profile.user_id))
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_create_service_requires_provider(client: AsyncClient, customer_user: User):
    response = await client.post(
        "/providers/me/services",
        json={"title": "Hedge trimming", "pricing_type": "fixed", "price_in_cents": 8_000},
        headers=auth_for(customer_user.id),
    )
    assert response.status_code == 403
