import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.enums import NotificationType
from app.models.notification import Notification
from app.models.user import User
from app.services.notifications import _get_email_client, send_email
from tests.conftest import auth_for


async def _inbox(db: AsyncSession, user: User) -> list[Notification]:
    base = datetime.now(timezone.utc) - timedelta(hours=1)
    rows = [
        Notification(
            user_id=user.id, type=NotificationType.BOOKING_PAID, title="Paid", body="Booking paid.",
            created_at=base,
        ),
        Notification(
            user_id=user.id, type=NotificationType.QUOTE_RECEIVED, title="Quote", body="New quote.",
            created_at=base + timedelta(minutes=10),
        ),
        Notification(
            user_id=user.id, type=NotificationType.BOOKING_PAID, title="Paid", body="Another booking paid.",
            is_read=True, created_at=base + timedelta(minutes=20),
        ),
    ]
    db.add_all(rows)
    await db.flush()
    return rows


@pytest.mark.asyncio
async def test_list_notifications_newest_first(client: AsyncClient, db: AsyncSession, customer_user: User):
    rows = await _inbox(db, customer_user)
    response = await client.get("/notifications", headers=auth_for(customer_user.id))
    assert response.status_code == 200
    body = response.json()
    assert body["unread_count"] == 2
    assert [item["id"] for item in body["items"]] == [str(r.id) for r in reversed(rows)]


@pytest.mark.asyncio
async def test_list_notifications_filters(client: AsyncClient, db: AsyncSession, customer_user: User):
    await _inbox(db, customer_user)
    headers = auth_for(customer_user.id)

    unread = await client.get("/notifications?unread_only=true", headers=headers)
    assert len(unread.json()["items"]) == 2
    assert all(not item["is_read"] for item in unread.json()["items"])

    quotes = await client.get("/notifications?type=quote_received", headers=headers)
    assert [item["type"] for item in quotes.json()["items"]] == ["quote_received"]

    bad = await client.get("/notifications?type=not_a_type", headers=headers)
    assert bad.status_code == 422


@pytest.mark.asyncio
async def test_inbox_is_private(
    client: AsyncClient, db: AsyncSession, customer_user: User, other_customer: User
):
    await _inbox(db, customer_user)
    response = await client.get("/notifications", headers=auth_for(other_customer.id))
    assert response.json() == {"items": [], "unread_count": 0}


@pytest.mark.asyncio
async def test_mark_selected_read(client: AsyncClient, db: AsyncSession, customer_user: User):
    rows = await _inbox(db, customer_user)
    response = await client.post(
        "/notifications/read", json={"ids": [str(rows[0].id)]}, headers=auth_for(customer_user.id)
    )
    assert response.status_code == 200
    assert response.json() == {"updated": 1}

    unread = await db.execute(
        select(Notification.id).where(Notification.user_id == customer_user.id, Notification.is_read.is_(False))
    )
    assert unread.scalars().all() == [rows[1].id]


@pytest.mark.asyncio
async def test_mark_all_read_ignores_other_users(
    client: AsyncClient, db: AsyncSession, customer_user: User, other_customer: User
):
    await _inbox(db, customer_user)
    theirs = await _inbox(db, other_customer)

    response = await client.post(
        "/notifications/read", json={"ids": [str(theirs[0].id)]}, headers=auth_for(customer_user.id)
    )
    assert response.json() == {"updated": 0}

    response = await client.post("/notifications/read", json={}, headers=auth_for(customer_user.id))
    assert response.json() == {"updated": 2}

    other_unread = await client.get("/notifications", headers=auth_for(other_customer.id))
    assert other_unread.json()["unread_count"] == 2


# ---------------------------------------------------------------------------
# Presence
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_presence_round_trip(client: AsyncClient, customer_user: User, other_customer: User):
    response = await client.post("/presence", json={"status": "online"}, headers=auth_for(customer_user.id))
    assert response.status_code == 200
    assert response.json()["status"] == "online"

    lookup = await client.get(
        "/presence",
        params=[("user_id", str(customer_user.id)), ("user_id", str(other_customer.id))],
        headers=auth_for(other_customer.id),
    )
    assert lookup.status_code == 200
    assert list(lookup.json()) == [str(customer_user.id)]
    assert lookup.json()[str(customer_user.id)]["status"] == "online"


@pytest.mark.asyncio
async def test_presence_rejects_unknown_status(client: AsyncClient, customer_user: User):
    response = await client.post("/presence", json={"status": "asleep"}, headers=auth_for(customer_user.id))
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_presence_lookup_limit(client: AsyncClient, customer_user: User):
    params = [("user_id", str(uuid.uuid4())) for _ in range(51)]
    response = await client.get("/presence", params=params, headers=auth_for(customer_user.id))
    assert response.status_code == 400


# ---------------------------------------------------------------------------
# Email delivery
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_send_email_dev_mode_only_logs(monkeypatch):
    monkeypatch.setattr(settings, "RESEND_API_KEY", "")
    client = MagicMock()
    with patch("app.services.notifications._get_email_client", return_value=client):
        assert await send_email("jane@example.com", "Booking paid", "<p>Paid</p>") is True
    client.post.assert_not_called()


@pytest.mark.asyncio
async def test_send_email_posts_to_resend(monkeypatch):
    monkeypatch.setattr(settings, "RESEND_API_KEY", "re_test_key")
    client = MagicMock()
    client.post = AsyncMock(return_value=httpx.Response(200, json={"id": "email_1"}))
    with patch("app.services.notifications._get_email_client", return_value=client):
        assert await send_email("jane@example.com", "Booking paid", "<p>Paid</p>") is True

    kwargs = client.post.call_args.kwargs
    assert kwargs["headers"]["Authorization"] == "Bearer re_test_key"
    assert kwargs["json"]["to"] == ["jane@example.com"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "outcome",
    [httpx.Response(422, json={"message": "invalid"}), httpx.ConnectError("refused")],
)
async def test_send_email_failure_returns_false(monkeypatch, outcome):
    monkeypatch.setattr(settings, "RESEND_API_KEY", "re_test_key")
    client = MagicMock()
    if isinstance(outcome, Exception):
        client.post = AsyncMock(side_effect=outcome)
    else:
        client.post = AsyncMock(return_value=outcome)
    with patch("app.services.notifications._get_email_client", return_value=client):
        assert await send_email("jane@example.com", "Booking paid", "<p>Paid</p>") is False


def test_email_client_recreated_when_closed():
    closed = MagicMock()
    closed.is_closed = True
    with patch("app.services.notifications._email_client", closed):
        assert _get_email_client() is not closed
