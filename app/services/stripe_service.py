import asyncio
import time as _time
import uuid
from dataclasses import dataclass

import stripe
import structlog
from fastapi import HTTPException

from app.config import settings
from app.metrics import STRIPE_CALL_DURATION
from app.services.pricing import prorate_refund

logger = structlog.get_logger()

_STRIPE_TIMEOUT = 15.0


class StripeServiceError(Exception):
    """Raised when a Stripe operation fails.

    Carries no HTTP semantics so scheduler jobs can call the same functions as
    route handlers. ``code`` is Stripe's error code when one was returned.
    """

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


@dataclass
class ChargeInfo:
    charge_amount: int | None = None
    application_fee_amount: int | None = None
    transfer_amount: int | None = None
    has_transfer: bool = False
    transfer_id: str | None = None


def _is_mock() -> bool:
    return not settings.STRIPE_SECRET_KEY


def _mock_id(prefix: str, idempotency_key: str | None) -> str:
    # Same idempotency key -> same mock id, as Stripe would return
    if idempotency_key:
        return f"{prefix}_mock_{uuid.uuid5(uuid.NAMESPACE_URL, idempotency_key).hex[:24]}"
    return f"{prefix}_mock_{uuid.uuid4().hex[:24]}"


async def _call(operation: str, fn, *args, **kwargs):
    start = _time.monotonic()
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(fn, *args, api_key=settings.STRIPE_SECRET_KEY, **kwargs),
            timeout=_STRIPE_TIMEOUT,
        )
    except stripe.StripeError as e:
        logger.warning("stripe_call_failed", operation=operation, code=getattr(e, "code", None))
        raise StripeServiceError(f"Stripe {operation} failed: {e.user_message or e}", code=getattr(e, "code", None)) from None
    except asyncio.TimeoutError:
        logger.warning("stripe_call_timeout", operation=operation)
        raise StripeServiceError(f"Stripe {operation} timed out", code="timeout") from None
    finally:
        STRIPE_CALL_DURATION.labels(operation=operation).observe(_time.monotonic() - start)


def is_balance_insufficient(exc: Exception) -> bool:
    return isinstance(exc, StripeServiceError) and exc.code == "balance_insufficient"


async def create_payment_intent(
    amount_cents: int,
    destination_account_id: str,
    application_fee_cents: int,
    metadata: dict[str, str] | None = None,
    idempotency_key: str | None = None,
) -> dict:
    """Create a destination-charge PaymentIntent.

    The platform keeps ``application_fee_cents``; Stripe transfers the rest to
    the provider's Connect account when the charge succeeds.
    Returns dict with 'id', 'client_secret' and 'status'.
    """
    if _is_mock():
        # No Stripe key at all: full mock mode, the charge settles immediately
        intent_id = _mock_id("pi", idempotency_key)
        logger.info("stripe_mock_payment_intent", amount=amount_cents, intent_id=intent_id)
        return {"id": intent_id, "client_secret": f"{intent_id}_secret", "status": "succeeded"}

    params: dict = {
        "amount": amount_cents,
        "currency": settings.CURRENCY,
        "automatic_payment_methods": {"enabled": True},
        "metadata": metadata or {},
        "transfer_data": {"destination": destination_account_id},
    }
    if application_fee_cents > 0:
        params["application_fee_amount"] = application_fee_cents
    if idempotency_key:
        params["idempotency_key"] = idempotency_key

    intent = await _call("create_payment_intent", stripe.PaymentIntent.create, **params)
    logger.info("stripe_payment_intent_created", intent_id=intent.id, amount=amount_cents)
    return {"id": intent.id, "client_secret": intent.client_secret, "status": intent.status}


async def retrieve_payment_intent(payment_intent_id: str) -> dict:
    if _is_mock() or payment_intent_id.startswith("pi_mock_"):
        return {"id": payment_intent_id, "status": "succeeded", "amount": None, "metadata": {}}

    intent = await _call("retrieve_payment_intent", stripe.PaymentIntent.retrieve, payment_intent_id)
    return {
        "id": intent.id,
        "status": intent.status,
        "amount": intent.amount,
        "metadata": dict(intent.metadata or {}),
    }


async def cancel_payment_intent(payment_intent_id: str, idempotency_key: str | None = None) -> None:
    """Cancel an unpaid PaymentIntent. Already-final intents are left alone."""
    if _is_mock() or payment_intent_id.startswith("pi_mock_"):
        logger.info("stripe_mock_cancel", intent_id=payment_intent_id)
        return

    intent = await _call("retrieve_payment_intent", stripe.PaymentIntent.retrieve, payment_intent_id)
    if intent.status in ("canceled", "succeeded"):
        logger.info("stripe_cancel_skipped", intent_id=payment_intent_id, status=intent.status)
        return
    if intent.status == "processing":
        raise StripeServiceError(f"PaymentIntent {payment_intent_id} is still processing")
    params: dict = {}
    if idempotency_key:
        params["idempotency_key"] = idempotency_key
    await _call("cancel_payment_intent", stripe.PaymentIntent.cancel, payment_intent_id, **params)
    logger.info("stripe_payment_intent_cancelled", intent_id=payment_intent_id)


async def get_charge_info(payment_intent_id: str) -> ChargeInfo:
    """Amounts on the latest charge of a PaymentIntent (fee, transfer)."""
    if _is_mock() or payment_intent_id.startswith("pi_mock_"):
        return ChargeInfo()

    intent = await _call("retrieve_payment_intent", stripe.PaymentIntent.retrieve, payment_intent_id)
    charge_id = getattr(intent, "latest_charge", None)
    if not charge_id:
        return ChargeInfo()
    if not isinstance(charge_id, str):
        charge_id = charge_id.id
    charge = await _call("retrieve_charge", stripe.Charge.retrieve, charge_id, expand=["transfer"])

    transfer = getattr(charge, "transfer", None)
    transfer_amount = None
    if transfer is not None and not isinstance(transfer, str):
        transfer_amount = getattr(transfer, "amount", None)
    return ChargeInfo(
        charge_amount=getattr(charge, "amount", None),
        application_fee_amount=getattr(charge, "application_fee_amount", None),
        transfer_amount=transfer_amount,
        has_transfer=bool(transfer),
        transfer_id=transfer if isinstance(transfer, str) else getattr(transfer, "id", None),
    )


async def create_marketplace_refund(
    payment_intent_id: str,
    amount_cents: int,
    reason: str = "requested_by_customer",
    metadata: dict[str, str] | None = None,
    idempotency_key: str | None = None,
) -> dict:
    """Refund a destination charge.

    Reverses the provider transfer and refunds the application fee in
    proportion when the charge carried them. Returns the refund id and status
    plus the prorated platform-fee / provider split of the refunded amount.
    """
    charge_info = await get_charge_info(payment_intent_id)

    if _is_mock() or payment_intent_id.startswith("pi_mock_"):
        logger.info("stripe_mock_refund", intent_id=payment_intent_id, amount=amount_cents)
        refund_id, refund_status = _mock_id("re", idempotency_key), "succeeded"
    else:
        params: dict = {
            "payment_intent": payment_intent_id,
            "amount": amount_cents,
            "reason": reason,
            "metadata": metadata or {},
        }
        if charge_info.has_transfer:
            params["reverse_transfer"] = True
        if charge_info.application_fee_amount:
            params["refund_application_fee"] = True
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        refund = await _call("create_refund", stripe.Refund.create, **params)
        refund_id, refund_status = refund.id, refund.status
        logger.info("stripe_refund_created", refund_id=refund.id, intent_id=payment_intent_id)

    refunded_fee = refunded_provider = None
    if charge_info.charge_amount and (
        charge_info.application_fee_amount is not None or charge_info.transfer_amount is not None
    ):
        split = prorate_refund(
            amount_cents,
            charge_info.charge_amount,
            charge_info.application_fee_amount,
            charge_info.transfer_amount,
        )
        refunded_fee = split.platform_fee_refunded_cents
        refunded_provider = split.provider_amount_refunded_cents

    return {
        "id": refund_id,
        "status": refund_status,
        "charge_info": charge_info,
        "refunded_platform_fee": refunded_fee,
        "refunded_provider_amount": refunded_provider,
    }


async def create_transfer(
    amount_cents: int,
    destination_account_id: str,
    transfer_group: str,
    idempotency_key: str,
    metadata: dict[str, str] | None = None,
) -> dict:
    """Move ``amount_cents`` from the platform balance to a Connect account."""
    if _is_mock():
        transfer_id = _mock_id("tr", idempotency_key)
        logger.info("stripe_mock_transfer", amount=amount_cents, transfer_id=transfer_id)
        return {"id": transfer_id}

    transfer = await _call(
        "create_transfer",
        stripe.Transfer.create,
        amount=amount_cents,
        currency=settings.CURRENCY,
        destination=destination_account_id,
        transfer_group=transfer_group,
        metadata=metadata or {},
        idempotency_key=idempotency_key,
    )
    logger.info("stripe_transfer_created", transfer_id=transfer.id, amount=amount_cents)
    return {"id": transfer.id}


async def create_connect_account(email: str, existing_account_id: str | None = None) -> dict:
    """Create (or reuse) a Connect Express account and return an onboarding link."""
    if _is_mock():
        logger.info("stripe_mock_connect_account", email=email)
        return {
            "account_id": existing_account_id or _mock_id("acct", email),
            "onboarding_url": "https://connect.stripe.com/mock-onboarding",
        }

    account_id = existing_account_id
    if not account_id:
        account = await _call(
            "create_account",
            stripe.Account.create,
            type="express",
            country=settings.STRIPE_CONNECT_COUNTRY,
            email=email,
            capabilities={"card_payments": {"requested": True}, "transfers": {"requested": True}},
        )
        account_id = account.id
        logger.info("stripe_connect_account_created", account_id=account_id)

    account_link = await _call(
        "create_account_link",
        stripe.AccountLink.create,
        account=account_id,
        refresh_url=settings.STRIPE_REFRESH_URL,
        return_url=settings.STRIPE_RETURN_URL,
        type="account_onboarding",
    )
    return {"account_id": account_id, "onboarding_url": account_link.url}


def verify_webhook_signature(payload: bytes, sig_header: str):
    """Verify the Stripe signature and return the event.

    Mock mode only covers outbound calls. Inbound events are always signed.
    """
    # Rejected outright when no secret is configured, in every environment
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("stripe_webhook_rejected_no_secret")
        raise HTTPException(
            status_code=501,
            detail="Webhook signature verification not configured",
        )

    return stripe.Webhook.construct_event(
        payload, sig_header, settings.STRIPE_WEBHOOK_SECRET, api_key=settings.STRIPE_SECRET_KEY
    )
