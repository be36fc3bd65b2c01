"""Money maths for bookings and jobs.

All amounts are integer cents. Forward platform fees are always rounded up on
basis points so the platform never under-collects; refund proration rounds
half-up so the refunded parts always add back to the refund amount.
"""
import math
from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal

from app.config import settings
from app.models.enums import PaymentType, ProviderPlan


class SplitError(ValueError):
    """Invalid input to the split calculator."""


@dataclass(frozen=True)
class PaymentSplit:
    total_charge_cents: int
    platform_fee_cents: int
    provider_amount_cents: int
    currency: str

    def as_dict(self) -> dict:
        return {
            "total_charge_cents": self.total_charge_cents,
            "platform_fee_cents": self.platform_fee_cents,
            "provider_amount_cents": self.provider_amount_cents,
            "currency": self.currency,
        }


@dataclass(frozen=True)
class RefundSplit:
    refund_amount_cents: int
    platform_fee_refunded_cents: int
    provider_amount_refunded_cents: int


@dataclass(frozen=True)
class JobPaymentPlan:
    total_cents: int
    deposit_cents: int
    remainder_cents: int
    full_payment: bool

    @property
    def first_payment_type(self) -> PaymentType:
        return PaymentType.FULL if self.full_payment else PaymentType.DEPOSIT

    @property
    def first_charge_cents(self) -> int:
        return self.total_cents if self.full_payment else self.deposit_cents


def plan_fee_bps(plan_tier: str | ProviderPlan) -> int:
    try:
        plan = ProviderPlan(plan_tier)
    except ValueError:
        raise SplitError(f"Unknown plan tier: {plan_tier!r}") from None
    return {
        ProviderPlan.STARTER: settings.PLATFORM_FEE_BPS_STARTER,
        ProviderPlan.PRO: settings.PLATFORM_FEE_BPS_PRO,
        ProviderPlan.ELITE: settings.PLATFORM_FEE_BPS_ELITE,
    }[plan]


def _require_amount(value, name: str, allow_zero: bool = False) -> int:
    # bool is an int subclass; floats (including inf/nan) are rejected outright
    if isinstance(value, bool) or not isinstance(value, int):
        raise SplitError(f"{name} must be an integer number of cents")
    if value < 0 or (value == 0 and not allow_zero):
        raise SplitError(f"{name} must be positive")
    return value


def fee_for(amount_cents: int, bps: int) -> int:
    """Platform fee on ``amount_cents`` at ``bps``, rounded up to the cent."""
    return int((Decimal(amount_cents) * Decimal(bps) / Decimal(10_000)).to_integral_value(rounding=ROUND_CEILING))


def compute_split(
    base_amount_cents: int,
    plan_tier: str | ProviderPlan,
    payment_type: str | PaymentType,
    prior_platform_fee_collected_cents: int = 0,
    job_total_cents: int | None = None,
) -> PaymentSplit:
    """Split one charge between the platform and the provider.

    ``full`` and ``deposit`` charge the plan's rate on the amount itself. A
    ``remainder`` tops the platform up to the fee the whole job would have
    paid in one go, so deposit plus remainder never collects more than a
    single full payment.
    """
    amount = _require_amount(base_amount_cents, "base_amount_cents")
    prior = _require_amount(
        prior_platform_fee_collected_cents, "prior_platform_fee_collected_cents", allow_zero=True
    )
    bps = plan_fee_bps(plan_tier)
    try:
        kind = PaymentType(payment_type)
    except ValueError:
        raise SplitError(f"Unknown payment type: {payment_type!r}") from None

    if kind == PaymentType.REMAINDER:
        if job_total_cents is None:
            raise SplitError("job_total_cents is required for a remainder payment")
        job_total = _require_amount(job_total_cents, "job_total_cents")
        if job_total < amount:
            raise SplitError("job_total_cents cannot be smaller than the remainder")
        fee = max(fee_for(job_total, bps) - prior, 0)
    else:
        fee = fee_for(amount, bps)

    fee = min(fee, amount)
    return PaymentSplit(
        total_charge_cents=amount,
        platform_fee_cents=fee,
        provider_amount_cents=amount - fee,
        currency=settings.CURRENCY,
    )


def _prorate(part: int, refund_amount: int, original_charge: int) -> int:
    return int(
        (Decimal(part) * Decimal(refund_amount) / Decimal(original_charge)).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
    )


def prorate_refund(
    refund_amount_cents: int,
    original_charge_cents: int,
    original_fee_cents: int | None,
    transfer_amount_cents: int | None = None,
) -> RefundSplit:
    """Share a refund between the platform fee and the provider's transfer."""
    refund = _require_amount(refund_amount_cents, "refund_amount_cents")
    if original_charge_cents <= 0:
        return RefundSplit(refund, 0, refund)

    if original_fee_cents is None and transfer_amount_cents is not None:
        provider_part = min(max(_prorate(transfer_amount_cents, refund, original_charge_cents), 0), refund)
        return RefundSplit(refund, refund - provider_part, provider_part)

    fee_part = min(max(_prorate(original_fee_cents or 0, refund, original_charge_cents), 0), refund)
    return RefundSplit(refund, fee_part, refund - fee_part)


def resolve_final_amount(booking) -> int:
    """The amount to charge: a positive provider quote wins over the list price."""
    quoted = booking.provider_quoted_price
    if quoted is not None and quoted > 0:
        return quoted
    return booking.price_at_booking


def calculate_gst(gross_cents: int, charges_gst: bool) -> int:
    """GST contained in a GST-inclusive amount (3/23 of gross at 15%)."""
    if not charges_gst or gross_cents <= 0:
        return 0
    rate = Decimal(settings.GST_RATE_BPS) / Decimal(10_000)
    return int((Decimal(gross_cents) * rate / (1 + rate)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def job_payment_plan(total_cents: int, full_payment_mode: bool | None = None) -> JobPaymentPlan:
    total = _require_amount(total_cents, "total_cents")
    if full_payment_mode is None:
        full_payment_mode = settings.FULL_PAYMENT_MODE
    if full_payment_mode:
        return JobPaymentPlan(total, total, 0, True)
    deposit = (Decimal(total) * Decimal(settings.JOB_DEPOSIT_BPS) / Decimal(10_000)).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    deposit = min(max(1, int(deposit)), total)
    return JobPaymentPlan(total, deposit, total - deposit, False)


def score_quote(
    amount_total: int,
    lowest_amount: int,
    rating: float | None,
    days_until_available: float | None,
    response_speed_hours: int,
) -> float:
    """Rank a quote between 0 and 1.

    Weights: provider rating 0.4, price competitiveness 0.2, how soon the
    provider can start 0.2, promised response speed 0.2.
    """
    rating_score = (rating or 0) / 5
    price_score = lowest_amount / amount_total if amount_total > 0 else 0
    if days_until_available is None or not math.isfinite(days_until_available):
        availability_score = 0.0
    else:
        availability_score = 1 / (1 + max(days_until_available, 0))
    response_score = 1 / max(response_speed_hours, 1)
    score = 0.4 * rating_score + 0.2 * price_score + 0.2 * availability_score + 0.2 * response_score
    return round(min(max(score, 0.0), 1.0), 4)
