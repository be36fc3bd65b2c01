import enum

# Enums are stored as VARCHAR columns. Values read back from the database are
# plain strings; they compare equal to the members because of the str mixin,
# and code that needs the member calls e.g. BookingStatus(value).


class _ValueEnum(str, enum.Enum):
    # Interpolates as the stored value, not "BookingStatus.PAID"
    def __str__(self) -> str:
        return self.value


class UserRole(_ValueEnum):
    CUSTOMER = "customer"
    PROVIDER = "provider"
    ADMIN = "admin"


class ProviderPlan(_ValueEnum):
    STARTER = "starter"
    PRO = "pro"
    ELITE = "elite"


class PricingType(_ValueEnum):
    FIXED = "fixed"
    FROM = "from"
    QUOTE = "quote"


class BookingStatus(_ValueEnum):
    REQUESTED = "requested"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    PAID = "paid"
    COMPLETED_BY_PROVIDER = "completed_by_provider"
    COMPLETED = "completed"
    REVIEWED = "reviewed"
    CANCELED_CUSTOMER = "canceled_customer"
    CANCELED_PROVIDER = "canceled_provider"
    DISPUTED = "disputed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class ProviderBookingAction(_ValueEnum):
    ACCEPT = "accept"
    DECLINE = "decline"
    CANCEL = "cancel"
    MARK_COMPLETED = "mark-completed"


class CancellationActor(_ValueEnum):
    CUSTOMER = "customer"
    PROVIDER = "provider"


class RescheduleStatus(_ValueEnum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"


class PaymentType(_ValueEnum):
    DEPOSIT = "deposit"
    REMAINDER = "remainder"
    FULL = "full"


class JobStatus(_ValueEnum):
    OPEN = "open"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CLOSED = "closed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class JobPaymentStatus(_ValueEnum):
    UNPAID = "unpaid"
    PENDING = "pending"
    DEPOSIT_PAID = "deposit_paid"
    FULLY_PAID = "fully_paid"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    FAILED = "failed"


class QuoteStatus(_ValueEnum):
    SUBMITTED = "submitted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class EarningStatus(_ValueEnum):
    HELD = "held"
    AWAITING_PAYOUT = "awaiting_payout"
    TRANSFERRED = "transferred"
    PAID_OUT = "paid_out"
    REFUNDED = "refunded"


class RefundStatus(_ValueEnum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class DisputeStatus(_ValueEnum):
    OPEN = "open"
    RESOLVED = "resolved"
    CLOSED = "closed"


class DisputeResolution(_ValueEnum):
    CUSTOMER = "customer"
    PROVIDER = "provider"


class PayoutRequestStatus(_ValueEnum):
    QUEUED = "queued"
    PAID = "paid"
    REJECTED = "rejected"


class PresenceStatus(_ValueEnum):
    ONLINE = "online"
    AWAY = "away"
    BUSY = "busy"
    OFFLINE = "offline"


class NotificationType(_ValueEnum):
    BOOKING_REQUESTED = "booking_requested"
    BOOKING_ACCEPTED = "booking_accepted"
    BOOKING_DECLINED = "booking_declined"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_PAID = "booking_paid"
    BOOKING_COMPLETED = "booking_completed"
    BOOKING_DISPUTED = "booking_disputed"
    BOOKING_REFUNDED = "booking_refunded"
    PAYMENT_FAILED = "payment_failed"
    PAYOUT = "payout"
    RESCHEDULE_REQUESTED = "reschedule_requested"
    RESCHEDULE_RESPONDED = "reschedule_responded"
    QUOTE_RECEIVED = "quote_received"
    QUOTE_ACCEPTED = "quote_accepted"
    JOB_UPDATED = "job_updated"
