from app.models.audit_log import AuditLog
from app.models.availability import TimeOff, WeeklySchedule
from app.models.booking import Booking, BookingCancellation
from app.models.dispute import DisputeCase
from app.models.earning import ProviderEarning
from app.models.job_request import JobPayment, JobQuote, JobRequest
from app.models.notification import Notification
from app.models.payout_request import PayoutRequest
from app.models.provider_profile import ProviderProfile
from app.models.refund import Refund
from app.models.reschedule import BookingReschedule
from app.models.review import Review
from app.models.service import Service
from app.models.user import User
from app.models.webhook_event import ProcessedWebhookEvent

__all__ = [
    "AuditLog",
    "User",
    "ProviderProfile",
    "Service",
    "WeeklySchedule",
    "TimeOff",
    "Booking",
    "BookingCancellation",
    "BookingReschedule",
    "JobRequest",
    "JobQuote",
    "JobPayment",
    "ProviderEarning",
    "PayoutRequest",
    "Refund",
    "Review",
    "DisputeCase",
    "ProcessedWebhookEvent",
    "Notification",
]
