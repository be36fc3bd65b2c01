from fastapi import HTTPException, status

from app.models.enums import BookingStatus

# Defines all valid status transitions for a booking
ALLOWED_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.REQUESTED: {
        BookingStatus.ACCEPTED,
        BookingStatus.DECLINED,
        BookingStatus.CANCELED_CUSTOMER,
        BookingStatus.CANCELED_PROVIDER,
    },
    BookingStatus.ACCEPTED: {
        BookingStatus.PAID,
        BookingStatus.CANCELED_CUSTOMER,
        BookingStatus.CANCELED_PROVIDER,
    },
    BookingStatus.PAID: {
        BookingStatus.COMPLETED_BY_PROVIDER,
        BookingStatus.CANCELED_CUSTOMER,
        BookingStatus.CANCELED_PROVIDER,
        BookingStatus.DISPUTED,
        BookingStatus.REFUNDED,
        BookingStatus.PARTIALLY_REFUNDED,
    },
    BookingStatus.COMPLETED_BY_PROVIDER: {
        BookingStatus.COMPLETED,
        BookingStatus.DISPUTED,
    },
    BookingStatus.COMPLETED: {
        BookingStatus.REVIEWED,
        BookingStatus.REFUNDED,
        BookingStatus.PARTIALLY_REFUNDED,
    },
    BookingStatus.DISPUTED: {
        BookingStatus.COMPLETED,           # Resolved in favor of provider
        BookingStatus.REFUNDED,            # Resolved in favor of customer
        BookingStatus.PARTIALLY_REFUNDED,
    },
    BookingStatus.PARTIALLY_REFUNDED: {
        BookingStatus.REFUNDED,
    },
    BookingStatus.DECLINED: set(),  # Terminal state
    BookingStatus.CANCELED_CUSTOMER: set(),  # Terminal state
    BookingStatus.CANCELED_PROVIDER: set(),  # Terminal state
    BookingStatus.REFUNDED: set(),  # Terminal state
    BookingStatus.REVIEWED: set(),  # Terminal state
}

# Status names written by older clients and imports
_LEGACY_STATUSES = {
    "pending": BookingStatus.REQUESTED,
    "confirmed": BookingStatus.ACCEPTED,
    "canceled": BookingStatus.CANCELED_CUSTOMER,
    "cancelled": BookingStatus.CANCELED_CUSTOMER,
}

# Bookings that block the provider's slot
ACTIVE_STATUSES = (BookingStatus.ACCEPTED, BookingStatus.PAID)


def normalize_status(value: str | BookingStatus) -> BookingStatus:
    """Map a stored or client-supplied status onto the canonical enum.

    Raises ValueError for names that are neither canonical nor legacy.
    """
    if isinstance(value, BookingStatus):
        return value
    raw = str(value).strip().lower()
    if raw in _LEGACY_STATUSES:
        return _LEGACY_STATUSES[raw]
    return BookingStatus(raw)


def can_transition(current: str | BookingStatus, new: str | BookingStatus) -> bool:
    return normalize_status(new) in ALLOWED_TRANSITIONS.get(normalize_status(current), set())


def is_terminal(current: str | BookingStatus) -> bool:
    return not ALLOWED_TRANSITIONS.get(normalize_status(current), set())


def validate_transition(
    current: str | BookingStatus,
    new: str | BookingStatus,
    action: str = "update",
) -> None:
    """Validate a booking status transition. Raises HTTP 409 if invalid."""
    current = normalize_status(current)
    new = normalize_status(new)
    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=(
                f"Cannot {action} booking: transition from "
                f"'{current.value}' to '{new.value}' is not allowed"
            ),
        )
