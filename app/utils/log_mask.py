"""Keep customer PII and Stripe secrets out of shipped logs."""

_SECRET_KEYS = frozenset({"client_secret", "authorization", "stripe_signature", "secret", "token"})


def mask_email(email: str | None) -> str:
    """'jane@example.com' -> 'j***@example.com'."""
    if not email or "@" not in email:
        return "***"
    local, domain = email.rsplit("@", 1)
    return f"{local[:1]}***@{domain}"


def mask_sensitive_fields(logger, method_name, event_dict):
    """structlog processor: redact secret-bearing keys, mask email values."""
    for key, value in list(event_dict.items()):
        if key in _SECRET_KEYS and value:
            event_dict[key] = "[redacted]"
        elif key == "email" and isinstance(value, str) and "***" not in value:
            event_dict[key] = mask_email(value)
    return event_dict
