"""
Customer identity keys.

Accounts and pending updates are matched on email. When a processor event
arrives before any real email is known, the update is filed under a
synthetic placeholder of the form ``processor_customer_<customer_id>``.
Every email comparison goes through ``normalize_email_key`` so the
placeholder scheme lives in one place.
"""

from typing import Optional

SYNTHETIC_EMAIL_PREFIX = "processor_customer_"


def synthetic_email(customer_id: str) -> str:
    """Placeholder email for a processor customer with no known email."""
    return f"{SYNTHETIC_EMAIL_PREFIX}{customer_id}"


def is_synthetic_email(email: Optional[str]) -> bool:
    if not email:
        return False
    return email.strip().startswith(SYNTHETIC_EMAIL_PREFIX)


def normalize_email_key(email: Optional[str]) -> Optional[str]:
    """Storage key for an email.

    Real emails are case-folded. Synthetic placeholders keep their case
    because processor customer ids are case-sensitive.
    """
    if email is None:
        return None
    email = email.strip()
    if not email:
        return None
    if is_synthetic_email(email):
        return email
    folded = email.casefold()
    # Folding must not turn a real email into a placeholder key
    return email if is_synthetic_email(folded) else folded


def email_lookup_keys(email: str) -> list[str]:
    """All stored keys that should match a lookup for ``email``.

    A synthetic placeholder matches only itself. A real email matches its
    case-folded form, the raw form, and the placeholder built from it
    (accounts created with a placeholder before the real email was known).
    """
    email = email.strip()
    if is_synthetic_email(email):
        return [email]

    keys = []
    for key in (normalize_email_key(email), email, synthetic_email(email)):
        if key and key not in keys:
            keys.append(key)
    return keys
