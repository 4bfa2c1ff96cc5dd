"""Payment processor webhook verification.

Signed deliveries are checked with the Stripe SDK
(``stripe.WebhookSignature.verify_header``): ``Stripe-Signature`` HMAC and
the replay tolerance window. The body is then decoded as a plain dict, the
shape the reconciliation engine reads.
"""

import json
from typing import Optional

import stripe

from .errors import ValidationError


def construct_event(
    payload: bytes,
    sig_header: Optional[str],
    secret: Optional[str],
    tolerance: int = 300,
) -> dict:
    """Verify a webhook delivery and return the decoded event.

    Without a configured ``secret`` the body is accepted unsigned (local
    development mode).

    Raises:
        ValidationError: ``INVALID_SIGNATURE`` when the header is missing,
            malformed, stale or does not match; ``INVALID_PAYLOAD`` when the
            body is not a JSON object.
    """
    try:
        body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
    except UnicodeDecodeError:
        raise ValidationError("INVALID_PAYLOAD", "webhook body is not UTF-8")
    if secret:
        if not sig_header:
            raise ValidationError("INVALID_SIGNATURE", "missing signature header")
        try:
            stripe.WebhookSignature.verify_header(body, sig_header, secret, tolerance or None)
        except stripe.SignatureVerificationError as e:
            raise ValidationError("INVALID_SIGNATURE", f"signature verification failed: {e.user_message}") from e
    try:
        event = json.loads(body)
    except ValueError:
        raise ValidationError("INVALID_PAYLOAD", "webhook body is not JSON")
    if not isinstance(event, dict):
        raise ValidationError("INVALID_PAYLOAD", "webhook body must be an object")
    return event
