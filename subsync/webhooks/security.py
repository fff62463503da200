import json
import logging

import stripe

from subsync.errors import AuthenticationFailed, Invalid

logger = logging.getLogger(__name__)

ALLOWED_DRIFT_SECONDS = 300  # 5 minutes


def verify_signature(payload, sig_header, secret, tolerance=ALLOWED_DRIFT_SECONDS):
    """Check a Stripe-Signature header against the raw request body."""
    if not sig_header:
        raise AuthenticationFailed("Missing Stripe-Signature header")

    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise Invalid("Webhook body is not valid UTF-8")

    try:
        stripe.WebhookSignature.verify_header(payload, sig_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        logger.warning("Webhook signature verification failed", extra={"error": str(e)})
        raise AuthenticationFailed("Invalid webhook signature")


def parse_event(payload):
    """Decode the raw body into an event dict with ``type`` and ``data.object``."""
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise Invalid("Webhook body is not valid UTF-8")

    try:
        event = json.loads(payload)
    except ValueError:
        raise Invalid("Webhook body is not valid JSON")

    if not isinstance(event, dict):
        raise Invalid("Webhook body must be a JSON object")

    event_type = event.get("type")
    if not event_type or not isinstance(event_type, str):
        raise Invalid("Webhook event is missing 'type'")

    data = event.get("data")
    if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
        raise Invalid("Webhook event is missing 'data.object'", details={"type": event_type})

    return event
