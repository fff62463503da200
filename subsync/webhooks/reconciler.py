"""
Applies Stripe webhook events to the subscription mirror.

Authentication and parsing errors are raised to the caller. Once an event is
authenticated and parsed, handler failures are logged and absorbed so Stripe
receives an acknowledgment and does not retry-storm; drift is repaired by a
resync.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from subsync.errors import AuthenticationFailed
from subsync.extensions import db
from subsync.services.subscription_service import SubscriptionService
from subsync.webhooks.security import ALLOWED_DRIFT_SECONDS, parse_event, verify_signature

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    event_id: Optional[str]
    event_type: str
    received: bool = True
    handled: bool = False
    error: Optional[str] = None

    def to_dict(self):
        payload = {"received": self.received, "type": self.event_type, "handled": self.handled}
        if self.error:
            payload["error"] = self.error
        return payload


class WebhookReconciler:
    def __init__(self, subscriptions: SubscriptionService, webhook_secret: Optional[str] = None,
                 allow_unverified: bool = False, tolerance: int = ALLOWED_DRIFT_SECONDS):
        self.subscriptions = subscriptions
        self.webhook_secret = webhook_secret
        self.allow_unverified = allow_unverified
        self.tolerance = tolerance

        self._handlers: Dict[str, Callable[[Dict[str, Any]], bool]] = {
            "customer.subscription.created": self._handle_subscription_created,
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "customer.deleted": self._handle_customer_deleted,
            "invoice.payment_succeeded": self._handle_payment_succeeded,
            "invoice.paid": self._handle_payment_succeeded,
            "invoice.payment_failed": self._handle_payment_failed,
        }

    # ==================== ENTRY POINTS ====================

    def reconcile(self, payload, sig_header: Optional[str]) -> ReconcileResult:
        """Authenticate the raw body, then apply the event."""
        if self.webhook_secret:
            verify_signature(payload, sig_header, self.webhook_secret, self.tolerance)
        elif self.allow_unverified:
            logger.warning("No webhook secret configured, processing event without signature verification")
        else:
            logger.error("Rejecting webhook: no signing secret configured and unverified events are disabled")
            raise AuthenticationFailed("Webhook signing secret is not configured")

        return self.reconcile_event(parse_event(payload))

    def reconcile_event(self, event: Dict[str, Any]) -> ReconcileResult:
        """Apply an already-authenticated event."""
        event_type = event["type"]
        event_id = event.get("id")
        result = ReconcileResult(event_id=event_id, event_type=event_type)

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info("Unhandled event type", extra={"event_type": event_type, "event_id": event_id})
            return result

        logger.info("Processing webhook event", extra={"event_type": event_type, "event_id": event_id})
        try:
            result.handled = bool(handler(event["data"]["object"]))
        except Exception as e:
            db.session.rollback()
            logger.error(
                "Webhook handler failed",
                exc_info=True,
                extra={"event_type": event_type, "event_id": event_id},
            )
            result.error = str(e)
        return result

    # ==================== HELPERS ====================

    def _resolve_user_id(self, subscription: Dict[str, Any]) -> Optional[str]:
        customer_id = subscription.get("customer")
        if customer_id:
            customer = self.subscriptions.gateway.retrieve_customer(customer_id)
            user = self.subscriptions.directory.find_user_by_email(customer.get("email"))
            if user is not None:
                return user.id

        return (subscription.get("metadata") or {}).get("userId")

    def _live_subscription(self, invoice: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        stripe_id = invoice.get("subscription")
        if not stripe_id:
            # Newer API versions nest it under parent.subscription_details
            details = (invoice.get("parent") or {}).get("subscription_details") or {}
            stripe_id = details.get("subscription")
        if isinstance(stripe_id, dict):
            stripe_id = stripe_id.get("id")
        if not stripe_id:
            logger.info("Invoice is not tied to a subscription", extra={"invoice_id": invoice.get("id")})
            return None
        return self.subscriptions.gateway.retrieve_subscription(stripe_id)

    # ==================== HANDLERS ====================

    def _handle_subscription_created(self, subscription):
        stripe_id = subscription["id"]
        user_id = self._resolve_user_id(subscription)
        if not user_id:
            logger.warning("No user found for subscription customer", extra={"stripe_subscription_id": stripe_id})
            return False

        with self.subscriptions.locks.hold(stripe_id):
            record = self.subscriptions.upsert_from_stripe(subscription, user_id=user_id)

        if record.status == "active":
            self.subscriptions.settle_active(record, subscription)
            user = self.subscriptions.directory.get_user(user_id)
            self.subscriptions.record_subscription_created(
                subscription,
                user_id,
                user_email=user.email if user else None,
                user_name=user.display_name if user else None,
            )
        return True

    def _handle_subscription_updated(self, subscription):
        stripe_id = subscription["id"]
        user_id = None
        if self.subscriptions.get_mirror(stripe_id) is None:
            user_id = self._resolve_user_id(subscription)

        with self.subscriptions.locks.hold(stripe_id):
            record = self.subscriptions.upsert_from_stripe(subscription, user_id=user_id)
        if record is None:
            return False

        self.subscriptions.settle_active(record, subscription)
        return True

    def _handle_subscription_deleted(self, subscription):
        stripe_id = subscription["id"]
        with self.subscriptions.locks.hold(stripe_id):
            record = self.subscriptions.mark_canceled(stripe_id)
        if record is None:
            logger.info("Deleted subscription has no mirror record", extra={"stripe_subscription_id": stripe_id})
            return False
        return True

    def _handle_customer_deleted(self, customer):
        self.subscriptions.cancel_for_customer(customer["id"])
        return True

    def _handle_payment_succeeded(self, invoice):
        live = self._live_subscription(invoice)
        if live is None or live.get("status") != "active":
            return False

        stripe_id = live["id"]
        with self.subscriptions.locks.hold(stripe_id):
            record = self.subscriptions.get_mirror(stripe_id)
            if record is None or record.status == "active":
                return False
            if record.status == "canceled" and live.get("cancel_at_period_end"):
                logger.info("Invoice paid for a winding-down subscription, mirror stays canceled",
                            extra={"stripe_subscription_id": stripe_id})
                return False
            record = self.subscriptions.set_status(stripe_id, "active")

        self.subscriptions.settle_active(record, live)
        return True

    def _handle_payment_failed(self, invoice):
        live = self._live_subscription(invoice)
        if live is None or live.get("status") != "past_due":
            return False

        stripe_id = live["id"]
        with self.subscriptions.locks.hold(stripe_id):
            record = self.subscriptions.get_mirror(stripe_id)
            if record is None or record.status == "past_due":
                return False
            self.subscriptions.set_status(stripe_id, "past_due")
        return True
