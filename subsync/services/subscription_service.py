"""
Subscription mirror maintenance and the billing flows that feed it.

Stripe is the source of truth; ``subscription_mirrors`` is a cache that must
never hold more than one ``active`` row per user.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError

from subsync.errors import DomainError, Invalid, NotFound
from subsync.extensions import db
from subsync.models.subscription import SubscriptionMirror, mirror_id_for
from subsync.services.ledger_service import LedgerService
from subsync.services.plans import resolve_price_id, validate_plan
from subsync.services.user_directory import UserDirectory
from subsync.utils.clock import from_epoch, utcnow
from subsync.utils.locks import KeyedLock

logger = logging.getLogger(__name__)

PRORATION_BEHAVIOR = "create_prorations"

# Canceled rows younger than this are still rechecked by the resync job
RESYNC_CANCELED_WINDOW = timedelta(days=7)


def _metadata_value(metadata: Dict[str, Any], *keys, default=None):
    for key in keys:
        value = metadata.get(key)
        if value not in (None, ""):
            return value
    return default


def _truthy(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def _first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _period(subscription: Dict[str, Any], key: str) -> Optional[datetime]:
    # Newer API versions moved the billing period onto the subscription item
    value = subscription.get(key)
    if value is None:
        value = _first_item(subscription).get(key)
    return from_epoch(value)


@dataclass
class EnforcementResult:
    user_id: str
    kept_subscription_id: Optional[str]
    canceled: List[str] = field(default_factory=list)
    gateway_failures: Dict[str, str] = field(default_factory=dict)
    mirror_failures: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.gateway_failures and not self.mirror_failures

    def to_dict(self):
        return {
            "userId": self.user_id,
            "keptSubscriptionId": self.kept_subscription_id,
            "canceled": list(self.canceled),
            "gatewayFailures": dict(self.gateway_failures),
            "mirrorFailures": dict(self.mirror_failures),
        }


class SubscriptionService:
    def __init__(self, gateway_initializer, directory: UserDirectory, ledger: LedgerService,
                 price_ids: Optional[Dict[str, str]] = None, locks: Optional[KeyedLock] = None,
                 clock: Callable[[], datetime] = utcnow):
        self._initializer = gateway_initializer
        self.directory = directory
        self.ledger = ledger
        self.price_ids = price_ids or {}
        self.locks = locks or KeyedLock()
        self._clock = clock

    @property
    def gateway(self):
        """Initialized payment gateway; raises ``UpstreamUnavailable`` if it never came up."""
        return self._initializer.get()

    # ==================== MIRROR ====================

    def get_mirror(self, stripe_subscription_id: str) -> Optional[SubscriptionMirror]:
        return SubscriptionMirror.get_by_stripe_id(stripe_subscription_id)

    def upsert_from_stripe(self, subscription: Dict[str, Any], user_id: Optional[str] = None,
                           commit: bool = True) -> Optional[SubscriptionMirror]:
        """
        Copy a Stripe subscription onto its mirror row, creating it if needed.

        A new row needs ``user_id``; without one the event is dropped and
        ``None`` is returned.
        """
        stripe_id = subscription.get("id")
        if not stripe_id:
            raise Invalid("Subscription payload is missing 'id'")

        now = self._clock()
        metadata = subscription.get("metadata") or {}
        record = self.get_mirror(stripe_id)

        if record is None:
            user_id = user_id or _metadata_value(metadata, "userId", "user_id")
            if not user_id:
                logger.warning(
                    "No user for subscription, skipping mirror write",
                    extra={"stripe_subscription_id": stripe_id},
                )
                return None
            record = SubscriptionMirror(
                id=mirror_id_for(stripe_id),
                user_id=user_id,
                stripe_subscription_id=stripe_id,
                created_at=from_epoch(subscription.get("created")) or now,
            )
            db.session.add(record)
        elif user_id:
            record.user_id = user_id

        status = subscription.get("status") or record.status or "incomplete"
        if record.status == "canceled" and status != "canceled" and subscription.get("cancel_at_period_end"):
            # Canceled here and only winding down upstream; stays canceled
            status = "canceled"
        record.status = status
        record.plan_type = _metadata_value(metadata, "planType", "plan_type", default="unknown")
        record.billing_cycle = _metadata_value(metadata, "billingCycle", "billing_cycle", default="monthly")
        record.is_therapy_referral = _truthy(
            _metadata_value(metadata, "isTherapyReferral", "is_therapy_referral", default=False)
        )
        record.stripe_customer_id = subscription.get("customer") or record.stripe_customer_id
        record.current_period_start = _period(subscription, "current_period_start")
        record.current_period_end = _period(subscription, "current_period_end")
        record.cancel_at_period_end = bool(subscription.get("cancel_at_period_end"))
        record.updated_at = now

        if record.status == "canceled":
            record.canceled_at = record.canceled_at or from_epoch(subscription.get("canceled_at")) or now

        if commit:
            try:
                db.session.commit()
            except SQLAlchemyError:
                db.session.rollback()
                raise

        logger.info(
            "Mirror record written",
            extra={"mirror_id": record.id, "status": record.status, "user_id": record.user_id},
        )
        return record

    def set_status(self, stripe_subscription_id: str, status: str) -> Optional[SubscriptionMirror]:
        record = self.get_mirror(stripe_subscription_id)
        if record is None:
            return None

        now = self._clock()
        if status == "canceled":
            record.mark_canceled(now)
        else:
            record.status = status
            record.updated_at = now

        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
        return record

    def mark_canceled(self, stripe_subscription_id: str) -> Optional[SubscriptionMirror]:
        return self.set_status(stripe_subscription_id, "canceled")

    def cancel_for_customer(self, stripe_customer_id: str) -> int:
        """Cancel every mirror row of a customer in a single transaction."""
        now = self._clock()
        records = SubscriptionMirror.for_customer(stripe_customer_id)
        try:
            for record in records:
                record.mark_canceled(now)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

        logger.info(
            "Canceled mirror records for deleted customer",
            extra={"customer_id": stripe_customer_id, "count": len(records)},
        )
        return len(records)

    # ==================== SINGLE ACTIVE ====================

    def enforce_single_active(self, user_id: str, active_subscription_id: Optional[str] = None) -> EnforcementResult:
        """
        Cancel every other active subscription of ``user_id``.

        Each row is handled on its own: the gateway cancel and the mirror
        update are attempted independently, and one row failing never stops
        the rest.
        """
        result = EnforcementResult(user_id=user_id, kept_subscription_id=active_subscription_id)
        others = [
            record.stripe_subscription_id
            for record in SubscriptionMirror.active_for_user(user_id, exclude_stripe_id=active_subscription_id)
        ]
        if not others:
            return result

        logger.info(
            "Enforcing single active subscription",
            extra={"user_id": user_id, "keep": active_subscription_id, "cancel": others},
        )

        try:
            gateway = self.gateway
        except DomainError as e:
            gateway = None
            gateway_error = e.message

        for stripe_id in others:
            if gateway is None:
                result.gateway_failures[stripe_id] = gateway_error
            else:
                try:
                    gateway.cancel_at_period_end(stripe_id)
                except Exception as e:
                    logger.warning(
                        "Gateway cancel failed during enforcement",
                        extra={"stripe_subscription_id": stripe_id, "error": str(e)},
                    )
                    result.gateway_failures[stripe_id] = str(e)

            try:
                record = self.get_mirror(stripe_id)
                if record is not None:
                    record.mark_canceled(self._clock())
                    db.session.commit()
                result.canceled.append(stripe_id)
            except Exception as e:
                db.session.rollback()
                logger.error(
                    "Mirror update failed during enforcement",
                    exc_info=True,
                    extra={"stripe_subscription_id": stripe_id},
                )
                result.mirror_failures[stripe_id] = str(e)

        return result

    def settle_active(self, record: Optional[SubscriptionMirror],
                      subscription: Dict[str, Any]) -> Optional[EnforcementResult]:
        """
        Apply the single-active rule after ``record`` was written from ``subscription``.

        A subscription set to cancel at period end never cancels its
        siblings. If another row of the user is already active it is the one
        that stays, and ``record`` is canceled locally instead.
        """
        if record is None or record.status != "active":
            return None

        stripe_id = record.stripe_subscription_id
        if subscription.get("cancel_at_period_end"):
            if SubscriptionMirror.active_for_user(record.user_id, exclude_stripe_id=stripe_id):
                logger.info(
                    "Winding-down subscription yields to another active subscription",
                    extra={"stripe_subscription_id": stripe_id, "user_id": record.user_id},
                )
                with self.locks.hold(stripe_id):
                    self.mark_canceled(stripe_id)
            return None

        return self.enforce_single_active(record.user_id, stripe_id)

    # ==================== LEDGER ====================

    def record_subscription_created(self, subscription: Dict[str, Any], user_id: str,
                                    user_email: Optional[str] = None, user_name: Optional[str] = None):
        """Best-effort ledger entry; at most one per Stripe subscription."""
        stripe_id = subscription.get("id")
        try:
            if self.ledger.has_record(stripe_id):
                return None
        except SQLAlchemyError:
            db.session.rollback()
            logger.error("Ledger lookup failed", exc_info=True, extra={"stripe_subscription_id": stripe_id})
            return None

        metadata = subscription.get("metadata") or {}
        price = _first_item(subscription).get("price") or {}
        return self.ledger.create_record({
            "transaction_type": "subscription_created",
            "amount": price.get("unit_amount"),
            "currency": price.get("currency") or subscription.get("currency") or "usd",
            "plan_type": _metadata_value(metadata, "planType", "plan_type"),
            "billing_cycle": _metadata_value(metadata, "billingCycle", "billing_cycle"),
            "stripe_subscription_id": stripe_id,
            "period_start": _period(subscription, "current_period_start"),
            "period_end": _period(subscription, "current_period_end"),
            "user_id": user_id,
            "user_email": user_email,
            "user_name": user_name,
            "stripe_customer_id": subscription.get("customer"),
        })

    # ==================== QUERIES ====================

    def current_subscription(self, user_id: str) -> Optional[SubscriptionMirror]:
        if not user_id:
            return None
        return (
            SubscriptionMirror.query
            .filter_by(user_id=user_id, status="active")
            .order_by(SubscriptionMirror.updated_at.desc())
            .first()
        )

    # ==================== BILLING FLOWS ====================

    def find_or_create_customer(self, user_email: str, user_id: Optional[str] = None,
                                metadata: Optional[Dict[str, str]] = None, name: Optional[str] = None):
        gateway = self.gateway
        metadata = dict(metadata or {})
        if user_id:
            metadata["userId"] = user_id

        customer = gateway.find_customer_by_email(user_email)
        if customer is None:
            customer = gateway.create_customer(user_email, metadata=metadata, name=name)
            logger.info("Created Stripe customer", extra={"customer_id": customer["id"]})
        elif user_id and not (customer.get("metadata") or {}).get("userId"):
            merged = {**(customer.get("metadata") or {}), **metadata}
            customer = gateway.update_customer(customer["id"], metadata=merged)
            logger.info("Linked Stripe customer to user", extra={"customer_id": customer["id"], "user_id": user_id})

        if user_id:
            try:
                self.directory.set_stripe_customer_id(user_id, customer["id"])
            except NotFound:
                logger.info("User not in directory, customer ID not cached", extra={"user_id": user_id})
        return customer

    def create_payment_intent(self, amount, currency: str = "usd", plan_type: Optional[str] = None,
                              billing_cycle: Optional[str] = None, is_therapy_referral: bool = False,
                              user_email: Optional[str] = None) -> Dict[str, Any]:
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise Invalid("amount must be a positive integer in minor units")

        customer_id = None
        if user_email:
            try:
                customer = self.find_or_create_customer(
                    user_email, metadata={"source": "payment_intent_creation"}
                )
                customer_id = customer["id"]
            except DomainError as e:
                logger.warning(
                    "Continuing payment intent without customer",
                    extra={"error": e.message},
                )

        intent = self.gateway.create_payment_intent(
            amount,
            (currency or "usd").lower(),
            customer_id=customer_id,
            metadata={
                "plan_type": plan_type or "",
                "billing_cycle": billing_cycle or "",
                "is_therapy_referral": str(bool(is_therapy_referral)).lower(),
            },
        )
        return {
            "id": intent["id"],
            "client_secret": intent.get("client_secret"),
            "amount": intent.get("amount"),
            "currency": intent.get("currency"),
        }

    def _attach_payment_method(self, payment_intent_id: str, customer_id: str):
        gateway = self.gateway
        try:
            intent = gateway.retrieve_payment_intent(payment_intent_id)
            payment_method = intent.get("payment_method")
            if not payment_method:
                logger.info("Payment intent has no payment method", extra={"payment_intent_id": payment_intent_id})
                return
            gateway.attach_payment_method(payment_method, customer_id)
            gateway.update_customer(
                customer_id,
                invoice_settings={"default_payment_method": payment_method},
            )
            logger.info("Payment method attached", extra={"customer_id": customer_id})
        except DomainError as e:
            # Subscription creation still proceeds
            logger.warning(
                "Could not attach payment method",
                extra={"payment_intent_id": payment_intent_id, "error": e.message},
            )

    def create_subscription(self, user_id: str, user_email: str, plan_type: str, billing_cycle: str,
                            is_therapy_referral: bool = False, payment_intent_id: Optional[str] = None,
                            price_id: Optional[str] = None, promotion_code: Optional[str] = None,
                            user_name: Optional[str] = None) -> SubscriptionMirror:
        if not user_id:
            raise Invalid("User ID is required")
        if not user_email:
            raise Invalid("User email is required")
        validate_plan(plan_type, billing_cycle)
        price = resolve_price_id(plan_type, billing_cycle, self.price_ids, requested=price_id)
        # Nothing is canceled unless the gateway is reachable
        gateway = self.gateway

        enforcement = self.enforce_single_active(user_id, None)
        if enforcement.canceled:
            logger.info("Canceled previous subscriptions before creating a new one", extra=enforcement.to_dict())

        customer = self.find_or_create_customer(
            user_email,
            user_id=user_id,
            metadata={"plan_type": plan_type, "is_therapy_referral": str(bool(is_therapy_referral)).lower()},
            name=user_name,
        )

        if payment_intent_id:
            self._attach_payment_method(payment_intent_id, customer["id"])

        promotion_id = None
        if promotion_code:
            promotion = gateway.find_promotion_code(promotion_code)
            if promotion is None:
                raise Invalid(f"Promotion code not found: {promotion_code}")
            promotion_id = promotion["id"]

        subscription = gateway.create_subscription(
            customer["id"],
            price,
            metadata={
                "userId": user_id,
                "planType": plan_type,
                "billingCycle": billing_cycle,
                "isTherapyReferral": str(bool(is_therapy_referral)).lower(),
            },
            promotion_code=promotion_id,
        )
        logger.info(
            "Stripe subscription created",
            extra={"stripe_subscription_id": subscription["id"], "status": subscription.get("status")},
        )

        with self.locks.hold(subscription["id"]):
            record = self.upsert_from_stripe(subscription, user_id=user_id)

        if record.status == "active":
            self.record_subscription_created(subscription, user_id, user_email=user_email, user_name=user_name)
        return record

    def modify_subscription(self, user_id: str, plan_type: str, billing_cycle: str,
                            user_email: Optional[str] = None, price_id: Optional[str] = None) -> Dict[str, Any]:
        if not user_id:
            raise Invalid("User ID is required")
        validate_plan(plan_type, billing_cycle)
        new_price = resolve_price_id(plan_type, billing_cycle, self.price_ids, requested=price_id)
        gateway = self.gateway

        current = self.current_subscription(user_id)
        if current is not None:
            existing = gateway.retrieve_subscription(current.stripe_subscription_id)
        else:
            if not user_email:
                raise NotFound("No active subscription found")
            customer = gateway.find_customer_by_email(user_email)
            if customer is None:
                raise NotFound("Customer not found")
            active = gateway.list_subscriptions(customer["id"], status="active", limit=1)
            if not active:
                raise NotFound("No active subscription found")
            existing = active[0]

        item = _first_item(existing)
        if not item.get("id"):
            raise Invalid("Subscription has no items to modify")

        metadata = {
            **(existing.get("metadata") or {}),
            "userId": user_id,
            "planType": plan_type,
            "billingCycle": billing_cycle,
            "modifiedAt": self._clock().isoformat(),
        }
        with self.locks.hold(existing["id"]):
            updated = gateway.update_subscription(
                existing["id"],
                items=[{"id": item["id"], "price": new_price}],
                proration_behavior=PRORATION_BEHAVIOR,
                metadata=metadata,
            )
            record = self.upsert_from_stripe(updated, user_id=user_id)

        logger.info(
            "Subscription modified",
            extra={"stripe_subscription_id": updated["id"], "plan_type": plan_type, "billing_cycle": billing_cycle},
        )
        return {
            "id": updated["id"],
            "status": updated.get("status"),
            "plan_type": plan_type,
            "billing_cycle": billing_cycle,
            "current_period_start": record.to_dict()["currentPeriodStart"] if record else None,
            "current_period_end": record.to_dict()["currentPeriodEnd"] if record else None,
            "proration_behavior": PRORATION_BEHAVIOR,
        }

    def cancel_subscription(self, subscription_id: str, at_period_end: bool = False) -> Dict[str, Any]:
        if not subscription_id:
            raise Invalid("subscription_id is required")

        gateway = self.gateway
        with self.locks.hold(subscription_id):
            if at_period_end:
                subscription = gateway.cancel_at_period_end(subscription_id)
            else:
                subscription = gateway.cancel_subscription(subscription_id)
            self.upsert_from_stripe(subscription)

        logger.info("Subscription canceled", extra={"stripe_subscription_id": subscription_id})
        return {
            "id": subscription["id"],
            "status": subscription.get("status"),
            "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
            "canceled_at": subscription.get("canceled_at"),
        }

    # ==================== RESYNC ====================

    def resync_subscription(self, stripe_subscription_id: str) -> Optional[SubscriptionMirror]:
        """Overwrite the mirror row with Stripe's live state."""
        with self.locks.hold(stripe_subscription_id):
            try:
                live = self.gateway.retrieve_subscription(stripe_subscription_id)
            except NotFound:
                logger.warning(
                    "Subscription missing upstream, marking canceled",
                    extra={"stripe_subscription_id": stripe_subscription_id},
                )
                return self.mark_canceled(stripe_subscription_id)

            existing = self.get_mirror(stripe_subscription_id)
            if (existing is not None and existing.status == "canceled" and live.get("status") == "active"
                    and not live.get("cancel_at_period_end")
                    and SubscriptionMirror.active_for_user(existing.user_id,
                                                           exclude_stripe_id=stripe_subscription_id)):
                # An enforcement cancel that never reached Stripe
                logger.warning(
                    "Retrying upstream cancel for locally canceled subscription",
                    extra={"stripe_subscription_id": stripe_subscription_id},
                )
                live = self.gateway.cancel_at_period_end(stripe_subscription_id)

            record = self.upsert_from_stripe(live)

        self.settle_active(record, live)
        return record

    def resync_all(self) -> Dict[str, int]:
        """
        Resync every live mirror row plus rows canceled within
        ``RESYNC_CANCELED_WINDOW``, which may still be active upstream.
        """
        cutoff = self._clock() - RESYNC_CANCELED_WINDOW
        rows = SubscriptionMirror.query.filter(
            or_(
                SubscriptionMirror.status != "canceled",
                SubscriptionMirror.canceled_at >= cutoff,
            )
        ).all()
        stripe_ids = [row.stripe_subscription_id for row in rows]
        synced = failed = 0
        for stripe_id in stripe_ids:
            try:
                self.resync_subscription(stripe_id)
                synced += 1
            except Exception:
                db.session.rollback()
                logger.error("Resync failed", exc_info=True, extra={"stripe_subscription_id": stripe_id})
                failed += 1

        logger.info("Mirror resync finished", extra={"synced": synced, "failed": failed})
        return {"synced": synced, "failed": failed}
