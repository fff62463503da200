import hashlib
import hmac
import itertools
import json
import time
from datetime import timedelta

import pytest
from faker import Faker

from subsync import create_app
from subsync.errors import NotFound, UpstreamUnavailable
from subsync.extensions import db
from subsync.models import SubscriptionMirror, User
from subsync.models.subscription import mirror_id_for
from subsync.registry import get_services
from subsync.services.stripe_service import GatewayInitializer
from subsync.utils.clock import utcnow

# Initialize Faker for generating test data
fake = Faker()

WEBHOOK_SECRET = "whsec_test_secret"


# Custom pytest marks for organizing tests
def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "webhook: mark test as webhook-reconciliation related"
    )
    config.addinivalue_line(
        "markers",
        "payment: mark test as payment-related"
    )
    config.addinivalue_line(
        "markers",
        "db: mark test as database-intensive"
    )


# ==================== FAKE STRIPE ====================

class FakeGateway:
    """In-memory stand-in for StripeGateway with the same method signatures."""

    def __init__(self):
        self.customers = {}
        self.subscriptions = {}
        self.payment_intents = {}
        self.promotion_codes = {}
        self.attached = []
        self.calls = []
        self.fail_cancel_for = set()
        self._ids = itertools.count(1)

    def _next(self, prefix):
        return f"{prefix}_{next(self._ids):04d}"

    # customers
    def find_customer_by_email(self, email):
        self.calls.append(("find_customer_by_email", email))
        for customer in self.customers.values():
            if customer["email"] == email:
                return dict(customer)
        return None

    def create_customer(self, email, metadata=None, name=None):
        self.calls.append(("create_customer", email))
        customer = {"id": self._next("cus"), "email": email, "name": name, "metadata": dict(metadata or {})}
        self.customers[customer["id"]] = customer
        return dict(customer)

    def update_customer(self, customer_id, **params):
        self.calls.append(("update_customer", customer_id))
        customer = self.customers[customer_id]
        if "metadata" in params:
            customer["metadata"] = dict(params["metadata"])
        if "invoice_settings" in params:
            customer["invoice_settings"] = params["invoice_settings"]
        return dict(customer)

    def retrieve_customer(self, customer_id, expand=None):
        self.calls.append(("retrieve_customer", customer_id))
        if customer_id not in self.customers:
            raise NotFound(f"No such customer: {customer_id}")
        return dict(self.customers[customer_id])

    # subscriptions
    def create_subscription(self, customer_id, price_id, metadata=None, promotion_code=None, idempotency_key=None):
        self.calls.append(("create_subscription", customer_id, price_id))
        subscription = make_stripe_subscription(
            self._next("sub"), customer_id, metadata=metadata, price_id=price_id
        )
        if promotion_code:
            subscription["discounts"] = [promotion_code]
        self.subscriptions[subscription["id"]] = subscription
        return json.loads(json.dumps(subscription))

    def update_subscription(self, subscription_id, **params):
        self.calls.append(("update_subscription", subscription_id, params))
        subscription = self.subscriptions[subscription_id]
        if "items" in params:
            subscription["items"]["data"][0]["price"]["id"] = params["items"][0]["price"]
        if "metadata" in params:
            subscription["metadata"] = dict(params["metadata"])
        if "cancel_at_period_end" in params:
            subscription["cancel_at_period_end"] = params["cancel_at_period_end"]
        return json.loads(json.dumps(subscription))

    def cancel_at_period_end(self, subscription_id):
        self.calls.append(("cancel_at_period_end", subscription_id))
        if subscription_id in self.fail_cancel_for:
            raise UpstreamUnavailable(f"Stripe cancel_at_period_end failed for {subscription_id}")
        if subscription_id not in self.subscriptions:
            raise NotFound(f"No such subscription: {subscription_id}")
        return self.update_subscription(subscription_id, cancel_at_period_end=True)

    def cancel_subscription(self, subscription_id):
        self.calls.append(("cancel_subscription", subscription_id))
        if subscription_id not in self.subscriptions:
            raise NotFound(f"No such subscription: {subscription_id}")
        subscription = self.subscriptions[subscription_id]
        subscription["status"] = "canceled"
        subscription["canceled_at"] = int(time.time())
        return json.loads(json.dumps(subscription))

    def retrieve_subscription(self, subscription_id):
        self.calls.append(("retrieve_subscription", subscription_id))
        if subscription_id not in self.subscriptions:
            raise NotFound(f"No such subscription: {subscription_id}")
        return json.loads(json.dumps(self.subscriptions[subscription_id]))

    def list_subscriptions(self, customer_id, status="active", limit=10):
        matches = [
            json.loads(json.dumps(s)) for s in self.subscriptions.values()
            if s["customer"] == customer_id and s["status"] == status
        ]
        return matches[:limit]

    # payments
    def create_payment_intent(self, amount, currency, customer_id=None, metadata=None):
        intent = {
            "id": self._next("pi"),
            "client_secret": "pi_secret_" + fake.lexify("????????"),
            "amount": amount,
            "currency": currency,
            "customer": customer_id,
            "metadata": dict(metadata or {}),
            "payment_method": None,
        }
        self.payment_intents[intent["id"]] = intent
        return dict(intent)

    def retrieve_payment_intent(self, payment_intent_id):
        if payment_intent_id not in self.payment_intents:
            raise NotFound(f"No such payment_intent: {payment_intent_id}")
        return dict(self.payment_intents[payment_intent_id])

    def attach_payment_method(self, payment_method_id, customer_id):
        self.attached.append((payment_method_id, customer_id))
        return {"id": payment_method_id, "customer": customer_id}

    def find_promotion_code(self, code):
        return self.promotion_codes.get(code)


# ==================== BUILDERS ====================

def make_stripe_subscription(stripe_id, customer_id, status="active", metadata=None,
                             price_id="price_starter_monthly", unit_amount=999, period_days=30):
    start = int(time.time())
    return {
        "id": stripe_id,
        "object": "subscription",
        "customer": customer_id,
        "status": status,
        "cancel_at_period_end": False,
        "created": start,
        "current_period_start": start,
        "current_period_end": start + period_days * 86400,
        "metadata": dict(metadata or {}),
        "items": {
            "data": [{
                "id": f"si_{stripe_id}",
                "price": {"id": price_id, "unit_amount": unit_amount, "currency": "usd"},
            }],
        },
    }


def make_event(event_type, obj, event_id=None):
    return {
        "id": event_id or f"evt_{fake.lexify('????????????')}",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }


def sign_payload(payload, secret=WEBHOOK_SECRET, timestamp=None):
    """Build a Stripe-Signature header the way Stripe does."""
    timestamp = timestamp or int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def add_user(user_id=None, email=None, name=None):
    user = User(id=user_id or fake.uuid4(), email=email or fake.unique.email(), display_name=name or fake.name())
    db.session.add(user)
    db.session.commit()
    return user


def add_mirror(stripe_id, user_id, status="active", customer_id="cus_test", plan_type="starter"):
    now = utcnow()
    record = SubscriptionMirror(
        id=mirror_id_for(stripe_id),
        user_id=user_id,
        stripe_subscription_id=stripe_id,
        stripe_customer_id=customer_id,
        status=status,
        plan_type=plan_type,
        billing_cycle="monthly",
        current_period_start=now,
        current_period_end=now + timedelta(days=30),
        created_at=now,
        updated_at=now,
    )
    db.session.add(record)
    db.session.commit()
    return record


def mirror_status(stripe_id):
    db.session.expire_all()
    record = SubscriptionMirror.get_by_stripe_id(stripe_id)
    return record.status if record else None


# ==================== FIXTURES ====================

@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
def app(gateway):
    """Application wired to the fake gateway and an in-memory database"""
    app = create_app("testing", gateway=GatewayInitializer.ready(gateway))

    with app.app_context():
        db.create_all()

        yield app

        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def services(app):
    return get_services(app)


@pytest.fixture()
def post_webhook(client):
    """POST a signed event to the webhook endpoint"""
    def _post(event, secret=WEBHOOK_SECRET, signature=None):
        payload = json.dumps(event)
        headers = {"Content-Type": "application/json"}
        if signature is not None:
            headers["Stripe-Signature"] = signature
        elif secret:
            headers["Stripe-Signature"] = sign_payload(payload, secret)
        return client.post("/api/stripe-webhook", data=payload, headers=headers)

    return _post
