import pytest
from sqlalchemy.exc import SQLAlchemyError

from subsync.errors import UpstreamUnavailable
from subsync.models import SubscriptionMirror
from subsync.services.secret_provider import SecretProvider
from subsync.services.stripe_service import GatewayInitializer, StripeConfig
from subsync.services.subscription_service import SubscriptionService

from conftest import add_mirror, make_stripe_subscription, mirror_status


@pytest.fixture
def three_active(gateway):
    for stripe_id in ("sub_a", "sub_b", "sub_c"):
        gateway.subscriptions[stripe_id] = make_stripe_subscription(stripe_id, "cus_test")
        add_mirror(stripe_id, "U1")
    return ["sub_a", "sub_b", "sub_c"]


def test_keeps_named_subscription_and_cancels_the_rest(services, gateway, three_active):
    result = services.subscriptions.enforce_single_active("U1", "sub_c")

    assert result.ok
    assert sorted(result.canceled) == ["sub_a", "sub_b"]
    assert mirror_status("sub_a") == "canceled"
    assert mirror_status("sub_b") == "canceled"
    assert mirror_status("sub_c") == "active"
    assert gateway.subscriptions["sub_a"]["cancel_at_period_end"] is True
    assert gateway.subscriptions["sub_c"]["cancel_at_period_end"] is False


def test_without_kept_id_cancels_every_active(services, three_active):
    result = services.subscriptions.enforce_single_active("U1", None)

    assert sorted(result.canceled) == three_active
    assert SubscriptionMirror.query.filter_by(user_id="U1", status="active").count() == 0


def test_no_other_active_makes_no_gateway_calls(services, gateway):
    add_mirror("sub_only", "U1")

    result = services.subscriptions.enforce_single_active("U1", "sub_only")

    assert result.canceled == []
    assert not [c for c in gateway.calls if c[0] == "cancel_at_period_end"]


def test_other_users_are_untouched(services, gateway, three_active):
    add_mirror("sub_z", "U2")

    services.subscriptions.enforce_single_active("U1", "sub_a")

    assert mirror_status("sub_z") == "active"


def test_gateway_failure_on_one_row_does_not_stop_others(services, gateway, three_active):
    gateway.fail_cancel_for.add("sub_a")

    result = services.subscriptions.enforce_single_active("U1", "sub_c")

    assert not result.ok
    assert list(result.gateway_failures) == ["sub_a"]
    assert "sub_a" in result.canceled
    assert mirror_status("sub_a") == "canceled"
    assert mirror_status("sub_b") == "canceled"
    assert gateway.subscriptions["sub_b"]["cancel_at_period_end"] is True


def test_subscription_missing_upstream_still_cancels_mirror(services, gateway):
    add_mirror("sub_gone", "U1")
    add_mirror("sub_keep", "U1")

    result = services.subscriptions.enforce_single_active("U1", "sub_keep")

    assert "sub_gone" in result.gateway_failures
    assert mirror_status("sub_gone") == "canceled"


def test_unavailable_gateway_records_failures_and_cancels_mirrors(services, three_active):
    broken = GatewayInitializer(
        SecretProvider(environ={}),
        StripeConfig(secret_name="stripe-secret-key", init_timeout=1.0),
    )
    subscriptions = SubscriptionService(broken, services.directory, services.ledger)

    result = subscriptions.enforce_single_active("U1", "sub_c")

    assert sorted(result.gateway_failures) == ["sub_a", "sub_b"]
    assert sorted(result.canceled) == ["sub_a", "sub_b"]
    assert mirror_status("sub_a") == "canceled"
    assert mirror_status("sub_b") == "canceled"


def test_create_with_unavailable_gateway_leaves_existing_subscription_active(services, gateway):
    gateway.subscriptions["sub_0"] = make_stripe_subscription("sub_0", "cus_test")
    add_mirror("sub_0", "U1")
    broken = GatewayInitializer(
        SecretProvider(environ={}),
        StripeConfig(secret_name="stripe-secret-key", init_timeout=1.0),
    )
    subscriptions = SubscriptionService(
        broken, services.directory, services.ledger, price_ids={"starter:monthly": "price_starter_monthly"},
    )

    with pytest.raises(UpstreamUnavailable):
        subscriptions.create_subscription("U1", "parent@example.com", "starter", "monthly")

    assert mirror_status("sub_0") == "active"
    assert SubscriptionMirror.query.count() == 1


def test_mirror_failure_on_one_row_does_not_stop_others(services, gateway, three_active, monkeypatch):
    original = SubscriptionMirror.mark_canceled

    def flaky(self, when=None):
        if self.stripe_subscription_id == "sub_a":
            raise SQLAlchemyError("row locked")
        return original(self, when)

    monkeypatch.setattr(SubscriptionMirror, "mark_canceled", flaky)
    result = services.subscriptions.enforce_single_active("U1", "sub_c")
    monkeypatch.undo()

    assert list(result.mirror_failures) == ["sub_a"]
    assert result.canceled == ["sub_b"]
    assert mirror_status("sub_a") == "active"
    assert mirror_status("sub_b") == "canceled"
    assert gateway.subscriptions["sub_a"]["cancel_at_period_end"] is True


def test_result_to_dict(services, three_active):
    payload = services.subscriptions.enforce_single_active("U1", "sub_a").to_dict()

    assert payload["userId"] == "U1"
    assert payload["keptSubscriptionId"] == "sub_a"
    assert sorted(payload["canceled"]) == ["sub_b", "sub_c"]
    assert payload["gatewayFailures"] == {}
