from datetime import timedelta

import pytest

from subsync.errors import UpstreamUnavailable
from subsync.extensions import db
from subsync.models import FinancialRecord
from subsync.utils.clock import utcnow
from subsync.workers.celery_app import CELERY_BEAT_SCHEDULE, celery
from subsync.workers.ledger_tasks import sweep_financial_records
from subsync.workers.subscription_sync import resync_subscriptions

from conftest import add_mirror, make_stripe_subscription, mirror_status


def _expired_record(services, stripe_id):
    record = services.ledger.create_record({"amount": 999, "stripe_subscription_id": stripe_id, "user_id": "U1"})
    record.retain_until = utcnow() - timedelta(days=1)
    db.session.commit()
    return record


# ==================== CELERY ====================

def test_beat_schedule_registers_both_jobs():
    tasks = {entry["task"] for entry in CELERY_BEAT_SCHEDULE.values()}

    assert tasks == {sweep_financial_records.name, resync_subscriptions.name}
    assert celery.conf.beat_schedule == CELERY_BEAT_SCHEDULE


def test_sweep_task(services):
    _expired_record(services, "sub_old")
    services.ledger.create_record({"amount": 999, "stripe_subscription_id": "sub_new", "user_id": "U1"})

    result = sweep_financial_records()

    assert result == {"removed": 1}
    assert [r.stripe_subscription_id for r in FinancialRecord.query.all()] == ["sub_new"]


def test_resync_task_single_subscription(app, gateway):
    gateway.subscriptions["sub_1"] = make_stripe_subscription("sub_1", "cus_test", status="past_due")
    add_mirror("sub_1", "U1")

    result = resync_subscriptions("sub_1")

    assert result == {"synced": 1, "failed": 0}
    assert mirror_status("sub_1") == "past_due"


def test_resync_task_all(app, gateway):
    gateway.subscriptions["sub_1"] = make_stripe_subscription("sub_1", "cus_test", status="past_due")
    add_mirror("sub_1", "U1")
    add_mirror("sub_gone", "U2")

    result = resync_subscriptions()

    assert result == {"synced": 2, "failed": 0}
    assert mirror_status("sub_gone") == "canceled"


def test_resync_task_raises_when_stripe_unavailable(app, gateway, monkeypatch):
    add_mirror("sub_1", "U1")

    def unavailable(subscription_id):
        raise UpstreamUnavailable("Stripe retrieve_subscription failed")

    monkeypatch.setattr(gateway, "retrieve_subscription", unavailable)

    # Called outside a worker, retry re-raises the original error
    with pytest.raises(UpstreamUnavailable):
        resync_subscriptions("sub_1")


# ==================== CLI ====================

def test_cli_ledger_sweep(app, services):
    _expired_record(services, "sub_old")

    result = app.test_cli_runner().invoke(args=["ledger-sweep"])

    assert result.exit_code == 0
    assert "Removed 1 expired financial records" in result.output


def test_cli_resync_single(app, gateway):
    gateway.subscriptions["sub_1"] = make_stripe_subscription("sub_1", "cus_test", status="canceled")
    add_mirror("sub_1", "U1")

    result = app.test_cli_runner().invoke(args=["resync", "sub_1"])

    assert result.exit_code == 0
    assert "sub_1: canceled" in result.output


def test_cli_resync_all(app, gateway):
    gateway.subscriptions["sub_1"] = make_stripe_subscription("sub_1", "cus_test")
    add_mirror("sub_1", "U1")

    result = app.test_cli_runner().invoke(args=["resync"])

    assert result.exit_code == 0
    assert "Synced 1 subscriptions, 0 failed" in result.output


def test_cli_init_db(app):
    result = app.test_cli_runner().invoke(args=["init-db"])

    assert result.exit_code == 0
    assert "Database initialized" in result.output
