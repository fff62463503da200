import threading
from datetime import datetime, timedelta

import pytest

from subsync.errors import AlreadyCompleted, Expired, Invalid, NotFound
from subsync.services.token_service import TokenStore

T0 = datetime(2024, 3, 1, 12, 0, 0)


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def store(clock):
    return TokenStore(clock=clock)


def test_issue_sets_expiry_24_hours_out(store):
    record = store.issue("abc123", "p@x.com", "Mia")

    assert record.created_at == T0
    assert record.expires_at == T0 + timedelta(hours=24)
    assert record.is_verified is False
    assert record.verified_at is None


def test_consent_scenario(store, clock):
    store.issue("abc123", "p@x.com", "Mia")
    store.issue("def456", "p@x.com", "Mia")

    clock.advance(hours=1)
    verified = store.verify("abc123")
    assert verified.child_name == "Mia"
    assert verified.parent_email == "p@x.com"
    assert verified.is_verified is True
    assert verified.verified_at == T0 + timedelta(hours=1)

    clock.advance(seconds=1)
    with pytest.raises(AlreadyCompleted):
        store.verify("abc123")

    clock.now = T0 + timedelta(hours=25)
    with pytest.raises(Expired):
        store.verify("def456")


def test_verify_logs_no_family_details(store, caplog):
    store.issue("abc123", "p@x.com", "Mia")

    with caplog.at_level("INFO", logger="subsync.services.token_service"):
        store.verify("abc123")

    assert "Parental consent verified" in caplog.messages
    for record in caplog.records:
        assert "Mia" not in str(vars(record))
        assert "p@x.com" not in str(vars(record))


def test_verify_unknown_token_is_not_found(store):
    with pytest.raises(NotFound):
        store.verify("missing")


def test_status_does_not_evict_expired_token(store, clock):
    store.issue("abc123", "p@x.com", "Mia")
    clock.advance(hours=30)

    first = store.status("abc123")
    second = store.status("abc123")

    assert first.is_verified is False
    assert second.token == "abc123"
    assert len(store) == 1


def test_verify_evicts_expired_token(store, clock):
    store.issue("abc123", "p@x.com", "Mia")
    clock.advance(hours=24, seconds=1)

    with pytest.raises(Expired):
        store.verify("abc123")

    with pytest.raises(NotFound):
        store.status("abc123")
    with pytest.raises(NotFound):
        store.verify("abc123")


def test_token_at_exact_expiry_is_still_valid(store, clock):
    store.issue("abc123", "p@x.com", "Mia")
    clock.advance(hours=24)

    assert store.verify("abc123").is_verified is True


def test_reissue_overwrites_silently(store, clock):
    store.issue("abc123", "p@x.com", "Mia")
    store.verify("abc123")

    clock.advance(hours=2)
    record = store.issue("abc123", "q@x.com", "Leo")

    assert record.is_verified is False
    assert store.status("abc123").parent_email == "q@x.com"
    assert store.verify("abc123").child_name == "Leo"


def test_status_reflects_verification(store):
    store.issue("abc123", "p@x.com", "Mia")
    store.verify("abc123")

    status = store.status("abc123")
    assert status.is_verified is True
    assert status.to_dict()["verified_at"] == "2024-03-01T12:00:00Z"


def test_returned_records_are_copies(store):
    record = store.issue("abc123", "p@x.com", "Mia")
    record.is_verified = True

    assert store.status("abc123").is_verified is False


def test_issue_requires_token_and_email(store):
    with pytest.raises(Invalid):
        store.issue("", "p@x.com", "Mia")
    with pytest.raises(Invalid):
        store.issue("abc123", "", "Mia")


def test_concurrent_verify_succeeds_once(store):
    store.issue("abc123", "p@x.com", "Mia")
    outcomes = []
    lock = threading.Lock()

    def worker():
        try:
            store.verify("abc123")
            result = "ok"
        except AlreadyCompleted:
            result = "already"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 1
    assert outcomes.count("already") == 9
