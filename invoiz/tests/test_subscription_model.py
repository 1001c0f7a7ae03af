"""Subscription snapshot: activity is derived from dates at read time."""
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from invoiz.models.subscription import Subscription, STATUS_ACTIVE, STATUS_CANCELLED

NOW = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


def _sub(**kwargs):
    base = dict(
        plan_id="basic",
        start_date=datetime(2024, 1, 1, tzinfo=timezone.utc),
        end_date=datetime(2024, 2, 1, 23, 59, 59, 999000, tzinfo=timezone.utc),
        status=STATUS_ACTIVE,
        activation_reference="pay_1",
        amount_paid=100,
    )
    base.update(kwargs)
    return Subscription(**base)


def test_active_until_end_date():
    sub = _sub()
    assert sub.is_active(NOW)
    assert not sub.is_active(datetime(2024, 2, 2, tzinfo=timezone.utc))


def test_stored_active_status_is_not_trusted_after_expiry():
    sub = _sub(end_date=datetime(2024, 1, 10, tzinfo=timezone.utc))
    assert sub.status == STATUS_ACTIVE
    assert not sub.is_active(NOW)
    assert sub.info(NOW)["is_active"] is False


def test_cancelled_is_inactive_even_before_end_date():
    assert not _sub(status=STATUS_CANCELLED).is_active(NOW)


def test_empty_subscription():
    sub = Subscription()
    assert not sub.is_active(NOW)
    assert sub.days_remaining(NOW) == 0
    assert sub.info(NOW)["amount_paid"] is None


def test_naive_end_date_read_as_utc():
    sub = _sub(end_date=datetime(2024, 1, 15, 10, 30))
    assert sub.is_active(NOW)


def test_days_remaining_counts_from_start_of_today():
    sub = _sub(end_date=datetime(2024, 1, 17, 23, 59, 59, 999000, tzinfo=timezone.utc))
    # 2024-01-15T00:00 -> 2024-01-17T23:59:59.999 is 2.99 days
    assert sub.days_remaining(NOW) == 2


def test_days_remaining_never_negative():
    sub = _sub(end_date=datetime(2023, 12, 1, tzinfo=timezone.utc))
    assert sub.days_remaining(NOW) == 0


def test_info_shape():
    info = _sub().info(NOW)
    assert info["plan_id"] == "basic"
    assert info["end_date"] == "2024-02-01T23:59:59.999Z"
    assert info["amount_paid"] == 1.0
    assert info["is_active"] is True


def test_snapshot_is_immutable():
    sub = _sub()
    with pytest.raises(PydanticValidationError):
        sub.status = STATUS_CANCELLED
