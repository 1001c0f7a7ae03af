"""Plan catalog lookup and validity window."""
from datetime import datetime, timezone

import pytest

from invoiz.core.errors import NotFoundError
from invoiz.core.timeutil import isoformat_z
from invoiz.features.billing.plans import (
    add_months,
    compute_end_date,
    format_plan,
    get_plan,
    list_plans,
)


def test_catalog_order_and_prices():
    plans = list_plans()
    assert [p.plan_id for p in plans] == ["basic", "pro", "premium", "enterprise"]
    assert [p.price for p in plans] == [100, 54900, 99900, 249900]
    assert [p.duration_months for p in plans] == [1, 6, 12, 36]
    assert all(p.currency == "INR" for p in plans)


def test_unknown_plan_raises_not_found():
    with pytest.raises(NotFoundError) as exc:
        get_plan("platinum")
    assert "platinum" in exc.value.message


def test_end_date_is_last_instant_of_day():
    start = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)
    end = compute_end_date(get_plan("basic"), start)
    assert isoformat_z(end) == "2024-02-15T23:59:59.999Z"


def test_end_date_clamps_to_month_length():
    start = datetime(2024, 1, 31, 8, 30, tzinfo=timezone.utc)
    end = compute_end_date(get_plan("basic"), start)
    assert (end.year, end.month, end.day) == (2024, 2, 29)


def test_multi_year_plan():
    start = datetime(2024, 2, 29, tzinfo=timezone.utc)
    end = compute_end_date(get_plan("enterprise"), start)
    assert (end.year, end.month, end.day) == (2027, 2, 28)


def test_add_months_across_year_boundary():
    start = datetime(2023, 11, 30, tzinfo=timezone.utc)
    assert add_months(start, 6) == datetime(2024, 5, 30, tzinfo=timezone.utc)


def test_naive_start_treated_as_utc():
    end = compute_end_date(get_plan("pro"), datetime(2024, 1, 15, 10, 0))
    assert end.tzinfo is not None
    assert isoformat_z(end) == "2024-07-15T23:59:59.999Z"


def test_format_plan_duration_text():
    texts = {p.plan_id: format_plan(p)["duration_text"] for p in list_plans()}
    assert texts == {
        "basic": "1 month",
        "pro": "6 months",
        "premium": "1 year",
        "enterprise": "3 years",
    }
    basic = format_plan(get_plan("basic"))
    assert basic["price_major"] == 1.0
    assert basic["features"]
