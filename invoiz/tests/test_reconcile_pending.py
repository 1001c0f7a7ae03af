"""Reconciliation of pending entries that never got a callback or webhook."""
from datetime import timedelta
from unittest.mock import patch

from invoiz.core.database import get_db_session
from invoiz.features.billing import ledger
from invoiz.features.billing.service import create_order, reconcile_pending
from invoiz.features.subscriptions.service import get_subscription
from invoiz.workers import reconcile_pending as worker


def _status(order_id):
    with get_db_session() as session:
        return ledger.get_by_order(session, order_id).status


def test_reconcile_settles_stale_entries(user, gateway, now, notices):
    paid = create_order(user.user_id, "basic", now=now)
    gateway.add_payment(paid["order_id"], "captured")
    declined = create_order(user.user_id, "basic", now=now)
    gateway.add_payment(declined["order_id"], "failed")
    in_flight = create_order(user.user_id, "basic", now=now)
    gateway.add_payment(in_flight["order_id"], "authorized")

    stats = reconcile_pending(now=now + timedelta(minutes=30), min_age_minutes=10, schedule=notices)

    assert stats == {"checked": 3, "completed": 1, "failed": 1, "pending": 1, "errors": 0}
    assert _status(paid["order_id"]) == "completed"
    assert _status(declined["order_id"]) == "failed"
    assert _status(in_flight["order_id"]) == "pending"
    assert get_subscription(user.user_id).activation_reference is not None
    assert len(notices.notices) == 1


def test_reconcile_skips_recent_entries(user, gateway, now):
    order = create_order(user.user_id, "basic", now=now)
    gateway.add_payment(order["order_id"], "captured")

    stats = reconcile_pending(now=now + timedelta(minutes=5), min_age_minutes=10)

    assert stats["checked"] == 0
    assert _status(order["order_id"]) == "pending"


def test_reconcile_counts_gateway_outage_and_continues(user, gateway, now):
    first = create_order(user.user_id, "basic", now=now)
    second = create_order(user.user_id, "basic", now=now)
    gateway.add_payment(second["order_id"], "captured")
    gateway.transport_failures = 3  # exactly one entry's worth of retries

    stats = reconcile_pending(now=now + timedelta(hours=1), min_age_minutes=10)

    assert stats["errors"] == 1
    assert stats["completed"] == 1
    assert _status(first["order_id"]) == "pending"


def test_worker_cli_runs_once(db, gateway, capsys):
    with patch.object(worker, "init_engine"):
        code = worker.main(["--once", "--limit", "5"])
    assert code == 0
    assert "checked" in capsys.readouterr().out


def test_worker_cli_billing_disabled(db, capsys):
    with patch.object(worker, "init_engine"), \
            patch("invoiz.features.billing.service.get_provider", return_value=None):
        code = worker.main(["--once"])
    assert code == 1
