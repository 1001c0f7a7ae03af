# invoiz/conftest.py
import sys
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

# Add repo root to PYTHONPATH
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from invoiz.tests.mocks import FakeGateway, TEST_KEY_ID, TEST_KEY_SECRET, TEST_WEBHOOK_SECRET  # noqa: E402


NOW = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    """Deterministic configuration; never reads a developer's .env secrets."""
    from invoiz.core.config import settings

    overrides = {
        "ENV": "test",
        "RAZORPAY_KEY_ID": TEST_KEY_ID,
        "RAZORPAY_KEY_SECRET": TEST_KEY_SECRET,
        "RAZORPAY_WEBHOOK_SECRET": TEST_WEBHOOK_SECRET,
        "GATEWAY_MAX_RETRIES": 3,
        "GATEWAY_RETRY_BACKOFF_SECONDS": 0.0,
        "JWT_SECRET": "test-jwt-secret",
        "ALLOW_HEADER_AUTH": True,
        "EMAIL_API_URL": None,
        "EMAIL_API_KEY": None,
    }
    for key, value in overrides.items():
        monkeypatch.setattr(settings, key, value)
    yield settings


@pytest.fixture
def db(tmp_path):
    """Fresh SQLite database file per test."""
    from invoiz.core.database import init_engine, create_all_tables

    engine = init_engine(f"sqlite:///{tmp_path / 'invoiz_test.db'}")
    create_all_tables()
    yield engine
    engine.dispose()


@pytest.fixture
def gateway():
    """Fake gateway wired in as the billing provider."""
    fake = FakeGateway()
    with patch("invoiz.features.billing.service.get_provider", return_value=fake):
        yield fake


@pytest.fixture
def user(db):
    from invoiz.features.users.service import get_or_create_user

    return get_or_create_user("user_alice", email="alice@example.com", full_name="Alice")


class NoticeRecorder:
    """Scheduler stand-in: records notices instead of sending them."""

    def __init__(self):
        self.notices = []

    def __call__(self, fn, *args):
        self.notices.append(args[0])


@pytest.fixture
def notices():
    return NoticeRecorder()


@pytest.fixture
def now():
    return NOW
