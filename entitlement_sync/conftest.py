# entitlement_sync/conftest.py
import os
import sys
from pathlib import Path

import pytest

# Add repo root to PYTHONPATH
PACKAGE_ROOT = Path(__file__).resolve().parent
REPO_ROOT = PACKAGE_ROOT.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

# In-memory SQLite unless a real test database is provided
os.environ.setdefault("TEST_DATABASE_URL", "sqlite://")


@pytest.fixture(scope="session", autouse=True)
def create_tables():
    """Bind the engine to the test database and create all tables once."""
    from entitlement_sync.core.database import create_all_tables, init_engine

    init_engine(os.environ["TEST_DATABASE_URL"])
    create_all_tables()
    yield


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """Drop and recreate tables so every test starts from an empty store."""
    from entitlement_sync.core.database import reset_database

    reset_database()
    yield


@pytest.fixture
def billing_env(monkeypatch):
    """Billing enabled with test credentials."""
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test123")
    yield


@pytest.fixture
def billing_disabled(monkeypatch):
    from entitlement_sync.core.config import settings

    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    yield


@pytest.fixture
def fake_provider(monkeypatch):
    """FakeBillingProvider wired in wherever get_provider() is looked up."""
    from entitlement_sync.tests.mocks import FakeBillingProvider

    provider = FakeBillingProvider()
    for target in (
        "entitlement_sync.features.billing.reconciliation.get_provider",
        "entitlement_sync.features.billing.webhooks.get_provider",
        "entitlement_sync.features.billing.checkout.get_provider",
    ):
        monkeypatch.setattr(target, lambda: provider)
    yield provider


@pytest.fixture
def user():
    """A freshly signed-up user (inactive, zero quota)."""
    from entitlement_sync.features.entitlements import store

    return store.create_entitlement(
        "0b7c6f1e-3a52-4d8e-9c61-2f4f5a6b7c8d",
        first_name="Amina",
        last_name="Khan",
        email="amina@example.com",
    )
