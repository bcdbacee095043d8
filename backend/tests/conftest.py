"""
Pytest configuration and shared fixtures for billing engine tests.

Tests run against an in-memory Motor stand-in (tests/fakes.py) and a mocked
Stripe client whose construct_event is the real signature check.
"""
import os
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

BACKEND_DIR = Path(__file__).resolve().parents[1]
TESTS_DIR = Path(__file__).resolve().parent
for path in (str(BACKEND_DIR), str(TESTS_DIR)):
    if path not in sys.path:
        sys.path.insert(0, path)

os.environ.setdefault("JWT_SECRET", "test-jwt-secret")

from fakes import FakeClock, FakeDatabase, WEBHOOK_SECRET, utc  # noqa: E402
from services.billing_engine import BillingEngine  # noqa: E402
from services.stripe_service import StripePaymentsClient  # noqa: E402

PRICE_IDS = {
    "STRIPE_PRICE_STARTER": "price_starter_test",
    "STRIPE_PRICE_CREATOR": "price_creator_test",
    "STRIPE_PRICE_PRO": "price_pro_test",
    "STRIPE_PRICE_TEAMS": "price_teams_test",
}


@pytest.fixture(autouse=True)
def stripe_prices(monkeypatch):
    """Plan <-> price id mapping is read from env on every lookup."""
    for key, value in PRICE_IDS.items():
        monkeypatch.setenv(key, value)
    return PRICE_IDS


@pytest.fixture
def clock():
    return FakeClock(utc(2026, 1, 15, 9, 0, 0))


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def payments():
    """Stripe client double. Signature verification is the real implementation."""
    real = StripePaymentsClient(api_key="sk_test_dummy")
    client = MagicMock()
    client.construct_event = MagicMock(side_effect=real.construct_event)
    client.retrieve_subscription = AsyncMock(return_value={})
    client.update_subscription = AsyncMock(return_value={})
    client.cancel_subscription = AsyncMock(return_value={})
    client.create_customer = AsyncMock(return_value={"id": "cus_created"})
    client.create_checkout_session = AsyncMock(
        return_value={"id": "cs_test_123", "url": "https://checkout.stripe.com/c/pay/cs_test_123"}
    )
    return client


@pytest_asyncio.fixture
async def engine(db, payments, clock):
    """BillingEngine over the fakes, with unique indexes in place."""
    billing_engine = BillingEngine(db, payments, clock=clock, webhook_secret=WEBHOOK_SECRET)
    await billing_engine.ensure_indexes()
    return billing_engine
