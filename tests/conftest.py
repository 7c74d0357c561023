"""
Pytest configuration for keyledger tests.
Points the service at a throwaway SQLite database and test secrets.
"""

import hashlib
import hmac
import os
import tempfile
import time
from unittest.mock import AsyncMock, MagicMock

# Must be set before any keyledger imports
_test_data_dir = tempfile.mkdtemp(prefix="keyledger_test_")
os.environ.setdefault("KEYLEDGER_DATA_DIRECTORY", _test_data_dir)
os.environ.setdefault("KEYLEDGER_LOG_DIRECTORY", os.path.join(_test_data_dir, "logs"))
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_test_data_dir}/test.db")
os.environ["KEYLEDGER_STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["KEYLEDGER_STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["KEYLEDGER_INTERNAL_API_KEY"] = "test-internal-key"
os.environ["KEYLEDGER_SCHEDULER_ENABLED"] = "false"

import pytest

from sqlmodel import SQLModel

from keyledger.core.database import get_engine
from keyledger.models import AccessLogEntry, Credential, PaymentRecord, Subscriber
from keyledger.services.stripe_gateway import StripeGateway

SQLModel.metadata.create_all(get_engine())

# Load error registry so KeyLedgerError returns correct HTTP status codes
from keyledger.core.errors.registry import error_registry
error_registry.load()

WEBHOOK_SECRET = os.environ["KEYLEDGER_STRIPE_WEBHOOK_SECRET"]
INTERNAL_KEY = os.environ["KEYLEDGER_INTERNAL_API_KEY"]


@pytest.fixture(autouse=True)
def clean_tables():
    """Every test starts from empty tables."""
    with get_engine().begin() as conn:
        for model in (AccessLogEntry, Credential, PaymentRecord, Subscriber):
            conn.execute(model.__table__.delete())
    yield


@pytest.fixture
def gateway():
    """StripeGateway double; tests set return values per call."""
    mock = MagicMock(spec=StripeGateway)
    mock.create_refund = AsyncMock()
    mock.retrieve_subscription = AsyncMock()
    mock.list_checkout_sessions = AsyncMock(return_value=[])
    return mock


@pytest.fixture
def internal_headers():
    return {"X-Internal-API-Key": INTERNAL_KEY}


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header for ``payload``."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def make_event(event_type: str, obj: dict, event_id: str = "evt_test_1") -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "livemode": False,
        "data": {"object": obj},
    }


def checkout_session(user_id="u1", session_id="cs_test_1", payment_intent="pi_test_1", **overrides) -> dict:
    obj = {
        "id": session_id,
        "object": "checkout.session",
        "mode": "payment",
        "payment_status": "paid",
        "payment_intent": payment_intent,
        "customer": "cus_test_1",
        "amount_total": 999,
        "currency": "eur",
        "success_url": "https://example.test/success",
        "cancel_url": "https://example.test/cancel",
        "metadata": {"userId": user_id} if user_id else {},
    }
    obj.update(overrides)
    return obj


def subscription(user_id="u1", sub_id="sub_test_1", status="active", period_end=None, **overrides) -> dict:
    obj = {
        "id": sub_id,
        "object": "subscription",
        "status": status,
        "customer": "cus_test_1",
        "current_period_start": int(time.time()),
        "current_period_end": period_end if period_end is not None else int(time.time()) + 30 * 86400,
        "latest_invoice": "in_test_1",
        "items": {"data": [{"price": {"id": "price_1", "unit_amount": 1499, "currency": "eur"}, "quantity": 1}]},
        "metadata": {"userId": user_id} if user_id else {},
    }
    obj.update(overrides)
    return obj


def invoice(user_id="u1", invoice_id="in_test_2", payment_intent="pi_test_2", period_end=None, **overrides) -> dict:
    end = period_end if period_end is not None else int(time.time()) + 31 * 86400
    obj = {
        "id": invoice_id,
        "object": "invoice",
        "customer": "cus_test_1",
        "subscription": "sub_test_1",
        "payment_intent": payment_intent,
        "amount_paid": 1499,
        "currency": "eur",
        "billing_reason": "subscription_cycle",
        "lines": {"data": [{"period": {"start": end - 30 * 86400, "end": end}}]},
        "subscription_details": {"metadata": {"userId": user_id} if user_id else {}},
        "metadata": {},
    }
    obj.update(overrides)
    return obj


def payment_intent(pi_id="pi_test_3", metadata=None, **overrides) -> dict:
    obj = {
        "id": pi_id,
        "object": "payment_intent",
        "status": "succeeded",
        "amount": 999,
        "amount_received": 999,
        "currency": "eur",
        "customer": "cus_test_1",
        "metadata": metadata or {},
    }
    obj.update(overrides)
    return obj
