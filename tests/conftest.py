"""
Creator Bundles Test Fixtures
=============================

Shared fixtures for all test modules. Everything runs against the in-memory
store/auth/email backends and a Stripe provider that keeps its objects in
dicts but verifies webhook signatures with the real SDK.
"""

import hashlib
import hmac
import json
import time
from typing import Any, Optional

import pytest
from fastapi.testclient import TestClient

from api.server import create_app
from app_context import AppContext
from config import Settings
from errors import UpstreamServiceError
from services.auth_service import InMemoryAuthProvider
from services.email_service import InMemoryEmailSender
from services.payments import StripePaymentProvider
from storage.document_store import InMemoryDocumentStore

WEBHOOK_SECRET = "whsec_test_secret"


# ============================================
# STRIPE
# ============================================

def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    ts = timestamp or int(time.time())
    signed = f"{ts}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def make_event(event_type: str, obj: dict, event_id: str = "evt_test_1") -> bytes:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }).encode("utf-8")


class FakeStripe(StripePaymentProvider):
    """Stripe provider with dict-backed objects; signature checks are real."""

    def __init__(self):
        super().__init__("sk_test_fake", WEBHOOK_SECRET)
        self.sessions: dict[str, dict] = {}
        self.intents: dict[str, dict] = {}
        self.customers: dict[str, dict] = {}
        self.products: list[dict] = []
        self.prices: list[dict] = []
        self.product_failures = 0

    async def retrieve_session(self, session_id: str) -> dict:
        if session_id not in self.sessions:
            raise UpstreamServiceError("Stripe session_retrieve failed", details={"sessionId": session_id})
        return dict(self.sessions[session_id])

    async def retrieve_payment_intent(self, payment_intent_id: str, stripe_account=None) -> dict:
        if payment_intent_id not in self.intents:
            raise UpstreamServiceError("Stripe payment_intent_retrieve failed")
        return dict(self.intents[payment_intent_id])

    async def find_session_by_payment_intent(self, payment_intent_id: str, stripe_account=None):
        for session in self.sessions.values():
            if session.get("payment_intent") == payment_intent_id:
                return dict(session)
        return None

    async def retrieve_customer(self, customer_id: str) -> dict:
        return dict(self.customers.get(customer_id, {"id": customer_id}))

    async def create_product(self, name, description, metadata, stripe_account) -> dict:
        if self.product_failures > 0:
            self.product_failures -= 1
            raise UpstreamServiceError("Stripe product_create failed")
        product = {"id": f"prod_{len(self.products) + 1}", "name": name, "account": stripe_account}
        self.products.append(product)
        return product

    async def create_price(self, product_id, unit_amount, currency, metadata, stripe_account) -> dict:
        price = {
            "id": f"price_{len(self.prices) + 1}",
            "product": product_id,
            "unit_amount": unit_amount,
            "currency": currency,
        }
        self.prices.append(price)
        return price


def checkout_session(
    session_id: str = "cs_test_1",
    bundle_id: str = "bundle_1",
    amount_total: int = 500,
    email: str = "buyer@example.com",
    name: str = "Buyer Person",
    **metadata: Any,
) -> dict:
    return {
        "id": session_id,
        "object": "checkout.session",
        "amount_total": amount_total,
        "currency": "usd",
        "payment_status": "paid",
        "payment_intent": f"pi_{session_id}",
        "customer": "cus_test_1",
        "customer_details": {"email": email, "name": name},
        "metadata": {"bundleId": bundle_id, "contentType": "bundle", **metadata},
    }


# ============================================
# DATA
# ============================================

def parallel_array_bundle(creator_id: str = "creator_1", price: float = 9.99) -> dict:
    return {
        "title": "Summer Pack",
        "description": "Two clips",
        "price": price,
        "creatorId": creator_id,
        "contentItems": ["up_1", "up_2"],
        "contentUrls": ["https://cdn.example.com/1.mp4", "https://cdn.example.com/2.mp4"],
        "contentTitles": ["Beach", "Sunset"],
        "contentThumbnails": ["https://cdn.example.com/1.jpg", "https://cdn.example.com/2.jpg"],
    }


def upload(uid: str, title: str, size: int = 1024, duration: float = 10.0) -> dict:
    return {
        "uid": uid,
        "title": title,
        "downloadUrl": f"https://cdn.example.com/{title}.mp4",
        "thumbnailUrl": f"https://cdn.example.com/{title}.jpg",
        "mimeType": "video/mp4",
        "size": size,
        "duration": duration,
    }


# ============================================
# FIXTURES
# ============================================

@pytest.fixture
def settings():
    """Test configuration with dummy values."""
    return Settings(
        stripe_secret_key="sk_test_fake",
        stripe_webhook_secret=WEBHOOK_SECRET,
        app_url="https://app.example.com",
        support_email="help@example.com",
        job_backoff_base_seconds=0,
    )


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def auth():
    return InMemoryAuthProvider()


@pytest.fixture
def email_sender():
    return InMemoryEmailSender()


@pytest.fixture
def stripe_fake():
    return FakeStripe()


@pytest.fixture
def ctx(settings, store, auth, stripe_fake, email_sender):
    """Fully wired application context on in-memory backends."""
    return AppContext.build(
        settings,
        store=store,
        auth=auth,
        payments=stripe_fake,
        email_sender=email_sender,
    )


@pytest.fixture
def client(ctx):
    """FastAPI test client bound to the in-memory context."""
    with TestClient(create_app(ctx)) as test_client:
        yield test_client
