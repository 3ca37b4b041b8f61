import asyncio
import hashlib
import hmac
import json
from decimal import Decimal
from typing import Optional

import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from shared.security_config import limiter
from shared.utils import ClientSettings, Settings, create_access_token
from foodeli_api.gateway import (
    InitializedTransaction, PaystackGateway, VerifiedTransaction, build_reference
)
from foodeli_api.service import OrderService
from foodeli_api.store import OrderStore
from foodeli_client.api import ApiError
from foodeli_client.coordinator import ConfirmationCoordinator
from foodeli_client.storage import PaymentStorage

WEBHOOK_SECRET = "sk_test_webhook_secret"
USER_ID = "64b000000000000000000001"
OTHER_USER_ID = "64b000000000000000000002"
ADMIN_ID = "64b0000000000000000000ad"


# --- Server side ---
class FakeGateway(PaystackGateway):
    """Provider stand-in: initialize hands out references, verify reports whatever the test set up."""

    def __init__(self):
        super().__init__(secret_key=WEBHOOK_SECRET)
        self.initialized = []
        self.verify_calls = []
        self.transactions = {}

    async def initialize_transaction(self, email, amount, order_id, callback_url, metadata=None):
        reference = build_reference(order_id)
        self.initialized.append({"email": email, "amount": amount, "order_id": order_id, "reference": reference})
        self.transactions[reference] = {"status": "success", "amount": Decimal(str(amount))}
        return InitializedTransaction(authorization_url=f"https://checkout.test/{reference}", reference=reference)

    async def verify_transaction(self, reference):
        self.verify_calls.append(reference)
        await asyncio.sleep(0)
        tx = self.transactions[reference]
        return VerifiedTransaction(
            success=tx["status"] == "success",
            amount=tx["amount"],
            reference=reference,
            provider_reference="4099260516",
            channel="card",
            paid_at=tx.get("paid_at"),
            gateway_message="Approved" if tx["status"] == "success" else "Declined",
            raw_status=tx["status"],
        )


def sign(body: bytes) -> str:
    return hmac.new(WEBHOOK_SECRET.encode(), body, hashlib.sha512).hexdigest()


def charge_success_event(reference: str, amount_minor: int, paid_at: str = "2026-10-19T10:00:00.000Z") -> bytes:
    return json.dumps({
        "event": "charge.success",
        "data": {
            "id": 4099260516,
            "status": "success",
            "reference": reference,
            "amount": amount_minor,
            "channel": "card",
            "paid_at": paid_at,
            "gateway_response": "Successful",
        },
    }).encode()


@pytest.fixture
def settings():
    return Settings(PAYSTACK_SECRET_KEY=WEBHOOK_SECRET, RATE_LIMIT_ENABLED=False)

@pytest.fixture
def db():
    return AsyncMongoMockClient()["foodeli_test"]

@pytest.fixture
def store(db):
    return OrderStore(db)

@pytest.fixture
def gateway():
    return FakeGateway()

@pytest.fixture
def service(store, gateway, settings):
    return OrderService(store, gateway, settings)

@pytest.fixture
def client(service):
    from foodeli_api.main import app, get_order_service

    app.dependency_overrides[get_order_service] = lambda: service
    limiter.enabled = False
    yield TestClient(app)
    app.dependency_overrides.clear()
    limiter.enabled = True

@pytest.fixture
def auth_headers():
    def make(user_id: str = USER_ID, role: str = "user"):
        token = create_access_token({"sub": user_id, "role": role, "email": "ada@example.com"})
        return {"Authorization": f"Bearer {token}"}
    return make

@pytest.fixture
def order_payload():
    return {
        "products": [{"product": "64f000000000000000000010", "quantity": 2}],
        "address": "12 Admiralty Way, Lekki",
        "totalAmount": 3500.00,
    }


# --- Client side ---
class FakeApi:
    def __init__(self):
        self.verify_calls = []
        self.complete_calls = []
        self.placed_orders = []
        self.initialized = []
        self.verify_errors = []
        self.place_error: Optional[ApiError] = None
        self.init_error: Optional[ApiError] = None

    async def verify_payment(self, reference):
        self.verify_calls.append(reference)
        await asyncio.sleep(0)
        if self.verify_errors:
            raise self.verify_errors.pop(0)
        return {"success": True, "data": {"reference": reference, "status": "success"}}

    async def complete_order(self, order_id):
        self.complete_calls.append(order_id)
        return {"success": True}

    async def place_order(self, order):
        self.placed_orders.append(order)
        await asyncio.sleep(0)
        if self.place_error:
            raise self.place_error
        return {"success": True, "data": {"id": "order-1", "total_amount": str(order["totalAmount"])}}

    async def initialize_payment(self, payment):
        self.initialized.append(payment)
        if self.init_error:
            raise self.init_error
        reference = f"order_{payment['orderId']}_1760868000000"
        return {"success": True, "data": {"authorization_url": f"https://checkout.test/{reference}", "reference": reference}}


class RecordingNotifier:
    def __init__(self):
        self.messages = []

    def notify(self, message, severity):
        self.messages.append((message, severity.value))

    def severities(self):
        return [severity for _, severity in self.messages]


class RecordingNavigator:
    def __init__(self):
        self.navigations = []
        self.redirects = []

    def navigate(self, path, replace=False):
        self.navigations.append((path, replace))

    def redirect(self, url):
        self.redirects.append(url)


class FakePopup:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


class FakeOpener:
    def __init__(self, blocked=False):
        self.blocked = blocked
        self.popup = FakePopup()
        self.opened = []

    def open(self, url):
        self.opened.append(url)
        return None if self.blocked else self.popup


class ManualClock:
    def __init__(self, now=1_760_868_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def client_settings():
    return ClientSettings(
        MESSAGE_DEBOUNCE_SECONDS=0.01,
        STORAGE_POLL_SECONDS=0.01,
        POPUP_POLL_SECONDS=0.01,
        POPUP_CLOSE_GRACE_SECONDS=0.03,
        PAYMENT_SESSION_TIMEOUT_SECONDS=0.3,
        VERIFY_RETRY_DELAY_SECONDS=0.0,
    )

@pytest.fixture
def fake_api():
    return FakeApi()

@pytest.fixture
def notifier():
    return RecordingNotifier()

@pytest.fixture
def navigator():
    return RecordingNavigator()

@pytest.fixture
def clock():
    return ManualClock()

@pytest.fixture
def shared_backend():
    # stands in for localStorage shared by checkout page and callback popup
    return {}

@pytest.fixture
def storage(shared_backend, clock):
    return PaymentStorage(shared_backend, ttl_seconds=300, clock=clock)

@pytest.fixture
async def coordinator(fake_api, storage, notifier, navigator, client_settings):
    coordinator = ConfirmationCoordinator(fake_api, storage, notifier, navigator, client_settings)
    coordinator.start()
    yield coordinator
    await coordinator.close()

@pytest.fixture
def opener():
    return FakeOpener()
