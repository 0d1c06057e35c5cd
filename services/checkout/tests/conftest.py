"""Pytest fixtures for the checkout service."""

import json
import os
from datetime import datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

import httpx
import pytest

os.environ.setdefault("ORDER_SERVICE_URL", "http://order-service")
os.environ.setdefault("PROMO_SERVICE_URL", "http://promo-service")
os.environ.setdefault("WALLET_SERVICE_URL", "http://wallet-service")
os.environ.setdefault("SETTINGS_SERVICE_URL", "http://settings-service")

from app.clients import OrderClient, PromoClient, WalletClient  # noqa: E402
from app.clock import FixedClock  # noqa: E402
from app.models import (  # noqa: E402
    Address,
    CheckoutForm,
    DeliveryPolicy,
    DeliverySlotReservation,
    LineItem,
)
from app.orchestrator import CheckoutOrchestrator  # noqa: E402

STORE_TZ = ZoneInfo("Asia/Kolkata")


class FakeRedis:
    """In-memory stand-in for the durable key-value scope (decode_responses=True)."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> bool:
        self.data[key] = value
        return True

    async def delete(self, *keys: str) -> int:
        return sum(1 for key in keys if self.data.pop(key, None) is not None)

    async def aclose(self) -> None:
        pass


class FakeServices:
    """
    Promo / wallet / settings / order services behind one httpx.MockTransport.

    order_responses is consumed in order; each entry is (status_code, body),
    or an httpx exception to raise for that call.
    """

    def __init__(self) -> None:
        self.balance = Decimal("500.00")
        self.policy = {"free_delivery_threshold": "1500", "base_delivery_charge": "60"}
        self.promos: dict[str, dict] = {}
        self.order_responses: list[tuple[int, dict] | httpx.HTTPError] = []
        self.orders: list[dict] = []
        self.fail_transport = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/settings/delivery":
            return httpx.Response(200, json=self.policy)
        if path.startswith("/wallet/"):
            return httpx.Response(200, json={"balance": str(self.balance)})
        if path == "/promo-codes/validate":
            body = json.loads(request.content)
            promo = self.promos.get(body["code"])
            if promo is None:
                return httpx.Response(404, json={"valid": False, "reason": "Promo code not found"})
            return httpx.Response(200, json=promo)
        if path == "/orders":
            if self.fail_transport:
                raise httpx.ConnectError("connection refused", request=request)
            outcome = self.order_responses.pop(0) if self.order_responses else None
            if isinstance(outcome, httpx.HTTPError):
                raise outcome
            self.orders.append(json.loads(request.content))
            if outcome is not None:
                status, body = outcome
            else:
                status, body = 201, {"success": True, "data": {"order": {"order_number": f"ORD-{len(self.orders)}"}}}
            return httpx.Response(status, json=body)
        return httpx.Response(404, json={"detail": "not found"})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def local(year, month, day, hour=0, minute=0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=STORE_TZ)


def make_reservation(day: str, start: str = "16:00", end: str = "18:00", slot_id: int = 7):
    return DeliverySlotReservation(
        date=day,
        window={"start_time": start, "end_time": end},
        pin_code="560001",
        slot_id=slot_id,
        slot_name="Evening",
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(local(2026, 10, 19, 10, 0))


@pytest.fixture
def redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def services() -> FakeServices:
    return FakeServices()


@pytest.fixture
def policy() -> DeliveryPolicy:
    return DeliveryPolicy(free_delivery_threshold=Decimal("1500"), base_delivery_charge=Decimal("60"))


@pytest.fixture
def items() -> list[LineItem]:
    return [
        LineItem(product_id=1, name="Chocolate Truffle Cake", quantity=1, unit_price=Decimal("1000.00")),
        LineItem(product_id=2, name="Red Velvet Jar", quantity=3, unit_price=Decimal("200.00")),
    ]


@pytest.fixture
def checkout(redis, services, policy, clock) -> CheckoutOrchestrator:
    http = services.client()
    return CheckoutOrchestrator(
        "sess-1",
        42,
        redis=redis,
        orders=OrderClient(http, "http://order-service"),
        promos=PromoClient(http, "http://promo-service"),
        wallets=WalletClient(http, "http://wallet-service"),
        policy=policy,
        clock=clock,
        monitor_period=3600,
        save_debounce=0,
    )


@pytest.fixture
def filled_form():
    return CheckoutForm(
        name="Asha Rao",
        email="asha@example.com",
        phone="9876543210",
        address=Address(street="12 MG Road", city="Bengaluru", state="Karnataka", zip_code="560001"),
    )
