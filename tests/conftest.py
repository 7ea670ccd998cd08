import json
import time
import uuid
from datetime import date
from decimal import Decimal
from typing import Dict, List

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from settlement.adapters import InvoiceConfirmationAdapter, PollAdapter, WebhookAdapter
from settlement.checkout import CheckoutService
from settlement.currency import CurrencyNormalizer, ExchangeRateCache
from settlement.db import create_schema
from settlement.followups import SettlementFollowups
from settlement.gateways import compute_signature
from settlement.models import Brand, Product, ProductSize, Seller
from settlement.notifications import NotificationDispatcher
from settlement.pricing import CartValidator
from settlement.schemas import GatewayPayment, Invoice
from settlement.services import Services
from settlement.settlement import SettlementEngine

WEBHOOK_SECRET = "whsec_test"
SETTLED_ON = date(2026, 10, 19)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StaticRates:
    """Rate feed returning a fixed table and counting calls."""

    def __init__(self, rates: Dict[str, str], fail: bool = False):
        self.rates = {k: Decimal(v) for k, v in rates.items()}
        self.fail = fail
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.fail:
            raise RuntimeError("feed down")
        return dict(self.rates)


class FakeEmail:
    def __init__(self, fail: bool = False, enabled: bool = True):
        self.fail = fail
        self.enabled = enabled
        self.sent: List[dict] = []

    async def send(self, to: str, subject: str, body_html: str) -> None:
        if self.fail:
            raise RuntimeError("smtp relay unavailable")
        self.sent.append({"to": to, "subject": subject, "html": body_html})


class FakeGateway:
    def __init__(self):
        self.payments: Dict[str, GatewayPayment] = {}
        self.created: List[dict] = []

    async def create_payment(self, amount, currency, destination, platform_fee, metadata):
        payment = GatewayPayment(
            id=f"pi_{len(self.created) + 1}",
            status="requires_payment_method",
            amount=amount,
            currency=currency.lower(),
            application_fee_amount=platform_fee,
            metadata=metadata,
            client_secret="secret_123",
            transfer_data={"destination": destination},
        )
        self.created.append({
            "amount": amount, "currency": currency, "destination": destination,
            "platform_fee": platform_fee, "metadata": metadata,
        })
        self.payments[payment.id] = payment
        return payment

    async def retrieve_payment(self, payment_id: str) -> GatewayPayment:
        return self.payments[payment_id]


class FakeInvoices:
    def __init__(self):
        self.invoices: Dict[str, Invoice] = {}
        self.created: List[dict] = []

    async def create_invoice(self, email, amount, currency):
        invoice = Invoice(id=f"inv_{len(self.created) + 1}", status="NEW", payment_url="https://pay.example/inv")
        self.created.append({"email": email, "amount": amount, "currency": currency})
        self.invoices[invoice.id] = invoice
        return invoice

    async def retrieve_invoice(self, invoice_id):
        return self.invoices[invoice_id]


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    return f"t={timestamp},v1={compute_signature(payload, timestamp, secret)}"


def payment_event(payment: GatewayPayment, event_id: str = "evt_1", event_type: str = "payment_intent.succeeded") -> bytes:
    return json.dumps({
        "id": event_id,
        "type": event_type,
        "data": {"object": payment.model_dump()},
    }).encode()


def cart_metadata(buyer_id, brand, seller, lines, email="buyer@example.com") -> Dict[str, str]:
    return {
        "user_id": str(buyer_id),
        "brand_id": str(brand.id),
        "seller_id": str(seller.id),
        "cart_items": json.dumps([
            {"productId": str(pid), "productName": "client name", "brandName": "client brand",
             "price": 1, "currency": "EUR", "size": size, "quantity": qty, "imageUrl": ""}
            for pid, size, qty in lines
        ]),
        "shipping_address": json.dumps({
            "fullName": "Ada Buyer", "address": "1 Main St", "city": "Berlin",
            "postalCode": "10115", "country": "Germany",
        }),
        "email": email,
    }


@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def rates():
    return StaticRates({"USD": "0.92", "GBP": "1.17"})


@pytest.fixture
def normalizer(rates):
    cache = ExchangeRateCache(rates, fallback={"USD": Decimal("0.92"), "GBP": Decimal("1.17")}, clock=FakeClock())
    return CurrencyNormalizer(cache, "EUR")


@pytest.fixture
def email():
    return FakeEmail()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def invoices():
    return FakeInvoices()


@pytest.fixture
def followups(session_factory, email):
    dispatcher = NotificationDispatcher(session_factory, email, "https://shop.example")
    return SettlementFollowups(session_factory, dispatcher)


@pytest.fixture
def engine(session_factory, normalizer, followups):
    return SettlementEngine(session_factory, normalizer, followups, today=lambda: SETTLED_ON)


@pytest.fixture
def validator(session_factory, normalizer):
    return CartValidator(session_factory, normalizer)


@pytest.fixture
def services(session_factory, normalizer, validator, engine, followups, gateway, invoices):
    return Services(
        session_factory=session_factory,
        normalizer=normalizer,
        validator=validator,
        engine=engine,
        followups=followups,
        checkout=CheckoutService(session_factory, validator, gateway, invoices),
        webhook=WebhookAdapter(engine, session_factory, WEBHOOK_SECRET),
        poll=PollAdapter(engine, gateway),
        invoice_confirmation=InvoiceConfirmationAdapter(engine, invoices, session_factory),
    )


@pytest_asyncio.fixture
async def catalog(session_factory):
    """Two sellers; brand A sells X (EUR 50.00, size M x10) and Y (USD 100.00, size L x5)."""
    seller_a = Seller(id=uuid.uuid4(), user_id=uuid.uuid4(), brand_name="Atelier A",
                      email="seller-a@example.com", stripe_account_id="acct_A")
    seller_b = Seller(id=uuid.uuid4(), user_id=uuid.uuid4(), brand_name="Bureau B",
                      email=None, stripe_account_id=None)
    brand_a = Brand(id=uuid.uuid4(), seller_id=seller_a.id, owner_id=seller_a.user_id, name="Atelier A",
                    balance=0, total_sales=0, total_orders=0)
    brand_b = Brand(id=uuid.uuid4(), seller_id=seller_b.id, owner_id=seller_b.user_id, name="Bureau B",
                    balance=0, total_sales=0, total_orders=0)
    x = Product(id=uuid.uuid4(), brand_id=brand_a.id, name="Wool Coat", price=Decimal("50.00"),
                currency="EUR", status="approved", image_url="https://img.example/x.jpg")
    y = Product(id=uuid.uuid4(), brand_id=brand_a.id, name="Denim Jacket", price=Decimal("100.00"),
                currency="USD", status="approved")
    draft = Product(id=uuid.uuid4(), brand_id=brand_a.id, name="Unreleased Tee", price=Decimal("20.00"),
                    currency="EUR", status="pending")
    z = Product(id=uuid.uuid4(), brand_id=brand_b.id, name="Silk Scarf", price=Decimal("30.00"),
                currency="GBP", status="approved")
    sizes = [
        ProductSize(product_id=x.id, size="M", quantity=10, in_stock=True),
        ProductSize(product_id=y.id, size="L", quantity=5, in_stock=True),
        ProductSize(product_id=z.id, size="OS", quantity=3, in_stock=True),
    ]
    async with session_factory() as session:
        session.add_all([seller_a, seller_b])
        await session.flush()
        session.add_all([brand_a, brand_b])
        await session.flush()
        session.add_all([x, y, draft, z])
        await session.flush()
        session.add_all(sizes)
        await session.commit()

    return {
        "seller_a": seller_a, "seller_b": seller_b,
        "brand_a": brand_a, "brand_b": brand_b,
        "x": x, "y": y, "draft": draft, "z": z,
    }
