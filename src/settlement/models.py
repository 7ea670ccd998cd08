import uuid
from sqlalchemy import (
    JSON, BigInteger, Boolean, Column, Date, ForeignKey, Integer, Numeric,
    String, TIMESTAMP, UniqueConstraint, Uuid, func,
)
from sqlalchemy.dialects.postgresql import JSONB
from settlement.db import Base

# JSONB on Postgres, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB, "postgresql")


class Seller(Base):
    __tablename__ = "sellers"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False)
    brand_name = Column(String(200), nullable=False)
    email = Column(String(320), nullable=True)
    stripe_account_id = Column(String(255), unique=True, nullable=True)
    stripe_onboarding_complete = Column(Boolean, nullable=False, default=False)
    stripe_payouts_enabled = Column(Boolean, nullable=False, default=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())


class Brand(Base):
    __tablename__ = "brands"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    seller_id = Column(Uuid, ForeignKey("sellers.id"), nullable=True)
    owner_id = Column(Uuid, nullable=False)
    name = Column(String(200), nullable=False)
    # ledger, minor units of the settlement currency
    balance = Column(BigInteger, nullable=False, default=0)
    total_sales = Column(BigInteger, nullable=False, default=0)
    total_orders = Column(Integer, nullable=False, default=0)
    updated_at = Column(TIMESTAMP(timezone=True), onupdate=func.now())


class Product(Base):
    __tablename__ = "products"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    brand_id = Column(Uuid, ForeignKey("brands.id"), nullable=False)
    name = Column(String(300), nullable=False)
    price = Column(Numeric(18, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="EUR")
    status = Column(String(20), nullable=False, default="pending")
    image_url = Column(String, nullable=True)


class ProductSize(Base):
    __tablename__ = "product_sizes"
    __table_args__ = (UniqueConstraint("product_id", "size"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id = Column(Uuid, ForeignKey("products.id"), nullable=False)
    size = Column(String(20), nullable=False)
    quantity = Column(Integer, nullable=False, default=0)
    in_stock = Column(Boolean, nullable=False, default=False)


class Order(Base):
    __tablename__ = "orders"

    order_number = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(Uuid, unique=True, nullable=False, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    brand_id = Column(Uuid, ForeignKey("brands.id"), nullable=True, index=True)
    status = Column(String(20), nullable=False, default="pending")
    total_amount = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    payment_status = Column(String(20), nullable=False, default="pending")
    payment_method = Column(String(20), nullable=False)
    idempotency_key = Column(String(255), unique=True, nullable=False)
    customer_email = Column(String(320), nullable=False, default="")
    customer_name = Column(String(200), nullable=False, default="")
    shipping_address = Column(JSONType, nullable=True)
    carrier = Column(String(50), nullable=True)
    tracking_number = Column(String(100), nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), onupdate=func.now())


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(Uuid, nullable=False)
    product_name = Column(String(300), nullable=False)
    brand_name = Column(String(200), nullable=False, default="")
    unit_price = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    size = Column(String(20), nullable=False)
    quantity = Column(Integer, nullable=False)
    image_url = Column(String, nullable=True)


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=True)
    provider = Column(String(20), nullable=False)
    provider_payment_id = Column(String(255), nullable=False, index=True)
    transfer_destination = Column(String(255), nullable=True)
    amount = Column(BigInteger, nullable=False)
    platform_fee = Column(BigInteger, nullable=False)
    seller_amount = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(20), nullable=False)
    seller_id = Column(Uuid, nullable=True)
    brand_id = Column(Uuid, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), onupdate=func.now())


class Payout(Base):
    __tablename__ = "payouts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    stripe_payout_id = Column(String(255), unique=True, nullable=False)
    seller_id = Column(Uuid, nullable=True)
    amount = Column(BigInteger, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="EUR")
    status = Column(String(20), nullable=False, default="pending")
    updated_at = Column(TIMESTAMP(timezone=True), onupdate=func.now())


class DailyBrandStat(Base):
    __tablename__ = "brand_daily_stats"
    __table_args__ = (UniqueConstraint("brand_id", "day"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    brand_id = Column(Uuid, nullable=False)
    day = Column(Date, nullable=False)
    orders = Column(Integer, nullable=False, default=0)
    sales = Column(BigInteger, nullable=False, default=0)


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    type = Column(String(50), nullable=False)
    title = Column(String(200), nullable=False)
    message = Column(String, nullable=False, default="")
    data = Column(JSONType, nullable=False, default=dict)
    read = Column(Boolean, nullable=False, default=False)
    dedup_key = Column(String(255), unique=True, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())


class SettlementOutbox(Base):
    __tablename__ = "settlement_outbox"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    aggregate_id = Column(Uuid, nullable=False)
    event_type = Column(String(50), nullable=False)
    payload = Column(JSONType, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    processed_at = Column(TIMESTAMP(timezone=True), nullable=True)
    published_at = Column(TIMESTAMP(timezone=True), nullable=True)


class WebhookInbox(Base):
    __tablename__ = "webhook_inbox"

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=False)
    payload = Column(JSONType, nullable=False)
    processed_at = Column(TIMESTAMP(timezone=True), server_default=func.now())


class InvoiceCheckout(Base):
    """The cart and amount an invoice was issued for; confirmation settles from this."""
    __tablename__ = "invoice_checkouts"

    invoice_id = Column(String(255), primary_key=True)
    buyer_id = Column(Uuid, nullable=False, index=True)
    brand_id = Column(Uuid, nullable=False)
    seller_id = Column(Uuid, nullable=True)
    # CartItemSnapshot dicts priced in the settlement currency
    items = Column(JSONType, nullable=False)
    total_amount = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    customer_email = Column(String(320), nullable=False, default="")
    shipping_address = Column(JSONType, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
