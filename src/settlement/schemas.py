from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from uuid import UUID
from datetime import datetime
from decimal import Decimal


class CartLine(BaseModel):
    product_id: UUID
    size: str
    quantity: int = Field(..., gt=0)


class CartItemSnapshot(CartLine):
    """Cart line as the client saw it. Display fields only, price is never trusted."""
    product_name: str = ""
    brand_name: str = ""
    price: Optional[Decimal] = None
    currency: Optional[str] = None
    image_url: Optional[str] = None


class ShippingAddress(BaseModel):
    name: str = ""
    address: str = ""
    city: str = ""
    postal_code: str = ""
    country: str = ""


class ValidatedLine(BaseModel):
    product_id: UUID
    size: str
    quantity: int
    unit_price: int  # minor units, settlement currency


class ValidatedCart(BaseModel):
    brand_id: UUID
    seller_id: Optional[UUID]
    currency: str
    total_amount: int
    lines: List[ValidatedLine]


class SettlementRequest(BaseModel):
    idempotency_key: str
    buyer_id: UUID
    brand_id: Optional[UUID] = None
    seller_id: Optional[UUID] = None
    items: List[CartItemSnapshot]
    shipping_address: Optional[ShippingAddress] = None
    customer_email: str = ""
    gross_amount: int = Field(..., ge=0)
    currency: str
    platform_fee: Optional[int] = Field(None, ge=0)
    payment_method: str = "card"
    provider: str = "stripe"
    provider_payment_id: str
    transfer_destination: Optional[str] = None


# Payment gateway objects

class GatewayPayment(BaseModel):
    id: str
    status: str
    amount: int
    currency: str
    application_fee_amount: Optional[int] = None
    metadata: Dict[str, str] = {}
    client_secret: Optional[str] = None
    transfer_data: Optional[Dict[str, Any]] = None


class WebhookEventData(BaseModel):
    object: Dict[str, Any]


class WebhookEvent(BaseModel):
    id: str
    type: str
    data: WebhookEventData


class Invoice(BaseModel):
    id: str
    status: str
    payment_url: Optional[str] = None


# HTTP surface

class CheckoutRequest(BaseModel):
    items: List[CartItemSnapshot] = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    shipping_address: Optional[ShippingAddress] = None


class CardCheckoutResponse(BaseModel):
    payment_id: str
    client_secret: Optional[str]
    amount: int
    currency: str


class InvoiceCheckoutResponse(BaseModel):
    invoice_id: str
    payment_url: Optional[str]


class ConfirmInvoiceRequest(BaseModel):
    invoice_id: str = Field(..., min_length=1)
    # optional echo of the cart; must match what was invoiced
    items: List[CartItemSnapshot] = []


class SettlementStatus(BaseModel):
    status: str
    order_number: Optional[int] = None


class OrderItemRead(BaseModel):
    product_id: UUID
    product_name: str
    brand_name: str
    unit_price: int
    currency: str
    size: str
    quantity: int
    image_url: Optional[str]

    class Config:
        from_attributes = True


class OrderRead(BaseModel):
    id: UUID
    order_number: int
    user_id: UUID
    brand_id: Optional[UUID]
    status: str
    payment_status: str
    payment_method: str
    total_amount: int
    currency: str
    shipping_address: Optional[Dict[str, Any]]
    carrier: Optional[str]
    tracking_number: Optional[str]
    created_at: Optional[datetime]
    items: List[OrderItemRead] = []

    class Config:
        from_attributes = True


class BrandLedgerRead(BaseModel):
    id: UUID
    name: str
    balance: int
    total_sales: int
    total_orders: int

    class Config:
        from_attributes = True
