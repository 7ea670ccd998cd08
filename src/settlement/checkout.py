import json
import logging
from typing import Dict, List
from uuid import UUID

from settlement import crud
from settlement.currency import from_minor_units
from settlement.gateways import InvoiceProvider, PaymentGateway
from settlement.pricing import CartValidationError, CartValidator
from settlement.schemas import (
    CardCheckoutResponse, CartItemSnapshot, CheckoutRequest, InvoiceCheckoutResponse,
    ValidatedCart,
)
from settlement.settlement import DEFAULT_FEE_PERCENT, platform_fee_for

logger = logging.getLogger("settlement.checkout")


class SellerNotConnectedError(CartValidationError):
    code = "seller_not_connected"

    def __init__(self, brand_id: UUID):
        self.brand_id = brand_id
        super().__init__(f"Seller of brand {brand_id} cannot accept card payments yet")


def build_payment_metadata(buyer_id: UUID, brand_id: UUID, seller_id, request: CheckoutRequest) -> Dict[str, str]:
    """Everything settlement needs later, round-tripped through the gateway."""
    cart = [
        {
            "productId": str(i.product_id),
            "productName": i.product_name,
            "brandName": i.brand_name,
            "size": i.size,
            "quantity": i.quantity,
            "imageUrl": i.image_url or "",
        }
        for i in request.items
    ]
    metadata = {
        "user_id": str(buyer_id),
        "brand_id": str(brand_id),
        "seller_id": str(seller_id) if seller_id else "",
        "cart_items": json.dumps(cart, separators=(",", ":")),
        "email": request.email,
    }
    if request.shipping_address:
        addr = request.shipping_address
        metadata["shipping_address"] = json.dumps({
            "fullName": addr.name,
            "address": addr.address,
            "city": addr.city,
            "postalCode": addr.postal_code,
            "country": addr.country,
        }, separators=(",", ":"))
    return metadata


def invoiced_items(request: CheckoutRequest, cart: ValidatedCart) -> List[dict]:
    """Client display fields with the server price each line was invoiced at."""
    return [
        CartItemSnapshot(
            product_id=line.product_id,
            size=line.size,
            quantity=line.quantity,
            product_name=item.product_name,
            brand_name=item.brand_name,
            image_url=item.image_url,
            price=from_minor_units(line.unit_price),
            currency=cart.currency,
        ).model_dump(mode="json")
        for item, line in zip(request.items, cart.lines)
    ]


class CheckoutService:
    def __init__(
        self,
        session_factory,
        validator: CartValidator,
        gateway: PaymentGateway,
        invoices: InvoiceProvider,
        fee_percent: int = DEFAULT_FEE_PERCENT,
    ):
        self.session_factory = session_factory
        self.validator = validator
        self.gateway = gateway
        self.invoices = invoices
        self.fee_percent = fee_percent

    async def start_card_checkout(self, buyer_id: UUID, request: CheckoutRequest) -> CardCheckoutResponse:
        cart = await self.validator.validate(request.items, buyer_id)

        async with self.session_factory() as session:
            seller = await crud.get_seller_for_brand(cart.brand_id, session)
        if seller is None or not seller.stripe_account_id:
            raise SellerNotConnectedError(cart.brand_id)

        fee = platform_fee_for(cart.total_amount, self.fee_percent)
        payment = await self.gateway.create_payment(
            amount=cart.total_amount,
            currency=cart.currency,
            destination=seller.stripe_account_id,
            platform_fee=fee,
            metadata=build_payment_metadata(buyer_id, cart.brand_id, seller.id, request),
        )
        logger.info("[Checkout] Payment %s authorized for buyer %s, %s %s",
                    payment.id, buyer_id, cart.total_amount, cart.currency)
        return CardCheckoutResponse(
            payment_id=payment.id,
            client_secret=payment.client_secret,
            amount=cart.total_amount,
            currency=cart.currency,
        )

    async def start_invoice_checkout(self, buyer_id: UUID, request: CheckoutRequest) -> InvoiceCheckoutResponse:
        cart = await self.validator.validate(request.items, buyer_id)
        invoice = await self.invoices.create_invoice(request.email, cart.total_amount, cart.currency)
        shipping = request.shipping_address
        async with self.session_factory() as session:
            await crud.create_invoice_checkout(
                invoice.id,
                buyer_id,
                cart.brand_id,
                cart.seller_id,
                invoiced_items(request, cart),
                cart.total_amount,
                cart.currency,
                request.email,
                shipping.model_dump() if shipping else None,
                session,
            )
        logger.info("[Checkout] Invoice %s created for buyer %s, %s %s",
                    invoice.id, buyer_id, cart.total_amount, cart.currency)
        return InvoiceCheckoutResponse(invoice_id=invoice.id, payment_url=invoice.payment_url)
