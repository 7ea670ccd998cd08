import json
import logging
import time
from collections import Counter
from typing import Callable, Optional, Protocol
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError

from settlement import crud
from settlement.gateways import (
    INVOICE_COMPLETED, InvoiceProvider, PaymentGateway, verify_webhook_signature,
)
from settlement.models import WebhookInbox
from settlement.schemas import (
    CartItemSnapshot, ConfirmInvoiceRequest, GatewayPayment, SettlementRequest,
    SettlementStatus, ShippingAddress, WebhookEvent,
)

logger = logging.getLogger("settlement.adapters")

PAYMENT_SUCCEEDED = "succeeded"


class SettlementPort(Protocol):
    async def settle(self, request: SettlementRequest) -> int: ...


class InvalidPaymentMetadataError(Exception):
    pass


def _parse_uuid(value: Optional[str]) -> Optional[UUID]:
    if not value:
        return None
    try:
        return UUID(value)
    except ValueError:
        return None


def _parse_shipping(raw: Optional[str]) -> Optional[ShippingAddress]:
    if not raw:
        return None
    try:
        addr = json.loads(raw)
        return ShippingAddress(
            name=addr.get("fullName") or "",
            address=addr.get("address") or "",
            city=addr.get("city") or "",
            postal_code=addr.get("postalCode") or "",
            country=addr.get("country") or "",
        )
    except (ValueError, AttributeError, ValidationError):
        logger.warning("[Adapters] Ignoring malformed shipping address metadata")
        return None


def _parse_cart(raw: str):
    items = []
    for entry in json.loads(raw):
        items.append(CartItemSnapshot(
            product_id=entry["productId"],
            size=entry.get("size") or "",
            quantity=entry["quantity"],
            product_name=entry.get("productName") or "",
            brand_name=entry.get("brandName") or "",
            price=entry.get("price"),
            currency=entry.get("currency"),
            image_url=entry.get("imageUrl") or None,
        ))
    return items


def request_from_payment(payment: GatewayPayment) -> SettlementRequest:
    """Rebuild the settlement request from metadata attached at authorization."""
    metadata = payment.metadata
    buyer_id = _parse_uuid(metadata.get("user_id"))
    cart_json = metadata.get("cart_items")
    if buyer_id is None or not cart_json:
        raise InvalidPaymentMetadataError(f"Missing buyer or cart metadata on payment {payment.id}")
    try:
        items = _parse_cart(cart_json)
    except (ValueError, KeyError, TypeError, ValidationError) as e:
        raise InvalidPaymentMetadataError(f"Malformed cart metadata on payment {payment.id}: {e}") from e
    if not items:
        raise InvalidPaymentMetadataError(f"Empty cart metadata on payment {payment.id}")

    destination = None
    if payment.transfer_data:
        destination = payment.transfer_data.get("destination")

    return SettlementRequest(
        idempotency_key=f"stripe:{payment.id}",
        buyer_id=buyer_id,
        brand_id=_parse_uuid(metadata.get("brand_id")),
        seller_id=_parse_uuid(metadata.get("seller_id")),
        items=items,
        shipping_address=_parse_shipping(metadata.get("shipping_address")),
        customer_email=metadata.get("email") or "",
        gross_amount=payment.amount,
        currency=payment.currency.upper(),
        platform_fee=payment.application_fee_amount,
        payment_method="card",
        provider="stripe",
        provider_payment_id=payment.id,
        transfer_destination=destination,
    )


class WebhookAdapter:
    def __init__(
        self,
        port: SettlementPort,
        session_factory,
        secret: str,
        tolerance: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        self.port = port
        self.session_factory = session_factory
        self.secret = secret
        self.tolerance = tolerance
        self.clock = clock

    async def handle(self, payload: bytes, signature: Optional[str]) -> dict:
        event = verify_webhook_signature(payload, signature, self.secret, self.tolerance, now=self.clock())

        async with self.session_factory() as session:
            if await crud.webhook_seen(event.id, session):
                logger.info("[Webhook] Event %s already handled", event.id)
                return {"received": True, "duplicate": True}

        result = await self.dispatch(event)
        await self._record(event)
        return {"received": True, **result}

    async def dispatch(self, event: WebhookEvent) -> dict:
        obj = event.data.object
        if event.type == "payment_intent.succeeded":
            payment = GatewayPayment(**obj)
            try:
                request = request_from_payment(payment)
            except InvalidPaymentMetadataError as e:
                # redelivery cannot fix missing metadata
                logger.error("[Webhook] %s", e)
                return {}
            order_number = await self.port.settle(request)
            return {"order_number": order_number}

        if event.type == "payment_intent.payment_failed":
            async with self.session_factory() as session:
                updated = await crud.mark_payment_failed(obj["id"], session)
            logger.info("[Webhook] Payment %s failed (%d records updated)", obj["id"], updated)
            return {}

        if event.type == "account.updated":
            async with self.session_factory() as session:
                found = await crud.update_seller_account(
                    obj["id"],
                    bool(obj.get("details_submitted")),
                    bool(obj.get("payouts_enabled")),
                    session,
                )
            if found:
                logger.info("[Webhook] Seller account %s status updated", obj["id"])
            else:
                logger.warning("[Webhook] No seller for account %s", obj["id"])
            return {}

        if event.type in ("payout.paid", "payout.failed"):
            status = "paid" if event.type == "payout.paid" else "failed"
            async with self.session_factory() as session:
                found = await crud.update_payout_status(obj["id"], status, session)
            if not found:
                logger.warning("[Webhook] Payout %s not found", obj["id"])
            logger.info("[Webhook] Payout %s %s", obj["id"], status)
            return {}

        logger.info("[Webhook] Unhandled event type: %s", event.type)
        return {}

    async def _record(self, event: WebhookEvent) -> None:
        async with self.session_factory() as session:
            session.add(WebhookInbox(
                event_id=event.id,
                event_type=event.type,
                payload=event.model_dump(mode="json"),
            ))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()


class PollAdapter:
    """Fallback for environments where the webhook cannot reach the service."""

    def __init__(self, port: SettlementPort, gateway: PaymentGateway):
        self.port = port
        self.gateway = gateway

    async def check(self, payment_id: str) -> SettlementStatus:
        payment = await self.gateway.retrieve_payment(payment_id)
        if payment.status != PAYMENT_SUCCEEDED:
            return SettlementStatus(status=payment.status)
        try:
            request = request_from_payment(payment)
        except InvalidPaymentMetadataError as e:
            logger.error("[Poll] %s", e)
            return SettlementStatus(status=payment.status)
        order_number = await self.port.settle(request)
        return SettlementStatus(status=payment.status, order_number=order_number)


class InvoiceConfirmationError(Exception):
    code = "invoice_confirmation_failed"
    status_code = 400


class UnknownInvoiceError(InvoiceConfirmationError):
    code = "unknown_invoice"
    status_code = 404

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(f"No checkout recorded for invoice {invoice_id}")


class InvoiceMismatchError(InvoiceConfirmationError):
    code = "invoice_mismatch"
    status_code = 409

    def __init__(self, invoice_id: str, field: str):
        self.invoice_id = invoice_id
        self.field = field
        super().__init__(f"Confirmation {field} does not match invoice {invoice_id}")


def _cart_key(items) -> Counter:
    key: Counter = Counter()
    for item in items:
        key[(item.product_id, item.size)] += item.quantity
    return key


class InvoiceConfirmationAdapter:
    def __init__(self, port: SettlementPort, invoices: InvoiceProvider, session_factory):
        self.port = port
        self.invoices = invoices
        self.session_factory = session_factory

    async def confirm(self, buyer_id: UUID, request: ConfirmInvoiceRequest) -> SettlementStatus:
        """Settle the cart recorded when the invoice was issued, never the one sent back."""
        async with self.session_factory() as session:
            checkout = await crud.get_invoice_checkout(request.invoice_id, session)
        if checkout is None:
            raise UnknownInvoiceError(request.invoice_id)
        if checkout.buyer_id != buyer_id:
            logger.warning("[Invoice] Buyer %s tried to confirm invoice %s of buyer %s",
                           buyer_id, request.invoice_id, checkout.buyer_id)
            raise InvoiceMismatchError(request.invoice_id, "buyer")
        items = [CartItemSnapshot(**item) for item in checkout.items]
        if request.items and _cart_key(request.items) != _cart_key(items):
            logger.warning("[Invoice] Cart sent for invoice %s differs from the invoiced cart", request.invoice_id)
            raise InvoiceMismatchError(request.invoice_id, "cart")

        invoice = await self.invoices.retrieve_invoice(request.invoice_id)
        if invoice.status != INVOICE_COMPLETED:
            logger.info("[Invoice] Invoice %s not completed yet: %s", invoice.id, invoice.status)
            return SettlementStatus(status=invoice.status)

        # paid: no eligibility checks, a delisted product still gets its order
        order_number = await self.port.settle(SettlementRequest(
            idempotency_key=f"lava:{request.invoice_id}",
            buyer_id=buyer_id,
            brand_id=checkout.brand_id,
            seller_id=checkout.seller_id,
            items=items,
            shipping_address=ShippingAddress(**checkout.shipping_address) if checkout.shipping_address else None,
            customer_email=checkout.customer_email,
            gross_amount=checkout.total_amount,
            currency=checkout.currency,
            payment_method="invoice",
            provider="lava",
            provider_payment_id=request.invoice_id,
        ))
        return SettlementStatus(status=invoice.status, order_number=order_number)
