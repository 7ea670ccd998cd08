import hashlib
import hmac
import json
import logging
import time
from typing import Dict, Optional

import httpx
from pydantic import ValidationError

from settlement.schemas import GatewayPayment, Invoice, WebhookEvent

logger = logging.getLogger("settlement.gateways")

INVOICE_COMPLETED = "COMPLETED"


class GatewayError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class GatewayNotConfiguredError(GatewayError):
    pass


class SignatureVerificationError(Exception):
    pass


def _raise_for_status(resp: httpx.Response, what: str) -> None:
    if resp.status_code >= 400:
        logger.error("[Gateway] %s failed (%s): %s", what, resp.status_code, resp.text)
        raise GatewayError(f"{what} failed", status_code=resp.status_code)


class PaymentGateway:
    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.stripe.com",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.client = client
        self.timeout = timeout

    async def _request(self, method: str, path: str, what: str, data: Optional[Dict[str, str]] = None) -> dict:
        if not self.secret_key:
            raise GatewayNotConfiguredError("Payment gateway is not configured")
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        url = f"{self.base_url}{path}"
        try:
            if self.client is not None:
                resp = await self.client.request(method, url, data=data, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.request(method, url, data=data, headers=headers)
        except httpx.HTTPError as e:
            logger.error("[Gateway] %s unreachable: %s", what, e)
            raise GatewayError(f"{what} failed: {e}") from e
        _raise_for_status(resp, what)
        return resp.json()

    async def create_payment(
        self,
        amount: int,
        currency: str,
        destination: str,
        platform_fee: int,
        metadata: Dict[str, str],
    ) -> GatewayPayment:
        form = {
            "amount": str(amount),
            "currency": currency.lower(),
            "automatic_payment_methods[enabled]": "true",
            "application_fee_amount": str(platform_fee),
            "transfer_data[destination]": destination,
        }
        for key, value in metadata.items():
            form[f"metadata[{key}]"] = value

        data = await self._request("POST", "/v1/payment_intents", "create payment", data=form)
        payment = GatewayPayment(**data)
        logger.info("[Gateway] Created payment %s for %s %s", payment.id, amount, currency)
        return payment

    async def retrieve_payment(self, payment_id: str) -> GatewayPayment:
        data = await self._request("GET", f"/v1/payment_intents/{payment_id}", "retrieve payment")
        return GatewayPayment(**data)


class InvoiceProvider:
    def __init__(
        self,
        api_key: str,
        offer_id: str,
        base_url: str = "https://api.lava.top",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.api_key = api_key
        self.offer_id = offer_id
        self.base_url = base_url.rstrip("/")
        self.client = client
        self.timeout = timeout

    async def _request(self, method: str, path: str, what: str, payload: Optional[dict] = None) -> dict:
        if not self.api_key:
            raise GatewayNotConfiguredError("Invoice provider is not configured")
        headers = {"X-Api-Key": self.api_key}
        url = f"{self.base_url}{path}"
        try:
            if self.client is not None:
                resp = await self.client.request(method, url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.request(method, url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error("[Invoices] %s unreachable: %s", what, e)
            raise GatewayError(f"{what} failed: {e}") from e
        _raise_for_status(resp, what)
        return resp.json()

    async def create_invoice(self, email: str, amount: int, currency: str) -> Invoice:
        if not self.offer_id:
            raise GatewayNotConfiguredError("Invoice provider offer is not configured")
        # provider takes major units
        data = await self._request("POST", "/api/v3/invoice", "create invoice", payload={
            "email": email,
            "offerId": self.offer_id,
            "currency": currency,
            "amount": amount / 100,
        })
        return Invoice(
            id=data["id"],
            status=data.get("status", "NEW"),
            payment_url=data.get("paymentUrl"),
        )

    async def retrieve_invoice(self, invoice_id: str) -> Invoice:
        data = await self._request("GET", f"/api/v2/invoices/{invoice_id}", "retrieve invoice")
        return Invoice(
            id=data.get("id", invoice_id),
            status=str(data.get("status", "")).upper(),
            payment_url=data.get("paymentUrl"),
        )


def compute_signature(payload: bytes, timestamp: int, secret: str) -> str:
    signed = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    payload: bytes,
    header: Optional[str],
    secret: str,
    tolerance: int = 300,
    now: Optional[float] = None,
) -> WebhookEvent:
    if not header:
        raise SignatureVerificationError("No signature header")
    if not secret:
        raise SignatureVerificationError("Webhook secret is not configured")

    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise SignatureVerificationError("Malformed timestamp")
        elif key == "v1":
            signatures.append(value)

    if timestamp is None or not signatures:
        raise SignatureVerificationError("Malformed signature header")

    expected = compute_signature(payload, timestamp, secret)
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise SignatureVerificationError("Signature mismatch")

    now = time.time() if now is None else now
    if abs(now - timestamp) > tolerance:
        raise SignatureVerificationError("Timestamp outside tolerance")

    try:
        return WebhookEvent(**json.loads(payload))
    except (ValueError, ValidationError) as e:
        raise SignatureVerificationError(f"Malformed event payload: {e}") from e
