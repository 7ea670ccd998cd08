import html
import logging
from typing import List, Optional
from uuid import UUID

import httpx
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError

from settlement import crud
from settlement.currency import from_minor_units
from settlement.models import Brand, Notification

logger = logging.getLogger("settlement.notifications")

CURRENCY_SYMBOLS = {"EUR": "€", "USD": "$", "GBP": "£"}


class NotifiedItem(BaseModel):
    product_name: str
    size: str
    quantity: int


class OrderFacts(BaseModel):
    idempotency_key: str
    order_id: UUID
    order_number: int
    brand_id: UUID
    customer_email: str = ""
    customer_name: str = ""
    total_amount: int
    currency: str
    items: List[NotifiedItem]


def format_amount(amount: int, currency: str) -> str:
    symbol = CURRENCY_SYMBOLS.get(currency.upper(), currency.upper() + " ")
    return f"{symbol}{from_minor_units(amount)}"


class EmailClient:
    """Resend-compatible transactional email over HTTP."""

    def __init__(
        self,
        api_key: str,
        sender: str,
        base_url: str = "https://api.resend.com",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.api_key = api_key
        self.sender = sender
        self.base_url = base_url.rstrip("/")
        self.client = client
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def send(self, to: str, subject: str, body_html: str) -> None:
        payload = {"from": self.sender, "to": to, "subject": subject, "html": body_html}
        headers = {"Authorization": f"Bearer {self.api_key}"}
        url = f"{self.base_url}/emails"
        if self.client is not None:
            resp = await self.client.post(url, json=payload, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(url, json=payload, headers=headers)
        resp.raise_for_status()


def render_order_email(facts: OrderFacts, brand_name: str, site_url: str) -> str:
    rows = "".join(
        f"<tr><td>{html.escape(i.product_name)}</td>"
        f"<td>{html.escape(i.size)}</td><td>{i.quantity}</td></tr>"
        for i in facts.items
    )
    customer = html.escape(facts.customer_name or facts.customer_email)
    return (
        f"<h1>NEW ORDER</h1>"
        f"<p>You have a new order on <strong>{html.escape(brand_name)}</strong></p>"
        f"<p><strong>{format_amount(facts.total_amount, facts.currency)}</strong> from {customer}</p>"
        f"<table><thead><tr><th>Product</th><th>Size</th><th>Qty</th></tr></thead>"
        f"<tbody>{rows}</tbody></table>"
        f'<p><a href="{site_url}/account/seller/orders">View Order</a></p>'
        f"<p>Please ship this order as soon as possible.</p>"
    )


class NotificationDispatcher:
    def __init__(self, session_factory, email: EmailClient, site_url: str = ""):
        self.session_factory = session_factory
        self.email = email
        self.site_url = site_url.rstrip("/")

    async def dispatch(self, facts: OrderFacts) -> None:
        """Best effort: never raises."""
        try:
            await self._dispatch(facts)
        except Exception:
            logger.exception("[Notify] Failed to notify seller for order %s", facts.order_number)

    async def _dispatch(self, facts: OrderFacts) -> None:
        async with self.session_factory() as session:
            brand = await session.get(Brand, facts.brand_id)
            if brand is None:
                logger.warning("[Notify] Brand %s not found, skipping order %s", facts.brand_id, facts.order_number)
                return
            seller = await crud.get_seller_for_brand(brand.id, session)
            seller_email = seller.email if seller else None
            if not seller_email:
                logger.warning("[Notify] No contact email for brand %s, skipping order %s", brand.id, facts.order_number)
                return

            total = format_amount(facts.total_amount, facts.currency)
            customer = facts.customer_name or facts.customer_email
            session.add(Notification(
                user_id=brand.owner_id,
                type="new_order",
                title="New Order Received",
                message=f"Order for {total} from {customer}",
                data={
                    "order_id": str(facts.order_id),
                    "order_number": facts.order_number,
                    "brand_id": str(brand.id),
                    "total": facts.total_amount,
                    "items_count": len(facts.items),
                },
                read=False,
                dedup_key=facts.idempotency_key,
            ))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("[Notify] Order %s already notified", facts.order_number)
                return
            brand_name = brand.name

        if not self.email.enabled:
            logger.info("[Notify] Email disabled, in-app notification only for order %s", facts.order_number)
            return
        try:
            await self.email.send(
                to=seller_email,
                subject=f"New order {total} - {brand_name}",
                body_html=render_order_email(facts, brand_name, self.site_url),
            )
        except Exception:
            logger.exception("[Notify] Email to %s failed for order %s", seller_email, facts.order_number)
            return
        logger.info("[Notify] Seller %s notified of order %s", seller_email, facts.order_number)
