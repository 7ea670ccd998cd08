import logging
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from settlement import crud
from settlement.currency import CurrencyNormalizer, to_minor_units
from settlement.followups import ORDER_SETTLED, SettlementFollowups
from settlement.models import Brand, Order, OrderItem, Payment, SettlementOutbox
from settlement.schemas import SettlementRequest

logger = logging.getLogger("settlement.engine")

DEFAULT_FEE_PERCENT = 10


class SettlementError(Exception):
    pass


def platform_fee_for(gross_amount: int, percent: int = DEFAULT_FEE_PERCENT) -> int:
    fee = Decimal(gross_amount) * Decimal(percent) / Decimal(100)
    return int(fee.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


class SettlementEngine:
    def __init__(
        self,
        session_factory,
        normalizer: CurrencyNormalizer,
        followups: Optional[SettlementFollowups] = None,
        fee_percent: int = DEFAULT_FEE_PERCENT,
        today: Callable[[], date] = _utc_today,
    ):
        self.session_factory = session_factory
        self.normalizer = normalizer
        self.followups = followups
        self.fee_percent = fee_percent
        self.today = today

    @property
    def currency(self) -> str:
        return self.normalizer.settlement_currency

    async def find_order_number(self, idempotency_key: str) -> Optional[int]:
        async with self.session_factory() as session:
            order = await crud.get_order_by_marker(idempotency_key, session)
            return order.order_number if order else None

    async def settle(self, request: SettlementRequest) -> int:
        """Create the order for a paid payment once; repeat calls return the same order number."""
        existing = await self.find_order_number(request.idempotency_key)
        if existing is not None:
            logger.info("[Settlement] %s already settled as order %s", request.idempotency_key, existing)
            return existing

        gross = await self.normalizer.normalize_minor(request.gross_amount, request.currency)
        if request.platform_fee is not None:
            fee = await self.normalizer.normalize_minor(request.platform_fee, request.currency)
        else:
            fee = platform_fee_for(gross, self.fee_percent)
        seller_amount = gross - fee

        items = await self._price_items(request)

        order_id = uuid.uuid4()
        outbox_id = uuid.uuid4()
        shipping = request.shipping_address
        async with self.session_factory() as session:
            order = Order(
                id=order_id,
                user_id=request.buyer_id,
                brand_id=request.brand_id,
                status="pending",
                total_amount=gross,
                currency=self.currency,
                payment_status="paid",
                payment_method=request.payment_method,
                idempotency_key=request.idempotency_key,
                customer_email=request.customer_email,
                customer_name=shipping.name if shipping else "",
                shipping_address=shipping.model_dump() if shipping else None,
            )
            session.add(order)
            try:
                await session.flush()
            except IntegrityError:
                await session.rollback()
                return await self._resolve_duplicate(request.idempotency_key)

            for item in items:
                session.add(OrderItem(order_id=order_id, **item))

            for line in request.items:
                if not await crud.decrement_stock(line.product_id, line.size, line.quantity, session):
                    logger.warning("[Settlement] No stock row for product %s size %s", line.product_id, line.size)

            if request.brand_id is not None:
                if not await crud.credit_brand_ledger(request.brand_id, seller_amount, session):
                    logger.warning("[Settlement] Brand %s not found, ledger not credited", request.brand_id)

            session.add(Payment(
                order_id=order_id,
                provider=request.provider,
                provider_payment_id=request.provider_payment_id,
                transfer_destination=request.transfer_destination,
                amount=gross,
                platform_fee=fee,
                seller_amount=seller_amount,
                currency=self.currency,
                status="succeeded",
                seller_id=request.seller_id,
                brand_id=request.brand_id,
            ))

            session.add(SettlementOutbox(
                id=outbox_id,
                aggregate_id=order_id,
                event_type=ORDER_SETTLED,
                payload=self._followup_payload(request, order.order_number, order_id, gross, seller_amount, items),
            ))

            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return await self._resolve_duplicate(request.idempotency_key)
            order_number = order.order_number

        logger.info(
            "[Settlement] Order %s created for %s: total %s %s, seller amount %s",
            order_number, request.idempotency_key, gross, self.currency, seller_amount,
        )

        if self.followups is not None:
            await self.followups.run_safely(outbox_id)
        return order_number

    async def _resolve_duplicate(self, idempotency_key: str) -> int:
        existing = await self.find_order_number(idempotency_key)
        if existing is None:
            raise SettlementError(f"Order insert for {idempotency_key} failed without an existing order")
        logger.info("[Settlement] Lost race for %s, resolved to order %s", idempotency_key, existing)
        return existing

    async def _price_items(self, request: SettlementRequest) -> List[Dict]:
        async with self.session_factory() as session:
            products = await crud.get_products({i.product_id for i in request.items}, session)
            brand_ids = {p.brand_id for p in products.values()}
            brands = {}
            if brand_ids:
                result = await session.execute(select(Brand).where(Brand.id.in_(brand_ids)))
                brands = {b.id: b for b in result.scalars().all()}

        items = []
        for line in request.items:
            product = products.get(line.product_id)
            if product is not None:
                unit_price = await self.normalizer.normalize(product.price, product.currency)
                brand = brands.get(product.brand_id)
                name = product.name
                brand_name = brand.name if brand else line.brand_name
                image_url = product.image_url or line.image_url
            else:
                # product deleted after payment; keep the snapshot so the paid order still exists
                logger.warning("[Settlement] Product %s missing at settlement, using cart snapshot", line.product_id)
                if line.price is not None:
                    unit_price = await self.normalizer.normalize(line.price, line.currency or self.currency)
                else:
                    unit_price = Decimal(0)
                name = line.product_name
                brand_name = line.brand_name
                image_url = line.image_url

            items.append({
                "product_id": line.product_id,
                "product_name": name,
                "brand_name": brand_name,
                "unit_price": to_minor_units(unit_price),
                "currency": self.currency,
                "size": line.size,
                "quantity": line.quantity,
                "image_url": image_url,
            })
        return items

    def _followup_payload(
        self,
        request: SettlementRequest,
        order_number: int,
        order_id: UUID,
        gross: int,
        seller_amount: int,
        items: List[Dict],
    ) -> Dict:
        order = None
        if request.brand_id is not None:
            order = {
                "idempotency_key": request.idempotency_key,
                "order_id": str(order_id),
                "order_number": order_number,
                "brand_id": str(request.brand_id),
                "customer_email": request.customer_email,
                "customer_name": request.shipping_address.name if request.shipping_address else "",
                "total_amount": gross,
                "currency": self.currency,
                "items": [
                    {"product_name": i["product_name"], "size": i["size"], "quantity": i["quantity"]}
                    for i in items
                ],
            }
        return {
            "order": order,
            "brand_id": str(request.brand_id) if request.brand_id else None,
            "buyer_id": str(request.buyer_id),
            "seller_amount": seller_amount,
            "settled_on": self.today().isoformat(),
        }
