import logging
from typing import Iterable, List
from uuid import UUID

from sqlalchemy import select

from settlement.currency import CurrencyNormalizer, to_minor_units
from settlement.models import Brand, Product
from settlement.schemas import CartLine, ValidatedCart, ValidatedLine

logger = logging.getLogger("settlement.pricing")

AVAILABLE_STATUS = "approved"


class CartValidationError(Exception):
    """Base class for cart rejections surfaced before payment authorization."""
    code = "invalid_cart"


class EmptyCartError(CartValidationError):
    code = "empty_cart"

    def __init__(self):
        super().__init__("Cart is empty")


class UnknownProductError(CartValidationError):
    code = "unknown_product"

    def __init__(self, product_id: UUID):
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found")


class ProductUnavailableError(CartValidationError):
    code = "product_unavailable"

    def __init__(self, product_id: UUID, status: str):
        self.product_id = product_id
        self.status = status
        super().__init__(f"Product {product_id} is not available")


class MultipleSellersError(CartValidationError):
    """Split checkout across sellers is not supported."""
    code = "multiple_sellers"

    def __init__(self, brand_ids: Iterable[UUID]):
        self.brand_ids = sorted(str(b) for b in brand_ids)
        super().__init__("Cart contains products from more than one seller")


class CartValidator:
    def __init__(self, session_factory, normalizer: CurrencyNormalizer):
        self.session_factory = session_factory
        self.normalizer = normalizer

    async def validate(self, lines: List[CartLine], buyer_id: UUID) -> ValidatedCart:
        if not lines:
            raise EmptyCartError()

        product_ids = {line.product_id for line in lines}
        async with self.session_factory() as session:
            result = await session.execute(select(Product).where(Product.id.in_(product_ids)))
            products = {p.id: p for p in result.scalars().all()}

            for line in lines:
                product = products.get(line.product_id)
                if product is None:
                    raise UnknownProductError(line.product_id)
                if product.status != AVAILABLE_STATUS:
                    raise ProductUnavailableError(line.product_id, product.status)

            brand_ids = {p.brand_id for p in products.values()}
            if len(brand_ids) > 1:
                logger.info("[Pricing] Rejecting multi-seller cart for buyer %s: %s", buyer_id, brand_ids)
                raise MultipleSellersError(brand_ids)
            brand_id = brand_ids.pop()
            brand = await session.get(Brand, brand_id)

        validated: List[ValidatedLine] = []
        total = 0
        for line in lines:
            product = products[line.product_id]
            unit_price = to_minor_units(await self.normalizer.normalize(product.price, product.currency))
            total += unit_price * line.quantity
            validated.append(ValidatedLine(
                product_id=line.product_id,
                size=line.size,
                quantity=line.quantity,
                unit_price=unit_price,
            ))

        return ValidatedCart(
            brand_id=brand_id,
            seller_id=brand.seller_id if brand else None,
            currency=self.normalizer.settlement_currency,
            total_amount=total,
            lines=validated,
        )
