"""Tests for server-side cart validation."""

import uuid

import pytest

from settlement.pricing import (
    EmptyCartError,
    MultipleSellersError,
    ProductUnavailableError,
    UnknownProductError,
)
from settlement.schemas import CartItemSnapshot, CartLine

BUYER = uuid.uuid4()


@pytest.mark.asyncio
async def test_total_comes_from_catalog_not_client(validator, catalog):
    lines = [CartItemSnapshot(product_id=catalog["x"].id, size="M", quantity=2, price="0.01", currency="EUR")]

    cart = await validator.validate(lines, BUYER)

    assert cart.total_amount == 10000
    assert cart.currency == "EUR"
    assert cart.brand_id == catalog["brand_a"].id
    assert cart.seller_id == catalog["seller_a"].id
    assert cart.lines[0].unit_price == 5000


@pytest.mark.asyncio
async def test_foreign_currency_prices_are_normalized(validator, catalog):
    lines = [
        CartLine(product_id=catalog["x"].id, size="M", quantity=1),
        CartLine(product_id=catalog["y"].id, size="L", quantity=1),
    ]

    cart = await validator.validate(lines, BUYER)

    assert [l.unit_price for l in cart.lines] == [5000, 9200]
    assert cart.total_amount == 14200


@pytest.mark.asyncio
async def test_mixed_seller_cart_rejected(validator, catalog):
    lines = [
        CartLine(product_id=catalog["x"].id, size="M", quantity=1),
        CartLine(product_id=catalog["z"].id, size="OS", quantity=1),
    ]

    with pytest.raises(MultipleSellersError) as exc:
        await validator.validate(lines, BUYER)
    assert exc.value.code == "multiple_sellers"


@pytest.mark.asyncio
async def test_unknown_product_rejected(validator, catalog):
    with pytest.raises(UnknownProductError):
        await validator.validate([CartLine(product_id=uuid.uuid4(), size="M", quantity=1)], BUYER)


@pytest.mark.asyncio
async def test_unapproved_product_rejected(validator, catalog):
    with pytest.raises(ProductUnavailableError) as exc:
        await validator.validate([CartLine(product_id=catalog["draft"].id, size="S", quantity=1)], BUYER)
    assert exc.value.status == "pending"


@pytest.mark.asyncio
async def test_empty_cart_rejected(validator, catalog):
    with pytest.raises(EmptyCartError):
        await validator.validate([], BUYER)
