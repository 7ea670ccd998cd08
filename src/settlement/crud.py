from datetime import date
from typing import Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy import case, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.models import (
    Brand, DailyBrandStat, InvoiceCheckout, Order, OrderItem, Payment, Payout,
    Product, ProductSize, Seller, SettlementOutbox, WebhookInbox,
)


async def get_order_by_marker(
    idempotency_key: str,
    session: AsyncSession
) -> Order | None:
    result = await session.execute(
        select(Order).where(Order.idempotency_key == idempotency_key)
    )
    return result.scalar_one_or_none()


async def get_orders_by_user(
    user_id: UUID,
    session: AsyncSession
) -> List[Order]:
    result = await session.execute(
        select(Order).where(Order.user_id == user_id).order_by(Order.order_number.desc())
    )
    return result.scalars().all()


async def get_order(
    order_number: int,
    user_id: UUID,
    session: AsyncSession
) -> Order | None:
    result = await session.execute(
        select(Order).where(Order.order_number == order_number, Order.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def get_order_items(
    order_ids: Iterable[UUID],
    session: AsyncSession
) -> Dict[UUID, List[OrderItem]]:
    ids = list(order_ids)
    grouped: Dict[UUID, List[OrderItem]] = {i: [] for i in ids}
    if not ids:
        return grouped
    result = await session.execute(select(OrderItem).where(OrderItem.order_id.in_(ids)))
    for item in result.scalars().all():
        grouped[item.order_id].append(item)
    return grouped


async def get_products(
    product_ids: Iterable[UUID],
    session: AsyncSession
) -> Dict[UUID, Product]:
    result = await session.execute(select(Product).where(Product.id.in_(list(product_ids))))
    return {p.id: p for p in result.scalars().all()}


async def decrement_stock(
    product_id: UUID,
    size: str,
    quantity: int,
    session: AsyncSession
) -> bool:
    """
    Clamp-at-zero decrement in a single statement. Both SET expressions see
    the pre-update quantity, so in_stock is true iff the new quantity > 0.
    Returns False when no stock row exists for (product, size).
    """
    result = await session.execute(
        update(ProductSize)
        .where(ProductSize.product_id == product_id, ProductSize.size == size)
        .values(
            quantity=case(
                (ProductSize.quantity > quantity, ProductSize.quantity - quantity),
                else_=0,
            ),
            in_stock=ProductSize.quantity > quantity,
        )
    )
    return result.rowcount > 0


async def credit_brand_ledger(
    brand_id: UUID,
    seller_amount: int,
    session: AsyncSession
) -> bool:
    result = await session.execute(
        update(Brand)
        .where(Brand.id == brand_id)
        .values(
            balance=Brand.balance + seller_amount,
            total_sales=Brand.total_sales + seller_amount,
            total_orders=Brand.total_orders + 1,
            updated_at=func.now(),
        )
    )
    return result.rowcount > 0


async def bump_daily_stat(
    brand_id: UUID,
    day: date,
    seller_amount: int,
    session: AsyncSession
) -> None:
    """Create-or-increment the (brand, day) rollup as one upsert statement."""
    dialect = session.get_bind().dialect.name
    insert = pg_insert if dialect == "postgresql" else sqlite_insert
    stmt = insert(DailyBrandStat).values(
        brand_id=brand_id,
        day=day,
        orders=1,
        sales=seller_amount,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[DailyBrandStat.brand_id, DailyBrandStat.day],
        set_={
            "orders": DailyBrandStat.orders + 1,
            "sales": DailyBrandStat.sales + seller_amount,
        },
    )
    await session.execute(stmt)


async def get_daily_stat(
    brand_id: UUID,
    day: date,
    session: AsyncSession
) -> DailyBrandStat | None:
    result = await session.execute(
        select(DailyBrandStat).where(DailyBrandStat.brand_id == brand_id, DailyBrandStat.day == day)
    )
    return result.scalar_one_or_none()


async def claim_outbox_event(
    outbox_id: UUID,
    session: AsyncSession
) -> bool:
    result = await session.execute(
        update(SettlementOutbox)
        .where(SettlementOutbox.id == outbox_id, SettlementOutbox.processed_at.is_(None))
        .values(processed_at=func.now())
    )
    return result.rowcount > 0


async def mark_payment_failed(
    provider_payment_id: str,
    session: AsyncSession
) -> int:
    result = await session.execute(
        update(Payment)
        .where(Payment.provider_payment_id == provider_payment_id, Payment.status != "succeeded")
        .values(status="failed", updated_at=func.now())
    )
    await session.commit()
    return result.rowcount


async def update_seller_account(
    stripe_account_id: str,
    onboarding_complete: bool,
    payouts_enabled: bool,
    session: AsyncSession
) -> bool:
    result = await session.execute(
        update(Seller)
        .where(Seller.stripe_account_id == stripe_account_id)
        .values(
            stripe_onboarding_complete=onboarding_complete,
            stripe_payouts_enabled=payouts_enabled,
        )
    )
    await session.commit()
    return result.rowcount > 0


async def update_payout_status(
    stripe_payout_id: str,
    status: str,
    session: AsyncSession
) -> bool:
    result = await session.execute(
        update(Payout)
        .where(Payout.stripe_payout_id == stripe_payout_id)
        .values(status=status, updated_at=func.now())
    )
    await session.commit()
    return result.rowcount > 0


async def get_seller_for_brand(
    brand_id: UUID,
    session: AsyncSession
) -> Optional[Seller]:
    brand = await session.get(Brand, brand_id)
    if brand is None or brand.seller_id is None:
        return None
    return await session.get(Seller, brand.seller_id)


async def webhook_seen(
    event_id: str,
    session: AsyncSession
) -> bool:
    return await session.get(WebhookInbox, event_id) is not None


async def create_invoice_checkout(
    invoice_id: str,
    buyer_id: UUID,
    brand_id: UUID,
    seller_id: Optional[UUID],
    items: List[dict],
    total_amount: int,
    currency: str,
    customer_email: str,
    shipping_address: Optional[dict],
    session: AsyncSession
) -> InvoiceCheckout:
    record = InvoiceCheckout(
        invoice_id=invoice_id,
        buyer_id=buyer_id,
        brand_id=brand_id,
        seller_id=seller_id,
        items=items,
        total_amount=total_amount,
        currency=currency,
        customer_email=customer_email,
        shipping_address=shipping_address,
    )
    session.add(record)
    await session.commit()
    return record


async def get_invoice_checkout(
    invoice_id: str,
    session: AsyncSession
) -> InvoiceCheckout | None:
    return await session.get(InvoiceCheckout, invoice_id)
