import asyncio
import json
import logging
from typing import Awaitable, Callable

from aio_pika import Message, DeliveryMode
from settlement.messaging import (
    broker_enabled,
    get_exchange,
    QUEUE_ORDER_SETTLED,
)
from settlement.followups import SettlementFollowups
from settlement.models import SettlementOutbox
from sqlalchemy import select, func
from settlement.config import settings

logger = logging.getLogger("settlement.workers")

Publisher = Callable[[dict], Awaitable[None]]

async def rabbit_publish(payload: dict) -> None:
    exchange = await get_exchange()
    await exchange.publish(
        Message(
            body=json.dumps(payload).encode(),
            content_type="application/json",
            delivery_mode=DeliveryMode.PERSISTENT,
        ),
        routing_key=QUEUE_ORDER_SETTLED
    )

async def publish_settled(session_factory, publish: Publisher, batch_size: int = 50) -> int:
    """Publish outbox rows whose follow-ups are done and stamp published_at."""
    async with session_factory() as session:
        stmt = (
            select(SettlementOutbox)
            .where(
                SettlementOutbox.processed_at.is_not(None),
                SettlementOutbox.published_at.is_(None),
            )
            .order_by(SettlementOutbox.created_at)
            .limit(batch_size)
        )
        result = await session.execute(stmt)
        events = result.scalars().all()
        if not events:
            return 0

        logger.info("[Outbox] Publishing %d settled orders", len(events))
        for ev in events:
            payload = {
                "event_type": ev.event_type,
                "order_id": str(ev.aggregate_id),
                **ev.payload,
            }
            await publish(payload)
            ev.published_at = func.now()
            session.add(ev)

        await session.commit()
        logger.info("[Outbox] Outbox publish commit complete")
        return len(events)

async def outbox_processor(followups: SettlementFollowups, session_factory):
    INTERVAL = settings.OUTBOX_POLL_INTERVAL

    while True:
        try:
            await followups.run_pending(settings.OUTBOX_GRACE_SECONDS)
            if broker_enabled():
                await publish_settled(session_factory, rabbit_publish, settings.OUTBOX_BATCH_SIZE)
        except Exception as e:
            logger.error("[Outbox] Pass failed, retrying in %ss: %s", INTERVAL, e)

        await asyncio.sleep(INTERVAL)
