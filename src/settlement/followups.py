import logging
from datetime import date, datetime, timedelta, timezone
from typing import List
from uuid import UUID

from sqlalchemy import select

from settlement import crud
from settlement.models import SettlementOutbox
from settlement.notifications import NotificationDispatcher, OrderFacts

logger = logging.getLogger("settlement.followups")

ORDER_SETTLED = "order_settled"


class SettlementFollowups:
    """
    Side effects that may fail without invalidating a settlement: the daily
    brand rollup and the seller notification. Each outbox row is claimed once;
    the rollup is bumped in the claiming transaction.
    """

    def __init__(self, session_factory, dispatcher: NotificationDispatcher, batch_size: int = 50):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.batch_size = batch_size

    async def run(self, outbox_id: UUID) -> bool:
        async with self.session_factory() as session:
            if not await crud.claim_outbox_event(outbox_id, session):
                await session.rollback()
                return False
            event = await session.get(SettlementOutbox, outbox_id)
            payload = event.payload

            brand_id = payload.get("brand_id")
            if brand_id:
                await crud.bump_daily_stat(
                    UUID(brand_id),
                    date.fromisoformat(payload["settled_on"]),
                    payload["seller_amount"],
                    session,
                )
            await session.commit()

        if payload.get("order"):
            await self.dispatcher.dispatch(OrderFacts(**payload["order"]))
        return True

    async def run_safely(self, outbox_id: UUID) -> None:
        try:
            await self.run(outbox_id)
        except Exception:
            logger.exception("[Outbox] Follow-ups failed for %s, left for retry", outbox_id)

    async def pending(self, grace_seconds: int = 0) -> List[UUID]:
        stmt = select(SettlementOutbox.id).where(SettlementOutbox.processed_at.is_(None))
        if grace_seconds:
            cutoff = datetime.now(timezone.utc) - timedelta(seconds=grace_seconds)
            stmt = stmt.where(SettlementOutbox.created_at <= cutoff)
        stmt = stmt.order_by(SettlementOutbox.created_at).limit(self.batch_size)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def run_pending(self, grace_seconds: int = 0) -> int:
        ids = await self.pending(grace_seconds)
        if ids:
            logger.info("[Outbox] Found %d unprocessed settlement events", len(ids))
        done = 0
        for outbox_id in ids:
            try:
                if await self.run(outbox_id):
                    done += 1
            except Exception:
                logger.exception("[Outbox] Follow-ups failed for %s", outbox_id)
        return done
