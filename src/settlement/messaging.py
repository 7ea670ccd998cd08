import asyncio
import logging
from aio_pika import connect_robust, ExchangeType
from aio_pika.abc import AbstractExchange, AbstractRobustConnection, AbstractRobustChannel
from settlement.config import settings

logger = logging.getLogger("settlement.messaging")

SETTLEMENT_EXCHANGE = "settlement_exchange"
QUEUE_ORDER_SETTLED = "order_settled"

rabbit_connection: AbstractRobustConnection | None = None
rabbit_channel: AbstractRobustChannel | None = None
settlement_exchange: AbstractExchange | None = None


def broker_enabled() -> bool:
    return bool(settings.RABBIT_HOST)


def broker_url() -> str:
    return f"amqp://{settings.RABBIT_USER}:{settings.RABBIT_PASSWORD}@{settings.RABBIT_HOST}:{settings.RABBIT_PORT}/"


async def init_rabbit(retry_attempts: int = 5, retry_delay: int = 2) -> None:
    """Connect and declare the settlement exchange with its order_settled queue.

    Without RABBIT_HOST the service runs without publishing; settled outbox
    rows simply stay unpublished.
    """
    global rabbit_connection, rabbit_channel, settlement_exchange
    if not broker_enabled():
        logger.warning("[Broker] RABBIT_HOST not set, order_settled events will not be published")
        return

    for attempt in range(1, retry_attempts + 1):
        try:
            logger.info("[Broker] Connecting to RabbitMQ (attempt %d/%d)", attempt, retry_attempts)
            rabbit_connection = await connect_robust(broker_url())
            rabbit_channel = await rabbit_connection.channel()
            settlement_exchange = await rabbit_channel.declare_exchange(
                SETTLEMENT_EXCHANGE, ExchangeType.DIRECT, durable=True
            )
            queue = await rabbit_channel.declare_queue(QUEUE_ORDER_SETTLED, durable=True)
            await queue.bind(settlement_exchange, QUEUE_ORDER_SETTLED)
            logger.info("[Broker] Exchange %s ready", SETTLEMENT_EXCHANGE)
            return
        except Exception as e:
            logger.error("[Broker] RabbitMQ init failed: %s", e)
            if attempt == retry_attempts:
                raise
            await asyncio.sleep(retry_delay)


async def get_exchange() -> AbstractExchange:
    if settlement_exchange is None:
        await init_rabbit()
    return settlement_exchange


async def close_rabbit() -> None:
    global rabbit_connection, rabbit_channel, settlement_exchange
    if rabbit_connection:
        await rabbit_connection.close()
        logger.info("[Broker] RabbitMQ connection closed")
    rabbit_connection = None
    rabbit_channel = None
    settlement_exchange = None
