from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import httpx

from settlement.adapters import InvoiceConfirmationAdapter, PollAdapter, WebhookAdapter
from settlement.checkout import CheckoutService
from settlement.config import Settings, settings as default_settings
from settlement.currency import CurrencyNormalizer, ExchangeRateCache, ExchangeRateFeed
from settlement.db import AsyncSessionLocal
from settlement.followups import SettlementFollowups
from settlement.gateways import InvoiceProvider, PaymentGateway
from settlement.notifications import EmailClient, NotificationDispatcher
from settlement.pricing import CartValidator
from settlement.settlement import SettlementEngine


@dataclass
class Services:
    session_factory: object
    normalizer: CurrencyNormalizer
    validator: CartValidator
    engine: SettlementEngine
    followups: SettlementFollowups
    checkout: CheckoutService
    webhook: WebhookAdapter
    poll: PollAdapter
    invoice_confirmation: InvoiceConfirmationAdapter
    http_client: Optional[httpx.AsyncClient] = None

    async def aclose(self) -> None:
        if self.http_client is not None:
            await self.http_client.aclose()


def build_services(
    session_factory=AsyncSessionLocal,
    settings: Settings = default_settings,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Services:
    if http_client is None:
        http_client = httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS)

    cache = ExchangeRateCache(
        fetch_rates=ExchangeRateFeed(settings.EXCHANGE_RATE_URL, client=http_client),
        fallback={
            "USD": Decimal(settings.FALLBACK_USD_TO_EUR),
            "GBP": Decimal(settings.FALLBACK_GBP_TO_EUR),
        },
        ttl_seconds=settings.EXCHANGE_RATE_TTL_SECONDS,
        retry_after_seconds=settings.EXCHANGE_RATE_RETRY_SECONDS,
    )
    normalizer = CurrencyNormalizer(cache, settings.SETTLEMENT_CURRENCY)
    validator = CartValidator(session_factory, normalizer)

    gateway = PaymentGateway(settings.STRIPE_SECRET_KEY, settings.STRIPE_API_BASE, client=http_client)
    invoices = InvoiceProvider(settings.LAVA_API_KEY, settings.LAVA_OFFER_ID, settings.LAVA_API_BASE, client=http_client)
    email = EmailClient(settings.RESEND_API_KEY, settings.EMAIL_FROM, settings.RESEND_API_BASE, client=http_client)

    dispatcher = NotificationDispatcher(session_factory, email, settings.SITE_URL)
    followups = SettlementFollowups(session_factory, dispatcher, batch_size=settings.OUTBOX_BATCH_SIZE)
    engine = SettlementEngine(session_factory, normalizer, followups, fee_percent=settings.PLATFORM_FEE_PERCENT)

    return Services(
        session_factory=session_factory,
        normalizer=normalizer,
        validator=validator,
        engine=engine,
        followups=followups,
        checkout=CheckoutService(session_factory, validator, gateway, invoices, settings.PLATFORM_FEE_PERCENT),
        webhook=WebhookAdapter(engine, session_factory, settings.STRIPE_WEBHOOK_SECRET, settings.WEBHOOK_TOLERANCE_SECONDS),
        poll=PollAdapter(engine, gateway),
        invoice_confirmation=InvoiceConfirmationAdapter(engine, invoices, session_factory),
        http_client=http_client,
    )
