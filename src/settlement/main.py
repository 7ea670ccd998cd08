import asyncio
import logging
from fastapi import FastAPI, HTTPException, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
from uuid import UUID
from settlement import crud, schemas, workers
from settlement.db import create_schema, get_session
from settlement.adapters import InvoiceConfirmationError
from settlement.gateways import GatewayError, GatewayNotConfiguredError, SignatureVerificationError
from settlement.messaging import init_rabbit, close_rabbit
from settlement.models import Brand
from settlement.pricing import CartValidationError
from settlement.currency import UnsupportedCurrencyError
from settlement.services import Services, build_services
import uvicorn

logger = logging.getLogger(__name__)
app = FastAPI(title="Settlement Service")

@app.on_event("startup")
async def startup_event():
    await create_schema()

    await init_rabbit()

    app.state.services = build_services()
    app.state.outbox_task = asyncio.create_task(
        workers.outbox_processor(app.state.services.followups, app.state.services.session_factory)
    )

@app.on_event("shutdown")
async def shutdown_event():
    app.state.outbox_task.cancel()
    await app.state.services.aclose()
    await close_rabbit()


def get_services(request: Request) -> Services:
    return request.app.state.services


@app.exception_handler(CartValidationError)
async def cart_validation_handler(request: Request, exc: CartValidationError):
    return JSONResponse(status_code=400, content={"code": exc.code, "detail": str(exc)})

@app.exception_handler(UnsupportedCurrencyError)
async def unsupported_currency_handler(request: Request, exc: UnsupportedCurrencyError):
    return JSONResponse(status_code=400, content={"code": exc.code, "detail": str(exc)})

@app.exception_handler(InvoiceConfirmationError)
async def invoice_confirmation_handler(request: Request, exc: InvoiceConfirmationError):
    return JSONResponse(status_code=exc.status_code, content={"code": exc.code, "detail": str(exc)})

@app.exception_handler(GatewayNotConfiguredError)
async def gateway_not_configured_handler(request: Request, exc: GatewayNotConfiguredError):
    return JSONResponse(status_code=503, content={"detail": str(exc)})

@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    return JSONResponse(status_code=502, content={"detail": "Payment provider error"})


@app.post("/checkout", response_model=schemas.CardCheckoutResponse)
async def card_checkout(
    checkout_in: schemas.CheckoutRequest,
    user_id: UUID = Query(...),
    services: Services = Depends(get_services)
):
    return await services.checkout.start_card_checkout(user_id, checkout_in)

@app.post("/checkout/invoice", response_model=schemas.InvoiceCheckoutResponse)
async def invoice_checkout(
    checkout_in: schemas.CheckoutRequest,
    user_id: UUID = Query(...),
    services: Services = Depends(get_services)
):
    return await services.checkout.start_invoice_checkout(user_id, checkout_in)

@app.post("/checkout/confirm", response_model=schemas.SettlementStatus)
async def confirm_invoice(
    confirm_in: schemas.ConfirmInvoiceRequest,
    user_id: UUID = Query(...),
    services: Services = Depends(get_services)
):
    return await services.invoice_confirmation.confirm(user_id, confirm_in)


@app.post("/stripe/webhook")
async def stripe_webhook(request: Request, services: Services = Depends(get_services)):
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    try:
        return await services.webhook.handle(payload, signature)
    except SignatureVerificationError as e:
        logger.error("[Webhook] Signature verification failed: %s", e)
        raise HTTPException(status_code=400, detail="Invalid signature")
    except Exception:
        # non-2xx makes the gateway redeliver
        logger.exception("[Webhook] Handler failed")
        raise HTTPException(status_code=500, detail="Webhook handler failed")

@app.get("/stripe/payment-status", response_model=schemas.SettlementStatus)
async def payment_status(
    payment_intent: str = Query(..., min_length=1),
    services: Services = Depends(get_services)
):
    return await services.poll.check(payment_intent)


async def _order_read(orders, session: AsyncSession) -> List[schemas.OrderRead]:
    items = await crud.get_order_items([o.id for o in orders], session)
    return [
        schemas.OrderRead.model_validate(o).model_copy(update={
            "items": [schemas.OrderItemRead.model_validate(i) for i in items[o.id]]
        })
        for o in orders
    ]

@app.get("/orders", response_model=list[schemas.OrderRead])
async def list_orders(
    user_id: UUID,
    session: AsyncSession = Depends(get_session)
):
    orders = await crud.get_orders_by_user(user_id, session)
    return await _order_read(orders, session)

@app.get("/orders/{order_number}", response_model=schemas.OrderRead)
async def get_order(
    order_number: int,
    user_id: UUID,
    session: AsyncSession = Depends(get_session)
):
    order = await crud.get_order(order_number, user_id, session)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return (await _order_read([order], session))[0]

@app.get("/brands/{brand_id}/ledger", response_model=schemas.BrandLedgerRead)
async def get_brand_ledger(
    brand_id: UUID,
    session: AsyncSession = Depends(get_session)
):
    brand: Optional[Brand] = await session.get(Brand, brand_id)
    if not brand:
        raise HTTPException(status_code=404, detail="Brand not found")
    return brand


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    uvicorn.run("settlement.main:app", host="0.0.0.0", port=8000)
