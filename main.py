import logging
import os
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse, StreamingResponse
from starlette.concurrency import run_in_threadpool

import notifications
import payments
from database import MongoStore, db, serialize_doc
from errors import (
    AuthenticationError,
    AuthorizationError,
    InsufficientStockError,
    NotFoundError,
    RateLimitError,
    StorefrontError,
    ValidationError,
)
from orders import get_order, place_order
from purchases import complete_free_purchase, initiate_purchase
from schemas import OrderCreate, PurchaseComplete, PurchaseCreate
from security import (
    Identity,
    RateLimiter,
    RequestInfo,
    bearer_token,
    order_rate_limiter,
    rate_limit_key,
    resolve_identity,
)

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

app = FastAPI(title="Storefront Orders & Payments API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_order_limiter = order_rate_limiter()
STREAM_HEARTBEAT_SECONDS = 15


def get_store() -> MongoStore:
    if db is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return MongoStore(db)


def get_broadcaster() -> notifications.Broadcaster:
    return notifications.broadcaster


def get_order_limiter() -> RateLimiter:
    return _order_limiter


def get_identity(
    authorization: Optional[str] = Header(None),
    store: MongoStore = Depends(get_store),
) -> Optional[Identity]:
    return resolve_identity(store, bearer_token(authorization))


def request_info(request: Request) -> RequestInfo:
    return RequestInfo.from_headers(request.headers, request.client.host if request.client else None)


def base_url(request: Request) -> str:
    return os.getenv("APP_URL") or str(request.base_url)


@app.exception_handler(StorefrontError)
def storefront_error_handler(request: Request, exc: StorefrontError):
    content = {"success": False, "error": exc.error, "message": str(exc)}
    headers = None
    if isinstance(exc, ValidationError):
        content["details"] = exc.details
    if isinstance(exc, RateLimitError):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError):
    details = [
        {
            "path": ".".join(str(part) for part in err.get("loc", ())[1:]),
            "message": err.get("msg", ""),
            "code": err.get("type", ""),
        }
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "Validation Error", "message": "Invalid request data", "details": details},
    )


@app.get("/")
def read_root():
    return {"message": "Storefront Orders & Payments Backend"}


# Orders
@app.post("/api/order", status_code=201)
def create_order(
    payload: OrderCreate,
    request: Request,
    store: MongoStore = Depends(get_store),
    identity: Optional[Identity] = Depends(get_identity),
    broadcaster: notifications.Broadcaster = Depends(get_broadcaster),
    limiter: RateLimiter = Depends(get_order_limiter),
):
    info = request_info(request)
    decision = limiter.check(rate_limit_key(info, identity.user_id if identity else None))
    if not decision.allowed:
        raise RateLimitError(decision.retry_after(), "Order rate limit exceeded. Please try again later.")

    try:
        order = place_order(store, payload, identity, broadcaster, info)
    except (NotFoundError, InsufficientStockError) as exc:
        logger.warning("Order rejected: %s", exc)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Failed to place order", "message": str(exc)},
        )

    return JSONResponse(
        status_code=201,
        content={"success": True, "message": "Order placed successfully", "orderId": str(order["_id"])},
        headers={"X-RateLimit-Remaining": str(decision.remaining)},
    )


@app.get("/api/order/{order_id}")
def read_order(order_id: str, store: MongoStore = Depends(get_store)):
    return {"success": True, "order": serialize_doc(get_order(store, order_id))}


# Template purchases
@app.post("/api/purchases")
def create_purchase(
    payload: PurchaseCreate,
    store: MongoStore = Depends(get_store),
    identity: Optional[Identity] = Depends(get_identity),
):
    return initiate_purchase(store, identity, payload)


@app.post("/api/purchases/complete-free")
def complete_free(
    payload: PurchaseComplete,
    store: MongoStore = Depends(get_store),
    identity: Optional[Identity] = Depends(get_identity),
):
    return complete_free_purchase(store, identity, payload)


# Paymob notifications
async def _webhook_body(request: Request):
    try:
        return await request.json()
    except ValueError:
        return None


def _signature_rejected(exc: AuthenticationError) -> JSONResponse:
    logger.warning("Paymob webhook rejected: %s", exc)
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})


@app.post("/api/paymob/template-webhook")
async def template_webhook(request: Request, hmac: Optional[str] = None, store: MongoStore = Depends(get_store)):
    body = await _webhook_body(request)
    try:
        return await run_in_threadpool(payments.handle_template_webhook, store, body, hmac, payments.hmac_secret())
    except AuthenticationError as exc:
        return _signature_rejected(exc)


@app.get("/api/paymob/template-webhook")
def template_callback(request: Request, store: MongoStore = Depends(get_store)):
    locale = os.getenv("TEMPLATE_PAYMENT_LOCALE", "ar")
    url = payments.handle_template_callback(store, request.query_params, base_url(request), locale)
    return RedirectResponse(url, status_code=307)


@app.post("/api/paymob/webhook")
async def order_webhook(request: Request, hmac: Optional[str] = None, store: MongoStore = Depends(get_store)):
    body = await _webhook_body(request)
    try:
        return await run_in_threadpool(payments.handle_order_webhook, store, body, hmac, payments.hmac_secret())
    except AuthenticationError as exc:
        return _signature_rejected(exc)


@app.get("/api/paymob/webhook")
def order_callback(request: Request, store: MongoStore = Depends(get_store)):
    locale = os.getenv("ORDER_PAYMENT_LOCALE", "en")
    url = payments.handle_order_callback(store, request.query_params, base_url(request), locale)
    return RedirectResponse(url, status_code=307)


# Admin live order feed
@app.get("/api/admin/orders/stream")
def order_stream(
    identity: Optional[Identity] = Depends(get_identity),
    broadcaster: notifications.Broadcaster = Depends(get_broadcaster),
):
    if identity is None:
        raise AuthenticationError("Unauthorized")
    if not identity.is_admin:
        raise AuthorizationError()

    client_id, events = broadcaster.subscribe()
    return StreamingResponse(
        notifications.stream_events(broadcaster, client_id, events, heartbeat_seconds=STREAM_HEARTBEAT_SECONDS),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get("/test")
def test_database(store: MongoStore = Depends(get_store)):
    return {
        "backend": "✅ Running",
        "database_name": store.name,
        "collections": store.collection_names()[:10],
        "hmac_secret": "✅ Set" if payments.hmac_secret() else "❌ Not Set",
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
