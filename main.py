"""
main.py: FastAPI entry point for the Bazm storefront API.

Customer routes: quote, checkout, voucher validation, product listing.
Admin routes (X-Admin-Key): order listing, lookup and status; voucher management and stats.

Every failure leaves as `{"success": false, "message": ..., "errorCode": ...}`.
"""
from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, FastAPI, Header, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from audit import VoucherAudit
from checkout import CheckoutService
from config import Settings, get_settings
from database import MongoStore
from errors import Forbidden, ShopError, VoucherInvalid, VoucherNotFound
from logging_config import get_logger, setup_logging
from orders import OrderService
from quotes import QuoteCalculator
from schemas import (
    ActorType,
    AuditAction,
    CheckoutRequest,
    CheckoutResponse,
    Customer,
    DeleteResponse,
    Order,
    OrderPage,
    OrderStatus,
    OrderStatusUpdate,
    Product,
    Quote,
    QuoteRequest,
    SortOrder,
    Voucher,
    VoucherCreate,
    VoucherPage,
    VoucherSortField,
    VoucherStats,
    VoucherStatusFilter,
    VoucherStatusUpdate,
    VoucherType,
    VoucherUpdate,
    VoucherValidateRequest,
    VoucherValidateResponse,
)
from vouchers import VoucherAdmin, normalize_code

settings = get_settings()
setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
log = get_logger(__name__)

app = FastAPI(title="Bazm Storefront API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def on_startup():
    # Tests attach their own store before startup
    if getattr(app.state, "store", None) is None:
        app.state.store = MongoStore()
    await app.state.store.ensure_indexes()
    log.info("Storefront API started.")


# Dependencies

def get_store(request: Request):
    return request.app.state.store


def customer_id(x_customer_id: Optional[str] = Header(None, alias="X-Customer-Id")) -> Optional[str]:
    """Signed-in customer attached by the auth gateway; absent for guests."""
    return (x_customer_id or "").strip() or None


def require_admin(
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key"),
    settings: Settings = Depends(get_settings),
):
    expected = settings.ADMIN_API_KEY
    if not expected or not x_admin_key or not secrets.compare_digest(x_admin_key, expected):
        raise Forbidden("Admin access required")


# Error envelope

def error_body(message: str, error_code: Optional[str] = None) -> dict:
    body = {"success": False, "message": message}
    if error_code:
        body["errorCode"] = error_code
    return body


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    if exc.status_code >= 500:
        log.error(f"{request.method} {request.url.path} failed: {exc.error_code} {exc.message}", exc_info=exc)
    else:
        log.warning(f"{request.method} {request.url.path} rejected: {exc.error_code} {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.message, exc.error_code))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        problems.append(f"{field}: {err.get('msg')}" if field else str(err.get("msg")))
    message = "; ".join(problems) or "Invalid request"
    log.warning(f"{request.method} {request.url.path} invalid: {message}")
    return JSONResponse(status_code=400, content=error_body(message, "VALIDATION_ERROR"))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    log.critical(f"{request.method} {request.url.path} crashed: {exc}", exc_info=exc)
    return JSONResponse(status_code=500, content=error_body("Internal server error"))


# Customer routes

@app.get("/health")
async def health_check():
    return {"status": "ok"}


@app.get("/products", response_model=list[Product])
async def list_products(q: Optional[str] = Query(None), store=Depends(get_store)):
    return await store.list_products(q)


@app.post("/orders/quote", response_model=Quote, response_model_exclude_none=True)
async def quote_order(
    payload: QuoteRequest,
    store=Depends(get_store),
    user_id: Optional[str] = Depends(customer_id),
    settings: Settings = Depends(get_settings),
):
    customer = Customer(user_id=user_id) if user_id else None
    return await QuoteCalculator(store, settings).quote(payload.items, payload.voucher_code, customer)


@app.post("/orders/checkout", response_model=CheckoutResponse, status_code=201)
async def checkout(
    payload: CheckoutRequest,
    response: Response,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    store=Depends(get_store),
    user_id: Optional[str] = Depends(customer_id),
    settings: Settings = Depends(get_settings),
):
    """
    Places an order. Retries with the same Idempotency-Key return the first order
    (status 200 instead of 201) without touching stock or vouchers again.
    """
    if not idempotency_key:
        idempotency_key = f"srv-{uuid.uuid4()}"
        log.warning(f"Checkout without Idempotency-Key, generated {idempotency_key}; retries will not be deduplicated.")

    result = await CheckoutService(store, settings=settings).checkout(payload, idempotency_key, user_id)
    if result.replayed:
        response.status_code = 200
    return CheckoutResponse(id=result.order.id)


@app.post("/vouchers/validate", response_model=VoucherValidateResponse, response_model_exclude_none=True)
async def validate_voucher(
    payload: VoucherValidateRequest,
    store=Depends(get_store),
    user_id: Optional[str] = Depends(customer_id),
    settings: Settings = Depends(get_settings),
):
    """Checks a code against the cart without consuming a use. Invalid codes are a 200 with `valid: false`."""
    customer = Customer(email=payload.customer_email, user_id=user_id)
    audit = VoucherAudit(store)
    code = normalize_code(payload.code)
    if not code:
        return VoucherValidateResponse(valid=False, message="Voucher code is required.", error_code=VoucherNotFound.error_code)
    try:
        priced = await QuoteCalculator(store, settings).price(
            payload.items, payload.code, customer, strict=True
        )
    except VoucherInvalid as e:
        await audit.publish(
            AuditAction.VALIDATION_FAILED, ActorType.CUSTOMER,
            actor_id=user_id, code=code, result="INVALID", error_code=e.error_code,
        )
        return VoucherValidateResponse(valid=False, message=e.message, error_code=e.error_code, code=code)

    terms, quote = priced.voucher, priced.quote
    await audit.publish(
        AuditAction.VALIDATED, ActorType.CUSTOMER,
        voucher_id=terms.voucher_id, actor_id=user_id, code=terms.code, result="VALID",
        metadata={"discountCents": quote.discount_cents},
    )
    return VoucherValidateResponse(
        valid=True,
        voucher_id=terms.voucher_id,
        code=terms.code,
        type=terms.type,
        discount_cents=quote.discount_cents,
        shipping_cents=quote.shipping_cents,
        subtotal_cents=quote.subtotal_cents,
        total_cents=quote.total_cents,
        currency=quote.currency,
    )


# Admin routes

@app.get("/orders", response_model=OrderPage, dependencies=[Depends(require_admin)])
async def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[OrderStatus] = Query(None),
    customer_email: Optional[str] = Query(None, alias="customerEmail"),
    date_from: Optional[datetime] = Query(None, alias="dateFrom"),
    date_to: Optional[datetime] = Query(None, alias="dateTo"),
    store=Depends(get_store),
):
    return await OrderService(store).list(
        status=status, customer_email=customer_email, date_from=date_from, date_to=date_to, page=page, limit=limit
    )


@app.get("/orders/{order_id}", response_model=Order, dependencies=[Depends(require_admin)])
async def get_order(order_id: str, store=Depends(get_store)):
    return await OrderService(store).get(order_id)


@app.patch("/orders/{order_id}/status", response_model=Order, dependencies=[Depends(require_admin)])
async def update_order_status(order_id: str, payload: OrderStatusUpdate, store=Depends(get_store)):
    return await OrderService(store).update_status(order_id, payload.status)


@app.post("/vouchers", response_model=Voucher, status_code=201, dependencies=[Depends(require_admin)])
async def create_voucher(payload: VoucherCreate, store=Depends(get_store)):
    return await VoucherAdmin(store, VoucherAudit(store)).create(payload)


@app.get("/vouchers", response_model=VoucherPage, dependencies=[Depends(require_admin)])
async def list_vouchers(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = Query(None),
    status_filter: Optional[VoucherStatusFilter] = Query(None, alias="statusFilter"),
    sort_by: VoucherSortField = Query(VoucherSortField.CREATED_AT, alias="sortBy"),
    sort_order: SortOrder = Query(SortOrder.DESC, alias="sortOrder"),
    store=Depends(get_store),
):
    return await VoucherAdmin(store, VoucherAudit(store)).list(
        search=search, status_filter=status_filter, page=page, limit=limit, sort_by=sort_by, sort_order=sort_order
    )


@app.get("/vouchers/{voucher_id}", response_model=Voucher, dependencies=[Depends(require_admin)])
async def get_voucher(voucher_id: str, store=Depends(get_store)):
    return await VoucherAdmin(store, VoucherAudit(store)).get(voucher_id)


@app.patch("/vouchers/{voucher_id}", response_model=Voucher, dependencies=[Depends(require_admin)])
async def update_voucher(voucher_id: str, payload: VoucherUpdate, store=Depends(get_store)):
    return await VoucherAdmin(store, VoucherAudit(store)).update(voucher_id, payload)


@app.patch("/vouchers/{voucher_id}/status", response_model=Voucher, dependencies=[Depends(require_admin)])
async def update_voucher_status(voucher_id: str, payload: VoucherStatusUpdate, store=Depends(get_store)):
    return await VoucherAdmin(store, VoucherAudit(store)).set_active(voucher_id, payload.is_active)


@app.delete("/vouchers/{voucher_id}", response_model=DeleteResponse, dependencies=[Depends(require_admin)])
async def delete_voucher(voucher_id: str, store=Depends(get_store)):
    await VoucherAdmin(store, VoucherAudit(store)).remove(voucher_id)
    return DeleteResponse()


@app.get("/vouchers/{voucher_id}/stats", response_model=VoucherStats, dependencies=[Depends(require_admin)])
async def voucher_stats(voucher_id: str, store=Depends(get_store)):
    return await VoucherAdmin(store, VoucherAudit(store)).stats(voucher_id)


# Seed data: a starter catalog plus a welcome voucher
SEED_PRODUCTS: list[dict] = [
    {"name": "Faiz Oversized Tee", "price_cents": 350000, "stock_quantity": 40, "category_ids": ["tees"], "description": "Heavyweight cotton, hand-lettered Faiz couplet on the back."},
    {"name": "Ghalib Hoodie", "price_cents": 650000, "stock_quantity": 25, "category_ids": ["hoodies"], "description": "Brushed fleece hoodie with a Ghalib verse across the chest."},
    {"name": "Iqbal Crewneck", "price_cents": 550000, "stock_quantity": 30, "category_ids": ["sweatshirts"], "description": "Garment-dyed crewneck, Iqbal script embroidery."},
    {"name": "Mir Taqi Mir Cap", "price_cents": 180000, "stock_quantity": 60, "category_ids": ["accessories"], "description": "Six-panel cap with embroidered nastaliq."},
    {"name": "Parveen Shakir Tote", "price_cents": 150000, "stock_quantity": 50, "category_ids": ["accessories"], "description": "Canvas tote printed with a Parveen Shakir line."},
    {"name": "Jaun Elia Long Sleeve", "price_cents": 420000, "stock_quantity": 20, "category_ids": ["tees"], "description": "Long sleeve tee, Jaun Elia verse down the sleeve."},
]


class SeedResponse(BaseModel):
    inserted: int


@app.post("/seed", response_model=SeedResponse, dependencies=[Depends(require_admin)])
async def seed_catalog(store=Depends(get_store), settings: Settings = Depends(get_settings)):
    # Insert only if the catalog is empty
    if await store.count_products() > 0:
        return SeedResponse(inserted=0)
    for p in SEED_PRODUCTS:
        await store.insert_product(Product(id=str(uuid.uuid4()), currency=settings.DEFAULT_CURRENCY, **p))
    if await store.get_voucher_by_code("WELCOME10") is None:
        now = datetime.now(timezone.utc)
        await store.insert_voucher(Voucher(
            id=str(uuid.uuid4()),
            code="WELCOME10",
            type=VoucherType.PERCENTAGE,
            value=10,
            min_order_value_cents=300000,
            start_date=now,
            expiry_date=now + timedelta(days=90),
            usage_limit_per_user=1,
            created_at=now,
        ))
    log.info(f"Seeded {len(SEED_PRODUCTS)} products.")
    return SeedResponse(inserted=len(SEED_PRODUCTS))


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=settings.PORT)
