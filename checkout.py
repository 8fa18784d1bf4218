"""
checkout.py: turns a checkout submission into exactly one order.

Flow per idempotency key:
    NEW -> QUOTED -> COMMITTED, or NEW/QUOTED -> FAILED

1. Replay: an order already recorded for the key is returned as-is.
2. Quote: the cart is priced again from the catalog (the client's totals are ignored);
   a voucher the customer insists on must still be valid.
3. Payment: BANK_DEPOSIT needs an uploaded payment proof, COD does not.
4. Commit, in one transaction: claim the key, decrement stock with a floor, redeem
   the voucher, insert the order with frozen prices. Any failure rolls all of it back.
"""
from __future__ import annotations

import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from audit import VoucherAudit
from config import Settings, get_settings
from errors import (
    IdempotencyConflict,
    InsufficientStock,
    InvariantViolation,
    MediaNotFound,
    ShopError,
    UsageLimitExceeded,
    UserLimitExceeded,
    ValidationError,
)
from logging_config import get_logger
from quotes import PricedCart, QuoteCalculator, utc_now
from schemas import (
    ActorType,
    AuditAction,
    CheckoutRequest,
    Customer,
    MovementType,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    StatusHistoryEntry,
)

log = get_logger(__name__)

MAX_IDEMPOTENCY_KEY_LENGTH = 255


class CheckoutState(str, Enum):
    NEW = "NEW"
    QUOTED = "QUOTED"
    COMMITTED = "COMMITTED"
    FAILED = "FAILED"


@dataclass
class CheckoutResult:
    order: Order
    state: CheckoutState
    replayed: bool = False


def _clean(value: Optional[str]) -> Optional[str]:
    value = (value or "").strip()
    return value or None


class CheckoutService:
    def __init__(
        self,
        store,
        calculator: Optional[QuoteCalculator] = None,
        audit: Optional[VoucherAudit] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock
        self.calculator = calculator or QuoteCalculator(store, self.settings, clock)
        self.audit = audit or VoucherAudit(store)

    async def checkout(
        self,
        request: CheckoutRequest,
        idempotency_key: str,
        customer_user_id: Optional[str] = None,
    ) -> CheckoutResult:
        """
        Places an order for a checkout submission, at most once per idempotency key.

        Args:
            request: Validated checkout payload.
            idempotency_key: Client-generated key, reused on retries.
            customer_user_id: Signed-in customer, or None for guests.

        Returns:
            CheckoutResult with the order; `replayed` is True when the key had
            already produced an order (no stock or voucher change in that case).

        Raises:
            ShopError: Any rule violation; nothing is persisted.
        """
        key = (idempotency_key or "").strip()
        if not key or len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
            raise ValidationError("Idempotency-Key must be 1-255 characters")
        log_prefix = f"[Checkout: {key}]"
        now = self.clock()

        existing = await self.store.get_order_by_idempotency_key(key, now)
        if existing is not None:
            log.info(f"{log_prefix} Replay, returning order {existing.id}.")
            return CheckoutResult(order=existing, state=CheckoutState.COMMITTED, replayed=True)

        state = CheckoutState.NEW
        customer = Customer(email=str(request.customer_email), user_id=customer_user_id)
        try:
            priced = await self.calculator.price(
                request.items, request.voucher_code, customer, now=now, strict=True
            )
            state = CheckoutState.QUOTED
            log.info(f"{log_prefix} Quoted total {priced.quote.total_cents} {priced.quote.currency}.")

            proof_id = await self._payment_proof(request)
            order = self._build_order(request, priced, key, customer_user_id, proof_id, now)

            async def commit(session):
                await self._commit(order, priced, customer, now, session)

            await self.store.run_in_transaction(commit)

        except IdempotencyConflict:
            winner = await self.store.get_order_by_idempotency_key(key)
            if winner is None:
                raise InvariantViolation(f"Idempotency key {key} is claimed but has no order")
            log.info(f"{log_prefix} Lost race on key, returning order {winner.id}.")
            return CheckoutResult(order=winner, state=CheckoutState.COMMITTED, replayed=True)

        except ShopError as e:
            log.warning(f"{log_prefix} {CheckoutState.FAILED.value} after {state.value}: {e.error_code} {e.message}")
            raise

        log.info(f"[Order: {order.id}] Placed ({order.payment_method}, {order.total_cents} {order.currency}).")
        return CheckoutResult(order=order, state=CheckoutState.COMMITTED)

    async def _payment_proof(self, request: CheckoutRequest) -> Optional[str]:
        if request.payment_method != PaymentMethod.BANK_DEPOSIT:
            return None
        media_id = _clean(request.payment_proof_media_id)
        if media_id is None:
            raise ValidationError("Payment proof is required for bank deposit orders")
        media = await self.store.get_media(media_id)
        if media is None:
            raise MediaNotFound("Payment proof upload not found. Please upload it again.")
        return media.id

    def _build_order(
        self,
        request: CheckoutRequest,
        priced: PricedCart,
        key: str,
        customer_user_id: Optional[str],
        proof_id: Optional[str],
        now: datetime,
    ) -> Order:
        quote = priced.quote
        return Order(
            id=str(uuid.uuid4()),
            status=OrderStatus.PENDING,
            idempotency_key=key,
            customer_email=str(request.customer_email),
            customer_name=_clean(request.customer_name),
            customer_phone=_clean(request.customer_phone),
            customer_user_id=customer_user_id,
            shipping_country=_clean(request.shipping_country),
            shipping_address_line1=_clean(request.shipping_address_line1),
            shipping_address_line2=_clean(request.shipping_address_line2),
            shipping_city=_clean(request.shipping_city),
            shipping_postal_code=_clean(request.shipping_postal_code),
            payment_method=request.payment_method,
            payment_proof_media_id=proof_id,
            items=[
                OrderItem(
                    product_id=line.product_id,
                    product_name=line.product_name,
                    quantity=line.quantity,
                    unit_cents=line.unit_cents,
                )
                for line in quote.items
            ],
            subtotal_cents=quote.subtotal_cents,
            shipping_cents=quote.shipping_cents,
            discount_cents=quote.discount_cents,
            total_cents=quote.total_cents,
            currency=quote.currency,
            voucher_code=quote.voucher_code,
            discount_type=quote.discount_type,
            status_history=[StatusHistoryEntry(status=OrderStatus.PENDING, created_at=now)],
            created_at=now,
            updated_at=now,
        )

    async def _commit(self, order: Order, priced: PricedCart, customer: Customer, now: datetime, session):
        expires_at = now + timedelta(hours=self.settings.IDEMPOTENCY_TTL_HOURS)
        await self.store.claim_idempotency_key(order.idempotency_key, order.id, expires_at, session=session)

        quantities = Counter()
        for item in order.items:
            quantities[item.product_id] += item.quantity
        for product_id, quantity in quantities.items():
            if not await self.store.decrement_stock(product_id, quantity, session=session):
                raise await self._insufficient_stock(product_id, quantity, session)
            await self.store.insert_movement(
                product_id, order.id, MovementType.SALE, -quantity, f"Order {order.id}", session=session
            )

        terms = priced.voucher
        if terms is not None:
            if not await self.store.redeem_voucher(terms.voucher_id, session=session):
                raise UsageLimitExceeded("This voucher has reached its usage limit.")
            usage_key = customer.usage_key
            if usage_key and not await self.store.claim_customer_usage(
                terms.voucher_id, usage_key, terms.usage_limit_per_user, session=session
            ):
                raise UserLimitExceeded("You have already used this voucher the maximum number of times.")
            await self.store.insert_redemption(
                terms.voucher_id, order.id, order.customer_email, order.customer_user_id,
                order.discount_cents, session=session,
            )

        await self.store.insert_order(order, session=session)

        if terms is not None:
            await self.audit.publish(
                AuditAction.REDEEMED, ActorType.CUSTOMER,
                voucher_id=terms.voucher_id, actor_id=order.customer_user_id, order_id=order.id,
                code=terms.code, result="VALID",
                metadata={"discountCents": order.discount_cents, "totalCents": order.total_cents},
                session=session,
            )

    async def _insufficient_stock(self, product_id: str, quantity: int, session) -> InsufficientStock:
        product = (await self.store.get_products([product_id], session=session)).get(product_id)
        if product is None:
            return InsufficientStock(product_id, f"Insufficient stock for product {product_id}")
        return InsufficientStock(
            product_id,
            f'Insufficient stock for "{product.name}". '
            f"Available: {product.stock_quantity}, requested: {quantity}.",
        )
