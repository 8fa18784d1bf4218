"""
quotes.py: server-side price quotes.

The quote is the single source of truth for order totals: it is what the storefront
shows before checkout and what checkout recomputes and freezes into the order.
Client-supplied prices and totals are never read.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from config import CURRENCIES, Settings, get_settings
from errors import (
    CurrencyMismatch,
    InvalidQuantity,
    InvariantViolation,
    ProductNotFound,
    ValidationError,
    VoucherInvalid,
)
from logging_config import get_logger
from schemas import CartItem, Customer, Product, Quote, QuoteLine
from vouchers import VoucherTerms, VoucherValidator, normalize_code

log = get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PricedCart:
    quote: Quote
    lines: list[tuple[Product, int]]
    voucher: Optional[VoucherTerms] = None


class QuoteCalculator:
    def __init__(self, store, settings: Optional[Settings] = None, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock
        self.validator = VoucherValidator(store)

    async def quote(
        self,
        items: list[CartItem],
        voucher_code: Optional[str] = None,
        customer: Optional[Customer] = None,
        now: Optional[datetime] = None,
    ) -> Quote:
        """Quote for display. An invalid voucher is left out rather than failing the quote."""
        priced = await self.price(items, voucher_code, customer, now=now)
        return priced.quote

    async def price(
        self,
        items: list[CartItem],
        voucher_code: Optional[str] = None,
        customer: Optional[Customer] = None,
        now: Optional[datetime] = None,
        strict: bool = False,
    ) -> PricedCart:
        """
        Prices a cart from current catalog data.

        Args:
            items: Cart lines as sent by the client.
            voucher_code: Optional code to apply.
            customer: Identity for per-customer voucher limits.
            now: Evaluation instant; defaults to the calculator's clock.
            strict: Raise the voucher's error instead of dropping it (checkout).

        Returns:
            PricedCart with the quote, the priced lines and the applied voucher terms.

        Raises:
            ValidationError: Empty cart or unsupported currency.
            InvalidQuantity: A line with a quantity below 1.
            ProductNotFound: Unknown product ids.
            CurrencyMismatch: Products priced in more than one currency.
            VoucherInvalid: Only with `strict=True`.
            InvariantViolation: The computed totals do not add up.
        """
        now = now or self.clock()
        if not items:
            raise ValidationError("Order must have at least one item")
        for item in items:
            if item.quantity < 1:
                raise InvalidQuantity(f"Quantity for product {item.product_id} must be a positive integer")

        products = await self.store.get_products([i.product_id for i in items])
        missing = list(dict.fromkeys(i.product_id for i in items if i.product_id not in products))
        if missing:
            raise ProductNotFound(missing)

        currencies = list(dict.fromkeys(products[i.product_id].currency for i in items))
        if len(currencies) > 1:
            raise CurrencyMismatch(currencies)
        currency = currencies[0]
        if currency not in CURRENCIES:
            raise ValidationError(f"Unsupported currency: {currency}")

        lines: list[tuple[Product, int]] = []
        quote_lines: list[QuoteLine] = []
        subtotal = 0
        for item in items:
            product = products[item.product_id]
            line_total = product.price_cents * item.quantity
            subtotal += line_total
            lines.append((product, item.quantity))
            quote_lines.append(QuoteLine(
                product_id=product.id,
                product_name=product.name,
                quantity=item.quantity,
                unit_cents=product.price_cents,
                line_total_cents=line_total,
            ))

        terms = None
        if normalize_code(voucher_code):
            try:
                terms = await self.validator.check(voucher_code, lines, customer, now, currency)
            except VoucherInvalid as e:
                if strict:
                    raise
                log.info(f"Voucher {normalize_code(voucher_code)} dropped from quote: {e.error_code}")

        discount = terms.discount_cents if terms else 0
        shipping = self.shipping_cents(subtotal - discount, terms)
        total = subtotal - discount + shipping
        if total < 0 or discount > subtotal:
            raise InvariantViolation(
                f"Quote totals out of range: subtotal={subtotal} discount={discount} shipping={shipping}"
            )

        quote = Quote(
            items=quote_lines,
            subtotal_cents=subtotal,
            shipping_cents=shipping,
            discount_cents=discount,
            total_cents=total,
            currency=currency,
            voucher_code=terms.code if terms else None,
            discount_type=terms.type if terms else None,
        )
        return PricedCart(quote=quote, lines=lines, voucher=terms)

    def shipping_cents(self, discounted_subtotal: int, terms: Optional[VoucherTerms] = None) -> int:
        if terms is not None and terms.waives_shipping:
            return 0
        threshold = self.settings.FREE_SHIPPING_THRESHOLD_CENTS
        if threshold is not None and discounted_subtotal >= threshold:
            return 0
        return self.settings.SHIPPING_FLAT_CENTS
