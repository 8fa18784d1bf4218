"""
Voucher rules: validation against a cart, discount computation and the admin
operations that manage vouchers and report on their use.

Validation never consumes a use. `used_count` and the per-customer counters only
move inside the checkout transaction (see checkout.py).
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from errors import (
    ConflictError,
    MinimumNotMet,
    NoEligibleProducts,
    NotFound,
    UsageLimitExceeded,
    UserLimitExceeded,
    ValidationError,
    VoucherExpired,
    VoucherInactive,
    VoucherNotFound,
    VoucherNotStarted,
)
from logging_config import get_logger
from schemas import (
    ActorType,
    AuditAction,
    Customer,
    Product,
    SortOrder,
    Voucher,
    VoucherCreate,
    VoucherPage,
    VoucherSortField,
    VoucherStats,
    VoucherStatusFilter,
    VoucherType,
    VoucherUpdate,
)

log = get_logger(__name__)


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


@dataclass(frozen=True)
class VoucherTerms:
    """What a valid voucher does to a specific cart."""
    voucher_id: str
    code: str
    type: VoucherType
    value: int
    usage_limit_per_user: Optional[int]
    eligible_subtotal_cents: int
    discount_cents: int

    @property
    def waives_shipping(self) -> bool:
        return self.type == VoucherType.FREE_SHIPPING


def eligible_subtotal_cents(voucher: Voucher, lines: list[tuple[Product, int]]) -> int:
    """Subtotal of the lines the voucher's product/category restrictions allow."""
    total = 0
    for product, quantity in lines:
        if voucher.applicable_product_ids and product.id not in voucher.applicable_product_ids:
            continue
        if voucher.applicable_category_ids and not set(product.category_ids) & set(voucher.applicable_category_ids):
            continue
        total += product.price_cents * quantity
    return total


def compute_discount_cents(voucher: Voucher, eligible_cents: int, subtotal_cents: int) -> int:
    if voucher.type == VoucherType.PERCENTAGE:
        discount = (eligible_cents * voucher.value) // 100
        if voucher.max_discount_cents is not None:
            discount = min(discount, voucher.max_discount_cents)
    elif voucher.type == VoucherType.FIXED_AMOUNT:
        discount = min(voucher.value, eligible_cents)
    else:
        # FREE_SHIPPING waives the shipping charge instead
        discount = 0
    return max(0, min(discount, subtotal_cents))


class VoucherValidator:
    def __init__(self, store):
        self.store = store

    async def check(
        self,
        code: Optional[str],
        lines: list[tuple[Product, int]],
        customer: Optional[Customer],
        now: datetime,
        currency: str = "PKR",
    ) -> VoucherTerms:
        """
        Checks a voucher code against priced cart lines.

        Args:
            code: Code as typed by the customer; matched trimmed and uppercased.
            lines: (product, quantity) pairs priced from the catalog.
            customer: Identity used for the per-customer limit, if known.
            now: Evaluation instant.
            currency: Cart currency, only used in messages.

        Returns:
            VoucherTerms with the discount this cart would get.

        Raises:
            VoucherInvalid: one of its subclasses, naming the first failed rule.
        """
        normalized = normalize_code(code)
        if not normalized:
            raise VoucherNotFound("Voucher code is required.")

        voucher = await self.store.get_voucher_by_code(normalized)
        if voucher is None:
            log.warning(f"Voucher validation failed: code={normalized} error=NOT_FOUND")
            raise VoucherNotFound("Invalid voucher code.")

        if now >= voucher.expiry_date:
            log.warning(f"Voucher validation failed: code={normalized} error=EXPIRED")
            raise VoucherExpired("This voucher has expired.")
        if now < voucher.start_date:
            raise VoucherNotStarted("This voucher is not yet valid.")
        if not voucher.is_active:
            raise VoucherInactive("This voucher is no longer active.")

        if voucher.usage_limit_global is not None and voucher.used_count >= voucher.usage_limit_global:
            raise UsageLimitExceeded("This voucher has reached its usage limit.")

        usage_key = customer.usage_key if customer else None
        if voucher.usage_limit_per_user is not None and usage_key:
            used = await self.store.count_customer_redemptions(voucher.id, usage_key)
            if used >= voucher.usage_limit_per_user:
                raise UserLimitExceeded("You have already used this voucher the maximum number of times.")

        subtotal = sum(product.price_cents * quantity for product, quantity in lines)
        if subtotal < voucher.min_order_value_cents:
            raise MinimumNotMet(
                f"Minimum order value of {voucher.min_order_value_cents / 100:.0f} {currency} required."
            )

        eligible = eligible_subtotal_cents(voucher, lines)
        if eligible == 0 and (voucher.applicable_product_ids or voucher.applicable_category_ids):
            raise NoEligibleProducts("No items in your cart are eligible for this voucher.")

        discount = compute_discount_cents(voucher, eligible, subtotal)
        log.info(f"Voucher validated: code={normalized} valid=true discountCents={discount}")
        return VoucherTerms(
            voucher_id=voucher.id,
            code=voucher.code,
            type=voucher.type,
            value=voucher.value,
            usage_limit_per_user=voucher.usage_limit_per_user,
            eligible_subtotal_cents=eligible,
            discount_cents=discount,
        )


SORT_FIELDS = {
    VoucherSortField.CREATED_AT: "created_at",
    VoucherSortField.CODE: "code",
    VoucherSortField.EXPIRY_DATE: "expiry_date",
    VoucherSortField.USED_COUNT: "used_count",
}


def check_terms(type: VoucherType, value: int, start_date: datetime, expiry_date: datetime):
    if expiry_date <= start_date:
        raise ValidationError("Expiry date must be after start date")
    if type == VoucherType.PERCENTAGE and not 1 <= value <= 100:
        raise ValidationError("Percentage value must be between 1 and 100")
    if type == VoucherType.FIXED_AMOUNT and value < 1:
        raise ValidationError("Fixed amount must be positive")


class VoucherAdmin:
    def __init__(self, store, audit):
        self.store = store
        self.audit = audit

    async def create(self, payload: VoucherCreate, actor_id: Optional[str] = None) -> Voucher:
        code = normalize_code(payload.code)
        if not code:
            raise ValidationError("Voucher code is required")
        if await self.store.get_voucher_by_code(code):
            raise ConflictError(f'Voucher with code "{code}" already exists')
        check_terms(payload.type, payload.value, payload.start_date, payload.expiry_date)

        voucher = Voucher(
            id=str(uuid.uuid4()),
            **payload.model_dump(exclude={"code"}),
            code=code,
            created_at=datetime.now(timezone.utc),
        )
        # The unique code index settles creates that raced past the lookup above
        await self.store.insert_voucher(voucher)
        await self.audit.publish(
            AuditAction.CREATED, ActorType.ADMIN,
            voucher_id=voucher.id, actor_id=actor_id, code=code,
            metadata={"type": voucher.type, "value": voucher.value},
        )
        log.info(f"Voucher created: code={code} type={voucher.type}")
        return voucher

    async def get(self, voucher_id: str) -> Voucher:
        voucher = await self.store.get_voucher(voucher_id)
        if voucher is None:
            raise NotFound("Voucher not found")
        return voucher

    async def list(
        self,
        search: Optional[str] = None,
        status_filter: Optional[VoucherStatusFilter] = None,
        page: int = 1,
        limit: int = 20,
        sort_by: VoucherSortField = VoucherSortField.CREATED_AT,
        sort_order: SortOrder = SortOrder.DESC,
        now: Optional[datetime] = None,
    ) -> VoucherPage:
        """
        Lists live vouchers.

        `search` matches part of the code, ignoring case. `status_filter` narrows to
        vouchers active now, already expired, or not started yet.
        """
        search = (search or "").strip() or None
        status = VoucherStatusFilter(status_filter).value if status_filter else None
        vouchers, total = await self.store.list_vouchers(
            search=search,
            status_filter=status,
            now=now or datetime.now(timezone.utc),
            sort_field=SORT_FIELDS[VoucherSortField(sort_by)],
            descending=SortOrder(sort_order) == SortOrder.DESC,
            skip=(page - 1) * limit,
            limit=limit,
        )
        return VoucherPage(data=vouchers, total=total)

    async def update(self, voucher_id: str, payload: VoucherUpdate, actor_id: Optional[str] = None) -> Voucher:
        """
        Changes the given fields of a voucher. The result must still pass the same
        checks as a new voucher: unique code, expiry after start, sensible value.
        """
        existing = await self.get(voucher_id)
        fields = payload.model_dump(exclude_none=True)
        if "code" in fields:
            fields["code"] = normalize_code(fields["code"])
            if not fields["code"]:
                raise ValidationError("Voucher code is required")
            duplicate = await self.store.get_voucher_by_code(fields["code"])
            if duplicate and duplicate.id != voucher_id:
                raise ConflictError(f'Voucher with code "{fields["code"]}" already exists')
        merged = existing.model_copy(update=fields)
        check_terms(merged.type, merged.value, merged.start_date, merged.expiry_date)
        if not fields:
            return existing

        updated = await self.store.update_voucher(voucher_id, fields)
        if updated is None:
            raise NotFound("Voucher not found")
        await self.audit.publish(
            AuditAction.UPDATED, ActorType.ADMIN,
            voucher_id=voucher_id, actor_id=actor_id, code=updated.code,
            metadata={"fields": sorted(fields)},
        )
        log.info(f"Voucher updated: code={updated.code} fields={sorted(fields)}")
        return updated

    async def set_active(self, voucher_id: str, is_active: bool, actor_id: Optional[str] = None) -> Voucher:
        updated = await self.store.update_voucher(voucher_id, {"is_active": is_active})
        if updated is None:
            raise NotFound("Voucher not found")
        action = AuditAction.ACTIVATED if is_active else AuditAction.DEACTIVATED
        await self.audit.publish(action, ActorType.ADMIN, voucher_id=voucher_id, actor_id=actor_id, code=updated.code)
        log.info(f"Voucher {action.value.lower()}: code={updated.code}")
        return updated

    async def remove(self, voucher_id: str, actor_id: Optional[str] = None):
        """Soft delete: the voucher stops validating and its code can be reused."""
        voucher = await self.get(voucher_id)
        if not await self.store.soft_delete_voucher(voucher_id, datetime.now(timezone.utc)):
            raise NotFound("Voucher not found")
        await self.audit.publish(AuditAction.DELETED, ActorType.ADMIN, voucher_id=voucher_id, actor_id=actor_id, code=voucher.code)
        log.info(f"Voucher deleted: code={voucher.code}")

    async def stats(self, voucher_id: str) -> VoucherStats:
        voucher = await self.store.get_voucher(voucher_id)
        if voucher is None:
            raise NotFound("Voucher not found")
        redemptions = await self.store.list_redemptions(voucher_id)
        remaining = None
        if voucher.usage_limit_global is not None:
            remaining = max(0, voucher.usage_limit_global - voucher.used_count)
        return VoucherStats(
            total_redemptions=len(redemptions),
            discount_given_cents=sum(r.get("discount_cents") or 0 for r in redemptions),
            remaining_uses=remaining,
            used_count=voucher.used_count,
            usage_limit_global=voucher.usage_limit_global,
        )
