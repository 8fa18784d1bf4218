"""In-memory stand-in for MongoStore, same method names and return types."""
import asyncio
import copy
import uuid
from datetime import datetime, timedelta, timezone

from pymongo.errors import PyMongoError

from errors import ConflictError, IdempotencyConflict
from schemas import Media, MovementType, Order, OrderStatus, Product, StatusHistoryEntry, Voucher

_STATE = (
    "products",
    "vouchers",
    "media",
    "orders",
    "idempotency_keys",
    "customer_usage",
    "movements",
    "redemptions",
    "audit_events",
)


class InMemoryStore:
    """
    Transactions are serialized by a lock and rolled back by restoring a deep copy
    of the state taken when the transaction started.
    """

    session = "in-memory-session"

    def __init__(self):
        self.products = {}
        self.vouchers = {}
        self.media = {}
        self.orders = {}
        self.idempotency_keys = {}
        self.customer_usage = {}
        self.movements = []
        self.redemptions = []
        self.audit_events = []
        self.fail_audit_writes = False
        self.transactions = 0
        self._lock = asyncio.Lock()

    # Test helpers

    def add_product(self, id, price_cents=1000, currency="PKR", stock_quantity=10, name=None, category_ids=None):
        product = Product(
            id=id,
            name=name or f"Product {id}",
            price_cents=price_cents,
            currency=currency,
            stock_quantity=stock_quantity,
            category_ids=category_ids or [],
        )
        self.products[id] = product
        return product

    def add_voucher(self, code, type="PERCENTAGE", value=10, **fields):
        now = datetime.now(timezone.utc)
        fields.setdefault("start_date", now - timedelta(days=1))
        fields.setdefault("expiry_date", now + timedelta(days=30))
        fields.setdefault("created_at", now)
        voucher = Voucher(id=fields.pop("id", str(uuid.uuid4())), code=code, type=type, value=value, **fields)
        self.vouchers[voucher.id] = voucher
        return voucher

    def add_media(self, id):
        self.media[id] = Media(id=id, filename=f"{id}.jpg", mime_type="image/jpeg", path=f"uploads/{id}.jpg")

    def stock(self, product_id):
        return self.products[product_id].stock_quantity

    # Store interface

    async def ensure_indexes(self):
        pass

    async def run_in_transaction(self, callback):
        async with self._lock:
            snapshot = copy.deepcopy({name: getattr(self, name) for name in _STATE})
            try:
                result = await callback(self.session)
            except Exception:
                for name, value in snapshot.items():
                    setattr(self, name, value)
                raise
            self.transactions += 1
            return result

    async def get_products(self, product_ids, session=None):
        # Yield like a real round trip so concurrent checkouts interleave
        await asyncio.sleep(0)
        return {pid: self.products[pid].model_copy(deep=True) for pid in set(product_ids) if pid in self.products}

    async def list_products(self, q=None, limit=200):
        found = [p for p in self.products.values() if not q or q.lower() in p.name.lower()]
        return [p.model_copy(deep=True) for p in found[:limit]]

    async def count_products(self):
        return len(self.products)

    async def insert_product(self, product):
        self.products[product.id] = product.model_copy(deep=True)

    async def decrement_stock(self, product_id, quantity, session=None):
        product = self.products.get(product_id)
        if product is None or product.stock_quantity < quantity:
            return False
        product.stock_quantity -= quantity
        return True

    async def increment_stock(self, product_id, quantity, session=None):
        if product_id in self.products:
            self.products[product_id].stock_quantity += quantity

    async def insert_movement(self, product_id, order_id, type, quantity_delta, reference, session=None):
        self.movements.append({
            "product_id": product_id,
            "order_id": order_id,
            "type": MovementType(type).value,
            "quantity_delta": quantity_delta,
            "reference": reference,
        })

    async def has_movement(self, order_id, type, session=None):
        type = MovementType(type).value
        return any(m["order_id"] == order_id and m["type"] == type for m in self.movements)

    async def get_voucher_by_code(self, code):
        await asyncio.sleep(0)
        for voucher in self.vouchers.values():
            if voucher.code == code and voucher.deleted_at is None:
                return voucher.model_copy(deep=True)
        return None

    async def get_voucher(self, voucher_id):
        voucher = self.vouchers.get(voucher_id)
        if voucher is None or voucher.deleted_at is not None:
            return None
        return voucher.model_copy(deep=True)

    def _code_taken(self, code, voucher_id):
        return any(
            v.code == code and v.deleted_at is None and v.id != voucher_id
            for v in self.vouchers.values()
        )

    async def insert_voucher(self, voucher):
        # Same effect as the unique index on live codes
        if self._code_taken(voucher.code, voucher.id):
            raise ConflictError(f'Voucher with code "{voucher.code}" already exists')
        self.vouchers[voucher.id] = voucher.model_copy(deep=True)

    async def list_vouchers(self, search=None, status_filter=None, now=None, sort_field="created_at",
                            descending=True, skip=0, limit=20):
        now = now or datetime.now(timezone.utc)
        found = [v for v in self.vouchers.values() if v.deleted_at is None]
        if search:
            found = [v for v in found if search.lower() in v.code.lower()]
        if status_filter == "active":
            found = [v for v in found if v.is_active and v.start_date <= now <= v.expiry_date]
        elif status_filter == "expired":
            found = [v for v in found if v.expiry_date < now]
        elif status_filter == "upcoming":
            found = [v for v in found if v.start_date > now]
        found.sort(key=lambda v: v.id)
        found.sort(key=lambda v: (getattr(v, sort_field) is not None, getattr(v, sort_field)), reverse=descending)
        return [v.model_copy(deep=True) for v in found[skip:skip + limit]], len(found)

    async def update_voucher(self, voucher_id, fields):
        voucher = self.vouchers.get(voucher_id)
        if voucher is None or voucher.deleted_at is not None:
            return None
        if "code" in fields and self._code_taken(fields["code"], voucher_id):
            raise ConflictError(f'Voucher with code "{fields["code"]}" already exists')
        updated = Voucher.model_validate({**voucher.model_dump(), **fields})
        self.vouchers[voucher_id] = updated
        return updated.model_copy(deep=True)

    async def soft_delete_voucher(self, voucher_id, at):
        voucher = self.vouchers.get(voucher_id)
        if voucher is None or voucher.deleted_at is not None:
            return False
        voucher.deleted_at = at
        return True

    async def list_expired_vouchers(self, now):
        return [
            v.model_copy(deep=True) for v in self.vouchers.values()
            if v.deleted_at is None and v.expiry_date < now
        ]

    async def redeem_voucher(self, voucher_id, session=None):
        voucher = self.vouchers.get(voucher_id)
        if voucher is None:
            return False
        if voucher.usage_limit_global is not None and voucher.used_count >= voucher.usage_limit_global:
            return False
        voucher.used_count += 1
        return True

    async def count_customer_redemptions(self, voucher_id, usage_key):
        return self.customer_usage.get(f"{voucher_id}:{usage_key}", 0)

    async def claim_customer_usage(self, voucher_id, usage_key, limit, session=None):
        key = f"{voucher_id}:{usage_key}"
        used = self.customer_usage.get(key, 0)
        if limit is not None and used >= limit:
            return False
        self.customer_usage[key] = used + 1
        return True

    async def insert_redemption(self, voucher_id, order_id, customer_email, user_id, discount_cents, session=None):
        self.redemptions.append({
            "voucher_id": voucher_id,
            "order_id": order_id,
            "customer_email": customer_email,
            "user_id": user_id,
            "discount_cents": discount_cents,
        })

    async def list_redemptions(self, voucher_id):
        return [dict(r) for r in self.redemptions if r["voucher_id"] == voucher_id]

    async def insert_audit_event(self, event, session=None):
        if self.fail_audit_writes:
            raise PyMongoError("audit collection unavailable")
        self.audit_events.append(dict(event))

    async def has_audit_event(self, voucher_id, action):
        return any(e["voucher_id"] == voucher_id and e["action"] == action for e in self.audit_events)

    async def get_media(self, media_id):
        return self.media.get(media_id)

    async def claim_idempotency_key(self, key, order_id, expires_at, session=None):
        if key in self.idempotency_keys:
            raise IdempotencyConflict(key)
        self.idempotency_keys[key] = {"order_id": order_id, "expires_at": expires_at}

    async def get_order_by_idempotency_key(self, key, now=None):
        row = self.idempotency_keys.get(key)
        if not row or (now is not None and row["expires_at"] < now):
            return None
        return await self.get_order(row["order_id"])

    async def insert_order(self, order, session=None):
        self.orders[order.id] = order.model_copy(deep=True)

    async def get_order(self, order_id, session=None):
        order = self.orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def push_order_status(self, order_id, status, at, expected, session=None):
        order: Order = self.orders.get(order_id)
        if order is None or order.status != OrderStatus(expected).value:
            return False
        status = OrderStatus(status).value
        order.status = status
        order.updated_at = at
        order.status_history.append(StatusHistoryEntry(status=status, created_at=at))
        return True

    async def list_orders(self, status=None, customer_email=None, date_from=None, date_to=None, skip=0, limit=20):
        found = list(self.orders.values())
        if status:
            found = [o for o in found if o.status == OrderStatus(status).value]
        if customer_email:
            found = [o for o in found if o.customer_email.lower() == customer_email.lower()]
        if date_from:
            found = [o for o in found if o.created_at >= date_from]
        if date_to:
            found = [o for o in found if o.created_at <= date_to]
        found.sort(key=lambda o: o.id)
        found.sort(key=lambda o: o.created_at, reverse=True)
        return [o.model_copy(deep=True) for o in found[skip:skip + limit]], len(found)
