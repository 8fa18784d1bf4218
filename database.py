from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

from motor.motor_asyncio import (
    AsyncIOMotorClient,
    AsyncIOMotorClientSession,
    AsyncIOMotorDatabase,
)
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError
from pymongo.read_concern import ReadConcern
from pymongo.write_concern import WriteConcern

from config import get_settings
from errors import ConflictError, IdempotencyConflict
from logging_config import get_logger
from schemas import Media, MovementType, Order, OrderStatus, Product, Voucher

log = get_logger(__name__)

T = TypeVar("T")

_client: Optional[AsyncIOMotorClient] = None


def get_client() -> AsyncIOMotorClient:
    global _client
    if _client is None:
        _client = AsyncIOMotorClient(get_settings().DATABASE_URL, tz_aware=True)
    return _client


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _from_doc(doc: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    if doc and "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return doc


async def create_document(
    db: AsyncIOMotorDatabase,
    collection_name: str,
    data: dict[str, Any],
    session: Optional[AsyncIOMotorClientSession] = None,
) -> dict[str, Any]:
    now = _now()
    data_with_meta = dict(data)
    data_with_meta["created_at"] = data_with_meta.get("created_at") or now
    data_with_meta["updated_at"] = now
    data_with_meta["_id"] = data_with_meta.pop("id", None) or str(uuid.uuid4())
    await db[collection_name].insert_one(data_with_meta, session=session)
    return _from_doc(dict(data_with_meta)) or {}


async def get_documents(
    db: AsyncIOMotorDatabase,
    collection_name: str,
    filter_dict: dict[str, Any] | None = None,
    limit: int = 100,
) -> list[dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {}).limit(limit)
    docs = []
    async for d in cursor:
        docs.append(_from_doc(d))
    return docs


class MongoStore:
    """
    MongoDB-backed store for the checkout pipeline.

    Reads are plain queries. Everything the checkout commits goes through
    `run_in_transaction`, and the counters it touches (stock, voucher usage,
    per-customer usage, idempotency keys) are changed with conditional updates or
    unique inserts, so concurrent checkouts cannot oversell or over-redeem.
    Transactions need a replica set (a single-node one is enough).
    """

    def __init__(self, client: Optional[AsyncIOMotorClient] = None, db: Optional[AsyncIOMotorDatabase] = None):
        self.client = client or get_client()
        self.db = db if db is not None else self.client[get_settings().DATABASE_NAME]

    async def ensure_indexes(self):
        await self.db.idempotency_keys.create_index("expires_at", expireAfterSeconds=0)
        # Soft-deleted vouchers free their code for reuse
        await self.db.vouchers.create_index(
            [("code", ASCENDING)],
            name="code_live_unique",
            unique=True,
            partialFilterExpression={"deleted_at": {"$type": "null"}},
        )
        await self.db.vouchers.create_index([("expiry_date", ASCENDING)])
        await self.db.orders.create_index([("idempotency_key", ASCENDING)])
        await self.db.orders.create_index([("created_at", DESCENDING)])
        await self.db.orders.create_index([("status", ASCENDING), ("created_at", DESCENDING)])
        await self.db.orders.create_index([("customer_email", ASCENDING), ("created_at", DESCENDING)])
        await self.db.voucher_redemptions.create_index([("voucher_id", ASCENDING)])
        await self.db.inventory_movements.create_index([("order_id", ASCENDING), ("type", ASCENDING)])
        await self.db.inventory_movements.create_index([("product_id", ASCENDING)])
        await self.db.voucher_audit_logs.create_index([("voucher_id", ASCENDING), ("action", ASCENDING)])
        log.info("MongoDB indexes ensured on %s", self.db.name)

    async def run_in_transaction(self, callback: Callable[[Any], Awaitable[T]]) -> T:
        """Runs `callback(session)` in a multi-document transaction; retried on transient errors."""
        async with await self.client.start_session() as session:
            return await session.with_transaction(
                callback,
                read_concern=ReadConcern("snapshot"),
                write_concern=WriteConcern("majority"),
            )

    # Products

    async def get_products(self, product_ids: list[str], session=None) -> dict[str, Product]:
        cursor = self.db.products.find({"_id": {"$in": list(set(product_ids))}}, session=session)
        return {p.id: p async for p in _models(cursor, Product)}

    async def list_products(self, q: Optional[str] = None, limit: int = 200) -> list[Product]:
        filter_dict = {}
        if q:
            filter_dict["name"] = {"$regex": q, "$options": "i"}
        docs = await get_documents(self.db, "products", filter_dict, limit=limit)
        return [Product.model_validate(d) for d in docs]

    async def count_products(self) -> int:
        return await self.db.products.count_documents({})

    async def insert_product(self, product: Product):
        await create_document(self.db, "products", product.model_dump())

    async def decrement_stock(self, product_id: str, quantity: int, session=None) -> bool:
        result = await self.db.products.update_one(
            {"_id": product_id, "stock_quantity": {"$gte": quantity}},
            {"$inc": {"stock_quantity": -quantity}, "$set": {"updated_at": _now()}},
            session=session,
        )
        return result.modified_count == 1

    async def increment_stock(self, product_id: str, quantity: int, session=None):
        await self.db.products.update_one(
            {"_id": product_id},
            {"$inc": {"stock_quantity": quantity}, "$set": {"updated_at": _now()}},
            session=session,
        )

    async def insert_movement(self, product_id: str, order_id: str, type: MovementType, quantity_delta: int, reference: str, session=None):
        await create_document(self.db, "inventory_movements", {
            "product_id": product_id,
            "order_id": order_id,
            "type": MovementType(type).value,
            "quantity_delta": quantity_delta,
            "reference": reference,
        }, session=session)

    async def has_movement(self, order_id: str, type: MovementType, session=None) -> bool:
        doc = await self.db.inventory_movements.find_one(
            {"order_id": order_id, "type": MovementType(type).value}, session=session
        )
        return doc is not None

    # Vouchers

    async def get_voucher_by_code(self, code: str) -> Optional[Voucher]:
        doc = await self.db.vouchers.find_one({"code": code, "deleted_at": None})
        return Voucher.model_validate(_from_doc(doc)) if doc else None

    async def get_voucher(self, voucher_id: str) -> Optional[Voucher]:
        doc = await self.db.vouchers.find_one({"_id": voucher_id, "deleted_at": None})
        return Voucher.model_validate(_from_doc(doc)) if doc else None

    async def insert_voucher(self, voucher: Voucher):
        try:
            await create_document(self.db, "vouchers", voucher.model_dump())
        except DuplicateKeyError:
            raise ConflictError(f'Voucher with code "{voucher.code}" already exists')

    async def list_vouchers(
        self,
        search: Optional[str] = None,
        status_filter: Optional[str] = None,
        now: Optional[datetime] = None,
        sort_field: str = "created_at",
        descending: bool = True,
        skip: int = 0,
        limit: int = 20,
    ) -> tuple[list[Voucher], int]:
        """One page of live vouchers and the total that match."""
        filter_dict: dict[str, Any] = {"deleted_at": None}
        if search:
            filter_dict["code"] = {"$regex": re.escape(search), "$options": "i"}
        now = now or _now()
        if status_filter == "active":
            filter_dict.update({"is_active": True, "start_date": {"$lte": now}, "expiry_date": {"$gte": now}})
        elif status_filter == "expired":
            filter_dict["expiry_date"] = {"$lt": now}
        elif status_filter == "upcoming":
            filter_dict["start_date"] = {"$gt": now}

        direction = DESCENDING if descending else ASCENDING
        cursor = (
            self.db.vouchers.find(filter_dict)
            .sort([(sort_field, direction), ("_id", ASCENDING)])
            .skip(skip)
            .limit(limit)
        )
        vouchers = [v async for v in _models(cursor, Voucher)]
        total = await self.db.vouchers.count_documents(filter_dict)
        return vouchers, total

    async def update_voucher(self, voucher_id: str, fields: dict[str, Any]) -> Optional[Voucher]:
        """Applies `fields` to a live voucher. Returns the updated voucher, or None if there is none."""
        try:
            doc = await self.db.vouchers.find_one_and_update(
                {"_id": voucher_id, "deleted_at": None},
                {"$set": {**fields, "updated_at": _now()}},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            raise ConflictError(f'Voucher with code "{fields.get("code")}" already exists')
        return Voucher.model_validate(_from_doc(doc)) if doc else None

    async def soft_delete_voucher(self, voucher_id: str, at: datetime) -> bool:
        result = await self.db.vouchers.update_one(
            {"_id": voucher_id, "deleted_at": None},
            {"$set": {"deleted_at": at, "updated_at": at}},
        )
        return result.modified_count == 1

    async def list_expired_vouchers(self, now: datetime) -> list[Voucher]:
        cursor = self.db.vouchers.find({"deleted_at": None, "expiry_date": {"$lt": now}})
        return [v async for v in _models(cursor, Voucher)]

    async def redeem_voucher(self, voucher_id: str, session=None) -> bool:
        """Increments `used_count` only while it is still below the global limit."""
        result = await self.db.vouchers.update_one(
            {
                "_id": voucher_id,
                "$or": [
                    {"usage_limit_global": None},
                    {"$expr": {"$lt": ["$used_count", "$usage_limit_global"]}},
                ],
            },
            {"$inc": {"used_count": 1}, "$set": {"updated_at": _now()}},
            session=session,
        )
        return result.modified_count == 1

    async def count_customer_redemptions(self, voucher_id: str, usage_key: str) -> int:
        doc = await self.db.voucher_customer_usage.find_one({"_id": f"{voucher_id}:{usage_key}"})
        return doc["count"] if doc else 0

    async def claim_customer_usage(self, voucher_id: str, usage_key: str, limit: Optional[int], session=None) -> bool:
        # At the limit the filter misses, the upsert collides with the existing _id.
        filter_dict: dict[str, Any] = {"_id": f"{voucher_id}:{usage_key}"}
        if limit is not None:
            filter_dict["count"] = {"$lt": limit}
        try:
            await self.db.voucher_customer_usage.update_one(
                filter_dict,
                {"$inc": {"count": 1}},
                upsert=True,
                session=session,
            )
        except DuplicateKeyError:
            return False
        return True

    async def insert_redemption(self, voucher_id: str, order_id: str, customer_email: str, user_id: Optional[str], discount_cents: int, session=None):
        await create_document(self.db, "voucher_redemptions", {
            "voucher_id": voucher_id,
            "order_id": order_id,
            "customer_email": customer_email,
            "user_id": user_id,
            "discount_cents": discount_cents,
        }, session=session)

    async def list_redemptions(self, voucher_id: str) -> list[dict[str, Any]]:
        return await get_documents(self.db, "voucher_redemptions", {"voucher_id": voucher_id}, limit=0)

    async def insert_audit_event(self, event: dict[str, Any], session=None):
        await create_document(self.db, "voucher_audit_logs", event, session=session)

    async def has_audit_event(self, voucher_id: str, action: str) -> bool:
        doc = await self.db.voucher_audit_logs.find_one({"voucher_id": voucher_id, "action": action})
        return doc is not None

    # Media

    async def get_media(self, media_id: str) -> Optional[Media]:
        doc = await self.db.media.find_one({"_id": media_id})
        return Media.model_validate(_from_doc(doc)) if doc else None

    # Orders and idempotency keys

    async def claim_idempotency_key(self, key: str, order_id: str, expires_at: datetime, session=None):
        try:
            await self.db.idempotency_keys.insert_one(
                {"_id": key, "order_id": order_id, "created_at": _now(), "expires_at": expires_at},
                session=session,
            )
        except DuplicateKeyError:
            raise IdempotencyConflict(key)

    async def get_order_by_idempotency_key(self, key: str, now: Optional[datetime] = None) -> Optional[Order]:
        row = await self.db.idempotency_keys.find_one({"_id": key})
        if not row or (now is not None and row["expires_at"] < now):
            return None
        return await self.get_order(row["order_id"])

    async def insert_order(self, order: Order, session=None):
        doc = order.model_dump()
        doc["_id"] = doc.pop("id")
        await self.db.orders.insert_one(doc, session=session)

    async def get_order(self, order_id: str, session=None) -> Optional[Order]:
        doc = await self.db.orders.find_one({"_id": order_id}, session=session)
        return Order.model_validate(_from_doc(doc)) if doc else None

    async def list_orders(
        self,
        status: Optional[OrderStatus] = None,
        customer_email: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> tuple[list[Order], int]:
        """Newest first. The email matches whole, ignoring case."""
        filter_dict: dict[str, Any] = {}
        if status:
            filter_dict["status"] = OrderStatus(status).value
        if customer_email:
            filter_dict["customer_email"] = {"$regex": f"^{re.escape(customer_email)}$", "$options": "i"}
        if date_from or date_to:
            created: dict[str, datetime] = {}
            if date_from:
                created["$gte"] = date_from
            if date_to:
                created["$lte"] = date_to
            filter_dict["created_at"] = created

        cursor = (
            self.db.orders.find(filter_dict)
            .sort([("created_at", DESCENDING), ("_id", ASCENDING)])
            .skip(skip)
            .limit(limit)
        )
        orders = [o async for o in _models(cursor, Order)]
        total = await self.db.orders.count_documents(filter_dict)
        return orders, total

    async def push_order_status(
        self, order_id: str, status: OrderStatus, at: datetime, expected: OrderStatus, session=None
    ) -> bool:
        """Sets the status only while the order is still in `expected`. Returns False otherwise."""
        status = OrderStatus(status).value
        result = await self.db.orders.update_one(
            {"_id": order_id, "status": OrderStatus(expected).value},
            {
                "$set": {"status": status, "updated_at": at},
                "$push": {"status_history": {"status": status, "created_at": at}},
            },
            session=session,
        )
        return result.modified_count == 1


async def _models(cursor, model):
    async for doc in cursor:
        yield model.model_validate(_from_doc(doc))
