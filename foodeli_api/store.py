from datetime import datetime
from typing import Optional, List
from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from foodeli_api.models import OrderStatus, PaymentStatus


def str_to_oid(id: str) -> Optional[ObjectId]:
    try:
        return ObjectId(id)
    except (InvalidId, TypeError):
        return None


class OrderStore:
    """
    Order documents (one collection) plus the per-user carts they clear.

    Every payment transition is a find_one_and_update whose filter carries the
    expected prior state, so concurrent writers race on a single document and
    at most one of them matches.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.orders = db.orders
        self.carts = db.carts

    async def create_indexes(self):
        await self.orders.create_index("user_id")
        await self.orders.create_index(
            "payment.reference",
            unique=True,
            partialFilterExpression={"payment.reference": {"$type": "string"}},
        )
        await self.orders.create_index([("user_id", 1), ("order_status", 1), ("created_at", -1)])
        await self.carts.create_index("user_id", unique=True)

    # --- Reads ---
    async def get(self, order_id: str) -> Optional[dict]:
        oid = str_to_oid(order_id)
        if oid is None:
            return None
        return await self.orders.find_one({"_id": oid})

    async def find_by_reference(self, reference: str, user_id: Optional[str] = None) -> Optional[dict]:
        query = {"payment.reference": reference}
        if user_id is not None:
            query["user_id"] = user_id
        return await self.orders.find_one(query)

    async def find_recent_pending(self, user_id: str, total_amount: float, since: datetime) -> Optional[dict]:
        return await self.orders.find_one(
            {
                "user_id": user_id,
                "order_status": OrderStatus.PENDING_PAYMENT.value,
                "total_amount": total_amount,
                "created_at": {"$gte": since},
            },
            sort=[("created_at", -1)],
        )

    async def list_for_user(self, user_id: str) -> List[dict]:
        cursor = self.orders.find({"user_id": user_id}).sort("created_at", -1)
        return [doc async for doc in cursor]

    async def list_all(self) -> List[dict]:
        cursor = self.orders.find({}).sort("created_at", -1)
        return [doc async for doc in cursor]

    # --- Writes ---
    async def insert(self, doc: dict) -> dict:
        result = await self.orders.insert_one(doc)
        return await self.orders.find_one({"_id": result.inserted_id})

    async def attach_reference(self, order_id: str, user_id: str, fields: dict) -> Optional[dict]:
        """Set the payment reference once. Scoped by order and owner."""
        return await self.orders.find_one_and_update(
            {"_id": str_to_oid(order_id), "user_id": user_id, "payment.reference": None},
            {"$set": {**fields, "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )

    async def mark_payment_success(self, reference: str, fields: dict) -> Optional[dict]:
        return await self.orders.find_one_and_update(
            {"payment.reference": reference, "payment.status": PaymentStatus.PENDING.value},
            {"$set": {
                **fields,
                "payment.status": PaymentStatus.SUCCESS.value,
                "order_status": OrderStatus.PAYMENT_DONE.value,
                "updated_at": datetime.utcnow(),
            }},
            return_document=ReturnDocument.AFTER,
        )

    async def mark_payment_failed(self, reference: str, fields: dict) -> Optional[dict]:
        return await self.orders.find_one_and_update(
            {"payment.reference": reference, "payment.status": PaymentStatus.PENDING.value},
            {"$set": {
                **fields,
                "payment.status": PaymentStatus.FAILED.value,
                "order_status": OrderStatus.CANCELLED.value,
                "updated_at": datetime.utcnow(),
            }},
            return_document=ReturnDocument.AFTER,
        )

    async def start_delivery(self, order_id: str, user_id: str, delivery_status: str) -> Optional[dict]:
        return await self.orders.find_one_and_update(
            {
                "_id": str_to_oid(order_id),
                "user_id": user_id,
                "payment.status": PaymentStatus.SUCCESS.value,
                "delivery_status": None,
            },
            {"$set": {"delivery_status": delivery_status, "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )

    async def set_delivery_status(self, order_id: str, delivery_status: str) -> Optional[dict]:
        oid = str_to_oid(order_id)
        if oid is None:
            return None
        return await self.orders.find_one_and_update(
            {"_id": oid},
            {"$set": {"delivery_status": delivery_status, "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )

    async def delete_stale_pending(self, user_id: str, keep_id: ObjectId, since: datetime) -> int:
        result = await self.orders.delete_many({
            "_id": {"$ne": keep_id},
            "user_id": user_id,
            "order_status": OrderStatus.PENDING_PAYMENT.value,
            "payment.status": PaymentStatus.PENDING.value,
            "created_at": {"$gte": since},
        })
        return result.deleted_count

    async def clear_cart(self, user_id: str):
        await self.carts.update_one(
            {"user_id": user_id},
            {"$set": {"items": [], "updated_at": datetime.utcnow()}},
        )
