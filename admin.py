"""Admin dashboard numbers and user management."""
import re
from typing import Any, Dict, List, Optional, Tuple

import structlog
from pymongo import DESCENDING
from pymongo.database import Database

from accounts import public_user, serialize_users
from database import days_ago, paginate, serialize, to_object_id, utcnow
from errors import UserNotFound, ValidationFailed
from orders import OrderQueries
from pricing import round2

logger = structlog.get_logger(__name__)

LOW_STOCK_THRESHOLD = 10


class AdminService:
    def __init__(self, db: Database):
        self.db = db
        self.users = db["user"]
        self.products = db["product"]
        self.categories = db["category"]
        self.orders = db["order"]

    def dashboard_stats(self) -> Dict[str, Any]:
        since = days_ago(30)
        top_selling = self.products.find(
            {"is_active": True},
            {"name": 1, "sold_count": 1, "price": 1, "images": 1},
        ).sort("sold_count", DESCENDING).limit(5)
        low_stock = self.products.find(
            {"is_active": True, "total_stock": {"$gt": 0, "$lt": LOW_STOCK_THRESHOLD}},
            {"name": 1, "total_stock": 1, "sku": 1},
        ).sort("total_stock", 1).limit(10)

        return {
            "counts": {
                "users": self.users.count_documents({"is_active": True}),
                "products": self.products.count_documents({"is_active": True}),
                "categories": self.categories.count_documents({"is_active": True}),
                "orders": self.orders.count_documents({}),
                "recent_orders": self.orders.count_documents({"created_at": {"$gte": since}}),
            },
            "revenue": {
                "total": self._revenue({}),
                "recent": self._revenue({"created_at": {"$gte": since}}),
            },
            "top_selling_products": [serialize(doc) for doc in top_selling],
            "low_stock_products": [serialize(doc) for doc in low_stock],
            "order_status_breakdown": OrderQueries(self.db).status_breakdown(),
        }

    def _revenue(self, match: Dict[str, Any]) -> float:
        rows = list(self.orders.aggregate([
            {"$match": match},
            {"$group": {"_id": None, "total": {"$sum": "$pricing.total"}}},
        ]))
        return float(round2(rows[0]["total"])) if rows else 0.0

    def sales(self, period_days: int = 30) -> List[Dict[str, Any]]:
        """Daily orders and revenue for the last `period_days`, cancelled and refunded orders excluded."""
        rows = self.orders.aggregate([
            {"$match": {"created_at": {"$gte": days_ago(period_days)}, "status": {"$nin": ["cancelled", "refunded"]}}},
            {"$group": {
                "_id": {"$dateToString": {"format": "%Y-%m-%d", "date": "$created_at"}},
                "orders": {"$sum": 1},
                "revenue": {"$sum": "$pricing.total"},
            }},
            {"$sort": {"_id": 1}},
        ])
        return [{"date": row["_id"], "orders": row["orders"], "revenue": float(round2(row["revenue"]))} for row in rows]

    # ---------- Users ----------

    def list_users(self, page: int = 1, limit: int = 20, search: Optional[str] = None, role: Optional[str] = None) -> Tuple[List[Dict[str, Any]], int]:
        filter_q: Dict[str, Any] = {}
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            filter_q["$or"] = [{"first_name": pattern}, {"last_name": pattern}, {"email": pattern}]
        if role:
            filter_q["role"] = role
        docs, total = paginate(self.users, filter_q, [("created_at", DESCENDING), ("_id", DESCENDING)], page, limit)
        return serialize_users(docs), total

    def set_role(self, actor_id: str, user_id: str, role: str) -> Dict[str, Any]:
        user = self._get(user_id)
        if str(user["_id"]) == actor_id and role != "admin":
            raise ValidationFailed("You cannot remove your own admin role")
        self.users.update_one({"_id": user["_id"]}, {"$set": {"role": role, "updated_at": utcnow()}})
        logger.info("user_role_changed", user_id=user_id, role=role, by=actor_id)
        return public_user({**user, "role": role})

    def toggle_status(self, actor_id: str, user_id: str) -> Dict[str, Any]:
        user = self._get(user_id)
        if str(user["_id"]) == actor_id:
            raise ValidationFailed("You cannot deactivate your own account")
        is_active = not user.get("is_active", True)
        self.users.update_one({"_id": user["_id"]}, {"$set": {"is_active": is_active, "updated_at": utcnow()}})
        logger.info("user_status_changed", user_id=user_id, is_active=is_active, by=actor_id)
        return {"id": user_id, "is_active": is_active}

    def _get(self, user_id: str) -> Dict[str, Any]:
        object_id = to_object_id(user_id)
        user = self.users.find_one({"_id": object_id}) if object_id else None
        if not user:
            raise UserNotFound()
        return user
