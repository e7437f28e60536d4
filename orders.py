"""
Order assembly and lifecycle.

Checkout turns the user's cart into an immutable order: every line is
re-checked against live stock, prices are snapshotted, stock is reserved
with one conditional update per line, and only then is the order written.
A failure at any step rolls back the reservations already applied, so a
failed checkout leaves stock, cart and orders untouched.
"""
import secrets
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import structlog
from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from carts import UserCartStore
from catalog import Catalog, find_variant
from database import as_naive_utc, days_ago, paginate, serialize, to_object_id, utcnow
from errors import (
    Conflict,
    EmptyCart,
    InsufficientStock,
    InvalidStatus,
    OrderNotFound,
    ProductUnavailable,
    UserNotFound,
)
from pricing import Pricing, PricingEngine, round2, unit_price
from schemas import CheckoutRequest, ShippingUpdateRequest

logger = structlog.get_logger(__name__)

LIFECYCLE = ["pending", "confirmed", "processing", "shipped", "delivered"]
SIDE_EXITS = ["cancelled", "returned", "refunded"]
ORDER_STATUSES = LIFECYCLE + SIDE_EXITS
TERMINAL_STATUSES = {"delivered", "cancelled", "returned", "refunded"}
OPEN_STATUSES = ["pending", "confirmed", "processing", "shipped"]

ORDER_NUMBER_ATTEMPTS = 5


def generate_order_number() -> str:
    """ORD-<last 8 digits of the epoch millis>-<3 random digits>."""
    millis = str(int(time.time() * 1000))[-8:]
    return f"ORD-{millis}-{secrets.randbelow(1000):03d}"


def allowed_transitions(current: str) -> List[str]:
    """Statuses reachable from `current`: any later lifecycle step or a side exit."""
    if current in TERMINAL_STATUSES or current not in LIFECYCLE:
        return []
    return LIFECYCLE[LIFECYCLE.index(current) + 1:] + SIDE_EXITS


# ---------- Checkout ----------

class OrderAssembler:
    def __init__(self, db: Database, catalog: Catalog, pricing: Optional[PricingEngine] = None):
        self.db = db
        self.orders = db["order"]
        self.products = db["product"]
        self.users = db["user"]
        self.catalog = catalog
        self.pricing = pricing or PricingEngine()

    def checkout(self, user_id: str, request: CheckoutRequest) -> Dict[str, Any]:
        user_oid = to_object_id(user_id)
        if user_oid is None:
            raise UserNotFound()

        lines = UserCartStore(self.db, user_id).load()
        if not lines:
            raise EmptyCart()

        items, priced = self._snapshot(lines)
        pricing = self.pricing.price(priced, request.coupon)

        reserved = self._reserve(items)
        try:
            order = self._persist(user_id, items, pricing, request)
        except Exception:
            self._release(reserved, reason="order_write_failed")
            raise

        try:
            self.users.update_one(
                {"_id": user_oid},
                {
                    "$push": {"orders": str(order["_id"])},
                    "$set": {"cart": [], "updated_at": utcnow()},
                },
            )
        except PyMongoError:
            # The order and its stock are committed; only the user link is missing.
            logger.error("order_link_failed", order_number=order["order_number"], user_id=user_id, exc_info=True)
            self.orders.update_one({"_id": order["_id"]}, {"$set": {"needs_reconciliation": True}})

        logger.info(
            "order_created",
            order_number=order["order_number"],
            user_id=user_id,
            items=len(items),
            total=pricing.total,
        )
        return {
            "order_number": order["order_number"],
            "total": pricing.total,
            "status": order["status"],
        }

    def _snapshot(self, lines) -> Tuple[List[Dict[str, Any]], List[Tuple[Any, int]]]:
        products = self.catalog.get_products([line.product_id for line in lines], active_only=False)
        items = []
        priced = []
        for line in lines:
            product = products.get(line.product_id)
            if product is None or not product.get("is_active", False):
                name = product.get("name") if product else "unknown"
                raise ProductUnavailable(f"Product {name} is no longer available")

            variant = find_variant(product, line.size, line.color)
            if variant is None or variant.get("stock", 0) < line.quantity:
                raise InsufficientStock(
                    f"Insufficient stock for {product['name']} ({line.size}, {line.color})",
                    available=variant.get("stock", 0) if variant else 0,
                )

            price = unit_price(product, variant)
            images = product.get("images") or []
            main = next((img for img in images if img.get("is_main")), images[0] if images else None)
            items.append({
                "product": line.product_id,
                "name": product["name"],
                "price": float(price),
                "quantity": line.quantity,
                "size": line.size,
                "color": line.color,
                "image": main.get("url") if main else None,
                "total": float(round2(price * line.quantity)),
            })
            priced.append((price, line.quantity))
        return items, priced

    def _reserve(self, items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Decrement stock line by line; undo everything on the first miss."""
        reserved: List[Dict[str, Any]] = []
        for item in items:
            try:
                result = self.products.update_one(
                    {
                        "_id": to_object_id(item["product"]),
                        "is_active": True,
                        "variants": {"$elemMatch": {
                            "size": item["size"],
                            "color": item["color"],
                            "stock": {"$gte": item["quantity"]},
                        }},
                    },
                    {
                        "$inc": {
                            "variants.$.stock": -item["quantity"],
                            "total_stock": -item["quantity"],
                            "sold_count": item["quantity"],
                        },
                        "$set": {"updated_at": utcnow()},
                    },
                )
            except PyMongoError:
                self._release(reserved, reason="reservation_error")
                raise

            if result.modified_count != 1:
                logger.warning(
                    "stock_reservation_failed",
                    product_id=item["product"],
                    size=item["size"],
                    color=item["color"],
                    quantity=item["quantity"],
                )
                self._release(reserved, reason="insufficient_stock")
                raise InsufficientStock(f"Insufficient stock for {item['name']} ({item['size']}, {item['color']})")
            reserved.append(item)
        return reserved

    def _release(self, reserved: List[Dict[str, Any]], reason: str) -> List[Dict[str, Any]]:
        """Give reserved quantities back. Returns the lines that could not be restored."""
        failed = []
        for item in reserved:
            try:
                result = self.products.update_one(
                    {
                        "_id": to_object_id(item["product"]),
                        "variants": {"$elemMatch": {"size": item["size"], "color": item["color"]}},
                    },
                    {
                        "$inc": {
                            "variants.$.stock": item["quantity"],
                            "total_stock": item["quantity"],
                            "sold_count": -item["quantity"],
                        },
                    },
                )
                if result.modified_count != 1:
                    failed.append(item)
            except PyMongoError:
                logger.exception("stock_release_error", product_id=item["product"])
                failed.append(item)

        if failed:
            logger.error(
                "stock_reconciliation_required",
                reason=reason,
                lines=[{k: item[k] for k in ("product", "size", "color", "quantity")} for item in failed],
            )
        elif reserved:
            logger.info("stock_released", reason=reason, lines=len(reserved))
        return failed

    def _persist(self, user_id: str, items: List[Dict[str, Any]], pricing: Pricing, request: CheckoutRequest) -> Dict[str, Any]:
        now = utcnow()
        shipping_address = request.shipping_address.model_dump()
        billing = request.billing_address
        if billing is None or billing.same_as_shipping:
            billing_address = {**shipping_address, "same_as_shipping": True}
        else:
            billing_address = billing.model_dump()

        method = request.payment_info.method
        payment_status = "pending" if method == "cod" else "completed"
        doc: Dict[str, Any] = {
            "user": user_id,
            "items": items,
            "shipping_address": shipping_address,
            "billing_address": billing_address,
            "payment_info": {
                "method": method,
                "status": payment_status,
                "transaction_id": None,
                "payment_date": now if payment_status == "completed" else None,
            },
            "pricing": pricing.model_dump(),
            "status": "pending",
            "status_history": [{"status": "pending", "date": now, "note": "Order placed"}],
            "shipping": {
                "method": request.shipping_method,
                "cost": pricing.shipping,
                "tracking_number": None,
                "carrier": None,
                "estimated_delivery": None,
                "actual_delivery": None,
            },
            "coupon": request.coupon.model_dump() if request.coupon else None,
            "notes": request.notes.model_dump() if request.notes else {"customer": None, "internal": None},
            "needs_reconciliation": False,
            "created_at": now,
            "updated_at": now,
        }

        for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
            doc.pop("_id", None)
            doc["order_number"] = generate_order_number()
            try:
                self.orders.insert_one(doc)
                return doc
            except DuplicateKeyError:
                logger.warning("order_number_collision", order_number=doc["order_number"], attempt=attempt)
        raise Conflict("Could not allocate a unique order number")


# ---------- Status machine ----------

class OrderStatusMachine:
    def __init__(self, db: Database):
        self.orders = db["order"]

    def transition(self, order_number: str, status: str, note: Optional[str] = None) -> Dict[str, Any]:
        if status not in ORDER_STATUSES:
            raise InvalidStatus(f"Unknown order status '{status}'")

        order = self.orders.find_one({"order_number": order_number}, {"status": 1})
        if not order:
            raise OrderNotFound()

        current = order["status"]
        if status not in allowed_transitions(current):
            raise InvalidStatus(f"Cannot change order status from {current} to {status}")

        now = utcnow()
        changes: Dict[str, Any] = {"status": status, "updated_at": now}
        if status == "refunded":
            changes["payment_info.status"] = "refunded"
        if status == "delivered":
            changes["shipping.actual_delivery"] = now

        result = self.orders.update_one(
            {"_id": order["_id"], "status": current},
            {
                "$set": changes,
                "$push": {"status_history": {"status": status, "date": now, "note": note or ""}},
            },
        )
        if result.modified_count != 1:
            raise Conflict("Order status changed by another request, reload and try again")

        logger.info("order_status_changed", order_number=order_number, previous=current, status=status)
        return {"order_number": order_number, "status": status}

    def update_shipping(self, order_number: str, data: ShippingUpdateRequest) -> Dict[str, Any]:
        changes = {f"shipping.{key}": value for key, value in data.model_dump(exclude_none=True).items()}
        order = self.orders.find_one({"order_number": order_number})
        if not order:
            raise OrderNotFound()
        if changes:
            changes["updated_at"] = utcnow()
            self.orders.update_one({"_id": order["_id"]}, {"$set": changes})
            order = self.orders.find_one({"_id": order["_id"]})
        return {"order_number": order_number, "shipping": order.get("shipping")}


# ---------- Queries ----------

class OrderQueries:
    def __init__(self, db: Database):
        self.orders = db["order"]
        self.users = db["user"]

    def for_user(self, user_id: str, page: int = 1, limit: int = 10) -> Tuple[List[Dict[str, Any]], int]:
        docs, total = paginate(self.orders, {"user": user_id}, [("created_at", DESCENDING), ("_id", DESCENDING)], page, limit)
        return [serialize(doc) for doc in docs], total

    def get(self, order_number: str, user_id: str, is_admin: bool = False) -> Dict[str, Any]:
        query: Dict[str, Any] = {"order_number": order_number}
        if not is_admin:
            query["user"] = user_id
        doc = self.orders.find_one(query)
        if not doc:
            raise OrderNotFound()
        return serialize(doc)

    def recent_for_user(self, user_id: str, limit: int = 3) -> List[Dict[str, Any]]:
        cursor = self.orders.find(
            {"user": user_id},
            {"order_number": 1, "status": 1, "pricing.total": 1, "created_at": 1},
        ).sort("created_at", DESCENDING).limit(limit)
        return [serialize(doc) for doc in cursor]

    def user_summary(self, user_id: str) -> Dict[str, Any]:
        totals = list(self.orders.aggregate([
            {"$match": {"user": user_id}},
            {"$group": {"_id": None, "total_orders": {"$sum": 1}, "total_spent": {"$sum": "$pricing.total"}}},
        ]))
        pending = self.orders.count_documents({"user": user_id, "status": {"$in": ["pending", "confirmed", "processing"]}})
        row = totals[0] if totals else {}
        return {
            "total_orders": row.get("total_orders", 0),
            "total_spent": float(round2(row.get("total_spent", 0))),
            "pending_orders": pending,
        }

    def has_open_orders(self, user_id: str) -> bool:
        return self.orders.count_documents({"user": user_id, "status": {"$in": OPEN_STATUSES}}, limit=1) > 0

    def admin_list(
        self,
        status: Optional[str] = None,
        payment_status: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        """Filtered order page with customer summaries and revenue stats for the whole match."""
        filter_q: Dict[str, Any] = {}
        if status:
            filter_q["status"] = status
        if payment_status:
            filter_q["payment_info.status"] = payment_status
        if start_date or end_date:
            created: Dict[str, Any] = {}
            if start_date:
                created["$gte"] = as_naive_utc(start_date)
            if end_date:
                created["$lte"] = as_naive_utc(end_date)
            filter_q["created_at"] = created

        docs, total = paginate(self.orders, filter_q, [("created_at", DESCENDING), ("_id", DESCENDING)], page, limit)
        customers = self._customers({doc.get("user") for doc in docs})
        orders = []
        for doc in docs:
            order = serialize(doc)
            order["customer"] = customers.get(doc.get("user"))
            orders.append(order)

        rows = list(self.orders.aggregate([
            {"$match": filter_q},
            {"$group": {"_id": None, "total_revenue": {"$sum": "$pricing.total"}, "count": {"$sum": 1}}},
        ]))
        row = rows[0] if rows else {"total_revenue": 0, "count": 0}
        revenue = round2(row["total_revenue"])
        stats = {
            "total_revenue": float(revenue),
            "average_order_value": float(round2(revenue / row["count"])) if row["count"] else 0.0,
            "order_count": row["count"],
        }
        return {"orders": orders, "total": total, "stats": stats}

    def _customers(self, user_ids) -> Dict[str, Dict[str, Any]]:
        object_ids = [oid for oid in (to_object_id(uid) for uid in user_ids) if oid is not None]
        if not object_ids:
            return {}
        cursor = self.users.find({"_id": {"$in": object_ids}}, {"first_name": 1, "last_name": 1, "email": 1})
        return {str(doc["_id"]): serialize(doc) for doc in cursor}

    def stats(self) -> Dict[str, Any]:
        since = days_ago(30)
        revenue = list(self.orders.aggregate([
            {"$match": {"status": {"$ne": "cancelled"}}},
            {"$group": {"_id": None, "total": {"$sum": "$pricing.total"}, "count": {"$sum": 1}}},
        ]))
        recent = list(self.orders.aggregate([
            {"$match": {"created_at": {"$gte": since}, "status": {"$ne": "cancelled"}}},
            {"$group": {"_id": None, "total": {"$sum": "$pricing.total"}, "count": {"$sum": 1}}},
        ]))
        daily = list(self.orders.aggregate([
            {"$match": {"created_at": {"$gte": since}}},
            {"$group": {
                "_id": {"$dateToString": {"format": "%Y-%m-%d", "date": "$created_at"}},
                "orders": {"$sum": 1},
                "revenue": {"$sum": "$pricing.total"},
            }},
            {"$sort": {"_id": 1}},
        ]))
        all_time = revenue[0] if revenue else {"total": 0, "count": 0}
        last_30 = recent[0] if recent else {"total": 0, "count": 0}
        return {
            "total_orders": self.orders.count_documents({}),
            "total_revenue": float(round2(all_time["total"])),
            "recent_orders": last_30["count"],
            "recent_revenue": float(round2(last_30["total"])),
            "status_breakdown": self.status_breakdown(),
            "daily_trend": [
                {"date": row["_id"], "orders": row["orders"], "revenue": float(round2(row["revenue"]))}
                for row in daily
            ],
        }

    def status_breakdown(self) -> Dict[str, int]:
        rows = self.orders.aggregate([{"$group": {"_id": "$status", "count": {"$sum": 1}}}])
        return {row["_id"]: row["count"] for row in rows}
