"""
Cart manager.

A cart is the same list of (product, size, color, quantity) lines whether it
lives in a guest's session or embedded in a user document; CartStore hides
which. Mutations return the new line count instead of stashing it in shared
state, and the caller propagates it.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, MutableMapping, Optional, Tuple

import structlog
from pymongo.database import Database

from catalog import Catalog, find_variant
from database import to_object_id, utcnow
from errors import InsufficientStock, ItemNotFound, ProductNotFound, UserNotFound, ValidationFailed, VariantUnavailable
from pricing import PricingEngine, round2, unit_price
from schemas import CartLine, Coupon

logger = structlog.get_logger(__name__)

LineKey = Tuple[str, str, str]


def line_key(line: CartLine) -> LineKey:
    return (line.product_id, line.size, line.color)


# ---------- Stores ----------

class CartStore(ABC):
    kind = "abstract"

    @abstractmethod
    def load(self) -> List[CartLine]:
        ...

    @abstractmethod
    def save(self, lines: List[CartLine]) -> None:
        ...

    def clear(self) -> None:
        self.save([])


class GuestCartStore(CartStore):
    """Cart kept in the browser session under `cart` / `cartCount`."""

    kind = "guest"

    def __init__(self, session: MutableMapping[str, Any]):
        self.session = session

    def load(self) -> List[CartLine]:
        return [CartLine(**line) for line in self.session.get("cart") or []]

    def save(self, lines: List[CartLine]) -> None:
        self.session["cart"] = [line.model_dump() for line in lines]
        self.session["cartCount"] = len(lines)


class UserCartStore(CartStore):
    """Cart embedded in the user document."""

    kind = "user"

    def __init__(self, db: Database, user_id: str):
        self.users = db["user"]
        self.user_id = to_object_id(user_id)

    def load(self) -> List[CartLine]:
        user = self.users.find_one({"_id": self.user_id}, {"cart": 1}) if self.user_id else None
        if user is None:
            raise UserNotFound()
        return [CartLine(**line) for line in user.get("cart") or []]

    def save(self, lines: List[CartLine]) -> None:
        result = self.users.update_one(
            {"_id": self.user_id},
            {"$set": {"cart": [line.model_dump() for line in lines], "updated_at": utcnow()}},
        )
        if result.matched_count == 0:
            raise UserNotFound()


def cart_store_for(db: Database, session: MutableMapping[str, Any], user_id: Optional[str]) -> CartStore:
    if user_id:
        return UserCartStore(db, user_id)
    return GuestCartStore(session)


# ---------- Manager ----------

class CartManager:
    def __init__(self, store: CartStore, catalog: Catalog, pricing: Optional[PricingEngine] = None):
        self.store = store
        self.catalog = catalog
        self.pricing = pricing or PricingEngine()

    def _resolve_variant(self, product_id: str, size: str, color: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        product = self.catalog.get_active_product(product_id)
        if not product:
            raise ProductNotFound()
        variant = find_variant(product, size, color)
        if not variant:
            raise VariantUnavailable()
        return product, variant

    @staticmethod
    def _check_stock(variant: Dict[str, Any], quantity: int) -> None:
        stock = variant.get("stock", 0)
        if stock < quantity:
            raise InsufficientStock(f"Only {stock} items available in stock", available=stock)

    def add(self, product_id: str, size: str, color: str, quantity: int = 1) -> int:
        if quantity < 1:
            raise ValidationFailed("Quantity must be at least 1")
        _, variant = self._resolve_variant(product_id, size, color)
        self._check_stock(variant, quantity)

        lines = self.store.load()
        key = (product_id, size, color)
        existing = next((line for line in lines if line_key(line) == key), None)
        if existing:
            new_quantity = existing.quantity + quantity
            self._check_stock(variant, new_quantity)
            existing.quantity = new_quantity
        else:
            lines.append(CartLine(product_id=product_id, size=size, color=color, quantity=quantity))

        self.store.save(lines)
        logger.debug("cart_item_added", cart=self.store.kind, product_id=product_id, size=size, color=color, quantity=quantity)
        return len(lines)

    def update(self, product_id: str, size: str, color: str, quantity: int) -> int:
        if quantity < 0:
            raise ValidationFailed("Quantity must be 0 or greater")
        if quantity == 0:
            return self.remove(product_id, size, color)

        _, variant = self._resolve_variant(product_id, size, color)
        self._check_stock(variant, quantity)

        lines = self.store.load()
        key = (product_id, size, color)
        existing = next((line for line in lines if line_key(line) == key), None)
        if existing is None:
            raise ItemNotFound()
        existing.quantity = quantity
        self.store.save(lines)
        return len(lines)

    def remove(self, product_id: str, size: str, color: str) -> int:
        key = (product_id, size, color)
        lines = [line for line in self.store.load() if line_key(line) != key]
        self.store.save(lines)
        return len(lines)

    def clear(self) -> int:
        self.store.clear()
        return 0

    def view(self, coupon: Optional[Coupon] = None) -> Dict[str, Any]:
        """Every line resolved against live catalog state, with a pricing preview.

        Lines whose product is gone or inactive, whose variant vanished, or whose
        stock fell below the requested quantity stay in the listing with
        in_stock=False and contribute nothing to the totals.
        """
        lines = self.store.load()
        products = self.catalog.get_products([line.product_id for line in lines])

        items = []
        priced = []
        for line in lines:
            product = products.get(line.product_id)
            variant = find_variant(product, line.size, line.color) if product else None
            item = line.model_dump()
            item["product"] = _product_summary(product)
            if variant is not None and variant.get("stock", 0) >= line.quantity:
                price = unit_price(product, variant)
                item.update({
                    "item_price": float(price),
                    "item_total": float(round2(price * line.quantity)),
                    "in_stock": True,
                })
                priced.append((price, line.quantity))
            else:
                item.update({
                    "item_price": float(product["price"]) if product else 0.0,
                    "item_total": 0.0,
                    "in_stock": False,
                    "available_stock": variant.get("stock", 0) if variant else 0,
                })
            items.append(item)

        return {
            "items": items,
            "count": len(items),
            "cart_count": len(lines),
            "pricing": self.pricing.price(priced, coupon).model_dump(),
        }


def _product_summary(product: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not product:
        return None
    images = product.get("images") or []
    main = next((img for img in images if img.get("is_main")), images[0] if images else None)
    return {
        "id": str(product["_id"]),
        "name": product.get("name"),
        "slug": product.get("slug"),
        "price": product.get("price"),
        "image": main.get("url") if main else None,
        "total_stock": product.get("total_stock", 0),
    }


def transfer_on_login(guest: CartStore, user: CartStore, catalog: Catalog) -> Dict[str, Any]:
    """Merge a guest cart into a user cart, then empty the guest cart.

    Lines are merged by (product, size, color) with quantities summed and
    re-validated against current stock; a line that no longer fits is dropped
    from the merge without failing the others.
    """
    merged = 0
    dropped: List[Dict[str, Any]] = []
    try:
        guest_lines = guest.load()
        if not guest_lines:
            return {"merged": 0, "dropped": [], "cart_count": len(user.load())}

        user_lines = user.load()
        products = catalog.get_products([line.product_id for line in guest_lines])
        for line in guest_lines:
            product = products.get(line.product_id)
            variant = find_variant(product, line.size, line.color) if product else None
            existing = next((ul for ul in user_lines if line_key(ul) == line_key(line)), None)
            wanted = line.quantity + (existing.quantity if existing else 0)
            if variant is None or variant.get("stock", 0) < wanted:
                dropped.append(line.model_dump())
                continue
            if existing:
                existing.quantity = wanted
            else:
                user_lines.append(line.model_copy())
            merged += 1

        user.save(user_lines)
        logger.info("cart_transferred", merged=merged, dropped=len(dropped))
        return {"merged": merged, "dropped": dropped, "cart_count": len(user_lines)}
    finally:
        guest.clear()
