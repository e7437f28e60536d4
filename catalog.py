"""
Catalog store: categories and products.

Products carry their purchasable inventory as an ordered list of variants;
`total_stock` is a projection of those variants and is recomputed by every
write path here, never accepted from callers.
"""
import re
from typing import Any, Dict, List, Optional, Tuple

import structlog
from pydantic import BaseModel
from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import paginate, serialize, to_object_id, utcnow
from errors import CategoryNotFound, Conflict, ProductNotFound
from schemas import SIZE_ORDER, Category, CategoryUpdate, Product, ProductUpdate

logger = structlog.get_logger(__name__)

SORTS = {
    "price_low": [("price", 1)],
    "price_high": [("price", -1)],
    "rating": [("ratings.average", -1)],
    "popular": [("sold_count", -1)],
    "newest": [("created_at", -1)],
}
DEFAULT_SORT = "newest"
PRIVATE_PRODUCT_FIELDS = ("cost_price",)


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]", "-", name.lower())
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


def total_stock(variants: List[Dict[str, Any]]) -> int:
    return sum(int(v.get("stock", 0)) for v in variants)


def discount_percentage(product: Dict[str, Any]) -> int:
    compare = product.get("compare_price")
    price = product.get("price") or 0
    if compare and compare > price:
        return round((compare - price) / compare * 100)
    return 0


def sort_sizes(sizes: List[str]) -> List[str]:
    """Known garment sizes in table order, unknown ones lexicographically after."""
    known = {size: index for index, size in enumerate(SIZE_ORDER)}
    return sorted(sizes, key=lambda s: (0, known[s], "") if s in known else (1, 0, s))


def find_variant(product: Dict[str, Any], size: str, color: str) -> Optional[Dict[str, Any]]:
    return next(
        (v for v in product.get("variants", []) if v.get("size") == size and v.get("color") == color),
        None,
    )


def public_product(doc: Dict[str, Any]) -> Dict[str, Any]:
    product = serialize(doc)
    for field in PRIVATE_PRODUCT_FIELDS:
        product.pop(field, None)
    product["discount_percentage"] = discount_percentage(product)
    return product


class ProductQuery(BaseModel):
    category: Optional[str] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    size: Optional[str] = None
    color: Optional[str] = None
    brand: Optional[str] = None
    search: Optional[str] = None

    def to_filter(self) -> Dict[str, Any]:
        filter_q: Dict[str, Any] = {"is_active": True}
        if self.category:
            filter_q["category"] = self.category
        if self.min_price is not None or self.max_price is not None:
            price_filter = {}
            if self.min_price is not None:
                price_filter["$gte"] = self.min_price
            if self.max_price is not None:
                price_filter["$lte"] = self.max_price
            filter_q["price"] = price_filter
        if self.size:
            filter_q["variants.size"] = self.size
        if self.color:
            filter_q["variants.color"] = {"$regex": re.escape(self.color), "$options": "i"}
        if self.brand:
            filter_q["brand"] = {"$regex": re.escape(self.brand), "$options": "i"}
        if self.search:
            pattern = {"$regex": re.escape(self.search), "$options": "i"}
            filter_q["$or"] = [
                {"name": pattern},
                {"description": pattern},
                {"specifications.fabric": pattern},
                {"brand": pattern},
                {"tags": pattern},
            ]
        return filter_q


class Catalog:
    def __init__(self, db: Database):
        self.db = db
        self.products = db["product"]
        self.categories = db["category"]

    # ---------- Product reads ----------

    def find(self, query: ProductQuery, sort: Optional[str] = None, page: int = 1, page_size: int = 12) -> Tuple[List[Dict[str, Any]], int]:
        sort_spec = SORTS.get(sort or DEFAULT_SORT, SORTS[DEFAULT_SORT]) + [("_id", DESCENDING)]
        items, total = paginate(self.products, query.to_filter(), sort_spec, page, page_size)
        return [self._with_category(public_product(item)) for item in items], total

    def get_product(self, identifier: str, count_view: bool = True) -> Dict[str, Any]:
        """Active product by id or slug, plus up to four related products."""
        object_id = to_object_id(identifier)
        query: Dict[str, Any] = {"_id": object_id} if object_id else {"slug": identifier}
        query["is_active"] = True
        doc = self.products.find_one(query)
        if not doc:
            raise ProductNotFound("Product not found")

        if count_view:
            self._record_view(doc["_id"])

        related = self.products.find(
            {"category": doc.get("category"), "_id": {"$ne": doc["_id"]}, "is_active": True}
        ).limit(4)
        return {
            "product": self._with_category(public_product(doc)),
            "related_products": [self._with_category(public_product(r)) for r in related],
        }

    def _record_view(self, product_id) -> None:
        try:
            self.products.update_one({"_id": product_id}, {"$inc": {"view_count": 1}})
        except PyMongoError:
            logger.warning("view_count_increment_failed", product_id=str(product_id), exc_info=True)

    def get_active_product(self, product_id: str) -> Optional[Dict[str, Any]]:
        object_id = to_object_id(product_id)
        if object_id is None:
            return None
        return self.products.find_one({"_id": object_id, "is_active": True})

    def get_products(self, product_ids: List[str], active_only: bool = True) -> Dict[str, Dict[str, Any]]:
        """Products keyed by string id; unknown or malformed ids are skipped."""
        object_ids = [oid for oid in (to_object_id(pid) for pid in product_ids) if oid is not None]
        if not object_ids:
            return {}
        filter_q: Dict[str, Any] = {"_id": {"$in": object_ids}}
        if active_only:
            filter_q["is_active"] = True
        return {str(doc["_id"]): doc for doc in self.products.find(filter_q)}

    def featured(self, limit: int = 8) -> List[Dict[str, Any]]:
        cursor = self.products.find({"is_active": True, "is_featured": True}).sort("created_at", -1).limit(limit)
        return [self._with_category(public_product(doc)) for doc in cursor]

    def on_sale(self, limit: int = 12) -> List[Dict[str, Any]]:
        cursor = self.products.find({
            "is_active": True,
            "is_on_sale": True,
            "$or": [{"sale_end_date": {"$gte": utcnow()}}, {"sale_end_date": None}],
        }).sort("created_at", -1).limit(limit)
        return [self._with_category(public_product(doc)) for doc in cursor]

    def suggestions(self, q: str, limit: int = 5) -> List[Dict[str, Any]]:
        if not q or len(q) < 2:
            return []
        pattern = {"$regex": re.escape(q), "$options": "i"}
        cursor = self.products.find(
            {"is_active": True, "$or": [{"name": pattern}, {"brand": pattern}, {"tags": pattern}]},
            {"name": 1, "slug": 1, "brand": 1},
        ).limit(limit)
        return [{"title": d.get("name"), "slug": d.get("slug"), "brand": d.get("brand")} for d in cursor]

    # ---------- Facets ----------

    def sizes(self) -> List[str]:
        return sort_sizes([s for s in self.products.distinct("variants.size", {"is_active": True}) if s])

    def colors(self) -> List[str]:
        return sorted(c for c in self.products.distinct("variants.color", {"is_active": True}) if c)

    def brands(self) -> List[str]:
        return sorted(b for b in self.products.distinct("brand", {"is_active": True}) if b)

    # ---------- Product writes ----------

    def create_product(self, data: Product) -> Dict[str, Any]:
        self._require_category(data.category)
        if self.products.find_one({"sku": data.sku}):
            raise Conflict("SKU already exists")

        doc = data.model_dump()
        now = utcnow()
        doc.update({
            "slug": self._unique_slug(self.products, data.name),
            "total_stock": total_stock(doc["variants"]),
            "ratings": {"average": 0.0, "count": 0},
            "is_active": True,
            "view_count": 0,
            "sold_count": 0,
            "created_at": now,
            "updated_at": now,
        })
        try:
            result = self.products.insert_one(doc)
        except DuplicateKeyError:
            raise Conflict("Product SKU or slug already exists")
        logger.info("product_created", product_id=str(result.inserted_id), sku=data.sku)
        return self._with_category(public_product(self.products.find_one({"_id": result.inserted_id})))

    def update_product(self, product_id: str, data: ProductUpdate) -> Dict[str, Any]:
        object_id = to_object_id(product_id)
        existing = self.products.find_one({"_id": object_id}) if object_id else None
        if not existing:
            raise ProductNotFound("Product not found")

        # explicit nulls leave the stored value alone
        changes = data.model_dump(exclude_unset=True, exclude_none=True)
        # nested models are replaced whole, with their defaults filled in
        for field in ("variants", "images", "specifications"):
            if field in changes:
                value = getattr(data, field)
                changes[field] = [v.model_dump() for v in value] if isinstance(value, list) else value.model_dump()
        if "sku" in changes and self.products.find_one({"sku": changes["sku"], "_id": {"$ne": object_id}}):
            raise Conflict("SKU already exists")
        if "category" in changes:
            self._require_category(changes["category"])
        if "name" in changes and changes["name"] != existing.get("name"):
            changes["slug"] = self._unique_slug(self.products, changes["name"], exclude=object_id)
        if "variants" in changes:
            changes["total_stock"] = total_stock(changes["variants"])
        changes["updated_at"] = utcnow()

        try:
            self.products.update_one({"_id": object_id}, {"$set": changes})
        except DuplicateKeyError:
            raise Conflict("Product SKU or slug already exists")
        return self._with_category(public_product(self.products.find_one({"_id": object_id})))

    def deactivate_product(self, product_id: str) -> None:
        object_id = to_object_id(product_id)
        result = self.products.update_one({"_id": object_id}, {"$set": {"is_active": False, "updated_at": utcnow()}}) if object_id else None
        if result is None or result.matched_count == 0:
            raise ProductNotFound("Product not found")

    # ---------- Categories ----------

    def list_categories(self, include_inactive: bool = False) -> List[Dict[str, Any]]:
        query = {} if include_inactive else {"is_active": True}
        cursor = self.categories.find(query).sort([("sort_order", 1), ("name", 1)])
        return [self._with_relations(doc) for doc in cursor]

    def main_categories(self) -> List[Dict[str, Any]]:
        cursor = self.categories.find({"is_active": True, "parent_category": None}).sort([("sort_order", 1), ("name", 1)])
        return [self._with_relations(doc) for doc in cursor]

    def category_with_products(self, slug: str, page: int = 1, page_size: int = 12) -> Tuple[Dict[str, Any], List[Dict[str, Any]], int]:
        category = self.categories.find_one({"slug": slug, "is_active": True})
        if not category:
            raise CategoryNotFound()
        products, total = paginate(
            self.products,
            {"category": str(category["_id"]), "is_active": True},
            [("created_at", -1), ("_id", -1)],
            page,
            page_size,
        )
        return self._with_relations(category), [public_product(p) for p in products], total

    def subcategories(self, slug: str) -> List[Dict[str, Any]]:
        parent = self.categories.find_one({"slug": slug, "is_active": True})
        if not parent:
            raise CategoryNotFound("Parent category not found")
        cursor = self.categories.find({"parent_category": str(parent["_id"]), "is_active": True}).sort([("sort_order", 1), ("name", 1)])
        return [serialize(doc) for doc in cursor]

    def create_category(self, data: Category) -> Dict[str, Any]:
        if self.categories.find_one({"name": data.name}):
            raise Conflict("Category name already exists")
        if data.parent_category:
            self._require_category(data.parent_category)

        doc = data.model_dump()
        now = utcnow()
        doc.update({
            "slug": self._unique_slug(self.categories, data.name),
            "sub_categories": [],
            "is_active": True,
            "created_at": now,
            "updated_at": now,
        })
        try:
            result = self.categories.insert_one(doc)
        except DuplicateKeyError:
            raise Conflict("Category name already exists")

        if data.parent_category:
            self.categories.update_one(
                {"_id": to_object_id(data.parent_category)},
                {"$addToSet": {"sub_categories": str(result.inserted_id)}},
            )
        return self._with_relations(self.categories.find_one({"_id": result.inserted_id}))

    def update_category(self, category_id: str, data: CategoryUpdate) -> Dict[str, Any]:
        object_id = to_object_id(category_id)
        existing = self.categories.find_one({"_id": object_id}) if object_id else None
        if not existing:
            raise CategoryNotFound()

        changes = data.model_dump(exclude_unset=True, exclude_none=True)
        if "name" in changes and changes["name"] != existing["name"]:
            if self.categories.find_one({"name": changes["name"], "_id": {"$ne": object_id}}):
                raise Conflict("Category name already exists")
            changes["slug"] = self._unique_slug(self.categories, changes["name"], exclude=object_id)
        changes["updated_at"] = utcnow()
        self.categories.update_one({"_id": object_id}, {"$set": changes})
        return self._with_relations(self.categories.find_one({"_id": object_id}))

    def delete_category(self, category_id: str) -> None:
        """Soft-delete a category nothing references any more."""
        object_id = to_object_id(category_id)
        category = self.categories.find_one({"_id": object_id}) if object_id else None
        if not category:
            raise CategoryNotFound()

        product_count = self.products.count_documents({"category": category_id})
        if product_count > 0:
            raise Conflict(f"Cannot delete category. It has {product_count} products.")
        subcategory_count = self.categories.count_documents({"parent_category": category_id})
        if subcategory_count > 0:
            raise Conflict(f"Cannot delete category. It has {subcategory_count} subcategories.")

        self.categories.update_one({"_id": object_id}, {"$set": {"is_active": False, "updated_at": utcnow()}})
        if category.get("parent_category"):
            self.categories.update_one(
                {"_id": to_object_id(category["parent_category"])},
                {"$pull": {"sub_categories": category_id}},
            )

    # ---------- Internals ----------

    def _require_category(self, category_id: str) -> Dict[str, Any]:
        object_id = to_object_id(category_id)
        category = self.categories.find_one({"_id": object_id}) if object_id else None
        if not category:
            raise CategoryNotFound()
        return category

    def _unique_slug(self, collection, name: str, exclude=None) -> str:
        base = slugify(name) or "item"
        slug, suffix = base, 2
        while True:
            query: Dict[str, Any] = {"slug": slug}
            if exclude is not None:
                query["_id"] = {"$ne": exclude}
            if not collection.find_one(query):
                return slug
            slug = f"{base}-{suffix}"
            suffix += 1

    def _summary(self, category_id: Optional[str]) -> Optional[Dict[str, Any]]:
        object_id = to_object_id(category_id)
        if object_id is None:
            return None
        doc = self.categories.find_one({"_id": object_id}, {"name": 1, "slug": 1})
        return serialize(doc) if doc else None

    def _with_category(self, product: Dict[str, Any]) -> Dict[str, Any]:
        product["category"] = self._summary(product.get("category")) or product.get("category")
        return product

    def _with_relations(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        category = serialize(doc)
        category["parent_category"] = self._summary(category.get("parent_category"))
        category["sub_categories"] = [s for s in (self._summary(c) for c in category.get("sub_categories", [])) if s]
        return category

