"""
User accounts: registration, credentials, profile, wishlist and the
account dashboard.
"""
from typing import Any, Dict, List, Optional

import structlog
from passlib.context import CryptContext
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from carts import UserCartStore
from catalog import Catalog, public_product
from database import create_document, to_object_id, utcnow
from errors import Conflict, ProductNotFound, Unauthorized, UserNotFound, ValidationFailed
from orders import OrderQueries
from schemas import PasswordChange, ProfileUpdate, RegisterRequest, User

logger = structlog.get_logger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

PUBLIC_USER_FIELDS = ("first_name", "last_name", "email", "role", "phone", "is_active", "created_at", "last_login")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def public_user(doc: Dict[str, Any]) -> Dict[str, Any]:
    """User document without credentials or embedded collections."""
    data = {key: doc.get(key) for key in PUBLIC_USER_FIELDS}
    data["id"] = str(doc["_id"])
    return data


class Accounts:
    def __init__(self, db: Database, catalog: Optional[Catalog] = None):
        self.db = db
        self.users = db["user"]
        self.catalog = catalog or Catalog(db)

    def register(self, data: RegisterRequest) -> Dict[str, Any]:
        email = data.email.lower()
        if self.users.find_one({"email": email}):
            raise Conflict("User with this email already exists")

        user = User(
            first_name=data.first_name.strip(),
            last_name=data.last_name.strip(),
            email=email,
            password_hash=get_password_hash(data.password),
        )
        doc = {**user.model_dump(), "email": email, "cart": [], "wishlist": [], "orders": []}
        try:
            user_id = create_document("user", doc, database=self.db)
        except DuplicateKeyError:
            raise Conflict("User with this email already exists")
        logger.info("user_registered", user_id=user_id)
        return public_user(self.users.find_one({"_id": to_object_id(user_id)}))

    def authenticate(self, email: str, password: str) -> Dict[str, Any]:
        user = self.users.find_one({"email": email.lower()})
        if not user or not verify_password(password, user.get("password_hash", "")):
            logger.info("login_failed", email=email.lower())
            raise Unauthorized("Invalid email or password")
        if not user.get("is_active", True):
            raise Unauthorized("Account is deactivated")
        self.users.update_one({"_id": user["_id"]}, {"$set": {"last_login": utcnow()}})
        return user

    def get(self, user_id: str, active_only: bool = True) -> Dict[str, Any]:
        object_id = to_object_id(user_id)
        user = self.users.find_one({"_id": object_id}) if object_id else None
        if not user or (active_only and not user.get("is_active", True)):
            raise UserNotFound()
        return user

    def update_profile(self, user_id: str, data: ProfileUpdate) -> Dict[str, Any]:
        user = self.get(user_id)
        changes = data.model_dump(exclude_unset=True, exclude_none=True)
        if "email" in changes:
            changes["email"] = changes["email"].lower()
            if changes["email"] != user["email"] and self.users.find_one({"email": changes["email"], "_id": {"$ne": user["_id"]}}):
                raise Conflict("Email is already in use")
        for key in ("first_name", "last_name", "phone"):
            if key in changes:
                changes[key] = changes[key].strip()
        if changes:
            changes["updated_at"] = utcnow()
            try:
                self.users.update_one({"_id": user["_id"]}, {"$set": changes})
            except DuplicateKeyError:
                raise Conflict("Email is already in use")
        return public_user(self.get(user_id))

    def change_password(self, user_id: str, data: PasswordChange) -> None:
        user = self.get(user_id)
        if not verify_password(data.current_password, user.get("password_hash", "")):
            raise ValidationFailed("Current password is incorrect")
        self.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"password_hash": get_password_hash(data.new_password), "updated_at": utcnow()}},
        )
        logger.info("password_changed", user_id=user_id)

    # ---------- Wishlist ----------

    def wishlist(self, user_id: str) -> List[Dict[str, Any]]:
        """Wishlisted products that are still active, in the order they were added."""
        ids = self.get(user_id).get("wishlist") or []
        products = self.catalog.get_products(ids)
        return [public_product(products[pid]) for pid in ids if pid in products]

    def add_to_wishlist(self, user_id: str, product_id: str) -> int:
        user = self.get(user_id)
        if not self.catalog.get_active_product(product_id):
            raise ProductNotFound()
        wishlist = user.get("wishlist") or []
        if product_id in wishlist:
            raise Conflict("Product already in wishlist")
        self.users.update_one({"_id": user["_id"]}, {"$addToSet": {"wishlist": product_id}, "$set": {"updated_at": utcnow()}})
        return len(wishlist) + 1

    def remove_from_wishlist(self, user_id: str, product_id: str) -> int:
        user = self.get(user_id)
        self.users.update_one({"_id": user["_id"]}, {"$pull": {"wishlist": product_id}, "$set": {"updated_at": utcnow()}})
        return len([pid for pid in user.get("wishlist") or [] if pid != product_id])

    # ---------- Dashboard / deletion ----------

    def dashboard(self, user_id: str) -> Dict[str, Any]:
        user = self.get(user_id)
        queries = OrderQueries(self.db)
        summary = queries.user_summary(user_id)
        return {
            "user": public_user(user),
            "stats": {
                **summary,
                "cart_items": len(user.get("cart") or []),
                "wishlist_items": len(user.get("wishlist") or []),
            },
            "recent_orders": queries.recent_for_user(user_id),
        }

    def delete_account(self, user_id: str, password: str) -> None:
        """Deactivate the account and free its email. Orders are kept."""
        user = self.get(user_id)
        if not verify_password(password, user.get("password_hash", "")):
            raise ValidationFailed("Password is incorrect")
        if OrderQueries(self.db).has_open_orders(user_id):
            raise ValidationFailed("Cannot delete account with pending orders. Please wait for orders to complete or cancel them.")

        UserCartStore(self.db, user_id).clear()
        self.users.update_one(
            {"_id": user["_id"]},
            {"$set": {
                "is_active": False,
                "email": f"deleted_{user_id}_{user['email']}",
                "wishlist": [],
                "deleted_at": utcnow(),
                "updated_at": utcnow(),
            }},
        )
        logger.info("account_deleted", user_id=user_id)


def serialize_users(docs) -> List[Dict[str, Any]]:
    return [public_user(doc) for doc in docs]
