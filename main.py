import os
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import structlog
from fastapi import Depends, FastAPI, File, Query, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from fastapi.staticfiles import StaticFiles
from jose import JWTError, jwt
from pymongo.database import Database
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

import database
from accounts import Accounts, public_user
from admin import AdminService
from carts import CartManager, GuestCartStore, UserCartStore, cart_store_for, transfer_on_login
from catalog import Catalog, ProductQuery
from database import ensure_indexes, get_db, pagination
from errors import Forbidden, StoreError, Unauthorized, ValidationFailed
from logging_config import add_context, clear_context, configure_logging
from orders import OrderAssembler, OrderQueries, OrderStatusMachine
from schemas import (
    AccountDeletion,
    CartItemRequest,
    CartRemoveRequest,
    CartUpdateRequest,
    Category as CategorySchema,
    CategoryUpdate,
    CheckoutRequest,
    Coupon,
    PasswordChange,
    Product as ProductSchema,
    ProductUpdate,
    ProfileUpdate,
    RegisterRequest,
    RoleUpdate,
    ShippingUpdateRequest,
    StatusUpdateRequest,
    Token,
    UserOut,
    WishlistRequest,
)
from storage import MAX_UPLOAD_FILES, UPLOAD_DIR, LocalImageStore

SECRET_KEY = os.getenv("SECRET_KEY", "supersecretkey")
SESSION_SECRET = os.getenv("SESSION_SECRET", SECRET_KEY)
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/login")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/login", auto_error=False)

configure_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        ensure_indexes(database.db)
        logger.info("indexes_ensured", database=database.DATABASE_NAME)
    else:
        logger.warning("database_not_configured")
    yield


app = FastAPI(title="Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET, max_age=60 * 60 * 24)

app.mount("/uploads", StaticFiles(directory=UPLOAD_DIR, check_dir=False), name="uploads")


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    """Bind a request id for every log line written while serving the request."""
    clear_context()
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    add_context(request_id=request_id, method=request.method, path=request.url.path)
    started = time.perf_counter()
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    logger.debug(
        "request_completed",
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
    return response


# Error rendering
@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    body = {"success": False, "message": exc.message}
    if exc.errors:
        body["errors"] = exc.errors
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(body))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [{"field": ".".join(str(p) for p in err.get("loc", ())[1:]), "message": err.get("msg")} for err in exc.errors()]
    return JSONResponse(status_code=400, content={"success": False, "message": "Validation failed", "errors": errors})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error")
    return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})


def ok(data=None, message: Optional[str] = None, **extra):
    body = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    body.update(extra)
    return body


# Auth helpers
def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def _user_from_token(token: str, db: Database) -> Optional[UserOut]:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None
    user_id = payload.get("sub")
    if user_id is None:
        return None
    user = db["user"].find_one({"_id": database.to_object_id(user_id), "is_active": True})
    if not user:
        return None
    return UserOut(
        id=str(user["_id"]),
        first_name=user.get("first_name"),
        last_name=user.get("last_name"),
        email=user.get("email"),
        role=user.get("role", "user"),
        phone=user.get("phone"),
    )


def get_current_user(token: str = Depends(oauth2_scheme), db: Database = Depends(get_db)) -> UserOut:
    user = _user_from_token(token, db)
    if user is None:
        raise Unauthorized("Could not validate credentials")
    return user


def get_optional_user(token: Optional[str] = Depends(optional_oauth2_scheme), db: Database = Depends(get_db)) -> Optional[UserOut]:
    return _user_from_token(token, db) if token else None


def require_admin(current: UserOut = Depends(get_current_user)) -> UserOut:
    if current.role != "admin":
        raise Forbidden()
    return current


def cart_manager(request: Request, current: Optional[UserOut], db: Database) -> CartManager:
    store = cart_store_for(db, request.session, current.id if current else None)
    return CartManager(store, Catalog(db))


@app.get("/")
def read_root():
    return {"message": "Storefront backend is running"}


@app.get("/health")
def health():
    status = "not_configured"
    if database.db is not None:
        try:
            database.db.command("ping")
            status = "ok"
        except PyMongoError:
            logger.warning("database_ping_failed", exc_info=True)
            status = "unavailable"
    return {"status": "ok", "database": status}


# Auth
@app.post("/api/register", status_code=201)
def register(data: RegisterRequest, db: Database = Depends(get_db)):
    user = Accounts(db).register(data)
    return ok(user, "Registration successful")


@app.post("/api/login", response_model=Token)
def login(request: Request, form_data: OAuth2PasswordRequestForm = Depends(), db: Database = Depends(get_db)):
    user = Accounts(db).authenticate(form_data.username, form_data.password)
    user_id = str(user["_id"])
    transfer = transfer_on_login(GuestCartStore(request.session), UserCartStore(db, user_id), Catalog(db))
    logger.info("user_logged_in", user_id=user_id, cart_merged=transfer["merged"])
    return Token(access_token=create_access_token({"sub": user_id}), cart_count=transfer["cart_count"])


@app.post("/api/logout")
def logout(request: Request):
    request.session.clear()
    return ok(message="Logged out")


@app.get("/api/me", response_model=UserOut)
def me(current: UserOut = Depends(get_current_user)):
    return current


# Catalog
@app.get("/api/products")
def list_products(
    category: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    size: Optional[str] = None,
    color: Optional[str] = None,
    brand: Optional[str] = None,
    search: Optional[str] = None,
    sort: Optional[str] = Query(None, description="price_low|price_high|rating|popular|newest"),
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    db: Database = Depends(get_db),
):
    query = ProductQuery(
        category=category,
        min_price=min_price,
        max_price=max_price,
        size=size,
        color=color,
        brand=brand,
        search=search,
    )
    products, total = Catalog(db).find(query, sort, page, limit)
    return ok({"products": products, "pagination": pagination(page, limit, total)})


@app.get("/api/products/featured")
def featured_products(limit: int = Query(8, ge=1, le=50), db: Database = Depends(get_db)):
    return ok(Catalog(db).featured(limit))


@app.get("/api/products/sale")
def sale_products(limit: int = Query(12, ge=1, le=50), db: Database = Depends(get_db)):
    return ok(Catalog(db).on_sale(limit))


@app.get("/api/products/filters")
def product_filters(db: Database = Depends(get_db)):
    catalog = Catalog(db)
    return ok({"sizes": catalog.sizes(), "colors": catalog.colors(), "brands": catalog.brands()})


@app.get("/api/products/filters/categories")
def filter_categories(db: Database = Depends(get_db)):
    return ok(Catalog(db).list_categories())


# Search suggestions
@app.get("/api/search")
def search_suggestions(q: str = "", db: Database = Depends(get_db)):
    return ok(Catalog(db).suggestions(q))


@app.get("/api/products/{identifier}")
def get_product(identifier: str, current: Optional[UserOut] = Depends(get_optional_user), db: Database = Depends(get_db)):
    is_admin = current is not None and current.role == "admin"
    return ok(Catalog(db).get_product(identifier, count_view=not is_admin))


@app.post("/api/products", status_code=201)
def create_product(data: ProductSchema, admin: UserOut = Depends(require_admin), db: Database = Depends(get_db)):
    return ok(Catalog(db).create_product(data), "Product created successfully")


@app.put("/api/products/{product_id}")
def update_product(product_id: str, data: ProductUpdate, admin: UserOut = Depends(require_admin), db: Database = Depends(get_db)):
    return ok(Catalog(db).update_product(product_id, data), "Product updated successfully")


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, admin: UserOut = Depends(require_admin), db: Database = Depends(get_db)):
    Catalog(db).deactivate_product(product_id)
    return ok(message="Product deleted successfully")


# Categories
@app.get("/api/categories")
def list_categories(include_inactive: bool = False, db: Database = Depends(get_db)):
    return ok(Catalog(db).list_categories(include_inactive))


@app.get("/api/categories/main")
def main_categories(db: Database = Depends(get_db)):
    return ok(Catalog(db).main_categories())


@app.get("/api/categories/{slug}")
def get_category(slug: str, page: int = Query(1, ge=1), limit: int = Query(12, ge=1, le=100), db: Database = Depends(get_db)):
    category, products, total = Catalog(db).category_with_products(slug, page, limit)
    return ok({"category": category, "products": products, "pagination": pagination(page, limit, total)})


@app.get("/api/categories/{slug}/subcategories")
def get_subcategories(slug: str, db: Database = Depends(get_db)):
    return ok(Catalog(db).subcategories(slug))


@app.post("/api/categories", status_code=201)
def create_category(data: CategorySchema, admin: UserOut = Depends(require_admin), db: Database = Depends(get_db)):
    return ok(Catalog(db).create_category(data), "Category created successfully")


@app.put("/api/categories/{category_id}")
def update_category(category_id: str, data: CategoryUpdate, admin: UserOut = Depends(require_admin), db: Database = Depends(get_db)):
    return ok(Catalog(db).update_category(category_id, data), "Category updated successfully")


@app.delete("/api/categories/{category_id}")
def delete_category(category_id: str, admin: UserOut = Depends(require_admin), db: Database = Depends(get_db)):
    Catalog(db).delete_category(category_id)
    return ok(message="Category deleted successfully")


# Cart
@app.get("/api/cart")
def view_cart(
    request: Request,
    coupon: Optional[str] = Query(None, description="Coupon code to preview"),
    current: Optional[UserOut] = Depends(get_optional_user),
    db: Database = Depends(get_db),
):
    preview = Coupon(code=coupon) if coupon else None
    return ok(cart_manager(request, current, db).view(preview))


@app.post("/api/cart/add")
def add_to_cart(request: Request, item: CartItemRequest, current: Optional[UserOut] = Depends(get_optional_user), db: Database = Depends(get_db)):
    count = cart_manager(request, current, db).add(item.product_id, item.size, item.color, item.quantity)
    return ok(message="Item added to cart", cart_count=count)


@app.put("/api/cart/update")
def update_cart(request: Request, item: CartUpdateRequest, current: Optional[UserOut] = Depends(get_optional_user), db: Database = Depends(get_db)):
    count = cart_manager(request, current, db).update(item.product_id, item.size, item.color, item.quantity)
    return ok(message="Cart updated", cart_count=count)


@app.delete("/api/cart/remove")
def remove_from_cart(request: Request, item: CartRemoveRequest, current: Optional[UserOut] = Depends(get_optional_user), db: Database = Depends(get_db)):
    count = cart_manager(request, current, db).remove(item.product_id, item.size, item.color)
    return ok(message="Item removed from cart", cart_count=count)


@app.delete("/api/cart/clear")
def clear_cart(request: Request, current: Optional[UserOut] = Depends(get_optional_user), db: Database = Depends(get_db)):
    count = cart_manager(request, current, db).clear()
    return ok(message="Cart cleared", cart_count=count)


@app.post("/api/cart/transfer")
def transfer_cart(request: Request, current: UserOut = Depends(get_current_user), db: Database = Depends(get_db)):
    result = transfer_on_login(GuestCartStore(request.session), UserCartStore(db, current.id), Catalog(db))
    return ok(result, "Cart transferred", cart_count=result["cart_count"])


# Orders
@app.get("/api/orders")
def list_my_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current: UserOut = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    orders, total = OrderQueries(db).for_user(current.id, page, limit)
    return ok({"orders": orders, "pagination": pagination(page, limit, total)})


@app.post("/api/orders", status_code=201)
def create_order(data: CheckoutRequest, current: UserOut = Depends(get_current_user), db: Database = Depends(get_db)):
    result = OrderAssembler(db, Catalog(db)).checkout(current.id, data)
    return ok(result, "Order placed successfully", cart_count=0)


@app.get("/api/orders/admin/all")
def list_all_orders(
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: UserOut = Depends(require_admin),
    db: Database = Depends(get_db),
):
    result = OrderQueries(db).admin_list(status, payment_status, start_date, end_date, page, limit)
    return ok({
        "orders": result["orders"],
        "stats": result["stats"],
        "pagination": pagination(page, limit, result["total"]),
    })


@app.get("/api/orders/admin/stats")
def order_stats(admin: UserOut = Depends(require_admin), db: Database = Depends(get_db)):
    return ok(OrderQueries(db).stats())


@app.get("/api/orders/{order_number}")
def get_order(order_number: str, current: UserOut = Depends(get_current_user), db: Database = Depends(get_db)):
    return ok(OrderQueries(db).get(order_number, current.id, is_admin=current.role == "admin"))


@app.put("/api/orders/{order_number}/status")
def update_order_status(order_number: str, data: StatusUpdateRequest, admin: UserOut = Depends(require_admin), db: Database = Depends(get_db)):
    result = OrderStatusMachine(db).transition(order_number, data.status, data.note)
    return ok(result, "Order status updated successfully")


@app.put("/api/orders/{order_number}/shipping")
def update_order_shipping(order_number: str, data: ShippingUpdateRequest, admin: UserOut = Depends(require_admin), db: Database = Depends(get_db)):
    return ok(OrderStatusMachine(db).update_shipping(order_number, data), "Shipping information updated successfully")


# Account
@app.get("/api/users/profile")
def get_profile(current: UserOut = Depends(get_current_user), db: Database = Depends(get_db)):
    return ok(public_user(Accounts(db).get(current.id)))


@app.put("/api/users/profile")
def update_profile(data: ProfileUpdate, current: UserOut = Depends(get_current_user), db: Database = Depends(get_db)):
    return ok(Accounts(db).update_profile(current.id, data), "Profile updated successfully")


@app.put("/api/users/password")
def change_password(data: PasswordChange, current: UserOut = Depends(get_current_user), db: Database = Depends(get_db)):
    Accounts(db).change_password(current.id, data)
    return ok(message="Password changed successfully")


@app.get("/api/users/wishlist")
def get_wishlist(current: UserOut = Depends(get_current_user), db: Database = Depends(get_db)):
    return ok(Accounts(db).wishlist(current.id))


@app.post("/api/users/wishlist")
def add_to_wishlist(data: WishlistRequest, current: UserOut = Depends(get_current_user), db: Database = Depends(get_db)):
    count = Accounts(db).add_to_wishlist(current.id, data.product_id)
    return ok(message="Product added to wishlist", wishlist_count=count)


@app.delete("/api/users/wishlist/{product_id}")
def remove_from_wishlist(product_id: str, current: UserOut = Depends(get_current_user), db: Database = Depends(get_db)):
    count = Accounts(db).remove_from_wishlist(current.id, product_id)
    return ok(message="Product removed from wishlist", wishlist_count=count)


@app.get("/api/users/orders")
def order_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current: UserOut = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    orders, total = OrderQueries(db).for_user(current.id, page, limit)
    return ok({"orders": orders, "pagination": pagination(page, limit, total)})


@app.get("/api/users/dashboard")
def account_dashboard(current: UserOut = Depends(get_current_user), db: Database = Depends(get_db)):
    return ok(Accounts(db).dashboard(current.id))


@app.delete("/api/users/account")
def delete_account(request: Request, data: AccountDeletion, current: UserOut = Depends(get_current_user), db: Database = Depends(get_db)):
    Accounts(db).delete_account(current.id, data.password)
    request.session.clear()
    return ok(message="Account deleted successfully")


# Admin
@app.get("/api/admin/dashboard-stats")
def dashboard_stats(admin: UserOut = Depends(require_admin), db: Database = Depends(get_db)):
    return ok(AdminService(db).dashboard_stats())


@app.get("/api/admin/analytics/sales")
def sales_analytics(period: int = Query(30, ge=1, le=365), admin: UserOut = Depends(require_admin), db: Database = Depends(get_db)):
    return ok(AdminService(db).sales(period))


@app.get("/api/admin/users")
def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = None,
    role: Optional[str] = None,
    admin: UserOut = Depends(require_admin),
    db: Database = Depends(get_db),
):
    users, total = AdminService(db).list_users(page, limit, search, role)
    return ok({"users": users, "pagination": pagination(page, limit, total)})


@app.put("/api/admin/users/{user_id}/role")
def update_user_role(user_id: str, data: RoleUpdate, admin: UserOut = Depends(require_admin), db: Database = Depends(get_db)):
    return ok(AdminService(db).set_role(admin.id, user_id, data.role), "User role updated successfully")


@app.put("/api/admin/users/{user_id}/toggle-status")
def toggle_user_status(user_id: str, admin: UserOut = Depends(require_admin), db: Database = Depends(get_db)):
    result = AdminService(db).toggle_status(admin.id, user_id)
    state = "activated" if result["is_active"] else "deactivated"
    return ok(result, f"User {state} successfully")


@app.post("/api/admin/upload")
def upload_image(image: UploadFile = File(...), admin: UserOut = Depends(require_admin)):
    return ok(LocalImageStore().save(image), "File uploaded successfully")


@app.post("/api/admin/upload-multiple")
def upload_images(images: List[UploadFile] = File(...), admin: UserOut = Depends(require_admin)):
    if len(images) > MAX_UPLOAD_FILES:
        raise ValidationFailed(f"Maximum {MAX_UPLOAD_FILES} files allowed")
    store = LocalImageStore()
    return ok([store.save(image, field_name="images") for image in images], "Files uploaded successfully")


@app.delete("/api/admin/uploads/{filename}")
def delete_upload(filename: str, admin: UserOut = Depends(require_admin)):
    LocalImageStore().delete(filename)
    return ok(message="File deleted successfully")


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
