import logging
import os
import secrets
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Body, Depends, FastAPI, File, Query, Request, Response, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError
import uvicorn
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
from auth import (
    TokenCodec,
    authenticate_user,
    bearer_admin,
    bearer_profile,
    bearer_user,
    clear_auth_cookie,
    cookie_profile,
    get_token_codec,
    hash_password,
    issue_token,
    set_auth_cookie,
)
from cart import CartReconciler, get_cart_reconciler
from checkout import CheckoutOrchestrator, UserLocks, get_checkout
from db import Database
from errors import (
    AppError,
    DuplicateEmail,
    InvalidCartPayload,
    InvalidPayload,
    NotFound,
    NotFoundOrUnauthorized,
)
from mailer import Mailer, get_mailer
from models import (
    AddToCartRequest,
    CartItem,
    CheckoutRequest,
    ContactRequest,
    DeleteOrderRequest,
    ForgotPasswordRequest,
    LoginRequest,
    OrderStatusUpdate,
    ProductCreate,
    ResetPasswordRequest,
    ReviewCreate,
    SetQuantityRequest,
    SignupRequest,
    Token,
    TokenData,
)
from stores import (
    OrderStore,
    ProductStore,
    UserStore,
    get_order_store,
    get_product_store,
    get_user_store,
)
from utils import page_count, parse_sort, public_user

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = ("image/png", "image/jpeg", "image/jpg")
ORDER_TRANSITIONS = {"pending": {"shipped", "cancelled"}, "shipped": {"delivered"}}


@asynccontextmanager
async def lifespan(app: FastAPI):
    await app.state.database.ensure_indexes()
    yield
    app.state.database.close()


app = FastAPI(title="E-Commerce Storefront API", lifespan=lifespan)
app.state.database = Database(config.MONGO_URI, config.DB_NAME)
app.state.checkout_locks = UserLocks()


# ---------------- ERRORS ----------------
@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    logger.info("%s %s -> %d %s", request.method, request.url.path, exc.status_code, type(exc).__name__)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = [f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg')}" for e in exc.errors()]
    return JSONResponse(status_code=400, content={"error": "Invalid request payload", "details": details})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal Server Error", "details": type(exc).__name__},
    )


@app.get("/")
async def read_root():
    return {"message": "E-commerce backend is running"}


# ---------------- PRODUCTS ----------------
@app.get("/api/products")
async def get_products(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    category: Optional[str] = None,
    search: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    sort: Optional[str] = None,
    products: ProductStore = Depends(get_product_store),
):
    sort_field, sort_order = parse_sort(sort)
    skip = (page - 1) * limit
    total, docs = await products.search(
        category=category,
        search=search,
        min_price=min_price,
        max_price=max_price,
        sort_field=sort_field,
        sort_order=sort_order,
        skip=skip,
        limit=limit,
    )
    total_pages = page_count(total, limit)

    return {
        "total": total,
        "page": page,
        "limit": limit,
        "pages": total_pages,
        "sort": f"{'-' if sort_order == -1 else ''}{sort_field}",
        "products": docs if page <= total_pages else [],
    }


@app.get("/api/products/{product_id}")
async def get_product_by_id(product_id: str, products: ProductStore = Depends(get_product_store)):
    product = await products.find_by_id(product_id)
    if not product:
        raise NotFound(f"Product {product_id} not found")
    return product


@app.post("/api/products", status_code=201)
async def create_product(
    product: ProductCreate,
    admin: TokenData = Depends(bearer_admin),
    products: ProductStore = Depends(get_product_store),
):
    doc = product.model_dump()
    doc.update({
        "product_id": str(uuid.uuid4()),
        "reviews": [],
        "created_at": datetime.now(timezone.utc),
    })
    await products.create(doc)
    logger.info("Product %s created by %s", doc["product_id"], admin.user_id)
    return doc


@app.post("/api/products/{product_id}/reviews")
async def add_review(
    product_id: str,
    review: ReviewCreate,
    user: TokenData = Depends(bearer_user),
    products: ProductStore = Depends(get_product_store),
):
    doc = review.model_dump()
    doc.update({"user_id": user.user_id, "date": datetime.now(timezone.utc)})
    if not await products.add_review(product_id, doc):
        raise NotFound("Product not found.")
    return await products.find_by_id(product_id)


@app.get("/api/categories")
async def get_categories(products: ProductStore = Depends(get_product_store)):
    categories = [c for c in await products.categories() if c]
    return {"count": len(categories), "categories": categories}


# ---------------- USERS ----------------
@app.post("/api/users/signup", status_code=201)
async def signup(
    body: SignupRequest,
    users: UserStore = Depends(get_user_store),
    mailer: Mailer = Depends(get_mailer),
):
    if await users.find_by_email(body.email):
        raise DuplicateEmail()

    user = {
        "user_id": str(uuid.uuid4()),
        "email": body.email,
        "password": hash_password(body.password),
        "profile_picture": "/default-avatar.png",
        "is_verified": False,
        "is_admin": False,
        "verification_token": secrets.token_hex(32),
        "reset_password_token": None,
        "reset_password_expires": None,
        "created_at": datetime.now(timezone.utc),
    }
    try:
        await users.save(user)
    except DuplicateKeyError as e:
        # lost a race with another signup for the same email
        raise DuplicateEmail() from e
    logger.info("User %s signed up", user["user_id"])

    link = f"{config.APP_BASE_URL}/api/users/verify-email?token={user['verification_token']}"
    try:
        await mailer.send_verification_email(body.email, link)
    except Exception:
        # signup stands even when the mail does not go out
        logger.exception("Verification email to %s failed", body.email)

    return {
        "message": "User created successfully! Please check your email to verify your account.",
        "user_id": user["user_id"],
    }


@app.get("/api/users/verify-email")
async def verify_email(token: str = Query(..., min_length=1), users: UserStore = Depends(get_user_store)):
    user = await users.find_by_verification_token(token)
    if not user:
        raise InvalidPayload("Invalid or expired verification token.")
    user["is_verified"] = True
    user["verification_token"] = None
    await users.save(user)
    return {"message": "Email verified successfully"}


@app.post("/api/login", response_model=Token)
async def login(
    body: LoginRequest,
    users: UserStore = Depends(get_user_store),
    codec: TokenCodec = Depends(get_token_codec),
):
    user = await authenticate_user(users, body.email, body.password)
    logger.info("Login successful for %s", user["user_id"])
    return {"access_token": issue_token(codec, user)}


@app.post("/api/users/login")
async def login_with_cookie(
    body: LoginRequest,
    response: Response,
    users: UserStore = Depends(get_user_store),
    codec: TokenCodec = Depends(get_token_codec),
):
    user = await authenticate_user(users, body.email, body.password)
    set_auth_cookie(response, issue_token(codec, user))
    logger.info("Cookie login successful for %s", user["user_id"])
    return {"message": "Login successful"}


@app.post("/api/users/logout")
async def logout(response: Response):
    clear_auth_cookie(response)
    return {"message": "Logged out successfully"}


@app.get("/api/users/session")
async def get_session(current: TokenData = Depends(cookie_profile)):
    return public_user(current.user)


@app.get("/api/users/profile")
async def get_profile(current: TokenData = Depends(cookie_profile)):
    return public_user(current.user)


def _write_upload(path: str, contents: bytes):
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "wb") as f:
        f.write(contents)


@app.post("/api/users/profile-picture")
async def upload_profile_picture(
    profile_picture: UploadFile = File(..., alias="profilePicture"),
    current: TokenData = Depends(bearer_profile),
    users: UserStore = Depends(get_user_store),
):
    if profile_picture.content_type not in ALLOWED_IMAGE_TYPES:
        raise InvalidPayload("Invalid file type. Only PNG or JPG allowed.")

    contents = await profile_picture.read(config.MAX_UPLOAD_BYTES + 1)
    if len(contents) > config.MAX_UPLOAD_BYTES:
        raise InvalidPayload(f"File too large. Maximum size is {config.MAX_UPLOAD_BYTES} bytes.")

    file_path = os.path.join(config.UPLOAD_DIR, f"{current.user_id}.png")
    await run_in_threadpool(_write_upload, file_path, contents)

    user = current.user
    user["profile_picture"] = f"/uploads/{current.user_id}.png"
    await users.save(user)
    return {"profile_picture": user["profile_picture"]}


@app.post("/api/users/forgot-password")
async def forgot_password(
    body: ForgotPasswordRequest,
    users: UserStore = Depends(get_user_store),
    mailer: Mailer = Depends(get_mailer),
):
    user = await users.find_by_email(body.email)
    if user:
        user["reset_password_token"] = secrets.token_hex(32)
        user["reset_password_expires"] = datetime.now(timezone.utc) + timedelta(
            minutes=config.PASSWORD_RESET_EXPIRE_MINUTES
        )
        await users.save(user)
        link = f"{config.APP_BASE_URL}/reset-password?token={user['reset_password_token']}"
        try:
            await mailer.send_password_reset_email(user["email"], link)
        except Exception:
            # same answer as for an unknown email
            logger.exception("Password reset email to %s failed", user["email"])
    return {"message": "If that email is registered, a reset link has been sent."}


@app.post("/api/users/reset-password")
async def reset_password(body: ResetPasswordRequest, users: UserStore = Depends(get_user_store)):
    user = await users.find_by_reset_token(body.token)
    expires = user.get("reset_password_expires") if user else None
    if expires is not None and expires.tzinfo is None:
        expires = expires.replace(tzinfo=timezone.utc)
    if not user or not expires or expires <= datetime.now(timezone.utc):
        raise InvalidPayload("Invalid or expired reset token.")

    user["password"] = hash_password(body.password)
    user["reset_password_token"] = None
    user["reset_password_expires"] = None
    await users.save(user)
    logger.info("Password reset for %s", user["user_id"])
    return {"message": "Password has been reset"}


# ---------------- CART ----------------
def serialize_cart(items):
    return [item.model_dump() for item in items]


@app.get("/api/cart")
async def get_cart(user: TokenData = Depends(bearer_user), cart: CartReconciler = Depends(get_cart_reconciler)):
    return {"items": serialize_cart(await cart.get(user.user_id))}


@app.post("/api/cart")
async def replace_cart(
    payload=Body(None),
    user: TokenData = Depends(bearer_user),
    cart: CartReconciler = Depends(get_cart_reconciler),
):
    if not isinstance(payload, dict) or "items" not in payload:
        raise InvalidCartPayload("Request body must be an object with an 'items' list")
    items = await cart.replace(user.user_id, payload["items"])
    return {"message": "Cart updated successfully", "items": serialize_cart(items)}


@app.delete("/api/cart")
async def clear_cart(user: TokenData = Depends(bearer_user), cart: CartReconciler = Depends(get_cart_reconciler)):
    await cart.clear(user.user_id)
    return {"message": "Cart cleared successfully"}


@app.post("/api/cart/items")
async def add_to_cart(
    body: AddToCartRequest,
    user: TokenData = Depends(bearer_user),
    cart: CartReconciler = Depends(get_cart_reconciler),
    products: ProductStore = Depends(get_product_store),
):
    product = await products.find_by_id(body.product_id)
    if not product:
        raise NotFound("Product not found")

    snapshot = CartItem(
        product_id=product["product_id"],
        name=product.get("name", ""),
        price=product.get("price", 0),
        image=product.get("image"),
        quantity=1,
        stock=product.get("stock"),
    )
    items, added = await cart.add_one(user.user_id, snapshot)
    result = {"message": "Item added to cart" if added else "Item not added", "items": serialize_cart(items)}
    if not added:
        result["warning"] = f"Only {product.get('stock', 0)} items left in stock"
    return result


@app.patch("/api/cart/items/{product_id}")
async def set_cart_quantity(
    product_id: str,
    body: SetQuantityRequest,
    user: TokenData = Depends(bearer_user),
    cart: CartReconciler = Depends(get_cart_reconciler),
):
    items = await cart.set_quantity(user.user_id, product_id, body.quantity)
    return {"items": serialize_cart(items)}


@app.delete("/api/cart/items/{product_id}")
async def remove_from_cart(
    product_id: str,
    user: TokenData = Depends(bearer_user),
    cart: CartReconciler = Depends(get_cart_reconciler),
):
    items = await cart.remove(user.user_id, product_id)
    return {"items": serialize_cart(items)}


@app.post("/api/cart/validate")
async def validate_cart(
    user: TokenData = Depends(bearer_user),
    cart: CartReconciler = Depends(get_cart_reconciler),
    products: ProductStore = Depends(get_product_store),
):
    current = await cart.get(user.user_id)
    catalog = await products.find_many([i.product_id for i in current])
    # products gone from the catalog count as out of stock
    stock = {i.product_id: catalog.get(i.product_id, {}).get("stock", 0) for i in current}
    items = await cart.validate_against_stock(user.user_id, stock)
    return {"items": serialize_cart(items)}


# ---------------- CHECKOUT ----------------
@app.post("/api/checkout", status_code=201)
async def checkout(
    body: CheckoutRequest,
    user: TokenData = Depends(bearer_user),
    orchestrator: CheckoutOrchestrator = Depends(get_checkout),
):
    order_id = await orchestrator.checkout(user.user_id, body.address, body.payment_method)
    return {"success": True, "order_id": order_id}


# ---------------- ORDERS ----------------
@app.get("/api/orders")
async def get_orders(user: TokenData = Depends(bearer_user), orders: OrderStore = Depends(get_order_store)):
    docs = await orders.find_by_user(user.user_id, recent_first=True)
    return {"count": len(docs), "orders": docs}


async def _delete_order(orders: OrderStore, order_id: str, user_id: str):
    if not await orders.delete_by_id_and_user(order_id, user_id):
        raise NotFoundOrUnauthorized()
    logger.info("Order %s deleted by %s", order_id, user_id)
    return {"success": True}


@app.delete("/api/orders/{order_id}")
async def delete_order(
    order_id: str,
    user: TokenData = Depends(bearer_user),
    orders: OrderStore = Depends(get_order_store),
):
    return await _delete_order(orders, order_id, user.user_id)


@app.delete("/api/orders")
async def delete_order_by_body(
    body: DeleteOrderRequest,
    user: TokenData = Depends(bearer_user),
    orders: OrderStore = Depends(get_order_store),
):
    if not body.order_id:
        raise InvalidPayload("Missing order ID.")
    return await _delete_order(orders, body.order_id, user.user_id)


@app.patch("/api/orders/{order_id}/status")
async def update_order_status(
    order_id: str,
    body: OrderStatusUpdate,
    admin: TokenData = Depends(bearer_admin),
    orders: OrderStore = Depends(get_order_store),
):
    order = await orders.find_by_id(order_id)
    if not order:
        raise NotFound("Order not found.")
    if body.status not in ORDER_TRANSITIONS.get(order["status"], set()):
        raise InvalidPayload(f"Cannot move order from {order['status']} to {body.status}")
    await orders.update_status(order_id, body.status)
    logger.info("Order %s moved to %s by %s", order_id, body.status, admin.user_id)
    return {"order_id": order_id, "status": body.status}


# ---------------- CONTACT ----------------
@app.post("/api/contact")
async def contact(body: ContactRequest, mailer: Mailer = Depends(get_mailer)):
    try:
        await mailer.send_contact_message(body.name, body.email, body.subject, body.message)
    except Exception as e:
        logger.exception("Contact message from %s failed", body.email)
        raise AppError("Failed to send message") from e
    return {"message": "Email sent successfully"}


def run():
    uvicorn.run("main:app", host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    run()
