import re
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

import carts
import database
import offers
import orders
from attempts import MongoAttemptCounter
from database import create_document, ensure_indexes, get_documents, serialize, to_object_id, utcnow
from errors import AccountLocked, AppError, AuthenticationError, Forbidden, NotFound, ShippingGatewayError, ValidationError
from logging_config import bind_request, configure_logging
from payments import gateway_from_env
from schemas import Product as ProductSchema, ShippingDetails, User as UserSchema
from settings import CURRENCY, FRONTEND_URL, JWT_ALG, JWT_EXPIRE_MINUTES, JWT_SECRET, LOCKOUT_MINUTES, PORT
from shipping import client_from_env

configure_logging()
log = structlog.get_logger().bind(component="api")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        ensure_indexes(database.db)
        log.info("indexes_ready")
    yield


app = FastAPI(title="Storefront API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --------------------- Envelope & errors ---------------------

def request_id_of(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


def ok(request: Request, data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True, "requestId": request_id_of(request)}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    return body


def error_response(request: Request, status_code: int, message: str, details: Optional[Dict[str, Any]] = None) -> JSONResponse:
    body: Dict[str, Any] = {"success": False, "error": message, "requestId": request_id_of(request)}
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body)


@app.middleware("http")
async def assign_request_id(request: Request, call_next):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    bind_request(request_id, method=request.method, path=request.url.path)
    log.info("request_started")
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    log.info("request_finished", status=response.status_code)
    return response


@app.exception_handler(AppError)
async def handle_app_error(request: Request, exc: AppError):
    log.warning("request_failed", error=exc.message, error_type=type(exc).__name__, status=exc.status_code)
    return error_response(request, exc.status_code, exc.message, exc.details)


def _validation_message(err: Dict[str, Any]) -> str:
    msg = err.get("msg", "Invalid value")
    if err.get("type") == "value_error":
        return msg.replace("Value error, ", "", 1)
    field = ".".join(str(part) for part in err.get("loc", ())[1:])
    return f"{field}: {msg}" if field else msg


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError):
    message = ", ".join(_validation_message(e) for e in exc.errors())
    log.warning("request_invalid", error=message)
    return error_response(request, 400, message)


@app.exception_handler(StarletteHTTPException)
async def handle_http_error(request: Request, exc: StarletteHTTPException):
    return error_response(request, exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def handle_unexpected(request: Request, exc: Exception):
    log.exception("unhandled_error", error=str(exc))
    return error_response(request, 500, "Internal Server Error")


# --------------------- Dependencies ---------------------

def get_db():
    if database.db is None:
        raise AppError("Database not configured", 500)
    return database.db


@lru_cache(maxsize=1)
def _payment_gateway():
    return gateway_from_env()


def get_payment_gateway():
    return _payment_gateway()


@lru_cache(maxsize=1)
def _shipping_client():
    return client_from_env()


def get_shipping_client():
    # orders park in shipping_failed when this is None
    try:
        return _shipping_client()
    except ShippingGatewayError as e:
        log.warning("shipping_unavailable", error=e.message)
        return None


def get_attempt_counter(db=Depends(get_db)):
    return MongoAttemptCounter(db["login_attempt"])


# --------------------- Auth ---------------------

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def create_token(data: dict, expires_minutes: int = JWT_EXPIRE_MINUTES) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALG)


class AuthUser(BaseModel):
    id: str
    email: EmailStr
    name: str
    role: str = "customer"


def get_current_user(authorization: Optional[str] = Header(None)) -> AuthUser:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("Invalid auth scheme")
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid Authorization header")
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
        user = AuthUser(**{
            "id": payload.get("id"),
            "email": payload.get("email"),
            "name": payload.get("name"),
            "role": payload.get("role", "customer"),
        })
    except (JWTError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return user


def require_admin(user: AuthUser = Depends(get_current_user)) -> AuthUser:
    if user.role != "admin":
        log.error("admin_access_denied", role=user.role)
        raise Forbidden("Admin access required")
    return user


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": str(user["_id"]), "email": user["email"], "name": user["name"], "role": user.get("role", "customer")}


# --------------------- Models ---------------------

PASSWORD_RE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]{8,}$")
TAG_RE = re.compile(r"<[^>]*>")


def check_stock_map(stock: Dict[str, int]) -> Dict[str, int]:
    if any(qty < 0 for qty in stock.values()):
        raise ValueError("Stock cannot be negative")
    # size labels become Mongo field names under stock_by_size
    if any("." in size or size.startswith("$") for size in stock):
        raise ValueError("Invalid size label")
    return stock


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RegisterRequest(ApiModel):
    name: str = Field(min_length=2, max_length=50)
    email: EmailStr
    password: str

    @field_validator("password")
    @classmethod
    def strong_password(cls, v: str) -> str:
        if not PASSWORD_RE.match(v):
            raise ValueError(
                "Password must be at least 8 characters long, include an uppercase letter, "
                "a lowercase letter, a number, and a special character"
            )
        return v


class LoginRequest(ApiModel):
    email: EmailStr
    password: str = Field(min_length=1)


class ProductCreate(ApiModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    price: float = Field(gt=0)
    mrp: Optional[float] = Field(None, ge=0)
    sizes: List[str] = Field(default_factory=list)
    stock_by_size: Dict[str, int] = Field(default_factory=dict)

    @field_validator("stock_by_size")
    @classmethod
    def valid_stock(cls, v: Dict[str, int]) -> Dict[str, int]:
        return check_stock_map(v)


class ProductUpdate(ApiModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    images: Optional[List[str]] = None
    price: Optional[float] = Field(None, gt=0)
    mrp: Optional[float] = Field(None, ge=0)
    sizes: Optional[List[str]] = None
    stock_by_size: Optional[Dict[str, int]] = None

    @field_validator("stock_by_size")
    @classmethod
    def valid_stock(cls, v: Optional[Dict[str, int]]) -> Optional[Dict[str, int]]:
        return check_stock_map(v) if v is not None else v


class CartItemIn(ApiModel):
    product_id: str = Field(min_length=1)
    quantity: int = Field(ge=1)
    price: float = Field(gt=0)
    size: Optional[str] = None
    name: Optional[str] = None
    image: Optional[str] = None


class SyncCartRequest(ApiModel):
    cart_items: List[CartItemIn]


class UpdateCartItemRequest(ApiModel):
    product_id: str = Field(min_length=1)
    quantity: int = Field(ge=0)
    size: Optional[str] = None


class RemoveCartItemRequest(ApiModel):
    product_id: str = Field(min_length=1)
    size: Optional[str] = None


class ValidateCartRequest(ApiModel):
    items: List[CartItemIn] = Field(min_length=1)
    offer_code: Optional[str] = None


class ApplyOfferRequest(ApiModel):
    code: str = Field(min_length=1)
    cart_total: float = Field(gt=0)
    items: List[CartItemIn] = Field(min_length=1)


class OfferCreate(ApiModel):
    code: str = Field(min_length=1)
    discount: float = Field(ge=0, le=100)
    expiry_date: Optional[datetime] = None
    is_first_order: bool = False


class CheckoutItem(ApiModel):
    product_id: str = Field(min_length=1)
    quantity: int = Field(ge=1)
    price: float = Field(gt=0)
    size: Optional[str] = None


class ShippingDetailsIn(ApiModel):
    name: str = Field(min_length=1)
    email: EmailStr
    phone: str
    address: str = Field(min_length=1)
    pincode: str
    city: str = Field(min_length=1)
    state: Optional[str] = None

    @field_validator("name", "address", "city", "state")
    @classmethod
    def strip_markup(cls, v: Optional[str]) -> Optional[str]:
        return TAG_RE.sub("", v).strip() if v else v

    @field_validator("phone")
    @classmethod
    def ten_digit_phone(cls, v: str) -> str:
        if not re.fullmatch(r"\d{10}", v):
            raise ValueError("Phone must be 10 digits")
        return v

    @field_validator("pincode")
    @classmethod
    def six_digit_pincode(cls, v: str) -> str:
        if not re.fullmatch(r"\d{6}", v):
            raise ValueError("Pincode must be 6 digits")
        return v


class CreateOrderRequest(ApiModel):
    amount: float = Field(gt=0)
    currency: str
    items: List[CheckoutItem] = Field(min_length=1)
    discount: float = Field(0, ge=0)
    offer_code: Optional[str] = None
    shipping_details: ShippingDetailsIn

    @field_validator("currency")
    @classmethod
    def supported_currency(cls, v: str) -> str:
        if v != CURRENCY:
            raise ValueError(f"Currency must be {CURRENCY}")
        return v


class VerifyPaymentRequest(ApiModel):
    order_id: str = Field(min_length=1)
    payment_id: str = Field(min_length=1)
    signature: str = Field(min_length=1)
    db_order_id: str = Field(min_length=1)


class ConfirmOrderRequest(ApiModel):
    db_order_id: str = Field(min_length=1)
    payment_id: str = Field(min_length=1)


def order_summary(order: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "orderId": str(order["_id"]),
        "status": order["status"],
        "totalAmount": order["total_amount"],
        "shiprocketOrderId": order.get("shiprocket_order_id"),
        "trackingUrl": order.get("tracking_url"),
    }


# --------------------- Routes ---------------------

@app.get("/api/health")
def health(request: Request):
    status = "not configured"
    if database.db is not None:
        try:
            database.db.command("ping")
            status = "connected"
        except Exception as e:
            status = f"error: {str(e)[:80]}"
    return ok(request, {"status": "healthy", "database": status})


# Auth
@app.post("/api/auth/register")
def register(req: RegisterRequest, request: Request, db=Depends(get_db)):
    email = req.email.lower()
    if db["user"].find_one({"email": email}):
        raise ValidationError("Email already registered")
    user_doc = UserSchema(
        name=req.name,
        email=email,
        password_hash=hash_password(req.password),
        role="customer",
        is_active=True,
    )
    try:
        user_id = create_document("user", user_doc, database=db)
    except DuplicateKeyError:
        raise ValidationError("Email already registered")
    user = {"id": user_id, "email": email, "name": req.name, "role": "customer"}
    log.info("user_registered", user_id=user_id)
    return ok(request, {"token": create_token(user), "user": user})


@app.post("/api/auth/login")
def login(req: LoginRequest, request: Request, db=Depends(get_db), counter=Depends(get_attempt_counter)):
    key = req.email.lower()
    if counter.is_locked(key):
        raise AccountLocked(f"Too many failed login attempts. Please try again after {LOCKOUT_MINUTES} minutes.")

    user = db["user"].find_one({"email": key})
    if not user or not user.get("is_active", True) or not verify_password(req.password, user.get("password_hash", "")):
        attempts = counter.hit(key)
        log.warning("login_failed", email=key, attempts=attempts)
        raise AuthenticationError("Invalid email or password")

    counter.reset(key)
    profile = public_user(user)
    log.info("login_succeeded", user_id=profile["id"])
    return ok(request, {"token": create_token(profile), "user": profile})


@app.get("/api/auth/me")
def me(request: Request, user: AuthUser = Depends(get_current_user)):
    return ok(request, user.model_dump())


# Products
@app.get("/api/products")
def list_products(request: Request, q: Optional[str] = None, category: Optional[str] = None, limit: int = 20, db=Depends(get_db)):
    query: Dict[str, Any] = {}
    if q:
        pattern = re.escape(q)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]
    if category:
        query["category"] = category
    docs = get_documents("product", query, limit, database=db)
    return ok(request, [serialize(d) for d in docs])


@app.get("/api/products/categories")
def list_categories(request: Request, db=Depends(get_db)):
    return ok(request, sorted(c for c in db["product"].distinct("category") if c))


@app.get("/api/products/{product_id}")
def get_product(product_id: str, request: Request, db=Depends(get_db)):
    oid = to_object_id(product_id)
    doc = db["product"].find_one({"_id": oid}) if oid else None
    if not doc:
        raise NotFound("Product not found")
    return ok(request, serialize(doc))


@app.post("/api/admin/products")
def create_product(body: ProductCreate, request: Request, user: AuthUser = Depends(require_admin), db=Depends(get_db)):
    product = ProductSchema(**body.model_dump())
    if not product.sizes and not product.stock_by_size:
        product.stock_by_size = {"default": 0}
    product_id = create_document("product", product, database=db)
    log.info("product_created", product_id=product_id)
    return ok(request, {"id": product_id})


@app.put("/api/admin/products/{product_id}")
def update_product(product_id: str, body: ProductUpdate, request: Request, user: AuthUser = Depends(require_admin), db=Depends(get_db)):
    changes = body.model_dump(exclude_unset=True)
    oid = to_object_id(product_id)
    updated = db["product"].find_one_and_update(
        {"_id": oid},
        {"$set": {**changes, "updated_at": utcnow()}, "$inc": {"version": 1}},
        return_document=ReturnDocument.AFTER,
    ) if oid else None
    if not updated:
        raise NotFound("Product not found")
    log.info("product_updated", product_id=product_id, fields=sorted(changes))
    return ok(request, serialize(updated))


@app.delete("/api/admin/products/{product_id}")
def delete_product(product_id: str, request: Request, user: AuthUser = Depends(require_admin), db=Depends(get_db)):
    oid = to_object_id(product_id)
    result = db["product"].delete_one({"_id": oid}) if oid else None
    if not result or not result.deleted_count:
        raise NotFound("Product not found")
    log.info("product_deleted", product_id=product_id)
    return ok(request, message="Product deleted")


# Cart
@app.get("/api/cart")
def get_cart(request: Request, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    return ok(request, carts.get_cart(db, user.id))


@app.post("/api/cart/sync")
def sync_cart(body: SyncCartRequest, request: Request, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    return ok(request, carts.sync_cart(db, user.id, [i.model_dump() for i in body.cart_items]))


@app.post("/api/cart/add")
def add_to_cart(body: CartItemIn, request: Request, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    carts.add_item(db, user.id, body.model_dump())
    return ok(request, message="Item added to cart")


@app.put("/api/cart/update")
def update_cart_item(body: UpdateCartItemRequest, request: Request, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    carts.update_item(db, user.id, body.product_id, body.size, body.quantity)
    return ok(request, message="Cart item updated")


@app.delete("/api/cart/remove")
def remove_cart_item(body: RemoveCartItemRequest, request: Request, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    carts.remove_item(db, user.id, body.product_id, body.size)
    return ok(request, message="Item removed from cart")


@app.delete("/api/cart/clear")
def clear_cart(request: Request, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    cleared = carts.clear_cart(db, user.id)
    return ok(request, message="Cart cleared" if cleared else "Cart is already empty")


@app.post("/api/cart/validate")
def validate_cart(body: ValidateCartRequest, request: Request, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    return ok(request, carts.validate_cart(db, user.id, [i.model_dump() for i in body.items], body.offer_code))


# Offers
@app.post("/api/offers/apply")
def apply_offer(body: ApplyOfferRequest, request: Request, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    data = offers.preview(db, user.id, body.code, body.cart_total, [i.model_dump() for i in body.items])
    return ok(request, data)


@app.post("/api/admin/offers")
def create_offer(body: OfferCreate, request: Request, user: AuthUser = Depends(require_admin), db=Depends(get_db)):
    offer_id = offers.create_offer(db, body.code, body.discount, body.expiry_date, body.is_first_order)
    log.info("offer_created", offer_id=offer_id, code=body.code.upper())
    return ok(request, {"id": offer_id, "code": offers.normalize_code(body.code)})


# Payments
@app.post("/api/payments/create")
def create_payment_order(
    body: CreateOrderRequest,
    request: Request,
    user: AuthUser = Depends(get_current_user),
    db=Depends(get_db),
    gateway=Depends(get_payment_gateway),
):
    data = orders.create_checkout(
        db,
        gateway,
        user.id,
        amount=body.amount,
        currency=body.currency,
        items=[i.model_dump() for i in body.items],
        shipping_details=ShippingDetails(**body.shipping_details.model_dump()),
        discount=body.discount,
        offer_code=body.offer_code,
    )
    return ok(request, data)


@app.post("/api/payments/verify")
def verify_payment(
    body: VerifyPaymentRequest,
    request: Request,
    user: AuthUser = Depends(get_current_user),
    db=Depends(get_db),
    gateway=Depends(get_payment_gateway),
    shipping=Depends(get_shipping_client),
):
    order = orders.verify_payment(db, gateway, shipping, user.id, body.order_id, body.payment_id, body.signature, body.db_order_id)
    return ok(request, order_summary(order), message="Payment verified and order confirmed")


# Orders
@app.post("/api/orders/confirm")
def confirm_order(
    body: ConfirmOrderRequest,
    request: Request,
    user: AuthUser = Depends(get_current_user),
    db=Depends(get_db),
    gateway=Depends(get_payment_gateway),
    shipping=Depends(get_shipping_client),
):
    order = orders.confirm_with_payment(db, gateway, shipping, user.id, body.db_order_id, body.payment_id)
    return ok(request, order_summary(order))


@app.get("/api/orders/mine")
def my_orders(request: Request, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    return ok(request, orders.list_orders(db, user.id, limit=50))


@app.get("/api/orders/track/{order_id}")
def track_order(order_id: str, request: Request, user: AuthUser = Depends(get_current_user), db=Depends(get_db), shipping=Depends(get_shipping_client)):
    return ok(request, orders.tracking(db, shipping, user.id, order_id))


@app.post("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, request: Request, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    return ok(request, orders.cancel_order(db, user.id, order_id))


@app.get("/api/orders")
def all_orders(request: Request, user: AuthUser = Depends(require_admin), db=Depends(get_db)):
    return ok(request, orders.list_orders(db))


@app.post("/api/admin/orders/release-expired")
def release_expired(request: Request, user: AuthUser = Depends(require_admin), db=Depends(get_db)):
    return ok(request, {"released": orders.release_expired_reservations(db)})


@app.post("/api/admin/orders/retry-shipping")
def retry_all_shipments(request: Request, user: AuthUser = Depends(require_admin), db=Depends(get_db), shipping=Depends(get_shipping_client)):
    return ok(request, orders.retry_failed_shipments(db, shipping))


@app.post("/api/admin/orders/{order_id}/retry-shipping")
def retry_shipment(order_id: str, request: Request, user: AuthUser = Depends(require_admin), db=Depends(get_db), shipping=Depends(get_shipping_client)):
    return ok(request, order_summary(orders.retry_shipping(db, shipping, order_id)))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
