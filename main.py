import os
from contextlib import asynccontextmanager
from typing import List, Optional

import structlog
from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database

import config
import database
from cart import CartStore
from catalog import CatalogStore
from checkout import CheckoutOrchestrator
from database import ensure_indexes, get_db, new_id
from errors import AuthorizationError, CraftNestError, StorageError
from identity import (
    IdentityProvider,
    Principal,
    can_approve_products,
    can_change_order_status,
    can_list_products,
    can_purchase,
    can_write_review,
)
from logging_config import add_context, clear_context, configure_logging
from notifications import NotificationSink
from orders import OrderLedger
from reviews import ReviewLedger
from schemas import (
    ApprovalUpdate,
    Cart,
    CartItemIn,
    CartQuantityIn,
    Category,
    CheckoutRequest,
    CheckoutResult,
    Notification,
    Order,
    OrderCreate,
    Product,
    ProductCreate,
    Review,
    ReviewCreate,
    Role,
    Severity,
    StatusUpdate,
    User,
    UserCreate,
)

configure_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        try:
            ensure_indexes(database.db)
        except StorageError as e:
            logger.error("index_setup_failed", error=e.message)
    yield


app = FastAPI(title="CraftNest API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def bind_request_context(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or new_id()
    clear_context()
    add_context(request_id=request_id, method=request.method, path=request.url.path)
    response = await call_next(request)
    response.headers["X-Request-Id"] = request_id
    return response


@app.exception_handler(CraftNestError)
async def craftnest_error_handler(request: Request, exc: CraftNestError):
    if exc.status_code >= 500:
        logger.error("request_failed", kind=exc.kind, error=exc.message)
    else:
        logger.info("request_rejected", kind=exc.kind, error=exc.message, field=exc.field)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {
            "field": ".".join(str(p) for p in e.get("loc", ()) if p != "body"),
            "message": e.get("msg", "Invalid value"),
        }
        for e in exc.errors()
    ]
    logger.info("request_rejected", kind="validation_error", errors=errors)
    return JSONResponse(
        status_code=400,
        content={
            "detail": "Missing or invalid fields",
            "kind": "validation_error",
            "field": errors[0]["field"] if errors else None,
            "errors": errors,
        },
    )


# Dependencies
def get_catalog(db: Database = Depends(get_db)) -> CatalogStore:
    return CatalogStore(db)


def get_identity(db: Database = Depends(get_db)) -> IdentityProvider:
    return IdentityProvider(db)


def get_notifications(db: Database = Depends(get_db)) -> NotificationSink:
    return NotificationSink(db)


def get_orders(db: Database = Depends(get_db), catalog: CatalogStore = Depends(get_catalog)) -> OrderLedger:
    return OrderLedger(db, catalog)


def get_reviews(
    db: Database = Depends(get_db),
    catalog: CatalogStore = Depends(get_catalog),
    identity: IdentityProvider = Depends(get_identity),
) -> ReviewLedger:
    return ReviewLedger(db, catalog, identity)


def get_carts(db: Database = Depends(get_db), catalog: CatalogStore = Depends(get_catalog)) -> CartStore:
    return CartStore(db, catalog)


def get_checkout(
    orders: OrderLedger = Depends(get_orders),
    catalog: CatalogStore = Depends(get_catalog),
    carts: CartStore = Depends(get_carts),
    notifications: NotificationSink = Depends(get_notifications),
) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(orders, catalog, carts, notifications)


def current_principal(
    x_user_id: Optional[str] = Header(None),
    identity: IdentityProvider = Depends(get_identity),
) -> Principal:
    principal = identity.authenticate(x_user_id)
    add_context(user_id=principal.id, role=principal.role.value)
    return principal


@app.get("/")
def read_root():
    return {"message": "CraftNest API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = database.db.name
            response["connection_status"] = "Connected"
            try:
                collections = database.db.list_collection_names()
                response["collections"] = collections[:20]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
        else:
            response["database"] = "⚠️ Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# Users
@app.post("/api/users", response_model=User, status_code=201)
def create_user(user: UserCreate, identity: IdentityProvider = Depends(get_identity)):
    return identity.create(user)


@app.get("/api/users", response_model=List[User])
def list_users(role: Optional[Role] = None, limit: Optional[int] = 50, identity: IdentityProvider = Depends(get_identity)):
    return identity.list(role, limit)


# Products
@app.post("/api/products", response_model=Product, status_code=201)
def create_product(
    product: ProductCreate,
    principal: Principal = Depends(current_principal),
    catalog: CatalogStore = Depends(get_catalog),
):
    if not can_list_products(principal):
        raise AuthorizationError("Only vendors can list products")
    return catalog.create(product, vendor_id=principal.id, vendor_name=principal.name)


@app.get("/api/products", response_model=List[Product])
def list_products(
    approved: Optional[bool] = None,
    category: Optional[Category] = None,
    vendor_id: Optional[str] = None,
    featured: Optional[bool] = None,
    q: Optional[str] = None,
    limit: Optional[int] = 50,
    catalog: CatalogStore = Depends(get_catalog),
):
    return catalog.list(approved=approved, category=category, vendor_id=vendor_id, featured=featured, q=q, limit=limit)


@app.get("/api/products/vendor/{vendor_id}", response_model=List[Product])
def list_vendor_products(vendor_id: str, catalog: CatalogStore = Depends(get_catalog)):
    return catalog.get_by_vendor(vendor_id)


@app.get("/api/products/{product_id}", response_model=Product)
def get_product(product_id: str, catalog: CatalogStore = Depends(get_catalog)):
    return catalog.get_by_id(product_id)


@app.patch("/api/products/{product_id}/approve", response_model=Product)
def approve_product(
    product_id: str,
    payload: ApprovalUpdate,
    principal: Principal = Depends(current_principal),
    catalog: CatalogStore = Depends(get_catalog),
):
    if not can_approve_products(principal):
        raise AuthorizationError("Only admins can approve products")
    return catalog.set_approval(product_id, payload.approved)


# Orders
@app.post("/api/orders", response_model=Order, status_code=201)
def create_order(payload: OrderCreate, orders: OrderLedger = Depends(get_orders)):
    return orders.create(Order(**payload.model_dump()))


@app.get("/api/orders", response_model=List[Order])
def list_orders(orders: OrderLedger = Depends(get_orders)):
    return orders.get_all()


@app.get("/api/orders/customer/{customer_id}", response_model=List[Order])
def list_customer_orders(customer_id: str, orders: OrderLedger = Depends(get_orders)):
    return orders.get_by_customer(customer_id)


@app.get("/api/orders/vendor/{vendor_id}", response_model=List[Order])
def list_vendor_orders(vendor_id: str, orders: OrderLedger = Depends(get_orders)):
    return orders.get_by_vendor(vendor_id)


@app.get("/api/orders/{order_id}", response_model=Order)
def get_order(order_id: str, orders: OrderLedger = Depends(get_orders)):
    return orders.get(order_id)


@app.patch("/api/orders/{order_id}/status", response_model=Order)
def update_order_status(
    order_id: str,
    payload: StatusUpdate,
    principal: Principal = Depends(current_principal),
    orders: OrderLedger = Depends(get_orders),
    notifications: NotificationSink = Depends(get_notifications),
):
    order = orders.get(order_id)
    if not can_change_order_status(principal, order, payload.status):
        raise AuthorizationError(f"You cannot mark this order as {payload.status.value}")

    updated = orders.update_status(order_id, payload.status, payload.expected_status)
    if updated.updated_at != order.updated_at:
        try:
            notifications.notify(
                "Order Updated",
                f"Your order #{order_id[-5:]} is now {updated.status.value}.",
                Role.CUSTOMER,
                updated.customer_id,
                severity=Severity.INFO,
            )
        except CraftNestError as e:
            logger.warning("notification_failed", order_id=order_id, error=e.message)
    return updated


# Reviews
@app.post("/api/reviews", response_model=Review, status_code=201)
def create_review(
    review: ReviewCreate,
    principal: Principal = Depends(current_principal),
    reviews: ReviewLedger = Depends(get_reviews),
):
    if not can_write_review(principal):
        raise AuthorizationError("Only customers can review products")
    if review.customer_id != principal.id:
        raise AuthorizationError("Reviews can only be written as yourself", field="customer_id")
    return reviews.create(review)


@app.get("/api/reviews/product/{product_id}", response_model=List[Review])
def list_product_reviews(product_id: str, reviews: ReviewLedger = Depends(get_reviews)):
    return reviews.get_by_product(product_id)


@app.get("/api/reviews/customer/{customer_id}", response_model=List[Review])
def list_customer_reviews(customer_id: str, reviews: ReviewLedger = Depends(get_reviews)):
    return reviews.get_by_customer(customer_id)


# Cart
def _shopper(principal: Principal = Depends(current_principal)) -> Principal:
    if not can_purchase(principal):
        raise AuthorizationError(f"A {principal.role.value} account has no shopping cart")
    return principal


@app.get("/api/cart", response_model=Cart)
def get_cart(principal: Principal = Depends(_shopper), carts: CartStore = Depends(get_carts)):
    return carts.get(principal.id)


@app.delete("/api/cart", response_model=Cart)
def clear_cart(principal: Principal = Depends(_shopper), carts: CartStore = Depends(get_carts)):
    return carts.clear(principal.id)


@app.post("/api/cart/items", response_model=Cart)
def add_to_cart(item: CartItemIn, principal: Principal = Depends(_shopper), carts: CartStore = Depends(get_carts)):
    return carts.add_item(principal.id, item.product_id, item.quantity)


@app.patch("/api/cart/items/{product_id}", response_model=Cart)
def update_cart_item(
    product_id: str,
    item: CartQuantityIn,
    principal: Principal = Depends(_shopper),
    carts: CartStore = Depends(get_carts),
):
    return carts.update_quantity(principal.id, product_id, item.quantity)


@app.delete("/api/cart/items/{product_id}", response_model=Cart)
def remove_from_cart(product_id: str, principal: Principal = Depends(_shopper), carts: CartStore = Depends(get_carts)):
    return carts.remove_item(principal.id, product_id)


@app.post("/api/checkout", response_model=CheckoutResult, status_code=201)
def checkout(
    payload: CheckoutRequest,
    principal: Principal = Depends(_shopper),
    carts: CartStore = Depends(get_carts),
    orchestrator: CheckoutOrchestrator = Depends(get_checkout),
):
    cart = carts.get(principal.id)
    result = orchestrator.place_order(cart, principal, payload.shipping_address, payload.payment_method)
    if not result.complete:
        return JSONResponse(status_code=207, content=result.model_dump(mode="json"))
    return result


# Notifications
@app.get("/api/notifications", response_model=List[Notification])
def list_notifications(
    principal: Principal = Depends(current_principal),
    notifications: NotificationSink = Depends(get_notifications),
):
    return notifications.list_for(principal.role, principal.id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
