"""
main.py — FastAPI Entry Point for the Storefront Service

This module provides the REST API of the Chelky Threads storefront backend.

Responsibilities:
    • Authentication and role-scoped access to users, products, reviews and orders
    • M-Pesa payment endpoints (STK push, status query, provider callback)
    • Server-side checkout sessions that run the STK polling loop in the background
    • Read-side analytics for the admin dashboard
    • Translation of domain exceptions into HTTP responses
    • System health information
"""

from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, Depends, Header, Request
from fastapi.responses import JSONResponse

from . import config, reporting
from .auth import AuthService, TokenSigner, parse_bearer
from .cart import Cart, DeliveryOption
from .catalog import ProductRepository, ReviewRepository, search_pickup_locations, get_pickup_location
from .clients import MpesaClient, parse_callback
from .db import Database
from .enums import DeliveryMethod, STAFF_ROLES, DASHBOARD_ROLES, ADMIN_ROLES
from .exceptions import (
    StorefrontException, ValidationError, AuthenticationError, ProviderAuthenticationError, AuthorizationError,
    NotFoundError, ConflictError, InvalidOrderStateError, InvalidCheckoutStateError,
    PaymentInitiationError, PaymentQueryError, PaymentTimeoutError
)
from .logging_config import setup_logging, get_logger
from .models import (
    RegisterRequest, LoginRequest, AuthResponse, UserView, RoleUpdateRequest,
    NewOrderRequest, OrderUpdateRequest, OrderView,
    StkPushRequest, StkPushResponse, StatusQueryRequest, StatusQueryResponse,
    ProductCreateRequest, ProductUpdateRequest, ProductView,
    ReviewCreateRequest, ReviewUpdateRequest, ReviewView, PickupLocation,
    CheckoutCreateRequest, DeliveryRequest, ExpressPaymentRequest, ManualPaymentRequest, CheckoutView
)
from .orders import OrderRepository
from .workflow import CheckoutSession, CheckoutRegistry

# Initialization
setup_logging()
log = get_logger(__name__)

# Most specific class wins (looked up along the exception's MRO)
STATUS_CODES = {
    ValidationError: 400,
    AuthenticationError: 401,
    ProviderAuthenticationError: 502,
    AuthorizationError: 403,
    NotFoundError: 404,
    ConflictError: 409,
    InvalidOrderStateError: 409,
    InvalidCheckoutStateError: 409,
    PaymentInitiationError: 502,
    PaymentQueryError: 502,
    PaymentTimeoutError: 504,
    StorefrontException: 500,
}


CALLBACK_ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}


def status_code_for(exc: StorefrontException) -> int:
    for cls in type(exc).__mro__:
        if cls in STATUS_CODES:
            return STATUS_CODES[cls]
    return 500


def require_user(*roles):
    """
    Dependency factory resolving the bearer token to the current user record.
    With no roles any authenticated user passes.
    """
    async def dependency(request: Request, authorization: Optional[str] = Header(None)):
        return await request.app.state.auth.authorize(parse_bearer(authorization), roles)
    return dependency


def create_app(database: Database = None, gateway: MpesaClient = None, signer: TokenSigner = None) -> FastAPI:
    """
    Builds the FastAPI application.

    Args:
        database: Database to use. Defaults to DB_URL.
        gateway: Payment gateway adapter. Defaults to an MpesaClient built from the MPESA_* settings.
        signer: Session token signer. Defaults to AUTH_SECRET / TOKEN_TTL_SECONDS.
    """
    app = FastAPI(title="Chelky Threads Storefront")

    app.state.db = database or Database(config.DB_URL)
    app.state.gateway = gateway or MpesaClient()
    app.state.auth = AuthService(app.state.db, signer or TokenSigner(config.AUTH_SECRET, config.TOKEN_TTL_SECONDS))
    app.state.orders = OrderRepository(app.state.db)
    app.state.products = ProductRepository(app.state.db)
    app.state.reviews = ReviewRepository(app.state.db)
    app.state.checkouts = CheckoutRegistry()

    @app.exception_handler(StorefrontException)
    async def storefront_exception_handler(request: Request, exc: StorefrontException):
        status_code = status_code_for(exc)
        if status_code >= 500:
            log.error(f"{request.method} {request.url.path} failed: {exc!r}")
        return JSONResponse(status_code=status_code, content={"error": exc.message})

    @app.on_event("startup")
    async def on_startup():
        log.info("Storefront service starting...")
        await app.state.db.create_all()

    @app.on_event("shutdown")
    async def on_shutdown():
        app.state.checkouts.close_all()
        await app.state.gateway.aclose()
        await app.state.db.dispose()
        log.info("Storefront service stopped.")

    # --- Health ---

    @app.get("/health")
    async def health_check():
        """
        Simple health check endpoint for monitoring systems and container orchestrators.
        """
        connected = await app.state.db.ping()
        return {
            "status": "OK",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "database": "Connected" if connected else "Disconnected",
        }

    # --- Auth ---

    @app.post("/api/auth/register", response_model=AuthResponse, status_code=201)
    async def register(body: RegisterRequest):
        token, user = await app.state.auth.register(body.email, body.password, body.name)
        return AuthResponse(user=user, token=token)

    @app.post("/api/auth/login", response_model=AuthResponse)
    async def login(body: LoginRequest):
        token, user = await app.state.auth.login(body.email, body.password)
        return AuthResponse(user=user, token=token)

    @app.get("/api/auth/verify")
    async def verify(user=Depends(require_user())):
        return {"user": UserView.from_record(user)}

    # --- Users ---

    @app.get("/api/users", response_model=List[UserView])
    async def list_users(user=Depends(require_user(*DASHBOARD_ROLES))):
        return await app.state.auth.list_users()

    @app.get("/api/users/{email}", response_model=UserView)
    async def get_user(email: str, user=Depends(require_user(*DASHBOARD_ROLES))):
        return await app.state.auth.get_user(email)

    @app.patch("/api/users/{email}/role", response_model=UserView)
    async def update_role(email: str, body: RoleUpdateRequest, user=Depends(require_user(*ADMIN_ROLES))):
        return await app.state.auth.set_role(email, body.role)

    @app.delete("/api/users/{email}")
    async def delete_user(email: str, user=Depends(require_user(*ADMIN_ROLES))):
        await app.state.auth.delete_user(email)
        return {"message": "User deleted successfully"}

    # --- Products ---

    @app.get("/api/products", response_model=List[ProductView])
    async def list_products():
        return [ProductView.from_record(p) for p in await app.state.products.list_all()]

    @app.get("/api/products/search", response_model=List[ProductView])
    async def search_products(q: Optional[str] = None, category: Optional[str] = None,
                              minPrice: Optional[int] = None, maxPrice: Optional[int] = None,
                              sortBy: Optional[str] = None):
        products = await app.state.products.search(q, category, minPrice, maxPrice, sortBy)
        return [ProductView.from_record(p) for p in products]

    @app.get("/api/products/{product_id}", response_model=ProductView)
    async def get_product(product_id: int):
        return ProductView.from_record(await app.state.products.get(product_id))

    @app.post("/api/products", response_model=ProductView, status_code=201)
    async def create_product(body: ProductCreateRequest, user=Depends(require_user(*DASHBOARD_ROLES))):
        return ProductView.from_record(await app.state.products.create(body))

    @app.patch("/api/products/{product_id}", response_model=ProductView)
    async def update_product(product_id: int, body: ProductUpdateRequest,
                             user=Depends(require_user(*DASHBOARD_ROLES))):
        return ProductView.from_record(await app.state.products.update(product_id, body))

    @app.delete("/api/products/{product_id}")
    async def delete_product(product_id: int, user=Depends(require_user(*DASHBOARD_ROLES))):
        await app.state.products.delete(product_id)
        return {"message": "Product deleted successfully"}

    # --- Reviews ---

    @app.post("/api/reviews", response_model=ReviewView, status_code=201)
    async def create_review(body: ReviewCreateRequest, user=Depends(require_user())):
        return ReviewView.from_record(await app.state.reviews.create(body, user))

    @app.get("/api/reviews/product/{product_id}", response_model=List[ReviewView])
    async def product_reviews(product_id: int):
        return [ReviewView.from_record(r) for r in await app.state.reviews.list_for_product(product_id)]

    @app.get("/api/reviews", response_model=List[ReviewView])
    async def list_reviews(user=Depends(require_user(*DASHBOARD_ROLES))):
        return [ReviewView.from_record(r) for r in await app.state.reviews.list_all()]

    @app.patch("/api/reviews/{review_id}", response_model=ReviewView)
    async def update_review(review_id: int, body: ReviewUpdateRequest,
                            user=Depends(require_user(*DASHBOARD_ROLES))):
        return ReviewView.from_record(await app.state.reviews.update(review_id, body))

    @app.delete("/api/reviews/{review_id}")
    async def delete_review(review_id: int, user=Depends(require_user(*ADMIN_ROLES))):
        await app.state.reviews.delete(review_id)
        return {"message": "Review deleted successfully"}

    # --- Pickup locations ---

    @app.get("/api/pickup-locations", response_model=List[PickupLocation])
    async def pickup_locations():
        return search_pickup_locations()

    @app.get("/api/pickup-locations/search", response_model=List[PickupLocation])
    async def pickup_location_search(q: str = ""):
        return search_pickup_locations(q)

    # --- Orders ---

    @app.post("/api/orders", response_model=OrderView, status_code=201)
    async def create_order(body: NewOrderRequest, user=Depends(require_user())):
        return OrderView.from_record(await app.state.orders.create(body, user))

    @app.get("/api/orders/my", response_model=List[OrderView])
    async def my_orders(user=Depends(require_user())):
        return [OrderView.from_record(o) for o in await app.state.orders.list_for_customer(user.email)]

    @app.get("/api/orders/all", response_model=List[OrderView])
    async def all_orders(user=Depends(require_user(*STAFF_ROLES))):
        return [OrderView.from_record(o) for o in await app.state.orders.list_all()]

    @app.get("/api/orders/{order_id}", response_model=OrderView)
    async def get_order(order_id: str, user=Depends(require_user())):
        return OrderView.from_record(await app.state.orders.get_for_user(order_id, user))

    @app.patch("/api/orders/{order_id}", response_model=OrderView)
    async def update_order(order_id: str, body: OrderUpdateRequest, user=Depends(require_user(*STAFF_ROLES))):
        order = await app.state.orders.update(
            order_id, status=body.status, tracking_number=body.trackingNumber, expected_version=body.version
        )
        log.info(f"[Order: {order_id}] Updated by {user.email} ({user.role}).")
        return OrderView.from_record(order)

    @app.post("/api/orders/{order_id}/confirm-payment", response_model=OrderView)
    async def confirm_order_payment(order_id: str, user=Depends(require_user(*STAFF_ROLES))):
        return OrderView.from_record(await app.state.orders.confirm_payment(order_id))

    @app.delete("/api/orders/{order_id}")
    async def delete_order(order_id: str, user=Depends(require_user(*ADMIN_ROLES))):
        await app.state.orders.delete(order_id)
        return {"message": "Order deleted successfully"}

    # --- Payments ---

    @app.post("/api/payments/initiate-stk", response_model=StkPushResponse)
    async def initiate_stk(body: StkPushRequest, user=Depends(require_user())):
        """
        Pushes an STK prompt for an existing, unpaid order of the caller.
        The amount must equal the order total.
        """
        orders = app.state.orders
        order = await orders.get_for_user(body.orderId, user)
        orders.check_payable(order, body.amount)

        log.info(f"[Order: {order.id}] STK push requested by {user.email} for KES {body.amount}.")
        push = await app.state.gateway.initiate(body.phoneNumber, body.amount, order.id)
        await orders.attach_checkout_request(order.id, push.checkout_request_id)
        return StkPushResponse(checkoutRequestId=push.checkout_request_id, message=push.message)

    @app.post("/api/payments/query-status", response_model=StatusQueryResponse)
    async def query_status(body: StatusQueryRequest, user=Depends(require_user())):
        result = await app.state.gateway.query_status(body.checkoutRequestId)
        if result.success:
            await app.state.orders.confirm_payment_by_checkout_request(body.checkoutRequestId)
        return StatusQueryResponse(success=result.success, resultCode=result.result_code,
                                   resultDesc=result.result_desc)

    @app.post("/api/payments/callback")
    async def mpesa_callback(body: dict):
        """
        Receives the asynchronous STK result from Daraja.

        The callback is unauthenticated, so it is only a hint: the order is confirmed
        when it belongs to a push this service sent and a status query agrees.
        Always acknowledges well-formed callbacks so the provider does not retry.
        """
        result = parse_callback(body)
        log_prefix = f"[M-Pesa Callback: {result.checkout_request_id}]"
        log.info(f"{log_prefix} {result.result_code} {result.result_desc}")
        if not result.success:
            return CALLBACK_ACK

        order = await app.state.orders.find_by_checkout_request(result.checkout_request_id)
        if order is None:
            log.warning(f"{log_prefix} No order was pushed with this CheckoutRequestID. Ignored.")
            return CALLBACK_ACK

        try:
            status = await app.state.gateway.query_status(result.checkout_request_id)
        except (PaymentQueryError, ProviderAuthenticationError) as e:
            log.warning(f"{log_prefix} Could not verify with the provider: {e}")
            return CALLBACK_ACK

        if status.success:
            await app.state.orders.confirm_payment(order.id)
        else:
            log.warning(f"{log_prefix} Provider does not confirm payment for order {order.id}.")
        return CALLBACK_ACK

    # --- Checkout sessions ---

    @app.post("/api/checkout", response_model=CheckoutView, status_code=201)
    async def start_checkout(body: CheckoutCreateRequest, user=Depends(require_user())):
        cart = Cart()
        for line in body.items:
            product = await app.state.products.get(line.productId)
            cart.add(product.id, product.name, product.price, line.quantity)
        session = app.state.checkouts.add(
            CheckoutSession(user, cart, app.state.orders, app.state.gateway)
        )
        session.begin()
        return session.to_view()

    @app.get("/api/checkout/{session_id}", response_model=CheckoutView)
    async def get_checkout(session_id: str, user=Depends(require_user())):
        return app.state.checkouts.get(session_id, user).to_view()

    @app.post("/api/checkout/{session_id}/delivery", response_model=CheckoutView)
    async def choose_delivery(session_id: str, body: DeliveryRequest, user=Depends(require_user())):
        session = app.state.checkouts.get(session_id, user)
        if body.method == DeliveryMethod.PICKUP_MTAANI:
            location = get_pickup_location(body.locationId) if body.locationId else None
            session.select_delivery(DeliveryOption.pickup(location))
        else:
            session.select_delivery(DeliveryOption.standard())
        return session.to_view()

    @app.post("/api/checkout/{session_id}/express", response_model=CheckoutView, status_code=202)
    async def pay_express(session_id: str, body: ExpressPaymentRequest, user=Depends(require_user())):
        """
        Sends the STK push and returns 202 (Accepted) while confirmation is polled in the background.
        Poll GET /api/checkout/{session_id} for the outcome.
        """
        session = app.state.checkouts.get(session_id, user)
        await session.submit_express(body.phoneNumber)
        return session.to_view()

    @app.post("/api/checkout/{session_id}/manual", response_model=CheckoutView, status_code=202)
    async def pay_manual(session_id: str, body: ManualPaymentRequest, user=Depends(require_user())):
        session = app.state.checkouts.get(session_id, user)
        session.choose_manual()
        session.submit_manual(body.phoneNumber, body.transactionCode)
        return session.to_view()

    @app.post("/api/checkout/{session_id}/retry", response_model=CheckoutView)
    async def retry_checkout(session_id: str, user=Depends(require_user())):
        session = app.state.checkouts.get(session_id, user)
        session.retry()
        return session.to_view()

    @app.delete("/api/checkout/{session_id}")
    async def abandon_checkout(session_id: str, user=Depends(require_user())):
        app.state.checkouts.discard(session_id, user)
        return {"message": "Checkout closed"}

    # --- Analytics ---

    @app.get("/api/analytics/overview")
    async def analytics_overview(user=Depends(require_user(*DASHBOARD_ROLES))):
        return reporting.overview(
            await app.state.orders.list_all(),
            await app.state.auth.list_user_records(),
            await app.state.products.list_all(),
            await app.state.reviews.count(),
        )

    @app.get("/api/analytics/revenue")
    async def analytics_revenue(user=Depends(require_user(*DASHBOARD_ROLES))):
        return reporting.revenue_by_date(await app.state.orders.list_all())

    @app.get("/api/analytics/orders")
    async def analytics_orders(user=Depends(require_user(*DASHBOARD_ROLES))):
        return reporting.order_status_counts(await app.state.orders.list_all())

    @app.get("/api/analytics/top-products")
    async def analytics_top_products(limit: int = 10, user=Depends(require_user(*DASHBOARD_ROLES))):
        return reporting.top_products(await app.state.orders.list_all(), limit)

    @app.get("/api/analytics/customer-metrics")
    async def analytics_customers(user=Depends(require_user(*DASHBOARD_ROLES))):
        return reporting.customer_metrics(
            await app.state.orders.list_all(),
            await app.state.auth.list_user_records(),
        )

    @app.get("/api/analytics/payment-methods")
    async def analytics_payment_methods(user=Depends(require_user(*DASHBOARD_ROLES))):
        return reporting.payment_method_counts(await app.state.orders.list_all())

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
