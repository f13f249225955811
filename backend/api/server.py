"""
Storefront Payments Server
==========================
Production-ready FastAPI server with:
- Checkout: signed redirect to the payment gateway
- Gateway webhook reconciliation
- Admin order status and product edits
- Health monitoring

pip install fastapi uvicorn pydantic structlog asyncpg
"""

import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
import uvicorn
import structlog

from database import Database, close_database, init_database
from pipeline.checkout import CheckoutOrchestrator
from pipeline.config import PaymentSettings
from pipeline.errors import (
    AuthenticationError,
    CommerceError,
    NotFoundError,
    PermissionDenied,
)
from pipeline.order_state_machine import OrderStateMachine
from pipeline.postgres_repositories import PostgresStore
from pipeline.repositories import InMemoryStore, IStore
from pipeline.webhook_reconciler import WebhookReconciler
from schemas.commerce import CartLine, OrderStatus, ProductUpdate, User


# =============================================================================
# CONFIGURATION
# =============================================================================

class ServerConfig:
    """Server configuration from environment"""

    # Server
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "8000"))
    ENV = os.getenv("ENV", "development")
    DEBUG = ENV == "development"

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

    # Persistence: "postgres" or "memory"
    STORE_BACKEND = os.getenv("STORE_BACKEND", "postgres").lower()


config = ServerConfig()

VERSION = "1.0.0"

# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer() if config.ENV == "production"
        else structlog.dev.ConsoleRenderer(colors=False),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
)

logger = structlog.get_logger().bind(component="server")


# =============================================================================
# LIFESPAN MANAGEMENT
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic"""
    logger.info("server_starting", version=VERSION, env=config.ENV, store=config.STORE_BACKEND)

    owns_database = False
    if getattr(app.state, "settings", None) is None:
        app.state.settings = PaymentSettings.from_env()
    if getattr(app.state, "store", None) is None:
        if config.STORE_BACKEND == "memory":
            app.state.store = InMemoryStore()
        else:
            await init_database()
            owns_database = True
            app.state.store = PostgresStore(Database.pool())

    yield

    # Cleanup
    logger.info("server_shutting_down")
    if owns_database:
        await close_database()


# =============================================================================
# FASTAPI APP
# =============================================================================

app = FastAPI(
    title="Storefront Payments",
    description="Checkout, gateway reconciliation and order administration",
    version=VERSION,
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class CreateTransactionRequest(BaseModel):
    """Cart submitted for checkout. Prices are never accepted from the client."""
    items: List[CartLine] = Field(default_factory=list)
    redirect_url: Optional[str] = Field(default=None, max_length=2048)


class CreateTransactionResponse(BaseModel):
    ok: bool = True
    redirect_url: str
    reference: str
    order_id: str
    amount_in_cents: int
    currency: str
    total: Decimal


class OrderStatusRequest(BaseModel):
    status: OrderStatus
    note: Optional[str] = Field(default=None, max_length=500)


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    uptime_seconds: float
    store: str
    environment: str


# =============================================================================
# STARTUP TIME
# =============================================================================

START_TIME = datetime.now(timezone.utc)


# =============================================================================
# MIDDLEWARE
# =============================================================================

@app.middleware("http")
async def add_timing_header(request: Request, call_next):
    """Add response timing and request ID headers"""
    request_id = str(uuid4())[:8]
    start = time.perf_counter()

    response = await call_next(request)

    duration = (time.perf_counter() - start) * 1000
    response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
    response.headers["X-Request-ID"] = request_id

    return response


# =============================================================================
# ERROR HANDLING
# =============================================================================

@app.exception_handler(CommerceError)
async def commerce_error_handler(request: Request, error: CommerceError):
    if error.status_code >= 500:
        logger.error("request_failed", path=request.url.path, code=error.code,
                     detail=error.msg, **error.context)
    else:
        logger.info("request_rejected", path=request.url.path, code=error.code, detail=error.msg)
    return JSONResponse(status_code=error.status_code, content=error.to_response())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, error: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in e.get("loc", ())), "message": e.get("msg", "")}
        for e in error.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"ok": False, "msg": "Invalid request.", "code": "ValidationError", "errors": errors},
    )


# =============================================================================
# DEPENDENCIES
# =============================================================================

bearer = HTTPBearer(auto_error=False)


def get_store(request: Request) -> IStore:
    return request.app.state.store


def get_settings(request: Request) -> PaymentSettings:
    return request.app.state.settings


async def current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    store: IStore = Depends(get_store),
) -> User:
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Authentication required.")
    user = await store.users.authenticate(credentials.credentials)
    if user is None:
        raise AuthenticationError("Invalid or expired token.")
    return user


async def current_admin(user: User = Depends(current_user)) -> User:
    if not user.is_admin:
        raise PermissionDenied("Administrator role required.", user_id=user.id)
    return user


# =============================================================================
# HEALTH ENDPOINTS
# =============================================================================

@app.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check endpoint"""
    settings = getattr(request.app.state, "settings", None)
    store = getattr(request.app.state, "store", None)
    uptime = (datetime.now(timezone.utc) - START_TIME).total_seconds()
    return HealthResponse(
        status="healthy",
        version=VERSION,
        uptime_seconds=uptime,
        store=type(store).__name__ if store else "uninitialized",
        environment=settings.environment if settings else config.ENV,
    )


@app.get("/ready")
async def readiness_check(request: Request):
    """Kubernetes readiness check"""
    return {"ready": getattr(request.app.state, "store", None) is not None}


@app.get("/live")
async def liveness_check():
    """Kubernetes liveness check"""
    return {"live": True}


# =============================================================================
# PAYMENT ENDPOINTS
# =============================================================================

@app.post("/api/payments/create-transaction", response_model=CreateTransactionResponse)
async def create_transaction(
    body: CreateTransactionRequest,
    user: User = Depends(current_user),
    store: IStore = Depends(get_store),
    settings: PaymentSettings = Depends(get_settings),
):
    """
    Validate the cart, create a Pending order and return the signed
    gateway redirect. The client navigates to redirect_url to pay.
    """
    result = await CheckoutOrchestrator(store, settings).initiate_checkout(
        user.id, body.items, redirect_url=body.redirect_url,
    )
    return CreateTransactionResponse(
        redirect_url=result.redirect_url,
        reference=result.reference,
        order_id=result.order_id,
        amount_in_cents=result.amount_in_cents,
        currency=result.currency,
        total=result.total,
    )


@app.post("/api/payments/webhook")
async def payment_webhook(
    request: Request,
    store: IStore = Depends(get_store),
    settings: PaymentSettings = Depends(get_settings),
):
    """
    Gateway webhook. Permanent outcomes are acknowledged with 200 so the
    gateway stops redelivering; a bad signature is 401, and a missing
    events secret or transient internal error is 500.
    """
    payload = await request.body()
    result = await WebhookReconciler(store, settings).reconcile(payload)
    return JSONResponse(status_code=result.status_code, content=result.to_response())


# =============================================================================
# ORDER ENDPOINTS
# =============================================================================

@app.get("/api/orders/{order_id}")
async def get_order(
    order_id: str,
    user: User = Depends(current_user),
    store: IStore = Depends(get_store),
) -> Dict[str, Any]:
    order = await store.orders.find_by_id(order_id)
    # other users' orders are reported as missing
    if order is None or (order.user_id != user.id and not user.is_admin):
        raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
    return {"ok": True, "data": order.model_dump(mode="json")}


# =============================================================================
# ADMIN ENDPOINTS
# =============================================================================

@app.patch("/api/admin/orders/{order_id}/status")
async def change_order_status(
    order_id: str,
    body: OrderStatusRequest,
    admin: User = Depends(current_admin),
    store: IStore = Depends(get_store),
) -> Dict[str, Any]:
    order = await OrderStateMachine(store).change_status_by_admin(
        order_id, body.status, actor=f"admin:{admin.id}", note=body.note,
    )
    return {
        "ok": True,
        "msg": f"Order status updated to {order.status.value}.",
        "data": order.model_dump(mode="json"),
    }


@app.put("/api/admin/products/{product_id}")
async def update_product(
    product_id: str,
    body: ProductUpdate,
    admin: User = Depends(current_admin),
    store: IStore = Depends(get_store),
) -> Dict[str, Any]:
    product = await store.catalog.update(product_id, body)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found", product_id=product_id)
    logger.info("product_updated",
                product_id=product_id,
                actor=admin.id,
                fields=sorted(body.model_dump(exclude_none=True)))
    return {"ok": True, "data": product.model_dump(mode="json")}


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG,
        log_level="info",
    )
