from fastapi import FastAPI, Depends, HTTPException, status, Request
from fastapi.middleware.cors import CORSMiddleware
from datetime import datetime
from typing import List

from shared.utils import (
    get_db_client, settings, SuccessResponse, HealthResponse,
    require_auth, require_admin, setup_exception_handlers
)
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware, limiter

from foodeli_api.gateway import PaystackGateway
from foodeli_api.schemas import (
    OrderCreate, OrderComplete, OrderResponse, PaymentInitialize, PaymentInitResponse,
    PaymentVerifyResponse, DeliveryStatusUpdate, to_order_response
)
from foodeli_api.service import OrderService
from foodeli_api.store import OrderStore

# Setup Logging
logger = setup_logging("foodeli-api")

app = FastAPI(title="Foodeli API")

# Security Setup
setup_rate_limiting(app)
setup_exception_handlers(app)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name="foodeli-api")

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def startup_db_client():
    app.mongodb_client = get_db_client()
    app.mongodb = app.mongodb_client[settings.MONGO_DB_NAME]
    store = OrderStore(app.mongodb)
    await store.create_indexes()
    gateway = PaystackGateway(
        secret_key=settings.PAYSTACK_SECRET_KEY,
        base_url=settings.PAYSTACK_BASE_URL,
        timeout=settings.GATEWAY_TIMEOUT_SECONDS,
    )
    app.order_service = OrderService(store, gateway, settings)

@app.on_event("shutdown")
async def shutdown_db_client():
    app.mongodb_client.close()

# --- Dependencies ---
def get_order_service() -> OrderService:
    return app.order_service

async def get_current_user(request: Request, payload: dict = Depends(require_auth)) -> dict:
    request.state.user_id = payload["sub"]
    return payload

async def get_admin_user(request: Request, payload: dict = Depends(require_admin)) -> dict:
    request.state.user_id = payload["sub"]
    return payload

# --- Endpoints ---

# Orders
@app.post("/user/order", response_model=SuccessResponse[OrderResponse])
async def place_order(
    order_in: OrderCreate,
    user: dict = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    order, created = await service.create_order(
        user_id=user["sub"],
        products=[item.dict() for item in order_in.products],
        address=order_in.address,
        total_amount=order_in.total_amount,
    )
    message = "Order created successfully. Proceed to payment." if created else "Using existing pending order"
    return SuccessResponse(data=to_order_response(order), message=message)

@app.get("/user/order", response_model=SuccessResponse[List[OrderResponse]])
async def get_orders(user: dict = Depends(get_current_user), service: OrderService = Depends(get_order_service)):
    orders = await service.list_orders(user["sub"])
    return SuccessResponse(data=[to_order_response(o) for o in orders], message="Orders retrieved successfully")

@app.post("/user/order/complete", response_model=SuccessResponse[OrderResponse])
async def complete_order(
    body: OrderComplete,
    user: dict = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    order = await service.complete_order(body.order_id, user["sub"])
    return SuccessResponse(data=to_order_response(order), message="Order completed successfully")

# Payments
@app.post("/user/payment/initialize", response_model=SuccessResponse[PaymentInitResponse])
@limiter.limit(settings.PAYMENT_RATE_LIMIT)
async def initialize_payment(
    body: PaymentInitialize,
    request: Request,
    user: dict = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    result, created = await service.initialize_payment(
        order_id=body.order_id,
        user_id=user["sub"],
        email=body.email,
        amount=body.amount,
        callback_url=body.callback_url,
    )
    message = "Payment initialized" if created else "Payment already initialized"
    return SuccessResponse(data=PaymentInitResponse(**result), message=message)

@app.get("/user/payment/verify/{reference}", response_model=SuccessResponse[PaymentVerifyResponse])
@limiter.limit(settings.PAYMENT_RATE_LIMIT)
async def verify_payment(
    reference: str,
    request: Request,
    user: dict = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    order = await service.verify_payment(reference.strip(), user["sub"])
    payment = order["payment"]
    data = PaymentVerifyResponse(
        reference=payment["reference"],
        status=payment["status"],
        amount=payment["amount"],
        channel=payment.get("method"),
        paid_at=payment.get("paid_at"),
        order=to_order_response(order),
    )
    return SuccessResponse(data=data, message="Payment verified successfully")

@app.post("/user/payment/webhook")
async def payment_webhook(request: Request, service: OrderService = Depends(get_order_service)):
    raw_body = await request.body()
    signature = request.headers.get(settings.WEBHOOK_SIGNATURE_HEADER)
    outcome = await service.handle_webhook(raw_body, signature)
    return SuccessResponse(data={"outcome": outcome}, message="OK")

# Admin
@app.get("/user/admin/orders", response_model=SuccessResponse[List[OrderResponse]])
async def get_all_orders(admin: dict = Depends(get_admin_user), service: OrderService = Depends(get_order_service)):
    orders = await service.list_orders()
    return SuccessResponse(data=[to_order_response(o) for o in orders], message="All orders retrieved successfully")

@app.patch("/user/admin/orders/{order_id}/delivery-status", response_model=SuccessResponse[OrderResponse])
async def update_delivery_status(
    order_id: str,
    body: DeliveryStatusUpdate,
    admin: dict = Depends(get_admin_user),
    service: OrderService = Depends(get_order_service),
):
    order = await service.update_delivery_status(order_id, body.delivery_status)
    return SuccessResponse(
        data=to_order_response(order),
        message=f"Delivery status updated to {order['delivery_status']}.",
    )

@app.get("/health", response_model=HealthResponse)
async def health_check():
    try:
        await app.mongodb_client.admin.command('ping')
        db_status = "connected"
    except Exception:
        db_status = "disconnected"

    if db_status != "connected":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service Unhealthy"
        )

    return HealthResponse(
        service="foodeli-api",
        status="healthy",
        timestamp=datetime.utcnow(),
        version="1.0.0",
        database=db_status,
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("foodeli_api.main:app", host="0.0.0.0", port=8080)
