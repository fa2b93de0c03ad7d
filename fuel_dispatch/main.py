# main.py
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import ValidationError as PydanticValidationError

from fuel_dispatch import config
from fuel_dispatch.auth import Caller, caller_from_token, get_current_user
from fuel_dispatch.config import get_logger
from fuel_dispatch.database import database, init_db
from fuel_dispatch.drivers import DriverService
from fuel_dispatch.errors import DeliveryError, PermissionDenied
from fuel_dispatch.events import EventPublisher
from fuel_dispatch.identity import IdentityClient
from fuel_dispatch.lifecycle import OrderLifecycle
from fuel_dispatch.matching import DriverMatcher
from fuel_dispatch.payments import PaymentReconciler, StripeGateway
from fuel_dispatch.ratings import RatingAggregator
from fuel_dispatch.schemas import (
    AccountStatusUpdate, AdminStatusUpdate, ApprovalUpdate, ConfirmPaymentRequest, DriverCreate,
    DriverStatusUpdate, LocationUpdate, OrderCreate, OrderStatus, PaymentIntentRequest, RatingRequest,
    RefundRequest, Role, StatusUpdate, VehicleUpdate,
)
from fuel_dispatch.store import SqlDriverStore, SqlEventLedger, SqlOrderStore
from fuel_dispatch.ws_manager import manager

logger = get_logger("fuel-dispatch")

app = FastAPI(title="Fuel Dispatch Service", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.CLIENT_URL, "*"],
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=True,
)


# ------------------------- SERVICES -------------------------
@dataclass
class Services:
    orders: object
    drivers: object
    ledger: object
    broadcaster: object
    publisher: EventPublisher
    lifecycle: OrderLifecycle
    payments: PaymentReconciler
    ratings: RatingAggregator
    matcher: DriverMatcher
    driver_service: DriverService


def build_services(orders, drivers, ledger, broadcaster=manager, gateway=None, identity=None,
                   publisher: Optional[EventPublisher] = None, clock=datetime.utcnow, **lifecycle_options) -> Services:
    publisher = publisher or EventPublisher(broadcaster)
    lifecycle = OrderLifecycle(orders, drivers, publisher, identity=identity, clock=clock, **lifecycle_options)
    return Services(
        orders=orders,
        drivers=drivers,
        ledger=ledger,
        broadcaster=broadcaster,
        publisher=publisher,
        lifecycle=lifecycle,
        payments=PaymentReconciler(orders, lifecycle, publisher, gateway or StripeGateway(), ledger, clock=clock),
        ratings=RatingAggregator(orders, drivers, clock=clock),
        matcher=DriverMatcher(orders, drivers),
        driver_service=DriverService(drivers, orders, publisher, identity=identity, clock=clock),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def ok(data=None, message: Optional[str] = None) -> dict:
    return {"success": True, "message": message, "data": data}


# ------------------------- STARTUP / SHUTDOWN -------------------------
@app.on_event("startup")
async def startup():
    if getattr(app.state, "services", None) is not None:
        logger.info("Using preconfigured services")
        return

    logger.info("Connecting database...")
    await database.connect()
    init_db()
    app.state.services = build_services(
        SqlOrderStore(database),
        SqlDriverStore(database),
        SqlEventLedger(database),
        identity=IdentityClient(),
    )
    logger.info("Startup complete.")


@app.on_event("shutdown")
async def shutdown():
    if database.is_connected:
        logger.info("Disconnecting database...")
        await database.disconnect()


# ------------------------- MIDDLEWARE / ERRORS -------------------------
@app.middleware("http")
async def add_trace_id(request: Request, call_next):
    trace_id = request.headers.get("x-trace-id") or str(uuid.uuid4())
    request.state.trace_id = trace_id
    response = await call_next(request)
    response.headers["x-trace-id"] = trace_id
    logger.info(f"[TRACE {trace_id}] {request.method} {request.url.path} → {response.status_code}")
    return response


@app.exception_handler(DeliveryError)
async def delivery_error_handler(request: Request, exc: DeliveryError):
    trace_id = getattr(request.state, "trace_id", None)
    logger.info(f"[TRACE {trace_id}] {type(exc).__name__}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"success": False, **exc.to_dict()})


# ------------------------- ORDERS -------------------------
@app.post("/orders", status_code=201)
async def create_order(body: OrderCreate, user: Caller = Depends(get_current_user),
                       services: Services = Depends(get_services)):
    order = await services.lifecycle.place_order(user, body)
    return ok(order, "Order created successfully")


@app.get("/orders/my-orders")
async def my_orders(status: Optional[OrderStatus] = None, page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                    user: Caller = Depends(get_current_user), services: Services = Depends(get_services)):
    return ok(await services.lifecycle.list_customer_orders(user, status, page, limit))


@app.get("/orders/driver-orders")
async def driver_orders(status: Optional[OrderStatus] = None, user: Caller = Depends(get_current_user),
                        services: Services = Depends(get_services)):
    return ok(await services.lifecycle.list_driver_orders(user, status))


@app.get("/orders/available")
async def available_orders(user: Caller = Depends(get_current_user), services: Services = Depends(get_services)):
    return ok(await services.matcher.available_orders(user))


@app.put("/orders/{order_id}/accept")
async def accept_order(order_id: str, user: Caller = Depends(get_current_user),
                       services: Services = Depends(get_services)):
    order = await services.lifecycle.accept(order_id, user)
    return ok(order, "Order accepted successfully")


@app.put("/orders/{order_id}/status")
async def update_order_status(order_id: str, body: StatusUpdate, user: Caller = Depends(get_current_user),
                              services: Services = Depends(get_services)):
    order = await services.lifecycle.update_status(order_id, user, body)
    return ok(order, "Order status updated successfully")


@app.post("/orders/{order_id}/rate")
async def rate_order(order_id: str, body: RatingRequest, user: Caller = Depends(get_current_user),
                     services: Services = Depends(get_services)):
    order = await services.ratings.rate(order_id, user, body.rating, body.comment)
    return ok(order, "Rating submitted successfully")


@app.get("/orders/{order_id}")
async def get_order(order_id: str, user: Caller = Depends(get_current_user),
                    services: Services = Depends(get_services)):
    return ok(await services.lifecycle.get_order(order_id, user))


# ------------------------- DRIVERS -------------------------
@app.post("/internal/drivers", status_code=201)
async def register_driver(body: DriverCreate, services: Services = Depends(get_services)):
    return ok(await services.driver_service.register_profile(body), "Driver profile ready")


@app.put("/drivers/status")
async def set_driver_status(body: DriverStatusUpdate, user: Caller = Depends(get_current_user),
                            services: Services = Depends(get_services)):
    profile = await services.driver_service.set_online(user, body.is_online)
    return ok(profile, f"You are now {'online' if profile.is_online else 'offline'}")


@app.put("/drivers/location")
async def set_driver_location(body: LocationUpdate, user: Caller = Depends(get_current_user),
                              services: Services = Depends(get_services)):
    profile = await services.driver_service.update_location(user, body)
    return ok(profile, "Location updated")


@app.get("/drivers/nearby-orders")
async def nearby_orders(radius: Optional[float] = Query(None, gt=0), user: Caller = Depends(get_current_user),
                        services: Services = Depends(get_services)):
    return ok(await services.matcher.nearby_orders(user, radius))


@app.get("/drivers/stats")
async def driver_stats(period: str = "all", user: Caller = Depends(get_current_user),
                       services: Services = Depends(get_services)):
    return ok(await services.driver_service.stats(user, period))


@app.put("/drivers/vehicle")
async def update_vehicle(body: VehicleUpdate, user: Caller = Depends(get_current_user),
                         services: Services = Depends(get_services)):
    return ok(await services.driver_service.update_vehicle(user, body), "Vehicle information updated")


# ------------------------- PAYMENTS -------------------------
@app.post("/payments/create-intent")
async def create_payment_intent(body: PaymentIntentRequest, user: Caller = Depends(get_current_user),
                                services: Services = Depends(get_services)):
    return ok(await services.payments.create_intent(user, body.order_id))


@app.post("/payments/confirm-payment")
async def confirm_payment(body: ConfirmPaymentRequest, user: Caller = Depends(get_current_user),
                          services: Services = Depends(get_services)):
    order = await services.payments.confirm_payment(user, body.order_id, body.payment_intent_id)
    return ok(order, "Payment confirmed successfully")


@app.post("/payments/webhook")
async def payment_webhook(request: Request, services: Services = Depends(get_services)):
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    return await services.payments.handle_webhook(payload, signature, request.state.trace_id)


@app.get("/payments/status/{order_id}")
async def payment_status(order_id: str, user: Caller = Depends(get_current_user),
                         services: Services = Depends(get_services)):
    return ok(await services.payments.payment_status(user, order_id))


@app.post("/payments/refund")
async def refund_payment(body: RefundRequest, user: Caller = Depends(get_current_user),
                         services: Services = Depends(get_services)):
    return ok(await services.payments.refund(user, body.order_id, body.reason), "Refund processed successfully")


# ------------------------- ADMIN -------------------------
def admin_required(user: Caller = Depends(get_current_user)) -> Caller:
    if user.role is not Role.ADMIN:
        raise PermissionDenied("Access denied. Admin privileges required.")
    return user


@app.get("/admin/orders")
async def admin_orders(status: Optional[OrderStatus] = None, page: int = Query(1, ge=1),
                       limit: int = Query(20, ge=1, le=100), user: Caller = Depends(admin_required),
                       services: Services = Depends(get_services)):
    return ok(await services.lifecycle.list_all_orders(user, status, page, limit))


@app.put("/admin/orders/{order_id}/status")
async def admin_order_status(order_id: str, body: AdminStatusUpdate, user: Caller = Depends(admin_required),
                             services: Services = Depends(get_services)):
    order = await services.lifecycle.admin_override(order_id, user, body.status, body.reason)
    return ok(order, "Order status updated by admin")


@app.put("/admin/drivers/{driver_id}/approval")
async def admin_driver_approval(driver_id: str, body: ApprovalUpdate, user: Caller = Depends(admin_required),
                                services: Services = Depends(get_services)):
    profile = await services.driver_service.set_approval(user, driver_id, body)
    return ok(profile, f"Driver {'approved' if profile.is_approved else 'rejected'} successfully")


@app.put("/admin/users/{user_id}/status")
async def admin_user_status(user_id: str, body: AccountStatusUpdate, user: Caller = Depends(admin_required),
                            services: Services = Depends(get_services)):
    result = await services.driver_service.set_account_status(user, user_id, body)
    return ok(result, f"User {'activated' if body.is_active else 'deactivated'} successfully")


# ------------------------- WEBSOCKET -------------------------
@app.websocket("/ws")
async def dispatch_ws(websocket: WebSocket):
    """
    Clients send `{"type": "join", "token": <jwt>}` once to subscribe to their
    channel. Drivers may then push `{"type": "updateLocation", ...}`.
    """
    services: Services = websocket.app.state.services
    hub = services.broadcaster
    await hub.connect(websocket)
    caller: Optional[Caller] = None
    try:
        while True:
            message = await websocket.receive_json()
            kind = message.get("type") if isinstance(message, dict) else None

            if kind == "join":
                if caller is not None:
                    await websocket.send_json({"type": "error", "message": "Already joined"})
                    continue
                caller = caller_from_token(message.get("token") or "")
                if caller is None:
                    await websocket.send_json({"type": "error", "message": "Token is not valid"})
                    continue
                channel = await hub.subscribe(websocket, caller.role, caller.id)
                await websocket.send_json({"type": "joined", "channel": channel})

            elif kind == "updateLocation":
                if caller is None:
                    await websocket.send_json({"type": "error", "message": "Join before sending updates"})
                    continue
                try:
                    location = LocationUpdate(latitude=message.get("latitude"), longitude=message.get("longitude"))
                    await services.driver_service.update_location(caller, location)
                except (DeliveryError, PydanticValidationError) as e:
                    await websocket.send_json({"type": "error", "message": str(e)})

            elif kind == "ping":
                await websocket.send_json({"type": "pong"})

            else:
                await websocket.send_json({"type": "error", "message": f"Unknown message type: {kind}"})
    except WebSocketDisconnect:
        pass
    finally:
        await hub.disconnect(websocket)


# ------------------------- HEALTH / METRICS -------------------------
@app.get("/health")
async def health():
    return {"status": "fuel-dispatch healthy"}


@app.get("/metrics")
async def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
