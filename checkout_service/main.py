from contextlib import asynccontextmanager
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.orm import Session

from . import checkout, orders
from .config import ENABLE_SWEEPER, PAYMENT_FAILURE_PATH, PAYMENT_SUCCESS_PATH
from .database import Base, engine, get_db
from .errors import (
    CheckoutError,
    GatewayDeclinedError,
    GatewayTransportError,
    InsufficientStockError,
    InvalidCartError,
    InvalidOrderUpdateError,
    InvalidStateTransitionError,
    OrderNotFoundError,
    SessionExpiredError,
    SessionNotFoundError,
)
from .finalizer import GatewayCallback, OrderFinalizer
from .gateway import IyzicoGateway
from .identity import Identity, get_identity
from .log import configure_logging, get_logger
from .messaging.producer import RabbitMQProducer
from .notifications import Notifier
from .schemas import (
    CheckoutSessionRequest,
    PaymentCallbackBody,
    ShippingUpdateRequest,
    StatusUpdateRequest,
)
from .workers import start_sweeper_thread

configure_logging()
logger = get_logger("api")

# Create database tables on startup if they don't exist.
Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    sweeper = start_sweeper_thread() if ENABLE_SWEEPER else None
    yield
    if sweeper is not None:
        sweeper.stop()


app = FastAPI(lifespan=lifespan)


# --- Dependencies ---

def get_gateway():
    return IyzicoGateway()


def get_notifier(background_tasks: BackgroundTasks):
    # Broker connects happen after the response is sent.
    return Notifier(RabbitMQProducer, schedule=background_tasks.add_task)


# --- Response helpers ---

def _amount(value) -> str:
    return str(checkout.money(value))


def _failed(status_code: int, error: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "failed", "error": error, **extra})


def serialize_session(session) -> dict:
    return {
        "session_id": session.id,
        "status": session.status,
        "currency": session.currency,
        "subtotal": _amount(session.subtotal),
        "shipping_cost": _amount(session.shipping_cost),
        "total": _amount(session.total),
        "expires_at": session.expires_at.isoformat(),
        "shipping_address": session.shipping_address,
        "items": [
            {
                "product_id": item.product_id,
                "product_name": item.product_name,
                "size": item.size,
                "color": item.color,
                "unit_price": _amount(item.unit_price),
                "quantity": item.quantity,
                "embroidery_file": item.embroidery_file,
                "embroidery_price": _amount(item.embroidery_price),
                "line_total": _amount(item.line_total),
            }
            for item in session.items
        ],
    }


def serialize_order(order) -> dict:
    return {
        "order_id": order.id,
        "user_id": order.user_id,
        "status": order.status,
        "payment_status": order.payment_status,
        "payment_method": order.payment_method,
        "currency": order.currency,
        "subtotal": _amount(order.subtotal),
        "shipping_cost": _amount(order.shipping_cost),
        "total_price": _amount(order.total_price),
        "shipping_address": order.shipping_address,
        "shipping_company": order.shipping_company,
        "tracking_number": order.tracking_number,
        "created_at": order.created_at.isoformat(),
        "items": [
            {
                "product_id": item.product_id,
                "product_name": item.product_name,
                "product_price": _amount(item.product_price),
                "quantity": item.quantity,
                "size": item.size,
                "color": item.color,
                "has_embroidery": item.has_embroidery,
                "embroidery_file": item.embroidery_file,
                "embroidery_price": _amount(item.embroidery_price),
                "line_total": _amount(item.line_total),
            }
            for item in order.items
        ],
    }


def _require_admin(identity: Optional[Identity]) -> Optional[JSONResponse]:
    if identity is None:
        return _failed(401, "Authentication required")
    if not identity.is_admin:
        return _failed(403, "Admin role required")
    return None


# --- Endpoints ---

@app.get("/")
@app.get("/health")
def root():
    """Health check endpoint."""
    return {"message": "Checkout service is running"}


# Prices the cart from the catalog and stores it as a pending checkout session.
@app.post("/checkout/session", status_code=201)
def create_checkout_session(
    req: CheckoutSessionRequest,
    db: Session = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity),
):
    try:
        session = checkout.create_session(
            db,
            req.items,
            req.shipping_address,
            user_id=identity.user_id if identity else None,
            currency=req.currency,
        )
    except InsufficientStockError as e:
        return _failed(409, str(e), product_id=e.product_id, available=e.available)
    except InvalidCartError as e:
        return _failed(400, str(e))

    return serialize_session(session)


@app.get("/checkout/session/{session_id}")
def get_checkout_session(
    session_id: str,
    db: Session = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity),
):
    try:
        session = checkout.get_session(db, session_id)
    except SessionNotFoundError:
        return _failed(404, "Checkout session not found")
    if session.user_id and (identity is None or identity.user_id != session.user_id):
        return _failed(404, "Checkout session not found")
    return serialize_session(session)


# Opens the hosted payment page for a pending session.
@app.post("/checkout/session/{session_id}/gateway-init")
def init_gateway(session_id: str, db: Session = Depends(get_db), gateway=Depends(get_gateway)):
    try:
        correlation = checkout.begin_payment(db, session_id, gateway)
    except SessionNotFoundError:
        return _failed(404, "Checkout session not found")
    except SessionExpiredError:
        return _failed(409, "Checkout session has expired")
    except InvalidStateTransitionError as e:
        return _failed(409, f"Checkout session is {e.current}")
    except GatewayDeclinedError as e:
        return _failed(402, e.message, error_code=e.error_code)
    except GatewayTransportError:
        return _failed(503, "Payment provider is unavailable, please try again", retryable=True)

    return {"status": "ok", "session_id": session_id, "redirect_url": correlation.redirect_url}


def _finalize_and_redirect(db, callback, gateway, notifier):
    if not callback.token:
        return RedirectResponse(PAYMENT_FAILURE_PATH, status_code=303)
    finalizer = OrderFinalizer(gateway, notifier)
    try:
        order = finalizer.finalize(db, callback)
    except CheckoutError as e:
        # Details stay in the logs; the customer only sees the failure page.
        logger.warning("payment_callback_failed", error_type=type(e).__name__, source=callback.source)
        return RedirectResponse(PAYMENT_FAILURE_PATH, status_code=303)
    return RedirectResponse(f"{PAYMENT_SUCCESS_PATH}?orderId={order.id}", status_code=303)


# The provider posts the checkout form result here (form encoded or JSON).
@app.post("/payment/callback")
async def payment_callback_post(
    request: Request,
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
    notifier=Depends(get_notifier),
):
    token, status = None, None
    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            body = PaymentCallbackBody(**(await request.json()))
            token, status = body.token, body.status
        except (ValueError, TypeError):
            token = None
    else:
        form = await request.form()
        token, status = form.get("token"), form.get("status")

    callback = GatewayCallback(token=token or "", status=status, source="notification")
    return _finalize_and_redirect(db, callback, gateway, notifier)


# The customer's browser may land here, possibly more than once.
@app.get("/payment/callback")
def payment_callback_get(
    token: Optional[str] = None,
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
    notifier=Depends(get_notifier),
):
    callback = GatewayCallback(token=token or "", status=status, source="redirect")
    return _finalize_and_redirect(db, callback, gateway, notifier)


@app.get("/orders")
def list_my_orders(db: Session = Depends(get_db), identity: Optional[Identity] = Depends(get_identity)):
    if identity is None:
        return _failed(401, "Authentication required")
    return [serialize_order(o) for o in orders.list_orders(db, identity.user_id)]


@app.get("/orders/{order_id}")
def get_order(order_id: str, db: Session = Depends(get_db), identity: Optional[Identity] = Depends(get_identity)):
    try:
        order = orders.get_order(
            db,
            order_id,
            user_id=identity.user_id if identity else None,
            is_admin=bool(identity and identity.is_admin),
        )
    except OrderNotFoundError:
        return _failed(404, "Order not found")
    return serialize_order(order)


@app.get("/admin/orders")
def list_all_orders(db: Session = Depends(get_db), identity: Optional[Identity] = Depends(get_identity)):
    denied = _require_admin(identity)
    if denied:
        return denied
    return {"status": "ok", "orders": [serialize_order(o) for o in orders.list_all_orders(db)]}


@app.post("/admin/orders/{order_id}/shipping")
def update_order_shipping(
    order_id: str,
    req: ShippingUpdateRequest,
    db: Session = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity),
    notifier=Depends(get_notifier),
):
    denied = _require_admin(identity)
    if denied:
        return denied
    try:
        order = orders.update_shipping(db, order_id, req.shipping_company, req.tracking_number, notifier)
    except OrderNotFoundError:
        return _failed(404, "Order not found")
    except InvalidOrderUpdateError as e:
        return _failed(400, str(e))
    return {"status": "ok", "order": serialize_order(order)}


@app.post("/admin/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    req: StatusUpdateRequest,
    db: Session = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity),
):
    denied = _require_admin(identity)
    if denied:
        return denied
    try:
        order = orders.update_status(db, order_id, req.status, req.payment_status)
    except OrderNotFoundError:
        return _failed(404, "Order not found")
    except InvalidOrderUpdateError as e:
        return _failed(400, str(e))
    return {"status": "ok", "order": serialize_order(order)}


@app.post("/admin/checkout/sweep")
def sweep_sessions(db: Session = Depends(get_db), identity: Optional[Identity] = Depends(get_identity)):
    denied = _require_admin(identity)
    if denied:
        return denied
    return {"status": "ok", "expired": checkout.expire_stale_sessions(db)}
