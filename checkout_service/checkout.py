"""Checkout session manager.

A checkout session is the durable, priced snapshot of a cart that survives the
redirect to the hosted payment page. Sessions are created ``pending``, move to
``awaiting_gateway`` once the gateway has issued a token, and are later
verified, finalized, failed or expired. Every status change goes through
:func:`transition`, a conditional UPDATE that only matches rows still in the
expected state, so concurrent workers never overwrite each other.
"""

from collections import defaultdict
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import catalog
from .config import CHECKOUT_SESSION_TTL_MINUTES, GATEWAY_INIT_RETRIES, SUPPORTED_CURRENCIES
from .errors import (
    GatewayDeclinedError,
    GatewayTransportError,
    InsufficientStockError,
    InvalidCartError,
    InvalidStateTransitionError,
    SessionExpiredError,
    SessionNotFoundError,
)
from .log import get_logger
from .models import CheckoutLineItem, CheckoutSession, GatewayCorrelation, SessionStatus, utcnow
from .schemas import CartLine, ShippingAddress

logger = get_logger("checkout")

CENT = Decimal("0.01")


def money(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def transition(db: Session, session_id: str, from_statuses: Iterable[str], to_status: str,
               unexpired_at: Optional[datetime] = None, **values) -> bool:
    """Compare-and-swap on status. Returns True only for the caller whose update matched.

    With ``unexpired_at`` the row must also still be before its ``expires_at``
    at that instant. Does not commit; the caller owns the transaction.
    """
    stmt = (
        update(CheckoutSession)
        .where(CheckoutSession.id == session_id)
        .where(CheckoutSession.status.in_(list(from_statuses)))
    )
    if unexpired_at is not None:
        stmt = stmt.where(CheckoutSession.expires_at > unexpired_at)
    result = db.execute(
        stmt
        .values(status=to_status, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def get_session(db: Session, session_id: str) -> CheckoutSession:
    session = db.get(CheckoutSession, session_id)
    if session is None:
        raise SessionNotFoundError(session_id)
    return session


def is_past_expiry(session: CheckoutSession, now: Optional[datetime] = None) -> bool:
    return (now or utcnow()) >= session.expires_at


def create_session(
    db: Session,
    cart: List[CartLine],
    shipping_address: ShippingAddress,
    user_id: Optional[str] = None,
    currency: str = "TRY",
    now: Optional[datetime] = None,
) -> CheckoutSession:
    """Price the cart from the catalog and persist it as a pending session."""
    if not cart:
        raise InvalidCartError("Cart is empty")

    currency = (currency or "").upper()
    if currency not in SUPPORTED_CURRENCIES:
        raise InvalidCartError(f"Unsupported currency: {currency}")

    extra = catalog.embroidery_price(db, currency)
    requested = defaultdict(int)
    products = {}
    items = []

    for position, line in enumerate(cart):
        if line.quantity <= 0:
            raise InvalidCartError(f"Quantity must be positive for product {line.product_id}")

        product = products.get(line.product_id) or catalog.get_product(db, line.product_id)
        if product is None:
            raise InvalidCartError(f"Product {line.product_id} does not exist")
        products[product.id] = product

        size = product.resolve_size(line.size, currency)
        unit_price = product.price_for(size, currency)
        if unit_price is None:
            raise InvalidCartError(
                f"Product '{product.name}' has no {currency} price for size {line.size or '(none)'}"
            )
        if line.color and product.colors and line.color not in product.colors:
            raise InvalidCartError(f"Color '{line.color}' is not available for '{product.name}'")

        embroidery = extra if (line.has_embroidery or line.embroidery_file) else Decimal("0")
        unit_price = money(unit_price)
        embroidery = money(embroidery)
        requested[product.id] += line.quantity

        items.append(
            CheckoutLineItem(
                position=position,
                product_id=product.id,
                product_name=product.name,
                size=size,
                color=line.color,
                unit_price=unit_price,
                quantity=line.quantity,
                embroidery_file=line.embroidery_file,
                embroidery_price=embroidery,
                line_total=money((unit_price + embroidery) * line.quantity),
            )
        )

    for product_id, quantity in requested.items():
        product = products[product_id]
        if not product.unlimited_stock and quantity > product.stock:
            raise InsufficientStockError(product.id, product.name, quantity, product.stock)

    subtotal = money(sum((item.line_total for item in items), Decimal("0")))
    shipping = money(catalog.shipping_cost(db, shipping_address.country, currency))
    created = now or utcnow()

    session = CheckoutSession(
        user_id=user_id,
        currency=currency,
        subtotal=subtotal,
        shipping_cost=shipping,
        total=subtotal + shipping,
        shipping_address=shipping_address.model_dump(),
        status=SessionStatus.PENDING,
        created_at=created,
        updated_at=created,
        expires_at=created + timedelta(minutes=CHECKOUT_SESSION_TTL_MINUTES),
        items=items,
    )
    db.add(session)
    db.commit()
    db.refresh(session)

    logger.info(
        "checkout_session_created",
        session_id=session.id,
        user_id=user_id,
        items=len(items),
        total=str(session.total),
        currency=currency,
    )
    return session


def mark_awaiting_gateway(
    db: Session,
    session_id: str,
    gateway_token: str,
    redirect_url: str = "",
    idempotency_key: str = "",
    now: Optional[datetime] = None,
) -> CheckoutSession:
    """Record the gateway correlation and move the session to awaiting_gateway."""
    session = get_session(db, session_id)
    if session.status != SessionStatus.PENDING:
        raise InvalidStateTransitionError(session_id, session.status, SessionStatus.AWAITING_GATEWAY)
    if is_past_expiry(session, now):
        raise SessionExpiredError(session_id)

    try:
        if not transition(db, session_id, [SessionStatus.PENDING], SessionStatus.AWAITING_GATEWAY):
            db.rollback()
            db.refresh(session)
            raise InvalidStateTransitionError(session_id, session.status, SessionStatus.AWAITING_GATEWAY)
        db.add(
            GatewayCorrelation(
                checkout_session_id=session_id,
                gateway_token=gateway_token,
                idempotency_key=idempotency_key,
                redirect_url=redirect_url,
            )
        )
        db.commit()
    except IntegrityError:
        # Another request already correlated this session or token.
        db.rollback()
        db.refresh(session)
        raise InvalidStateTransitionError(session_id, session.status, SessionStatus.AWAITING_GATEWAY)

    db.refresh(session)
    logger.info("checkout_session_awaiting_gateway", session_id=session_id)
    return session


def expire_stale_sessions(db: Session, now: Optional[datetime] = None) -> int:
    """Expire every pending/awaiting_gateway session past its expiry. Returns the count."""
    now = now or utcnow()
    result = db.execute(
        update(CheckoutSession)
        .where(CheckoutSession.status.in_([SessionStatus.PENDING, SessionStatus.AWAITING_GATEWAY]))
        .where(CheckoutSession.expires_at <= now)
        .values(status=SessionStatus.EXPIRED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount:
        logger.info("checkout_sessions_expired", count=result.rowcount)
    return result.rowcount


def begin_payment(db: Session, session_id: str, gateway, retries: int = GATEWAY_INIT_RETRIES) -> GatewayCorrelation:
    """Open a hosted payment page for a pending session.

    A session already awaiting the gateway returns its stored correlation, so a
    double-submitted form lands on the same payment page.
    """
    session = get_session(db, session_id)
    if session.status == SessionStatus.AWAITING_GATEWAY and session.correlation is not None:
        return session.correlation
    if session.status != SessionStatus.PENDING:
        raise InvalidStateTransitionError(session_id, session.status, SessionStatus.AWAITING_GATEWAY)
    if is_past_expiry(session):
        raise SessionExpiredError(session_id)

    attempt = 0
    while True:
        attempt += 1
        try:
            gateway_session = gateway.initialize_gateway_session(session)
            break
        except GatewayTransportError as e:
            logger.warning("gateway_init_transport_failure", session_id=session_id, attempt=attempt, error=str(e))
            if attempt > retries:
                raise
        except GatewayDeclinedError as e:
            logger.warning(
                "gateway_init_declined", session_id=session_id, error_code=e.error_code, reason=e.message
            )
            if transition(
                db, session_id, [SessionStatus.PENDING], SessionStatus.FAILED, failure_reason=e.message[:255]
            ):
                db.commit()
            else:
                db.rollback()
            raise

    try:
        mark_awaiting_gateway(
            db,
            session_id,
            gateway_session.gateway_token,
            redirect_url=gateway_session.redirect_url,
            idempotency_key=gateway_session.idempotency_key,
        )
    except InvalidStateTransitionError:
        # A concurrent submission won the race; hand back its page.
        db.expire_all()
        session = get_session(db, session_id)
        if session.correlation is None:
            raise
    db.expire_all()
    return get_session(db, session_id).correlation
