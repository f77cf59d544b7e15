"""Turns a paid checkout session into exactly one order.

``finalize`` may be invoked any number of times, concurrently, for the same
gateway token: the provider retries its server-to-server notification and the
customer's browser can hit the redirect endpoint again. Each step below is a
conditional status update; the worker whose update matches creates the next
state, every other worker re-reads the session and follows it.

    awaiting_gateway --verify--> verified --finalize--> finalized
            |
            +--mismatch/declined--> failed
    pending | awaiting_gateway --past expires_at--> expired
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .checkout import get_session, is_past_expiry, money, transition
from .errors import (
    InvalidStateTransitionError,
    OrderNotFoundError,
    PaymentVerificationError,
    SessionExpiredError,
    UnknownCorrelationError,
)
from .log import get_logger
from .models import (
    CheckoutSession,
    GatewayCorrelation,
    Order,
    OrderItem,
    Product,
    SessionStatus,
    utcnow,
)

logger = get_logger("finalizer")


@dataclass(frozen=True)
class GatewayCallback:
    token: str
    # What the redirect or notification claims. Logged, never trusted.
    status: Optional[str] = None
    source: str = "redirect"


class OrderFinalizer:
    def __init__(self, gateway, notifier=None):
        self.gateway = gateway
        self.notifier = notifier

    def finalize(self, db: Session, callback: GatewayCallback, now: Optional[datetime] = None) -> Order:
        correlation = (
            db.query(GatewayCorrelation)
            .filter(GatewayCorrelation.gateway_token == callback.token)
            .first()
        )
        if correlation is None:
            logger.warning("callback_unknown_correlation", source=callback.source)
            raise UnknownCorrelationError("No checkout session matches this payment token")

        session_id = correlation.checkout_session_id
        logger.info(
            "callback_received",
            session_id=session_id,
            source=callback.source,
            claimed_status=callback.status,
        )

        while True:
            db.expire_all()
            session = get_session(db, session_id)
            status = session.status

            if status == SessionStatus.FINALIZED:
                return self._existing_order(db, session_id)

            if status == SessionStatus.EXPIRED:
                raise SessionExpiredError(session_id)

            if status == SessionStatus.FAILED:
                raise PaymentVerificationError(f"Checkout session {session_id} has already failed")

            if status in (SessionStatus.PENDING, SessionStatus.AWAITING_GATEWAY) and is_past_expiry(session, now):
                if transition(db, session_id, [status], SessionStatus.EXPIRED):
                    db.commit()
                    logger.info("checkout_session_expired_on_callback", session_id=session_id)
                else:
                    db.rollback()
                continue

            if status == SessionStatus.PENDING:
                raise InvalidStateTransitionError(session_id, status, SessionStatus.VERIFIED)

            if status == SessionStatus.AWAITING_GATEWAY:
                self._verify(db, session, callback, now)
                continue

            order = self._create_order(db, session, correlation.gateway_token)
            if order is not None:
                return order

    def _verify(self, db: Session, session: CheckoutSession, callback: GatewayCallback,
                now: Optional[datetime] = None) -> None:
        # Transport errors propagate with the session untouched; the provider will retry.
        outcome = self.gateway.verify_payment_outcome(callback.token)

        expected = money(session.total)
        reported_currency = (outcome.currency or "").upper()
        mismatch = outcome.verified and (
            outcome.amount is None
            or Decimal(outcome.amount) != expected
            or reported_currency != session.currency
        )

        if mismatch:
            logger.error(
                "reconciliation_anomaly",
                session_id=session.id,
                expected_amount=str(expected),
                reported_amount=str(outcome.amount),
                expected_currency=session.currency,
                reported_currency=reported_currency,
                provider_transaction_id=outcome.provider_transaction_id,
                claimed_status=callback.status,
            )

        if not outcome.verified or mismatch:
            reason = "amount_mismatch" if mismatch else (
                f"not_verified:{outcome.payment_status or outcome.error_code or 'unknown'}"
            )
            if transition(db, session.id, [SessionStatus.AWAITING_GATEWAY], SessionStatus.FAILED,
                          failure_reason=reason):
                db.commit()
                logger.warning("payment_verification_failed", session_id=session.id, reason=reason)
                raise PaymentVerificationError("Payment could not be verified")
            db.rollback()
            return

        # The provider call can outlast the TTL; the cutover is checked again at the
        # moment of the update. A miss here leaves the row for the expiry branch.
        if transition(db, session.id, [SessionStatus.AWAITING_GATEWAY], SessionStatus.VERIFIED,
                      unexpired_at=now or utcnow(),
                      provider_transaction_id=outcome.provider_transaction_id):
            db.commit()
            logger.info("payment_verified", session_id=session.id)
        else:
            db.rollback()
            logger.info("payment_verification_not_applied", session_id=session.id)

    def _create_order(self, db: Session, session: CheckoutSession, gateway_token: str) -> Optional[Order]:
        """Returns the new order, or None when another worker finalized first."""
        items = list(session.items)
        try:
            if not transition(db, session.id, [SessionStatus.VERIFIED], SessionStatus.FINALIZED):
                db.rollback()
                return None

            order = Order(
                checkout_session_id=session.id,
                user_id=session.user_id,
                currency=session.currency,
                subtotal=session.subtotal,
                shipping_cost=session.shipping_cost,
                total_price=session.total,
                gateway_token=gateway_token,
                provider_transaction_id=session.provider_transaction_id,
                shipping_address=dict(session.shipping_address or {}),
                items=[
                    OrderItem(
                        position=item.position,
                        product_id=item.product_id,
                        product_name=item.product_name,
                        product_price=item.unit_price,
                        quantity=item.quantity,
                        size=item.size,
                        color=item.color,
                        has_embroidery=bool(item.embroidery_file) or Decimal(item.embroidery_price) > 0,
                        embroidery_file=item.embroidery_file,
                        embroidery_price=item.embroidery_price,
                        line_total=item.line_total,
                    )
                    for item in items
                ],
            )
            db.add(order)
            self._decrement_stock(db, session.id, items)
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.warning("order_already_exists", session_id=session.id)
            return None

        db.refresh(order)
        logger.info(
            "order_finalized",
            order_id=order.id,
            session_id=session.id,
            total=str(order.total_price),
            currency=order.currency,
        )
        if self.notifier is not None:
            self.notifier.notify_order_finalized(order)
        return order

    def _decrement_stock(self, db: Session, session_id: str, items) -> None:
        for item in items:
            product = db.get(Product, item.product_id)
            if product is None or product.unlimited_stock:
                continue
            result = db.execute(
                update(Product)
                .where(Product.id == item.product_id)
                .where(Product.stock >= item.quantity)
                .values(stock=Product.stock - item.quantity)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                # Paid for already; fulfilment has to sort out the shortfall.
                logger.warning(
                    "stock_oversold",
                    session_id=session_id,
                    product_id=item.product_id,
                    quantity=item.quantity,
                )

    def _existing_order(self, db: Session, session_id: str) -> Order:
        order = db.query(Order).filter(Order.checkout_session_id == session_id).first()
        if order is None:
            raise OrderNotFoundError(session_id)
        return order
