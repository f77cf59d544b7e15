from typing import List, Optional

from sqlalchemy.orm import Session

from .errors import InvalidOrderUpdateError, OrderNotFoundError
from .log import get_logger
from .models import FulfillmentStatus, Order, PaymentStatus, utcnow

logger = get_logger("orders")

SHIPPING_COMPANIES = ("ups", "yurtici")


def get_order(db: Session, order_id: str, user_id: Optional[str] = None, is_admin: bool = False) -> Order:
    """Owners see their orders; guest orders are readable by anyone holding the id."""
    order = db.get(Order, order_id)
    if order is None:
        raise OrderNotFoundError(order_id)
    if is_admin or order.user_id is None or order.user_id == user_id:
        return order
    raise OrderNotFoundError(order_id)


def list_orders(db: Session, user_id: str) -> List[Order]:
    return (
        db.query(Order)
        .filter(Order.user_id == user_id)
        .order_by(Order.created_at.desc())
        .all()
    )


def list_all_orders(db: Session) -> List[Order]:
    """Every order, newest first. Admin only."""
    return db.query(Order).order_by(Order.created_at.desc()).all()


def update_shipping(db: Session, order_id: str, shipping_company: Optional[str],
                    tracking_number: Optional[str], notifier=None) -> Order:
    company = (shipping_company or "").strip().lower() or None
    if company == "none":
        company = None
    if company is not None and company not in SHIPPING_COMPANIES:
        raise InvalidOrderUpdateError(f"Unknown shipping company: {shipping_company}")

    order = db.get(Order, order_id)
    if order is None:
        raise OrderNotFoundError(order_id)

    order.shipping_company = company
    order.tracking_number = (tracking_number or "").strip() or None
    order.updated_at = utcnow()
    db.commit()
    db.refresh(order)
    logger.info("order_shipping_updated", order_id=order_id, shipping_company=company)

    # Committed above; a failed notification does not undo it.
    if notifier is not None and order.shipping_company and order.tracking_number:
        notifier.notify_shipping_update(order, order.shipping_company, order.tracking_number)
    return order


def update_status(db: Session, order_id: str, status: Optional[str] = None,
                  payment_status: Optional[str] = None) -> Order:
    if not status and not payment_status:
        raise InvalidOrderUpdateError("Nothing to update")
    if status and status not in FulfillmentStatus.ALL:
        raise InvalidOrderUpdateError(f"Unknown order status: {status}")
    if payment_status and payment_status not in PaymentStatus.ALL:
        raise InvalidOrderUpdateError(f"Unknown payment status: {payment_status}")

    order = db.get(Order, order_id)
    if order is None:
        raise OrderNotFoundError(order_id)

    if status:
        order.status = status
    if payment_status:
        order.payment_status = payment_status
    order.updated_at = utcnow()
    db.commit()
    db.refresh(order)
    logger.info(
        "order_status_updated",
        order_id=order_id,
        status=order.status,
        payment_status=order.payment_status,
    )
    return order
