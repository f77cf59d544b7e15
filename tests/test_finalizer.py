import threading
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from checkout_service import checkout
from checkout_service.errors import (
    GatewayTransportError,
    PaymentVerificationError,
    SessionExpiredError,
    UnknownCorrelationError,
)
from checkout_service.finalizer import GatewayCallback, OrderFinalizer
from checkout_service.models import (
    CheckoutSession,
    Order,
    OrderItem,
    Product,
    ProductVariant,
    SessionStatus,
    utcnow,
)
from checkout_service.notifications import Notifier

from conftest import RecordingPublisher, address, line


def open_session(db, gateway, product, quantity=2, now=None):
    session = checkout.create_session(db, [line(product.id, quantity, size="M")], address(), now=now)
    if now is None:
        correlation = checkout.begin_payment(db, session.id, gateway)
        token = correlation.gateway_token
    else:
        token = f"tok-{session.id}"
        checkout.mark_awaiting_gateway(db, session.id, token, now=now)
    return session.id, token


def test_paid_session_becomes_order(db, product, store_settings, gateway):
    session_id, token = open_session(db, gateway, product)
    gateway.approve(token, "220.00")

    order = OrderFinalizer(gateway).finalize(db, GatewayCallback(token=token, status="success"))

    assert order.total_price == Decimal("220.00")
    assert order.currency == "TRY"
    assert order.checkout_session_id == session_id
    assert order.provider_transaction_id == f"txn-{token}"
    assert order.payment_status == "paid"
    assert [(i.quantity, i.product_price) for i in order.items] == [(2, Decimal("100.00"))]
    assert checkout.get_session(db, session_id).status == SessionStatus.FINALIZED


def test_finalize_twice_returns_same_order(db, product, store_settings, gateway):
    _, token = open_session(db, gateway, product)
    gateway.approve(token, "220.00")
    finalizer = OrderFinalizer(gateway)

    first = finalizer.finalize(db, GatewayCallback(token=token))
    second = finalizer.finalize(db, GatewayCallback(token=token, source="notification"))

    assert first.id == second.id
    assert db.query(Order).count() == 1
    assert db.query(OrderItem).count() == 1
    assert len(gateway.verify_calls) == 1


def test_concurrent_finalize_creates_one_order(session_factory, product, store_settings, gateway):
    setup = session_factory()
    _, token = open_session(setup, gateway, product)
    setup.close()
    gateway.approve(token, "220.00")

    workers = 6
    barrier = threading.Barrier(workers)
    order_ids, errors = [], []

    def deliver():
        db = session_factory()
        try:
            barrier.wait()
            order = OrderFinalizer(gateway).finalize(db, GatewayCallback(token=token, source="notification"))
            order_ids.append(order.id)
        except Exception as e:
            errors.append(e)
        finally:
            db.close()

    threads = [threading.Thread(target=deliver) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(order_ids) == workers
    assert len(set(order_ids)) == 1
    check = session_factory()
    assert check.query(Order).count() == 1
    check.close()


def test_prices_are_not_recomputed_at_finalize(db, product, store_settings, gateway):
    _, token = open_session(db, gateway, product)
    db.query(ProductVariant).update({ProductVariant.price: Decimal("999")})
    db.commit()
    gateway.approve(token, "220.00")

    order = OrderFinalizer(gateway).finalize(db, GatewayCallback(token=token))

    assert order.items[0].product_price == Decimal("100.00")
    assert order.total_price == Decimal("220.00")


def test_finalize_decrements_stock(db, product, store_settings, gateway):
    _, token = open_session(db, gateway, product, quantity=3)
    gateway.approve(token, "320.00")

    OrderFinalizer(gateway).finalize(db, GatewayCallback(token=token))

    db.expire_all()
    assert db.get(Product, product.id).stock == 7


def test_amount_mismatch_is_rejected(db, product, store_settings, gateway):
    session_id, token = open_session(db, gateway, product)
    gateway.approve(token, "1.00")
    finalizer = OrderFinalizer(gateway)

    with pytest.raises(PaymentVerificationError):
        finalizer.finalize(db, GatewayCallback(token=token, status="success"))

    assert db.query(Order).count() == 0
    failed = checkout.get_session(db, session_id)
    assert failed.status == SessionStatus.FAILED
    assert failed.failure_reason == "amount_mismatch"

    # A retried notification cannot resurrect it.
    with pytest.raises(PaymentVerificationError):
        finalizer.finalize(db, GatewayCallback(token=token, status="success"))
    assert db.query(Order).count() == 0


def test_currency_mismatch_is_rejected(db, product, store_settings, gateway):
    _, token = open_session(db, gateway, product)
    gateway.approve(token, "220.00", currency="USD")

    with pytest.raises(PaymentVerificationError):
        OrderFinalizer(gateway).finalize(db, GatewayCallback(token=token))
    assert db.query(Order).count() == 0


def test_unverified_payment_fails_session(db, product, store_settings, gateway):
    session_id, token = open_session(db, gateway, product)
    gateway.decline(token)

    with pytest.raises(PaymentVerificationError):
        OrderFinalizer(gateway).finalize(db, GatewayCallback(token=token, status="success"))

    assert checkout.get_session(db, session_id).status == SessionStatus.FAILED


def test_unknown_token_is_rejected(db, gateway):
    with pytest.raises(UnknownCorrelationError):
        OrderFinalizer(gateway).finalize(db, GatewayCallback(token="forged"))


def test_swept_session_cannot_be_finalized(db, product, store_settings, gateway):
    started = utcnow() - timedelta(minutes=31)
    session_id, token = open_session(db, gateway, product, now=started)
    assert checkout.expire_stale_sessions(db) == 1
    gateway.approve(token, "220.00")

    with pytest.raises(SessionExpiredError):
        OrderFinalizer(gateway).finalize(db, GatewayCallback(token=token, status="success"))

    assert db.query(Order).count() == 0
    assert gateway.verify_calls == []


def test_session_past_expiry_is_expired_on_callback(db, product, store_settings, gateway):
    started = utcnow() - timedelta(minutes=31)
    session_id, token = open_session(db, gateway, product, now=started)
    gateway.approve(token, "220.00")

    with pytest.raises(SessionExpiredError):
        OrderFinalizer(gateway).finalize(db, GatewayCallback(token=token))

    assert checkout.get_session(db, session_id).status == SessionStatus.EXPIRED
    assert db.query(Order).count() == 0


def test_session_expiring_during_verification_is_not_finalized(
    session_factory, db, product, store_settings, gateway
):
    session_id, token = open_session(db, gateway, product)
    gateway.approve(token, "220.00")
    approved = gateway.verify_payment_outcome

    def slow_verify(gateway_token):
        # The TTL runs out while the provider call is in flight.
        other = session_factory()
        try:
            other.execute(
                update(CheckoutSession)
                .where(CheckoutSession.id == session_id)
                .values(expires_at=utcnow() - timedelta(seconds=1))
            )
            other.commit()
        finally:
            other.close()
        return approved(gateway_token)

    gateway.verify_payment_outcome = slow_verify

    with pytest.raises(SessionExpiredError):
        OrderFinalizer(gateway).finalize(db, GatewayCallback(token=token, status="success"))

    assert db.query(Order).count() == 0
    assert checkout.get_session(db, session_id).status == SessionStatus.EXPIRED
    assert checkout.get_session(db, session_id).provider_transaction_id is None


def test_transport_failure_leaves_session_retryable(db, product, store_settings, gateway):
    session_id, token = open_session(db, gateway, product)

    class FlakyGateway:
        def verify_payment_outcome(self, gateway_token):
            raise GatewayTransportError("timeout")

    with pytest.raises(GatewayTransportError):
        OrderFinalizer(FlakyGateway()).finalize(db, GatewayCallback(token=token))
    assert checkout.get_session(db, session_id).status == SessionStatus.AWAITING_GATEWAY

    gateway.approve(token, "220.00")
    order = OrderFinalizer(gateway).finalize(db, GatewayCallback(token=token))
    assert order.total_price == Decimal("220.00")


def test_finalized_order_is_announced(db, product, store_settings, gateway, publisher, notifier):
    _, token = open_session(db, gateway, product)
    gateway.approve(token, "220.00")

    order = OrderFinalizer(gateway, notifier).finalize(db, GatewayCallback(token=token))

    assert publisher.events == [
        (
            "order.finalized",
            {
                "order_id": order.id,
                "user_id": None,
                "total_price": "220.00",
                "currency": "TRY",
                "email": "deniz@example.com",
            },
        )
    ]


def test_broker_outage_does_not_block_finalize(db, product, store_settings, gateway):
    _, token = open_session(db, gateway, product)
    gateway.approve(token, "220.00")
    notifier = Notifier(lambda: RecordingPublisher(fail=True))

    order = OrderFinalizer(gateway, notifier).finalize(db, GatewayCallback(token=token))

    assert db.query(Order).filter_by(id=order.id).count() == 1


def test_scheduled_notification_runs_later(db, product, store_settings, gateway, publisher):
    _, token = open_session(db, gateway, product)
    gateway.approve(token, "220.00")
    scheduled = []
    notifier = Notifier(lambda: publisher, schedule=lambda fn, *args: scheduled.append((fn, args)))

    order = OrderFinalizer(gateway, notifier).finalize(db, GatewayCallback(token=token))

    assert publisher.events == []
    fn, args = scheduled[0]
    fn(*args)
    assert publisher.events[0][0] == "order.finalized"
    assert publisher.events[0][1]["order_id"] == order.id
