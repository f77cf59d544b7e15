import os

# The app module creates tables on import; keep that away from any real database.
os.environ.setdefault("DATABASE_URL", "sqlite://")

from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from checkout_service.database import Base, make_engine  # noqa: E402
from checkout_service.gateway import GatewaySession, PaymentOutcome, idempotency_key_for  # noqa: E402
from checkout_service.models import Product, ProductVariant, StoreSettings  # noqa: E402
from checkout_service.notifications import Notifier  # noqa: E402
from checkout_service.schemas import CartLine, ShippingAddress  # noqa: E402


class FakeGateway:
    """Stands in for the hosted checkout provider."""

    def __init__(self):
        self.outcomes = {}
        self.init_errors = []
        self.init_calls = []
        self.verify_calls = []

    def initialize_gateway_session(self, session):
        self.init_calls.append(session.id)
        if self.init_errors:
            raise self.init_errors.pop(0)
        token = f"tok-{session.id}"
        return GatewaySession(
            redirect_url=f"https://pay.example.com/checkout/{token}",
            gateway_token=token,
            idempotency_key=idempotency_key_for(session.id),
        )

    def approve(self, token, amount, currency="TRY"):
        self.outcomes[token] = PaymentOutcome(
            verified=True,
            amount=Decimal(amount),
            currency=currency,
            provider_transaction_id=f"txn-{token}",
            payment_status="SUCCESS",
        )

    def decline(self, token):
        self.outcomes[token] = PaymentOutcome(
            verified=False,
            amount=None,
            currency=None,
            provider_transaction_id=None,
            payment_status="FAILURE",
            error_code="10051",
        )

    def verify_payment_outcome(self, gateway_token):
        self.verify_calls.append(gateway_token)
        return self.outcomes.get(
            gateway_token,
            PaymentOutcome(False, None, None, None, payment_status="FAILURE"),
        )


class RecordingPublisher:
    def __init__(self, fail=False):
        self.fail = fail
        self.events = []
        self.closed = 0

    def publish(self, routing_key, message):
        if self.fail:
            raise ConnectionError("broker down")
        self.events.append((routing_key, message))

    def close(self):
        self.closed += 1


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'checkout.db'}")
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def notifier(publisher):
    return Notifier(lambda: publisher)


@pytest.fixture
def store_settings(db):
    settings = StoreSettings(
        turkey_shipping_try=Decimal("20"),
        turkey_shipping_usd=Decimal("5"),
        international_shipping_try=Decimal("150"),
        international_shipping_usd=Decimal("30"),
        embroidery_price_try=Decimal("35"),
        embroidery_price_usd=Decimal("2"),
    )
    db.add(settings)
    db.commit()
    return settings


def add_product(db, name="Yacht Seat Cover", price="100", stock=10, sizes=("M",),
                currency="TRY", colors=None, unlimited_stock=False):
    product = Product(
        name=name,
        slug=name.lower().replace(" ", "-"),
        stock=stock,
        unlimited_stock=unlimited_stock,
        colors=list(colors or []),
    )
    product.variants = [ProductVariant(size=size, currency=currency, price=Decimal(price)) for size in sizes]
    db.add(product)
    db.commit()
    db.refresh(product)
    return product


@pytest.fixture
def product(db):
    return add_product(db, colors=["White", "Navy"])


def address(country="Türkiye", **overrides):
    data = {
        "full_name": "Deniz Yilmaz",
        "address": "Marina Cd. 12",
        "city": "Bodrum",
        "country": country,
        "email": "deniz@example.com",
    }
    data.update(overrides)
    return ShippingAddress(**data)


def line(product_id, quantity=2, **kwargs):
    return CartLine(product_id=product_id, quantity=quantity, **kwargs)
