import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base  # Import the Base class from our database setup


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite does not keep tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class SessionStatus:
    PENDING = "pending"
    AWAITING_GATEWAY = "awaiting_gateway"
    VERIFIED = "verified"
    FINALIZED = "finalized"
    FAILED = "failed"
    EXPIRED = "expired"


class FulfillmentStatus:
    RECEIVED = "received"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    ALL = (RECEIVED, PROCESSING, SHIPPED, DELIVERED, CANCELLED)


class PaymentStatus:
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"

    ALL = (PENDING, PAID, FAILED, REFUNDED)


# --- Catalog (read-only for checkout) ---

class Product(Base):
    __tablename__ = "products"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    slug = Column(String, unique=True, index=True)
    stock = Column(Integer, nullable=False, default=0)  # Units on hand.
    unlimited_stock = Column(Boolean, nullable=False, default=False)  # Made to order, never runs out.
    colors = Column(JSON, nullable=False, default=list)  # Allowed color names; empty means any.
    is_active = Column(Boolean, nullable=False, default=True)

    variants = relationship("ProductVariant", back_populates="product", cascade="all, delete-orphan")


class ProductVariant(Base):
    __tablename__ = "product_variants"
    __table_args__ = (UniqueConstraint("product_id", "size", "currency", name="uq_variant_price"),)

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(String, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    size = Column(String, nullable=False)
    currency = Column(String(3), nullable=False)
    price = Column(Numeric(12, 2), nullable=False)  # Authoritative unit price.

    product = relationship("Product", back_populates="variants")


class StoreSettings(Base):
    __tablename__ = "store_settings"

    id = Column(Integer, primary_key=True)
    turkey_shipping_try = Column(Numeric(12, 2), nullable=False, default=200)
    turkey_shipping_usd = Column(Numeric(12, 2), nullable=False, default=5)
    international_shipping_try = Column(Numeric(12, 2), nullable=False, default=1000)
    international_shipping_usd = Column(Numeric(12, 2), nullable=False, default=30)
    embroidery_price_try = Column(Numeric(12, 2), nullable=False, default=0)
    embroidery_price_usd = Column(Numeric(12, 2), nullable=False, default=0)


# --- Checkout ---

class CheckoutSession(Base):
    __tablename__ = "checkout_sessions"

    id = Column(String, primary_key=True, default=new_id)  # Opaque id handed to the client.
    user_id = Column(String, nullable=True, index=True)  # Null for guest checkout.
    currency = Column(String(3), nullable=False)
    subtotal = Column(Numeric(12, 2), nullable=False)
    shipping_cost = Column(Numeric(12, 2), nullable=False)
    total = Column(Numeric(12, 2), nullable=False)
    shipping_address = Column(JSON, nullable=False)  # Copied at creation, never a reference.
    status = Column(String, nullable=False, default=SessionStatus.PENDING, index=True)
    failure_reason = Column(String, nullable=True)
    provider_transaction_id = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    items = relationship(
        "CheckoutLineItem",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="CheckoutLineItem.position",
    )
    correlation = relationship("GatewayCorrelation", back_populates="session", uselist=False)


class CheckoutLineItem(Base):
    __tablename__ = "checkout_line_items"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String, ForeignKey("checkout_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False)  # Keeps cart order.
    product_id = Column(String, nullable=False)
    product_name = Column(String, nullable=False)
    size = Column(String, nullable=True)
    color = Column(String, nullable=True)
    unit_price = Column(Numeric(12, 2), nullable=False)  # Price snapshot at session creation.
    quantity = Column(Integer, nullable=False)
    embroidery_file = Column(String, nullable=True)  # URL of the uploaded asset.
    embroidery_price = Column(Numeric(12, 2), nullable=False, default=0)
    line_total = Column(Numeric(12, 2), nullable=False)

    session = relationship("CheckoutSession", back_populates="items")


class GatewayCorrelation(Base):
    __tablename__ = "gateway_correlations"

    id = Column(Integer, primary_key=True, index=True)
    checkout_session_id = Column(String, ForeignKey("checkout_sessions.id"), unique=True, nullable=False)
    gateway_token = Column(String, unique=True, nullable=False, index=True)
    idempotency_key = Column(String, nullable=False)
    redirect_url = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    session = relationship("CheckoutSession", back_populates="correlation")


# --- Orders ---

class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=new_id)
    checkout_session_id = Column(String, ForeignKey("checkout_sessions.id"), unique=True, nullable=False)
    user_id = Column(String, nullable=True, index=True)
    currency = Column(String(3), nullable=False)
    subtotal = Column(Numeric(12, 2), nullable=False)
    shipping_cost = Column(Numeric(12, 2), nullable=False)
    total_price = Column(Numeric(12, 2), nullable=False)
    payment_method = Column(String, nullable=False, default="iyzico")
    payment_status = Column(String, nullable=False, default=PaymentStatus.PAID)
    gateway_token = Column(String, nullable=False)  # Payment correlation id.
    provider_transaction_id = Column(String, nullable=True)
    shipping_address = Column(JSON, nullable=False)
    shipping_company = Column(String, nullable=True)
    tracking_number = Column(String, nullable=True)
    status = Column(String, nullable=False, default=FulfillmentStatus.RECEIVED)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.position",
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    product_id = Column(String, nullable=False)
    product_name = Column(String, nullable=False)
    product_price = Column(Numeric(12, 2), nullable=False)
    quantity = Column(Integer, nullable=False)
    size = Column(String, nullable=True)
    color = Column(String, nullable=True)
    has_embroidery = Column(Boolean, nullable=False, default=False)
    embroidery_file = Column(String, nullable=True)
    embroidery_price = Column(Numeric(12, 2), nullable=False, default=0)
    line_total = Column(Numeric(12, 2), nullable=False)

    order = relationship("Order", back_populates="items")
