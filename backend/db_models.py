"""
SQLAlchemy ORM models for the ExamVault backend.

Tables:
    users              : buyer identities (credentials are issued elsewhere)
    products           : exam-preparation bundles (catalog, read-only here)
    cart_items         : per-user cart lines, one row per (user, product)
    orders             : cart snapshots with frozen total and payment state
    order_items        : order lines with unit price captured at checkout
    payments           : append-only payment audit trail per order
    downloads          : time- and count-limited download entitlements
    email_notifications: outbound confirmations queued on order completion

All money columns are integer cents (single currency).
"""
from datetime import datetime

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text, ForeignKey,
    UniqueConstraint, Index, CheckConstraint,
)
from sqlalchemy.orm import relationship

from database import Base


class User(Base):
    """Buyer identity referenced by carts, orders and downloads."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(200), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Product(Base):
    """Exam-preparation bundle. Price here is live; orders freeze their own copy."""
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, autoincrement=True)
    exam_name = Column(String(200), nullable=False)
    exam_code = Column(String(50), nullable=True)
    description = Column(Text, nullable=True)
    difficulty_level = Column(String(30), nullable=True)
    questions_count = Column(Integer, nullable=True)
    price_cents = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)


class CartItem(Base):
    """
    One cart line per (user, product).

    Mutated in place by add/set; deleted wholesale when an order completes.
    """
    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    product = relationship("Product", lazy="joined")

    __table_args__ = (
        UniqueConstraint("user_id", "product_id", name="uq_cart_user_product"),
        CheckConstraint("quantity >= 1", name="ck_cart_quantity_positive"),
    )


class Order(Base):
    """
    Immutable snapshot of a cart plus its payment state.

    Lifecycle:
        PENDING -> COMPLETED   (payment confirmed; downloads issued)
        PENDING -> CANCELLED   (payment failed or expired)
    Both end states are terminal. Transitions happen only through
    conditional updates in services/payment_service.py.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    total_cents = Column(Integer, nullable=False)  # computed once at creation
    status = Column(String(20), nullable=False, default="PENDING")
    payment_method = Column(String(20), nullable=False)  # "stripe" | "paypal"
    checkout_reference = Column(String(255), nullable=True)  # provider session / order id
    payment_reference = Column(String(255), nullable=True)  # provider transaction id
    created_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItem.id",
    )
    payments = relationship("Payment", back_populates="order", lazy="select", order_by="Payment.id")

    __table_args__ = (
        Index("ix_orders_user_created", "user_id", "created_at"),
        Index("ix_orders_checkout_reference", "checkout_reference"),
    )


class OrderItem(Base):
    """Order line; unit price is frozen at checkout and never re-read from the catalog."""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price_cents = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")
    product = relationship("Product", lazy="joined")

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity


class Payment(Base):
    """
    Append-only payment record, written once per terminal order transition.

    At most one of stripe_id / paypal_id is populated, chosen by provider.
    """
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False)  # "COMPLETED" | "FAILED"
    provider = Column(String(20), nullable=False, default="unknown")
    stripe_id = Column(String(255), nullable=True)
    paypal_id = Column(String(255), nullable=True)
    failure_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    order = relationship("Order", back_populates="payments")


class Download(Base):
    """
    Download entitlement for one purchased product.

    Valid while is_active and expires_at is in the future. Each redemption
    bumps download_count; reaching max_downloads deactivates the row.
    Rows are never deleted.
    """
    __tablename__ = "downloads"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)
    download_token = Column(String(128), unique=True, nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False)
    download_count = Column(Integer, nullable=False, default=0)
    max_downloads = Column(Integer, nullable=False, default=10)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    last_downloaded_at = Column(DateTime, nullable=True)

    product = relationship("Product", lazy="joined")

    __table_args__ = (
        CheckConstraint("download_count <= max_downloads", name="ck_download_count_within_limit"),
    )


class EmailNotification(Base):
    """Outbound email queued inside the order-completion transaction."""
    __tablename__ = "email_notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)
    email = Column(String(255), nullable=False)
    type = Column(String(50), nullable=False)
    subject = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default="PENDING")
    created_at = Column(DateTime, default=datetime.utcnow)
