import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base

# Order statuses
PENDING = "pending"
CONFIRMED = "confirmed"
PAID = "paid"
CANCELLED = "cancelled"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    status: Mapped[str] = mapped_column(String(32), default=PENDING, index=True)

    # amounts are KRW, which has no minor unit
    total_amount: Mapped[int] = mapped_column(Integer, default=0)

    # embedded payment reference
    payment_key: Mapped[Optional[str]] = mapped_column(String(200), index=True, nullable=True)
    payment_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    payment_confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    cancel_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancel_amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_cancel_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    refund_history: Mapped[list] = mapped_column(JSON, default=list)
    last_refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    items: Mapped[list["OrderedProduct"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderedProduct.id",
    )

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe copy of the order, used by the deletion log."""
        return {
            "orderId": self.id,
            "userId": self.user_id,
            "status": self.status,
            "totalAmount": self.total_amount,
            "paymentInfo": {
                "paymentKey": self.payment_key,
                "status": self.payment_status,
                "confirmedAt": _iso(self.payment_confirmed_at),
            },
            "refundHistory": list(self.refund_history or []),
            "isDeleted": self.is_deleted,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "items": [i.snapshot() for i in self.items],
        }


class OrderedProduct(Base):
    __tablename__ = "ordered_products"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), index=True)
    product_id: Mapped[str] = mapped_column(String(64))
    product_name: Mapped[str] = mapped_column(String(200), default="")

    # sellable unit; legacy rows only carry the label
    option_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    option_label: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    quantity: Mapped[int] = mapped_column(Integer, default=1)
    unit_price: Mapped[int] = mapped_column(Integer, default=0)
    cart_item_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    order: Mapped["Order"] = relationship(back_populates="items")

    def snapshot(self) -> dict[str, Any]:
        return {
            "productId": self.product_id,
            "productName": self.product_name,
            "optionId": self.option_id,
            "optionLabel": self.option_label,
            "quantity": self.quantity,
            "unitPrice": self.unit_price,
            "cartItemId": self.cart_item_id,
        }


class Product(Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), default="")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    options: Mapped[list["ProductOption"]] = relationship(
        back_populates="product",
        cascade="all, delete-orphan",
        order_by="ProductOption.position",
    )


class ProductOption(Base):
    __tablename__ = "product_options"
    __table_args__ = (CheckConstraint("stock >= 0", name="ck_product_options_stock_nonneg"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    product_id: Mapped[str] = mapped_column(ForeignKey("products.id"), index=True)
    label: Mapped[str] = mapped_column(String(200))
    position: Mapped[int] = mapped_column(Integer, default=0)
    stock: Mapped[int] = mapped_column(Integer, default=0)

    product: Mapped["Product"] = relationship(back_populates="options")


class Payment(Base):
    __tablename__ = "payments"

    payment_key: Mapped[str] = mapped_column(String(200), primary_key=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(64), index=True, nullable=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(128), index=True, nullable=True)

    # mirrors the gateway status: CONFIRMED | DONE | CANCELED | PARTIAL_CANCELED | FAILED | ...
    status: Mapped[str] = mapped_column(String(32))
    total_amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    gateway_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    webhook_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    refunds: Mapped[list] = mapped_column(JSON, default=list)

    fail_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expired_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Refund(Base):
    __tablename__ = "refunds"

    # "{paymentKey}_{epoch millis}_{random hex}"
    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    payment_key: Mapped[str] = mapped_column(String(200), index=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True)

    cancel_reason: Mapped[str] = mapped_column(Text)
    cancel_amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    refund_receive_account: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(300), index=True, nullable=True)
    refund_result: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    is_full_refund: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(String(32), default="COMPLETED")
    refunded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "paymentKey": self.payment_key,
            "orderId": self.order_id,
            "userId": self.user_id,
            "cancelReason": self.cancel_reason,
            "cancelAmount": self.cancel_amount,
            "refundReceiveAccount": self.refund_receive_account,
            "idempotencyKey": self.idempotency_key,
            "refundResult": self.refund_result,
            "isFullRefund": self.is_full_refund,
            "status": self.status,
            "refundedAt": _iso(self.refunded_at),
        }


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    order_ids: Mapped[list] = mapped_column(JSON, default=list)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    cart_items: Mapped[list["CartItem"]] = relationship(back_populates="user")


class CartItem(Base):
    __tablename__ = "cart_items"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    product_id: Mapped[str] = mapped_column(String(64))
    option_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, default=1)

    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    user: Mapped["User"] = relationship(back_populates="cart_items")


class OrderDeletionLog(Base):
    __tablename__ = "order_deletion_logs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    order_id: Mapped[str] = mapped_column(String(64), index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    reason: Mapped[str] = mapped_column(Text)
    payment_key: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    payment_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    original_order_data: Mapped[dict] = mapped_column(JSON)
    stock_restorations: Mapped[list] = mapped_column(JSON, default=list)
    deleted_by: Mapped[str] = mapped_column(String(64))
    webhook_triggered: Mapped[bool] = mapped_column(Boolean, default=False)
    deleted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class CleanupRunLog(Base):
    __tablename__ = "cleanup_run_logs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    finished_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    cutoff: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    scanned: Mapped[int] = mapped_column(Integer, default=0)
    cleaned: Mapped[int] = mapped_column(Integer, default=0)
    skipped: Mapped[int] = mapped_column(Integer, default=0)
    failed: Mapped[int] = mapped_column(Integer, default=0)
    details: Mapped[list] = mapped_column(JSON, default=list)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
