"""
Transactional read-modify-write operations on the order ledger.

Each public function owns exactly one `session.begin()` block and hands back
plain values, so callers never touch expired ORM state between transactions.
Best-effort operations return a `SideEffect` instead of raising.
"""
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from shared.errors import InvalidArgument
from .models import (
    CANCELLED,
    CONFIRMED,
    PENDING,
    CartItem,
    Order,
    OrderedProduct,
    Payment,
    Refund,
    utcnow,
)
from .reconciliation import (
    StockRestoration,
    find_order_id_by_payment_key,
    has_completed_payment,
    load_units_for_update,
    restore_stock,
)

logger = logging.getLogger(__name__)


@dataclass
class SideEffect:
    """Outcome of a secondary step that must never fail the primary call."""

    name: str
    ok: bool
    detail: str = ""
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "ok": self.ok, "detail": self.detail, "error": self.error}


@dataclass
class OrderSummary:
    id: str
    user_id: str
    status: str
    total_amount: int
    payment_key: Optional[str]
    payment_status: Optional[str]
    is_deleted: bool


def _summary(order: Order) -> OrderSummary:
    return OrderSummary(
        id=order.id,
        user_id=order.user_id,
        status=order.status,
        total_amount=order.total_amount,
        payment_key=order.payment_key,
        payment_status=order.payment_status,
        is_deleted=order.is_deleted,
    )


def get_order_summary(db: Session, order_id: str) -> Optional[OrderSummary]:
    with db.begin():
        order = db.get(Order, order_id)
        return _summary(order) if order else None


def order_summary_by_payment_key(db: Session, payment_key: str) -> Optional[OrderSummary]:
    with db.begin():
        order_id = find_order_id_by_payment_key(db, payment_key)
        if not order_id:
            return None
        return _summary(db.get(Order, order_id))


def get_payment_owner(db: Session, payment_key: str) -> Optional[str]:
    with db.begin():
        return db.execute(
            select(Payment.user_id).where(Payment.payment_key == payment_key)
        ).scalar_one_or_none()


def order_has_completed_payment(db: Session, order_id: str, payment_key: Optional[str]) -> bool:
    with db.begin():
        return has_completed_payment(db, order_id, payment_key)


def save_confirmed_payment(
    db: Session,
    *,
    payment_key: str,
    order_id: str,
    user_id: str,
    gateway_data: Dict[str, Any],
) -> None:
    """Store the gateway's confirm response as the canonical payment record."""
    with db.begin():
        payment = db.get(Payment, payment_key)
        if payment is None:
            payment = Payment(payment_key=payment_key)
            db.add(payment)
        payment.order_id = order_id
        payment.user_id = user_id
        payment.status = "CONFIRMED"
        payment.total_amount = gateway_data.get("totalAmount")
        payment.gateway_data = gateway_data
        payment.confirmed_at = utcnow()


def mark_order_confirmed(
    db: Session,
    order_id: str,
    payment_key: str,
    payment_status: Optional[str],
) -> SideEffect:
    """
    pending -> confirmed after a successful confirm call.

    An order in any other state has probably been handled already (webhook,
    retry); that is logged and reported as a skipped step, not a failure.
    """
    name = "order_status"
    try:
        with db.begin():
            order = db.execute(
                select(Order).where(Order.id == order_id).with_for_update()
            ).scalar_one_or_none()
            if order is None:
                raise LookupError(f"Order not found: {order_id}")

            if order.status != PENDING:
                logger.warning(
                    "order not pending, status left as is order_id=%s status=%s",
                    order_id, order.status,
                )
                return SideEffect(name, True, detail=f"skipped: status is {order.status}")

            now = utcnow()
            order.status = CONFIRMED
            order.payment_key = payment_key
            order.payment_status = payment_status
            order.payment_confirmed_at = now
            order.updated_at = now

        logger.info("order confirmed order_id=%s payment_key=%s", order_id, payment_key)
        return SideEffect(name, True, detail="confirmed")

    except Exception as e:
        logger.exception("order status update failed (payment succeeded) order_id=%s", order_id)
        return SideEffect(name, False, error=str(e))


def soft_delete_cart_items(db: Session, order_id: str, user_id: str) -> SideEffect:
    """Hide the cart rows that were turned into this order."""
    name = "cart_cleanup"
    try:
        with db.begin():
            cart_item_ids = db.execute(
                select(OrderedProduct.cart_item_id).where(
                    OrderedProduct.order_id == order_id,
                    OrderedProduct.cart_item_id.is_not(None),
                )
            ).scalars().all()
            if not cart_item_ids:
                logger.warning("no cart items linked to order order_id=%s", order_id)
                return SideEffect(name, True, detail="no cart items")

            rows = db.execute(
                select(CartItem).where(
                    CartItem.user_id == user_id,
                    CartItem.id.in_(cart_item_ids),
                )
            ).scalars().all()

            now = utcnow()
            for row in rows:
                row.is_deleted = True
                row.deleted_at = now
                row.deleted_reason = f"order completed (order: {order_id})"
            count = len(rows)

        logger.info("cart items removed order_id=%s user_id=%s count=%s", order_id, user_id, count)
        return SideEffect(name, True, detail=f"removed {count}")

    except Exception as e:
        logger.exception("cart cleanup failed (payment succeeded) order_id=%s user_id=%s", order_id, user_id)
        return SideEffect(name, False, error=str(e))


@dataclass
class RefundOutcome:
    refund: Dict[str, Any]
    order_id: Optional[str]
    is_full_refund: bool
    order_cancelled: bool = False
    duplicate: bool = False
    stock_restorations: List[StockRestoration] = field(default_factory=list)


def _refund_id(payment_key: str, at: datetime) -> str:
    # random suffix keeps two refunds in the same millisecond apart
    return f"{payment_key}_{int(at.timestamp() * 1000)}_{secrets.token_hex(3)}"


def apply_refund(
    db: Session,
    *,
    payment_key: str,
    order_id: Optional[str],
    user_id: str,
    cancel_reason: str,
    cancel_amount: Optional[int],
    is_full_refund: bool,
    refund_result: Dict[str, Any],
    order_cancel_reason: Optional[str] = None,
    refund_receive_account: Optional[Dict[str, Any]] = None,
    idempotency_key: Optional[str] = None,
) -> RefundOutcome:
    """
    Record a gateway refund that has already gone through.

    One transaction: append the refund record, update the payment's status and
    refund history, then either cancel the order and restore its stock (full
    refund) or append to the order's refund history (partial refund). An order
    that is already cancelled keeps its stock as is.

    A refund carrying an idempotency key that is already recorded for this
    payment is not recorded twice.
    """
    with db.begin():
        # reads
        if idempotency_key:
            existing = db.execute(
                select(Refund).where(
                    Refund.payment_key == payment_key,
                    Refund.idempotency_key == idempotency_key,
                )
            ).scalars().first()
            if existing is not None:
                logger.info(
                    "refund already recorded for idempotency key payment_key=%s refund_id=%s",
                    payment_key, existing.id,
                )
                return RefundOutcome(
                    refund=existing.to_dict(),
                    order_id=existing.order_id,
                    is_full_refund=existing.is_full_refund,
                    duplicate=True,
                )

        order = None
        if order_id:
            order = db.execute(
                select(Order).where(Order.id == order_id).with_for_update()
            ).scalar_one_or_none()
            if order is None:
                logger.warning("order for refund not found order_id=%s payment_key=%s", order_id, payment_key)

        payment = db.get(Payment, payment_key, with_for_update=True)

        cancel_order = order is not None and is_full_refund
        items: List[OrderedProduct] = []
        units_by_product = {}
        if cancel_order and order.status == CANCELLED:
            logger.warning("order already cancelled, stock not restored again order_id=%s", order.id)
        elif cancel_order:
            items = list(order.items)
            units_by_product = load_units_for_update(db, (i.product_id for i in items))

        # writes
        now = utcnow()
        amount = cancel_amount or refund_result.get("totalAmount") or (order.total_amount if order else None)
        refund = Refund(
            id=_refund_id(payment_key, now),
            payment_key=payment_key,
            order_id=order.id if order else order_id,
            user_id=user_id,
            cancel_reason=cancel_reason,
            cancel_amount=amount,
            refund_receive_account=refund_receive_account,
            idempotency_key=idempotency_key,
            refund_result=refund_result,
            is_full_refund=is_full_refund,
            status="COMPLETED",
            refunded_at=now,
        )
        db.add(refund)
        entry = refund.to_dict()

        if payment is None:
            payment = Payment(payment_key=payment_key, order_id=refund.order_id, user_id=user_id)
            db.add(payment)
        payment.status = refund_result.get("status") or ("CANCELED" if is_full_refund else "PARTIAL_CANCELED")
        payment.refunds = [*(payment.refunds or []), entry]
        payment.last_refunded_at = now

        restorations: List[StockRestoration] = []
        if cancel_order:
            if items:
                restorations = restore_stock(items, units_by_product)
            order.status = CANCELLED
            order.cancel_reason = order_cancel_reason or cancel_reason
            order.cancel_amount = amount
            order.cancelled_at = now
            order.payment_cancel_data = refund_result
            order.updated_at = now
        elif order is not None:
            order.refund_history = [
                *(order.refund_history or []),
                {
                    "refundAmount": cancel_amount,
                    "refundReason": cancel_reason,
                    "refundedAt": now.isoformat(),
                    "refundResult": refund_result.get("status"),
                },
            ]
            order.last_refunded_at = now
            order.updated_at = now

        outcome = RefundOutcome(
            refund=entry,
            order_id=refund.order_id,
            is_full_refund=is_full_refund,
            order_cancelled=cancel_order,
            stock_restorations=restorations,
        )

    logger.info(
        "refund recorded payment_key=%s order_id=%s full=%s amount=%s",
        payment_key, outcome.order_id, is_full_refund, amount,
    )
    return outcome


def list_user_refunds(
    db: Session,
    user_id: str,
    limit: int = 20,
    start_after: Optional[str] = None,
) -> Tuple[List[Dict[str, Any]], bool]:
    """Newest first. `start_after` is the id of the last refund of the previous page."""
    with db.begin():
        q = select(Refund).where(Refund.user_id == user_id)
        if start_after:
            cursor = db.get(Refund, start_after)
            if cursor is None or cursor.user_id != user_id:
                raise InvalidArgument("Unknown startAfter cursor")
            q = q.where(
                or_(
                    Refund.refunded_at < cursor.refunded_at,
                    and_(Refund.refunded_at == cursor.refunded_at, Refund.id < cursor.id),
                )
            )
        rows = db.execute(
            q.order_by(Refund.refunded_at.desc(), Refund.id.desc()).limit(limit + 1)
        ).scalars().all()
        return [r.to_dict() for r in rows[:limit]], len(rows) > limit


def record_webhook_status(
    db: Session,
    payment_key: str,
    status: str,
    webhook_data: Dict[str, Any],
    *,
    order_id: Optional[str] = None,
    fail_reason: Optional[str] = None,
    cancel_reason: Optional[str] = None,
    expired_at: Optional[datetime] = None,
) -> None:
    """Mirror a gateway-reported status onto the payment record (created if unseen)."""
    with db.begin():
        payment = db.get(Payment, payment_key, with_for_update=True)
        if payment is None:
            logger.warning("webhook for unknown payment, creating record payment_key=%s", payment_key)
            payment = Payment(payment_key=payment_key, order_id=order_id)
            db.add(payment)
        payment.status = status
        payment.webhook_data = webhook_data
        payment.updated_at = utcnow()
        if fail_reason is not None:
            payment.fail_reason = fail_reason
        if cancel_reason is not None:
            payment.cancel_reason = cancel_reason
        if expired_at is not None:
            payment.expired_at = expired_at
