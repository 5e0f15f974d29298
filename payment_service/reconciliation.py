"""
Rules shared by every path that can move an order out of `pending`:
the confirm/cancel/refund handlers, the gateway webhook and the stale-order
sweep.

All ledger writes for one order happen inside a single transaction, and every
row the transaction needs is read (and locked) before the first write is
staged. Stock for a line item always goes back to the exact sellable unit it
was taken from.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from .models import (
    CANCELLED,
    PENDING,
    Order,
    OrderDeletionLog,
    OrderedProduct,
    Payment,
    ProductOption,
    User,
    utcnow,
)

logger = logging.getLogger(__name__)

# Gateway statuses that end a payment attempt. PARTIAL_CANCELED is not one:
# the remaining amount is still captured.
FAILURE_STATUSES = frozenset({"FAILED", "CANCELED", "ABORTED", "EXPIRED"})

# Gateway status for a captured payment.
PAYMENT_DONE = "DONE"

# Payment record statuses that mean the money was captured.
COMPLETED_PAYMENT_STATUSES = frozenset({PAYMENT_DONE, "CONFIRMED"})


def is_payment_failure_status(status: Optional[str]) -> bool:
    return status in FAILURE_STATUSES


def is_full_refund(cancel_amount: Optional[int], order_total: Optional[int]) -> bool:
    """No amount means "refund everything"; otherwise it must equal the order total."""
    if not cancel_amount:
        return True
    return order_total is not None and cancel_amount == order_total


@dataclass
class StockRestoration:
    product_id: str
    product_name: str
    option_id: Optional[str]
    option_label: Optional[str]
    quantity: int
    stock_before: Optional[int] = None
    stock_after: Optional[int] = None
    restored: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "productId": self.product_id,
            "productName": self.product_name,
            "optionId": self.option_id,
            "optionLabel": self.option_label,
            "quantity": self.quantity,
            "stockBefore": self.stock_before,
            "stockAfter": self.stock_after,
            "restored": self.restored,
        }


def match_unit(units: Sequence[ProductOption], item: OrderedProduct) -> Optional[ProductOption]:
    """
    Find the sellable unit a line item was decremented from.

    Matches on the unit id when the line item has one, then falls back to the
    unit label (legacy line items were written before units had ids).
    """
    if item.option_id:
        for unit in units:
            if unit.id == item.option_id:
                return unit
    if item.option_label:
        for unit in units:
            if unit.label == item.option_label:
                return unit
    return None


def load_units_for_update(session: Session, product_ids: Iterable[str]) -> Dict[str, List[ProductOption]]:
    """Batch-read and lock every sellable unit of the given products."""
    ids = sorted(set(product_ids))
    units_by_product: Dict[str, List[ProductOption]] = {pid: [] for pid in ids}
    if not ids:
        return units_by_product

    rows = session.execute(
        select(ProductOption)
        .where(ProductOption.product_id.in_(ids))
        .order_by(ProductOption.product_id, ProductOption.position)
        .with_for_update()
    ).scalars()
    for unit in rows:
        units_by_product[unit.product_id].append(unit)
    return units_by_product


def restore_stock(
    items: Iterable[OrderedProduct],
    units_by_product: Dict[str, List[ProductOption]],
) -> List[StockRestoration]:
    """
    Put each line item's quantity back on its matched unit.

    Mutates the (already loaded) unit rows in memory; nothing is flushed here.
    Items whose product or unit no longer exists are reported with
    restored=False.
    """
    restorations: List[StockRestoration] = []
    for item in items:
        entry = StockRestoration(
            product_id=item.product_id,
            product_name=item.product_name,
            option_id=item.option_id,
            option_label=item.option_label,
            quantity=item.quantity,
        )
        restorations.append(entry)

        if item.quantity is None or item.quantity <= 0:
            logger.warning(
                "skip stock restore with bad quantity product_id=%s quantity=%s",
                item.product_id, item.quantity,
            )
            continue

        unit = match_unit(units_by_product.get(item.product_id, []), item)
        if unit is None:
            logger.warning(
                "no matching unit, stock not restored product_id=%s option_id=%s option_label=%s",
                item.product_id, item.option_id, item.option_label,
            )
            continue

        entry.stock_before = unit.stock or 0
        unit.stock = entry.stock_before + item.quantity
        entry.stock_after = unit.stock
        entry.option_id = unit.id
        entry.restored = True
        logger.info(
            "stock restored product_id=%s option_id=%s quantity=%s before=%s after=%s",
            item.product_id, unit.id, item.quantity, entry.stock_before, entry.stock_after,
        )
    return restorations


# cleanup outcomes
DELETED = "deleted"
NOT_FOUND = "not_found"
NOT_PENDING = "not_pending"
ALREADY_PAID = "already_paid"
FAILED = "failed"


@dataclass
class CleanupResult:
    outcome: str
    order_id: Optional[str] = None
    message: str = ""
    stock_restorations: List[StockRestoration] = field(default_factory=list)
    deleted_product_count: int = 0

    @property
    def deleted(self) -> bool:
        return self.outcome == DELETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome,
            "orderId": self.order_id,
            "message": self.message,
            "stockRestorations": [r.to_dict() for r in self.stock_restorations],
            "deletedProductCount": self.deleted_product_count,
        }


def find_order_id_by_payment_key(session: Session, payment_key: str) -> Optional[str]:
    return session.execute(
        select(Order.id)
        .where(Order.payment_key == payment_key, Order.is_deleted.is_(False))
        .order_by(Order.created_at.desc())
        .limit(1)
    ).scalar_one_or_none()


def has_completed_payment(
    session: Session,
    order_id: str,
    payment_key: Optional[str] = None,
    *,
    superseded_key: Optional[str] = None,
) -> bool:
    """
    True when a payment record linked to the order (by order id or by key)
    shows the money was captured.

    `superseded_key` names a record whose stored status is being replaced by
    the event under way (a failure webhook for that key); it is not counted.
    """
    conditions = [Payment.order_id == order_id]
    if payment_key:
        conditions.append(Payment.payment_key == payment_key)
    rows = session.execute(
        select(Payment.payment_key, Payment.status).where(or_(*conditions))
    ).all()
    return any(
        status in COMPLETED_PAYMENT_STATUSES
        for key, status in rows
        if key != superseded_key
    )


def cleanup_pending_order(
    session_factory: Callable[[], Session],
    *,
    order_id: Optional[str] = None,
    payment_key: Optional[str] = None,
    reason: str,
    deleted_by: str,
    payment_status: Optional[str] = None,
    webhook_triggered: bool = False,
) -> CleanupResult:
    """
    Cancel and soft-delete an order that never got paid.

    Only a `pending` order with no captured payment (neither on the order
    nor in a linked payment record) is touched; any
    other state is a no-op, so duplicate webhooks and overlapping triggers are
    harmless. This function never raises: failures are logged and returned as
    a FAILED result so the caller's own work (webhook ack, sibling orders in a
    sweep) carries on.
    """
    try:
        with session_factory() as session:
            with session.begin():
                return _cleanup_in_transaction(
                    session,
                    order_id=order_id,
                    payment_key=payment_key,
                    reason=reason,
                    deleted_by=deleted_by,
                    payment_status=payment_status,
                    webhook_triggered=webhook_triggered,
                )
    except Exception as e:
        logger.exception(
            "pending order cleanup failed order_id=%s payment_key=%s reason=%s error=%s",
            order_id, payment_key, reason, repr(e),
        )
        return CleanupResult(outcome=FAILED, order_id=order_id, message=str(e))


def _cleanup_in_transaction(
    session: Session,
    *,
    order_id: Optional[str],
    payment_key: Optional[str],
    reason: str,
    deleted_by: str,
    payment_status: Optional[str],
    webhook_triggered: bool,
) -> CleanupResult:
    target_id = order_id
    if not target_id and payment_key:
        target_id = find_order_id_by_payment_key(session, payment_key)
    if not target_id:
        logger.warning("no order linked to payment payment_key=%s", payment_key)
        return CleanupResult(outcome=NOT_FOUND, message="Order not found")

    # reads
    order = session.execute(
        select(Order).where(Order.id == target_id).with_for_update()
    ).scalar_one_or_none()
    if order is None:
        logger.warning("order to clean up does not exist order_id=%s", target_id)
        return CleanupResult(outcome=NOT_FOUND, order_id=target_id, message="Order not found")

    if order.status != PENDING or order.is_deleted:
        logger.info(
            "order is not pending, leaving it alone order_id=%s status=%s payment_status=%s",
            target_id, order.status, payment_status,
        )
        return CleanupResult(
            outcome=NOT_PENDING,
            order_id=target_id,
            message=f"Order is not pending (status: {order.status})",
        )

    superseded_key = payment_key if is_payment_failure_status(payment_status) else None
    if order.payment_status == PAYMENT_DONE or has_completed_payment(
        session, target_id, payment_key or order.payment_key, superseded_key=superseded_key
    ):
        logger.warning("payment already completed, not deleting order_id=%s", target_id)
        return CleanupResult(
            outcome=ALREADY_PAID,
            order_id=target_id,
            message="Payment already completed for this order",
        )

    items = list(order.items)
    units_by_product = load_units_for_update(session, (i.product_id for i in items))
    user = None
    if order.user_id:
        user = session.get(User, order.user_id, with_for_update=True)
    snapshot = order.snapshot()

    # writes
    restorations = restore_stock(items, units_by_product)
    for item in items:
        session.delete(item)

    if user is not None:
        user.order_ids = [oid for oid in (user.order_ids or []) if oid != order.id]

    now = utcnow()
    session.add(
        OrderDeletionLog(
            order_id=order.id,
            user_id=order.user_id,
            reason=reason,
            payment_key=payment_key or order.payment_key,
            payment_status=payment_status,
            original_order_data=snapshot,
            stock_restorations=[r.to_dict() for r in restorations],
            deleted_by=deleted_by,
            webhook_triggered=webhook_triggered,
            deleted_at=now,
        )
    )

    order.status = CANCELLED
    order.cancel_reason = reason
    order.cancelled_at = now
    order.is_deleted = True
    order.deleted_at = now

    logger.info(
        "pending order deleted order_id=%s deleted_by=%s restorations=%s",
        order.id, deleted_by, len(restorations),
    )
    return CleanupResult(
        outcome=DELETED,
        order_id=order.id,
        message="Order deleted",
        stock_restorations=restorations,
        deleted_product_count=len(items),
    )
