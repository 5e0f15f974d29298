import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from .ledger import record_webhook_status
from .models import utcnow
from .reconciliation import cleanup_pending_order, is_payment_failure_status

logger = logging.getLogger(__name__)

WEBHOOK_DELETED_BY = "payment_webhook_handler"

SessionFactory = Callable[[], Session]


def _cleanup(session_factory: SessionFactory, payment_key: Optional[str], order_id: Optional[str], status: str) -> None:
    cleanup_pending_order(
        session_factory,
        order_id=order_id,
        payment_key=payment_key,
        reason=f"payment failed via webhook: {status}",
        deleted_by=WEBHOOK_DELETED_BY,
        payment_status=status,
        webhook_triggered=True,
    )


def handle_status_changed(session_factory: SessionFactory, data: Dict[str, Any]) -> None:
    payment_key = data.get("paymentKey")
    status = data.get("status")
    order_id = data.get("orderId")

    if not payment_key:
        raise ValueError("webhook payload has no paymentKey")

    logger.info("payment status changed payment_key=%s status=%s order_id=%s", payment_key, status, order_id)

    if is_payment_failure_status(status):
        logger.warning("payment failure status payment_key=%s status=%s", payment_key, status)
        _cleanup(session_factory, payment_key, order_id, status)

    with session_factory() as db:
        record_webhook_status(db, payment_key, status, data, order_id=order_id)
    logger.info("payment status mirrored payment_key=%s status=%s", payment_key, status)


def _parse_time(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        logger.warning("unparseable expiredAt value=%s", value)
        return None


def _terminal_event(session_factory: SessionFactory, data: Dict[str, Any], status: str, **fields: Any) -> None:
    payment_key = data.get("paymentKey")
    order_id = data.get("orderId")
    try:
        _cleanup(session_factory, payment_key, order_id, status)
        if not payment_key:
            raise ValueError("webhook payload has no paymentKey")
        with session_factory() as db:
            record_webhook_status(db, payment_key, status, data, order_id=order_id, **fields)
        logger.info("payment %s event handled payment_key=%s order_id=%s", status, payment_key, order_id)
    except Exception as e:
        logger.exception(
            "payment %s event failed payment_key=%s order_id=%s error=%s",
            status, payment_key, order_id, repr(e),
        )


def handle_payment_failed(session_factory: SessionFactory, data: Dict[str, Any]) -> None:
    logger.error(
        "payment failed event payment_key=%s order_id=%s fail_reason=%s",
        data.get("paymentKey"), data.get("orderId"), data.get("failReason"),
    )
    _terminal_event(session_factory, data, "FAILED", fail_reason=data.get("failReason") or "unknown error")


def handle_payment_canceled(session_factory: SessionFactory, data: Dict[str, Any]) -> None:
    logger.warning(
        "payment canceled event payment_key=%s order_id=%s cancel_reason=%s",
        data.get("paymentKey"), data.get("orderId"), data.get("cancelReason"),
    )
    _terminal_event(session_factory, data, "CANCELED", cancel_reason=data.get("cancelReason") or "user cancelled")


def handle_payment_expired(session_factory: SessionFactory, data: Dict[str, Any]) -> None:
    logger.warning(
        "payment expired event payment_key=%s order_id=%s expired_at=%s",
        data.get("paymentKey"), data.get("orderId"), data.get("expiredAt"),
    )
    _terminal_event(session_factory, data, "EXPIRED", expired_at=_parse_time(data.get("expiredAt")) or utcnow())


HANDLERS = {
    "PAYMENT_STATUS_CHANGED": handle_status_changed,
    "PAYMENT_FAILED": handle_payment_failed,
    "PAYMENT_CANCELED": handle_payment_canceled,
    "PAYMENT_EXPIRED": handle_payment_expired,
}


def dispatch(session_factory: SessionFactory, body: Any) -> bool:
    """
    Route one webhook delivery. Returns False for events nobody handles.

    Exceptions from PAYMENT_STATUS_CHANGED propagate so the delivery is
    answered with 500 and retried by the gateway.
    """
    if not isinstance(body, dict):
        logger.warning("ignoring webhook with non-object body type=%s", type(body).__name__)
        return False

    event_type = body.get("eventType")
    data = body.get("data")
    if not isinstance(data, dict):
        data = {}

    logger.info("webhook received event_type=%s payment_key=%s", event_type, data.get("paymentKey"))

    handler = HANDLERS.get(event_type) if isinstance(event_type, str) else None
    if handler is None:
        logger.warning("unhandled webhook event event_type=%s", event_type)
        return False

    handler(session_factory, data)
    return True
