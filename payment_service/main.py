import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shared.errors import (
    FailedPrecondition,
    Internal,
    NotFound,
    PermissionDenied,
    install_error_handlers,
)
from shared.security import require_user
from .db import get_db, get_session_factory
from .gateway import GatewayRejected, GatewayUnavailable, TossPaymentsClient, build_client
from .ledger import (
    apply_refund,
    get_order_summary,
    get_payment_owner,
    list_user_refunds,
    mark_order_confirmed,
    order_has_completed_payment,
    order_summary_by_payment_key,
    save_confirmed_payment,
    soft_delete_cart_items,
)
from .models import CANCELLED, CONFIRMED, PAID, PENDING, utcnow
from .reconciliation import PAYMENT_DONE, cleanup_pending_order, is_full_refund
from .schemas import (
    CancelPaymentIn,
    CancelPaymentOut,
    ConfirmPaymentIn,
    ConfirmPaymentOut,
    DeletePendingOrderIn,
    DeletePendingOrderOut,
    RefundPaymentIn,
    RefundPaymentOut,
    UserRefundsOut,
)
from .webhook import dispatch

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

CLIENT_DELETED_BY = "payment_failure_function"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Build the gateway client once per container.
    Schema creation/migrations happen at deploy-time, not here.
    """
    app.state.gateway = build_client()
    yield
    try:
        await app.state.gateway.aclose()
    except Exception:
        logger.warning("gateway client close failed", exc_info=True)


app = FastAPI(title="payment-service", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # tighten in prod
    allow_methods=["*"],
    allow_headers=["*"],
)

install_error_handlers(app)


def get_gateway(request: Request) -> TossPaymentsClient:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        # lifespan did not run (e.g. plain TestClient)
        gateway = request.app.state.gateway = build_client()
    return gateway


@app.post("/payments/confirm", response_model=ConfirmPaymentOut)
async def confirm_payment(
    payload: ConfirmPaymentIn,
    claims: dict = Depends(require_user),
    db: Session = Depends(get_db),
    gateway: TossPaymentsClient = Depends(get_gateway),
):
    user_id = claims["uid"]

    try:
        payment = await gateway.confirm(payload.payment_key, payload.order_id, payload.amount)
    except GatewayRejected as e:
        logger.error(
            "payment confirm rejected payment_key=%s order_id=%s amount=%s user_id=%s error=%s",
            payload.payment_key, payload.order_id, payload.amount, user_id, e.message,
        )
        raise FailedPrecondition(f"Payment confirmation failed: {e.message}", details=e.payload)
    except GatewayUnavailable as e:
        logger.error("payment confirm unreachable order_id=%s error=%s", payload.order_id, repr(e))
        raise Internal("An error occurred while confirming the payment")

    try:
        save_confirmed_payment(
            db,
            payment_key=payload.payment_key,
            order_id=payload.order_id,
            user_id=user_id,
            gateway_data=payment,
        )
    except SQLAlchemyError:
        logger.exception("payment record save failed payment_key=%s", payload.payment_key)
        raise Internal("An error occurred while confirming the payment")

    # money has moved; nothing below may fail the call
    side_effects = [
        mark_order_confirmed(db, payload.order_id, payload.payment_key, payment.get("status")),
        soft_delete_cart_items(db, payload.order_id, user_id),
    ]

    logger.info(
        "payment confirmed payment_key=%s order_id=%s amount=%s user_id=%s",
        payload.payment_key, payload.order_id, payload.amount, user_id,
    )
    return ConfirmPaymentOut(
        success=True,
        payment=payment,
        side_effects=[s.to_dict() for s in side_effects],
    )


@app.post("/payments/cancel", response_model=CancelPaymentOut)
async def cancel_payment(
    payload: CancelPaymentIn,
    claims: dict = Depends(require_user),
    db: Session = Depends(get_db),
    gateway: TossPaymentsClient = Depends(get_gateway),
):
    user_id = claims["uid"]
    logger.info(
        "payment cancel requested user_id=%s payment_key=%s order_id=%s amount=%s",
        user_id, payload.payment_key, payload.order_id, payload.cancel_amount,
    )

    order = get_order_summary(db, payload.order_id)
    if order is None or order.is_deleted:
        raise NotFound("Order not found")
    if order.user_id != user_id:
        raise PermissionDenied("Not allowed to cancel this order")
    if order.status == CANCELLED:
        raise FailedPrecondition("Order is already cancelled")
    if order.status not in (PAID, CONFIRMED):
        raise FailedPrecondition(f"Order cannot be cancelled in status {order.status}")
    if order.payment_key and order.payment_key != payload.payment_key:
        raise FailedPrecondition("Payment does not belong to this order")

    tax_free = payload.tax_breakdown.tax_free_amount if payload.tax_breakdown else None
    try:
        result = await gateway.cancel(
            payload.payment_key,
            payload.cancel_reason,
            cancel_amount=payload.cancel_amount,
            tax_free_amount=tax_free,
        )
    except GatewayRejected as e:
        logger.error(
            "payment cancel rejected payment_key=%s status=%s error=%s",
            payload.payment_key, e.status_code, e.payload,
        )
        raise FailedPrecondition(f"Payment cancellation failed: {e.message}", details=e.payload)
    except GatewayUnavailable as e:
        logger.error("payment cancel unreachable payment_key=%s error=%s", payload.payment_key, repr(e))
        raise Internal("An error occurred while cancelling the payment")

    full = is_full_refund(payload.cancel_amount, order.total_amount)
    try:
        outcome = apply_refund(
            db,
            payment_key=payload.payment_key,
            order_id=order.id,
            user_id=user_id,
            cancel_reason=payload.cancel_reason,
            cancel_amount=payload.cancel_amount,
            is_full_refund=full,
            refund_result=result,
        )
    except SQLAlchemyError:
        logger.exception(
            "gateway cancelled but ledger update failed payment_key=%s order_id=%s",
            payload.payment_key, order.id,
        )
        raise Internal("An error occurred while cancelling the payment")

    cancelled_at = utcnow().isoformat()
    logger.info(
        "payment cancelled order_id=%s payment_key=%s full=%s",
        order.id, payload.payment_key, full,
    )
    return CancelPaymentOut(
        success=True,
        order_id=order.id,
        payment_key=payload.payment_key,
        cancelled_at=cancelled_at,
        cancel_reason=payload.cancel_reason,
        cancel_amount=payload.cancel_amount or order.total_amount,
        is_full_refund=full,
        gateway_result=result,
        stock_restorations=[r.to_dict() for r in outcome.stock_restorations],
    )


@app.post("/payments/refund", response_model=RefundPaymentOut)
async def refund_payment(
    payload: RefundPaymentIn,
    claims: dict = Depends(require_user),
    db: Session = Depends(get_db),
    gateway: TossPaymentsClient = Depends(get_gateway),
):
    user_id = claims["uid"]
    logger.info(
        "refund requested payment_key=%s amount=%s user_id=%s has_account=%s idempotency_key=%s",
        payload.payment_key, payload.cancel_amount or "full", user_id,
        payload.refund_receive_account is not None, payload.idempotency_key,
    )

    owner = get_payment_owner(db, payload.payment_key)
    if owner and owner != user_id:
        raise PermissionDenied("Not allowed to refund this payment")

    order = order_summary_by_payment_key(db, payload.payment_key)
    if order is not None and order.user_id != user_id:
        raise PermissionDenied("Not allowed to refund this payment")

    account = payload.refund_receive_account.model_dump(by_alias=True) if payload.refund_receive_account else None
    tax_free = payload.tax_breakdown.tax_free_amount if payload.tax_breakdown else None
    try:
        result = await gateway.cancel(
            payload.payment_key,
            payload.cancel_reason,
            cancel_amount=payload.cancel_amount,
            tax_free_amount=tax_free,
            refund_receive_account=account,
            idempotency_key=payload.idempotency_key,
        )
    except GatewayRejected as e:
        logger.error("refund rejected payment_key=%s error=%s", payload.payment_key, e.message)
        raise FailedPrecondition(f"Refund failed: {e.message}", details=e.payload)
    except GatewayUnavailable as e:
        logger.error("refund unreachable payment_key=%s error=%s", payload.payment_key, repr(e))
        raise Internal("An error occurred while processing the refund")

    full = is_full_refund(payload.cancel_amount, order.total_amount if order else None)
    try:
        outcome = apply_refund(
            db,
            payment_key=payload.payment_key,
            order_id=order.id if order else None,
            user_id=user_id,
            cancel_reason=payload.cancel_reason,
            cancel_amount=payload.cancel_amount,
            is_full_refund=full,
            refund_result=result,
            order_cancel_reason=f"full refund: {payload.cancel_reason}",
            refund_receive_account=account,
            idempotency_key=payload.idempotency_key,
        )
    except SQLAlchemyError:
        logger.exception("gateway refunded but ledger update failed payment_key=%s", payload.payment_key)
        raise Internal("An error occurred while processing the refund")

    return RefundPaymentOut(
        success=True,
        refund=result,
        order_id=outcome.order_id,
        is_full_refund=outcome.is_full_refund,
        duplicate=outcome.duplicate,
    )


@app.get("/refunds", response_model=UserRefundsOut)
def get_user_refunds(
    limit: int = Query(default=20, ge=1, le=100),
    start_after: Optional[str] = Query(default=None, alias="startAfter"),
    claims: dict = Depends(require_user),
    db: Session = Depends(get_db),
):
    user_id = claims["uid"]
    try:
        refunds, has_more = list_user_refunds(db, user_id, limit, start_after)
    except SQLAlchemyError:
        logger.exception("refund history query failed user_id=%s", user_id)
        raise Internal("An error occurred while loading refunds")

    logger.info("refund history user_id=%s count=%s", user_id, len(refunds))
    return UserRefundsOut(success=True, refunds=refunds, has_more=has_more)


@app.post("/orders/{order_id}/payment-failure", response_model=DeletePendingOrderOut)
def delete_pending_order_on_payment_failure(
    order_id: str,
    payload: Optional[DeletePendingOrderIn] = None,
    claims: dict = Depends(require_user),
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    user_id = claims["uid"]
    reason = (payload.reason if payload else None) or "payment failed"
    logger.info("pending order delete requested order_id=%s reason=%s user_id=%s", order_id, reason, user_id)

    order = get_order_summary(db, order_id)
    if order is None:
        return DeletePendingOrderOut(success=False, message="Order not found", order_id=order_id)
    if order.user_id != user_id:
        raise PermissionDenied("Not allowed to delete this order")
    if order.status != PENDING or order.is_deleted:
        return DeletePendingOrderOut(
            success=False,
            message=f"Only pending orders can be deleted. Current status: {order.status}",
            order_id=order_id,
            current_status=order.status,
        )
    if order.payment_status == PAYMENT_DONE or order_has_completed_payment(db, order_id, order.payment_key):
        return DeletePendingOrderOut(
            success=False,
            message="Payment already completed for this order",
            order_id=order_id,
            current_status=order.status,
        )

    result = cleanup_pending_order(
        session_factory,
        order_id=order_id,
        reason=reason,
        deleted_by=CLIENT_DELETED_BY,
    )
    return DeletePendingOrderOut(
        success=result.deleted,
        message="Order deleted" if result.deleted else result.message,
        order_id=order_id,
        stock_restorations=[r.to_dict() for r in result.stock_restorations] if result.deleted else None,
        deleted_product_count=result.deleted_product_count if result.deleted else None,
    )


@app.api_route("/webhooks/toss", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
async def toss_webhook(request: Request, session_factory=Depends(get_session_factory)):
    """
    Gateway webhook. Anything but a crash is acknowledged with 200 so the
    gateway stops redelivering.
    """
    if request.method != "POST":
        return PlainTextResponse("Method Not Allowed", status_code=405)

    try:
        try:
            body = await request.json()
        except ValueError:
            body = None
        dispatch(session_factory, body)
    except Exception as e:
        logger.exception("webhook processing failed error=%s", repr(e))
        return PlainTextResponse("Internal Server Error", status_code=500)

    return PlainTextResponse("OK")


@app.get("/health")
def health():
    return {"ok": True}
