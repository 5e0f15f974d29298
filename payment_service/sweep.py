import logging
import os
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import PENDING, CleanupRunLog, Order, utcnow
from .reconciliation import DELETED, FAILED, CleanupResult, cleanup_pending_order

logger = logging.getLogger("payment-service.sweep")
logging.basicConfig(level=logging.INFO)

SWEEP_STALE_MINUTES = int(os.getenv("SWEEP_STALE_MINUTES", "30"))
SWEEP_BATCH_SIZE = int(os.getenv("SWEEP_BATCH_SIZE", "100"))
SWEEP_MAX_WORKERS = int(os.getenv("SWEEP_MAX_WORKERS", "8"))

SWEEP_DELETED_BY = "stale_order_sweep"


def find_stale_pending_orders(db: Session, cutoff: datetime, limit: int) -> list[str]:
    with db.begin():
        return list(
            db.execute(
                select(Order.id)
                .where(
                    Order.status == PENDING,
                    Order.is_deleted.is_(False),
                    Order.created_at < cutoff,
                )
                .order_by(Order.created_at)
                .limit(limit)
            ).scalars()
        )


def run_cleanup_sweep(
    session_factory: Callable[[], Session],
    now: Optional[datetime] = None,
    *,
    stale_after: timedelta = timedelta(minutes=SWEEP_STALE_MINUTES),
    batch_size: int = SWEEP_BATCH_SIZE,
    max_workers: int = SWEEP_MAX_WORKERS,
) -> Dict[str, Any]:
    """
    Cancel pending orders nobody paid for within `stale_after`.

    Each order is cleaned up in its own transaction on its own worker; the
    cleanup rule never raises, so one bad order cannot stop the others.
    """
    started_at = utcnow()
    now = now or started_at
    cutoff = now - stale_after

    with session_factory() as db:
        order_ids = find_stale_pending_orders(db, cutoff, batch_size)
    logger.info("sweep found stale pending orders count=%s cutoff=%s", len(order_ids), cutoff.isoformat())

    def _clean(order_id: str) -> CleanupResult:
        return cleanup_pending_order(
            session_factory,
            order_id=order_id,
            reason=f"pending for more than {int(stale_after.total_seconds() // 60)} minutes",
            deleted_by=SWEEP_DELETED_BY,
        )

    results: list[CleanupResult] = []
    if order_ids:
        with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(order_ids)))) as pool:
            results = list(pool.map(_clean, order_ids))

    cleaned = sum(1 for r in results if r.outcome == DELETED)
    failed = sum(1 for r in results if r.outcome == FAILED)
    summary = {
        "scanned": len(order_ids),
        "cleaned": cleaned,
        "skipped": len(results) - cleaned - failed,
        "failed": failed,
        "cutoff": cutoff.isoformat(),
        "results": [
            {"orderId": r.order_id, "outcome": r.outcome, "message": r.message}
            for r in results
        ],
    }

    with session_factory() as db:
        with db.begin():
            db.add(
                CleanupRunLog(
                    started_at=started_at,
                    finished_at=utcnow(),
                    cutoff=cutoff,
                    scanned=summary["scanned"],
                    cleaned=cleaned,
                    skipped=summary["skipped"],
                    failed=failed,
                    details=summary["results"],
                )
            )

    logger.info(
        "sweep finished scanned=%s cleaned=%s skipped=%s failed=%s",
        summary["scanned"], cleaned, summary["skipped"], failed,
    )
    return summary


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """EventBridge schedule entry point (rate: 30 minutes)."""
    from .db import get_session_factory

    logger.info("sweep triggered source=%s", event.get("source") if isinstance(event, dict) else None)
    summary = run_cleanup_sweep(
        get_session_factory(),
        stale_after=timedelta(minutes=SWEEP_STALE_MINUTES),
        batch_size=SWEEP_BATCH_SIZE,
        max_workers=SWEEP_MAX_WORKERS,
    )
    return {"ok": True, **summary}
