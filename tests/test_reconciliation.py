"""Tests for the shared reconciliation rules and the pending-order cleanup."""

from sqlalchemy import func, select

from payment_service import models
from payment_service.reconciliation import (
    ALREADY_PAID,
    DELETED,
    FAILED,
    NOT_FOUND,
    NOT_PENDING,
    cleanup_pending_order,
    is_full_refund,
    is_payment_failure_status,
    match_unit,
    restore_stock,
)

from helpers import item, load, unit_stock


def _unit(uid, label, stock=0, product_id="p1"):
    return models.ProductOption(id=uid, label=label, stock=stock, product_id=product_id)


def _line(product_id="p1", quantity=1, option_id=None, option_label=None):
    return models.OrderedProduct(
        product_id=product_id,
        product_name="Tangerines",
        option_id=option_id,
        option_label=option_label,
        quantity=quantity,
    )


class TestMatchUnit:
    def test_matches_by_id(self):
        units = [_unit("u1", "1kg"), _unit("u2", "3kg")]
        assert match_unit(units, _line(option_id="u2", option_label="1kg")) is units[1]

    def test_falls_back_to_label_for_legacy_items(self):
        units = [_unit("u1", "1kg"), _unit("u2", "3kg")]
        assert match_unit(units, _line(option_label="3kg")) is units[1]

    def test_unknown_id_falls_back_to_label(self):
        units = [_unit("u1", "1kg")]
        assert match_unit(units, _line(option_id="gone", option_label="1kg")) is units[0]

    def test_no_match(self):
        units = [_unit("u1", "1kg")]
        assert match_unit(units, _line(option_id="u9", option_label="5kg")) is None
        assert match_unit(units, _line()) is None


class TestRestoreStock:
    def test_increments_matched_unit(self):
        units = {"p1": [_unit("u1", "1kg", stock=5), _unit("u2", "3kg", stock=1)]}
        result = restore_stock([_line(quantity=2, option_id="u1")], units)

        assert units["p1"][0].stock == 7
        assert units["p1"][1].stock == 1
        assert result[0].restored is True
        assert (result[0].stock_before, result[0].stock_after) == (5, 7)

    def test_same_unit_twice_accumulates(self):
        units = {"p1": [_unit("u1", "1kg", stock=0)]}
        result = restore_stock(
            [_line(quantity=2, option_id="u1"), _line(quantity=3, option_label="1kg")],
            units,
        )
        assert units["p1"][0].stock == 5
        assert [(r.stock_before, r.stock_after) for r in result] == [(0, 2), (2, 5)]

    def test_missing_product_is_reported_not_restored(self):
        result = restore_stock([_line(product_id="gone", quantity=1, option_id="u1")], {})
        assert result[0].restored is False
        assert result[0].stock_after is None

    def test_non_positive_quantity_is_skipped(self):
        units = {"p1": [_unit("u1", "1kg", stock=3)]}
        result = restore_stock([_line(quantity=0, option_id="u1")], units)
        assert units["p1"][0].stock == 3
        assert result[0].restored is False


class TestStatusRules:
    def test_failure_statuses(self):
        for status in ("FAILED", "CANCELED", "ABORTED", "EXPIRED"):
            assert is_payment_failure_status(status)
        for status in ("DONE", "PARTIAL_CANCELED", "WAITING_FOR_DEPOSIT", None):
            assert not is_payment_failure_status(status)

    def test_full_refund(self):
        assert is_full_refund(None, 20000)
        assert is_full_refund(20000, 20000)
        assert not is_full_refund(5000, 20000)
        assert not is_full_refund(5000, None)


class TestCleanupPendingOrder:
    def _seed_basic(self, seed):
        seed.product("p1", [("u1", "1kg", 5), ("u2", "3kg", 10)])
        seed.user("user-1", order_ids=["o1", "o-other"])
        seed.order("o1", payment_key="pk-1", items=[item("p1", 2, option_id="u1")])

    def test_restores_stock_and_soft_deletes(self, seed, session_factory):
        self._seed_basic(seed)

        result = cleanup_pending_order(
            session_factory, order_id="o1", reason="payment failed", deleted_by="test"
        )

        assert result.outcome == DELETED
        assert unit_stock(session_factory, "u1") == 7
        assert unit_stock(session_factory, "u2") == 10

        order = load(session_factory, models.Order, "o1")
        assert order.status == models.CANCELLED
        assert order.is_deleted is True
        assert load(session_factory, models.User, "user-1").order_ids == ["o-other"]

        with session_factory() as s:
            assert s.scalar(select(func.count()).select_from(models.OrderedProduct)) == 0
            log = s.execute(select(models.OrderDeletionLog)).scalar_one()
            assert log.order_id == "o1"
            assert log.deleted_by == "test"
            assert log.original_order_data["status"] == "pending"
            assert log.original_order_data["items"][0]["quantity"] == 2
            assert log.stock_restorations[0]["stockAfter"] == 7

    def test_second_call_is_a_no_op(self, seed, session_factory):
        self._seed_basic(seed)
        cleanup_pending_order(session_factory, order_id="o1", reason="r", deleted_by="test")

        again = cleanup_pending_order(session_factory, order_id="o1", reason="r", deleted_by="test")

        assert again.outcome == NOT_PENDING
        assert unit_stock(session_factory, "u1") == 7
        with session_factory() as s:
            assert s.scalar(select(func.count()).select_from(models.OrderDeletionLog)) == 1

    def test_finds_order_by_payment_key(self, seed, session_factory):
        self._seed_basic(seed)
        result = cleanup_pending_order(
            session_factory, payment_key="pk-1", reason="r", deleted_by="test", payment_status="FAILED"
        )
        assert result.outcome == DELETED
        assert result.order_id == "o1"

    def test_confirmed_order_is_untouched(self, seed, session_factory):
        seed.product("p1", [("u1", "1kg", 5)])
        seed.order("o1", status=models.CONFIRMED, items=[item("p1", 2, option_id="u1")])

        result = cleanup_pending_order(session_factory, order_id="o1", reason="r", deleted_by="test")

        assert result.outcome == NOT_PENDING
        assert unit_stock(session_factory, "u1") == 5
        assert load(session_factory, models.Order, "o1").status == models.CONFIRMED

    def test_done_payment_is_untouched(self, seed, session_factory):
        seed.product("p1", [("u1", "1kg", 5)])
        seed.order("o1", payment_status="DONE", items=[item("p1", 2, option_id="u1")])

        result = cleanup_pending_order(session_factory, order_id="o1", reason="r", deleted_by="test")

        assert result.outcome == ALREADY_PAID
        assert unit_stock(session_factory, "u1") == 5

    def test_pending_order_with_captured_payment_record_is_untouched(self, seed, session_factory):
        self._seed_basic(seed)
        seed.payment("pk-other", status="DONE", order_id="o1")

        result = cleanup_pending_order(session_factory, order_id="o1", reason="r", deleted_by="test")

        assert result.outcome == ALREADY_PAID
        assert unit_stock(session_factory, "u1") == 5
        order = load(session_factory, models.Order, "o1")
        assert order.status == models.PENDING
        assert order.is_deleted is False

    def test_confirmed_payment_found_by_key_blocks_cleanup(self, seed, session_factory):
        self._seed_basic(seed)
        seed.payment("pk-1", status="CONFIRMED")

        result = cleanup_pending_order(session_factory, order_id="o1", reason="r", deleted_by="test")

        assert result.outcome == ALREADY_PAID
        assert unit_stock(session_factory, "u1") == 5

    def test_failure_event_overrides_stale_record_for_same_key(self, seed, session_factory):
        self._seed_basic(seed)
        seed.payment("pk-1", status="CONFIRMED", order_id="o1")

        result = cleanup_pending_order(
            session_factory, payment_key="pk-1", reason="r", deleted_by="test", payment_status="CANCELED"
        )

        assert result.outcome == DELETED
        assert unit_stock(session_factory, "u1") == 7

    def test_unknown_order(self, session_factory):
        assert cleanup_pending_order(
            session_factory, order_id="nope", reason="r", deleted_by="test"
        ).outcome == NOT_FOUND
        assert cleanup_pending_order(
            session_factory, payment_key="pk-nope", reason="r", deleted_by="test"
        ).outcome == NOT_FOUND

    def test_errors_are_swallowed(self):
        def broken_factory():
            raise RuntimeError("database down")

        result = cleanup_pending_order(broken_factory, order_id="o1", reason="r", deleted_by="test")

        assert result.outcome == FAILED
        assert "database down" in result.message
