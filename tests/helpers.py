"""Shared helpers for payment-service tests."""

from payment_service import models


def item(product_id: str, quantity: int, option_id=None, option_label=None, cart_item_id=None) -> dict:
    return {
        "product_id": product_id,
        "product_name": f"name-{product_id}",
        "option_id": option_id,
        "option_label": option_label,
        "quantity": quantity,
        "cart_item_id": cart_item_id,
    }


def unit_stock(session_factory, unit_id: str) -> int:
    with session_factory() as s:
        return s.get(models.ProductOption, unit_id).stock


def load(session_factory, model, key):
    with session_factory() as s:
        obj = s.get(model, key)
        if obj is not None:
            s.expunge(obj)
        return obj
