from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TaxBreakdown(CamelModel):
    tax_free_amount: Optional[int] = Field(default=None, ge=0)
    supply_amount: Optional[int] = None
    vat: Optional[int] = None


class RefundReceiveAccount(CamelModel):
    bank: str = Field(min_length=1)
    account_number: str = Field(min_length=1)
    holder_name: str = Field(min_length=1)


class ConfirmPaymentIn(CamelModel):
    payment_key: str = Field(min_length=1)
    order_id: str = Field(min_length=1)
    amount: int = Field(gt=0)


class ConfirmPaymentOut(CamelModel):
    success: bool
    payment: Dict[str, Any]
    side_effects: List[Dict[str, Any]] = []


class CancelPaymentIn(CamelModel):
    payment_key: str = Field(min_length=1)
    order_id: str = Field(min_length=1)
    cancel_reason: str = Field(min_length=1)
    cancel_amount: Optional[int] = Field(default=None, gt=0)
    tax_breakdown: Optional[TaxBreakdown] = None


class CancelPaymentOut(CamelModel):
    success: bool
    order_id: str
    payment_key: str
    cancelled_at: str
    cancel_reason: str
    cancel_amount: Optional[int] = None
    is_full_refund: bool
    gateway_result: Dict[str, Any]
    stock_restorations: List[Dict[str, Any]] = []


class RefundPaymentIn(CamelModel):
    payment_key: str = Field(min_length=1)
    cancel_reason: str = Field(min_length=1)
    cancel_amount: Optional[int] = Field(default=None, gt=0)
    refund_receive_account: Optional[RefundReceiveAccount] = None
    idempotency_key: Optional[str] = Field(default=None, min_length=1, max_length=300)
    tax_breakdown: Optional[TaxBreakdown] = None


class RefundPaymentOut(CamelModel):
    success: bool
    refund: Dict[str, Any]
    order_id: Optional[str] = None
    is_full_refund: bool
    duplicate: bool = False


class UserRefundsOut(CamelModel):
    success: bool
    refunds: List[Dict[str, Any]]
    has_more: bool


class DeletePendingOrderIn(CamelModel):
    reason: Optional[str] = None


class DeletePendingOrderOut(CamelModel):
    success: bool
    message: str
    order_id: str
    current_status: Optional[str] = None
    stock_restorations: Optional[List[Dict[str, Any]]] = None
    deleted_product_count: Optional[int] = None
