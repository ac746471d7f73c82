from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: Literal["ok"]


class Category(BaseModel):
    id: str
    name: str
    sort_order: int


class MenuItem(BaseModel):
    id: str
    category_id: str
    name: str
    description: Optional[str]
    price_cents: int
    stock_status: str
    out_until: Optional[str]
    is_available: bool
    orderable: bool


class Variant(BaseModel):
    menu_item_id: str
    variant_name: str
    display_name: str
    price_modifier_cents: int
    stock_status: str
    out_until: Optional[str]
    orderable: bool


class MenuResponse(BaseModel):
    categories: List[Category]
    items: List[MenuItem]


class StockUpdateRequest(BaseModel):
    status: Literal["in_stock", "low_stock", "out_today", "out_indefinite", "out_until"]
    out_until: Optional[str] = Field(default=None, description="ISO timestamp, required for out_until")


class StockResetResponse(BaseModel):
    reset: int


class CartLine(BaseModel):
    menu_item_id: str
    quantity: int = Field(..., gt=0)
    variant_name: Optional[str] = None
    special_instructions: Optional[str] = None


class CustomerDetails(BaseModel):
    name: str
    email: str
    phone: Optional[str] = None


class CheckoutRequest(BaseModel):
    customer: CustomerDetails
    cart: List[CartLine]
    special_requests: Optional[str] = None


class CheckoutResponse(BaseModel):
    session_id: str
    checkout_url: Optional[str]
    total_cents: int


class VerifyPaymentRequest(BaseModel):
    session_id: str
    cart: List[CartLine] = Field(default_factory=list)


class VerifyAdditionalChargeRequest(BaseModel):
    session_id: str
    order_id: str


class OrderItem(BaseModel):
    id: str
    menu_item_id: str
    menu_item_name: str
    display_name: str
    quantity: int
    unit_price_cents: int
    subtotal_cents: int
    special_instructions: Optional[str]
    custom_name: Optional[str]
    variant_name: Optional[str]


class Order(BaseModel):
    id: str
    status: str
    total_cents: int
    customer_name: Optional[str]
    customer_email: Optional[str]
    customer_phone: Optional[str]
    special_requests: Optional[str]
    stripe_payment_id: Optional[str]
    created_at: str
    updated_at: str
    items: List[OrderItem]


class VerifiedOrder(BaseModel):
    success: bool = True
    order: Order
    payment_id: str
    duplicate: bool = False
    additional_charge: bool = False


class StatusUpdateRequest(BaseModel):
    status: Literal["confirmed", "ready_for_pickup"]


class SwapItemRequest(BaseModel):
    new_menu_item_id: str
    variant_name: Optional[str] = None
    quantity: Optional[int] = Field(default=None, gt=0)


class SwapVariantRequest(BaseModel):
    variant_name: str
    new_price_cents: int = Field(..., ge=0)


class MutationResponse(BaseModel):
    order: Order
    substitution_type: str
    price_difference: int = 0
    refund_id: Optional[str] = None
    refund_amount_cents: Optional[int] = None
    payment_url: Optional[str] = None
    notification_status: Optional[str] = None


class StartWorkflowRequest(BaseModel):
    order_id: str
    order_item_id: str


class WorkflowActionRequest(BaseModel):
    scope: Optional[Literal["variant", "entire_item"]] = None
    duration: Optional[Literal["out_today", "out_indefinite", "out_until"]] = None
    until: Optional[str] = None
    action: Optional[Literal["replace", "cancel"]] = None
    replacement_type: Optional[Literal["item", "variant"]] = None
    menu_item_id: Optional[str] = None
    variant_name: Optional[str] = None
    quantity: Optional[int] = Field(default=None, gt=0)


class WorkflowState(BaseModel):
    id: str
    order_id: str
    order_item_id: str
    menu_item_id: str
    step: str
    cancel_only: bool
    scope: Optional[str]
    replacement_type: Optional[str]
    current_variant: Optional[str]
    allowed_actions: List[str]
    result: Optional[MutationResponse] = None


class WorkflowCandidates(BaseModel):
    replacement_type: str
    items: List[MenuItem] = []
    variants: List[Variant] = []


class DispatchResponse(BaseModel):
    delivered: int
