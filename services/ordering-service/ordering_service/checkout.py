from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .database import INTEGRITY_ERRORS
from .mailer import NotificationDispatcher
from .payment_client import CheckoutLine, CheckoutSession, PaymentClient, PaymentNotCompletedError, PaymentServiceError
from .pricing import effective_unit_price, variant_display_name
from .repository import MenuRepository, NewOrder, NewOrderItem, OrderRecord, OrderRepository

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_RE = re.compile(r"^[+(\d][\d\s().-]*$")
SPECIAL_REQUESTS_LIMIT = 200


class CheckoutValidationError(ValueError):
    """Raised for missing or malformed customer details and invalid carts."""


@dataclass(frozen=True)
class CustomerDetails:
    name: str
    email: str
    phone: Optional[str] = None
    special_requests: Optional[str] = None


@dataclass(frozen=True)
class CartLine:
    menu_item_id: str
    quantity: int
    variant_name: Optional[str] = None
    special_instructions: Optional[str] = None


@dataclass(frozen=True)
class CheckoutStart:
    session_id: str
    checkout_url: Optional[str]
    total_cents: int


@dataclass(frozen=True)
class VerifiedOrder:
    order: OrderRecord
    payment_id: str
    duplicate: bool = False


def validate_customer(
    name: str | None,
    email: str | None,
    phone: str | None = None,
    special_requests: str | None = None,
) -> CustomerDetails:
    name = (name or "").strip()
    email = (email or "").strip()
    phone = (phone or "").strip() or None
    if not name or not email:
        raise CheckoutValidationError("Customer name and email are required")
    if not _EMAIL_RE.match(email):
        raise CheckoutValidationError(f"Invalid email address: {email}")
    if phone is not None:
        digits = re.sub(r"\D", "", phone)
        if not _PHONE_RE.match(phone) or not 10 <= len(digits) <= 15:
            raise CheckoutValidationError(f"Invalid phone number: {phone}")
    return CustomerDetails(
        name=name,
        email=email,
        phone=phone,
        special_requests=(special_requests or "").strip() or None,
    )


class CheckoutService:
    """Turns a cart into a payment session and a paid session into exactly one order."""

    def __init__(
        self,
        orders: OrderRepository,
        menu: MenuRepository,
        payment_client: PaymentClient,
        dispatcher: NotificationDispatcher,
    ):
        self._orders = orders
        self._menu = menu
        self._payment = payment_client
        self._dispatcher = dispatcher

    def create_checkout(self, customer: CustomerDetails, cart: Sequence[CartLine]) -> CheckoutStart:
        draft = self._draft(customer, cart)
        lines = [
            CheckoutLine(
                name=item.custom_name,
                unit_amount_cents=item.unit_price_cents,
                quantity=item.quantity,
                description=item.special_instructions,
            )
            for item in draft.items
        ]
        metadata = {
            "customer_name": customer.name,
            "customer_email": customer.email,
            "customer_phone": customer.phone or "",
            "special_requests": (customer.special_requests or "")[:SPECIAL_REQUESTS_LIMIT],
            "total_cents": str(draft.total_cents),
            "items_count": str(len(draft.items)),
            "cart_summary": _cart_summary(draft.items),
        }
        session = self._payment.create_checkout_session(lines, metadata, customer.email)
        self._orders.save_checkout_draft(session.id, draft)
        logger.info("Checkout session %s created total=%d", session.id, draft.total_cents)
        return CheckoutStart(session_id=session.id, checkout_url=session.url, total_cents=draft.total_cents)

    def verify_payment(self, session_id: str, cart: Sequence[CartLine] = ()) -> VerifiedOrder:
        """Create the order for a paid session, or return the one already created for it.

        The order is built from the draft priced when the session was created.
        ``cart`` is only used for sessions without a stored draft, and then it
        must price to exactly the amount that was paid.
        """
        if not session_id:
            raise CheckoutValidationError("Session ID is required")
        session = self._paid_session(session_id)
        existing = self._orders.find_by_payment_reference(session.reference, session.id)
        if existing is not None:
            return self._duplicate(existing, session)

        draft = self._orders.load_checkout_draft(session.id)
        if draft is None:
            draft = self._draft_for_paid_session(session, cart)
        try:
            order = self._orders.create_order(draft, session.reference, session_id=session.id)
        except INTEGRITY_ERRORS:
            logger.warning("Concurrent verification of session %s; returning existing order", session.id)
            existing = self._orders.find_by_payment_reference(session.reference, session.id)
            if existing is None:
                raise
            return self._duplicate(existing, session)

        logger.info("Order %s created from session %s total=%d", order.id, session.id, order.total_cents)
        self._dispatcher.notify_order("confirmation", order)
        return VerifiedOrder(order=order, payment_id=session.reference)

    def verify_additional_charge(self, session_id: str, order_id: str) -> VerifiedOrder:
        if not session_id:
            raise CheckoutValidationError("Session ID is required")
        if not order_id:
            raise CheckoutValidationError("Order ID is required")
        session = self._paid_session(session_id)
        charged_order = session.metadata.get("order_id")
        if charged_order != order_id:
            raise PaymentServiceError(f"Session {session_id} does not belong to order {order_id}")
        order = self._orders.require_order(order_id)
        if self._dispatcher.find_payment_event(order.id, "additional_charge_paid", session.id) is not None:
            logger.info("Additional charge %s already recorded for order %s", session.id, order.id)
            return VerifiedOrder(order=order, payment_id=session.reference, duplicate=True)
        self._dispatcher.record_payment_event(
            order.id,
            "stripe_charge",
            "additional_charge_paid",
            order.customer_email,
            {"session_id": session.id, "amount_cents": session.amount_total, "payment_id": session.reference},
        )
        logger.info("Additional charge %s paid for order %s", session.id, order.id)
        return VerifiedOrder(order=order, payment_id=session.reference)

    def _paid_session(self, session_id: str) -> CheckoutSession:
        session = self._payment.retrieve_session(session_id)
        if not session.paid:
            raise PaymentNotCompletedError("Payment not completed")
        return session

    def _duplicate(self, order: OrderRecord, session: CheckoutSession) -> VerifiedOrder:
        logger.warning("Duplicate verification of session %s; order %s already exists", session.id, order.id)
        expected = session.metadata.get("total_cents")
        if expected and int(expected) != order.total_cents:
            logger.warning(
                "Order total mismatch for %s: stored=%d expected=%s", order.id, order.total_cents, expected
            )
        return VerifiedOrder(order=order, payment_id=session.reference, duplicate=True)

    def _draft_for_paid_session(self, session: CheckoutSession, cart: Sequence[CartLine]) -> NewOrder:
        metadata = session.metadata
        customer = CustomerDetails(
            name=metadata.get("customer_name") or "",
            email=metadata.get("customer_email") or "",
            phone=metadata.get("customer_phone") or None,
            special_requests=metadata.get("special_requests") or None,
        )
        # Already paid: stock changes since checkout do not block the order.
        draft = self._draft(customer, cart, check_stock=False)
        paid = session.amount_total
        if paid is None and metadata.get("total_cents"):
            paid = int(metadata["total_cents"])
        if paid != draft.total_cents:
            raise CheckoutValidationError(
                f"Cart total {draft.total_cents} does not match the {paid} paid for session {session.id}"
            )
        return draft

    def _draft(self, customer: CustomerDetails, cart: Sequence[CartLine], check_stock: bool = True) -> NewOrder:
        if not cart:
            raise CheckoutValidationError("Cart is empty")
        items: List[NewOrderItem] = []
        for line in cart:
            if line.quantity < 1:
                raise CheckoutValidationError("Quantity must be at least 1")
            menu_item = self._menu.require_menu_item(line.menu_item_id)
            if check_stock and not menu_item.orderable():
                raise CheckoutValidationError(f"{menu_item.name} is not available")
            unit_price = menu_item.price_cents
            name = menu_item.name
            if line.variant_name:
                variant = self._menu.require_variant(menu_item.id, line.variant_name)
                if check_stock and not variant.orderable():
                    raise CheckoutValidationError(
                        f"{variant_display_name(menu_item.name, line.variant_name)} is not available"
                    )
                unit_price = effective_unit_price(menu_item.price_cents, variant.price_modifier_cents)
                name = variant_display_name(menu_item.name, line.variant_name)
            items.append(
                NewOrderItem(
                    menu_item_id=menu_item.id,
                    quantity=line.quantity,
                    unit_price_cents=unit_price,
                    special_instructions=line.special_instructions,
                    custom_name=name,
                    variant_name=line.variant_name,
                )
            )
        return NewOrder(
            customer_name=customer.name,
            customer_email=customer.email,
            customer_phone=customer.phone,
            special_requests=customer.special_requests,
            items=tuple(items),
        )


def _cart_summary(items: Sequence[NewOrderItem]) -> str:
    summary = ", ".join(f"{item.custom_name}({item.quantity})" for item in items[:3])
    if len(items) > 3:
        summary += f"... +{len(items) - 3} more"
    return summary
