from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .mailer import NotificationDispatcher, QuantityChange, SubstitutionNotice
from .payment_client import AdditionalCharge, PaymentClient, PaymentServiceError, RefundRecord
from .pricing import (
    display_name,
    effective_unit_price,
    format_price,
    infer_variant_from_price,
    line_total,
    variant_display_name,
)
from .repository import (
    MenuRepository,
    OrderItemRecord,
    OrderRecord,
    OrderRepository,
    OrderStatus,
)

logger = logging.getLogger(__name__)


class SubstitutionError(Exception):
    """Raised when a requested order change is not allowed."""


@dataclass(frozen=True)
class MutationResult:
    order: OrderRecord
    substitution_type: str
    price_difference: int = 0
    refund: Optional[RefundRecord] = None
    payment_url: Optional[str] = None
    notification_status: Optional[str] = None


@dataclass(frozen=True)
class _Settlement:
    refund: Optional[RefundRecord] = None
    charge: Optional[AdditionalCharge] = None


class SubstitutionService:
    """Applies staff changes to paid orders and settles the price difference.

    Each mutation is a small saga: the line and total are written in one
    transaction, then the payment processor is called; if that call fails the
    previous line and total are restored before the error is re-raised. The
    customer email goes through the notification outbox and never blocks.
    """

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

    def cancel_item(self, order_id: str, order_item_id: str) -> MutationResult:
        order = self._open_order(order_id)
        item = order.find_item(order_item_id)
        item_name = _line_name(item)

        if len(order.items) == 1:
            logger.info("Cancelling order %s: %s was its only item", order.id, item_name)
            cancelled = self._orders.set_status(order.id, OrderStatus.CANCELLED)
            try:
                refund = self._refund(order, order.total_cents)
            except PaymentServiceError:
                self._compensate(order.id, lambda: self._orders.set_status(order.id, order.status))
                raise
            notice = SubstitutionNotice(
                kind="order_cancelled",
                order_id=order.id,
                customer_name=order.customer_name or "Customer",
                original_item=item_name,
                order_total=0,
                refund_amount=order.total_cents,
            )
            return self._finish(cancelled, notice, refund=refund)

        refund_amount = item.subtotal_cents
        logger.info("Removing %s from order %s, refund=%d", item_name, order.id, refund_amount)
        updated = self._orders.remove_item(order.id, item.id)
        try:
            refund = self._refund(updated, refund_amount)
        except PaymentServiceError:
            self._compensate(order.id, lambda: self._orders.restore_item(item))
            raise
        notice = SubstitutionNotice(
            kind="item_removed",
            order_id=order.id,
            customer_name=order.customer_name or "Customer",
            original_item=item_name,
            order_total=updated.total_cents,
            refund_amount=refund_amount,
        )
        return self._finish(updated, notice, refund=refund)

    def swap_item(
        self,
        order_id: str,
        order_item_id: str,
        new_menu_item_id: str,
        variant_name: str | None = None,
        quantity: int | None = None,
    ) -> MutationResult:
        order = self._open_order(order_id)
        item = order.find_item(order_item_id)
        if quantity is not None and quantity < 1:
            raise SubstitutionError("Quantity must be at least 1")

        new_item = self._menu.require_menu_item(new_menu_item_id)
        if not new_item.orderable():
            raise SubstitutionError(f"{new_item.name} is not available")
        unit_price = new_item.price_cents
        new_name = new_item.name
        if variant_name:
            variant = self._menu.require_variant(new_item.id, variant_name)
            if not variant.orderable():
                raise SubstitutionError(f"{variant_display_name(new_item.name, variant_name)} is not available")
            unit_price = effective_unit_price(new_item.price_cents, variant.price_modifier_cents)
            new_name = variant_display_name(new_item.name, variant_name)

        final_quantity = quantity if quantity is not None else item.quantity
        old_name = _line_name(item)
        price_difference = line_total(unit_price, final_quantity) - item.subtotal_cents
        logger.info(
            "Swapping %s -> %s on order %s, difference=%d",
            old_name,
            new_name,
            order.id,
            price_difference,
        )

        updated = self._orders.replace_item(
            order.id,
            item.id,
            menu_item_id=new_item.id,
            unit_price_cents=unit_price,
            quantity=final_quantity,
            custom_name=new_name,
            variant_name=variant_name,
        )
        settlement = self._settle(
            order,
            item,
            updated,
            price_difference,
            f"Price difference for {old_name} → {new_name} replacement",
        )

        quantity_change = None
        if final_quantity != item.quantity:
            quantity_change = QuantityChange(from_quantity=item.quantity, to_quantity=final_quantity)
        if settlement.charge is not None:
            notice = SubstitutionNotice(
                kind="item_swap_payment_required",
                order_id=order.id,
                customer_name=order.customer_name or "Customer",
                original_item=old_name,
                new_item=new_name,
                price_difference=price_difference,
                order_total=order.total_cents,
                new_order_total=updated.total_cents,
                quantity_change=quantity_change,
                payment_url=settlement.charge.checkout_url,
                reason=(
                    f"Hi {order.customer_name or 'there'}! Unfortunately, {old_name} is currently "
                    f"unavailable. We'd love to substitute it with {new_name} instead. There's a small "
                    f"price difference of {format_price(price_difference)}. Please use the payment link "
                    "below to authorize this change, and we'll have your order ready as soon as possible!"
                ),
            )
        else:
            notice = SubstitutionNotice(
                kind="item_swap",
                order_id=order.id,
                customer_name=order.customer_name or "Customer",
                original_item=old_name,
                new_item=new_name,
                price_difference=price_difference,
                order_total=updated.total_cents,
                quantity_change=quantity_change,
            )
        return self._finish(updated, notice, price_difference, settlement)

    def swap_variant(
        self, order_id: str, order_item_id: str, variant_name: str, new_price_cents: int
    ) -> MutationResult:
        order = self._open_order(order_id)
        item = order.find_item(order_item_id)
        if new_price_cents < 0:
            raise SubstitutionError("Price cannot be negative")
        variant = self._menu.require_variant(item.menu_item_id, variant_name)
        if not variant.orderable():
            raise SubstitutionError(f"{variant_display_name(item.menu_item_name, variant_name)} is not available")
        current_variant = item.variant_name or infer_variant_from_price(
            item.menu_item_name, item.unit_price_cents, item.custom_name
        )
        if current_variant == variant_name:
            raise SubstitutionError(f"Order item already uses {variant_name}")

        old_name = _line_name(item)
        new_name = variant_display_name(item.menu_item_name, variant_name)
        price_difference = (new_price_cents - item.unit_price_cents) * item.quantity
        logger.info(
            "Changing variant %s -> %s on order %s, difference=%d",
            old_name,
            new_name,
            order.id,
            price_difference,
        )

        updated = self._orders.replace_item(
            order.id,
            item.id,
            menu_item_id=item.menu_item_id,
            unit_price_cents=new_price_cents,
            quantity=item.quantity,
            custom_name=new_name,
            variant_name=variant_name,
        )
        settlement = self._settle(
            order, item, updated, price_difference, f"Variant change: {old_name} → {new_name}"
        )
        notice = SubstitutionNotice(
            kind="variant_swap",
            order_id=order.id,
            customer_name=order.customer_name or "Customer",
            original_item=old_name,
            new_item=new_name,
            price_difference=price_difference,
            order_total=updated.total_cents,
            new_order_total=updated.total_cents,
            payment_url=settlement.charge.checkout_url if settlement.charge else None,
        )
        return self._finish(updated, notice, price_difference, settlement)

    def cancel_order(self, order_id: str) -> MutationResult:
        """Cancel a whole order and refund everything that was paid."""
        order = self._open_order(order_id)
        cancelled = self._orders.set_status(order.id, OrderStatus.CANCELLED)
        try:
            refund = self._refund(order, order.total_cents)
        except PaymentServiceError:
            self._compensate(order.id, lambda: self._orders.set_status(order.id, order.status))
            raise
        notification = self._dispatcher.notify_order("cancellation", cancelled, refunded=refund is not None)
        return MutationResult(
            order=cancelled,
            substitution_type="order_cancelled",
            refund=refund,
            notification_status=notification.status,
        )

    def update_status(self, order_id: str, status: str) -> MutationResult:
        if status not in (OrderStatus.CONFIRMED, OrderStatus.READY_FOR_PICKUP):
            raise SubstitutionError(f"Use the cancel operation to set status {status}")
        order = self._open_order(order_id)
        updated = self._orders.set_status(order.id, status)
        notification_status = None
        if status == OrderStatus.READY_FOR_PICKUP and order.status != status:
            notification_status = self._dispatcher.notify_order("status_update", updated).status
        return MutationResult(
            order=updated, substitution_type="status_update", notification_status=notification_status
        )

    def _open_order(self, order_id: str) -> OrderRecord:
        order = self._orders.require_order(order_id)
        if order.status == OrderStatus.CANCELLED:
            raise SubstitutionError(f"Order {order_id} is cancelled")
        return order

    def _settle(
        self,
        original: OrderRecord,
        item: OrderItemRecord,
        updated: OrderRecord,
        price_difference: int,
        description: str,
    ) -> _Settlement:
        try:
            if price_difference > 0:
                return _Settlement(charge=self._charge(updated, price_difference, description))
            if price_difference < 0:
                return _Settlement(refund=self._refund(updated, -price_difference))
        except PaymentServiceError:
            self._compensate(
                original.id,
                lambda: self._orders.replace_item(
                    original.id,
                    item.id,
                    menu_item_id=item.menu_item_id,
                    unit_price_cents=item.unit_price_cents,
                    quantity=item.quantity,
                    custom_name=item.custom_name,
                    variant_name=item.variant_name,
                ),
            )
            raise
        return _Settlement()

    def _charge(self, order: OrderRecord, amount_cents: int, description: str) -> AdditionalCharge:
        charge = self._payment.create_additional_charge(order, amount_cents, description)
        logger.info("Additional charge %s for order %s amount=%d", charge.session_id, order.id, amount_cents)
        self._dispatcher.record_payment_event(
            order.id,
            "stripe_charge",
            "additional_charge_initiated",
            order.customer_email,
            {"session_id": charge.session_id, "amount_cents": amount_cents, "description": description},
        )
        return charge

    def _refund(self, order: OrderRecord, amount_cents: int) -> RefundRecord | None:
        if amount_cents <= 0:
            return None
        if not order.stripe_payment_id:
            logger.warning("Order %s has no payment reference; refund of %d skipped", order.id, amount_cents)
            return None
        refund = self._payment.create_refund(order.stripe_payment_id, amount_cents, order.id)
        logger.info("Refund %s for order %s amount=%d", refund.id, order.id, amount_cents)
        self._dispatcher.record_payment_event(
            order.id,
            "stripe_refund",
            "refund_processed",
            order.stripe_payment_id,
            {"refund_id": refund.id, "amount_cents": refund.amount_cents, "status": refund.status},
        )
        return refund

    def _finish(
        self,
        order: OrderRecord,
        notice: SubstitutionNotice,
        price_difference: int = 0,
        settlement: _Settlement | None = None,
        refund: RefundRecord | None = None,
    ) -> MutationResult:
        settlement = settlement or _Settlement(refund=refund)
        notification = self._dispatcher.notify_substitution(order, notice)
        return MutationResult(
            order=order,
            substitution_type=notice.kind,
            price_difference=price_difference,
            refund=settlement.refund,
            payment_url=settlement.charge.checkout_url if settlement.charge else None,
            notification_status=notification.status,
        )

    @staticmethod
    def _compensate(order_id: str, action: Callable[[], object]) -> None:
        try:
            action()
        except Exception:
            logger.exception("Compensation failed for order %s; manual review needed", order_id)
        else:
            logger.warning("Payment step failed for order %s; previous state restored", order_id)


def _line_name(item: OrderItemRecord) -> str:
    return display_name(item.menu_item_name, item.unit_price_cents, item.custom_name, item.variant_name)
