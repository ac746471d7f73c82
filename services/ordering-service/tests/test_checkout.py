from __future__ import annotations

import pytest

from conftest import assert_total_matches_lines, place_order
from ordering_service.checkout import (
    CartLine,
    CheckoutService,
    CheckoutValidationError,
    validate_customer,
)
from ordering_service.payment_client import CheckoutLine, PaymentNotCompletedError, PaymentServiceError


@pytest.fixture()
def checkout(order_repo, menu_repo, payments, dispatcher):
    return CheckoutService(order_repo, menu_repo, payments, dispatcher)


CART = [
    CartLine(menu_item_id="teriyaki", quantity=2, variant_name="salmon"),
    CartLine(menu_item_id="gyoza", quantity=1, special_instructions="extra sauce"),
]


def _paid_session(checkout, payments):
    customer = validate_customer("Ana", "ana@example.com", "(513) 555-0100", "no onions")
    started = checkout.create_checkout(customer, CART)
    payments.mark_paid(started.session_id)
    return started


def test_validate_customer_requires_name_and_email():
    with pytest.raises(CheckoutValidationError):
        validate_customer("", "ana@example.com")
    with pytest.raises(CheckoutValidationError):
        validate_customer("Ana", "  ")


@pytest.mark.parametrize("email", ["ana", "ana@", "ana@example", "a na@example.com"])
def test_validate_customer_rejects_malformed_email(email):
    with pytest.raises(CheckoutValidationError):
        validate_customer("Ana", email)


def test_validate_customer_phone():
    assert validate_customer("Ana", "ana@example.com", "+1 513-555-0100").phone == "+1 513-555-0100"
    assert validate_customer("Ana", "ana@example.com", "   ").phone is None
    with pytest.raises(CheckoutValidationError):
        validate_customer("Ana", "ana@example.com", "call me")
    with pytest.raises(CheckoutValidationError):
        validate_customer("Ana", "ana@example.com", "555-0100")


def test_create_checkout_prices_cart_from_menu(checkout, payments):
    customer = validate_customer("Ana", "ana@example.com")
    started = checkout.create_checkout(customer, CART)

    # teriyaki 1000 + salmon 200, twice; gyoza 600
    assert started.total_cents == 3000
    session = payments.sessions[started.session_id]
    assert session.metadata["total_cents"] == "3000"
    assert session.metadata["customer_email"] == "ana@example.com"
    assert session.metadata["cart_summary"] == "Teriyaki Salmon(2), Gyoza(1)"
    assert not session.paid


def test_create_checkout_rejects_unavailable_items(checkout, menu_repo):
    menu_repo.set_variant_stock("teriyaki", "salmon", "out_today")
    customer = validate_customer("Ana", "ana@example.com")

    with pytest.raises(CheckoutValidationError):
        checkout.create_checkout(customer, CART)
    with pytest.raises(CheckoutValidationError):
        checkout.create_checkout(customer, [])


def test_verify_payment_creates_order(checkout, payments, mailer):
    started = _paid_session(checkout, payments)

    verified = checkout.verify_payment(started.session_id, CART)

    order = verified.order
    assert not verified.duplicate
    assert order.status == "confirmed"
    assert order.total_cents == 3000
    assert_total_matches_lines(order)
    assert order.customer_phone == "(513) 555-0100"
    assert order.special_requests == "no onions"
    assert order.stripe_payment_id == payments.sessions[started.session_id].payment_reference
    assert [item.variant_name for item in order.items] == ["salmon", None]
    assert order.items[1].special_instructions == "extra sauce"
    assert mailer.sent[-1]["subject"].startswith("Order Confirmation")


def test_verify_same_session_twice_returns_same_order(checkout, payments, order_repo, mailer):
    started = _paid_session(checkout, payments)

    first = checkout.verify_payment(started.session_id, CART)
    second = checkout.verify_payment(started.session_id, CART)

    assert second.duplicate
    assert second.order.id == first.order.id
    assert len(order_repo.list_orders()) == 1
    assert len(mailer.sent) == 1


def test_verify_recovers_from_concurrent_insert(checkout, payments, order_repo):
    started = _paid_session(checkout, payments)
    first = checkout.verify_payment(started.session_id, CART)

    original_find = order_repo.find_by_payment_reference
    calls = []

    def find_after_race(*references):
        calls.append(references)
        # The first lookup runs before the competing insert is visible.
        if len(calls) == 1:
            return None
        return original_find(*references)

    order_repo.find_by_payment_reference = find_after_race
    second = checkout.verify_payment(started.session_id, CART)

    assert second.duplicate
    assert second.order.id == first.order.id
    assert len(order_repo.list_orders()) == 1


def test_verify_unpaid_session(checkout):
    customer = validate_customer("Ana", "ana@example.com")
    started = checkout.create_checkout(customer, CART)

    with pytest.raises(PaymentNotCompletedError):
        checkout.verify_payment(started.session_id, CART)


def test_verify_unknown_session(checkout):
    with pytest.raises(PaymentServiceError):
        checkout.verify_payment("cs_missing", CART)
    with pytest.raises(CheckoutValidationError):
        checkout.verify_payment("", CART)


def test_verify_additional_charge(checkout, payments, order_repo, notification_repo):
    order = place_order(order_repo, ("teriyaki", 1000, 1, "chicken"))
    charge = payments.create_additional_charge(order, 200, "upgrade")
    payments.mark_paid(charge.session_id)

    verified = checkout.verify_additional_charge(charge.session_id, order.id)

    assert verified.order.id == order.id
    events = [n.event for n in notification_repo.list_for_order(order.id)]
    assert "additional_charge_paid" in events


def test_verify_additional_charge_for_other_order(checkout, payments, order_repo):
    order = place_order(order_repo, ("teriyaki", 1000, 1, "chicken"))
    other = place_order(order_repo, ("gyoza", 600, 1, None), payment_reference="pi_other")
    charge = payments.create_additional_charge(order, 200, "upgrade")
    payments.mark_paid(charge.session_id)

    with pytest.raises(PaymentServiceError):
        checkout.verify_additional_charge(charge.session_id, other.id)


def test_verify_after_item_sells_out_still_creates_order(checkout, payments, menu_repo):
    customer = validate_customer("Ana", "ana@example.com")
    cart = [CartLine(menu_item_id="gyoza", quantity=1)]
    started = checkout.create_checkout(customer, cart)
    payments.mark_paid(started.session_id)
    menu_repo.set_item_stock("gyoza", "out_today")

    verified = checkout.verify_payment(started.session_id, cart)

    assert verified.order.total_cents == 600
    assert [item.menu_item_id for item in verified.order.items] == ["gyoza"]


def test_verify_builds_order_from_paid_cart_not_request_cart(checkout, payments, order_repo):
    customer = validate_customer("Ana", "ana@example.com")
    started = checkout.create_checkout(customer, [CartLine(menu_item_id="onigiri", quantity=1, variant_name="tuna")])
    payments.mark_paid(started.session_id)

    swapped_cart = [CartLine(menu_item_id="katsu-curry", quantity=10, variant_name="katsu_chicken")]
    verified = checkout.verify_payment(started.session_id, swapped_cart)

    assert verified.order.total_cents == 400
    assert [(item.menu_item_id, item.quantity) for item in verified.order.items] == [("onigiri", 1)]
    assert [order.total_cents for order in order_repo.list_orders()] == [400]


def test_verify_without_stored_cart_requires_matching_total(checkout, payments, order_repo):
    # Session created outside this service, so no priced cart was stored for it.
    session = payments.create_checkout_session(
        [CheckoutLine(name="Onigiri", unit_amount_cents=400, quantity=1)],
        {"customer_name": "Ana", "customer_email": "ana@example.com", "total_cents": "400"},
        "ana@example.com",
    )
    payments.mark_paid(session.id)

    with pytest.raises(CheckoutValidationError):
        checkout.verify_payment(session.id, [CartLine(menu_item_id="katsu-curry", quantity=10)])
    assert order_repo.list_orders() == []

    verified = checkout.verify_payment(session.id, [CartLine(menu_item_id="onigiri", quantity=1)])
    assert verified.order.total_cents == 400


def test_verify_additional_charge_twice_records_one_event(checkout, payments, order_repo, notification_repo):
    order = place_order(order_repo, ("teriyaki", 1000, 1, "chicken"))
    charge = payments.create_additional_charge(order, 200, "upgrade")
    payments.mark_paid(charge.session_id)

    first = checkout.verify_additional_charge(charge.session_id, order.id)
    second = checkout.verify_additional_charge(charge.session_id, order.id)

    assert not first.duplicate
    assert second.duplicate
    events = [n.event for n in notification_repo.list_for_order(order.id)]
    assert events.count("additional_charge_paid") == 1
