from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import assert_total_matches_lines, place_order
from ordering_service.database import INTEGRITY_ERRORS
from ordering_service.repository import (
    MenuItemNotFoundError,
    NewOrder,
    OrderItemNotFoundError,
    OrderNotFoundError,
    OrderStatus,
    VariantNotFoundError,
)
from ordering_service.stock import StockUpdateError, is_orderable, normalize_stock_update


def test_seeded_menu(menu_repo):
    categories = menu_repo.list_categories()
    assert [category.id for category in categories] == ["cat-rice", "cat-noodles", "cat-sides"]
    teriyaki = menu_repo.require_menu_item("teriyaki")
    assert teriyaki.price_cents == 1000
    assert [v.variant_name for v in menu_repo.list_variants("teriyaki")] == ["chicken", "salmon", "tofu"]
    assert menu_repo.require_variant("teriyaki", "tofu").price_modifier_cents == -100


def test_missing_menu_rows(menu_repo):
    with pytest.raises(MenuItemNotFoundError):
        menu_repo.require_menu_item("sushi")
    with pytest.raises(VariantNotFoundError):
        menu_repo.require_variant("teriyaki", "eel")


def test_create_order_total_matches_lines(order_repo):
    order = place_order(order_repo, ("teriyaki", 1200, 2, "salmon"), ("gyoza", 600, 1, None))

    assert order.status == OrderStatus.CONFIRMED
    assert order.total_cents == 3000
    assert_total_matches_lines(order)
    assert [item.menu_item_name for item in order.items] == ["Teriyaki Bowl", "Gyoza"]
    assert [item.position for item in order.items] == [0, 1]


def test_payment_reference_is_unique(order_repo):
    place_order(order_repo, ("gyoza", 600, 1, None), payment_reference="pi_same")

    with pytest.raises(INTEGRITY_ERRORS):
        place_order(order_repo, ("gyoza", 600, 1, None), payment_reference="pi_same")

    assert len(order_repo.list_orders()) == 1


def test_find_by_payment_reference_checks_sessions(order_repo):
    draft = NewOrder(customer_name="Ana", customer_email=None, customer_phone=None, special_requests=None)
    order = order_repo.create_order(draft, "pi_abc", session_id="cs_abc")

    assert order_repo.find_by_payment_reference("pi_abc").id == order.id
    assert order_repo.find_by_payment_reference(None, "cs_abc").id == order.id
    assert order_repo.find_by_payment_reference("cs_unknown") is None


def test_replace_and_remove_keep_total_in_sync(order_repo):
    order = place_order(order_repo, ("teriyaki", 1000, 1, "chicken"), ("gyoza", 600, 2, None))

    swapped = order_repo.replace_item(
        order.id,
        order.items[0].id,
        menu_item_id="pho",
        unit_price_cents=1100,
        quantity=2,
        custom_name="Pho (Beef)",
        variant_name="beef",
    )
    assert swapped.total_cents == 3400
    assert_total_matches_lines(swapped)

    removed = order_repo.remove_item(order.id, order.items[1].id)
    assert removed.total_cents == 2200
    assert_total_matches_lines(removed)

    restored = order_repo.restore_item(order.items[1])
    assert restored.total_cents == 3400
    assert_total_matches_lines(restored)


def test_mutating_unknown_rows(order_repo):
    order = place_order(order_repo, ("gyoza", 600, 1, None))

    with pytest.raises(OrderItemNotFoundError):
        order_repo.remove_item(order.id, "missing")
    with pytest.raises(OrderNotFoundError):
        order_repo.set_status("missing", OrderStatus.CANCELLED)
    with pytest.raises(ValueError):
        order_repo.set_status(order.id, "lost")
    assert order_repo.require_order(order.id).total_cents == 600


def test_list_orders_by_status(order_repo):
    first = place_order(order_repo, ("gyoza", 600, 1, None), payment_reference="pi_1")
    place_order(order_repo, ("gyoza", 600, 1, None), payment_reference="pi_2")
    order_repo.set_status(first.id, OrderStatus.READY_FOR_PICKUP)

    ready = order_repo.list_orders(status=OrderStatus.READY_FOR_PICKUP)
    assert [order.id for order in ready] == [first.id]
    assert len(order_repo.list_orders()) == 2


def test_stock_status_controls_orderability(menu_repo):
    assert menu_repo.set_item_stock("gyoza", "low_stock").orderable()
    assert not menu_repo.set_item_stock("gyoza", "out_today").orderable()
    assert not menu_repo.set_variant_stock("pho", "beef", "out_indefinite").orderable()

    future = datetime.now(timezone.utc) + timedelta(hours=2)
    record = menu_repo.set_item_stock("udon", "out_until", future.isoformat())
    assert not record.orderable()
    assert record.orderable(now=future + timedelta(minutes=1))


def test_out_until_requires_timestamp(menu_repo):
    with pytest.raises(StockUpdateError):
        menu_repo.set_item_stock("udon", "out_until")
    with pytest.raises(StockUpdateError):
        menu_repo.set_item_stock("udon", "out_until", "next tuesday")
    with pytest.raises(StockUpdateError):
        menu_repo.set_item_stock("udon", "sold_out")


def test_back_in_stock_clears_out_until(menu_repo):
    future = datetime.now(timezone.utc) + timedelta(days=1)
    menu_repo.set_item_stock("udon", "out_until", future)
    record = menu_repo.set_item_stock("udon", "in_stock")
    assert record.out_until is None


def test_reset_expired_stock(menu_repo):
    now = datetime.now(timezone.utc)
    menu_repo.set_item_stock("gyoza", "out_today")
    menu_repo.set_item_stock("udon", "out_until", now - timedelta(minutes=5))
    menu_repo.set_item_stock("pho", "out_until", now + timedelta(hours=3))
    menu_repo.set_variant_stock("teriyaki", "salmon", "out_today")
    menu_repo.set_item_stock("onigiri", "out_indefinite")

    assert menu_repo.reset_expired_stock(now=now) == 3

    assert menu_repo.require_menu_item("gyoza").stock_status == "in_stock"
    assert menu_repo.require_menu_item("udon").stock_status == "in_stock"
    assert menu_repo.require_menu_item("pho").stock_status == "out_until"
    assert menu_repo.require_variant("teriyaki", "salmon").stock_status == "in_stock"
    assert menu_repo.require_menu_item("onigiri").stock_status == "out_indefinite"


def test_replacement_candidates_same_category_and_orderable(menu_repo):
    menu_repo.set_item_stock("katsu-don", "out_today")

    candidates = [item.id for item in menu_repo.replacement_candidates("teriyaki")]

    assert candidates == ["katsu-curry"]


def test_variant_alternatives(menu_repo):
    menu_repo.set_variant_stock("udon", "beef", "out_today")

    alternatives = menu_repo.variant_alternatives("udon", exclude_variant="tofu")

    assert [variant.variant_name for variant in alternatives] == ["chicken", "shrimp_tempura"]


def test_is_orderable_naive_timestamp_is_utc():
    now = datetime(2025, 7, 29, 12, 0, tzinfo=timezone.utc)
    assert is_orderable("out_until", "2025-07-29T11:00:00", now=now)
    assert not is_orderable("out_until", "2025-07-29T13:00:00", now=now)
    assert not is_orderable("out_until", None, now=now)


def test_normalize_stock_update_drops_until_for_other_statuses():
    assert normalize_stock_update("out_today", "2025-07-29T11:00:00") == ("out_today", None)
    assert normalize_stock_update("out_until", "2025-07-29T11:00:00") == (
        "out_until",
        "2025-07-29T11:00:00+00:00",
    )
