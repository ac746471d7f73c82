from __future__ import annotations

import sqlite3

import pytest

from ordering_service.database import apply_schema, seed_if_empty
from ordering_service.mailer import LogMailer, MailerError, NotificationDispatcher
from ordering_service.payment_client import MockPaymentClient, PaymentServiceError
from ordering_service.repository import (
    MenuRepository,
    NewOrder,
    NewOrderItem,
    NotificationRepository,
    OrderRepository,
)
from ordering_service.substitution import SubstitutionService


@pytest.fixture()
def connection_factory(tmp_path):
    db_path = tmp_path / "ordering.db"

    def factory() -> sqlite3.Connection:
        conn = sqlite3.connect(db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    with factory() as conn:
        apply_schema(conn)
        seed_if_empty(conn)

    return factory


@pytest.fixture()
def menu_repo(connection_factory):
    return MenuRepository(connection_factory=connection_factory)


@pytest.fixture()
def order_repo(connection_factory):
    return OrderRepository(connection_factory=connection_factory)


@pytest.fixture()
def notification_repo(connection_factory):
    return NotificationRepository(connection_factory=connection_factory)


@pytest.fixture()
def payments():
    return MockPaymentClient()


@pytest.fixture()
def mailer():
    return LogMailer()


@pytest.fixture()
def dispatcher(notification_repo, mailer):
    return NotificationDispatcher(
        notification_repo,
        mailer,
        restaurant_email="kitchen@example.com",
        production=True,
    )


@pytest.fixture()
def service(order_repo, menu_repo, payments, dispatcher):
    return SubstitutionService(order_repo, menu_repo, payments, dispatcher)


class FailingMailer:
    def send(self, to, subject, html):
        raise MailerError("provider down")


class FailingRefundPayments(MockPaymentClient):
    def create_refund(self, payment_reference, amount_cents, order_id):
        raise PaymentServiceError("refund rejected")


class FailingChargePayments(MockPaymentClient):
    def create_additional_charge(self, order, amount_cents, description):
        raise PaymentServiceError("card declined")


def place_order(order_repo, *lines, payment_reference="pi_test_123", email="ana@example.com"):
    """Create a confirmed order from ``(menu_item_id, unit_price_cents, quantity, variant_name)`` tuples."""
    draft = NewOrder(
        customer_name="Ana",
        customer_email=email,
        customer_phone=None,
        special_requests=None,
        items=tuple(
            NewOrderItem(
                menu_item_id=menu_item_id,
                quantity=quantity,
                unit_price_cents=unit_price,
                variant_name=variant_name,
            )
            for menu_item_id, unit_price, quantity, variant_name in lines
        ),
    )
    return order_repo.create_order(draft, payment_reference)


def assert_total_matches_lines(order):
    assert order.total_cents == sum(item.unit_price_cents * item.quantity for item in order.items)
