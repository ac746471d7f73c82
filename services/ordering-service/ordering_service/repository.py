from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from .database import get_connection, placeholder_for, transaction
from .stock import StockStatus, is_orderable, normalize_stock_update, parse_timestamp


class OrderNotFoundError(Exception):
    """Raised when an order identifier is unknown."""


class OrderItemNotFoundError(Exception):
    """Raised when an order line does not belong to the given order."""


class MenuItemNotFoundError(Exception):
    """Raised when a menu item identifier is unknown."""


class VariantNotFoundError(Exception):
    """Raised when a menu item has no variant with the requested name."""


class OrderStatus:
    CONFIRMED = "confirmed"
    READY_FOR_PICKUP = "ready_for_pickup"
    CANCELLED = "cancelled"

    ALL = (CONFIRMED, READY_FOR_PICKUP, CANCELLED)


@dataclass(frozen=True)
class CategoryRecord:
    id: str
    name: str
    sort_order: int


@dataclass(frozen=True)
class MenuItemRecord:
    id: str
    category_id: str
    name: str
    description: Optional[str]
    price_cents: int
    stock_status: str
    out_until: Optional[str]
    is_available: bool
    sort_order: int

    def orderable(self, now: datetime | None = None) -> bool:
        return self.is_available and is_orderable(self.stock_status, self.out_until, now)


@dataclass(frozen=True)
class VariantRecord:
    id: str
    menu_item_id: str
    variant_name: str
    price_modifier_cents: int
    stock_status: str
    out_until: Optional[str]
    sort_order: int

    def orderable(self, now: datetime | None = None) -> bool:
        return is_orderable(self.stock_status, self.out_until, now)


@dataclass(frozen=True)
class OrderItemRecord:
    id: str
    order_id: str
    menu_item_id: str
    quantity: int
    unit_price_cents: int
    special_instructions: Optional[str]
    custom_name: Optional[str]
    variant_name: Optional[str]
    menu_item_name: str
    position: int

    @property
    def subtotal_cents(self) -> int:
        return self.unit_price_cents * self.quantity


@dataclass(frozen=True)
class OrderRecord:
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
    items: tuple[OrderItemRecord, ...] = ()

    def find_item(self, order_item_id: str) -> OrderItemRecord:
        for item in self.items:
            if item.id == order_item_id:
                return item
        raise OrderItemNotFoundError(f"Order item {order_item_id} not found in order {self.id}")


@dataclass(frozen=True)
class NewOrderItem:
    menu_item_id: str
    quantity: int
    unit_price_cents: int
    special_instructions: Optional[str] = None
    custom_name: Optional[str] = None
    variant_name: Optional[str] = None


@dataclass(frozen=True)
class NewOrder:
    customer_name: Optional[str]
    customer_email: Optional[str]
    customer_phone: Optional[str]
    special_requests: Optional[str]
    items: Sequence[NewOrderItem] = field(default_factory=tuple)

    @property
    def total_cents(self) -> int:
        return sum(item.unit_price_cents * item.quantity for item in self.items)


@dataclass(frozen=True)
class NotificationRecord:
    id: str
    order_id: str
    channel: str
    event: str
    recipient: Optional[str]
    payload: Optional[dict]
    status: str
    error: Optional[str]
    created_at: str
    updated_at: str


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class _Repository:
    def __init__(self, connection_factory=get_connection):
        self._connection_factory = connection_factory

    @contextmanager
    def _connection(self):
        conn = self._connection_factory()
        try:
            yield conn
        finally:
            conn.close()


class MenuRepository(_Repository):
    """Menu, variant and stock-status access."""

    def list_categories(self) -> List[CategoryRecord]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT id, name, sort_order FROM menu_categories ORDER BY sort_order ASC;"
            ).fetchall()
        return [CategoryRecord(id=row["id"], name=row["name"], sort_order=row["sort_order"]) for row in rows]

    def list_menu_items(self, available_only: bool = True) -> List[MenuItemRecord]:
        query = f"SELECT {_MENU_ITEM_COLUMNS} FROM menu_items"
        if available_only:
            query += " WHERE is_available = 1"
        query += " ORDER BY name ASC;"
        with self._connection() as conn:
            rows = conn.execute(query).fetchall()
        return [_menu_item_from_row(row) for row in rows]

    def get_menu_item(self, menu_item_id: str) -> MenuItemRecord | None:
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            row = conn.execute(
                f"SELECT {_MENU_ITEM_COLUMNS} FROM menu_items WHERE id = {placeholder};",
                (menu_item_id,),
            ).fetchone()
        return _menu_item_from_row(row) if row is not None else None

    def require_menu_item(self, menu_item_id: str) -> MenuItemRecord:
        record = self.get_menu_item(menu_item_id)
        if record is None:
            raise MenuItemNotFoundError(f"Menu item {menu_item_id} not found")
        return record

    def list_variants(self, menu_item_id: str) -> List[VariantRecord]:
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            rows = conn.execute(
                f"""
                SELECT {_VARIANT_COLUMNS}
                FROM menu_item_variants
                WHERE menu_item_id = {placeholder}
                ORDER BY sort_order ASC;
                """,
                (menu_item_id,),
            ).fetchall()
        return [_variant_from_row(row) for row in rows]

    def get_variant(self, menu_item_id: str, variant_name: str) -> VariantRecord | None:
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            row = conn.execute(
                f"""
                SELECT {_VARIANT_COLUMNS}
                FROM menu_item_variants
                WHERE menu_item_id = {placeholder} AND variant_name = {placeholder};
                """,
                (menu_item_id, variant_name),
            ).fetchone()
        return _variant_from_row(row) if row is not None else None

    def require_variant(self, menu_item_id: str, variant_name: str) -> VariantRecord:
        record = self.get_variant(menu_item_id, variant_name)
        if record is None:
            raise VariantNotFoundError(f"Variant {variant_name} not found for menu item {menu_item_id}")
        return record

    def set_item_stock(
        self, menu_item_id: str, status: str, out_until: str | datetime | None = None
    ) -> MenuItemRecord:
        status, until = normalize_stock_update(status, out_until)
        self.require_menu_item(menu_item_id)
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            with transaction(conn):
                conn.execute(
                    f"""
                    UPDATE menu_items
                    SET stock_status = {placeholder}, out_until = {placeholder}
                    WHERE id = {placeholder};
                    """,
                    (status, until, menu_item_id),
                )
        return self.require_menu_item(menu_item_id)

    def set_variant_stock(
        self,
        menu_item_id: str,
        variant_name: str,
        status: str,
        out_until: str | datetime | None = None,
    ) -> VariantRecord:
        status, until = normalize_stock_update(status, out_until)
        self.require_variant(menu_item_id, variant_name)
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            with transaction(conn):
                conn.execute(
                    f"""
                    UPDATE menu_item_variants
                    SET stock_status = {placeholder}, out_until = {placeholder}
                    WHERE menu_item_id = {placeholder} AND variant_name = {placeholder};
                    """,
                    (status, until, menu_item_id, variant_name),
                )
        return self.require_variant(menu_item_id, variant_name)

    def reset_expired_stock(self, now: datetime | None = None) -> int:
        """Put ``out_today`` and elapsed ``out_until`` rows back in stock; returns the row count."""
        now = now or datetime.now(timezone.utc)
        reset = 0
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            with transaction(conn):
                for table in ("menu_items", "menu_item_variants"):
                    rows = conn.execute(
                        f"SELECT id, stock_status, out_until FROM {table} WHERE stock_status IN ({placeholder}, {placeholder});",
                        (StockStatus.OUT_TODAY.value, StockStatus.OUT_UNTIL.value),
                    ).fetchall()
                    for row in rows:
                        if row["stock_status"] == StockStatus.OUT_UNTIL.value:
                            until = parse_timestamp(row["out_until"])
                            if until is not None and until > now:
                                continue
                        conn.execute(
                            f"UPDATE {table} SET stock_status = {placeholder}, out_until = NULL WHERE id = {placeholder};",
                            (StockStatus.IN_STOCK.value, row["id"]),
                        )
                        reset += 1
        return reset

    def replacement_candidates(self, menu_item_id: str, now: datetime | None = None) -> List[MenuItemRecord]:
        current = self.require_menu_item(menu_item_id)
        return [
            item
            for item in self.list_menu_items()
            if item.category_id == current.category_id and item.id != current.id and item.orderable(now)
        ]

    def variant_alternatives(
        self, menu_item_id: str, exclude_variant: str | None = None, now: datetime | None = None
    ) -> List[VariantRecord]:
        return [
            variant
            for variant in self.list_variants(menu_item_id)
            if variant.variant_name != exclude_variant and variant.orderable(now)
        ]


class OrderRepository(_Repository):
    """Orders and their line items. Every write keeps ``total_cents`` equal to the sum of the lines."""

    def get_order(self, order_id: str) -> OrderRecord | None:
        with self._connection() as conn:
            return self._load_order(conn, order_id)

    def require_order(self, order_id: str) -> OrderRecord:
        record = self.get_order(order_id)
        if record is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return record

    def list_orders(self, limit: int = 50, status: str | None = None) -> List[OrderRecord]:
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            if status is None:
                rows = conn.execute(
                    f"SELECT id FROM orders ORDER BY created_at DESC LIMIT {placeholder};",
                    (limit,),
                ).fetchall()
            else:
                rows = conn.execute(
                    f"""
                    SELECT id FROM orders
                    WHERE status = {placeholder}
                    ORDER BY created_at DESC
                    LIMIT {placeholder};
                    """,
                    (status, limit),
                ).fetchall()
            return [self._load_order(conn, row["id"]) for row in rows]

    def find_by_payment_reference(self, *references: str | None) -> OrderRecord | None:
        candidates = [ref for ref in references if ref]
        if not candidates:
            return None
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            for reference in candidates:
                row = conn.execute(
                    f"SELECT id FROM orders WHERE stripe_payment_id = {placeholder};",
                    (reference,),
                ).fetchone()
                if row is not None:
                    return self._load_order(conn, row["id"])
                row = conn.execute(
                    f"SELECT order_id FROM checkout_sessions WHERE session_id = {placeholder};",
                    (reference,),
                ).fetchone()
                if row is not None:
                    return self._load_order(conn, row["order_id"])
        return None

    def save_checkout_draft(self, session_id: str, draft: NewOrder) -> None:
        """Keep the priced cart of a checkout session until the payment is verified."""
        payload = {
            "customer_name": draft.customer_name,
            "customer_email": draft.customer_email,
            "customer_phone": draft.customer_phone,
            "special_requests": draft.special_requests,
            "items": [asdict(item) for item in draft.items],
        }
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            with transaction(conn):
                conn.execute(
                    f"""
                    INSERT INTO checkout_drafts (session_id, total_cents, draft_json, created_at)
                    VALUES ({placeholder}, {placeholder}, {placeholder}, {placeholder});
                    """,
                    (session_id, draft.total_cents, json.dumps(payload), _now()),
                )

    def load_checkout_draft(self, session_id: str) -> NewOrder | None:
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            row = conn.execute(
                f"SELECT draft_json FROM checkout_drafts WHERE session_id = {placeholder};",
                (session_id,),
            ).fetchone()
        if row is None:
            return None
        payload = json.loads(row["draft_json"])
        return NewOrder(
            customer_name=payload["customer_name"],
            customer_email=payload["customer_email"],
            customer_phone=payload["customer_phone"],
            special_requests=payload["special_requests"],
            items=tuple(NewOrderItem(**item) for item in payload["items"]),
        )

    def create_order(
        self, draft: NewOrder, payment_reference: str | None, session_id: str | None = None
    ) -> OrderRecord:
        """Insert order, lines and the checkout idempotency key in one transaction.

        A second delivery of the same session violates the unique payment
        reference or the ``checkout_sessions`` key and rolls the whole insert back.
        """
        order_id = str(uuid.uuid4())
        now = _now()
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            with transaction(conn):
                conn.execute(
                    f"""
                    INSERT INTO orders (
                        id, status, total_cents, customer_name, customer_email, customer_phone,
                        special_requests, stripe_payment_id, created_at, updated_at
                    ) VALUES ({placeholder}, {placeholder}, {placeholder}, {placeholder}, {placeholder},
                              {placeholder}, {placeholder}, {placeholder}, {placeholder}, {placeholder});
                    """,
                    (
                        order_id,
                        OrderStatus.CONFIRMED,
                        draft.total_cents,
                        draft.customer_name,
                        draft.customer_email,
                        draft.customer_phone,
                        draft.special_requests,
                        payment_reference,
                        now,
                        now,
                    ),
                )
                for position, item in enumerate(draft.items):
                    self._insert_item(
                        conn,
                        OrderItemRecord(
                            id=str(uuid.uuid4()),
                            order_id=order_id,
                            menu_item_id=item.menu_item_id,
                            quantity=item.quantity,
                            unit_price_cents=item.unit_price_cents,
                            special_instructions=item.special_instructions,
                            custom_name=item.custom_name,
                            variant_name=item.variant_name,
                            menu_item_name="",
                            position=position,
                        ),
                    )
                if session_id:
                    conn.execute(
                        f"""
                        INSERT INTO checkout_sessions (session_id, order_id, created_at)
                        VALUES ({placeholder}, {placeholder}, {placeholder});
                        """,
                        (session_id, order_id, now),
                    )
            return self._load_order(conn, order_id)

    def replace_item(
        self,
        order_id: str,
        order_item_id: str,
        *,
        menu_item_id: str,
        unit_price_cents: int,
        quantity: int,
        custom_name: str | None,
        variant_name: str | None,
    ) -> OrderRecord:
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            with transaction(conn):
                cursor = conn.execute(
                    f"""
                    UPDATE order_items
                    SET menu_item_id = {placeholder},
                        unit_price_cents = {placeholder},
                        quantity = {placeholder},
                        custom_name = {placeholder},
                        variant_name = {placeholder}
                    WHERE id = {placeholder} AND order_id = {placeholder};
                    """,
                    (
                        menu_item_id,
                        unit_price_cents,
                        quantity,
                        custom_name,
                        variant_name,
                        order_item_id,
                        order_id,
                    ),
                )
                if cursor.rowcount == 0:
                    raise OrderItemNotFoundError(
                        f"Order item {order_item_id} not found in order {order_id}"
                    )
                self._recompute_total(conn, order_id)
            return self._load_order(conn, order_id)

    def remove_item(self, order_id: str, order_item_id: str) -> OrderRecord:
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            with transaction(conn):
                cursor = conn.execute(
                    f"DELETE FROM order_items WHERE id = {placeholder} AND order_id = {placeholder};",
                    (order_item_id, order_id),
                )
                if cursor.rowcount == 0:
                    raise OrderItemNotFoundError(
                        f"Order item {order_item_id} not found in order {order_id}"
                    )
                self._recompute_total(conn, order_id)
            return self._load_order(conn, order_id)

    def restore_item(self, item: OrderItemRecord) -> OrderRecord:
        """Re-insert a previously removed line; used to compensate a failed refund."""
        with self._connection() as conn:
            with transaction(conn):
                self._insert_item(conn, item)
                self._recompute_total(conn, item.order_id)
            return self._load_order(conn, item.order_id)

    def set_status(self, order_id: str, status: str) -> OrderRecord:
        if status not in OrderStatus.ALL:
            raise ValueError(f"Unknown order status: {status}")
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            with transaction(conn):
                cursor = conn.execute(
                    f"""
                    UPDATE orders SET status = {placeholder}, updated_at = {placeholder}
                    WHERE id = {placeholder};
                    """,
                    (status, _now(), order_id),
                )
                if cursor.rowcount == 0:
                    raise OrderNotFoundError(f"Order {order_id} not found")
            return self._load_order(conn, order_id)

    def _insert_item(self, conn, item: OrderItemRecord) -> None:
        placeholder = placeholder_for(conn)
        conn.execute(
            f"""
            INSERT INTO order_items (
                id, order_id, menu_item_id, quantity, unit_price_cents,
                special_instructions, custom_name, variant_name, position
            ) VALUES ({placeholder}, {placeholder}, {placeholder}, {placeholder}, {placeholder},
                      {placeholder}, {placeholder}, {placeholder}, {placeholder});
            """,
            (
                item.id,
                item.order_id,
                item.menu_item_id,
                item.quantity,
                item.unit_price_cents,
                item.special_instructions,
                item.custom_name,
                item.variant_name,
                item.position,
            ),
        )

    def _recompute_total(self, conn, order_id: str) -> None:
        placeholder = placeholder_for(conn)
        conn.execute(
            f"""
            UPDATE orders
            SET total_cents = (
                    SELECT COALESCE(SUM(unit_price_cents * quantity), 0)
                    FROM order_items
                    WHERE order_id = {placeholder}
                ),
                updated_at = {placeholder}
            WHERE id = {placeholder};
            """,
            (order_id, _now(), order_id),
        )

    def _load_order(self, conn, order_id: str) -> OrderRecord | None:
        placeholder = placeholder_for(conn)
        row = conn.execute(
            f"""
            SELECT id, status, total_cents, customer_name, customer_email, customer_phone,
                   special_requests, stripe_payment_id, created_at, updated_at
            FROM orders
            WHERE id = {placeholder};
            """,
            (order_id,),
        ).fetchone()
        if row is None:
            return None
        item_rows = conn.execute(
            f"""
            SELECT oi.id, oi.order_id, oi.menu_item_id, oi.quantity, oi.unit_price_cents,
                   oi.special_instructions, oi.custom_name, oi.variant_name, oi.position,
                   mi.name AS menu_item_name
            FROM order_items oi
            LEFT JOIN menu_items mi ON mi.id = oi.menu_item_id
            WHERE oi.order_id = {placeholder}
            ORDER BY oi.position ASC;
            """,
            (order_id,),
        ).fetchall()
        items = tuple(
            OrderItemRecord(
                id=item["id"],
                order_id=item["order_id"],
                menu_item_id=item["menu_item_id"],
                quantity=item["quantity"],
                unit_price_cents=item["unit_price_cents"],
                special_instructions=item["special_instructions"],
                custom_name=item["custom_name"],
                variant_name=item["variant_name"],
                menu_item_name=item["menu_item_name"] or "",
                position=item["position"],
            )
            for item in item_rows
        )
        return OrderRecord(
            id=row["id"],
            status=row["status"],
            total_cents=row["total_cents"],
            customer_name=row["customer_name"],
            customer_email=row["customer_email"],
            customer_phone=row["customer_phone"],
            special_requests=row["special_requests"],
            stripe_payment_id=row["stripe_payment_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            items=items,
        )


class NotificationRepository(_Repository):
    """Outbox of customer emails plus a log of charge/refund events."""

    def add(
        self,
        order_id: str,
        channel: str,
        event: str,
        recipient: str | None,
        payload: dict | None,
        status: str = "pending",
        error: str | None = None,
    ) -> NotificationRecord:
        notification_id = str(uuid.uuid4())
        now = _now()
        payload_json = json.dumps(payload) if payload is not None else None
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            with transaction(conn):
                conn.execute(
                    f"""
                    INSERT INTO notifications (
                        id, order_id, channel, event, recipient, payload_json,
                        status, error, created_at, updated_at
                    ) VALUES ({placeholder}, {placeholder}, {placeholder}, {placeholder}, {placeholder},
                              {placeholder}, {placeholder}, {placeholder}, {placeholder}, {placeholder});
                    """,
                    (
                        notification_id,
                        order_id,
                        channel,
                        event,
                        recipient,
                        payload_json,
                        status,
                        error,
                        now,
                        now,
                    ),
                )
        return NotificationRecord(
            id=notification_id,
            order_id=order_id,
            channel=channel,
            event=event,
            recipient=recipient,
            payload=payload,
            status=status,
            error=error,
            created_at=now,
            updated_at=now,
        )

    def mark(self, notification_id: str, status: str, error: str | None = None) -> None:
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            with transaction(conn):
                conn.execute(
                    f"""
                    UPDATE notifications
                    SET status = {placeholder}, error = {placeholder}, updated_at = {placeholder}
                    WHERE id = {placeholder};
                    """,
                    (status, error, _now(), notification_id),
                )

    def list_for_order(self, order_id: str) -> List[NotificationRecord]:
        return self._select("WHERE order_id = {p} ORDER BY created_at ASC", (order_id,))

    def list_undelivered(self, channel: str = "email", limit: int = 100) -> List[NotificationRecord]:
        return self._select(
            "WHERE channel = {p} AND status IN ('pending', 'failed') ORDER BY created_at ASC LIMIT {p}",
            (channel, limit),
        )

    def _select(self, clause: str, params: tuple) -> List[NotificationRecord]:
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            rows = conn.execute(
                f"""
                SELECT id, order_id, channel, event, recipient, payload_json,
                       status, error, created_at, updated_at
                FROM notifications
                {clause.format(p=placeholder)};
                """,
                params,
            ).fetchall()
        return [
            NotificationRecord(
                id=row["id"],
                order_id=row["order_id"],
                channel=row["channel"],
                event=row["event"],
                recipient=row["recipient"],
                payload=json.loads(row["payload_json"]) if row["payload_json"] else None,
                status=row["status"],
                error=row["error"],
                created_at=row["created_at"],
                updated_at=row["updated_at"],
            )
            for row in rows
        ]


_MENU_ITEM_COLUMNS = (
    "id, category_id, name, description, price_cents, stock_status, out_until, is_available, sort_order"
)
_VARIANT_COLUMNS = (
    "id, menu_item_id, variant_name, price_modifier_cents, stock_status, out_until, sort_order"
)


def _menu_item_from_row(row) -> MenuItemRecord:
    return MenuItemRecord(
        id=row["id"],
        category_id=row["category_id"],
        name=row["name"],
        description=row["description"],
        price_cents=row["price_cents"],
        stock_status=row["stock_status"],
        out_until=row["out_until"],
        is_available=bool(row["is_available"]),
        sort_order=row["sort_order"],
    )


def _variant_from_row(row) -> VariantRecord:
    return VariantRecord(
        id=row["id"],
        menu_item_id=row["menu_item_id"],
        variant_name=row["variant_name"],
        price_modifier_cents=row["price_modifier_cents"],
        stock_status=row["stock_status"],
        out_until=row["out_until"],
        sort_order=row["sort_order"],
    )
