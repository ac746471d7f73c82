from __future__ import annotations

import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from typing import Iterable

import psycopg
from psycopg.rows import dict_row

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS menu_categories (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    sort_order INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS menu_items (
    id TEXT PRIMARY KEY,
    category_id TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    price_cents INTEGER NOT NULL,
    stock_status TEXT NOT NULL DEFAULT 'in_stock',
    out_until TEXT,
    is_available INTEGER NOT NULL DEFAULT 1,
    sort_order INTEGER NOT NULL DEFAULT 0,
    FOREIGN KEY (category_id) REFERENCES menu_categories (id)
);

CREATE TABLE IF NOT EXISTS menu_item_variants (
    id TEXT PRIMARY KEY,
    menu_item_id TEXT NOT NULL,
    variant_name TEXT NOT NULL,
    price_modifier_cents INTEGER NOT NULL DEFAULT 0,
    stock_status TEXT NOT NULL DEFAULT 'in_stock',
    out_until TEXT,
    sort_order INTEGER NOT NULL DEFAULT 0,
    UNIQUE (menu_item_id, variant_name),
    FOREIGN KEY (menu_item_id) REFERENCES menu_items (id)
);

CREATE TABLE IF NOT EXISTS orders (
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    total_cents INTEGER NOT NULL,
    customer_name TEXT,
    customer_email TEXT,
    customer_phone TEXT,
    special_requests TEXT,
    stripe_payment_id TEXT UNIQUE,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS order_items (
    id TEXT PRIMARY KEY,
    order_id TEXT NOT NULL,
    menu_item_id TEXT NOT NULL,
    quantity INTEGER NOT NULL,
    unit_price_cents INTEGER NOT NULL,
    special_instructions TEXT,
    custom_name TEXT,
    variant_name TEXT,
    position INTEGER NOT NULL DEFAULT 0,
    FOREIGN KEY (order_id) REFERENCES orders (id),
    FOREIGN KEY (menu_item_id) REFERENCES menu_items (id)
);

CREATE TABLE IF NOT EXISTS checkout_sessions (
    session_id TEXT PRIMARY KEY,
    order_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (order_id) REFERENCES orders (id)
);

CREATE TABLE IF NOT EXISTS checkout_drafts (
    session_id TEXT PRIMARY KEY,
    total_cents INTEGER NOT NULL,
    draft_json TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS notifications (
    id TEXT PRIMARY KEY,
    order_id TEXT NOT NULL,
    channel TEXT NOT NULL,
    event TEXT NOT NULL,
    recipient TEXT,
    payload_json TEXT,
    status TEXT NOT NULL,
    error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


def _database_url() -> str:
    """``DATABASE_URL`` wins; otherwise the Postgres URL is assembled from ``DB_*``."""
    explicit = os.environ.get("DATABASE_URL")
    if explicit:
        return explicit
    return "postgresql://{user}:{password}@{host}:{port}/{name}".format(
        user=os.environ.get("DB_USER", "ordering"),
        password=os.environ.get("DB_PASSWORD", "ordering"),
        host=os.environ.get("DB_HOST", "ordering-db"),
        port=os.environ.get("DB_PORT", "5432"),
        name=os.environ.get("DB_NAME", "ordering_service"),
    )


DATABASE_URL = _database_url()


def get_connection():
    """Open a connection, waiting for the database container to come up."""
    attempts = max(1, int(os.environ.get("DB_CONNECT_MAX_RETRIES", "30")))
    delay = float(os.environ.get("DB_CONNECT_RETRY_DELAY", "2"))
    for attempt in range(1, attempts + 1):
        try:
            return _open(DATABASE_URL)
        except (sqlite3.Error, psycopg.OperationalError) as exc:
            if attempt == attempts:
                raise
            logger.warning("Database not reachable (attempt %d/%d): %s", attempt, attempts, exc)
            time.sleep(delay)


def _open(url: str):
    if not url.startswith("sqlite://"):
        return psycopg.connect(url, autocommit=True, row_factory=dict_row)
    conn = sqlite3.connect(url[len("sqlite:///"):])
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def init_db(connection_factory=get_connection) -> None:
    """Create missing tables and seed the demo menu on first start."""
    conn = connection_factory()
    try:
        apply_schema(conn)
        seed_if_empty(conn)
    finally:
        conn.close()


def apply_schema(conn) -> None:
    if isinstance(conn, sqlite3.Connection):
        conn.executescript(SCHEMA_SQL)
    else:
        with conn.cursor() as cur:
            for statement in _statements(SCHEMA_SQL):
                cur.execute(statement)
    conn.commit()


def _statements(script: str) -> Iterable[str]:
    return (chunk.strip() for chunk in script.split(";") if chunk.strip())


@contextmanager
def transaction(conn):
    """Run the enclosed statements atomically on either driver."""
    if isinstance(conn, psycopg.Connection):
        with conn.transaction():
            yield conn
        return

    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    conn.commit()


INTEGRITY_ERRORS = (sqlite3.IntegrityError, psycopg.IntegrityError)


def seed_if_empty(conn) -> None:
    categories = [
        ("cat-rice", "Rice Bowls", 1),
        ("cat-noodles", "Noodles", 2),
        ("cat-sides", "Sides", 3),
    ]

    menu_items = [
        ("teriyaki", "cat-rice", "Teriyaki Bowl", "Grilled with house teriyaki glaze", 1000, 1),
        ("katsu-curry", "cat-rice", "Japanese Katsu Curry", "Crispy cutlet with curry sauce", 1300, 2),
        ("katsu-don", "cat-rice", "Katsu Don", "Cutlet simmered with egg over rice", 1100, 3),
        ("pho", "cat-noodles", "Pho", "Slow-simmered broth with rice noodles", 1000, 1),
        ("udon", "cat-noodles", "Udon", "Thick wheat noodles in dashi broth", 1000, 2),
        ("curry-udon", "cat-noodles", "Curry Udon", "Udon in Japanese curry broth", 1300, 3),
        ("onigiri", "cat-sides", "Onigiri", "Hand-pressed rice ball", 400, 1),
        ("gyoza", "cat-sides", "Gyoza", "Pan-fried pork dumplings", 600, 2),
    ]

    variants = [
        ("teriyaki-chicken", "teriyaki", "chicken", 0, 1),
        ("teriyaki-salmon", "teriyaki", "salmon", 200, 2),
        ("teriyaki-tofu", "teriyaki", "tofu", -100, 3),
        ("katsu-curry-chicken", "katsu-curry", "katsu_chicken", 0, 1),
        ("katsu-curry-pork", "katsu-curry", "katsu_pork", 100, 2),
        ("katsu-don-chicken", "katsu-don", "don_chicken", 0, 1),
        ("katsu-don-pork", "katsu-don", "don_pork", 100, 2),
        ("pho-chicken", "pho", "chicken", 0, 1),
        ("pho-beef", "pho", "beef", 100, 2),
        ("udon-tofu", "udon", "tofu", 0, 1),
        ("udon-chicken", "udon", "chicken", 100, 2),
        ("udon-beef", "udon", "beef", 200, 3),
        ("udon-shrimp", "udon", "shrimp_tempura", 300, 4),
        ("curry-udon-chicken", "curry-udon", "katsu_chicken", 0, 1),
        ("curry-udon-pork", "curry-udon", "katsu_pork", 0, 2),
        ("onigiri-salmon", "onigiri", "salmon", 0, 1),
        ("onigiri-tuna", "onigiri", "tuna", 0, 2),
        ("onigiri-karaage", "onigiri", "chicken_karaage", 50, 3),
    ]

    if conn.execute("SELECT id FROM menu_items LIMIT 1;").fetchone() is not None:
        return

    placeholder = placeholder_for(conn)
    insert_categories = (
        f"INSERT INTO menu_categories (id, name, sort_order) VALUES ({placeholder}, {placeholder}, {placeholder})"
    )
    insert_menu_items = (
        "INSERT INTO menu_items (id, category_id, name, description, price_cents, sort_order)"
        f" VALUES ({placeholder}, {placeholder}, {placeholder}, {placeholder}, {placeholder}, {placeholder})"
    )
    insert_variants = (
        "INSERT INTO menu_item_variants (id, menu_item_id, variant_name, price_modifier_cents, sort_order)"
        f" VALUES ({placeholder}, {placeholder}, {placeholder}, {placeholder}, {placeholder})"
    )

    with transaction(conn):
        cur = conn.cursor()
        cur.executemany(insert_categories, categories)
        cur.executemany(insert_menu_items, menu_items)
        cur.executemany(insert_variants, variants)
    logger.info("Seeded demo menu: %d items, %d variants", len(menu_items), len(variants))


def placeholder_for(conn) -> str:
    module = conn.__class__.__module__
    return "%s" if "psycopg" in module else "?"
