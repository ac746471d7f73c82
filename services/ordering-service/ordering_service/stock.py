from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum


class StockStatus(str, Enum):
    IN_STOCK = "in_stock"
    LOW_STOCK = "low_stock"
    OUT_TODAY = "out_today"
    OUT_INDEFINITE = "out_indefinite"
    OUT_UNTIL = "out_until"


ORDERABLE_STATUSES = frozenset({StockStatus.IN_STOCK, StockStatus.LOW_STOCK})


class StockUpdateError(ValueError):
    """Raised for stock changes that are missing or carry a bogus timestamp."""


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_orderable(status: str, out_until: str | None = None, now: datetime | None = None) -> bool:
    """An ``out_until`` item becomes orderable again once its timestamp has passed."""
    status = StockStatus(status)
    if status in ORDERABLE_STATUSES:
        return True
    if status is StockStatus.OUT_UNTIL:
        until = parse_timestamp(out_until)
        if until is None:
            return False
        return until <= (now or datetime.now(timezone.utc))
    return False


def normalize_stock_update(status: str, out_until: str | datetime | None) -> tuple[str, str | None]:
    """Validate a staff stock change and return the (status, out_until) pair to persist."""
    try:
        status = StockStatus(status)
    except ValueError as exc:
        raise StockUpdateError(f"Unknown stock status: {status}") from exc
    if status is not StockStatus.OUT_UNTIL:
        return status.value, None
    if out_until is None or out_until == "":
        raise StockUpdateError("out_until requires a timestamp")
    if isinstance(out_until, datetime):
        until = out_until if out_until.tzinfo else out_until.replace(tzinfo=timezone.utc)
    else:
        try:
            until = parse_timestamp(out_until)
        except ValueError as exc:
            raise StockUpdateError(f"Invalid out_until timestamp: {out_until}") from exc
    return status.value, until.isoformat()
