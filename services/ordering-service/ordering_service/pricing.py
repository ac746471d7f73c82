"""Price and display-name helpers for menu items and their variants.

Everything here is pure: no database access, no clock.
"""
from __future__ import annotations

DEFAULT_VARIANT = "chicken"

# Dish keyword -> ({unit price in cents: variant name}, fallback variant).
# Older order lines carry no variant name, so the variant has to be recovered
# from the price snapshot.
LEGACY_PRICE_VARIANTS: list[tuple[str, dict[int, str], str]] = [
    ("teriyaki", {1000: "chicken", 1200: "salmon", 900: "tofu"}, "chicken"),
    ("katsu curry", {1300: "katsu_chicken", 1400: "katsu_pork"}, "katsu_chicken"),
    ("katsu don", {1100: "don_chicken", 1200: "don_pork"}, "don_chicken"),
    ("pho", {1000: "chicken", 1100: "beef"}, "chicken"),
    ("udon", {1000: "tofu", 1100: "chicken", 1200: "beef"}, "shrimp_tempura"),
]

_PREFIXES = ("katsu_", "don_")


def format_price(price_cents: int) -> str:
    sign = "-" if price_cents < 0 else ""
    return f"{sign}${abs(price_cents) / 100:.2f}"


def line_total(unit_price_cents: int, quantity: int) -> int:
    return unit_price_cents * quantity


def effective_unit_price(base_price_cents: int, variant_modifier_cents: int = 0) -> int:
    return base_price_cents + variant_modifier_cents


def humanize_variant(variant_name: str, strip_prefix: bool = False) -> str:
    name = variant_name
    if strip_prefix:
        for prefix in _PREFIXES:
            if name.startswith(prefix):
                name = name[len(prefix):]
                break
    return " ".join(part.capitalize() for part in name.split("_") if part)


def variant_display_name(item_name: str, variant_name: str) -> str:
    """Return the customer-facing name of ``item_name`` prepared as ``variant_name``.

    >>> variant_display_name("Teriyaki Bowl", "salmon")
    'Teriyaki Salmon'
    >>> variant_display_name("Udon", "shrimp_tempura")
    'Udon (Shrimp Tempura)'
    """
    name = item_name.lower()
    if "teriyaki" in name:
        return f"Teriyaki {humanize_variant(variant_name)}"
    if "katsu curry" in name:
        return f"Japanese Katsu Curry ({humanize_variant(variant_name, strip_prefix=True)})"
    if "katsu don" in name:
        return f"Katsu Don ({humanize_variant(variant_name, strip_prefix=True)})"
    if "curry udon" in name:
        return f"Curry Udon ({humanize_variant(variant_name)})"
    if "pho" in name:
        return f"Pho ({humanize_variant(variant_name)})"
    if "udon" in name:
        return f"Udon ({humanize_variant(variant_name)})"
    if "katsu sando" in name:
        return f"Katsu Sando ({humanize_variant(variant_name, strip_prefix=True)})"
    if "onigiri" in name:
        return f"Onigiri ({humanize_variant(variant_name)})"
    return f"{item_name} ({humanize_variant(variant_name)})"


def infer_variant_from_price(
    item_name: str, price_cents: int, custom_name: str | None = None
) -> str:
    """Best-effort variant recovery for order lines stored without a variant name.

    Two variants can share a price, in which case the custom name is consulted
    and otherwise the default protein is returned.
    """
    name = item_name.lower()
    hint = (custom_name or "").lower()

    if "curry udon" in name:
        if "pork" in hint:
            return "katsu_pork"
        return "katsu_chicken"

    for keyword, table, fallback in LEGACY_PRICE_VARIANTS:
        if keyword in name:
            if "pork" in hint or "pork" in name:
                pork = [variant for variant in table.values() if variant.endswith("pork")]
                if pork:
                    return pork[0]
            return table.get(price_cents, fallback)

    if "katsu sando" in name:
        return "katsu_pork" if "pork" in name else "katsu_chicken"
    if "onigiri" in name:
        if "tuna" in name or "tuna" in hint:
            return "tuna"
        if "chicken" in name or "chicken" in hint:
            return "chicken_karaage"
        return "salmon"
    return DEFAULT_VARIANT


def legacy_display_name(item_name: str, price_cents: int) -> str:
    name = item_name.lower()
    for keyword, table, _ in LEGACY_PRICE_VARIANTS:
        if keyword in name and "curry udon" not in name:
            variant = table.get(price_cents)
            if variant is None:
                return item_name
            return variant_display_name(item_name, variant)
    return item_name


def display_name(
    item_name: str,
    unit_price_cents: int,
    custom_name: str | None = None,
    variant_name: str | None = None,
) -> str:
    if custom_name:
        return custom_name
    if variant_name:
        return variant_display_name(item_name, variant_name)
    return legacy_display_name(item_name, unit_price_cents)
