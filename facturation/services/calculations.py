from __future__ import annotations
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Optional

ZERO = Decimal(0)
HUNDRED = Decimal(100)
CENT = Decimal("0.01")


# ---------- Conversion ---------- #

def to_decimal(val: Any) -> Decimal:
    """Conversion souple vers Decimal ; toute valeur absente ou illisible vaut 0."""
    if val is None or val == "" or isinstance(val, bool):
        return ZERO
    if isinstance(val, Decimal):
        d = val
    elif isinstance(val, (int, float)):
        d = Decimal(str(val))
    else:
        try:
            # notation scientifique comprise ("1e5")
            d = Decimal(str(val).strip())
        except InvalidOperation:
            s = re.sub(r"[^0-9,.\-]", "", str(val)).replace(",", ".")
            try:
                d = Decimal(s)
            except (InvalidOperation, ValueError):
                return ZERO
    return d if d.is_finite() else ZERO


def _field(obj: Any, *names: str) -> Any:
    for n in names:
        if isinstance(obj, dict):
            if n in obj:
                return obj[n]
        elif hasattr(obj, n):
            return getattr(obj, n)
    return None


def _items(items: Any) -> list:
    if items is None or isinstance(items, (str, bytes, dict)):
        return []
    try:
        return list(items)
    except TypeError:
        return []


def _line_amount(item: Any) -> Decimal:
    qty = to_decimal(_field(item, "quantity", "qty"))
    price = to_decimal(_field(item, "unit_price", "unitPrice"))
    return qty * price


# ---------- Totaux ---------- #
# Aucun arrondi ici : on arrondit uniquement à l'affichage (format_money).

def subtotal(items: Optional[Iterable[Any]]) -> Decimal:
    return sum((_line_amount(it) for it in _items(items)), ZERO)


def discount_amount(items: Optional[Iterable[Any]], discount_pct: Any = None) -> Decimal:
    pct = to_decimal(discount_pct)
    items = _items(items)
    if pct <= 0 or not items:
        return ZERO
    return subtotal(items) * pct / HUNDRED


def tax_amount(items: Optional[Iterable[Any]], tax_rate: Any, discount_pct: Any = None) -> Decimal:
    """TVA calculée sur la base après remise."""
    rate = to_decimal(tax_rate)
    if rate <= 0:
        return ZERO
    items = _items(items)
    base = subtotal(items) - discount_amount(items, discount_pct)
    return base * rate / HUNDRED


def advance_deduction(items: Optional[Iterable[Any]], advance_amount: Any = None) -> Decimal:
    # l'acompte est un montant fixe, pas un pourcentage : restitué tel quel
    amount = to_decimal(advance_amount)
    return amount if amount > 0 else ZERO


def total(
    items: Optional[Iterable[Any]],
    tax_rate: Any = None,
    discount_pct: Any = None,
    advance_amount: Any = None,
) -> Decimal:
    """Sous-total - remise + TVA (sur base remisée) - acompte (déduit en dernier, TTC)."""
    items = _items(items)
    return (
        subtotal(items)
        - discount_amount(items, discount_pct)
        + tax_amount(items, tax_rate, discount_pct)
        - advance_deduction(items, advance_amount)
    )


def total_without_tax(document: Any) -> Decimal:
    items = _items(_field(document, "items"))
    return subtotal(items) - discount_amount(items, _field(document, "discount"))


def document_total(document: Any) -> Decimal:
    """Total à afficher : totalAmount s'il est renseigné, sinon le total calculé."""
    override = _field(document, "total_amount", "totalAmount")
    if override is not None and override != "":
        return to_decimal(override)
    return total(
        _field(document, "items"),
        _field(document, "tax_rate", "taxRate"),
        _field(document, "discount"),
        _field(document, "advance_payment", "advancePayment"),
    )


# ---------- Formats ---------- #

def format_money(amount: Any, currency: str = "€") -> str:
    """1234.5 -> '1 234,50 €' (locale fr-FR fixe)."""
    d = to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)
    sign = "-" if d < 0 else ""
    whole, frac = f"{abs(d):.2f}".split(".")
    groups = []
    while len(whole) > 3:
        groups.insert(0, whole[-3:])
        whole = whole[:-3]
    groups.insert(0, whole)
    return f"{sign}{' '.join(groups)},{frac} {currency}"
