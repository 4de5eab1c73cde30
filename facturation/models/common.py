from __future__ import annotations
from datetime import date, datetime
from decimal import Decimal
from typing import Annotated
import uuid

from pydantic import PlainSerializer


def gen_id() -> str:
    return str(uuid.uuid4())


def today() -> date:
    return datetime.now().date()


def _decimal_to_json(value: Decimal) -> int | float:
    # entier si possible (100 et non 100.0) pour rester proche des exports d'origine
    if value == value.to_integral_value():
        return int(value)
    return float(value)


# Montant / quantité : Decimal côté Python, nombre JSON à l'export
Amount = Annotated[Decimal, PlainSerializer(_decimal_to_json, return_type=int | float, when_used="json")]
