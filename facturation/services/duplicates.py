"""
Détection des doublons.

Deux politiques distinctes, à ne pas fusionner :
- find_duplicates : contrôle général (création / édition), similarité du nom
  client > 70 % et montants bruts à 10 % près, ou même numéro ;
- find_potential_duplicates : contrôle à l'import, plus strict, sur le total
  avec TVA et remise (seuils 1 % / 5 %).
"""
from __future__ import annotations
from decimal import Decimal
from typing import Iterable, List, NamedTuple

from facturation.models.document import Document
from facturation.services.calculations import ZERO, subtotal, total, to_decimal

NAME_SIMILARITY_THRESHOLD = 0.7
AMOUNT_TOLERANCE = Decimal("0.10")
IMPORT_SAME_CLIENT_TOLERANCE = Decimal("0.01")
IMPORT_SAME_DATE_TOLERANCE = Decimal("0.05")


class DuplicatePair(NamedTuple):
    source: Document
    similar_to: Document


# ---------- Similarité ---------- #

def levenshtein_distance(a: str, b: str) -> int:
    # programmation dynamique ligne par ligne ; insertion, suppression, substitution = 1
    if len(a) < len(b):
        a, b = b, a
    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        cur = [i] + [0] * len(b)
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            cur[j] = min(prev[j] + 1, cur[j - 1] + 1, prev[j - 1] + cost)
        prev = cur
    return prev[len(b)]


def string_similarity(a: str | None, b: str | None) -> float:
    """1 - distance / longueur max, insensible à la casse et aux espaces de bord."""
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    a, b = a.strip().lower(), b.strip().lower()
    if a == b:
        return 1.0
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 1.0
    return 1.0 - levenshtein_distance(a, b) / max_len


def raw_total(document: Document) -> Decimal:
    """Somme quantité x prix unitaire, sans TVA ni remise."""
    return subtotal(document.items)


def amounts_similar(a, b, tolerance: Decimal = AMOUNT_TOLERANCE) -> bool:
    a, b = to_decimal(a), to_decimal(b)
    if a == 0 and b == 0:
        return True
    if a == 0 or b == 0:
        return False
    return abs(a - b) / max(a, b) <= tolerance


# ---------- Politique générale ---------- #

def find_duplicates(source: Document, existing: Iterable[Document]) -> List[DuplicatePair]:
    duplicates: List[DuplicatePair] = []
    source_total = raw_total(source)

    for other in existing:
        if other.id == source.id:
            continue
        same_number = source.document_number == other.document_number
        similar = (
            string_similarity(source.client.name, other.client.name) > NAME_SIMILARITY_THRESHOLD
            and amounts_similar(source_total, raw_total(other))
        )
        if similar or same_number:
            duplicates.append(DuplicatePair(source, other))
    return duplicates


# ---------- Politique d'import ---------- #

def _import_total(document: Document) -> Decimal:
    return total(document.items, document.tax_rate, document.discount)


def _within(existing_total: Decimal, new_total: Decimal, tolerance: Decimal) -> bool:
    # écart relatif au total importé ; un total nul ne matche jamais
    return abs(existing_total - new_total) < new_total * tolerance


def find_potential_duplicates(document: Document, existing: Iterable[Document]) -> List[Document]:
    matches: List[Document] = []
    new_total = None

    for other in existing:
        if other.id == document.id:
            continue
        if other.document_number == document.document_number and other.document_type == document.document_type:
            matches.append(other)
            continue

        same_client = other.client.name == document.client.name
        same_date = other.issue_date == document.issue_date
        if not (same_client or same_date):
            continue

        if new_total is None:
            new_total = _import_total(document)
        if new_total <= ZERO:
            continue
        other_total = _import_total(other)
        if same_client and _within(other_total, new_total, IMPORT_SAME_CLIENT_TOLERANCE):
            matches.append(other)
        elif same_date and _within(other_total, new_total, IMPORT_SAME_DATE_TOLERANCE):
            matches.append(other)
    return matches
