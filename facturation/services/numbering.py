"""
Numérotation des factures et devis.

Format : PREFIX-AAAA-MM-NNN, ou PREFIX-AAAA-NNN quand le mois est désactivé.
La séquence est portée par un compteur par « bucket » (préfixe, année[, mois]),
stocké à part des documents : supprimer un document ne libère jamais son numéro.
"""
from __future__ import annotations

import logging
import re
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Union

from facturation.models.settings import AppSettings
from facturation.storage.counter_store import JsonCounterStore

logger = logging.getLogger(__name__)

SettingsProvider = Callable[[], AppSettings]
Clock = Callable[[], datetime]

# préfixe-année[-mois]-séquence ; le préfixe peut lui-même contenir des tirets
_NUMBER_RE = re.compile(r"^(?P<prefix>.+?)-(?P<year>\d{4})(?:-(?P<month>\d{1,2}))?-(?P<seq>\d{3,})$")


class ParsedNumber(NamedTuple):
    prefix: str
    year: int
    month: Optional[int]
    sequence: int


# ---------- Helpers ---------- #

def bucket_key(prefix: str, year: int, month: Optional[int] = None) -> str:
    # mois non paddé, comme les clés historiques ("FAC-2024-3")
    if month is None:
        return f"{prefix}-{year}"
    return f"{prefix}-{year}-{month}"


def format_number(prefix: str, year: int, month: Optional[int], sequence: int) -> str:
    seq = f"{sequence:03d}"
    if month is None:
        return f"{prefix}-{year}-{seq}"
    return f"{prefix}-{year}-{month:02d}-{seq}"


def parse_document_number(number: Any) -> Optional[ParsedNumber]:
    m = _NUMBER_RE.match(str(number or "").strip())
    if not m:
        return None
    month = int(m.group("month")) if m.group("month") else None
    if month is not None and not 1 <= month <= 12:
        return None
    return ParsedNumber(m.group("prefix"), int(m.group("year")), month, int(m.group("seq")))


def extract_sequence_number(number: Any) -> int:
    parsed = parse_document_number(number)
    return parsed.sequence if parsed else 0


def document_number_exists(number: str, documents: Iterable[Any]) -> bool:
    for d in documents:
        existing = d.get("documentNumber") if isinstance(d, dict) else getattr(d, "document_number", None)
        if existing == number:
            return True
    return False


# ---------- Compteurs ---------- #

class CounterService:
    """
    Compteurs de séquence persistés (bucket -> dernier numéro émis).

    Cycle de vie explicite : load() au démarrage (fait paresseusement sinon),
    increment() relit le store, incrémente et enregistre sous verrou.
    Si l'enregistrement échoue, l'erreur remonte et rien n'est avancé.
    """

    def __init__(self, store: JsonCounterStore):
        self.store = store
        self._lock = threading.Lock()
        self._counters: Optional[Dict[str, int]] = None

    def load(self) -> Dict[str, int]:
        with self._lock:
            self._counters = self.store.load_counters()
            return dict(self._counters)

    def current(self, key: str) -> int:
        if self._counters is None:
            self.load()
        return int(self._counters.get(key, 0))  # type: ignore[union-attr]

    def increment(self, key: str) -> int:
        with self._lock:
            counters = self.store.load_counters()
            value = int(counters.get(key, 0)) + 1
            counters[key] = value
            self.store.save_counters(counters)
            self._counters = counters
        return value


# ---------- Allocateurs ---------- #

class _BaseAllocator:
    def __init__(self, settings: Union[AppSettings, SettingsProvider], clock: Optional[Clock] = None):
        self._settings = settings
        self._clock = clock or datetime.now

    @property
    def settings(self) -> AppSettings:
        # relu à chaque appel : un changement de préfixe s'applique tout de suite
        return self._settings() if callable(self._settings) else self._settings

    def _bucket(self, doc_type: str) -> tuple[str, int, Optional[int]]:
        s = self.settings
        now = self._clock()
        month = now.month if s.include_month_in_number else None
        return s.prefix_for(doc_type), now.year, month

    def current_sequence(self, prefix: str, year: int, month: Optional[int] = None) -> int:
        raise NotImplementedError

    def next_number(self, doc_type: str) -> str:
        raise NotImplementedError

    def last_issued_number(self, doc_type: str) -> str:
        """Dernier numéro émis dans le bucket courant (affichage seulement)."""
        prefix, year, month = self._bucket(doc_type)
        return format_number(prefix, year, month, self.current_sequence(prefix, year, month))


class CounterAllocator(_BaseAllocator):
    """Stratégie par compteur explicite (par défaut)."""

    def __init__(self, counters: CounterService, settings: Union[AppSettings, SettingsProvider], clock: Optional[Clock] = None):
        super().__init__(settings, clock)
        self.counters = counters

    def current_sequence(self, prefix: str, year: int, month: Optional[int] = None) -> int:
        return self.counters.current(bucket_key(prefix, year, month))

    def next_number(self, doc_type: str) -> str:
        prefix, year, month = self._bucket(doc_type)
        seq = self.counters.increment(bucket_key(prefix, year, month))
        number = format_number(prefix, year, month, seq)
        logger.debug("Numéro attribué: %s", number)
        return number


class ScanAllocator(_BaseAllocator):
    """
    Stratégie alternative : plus grande séquence trouvée parmi les documents
    existants du même bucket, complétée par les numéros déjà remis par ce
    processus (deux appels sans enregistrement entre eux ne donnent pas le
    même numéro). Après redémarrage, un numéro supprimé en fin de séquence
    peut être réattribué ; ne jamais mélanger avec CounterAllocator.
    """

    def __init__(self, documents: Callable[[], Iterable[Dict[str, Any]]], settings: Union[AppSettings, SettingsProvider], clock: Optional[Clock] = None):
        super().__init__(settings, clock)
        self._documents = documents
        self._lock = threading.Lock()
        self._issued: Dict[str, int] = {}

    def _scan(self, prefix: str, year: int, month: Optional[int]) -> int:
        max_n = 0
        for d in self._documents():
            parsed = parse_document_number(d.get("documentNumber"))
            if parsed and (parsed.prefix, parsed.year, parsed.month) == (prefix, year, month):
                max_n = max(max_n, parsed.sequence)
        return max_n

    def current_sequence(self, prefix: str, year: int, month: Optional[int] = None) -> int:
        return max(self._scan(prefix, year, month), self._issued.get(bucket_key(prefix, year, month), 0))

    def next_number(self, doc_type: str) -> str:
        prefix, year, month = self._bucket(doc_type)
        with self._lock:
            seq = self.current_sequence(prefix, year, month) + 1
            self._issued[bucket_key(prefix, year, month)] = seq
        return format_number(prefix, year, month, seq)


Allocator = Union[CounterAllocator, ScanAllocator]


def build_allocator(
    settings: Union[AppSettings, SettingsProvider],
    counters: CounterService,
    documents: Callable[[], List[Dict[str, Any]]],
    clock: Optional[Clock] = None,
) -> Allocator:
    s = settings() if callable(settings) else settings
    if s.numbering_strategy == "scan":
        return ScanAllocator(documents, settings, clock)
    return CounterAllocator(counters, settings, clock)
