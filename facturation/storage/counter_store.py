from __future__ import annotations
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Union

logger = logging.getLogger(__name__)


class CounterStoreError(RuntimeError):
    """Compteurs illisibles ou non enregistrés : la numérotation ne peut pas continuer."""


class JsonCounterStore:
    """Table clé de séquence -> dernier numéro émis, stockée à part des documents."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def load_counters(self) -> Dict[str, int]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as e:
            # pas de repli silencieux : repartir de zéro réutiliserait des numéros
            raise CounterStoreError(f"Lecture des compteurs impossible ({self.path}): {e}") from e
        if not isinstance(data, dict):
            raise CounterStoreError(f"Format de compteurs invalide dans {self.path}")
        try:
            return {str(k): int(v) for k, v in data.items()}
        except (TypeError, ValueError) as e:
            raise CounterStoreError(f"Compteur non entier dans {self.path}: {e}") from e

    def save_counters(self, counters: Dict[str, int]) -> None:
        # écriture atomique : fichier temporaire puis remplacement
        try:
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".counters-", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(counters, f, ensure_ascii=False, indent=2, sort_keys=True)
            os.replace(tmp, self.path)
        except OSError as e:
            raise CounterStoreError(f"Enregistrement des compteurs impossible ({self.path}): {e}") from e
        logger.debug("Compteurs enregistrés: %s", counters)
