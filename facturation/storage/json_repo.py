from __future__ import annotations

import glob
import json
import logging
import shutil
import threading
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import BaseModel

logger = logging.getLogger(__name__)

Record = Union[BaseModel, Mapping[str, Any]]


def _json_default(o: Any) -> Any:
    if isinstance(o, (date, datetime)):
        return o.isoformat()
    if isinstance(o, Decimal):
        return int(o) if o == o.to_integral_value() else float(o)
    raise TypeError(f"Object of type {o.__class__.__name__} is not JSON serializable")


class JsonRepository:
    """
    Dépôt JSON (liste d'enregistrements) indexé par une clé primaire.
    - Rotation de backups (backup_enabled, backup_keep)
    - N'écrit pas si le contenu ne change pas
    - Un verrou sérialise les écritures du processus ; aucune protection
      entre processus (deux instances sur le même dossier peuvent perdre
      une mise à jour)
    """

    def __init__(
        self,
        filepath: Union[str, Path],
        entity_name: str = "document",
        key: str = "id",
        *,
        backup_enabled: bool = True,
        backup_keep: int = 5,
    ) -> None:
        self.filepath = Path(filepath)
        self.entity_name = entity_name
        self.key = key
        self._lock = threading.RLock()
        self.backup_enabled = backup_enabled
        self.backup_keep = max(0, int(backup_keep))

        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        if not self.filepath.exists():
            self._write_raw([])

    # ---------------- I/O bas niveau ---------------- #

    def _read_raw(self) -> List[Dict[str, Any]]:
        try:
            with self.filepath.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return []
        except json.JSONDecodeError as e:
            # Fichier corrompu → copie de côté, on repart d'une liste vide
            backup = self.filepath.with_suffix(".corrupt.json")
            logger.warning("Fichier %s corrompu (%s), copie dans %s", self.filepath, e, backup)
            shutil.copy2(self.filepath, backup)
            return []
        if not isinstance(data, list):
            logger.warning("Contenu inattendu dans %s (liste attendue)", self.filepath)
            return []
        return [d for d in data if isinstance(d, dict)]

    def _rotate_backups(self) -> None:
        if not self.backup_enabled or self.backup_keep <= 0:
            return
        pattern = str(self.filepath.with_suffix(".*.bak.json"))
        files = sorted(glob.glob(pattern))
        # garde les plus récents
        for old in files[: max(0, len(files) - self.backup_keep)]:
            try:
                Path(old).unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Impossible de supprimer le backup %s: %s", old, e)

    def _write_raw(self, data: Iterable[Mapping[str, Any]]) -> None:
        with self._lock:
            new_dump = json.dumps(list(data), ensure_ascii=False, indent=2, default=_json_default)

            if self.filepath.exists():
                if self.filepath.read_text(encoding="utf-8") == new_dump:
                    return

                if self.backup_enabled:
                    ts = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
                    backup = self.filepath.with_suffix(f".{ts}.bak.json")
                    try:
                        shutil.copy2(self.filepath, backup)
                    except OSError as e:
                        logger.warning("Backup de %s impossible: %s", self.filepath, e)
                    self._rotate_backups()

            with self.filepath.open("w", encoding="utf-8") as f:
                f.write(new_dump)

    # ---------------- Helpers ---------------- #

    @staticmethod
    def _to_dict(item: Record) -> Dict[str, Any]:
        if isinstance(item, BaseModel):
            return item.model_dump(mode="json", by_alias=True, exclude_none=True)
        return dict(item)

    # ---------------- CRUD ---------------- #

    def list_all(self) -> List[Dict[str, Any]]:
        return self._read_raw()

    def get_by_id(self, obj_id: Any) -> Optional[Dict[str, Any]]:
        k = self.key
        for it in self._read_raw():
            if str(it.get(k)) == str(obj_id):
                return it
        return None

    def upsert_many(self, items: Iterable[Record]) -> List[Dict[str, Any]]:
        """Remplace sur place (même clé) ou ajoute en fin, en une seule écriture."""
        records = [self._to_dict(it) for it in items]
        k = self.key
        for r in records:
            if not r.get(k):
                raise ValueError(f"Cannot save {self.entity_name} without '{k}'")
        with self._lock:
            data = self._read_raw()
            index = {str(d.get(k)): i for i, d in enumerate(data)}
            for r in records:
                idx = index.get(str(r[k]))
                if idx is None:
                    index[str(r[k])] = len(data)
                    data.append(r)
                else:
                    data[idx] = r
            self._write_raw(data)
        return records

    def upsert(self, item: Record) -> Dict[str, Any]:
        return self.upsert_many([item])[0]

    def delete(self, obj_id: Any) -> bool:
        k = self.key
        with self._lock:
            data = self._read_raw()
            new_data = [d for d in data if str(d.get(k)) != str(obj_id)]
            changed = len(new_data) != len(data)
            if changed:
                self._write_raw(new_data)
        return changed
