from __future__ import annotations
import json
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from facturation.config import SETTINGS_FILE, data_path
from facturation.models.settings import AppSettings

logger = logging.getLogger(__name__)


class SettingsService:
    def __init__(self, path: Optional[os.PathLike | str] = None):
        self.path = Path(path) if path else data_path(SETTINGS_FILE)
        self._current: Optional[AppSettings] = None

    def load(self) -> AppSettings:
        if not self.path.exists():
            # premier lancement : on écrit les valeurs par défaut
            self._current = AppSettings()
            self.save(self._current)
            return self._current
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            self._current = AppSettings.model_validate(raw if isinstance(raw, dict) else {})
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.error("Erreur lors du chargement des paramètres (%s): %s", self.path, e)
            self._current = AppSettings()
        return self._current

    def get(self) -> AppSettings:
        if self._current is None:
            return self.load()
        return self._current

    def save(self, settings: AppSettings) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            json.dumps(settings.model_dump(mode="json", by_alias=True), ensure_ascii=False, indent=2),
            encoding="utf-8",
        )
        self._current = settings

    def update(self, **changes) -> AppSettings:
        settings = self.get().model_copy(update=changes)
        self.save(settings)
        return settings
