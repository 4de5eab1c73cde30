from __future__ import annotations
import os
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]

# FACTURATION_DATA_DIR permet de pointer vers un autre dossier de données
DATA_DIR = Path(os.environ.get("FACTURATION_DATA_DIR") or ROOT_DIR / "data")

DOCUMENTS_FILE = "documents.json"
COUNTERS_FILE = "counters.json"
SETTINGS_FILE = "settings.json"


def data_path(name: str, data_dir: os.PathLike | str | None = None) -> Path:
    base = Path(data_dir) if data_dir else DATA_DIR
    return base / name
