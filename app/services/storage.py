"""
KEY-VALUE STORAGE MODULE
========================

The transcript cache sits on top of a tiny key-value interface so the engine
does not care where bytes end up:

  get(key) -> value or None
  set(key, value)
  remove(key)
  keys() -> list of every stored key

IMPLEMENTATIONS:
  MemoryStorage - a dict. Used by tests and anywhere persistence is not wanted.
  FileStorage   - one JSON file per key under a directory (database/cache_data/
                  by default). Writes go to a temp file first and are then renamed
                  over the old one, so a reader never sees half a list.

Values are anything json.dumps accepts.
"""

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol


logger = logging.getLogger("NIBLET")

# Keys become file names, so only allow a safe alphabet (no "/", no "..").
_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_\-.]{1,200}$")


class KeyValueStorage(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any) -> None: ...

    def remove(self, key: str) -> None: ...

    def keys(self) -> List[str]: ...


class MemoryStorage:
    """Dict-backed storage. Values are copied through JSON so callers can't mutate stored state."""

    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[Any]:
        raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data.keys())


class FileStorage:
    """
    Directory-backed storage: key "niblet_messages_abc" lives in
    <directory>/niblet_messages_abc.json.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        if not _KEY_PATTERN.match(key) or ".." in key:
            raise ValueError(f"Invalid storage key: {key!r}")
        return self.directory / f"{key}.json"

    def get(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(value, f, ensure_ascii=False)
        os.replace(tmp_path, path)

    def remove(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            pass

    def keys(self) -> List[str]:
        return sorted(p.stem for p in self.directory.glob("*.json"))
