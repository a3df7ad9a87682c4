"""
PROFILE AND RECORD STORES
=========================

The conversation engine reads and writes a handful of fields on the user's
profile (which session and assistant they were using, their personality, their
current weight) and the tools write meals and weight logs. In the full product
these live in a document database; here they are small JSON files so a single
user can run the backend with nothing else installed.

  JsonProfileStore   - database/profiles_data/<user_id>.json
  MemoryProfileStore - dict, for tests
  JsonRecordStore    - database/records_data/<user_id>_meals.json and _weights.json

File IO runs in a worker thread (asyncio.to_thread) so the event loop keeps serving
other requests while we read or write.
"""

import asyncio
import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4


logger = logging.getLogger("NIBLET")

_USER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_\-.@]{1,128}$")


def _validate_user_id(user_id: str) -> str:
    if not user_id or not _USER_ID_PATTERN.match(user_id) or ".." in user_id:
        raise ValueError(f"Invalid user id: {user_id!r}")
    return user_id


def _read_json(path: Path, default):
    if not path.exists():
        return default
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _write_json(path: Path, value) -> None:
    tmp_path = path.with_suffix(".tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(value, f, ensure_ascii=False, indent=2)
    tmp_path.replace(path)


# ==============================================================================
# PROFILE STORES
# ==============================================================================

class MemoryProfileStore:
    def __init__(self, profiles: Optional[Dict[str, Dict[str, Any]]] = None):
        self.profiles: Dict[str, Dict[str, Any]] = profiles or {}

    async def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        profile = self.profiles.get(user_id)
        return dict(profile) if profile is not None else None

    async def update_profile(self, user_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        profile = self.profiles.setdefault(user_id, {})
        profile.update(patch)
        return dict(profile)


class JsonProfileStore:
    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._write_lock = asyncio.Lock()

    def _path(self, user_id: str) -> Path:
        return self.directory / f"{_validate_user_id(user_id)}.json"

    async def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(_read_json, self._path(user_id), None)

    async def update_profile(self, user_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        path = self._path(user_id)

        def _update() -> Dict[str, Any]:
            profile = _read_json(path, {})
            profile.update(patch)
            profile["updated_at"] = datetime.now(timezone.utc).isoformat()
            _write_json(path, profile)
            return profile

        async with self._write_lock:
            return await asyncio.to_thread(_update)


# ==============================================================================
# RECORD STORE (MEALS AND WEIGHT LOGS)
# ==============================================================================

class JsonRecordStore:
    """Append-only lists of meals and weight logs, one file per user and kind."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._write_lock = asyncio.Lock()

    def _path(self, user_id: str, kind: str) -> Path:
        return self.directory / f"{_validate_user_id(user_id)}_{kind}.json"

    async def _append(self, user_id: str, kind: str, record: Dict[str, Any]) -> str:
        path = self._path(user_id, kind)
        record = {"id": f"{kind[:-1]}_{uuid4().hex}", **record}

        def _do_append() -> None:
            records: List[Dict[str, Any]] = _read_json(path, [])
            records.append(record)
            _write_json(path, records)

        async with self._write_lock:
            await asyncio.to_thread(_do_append)
        return record["id"]

    async def add_meal(self, user_id: str, meal: Dict[str, Any]) -> str:
        return await self._append(user_id, "meals", meal)

    async def add_weight(self, user_id: str, weight: float, date: Optional[str] = None) -> str:
        return await self._append(
            user_id,
            "weights",
            {"weight": weight, "date": date or datetime.now(timezone.utc).date().isoformat()},
        )

    async def list_records(self, user_id: str, kind: str) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(_read_json, self._path(user_id, kind), [])
