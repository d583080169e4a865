"""
Durable storage for the session mirror and provider token records
"""
import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from ..utils.logger import setup_logger

logger = setup_logger(__name__)

AUTH_STORAGE_KEY = "auth-storage"


class SessionStore(Protocol):
    """Key/value store of JSON records"""

    def load(self, key: str) -> Optional[Dict[str, Any]]: ...

    def save(self, key: str, record: Dict[str, Any]) -> None: ...

    def delete(self, key: str) -> None: ...


class MemorySessionStore:
    """In-process store (development and tests)"""

    def __init__(self):
        self._records: Dict[str, str] = {}

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        raw = self._records.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def save(self, key: str, record: Dict[str, Any]) -> None:
        # Serialize on write so callers never share mutable state with the store
        self._records[key] = json.dumps(record, default=str)

    def delete(self, key: str) -> None:
        self._records.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._records

    def __len__(self) -> int:
        return len(self._records)


class FileSessionStore:
    """One JSON file per key inside a directory"""

    _unsafe_chars = re.compile(r"[^A-Za-z0-9._-]")

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / f"{self._unsafe_chars.sub('_', key)}.json"

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        path = self._path(key)
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)

    def save(self, key: str, record: Dict[str, Any]) -> None:
        path = self._path(key)
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(record, fh, default=str)
            os.replace(tmp_path, path)
        except Exception:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        logger.debug(f"Saved record {path.name}")

    def delete(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            path.unlink()
            logger.debug(f"Deleted record {path.name}")
