from __future__ import annotations

import json
import logging
import os
import uuid
from threading import Lock
from typing import Any, Dict, Tuple

from models.errors import PersistenceError

logger = logging.getLogger(__name__)

# Marks a key that is absent (before a change) or should be removed (as a change).
REMOVED = object()


class JsonFileStore:
    """Lock-guarded in-memory tables mirrored to a single JSON file.

    Every public mutation in a subclass runs inside ``self._lock`` and goes
    through ``_commit``, which makes each store call one atomic read-modify-write:
    if the file write fails the in-memory tables are put back as they were.
    An empty ``path`` keeps the store purely in memory.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = Lock()

    def _read_payload(self) -> Dict[str, Any]:
        if not self.path or not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                payload = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("json_store_load_failed", extra={"path": self.path, "error": repr(exc)})
            return {}
        return payload if isinstance(payload, dict) else {}

    def _write_payload(self, payload: Dict[str, Any]) -> None:
        if not self.path:
            return
        tmp = f"{self.path}.{uuid.uuid4().hex}.tmp"
        try:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, ensure_ascii=True)
            os.replace(tmp, self.path)
        except OSError as exc:
            if os.path.exists(tmp):
                os.remove(tmp)
            logger.error("json_store_persist_failed", extra={"path": self.path, "error": repr(exc)})
            raise PersistenceError("store write failed", path=self.path) from exc

    def _commit(self, *changes: Tuple[Dict[str, Any], str, Any]) -> None:
        """Apply ``(table, key, value)`` changes, then persist. Caller holds the lock."""
        previous = []
        for table, key, value in changes:
            previous.append((table, key, table.get(key, REMOVED)))
            self._put(table, key, value)
        try:
            self._persist()
        except PersistenceError:
            for table, key, value in reversed(previous):
                self._put(table, key, value)
            raise

    @staticmethod
    def _put(table: Dict[str, Any], key: str, value: Any) -> None:
        if value is REMOVED:
            table.pop(key, None)
        else:
            table[key] = value

    def _persist(self) -> None:
        raise NotImplementedError
