from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from threading import RLock
from typing import Any, Dict, Mapping, Optional, Protocol

from ..config import get_settings
from ..domain.models import UserRecord

LOG = logging.getLogger("personality.persistence")


class PersistenceError(RuntimeError):
    pass


class UserStore(Protocol):
    async def get(self, username: str) -> Optional[UserRecord]: ...

    async def save(self, username: str, patch: Mapping[str, Any]) -> UserRecord:
        """Apply a merge-patch to the stored record. Raises PersistenceError on failure."""
        ...

    async def put(self, record: UserRecord) -> UserRecord: ...


def _apply_patch(record: UserRecord, patch: Mapping[str, Any]) -> UserRecord:
    data = record.model_dump()
    data.update(patch)
    return UserRecord.model_validate(data)


class InMemoryUserStore:
    """Dict-backed store for development and tests."""

    def __init__(self) -> None:
        self._users: Dict[str, UserRecord] = {}
        self._lock = RLock()

    async def get(self, username: str) -> Optional[UserRecord]:
        with self._lock:
            return self._users.get(username)

    async def save(self, username: str, patch: Mapping[str, Any]) -> UserRecord:
        with self._lock:
            current = self._users.get(username)
            if current is None:
                raise PersistenceError(f"User not found: {username}")
            try:
                updated = _apply_patch(current, patch)
            except ValueError as exc:
                raise PersistenceError(f"Invalid patch for {username}: {exc}") from exc
            self._users[username] = updated
            return updated

    async def put(self, record: UserRecord) -> UserRecord:
        with self._lock:
            self._users[record.username] = record
            return record


class FileUserStore:
    """JSON file-backed store for development persistence.

    Structure: a single JSON object mapping username -> record dict.
    Thread-safe with a coarse RLock; not meant for concurrent writers
    across processes.
    """

    def __init__(self, file_path: Optional[str] = None) -> None:
        self._lock = RLock()
        self._path = Path(file_path or get_settings().users_file or "run/users.json")
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._users: Dict[str, UserRecord] = {}
        self._load()

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            LOG.warning("user_file_unreadable", extra={"path": str(self._path), "err": str(exc)})
            return
        for username, raw in (data or {}).items():
            try:
                self._users[username] = UserRecord.model_validate(raw)
            except ValueError:
                LOG.warning("user_file_record_skipped", extra={"username": username})

    def _save(self) -> None:
        obj = {name: rec.model_dump(mode="json") for name, rec in self._users.items()}
        try:
            self._path.write_text(json.dumps(obj, indent=2), encoding="utf-8")
        except OSError as exc:
            raise PersistenceError(f"Failed to write {self._path}: {exc}") from exc

    async def get(self, username: str) -> Optional[UserRecord]:
        with self._lock:
            return self._users.get(username)

    async def save(self, username: str, patch: Mapping[str, Any]) -> UserRecord:
        with self._lock:
            current = self._users.get(username)
            if current is None:
                raise PersistenceError(f"User not found: {username}")
            try:
                updated = _apply_patch(current, patch)
            except ValueError as exc:
                raise PersistenceError(f"Invalid patch for {username}: {exc}") from exc
            self._users[username] = updated
            try:
                self._save()
            except PersistenceError:
                self._users[username] = current
                raise
            return updated

    async def put(self, record: UserRecord) -> UserRecord:
        with self._lock:
            self._users[record.username] = record
            self._save()
            return record


_store: UserStore | None = None


def get_user_store() -> UserStore:
    global _store
    if _store is not None:
        return _store
    impl = (os.getenv("PERSONALITY_USER_STORE_IMPL") or get_settings().user_store_impl).lower()
    if impl == "mongo":
        from .user_store_mongo import MongoUserStore

        _store = MongoUserStore()
    elif impl == "file":
        _store = FileUserStore()
    else:
        _store = InMemoryUserStore()
    return _store


def set_user_store(store: UserStore | None) -> None:
    """Swap the process-wide store (useful for tests)."""

    global _store
    _store = store
