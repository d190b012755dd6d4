"""
JsonRepository: record store persisted as JSON, safe across processes.

Path layout: <data_dir>/<entity>s.json, payload ``{"records": [...]}``;
<data_dir>/<entity>s.json.lock guards it.
Every operation takes the thread lock and an exclusive flock on the lock file,
then re-reads the JSON file, so a conditional check and the write it guards are
atomic across processes (API server, CLI, scheduler). Without a path the store
is memory-only.
"""
import contextlib
import copy
import fcntl
import json
import os
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Type, TypeVar

from core.exceptions import ConflictError, NotFoundError
from core.logger import get_logger
from core.models import encode_value, from_record, now_iso, to_record
from core.repository.base import Repository

logger = get_logger("repository")

T = TypeVar("T")


class JsonRepository(Repository[T]):
    """Reference backend for the repository port."""

    def __init__(
        self,
        model: Type[T],
        entity: str,
        key_field: str,
        path: Optional[Path] = None,
    ):
        self.model = model
        self.entity = entity
        self.key_field = key_field
        self._path = path
        self._lock_path = path.with_suffix(path.suffix + ".lock") if path is not None else None
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    @contextlib.contextmanager
    def _locked(self) -> Iterator[None]:
        """Hold the store exclusively and refresh ``_records`` from disk."""
        with self._lock:
            if self._path is None:
                yield
                return
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._lock_path.touch(exist_ok=True)
            with self._lock_path.open("r+", encoding="utf-8") as handle:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                try:
                    self._load()
                    yield
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _load(self) -> None:
        self._records = {}
        if not self._path.exists():
            return
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Unreadable {self.entity} store at {self._path}: {e}")
            return
        records = data.get("records", []) if isinstance(data, dict) else data
        for record in records or []:
            key = record.get(self.key_field)
            if key:
                self._records[key] = record

    def _save(self) -> None:
        if self._path is None:
            return
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        payload = {"records": list(self._records.values())}
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self._path)

    def _commit(self, before: Dict[str, Dict[str, Any]]) -> None:
        """Persist ``_records``; on failure put back the state seen before the write."""
        try:
            self._save()
        except Exception:
            self._records = before
            raise

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _materialize(self, record: Dict[str, Any]) -> T:
        return from_record(self.model, record)

    def _mismatch(
        self, record: Dict[str, Any], expected: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        if not expected:
            return {}
        actual = {}
        for key, value in expected.items():
            if record.get(key) != encode_value(value):
                actual[key] = record.get(key)
        return actual

    # ------------------------------------------------------------------
    # Port implementation
    # ------------------------------------------------------------------
    def get(self, record_id: str) -> Optional[T]:
        with self._locked():
            record = self._records.get(record_id)
            return self._materialize(dict(record)) if record else None

    def query(self, **filters: Any) -> List[T]:
        wanted = {k: encode_value(v) for k, v in filters.items()}
        with self._locked():
            matches = [
                dict(r)
                for r in self._records.values()
                if all(r.get(k) == v for k, v in wanted.items())
            ]
        return [self._materialize(r) for r in matches]

    def _prepare(self, item: T) -> Dict[str, Any]:
        record = to_record(item)
        stamp = now_iso()
        record["created_at"] = record.get("created_at") or stamp
        record["updated_at"] = stamp
        record["version"] = 1
        return record

    def create(self, item: T) -> T:
        record = self._prepare(item)
        key = record[self.key_field]
        with self._locked():
            if key in self._records:
                raise ConflictError(self.entity, key, {"exists": False}, {"exists": True})
            before = copy.copy(self._records)
            self._records[key] = record
            self._commit(before)
        return self._materialize(dict(record))

    def create_batch(self, items: Iterable[T]) -> List[T]:
        records = [self._prepare(item) for item in items]
        with self._locked():
            keys = [r[self.key_field] for r in records]
            taken = [k for k in keys if k in self._records]
            if taken or len(set(keys)) != len(keys):
                raise ConflictError(
                    self.entity, ",".join(taken or keys), {"exists": False}, {"exists": True}
                )
            before = copy.copy(self._records)
            for record in records:
                self._records[record[self.key_field]] = record
            self._commit(before)
        return [self._materialize(dict(r)) for r in records]

    def update(
        self,
        record_id: str,
        changes: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> T:
        with self._locked():
            record = self._records.get(record_id)
            if record is None:
                raise NotFoundError(self.entity, record_id)
            actual = self._mismatch(record, expected)
            if actual:
                raise ConflictError(self.entity, record_id, expected, actual)
            updated = dict(record)
            for key, value in changes.items():
                if key in (self.key_field, "version", "created_at"):
                    continue
                updated[key] = encode_value(value)
            updated["updated_at"] = now_iso()
            updated["version"] = int(record.get("version", 0)) + 1
            before = copy.copy(self._records)
            self._records[record_id] = updated
            self._commit(before)
        return self._materialize(dict(updated))

    def delete(self, record_id: str, expected: Optional[Dict[str, Any]] = None) -> T:
        with self._locked():
            record = self._records.get(record_id)
            if record is None:
                raise NotFoundError(self.entity, record_id)
            actual = self._mismatch(record, expected)
            if actual:
                raise ConflictError(self.entity, record_id, expected, actual)
            before = copy.copy(self._records)
            del self._records[record_id]
            self._commit(before)
        return self._materialize(dict(record))
