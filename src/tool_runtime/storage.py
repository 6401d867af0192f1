# storage.py
# Storage seams consumed by the workflow engine and the built-in tools.
#
#   DocumentStore : versioned key/value documents (workflow tasks)
#   RecordStore : create/read/update on domain records (orders)
#
# Document writes are compare-and-swap on a version stamp. Each key also has
# an in-process lock so a read-modify-write can be serialized when needed.

import json
import os
import re
import tempfile
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Protocol

from tool_runtime.errors import VersionConflict
from tool_runtime.logging import get_logger

logger = get_logger(name=__name__)

_SAFE_KEY = re.compile(r"^[A-Za-z0-9_-]{1,128}$")

RecordPredicate = Callable[[dict], bool]


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------


class DocumentStore(Protocol):
    def get(self, key: str) -> tuple[dict, int] | None: ...

    def put(self, key: str, document: dict, expected_version: int | None) -> int: ...

    def lock(self, key: str): ...


class RecordStore(Protocol):
    def select(self, where: RecordPredicate) -> list[dict]: ...

    def get(self, record_id: int) -> dict | None: ...

    def update(
        self,
        ids: Iterable[int],
        changes: dict,
        where: RecordPredicate | None = None,
    ) -> int: ...


# ---------------------------------------------------------------------------
# Lock table
# ---------------------------------------------------------------------------


class _LockTable:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def get(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock


def _check_version(key: str, expected: int | None, current: int | None) -> None:
    if expected != current:
        raise VersionConflict(key, expected, current)


# ---------------------------------------------------------------------------
# Document stores
# ---------------------------------------------------------------------------


class InMemoryDocumentStore:
    """Process-local document store. Versions start at 1."""

    def __init__(self) -> None:
        self._documents: dict[str, tuple[dict, int]] = {}
        self._locks = _LockTable()

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        with self._locks.get(key):
            yield

    def get(self, key: str) -> tuple[dict, int] | None:
        entry = self._documents.get(key)
        if entry is None:
            return None
        document, version = entry
        return json.loads(json.dumps(document)), version

    def put(self, key: str, document: dict, expected_version: int | None) -> int:
        """Write `document` if the stored version equals `expected_version`.

        `expected_version=None` means the key must not exist yet.
        """
        with self.lock(key):
            entry = self._documents.get(key)
            _check_version(key, expected_version, entry[1] if entry else None)
            version = (entry[1] if entry else 0) + 1
            self._documents[key] = (json.loads(json.dumps(document)), version)
            return version


class JsonFileDocumentStore:
    """
    One pretty-printed JSON file per key inside `directory`.

    Files hold {"version": n, "document": {...}}. Writes go through a temp
    file and os.replace so a reader never sees a half-written document.
    """

    def __init__(self, directory: str | os.PathLike) -> None:
        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._locks = _LockTable()

    def _path(self, key: str) -> Path:
        if not _SAFE_KEY.match(key):
            raise ValueError(f"Unsafe document key: {key!r}")
        return self._dir / f"{key}.json"

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        with self._locks.get(key):
            yield

    def _read(self, path: Path) -> tuple[dict, int] | None:
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("document_unreadable", path=str(path))
            return None
        if not isinstance(payload, dict) or not isinstance(payload.get("document"), dict):
            return None
        return payload["document"], int(payload.get("version") or 0)

    def get(self, key: str) -> tuple[dict, int] | None:
        try:
            path = self._path(key)
        except ValueError:
            return None
        return self._read(path)

    def put(self, key: str, document: dict, expected_version: int | None) -> int:
        path = self._path(key)
        with self.lock(key):
            current = self._read(path)
            _check_version(key, expected_version, current[1] if current else None)
            version = (current[1] if current else 0) + 1

            fd, tmp_name = tempfile.mkstemp(dir=self._dir, prefix=f".{key}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump({"version": version, "document": document}, fh, indent=4)
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
            return version


# ---------------------------------------------------------------------------
# Record store
# ---------------------------------------------------------------------------


class InMemoryRecordStore:
    """Dict-backed record store keyed by integer `id`."""

    def __init__(self, records: Iterable[dict] = ()) -> None:
        self._lock = threading.Lock()
        self._records: dict[int, dict] = {}
        for record in records:
            self._records[int(record["id"])] = dict(record)

    def create(self, record: dict) -> dict:
        with self._lock:
            record_id = int(record.get("id") or max(self._records, default=0) + 1)
            if record_id in self._records:
                raise ValueError(f"Record {record_id} already exists.")
            stored = {**record, "id": record_id}
            self._records[record_id] = stored
            return dict(stored)

    def get(self, record_id: int) -> dict | None:
        record = self._records.get(int(record_id))
        return dict(record) if record is not None else None

    def select(self, where: RecordPredicate) -> list[dict]:
        with self._lock:
            return [dict(r) for _, r in sorted(self._records.items()) if where(r)]

    def update(
        self,
        ids: Iterable[int],
        changes: dict,
        where: RecordPredicate | None = None,
    ) -> int:
        """Apply `changes` to each listed record passing `where`; return the count."""
        affected = 0
        with self._lock:
            for record_id in ids:
                record = self._records.get(int(record_id))
                if record is None:
                    continue
                if where is not None and not where(record):
                    continue
                record.update(changes)
                affected += 1
        return affected

    def all(self) -> list[dict]:
        return self.select(lambda _: True)
