from __future__ import annotations

import copy
import json
import os
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator
from uuid import uuid4

from flowdesk.core.env import env_float
from flowdesk.core.errors import Conflict, FatalError, NotFound, RetryableError

Row = dict[str, Any]

_STALE_LOCK_SECONDS = 30.0


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class UnitOfWork:
    """Reads and writes against one loaded copy of a store's tables.

    Returned rows are copies; changes only land through insert/update/delete.
    """

    def __init__(self, tables: dict[str, dict[str, Row]], read_only: bool = False) -> None:
        self._tables = tables
        self.read_only = read_only
        self.dirty = False

    def _table(self, name: str) -> dict[str, Row]:
        return self._tables.setdefault(name, {})

    def _check_writable(self) -> None:
        if self.read_only:
            raise FatalError("snapshot is read-only")

    def get(self, table: str, row_id: str) -> Row | None:
        row = self._tables.get(table, {}).get(row_id)
        return copy.deepcopy(row) if row is not None else None

    def find(self, table: str, predicate: Callable[[Row], bool] | None = None, **filters: Any) -> list[Row]:
        matches: list[Row] = []
        for row in self._tables.get(table, {}).values():
            if any(row.get(key) != value for key, value in filters.items()):
                continue
            if predicate is not None and not predicate(row):
                continue
            matches.append(copy.deepcopy(row))
        return matches

    def find_one(self, table: str, predicate: Callable[[Row], bool] | None = None, **filters: Any) -> Row | None:
        matches = self.find(table, predicate, **filters)
        return matches[0] if matches else None

    def insert(self, table: str, row: Row) -> Row:
        self._check_writable()
        row_id = row.get("id")
        if not row_id:
            raise FatalError(f"row for {table} has no id")
        rows = self._table(table)
        if row_id in rows:
            raise Conflict(f"{table} row {row_id} already exists")
        rows[row_id] = copy.deepcopy(row)
        self.dirty = True
        return copy.deepcopy(row)

    def update(self, table: str, row_id: str, **changes: Any) -> Row:
        self._check_writable()
        rows = self._table(table)
        current = rows.get(row_id)
        if current is None:
            raise NotFound(f"{table} row {row_id} not found")
        current.update(copy.deepcopy(changes))
        self.dirty = True
        return copy.deepcopy(current)

    def delete(self, table: str, row_id: str) -> bool:
        self._check_writable()
        removed = self._table(table).pop(row_id, None)
        if removed is not None:
            self.dirty = True
        return removed is not None


class StateStore:
    """JSON-document store with serialized, all-or-nothing transactions."""

    def __init__(self, state_dir: str | Path, name: str, lock_timeout_s: float | None = None) -> None:
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.path = self.state_dir / name
        self.lock_path = self.path.with_suffix(".lock")
        self.lock_timeout_s = (
            lock_timeout_s if lock_timeout_s is not None else env_float("FLOWDESK_STORE_LOCK_TIMEOUT_S", 5.0)
        )
        self._lock = threading.RLock()
        self._local = threading.local()

    @contextmanager
    def transaction(self) -> Iterator[UnitOfWork]:
        with self._lock:
            active: UnitOfWork | None = getattr(self._local, "active", None)
            if active is not None:
                yield active
                return

            with self._file_lock():
                tables = self._load()
                uow = UnitOfWork(tables)
                self._local.active = uow
                try:
                    yield uow
                finally:
                    self._local.active = None
                if uow.dirty:
                    self._save(tables)

    def snapshot(self) -> UnitOfWork:
        with self._lock:
            return UnitOfWork(self._load(), read_only=True)

    def _load(self) -> dict[str, dict[str, Row]]:
        if not self.path.exists() or self.path.stat().st_size == 0:
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise FatalError(f"state file {self.path.name} is corrupt") from exc
        if not isinstance(raw, dict):
            raise FatalError(f"state file {self.path.name} is corrupt")
        return {str(name): dict(rows) for name, rows in raw.items() if isinstance(rows, dict)}

    def _save(self, tables: dict[str, dict[str, Row]]) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(tables, ensure_ascii=False, sort_keys=True), encoding="utf-8")
        tmp.replace(self.path)

    @contextmanager
    def _file_lock(self) -> Iterator[None]:
        deadline = time.monotonic() + max(0.05, self.lock_timeout_s)
        while True:
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.close(fd)
                break
            except FileExistsError:
                if self._lock_is_stale():
                    self._release_lock()
                    continue
                if time.monotonic() >= deadline:
                    raise RetryableError(f"state store busy: {self.path.name}")
                time.sleep(0.01)

        try:
            yield
        finally:
            self._release_lock()

    def _lock_is_stale(self) -> bool:
        try:
            age = time.time() - self.lock_path.stat().st_mtime
        except FileNotFoundError:
            return False
        return age > _STALE_LOCK_SECONDS

    def _release_lock(self) -> None:
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            pass
