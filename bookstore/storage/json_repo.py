from __future__ import annotations

import json
import shutil
import threading
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union
from uuid import uuid4

from pydantic import BaseModel

from bookstore.config import BACKUP_ENABLED, BACKUP_KEEP
from bookstore.errors import RecordNotFound
from bookstore.loggers import get_logger

log = get_logger("bookstore.storage")

Row = Dict[str, Any]


def _json_default(o: Any) -> Any:
    if isinstance(o, (date, datetime)):
        return o.isoformat()
    raise TypeError(f"Object of type {o.__class__.__name__} is not JSON serializable")


class JsonRepository:
    """
    One collection stored as a JSON array in a single file.
    - writes are serialised by a lock and skipped when nothing changed
    - the previous file is kept as a rotating ``.<ts>.bak.json`` backup
    - a file that no longer parses is copied to ``.corrupt.json`` and read as empty
    """

    def __init__(
        self,
        filepath: Union[str, Path],
        entity_name: str = "record",
        key: str = "id",
        *,
        backup_enabled: bool = BACKUP_ENABLED,
        backup_keep: int = BACKUP_KEEP,
    ) -> None:
        self.filepath = Path(filepath)
        self.entity_name = entity_name
        self.key = key
        self.backup_enabled = backup_enabled
        self.backup_keep = max(0, int(backup_keep))
        self._lock = threading.Lock()

        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        if not self.filepath.exists():
            self._write_rows([])

    # ---------------- raw I/O ---------------- #

    def _read_rows(self) -> List[Row]:
        try:
            data = json.loads(self.filepath.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except json.JSONDecodeError:
            backup = self.filepath.with_suffix(".corrupt.json")
            log.error("%s: unreadable JSON, copied to %s and read as empty", self.filepath, backup.name)
            shutil.copy2(self.filepath, backup)
            return []
        if not isinstance(data, list):
            log.error("%s: expected a JSON array, got %s", self.filepath, type(data).__name__)
            return []
        return data

    def _backups(self) -> List[Path]:
        return sorted(self.filepath.parent.glob(f"{self.filepath.stem}.*.bak.json"))

    def _rotate_backups(self) -> None:
        stale = self._backups()[: -self.backup_keep] if self.backup_keep else self._backups()
        for old in stale:
            old.unlink(missing_ok=True)

    def _write_rows(self, rows: Iterable[Mapping[str, Any]]) -> None:
        dump = json.dumps(list(rows), ensure_ascii=False, indent=2, default=_json_default)
        with self._lock:
            if self.filepath.exists():
                if self.filepath.read_text(encoding="utf-8") == dump:
                    return
                if self.backup_enabled and self.backup_keep > 0:
                    ts = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
                    shutil.copy2(self.filepath, self.filepath.with_suffix(f".{ts}.bak.json"))
                    self._rotate_backups()

            tmp = self.filepath.with_suffix(".tmp")
            tmp.write_text(dump, encoding="utf-8")
            tmp.replace(self.filepath)

    # ---------------- helpers ---------------- #

    def _to_row(self, item: Union[BaseModel, Mapping[str, Any]]) -> Row:
        if isinstance(item, BaseModel):
            return item.model_dump(mode="json")
        return json.loads(json.dumps(dict(item), default=_json_default))

    def _matches(self, row: Mapping[str, Any], obj_id: Any) -> bool:
        return str(row.get(self.key)) == str(obj_id)

    # ---------------- CRUD ---------------- #

    def list_all(self) -> List[Row]:
        return self._read_rows()

    def get_by_id(self, obj_id: Any) -> Optional[Row]:
        return next((r for r in self._read_rows() if self._matches(r, obj_id)), None)

    def require(self, obj_id: Any) -> Row:
        row = self.get_by_id(obj_id)
        if row is None:
            raise RecordNotFound(self.entity_name, obj_id)
        return row

    def add(self, item: Union[BaseModel, Mapping[str, Any]]) -> Row:
        record = self._to_row(item)
        if not record.get(self.key):
            record[self.key] = uuid4().hex
        rows = self._read_rows()
        if any(self._matches(r, record[self.key]) for r in rows):
            raise ValueError(f"{self.entity_name} with {self.key}={record[self.key]} already exists")
        rows.append(record)
        self._write_rows(rows)
        return record

    def update(self, item: Union[BaseModel, Mapping[str, Any]]) -> Row:
        record = self._to_row(item)
        obj_id = record.get(self.key)
        if not obj_id:
            raise ValueError(f"Cannot update {self.entity_name} without '{self.key}'")
        rows = self._read_rows()
        for idx, existing in enumerate(rows):
            if self._matches(existing, obj_id):
                rows[idx] = {**existing, **record}
                self._write_rows(rows)
                return rows[idx]
        raise RecordNotFound(self.entity_name, obj_id)

    def upsert(self, item: Union[BaseModel, Mapping[str, Any]]) -> Row:
        try:
            return self.update(item)
        except RecordNotFound:
            return self.add(item)

    def delete(self, obj_id: Any) -> bool:
        rows = self._read_rows()
        kept = [r for r in rows if not self._matches(r, obj_id)]
        if len(kept) == len(rows):
            return False
        self._write_rows(kept)
        return True

    def replace_all(self, items: Iterable[Union[BaseModel, Mapping[str, Any]]]) -> None:
        self._write_rows([self._to_row(it) for it in items])

    # ---------------- queries ---------------- #

    def find(self, predicate: Callable[[Row], bool]) -> List[Row]:
        return [r for r in self._read_rows() if predicate(r)]

    def find_one(self, predicate: Callable[[Row], bool]) -> Optional[Row]:
        return next((r for r in self._read_rows() if predicate(r)), None)
