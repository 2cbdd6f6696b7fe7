"""Flat JSON file holding the whole thought collection.

Every save first copies the current file to a timestamped sibling backup, then
writes the new collection to a temp file and swaps it in with ``os.replace``,
so readers only ever see a complete file. Backups are never pruned.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from thoughts import is_valid_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "thoughts-backup-"
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class StoreError(Exception):
    pass


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def write_json_atomic(path: Path, data: Any, indent: int | None = 2):
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=indent, ensure_ascii=False)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


class ThoughtStore:
    def __init__(self, path: Path, backup_dir: Path | None = None):
        self.path = Path(path)
        self.backup_dir = Path(backup_dir) if backup_dir else self.path.parent
        self._lock = threading.Lock()
        self._marker: datetime | None = None

    def initialize(self) -> bool:
        """Create an empty collection file if none exists; True if one was created."""
        with self._lock:
            if self.path.exists():
                return False
            try:
                write_json_atomic(self.path, [])
            except OSError as e:
                raise StoreError(f"Could not create {self.path.name}: {e}") from e
            logger.info("created new %s", self.path.name)
            return True

    def load(self) -> list:
        with self._lock:
            if not self.path.exists():
                return []
            try:
                data = json.loads(self.path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                raise StoreError(f"Could not read {self.path.name}: {e}") from e
        if not isinstance(data, list):
            raise StoreError(f"{self.path.name} does not hold an array")
        return data

    def _backup_path(self) -> Path:
        stamp = time.time_ns() // 1_000_000
        candidate = self.backup_dir / f"{BACKUP_PREFIX}{stamp}.json"
        counter = 1
        while candidate.exists():
            candidate = self.backup_dir / f"{BACKUP_PREFIX}{stamp}_{counter}.json"
            counter += 1
        return candidate

    def _backup(self) -> Path | None:
        if not self.path.exists():
            return None
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            target = self._backup_path()
            shutil.copyfile(self.path, target)
        except OSError as e:
            logger.warning("could not create backup: %s", e)
            return None
        return target

    def save(self, thoughts: list) -> str:
        """Replace the collection; returns the new last-modified marker."""
        if not isinstance(thoughts, list):
            raise StoreError("Thoughts must be an array")
        with self._lock:
            self._backup()
            try:
                write_json_atomic(self.path, thoughts)
            except (OSError, TypeError, ValueError) as e:
                raise StoreError(f"Could not write {self.path.name}: {e}") from e
            now = datetime.now(timezone.utc)
            now = now.replace(microsecond=now.microsecond // 1000 * 1000)
            previous = self._current_marker()
            if previous is not None and now <= previous:
                now = previous + timedelta(milliseconds=1)
            self._marker = now
            return _iso(now)

    def _current_marker(self) -> datetime | None:
        if self._marker is not None:
            return self._marker
        try:
            mtime_ns = self.path.stat().st_mtime_ns
        except OSError:
            return None
        # millisecond precision so the marker survives a round trip through its ISO form
        self._marker = _EPOCH + timedelta(milliseconds=mtime_ns // 1_000_000)
        return self._marker

    def last_modified(self) -> str | None:
        marker = self._current_marker()
        return _iso(marker) if marker is not None else None

    def changed_since(self, since: str | None) -> bool:
        marker = self._current_marker()
        if marker is None:
            return False
        if not is_valid_timestamp(since):
            return True
        return marker > parse_timestamp(since)

    def backups(self) -> list[Path]:
        return sorted(self.backup_dir.glob(f"{BACKUP_PREFIX}*.json"))
