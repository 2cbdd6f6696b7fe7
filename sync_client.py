"""Keeps a local ThoughtGraph in step with the thought server.

Local edits are pushed as a whole collection after a short quiet period.
Remote edits are picked up by polling ``/api/check`` with the last-modified
marker; when the server has something new and different, its snapshot
replaces the local one outright. There is no merge: if two clients edit at
once, whichever the server saw last wins and the other client's edits are
overwritten on its next poll. ``conflict_count`` records how often that
replaced non-empty local state.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path

import requests

from settings import LOCAL_BACKUP_DIR, POLL_INTERVAL, REQUEST_TIMEOUT, SAVE_DELAY, SERVER_URL
from thought_graph import ORIGIN_REMOTE, ThoughtGraph, serialize
from thought_store import write_json_atomic
from thoughts import Thought, now_iso, repair_thoughts, validate_thoughts

logger = logging.getLogger(__name__)

STORAGE_KEY = "thoughts-graph-data"
SAVED_AT_KEY = "thoughts-graph-last-save"

STATUS_UNKNOWN = "unknown"
STATUS_ONLINE = "online"
STATUS_OFFLINE = "offline"

SAVE_IDLE = "idle"
SAVE_SAVING = "saving"
SAVE_SAVED = "saved"
SAVE_ERROR = "error"


class TransportError(Exception):
    """The server could not be reached or answered with an error."""


class PersistenceError(Exception):
    """The local fallback copy could not be written."""


class ThoughtsAPI:
    def __init__(self, base_url: str = SERVER_URL, timeout: float = REQUEST_TIMEOUT,
                 session: requests.Session | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, endpoint: str, **kwargs) -> dict:
        try:
            resp = self.session.request(method, f"{self.base_url}{endpoint}",
                                        timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise TransportError(f"{method} {endpoint} failed: {e}") from e
        try:
            data = resp.json()
        except ValueError as e:
            raise TransportError(f"{method} {endpoint} returned invalid JSON (status {resp.status_code})") from e
        if not isinstance(data, dict):
            raise TransportError(f"{method} {endpoint} returned an unexpected payload")
        if not resp.ok or not data.get("success", False):
            raise TransportError(data.get("error") or f"HTTP error! status: {resp.status_code}")
        return data

    def status(self) -> dict:
        return self._request("GET", "/api/status")

    def load_thoughts(self) -> tuple[list, str | None]:
        data = self._request("GET", "/api/thoughts")
        thoughts = data.get("thoughts") or []
        if not isinstance(thoughts, list):
            raise TransportError("Server returned thoughts that are not an array")
        return thoughts, data.get("lastModified") or data.get("timestamp")

    def save_thoughts(self, thoughts: list) -> dict:
        return self._request("POST", "/api/thoughts", json={"thoughts": thoughts})

    def check(self, since: str | None) -> dict:
        params = {"since": since} if since else {}
        return self._request("GET", "/api/check", params=params)


class LocalBackup:
    """Two key-value slots on disk: the serialized collection and when it was saved."""

    def __init__(self, directory: Path = LOCAL_BACKUP_DIR):
        self.directory = Path(directory)

    def _slot(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def write(self, thoughts: list):
        try:
            write_json_atomic(self._slot(STORAGE_KEY), thoughts, indent=None)
            write_json_atomic(self._slot(SAVED_AT_KEY), now_iso(), indent=None)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Could not write local backup: {e}") from e

    def read(self) -> list | None:
        path = self._slot(STORAGE_KEY)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("ignoring unreadable local backup: %s", e)
            return None
        return data if isinstance(data, list) else None

    def saved_at(self) -> str | None:
        try:
            return json.loads(self._slot(SAVED_AT_KEY).read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None

    def clear(self):
        for key in (STORAGE_KEY, SAVED_AT_KEY):
            try:
                self._slot(key).unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                raise PersistenceError(f"Could not clear local backup: {e}") from e


def _to_thoughts(records: list) -> tuple[Thought, ...]:
    # well-formed records can still hold one-sided links, dangling ids or duplicates
    report = validate_thoughts(records)
    if report.errors:
        logger.warning("repairing %d malformed thoughts", len(report.errors))
    return repair_thoughts(records)


class SyncCoordinator:
    """Owns the save and poll timers for one client session.

    Use as a context manager: polling starts on enter, and on exit every timer
    is cancelled and any unsaved edit is pushed once more.
    """

    def __init__(self, graph: ThoughtGraph, api: ThoughtsAPI, backup: LocalBackup,
                 save_delay: float = SAVE_DELAY, poll_interval: float = POLL_INTERVAL,
                 timer_factory=threading.Timer):
        self.graph = graph
        self.api = api
        self.backup = backup
        self.save_delay = save_delay
        self.poll_interval = poll_interval
        self._timer_factory = timer_factory

        self.server_status = STATUS_UNKNOWN
        self.save_status = SAVE_IDLE
        self.last_modified: str | None = None
        self.last_error: str | None = None
        self.conflict_count = 0

        self._sync_lock = threading.Lock()
        self._timer_lock = threading.Lock()
        self._save_timer = None
        self._poll_timer = None
        self._running = False
        self._synced_version = graph.version
        self._unsubscribe = None

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def start(self):
        if self._unsubscribe is None:
            self._unsubscribe = self.graph.subscribe(self._on_change)
        self._running = True
        self._schedule_poll()

    def close(self, flush: bool = True):
        self._running = False
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        with self._timer_lock:
            for timer in (self._save_timer, self._poll_timer):
                if timer is not None:
                    timer.cancel()
            self._save_timer = None
            self._poll_timer = None
        if flush and self.has_pending_changes():
            self.push()

    def status(self) -> dict:
        return {
            "server": self.server_status,
            "save": self.save_status,
            "lastModified": self.last_modified,
            "conflicts": self.conflict_count,
            "pending": self.has_pending_changes(),
        }

    def has_pending_changes(self) -> bool:
        return self.graph.version != self._synced_version

    def _start_timer(self, delay: float, func):
        timer = self._timer_factory(delay, func)
        timer.daemon = True
        timer.start()
        return timer

    def _on_change(self, graph: ThoughtGraph, origin: str):
        if origin == ORIGIN_REMOTE:
            return
        self.schedule_save()

    def schedule_save(self):
        with self._timer_lock:
            if self._save_timer is not None:
                self._save_timer.cancel()
            self._save_timer = self._start_timer(self.save_delay, self._save_due)

    def _save_due(self):
        with self._timer_lock:
            self._save_timer = None
        self.push()

    def _schedule_poll(self):
        with self._timer_lock:
            if not self._running:
                return
            self._poll_timer = self._start_timer(self.poll_interval, self._poll_due)

    def _poll_due(self):
        try:
            self.poll()
        finally:
            self._schedule_poll()

    def _save_locally(self, payload: list) -> bool:
        try:
            self.backup.write(payload)
        except PersistenceError as e:
            logger.error("local save failed: %s", e)
            self.last_error = str(e)
            self.save_status = SAVE_ERROR
            return False
        self.save_status = SAVE_SAVED
        return True

    def initial_load(self) -> str:
        """Adopt the server collection if reachable, else the local backup.

        Returns ``"server"`` or ``"local"`` to say where the data came from.
        """
        with self._sync_lock:
            try:
                self.api.status()
                records, marker = self.api.load_thoughts()
            except TransportError as e:
                logger.info("server unavailable, loading local backup: %s", e)
                self.server_status = STATUS_OFFLINE
                self.last_error = str(e)
                self.graph.load(_to_thoughts(self.backup.read() or []), ORIGIN_REMOTE)
                self._synced_version = self.graph.version
                return "local"
            self.server_status = STATUS_ONLINE
            self.graph.load(_to_thoughts(records), ORIGIN_REMOTE)
            self._synced_version = self.graph.version
            self.last_modified = marker
            self._save_locally(self.graph.to_dicts())
            logger.info("loaded %d thoughts from server", len(self.graph))
            return "server"

    def push(self) -> bool:
        """Send the whole collection to the server; True if the server took it.

        On a transport failure the collection is still written to the local
        backup and the server is marked offline.
        """
        with self._sync_lock:
            return self._push()

    def _push(self) -> bool:
        # caller holds _sync_lock
        version, payload = self.graph.versioned_dicts()
        self.save_status = SAVE_SAVING
        try:
            result = self.api.save_thoughts(payload)
        except TransportError as e:
            logger.warning("push failed, saved locally only: %s", e)
            self.server_status = STATUS_OFFLINE
            self.last_error = str(e)
            self._save_locally(payload)
            return False
        self.server_status = STATUS_ONLINE
        self.last_modified = result.get("timestamp") or self.last_modified
        self._synced_version = version
        self._save_locally(payload)
        return True

    def poll(self) -> bool:
        """Pull the server collection if it changed; True if local state was replaced.

        Skipped while a push is running. Unsynced local edits are pushed
        instead of pulling over them.
        """
        if not self._sync_lock.acquire(blocking=False):
            return False
        try:
            if self.has_pending_changes():
                with self._timer_lock:
                    waiting = self._save_timer is not None
                if not waiting:
                    self._push()
                return False
            version = self._synced_version
            try:
                check = self.api.check(self.last_modified)
                if not check.get("changed"):
                    self.server_status = STATUS_ONLINE
                    self.last_modified = check.get("lastModified") or self.last_modified
                    return False
                records, marker = self.api.load_thoughts()
            except TransportError as e:
                logger.info("poll failed: %s", e)
                self.server_status = STATUS_OFFLINE
                self.last_error = str(e)
                return False
            self.server_status = STATUS_ONLINE
            if self.graph.version != version:
                # a local edit landed while fetching; it wins and is pushed next
                return False
            self.last_modified = marker or check.get("lastModified") or self.last_modified
            return self._adopt(records, version)
        finally:
            self._sync_lock.release()

    def on_visible(self) -> bool:
        return self.poll()

    def _adopt(self, records: list, version: int) -> bool:
        remote = _to_thoughts(records)
        local = self.graph.to_dicts()
        if serialize(remote) == local:
            return False
        if not self.graph.load(remote, ORIGIN_REMOTE, expected_version=version):
            return False
        self._synced_version = version + 1
        if local:
            self.conflict_count += 1
            logger.info("server state replaced %d local thoughts", len(local))
        self._save_locally(serialize(remote))
        return True

    def reset(self, confirm: bool = False):
        """Wipe the local collection and backup; the empty state is then pushed."""
        if not confirm:
            raise ValueError("Refusing to reset thought data without confirmation")
        self.backup.clear()
        self.graph.reset()
