"""The in-memory thought collection and every mutation that keeps it consistent.

Module-level functions are pure: they take a snapshot (a tuple of Thoughts)
and return a new snapshot, never touching the old one. ``ThoughtGraph`` owns
the current snapshot for a session, serializes mutations behind a lock and
tells listeners when the collection changed.

Each connection is stored on both ends. Provenance is tracked so that removing
an ``@mention`` from text only retracts links that the mention created:
``Thought.mentions`` lists what a thought's own text points at and
``Thought.manual`` lists peers linked by an explicit toggle.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Callable, Iterable

from mentions import parse_text
from thoughts import (
    DEFAULT_TITLE,
    NEW_TITLE,
    QUICK_TITLE,
    Thought,
    ValidationReport,
    repair_thoughts,
    validate_thoughts,
)

logger = logging.getLogger(__name__)

Snapshot = tuple[Thought, ...]
Listener = Callable[["ThoughtGraph", str], None]

ORIGIN_LOCAL = "local"
ORIGIN_REMOTE = "remote"
ORIGIN_IMPORT = "import"


class ThoughtNotFound(KeyError):
    def __init__(self, thought_id: str):
        super().__init__(thought_id)
        self.thought_id = thought_id

    def __str__(self) -> str:
        return f"No thought with id {self.thought_id!r}"


def find(snapshot: Snapshot, thought_id: str) -> Thought:
    for t in snapshot:
        if t.id == thought_id:
            return t
    raise ThoughtNotFound(thought_id)


def _without(ids: Iterable[str], drop) -> list[str]:
    return [i for i in ids if i not in drop]


def _with(ids: Iterable[str], extra: str) -> list[str]:
    ids = list(ids)
    if extra not in ids:
        ids.append(extra)
    return ids


def create(snapshot: Snapshot, title: str = NEW_TITLE, content: str = "") -> tuple[Snapshot, Thought]:
    thought = Thought.new((title or "").strip() or DEFAULT_TITLE, content or "")
    return snapshot + (thought,), thought


def quick_capture(snapshot: Snapshot, raw: str) -> tuple[Snapshot, Thought | None]:
    """Create a thought from one line of text, linking every mention both ways."""
    if not raw or not raw.strip():
        return snapshot, None
    parsed = parse_text(raw, snapshot)
    ids = parsed.mention_ids
    thought = Thought.new(parsed.clean or QUICK_TITLE, "", connections=ids, mentions=ids)
    peers = tuple(
        t.touch(connections=_with(t.connections, thought.id)) if t.id in ids else t
        for t in snapshot
    )
    return (thought,) + peers, thought


def update(snapshot: Snapshot, thought_id: str, title_raw: str, content_raw: str) -> tuple[Snapshot, Thought]:
    """Save edited text, re-deriving mention links from both fields.

    A link to a peer that is no longer mentioned is retracted only if no other
    source holds it up: a manual toggle, or the peer mentioning this thought.
    """
    current = find(snapshot, thought_id)
    title = parse_text(title_raw or "", snapshot, exclude=thought_id)
    content = parse_text(content_raw or "", snapshot, exclude=thought_id)
    mentioned = list(title.mention_ids)
    for i in content.mention_ids:
        if i not in mentioned:
            mentioned.append(i)

    by_id = {t.id: t for t in snapshot}
    retract = set()
    for peer_id in current.mentions:
        if peer_id in mentioned or peer_id in current.manual:
            continue
        peer = by_id.get(peer_id)
        if peer is not None and thought_id in peer.mentions:
            continue
        retract.add(peer_id)

    connections = _without(current.connections, retract)
    for i in mentioned:
        if i not in connections:
            connections.append(i)

    updated = current.touch(
        title=title.clean or DEFAULT_TITLE,
        content=content.clean,
        connections=connections,
        mentions=mentioned,
    )

    out = []
    for t in snapshot:
        if t.id == thought_id:
            out.append(updated)
        elif t.id in mentioned and thought_id not in t.connections:
            out.append(t.touch(connections=_with(t.connections, thought_id)))
        elif t.id in retract and thought_id in t.connections:
            out.append(t.touch(connections=_without(t.connections, {thought_id})))
        else:
            out.append(t)
    return tuple(out), updated


def toggle_connection(snapshot: Snapshot, a_id: str, b_id: str) -> tuple[Snapshot, bool]:
    """Flip the link between two thoughts; returns whether they are now connected."""
    if a_id == b_id:
        raise ValueError("A thought cannot be connected to itself")
    a = find(snapshot, a_id)
    find(snapshot, b_id)
    connect = b_id not in a.connections

    def flip(t: Thought, peer: str) -> Thought:
        if connect:
            return t.touch(connections=_with(t.connections, peer), manual=_with(t.manual, peer))
        return t.touch(connections=_without(t.connections, {peer}),
                       manual=_without(t.manual, {peer}),
                       mentions=_without(t.mentions, {peer}))

    out = []
    for t in snapshot:
        if t.id == a_id:
            out.append(flip(t, b_id))
        elif t.id == b_id:
            out.append(flip(t, a_id))
        else:
            out.append(t)
    return tuple(out), connect


def delete(snapshot: Snapshot, thought_id: str) -> tuple[Snapshot, Thought]:
    removed = find(snapshot, thought_id)
    gone = {thought_id}
    out = []
    for t in snapshot:
        if t.id == thought_id:
            continue
        if thought_id in t.connections or thought_id in t.mentions or thought_id in t.manual:
            t = t.touch(connections=_without(t.connections, gone),
                        mentions=_without(t.mentions, gone),
                        manual=_without(t.manual, gone))
        out.append(t)
    return tuple(out), removed


def serialize(snapshot: Iterable[Thought]) -> list[dict]:
    return [t.to_dict() for t in snapshot]


class ThoughtGraph:
    """Session owner of the canonical thought collection.

    Mutations run under one lock so a two-sided link update is never visible
    half-done; listeners are called after the lock is released with the
    origin of the change (``local``, ``remote`` or ``import``).
    """

    def __init__(self, thoughts: Iterable[Thought] = ()):
        self._snapshot: Snapshot = tuple(thoughts)
        self._version = 0
        self._lock = threading.RLock()
        self._listeners: list[Listener] = []

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    @property
    def version(self) -> int:
        return self._version

    def __len__(self) -> int:
        return len(self._snapshot)

    def __iter__(self):
        return iter(self._snapshot)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _apply(self, transform, *args, origin: str = ORIGIN_LOCAL):
        with self._lock:
            snapshot, result = transform(self._snapshot, *args)
            changed = snapshot is not self._snapshot
            if changed:
                self._snapshot = snapshot
                self._version += 1
        if changed:
            self._notify(origin)
        return result

    def _replace(self, snapshot: Snapshot, origin: str, expected_version: int | None = None) -> bool:
        with self._lock:
            if expected_version is not None and self._version != expected_version:
                return False
            self._snapshot = snapshot
            self._version += 1
        self._notify(origin)
        return True

    def _notify(self, origin: str):
        for listener in list(self._listeners):
            listener(self, origin)

    def get(self, thought_id: str) -> Thought:
        return find(self._snapshot, thought_id)

    def to_dicts(self) -> list[dict]:
        return serialize(self._snapshot)

    def versioned_dicts(self) -> tuple[int, list[dict]]:
        with self._lock:
            return self._version, serialize(self._snapshot)

    def create(self, title: str = NEW_TITLE, content: str = "") -> Thought:
        return self._apply(create, title, content)

    def create_from_quick_capture(self, raw: str) -> Thought | None:
        return self._apply(quick_capture, raw)

    def update(self, thought_id: str, title_raw: str, content_raw: str) -> Thought:
        return self._apply(update, thought_id, title_raw, content_raw)

    def toggle_connection(self, a_id: str, b_id: str) -> bool:
        return self._apply(toggle_connection, a_id, b_id)

    def delete(self, thought_id: str) -> Thought:
        return self._apply(delete, thought_id)

    def connected(self, thought_id: str) -> list[Thought]:
        snapshot = self._snapshot
        by_id = {t.id: t for t in snapshot}
        return [by_id[i] for i in find(snapshot, thought_id).connections if i in by_id]

    def linkable(self, thought_id: str) -> list[Thought]:
        snapshot = self._snapshot
        current = find(snapshot, thought_id)
        return [t for t in snapshot if t.id != thought_id and t.id not in current.connections]

    def load(self, thoughts: Iterable[Thought], origin: str = ORIGIN_REMOTE,
             expected_version: int | None = None) -> bool:
        """Adopt a whole collection as-is, replacing the current one.

        With ``expected_version`` the swap only happens if no mutation landed
        since that version; returns whether the collection was replaced.
        """
        return self._replace(tuple(thoughts), origin, expected_version)

    def reset(self):
        self._replace((), ORIGIN_LOCAL)

    def export_json(self) -> str:
        return json.dumps(self.to_dicts(), indent=2)

    def import_json(self, text: str) -> ValidationReport:
        """Replace the collection with the valid records of a JSON export.

        Invalid records are reported and skipped; the survivors are repaired so
        every link is reciprocal and points at an imported thought. Nothing is
        replaced when the payload is not an array or no record survives.
        """
        try:
            records = json.loads(text)
        except ValueError as e:
            return ValidationReport(errors=[f"Invalid JSON: {e}"], valid=[], total=0)
        report = validate_thoughts(records)
        if report.errors:
            logger.warning("import skipped %d of %d thoughts",
                           report.total - report.valid_count, report.total)
        if report.valid or (isinstance(records, list) and not records):
            self._replace(repair_thoughts(report.valid), ORIGIN_IMPORT)
        return report
