"""Thought records and the loose validation used on import and repair.

A Thought is an immutable value; graph code produces new Thoughts with
``dataclasses.replace`` rather than mutating in place. The wire form uses the
camelCase keys the HTTP API and the JSON file have always used.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Iterable

DEFAULT_TITLE = "Untitled Thought"
NEW_TITLE = "New Thought"
QUICK_TITLE = "Quick Thought"

_SCHEMA = {
    "id": "string",
    "title": "string",
    "content": "string",
    "connections": "array",
    "createdAt": "string",
    "updatedAt": "string",
}
_OPTIONAL_ID_LISTS = ("mentions", "manualConnections")


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_id() -> str:
    return str(uuid.uuid4())


def _parse_iso(value: str) -> datetime:
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def is_valid_timestamp(value: Any) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    try:
        _parse_iso(value)
    except ValueError:
        return False
    return True


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string; anything unparseable reads as the current time."""
    if is_valid_timestamp(value):
        return _parse_iso(value)
    return datetime.now(timezone.utc)


def _unique(ids: Iterable[str]) -> tuple[str, ...]:
    seen = set()
    out = []
    for i in ids:
        if i not in seen:
            seen.add(i)
            out.append(i)
    return tuple(out)


@dataclass(frozen=True)
class Thought:
    id: str
    title: str
    content: str = ""
    connections: tuple[str, ...] = ()
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    # ids resolved from this thought's own text on its last save
    mentions: tuple[str, ...] = ()
    # peers linked by an explicit toggle; kept symmetric like connections
    manual: tuple[str, ...] = ()

    @classmethod
    def new(cls, title: str, content: str = "", connections: Iterable[str] = (),
            mentions: Iterable[str] = ()) -> Thought:
        stamp = now_iso()
        return cls(id=new_id(), title=title, content=content,
                   connections=_unique(connections), created_at=stamp,
                   updated_at=stamp, mentions=_unique(mentions))

    def touch(self, **changes) -> Thought:
        for key in ("connections", "mentions", "manual"):
            if key in changes:
                changes[key] = _unique(changes[key])
        return replace(self, updated_at=now_iso(), **changes)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "connections": list(self.connections),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "mentions": list(self.mentions),
            "manualConnections": list(self.manual),
        }

    @classmethod
    def from_dict(cls, data: dict) -> Thought:
        connections = _unique(data.get("connections") or ())
        mentions = _unique(data.get("mentions") or ())
        if "manualConnections" in data:
            manual = _unique(data.get("manualConnections") or ())
        else:
            # Records written before provenance tracking: anything not explained
            # by a mention was linked by hand.
            manual = tuple(c for c in connections if c not in mentions)
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            content=data.get("content", ""),
            connections=connections,
            created_at=data.get("createdAt") or now_iso(),
            updated_at=data.get("updatedAt") or now_iso(),
            mentions=mentions,
            manual=manual,
        )


def _type_name(value: Any) -> str:
    if isinstance(value, list):
        return "array"
    if isinstance(value, str):
        return "string"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def validate_thought(record: Any) -> list[str]:
    """Return human-readable problems with one raw record; empty means valid."""
    if not isinstance(record, dict):
        return ["Thought must be an object"]

    errors = []
    for key, expected in _SCHEMA.items():
        value = record.get(key)
        if value is None:
            errors.append(f"Missing required field: {key}")
            continue
        actual = _type_name(value)
        if actual != expected:
            errors.append(f"Field '{key}' should be {expected}, got {actual}")
            continue
        if key == "id" and not value.strip():
            errors.append("ID cannot be empty")
        if key == "connections" and any(not isinstance(c, str) for c in value):
            errors.append("All connections must be strings (thought IDs)")
        if key in ("createdAt", "updatedAt") and not is_valid_timestamp(value):
            errors.append(f"Field '{key}' must be a valid ISO date string")

    for key in _OPTIONAL_ID_LISTS:
        value = record.get(key)
        if value is None:
            continue
        if not isinstance(value, list) or any(not isinstance(c, str) for c in value):
            errors.append(f"Field '{key}' must be an array of thought IDs")
    return errors


@dataclass
class ValidationReport:
    errors: list[str]
    valid: list[dict]
    total: int

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def valid_count(self) -> int:
        return len(self.valid)


def validate_thoughts(records: Any) -> ValidationReport:
    if not isinstance(records, list):
        return ValidationReport(errors=["Data must be an array of thoughts"], valid=[], total=0)

    errors = []
    valid = []
    for index, record in enumerate(records):
        problems = validate_thought(record)
        if problems:
            errors.append(f"Thought at index {index}: {', '.join(problems)}")
        else:
            valid.append(record)
    return ValidationReport(errors=errors, valid=valid, total=len(records))


def _clean_ids(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [c.strip() for c in value if isinstance(c, str) and c.strip()]


def sanitize_thought(record: dict) -> dict:
    """Coerce one loosely-shaped record into the wire form with safe defaults."""
    stamp = now_iso()
    created = record.get("createdAt")
    updated = record.get("updatedAt")
    out = {
        "id": str(record.get("id") or "").strip(),
        "title": str(record.get("title") or "").strip(),
        "content": str(record.get("content") or "").strip(),
        "connections": _clean_ids(record.get("connections")),
        "createdAt": created if is_valid_timestamp(created) else stamp,
        "updatedAt": updated if is_valid_timestamp(updated) else stamp,
        "mentions": _clean_ids(record.get("mentions")),
    }
    if "manualConnections" in record:
        out["manualConnections"] = _clean_ids(record.get("manualConnections"))
    return out


def repair_thoughts(records: Iterable[dict]) -> tuple[Thought, ...]:
    """Sanitize records and restore every structural invariant of the collection.

    Missing ids are regenerated, duplicate ids keep their first record, blank
    titles get the default label, references to unknown or self ids are
    dropped, and one-sided connections are made reciprocal.
    """
    thoughts: list[Thought] = []
    seen = set()
    for record in records:
        if not isinstance(record, dict):
            continue
        clean = sanitize_thought(record)
        if not clean["id"]:
            clean["id"] = new_id()
        if clean["id"] in seen:
            continue
        seen.add(clean["id"])
        if not clean["title"]:
            clean["title"] = DEFAULT_TITLE
        thoughts.append(Thought.from_dict(clean))

    def keep(t: Thought, ids: Iterable[str]) -> tuple[str, ...]:
        return tuple(i for i in ids if i in seen and i != t.id)

    thoughts = [replace(t, connections=keep(t, t.connections),
                        mentions=keep(t, t.mentions), manual=keep(t, t.manual))
                for t in thoughts]

    links = {t.id: list(t.connections) for t in thoughts}
    manual = {t.id: list(t.manual) for t in thoughts}
    for t in thoughts:
        for peer in t.connections:
            if t.id not in links[peer]:
                links[peer].append(t.id)
        for peer in t.mentions:
            if peer not in links[t.id]:
                links[t.id].append(peer)
            if t.id not in links[peer]:
                links[peer].append(t.id)
        for peer in t.manual:
            if t.id not in manual[peer]:
                manual[peer].append(t.id)
    for t in thoughts:
        for peer in manual[t.id]:
            if peer not in links[t.id]:
                links[t.id].append(peer)
            if t.id not in links[peer]:
                links[peer].append(t.id)

    return tuple(replace(t, connections=_unique(links[t.id]), manual=_unique(manual[t.id]))
                 for t in thoughts)
