"""@mention parsing.

Mentions are read in two passes. ``scan_mentions`` is purely syntactic: it
finds every ``@"quoted title"`` and ``@unquoted words`` span and records each
place an unquoted span could end. ``extract_mentions`` then resolves those
spans against existing thought titles. Stripping uses the resolved spans but
removes every mention, linked or not, so an ``@name`` that matches no thought
still disappears from saved text without creating a connection.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

from settings import MAX_MENTION_SUGGESTIONS
from thoughts import Thought

BOUNDARY_CHARS = frozenset(".,!?;:")
MAX_SUGGESTIONS = MAX_MENTION_SUGGESTIONS


def _is_word_char(ch: str) -> bool:
    return not ch.isspace() and ch != "@" and ch not in BOUNDARY_CHARS


@dataclass(frozen=True)
class MentionSpan:
    start: int
    # candidate end offsets (exclusive), shortest first
    ends: tuple[int, ...]
    quoted: bool

    def name(self, text: str, end: int) -> str:
        if self.quoted:
            return text[self.start + 2:end - 1]
        return text[self.start + 1:end]


@dataclass(frozen=True)
class Mention:
    start: int
    end: int
    name: str
    quoted: bool
    thought_id: str | None = None

    @property
    def resolved(self) -> bool:
        return self.thought_id is not None


@dataclass(frozen=True)
class ParsedText:
    clean: str
    mention_ids: tuple[str, ...]
    mentions: tuple[Mention, ...]


@dataclass(frozen=True)
class Segment:
    text: str
    mention: Mention | None = None


@dataclass(frozen=True)
class MentionQuery:
    start: int
    query: str
    suggestions: tuple[Thought, ...]


def _quoted_span(text: str, at: int) -> MentionSpan | None:
    if text[at + 1:at + 2] != '"':
        return None
    close = text.find('"', at + 2)
    if close <= at + 2:
        return None
    return MentionSpan(start=at, ends=(close + 1,), quoted=True)


def _unquoted_span(text: str, at: int) -> MentionSpan | None:
    n = len(text)
    pos = at + 1
    ends = []
    while True:
        k = pos
        while k < n and _is_word_char(text[k]):
            k += 1
        if k == pos:
            break
        ends.append(k)
        ws = k
        while ws < n and text[ws].isspace():
            ws += 1
        if ws == k or ws >= n or not _is_word_char(text[ws]):
            break
        pos = ws
    if not ends:
        return None
    return MentionSpan(start=at, ends=tuple(ends), quoted=False)


def scan_mentions(text: str) -> list[MentionSpan]:
    spans = []
    i = 0
    n = len(text)
    while i < n:
        if text[i] != "@":
            i += 1
            continue
        span = _quoted_span(text, i) or _unquoted_span(text, i)
        if span is None:
            i += 1
            continue
        spans.append(span)
        i = span.ends[-1]
    return spans


def title_index(thoughts: Iterable[Thought]) -> dict[str, Thought]:
    index: dict[str, Thought] = {}
    for t in thoughts:
        index.setdefault(t.title.lower(), t)
    return index


def extract_mentions(text: str, thoughts: Iterable[Thought] = ()) -> list[Mention]:
    """Resolve every mention span, preferring the shortest run that names a thought."""
    index = title_index(thoughts)
    out = []
    for span in scan_mentions(text or ""):
        chosen = span.ends[0]
        target = None
        for end in span.ends:
            hit = index.get(span.name(text, end).lower())
            if hit is not None:
                chosen, target = end, hit
                break
        out.append(Mention(start=span.start, end=chosen, name=span.name(text, chosen),
                           quoted=span.quoted,
                           thought_id=target.id if target is not None else None))
    return out


def resolve_mention_ids(text: str, thoughts: Iterable[Thought], exclude: str | None = None) -> list[str]:
    ids = []
    for m in extract_mentions(text, thoughts):
        if m.resolved and m.thought_id != exclude and m.thought_id not in ids:
            ids.append(m.thought_id)
    return ids


def _remove_spans(text: str, mentions: Sequence[Mention]) -> str:
    parts = []
    last = 0
    for m in mentions:
        parts.append(text[last:m.start])
        last = m.end
    parts.append(text[last:])
    return "".join(parts).strip()


def strip_mentions(text: str, thoughts: Iterable[Thought] = ()) -> str:
    return _remove_spans(text or "", extract_mentions(text, thoughts))


def parse_text(text: str, thoughts: Iterable[Thought], exclude: str | None = None) -> ParsedText:
    mentions = extract_mentions(text or "", thoughts)
    ids = []
    for m in mentions:
        if m.resolved and m.thought_id != exclude and m.thought_id not in ids:
            ids.append(m.thought_id)
    return ParsedText(clean=_remove_spans(text or "", mentions),
                      mention_ids=tuple(ids), mentions=tuple(mentions))


def mention_segments(text: str, thoughts: Iterable[Thought]) -> list[Segment]:
    """Split text into plain runs and mention runs for preview highlighting."""
    segments = []
    last = 0
    for m in extract_mentions(text or "", thoughts):
        if m.start > last:
            segments.append(Segment(text[last:m.start]))
        segments.append(Segment(text[m.start:m.end], m))
        last = m.end
    if last < len(text or ""):
        segments.append(Segment(text[last:]))
    return segments


def suggest_mentions(text: str, cursor: int, thoughts: Iterable[Thought],
                     limit: int = MAX_SUGGESTIONS) -> MentionQuery | None:
    """Find the open ``@query`` ending at the cursor and list matching thoughts."""
    before = (text or "")[:max(0, cursor)]
    at = before.rfind("@")
    if at == -1:
        return None
    query = before[at + 1:]
    if any(ch.isspace() for ch in query):
        return None
    needle = query.lower()
    matches = [t for t in thoughts if needle in t.title.lower()][:limit]
    return MentionQuery(start=at, query=query, suggestions=tuple(matches))


def format_mention(title: str) -> str:
    """``@Title``, or ``@"Title"`` when the title has spaces, ``@`` or boundary punctuation.

    A title containing a double quote cannot be quoted and is written bare.
    It still parses back whole unless it also holds ``@`` or boundary
    punctuation, in which case the mention stops at that character.
    """
    if '"' not in title and any(not _is_word_char(ch) for ch in title):
        return f'@"{title}"'
    return f"@{title}"


def insert_mention(text: str, query: MentionQuery, thought: Thought) -> tuple[str, int]:
    before = text[:query.start]
    after = text[query.start + len(query.query) + 1:]
    mention = format_mention(thought.title)
    return before + mention + after, len(before) + len(mention)
