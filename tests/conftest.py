import pytest

from thought_graph import ThoughtGraph
from thought_store import ThoughtStore
from thoughts import Thought


def make_thought(tid, title=None, connections=(), content="", created="2024-01-01T00:00:00.000Z",
                 mentions=(), manual=None):
    return Thought(
        id=tid,
        title=title if title is not None else tid.upper(),
        content=content,
        connections=tuple(connections),
        created_at=created,
        updated_at=created,
        mentions=tuple(mentions),
        manual=tuple(manual) if manual is not None else tuple(c for c in connections if c not in mentions),
    )


def assert_consistent(thoughts):
    by_id = {t.id: t for t in thoughts}
    assert len(by_id) == len(thoughts), "duplicate ids"
    for t in thoughts:
        assert t.id not in t.connections, f"{t.title} is connected to itself"
        assert len(set(t.connections)) == len(t.connections)
        for peer in t.connections:
            assert peer in by_id, f"{t.title} points at missing {peer}"
            assert t.id in by_id[peer].connections, f"{t.title} -> {by_id[peer].title} is one-sided"
        for peer in (*t.mentions, *t.manual):
            assert peer in t.connections


@pytest.fixture
def graph():
    return ThoughtGraph()


@pytest.fixture
def store(tmp_path):
    s = ThoughtStore(tmp_path / "thoughts-data.json")
    s.initialize()
    return s
