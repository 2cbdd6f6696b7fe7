import threading
from unittest import mock

import pytest
import requests
from conftest import assert_consistent

import sync_client
from sync_client import (
    SAVE_ERROR,
    SAVE_SAVED,
    STATUS_OFFLINE,
    STATUS_ONLINE,
    LocalBackup,
    PersistenceError,
    SyncCoordinator,
    ThoughtsAPI,
    TransportError,
)


def record(tid, title):
    return {"id": tid, "title": title, "content": "", "connections": [],
            "createdAt": "2024-01-01T00:00:00.000Z", "updatedAt": "2024-01-01T00:00:00.000Z"}


class FakeServer:
    """Answers like the HTTP API, straight from a ThoughtStore."""

    def __init__(self, store):
        self.store = store
        self.online = True
        self.calls = []
        self.on_load = None

    def _hit(self, name):
        self.calls.append(name)
        if not self.online:
            raise TransportError("Failed to fetch")

    def status(self):
        self._hit("status")
        return {"success": True}

    def load_thoughts(self):
        self._hit("load")
        records = self.store.load()
        if self.on_load:
            self.on_load()
        return records, self.store.last_modified()

    def save_thoughts(self, thoughts):
        self._hit("save")
        return {"success": True, "timestamp": self.store.save(thoughts)}

    def check(self, since):
        self._hit("check")
        return {"success": True, "changed": self.store.changed_since(since),
                "lastModified": self.store.last_modified()}


class FakeTimer:
    def __init__(self, delay, func):
        self.delay = delay
        self.func = func
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        assert not self.cancelled
        self.func()


class BrokenBackup(LocalBackup):
    def write(self, thoughts):
        raise PersistenceError("disk full")


class EditBeforeAcquire:
    """A sync lock that lets one local edit land just before it is taken."""

    def __init__(self, edit):
        self._lock = threading.Lock()
        self._edit = edit

    def acquire(self, blocking=True):
        if self._edit is not None:
            edit, self._edit = self._edit, None
            edit()
        return self._lock.acquire(blocking)

    def release(self):
        self._lock.release()

    def locked(self):
        return self._lock.locked()

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, *exc):
        self.release()


@pytest.fixture
def api(store):
    return FakeServer(store)


@pytest.fixture
def backup(tmp_path):
    return LocalBackup(tmp_path / "local")


@pytest.fixture
def timers():
    return []


@pytest.fixture
def coord(graph, api, backup, timers):
    def factory(delay, func):
        timer = FakeTimer(delay, func)
        timers.append(timer)
        return timer
    return SyncCoordinator(graph, api, backup, save_delay=2, poll_interval=10, timer_factory=factory)


def test_initial_load_from_server(coord, graph, store, backup):
    store.save([record("a", "A")])
    assert coord.initial_load() == "server"
    assert [t.id for t in graph] == ["a"]
    assert coord.server_status == STATUS_ONLINE
    assert coord.last_modified == store.last_modified()
    assert backup.read()[0]["id"] == "a"
    assert not coord.has_pending_changes()


def test_initial_load_falls_back_to_local_copy(coord, graph, api, backup):
    backup.write([record("b", "B")])
    api.online = False
    assert coord.initial_load() == "local"
    assert [t.id for t in graph] == ["b"]
    assert coord.server_status == STATUS_OFFLINE
    assert coord.last_error == "Failed to fetch"


def test_initial_load_with_nothing_anywhere(coord, graph, api):
    api.online = False
    assert coord.initial_load() == "local"
    assert len(graph) == 0


def test_edits_are_pushed_after_a_quiet_period(coord, graph, store, backup, timers):
    coord.start()
    assert timers[0].delay == 10
    graph.create("A")
    assert timers[1].delay == 2
    assert timers[1].daemon
    graph.create("B")
    assert timers[1].cancelled
    timers[2].fire()
    assert [t["title"] for t in store.load()] == ["A", "B"]
    assert coord.save_status == SAVE_SAVED
    assert coord.last_modified == store.last_modified()
    assert not coord.has_pending_changes()
    assert len(backup.read()) == 2
    assert backup.saved_at() is not None


def test_failed_push_keeps_a_local_copy(coord, graph, api, backup):
    graph.create("A")
    api.online = False
    assert coord.push() is False
    assert coord.server_status == STATUS_OFFLINE
    assert coord.save_status == SAVE_SAVED
    assert backup.read()[0]["title"] == "A"
    assert coord.has_pending_changes()


def test_failed_push_and_failed_local_copy(graph, api, tmp_path):
    coord = SyncCoordinator(graph, api, BrokenBackup(tmp_path), timer_factory=FakeTimer)
    graph.create("A")
    api.online = False
    coord.push()
    assert coord.save_status == SAVE_ERROR
    assert "disk full" in coord.last_error


def test_newer_server_state_overwrites_local(coord, graph, store, timers):
    store.save([record("a", "A")])
    coord.initial_load()
    coord.start()
    store.save([record("x", "X")])
    assert coord.poll() is True
    assert [t.id for t in graph] == ["x"]
    assert coord.conflict_count == 1
    assert coord.last_modified == store.last_modified()
    assert len(timers) == 1
    assert not coord.has_pending_changes()


def test_adopting_into_an_empty_graph_is_not_a_conflict(coord, graph, store):
    coord.initial_load()
    store.save([record("x", "X")])
    assert coord.poll() is True
    assert coord.conflict_count == 0


def test_unchanged_server_is_not_fetched(coord, api):
    coord.initial_load()
    api.calls.clear()
    assert coord.poll() is False
    assert api.calls == ["check"]


def test_same_content_with_newer_marker_only_moves_the_marker(coord, graph, store):
    store.save([record("a", "A")])
    coord.initial_load()
    marker = store.save(graph.to_dicts())
    assert coord.poll() is False
    assert coord.conflict_count == 0
    assert coord.last_modified == marker


def test_poll_waits_for_a_scheduled_save(coord, graph, api):
    coord.start()
    graph.create("A")
    api.calls.clear()
    assert coord.poll() is False
    assert api.calls == []


def test_poll_retries_an_unsent_edit(coord, graph, api, store):
    graph.create("A")
    assert coord.poll() is False
    assert api.calls == ["save"]
    assert store.load()[0]["title"] == "A"


def test_poll_skips_while_a_push_is_running(coord, api):
    coord._sync_lock.acquire()
    try:
        assert coord.poll() is False
    finally:
        coord._sync_lock.release()
    assert api.calls == []


def test_local_edit_during_fetch_wins(coord, graph, api, store):
    store.save([record("a", "A")])
    coord.initial_load()
    store.save([record("x", "X")])
    api.on_load = lambda: graph.create("Local edit")
    assert coord.poll() is False
    assert [t.title for t in graph] == ["A", "Local edit"]
    assert coord.conflict_count == 0
    assert coord.has_pending_changes()


def test_edit_landing_as_poll_starts_is_pushed_not_overwritten(coord, graph, store):
    store.save([record("a", "A")])
    coord.initial_load()
    store.save([record("x", "X")])
    coord._sync_lock = EditBeforeAcquire(lambda: graph.create("Local edit"))
    assert coord.poll() is False
    assert [t.title for t in graph] == ["A", "Local edit"]
    assert [r["title"] for r in store.load()] == ["A", "Local edit"]
    assert not coord.has_pending_changes()
    assert coord.conflict_count == 0


def test_edit_landing_during_adoption_is_kept(coord, graph, store, monkeypatch):
    store.save([record("a", "A")])
    coord.initial_load()
    store.save([record("x", "X")])
    convert = sync_client._to_thoughts

    def convert_then_edit(records):
        thoughts = convert(records)
        graph.create("Late edit")
        return thoughts

    monkeypatch.setattr(sync_client, "_to_thoughts", convert_then_edit)
    assert coord.poll() is False
    assert [t.title for t in graph] == ["A", "Late edit"]
    assert coord.has_pending_changes()
    assert coord.conflict_count == 0


def test_loaded_snapshots_are_repaired(coord, graph, store):
    linked = record("a", "A")
    linked["connections"] = ["b", "ghost"]
    store.save([linked, record("b", "B"), record("a", "Again"), record("c", "")])
    coord.initial_load()
    assert_consistent(graph.snapshot)
    assert [t.id for t in graph] == ["a", "b", "c"]
    assert graph.get("a").connections == ("b",)
    assert graph.get("b").connections == ("a",)
    assert graph.get("c").title == "Untitled Thought"


def test_polled_snapshots_are_repaired(coord, graph, store):
    coord.initial_load()
    linked = record("a", "A")
    linked["connections"] = ["b", "ghost"]
    store.save([linked, record("b", "B"), record("b", "Twin")])
    assert coord.poll() is True
    assert_consistent(graph.snapshot)
    assert [t.title for t in graph] == ["A", "B"]


def test_poll_failure_marks_offline(coord, graph, api, store):
    store.save([record("a", "A")])
    coord.initial_load()
    api.online = False
    assert coord.poll() is False
    assert coord.server_status == STATUS_OFFLINE
    assert [t.id for t in graph] == ["a"]


def test_becoming_visible_polls(coord, graph, store):
    coord.initial_load()
    store.save([record("x", "X")])
    assert coord.on_visible() is True
    assert [t.id for t in graph] == ["x"]


def test_poll_timer_keeps_going(coord, timers):
    coord.start()
    timers[0].fire()
    assert len(timers) == 2
    assert timers[1].delay == 10


def test_closing_cancels_timers_and_flushes(coord, graph, store, timers):
    with coord:
        graph.create("A")
    assert all(t.cancelled for t in timers)
    assert store.load()[0]["title"] == "A"
    graph.create("B")
    assert len(timers) == 2


def test_reset_needs_confirmation(coord, graph, store, backup, timers):
    store.save([record("a", "A")])
    coord.initial_load()
    coord.start()
    with pytest.raises(ValueError):
        coord.reset()
    assert len(graph) == 1
    coord.reset(confirm=True)
    assert len(graph) == 0
    assert backup.read() is None
    timers[-1].fire()
    assert store.load() == []


def test_status_summary(coord, graph):
    graph.create("A")
    status = coord.status()
    assert status["pending"] is True
    assert status["conflicts"] == 0
    assert status["server"] == "unknown"


def test_local_backup_ignores_corrupt_copies(backup):
    assert backup.read() is None
    backup.clear()
    backup.directory.mkdir(parents=True)
    (backup.directory / "thoughts-graph-data.json").write_text("{ nope")
    assert backup.read() is None


def response(payload, status=200):
    resp = mock.Mock()
    resp.ok = status < 400
    resp.status_code = status
    resp.json.return_value = payload
    return resp


@pytest.fixture
def session():
    return mock.Mock()


def test_api_loads_thoughts(session):
    session.request.return_value = response({"success": True, "thoughts": [record("a", "A")],
                                             "timestamp": "t", "lastModified": "m"})
    api = ThoughtsAPI("http://srv/", timeout=5, session=session)
    thoughts, marker = api.load_thoughts()
    assert thoughts[0]["id"] == "a"
    assert marker == "m"
    session.request.assert_called_once_with("GET", "http://srv/api/thoughts", timeout=5)


def test_api_posts_the_whole_collection(session):
    session.request.return_value = response({"success": True, "timestamp": "m", "count": 0})
    ThoughtsAPI("http://srv", session=session).save_thoughts([])
    args, kwargs = session.request.call_args
    assert args == ("POST", "http://srv/api/thoughts")
    assert kwargs["json"] == {"thoughts": []}


def test_api_check_sends_since_only_when_known(session):
    session.request.return_value = response({"success": True, "changed": True})
    api = ThoughtsAPI("http://srv", session=session)
    api.check(None)
    assert session.request.call_args.kwargs["params"] == {}
    api.check("m")
    assert session.request.call_args.kwargs["params"] == {"since": "m"}


def test_api_wraps_connection_errors(session):
    session.request.side_effect = requests.ConnectionError("refused")
    with pytest.raises(TransportError):
        ThoughtsAPI("http://srv", session=session).status()


def test_api_rejects_bad_json(session):
    resp = response(None, 502)
    resp.json.side_effect = ValueError("not json")
    session.request.return_value = resp
    with pytest.raises(TransportError, match="invalid JSON"):
        ThoughtsAPI("http://srv", session=session).status()


def test_api_surfaces_server_errors(session):
    session.request.return_value = response({"success": False, "error": "Thoughts must be an array"}, 400)
    with pytest.raises(TransportError, match="Thoughts must be an array"):
        ThoughtsAPI("http://srv", session=session).save_thoughts([])
