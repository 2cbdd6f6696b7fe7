import json

import pytest

import server


def record(tid, title, connections=(), content=""):
    return {"id": tid, "title": title, "content": content, "connections": list(connections),
            "createdAt": "2024-01-01T00:00:00.000Z", "updatedAt": "2024-01-01T00:00:00.000Z"}


@pytest.fixture
def client(store, monkeypatch):
    monkeypatch.setattr(server, "STORE", store)
    server.app.config["TESTING"] = True
    with server.app.test_client() as c:
        yield c


def test_get_thoughts_on_an_empty_store(client):
    data = client.get("/api/thoughts").get_json()
    assert data["success"] is True
    assert data["thoughts"] == []
    assert data["lastModified"]
    assert data["timestamp"].endswith("Z")


def test_post_then_get(client, store):
    thoughts = [record("a", "A", ["b"]), record("b", "B", ["a"])]
    resp = client.post("/api/thoughts", json={"thoughts": thoughts})
    body = resp.get_json()
    assert resp.status_code == 200
    assert body["success"] is True
    assert body["message"] == "Thoughts saved successfully"
    assert body["count"] == 2
    assert body["timestamp"] == store.last_modified()
    assert client.get("/api/thoughts").get_json()["thoughts"] == thoughts


def test_post_rejects_non_arrays(client, store):
    resp = client.post("/api/thoughts", json={"thoughts": {"a": 1}})
    assert resp.status_code == 400
    assert resp.get_json() == {"success": False, "error": "Thoughts must be an array"}
    assert client.post("/api/thoughts", data="plain text").status_code == 400
    assert store.backups() == []


def test_corrupt_store_is_a_server_error(client, store):
    store.path.write_text("{ nope")
    resp = client.get("/api/thoughts")
    assert resp.status_code == 500
    assert resp.get_json()["success"] is False


def test_status(client, store):
    data = client.get("/api/status").get_json()
    assert data["success"] is True
    assert data["message"] == "Thoughts Graph API is running"
    assert data["dataFile"] == str(store.path)


def test_check_tracks_the_marker(client):
    marker = client.post("/api/thoughts", json={"thoughts": []}).get_json()["timestamp"]
    assert client.get(f"/api/check?since={marker}").get_json()["changed"] is False
    data = client.get("/api/check").get_json()
    assert data["changed"] is True
    assert data["lastModified"] == marker


def test_single_thought_renders_markdown_and_mentions(client):
    client.post("/api/thoughts", json={"thoughts": [
        record("a", "A", ["m"], content="Ask **Bob** about @Mars"),
        record("m", "Mars", ["a"]),
    ]})
    data = client.get("/api/thoughts/a").get_json()
    assert data["thought"]["id"] == "a"
    assert "<strong>Bob</strong>" in data["html"]
    assert 'href="#thought:m"' in data["html"]
    assert data["connected"] == [{"id": "m", "title": "Mars"}]
    assert client.get("/api/thoughts/ghost").status_code == 404


def test_preview(client):
    client.post("/api/thoughts", json={"thoughts": [record("m", "Mars")]})
    data = client.post("/api/preview", json={"text": "off to @Mars, see https://example.com"}).get_json()
    assert 'href="#thought:m"' in data["html"]
    assert client.post("/api/preview", json={"text": 5}).status_code == 400


def test_render_leaves_unknown_mentions_as_text():
    html = server.render_markdown("hello @Nobody", [])
    assert "@Nobody" in html
    assert "#thought:" not in html


def test_graph_layouts(client):
    client.post("/api/thoughts", json={"thoughts": [record("a", "A", ["b"]), record("b", "B", ["a"])]})
    graph = client.get("/api/graph?layout=circular&selected=a&width=1000&height=500").get_json()
    assert len(graph["nodes"]) == 2
    assert graph["nodes"][0]["x"] == pytest.approx(150)
    assert graph["nodes"][0]["color"] == "#ff3232"
    assert len(graph["links"]) == 1
    small = client.get("/api/graph?layout=circular&minimap=1").get_json()
    assert small["nodes"][0]["x"] == pytest.approx(18)
    assert small["nodes"][0]["val"] == 1
    assert client.get("/api/graph?layout=spiral").status_code == 400


def test_export_is_a_download(client):
    thoughts = [record("a", "A")]
    client.post("/api/thoughts", json={"thoughts": thoughts})
    resp = client.get("/api/export")
    assert resp.status_code == 200
    disposition = resp.headers["Content-Disposition"]
    assert "attachment" in disposition
    assert "thoughts-backup-" in disposition
    assert json.loads(resp.data) == thoughts


def test_cors_headers(client):
    resp = client.get("/api/status")
    assert resp.headers["Access-Control-Allow-Origin"] == "*"


def test_spa_routes(client, tmp_path, monkeypatch):
    static = tmp_path / "dist"
    static.mkdir()
    (static / "index.html").write_text("<html>app</html>")
    (static / "app.js").write_text("console.log(1)")
    monkeypatch.setattr(server, "STATIC_DIR", static)
    assert b"app" in client.get("/").data
    assert b"app" in client.get("/thought/123").data
    assert b"console" in client.get("/app.js").data
    assert client.get("/api/nope").status_code == 404


def test_no_static_build_is_404(client, tmp_path, monkeypatch):
    monkeypatch.setattr(server, "STATIC_DIR", tmp_path / "missing")
    assert client.get("/").status_code == 404
