import io
import json
import logging
import re
from datetime import datetime

import markdown
from flask import Flask, abort, jsonify, request, send_file, send_from_directory

from layouts import LAYOUT_FORCE, compute_layout, minimap
from mentions import mention_segments
from settings import (
    BACKUP_DIR,
    CORS_ORIGIN,
    DATA_FILE,
    DEFAULT_VIEWPORT,
    HOST,
    MAX_BODY_BYTES,
    PORT,
    STATIC_DIR,
)
from thought_store import StoreError, ThoughtStore
from thoughts import now_iso, repair_thoughts

app = Flask(__name__)
app.config["MAX_CONTENT_LENGTH"] = MAX_BODY_BYTES

STORE = ThoughtStore(DATA_FILE, BACKUP_DIR)


@app.after_request
def _cors(resp):
    if CORS_ORIGIN:
        resp.headers["Access-Control-Allow-Origin"] = CORS_ORIGIN
        resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
        resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    return resp


@app.errorhandler(413)
def _too_large(e):
    return jsonify({"success": False, "error": "Request body too large"}), 413


def _load_thoughts():
    return repair_thoughts(STORE.load())


def process_mentions(text: str, thoughts) -> str:
    """Turn resolved @mentions into ``#thought:<id>`` links; leave the rest as typed."""
    out = []
    for seg in mention_segments(text, thoughts):
        m = seg.mention
        if m is None or not m.resolved:
            out.append(seg.text)
            continue
        label = m.name.replace("[", r"\[").replace("]", r"\]")
        out.append(f"[@{label}](#thought:{m.thought_id})")
    return "".join(out)


def render_markdown(text: str, thoughts=()) -> str:
    text = process_mentions(text or "", thoughts)
    html = markdown.markdown(text, extensions=["fenced_code", "tables", "sane_lists", "nl2br"])
    html = re.sub(
        r'<a href="(https?://[^"]+)"',
        r'<a href="\1" target="_blank" rel="noopener noreferrer"',
        html,
    )
    return html


@app.route("/api/thoughts", methods=["GET", "POST"])
def api_thoughts():
    if request.method == "POST":
        return _api_thoughts_post()
    try:
        thoughts = STORE.load()
    except StoreError as e:
        app.logger.error("Error reading thoughts: %s", e)
        return jsonify({"success": False, "error": "Failed to load thoughts", "thoughts": []}), 500
    return jsonify({
        "success": True,
        "thoughts": thoughts,
        "timestamp": now_iso(),
        "lastModified": STORE.last_modified(),
    })


def _api_thoughts_post():
    body = request.get_json(silent=True)
    thoughts = body.get("thoughts") if isinstance(body, dict) else None
    if not isinstance(thoughts, list):
        return jsonify({"success": False, "error": "Thoughts must be an array"}), 400
    try:
        marker = STORE.save(thoughts)
    except StoreError as e:
        app.logger.error("Error saving thoughts: %s", e)
        return jsonify({"success": False, "error": "Failed to save thoughts"}), 500
    app.logger.info("Saved %d thoughts at %s", len(thoughts), datetime.now().strftime("%H:%M:%S"))
    return jsonify({
        "success": True,
        "message": "Thoughts saved successfully",
        "timestamp": marker,
        "count": len(thoughts),
    })


@app.route("/api/thoughts/<thought_id>")
def api_thought(thought_id):
    try:
        thoughts = _load_thoughts()
    except StoreError as e:
        app.logger.error("Error reading thoughts: %s", e)
        return jsonify({"success": False, "error": "Failed to load thoughts"}), 500
    by_id = {t.id: t for t in thoughts}
    thought = by_id.get(thought_id)
    if thought is None:
        return jsonify({"success": False, "error": "Thought not found"}), 404
    return jsonify({
        "success": True,
        "thought": thought.to_dict(),
        "html": render_markdown(thought.content, thoughts),
        "connected": [{"id": i, "title": by_id[i].title} for i in thought.connections if i in by_id],
    })


@app.route("/api/preview", methods=["POST"])
def api_preview():
    body = request.get_json(silent=True)
    text = body.get("text", "") if isinstance(body, dict) else None
    if not isinstance(text, str):
        return jsonify({"success": False, "error": "Text must be a string"}), 400
    try:
        thoughts = _load_thoughts()
    except StoreError as e:
        app.logger.error("Error reading thoughts: %s", e)
        return jsonify({"success": False, "error": "Failed to load thoughts"}), 500
    return jsonify({"success": True, "html": render_markdown(text, thoughts)})


@app.route("/api/status")
def api_status():
    return jsonify({
        "success": True,
        "message": "Thoughts Graph API is running",
        "timestamp": now_iso(),
        "dataFile": str(STORE.path),
    })


@app.route("/api/check")
def api_check():
    since = request.args.get("since")
    return jsonify({
        "success": True,
        "changed": STORE.changed_since(since),
        "lastModified": STORE.last_modified(),
    })


@app.route("/api/graph")
def api_graph():
    layout = request.args.get("layout", LAYOUT_FORCE)
    selected = request.args.get("selected") or None
    width = request.args.get("width", DEFAULT_VIEWPORT[0], type=float)
    height = request.args.get("height", DEFAULT_VIEWPORT[1], type=float)
    try:
        thoughts = _load_thoughts()
    except StoreError as e:
        app.logger.error("Error reading thoughts: %s", e)
        return jsonify({"success": False, "error": "Failed to load thoughts"}), 500
    try:
        graph = compute_layout(thoughts, selected, layout, (width, height))
    except ValueError as e:
        return jsonify({"success": False, "error": str(e)}), 400
    if request.args.get("minimap", "").lower() in ("1", "true", "yes"):
        graph = minimap(graph)
    return jsonify(graph)


@app.route("/api/export")
def api_export():
    try:
        thoughts = STORE.load()
    except StoreError as e:
        app.logger.error("Error reading thoughts: %s", e)
        abort(500)
    buf = io.BytesIO(json.dumps(thoughts, indent=2).encode("utf-8"))
    stamp = datetime.now().strftime("%Y-%m-%d")
    return send_file(buf, mimetype="application/json",
                     as_attachment=True, download_name=f"thoughts-backup-{stamp}.json")


@app.route("/", defaults={"path": ""})
@app.route("/<path:path>")
def index(path):
    if path.startswith("api/") or STATIC_DIR is None or not STATIC_DIR.is_dir():
        abort(404)
    if path and (STATIC_DIR / path).is_file():
        return send_from_directory(STATIC_DIR, path)
    if not (STATIC_DIR / "index.html").is_file():
        abort(404)
    return send_from_directory(STATIC_DIR, "index.html")


if __name__ == "__main__":
    import socket
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    if STORE.initialize():
        print(f"Created new {STORE.path.name} file")
    hostname = socket.gethostname()
    local_ip = socket.gethostbyname(hostname)
    print(f"Thoughts Graph server, data file: {STORE.path}")
    print(f"Open http://localhost:{PORT}    (this machine)")
    print(f"     http://{local_ip}:{PORT}  (other devices on network)")
    app.run(host=HOST, port=PORT, threaded=True)
