import json
import shutil
from datetime import datetime
from pathlib import Path

from layouts import LAYOUTS, compute_layout, minimap
from server import STORE, render_markdown
from settings import DEFAULT_VIEWPORT, MINIMAP_VIEWPORT, ROOT, STATIC_DIR
from thoughts import repair_thoughts

README = """\
# Thoughts Graph snapshot

A frozen, read-only copy of a Thoughts Graph collection. Every layout is
precomputed under `data/`, so the graph can be browsed without the live server:

- `data/thoughts.json` is the whole collection, in the same shape the server stores
- `data/graph-<layout>.json` holds nodes and links for the force, tree, circular and timeline layouts
- `data/minimap-<layout>.json` is the same graph scaled down for the overview panel
- `data/thoughts/<id>.json` holds each thought with its content rendered to HTML

Editing, quick capture and live sync need the running server.
"""

OUTPUT = ROOT / "_site"


def generate_graphs(thoughts, viewport=DEFAULT_VIEWPORT):

    graphs = {}
    for layout in LAYOUTS:
        graph = compute_layout(thoughts, None, layout, viewport)
        graphs[layout] = (graph, minimap(compute_layout(thoughts, None, layout, MINIMAP_VIEWPORT)))
    return graphs


def generate_thought_json(thought, thoughts):

    by_id = {t.id: t for t in thoughts}
    return {
        "thought": thought.to_dict(),
        "html": render_markdown(thought.content, thoughts),
        "connected": [{"id": i, "title": by_id[i].title} for i in thought.connections if i in by_id],
    }


def _clean_output(output: Path):
    if not output.exists():
        return
    for item in output.iterdir():
        if item.name == ".git":
            continue
        if item.is_dir():
            shutil.rmtree(item)
        else:
            item.unlink()


def build(output: Path = OUTPUT, store=STORE):

    print("Building static snapshot...")
    data = output / "data"
    notes = data / "thoughts"
    _clean_output(output)
    notes.mkdir(parents=True, exist_ok=True)

    records = store.load()
    thoughts = repair_thoughts(records)
    (data / "thoughts.json").write_text(json.dumps([t.to_dict() for t in thoughts], indent=2), encoding="utf-8")
    print(f"  thoughts.json ({len(thoughts)} thoughts)")

    for layout, (graph, small) in generate_graphs(thoughts).items():
        (data / f"graph-{layout}.json").write_text(json.dumps(graph), encoding="utf-8")
        (data / f"minimap-{layout}.json").write_text(json.dumps(small), encoding="utf-8")
        print(f"  graph-{layout}.json ({len(graph['nodes'])} nodes, {len(graph['links'])} links)")

    for thought in thoughts:
        (notes / f"{thought.id}.json").write_text(
            json.dumps(generate_thought_json(thought, thoughts)), encoding="utf-8")
    print(f"  {len(thoughts)} thoughts rendered")

    stamp = datetime.now().strftime("%Y-%m-%d")
    export_name = f"thoughts-backup-{stamp}.json"
    (output / export_name).write_text(json.dumps(records, indent=2), encoding="utf-8")
    print(f"  {export_name}")

    if STATIC_DIR is not None and STATIC_DIR.is_dir():
        shutil.copytree(STATIC_DIR, output, dirs_exist_ok=True)
        print(f"  copied {STATIC_DIR.name}/")

    (output / ".nojekyll").write_text("", encoding="utf-8")
    (output / "README.md").write_text(README, encoding="utf-8")

    print(f"\nDone! Static snapshot is in: {output}")
    print(f"To test locally:  cd {output.name} && python3 -m http.server 8080")
    return output


if __name__ == "__main__":
    build()
