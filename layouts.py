"""Graph layouts for the thought collection.

Every layout returns ``{"nodes": [...], "links": [...]}`` ready to be handed
to a force-graph renderer. Node positions, when a layout computes them, are
also written to ``fx``/``fy`` so the renderer's physics leaves them pinned.
"""

from __future__ import annotations

import math
from collections import deque
from typing import Sequence

from settings import DEFAULT_VIEWPORT
from thoughts import Thought, parse_timestamp

LAYOUT_FORCE = "force"
LAYOUT_TREE = "tree"
LAYOUT_CIRCULAR = "circular"
LAYOUT_TIMELINE = "timeline"
LAYOUTS = (LAYOUT_FORCE, LAYOUT_TREE, LAYOUT_CIRCULAR, LAYOUT_TIMELINE)

NODE_COLOR = "#333333"
SELECTED_COLOR = "#ff3232"

MINIMAP_SCALE = 0.1
TIMELINE_MARGIN = 50
TIMELINE_LANES = 5
ZOOM_PADDING = 100
MAX_ZOOM = 3

TREE_MAX_DEPTH = 64
TREE_MAX_NODES = 5000


def node_size(content: str) -> float:
    return max(1, len(content or "") / 100)


def node_color(thought_id: str, selected_id: str | None) -> str:
    return SELECTED_COLOR if selected_id is not None and thought_id == selected_id else NODE_COLOR


def _node(thought: Thought, selected_id: str | None) -> dict:
    return {
        "id": thought.id,
        "name": thought.title,
        "val": node_size(thought.content),
        "color": node_color(thought.id, selected_id),
    }


def _pin(node: dict, x: float, y: float) -> dict:
    node.update(x=x, y=y, fx=x, fy=y)
    return node


def build_links(thoughts: Sequence[Thought], dedupe: bool = True) -> list[dict]:
    """One link per connection to a live thought, one per unordered pair when deduped."""
    ids = {t.id for t in thoughts}
    seen = set()
    links = []
    for t in thoughts:
        for target in t.connections:
            if target not in ids:
                continue
            key = frozenset((t.id, target)) if dedupe else (t.id, target)
            if key in seen:
                continue
            seen.add(key)
            links.append({"source": t.id, "target": target, "value": 1})
    return links


def force_layout(thoughts, selected_id=None, viewport=None):
    return {"nodes": [_node(t, selected_id) for t in thoughts], "links": build_links(thoughts)}


def circular_layout(thoughts, selected_id=None, viewport=None):
    width, height = viewport or DEFAULT_VIEWPORT
    radius = min(width, height) * 0.3
    count = len(thoughts)
    nodes = []
    for index, t in enumerate(thoughts):
        angle = 2 * math.pi * index / count
        nodes.append(_pin(_node(t, selected_id), radius * math.cos(angle), radius * math.sin(angle)))
    return {"nodes": nodes, "links": build_links(thoughts)}


def timeline_layout(thoughts, selected_id=None, viewport=None):
    if not thoughts:
        return {"nodes": [], "links": []}
    width, height = viewport or DEFAULT_VIEWPORT
    span_w = width * 0.8
    span_h = height * 0.6
    margin = TIMELINE_MARGIN

    dated = sorted(((parse_timestamp(t.created_at), t) for t in thoughts), key=lambda pair: pair[0])
    start = dated[0][0]
    total_days = max(1.0, (dated[-1][0] - start).total_seconds() / 86400)
    lane_height = (span_h - 2 * margin) / TIMELINE_LANES

    nodes = []
    for index, (when, t) in enumerate(dated):
        days = (when - start).total_seconds() / 86400
        x = margin + (days / total_days) * (span_w - 2 * margin) - span_w / 2
        y = margin + (index % TIMELINE_LANES) * lane_height - span_h / 2
        node = _pin(_node(t, selected_id), x, y)
        node["date"] = when.isoformat()
        nodes.append(node)
    return {"nodes": nodes, "links": build_links(thoughts)}


def find_roots(thoughts: Sequence[Thought]) -> list[Thought]:
    """Thoughts nothing points at, or else the single most connected one."""
    incoming = {c for t in thoughts for c in t.connections}
    roots = [t for t in thoughts if t.id not in incoming]
    if not roots and thoughts:
        roots = [_most_connected(thoughts)]
    return roots


def _most_connected(thoughts: Sequence[Thought]) -> Thought:
    best = thoughts[0]
    for t in thoughts[1:]:
        if len(t.connections) > len(best.connections):
            best = t
    return best


class _TreeNode:
    __slots__ = ("thought", "parent", "children", "depth", "i",
                 "A", "a", "z", "m", "c", "s", "t", "x", "y")

    def __init__(self, thought: Thought | None, parent: _TreeNode | None, depth: int, i: int = 0):
        self.thought = thought
        self.parent = parent
        self.children: list[_TreeNode] = []
        self.depth = depth
        self.i = i
        self.A = None
        self.a = self
        self.z = 0.0
        self.m = 0.0
        self.c = 0.0
        self.s = 0.0
        self.t = None
        self.x = 0.0
        self.y = 0.0


def _grow_branch(root: _TreeNode, by_id: dict, arena: list, max_depth: int, max_nodes: int):
    # visited is per path, so a thought reachable along two paths appears twice
    stack = [(root, frozenset((root.thought.id,)))]
    while stack:
        node, path = stack.pop()
        if node.depth >= max_depth:
            continue
        for child_id in node.thought.connections:
            if child_id in path or child_id not in by_id:
                continue
            if len(arena) >= max_nodes:
                return
            child = _TreeNode(by_id[child_id], node, node.depth + 1, len(node.children))
            node.children.append(child)
            arena.append(child)
            stack.append((child, path | {child_id}))


def build_forest(thoughts: Sequence[Thought], max_depth: int = TREE_MAX_DEPTH,
                 max_nodes: int = TREE_MAX_NODES) -> tuple[_TreeNode, list[_TreeNode]]:
    """Root every thought under one synthetic node; returns (root, arena)."""
    by_id = {t.id: t for t in thoughts}
    top = _TreeNode(None, None, 0)
    arena = [top]

    def plant(thought: Thought):
        branch = _TreeNode(thought, top, 1, len(top.children))
        top.children.append(branch)
        arena.append(branch)
        _grow_branch(branch, by_id, arena, max_depth, max_nodes)

    for root in find_roots(thoughts):
        plant(root)
    placed = {n.thought.id for n in arena[1:]}
    while len(placed) < len(by_id) and len(arena) < max_nodes:
        unplaced = [t for t in thoughts if t.id not in placed]
        plant(_most_connected(unplaced))
        placed.update(n.thought.id for n in arena[1:])
    return top, arena


def _separation(a: _TreeNode, b: _TreeNode) -> float:
    return 1 if a.parent is b.parent else 2


def _next_left(v: _TreeNode):
    return v.children[0] if v.children else v.t


def _next_right(v: _TreeNode):
    return v.children[-1] if v.children else v.t


def _move_subtree(wm: _TreeNode, wp: _TreeNode, shift: float):
    change = shift / (wp.i - wm.i)
    wp.c -= change
    wp.s += shift
    wm.c += change
    wp.z += shift
    wp.m += shift


def _execute_shifts(v: _TreeNode):
    shift = 0.0
    change = 0.0
    for w in reversed(v.children):
        w.z += shift
        w.m += shift
        change += w.c
        shift += w.s + change


def _next_ancestor(vim: _TreeNode, v: _TreeNode, ancestor: _TreeNode) -> _TreeNode:
    return vim.a if vim.a.parent is v.parent else ancestor


def _apportion(v: _TreeNode, w: _TreeNode | None, ancestor: _TreeNode) -> _TreeNode:
    if w is None:
        return ancestor
    vip = vop = v
    vim = w
    vom = vip.parent.children[0]
    sip = vip.m
    sop = vop.m
    sim = vim.m
    som = vom.m
    while True:
        vim = _next_right(vim)
        vip = _next_left(vip)
        if vim is None or vip is None:
            break
        vom = _next_left(vom)
        vop = _next_right(vop)
        vop.a = v
        shift = vim.z + sim - vip.z - sip + _separation(vim, vip)
        if shift > 0:
            _move_subtree(_next_ancestor(vim, v, ancestor), v, shift)
            sip += shift
            sop += shift
        sim += vim.m
        sip += vip.m
        som += vom.m
        sop += vop.m
    if vim is not None and _next_right(vop) is None:
        vop.t = vim
        vop.m += sim - sop
    if vip is not None and _next_left(vom) is None:
        vom.t = vip
        vom.m += sip - som
        ancestor = v
    return ancestor


def _first_walk(v: _TreeNode):
    siblings = v.parent.children
    w = siblings[v.i - 1] if v.i else None
    if v.children:
        _execute_shifts(v)
        midpoint = (v.children[0].z + v.children[-1].z) / 2
        if w is not None:
            v.z = w.z + _separation(v, w)
            v.m = v.z - midpoint
        else:
            v.z = midpoint
    elif w is not None:
        v.z = w.z + _separation(v, w)
    v.parent.A = _apportion(v, w, v.parent.A or siblings[0])


def _pre_order(root: _TreeNode) -> list[_TreeNode]:
    out = []
    stack = [root]
    while stack:
        node = stack.pop()
        out.append(node)
        stack.extend(reversed(node.children))
    return out


def _post_order(root: _TreeNode) -> list[_TreeNode]:
    out = []
    stack = [(root, False)]
    while stack:
        node, expanded = stack.pop()
        if expanded:
            out.append(node)
            continue
        stack.append((node, True))
        for child in reversed(node.children):
            stack.append((child, False))
    return out


def tidy_tree(root: _TreeNode, width: float, height: float):
    """Reingold-Tilford positioning in linear time (Buchheim, Jünger & Leipert).

    Leaves ``x`` across ``[0, width]`` and ``y = depth * height / max_depth``.
    """
    holder = _TreeNode(None, None, -1)
    holder.children = [root]
    root.parent = holder
    for v in _post_order(root):
        _first_walk(v)
    holder.m = -root.z
    order = _pre_order(root)
    for v in order:
        v.x = v.z + v.parent.m
        v.m += v.parent.m
    root.parent = None

    left = right = bottom = root
    for v in order:
        if v.x < left.x:
            left = v
        if v.x > right.x:
            right = v
        if v.depth > bottom.depth:
            bottom = v
    s = 1 if left is right else _separation(left, right) / 2
    tx = s - left.x
    kx = width / (right.x + s + tx)
    ky = height / (bottom.depth or 1)
    for v in order:
        v.x = (v.x + tx) * kx
        v.y = v.depth * ky


def tree_layout(thoughts, selected_id=None, viewport=None):
    if not thoughts:
        return {"nodes": [], "links": []}
    width, height = viewport or DEFAULT_VIEWPORT
    top, _ = build_forest(thoughts)
    tidy_tree(top, width * 0.8, height * 0.8)

    nodes = []
    emitted = set()
    queue = deque(top.children)
    while queue:
        v = queue.popleft()
        queue.extend(v.children)
        if v.thought.id in emitted:
            continue
        emitted.add(v.thought.id)
        nodes.append(_pin(_node(v.thought, selected_id), v.x - width * 0.4, v.y - height * 0.4))
    return {"nodes": nodes, "links": build_links(thoughts)}


_LAYOUT_FUNCS = {
    LAYOUT_FORCE: force_layout,
    LAYOUT_TREE: tree_layout,
    LAYOUT_CIRCULAR: circular_layout,
    LAYOUT_TIMELINE: timeline_layout,
}


def compute_layout(thoughts: Sequence[Thought], selected_id: str | None = None,
                   layout: str = LAYOUT_FORCE, viewport: tuple[float, float] | None = None) -> dict:
    func = _LAYOUT_FUNCS.get(layout)
    if func is None:
        raise ValueError(f"Unknown layout {layout!r}; expected one of {', '.join(LAYOUTS)}")
    thoughts = tuple(thoughts)
    if not thoughts:
        return {"nodes": [], "links": []}
    return func(thoughts, selected_id, viewport)


def minimap(graph_data: dict, scale: float = MINIMAP_SCALE) -> dict:
    nodes = []
    for node in graph_data["nodes"]:
        small = dict(node, x=(node.get("x") or 0) * scale, y=(node.get("y") or 0) * scale, val=1)
        for key in ("fx", "fy"):
            if node.get(key) is not None:
                small[key] = node[key] * scale
        nodes.append(small)
    return {"nodes": nodes, "links": [dict(link) for link in graph_data["links"]]}


def neighborhood_zoom(graph_data: dict, thoughts: Sequence[Thought], thought_id: str,
                      viewport: tuple[float, float] | None = None) -> dict | None:
    """Center and zoom that fit a thought and its direct peers in the viewport."""
    width, height = viewport or DEFAULT_VIEWPORT
    target = next((t for t in thoughts if t.id == thought_id), None)
    if target is None:
        return None
    wanted = {thought_id, *target.connections}
    picked = [n for n in graph_data["nodes"] if n["id"] in wanted]
    if not picked:
        return None
    xs = [n.get("x") or 0 for n in picked]
    ys = [n.get("y") or 0 for n in picked]
    box_w = max(xs) - min(xs) + 2 * ZOOM_PADDING
    box_h = max(ys) - min(ys) + 2 * ZOOM_PADDING
    return {
        "x": (min(xs) + max(xs)) / 2,
        "y": (min(ys) + max(ys)) / 2,
        "zoom": min(width / box_w, height / box_h, MAX_ZOOM),
    }
