#!/usr/bin/env python3
"""Web viewer for memories - accessible in browser.

The dataset is reopened read-only on every request, so memories stored by a
running MCP server show up on the next reload and the viewer itself never
writes to the dataset.
"""

from __future__ import annotations

from datetime import datetime

from flask import Flask, render_template_string, request

from config import CONFIG
from embeddings import configured_dimension
from memory_store import DatasetNotFoundError, MemoryStore
from models import MemoryRecord, StoreStats

app = Flask(__name__)
ITEMS_PER_PAGE = 10


def open_store() -> MemoryStore | None:
    """Read-only handle on the configured dataset, or None if it does not exist yet."""
    try:
        return MemoryStore(
            CONFIG.db_path,
            configured_dimension(CONFIG),
            table_name=CONFIG.table_name,
            create=False,
        )
    except DatasetNotFoundError:
        return None


def load_snapshot(query: str = "") -> tuple[list[MemoryRecord], StoreStats]:
    """All memories newest first, optionally filtered by a content substring."""
    store = open_store()
    if store is None:
        return [], StoreStats(total_memories=0, capture_count=0, dimension=configured_dimension(CONFIG))
    with store:
        stats = store.stats()
        records = store.recent(stats.total_memories)
    if query:
        needle = query.lower()
        records = [r for r in records if needle in r.content.lower()]
    return records, stats


def format_timestamp(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


def page_window(current: int, total: int, edge: int = 2, radius: int = 1) -> list[int | None]:
    """Page numbers to link: ``edge`` pages at each end plus ``radius`` around
    the current page. None marks a run of skipped pages."""
    shown = {p for p in range(1, total + 1) if p <= edge or p > total - edge or abs(p - current) <= radius}
    window: list[int | None] = []
    previous = 0
    for p in sorted(shown):
        if p - previous > 1:
            window.append(None)
        window.append(p)
        previous = p
    return window


TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>Local Memory</title>
<style>
  body { font: 14px/1.5 ui-monospace, monospace; margin: 2rem auto; max-width: 1100px; background: #fafaf7; color: #222; }
  header { display: flex; align-items: baseline; gap: 1.5rem; border-bottom: 2px solid #222; }
  header small { color: #666; }
  form { margin: 1rem 0; }
  form input { width: 24rem; padding: .3rem; }
  table { width: 100%; border-collapse: collapse; }
  th, td { text-align: left; vertical-align: top; padding: .4rem .6rem; border-bottom: 1px solid #ddd; }
  td.text { white-space: pre-wrap; }
  td.when, td.ref { white-space: nowrap; color: #555; }
  .label { border: 1px solid #999; padding: 0 .3rem; margin-right: .2rem; font-size: 12px; }
  nav { margin-top: 1rem; }
  nav a, nav b, nav i { margin-right: .5rem; }
</style>
</head>
<body>
<header>
  <h1>Local Memory</h1>
  <small>{{ stats.total_memories }} memories total | {{ stats.capture_count }} captures | {{ stats.dimension }}-dim</small>
</header>
<form method="get">
  <input name="q" value="{{ query }}" placeholder="filter by content">
  <button>Filter</button>
</form>
{% if records %}
<table>
  <tr><th>created</th><th>memory</th><th>labels</th><th>source</th><th>id</th></tr>
  {% for r in records %}
  <tr>
    <td class="when">{{ format_timestamp(r.created_at) }}</td>
    <td class="text">{{ r.content }}</td>
    <td>
      {% if r.category is not none %}<span class="label category">{{ r.category }}</span>{% endif %}
      {% for t in r.tags %}<span class="label tag">#{{ t }}</span>{% endfor %}
    </td>
    <td class="ref">{{ r.source or "-" }}</td>
    <td class="ref" title="{{ r.id }}">{{ r.id[:8] }}</td>
  </tr>
  {% endfor %}
</table>
{% else %}
<p>No memories{% if query %} matching "{{ query }}"{% endif %}.</p>
{% endif %}
{% if pages > 1 %}
<nav>
  {% for p in window %}
    {% if p is none %}<i>&hellip;</i>
    {% elif p == page %}<b>{{ p }}</b>
    {% else %}<a href="?page={{ p }}{% if query %}&amp;q={{ query|urlencode }}{% endif %}">{{ p }}</a>
    {% endif %}
  {% endfor %}
</nav>
{% endif %}
</body>
</html>
"""


@app.route("/")
def index():
    query = request.args.get("q", "").strip()
    records, stats = load_snapshot(query)

    pages = max(1, -(-len(records) // ITEMS_PER_PAGE))
    page = min(max(1, request.args.get("page", 1, type=int)), pages)
    offset = (page - 1) * ITEMS_PER_PAGE

    return render_template_string(
        TEMPLATE,
        records=records[offset : offset + ITEMS_PER_PAGE],
        stats=stats,
        query=query,
        page=page,
        pages=pages,
        window=page_window(page, pages),
        format_timestamp=format_timestamp,
    )


def main():
    print("Open http://localhost:5000 in your browser")
    app.run(port=5000)


if __name__ == "__main__":
    main()
