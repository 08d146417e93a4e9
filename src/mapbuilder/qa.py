"""HTML index for visual QA of rendered maps and the classification."""

from __future__ import annotations

import os
from html import escape
from pathlib import Path
from typing import Any, Mapping, Sequence

from .config import MapConfig
from .models import map_output_path

_STYLE = """\
    body { font-family: Arial, sans-serif; margin: 16px; color: #222; }
    .grid { display: grid; grid-template-columns: repeat(%(columns)d, minmax(220px, 1fr)); gap: 16px; }
    .card { border: 1px solid #ddd; border-radius: 8px; padding: 12px; }
    .card h3 { margin: 0 0 6px 0; font-size: 16px; }
    .kind { font-size: 12px; text-transform: uppercase; color: #666; }
    .status { margin: 4px 0 8px 0; font-weight: 700; }
    .status.ready { color: #197a2f; }
    .status.missing_map { color: #b22d2d; }
    .detail { margin: 0 0 4px 0; font-size: 13px; }
    .missing { border: 1px dashed #bbb; border-radius: 6px; padding: 12px; background: #fafafa; color: #666; }
    table.buckets { border-collapse: collapse; margin-bottom: 24px; font-size: 13px; }
    table.buckets th, table.buckets td { border: 1px solid #ddd; padding: 4px 10px; text-align: right; }
    img { display: block; max-width: 100%%; margin-top: 8px; }"""


def write_qa_index(
    *,
    maps: Sequence[MapConfig],
    maps_dir: Path,
    output_html: Path,
    thumbnail_width_px: int,
    max_columns: int,
    image_format: str = "png",
    title: str = "Map QA Index",
    classification: Mapping[str, Any] | None = None,
) -> Path:
    """Write one card per configured map, plus the bucket table when a classification is given."""
    if max_columns < 1:
        raise ValueError("max_columns must be >= 1")

    cards = [
        _map_card(
            spec,
            map_path=map_output_path(maps_dir, spec.name, image_format),
            html_path=map_output_path(maps_dir, spec.name, "html"),
            base_dir=output_html.parent,
            thumbnail_width_px=thumbnail_width_px,
        )
        for spec in maps
    ]
    body = [f"  <h1>{escape(title)}</h1>"]
    if classification is not None:
        body.extend(_classification_section(classification))
    body.extend(["  <div class='grid'>", *cards, "  </div>"])

    html = "\n".join(
        [
            "<!doctype html>",
            "<html lang='en'>",
            "<head>",
            "  <meta charset='utf-8'>",
            f"  <title>{escape(title)}</title>",
            "  <style>",
            _STYLE % {"columns": max_columns},
            "  </style>",
            "</head>",
            "<body>",
            *body,
            "</body>",
            "</html>",
            "",
        ]
    )
    output_html.parent.mkdir(parents=True, exist_ok=True)
    output_html.write_text(html, encoding="utf-8")
    return output_html


def _map_card(
    spec: MapConfig,
    *,
    map_path: Path,
    html_path: Path,
    base_dir: Path,
    thumbnail_width_px: int,
) -> str:
    caption = spec.title or spec.name
    details: list[str] = []
    if spec.projection:
        details.append(f"projection: {spec.projection}")
    if spec.filter is not None:
        values = ", ".join(str(value) for value in spec.filter.values)
        details.append(f"filter: {spec.filter.column} in [{values}]")
    if spec.layer:
        details.append(f"layer: {spec.layer}")

    if map_path.exists():
        status, label = "ready", "READY"
        src = escape(Path(os.path.relpath(map_path, base_dir)).as_posix())
        image = (
            f"    <a href='{src}'><img src='{src}' alt='Map {escape(caption)}' "
            f"width='{thumbnail_width_px}'></a>"
        )
    else:
        status, label = "missing_map", "MISSING_MAP"
        image = f"    <div class='missing'>{escape(map_path.name)} not rendered</div>"

    links: list[str] = []
    if html_path.exists():
        href = escape(Path(os.path.relpath(html_path, base_dir)).as_posix())
        links.append(f"    <p class='detail'><a class='interactive' href='{href}'>interactive map</a></p>")
    elif spec.interactive:
        links.append("    <p class='detail'>interactive map not rendered</p>")

    return "\n".join(
        [
            "    <div class='card'>",
            f"    <h3>{escape(caption)} ({escape(spec.name)})</h3>",
            f"    <span class='kind'>{escape(spec.kind)}</span>",
            f"    <p class='status {status}'>{label}</p>",
            *(f"    <p class='detail'>{escape(item)}</p>" for item in details),
            image,
            *links,
            "    </div>",
        ]
    )


def _classification_section(payload: Mapping[str, Any]) -> list[str]:
    field = str(payload.get("field", ""))
    ranges = payload.get("bucket_ranges") or []
    counts = payload.get("counts") or []
    rows = [
        f"    <tr><td>{idx}</td><td>{lo:,.4g}</td><td>{hi:,.4g}</td><td>{count}</td></tr>"
        for idx, ((lo, hi), count) in enumerate(zip(ranges, counts))
    ]
    undefined = payload.get("undefined_keys") or []
    return [
        f"  <h2>{escape(field)}: {escape(str(payload.get('scheme', '')))}, "
        f"n={escape(str(payload.get('n', '')))}</h2>",
        "  <table class='buckets'>",
        "    <tr><th>bucket</th><th>from</th><th>to</th><th>records</th></tr>",
        *rows,
        "  </table>",
        f"  <p class='detail'>undefined: {len(undefined)} record(s)</p>",
    ]
