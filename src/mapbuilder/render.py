"""Map rendering: static images plus optional interactive HTML pages."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping, Sequence

import pandas as pd

from .attributes import PipelineResult
from .config import AppConfig, MapConfig, MapFilterConfig, RenderConfig
from .datasets import GEOGRAPHIC_CRS, DatasetRepository
from .errors import SchemaError
from .models import StepReport, map_output_path
from .pipeline import run_classification
from .util import format_code_list

_LOGGER = logging.getLogger("mapbuilder.render")

# Friendly names -> CRS strings understood by pyproj.
PROJECTIONS = {
    "PlateCarree": "EPSG:4326",
    "Mercator": "EPSG:3395",
    "WebMercator": "EPSG:3857",
    "Robinson": "+proj=robin +lon_0=0 +x_0=0 +y_0=0 +datum=WGS84 +units=m +no_defs",
    "Mollweide": "+proj=moll +lon_0=0 +x_0=0 +y_0=0 +datum=WGS84 +units=m +no_defs",
    "EqualEarth": "+proj=eqearth +lon_0=0 +datum=WGS84 +units=m +no_defs",
    "WinkelTripel": "+proj=wintri +lon_0=0 +datum=WGS84 +units=m +no_defs",
}

_NO_DATA_LABEL = "No data"


def resolve_projection(name: str | None) -> str | None:
    if name is None:
        return None
    by_lower = {key.casefold(): value for key, value in PROJECTIONS.items()}
    return by_lower.get(name.strip().casefold(), name.strip())


@dataclass(frozen=True, slots=True)
class MapLayers:
    """Frames a map may draw from."""

    base: Any
    points: Mapping[str, Any] = field(default_factory=dict)
    result: PipelineResult | None = None
    key: str | None = None


@dataclass(slots=True)
class RenderMapsReport(StepReport):
    output_dir: Path | None = None
    outputs: dict[str, Path] = field(default_factory=dict)
    interactive_outputs: dict[str, Path] = field(default_factory=dict)


class MapRenderer:
    """Deterministic renderer for one configured map."""

    def __init__(self, cfg: RenderConfig) -> None:
        self.cfg = cfg
        self._basemap_failure: str | None = None

    @property
    def basemap_warning(self) -> str | None:
        return self._basemap_failure

    @property
    def uses_tiles(self) -> bool:
        return self.cfg.background.mode == "tiles"

    def render(self, spec: MapConfig, layers: MapLayers, output_path: Path) -> Path:
        _, plt = _require_matplotlib()
        image = self.cfg.image
        crs = resolve_projection(spec.projection)
        if crs is None and self.uses_tiles:
            crs = PROJECTIONS["WebMercator"]

        fig, ax = plt.subplots(figsize=(image.width_px / image.dpi, image.height_px / image.dpi), dpi=image.dpi)
        try:
            _apply_background(fig=fig, ax=ax, background=image.background)
            if spec.kind == "world":
                self._draw_base(ax, _project(layers.base, crs))
            elif spec.kind == "subset":
                subset = select_subset(layers.base, _required_filter(spec))
                self._draw_base(ax, _project(subset, crs), color=self.cfg.style.highlight_color)
            elif spec.kind == "points":
                self._draw_points_map(ax, spec, layers, crs)
            elif spec.kind == "choropleth":
                self._draw_choropleth(ax, _required_result(spec, layers), crs)
            else:
                raise ValueError(f"Unknown map kind '{spec.kind}'")
            if self.uses_tiles:
                self._draw_basemap(ax, crs or GEOGRAPHIC_CRS)

            ax.set_axis_off()
            if spec.title:
                ax.set_title(
                    spec.title,
                    fontsize=self.cfg.style.font_size_title,
                    fontfamily=self.cfg.style.font_family,
                    pad=12,
                )

            output_path.parent.mkdir(parents=True, exist_ok=True)
            fig.savefig(
                output_path,
                dpi=image.dpi,
                format=image.format,
                bbox_inches="tight",
                transparent=image.background.casefold() == "transparent",
            )
            return output_path
        finally:
            plt.close(fig)

    def render_interactive(self, spec: MapConfig, layers: MapLayers, output_path: Path) -> Path:
        """Write `spec` as a standalone Leaflet page built with `GeoDataFrame.explore`.

        Tiles come from `render.background.provider` in tiles mode; otherwise
        the page has no tile layer, like the white static maps.
        """
        style = self.cfg.style
        common: dict[str, Any] = {
            "tiles": self.cfg.background.provider if self.uses_tiles else None,
            "style_kwds": {"color": style.edge_color, "weight": style.edge_width},
        }

        if spec.kind == "choropleth":
            m = self._explore_choropleth(_required_result(spec, layers), layers.key, common)
        elif spec.kind in ("world", "subset", "points"):
            frame = _drawable(_project(layers.base, None))
            color = style.fill_color
            if spec.kind == "subset":
                frame = select_subset(frame, _required_filter(spec))
                color = style.highlight_color
            if frame.empty:
                raise ValueError("No geometries to draw")
            m = _slim(frame, layers.key).explore(
                color=color, tooltip=_tooltip_fields(frame, layers.key), name=spec.name, **common
            )
            if spec.kind == "points":
                points = self._point_layer(spec, layers)
                if not points.empty:
                    _slim(_project(points, None)).explore(
                        m=m,
                        color=style.point_color,
                        marker_kwds={"radius": max(style.point_size / 2.0, 2.0)},
                        name=spec.layer,
                    )
                _require_folium().LayerControl().add_to(m)
        else:
            raise ValueError(f"Unknown map kind '{spec.kind}'")

        output_path.parent.mkdir(parents=True, exist_ok=True)
        m.save(str(output_path))
        return output_path

    def _explore_choropleth(self, result: PipelineResult, key: str | None, common: dict[str, Any]) -> Any:
        classification = result.classification
        frame = _drawable(_project(result.merged, None))
        if frame.empty:
            raise ValueError("No geometries to draw")
        palette = bucket_palette(self.cfg.style.cmap, classification.n)
        labels = classification.legend_labels(self.cfg.legend.fmt)
        buckets = frame[result.bucket_column]

        # Buckets whose labels collide after formatting share the lower bucket's colour.
        colors_by_label: dict[str, str] = {}
        for idx in sorted({int(b) for b in buckets.dropna()}):
            colors_by_label.setdefault(labels[idx], palette[idx])

        columns = [col for col in (key, result.field) if col and col in frame.columns]
        bucket_labels = pd.Series(
            [None if pd.isna(b) else labels[int(b)] for b in buckets],
            index=frame.index,
            dtype="string",
        )
        slim = _slim(frame, *columns).astype({result.field: "float64"})
        slim[result.bucket_column] = bucket_labels
        return slim.explore(
            column=result.bucket_column,
            categorical=True,
            categories=list(colors_by_label),
            cmap=list(colors_by_label.values()),
            missing_kwds={"color": self.cfg.style.missing_color, "label": _NO_DATA_LABEL},
            legend=self.cfg.legend.show,
            legend_kwds={"caption": self.cfg.legend.title or result.field},
            tooltip=[*columns, result.bucket_column],
            name=result.field,
            **common,
        )

    def _draw_base(self, ax: Any, frame: Any, *, color: str | None = None) -> None:
        drawable = _drawable(frame)
        if drawable.empty:
            raise ValueError("No geometries to draw")
        drawable.plot(
            ax=ax,
            color=color or self.cfg.style.fill_color,
            edgecolor=self.cfg.style.edge_color,
            linewidth=self.cfg.style.edge_width,
        )

    def _point_layer(self, spec: MapConfig, layers: MapLayers) -> Any:
        if spec.layer is None:
            raise ValueError(f"Map '{spec.name}' needs a point layer")
        points = layers.points.get(spec.layer)
        if points is None:
            raise ValueError(f"Point layer '{spec.layer}' is not loaded")
        if points.empty:
            _LOGGER.warning("Point layer '%s' has no rows to draw", spec.layer)
        return points

    def _draw_points_map(self, ax: Any, spec: MapConfig, layers: MapLayers, crs: str | None) -> None:
        points = self._point_layer(spec, layers)
        self._draw_base(ax, _project(layers.base, crs))
        if not points.empty:
            _project(points, crs).plot(
                ax=ax,
                color=self.cfg.style.point_color,
                markersize=self.cfg.style.point_size,
                zorder=3,
            )

    def _draw_choropleth(self, ax: Any, result: PipelineResult, crs: str | None) -> None:
        _require_matplotlib()
        from matplotlib.patches import Patch

        classification = result.classification
        frame = _drawable(_project(result.merged, crs))
        if frame.empty:
            raise ValueError("No geometries to draw")
        palette = bucket_palette(self.cfg.style.cmap, classification.n)
        style = self.cfg.style
        buckets = frame[result.bucket_column]

        missing = frame.loc[buckets.isna().to_numpy()]
        if not missing.empty:
            missing.plot(ax=ax, color=style.missing_color, edgecolor=style.edge_color, linewidth=style.edge_width)
        for idx, color in enumerate(palette):
            members = frame.loc[(buckets == idx).fillna(False).to_numpy(dtype=bool)]
            if members.empty:
                continue
            members.plot(ax=ax, color=color, edgecolor=style.edge_color, linewidth=style.edge_width)

        if not self.cfg.legend.show:
            return
        labels = classification.legend_labels(self.cfg.legend.fmt)
        handles = [
            Patch(facecolor=color, edgecolor=style.edge_color, label=label)
            for color, label in zip(palette, labels)
        ]
        if not missing.empty:
            handles.append(Patch(facecolor=style.missing_color, edgecolor=style.edge_color, label=_NO_DATA_LABEL))
        ax.legend(
            handles=handles,
            loc=self.cfg.legend.loc,
            title=self.cfg.legend.title or result.field,
            fontsize="small",
            title_fontsize="small",
            frameon=False,
        )

    def _draw_basemap(self, ax: Any, crs: str) -> None:
        try:
            ctx = _require_contextily()
            source = _resolve_basemap_source(self.cfg.background.provider)
            ctx.add_basemap(ax, crs=crs, source=source, attribution_size=6, zorder=0)
        except Exception as exc:
            self._basemap_failure = f"Basemap unavailable ({self.cfg.background.provider}): {exc}"
            _LOGGER.warning(self._basemap_failure)


def run_render_maps(
    cfg: AppConfig,
    *,
    result: PipelineResult | None = None,
    map_filter: Sequence[str] | None = None,
    skip_existing: bool = False,
) -> RenderMapsReport:
    """Render every configured map (or the filtered ones) into `maps_dir`."""
    report = RenderMapsReport(output_dir=cfg.paths.maps_dir)
    maps = list(cfg.maps)
    if map_filter:
        requested = {item.strip() for item in map_filter if item and item.strip()}
        maps = [spec for spec in maps if spec.name in requested]
        missing_requested = sorted(requested - {spec.name for spec in maps})
        if missing_requested:
            report.add_warning("Requested maps not present in config: " + format_code_list(missing_requested))
    if not maps:
        report.add_error("No maps selected for rendering.")
        return report

    pending: list[MapConfig] = []
    skipped = 0
    for spec in maps:
        output_path = map_output_path(cfg.paths.maps_dir, spec.name, cfg.render.image.format)
        html_path = map_output_path(cfg.paths.maps_dir, spec.name, "html")
        if skip_existing and output_path.exists() and (not spec.interactive or html_path.exists()):
            skipped += 1
            report.outputs[spec.name] = output_path
            if spec.interactive:
                report.interactive_outputs[spec.name] = html_path
            continue
        pending.append(spec)

    layers = MapLayers(base=None)
    if pending:
        loaded = _load_layers(cfg, pending, result=result, report=report)
        if loaded is None:
            return report
        layers = loaded

    renderer = MapRenderer(cfg.render)
    rendered = 0
    failed: list[str] = []
    for idx, spec in enumerate(pending, start=1):
        output_path = map_output_path(cfg.paths.maps_dir, spec.name, cfg.render.image.format)
        started = time.perf_counter()
        try:
            renderer.render(spec, layers, output_path)
            if spec.interactive:
                html_path = map_output_path(cfg.paths.maps_dir, spec.name, "html")
                report.interactive_outputs[spec.name] = renderer.render_interactive(spec, layers, html_path)
        except Exception as exc:
            failed.append(f"{spec.name}({exc})")
            _LOGGER.error("[render] (%d/%d) failed %s: %s", idx, len(pending), spec.name, exc)
            continue
        rendered += 1
        report.outputs[spec.name] = output_path
        _LOGGER.info(
            "[render] (%d/%d) %s -> %s in %.2fs",
            idx,
            len(pending),
            spec.name,
            output_path,
            time.perf_counter() - started,
        )

    if renderer.basemap_warning:
        report.add_warning(renderer.basemap_warning)
    report.summary = {
        "maps_total": len(maps),
        "maps_rendered": rendered,
        "maps_skipped_existing": skipped,
        "maps_failed": len(failed),
        "maps_interactive": len(report.interactive_outputs),
    }
    report.add_info(
        "Render summary: "
        f"maps_total={len(maps)}, maps_rendered={rendered}, "
        f"maps_skipped_existing={skipped}, maps_failed={len(failed)}"
    )
    if failed:
        report.add_error("Map render failures: " + format_code_list(sorted(failed)))
    return report


def select_subset(frame: Any, map_filter: MapFilterConfig) -> Any:
    if map_filter.column not in frame.columns:
        raise SchemaError(f"Filter column '{map_filter.column}' not found")
    wanted = {str(value).casefold() for value in map_filter.values}
    column = frame[map_filter.column].astype("string").str.casefold()
    subset = frame.loc[column.isin(wanted).fillna(False).to_numpy(dtype=bool)]
    if subset.empty:
        raise ValueError(
            f"Filter {map_filter.column} in {list(map_filter.values)} matched no records"
        )
    return subset


def bucket_palette(cmap_name: str, n: int) -> list[str]:
    """`n` evenly spaced hex colours from a matplotlib colormap."""
    matplotlib, _ = _require_matplotlib()
    from matplotlib.colors import to_hex

    cmap = matplotlib.colormaps[cmap_name].resampled(n)
    return [to_hex(cmap(idx)) for idx in range(n)]


def _load_layers(
    cfg: AppConfig,
    maps: Sequence[MapConfig],
    *,
    result: PipelineResult | None,
    report: RenderMapsReport,
) -> MapLayers | None:
    needs_result = any(spec.kind == "choropleth" for spec in maps)
    if needs_result and result is None:
        classification_report = run_classification(cfg, write_tables=False)
        report.errors.extend(classification_report.errors)
        report.warnings.extend(classification_report.warnings)
        if not classification_report.ok:
            return None
        result = classification_report.result

    repo = DatasetRepository(cfg.datasets)
    try:
        base = result.merged if result is not None else repo.load_primary()
    except Exception as exc:
        report.add_error(f"Failed loading primary dataset: {exc}")
        return None

    points: dict[str, Any] = {}
    for name in sorted({spec.layer for spec in maps if spec.kind == "points" and spec.layer}):
        layer_cfg = cfg.datasets.point_layer(name)
        if layer_cfg is None:
            report.add_error(f"Point layer '{name}' is not declared under datasets.points")
            continue
        try:
            points[name] = repo.load_points(layer_cfg)
        except Exception as exc:
            report.add_error(f"Failed loading point layer '{name}': {exc}")
    if not report.ok:
        return None
    return MapLayers(base=base, points=points, result=result, key=cfg.datasets.join_key)


def _required_filter(spec: MapConfig) -> MapFilterConfig:
    if spec.filter is None:
        raise ValueError(f"Map '{spec.name}' needs a filter")
    return spec.filter


def _required_result(spec: MapConfig, layers: MapLayers) -> PipelineResult:
    if layers.result is None:
        raise ValueError(f"Map '{spec.name}' needs a classification result")
    return layers.result


def _tooltip_fields(frame: Any, key: str | None) -> list[str] | bool:
    return [key] if key and key in frame.columns else False


def _slim(frame: Any, *columns: str | None) -> Any:
    """Only the named columns plus geometry, so every property serialises to JSON."""
    keep = [col for col in columns if col and col in frame.columns]
    return frame[[*keep, frame.geometry.name]]


def _project(frame: Any, crs: str | None) -> Any:
    if frame.crs is None:
        frame = frame.set_crs(GEOGRAPHIC_CRS)
    if crs is None:
        return frame
    return frame.to_crs(crs)


def _drawable(frame: Any) -> Any:
    geoms = frame.geometry
    keep = ~(geoms.isna() | geoms.is_empty)
    return frame.loc[pd.Series(keep, index=frame.index).to_numpy(dtype=bool)]


def _apply_background(*, fig: Any, ax: Any, background: str) -> None:
    if background.casefold() == "transparent":
        fig.patch.set_facecolor("white")
        fig.patch.set_alpha(0.0)
        ax.set_facecolor((1.0, 1.0, 1.0, 0.0))
    else:
        fig.patch.set_facecolor(background)
        ax.set_facecolor(background)


def _resolve_basemap_source(provider_name: str) -> Any:
    providers = _require_xyzservices_providers()
    return providers.query_name(provider_name)


def _require_matplotlib() -> tuple[Any, Any]:
    try:
        import matplotlib

        matplotlib.use("Agg", force=False)
        import matplotlib.pyplot as plt
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("matplotlib is required for map rendering") from exc
    return (matplotlib, plt)


@lru_cache(maxsize=1)
def _require_contextily() -> Any:
    try:
        import contextily as ctx
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("contextily is required for tile basemaps") from exc
    return ctx


@lru_cache(maxsize=1)
def _require_xyzservices_providers() -> Any:
    try:
        from xyzservices import providers
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("xyzservices is required for basemap source definitions") from exc
    return providers


@lru_cache(maxsize=1)
def _require_folium() -> Any:
    try:
        import folium
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("folium is required for interactive maps") from exc
    return folium
