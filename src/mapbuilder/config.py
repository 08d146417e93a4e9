"""Typed configuration loader for `config.yaml`."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, cast

import yaml

from .attributes import ClassifySettings, Formula, resolve_scheme
from .schema import FieldSpec, RecordSchema

MAP_KINDS = ("world", "subset", "points", "choropleth")
BACKGROUND_MODES = ("white", "tiles")


def _mapping(value: Any, field_name: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ValueError(f"Expected mapping for '{field_name}'")
    return cast(Mapping[str, Any], value)


def _str(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Expected non-empty string for '{field_name}'")
    return value.strip()


def _opt_str(value: Any, field_name: str) -> str | None:
    return None if value is None else _str(value, field_name)


def _int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"Expected integer for '{field_name}'")
    return value


def _float(value: Any, field_name: str) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    raise ValueError(f"Expected float for '{field_name}'")


def _bool(value: Any, field_name: str) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"Expected bool for '{field_name}'")
    return value


def _str_list(value: Any, field_name: str) -> tuple[str, ...]:
    if not isinstance(value, list):
        raise ValueError(f"Expected list for '{field_name}'")
    out: list[str] = []
    for idx, item in enumerate(value):
        out.append(_str(item, f"{field_name}[{idx}]"))
    return tuple(out)


def _scalar_list(value: Any, field_name: str) -> tuple[Any, ...]:
    if not isinstance(value, list) or not value:
        raise ValueError(f"Expected non-empty list for '{field_name}'")
    for idx, item in enumerate(value):
        if not isinstance(item, (str, int, float)) or isinstance(item, bool):
            raise ValueError(f"Expected string or number for '{field_name}[{idx}]'")
    return tuple(value)


def _path_from_cfg(value: Any, field_name: str, root_dir: Path) -> Path:
    raw = _str(value, field_name)
    p = Path(raw)
    return p if p.is_absolute() else root_dir / p


def _fields(value: Any, field_name: str) -> tuple[FieldSpec, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ValueError(f"Expected list for '{field_name}'")
    specs: list[FieldSpec] = []
    for idx, item in enumerate(value):
        try:
            specs.append(FieldSpec.from_mapping(_mapping(item, f"{field_name}[{idx}]")))
        except ValueError as exc:
            raise ValueError(f"Invalid '{field_name}[{idx}]': {exc}") from exc
    return tuple(specs)


def _unique_names(items: tuple[Any, ...], field_name: str) -> None:
    seen: set[str] = set()
    for item in items:
        if item.name in seen:
            raise ValueError(f"Duplicate name '{item.name}' in '{field_name}'")
        seen.add(item.name)


@dataclass(frozen=True, slots=True)
class ProjectConfig:
    name: str
    title: str

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> ProjectConfig:
        name = _str(raw.get("name"), "project.name")
        return cls(name=name, title=_str(raw.get("title", name), "project.title"))


@dataclass(frozen=True, slots=True)
class PathsConfig:
    data_dir: Path
    build_root: Path
    maps_dir: Path
    tables_dir: Path
    qa_dir: Path
    manifests_dir: Path
    logs_dir: Path

    @property
    def build_directories(self) -> tuple[Path, ...]:
        return (
            self.build_root,
            self.maps_dir,
            self.tables_dir,
            self.qa_dir,
            self.manifests_dir,
            self.logs_dir,
        )

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], root_dir: Path) -> PathsConfig:
        return cls(
            data_dir=_path_from_cfg(raw.get("data_dir"), "paths.data_dir", root_dir),
            build_root=_path_from_cfg(raw.get("build_root"), "paths.build_root", root_dir),
            maps_dir=_path_from_cfg(raw.get("maps_dir"), "paths.maps_dir", root_dir),
            tables_dir=_path_from_cfg(raw.get("tables_dir"), "paths.tables_dir", root_dir),
            qa_dir=_path_from_cfg(raw.get("qa_dir"), "paths.qa_dir", root_dir),
            manifests_dir=_path_from_cfg(raw.get("manifests_dir"), "paths.manifests_dir", root_dir),
            logs_dir=_path_from_cfg(raw.get("logs_dir"), "paths.logs_dir", root_dir),
        )


@dataclass(frozen=True, slots=True)
class FetchConfig:
    cache: bool
    request_timeout_s: int
    user_agent: str
    min_request_interval_s: float
    max_retries: int
    retry_backoff_s: float

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> FetchConfig:
        min_request_interval_s = _float(
            raw.get("min_request_interval_s", 0.5),
            "fetch.min_request_interval_s",
        )
        max_retries = _int(raw.get("max_retries", 3), "fetch.max_retries")
        retry_backoff_s = _float(raw.get("retry_backoff_s", 1.0), "fetch.retry_backoff_s")
        if min_request_interval_s < 0:
            raise ValueError("fetch.min_request_interval_s must be >= 0")
        if max_retries < 0:
            raise ValueError("fetch.max_retries must be >= 0")
        if retry_backoff_s <= 0:
            raise ValueError("fetch.retry_backoff_s must be > 0")

        return cls(
            cache=_bool(raw.get("cache", True), "fetch.cache"),
            request_timeout_s=_int(raw.get("request_timeout_s", 60), "fetch.request_timeout_s"),
            user_agent=_str(raw.get("user_agent"), "fetch.user_agent"),
            min_request_interval_s=min_request_interval_s,
            max_retries=max_retries,
            retry_backoff_s=retry_backoff_s,
        )

    @classmethod
    def default(cls) -> FetchConfig:
        return cls(
            cache=True,
            request_timeout_s=60,
            user_agent="mapbuilder/0.1",
            min_request_interval_s=0.5,
            max_retries=3,
            retry_backoff_s=1.0,
        )


@dataclass(frozen=True, slots=True)
class SourceConfig:
    """A remote file downloaded by `fetch-data`."""

    name: str
    url: str
    path: Path

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], root_dir: Path, idx: int) -> SourceConfig:
        url = _str(raw.get("url"), f"sources[{idx}].url")
        if not url.startswith(("http://", "https://")):
            raise ValueError(f"sources[{idx}].url must be an http(s) URL")
        return cls(
            name=_str(raw.get("name"), f"sources[{idx}].name"),
            url=url,
            path=_path_from_cfg(raw.get("path"), f"sources[{idx}].path", root_dir),
        )


@dataclass(frozen=True, slots=True)
class PrimaryDatasetConfig:
    name: str
    path: Path
    key: str
    layer: str | None
    area_column: str | None
    fields: tuple[FieldSpec, ...]

    @property
    def auto_key(self) -> bool:
        return self.key.casefold() == "auto"

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], root_dir: Path) -> PrimaryDatasetConfig:
        return cls(
            name=_str(raw.get("name", "primary"), "datasets.primary.name"),
            path=_path_from_cfg(raw.get("path"), "datasets.primary.path", root_dir),
            key=_str(raw.get("key", "auto"), "datasets.primary.key"),
            layer=_opt_str(raw.get("layer"), "datasets.primary.layer"),
            area_column=_opt_str(raw.get("area_column"), "datasets.primary.area_column"),
            fields=_fields(raw.get("fields"), "datasets.primary.fields"),
        )


@dataclass(frozen=True, slots=True)
class SecondaryDatasetConfig:
    name: str
    path: Path
    key: str
    columns: tuple[str, ...]
    fields: tuple[FieldSpec, ...]

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], root_dir: Path, idx: int) -> SecondaryDatasetConfig:
        prefix = f"datasets.secondary[{idx}]"
        columns_raw = raw.get("columns")
        return cls(
            name=_str(raw.get("name"), f"{prefix}.name"),
            path=_path_from_cfg(raw.get("path"), f"{prefix}.path", root_dir),
            key=_str(raw.get("key"), f"{prefix}.key"),
            columns=() if columns_raw is None else _str_list(columns_raw, f"{prefix}.columns"),
            fields=_fields(raw.get("fields"), f"{prefix}.fields"),
        )


@dataclass(frozen=True, slots=True)
class PointLayerConfig:
    name: str
    path: Path
    lon: str
    lat: str
    label: str | None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], root_dir: Path, idx: int) -> PointLayerConfig:
        prefix = f"datasets.points[{idx}]"
        return cls(
            name=_str(raw.get("name"), f"{prefix}.name"),
            path=_path_from_cfg(raw.get("path"), f"{prefix}.path", root_dir),
            lon=_str(raw.get("lon", "longitude"), f"{prefix}.lon"),
            lat=_str(raw.get("lat", "latitude"), f"{prefix}.lat"),
            label=_opt_str(raw.get("label"), f"{prefix}.label"),
        )


@dataclass(frozen=True, slots=True)
class DatasetsConfig:
    join_key: str
    primary: PrimaryDatasetConfig
    secondary: tuple[SecondaryDatasetConfig, ...]
    points: tuple[PointLayerConfig, ...]

    @property
    def primary_schema(self) -> RecordSchema:
        return RecordSchema(key=self.join_key, fields=self.primary.fields)

    def secondary_schema(self, spec: SecondaryDatasetConfig) -> RecordSchema:
        return RecordSchema(key=self.join_key, fields=spec.fields)

    def point_layer(self, name: str) -> PointLayerConfig | None:
        for layer in self.points:
            if layer.name == name:
                return layer
        return None

    @property
    def input_files(self) -> tuple[Path, ...]:
        return (
            self.primary.path,
            *(spec.path for spec in self.secondary),
            *(layer.path for layer in self.points),
        )

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], root_dir: Path) -> DatasetsConfig:
        secondary_raw = raw.get("secondary") or []
        points_raw = raw.get("points") or []
        if not isinstance(secondary_raw, list):
            raise ValueError("Expected list for 'datasets.secondary'")
        if not isinstance(points_raw, list):
            raise ValueError("Expected list for 'datasets.points'")
        secondary = tuple(
            SecondaryDatasetConfig.from_mapping(
                _mapping(item, f"datasets.secondary[{idx}]"), root_dir, idx
            )
            for idx, item in enumerate(secondary_raw)
        )
        points = tuple(
            PointLayerConfig.from_mapping(_mapping(item, f"datasets.points[{idx}]"), root_dir, idx)
            for idx, item in enumerate(points_raw)
        )
        _unique_names(secondary, "datasets.secondary")
        _unique_names(points, "datasets.points")
        return cls(
            join_key=_str(raw.get("join_key", "iso3"), "datasets.join_key"),
            primary=PrimaryDatasetConfig.from_mapping(
                _mapping(raw.get("primary"), "datasets.primary"), root_dir
            ),
            secondary=secondary,
            points=points,
        )


@dataclass(frozen=True, slots=True)
class DeriveConfig:
    name: str
    numerator: str
    denominator: str
    scale: float

    def to_formula(self) -> Formula:
        return Formula.ratio(self.name, self.numerator, self.denominator, scale=self.scale)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> DeriveConfig:
        return cls(
            name=_str(raw.get("name"), "derive.name"),
            numerator=_str(raw.get("numerator"), "derive.numerator"),
            denominator=_str(raw.get("denominator"), "derive.denominator"),
            scale=_float(raw.get("scale", 1.0), "derive.scale"),
        )


@dataclass(frozen=True, slots=True)
class ClassifyConfig:
    n: int
    scheme: str
    drop_undefined: bool
    bucket_column: str | None

    def to_settings(self) -> ClassifySettings:
        return ClassifySettings(
            n=self.n,
            scheme=self.scheme,
            drop_undefined=self.drop_undefined,
            bucket_column=self.bucket_column,
        )

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> ClassifyConfig:
        n = _int(raw.get("n", 5), "classify.n")
        if n < 1:
            raise ValueError("classify.n must be >= 1")
        try:
            scheme = resolve_scheme(_str(raw.get("scheme", "quantiles"), "classify.scheme"))
        except ValueError as exc:
            raise ValueError(f"Invalid 'classify.scheme': {exc}") from exc
        return cls(
            n=n,
            scheme=scheme,
            drop_undefined=_bool(raw.get("drop_undefined", True), "classify.drop_undefined"),
            bucket_column=_opt_str(raw.get("bucket_column"), "classify.bucket_column"),
        )


@dataclass(frozen=True, slots=True)
class RenderImageConfig:
    width_px: int
    height_px: int
    dpi: int
    background: str
    format: str

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> RenderImageConfig:
        dpi = _int(raw.get("dpi"), "render.image.dpi")
        if dpi < 1:
            raise ValueError("render.image.dpi must be >= 1")
        return cls(
            width_px=_int(raw.get("width_px"), "render.image.width_px"),
            height_px=_int(raw.get("height_px"), "render.image.height_px"),
            dpi=dpi,
            background=_str(raw.get("background"), "render.image.background"),
            format=_str(raw.get("format", "png"), "render.image.format"),
        )


@dataclass(frozen=True, slots=True)
class RenderStyleConfig:
    fill_color: str
    edge_color: str
    edge_width: float
    missing_color: str
    highlight_color: str
    cmap: str
    point_color: str
    point_size: float
    font_family: str
    font_size_title: int

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> RenderStyleConfig:
        return cls(
            fill_color=_str(raw.get("fill_color"), "render.style.fill_color"),
            edge_color=_str(raw.get("edge_color"), "render.style.edge_color"),
            edge_width=_float(raw.get("edge_width"), "render.style.edge_width"),
            missing_color=_str(raw.get("missing_color"), "render.style.missing_color"),
            highlight_color=_str(
                raw.get("highlight_color", raw.get("fill_color")), "render.style.highlight_color"
            ),
            cmap=_str(raw.get("cmap"), "render.style.cmap"),
            point_color=_str(raw.get("point_color"), "render.style.point_color"),
            point_size=_float(raw.get("point_size"), "render.style.point_size"),
            font_family=_str(raw.get("font_family", "DejaVu Sans"), "render.style.font_family"),
            font_size_title=_int(raw.get("font_size_title", 14), "render.style.font_size_title"),
        )


@dataclass(frozen=True, slots=True)
class LegendConfig:
    show: bool
    fmt: str
    loc: str
    title: str | None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> LegendConfig:
        fmt = _str(raw.get("fmt", ".2f"), "render.legend.fmt")
        try:
            format(1.5, fmt)
        except ValueError as exc:
            raise ValueError(f"Invalid 'render.legend.fmt': {exc}") from exc
        return cls(
            show=_bool(raw.get("show", True), "render.legend.show"),
            fmt=fmt,
            loc=_str(raw.get("loc", "lower left"), "render.legend.loc"),
            title=_opt_str(raw.get("title"), "render.legend.title"),
        )

    @classmethod
    def default(cls) -> LegendConfig:
        return cls(show=True, fmt=".2f", loc="lower left", title=None)


@dataclass(frozen=True, slots=True)
class RenderBackgroundConfig:
    mode: str
    provider: str

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> RenderBackgroundConfig:
        mode = _str(raw.get("mode"), "render.background.mode").casefold()
        if mode not in BACKGROUND_MODES:
            raise ValueError(
                "render.background.mode must be one of: " + ", ".join(BACKGROUND_MODES)
            )
        return cls(
            mode=mode,
            provider=_str(
                raw.get("provider", "CartoDB.PositronNoLabels"), "render.background.provider"
            ),
        )

    @classmethod
    def default(cls) -> RenderBackgroundConfig:
        return cls(mode="white", provider="CartoDB.PositronNoLabels")


@dataclass(frozen=True, slots=True)
class RenderConfig:
    image: RenderImageConfig
    style: RenderStyleConfig
    legend: LegendConfig
    background: RenderBackgroundConfig

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> RenderConfig:
        legend_raw = raw.get("legend")
        background_raw = raw.get("background")
        return cls(
            image=RenderImageConfig.from_mapping(_mapping(raw.get("image"), "render.image")),
            style=RenderStyleConfig.from_mapping(_mapping(raw.get("style"), "render.style")),
            legend=(
                LegendConfig.default()
                if legend_raw is None
                else LegendConfig.from_mapping(_mapping(legend_raw, "render.legend"))
            ),
            background=(
                RenderBackgroundConfig.default()
                if background_raw is None
                else RenderBackgroundConfig.from_mapping(
                    _mapping(background_raw, "render.background")
                )
            ),
        )


@dataclass(frozen=True, slots=True)
class MapFilterConfig:
    column: str
    values: tuple[Any, ...]

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], prefix: str) -> MapFilterConfig:
        return cls(
            column=_str(raw.get("column"), f"{prefix}.column"),
            values=_scalar_list(raw.get("values"), f"{prefix}.values"),
        )


@dataclass(frozen=True, slots=True)
class MapConfig:
    """One map to render into `map_<name>.png`, plus `map_<name>.html` when interactive."""

    name: str
    kind: str
    title: str | None
    projection: str | None
    filter: MapFilterConfig | None
    layer: str | None
    interactive: bool = False

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], idx: int) -> MapConfig:
        prefix = f"maps[{idx}]"
        name = _str(raw.get("name"), f"{prefix}.name")
        if not all(ch.isalnum() or ch in "-_" for ch in name):
            raise ValueError(f"{prefix}.name may only contain letters, digits, '-' and '_'")
        kind = _str(raw.get("kind"), f"{prefix}.kind").casefold()
        if kind not in MAP_KINDS:
            raise ValueError(f"{prefix}.kind must be one of: " + ", ".join(MAP_KINDS))

        filter_raw = raw.get("filter")
        map_filter = (
            None
            if filter_raw is None
            else MapFilterConfig.from_mapping(_mapping(filter_raw, f"{prefix}.filter"), f"{prefix}.filter")
        )
        layer = _opt_str(raw.get("layer"), f"{prefix}.layer")
        if kind == "subset" and map_filter is None:
            raise ValueError(f"{prefix}: subset maps require a 'filter'")
        if kind == "points" and layer is None:
            raise ValueError(f"{prefix}: points maps require a 'layer'")
        return cls(
            name=name,
            kind=kind,
            title=_opt_str(raw.get("title"), f"{prefix}.title"),
            projection=_opt_str(raw.get("projection"), f"{prefix}.projection"),
            filter=map_filter,
            layer=layer,
            interactive=_bool(raw.get("interactive", False), f"{prefix}.interactive"),
        )


@dataclass(frozen=True, slots=True)
class QaConfig:
    generate_index: bool
    thumbnail_width_px: int
    max_columns: int

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> QaConfig:
        return cls(
            generate_index=_bool(raw.get("generate_index"), "qa.generate_index"),
            thumbnail_width_px=_int(raw.get("thumbnail_width_px"), "qa.thumbnail_width_px"),
            max_columns=_int(raw.get("max_columns"), "qa.max_columns"),
        )


@dataclass(frozen=True, slots=True)
class BuildConfig:
    write_manifest: bool
    strict: bool

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> BuildConfig:
        return cls(
            write_manifest=_bool(raw.get("write_manifest"), "build.write_manifest"),
            strict=_bool(raw.get("strict", False), "build.strict"),
        )


@dataclass(frozen=True, slots=True)
class AppConfig:
    source_path: Path
    project: ProjectConfig
    paths: PathsConfig
    fetch: FetchConfig
    sources: tuple[SourceConfig, ...]
    datasets: DatasetsConfig
    derive: DeriveConfig
    classify: ClassifyConfig
    render: RenderConfig
    maps: tuple[MapConfig, ...]
    qa: QaConfig
    build: BuildConfig

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], source_path: Path) -> AppConfig:
        root_dir = source_path.parent.resolve()
        fetch_raw = raw.get("fetch")
        sources_raw = raw.get("sources") or []
        maps_raw = raw.get("maps") or []
        if not isinstance(sources_raw, list):
            raise ValueError("Expected list for 'sources'")
        if not isinstance(maps_raw, list):
            raise ValueError("Expected list for 'maps'")
        sources = tuple(
            SourceConfig.from_mapping(_mapping(item, f"sources[{idx}]"), root_dir, idx)
            for idx, item in enumerate(sources_raw)
        )
        maps = tuple(
            MapConfig.from_mapping(_mapping(item, f"maps[{idx}]"), idx)
            for idx, item in enumerate(maps_raw)
        )
        _unique_names(sources, "sources")
        _unique_names(maps, "maps")
        return cls(
            source_path=source_path.resolve(),
            project=ProjectConfig.from_mapping(_mapping(raw.get("project"), "project")),
            paths=PathsConfig.from_mapping(_mapping(raw.get("paths"), "paths"), root_dir),
            fetch=(
                FetchConfig.default()
                if fetch_raw is None
                else FetchConfig.from_mapping(_mapping(fetch_raw, "fetch"))
            ),
            sources=sources,
            datasets=DatasetsConfig.from_mapping(_mapping(raw.get("datasets"), "datasets"), root_dir),
            derive=DeriveConfig.from_mapping(_mapping(raw.get("derive"), "derive")),
            classify=ClassifyConfig.from_mapping(_mapping(raw.get("classify", {}), "classify")),
            render=RenderConfig.from_mapping(_mapping(raw.get("render"), "render")),
            maps=maps,
            qa=QaConfig.from_mapping(_mapping(raw.get("qa"), "qa")),
            build=BuildConfig.from_mapping(_mapping(raw.get("build"), "build")),
        )


def load_config(path: str | Path) -> AppConfig:
    """Load and validate the YAML config file into typed settings."""
    cfg_path = Path(path).resolve()
    if not cfg_path.exists():
        raise FileNotFoundError(f"Config file not found: {cfg_path}")
    with cfg_path.open("r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh)
    if not isinstance(raw, Mapping):
        raise ValueError("Top-level config must be a YAML mapping")
    return AppConfig.from_mapping(cast(Mapping[str, Any], raw), cfg_path)
