"""Loading of the primary country layer, secondary tables and point layers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Sequence

import pandas as pd

from .config import DatasetsConfig, PointLayerConfig, SecondaryDatasetConfig
from .errors import SchemaError
from .schema import RecordSchema, duplicate_keys, normalize_keys
from .util import format_code_list

EQUAL_AREA_CRS = "+proj=moll +lon_0=0 +x_0=0 +y_0=0 +datum=WGS84 +units=m +no_defs"
GEOGRAPHIC_CRS = "EPSG:4326"

_TABLE_SUFFIXES = {".csv", ".txt", ".tsv", ".tab", ".json"}

_LOGGER = logging.getLogger("mapbuilder.datasets")


@dataclass(frozen=True, slots=True)
class KeyCoverage:
    """How many secondary keys found a primary record."""

    secondary_rows: int
    matched: int
    unmatched_keys: tuple[str, ...]
    primary_without_match: int


class DatasetRepository:
    """File access for every dataset declared under `datasets:` in the config."""

    COUNTRY_ISO_COLUMNS = (
        "ADM0_A3",
        "ADM0_A3_US",
        "ADM0_A3_UN",
        "ISO_A3",
        "ISO_A3_EH",
        "SOV_A3",
        "WB_A3",
        "BRK_A3",
        "SU_A3",
        "GU_A3",
        "ISO3",
        "A3",
    )

    def __init__(self, cfg: DatasetsConfig) -> None:
        self.cfg = cfg

    def load_primary(self, *, iso_allowlist: set[str] | None = None) -> Any:
        """Load the primary layer as a GeoDataFrame keyed by `join_key`."""
        spec = self.cfg.primary
        join_key = self.cfg.join_key
        _require_file(spec.path, f"primary dataset '{spec.name}'")
        gpd = _require_geopandas()
        if spec.layer:
            frame = gpd.read_file(spec.path, layer=spec.layer)
        else:
            frame = gpd.read_file(spec.path)

        key_col = (
            self.detect_primary_key_column(frame, iso_allowlist=iso_allowlist)
            if spec.auto_key
            else spec.key
        )
        frame = _rename_key(frame, key_col, join_key, dataset=spec.name)
        frame[join_key] = normalize_keys(frame[join_key])

        missing_key = frame[join_key].isna()
        if missing_key.any():
            _LOGGER.warning(
                "Dropping %d row(s) without a usable '%s' key from '%s'",
                int(missing_key.sum()),
                key_col,
                spec.name,
            )
            frame = frame.loc[~missing_key].copy()

        dup = duplicate_keys(frame[join_key])
        if dup:
            raise SchemaError(
                f"Primary dataset '{spec.name}' has duplicate keys in '{key_col}': "
                f"{format_code_list(dup)}"
            )

        if spec.area_column:
            if spec.area_column in frame.columns:
                raise SchemaError(
                    f"Primary dataset '{spec.name}' already has a column named '{spec.area_column}'"
                )
            frame[spec.area_column] = geometry_area_km2(frame)

        schema = self.cfg.primary_schema
        schema.validate(frame, dataset=spec.name)
        frame = schema.coerce(frame)
        _LOGGER.debug("Loaded %d primary records from %s (key=%s)", len(frame), spec.path, key_col)
        return frame.reset_index(drop=True)

    def load_secondary(self, spec: SecondaryDatasetConfig) -> pd.DataFrame:
        """Load one attribute table with its key renamed to `join_key`."""
        join_key = self.cfg.join_key
        _require_file(spec.path, f"secondary dataset '{spec.name}'")
        frame = _read_table(spec.path, key=spec.key)
        if spec.key not in frame.columns:
            cols = ", ".join(str(c) for c in frame.columns)
            raise SchemaError(
                f"Secondary dataset '{spec.name}' has no key column '{spec.key}'. "
                f"Available columns: {cols}"
            )
        if spec.columns:
            missing = [col for col in spec.columns if col not in frame.columns]
            if missing:
                raise SchemaError(
                    f"Secondary dataset '{spec.name}' is missing column(s): {', '.join(missing)}"
                )
            frame = frame[[spec.key, *(col for col in spec.columns if col != spec.key)]]

        frame = _rename_key(frame, spec.key, join_key, dataset=spec.name)
        frame[join_key] = normalize_keys(frame[join_key])
        schema: RecordSchema = self.cfg.secondary_schema(spec)
        schema.validate(frame, dataset=spec.name)
        frame = schema.coerce(frame)
        _LOGGER.debug("Loaded %d rows from secondary dataset %s", len(frame), spec.name)
        return frame

    def load_all_secondary(self) -> dict[str, pd.DataFrame]:
        return {spec.name: self.load_secondary(spec) for spec in self.cfg.secondary}

    def load_points(self, spec: PointLayerConfig) -> Any:
        """Load a point layer as a GeoDataFrame in EPSG:4326.

        Tables (CSV/TSV/JSON) are read with their lon/lat columns; any other
        file is read with geopandas and must hold point geometries.
        """
        _require_file(spec.path, f"point layer '{spec.name}'")
        gpd = _require_geopandas()
        if spec.path.suffix.casefold() not in _TABLE_SUFFIXES:
            return _load_vector_points(gpd, spec)
        frame = _read_table(spec.path)
        missing = [col for col in (spec.lon, spec.lat) if col not in frame.columns]
        if spec.label and spec.label not in frame.columns:
            missing.append(spec.label)
        if missing:
            raise SchemaError(
                f"Point layer '{spec.name}' is missing column(s): {', '.join(missing)}"
            )

        lon = pd.to_numeric(frame[spec.lon], errors="coerce")
        lat = pd.to_numeric(frame[spec.lat], errors="coerce")
        valid = lon.between(-180.0, 180.0) & lat.between(-90.0, 90.0)
        dropped = int((~valid).sum())
        if dropped:
            _LOGGER.warning(
                "Dropping %d row(s) with missing/out-of-range coordinates from point layer '%s'",
                dropped,
                spec.name,
            )
        kept = frame.loc[valid].reset_index(drop=True)
        geometry = gpd.points_from_xy(
            lon[valid].to_numpy(dtype="float64"),
            lat[valid].to_numpy(dtype="float64"),
        )
        return gpd.GeoDataFrame(kept, geometry=geometry, crs=GEOGRAPHIC_CRS)

    def detect_primary_key_column(
        self,
        frame: Any,
        *,
        iso_allowlist: set[str] | None = None,
    ) -> str:
        iso_col = _select_best_iso_column(
            frame,
            self.COUNTRY_ISO_COLUMNS,
            iso_allowlist=iso_allowlist,
        )
        if iso_col is None:
            cols = ", ".join(str(c) for c in frame.columns)
            raise SchemaError(
                "Could not detect an ISO3 key column in the primary dataset. "
                f"Available columns: {cols}"
            )
        return iso_col


def key_coverage(primary: pd.DataFrame, secondary: pd.DataFrame, key: str) -> KeyCoverage:
    primary_keys = {str(value) for value in primary[key].dropna().tolist()}
    secondary_keys = [str(value) for value in secondary[key].dropna().tolist()]
    unmatched = sorted({value for value in secondary_keys if value not in primary_keys})
    matched_keys = {value for value in secondary_keys if value in primary_keys}
    return KeyCoverage(
        secondary_rows=len(secondary),
        matched=sum(1 for value in secondary_keys if value in primary_keys),
        unmatched_keys=tuple(unmatched),
        primary_without_match=len(primary_keys - matched_keys),
    )


def geometry_area_km2(frame: Any) -> pd.Series:
    """Area of each geometry in square kilometres, via an equal-area projection."""
    geoms = frame.geometry
    if geoms.crs is None:
        geoms = geoms.set_crs(GEOGRAPHIC_CRS)
    return geoms.to_crs(EQUAL_AREA_CRS).area / 1_000_000.0


def _rename_key(frame: Any, key_col: str, join_key: str, *, dataset: str) -> Any:
    if key_col not in frame.columns:
        cols = ", ".join(str(c) for c in frame.columns)
        raise SchemaError(
            f"Dataset '{dataset}' has no key column '{key_col}'. Available columns: {cols}"
        )
    if key_col == join_key:
        return frame.copy()
    if join_key in frame.columns:
        raise SchemaError(
            f"Dataset '{dataset}' already has a column named '{join_key}'; "
            f"cannot use '{key_col}' as the join key"
        )
    return frame.rename(columns={key_col: join_key})


def _load_vector_points(gpd: Any, spec: PointLayerConfig) -> Any:
    frame = gpd.read_file(spec.path)
    if spec.label and spec.label not in frame.columns:
        raise SchemaError(f"Point layer '{spec.name}' is missing column(s): {spec.label}")
    geoms = frame.geometry
    kinds = set(geoms.dropna().geom_type.unique())
    if kinds - {"Point"}:
        raise SchemaError(
            f"Point layer '{spec.name}' holds non-point geometries: {', '.join(sorted(kinds))}"
        )
    kept = frame.loc[(geoms.notna() & ~geoms.is_empty).to_numpy(dtype=bool)]
    if kept.crs is None:
        return kept.set_crs(GEOGRAPHIC_CRS)
    return kept.to_crs(GEOGRAPHIC_CRS)


def _read_table(path: Path, *, key: str | None = None) -> pd.DataFrame:
    suffix = path.suffix.casefold()
    dtype = {key: "string"} if key else None
    if suffix in {".csv", ".txt"}:
        return pd.read_csv(path, dtype=dtype)
    if suffix in {".tsv", ".tab"}:
        return pd.read_csv(path, sep="\t", dtype=dtype)
    if suffix == ".json":
        return pd.read_json(path, dtype=dtype)
    raise ValueError(f"Unsupported table format '{path.suffix}' for {path}")


def _require_file(path: Path, label: str) -> None:
    if not path.exists():
        raise FileNotFoundError(f"Missing {label}: {path}")


def _require_geopandas() -> Any:
    try:
        import geopandas as gpd
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("geopandas is required for vector data loading") from exc
    return gpd


def _select_best_iso_column(
    dataframe: Any,
    preferred_columns: Sequence[str],
    *,
    iso_allowlist: set[str] | None,
) -> str | None:
    """Pick the best ISO3-like column using schema hints and data-based scoring."""
    existing = [str(col) for col in dataframe.columns]
    by_lower = {col.lower(): col for col in existing}

    candidates: list[str] = []
    for candidate in preferred_columns:
        match = by_lower.get(candidate.lower())
        if match and match not in candidates:
            candidates.append(match)

    for candidate in _heuristic_iso_candidates(existing):
        if candidate not in candidates:
            candidates.append(candidate)

    if not candidates:
        return None

    best_col: str | None = None
    best_score: tuple[int, int, int] | None = None
    for candidate in candidates:
        score = _score_iso_values(dataframe[candidate].tolist(), iso_allowlist=iso_allowlist)
        if best_score is None or score > best_score:
            best_col = candidate
            best_score = score

    if best_col is None or best_score is None or best_score[1] == 0:
        return None
    return best_col


def _score_iso_values(
    values: list[Any],
    *,
    iso_allowlist: set[str] | None,
) -> tuple[int, int, int]:
    valid: list[str] = []
    for value in values:
        if value is None:
            continue
        normalized = str(value).strip().upper()
        if len(normalized) == 3 and normalized.isalpha():
            valid.append(normalized)

    valid_set = set(valid)
    overlap_count = len(valid_set & iso_allowlist) if iso_allowlist else 0
    return (overlap_count, len(valid), len(valid_set))


def _heuristic_iso_candidates(columns: Iterable[str]) -> list[str]:
    candidates: list[str] = []
    for original_name in columns:
        norm = "".join(ch for ch in original_name.upper() if ch.isalnum())
        if "A3" not in norm:
            continue
        if any(token in norm for token in ("ISO", "ADM0", "SOV", "WB", "BRK", "GU", "SU")):
            candidates.append(original_name)
    return candidates
