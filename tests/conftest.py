from pathlib import Path

import geopandas as gpd
import matplotlib
import pandas as pd
import pytest
import yaml
from shapely.geometry import box

matplotlib.use("Agg")


@pytest.fixture
def countries():
    """Five one-degree squares with Natural Earth style columns."""
    return gpd.GeoDataFrame(
        {
            "ADM0_A3": ["AAA", "BBB", "CCC", "DDD", "EEE"],
            "NAME": ["Aland", "Bland", "Cland", "Dland", "Eland"],
            "CONTINENT": ["Africa", "Africa", "Europe", "Asia", "Asia"],
            "POP_EST": [100.0, 200.0, 300.0, 400.0, 0.0],
        },
        geometry=[
            box(0, 0, 1, 1),
            box(1, 0, 2, 1),
            box(0, 1, 1, 2),
            box(1, 1, 2, 2),
            box(2, 0, 3, 1),
        ],
        crs="EPSG:4326",
    )


@pytest.fixture
def stats():
    return pd.DataFrame(
        {
            "code": ["aaa", "BBB", " ccc ", "EEE", "ZZZ"],
            "gdp": [1000.0, 4000.0, 9000.0, 5.0, 1.0],
        }
    )


def base_config(data_dir: str = "data") -> dict:
    return {
        "project": {"name": "test-maps", "title": "Test Maps"},
        "paths": {
            "data_dir": data_dir,
            "build_root": "build",
            "maps_dir": "build/maps",
            "tables_dir": "build/tables",
            "qa_dir": "build/qa",
            "manifests_dir": "build/manifests",
            "logs_dir": "build/logs",
        },
        "fetch": {
            "cache": True,
            "request_timeout_s": 5,
            "user_agent": "mapbuilder-tests",
            "min_request_interval_s": 0.0,
            "max_retries": 2,
            "retry_backoff_s": 0.01,
        },
        "sources": [],
        "datasets": {
            "join_key": "iso3",
            "primary": {
                "name": "countries",
                "path": f"{data_dir}/countries.geojson",
                "key": "auto",
                "area_column": "area_km2",
                "fields": [
                    {"name": "NAME", "kind": "string"},
                    {"name": "CONTINENT", "kind": "categorical"},
                    {"name": "POP_EST", "kind": "numeric"},
                ],
            },
            "secondary": [
                {
                    "name": "stats",
                    "path": f"{data_dir}/stats.csv",
                    "key": "code",
                    "columns": ["gdp"],
                    "fields": [{"name": "gdp", "kind": "numeric"}],
                }
            ],
            "points": [
                {
                    "name": "cities",
                    "path": f"{data_dir}/cities.csv",
                    "lon": "lon",
                    "lat": "lat",
                    "label": "city",
                }
            ],
        },
        "derive": {"name": "gdp_pc", "numerator": "gdp", "denominator": "POP_EST"},
        "classify": {"n": 2, "scheme": "quantiles"},
        "render": {
            "image": {"width_px": 200, "height_px": 120, "dpi": 50, "background": "white"},
            "style": {
                "fill_color": "#dddddd",
                "edge_color": "#333333",
                "edge_width": 0.5,
                "missing_color": "#f5f5f5",
                "cmap": "viridis",
                "point_color": "#cc0000",
                "point_size": 4.0,
            },
            "legend": {"show": True, "fmt": ".1f"},
        },
        "maps": [
            {"name": "world", "kind": "world", "title": "World"},
            {
                "name": "africa",
                "kind": "subset",
                "filter": {"column": "CONTINENT", "values": ["africa"]},
            },
            {"name": "cities", "kind": "points", "layer": "cities", "projection": "WebMercator"},
            {"name": "gdp_pc", "kind": "choropleth", "title": "GDP per head", "projection": "Robinson"},
        ],
        "qa": {"generate_index": True, "thumbnail_width_px": 240, "max_columns": 2},
        "build": {"write_manifest": True},
    }


def write_config(root: Path, raw: dict) -> Path:
    path = root / "config.yaml"
    path.write_text(yaml.safe_dump(raw, sort_keys=False), encoding="utf-8")
    return path


@pytest.fixture
def write_data(countries, stats):
    def _write(root: Path) -> Path:
        data_dir = root / "data"
        data_dir.mkdir(parents=True, exist_ok=True)
        countries.to_file(data_dir / "countries.geojson", driver="GeoJSON")
        stats.to_csv(data_dir / "stats.csv", index=False)
        pd.DataFrame(
            {
                "city": ["Acity", "Bcity", "Nowhere"],
                "lon": [0.5, 1.5, 250.0],
                "lat": [0.5, 0.5, 10.0],
            }
        ).to_csv(data_dir / "cities.csv", index=False)
        return data_dir

    return _write


@pytest.fixture
def project(tmp_path, write_data):
    """A complete project directory: input files plus `config.yaml`."""
    write_data(tmp_path)
    return write_config(tmp_path, base_config())


@pytest.fixture
def config_raw():
    return base_config()


@pytest.fixture
def save_config():
    return write_config
