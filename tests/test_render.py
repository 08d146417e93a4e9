import pandas as pd
import pytest

from mapbuilder.config import MapConfig, MapFilterConfig, load_config
from mapbuilder.errors import SchemaError
from mapbuilder.pipeline import run_classification
from mapbuilder.render import (
    PROJECTIONS,
    MapLayers,
    MapRenderer,
    bucket_palette,
    resolve_projection,
    run_render_maps,
    select_subset,
)

PNG_MAGIC = b"\x89PNG\r\n\x1a\n"


def test_resolve_projection():
    assert resolve_projection(None) is None
    assert resolve_projection("robinson") == PROJECTIONS["Robinson"]
    assert resolve_projection("EPSG:3035") == "EPSG:3035"


def test_bucket_palette():
    palette = bucket_palette("viridis", 4)
    assert len(palette) == 4
    assert len(set(palette)) == 4
    assert all(color.startswith("#") and len(color) == 7 for color in palette)


def test_select_subset_is_case_insensitive(countries):
    subset = select_subset(countries, MapFilterConfig(column="CONTINENT", values=("AFRICA",)))
    assert subset["ADM0_A3"].tolist() == ["AAA", "BBB"]


def test_select_subset_errors(countries):
    with pytest.raises(SchemaError):
        select_subset(countries, MapFilterConfig(column="REGION", values=("x",)))
    with pytest.raises(ValueError, match="matched no records"):
        select_subset(countries, MapFilterConfig(column="CONTINENT", values=("Oceania",)))


def test_render_every_map_kind(project):
    cfg = load_config(project)

    report = run_render_maps(cfg)

    assert report.ok, report.errors
    assert sorted(report.outputs) == ["africa", "cities", "gdp_pc", "world"]
    for name, path in report.outputs.items():
        assert path == cfg.paths.maps_dir / f"map_{name}.png"
        assert path.read_bytes()[:8] == PNG_MAGIC
    assert report.summary["maps_rendered"] == 4


def test_render_with_existing_result(project):
    cfg = load_config(project)
    classification = run_classification(cfg, write_tables=False)

    report = run_render_maps(cfg, result=classification.result, map_filter=["gdp_pc"])

    assert report.ok, report.errors
    assert list(report.outputs) == ["gdp_pc"]


def test_render_skips_existing(project):
    cfg = load_config(project)
    run_render_maps(cfg, map_filter=["world"])

    report = run_render_maps(cfg, map_filter=["world", "ghost"], skip_existing=True)

    assert report.ok
    assert report.summary["maps_skipped_existing"] == 1
    assert report.summary["maps_rendered"] == 0
    assert any("ghost" in msg for msg in report.warnings)


def test_render_reports_bad_filter(tmp_path, write_data, config_raw, save_config):
    write_data(tmp_path)
    config_raw["maps"] = [
        {"name": "oceania", "kind": "subset", "filter": {"column": "CONTINENT", "values": ["Oceania"]}}
    ]
    cfg = load_config(save_config(tmp_path, config_raw))

    report = run_render_maps(cfg)

    assert not report.ok
    assert report.summary["maps_failed"] == 1
    assert "oceania" in report.errors[0]


def test_render_without_selection(project):
    report = run_render_maps(load_config(project), map_filter=["ghost"])
    assert not report.ok


def test_undefined_records_have_no_bucket(project):
    cfg = load_config(project)
    result = run_classification(cfg, write_tables=False).result

    undefined = result.merged[result.bucket_column].isna()
    assert result.merged.loc[undefined.to_numpy(), "iso3"].tolist() == ["DDD", "EEE"]
    assert pd.api.types.is_integer_dtype(result.merged[result.bucket_column])


class StubContextily:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def add_basemap(self, ax, crs=None, source=None, **kwargs):
        self.calls.append((crs, source))
        if self.error is not None:
            raise self.error


@pytest.fixture
def tiles_project(tmp_path, write_data, config_raw, save_config):
    write_data(tmp_path)
    config_raw["render"]["background"] = {"mode": "tiles", "provider": "CartoDB.Positron"}
    return load_config(save_config(tmp_path, config_raw))


def test_tiles_basemap_on_every_map_kind(tiles_project, monkeypatch):
    stub = StubContextily()
    monkeypatch.setattr("mapbuilder.render._require_contextily", lambda: stub)
    monkeypatch.setattr("mapbuilder.render._resolve_basemap_source", lambda name: f"tiles:{name}")

    report = run_render_maps(tiles_project)

    assert report.ok, report.errors
    assert report.warnings == []
    assert len(stub.calls) == 4
    crs_used = [crs for crs, _ in stub.calls]
    assert crs_used.count(PROJECTIONS["WebMercator"]) == 3
    assert PROJECTIONS["Robinson"] in crs_used
    assert {source for _, source in stub.calls} == {"tiles:CartoDB.Positron"}


def test_tiles_failure_is_a_warning(tiles_project, monkeypatch):
    stub = StubContextily(error=ConnectionError("offline"))
    monkeypatch.setattr("mapbuilder.render._require_contextily", lambda: stub)
    monkeypatch.setattr("mapbuilder.render._resolve_basemap_source", lambda name: name)

    report = run_render_maps(tiles_project, map_filter=["world", "africa"])

    assert report.ok, report.errors
    assert report.summary["maps_rendered"] == 2
    assert len(report.warnings) == 1
    assert report.warnings[0].startswith("Basemap unavailable (CartoDB.Positron)")
    assert "offline" in report.warnings[0]


def test_white_background_skips_basemap(project, monkeypatch):
    stub = StubContextily()
    monkeypatch.setattr("mapbuilder.render._require_contextily", lambda: stub)

    assert run_render_maps(load_config(project), map_filter=["world"]).ok
    assert stub.calls == []


def test_interactive_maps(tmp_path, write_data, config_raw, save_config):
    write_data(tmp_path)
    for spec in config_raw["maps"]:
        spec["interactive"] = spec["name"] in ("world", "gdp_pc", "cities")
    cfg = load_config(save_config(tmp_path, config_raw))

    report = run_render_maps(cfg)

    assert report.ok, report.errors
    assert sorted(report.interactive_outputs) == ["cities", "gdp_pc", "world"]
    assert report.summary["maps_interactive"] == 3
    for name, path in report.interactive_outputs.items():
        assert path == cfg.paths.maps_dir / f"map_{name}.html"
        assert "leaflet" in path.read_text(encoding="utf-8").lower()
    choropleth = report.interactive_outputs["gdp_pc"].read_text(encoding="utf-8")
    assert "No data" in choropleth
    assert "AAA" in choropleth
    assert not (cfg.paths.maps_dir / "map_africa.html").exists()


def test_skip_existing_renders_missing_html(tmp_path, write_data, config_raw, save_config):
    write_data(tmp_path)
    config_raw["maps"] = [{"name": "world", "kind": "world", "interactive": True}]
    cfg = load_config(save_config(tmp_path, config_raw))
    cfg.paths.maps_dir.mkdir(parents=True)
    (cfg.paths.maps_dir / "map_world.png").write_bytes(b"old")

    report = run_render_maps(cfg, skip_existing=True)

    assert report.ok, report.errors
    assert report.summary["maps_rendered"] == 1
    assert (cfg.paths.maps_dir / "map_world.html").exists()


def test_renderer_rejects_incomplete_map(tmp_path, countries, project):
    renderer = MapRenderer(load_config(project).render)
    subset = MapConfig(name="bare", kind="subset", title=None, projection=None, filter=None, layer=None)
    points = MapConfig(name="dots", kind="points", title=None, projection=None, filter=None, layer=None)
    choropleth = MapConfig(name="shade", kind="choropleth", title=None, projection=None, filter=None, layer=None)
    layers = MapLayers(base=countries)

    with pytest.raises(ValueError, match="needs a filter"):
        renderer.render(subset, layers, tmp_path / "bare.png")
    with pytest.raises(ValueError, match="needs a point layer"):
        renderer.render(points, layers, tmp_path / "dots.png")
    with pytest.raises(ValueError, match="needs a classification result"):
        renderer.render_interactive(choropleth, layers, tmp_path / "shade.html")
    assert not (tmp_path / "bare.png").exists()
