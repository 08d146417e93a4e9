import pytest

from mapbuilder.attributes import ClassifySettings
from mapbuilder.config import load_config


def test_load_config(tmp_path, config_raw, save_config):
    cfg = load_config(save_config(tmp_path, config_raw))

    assert cfg.source_path == (tmp_path / "config.yaml").resolve()
    assert cfg.project.title == "Test Maps"
    assert cfg.paths.maps_dir == tmp_path.resolve() / "build" / "maps"
    assert cfg.datasets.join_key == "iso3"
    assert cfg.datasets.primary.auto_key
    assert cfg.datasets.primary.path == tmp_path.resolve() / "data" / "countries.geojson"
    assert [spec.name for spec in cfg.datasets.secondary] == ["stats"]
    assert cfg.datasets.secondary[0].columns == ("gdp",)
    assert cfg.datasets.point_layer("cities").lon == "lon"
    assert cfg.datasets.point_layer("nope") is None
    assert cfg.classify.to_settings() == ClassifySettings(n=2, scheme="quantiles")
    assert cfg.render.style.highlight_color == "#dddddd"
    assert cfg.render.background.mode == "white"
    assert cfg.render.image.format == "png"
    assert [spec.kind for spec in cfg.maps] == ["world", "subset", "points", "choropleth"]
    assert cfg.maps[1].filter.values == ("africa",)
    assert not any(spec.interactive for spec in cfg.maps)
    assert cfg.build.strict is False
    assert cfg.fetch.max_retries == 2


def test_defaults_for_optional_sections(tmp_path, config_raw, save_config):
    for key in ("fetch", "sources", "classify"):
        config_raw.pop(key)
    config_raw["render"].pop("legend")
    cfg = load_config(save_config(tmp_path, config_raw))

    assert cfg.fetch.cache is True
    assert cfg.sources == ()
    assert cfg.classify.n == 5
    assert cfg.classify.drop_undefined is True
    assert cfg.render.legend.fmt == ".2f"


def test_derive_formula(tmp_path, config_raw, save_config):
    config_raw["derive"]["scale"] = 1000
    cfg = load_config(save_config(tmp_path, config_raw))
    formula = cfg.derive.to_formula()
    assert formula.name == "gdp_pc"
    assert formula.inputs == ("gdp", "POP_EST")
    assert cfg.derive.scale == 1000.0


def test_missing_config_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "absent.yaml")


def test_top_level_must_be_mapping(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError, match="mapping"):
        load_config(path)


@pytest.mark.parametrize(
    "mutate, field",
    [
        (lambda raw: raw["classify"].update(n=0), "classify.n"),
        (lambda raw: raw["classify"].update(n="five"), "classify.n"),
        (lambda raw: raw["classify"].update(scheme="random"), "classify.scheme"),
        (lambda raw: raw["derive"].pop("numerator"), "derive.numerator"),
        (lambda raw: raw["render"]["image"].update(dpi=0), "render.image.dpi"),
        (lambda raw: raw["render"].update(background={"mode": "satellite"}), "render.background.mode"),
        (lambda raw: raw["render"]["legend"].update(fmt="q"), "render.legend.fmt"),
        (lambda raw: raw["maps"][0].update(kind="globe"), "maps[0].kind"),
        (lambda raw: raw["maps"][0].update(name="bad name"), "maps[0].name"),
        (lambda raw: raw["maps"][1].pop("filter"), "maps[1]"),
        (lambda raw: raw["maps"][2].pop("layer"), "maps[2]"),
        (lambda raw: raw["maps"][3].update(interactive="yes"), "maps[3].interactive"),
        (lambda raw: raw["maps"].append(dict(raw["maps"][0])), "maps"),
        (lambda raw: raw.update(sources=[{"name": "x", "url": "ftp://x", "path": "x"}]), "sources[0].url"),
        (lambda raw: raw["datasets"]["secondary"][0].pop("key"), "datasets.secondary[0].key"),
        (lambda raw: raw["datasets"]["primary"].update(fields=[{"name": "x", "kind": "blob"}]), "datasets.primary.fields[0]"),
        (lambda raw: raw["fetch"].update(max_retries=-1), "fetch.max_retries"),
        (lambda raw: raw["build"].update(strict="yes"), "build.strict"),
    ],
)
def test_invalid_values_name_the_field(tmp_path, config_raw, save_config, mutate, field):
    mutate(config_raw)
    with pytest.raises(ValueError) as excinfo:
        load_config(save_config(tmp_path, config_raw))
    assert field in str(excinfo.value)
