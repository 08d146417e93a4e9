import json

import pandas as pd

from mapbuilder.config import load_config
from mapbuilder.pipeline import run_classification


def test_run_classification_writes_tables(project):
    cfg = load_config(project)

    report = run_classification(cfg)

    assert report.ok, report.errors
    assert report.summary == {
        "records_total": 5,
        "records_classified": 3,
        "records_undefined": 2,
        "buckets": 2,
        "buckets_empty": 0,
    }
    assert any("DDD, EEE" in msg for msg in report.warnings)

    table = pd.read_csv(report.table_path)
    assert "geometry" not in table.columns
    assert table["iso3"].tolist() == ["AAA", "BBB", "CCC"]
    assert table["gdp_pc"].tolist() == [10.0, 20.0, 30.0]
    assert table["gdp_pc_class"].tolist() == [0, 0, 1]

    payload = json.loads(report.classification_path.read_text(encoding="utf-8"))
    assert payload["field"] == "gdp_pc"
    assert payload["bins"] == [20.0, 30.0]
    assert payload["counts"] == [2, 1]
    assert payload["undefined_keys"] == ["DDD", "EEE"]


def test_keep_undefined_rows_in_table(tmp_path, write_data, config_raw, save_config):
    write_data(tmp_path)
    config_raw["classify"].update(drop_undefined=False, bucket_column="bucket")
    cfg = load_config(save_config(tmp_path, config_raw))

    report = run_classification(cfg)

    table = pd.read_csv(report.table_path)
    assert len(table) == 5
    assert table["bucket"].isna().tolist() == [False, False, False, True, True]


def test_missing_derive_input(tmp_path, write_data, config_raw, save_config):
    write_data(tmp_path)
    config_raw["derive"]["denominator"] = "area_km2"
    config_raw["datasets"]["primary"].pop("area_column")
    cfg = load_config(save_config(tmp_path, config_raw))

    report = run_classification(cfg)

    assert not report.ok
    assert report.result is None
    assert "area_km2" in report.errors[0]


def test_empty_input_is_reported(tmp_path, write_data, stats, config_raw, save_config):
    data_dir = write_data(tmp_path)
    stats.assign(code=["XXA", "XXB", "XXC", "XXD", "XXE"]).to_csv(data_dir / "stats.csv", index=False)
    cfg = load_config(save_config(tmp_path, config_raw))

    report = run_classification(cfg)

    assert not report.ok
    assert "No defined values" in report.errors[0]
    assert report.table_path is None
