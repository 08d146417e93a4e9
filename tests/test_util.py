import json
import logging

import numpy as np

from mapbuilder.models import StepReport, format_report_lines
from mapbuilder.util import format_code_list, setup_logging, sha256_file, write_json


def test_write_json_normalises_numpy_and_nan(tmp_path):
    path = tmp_path / "out" / "payload.json"
    write_json(path, {"n": np.int64(3), "bins": (np.float64(1.5), float("nan")), "path": tmp_path})

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload == {"n": 3, "bins": [1.5, None], "path": str(tmp_path)}


def test_sha256_file(tmp_path):
    path = tmp_path / "blob.bin"
    path.write_bytes(b"abc")
    assert sha256_file(path) == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


def test_format_code_list():
    assert format_code_list(["A", "B"]) == "A, B"
    assert format_code_list([str(i) for i in range(5)], limit=2) == "0, 1, ... (+3 more)"


def test_setup_logging_quiets_library_loggers(tmp_path):
    setup_logging(tmp_path / "logs" / "build.log", verbose=True)
    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("matplotlib").level == logging.WARNING
    assert (tmp_path / "logs" / "build.log").exists()


def test_format_report_lines():
    report = StepReport()
    report.add_info("loaded")
    report.add_quality_issue("thin coverage", strict=False)
    assert format_report_lines(report, done_msg="done") == [
        "[INFO] loaded",
        "[WARN] thin coverage",
        "[OK] done",
    ]
    report.add_quality_issue("no match", strict=True)
    assert format_report_lines(report, done_msg="done")[-1] == "[ERROR] no match"
