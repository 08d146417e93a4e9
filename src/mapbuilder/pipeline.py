"""Config-driven attribute pipeline run and table artifact writer."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pandas as pd

from .attributes import PipelineResult, run_attribute_pipeline
from .config import AppConfig
from .datasets import DatasetRepository
from .errors import EmptyInputError, SchemaError
from .models import StepReport
from .util import format_code_list, write_json

_LOGGER = logging.getLogger("mapbuilder.pipeline")


@dataclass(slots=True)
class ClassificationReport(StepReport):
    table_path: Path | None = None
    classification_path: Path | None = None
    result: PipelineResult | None = None


def run_classification(cfg: AppConfig, *, write_tables: bool = True) -> ClassificationReport:
    """Load every dataset, join, derive, classify and write the table artifacts."""
    report = ClassificationReport()
    repo = DatasetRepository(cfg.datasets)

    try:
        primary = repo.load_primary()
        secondary = repo.load_all_secondary()
    except (FileNotFoundError, SchemaError, ValueError) as exc:
        report.add_error(f"Failed loading datasets: {exc}")
        return report
    report.add_info(
        f"Loaded {len(primary)} primary records and {len(secondary)} secondary dataset(s)"
    )

    formula = cfg.derive.to_formula()
    try:
        result = run_attribute_pipeline(
            primary,
            secondary,
            cfg.datasets.join_key,
            formula,
            cfg.classify.to_settings(),
        )
    except SchemaError as exc:
        report.add_error(f"Schema error: {exc}")
        return report
    except EmptyInputError:
        report.add_error(
            f"No defined values for '{formula.name}'; nothing to classify. "
            "Check the secondary datasets and the derive inputs."
        )
        return report
    report.result = result

    if result.undefined_keys:
        report.add_warning(
            f"'{formula.name}' is undefined for {len(result.undefined_keys)} record(s): "
            + format_code_list(sorted(result.undefined_keys))
        )
    classification = result.classification
    report.summary = {
        "records_total": len(result.merged),
        "records_classified": len(result.merged) - len(result.undefined_keys),
        "records_undefined": len(result.undefined_keys),
        "buckets": classification.n,
        "buckets_empty": sum(1 for count in classification.counts if count == 0),
    }
    report.add_info(
        "Classification summary: "
        f"scheme={classification.scheme}, n={classification.n}, "
        f"counts={list(classification.counts)}"
    )
    if report.summary["buckets_empty"]:
        report.add_warning(
            f"{report.summary['buckets_empty']} of {classification.n} bucket(s) are empty "
            "because of tied or too few distinct values"
        )

    if write_tables:
        report.table_path = cfg.paths.tables_dir / "classified.csv"
        report.classification_path = cfg.paths.tables_dir / "classification.json"
        write_classified_table(result, report.table_path)
        write_json(report.classification_path, classification_payload(result))
        report.add_info(f"Classified records written to {report.table_path}")
        report.add_info(f"Bucket boundaries written to {report.classification_path}")
    _LOGGER.debug("Classification finished with %d error(s)", len(report.errors))
    return report


def classification_payload(result: PipelineResult) -> dict[str, Any]:
    payload = result.classification.to_dict()
    payload["field"] = result.field
    payload["bucket_column"] = result.bucket_column
    payload["undefined_keys"] = sorted(result.undefined_keys)
    return payload


def write_classified_table(result: PipelineResult, path: Path) -> Path:
    """Write the classified records without geometry."""
    frame = result.classified
    geometry = getattr(frame, "geometry", None)
    geometry_name = getattr(geometry, "name", None)
    if geometry_name is not None and geometry_name in frame.columns:
        frame = pd.DataFrame(frame.drop(columns=[geometry_name]))
    path.parent.mkdir(parents=True, exist_ok=True)
    frame.to_csv(path, index=False)
    return path
