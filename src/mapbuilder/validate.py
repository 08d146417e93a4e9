"""Validation layer for config and input datasets."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .config import AppConfig
from .datasets import DatasetRepository, key_coverage
from .models import StepReport
from .render import resolve_projection
from .util import format_code_list


@dataclass(slots=True)
class ValidationReport(StepReport):
    pass


class Validator:
    """Top-level input and schema validator."""

    def __init__(self, cfg: AppConfig) -> None:
        self.cfg = cfg
        self.repo = DatasetRepository(cfg.datasets)

    def run(self, *, strict_data_files: bool) -> ValidationReport:
        report = ValidationReport()
        strict = strict_data_files or self.cfg.build.strict
        if not self._validate_input_files(report, strict=strict):
            self._validate_maps(report, columns=None)
            return report

        primary = self._validate_primary(report)
        secondary_columns = self._validate_secondary(report, primary=primary, strict=strict)
        self._validate_points(report)

        if primary is None:
            self._validate_maps(report, columns=None)
            return report
        columns = {str(col) for col in primary.columns} | secondary_columns
        self._validate_derive(report, columns=columns)
        self._validate_maps(report, columns=columns)

        if self.cfg.classify.n > len(primary):
            report.add_warning(
                f"classify.n={self.cfg.classify.n} exceeds the number of primary records "
                f"({len(primary)}); some buckets will be empty"
            )
        return report

    def _validate_input_files(self, report: ValidationReport, *, strict: bool) -> bool:
        missing = [path for path in self.cfg.datasets.input_files if not path.exists()]
        if not missing:
            return True
        fetchable = {source.path for source in self.cfg.sources}
        for path in missing:
            hint = " (run `mapbuilder fetch-data`)" if path in fetchable else ""
            report.add_quality_issue(f"Missing dataset file: {path}{hint}", strict=strict)
        report.add_info("Skipping dataset schema checks because input files are missing.")
        return False

    def _validate_primary(self, report: ValidationReport) -> Any | None:
        spec = self.cfg.datasets.primary
        try:
            primary = self.repo.load_primary()
        except Exception as exc:
            report.add_error(f"Failed loading primary dataset '{spec.name}': {exc}")
            return None
        if primary.empty:
            report.add_error(f"Primary dataset '{spec.name}' has no records")
            return None
        report.add_info(
            f"Loaded {len(primary)} primary records from {spec.path} "
            f"(key={self.cfg.datasets.join_key})"
        )
        return primary

    def _validate_secondary(
        self,
        report: ValidationReport,
        *,
        primary: Any | None,
        strict: bool,
    ) -> set[str]:
        join_key = self.cfg.datasets.join_key
        columns: set[str] = set()
        for spec in self.cfg.datasets.secondary:
            try:
                frame = self.repo.load_secondary(spec)
            except Exception as exc:
                report.add_error(f"Failed loading secondary dataset '{spec.name}': {exc}")
                continue
            extra = {str(col) for col in frame.columns if col != join_key}
            clash = sorted(extra & columns)
            if primary is not None:
                clash = sorted(set(clash) | (extra & {str(col) for col in primary.columns}))
            if clash:
                report.add_error(
                    f"Secondary dataset '{spec.name}' repeats column(s): {', '.join(clash)}"
                )
            columns |= extra

            dup = frame[join_key][frame[join_key].notna() & frame[join_key].duplicated(keep=False)]
            if not dup.empty:
                report.add_error(
                    f"Secondary dataset '{spec.name}' has duplicate keys: "
                    + format_code_list(sorted({str(value) for value in dup.tolist()}))
                )
            if primary is None:
                continue
            coverage = key_coverage(primary, frame, join_key)
            report.add_info(
                f"Secondary dataset '{spec.name}': rows={coverage.secondary_rows}, "
                f"matched={coverage.matched}, "
                f"primary_without_match={coverage.primary_without_match}"
            )
            if coverage.matched == 0:
                report.add_quality_issue(
                    f"Secondary dataset '{spec.name}' matched no primary records on '{join_key}'",
                    strict=strict,
                )
            elif coverage.unmatched_keys:
                report.add_warning(
                    f"Secondary dataset '{spec.name}' keys without a primary record: "
                    + format_code_list(list(coverage.unmatched_keys))
                )
        return columns

    def _validate_points(self, report: ValidationReport) -> None:
        for spec in self.cfg.datasets.points:
            try:
                points = self.repo.load_points(spec)
            except Exception as exc:
                report.add_error(f"Failed loading point layer '{spec.name}': {exc}")
                continue
            report.add_info(f"Point layer '{spec.name}': {len(points)} usable rows")

    def _validate_derive(self, report: ValidationReport, *, columns: set[str]) -> None:
        derive = self.cfg.derive
        missing = [col for col in (derive.numerator, derive.denominator) if col not in columns]
        if missing:
            report.add_error(
                f"derive '{derive.name}' references unknown column(s): {', '.join(missing)}"
            )
        if derive.name in columns:
            report.add_error(f"derive.name '{derive.name}' collides with an input column")

    def _validate_maps(self, report: ValidationReport, *, columns: set[str] | None) -> None:
        if not self.cfg.maps:
            report.add_warning("No maps configured; render-maps will have nothing to do.")
        for spec in self.cfg.maps:
            if spec.kind == "points" and spec.layer is not None:
                if self.cfg.datasets.point_layer(spec.layer) is None:
                    report.add_error(
                        f"Map '{spec.name}' references unknown point layer '{spec.layer}'"
                    )
            if spec.filter is not None and columns is not None and spec.filter.column not in columns:
                report.add_error(
                    f"Map '{spec.name}' filters on unknown column '{spec.filter.column}'"
                )
            if spec.projection is not None:
                self._validate_projection(report, spec.name, spec.projection)

    @staticmethod
    def _validate_projection(report: ValidationReport, map_name: str, projection: str) -> None:
        try:
            from pyproj import CRS
        except ImportError:  # pragma: no cover
            report.add_warning("pyproj not installed; skipping projection checks")
            return
        try:
            CRS.from_user_input(resolve_projection(projection))
        except Exception as exc:
            report.add_error(f"Map '{map_name}' has an invalid projection '{projection}': {exc}")
