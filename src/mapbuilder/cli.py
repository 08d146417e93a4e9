"""CLI entrypoint for the mapbuilder pipeline."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Sequence

from .config import AppConfig, load_config
from .fetch import run_fetch_sources
from .models import BuildManifest, format_report_lines
from .pipeline import run_classification
from .qa import write_qa_index
from .render import run_render_maps
from .util import detect_git_commit, ensure_directories, setup_logging, sha256_file, write_json
from .validate import Validator

LOGGER = logging.getLogger("mapbuilder.cli")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mapbuilder",
        description="Country attribute joins, quantile classification and map rendering.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", default="config.yaml", help="Path to YAML config.")
        p.add_argument("--verbose", action="store_true", help="Enable debug logs.")

    def add_strict(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "--strict-data-files",
            action="store_true",
            help="Treat missing or unmatched dataset files as hard errors.",
        )

    build_p = subparsers.add_parser("build", help="Run the full pipeline.")
    add_common(build_p)
    add_strict(build_p)

    validate_p = subparsers.add_parser("validate", help="Validate config and input files.")
    add_common(validate_p)
    add_strict(validate_p)

    fetch_p = subparsers.add_parser("fetch-data", help="Download configured source files.")
    add_common(fetch_p)
    fetch_p.add_argument(
        "--source",
        action="append",
        default=[],
        help="Source name to fetch. Can be repeated.",
    )
    fetch_p.add_argument(
        "--force",
        action="store_true",
        help="Download even when the file already exists.",
    )

    classify_p = subparsers.add_parser(
        "classify",
        help="Join, derive and classify; write the table artifacts.",
    )
    add_common(classify_p)

    render_p = subparsers.add_parser("render-maps", help="Render maps only.")
    add_common(render_p)
    render_p.add_argument(
        "--map",
        action="append",
        default=[],
        help="Map name to render. Can be repeated.",
    )
    render_p.add_argument(
        "--clean-maps",
        action="store_true",
        help="Delete existing map_* files before rendering.",
    )
    render_p.add_argument(
        "--force-render",
        action="store_true",
        help="Re-render maps even when the output file already exists.",
    )

    return parser


def _load_and_setup(args: argparse.Namespace) -> AppConfig:
    cfg = load_config(args.config)
    log_path = cfg.paths.logs_dir / "build.log"
    setup_logging(log_path, verbose=args.verbose)
    ensure_directories(cfg.paths.build_directories)
    return cfg


def _run_validate(cfg: AppConfig, *, strict_data_files: bool) -> int:
    report = Validator(cfg).run(strict_data_files=strict_data_files)
    for line in format_report_lines(report, done_msg="Validation completed with no errors."):
        LOGGER.info(line)
    return 0 if report.ok else 1


def _run_fetch(cfg: AppConfig, *, sources: Sequence[str], force: bool) -> int:
    report = run_fetch_sources(cfg, names=sources, force=force)
    for line in format_report_lines(report, done_msg="Fetching completed with no errors."):
        LOGGER.info(line)
    return 0 if report.ok else 1


def _run_classify(cfg: AppConfig) -> int:
    report = run_classification(cfg)
    for line in format_report_lines(report, done_msg="Classification completed with no errors."):
        LOGGER.info(line)
    return 0 if report.ok else 1


def _run_render_maps(
    cfg: AppConfig,
    *,
    maps: Sequence[str],
    clean_maps: bool,
    force_render: bool,
) -> int:
    if clean_maps:
        removed = 0
        for path in cfg.paths.maps_dir.glob("map_*"):
            try:
                path.unlink()
                removed += 1
            except OSError as exc:
                LOGGER.warning("Failed removing old map file %s: %s", path, exc)
        LOGGER.info("Cleaned %d existing map files from %s", removed, cfg.paths.maps_dir)

    report = run_render_maps(cfg, map_filter=maps, skip_existing=not force_render)
    for line in format_report_lines(report, done_msg="Map rendering completed with no errors."):
        LOGGER.info(line)
    if not report.ok:
        return 1
    _write_qa_index(cfg)
    return 0


def _write_qa_index(cfg: AppConfig) -> Path | None:
    if not cfg.qa.generate_index:
        return None
    classification_path = cfg.paths.tables_dir / "classification.json"
    classification = (
        json.loads(classification_path.read_text(encoding="utf-8"))
        if classification_path.exists()
        else None
    )
    qa_index_path = write_qa_index(
        maps=cfg.maps,
        maps_dir=cfg.paths.maps_dir,
        output_html=cfg.paths.qa_dir / "index.html",
        thumbnail_width_px=cfg.qa.thumbnail_width_px,
        max_columns=cfg.qa.max_columns,
        image_format=cfg.render.image.format,
        title=f"{cfg.project.title} QA",
        classification=classification,
    )
    LOGGER.info("QA index generated at %s", qa_index_path)
    return qa_index_path


def _run_build(cfg: AppConfig, *, strict_data_files: bool) -> int:
    LOGGER.info("Starting build pipeline.")

    report = Validator(cfg).run(strict_data_files=strict_data_files)
    for line in format_report_lines(report, done_msg="Validation completed with no errors."):
        LOGGER.info(line)
    if not report.ok:
        LOGGER.error("Build aborted due to validation errors.")
        return 1

    classification_report = run_classification(cfg)
    for line in format_report_lines(
        classification_report, done_msg="Classification completed with no errors."
    ):
        LOGGER.info(line)
    if not classification_report.ok:
        LOGGER.error("Build aborted due to classification errors.")
        return 1

    render_report = run_render_maps(cfg, result=classification_report.result)
    for line in format_report_lines(render_report, done_msg="Map rendering completed with no errors."):
        LOGGER.info(line)
    if not render_report.ok:
        LOGGER.error("Build aborted due to map rendering errors.")
        return 1

    qa_index_path = _write_qa_index(cfg)

    if cfg.build.write_manifest:
        artifacts = {
            "classified_table": str(classification_report.table_path or ""),
            "classification": str(classification_report.classification_path or ""),
            "maps_dir": str(cfg.paths.maps_dir),
            "qa_index": str(qa_index_path) if qa_index_path else "",
        }
        for name, path in sorted(render_report.outputs.items()):
            artifacts[f"map:{name}"] = str(path)
        for name, path in sorted(render_report.interactive_outputs.items()):
            artifacts[f"map_html:{name}"] = str(path)
        manifest = BuildManifest.create(
            config_hash_sha256=sha256_file(cfg.source_path),
            git_commit=detect_git_commit(cfg.source_path.parent),
            steps={
                "validate": "ok",
                "classify": "ok",
                "render_maps": "ok",
                "qa_index": "ok" if qa_index_path else "skipped",
            },
            artifacts=artifacts,
        )
        manifest_path = cfg.paths.manifests_dir / "build_manifest.json"
        write_json(manifest_path, manifest.to_dict())
        LOGGER.info("Build manifest written to %s", manifest_path)

    LOGGER.info("Build finished.")
    return 0


def _dispatch(args: argparse.Namespace) -> int:
    cfg = _load_and_setup(args)
    command = str(args.command)
    if command == "build":
        strict = bool(args.strict_data_files) or cfg.build.strict
        return _run_build(cfg, strict_data_files=strict)
    if command == "validate":
        strict = bool(args.strict_data_files) or cfg.build.strict
        return _run_validate(cfg, strict_data_files=strict)
    if command == "fetch-data":
        return _run_fetch(cfg, sources=[str(item) for item in args.source], force=bool(args.force))
    if command == "classify":
        return _run_classify(cfg)
    if command == "render-maps":
        return _run_render_maps(
            cfg,
            maps=[str(item) for item in args.map],
            clean_maps=bool(args.clean_maps),
            force_render=bool(args.force_render),
        )
    raise ValueError(f"Unknown command: {command}")


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    return _dispatch(args)


if __name__ == "__main__":
    raise SystemExit(main())
