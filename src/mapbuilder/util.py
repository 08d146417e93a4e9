"""Logging setup, JSON artifacts, hashing and small formatting helpers."""

from __future__ import annotations

import hashlib
import json
import logging
import math
import subprocess
from pathlib import Path
from typing import Any, Iterable

import numpy as np

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Held at WARNING even with --verbose.
_NOISY_LOGGERS = ("matplotlib", "PIL", "urllib3", "fiona", "pyogrio", "rasterio")


def setup_logging(log_file: Path | None = None, verbose: bool = False) -> None:
    """Configure root logging to the console plus an optional UTF-8 build log."""
    level = logging.DEBUG if verbose else logging.INFO
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def ensure_directories(paths: Iterable[Path]) -> None:
    for path in paths:
        path.mkdir(parents=True, exist_ok=True)


def write_json(path: Path, payload: Any) -> None:
    """Write `payload` as stable, indented JSON; numpy scalars and NaN are normalised."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as fh:
        json.dump(
            _json_safe(payload),
            fh,
            indent=2,
            sort_keys=True,
            ensure_ascii=False,
            allow_nan=False,
        )
        fh.write("\n")


def _json_safe(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def detect_git_commit(cwd: Path) -> str | None:
    """Commit hash of the repo holding the config, if any."""
    try:
        proc = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            cwd=str(cwd),
            capture_output=True,
            text=True,
            check=True,
        )
    except (FileNotFoundError, subprocess.CalledProcessError):
        return None
    return proc.stdout.strip() or None


def format_code_list(values: list[str], limit: int = 12) -> str:
    """Join codes for a log line, truncating long lists."""
    if len(values) <= limit:
        return ", ".join(values)
    return f"{', '.join(values[:limit])}, ... (+{len(values) - limit} more)"
