"""Download of the static input files listed under `sources:`."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping, Sequence

import requests

from .config import AppConfig, FetchConfig, SourceConfig
from .models import SourceRecord, StepReport
from .util import format_code_list, sha256_file, write_json


_RETRYABLE_HTTP_STATUS = {429, 500, 502, 503, 504}

_LOGGER = logging.getLogger("mapbuilder.fetch")


@dataclass(slots=True)
class FetchReport(StepReport):
    records_path: Path | None = None


def run_fetch_sources(
    cfg: AppConfig,
    *,
    names: Sequence[str] | None = None,
    force: bool = False,
    session: requests.Session | None = None,
) -> FetchReport:
    report = FetchReport(records_path=cfg.paths.manifests_dir / "sources.json")
    sources = list(cfg.sources)
    if not sources:
        report.add_info("No sources configured; nothing to fetch.")
        return report

    if names:
        requested = {item.strip() for item in names if item and item.strip()}
        sources = [source for source in sources if source.name in requested]
        missing_requested = sorted(requested - {source.name for source in sources})
        if missing_requested:
            report.add_warning(
                "Requested sources not present in config: " + format_code_list(missing_requested)
            )
        if not sources:
            report.add_error("No sources selected for fetching after filters.")
            return report

    existing = _load_existing_records(report.records_path)
    fetcher = SourceFetcher(cfg.fetch, session=session)

    results: dict[str, SourceRecord] = dict(existing)
    fetched = 0
    reused = 0
    failed: list[str] = []

    try:
        for idx, source in enumerate(sources, start=1):
            if cfg.fetch.cache and not force and source.path.exists():
                results[source.name] = existing.get(source.name) or _describe(source)
                reused += 1
                _LOGGER.info("[fetch] (%d/%d) reused %s", idx, len(sources), source.name)
                continue

            try:
                results[source.name] = fetcher.download(source)
            except Exception as exc:
                failed.append(f"{source.name}({exc})")
                _LOGGER.error("[fetch] (%d/%d) failed %s: %s", idx, len(sources), source.name, exc)
                continue
            fetched += 1
            _LOGGER.info("[fetch] (%d/%d) fetched %s", idx, len(sources), source.name)
    finally:
        fetcher.close()

    if report.records_path is not None:
        payload = [results[name].to_dict() for name in sorted(results)]
        write_json(report.records_path, payload)
        report.add_info(f"Source records written to {report.records_path}")

    report.summary = {
        "sources_total": len(sources),
        "sources_fetched": fetched,
        "sources_reused": reused,
        "sources_failed": len(failed),
    }
    report.add_info(
        "Fetch summary: "
        f"sources_total={len(sources)}, "
        f"sources_fetched={fetched}, "
        f"sources_reused={reused}, "
        f"sources_failed={len(failed)}"
    )
    if failed:
        report.add_error("Source fetch failures: " + format_code_list(sorted(failed)))
    return report


class SourceFetcher:
    """Rate-limited HTTP downloader with bounded retries."""

    def __init__(self, cfg: FetchConfig, *, session: requests.Session | None = None) -> None:
        self.cfg = cfg
        self._owns_session = session is None
        self._session = session if session is not None else requests.Session()
        self._session.headers.update({"User-Agent": cfg.user_agent})
        self._min_request_interval_s = max(float(cfg.min_request_interval_s), 0.0)
        self._max_retries = max(int(cfg.max_retries), 0)
        self._retry_backoff_s = max(float(cfg.retry_backoff_s), 0.01)
        self._last_request_started_at: float | None = None

    def close(self) -> None:
        """Close the HTTP session if this fetcher created it."""
        if self._owns_session:
            self._session.close()

    def download(self, source: SourceConfig) -> SourceRecord:
        response = self._request_get(source.url)
        source.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = source.path.with_name(source.path.name + ".part")
        try:
            tmp_path.write_bytes(response.content)
            tmp_path.replace(source.path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
        return _describe(source)

    def _request_get(self, url: str) -> requests.Response:
        attempts = self._max_retries + 1
        for attempt in range(attempts):
            self._wait_for_request_slot()
            response = self._session.get(url, timeout=self.cfg.request_timeout_s)
            if response.status_code not in _RETRYABLE_HTTP_STATUS:
                response.raise_for_status()
                return response
            if attempt >= self._max_retries:
                response.raise_for_status()
            delay_s = self._compute_retry_delay_s(response=response, attempt=attempt)
            _LOGGER.warning(
                "Retryable response %s for %s; retrying in %.1fs (%d/%d)",
                response.status_code,
                url,
                delay_s,
                attempt + 1,
                self._max_retries,
            )
            response.close()
            time.sleep(delay_s)
        raise RuntimeError("Unreachable retry loop in source fetcher")

    def _wait_for_request_slot(self) -> None:
        if self._min_request_interval_s <= 0:
            self._last_request_started_at = time.monotonic()
            return
        now = time.monotonic()
        if self._last_request_started_at is not None:
            elapsed = now - self._last_request_started_at
            if elapsed < self._min_request_interval_s:
                time.sleep(self._min_request_interval_s - elapsed)
        self._last_request_started_at = time.monotonic()

    def _compute_retry_delay_s(self, *, response: requests.Response, attempt: int) -> float:
        retry_after_s = _parse_retry_after_seconds(response.headers.get("Retry-After"))
        exponential_s = self._retry_backoff_s * (2**attempt)
        chosen = max(exponential_s, retry_after_s)
        return min(chosen, 300.0)


def _describe(source: SourceConfig) -> SourceRecord:
    return SourceRecord(
        name=source.name,
        url=source.url,
        path=str(source.path),
        sha256=sha256_file(source.path),
        size_bytes=source.path.stat().st_size,
        retrieved_at_utc=datetime.now(timezone.utc).isoformat(),
    )


def _load_existing_records(path: Path | None) -> dict[str, SourceRecord]:
    if path is None or not path.exists():
        return {}
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Ignoring unreadable source records %s: %s", path, exc)
        return {}
    if not isinstance(raw, list):
        return {}
    out: dict[str, SourceRecord] = {}
    for item in raw:
        if not isinstance(item, Mapping):
            continue
        parsed = SourceRecord.from_dict(item)
        if parsed is None:
            continue
        out[parsed.name] = parsed
    return out


def _parse_retry_after_seconds(raw: str | None) -> float:
    if raw is None:
        return 0.0
    value = raw.strip()
    if not value:
        return 0.0
    try:
        parsed = float(value)
    except ValueError:
        return 0.0
    return max(parsed, 0.0)
