"""Report and manifest models shared across pipeline steps."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Sequence


@dataclass(slots=True)
class StepReport:
    """Collected messages from one pipeline step."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    infos: list[str] = field(default_factory=list)
    summary: dict[str, int] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)

    def add_info(self, msg: str) -> None:
        self.infos.append(msg)

    def add_quality_issue(self, msg: str, *, strict: bool) -> None:
        if strict:
            self.add_error(msg)
        else:
            self.add_warning(msg)


def format_report_lines(report: StepReport, *, done_msg: str) -> Sequence[str]:
    lines: list[str] = []
    lines.extend(f"[INFO] {msg}" for msg in report.infos)
    lines.extend(f"[WARN] {msg}" for msg in report.warnings)
    lines.extend(f"[ERROR] {msg}" for msg in report.errors)
    if report.ok:
        lines.append(f"[OK] {done_msg}")
    return lines


@dataclass(frozen=True, slots=True)
class SourceRecord:
    """Provenance of one downloaded source file."""

    name: str
    url: str
    path: str
    sha256: str
    size_bytes: int
    retrieved_at_utc: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "url": self.url,
            "path": self.path,
            "sha256": self.sha256,
            "size_bytes": self.size_bytes,
            "retrieved_at_utc": self.retrieved_at_utc,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> SourceRecord | None:
        try:
            return cls(
                name=str(raw["name"]),
                url=str(raw["url"]),
                path=str(raw["path"]),
                sha256=str(raw["sha256"]),
                size_bytes=int(raw["size_bytes"]),
                retrieved_at_utc=str(raw["retrieved_at_utc"]),
            )
        except (KeyError, TypeError, ValueError):
            return None


@dataclass(frozen=True, slots=True)
class BuildManifest:
    """Build metadata used for deterministic audit trails."""

    generated_at_utc: str
    config_hash_sha256: str
    git_commit: str | None
    steps: Mapping[str, str]
    artifacts: Mapping[str, str]

    @classmethod
    def create(
        cls,
        *,
        config_hash_sha256: str,
        git_commit: str | None,
        steps: Mapping[str, str],
        artifacts: Mapping[str, str],
    ) -> BuildManifest:
        now = datetime.now(timezone.utc).isoformat()
        return cls(
            generated_at_utc=now,
            config_hash_sha256=config_hash_sha256,
            git_commit=git_commit,
            steps=steps,
            artifacts=artifacts,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "generated_at_utc": self.generated_at_utc,
            "config_hash_sha256": self.config_hash_sha256,
            "git_commit": self.git_commit,
            "steps": dict(self.steps),
            "artifacts": dict(self.artifacts),
        }


def map_output_path(maps_dir: Path, name: str, fmt: str = "png") -> Path:
    return maps_dir / f"map_{name}.{fmt.casefold()}"
