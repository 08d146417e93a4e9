"""Explicit record schemas validated when datasets are loaded and joined."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping

import pandas as pd

from .errors import SchemaError

FIELD_KINDS = ("numeric", "string", "categorical")

_PLACEHOLDER_KEYS = {"", "-99", "-099", "NAN", "NONE", "NULL"}


def _require_str(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Expected non-empty string for '{field_name}'")
    return value.strip()


@dataclass(frozen=True, slots=True)
class FieldSpec:
    """One named, typed attribute column."""

    name: str
    kind: str = "numeric"
    required: bool = True

    def __post_init__(self) -> None:
        if self.kind not in FIELD_KINDS:
            raise ValueError(
                f"Field '{self.name}' has unknown kind '{self.kind}'; "
                "expected one of: " + ", ".join(FIELD_KINDS)
            )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> FieldSpec:
        name = _require_str(data.get("name"), "fields[].name")
        kind = _require_str(data.get("kind", "numeric"), f"fields[{name}].kind").casefold()
        required_raw = data.get("required", True)
        if not isinstance(required_raw, bool):
            raise ValueError(f"Expected bool for 'fields[{name}].required'")
        return cls(name=name, kind=kind, required=required_raw)


@dataclass(frozen=True, slots=True)
class RecordSchema:
    """Key column plus the attribute fields a dataset must provide."""

    key: str
    fields: tuple[FieldSpec, ...] = ()

    @property
    def required_columns(self) -> tuple[str, ...]:
        return (self.key, *(spec.name for spec in self.fields if spec.required))

    def missing_columns(self, columns: Iterable[Any]) -> list[str]:
        present = {str(col) for col in columns}
        return [col for col in self.required_columns if col not in present]

    def validate(self, frame: pd.DataFrame, *, dataset: str) -> None:
        missing = self.missing_columns(frame.columns)
        if missing:
            available = ", ".join(str(col) for col in frame.columns)
            raise SchemaError(
                f"Dataset '{dataset}' is missing required column(s): {', '.join(missing)}. "
                f"Available columns: {available}"
            )

    def coerce(self, frame: pd.DataFrame) -> pd.DataFrame:
        """Return a copy with every declared field cast to its declared kind."""
        out = frame.copy()
        for spec in self.fields:
            if spec.name not in out.columns:
                continue
            if spec.kind == "numeric":
                out[spec.name] = pd.to_numeric(out[spec.name], errors="coerce")
            elif spec.kind == "categorical":
                out[spec.name] = out[spec.name].astype("category")
            else:
                out[spec.name] = out[spec.name].astype("string")
        return out


def normalize_keys(series: pd.Series) -> pd.Series:
    """Strip and upper-case join keys; placeholders become missing."""

    def _one(value: Any) -> Any:
        if value is None or value is pd.NA:
            return pd.NA
        if isinstance(value, float) and value != value:
            return pd.NA
        text = str(value).strip().upper()
        if text in _PLACEHOLDER_KEYS:
            return pd.NA
        return text

    return series.map(_one).astype("string")


def duplicate_keys(series: pd.Series) -> list[str]:
    dup = series[series.notna() & series.duplicated(keep=False)]
    return sorted({str(value) for value in dup.tolist()})
