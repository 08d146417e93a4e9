"""Attribute join, derived metrics and bucket classification.

The pipeline is one stateless pass over in-memory frames::

    join -> derive -> filter_defined -> classify

Derived values that cannot be computed (absent input, zero denominator,
indeterminate form) are stored as ``pandas.NA`` in a nullable ``Float64``
column. That marker is the only notion of "undefined" used here: ``derive``
writes it, ``filter_defined`` and ``classify_records`` skip it, and
``classify`` refuses it.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Iterable, Mapping, Sequence

import numpy as np
import pandas as pd

from .errors import EmptyInputError, SchemaError
from .schema import duplicate_keys
from .util import format_code_list

UNDEFINED = pd.NA

SCHEME_QUANTILES = "quantiles"
SCHEME_EQUAL_INTERVAL = "equal_interval"
SCHEME_FISHER_JENKS = "fisher_jenks"
SCHEMES = (SCHEME_QUANTILES, SCHEME_EQUAL_INTERVAL, SCHEME_FISHER_JENKS)

_SCHEME_ALIASES = {
    "quantiles": SCHEME_QUANTILES,
    "quantile": SCHEME_QUANTILES,
    "q": SCHEME_QUANTILES,
    "equal_interval": SCHEME_EQUAL_INTERVAL,
    "equalinterval": SCHEME_EQUAL_INTERVAL,
    "equal": SCHEME_EQUAL_INTERVAL,
    "ei": SCHEME_EQUAL_INTERVAL,
    "fisher_jenks": SCHEME_FISHER_JENKS,
    "fisherjenks": SCHEME_FISHER_JENKS,
    "natural_breaks": SCHEME_FISHER_JENKS,
    "jenks": SCHEME_FISHER_JENKS,
    "fj": SCHEME_FISHER_JENKS,
}


def resolve_scheme(name: str) -> str:
    key = name.strip().casefold().replace("-", "_")
    scheme = _SCHEME_ALIASES.get(key)
    if scheme is None:
        raise ValueError(
            f"Unknown classification scheme '{name}'; expected one of: " + ", ".join(SCHEMES)
        )
    return scheme


@dataclass(frozen=True, slots=True)
class Formula:
    """Pure vectorised numeric function over named input columns.

    ``func`` receives one float64 array per input (missing values as NaN) and
    returns an array or scalar broadcastable to the frame length.
    """

    name: str
    inputs: tuple[str, ...]
    func: Callable[..., Any]

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise ValueError("Formula name must be a non-empty string")
        if not self.inputs:
            raise ValueError(f"Formula '{self.name}' needs at least one input column")

    @classmethod
    def ratio(
        cls,
        name: str,
        numerator: str,
        denominator: str,
        *,
        scale: float = 1.0,
    ) -> Formula:
        factor = float(scale)

        def _ratio(num: np.ndarray, den: np.ndarray) -> np.ndarray:
            return (num / den) * factor

        return cls(name=name, inputs=(numerator, denominator), func=_ratio)

    def evaluate(self, frame: pd.DataFrame) -> pd.Series:
        missing = [col for col in self.inputs if col not in frame.columns]
        if missing:
            raise SchemaError(
                f"Cannot derive '{self.name}': missing input column(s) {', '.join(missing)}"
            )
        arrays = [_as_float_array(frame[col]) for col in self.inputs]
        with np.errstate(all="ignore"):
            raw = self.func(*arrays)
            result = np.broadcast_to(np.asarray(raw, dtype="float64"), (len(frame),)).copy()

        mask = ~np.isfinite(result)
        for arr in arrays:
            mask |= np.isnan(arr)
        values = np.where(mask, 0.0, result)
        return pd.Series(
            pd.arrays.FloatingArray(values, mask),
            index=frame.index,
            name=self.name,
        )


@dataclass(frozen=True, slots=True)
class Classification:
    """Bucket boundaries plus the bucket index of every classified value.

    Boundaries are upper-inclusive: bucket 0 spans ``[minimum, bins[0]]`` and
    bucket ``i`` spans ``(bins[i - 1], bins[i]]``.
    """

    scheme: str
    n: int
    minimum: float
    bins: tuple[float, ...]
    buckets: tuple[int, ...]

    @property
    def maximum(self) -> float:
        return self.bins[-1]

    @property
    def counts(self) -> tuple[int, ...]:
        if not self.buckets:
            return (0,) * self.n
        return tuple(int(c) for c in np.bincount(np.asarray(self.buckets), minlength=self.n))

    def bucket_ranges(self) -> tuple[tuple[float, float], ...]:
        lowers = (self.minimum, *self.bins[:-1])
        return tuple((float(lo), float(hi)) for lo, hi in zip(lowers, self.bins))

    def legend_labels(self, fmt: str = ".2f") -> tuple[str, ...]:
        return tuple(f"{lo:{fmt}} - {hi:{fmt}}" for lo, hi in self.bucket_ranges())

    def to_dict(self) -> dict[str, Any]:
        return {
            "scheme": self.scheme,
            "n": self.n,
            "minimum": self.minimum,
            "maximum": self.maximum,
            "bins": list(self.bins),
            "bucket_ranges": [list(item) for item in self.bucket_ranges()],
            "counts": list(self.counts),
        }


@dataclass(frozen=True, slots=True)
class ClassifySettings:
    n: int = 5
    scheme: str = SCHEME_QUANTILES
    drop_undefined: bool = True
    bucket_column: str | None = None


@dataclass(frozen=True, slots=True)
class PipelineResult:
    """Output handed to renderers and table writers."""

    merged: pd.DataFrame
    classified: pd.DataFrame
    classification: Classification
    field: str
    bucket_column: str
    undefined_keys: tuple[str, ...]


SecondarySets = Sequence[pd.DataFrame] | Mapping[str, pd.DataFrame] | pd.DataFrame


def join(primary: pd.DataFrame, secondary_sets: SecondarySets, key: str) -> pd.DataFrame:
    """Left-join every secondary set onto ``primary`` by ``key``.

    The result keeps the primary's rows, order and index. Secondary columns of
    unmatched records are missing values.
    """
    if key not in primary.columns:
        raise SchemaError(f"Join key '{key}' not found in primary record set")
    dup = duplicate_keys(primary[key])
    if dup:
        raise SchemaError(f"Primary record set has duplicate keys: {format_code_list(dup)}")

    seen = {str(col) for col in primary.columns}
    merged = primary
    for label, secondary in _labelled(secondary_sets):
        if key not in secondary.columns:
            raise SchemaError(f"Join key '{key}' not found in secondary record set '{label}'")
        extra = [col for col in secondary.columns if col != key]
        clash = [str(col) for col in extra if str(col) in seen]
        if clash:
            raise SchemaError(
                f"Secondary record set '{label}' repeats column(s) already present: "
                + ", ".join(clash)
            )
        right = secondary.loc[secondary[key].notna(), [key, *extra]]
        dup = duplicate_keys(right[key])
        if dup:
            raise SchemaError(
                f"Secondary record set '{label}' has duplicate keys: {format_code_list(dup)}"
            )
        try:
            merged = merged.merge(right, on=key, how="left", sort=False)
        except ValueError as exc:
            raise SchemaError(f"Cannot join secondary record set '{label}' on '{key}': {exc}") from exc
        seen.update(str(col) for col in extra)

    if merged is primary:
        return primary.copy()
    merged.index = primary.index
    return merged


def derive(merged: pd.DataFrame, formula: Formula) -> pd.DataFrame:
    """Return a copy of ``merged`` with the derived column added."""
    if formula.name in merged.columns:
        raise SchemaError(f"Derived column '{formula.name}' already exists")
    values = formula.evaluate(merged)
    out = merged.copy()
    out[formula.name] = values
    return out


def defined_mask(series: pd.Series) -> pd.Series:
    """Boolean mask of values that are present, numeric and finite."""
    return pd.Series(np.isfinite(_as_float_array(series)), index=series.index)


def filter_defined(merged: pd.DataFrame, field: str) -> pd.DataFrame:
    if field not in merged.columns:
        raise SchemaError(f"Column '{field}' not found")
    mask = defined_mask(merged[field])
    return merged.loc[mask.to_numpy()]


def classify(values: Iterable[Any], n: int, scheme: str = SCHEME_QUANTILES) -> Classification:
    """Assign each value to one of ``n`` ordered buckets.

    Bucket membership depends only on the value, so identical values always
    share a bucket. A quantile bucket is left empty only when there are
    fewer distinct values than buckets.
    """
    if isinstance(n, bool) or not isinstance(n, (int, np.integer)) or n < 1:
        raise ValueError(f"Bucket count must be an integer >= 1, got {n!r}")
    n = int(n)
    resolved = resolve_scheme(scheme)
    arr = _values_array(values)
    if arr.size == 0:
        raise EmptyInputError("Cannot classify an empty sequence of values")
    if not np.isfinite(arr).all():
        raise ValueError("classify expects only defined numeric values; filter undefined values first")

    if resolved == SCHEME_QUANTILES:
        bins = _quantile_bins(arr, n)
    else:
        bins = _mapclassify_bins(arr, n, resolved)

    buckets = np.clip(np.searchsorted(bins, arr, side="left"), 0, n - 1)
    return Classification(
        scheme=resolved,
        n=n,
        minimum=float(arr.min()),
        bins=tuple(float(b) for b in bins),
        buckets=tuple(int(b) for b in buckets),
    )


def classify_records(
    frame: pd.DataFrame,
    field: str,
    n: int,
    *,
    scheme: str = SCHEME_QUANTILES,
    bucket_column: str | None = None,
) -> tuple[pd.DataFrame, Classification]:
    """Classify the defined values of ``field`` and add an ``Int64`` bucket column."""
    if field not in frame.columns:
        raise SchemaError(f"Column '{field}' not found")
    mask = defined_mask(frame[field]).to_numpy()
    classification = classify(frame.loc[mask, field], n, scheme)

    column = bucket_column or f"{field}_class"
    values = np.zeros(len(frame), dtype="int64")
    values[mask] = np.asarray(classification.buckets, dtype="int64")
    out = frame.copy()
    out[column] = pd.Series(pd.arrays.IntegerArray(values, ~mask), index=frame.index)
    return out, classification


def run_attribute_pipeline(
    primary: pd.DataFrame,
    secondary_sets: SecondarySets,
    key: str,
    formula: Formula,
    settings: ClassifySettings,
) -> PipelineResult:
    merged = join(primary, secondary_sets, key)
    derived = derive(merged, formula)
    bucketed, classification = classify_records(
        derived,
        formula.name,
        settings.n,
        scheme=settings.scheme,
        bucket_column=settings.bucket_column,
    )
    column = settings.bucket_column or f"{formula.name}_class"
    mask = defined_mask(bucketed[formula.name]).to_numpy()
    undefined_keys = tuple(str(value) for value in bucketed.loc[~mask, key].tolist())
    classified = bucketed.loc[mask] if settings.drop_undefined else bucketed
    return PipelineResult(
        merged=bucketed,
        classified=classified,
        classification=classification,
        field=formula.name,
        bucket_column=column,
        undefined_keys=undefined_keys,
    )


def _quantile_bins(arr: np.ndarray, n: int) -> np.ndarray:
    """Upper boundaries near the ``i/n`` quantiles that never cut through tied values.

    Each split sits in a gap between two distinct values: the gap whose
    cumulative count is closest to ``i/n`` of the total, keeping at least one
    distinct value for every later bucket while enough remain. The linear
    quantile itself is the boundary whenever it falls inside the chosen gap.
    """
    distinct, counts = np.unique(arr, return_counts=True)
    cumulative = np.cumsum(counts)
    last = distinct.size - 1
    quantiles = np.quantile(arr, np.arange(1, n + 1) / n)

    bins = np.full(n, distinct[-1], dtype="float64")
    prev = -1
    for i in range(1, n):
        target = arr.size * i / n
        lo, hi = prev + 1, last - (n - i)
        if lo > hi:
            # Fewer distinct values than buckets; later buckets may stay empty.
            lo, hi = max(prev, 0), last
        candidates = np.arange(lo, hi + 1)
        distance = np.abs(cumulative[candidates] - target)
        split = int(candidates[np.argmin(distance)])

        q = float(quantiles[i - 1])
        own = int(np.searchsorted(distinct, q, side="right")) - 1
        if lo <= own <= hi and abs(cumulative[own] - target) <= distance.min():
            split = own
        upper = distinct[split + 1] if split < last else np.inf
        bins[i - 1] = q if distinct[split] <= q < upper else distinct[split]
        prev = split
    return np.maximum.accumulate(bins)


def _mapclassify_bins(arr: np.ndarray, n: int, scheme: str) -> np.ndarray:
    maximum = float(arr.max())
    k = min(n, int(np.unique(arr).size))
    if k < 2:
        return np.full(n, maximum)
    mc = _require_mapclassify()
    if scheme == SCHEME_EQUAL_INTERVAL:
        classifier = mc.EqualInterval(arr, k=k)
    else:
        classifier = mc.FisherJenks(arr, k=k)
    raw = np.asarray(classifier.bins, dtype="float64")[:n]
    bins = np.full(n, maximum)
    bins[: raw.size] = np.minimum(raw, maximum)
    bins[-1] = maximum
    return np.maximum.accumulate(bins)


def _as_float_array(series: pd.Series) -> np.ndarray:
    if isinstance(series.dtype, pd.CategoricalDtype):
        series = series.astype(object)
    numeric = pd.to_numeric(series, errors="coerce")
    return np.asarray(numeric.to_numpy(dtype="float64", na_value=np.nan), dtype="float64")


def _values_array(values: Iterable[Any]) -> np.ndarray:
    if isinstance(values, pd.Series):
        series = values
    elif isinstance(values, np.ndarray):
        series = pd.Series(values)
    else:
        series = pd.Series(list(values), dtype="object")
    return _as_float_array(series)


def _labelled(secondary_sets: SecondarySets) -> list[tuple[str, pd.DataFrame]]:
    if isinstance(secondary_sets, pd.DataFrame):
        return [("secondary[0]", secondary_sets)]
    if isinstance(secondary_sets, Mapping):
        return [(str(name), frame) for name, frame in secondary_sets.items()]
    return [(f"secondary[{idx}]", frame) for idx, frame in enumerate(secondary_sets)]


@lru_cache(maxsize=1)
def _require_mapclassify() -> Any:
    try:
        import mapclassify
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("mapclassify is required for equal_interval/fisher_jenks schemes") from exc
    return mapclassify
