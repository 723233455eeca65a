"""Grouped mean / standard-error summaries of trial-level data.

The summaries feed the descriptive plots and the sanity checks that accompany every
fitted model. Two entry points share one contract:

- ``aggregate`` turns rows into one (mean, se, n) row per observed key combination.
- ``nested_aggregate`` first collapses each unit (normally a subject) within a cell to a
  single value, e.g. the median response time, and then aggregates those values across
  units with ``aggregate``.
"""

from __future__ import annotations

import logging
import warnings
from typing import List, Sequence

import numpy as np
import pandas as pd

from .errors import UndefinedStatisticWarning

logger = logging.getLogger(__name__)

SUMMARY_COLUMNS = ("mean", "se", "n")
COLLAPSE_STATS = ("mean", "median", "sum")


def _check_columns(frame: pd.DataFrame, columns: Sequence[str]) -> None:
    missing = [c for c in columns if c not in frame.columns]
    if missing:
        raise KeyError(f"Columns missing from frame: {missing}")


def _numeric(values: pd.Series) -> pd.Series:
    # Booleans (accuracy) average to proportions; nullable booleans keep NaN for non-responses.
    if values.dtype == object and values.dropna().map(type).eq(bool).all():
        values = values.astype("boolean")
    if values.dtype == bool or str(values.dtype) == "boolean":
        return values.astype("float64")
    return pd.to_numeric(values, errors="coerce")


def aggregate(frame: pd.DataFrame, value: str, keys: Sequence[str]) -> pd.DataFrame:
    """Summarise ``value`` per observed combination of ``keys``.

    Missing values are excluded from the mean and standard error. The standard error is
    the sample standard deviation divided by sqrt(n); it is NaN for cells with fewer than
    two values, which is reported with an ``UndefinedStatisticWarning``.
    """
    keys = list(keys)
    _check_columns(frame, [*keys, value])
    if frame.empty:
        return pd.DataFrame(columns=[*keys, *SUMMARY_COLUMNS])

    data = frame[keys].copy()
    data["_value"] = _numeric(frame[value])
    grouped = data.groupby(keys, sort=True, observed=True, dropna=False)["_value"]
    summary = grouped.agg(mean="mean", sd="std", n="count").reset_index()
    summary["n"] = summary["n"].astype(int)
    summary["se"] = np.where(summary["n"] >= 2, summary["sd"] / np.sqrt(summary["n"].clip(lower=1)), np.nan)
    summary = summary.sort_values(keys, kind="mergesort").reset_index(drop=True)

    undefined = summary[summary["n"] < 2]
    if not undefined.empty:
        cells = [tuple(row) for row in undefined[keys].itertuples(index=False)]
        msg = f"Standard error undefined for {len(cells)} cell(s) of '{value}' with fewer than two values: {cells[:5]}"
        logger.debug(msg)
        warnings.warn(msg, UndefinedStatisticWarning, stacklevel=2)
    return summary[[*keys, *SUMMARY_COLUMNS]]


def collapse(frame: pd.DataFrame, value: str, keys: Sequence[str], stat: str = "mean") -> pd.DataFrame:
    """Reduce ``frame`` to one row per key combination holding ``stat`` of ``value``.

    Collapsing an already-collapsed frame by the same keys returns it unchanged.
    """
    if stat not in COLLAPSE_STATS:
        raise ValueError(f"Unknown collapse statistic: {stat}")
    keys = list(keys)
    _check_columns(frame, [*keys, value])
    data = frame[keys].copy()
    data[value] = _numeric(frame[value])
    grouped = data.groupby(keys, sort=True, observed=True, dropna=False)[value]
    if stat == "sum":
        # All-missing cells stay missing instead of summing to zero.
        out = grouped.sum(min_count=1)
    else:
        out = getattr(grouped, stat)()
    return out.reset_index().sort_values(keys, kind="mergesort").reset_index(drop=True)


def nested_aggregate(
    frame: pd.DataFrame,
    value: str,
    keys: Sequence[str],
    unit: str = "subject",
    stat: str = "median",
) -> pd.DataFrame:
    """Two-stage aggregate: ``stat`` per unit within each cell, then mean/se across units."""
    keys = list(keys)
    if unit in keys:
        raise ValueError(f"Unit column '{unit}' must not be one of the aggregation keys")
    per_unit = collapse(frame, value, [*keys, unit], stat=stat)
    return aggregate(per_unit, value, keys)


def proportion_correct(frame: pd.DataFrame, keys: Sequence[str], correct: str = "correct") -> pd.DataFrame:
    """Accuracy per cell; non-responses (missing correctness) are excluded."""
    return aggregate(frame, correct, keys)


def summarise_passes(frames: dict[str, pd.DataFrame], value: str, keys: Sequence[str]) -> pd.DataFrame:
    """Aggregate the same value across several passes, tagging rows with the pass name."""
    parts: List[pd.DataFrame] = []
    for name, frame in frames.items():
        if value not in frame.columns:
            continue
        table = aggregate(frame, value, keys)
        table.insert(0, "pass", name)
        parts.append(table)
    if not parts:
        return pd.DataFrame(columns=["pass", *keys, *SUMMARY_COLUMNS])
    return pd.concat(parts, ignore_index=True)
