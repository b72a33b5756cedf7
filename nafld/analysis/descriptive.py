"""Descriptive statistics of the subject table.

This module computes the numeric series behind the descriptive part of the
report: per-column histograms and bar counts, the Pearson correlation matrix
and the follow-up summary.
"""

__authors__ = ["Dominik Dahlem"]
__status__ = "Development"

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from nafld.utils import logging

logger = logging.get_default_logger()


@dataclass(frozen=True, eq=False)
class ColumnSummary:
    """Distribution of one column.

    ``kind`` is ``"histogram"`` for continuous columns, in which case ``edges``
    and ``counts`` describe the histogram, and ``"bar"`` for binary and
    categorical columns, in which case ``levels`` and ``counts`` are the bar
    heights.
    """

    name: str
    kind: str
    n: int
    n_missing: int
    counts: np.ndarray
    edges: Optional[np.ndarray] = None
    levels: Optional[List[str]] = None
    stats: Dict[str, float] = field(default_factory=dict)

    def to_frame(self) -> pd.DataFrame:
        if self.kind == "histogram":
            return pd.DataFrame(
                {
                    "left": self.edges[:-1],
                    "right": self.edges[1:],
                    "count": self.counts,
                }
            )
        return pd.DataFrame({"level": self.levels, "count": self.counts})


def _is_continuous(values: pd.Series, max_levels: int) -> bool:
    if isinstance(values.dtype, pd.CategoricalDtype):
        return False
    if not pd.api.types.is_numeric_dtype(values):
        return False
    return values.nunique(dropna=True) > max_levels


def describe_columns(
    frame: pd.DataFrame,
    columns: Optional[Sequence[str]] = None,
    bins: int = 30,
    max_levels: int = 10,
) -> Dict[str, ColumnSummary]:
    """
    Summarise the distribution of every column.

    Args:
        frame: Subject table
        columns: Columns to describe, all columns by default
        bins: Number of histogram bins of continuous columns
        max_levels: Numeric columns with at most this many distinct values are
            treated as categorical

    Returns:
        Dict: column name to ColumnSummary
    """
    columns = list(frame.columns) if columns is None else list(columns)
    summaries = {}

    for col in columns:
        values = frame[col]
        observed = values.dropna()
        n_missing = int(values.isna().sum())

        if _is_continuous(values, max_levels):
            counts, edges = np.histogram(observed.to_numpy(dtype=float), bins=bins)
            stats = {
                "mean": float(observed.mean()),
                "std": float(observed.std()),
                "min": float(observed.min()),
                "median": float(observed.median()),
                "max": float(observed.max()),
            }
            summaries[col] = ColumnSummary(
                name=col,
                kind="histogram",
                n=len(observed),
                n_missing=n_missing,
                counts=counts,
                edges=edges,
                stats=stats,
            )
        else:
            if isinstance(values.dtype, pd.CategoricalDtype):
                value_counts = values.value_counts(sort=False)
            else:
                value_counts = values.value_counts().sort_index()
            summaries[col] = ColumnSummary(
                name=col,
                kind="bar",
                n=len(observed),
                n_missing=n_missing,
                counts=value_counts.to_numpy(),
                levels=[str(level) for level in value_counts.index],
            )
        logger.debug(f"Described {col} as {summaries[col].kind}")

    return summaries


def coerce_numeric(frame: pd.DataFrame) -> pd.DataFrame:
    """Numeric view of a table.

    Categorical columns become their level codes (missing classes stay
    missing), everything else is coerced with unparseable values set to NaN.
    Columns without a single numeric value are dropped.
    """
    coerced = {}
    for col in frame.columns:
        values = frame[col]
        if isinstance(values.dtype, pd.CategoricalDtype):
            codes = values.cat.codes.astype(float)
            coerced[col] = codes.where(codes >= 0)
        else:
            coerced[col] = pd.to_numeric(values, errors="coerce")

    numeric = pd.DataFrame(coerced, index=frame.index)
    empty = [col for col in numeric.columns if numeric[col].isna().all()]
    if empty:
        logger.debug(f"Columns without numeric values: {empty}")
    return numeric.drop(columns=empty)


def correlation_matrix(
    frame: pd.DataFrame, columns: Optional[Sequence[str]] = None
) -> pd.DataFrame:
    """
    Pearson correlation matrix over the numeric-coerced columns.

    Correlations use pairwise complete observations.

    Args:
        frame: Subject table
        columns: Columns to correlate, all columns by default

    Returns:
        pd.DataFrame: square correlation matrix
    """
    if columns is not None:
        frame = frame[list(columns)]
    return coerce_numeric(frame).corr(method="pearson")


def event_summary(
    frame: pd.DataFrame, duration_col: str = "futime", event_col: str = "status"
) -> Dict:
    """Counts of events and censored observations and follow-up statistics."""
    durations = frame[duration_col].to_numpy(dtype=float)
    events = frame[event_col].to_numpy(dtype=int)

    n_total = len(durations)
    n_events = int(events.sum())
    n_censored = n_total - n_events

    results = {
        "n_total": n_total,
        "n_events": n_events,
        "n_censored": n_censored,
        "censoring_rate": n_censored / n_total * 100 if n_total else None,
        "median_follow_up": float(np.median(durations)) if n_total else None,
        "max_follow_up": float(np.max(durations)) if n_total else None,
    }

    if n_total:
        logger.info(f"Number of events: {n_events} ({n_events / n_total:.1%})")
        logger.info(f"Number censored: {n_censored} ({n_censored / n_total:.1%})")

    return results
