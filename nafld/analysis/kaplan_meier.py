"""Kaplan-Meier estimation of the survival function.

The event table (distinct times with the number at risk, observed events and
censored observations) is shared with the stratum comparison tests in
:mod:`nafld.analysis.logrank`.
"""

__authors__ = ["Dominik Dahlem"]
__status__ = "Development"

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import numpy as np
import pandas as pd
from lifelines.utils import survival_table_from_events
from scipy import stats

from nafld.utils import logging

logger = logging.get_default_logger()

CONF_TYPES = ("log", "log-log", "plain")


def check_survival_data(durations, events) -> Tuple[np.ndarray, np.ndarray]:
    """Validate durations and event indicators and return them as arrays."""
    durations = np.asarray(durations, dtype=float)
    events = np.asarray(events)

    if durations.ndim != 1 or durations.shape != events.shape:
        raise ValueError(
            f"durations {durations.shape} and events {events.shape} must be 1d arrays of equal length"
        )
    if len(durations) == 0:
        raise ValueError("no observations")
    if np.isnan(durations).any():
        raise ValueError("durations contain missing values")
    if (durations < 0).any():
        raise ValueError("durations must be non-negative")
    if not np.isin(events, (0, 1)).all():
        raise ValueError("event indicators must be 0 or 1")

    return durations, events.astype(int)


def event_table(durations, events) -> pd.DataFrame:
    """
    Distinct times in ascending order with the risk set bookkeeping.

    Args:
        durations: Event or censoring times
        events: Event indicators (1=event, 0=censored)

    Returns:
        pd.DataFrame: indexed by time with columns at_risk, observed, censored
    """
    durations, events = check_survival_data(durations, events)
    table = survival_table_from_events(durations, events)
    table.index.name = "time"
    return table[["at_risk", "observed", "censored"]].astype(int)


def risk_set_counts(durations, events, times) -> Tuple[np.ndarray, np.ndarray]:
    """
    Number at risk and number of events of a sample at the given times.

    A subject is at risk at ``t`` when its duration is at least ``t``.

    Args:
        durations: Event or censoring times
        events: Event indicators
        times: Times at which to count

    Returns:
        tuple: (at_risk, observed) arrays aligned with ``times``
    """
    durations = np.asarray(durations, dtype=float)
    events = np.asarray(events, dtype=int)
    times = np.asarray(times, dtype=float)

    ordered = np.sort(durations)
    at_risk = len(ordered) - np.searchsorted(ordered, times, side="left")

    event_times = np.sort(durations[events == 1])
    observed = np.searchsorted(event_times, times, side="right") - np.searchsorted(
        event_times, times, side="left"
    )
    return at_risk, observed


@dataclass(frozen=True, eq=False)
class SurvivalCurve:
    """Kaplan-Meier step function with pointwise Greenwood standard errors.

    ``timeline`` holds every distinct observed time (and time zero); the
    estimate at ``timeline[i]`` applies on ``[timeline[i], timeline[i + 1])``.
    """

    label: str
    timeline: np.ndarray
    survival: np.ndarray
    std_error: np.ndarray
    lower: np.ndarray
    upper: np.ndarray
    at_risk: np.ndarray
    observed: np.ndarray
    censored: np.ndarray
    conf_level: float
    conf_type: str

    @property
    def n(self) -> int:
        return int(self.at_risk[0])

    @property
    def n_events(self) -> int:
        return int(self.observed.sum())

    @property
    def cumulative_hazard(self) -> np.ndarray:
        """``-log S(t)``; infinite where the estimate reaches zero."""
        hazard = np.full_like(self.survival, np.inf)
        positive = self.survival > 0
        hazard[positive] = -np.log(self.survival[positive])
        return hazard

    def survival_at(self, times) -> np.ndarray:
        """Right-continuous evaluation; 1 before the first time of the table."""
        times = np.atleast_1d(np.asarray(times, dtype=float))
        idx = np.searchsorted(self.timeline, times, side="right") - 1
        values = np.ones(len(times))
        inside = idx >= 0
        values[inside] = self.survival[idx[inside]]
        return values

    def median(self) -> Optional[float]:
        """Smallest time at which the estimate drops to 0.5 or below."""
        reached = np.nonzero(self.survival <= 0.5)[0]
        if len(reached) == 0:
            return None
        return float(self.timeline[reached[0]])

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "time": self.timeline,
                "survival": self.survival,
                "std_error": self.std_error,
                "lower": self.lower,
                "upper": self.upper,
                "cumulative_hazard": self.cumulative_hazard,
                "at_risk": self.at_risk,
                "observed": self.observed,
                "censored": self.censored,
            }
        )

    def summary(self) -> Dict:
        return {
            "label": self.label,
            "n": self.n,
            "n_events": self.n_events,
            "median": self.median(),
            "final_survival": float(self.survival[-1]),
        }


def _confidence_band(
    survival: np.ndarray,
    greenwood: np.ndarray,
    std_error: np.ndarray,
    z: float,
    conf_type: str,
) -> Tuple[np.ndarray, np.ndarray]:
    lower = np.zeros_like(survival)
    upper = np.zeros_like(survival)
    positive = survival > 0

    if conf_type == "plain":
        lower[positive] = survival[positive] - z * std_error[positive]
        upper[positive] = survival[positive] + z * std_error[positive]
    elif conf_type == "log":
        se_log = np.sqrt(greenwood[positive])
        lower[positive] = survival[positive] * np.exp(-z * se_log)
        upper[positive] = survival[positive] * np.exp(z * se_log)
    else:
        # log(-log S) is undefined at S = 1, where the band is the point itself
        inner = positive & (survival < 1)
        lower[survival >= 1] = 1.0
        upper[survival >= 1] = 1.0
        log_s = np.log(survival[inner])
        se_u = np.sqrt(greenwood[inner]) / np.abs(log_s)
        u = np.log(-log_s)
        lower[inner] = np.exp(-np.exp(u + z * se_u))
        upper[inner] = np.exp(-np.exp(u - z * se_u))

    return np.clip(lower, 0.0, 1.0), np.clip(upper, 0.0, 1.0)


def kaplan_meier(
    durations,
    events,
    label: str = "KM_estimate",
    alpha: float = 0.05,
    conf_type: str = "log",
) -> SurvivalCurve:
    """
    Kaplan-Meier estimate with Greenwood variance.

    At every distinct time ``t_i`` with ``d_i`` events among ``n_i`` subjects
    at risk the estimate is multiplied by ``1 - d_i / n_i``; censored subjects
    only leave the risk set.

    Args:
        durations: Event or censoring times, non-negative
        events: Event indicators (1=event, 0=censored)
        label: Name of the curve
        alpha: One minus the confidence level of the band
        conf_type: Band transform, one of ``log``, ``log-log``, ``plain``

    Returns:
        SurvivalCurve: the estimate
    """
    if conf_type not in CONF_TYPES:
        raise ValueError(f"conf_type {conf_type} not supported. Use one of {CONF_TYPES}")

    table = event_table(durations, events)
    n = table["at_risk"].to_numpy(dtype=float)
    d = table["observed"].to_numpy(dtype=float)

    survival = np.cumprod(1.0 - d / n)

    # d_i / (n_i (n_i - d_i)) is undefined once the whole risk set fails; the
    # estimate is zero from there on and so is its standard error
    exhausted = n <= d
    if exhausted.any():
        logger.debug(
            f"{label}: survival reaches zero at t={table.index[np.argmax(exhausted)]}"
        )
    terms = np.zeros_like(n)
    terms[~exhausted] = d[~exhausted] / (n[~exhausted] * (n[~exhausted] - d[~exhausted]))
    greenwood = np.cumsum(terms)
    std_error = np.where(survival > 0, survival * np.sqrt(greenwood), 0.0)

    z = stats.norm.ppf(1 - alpha / 2)
    lower, upper = _confidence_band(survival, greenwood, std_error, z, conf_type)

    return SurvivalCurve(
        label=label,
        timeline=table.index.to_numpy(dtype=float),
        survival=survival,
        std_error=std_error,
        lower=lower,
        upper=upper,
        at_risk=table["at_risk"].to_numpy(),
        observed=table["observed"].to_numpy(),
        censored=table["censored"].to_numpy(),
        conf_level=1 - alpha,
        conf_type=conf_type,
    )


def stratum_levels(groups: pd.Series) -> list:
    """Levels of a grouping column in their natural order, without missing values."""
    if isinstance(groups.dtype, pd.CategoricalDtype):
        present = set(groups.dropna().unique())
        return [level for level in groups.cat.categories if level in present]
    return sorted(groups.dropna().unique().tolist())


def kaplan_meier_by(
    frame: pd.DataFrame,
    group: Optional[str] = None,
    duration_col: str = "futime",
    event_col: str = "status",
    alpha: float = 0.05,
    conf_type: str = "log",
) -> Dict[str, SurvivalCurve]:
    """
    Kaplan-Meier curves overall or per level of a grouping column.

    Args:
        frame: Subject table
        group: Grouping column; ``None`` gives the overall curve
        duration_col: Column with the follow-up times
        event_col: Column with the event indicators
        alpha: One minus the confidence level of the bands
        conf_type: Band transform

    Returns:
        Dict: level label to SurvivalCurve
    """
    if group is None:
        return {
            "all": kaplan_meier(
                frame[duration_col],
                frame[event_col],
                label="all",
                alpha=alpha,
                conf_type=conf_type,
            )
        }

    groups = frame[group]
    n_unassigned = int(groups.isna().sum())
    if n_unassigned > 0:
        logger.warning(f"{n_unassigned} subjects without a {group} level are skipped")

    curves = {}
    for level in stratum_levels(groups):
        subset = frame[groups == level]
        label = f"{group}={level}"
        curves[str(level)] = kaplan_meier(
            subset[duration_col],
            subset[event_col],
            label=label,
            alpha=alpha,
            conf_type=conf_type,
        )
        logger.debug(f"{label}: {len(subset)} subjects, {curves[str(level)].n_events} events")

    return curves
