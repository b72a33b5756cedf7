"""Weighted log-rank tests for the equality of survival across strata.

The log-rank test (weight 1) and the Peto-Peto test (weight ``S(t-)``, the
pooled Kaplan-Meier estimate just before ``t``) are one routine with a weight
function parameter.
"""

__authors__ = ["Dominik Dahlem"]
__status__ = "Development"

from dataclasses import dataclass
from itertools import combinations
from typing import Callable, Dict, List, Optional, Union

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import multipletests

from nafld.analysis.kaplan_meier import (
    check_survival_data,
    event_table,
    risk_set_counts,
    stratum_levels,
)
from nafld.utils import logging

logger = logging.get_default_logger()

WeightFunction = Callable[[pd.DataFrame], np.ndarray]

MIN_EVENT_TIMES = 2


def logrank_weights(table: pd.DataFrame) -> np.ndarray:
    return np.ones(len(table))


def peto_peto_weights(table: pd.DataFrame) -> np.ndarray:
    """Pooled Kaplan-Meier estimate just prior to each event time."""
    n = table["at_risk"].to_numpy(dtype=float)
    d = table["observed"].to_numpy(dtype=float)
    survival = np.cumprod(1.0 - d / n)
    return np.concatenate(([1.0], survival[:-1]))


WEIGHTS: Dict[str, WeightFunction] = {
    "logrank": logrank_weights,
    "peto-peto": peto_peto_weights,
}


@dataclass(frozen=True, eq=False)
class StratumTest:
    """Result of a k-sample test.

    When the strata are degenerate ``reliable`` is False, ``statistic`` and
    ``p_value`` are ``None`` and ``reason`` names the check that failed.
    """

    weight: str
    levels: List[str]
    n: np.ndarray
    events: np.ndarray
    observed: np.ndarray
    expected: np.ndarray
    variance: Optional[np.ndarray]
    statistic: Optional[float]
    df: int
    p_value: Optional[float]
    reliable: bool
    reason: Optional[str] = None

    def is_significant(self, alpha: float = 0.05) -> bool:
        return self.reliable and self.p_value < alpha

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "level": self.levels,
                "n": self.n,
                "events": self.events,
                "observed": self.observed,
                "expected": self.expected,
            }
        )

    def as_dict(self) -> Dict:
        return {
            "weight": self.weight,
            "levels": self.levels,
            "n": self.n,
            "events": self.events,
            "observed": self.observed if self.reliable else None,
            "expected": self.expected if self.reliable else None,
            "statistic": self.statistic,
            "df": self.df,
            "p_value": self.p_value,
            "reliable": self.reliable,
            "reason": self.reason,
        }


def _unreliable(weight, levels, n, events, reason) -> StratumTest:
    logger.warning(f"{weight} test not computed: {reason}")
    k = len(levels)
    return StratumTest(
        weight=weight,
        levels=levels,
        n=n,
        events=events,
        observed=np.full(k, np.nan),
        expected=np.full(k, np.nan),
        variance=None,
        statistic=None,
        df=max(k - 1, 0),
        p_value=None,
        reliable=False,
        reason=reason,
    )


def weighted_logrank(
    durations,
    events,
    groups,
    weight: Union[str, WeightFunction] = "logrank",
) -> StratumTest:
    """
    Weighted k-sample log-rank test.

    At each distinct pooled event time the observed events of every stratum
    are compared with the events expected under equal hazards, using the
    hypergeometric variance. The weighted differences ``U`` give the statistic
    ``U' V^- U`` over the first k-1 strata, compared with a chi-square
    distribution with k-1 degrees of freedom.

    A statistic is only computed with at least two strata, at least two
    distinct event times and at least one event in every stratum.

    Args:
        durations: Event or censoring times
        events: Event indicators (1=event, 0=censored)
        groups: Stratum of every subject; missing strata are skipped
        weight: ``logrank``, ``peto-peto`` or a callable mapping the pooled
            event table (rows at event times) to one weight per row

    Returns:
        StratumTest: the test result
    """
    if callable(weight):
        weight_name = getattr(weight, "__name__", "custom")
        weight_fn = weight
    else:
        if weight not in WEIGHTS:
            raise ValueError(f"weight {weight} not supported. Use one of {list(WEIGHTS)}")
        weight_name = weight
        weight_fn = WEIGHTS[weight]

    groups = pd.Series(groups).reset_index(drop=True)
    keep = groups.notna().to_numpy()
    durations, events = check_survival_data(
        np.asarray(durations, dtype=float)[keep], np.asarray(events)[keep]
    )
    groups = groups[keep].reset_index(drop=True)

    levels = stratum_levels(groups)
    members = [(groups == level).to_numpy() for level in levels]
    labels = [str(level) for level in levels]
    n_per_level = np.array([m.sum() for m in members])
    events_per_level = np.array([events[m].sum() for m in members])

    if len(levels) < 2:
        return _unreliable(
            weight_name, labels, n_per_level, events_per_level, "fewer than 2 strata"
        )

    pooled = event_table(durations, events)
    pooled = pooled[pooled["observed"] > 0]
    if len(pooled) < MIN_EVENT_TIMES:
        return _unreliable(
            weight_name,
            labels,
            n_per_level,
            events_per_level,
            f"fewer than {MIN_EVENT_TIMES} distinct event times",
        )
    empty = [label for label, e in zip(labels, events_per_level) if e == 0]
    if empty:
        return _unreliable(
            weight_name,
            labels,
            n_per_level,
            events_per_level,
            f"no events in stratum {', '.join(empty)}",
        )

    times = pooled.index.to_numpy(dtype=float)
    n = pooled["at_risk"].to_numpy(dtype=float)
    d = pooled["observed"].to_numpy(dtype=float)
    w = np.asarray(weight_fn(pooled), dtype=float)

    # at risk and events per event time (rows) and stratum (columns)
    N = np.empty((len(times), len(levels)))
    D = np.empty((len(times), len(levels)))
    for g, member in enumerate(members):
        N[:, g], D[:, g] = risk_set_counts(durations[member], events[member], times)

    expected = N * (d / n)[:, None]
    observed_w = (w[:, None] * D).sum(axis=0)
    expected_w = (w[:, None] * expected).sum(axis=0)
    U = observed_w - expected_w

    with np.errstate(divide="ignore", invalid="ignore"):
        c = np.where(n > 1, w**2 * d * (n - d) / (n**2 * (n - 1)), 0.0)
    V = np.diag((c * n) @ N) - (N * c[:, None]).T @ N

    V_sub = V[:-1, :-1]
    df = int(np.linalg.matrix_rank(V_sub))
    if df == 0:
        return _unreliable(
            weight_name, labels, n_per_level, events_per_level, "zero variance"
        )
    statistic = float(U[:-1] @ np.linalg.pinv(V_sub) @ U[:-1])
    statistic = max(statistic, 0.0)
    p_value = float(stats.chi2.sf(statistic, df))

    logger.debug(f"{weight_name} test: chi2={statistic:.4f}, df={df}, p={p_value:.4g}")

    return StratumTest(
        weight=weight_name,
        levels=labels,
        n=n_per_level,
        events=events_per_level,
        observed=observed_w,
        expected=expected_w,
        variance=V,
        statistic=statistic,
        df=df,
        p_value=p_value,
        reliable=True,
    )


def logrank_test(durations, events, groups) -> StratumTest:
    return weighted_logrank(durations, events, groups, weight="logrank")


def peto_peto_test(durations, events, groups) -> StratumTest:
    return weighted_logrank(durations, events, groups, weight="peto-peto")


def compare_strata(
    frame: pd.DataFrame,
    group: str,
    weight: Union[str, WeightFunction] = "logrank",
    duration_col: str = "futime",
    event_col: str = "status",
) -> StratumTest:
    """Test the equality of survival across the levels of a column of ``frame``."""
    return weighted_logrank(
        frame[duration_col].to_numpy(),
        frame[event_col].to_numpy(),
        frame[group],
        weight=weight,
    )


def pairwise_logrank(
    frame: pd.DataFrame,
    group: str,
    weight: Union[str, WeightFunction] = "logrank",
    duration_col: str = "futime",
    event_col: str = "status",
    method: str = "fdr_bh",
) -> pd.DataFrame:
    """
    Two-sample tests for every pair of levels with multiplicity adjustment.

    Args:
        frame: Subject table
        group: Grouping column
        weight: Weight of the test
        duration_col: Column with the follow-up times
        event_col: Column with the event indicators
        method: ``statsmodels`` multiple testing method

    Returns:
        pd.DataFrame: one row per pair with statistic, p and adjusted p
    """
    levels = stratum_levels(frame[group])
    rows = []
    for level1, level2 in combinations(levels, 2):
        subset = frame[frame[group].isin([level1, level2])]
        groups = subset[group]
        if isinstance(groups.dtype, pd.CategoricalDtype):
            groups = groups.cat.remove_unused_categories()
        result = weighted_logrank(
            subset[duration_col].to_numpy(),
            subset[event_col].to_numpy(),
            groups,
            weight=weight,
        )
        rows.append(
            {
                "level1": str(level1),
                "level2": str(level2),
                "statistic": result.statistic,
                "p_value": result.p_value,
                "reliable": result.reliable,
                "reason": result.reason,
            }
        )

    pairs = pd.DataFrame(
        rows,
        columns=["level1", "level2", "statistic", "p_value", "reliable", "reason"],
    )
    pairs["adjusted_p"] = np.nan
    reliable = pairs["reliable"].astype(bool)
    if reliable.any():
        pairs.loc[reliable, "adjusted_p"] = multipletests(
            pairs.loc[reliable, "p_value"].astype(float), method=method
        )[1]
    return pairs
