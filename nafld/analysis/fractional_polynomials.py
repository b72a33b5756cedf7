"""Multivariable fractional polynomials for the Cox model.

Every continuous covariate may enter the linear predictor through one (FP1)
or two (FP2) power terms chosen from a fixed grid. Candidate models are
compared by their Breslow partial likelihood deviance and the function of a
covariate is selected with the closed test procedure:

1. FP2 against the null model (4 df), only when variable selection is on;
2. FP2 against the linear term (3 df);
3. FP2 against the best FP1 (2 df).

Covariates are processed in turn with the others held at their current form
(back-fitting) until the selected powers no longer change.
"""

__authors__ = ["Dominik Dahlem"]
__status__ = "Development"

from dataclasses import dataclass, field
from itertools import combinations_with_replacement
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats

from nafld.analysis.partial_likelihood import PartialLikelihoodFit, fit_breslow
from nafld.exceptions import FitError
from nafld.utils import logging

logger = logging.get_default_logger()

FP_POWERS = (-2.0, -1.0, -0.5, 0.0, 0.5, 1.0, 2.0, 3.0)
LINEAR = (1.0,)

Powers = Tuple[float, ...]


def fp1_candidates(grid: Sequence[float] = FP_POWERS) -> List[Powers]:
    return [(p,) for p in grid]


def fp2_candidates(grid: Sequence[float] = FP_POWERS) -> List[Powers]:
    return list(combinations_with_replacement(grid, 2))


@dataclass(frozen=True)
class FPScaling:
    """Shift and scale that map a covariate onto positive, moderate values."""

    shift: float = 0.0
    scale: float = 1.0

    @classmethod
    def from_values(cls, values) -> "FPScaling":
        x = np.asarray(values, dtype=float)
        shift = 0.0
        if x.min() <= 0:
            gaps = np.diff(np.unique(x))
            step = gaps.min() if len(gaps) else 1.0
            shift = float(np.ceil((step - x.min()) * 10) / 10)

        value_range = (x + shift).max() - (x + shift).min()
        scale = 1.0
        if value_range > 0:
            magnitude = np.log10(value_range)
            scale = float(10 ** (np.sign(magnitude) * np.round(np.abs(magnitude))))
        return cls(shift=shift, scale=scale)

    def __call__(self, values) -> np.ndarray:
        return (np.asarray(values, dtype=float) + self.shift) / self.scale


def fp_transform(x, powers: Powers) -> np.ndarray:
    """
    Fractional polynomial terms of a positive covariate.

    Power 0 is the natural logarithm. A repeated power ``p`` contributes
    ``x^p`` and ``x^p log(x)``.

    Args:
        x: Positive values
        powers: One or two powers from the grid

    Returns:
        np.ndarray: shape (n, len(powers))
    """
    x = np.asarray(x, dtype=float)
    if (x <= 0).any():
        raise ValueError("fractional polynomials need positive values")

    log_x = np.log(x)
    columns = []
    for i, p in enumerate(powers):
        if i > 0 and p == powers[i - 1]:
            columns.append(columns[-1] * log_x)
        elif p == 0:
            columns.append(log_x)
        else:
            columns.append(x**p)
    return np.column_stack(columns)


def term_names(covariate: str, powers: Powers) -> List[str]:
    names = []
    for i, p in enumerate(powers):
        base = f"log({covariate})" if p == 0 else f"{covariate}^{p:g}"
        if i > 0 and p == powers[i - 1]:
            base = f"{base}*log({covariate})"
        names.append(base)
    return names


def format_powers(powers: Optional[Powers]) -> str:
    if powers is None:
        return "excluded"
    return "(" + ", ".join(f"{p:g}" for p in powers) + ")"


@dataclass(frozen=True, eq=False)
class FPSelection:
    """Outcome of the closed test procedure for one covariate."""

    covariate: str
    powers: Optional[Powers]
    deviances: Dict[str, float]
    best_fp1: Powers
    best_fp2: Powers
    candidates: pd.DataFrame
    tests: List[Dict] = field(default_factory=list)

    @property
    def linear_adequate(self) -> bool:
        return self.powers == LINEAR

    def as_dict(self) -> Dict:
        return {
            "covariate": self.covariate,
            "powers": format_powers(self.powers),
            "deviances": self.deviances,
            "best_fp1": format_powers(self.best_fp1),
            "best_fp2": format_powers(self.best_fp2),
            "tests": self.tests,
            "linear_adequate": self.linear_adequate,
        }


def _deviance(durations, events, adjust: np.ndarray, terms: Optional[np.ndarray], names):
    X = adjust if terms is None else np.column_stack([adjust, terms])
    return fit_breslow(durations, events, X, names=names).deviance


def _closed_test(
    deviances: Dict[str, float], alpha: float, select: float
) -> Tuple[str, List[Dict]]:
    comparisons = [("null", 4, select), ("linear", 3, alpha), ("fp1", 2, alpha)]
    tests = []
    for reference, df, level in comparisons:
        if reference == "null" and select >= 1.0:
            continue
        chi2 = max(deviances[reference] - deviances["fp2"], 0.0)
        p = float(stats.chi2.sf(chi2, df))
        tests.append(
            {"comparison": f"fp2 vs {reference}", "chi2": chi2, "df": df, "p": p}
        )
        if p >= level:
            return reference, tests
    return "fp2", tests


def select_fp(
    durations,
    events,
    x,
    adjust: Optional[np.ndarray] = None,
    adjust_names: Sequence[str] = (),
    covariate: str = "x",
    scaling: Optional[FPScaling] = None,
    alpha: float = 0.05,
    select: float = 1.0,
    grid: Sequence[float] = FP_POWERS,
) -> FPSelection:
    """
    Select the fractional polynomial of one covariate.

    Args:
        durations: Event or censoring times
        events: Event indicators
        x: Values of the covariate
        adjust: Design matrix of the adjustment terms held fixed
        adjust_names: Names of the adjustment columns
        covariate: Name of the covariate
        scaling: Shift and scale applied before transforming, derived from
            ``x`` by default
        alpha: Level of the tests for non-linearity
        select: Level of the test for inclusion; 1 keeps every covariate
        grid: Power grid

    Returns:
        FPSelection: selected powers and the deviances behind the choice

    Raises:
        FitError: if the null or the linear model does not converge
    """
    durations = np.asarray(durations, dtype=float)
    events = np.asarray(events, dtype=int)
    adjust = np.empty((len(durations), 0)) if adjust is None else np.asarray(adjust)
    adjust_names = list(adjust_names)
    scaling = FPScaling.from_values(x) if scaling is None else scaling
    z = scaling(x)

    deviances = {
        "null": _deviance(durations, events, adjust, None, adjust_names),
        "linear": _deviance(
            durations,
            events,
            adjust,
            fp_transform(z, LINEAR),
            adjust_names + term_names(covariate, LINEAR),
        ),
    }

    rows = []
    for powers in fp1_candidates(grid) + fp2_candidates(grid):
        try:
            deviance = _deviance(
                durations,
                events,
                adjust,
                fp_transform(z, powers),
                adjust_names + term_names(covariate, powers),
            )
        except FitError as e:
            logger.warning(f"Skipping {covariate} powers {format_powers(powers)}: {e}")
            deviance = np.inf
        rows.append({"powers": powers, "degree": len(powers), "deviance": deviance})

    candidates = pd.DataFrame(rows)
    best = {}
    for degree in (1, 2):
        subset = candidates[candidates["degree"] == degree]
        if not np.isfinite(subset["deviance"]).any():
            raise FitError(
                "fractional polynomial", [covariate] + adjust_names, f"no FP{degree} fit"
            )
        best[degree] = subset.loc[subset["deviance"].idxmin(), "powers"]
        deviances[f"fp{degree}"] = float(subset["deviance"].min())

    choice, tests = _closed_test(deviances, alpha, select)
    powers = {"null": None, "linear": LINEAR, "fp1": best[1], "fp2": best[2]}[choice]

    logger.info(
        f"{covariate}: selected {format_powers(powers)} "
        f"(deviances null={deviances['null']:.2f}, linear={deviances['linear']:.2f}, "
        f"fp1={deviances['fp1']:.2f}, fp2={deviances['fp2']:.2f})"
    )

    return FPSelection(
        covariate=covariate,
        powers=powers,
        deviances=deviances,
        best_fp1=best[1],
        best_fp2=best[2],
        candidates=candidates,
        tests=tests,
    )


@dataclass(frozen=True, eq=False)
class FPModel:
    """Final multivariable fractional polynomial model."""

    covariates: Tuple[str, ...]
    powers: Dict[str, Optional[Powers]]
    scalings: Dict[str, FPScaling]
    selections: Dict[str, FPSelection]
    fit: PartialLikelihoodFit
    cycles: int
    converged: bool

    @property
    def linear_adequate(self) -> Dict[str, bool]:
        return {c: s.linear_adequate for c, s in self.selections.items()}

    def as_dict(self) -> Dict:
        return {
            "covariates": list(self.covariates),
            "powers": {c: format_powers(p) for c, p in self.powers.items()},
            "scalings": {
                c: {"shift": s.shift, "scale": s.scale} for c, s in self.scalings.items()
            },
            "selections": {c: s.as_dict() for c, s in self.selections.items()},
            "linear_adequate": self.linear_adequate,
            "log_likelihood": self.fit.log_likelihood,
            "deviance": self.fit.deviance,
            "coefficients": self.fit.summary().to_dict(orient="index"),
            "cycles": self.cycles,
            "converged": self.converged,
        }


def _design(
    frame: pd.DataFrame,
    covariates: Sequence[str],
    powers: Dict[str, Optional[Powers]],
    scalings: Dict[str, FPScaling],
    exclude: Optional[str] = None,
) -> Tuple[np.ndarray, List[str]]:
    columns = []
    names = []
    for covariate in covariates:
        if covariate == exclude:
            continue
        values = frame[covariate].to_numpy(dtype=float)
        if covariate in scalings:
            if powers[covariate] is None:
                continue
            columns.append(fp_transform(scalings[covariate](values), powers[covariate]))
            names.extend(term_names(covariate, powers[covariate]))
        else:
            columns.append(values[:, None])
            names.append(covariate)
    if not columns:
        return np.empty((len(frame), 0)), names
    return np.column_stack(columns), names


def mfp(
    frame: pd.DataFrame,
    covariates: Sequence[str],
    continuous: Optional[Sequence[str]] = None,
    duration_col: str = "futime",
    event_col: str = "status",
    alpha: float = 0.05,
    select: float = 1.0,
    max_cycles: int = 5,
    grid: Sequence[float] = FP_POWERS,
) -> FPModel:
    """
    Fit a multivariable fractional polynomial Cox model.

    Continuous covariates are visited in order of decreasing significance in
    the linear model; binary covariates always enter linearly.

    Args:
        frame: Subject table
        covariates: All covariates of the model
        continuous: Covariates eligible for FP terms; by default those with
            more than three distinct values
        duration_col: Column with the follow-up times
        event_col: Column with the event indicators
        alpha: Level of the tests for non-linearity
        select: Level of the inclusion test; 1 keeps every covariate
        max_cycles: Maximum number of back-fitting cycles
        grid: Power grid

    Returns:
        FPModel: selected powers and the final Breslow fit
    """
    covariates = tuple(covariates)
    if continuous is None:
        continuous = [c for c in covariates if frame[c].nunique() > 3]
    continuous = [c for c in covariates if c in set(continuous)]

    durations = frame[duration_col].to_numpy(dtype=float)
    events = frame[event_col].to_numpy(dtype=int)

    scalings = {c: FPScaling.from_values(frame[c]) for c in continuous}
    powers: Dict[str, Optional[Powers]] = {c: LINEAR for c in continuous}

    X, names = _design(frame, covariates, powers, scalings)
    linear_fit = fit_breslow(durations, events, X, names=names)
    p_values = linear_fit.summary()["p"]
    order = sorted(continuous, key=lambda c: p_values[term_names(c, LINEAR)[0]])
    logger.debug(f"FP visiting order: {order}")

    selections: Dict[str, FPSelection] = {}
    converged = False
    cycle = 0
    for cycle in range(1, max_cycles + 1):
        changed = False
        for covariate in order:
            adjust, adjust_names = _design(
                frame, covariates, powers, scalings, exclude=covariate
            )
            selection = select_fp(
                durations,
                events,
                frame[covariate].to_numpy(dtype=float),
                adjust=adjust,
                adjust_names=adjust_names,
                covariate=covariate,
                scaling=scalings[covariate],
                alpha=alpha,
                select=select,
                grid=grid,
            )
            selections[covariate] = selection
            if selection.powers != powers[covariate]:
                changed = True
                powers[covariate] = selection.powers
        logger.debug(f"FP cycle {cycle}: {[format_powers(powers[c]) for c in order]}")
        if not changed:
            converged = True
            break

    if not converged:
        logger.warning(f"FP powers still changing after {max_cycles} cycles")

    X, names = _design(frame, covariates, powers, scalings)
    final_fit = fit_breslow(durations, events, X, names=names)

    return FPModel(
        covariates=covariates,
        powers=dict(powers),
        scalings=scalings,
        selections=selections,
        fit=final_fit,
        cycles=cycle,
        converged=converged,
    )
