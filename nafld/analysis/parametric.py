"""Parametric survival models.

Exponential, Weibull, log-normal and log-logistic models are fitted by
maximising the full censored likelihood (density for events, survival for
censored subjects). Without covariates the univariate ``lifelines`` fitters
are used; with covariates the accelerated failure time regressions. Models
are compared with AIC and BIC.
"""

__authors__ = ["Dominik Dahlem"]
__status__ = "Development"

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from autograd import numpy as anp
from lifelines import (
    ExponentialFitter,
    LogLogisticAFTFitter,
    LogLogisticFitter,
    LogNormalAFTFitter,
    LogNormalFitter,
    WeibullAFTFitter,
    WeibullFitter,
)
from lifelines.exceptions import ConvergenceError
from lifelines.fitters import ParametricRegressionFitter

from nafld.exceptions import FitError, SchemaError
from nafld.utils import logging

logger = logging.get_default_logger()

FAMILIES = ("exponential", "weibull", "lognormal", "loglogistic")


class ExponentialAFTFitter(ParametricRegressionFitter):
    """Exponential regression with scale ``exp(X beta)``: ``H(t) = t / scale``."""

    _fitted_parameter_names = ["lambda_"]

    def _cumulative_hazard(self, params, T, Xs):
        scale = anp.exp(anp.dot(Xs["lambda_"], params["lambda_"]))
        return T / scale


UNIVARIATE = {
    "exponential": ExponentialFitter,
    "weibull": WeibullFitter,
    "lognormal": LogNormalFitter,
    "loglogistic": LogLogisticFitter,
}

REGRESSION = {
    "weibull": WeibullAFTFitter,
    "lognormal": LogNormalAFTFitter,
    "loglogistic": LogLogisticAFTFitter,
}


def model_name(family: str, covariates: Sequence[str]) -> str:
    return f"{family}({' + '.join(covariates) or '1'})"


@dataclass(frozen=True, eq=False)
class ParametricResult:
    """A fitted parametric model with its curves at the mean covariates."""

    family: str
    covariates: Tuple[str, ...]
    parameters: Dict[str, float]
    log_likelihood: float
    n_params: int
    n: int
    n_events: int
    times: np.ndarray
    survival: np.ndarray
    hazard: np.ndarray

    @property
    def name(self) -> str:
        return model_name(self.family, self.covariates)

    @property
    def aic(self) -> float:
        return -2.0 * self.log_likelihood + 2.0 * self.n_params

    @property
    def bic(self) -> float:
        return -2.0 * self.log_likelihood + self.n_params * np.log(self.n)

    def curves(self) -> pd.DataFrame:
        return pd.DataFrame(
            {"time": self.times, "survival": self.survival, "hazard": self.hazard}
        )

    def as_dict(self) -> Dict:
        return {
            "model": self.name,
            "family": self.family,
            "covariates": list(self.covariates),
            "parameters": self.parameters,
            "log_likelihood": self.log_likelihood,
            "n_params": self.n_params,
            "n": self.n,
            "n_events": self.n_events,
            "aic": self.aic,
            "bic": self.bic,
        }


def time_grid(durations, points: int = 200) -> np.ndarray:
    """Evenly spaced positive times up to the longest follow-up."""
    t_max = float(np.max(durations))
    return np.linspace(t_max / points, t_max, points)


def _parameter_dict(params: pd.Series) -> Dict[str, float]:
    if isinstance(params.index, pd.MultiIndex):
        return {f"{p}:{c}": float(v) for (p, c), v in params.items()}
    return {str(k): float(v) for k, v in params.items()}


def fit_parametric(
    frame: pd.DataFrame,
    family: str,
    covariates: Sequence[str] = (),
    duration_col: str = "futime",
    event_col: str = "status",
    grid_points: int = 200,
) -> ParametricResult:
    """
    Fit one parametric survival model.

    Args:
        frame: Subject table
        family: One of ``exponential``, ``weibull``, ``lognormal``, ``loglogistic``
        covariates: Covariates of the accelerated failure time regression;
            empty for the marginal distribution
        duration_col: Column with the follow-up times
        event_col: Column with the event indicators
        grid_points: Number of times at which the curves are evaluated

    Returns:
        ParametricResult: the fitted model

    Raises:
        FitError: if the likelihood maximisation does not converge
    """
    if family not in FAMILIES:
        raise ValueError(f"family {family} not supported. Use one of {FAMILIES}")

    covariates = tuple(covariates)
    columns = [duration_col, event_col] + list(covariates)
    missing = [c for c in columns if c not in frame.columns]
    if missing:
        raise SchemaError(missing, source="parametric model data")

    data = frame[columns].astype(float)
    positive = data[duration_col] > 0
    if not positive.all():
        logger.warning(
            f"{(~positive).sum()} subjects with zero follow-up excluded from {family} fit"
        )
        data = data[positive]

    grid = time_grid(data[duration_col], grid_points)
    name = model_name(family, covariates)
    logger.debug(f"Fitting {name} on {len(data)} subjects")

    try:
        if not covariates:
            fitter = UNIVARIATE[family]()
            fitter.fit(data[duration_col], event_observed=data[event_col])
            survival = fitter.survival_function_at_times(grid).to_numpy()
            hazard = fitter.hazard_at_times(grid).to_numpy()
        else:
            mean_row = data[list(covariates)].mean().to_frame().T
            formula = " + ".join(covariates)
            if family == "exponential":
                fitter = ExponentialAFTFitter()
                # intercept first, at the marginal exponential estimate
                start = np.zeros(len(covariates) + 1)
                start[0] = np.log(data[duration_col].sum() / max(data[event_col].sum(), 1))
                fitter.fit(
                    data,
                    duration_col=duration_col,
                    event_col=event_col,
                    regressors={"lambda_": formula},
                    initial_point=start,
                )
            else:
                fitter = REGRESSION[family]()
                fitter.fit(
                    data, duration_col=duration_col, event_col=event_col, formula=formula
                )
            survival = fitter.predict_survival_function(mean_row, times=grid)
            survival = survival.iloc[:, 0].to_numpy()
            hazard = fitter.predict_hazard(mean_row, times=grid).iloc[:, 0].to_numpy()
    except ConvergenceError as e:
        raise FitError(family, covariates, str(e)) from e

    params = fitter.params_
    log_likelihood = float(fitter.log_likelihood_)
    if not np.isfinite(log_likelihood) or not np.isfinite(params.to_numpy()).all():
        raise FitError(family, covariates, "non-finite estimates")

    result = ParametricResult(
        family=family,
        covariates=covariates,
        parameters=_parameter_dict(params),
        log_likelihood=log_likelihood,
        n_params=len(params),
        n=len(data),
        n_events=int(data[event_col].sum()),
        times=grid,
        survival=survival,
        hazard=hazard,
    )
    logger.info(
        f"{name}: log-likelihood {result.log_likelihood:.3f}, "
        f"AIC {result.aic:.3f}, BIC {result.bic:.3f}"
    )
    return result


def fit_all(
    frame: pd.DataFrame,
    families: Sequence[str] = FAMILIES,
    covariate_sets: Sequence[Sequence[str]] = ((),),
    duration_col: str = "futime",
    event_col: str = "status",
    grid_points: int = 200,
) -> Tuple[List[ParametricResult], List[Dict]]:
    """
    Fit every family with every covariate set.

    Returns:
        tuple: (fitted results, failures) where a failure records the model
        name and the error message
    """
    results = []
    failures = []
    for covariates in covariate_sets:
        for family in families:
            try:
                results.append(
                    fit_parametric(
                        frame,
                        family,
                        covariates,
                        duration_col=duration_col,
                        event_col=event_col,
                        grid_points=grid_points,
                    )
                )
            except FitError as e:
                logger.error(f"Error fitting {model_name(family, covariates)}: {e}")
                failures.append(
                    {
                        "model": model_name(family, covariates),
                        "family": family,
                        "covariates": list(covariates),
                        "error": str(e),
                    }
                )
    return results, failures


@dataclass(frozen=True, eq=False)
class ModelRanking:
    """Models ordered by AIC with the AIC and BIC minimisers."""

    table: pd.DataFrame
    best_aic: Optional[str]
    best_bic: Optional[str]

    def as_dict(self) -> Dict:
        return {
            "best_aic": self.best_aic,
            "best_bic": self.best_bic,
            "models": self.table.to_dict(orient="records"),
        }


RANKING_COLUMNS = [
    "rank",
    "model",
    "family",
    "covariates",
    "n_params",
    "log_likelihood",
    "aic",
    "bic",
    "delta_aic",
    "error",
]


def rank_models(
    results: Sequence[ParametricResult], failures: Sequence[Dict] = ()
) -> ModelRanking:
    """
    Order models by AIC, breaking ties by BIC and then by name.

    Failed fits are listed after the ranked models without a rank.
    """
    ordered = sorted(results, key=lambda r: (r.aic, r.bic, r.name))
    rows = []
    for rank, result in enumerate(ordered, start=1):
        rows.append(
            {
                "rank": rank,
                "model": result.name,
                "family": result.family,
                "covariates": " + ".join(result.covariates),
                "n_params": result.n_params,
                "log_likelihood": result.log_likelihood,
                "aic": result.aic,
                "bic": result.bic,
                "delta_aic": result.aic - ordered[0].aic,
                "error": None,
            }
        )
    for failure in sorted(failures, key=lambda f: f["model"]):
        rows.append(
            {
                "rank": None,
                "model": failure["model"],
                "family": failure["family"],
                "covariates": " + ".join(failure["covariates"]),
                "error": failure["error"],
            }
        )

    table = pd.DataFrame(rows, columns=RANKING_COLUMNS)
    best_aic = ordered[0].name if ordered else None
    best_bic = min(ordered, key=lambda r: (r.bic, r.aic, r.name)).name if ordered else None
    if ordered:
        logger.info(f"Best model by AIC: {best_aic}, by BIC: {best_bic}")
    else:
        logger.warning("No parametric model could be fitted")
    return ModelRanking(table=table, best_aic=best_aic, best_bic=best_bic)
