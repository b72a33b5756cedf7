"""Cox proportional hazards model and its diagnostics.

The model is fitted with ``lifelines`` (Efron's handling of ties). The
diagnostics test the proportional hazards assumption with scaled Schoenfeld
residuals under several time transforms and check the functional form of
the continuous covariates with smoothed martingale residuals.
"""

__authors__ = ["Dominik Dahlem"]
__status__ = "Development"

from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from lifelines import CoxPHFitter
from lifelines.exceptions import ConvergenceError
from lifelines.statistics import proportional_hazard_test
from statsmodels.nonparametric.smoothers_lowess import lowess

from nafld.exceptions import FitError, SchemaError
from nafld.utils import logging

logger = logging.get_default_logger()

MODEL_NAME = "Cox proportional hazards"
TIES = "efron"
TIME_TRANSFORMS = ("identity", "rank", "log", "km")


@dataclass(frozen=True, eq=False)
class CoxResult:
    """A fitted Cox model.

    ``model`` is the fitted ``lifelines`` estimator, kept for the residual
    diagnostics; it is not refitted or modified afterwards.
    """

    covariates: Tuple[str, ...]
    duration_col: str
    event_col: str
    summary: pd.DataFrame
    log_likelihood: float
    aic: float
    concordance: float
    n: int
    n_events: int
    baseline_cumulative_hazard: pd.Series
    means: pd.Series
    model: CoxPHFitter
    ties: str = TIES

    @property
    def coefficients(self) -> pd.Series:
        return self.summary["coef"]

    @property
    def standard_errors(self) -> pd.Series:
        return self.summary["se(coef)"]

    @property
    def hazard_ratios(self) -> pd.Series:
        return self.summary["exp(coef)"]

    def survival_at_mean(self, times: Optional[Sequence[float]] = None) -> pd.Series:
        """Model-implied survival of a subject with the mean covariate values."""
        survival = self.model.predict_survival_function(
            self.means.to_frame().T, times=times
        )
        return survival.iloc[:, 0].rename("cox")

    def as_dict(self) -> Dict:
        return {
            "covariates": list(self.covariates),
            "ties": self.ties,
            "n": self.n,
            "n_events": self.n_events,
            "log_likelihood": self.log_likelihood,
            "aic_partial": self.aic,
            "concordance": self.concordance,
            "coefficients": self.summary[["coef", "se(coef)", "exp(coef)", "z", "p"]]
            .rename(columns={"se(coef)": "se", "exp(coef)": "hazard_ratio"})
            .to_dict(orient="index"),
        }


def _model_frame(
    frame: pd.DataFrame, covariates: Sequence[str], duration_col: str, event_col: str
) -> pd.DataFrame:
    columns = [duration_col, event_col] + list(covariates)
    missing = [c for c in columns if c not in frame.columns]
    if missing:
        raise SchemaError(missing, source="Cox model data")
    return frame[columns].astype(float)


def fit_cox(
    frame: pd.DataFrame,
    covariates: Sequence[str],
    duration_col: str = "futime",
    event_col: str = "status",
    alpha: float = 0.05,
    penalizer: float = 0.0,
) -> CoxResult:
    """
    Fit a Cox proportional hazards model.

    Args:
        frame: Subject table
        covariates: Covariate columns entering the linear predictor
        duration_col: Column with the follow-up times
        event_col: Column with the event indicators
        alpha: One minus the level of the coefficient confidence intervals
        penalizer: Ridge penalty, 0 for the plain partial likelihood

    Returns:
        CoxResult: the fitted model

    Raises:
        FitError: if the partial likelihood maximisation does not converge
    """
    covariates = tuple(covariates)
    data = _model_frame(frame, covariates, duration_col, event_col)

    cph = CoxPHFitter(alpha=alpha, penalizer=penalizer)
    try:
        cph.fit(data, duration_col=duration_col, event_col=event_col)
    except ConvergenceError as e:
        raise FitError(MODEL_NAME, covariates, str(e)) from e

    if not np.isfinite(cph.params_).all() or not np.isfinite(cph.log_likelihood_):
        raise FitError(MODEL_NAME, covariates, "non-finite estimates")

    logger.info(
        f"Cox model on {list(covariates)}: log-likelihood {cph.log_likelihood_:.3f}, "
        f"concordance {cph.concordance_index_:.3f}"
    )

    return CoxResult(
        covariates=covariates,
        duration_col=duration_col,
        event_col=event_col,
        summary=cph.summary.copy(),
        log_likelihood=float(cph.log_likelihood_),
        aic=float(cph.AIC_partial_),
        concordance=float(cph.concordance_index_),
        n=len(data),
        n_events=int(data[event_col].sum()),
        baseline_cumulative_hazard=cph.baseline_cumulative_hazard_.iloc[:, 0].rename(
            "baseline_cumulative_hazard"
        ),
        means=data[list(covariates)].mean(),
        model=cph,
    )


@dataclass(frozen=True, eq=False)
class SchoenfeldDiagnostics:
    """Proportional hazards tests and the residuals behind them.

    ``tests`` has one row per covariate and time transform. ``residuals``
    holds the scaled Schoenfeld residuals of every event with its time.
    """

    tests: pd.DataFrame
    residuals: pd.DataFrame
    alpha: float

    @property
    def violations(self) -> pd.DataFrame:
        return self.tests[self.tests["rejected"]]


def schoenfeld_test(
    result: CoxResult,
    frame: pd.DataFrame,
    transforms: Sequence[str] = TIME_TRANSFORMS,
    alpha: float = 0.05,
) -> SchoenfeldDiagnostics:
    """
    Test the proportional hazards assumption per covariate and time transform.

    The statistic measures the association between the scaled Schoenfeld
    residuals of a covariate and the transformed event time; a small p-value
    rejects proportional hazards for that covariate.

    Args:
        result: Fitted Cox model
        frame: The subject table the model was fitted on
        transforms: Time transforms, any of ``identity``, ``rank``, ``log``, ``km``
        alpha: Level at which the assumption is rejected

    Returns:
        SchoenfeldDiagnostics: tests and residuals
    """
    unknown = [t for t in transforms if t not in TIME_TRANSFORMS]
    if unknown:
        raise ValueError(f"time transforms {unknown} not supported. Use {TIME_TRANSFORMS}")

    data = _model_frame(frame, result.covariates, result.duration_col, result.event_col)
    residuals = result.model.compute_residuals(data, kind="scaled_schoenfeld")

    rows = []
    for transform in transforms:
        test = proportional_hazard_test(
            result.model,
            data,
            time_transform=transform,
            precomputed_residuals=residuals,
        )
        for covariate, row in test.summary.iterrows():
            rows.append(
                {
                    "covariate": covariate,
                    "transform": transform,
                    "statistic": float(row["test_statistic"]),
                    "p": float(row["p"]),
                    "rejected": bool(row["p"] < alpha),
                }
            )
            if row["p"] < alpha:
                logger.warning(
                    f"Proportional hazards rejected for {covariate} "
                    f"({transform} time, p={row['p']:.4f})"
                )

    residuals = residuals.copy()
    residuals.insert(0, "time", data.loc[residuals.index, result.duration_col].values)

    return SchoenfeldDiagnostics(tests=pd.DataFrame(rows), residuals=residuals, alpha=alpha)


@dataclass(frozen=True, eq=False)
class MartingaleDiagnostics:
    """Martingale residuals and their smoothed trend against covariates.

    A linear functional form is plausible when the trend is flat;
    ``max_deviation`` is the largest absolute value of the centred trend.
    """

    residuals: pd.Series
    trends: Dict[str, pd.DataFrame]
    max_deviation: Dict[str, float]


def martingale_residuals(
    result: CoxResult,
    frame: pd.DataFrame,
    covariates: Optional[Sequence[str]] = None,
    frac: float = 2.0 / 3.0,
) -> MartingaleDiagnostics:
    """
    Martingale residuals of the fitted model with LOWESS trends.

    Args:
        result: Fitted Cox model
        frame: The subject table the model was fitted on
        covariates: Continuous covariates to smooth against, all model
            covariates by default
        frac: LOWESS span

    Returns:
        MartingaleDiagnostics: residuals aligned with ``frame`` and trends
    """
    covariates = list(result.covariates if covariates is None else covariates)
    data = _model_frame(frame, result.covariates, result.duration_col, result.event_col)

    residuals = result.model.compute_residuals(data, kind="martingale")["martingale"]
    residuals = residuals.reindex(data.index)

    trends = {}
    max_deviation = {}
    for covariate in covariates:
        x = frame.loc[data.index, covariate].to_numpy(dtype=float)
        smoothed = lowess(residuals.to_numpy(), x, frac=frac, return_sorted=True)
        trend = pd.DataFrame({covariate: smoothed[:, 0], "trend": smoothed[:, 1]})
        trends[covariate] = trend
        centred = trend["trend"] - trend["trend"].mean()
        max_deviation[covariate] = float(np.abs(centred).max())
        logger.debug(
            f"Martingale trend of {covariate}: max deviation {max_deviation[covariate]:.4f}"
        )

    return MartingaleDiagnostics(
        residuals=residuals.rename("martingale"),
        trends=trends,
        max_deviation=max_deviation,
    )
