"""Cox partial likelihood with Breslow ties.

Thin wrapper around ``statsmodels``' ``PHReg`` used by the fractional
polynomial search, which compares the deviances of many candidate models
under Breslow's handling of tied event times.
"""

__authors__ = ["Dominik Dahlem"]
__status__ = "Development"

import warnings
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.duration.hazard_regression import PHReg
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from nafld.exceptions import FitError
from nafld.utils import logging

logger = logging.get_default_logger()

MODEL_NAME = "Cox partial likelihood (Breslow)"


def _model(durations: np.ndarray, events: np.ndarray, X: np.ndarray) -> PHReg:
    return PHReg(endog=durations, exog=X, status=events, ties="breslow")


def breslow_loglik(
    beta: np.ndarray, durations: np.ndarray, events: np.ndarray, X: np.ndarray
) -> Tuple[float, np.ndarray, np.ndarray]:
    """
    Log partial likelihood, gradient and Hessian with Breslow ties.

    Every event at time ``t`` is compared with the full risk set of subjects
    whose duration is at least ``t``.

    Args:
        beta: Coefficients, shape (p,)
        durations: Event or censoring times, shape (n,)
        events: Event indicators, shape (n,)
        X: Design matrix, shape (n, p)

    Returns:
        tuple: (log-likelihood, gradient, Hessian)
    """
    beta = np.asarray(beta, dtype=float)
    model = _model(
        np.asarray(durations, dtype=float),
        np.asarray(events, dtype=int),
        np.asarray(X, dtype=float),
    )
    return float(model.loglike(beta)), model.score(beta), model.hessian(beta)


@dataclass(frozen=True, eq=False)
class PartialLikelihoodFit:
    names: Tuple[str, ...]
    coefficients: np.ndarray
    standard_errors: np.ndarray
    log_likelihood: float
    null_log_likelihood: float
    n: int
    n_events: int

    @property
    def deviance(self) -> float:
        return -2.0 * self.log_likelihood

    @property
    def n_params(self) -> int:
        return len(self.names)

    def summary(self) -> pd.DataFrame:
        z = self.coefficients / self.standard_errors
        return pd.DataFrame(
            {
                "coef": self.coefficients,
                "se(coef)": self.standard_errors,
                "exp(coef)": np.exp(self.coefficients),
                "z": z,
                "p": 2 * stats.norm.sf(np.abs(z)),
            },
            index=pd.Index(self.names, name="covariate"),
        )


def fit_breslow(
    durations,
    events,
    X,
    names: Optional[Sequence[str]] = None,
    max_iter: int = 50,
    tol: float = 1e-9,
) -> PartialLikelihoodFit:
    """
    Maximise the Breslow partial likelihood with ``PHReg`` (Newton-Raphson).

    Args:
        durations: Event or censoring times
        events: Event indicators (1=event, 0=censored)
        X: Design matrix, shape (n, p); p may be zero
        names: Column names of the design matrix
        max_iter: Maximum number of Newton steps
        tol: Convergence tolerance on the change in the coefficients

    Returns:
        PartialLikelihoodFit: the fitted model

    Raises:
        FitError: if the maximisation does not converge
    """
    durations = np.asarray(durations, dtype=float)
    events = np.asarray(events, dtype=int)
    X = np.asarray(X, dtype=float)
    if X.ndim == 1:
        X = X[:, None]
    n, p = X.shape
    names = tuple(names) if names is not None else tuple(f"x{j}" for j in range(p))

    if len(names) != p:
        raise ValueError(f"{len(names)} names for {p} columns")
    if events.sum() == 0:
        raise FitError(MODEL_NAME, names, "no events")
    if not np.isfinite(X).all():
        raise FitError(MODEL_NAME, names, "design matrix has non-finite values")

    # the null likelihood only depends on the risk sets
    null_loglik = float(_model(durations, events, np.zeros((n, 1))).loglike(np.zeros(1)))

    if p == 0:
        return PartialLikelihoodFit(
            names=names,
            coefficients=np.zeros(0),
            standard_errors=np.zeros(0),
            log_likelihood=null_loglik,
            null_log_likelihood=null_loglik,
            n=n,
            n_events=int(events.sum()),
        )

    try:
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always", ConvergenceWarning)
            result = _model(durations, events, X).fit(maxiter=max_iter, tol=tol)
    except np.linalg.LinAlgError as e:
        raise FitError(MODEL_NAME, names, "singular information matrix") from e

    if any(issubclass(w.category, ConvergenceWarning) for w in caught):
        raise FitError(MODEL_NAME, names, f"no convergence after {max_iter} iterations")

    beta = np.asarray(result.params, dtype=float)
    standard_errors = np.asarray(result.bse, dtype=float)
    loglik = float(result.llf)
    if not (
        np.isfinite(beta).all() and np.isfinite(standard_errors).all() and np.isfinite(loglik)
    ) or (standard_errors <= 0).any():
        raise FitError(MODEL_NAME, names, "degenerate information matrix")

    logger.debug(f"Breslow fit of {names}: log-likelihood {loglik:.4f}")

    return PartialLikelihoodFit(
        names=names,
        coefficients=beta,
        standard_errors=standard_errors,
        log_likelihood=loglik,
        null_log_likelihood=null_loglik,
        n=n,
        n_events=int(events.sum()),
    )
