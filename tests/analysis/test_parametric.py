"""Test the parametric survival models."""

__authors__ = ["Dominik Dahlem"]
__status__ = "Development"

import numpy as np
import pandas as pd
import pytest

from nafld.analysis import parametric
from nafld.exceptions import FitError


def make_cohort(n=300, seed=8):
    rng = np.random.default_rng(seed)
    x = rng.normal(0, 1, n)
    durations = rng.exponential(10 * np.exp(0.5 * x))
    censoring = rng.uniform(5, 40, n)
    return pd.DataFrame(
        {
            "futime": np.minimum(durations, censoring),
            "status": (durations <= censoring).astype(int),
            "x": x,
        }
    )


def make_result(name, log_likelihood, n_params, n=100):
    return parametric.ParametricResult(
        family=name,
        covariates=(),
        parameters={},
        log_likelihood=log_likelihood,
        n_params=n_params,
        n=n,
        n_events=n // 2,
        times=np.array([1.0]),
        survival=np.array([0.9]),
        hazard=np.array([0.1]),
    )


@pytest.mark.parametrize(
    "family, n_params",
    [("exponential", 1), ("weibull", 2), ("lognormal", 2), ("loglogistic", 2)],
)
def test_marginal_models(family, n_params):
    frame = make_cohort()
    result = parametric.fit_parametric(frame, family, grid_points=50)

    assert result.n_params == n_params
    assert result.n == len(frame)
    assert result.n_events == frame["status"].sum()
    assert result.aic == pytest.approx(-2 * result.log_likelihood + 2 * n_params)
    assert result.bic == pytest.approx(
        -2 * result.log_likelihood + n_params * np.log(len(frame))
    )
    assert len(result.times) == 50
    assert (np.diff(result.survival) <= 1e-12).all()
    assert ((result.survival > 0) & (result.survival <= 1)).all()
    assert (result.hazard > 0).all()


def test_exponential_scale():
    frame = make_cohort()
    result = parametric.fit_parametric(frame, "exponential")

    expected = frame["futime"].sum() / frame["status"].sum()
    assert result.parameters["lambda_"] == pytest.approx(expected, rel=1e-4)


@pytest.mark.parametrize("family", parametric.FAMILIES)
def test_regression_improves_likelihood(family):
    frame = make_cohort()
    marginal = parametric.fit_parametric(frame, family)
    regression = parametric.fit_parametric(frame, family, ["x"])

    assert regression.n_params == marginal.n_params + 1
    assert regression.log_likelihood >= marginal.log_likelihood - 1e-4
    assert regression.covariates == ("x",)
    assert regression.name == f"{family}(x)"
    assert ((regression.survival > 0) & (regression.survival <= 1)).all()


def test_exponential_regression_coefficient():
    result = parametric.fit_parametric(make_cohort(n=1000, seed=2), "exponential", ["x"])

    assert result.parameters["lambda_:x"] == pytest.approx(0.5, abs=0.15)


def test_zero_durations_are_excluded():
    frame = make_cohort()
    frame.loc[0, "futime"] = 0.0
    result = parametric.fit_parametric(frame, "weibull")

    assert result.n == len(frame) - 1


def test_unknown_family():
    with pytest.raises(ValueError):
        parametric.fit_parametric(make_cohort(), "gompertz")


def test_rank_models_is_deterministic():
    # a and b tie on AIC (22.0); a has the lower BIC
    a = make_result("a", -10.0, 1)
    b = make_result("b", -9.0, 2)
    c = make_result("c", -8.0, 1)
    d = make_result("d", -10.0, 1)

    ranking = parametric.rank_models([a, b, c, d])
    shuffled = parametric.rank_models([d, c, b, a])

    assert ranking.table["model"].tolist() == ["c(1)", "a(1)", "d(1)", "b(1)"]
    assert ranking.table.equals(shuffled.table)
    assert ranking.best_aic == "c(1)"
    assert ranking.best_bic == "c(1)"
    assert ranking.table["rank"].tolist() == [1, 2, 3, 4]
    assert ranking.table["delta_aic"].iloc[0] == 0.0


def test_best_aic_and_bic_can_differ():
    small = make_result("small", -100.0, 1, n=1000)
    large = make_result("large", -97.0, 3, n=1000)

    ranking = parametric.rank_models([small, large])
    assert ranking.best_aic == "large(1)"
    assert ranking.best_bic == "small(1)"


def test_fit_all_records_failures(monkeypatch):
    fit_parametric = parametric.fit_parametric

    def failing_weibull(frame, family, covariates=(), **kwargs):
        if family == "weibull":
            raise FitError(family, covariates, "forced")
        return fit_parametric(frame, family, covariates, **kwargs)

    monkeypatch.setattr(parametric, "fit_parametric", failing_weibull)
    results, failures = parametric.fit_all(
        make_cohort(), families=["exponential", "weibull"], covariate_sets=[(), ("x",)]
    )

    assert [r.name for r in results] == ["exponential(1)", "exponential(x)"]
    assert [f["model"] for f in failures] == ["weibull(1)", "weibull(x)"]
    assert "forced" in failures[0]["error"]

    ranking = parametric.rank_models(results, failures)
    assert len(ranking.table) == 4
    assert ranking.table["error"].notna().sum() == 2
    assert ranking.table["rank"].iloc[-1] is None or np.isnan(ranking.table["rank"].iloc[-1])
