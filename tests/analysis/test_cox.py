"""Test the Cox model and its diagnostics."""

__authors__ = ["Dominik Dahlem"]
__status__ = "Development"

import numpy as np
import pandas as pd
import pytest

from nafld.analysis import cox
from nafld.exceptions import FitError, SchemaError


def make_cohort(n=300, seed=21):
    rng = np.random.default_rng(seed)
    age = rng.normal(55, 12, n)
    male = rng.binomial(1, 0.45, n)
    bmi = rng.normal(30, 5, n)
    rate = 1e-4 * np.exp(0.05 * (age - 55) + 0.4 * male + 0.02 * (bmi - 30))
    durations = rng.exponential(1 / rate)
    censoring = rng.uniform(500, 8000, n)
    return pd.DataFrame(
        {
            "futime": np.minimum(durations, censoring),
            "status": (durations <= censoring).astype(int),
            "age": age,
            "male": male,
            "bmi": bmi,
        }
    )


COVARIATES = ["age", "male", "bmi"]


def test_fit():
    frame = make_cohort()
    result = cox.fit_cox(frame, COVARIATES)

    assert result.covariates == tuple(COVARIATES)
    assert result.coefficients.index.tolist() == COVARIATES
    assert np.allclose(result.hazard_ratios, np.exp(result.coefficients))
    assert (result.standard_errors > 0).all()
    assert result.n == len(frame)
    assert result.n_events == frame["status"].sum()
    assert result.coefficients["age"] > 0
    assert 0.5 < result.concordance <= 1.0
    assert result.ties == "efron"


def test_negating_a_covariate():
    frame = make_cohort()
    result = cox.fit_cox(frame, COVARIATES)
    negated = cox.fit_cox(frame.assign(age=-frame["age"]), COVARIATES)

    assert negated.coefficients["age"] == pytest.approx(
        -result.coefficients["age"], abs=1e-6
    )
    assert negated.coefficients["male"] == pytest.approx(
        result.coefficients["male"], abs=1e-6
    )
    assert negated.log_likelihood == pytest.approx(result.log_likelihood, abs=1e-6)


def test_missing_column():
    with pytest.raises(SchemaError):
        cox.fit_cox(make_cohort().drop(columns="bmi"), COVARIATES)


def test_constant_covariate_raises_fit_error():
    frame = make_cohort().assign(bmi=30.0)
    with pytest.raises(FitError) as e:
        cox.fit_cox(frame, COVARIATES)

    assert e.value.model == cox.MODEL_NAME
    assert list(e.value.covariates) == COVARIATES


def test_survival_at_mean():
    frame = make_cohort()
    result = cox.fit_cox(frame, COVARIATES)
    times = np.linspace(0, frame["futime"].max(), 20)
    survival = result.survival_at_mean(times)

    assert len(survival) == 20
    assert (np.diff(survival.values) <= 1e-12).all()
    assert ((survival >= 0) & (survival <= 1)).all()


def test_as_dict():
    d = cox.fit_cox(make_cohort(), COVARIATES).as_dict()

    assert d["ties"] == "efron"
    assert set(d["coefficients"]) == set(COVARIATES)
    assert set(d["coefficients"]["age"]) == {"coef", "se", "hazard_ratio", "z", "p"}


def test_schoenfeld():
    frame = make_cohort()
    result = cox.fit_cox(frame, COVARIATES)
    diagnostics = cox.schoenfeld_test(result, frame)

    tests = diagnostics.tests
    assert len(tests) == len(COVARIATES) * len(cox.TIME_TRANSFORMS)
    assert set(tests["transform"]) == set(cox.TIME_TRANSFORMS)
    assert set(tests["covariate"]) == set(COVARIATES)
    assert ((tests["p"] >= 0) & (tests["p"] <= 1)).all()
    assert (tests["rejected"] == (tests["p"] < 0.05)).all()
    assert len(diagnostics.violations) == tests["rejected"].sum()

    residuals = diagnostics.residuals
    assert list(residuals.columns) == ["time"] + COVARIATES
    assert len(residuals) == result.n_events


def test_schoenfeld_detects_time_varying_effect():
    rng = np.random.default_rng(3)
    n = 600
    x = rng.binomial(1, 0.5, n)
    # the hazards cross at t = 1
    early = rng.exponential(1 / np.where(x == 1, 1.0, 0.1))
    late = 1 + rng.exponential(1 / np.where(x == 1, 0.1, 1.0))
    durations = np.where(early < 1, early, late)
    frame = pd.DataFrame({"futime": durations, "status": 1, "x": x})

    result = cox.fit_cox(frame, ["x"])
    tests = cox.schoenfeld_test(result, frame, transforms=["rank"]).tests
    assert tests.loc[0, "rejected"]


def test_unknown_transform():
    frame = make_cohort()
    result = cox.fit_cox(frame, COVARIATES)
    with pytest.raises(ValueError):
        cox.schoenfeld_test(result, frame, transforms=["sqrt"])


def test_martingale_residuals():
    frame = make_cohort()
    result = cox.fit_cox(frame, COVARIATES)
    diagnostics = cox.martingale_residuals(result, frame, covariates=["age", "bmi"])

    residuals = diagnostics.residuals
    assert residuals.index.equals(frame.index)
    assert (residuals <= 1 + 1e-12).all()
    assert residuals.sum() == pytest.approx(0.0, abs=1e-4)
    assert set(diagnostics.trends) == {"age", "bmi"}
    assert list(diagnostics.trends["age"].columns) == ["age", "trend"]
    assert all(v >= 0 for v in diagnostics.max_deviation.values())
