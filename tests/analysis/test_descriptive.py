"""Test the descriptive statistics."""

__authors__ = ["Dominik Dahlem"]
__status__ = "Development"

import numpy as np
import pandas as pd
import pytest

from nafld.analysis import descriptive
from nafld.data import binning


def make_subjects(n=40):
    rng = np.random.default_rng(7)
    age = np.linspace(20, 85, n)
    frame = pd.DataFrame(
        {
            "id": [str(i) for i in range(n)],
            "status": np.tile([0, 1], n // 2),
            "futime": rng.uniform(10, 5000, n).round(),
            "age": age,
            "male": np.repeat([0, 1], n // 2),
            "bmi": rng.uniform(17, 45, n),
        }
    )
    frame.loc[3, "bmi"] = np.nan
    return binning.annotate(frame)


def test_histogram_of_continuous_column():
    summaries = descriptive.describe_columns(make_subjects(), ["age", "bmi"], bins=10)

    age = summaries["age"]
    assert age.kind == "histogram"
    assert len(age.edges) == 11
    assert age.counts.sum() == 40
    assert age.stats["min"] == pytest.approx(20.0)
    assert age.stats["max"] == pytest.approx(85.0)

    bmi = summaries["bmi"]
    assert bmi.n == 39
    assert bmi.n_missing == 1
    assert bmi.counts.sum() == 39


def test_bars_of_binary_and_categorical_columns():
    summaries = descriptive.describe_columns(make_subjects(), ["male", "agecl"])

    male = summaries["male"]
    assert male.kind == "bar"
    assert male.levels == ["0", "1"]
    assert male.counts.tolist() == [20, 20]

    agecl = summaries["agecl"]
    assert agecl.kind == "bar"
    assert agecl.levels == list(binning.AGE_CLASSES.labels)
    assert agecl.counts.sum() == 40


def test_summary_to_frame():
    summaries = descriptive.describe_columns(make_subjects(), ["age", "male"], bins=5)

    hist = summaries["age"].to_frame()
    assert list(hist.columns) == ["left", "right", "count"]
    assert len(hist) == 5

    bars = summaries["male"].to_frame()
    assert bars["level"].tolist() == ["0", "1"]


def test_correlation_matrix():
    frame = make_subjects()
    frame["age_months"] = frame["age"] * 12
    corr = descriptive.correlation_matrix(
        frame, ["age", "age_months", "bmi", "agecl", "id"]
    )

    assert list(corr.columns) == ["age", "age_months", "bmi", "agecl", "id"]
    assert np.allclose(np.diag(corr), 1.0)
    assert np.allclose(corr.values, corr.values.T, equal_nan=True)
    assert corr.loc["age", "age_months"] == pytest.approx(1.0)
    assert corr.loc["age", "agecl"] > 0.9


def test_coerce_numeric_drops_text():
    frame = pd.DataFrame({"a": [1.0, 2.0], "b": ["x", "y"], "c": ["1", "z"]})
    numeric = descriptive.coerce_numeric(frame)

    assert list(numeric.columns) == ["a", "c"]
    assert numeric["c"].isna().tolist() == [False, True]


def test_event_summary():
    summary = descriptive.event_summary(make_subjects())

    assert summary["n_total"] == 40
    assert summary["n_events"] == 20
    assert summary["n_censored"] == 20
    assert summary["censoring_rate"] == pytest.approx(50.0)
