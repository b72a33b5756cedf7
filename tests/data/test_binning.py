"""Test the age and BMI classes."""

__authors__ = ["Dominik Dahlem"]
__status__ = "Development"

import hypothesis.strategies as st
import numpy as np
import pandas as pd
import pytest
from hypothesis import given, settings

from nafld.data import binning


@pytest.mark.parametrize(
    "value, label",
    [
        (0, "[0,30)"),
        (29.999, "[0,30)"),
        (30, "[30,45)"),
        (44.9, "[30,45)"),
        (45, "[45,60)"),
        (60, "[60,75)"),
        (75, "[75,Inf)"),
        (102, "[75,Inf)"),
    ],
)
def test_age_boundaries(value, label):
    assert binning.AGE_CLASSES.label_for(value) == label


@pytest.mark.parametrize(
    "value, label",
    [
        (12.0, "Underweight"),
        (18.49, "Underweight"),
        (18.5, "Normal"),
        (24.99, "Normal"),
        (25, "Overweight"),
        (30, "Class1"),
        (35, "Class2"),
        (40, "Class3"),
        (65.2, "Class3"),
    ],
)
def test_bmi_boundaries(value, label):
    assert binning.BMI_CLASSES.label_for(value) == label


@pytest.mark.parametrize("value", [-1, np.nan, np.inf, None, "abc"])
def test_unbinnable_values(value):
    assert binning.AGE_CLASSES.label_for(value) is None


@given(st.floats(min_value=0, max_value=1e6, allow_nan=False, allow_infinity=False))
@settings(max_examples=200, deadline=None)
def test_binning_is_total(value):
    for scheme in binning.DEFAULT_SCHEMES:
        label = scheme.label_for(value)
        assert label in scheme.labels
        assert scheme.apply(pd.Series([value]))[0] == label


def test_apply_is_ordered_categorical():
    classes = binning.BMI_CLASSES.apply(pd.Series([17.0, 41.0, np.nan, 26.0]))

    assert classes.name == "bmicl"
    assert classes.cat.ordered
    assert list(classes.cat.categories) == list(binning.BMI_CLASSES.labels)
    assert classes.isna().tolist() == [False, False, True, False]
    assert classes.cat.codes.tolist() == [0, 5, -1, 2]


def test_invalid_schemes():
    with pytest.raises(ValueError):
        binning.BinScheme("x", "x", (0.0, 1.0), ("a",))
    with pytest.raises(ValueError):
        binning.BinScheme("x", "x", (0.0, 2.0, 1.0), ("a", "b", "c"))


def test_annotate_returns_new_frame():
    frame = pd.DataFrame({"age": [25.0, 50.0, 80.0], "bmi": [20.0, 31.0, 45.0]})
    annotated = binning.annotate(frame)

    assert list(frame.columns) == ["age", "bmi"]
    assert annotated["agecl"].astype(str).tolist() == ["[0,30)", "[45,60)", "[75,Inf)"]
    assert annotated["bmicl"].astype(str).tolist() == ["Normal", "Class1", "Class3"]
