"""Test loading and cleaning of the subject table."""

__authors__ = ["Dominik Dahlem"]
__status__ = "Development"

import pandas as pd
import polars as pl
import pytest

from nafld.data import load
from nafld.exceptions import SchemaError

HEADER = "id,status,futime,age,male,weight,height,bmi"

ROWS = [
    "1,0,2000,55,1,90.5,178,28.6",
    "2,1,350,62,0,70,160,27.3",
    "3,0,4100,41,1,,182,26.0",
    "4,1,800,70,0,65,NA,25.4",
    "5,0,1200,abc,1,80,170,27.7",
    "6,1,-3,50,1,80,170,27.7",
    "7,2,1500,50,0,80,170,27.7",
    "8,1,0,38,0,101,168,35.8",
]


def write_subjects(path, header=HEADER, rows=ROWS):
    path.write_text("\n".join([header] + rows) + "\n")
    return path


def test_load_counts_dropped_rows(tmp_path):
    subjects = load.load_subjects(write_subjects(tmp_path / "nafld.csv"))

    report = subjects.report
    assert report.n_read == 8
    assert report.n_incomplete == 2
    assert report.n_malformed == 3
    assert report.n_kept == 3
    assert report.n_dropped == 5
    assert len(subjects) == 3
    assert subjects.frame["id"].tolist() == ["1", "2", "8"]


def test_load_types(tmp_path):
    frame = load.load_subjects(write_subjects(tmp_path / "nafld.csv")).frame

    assert pd.api.types.is_integer_dtype(frame["status"])
    assert pd.api.types.is_integer_dtype(frame["male"])
    assert pd.api.types.is_float_dtype(frame["bmi"])
    assert frame["futime"].tolist() == [2000.0, 350.0, 0.0]
    assert set(frame["status"]) <= {0, 1}


def test_load_missing_column(tmp_path):
    path = write_subjects(
        tmp_path / "nafld.csv",
        header="id,status,futime,age,male,weight,height",
        rows=["1,0,2000,55,1,90.5,178"],
    )
    with pytest.raises(SchemaError) as e:
        load.load_subjects(path)

    assert e.value.missing == ["bmi"]
    assert "bmi" in str(e.value)


def test_schema_error_is_value_error():
    assert issubclass(SchemaError, ValueError)


def test_clean_pandas_frame_ignores_extra_columns():
    frame = pd.DataFrame(
        {
            "id": [1, 2, 3],
            "status": [0, 1, 1],
            "futime": [10.0, 20.0, None],
            "age": [50, 60, 70],
            "male": [1, 0, 1],
            "weight": [80.0, 70.0, 60.0],
            "height": [180.0, 170.0, 160.0],
            "bmi": [24.7, 24.2, 23.4],
            "case.id": [10, 11, 12],
        }
    )
    subjects = load.clean_subjects(frame, source="frame")

    assert subjects.report.n_incomplete == 1
    assert subjects.report.n_kept == 2
    assert "case.id" not in subjects.frame.columns
    assert list(subjects.frame.columns) == list(load.REQUIRED_COLUMNS)


def test_clean_polars_frame():
    frame = pl.DataFrame(
        {
            "id": ["a", "b"],
            "status": [1, 0],
            "futime": [5.0, 7.0],
            "age": [30.0, 40.0],
            "male": [0, 3],
            "weight": [60.0, 70.0],
            "height": [165.0, 175.0],
            "bmi": [22.0, 22.9],
        }
    )
    subjects = load.clean_subjects(frame)

    assert subjects.report.n_malformed == 1
    assert subjects.frame["id"].tolist() == ["a"]


def test_load_nan_tokens_are_missing(tmp_path):
    path = write_subjects(
        tmp_path / "nafld.csv",
        rows=[
            "1,0,2000,55,1,90.5,178,28.6",
            "2,0,20,NaN,1,80,170,27.7",
            "3,1,30,50,0,80,170,nan",
            "4,1,NaN,61,0,75,165,27.5",
        ],
    )
    subjects = load.load_subjects(path)

    assert subjects.report.n_incomplete == 3
    assert subjects.report.n_malformed == 0
    assert subjects.report.n_kept == 1
    assert subjects.frame["id"].tolist() == ["1"]
    assert subjects.frame.notna().all().all()


def test_clean_polars_frame_with_nan():
    frame = pl.DataFrame(
        {
            "id": ["a", "b"],
            "status": [1, 0],
            "futime": [5.0, 7.0],
            "age": [30.0, float("nan")],
            "male": [0, 1],
            "weight": [60.0, 70.0],
            "height": [165.0, 175.0],
            "bmi": [22.0, 22.9],
        }
    )
    subjects = load.clean_subjects(frame)

    assert subjects.report.n_incomplete == 1
    assert subjects.report.n_kept == 1
    assert subjects.frame["id"].tolist() == ["a"]


def test_report_as_dict(tmp_path):
    report = load.load_subjects(write_subjects(tmp_path / "nafld.csv")).report
    d = report.as_dict()

    assert d["n_read"] == 8
    assert d["n_dropped"] == 5
    assert d["source"].endswith("nafld.csv")
