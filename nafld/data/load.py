"""Load and clean the NAFLD subject table.

The loader reads the fixed eight-column subject schema, drops every record with
a missing field and every record that violates the schema invariants, and
reports how many rows were removed at each step.
"""

__authors__ = ["Dominik Dahlem"]
__status__ = "Development"

from dataclasses import asdict, dataclass
from logging import DEBUG, ERROR
from pathlib import Path
from typing import Dict, Sequence, Union

import pandas as pd
import polars as pl
from logdecorator import log_on_end, log_on_error, log_on_start

from nafld.exceptions import SchemaError
from nafld.utils import logging

logger = logging.get_default_logger()

ID_COLUMN = "id"
DURATION_COLUMN = "futime"
EVENT_COLUMN = "status"
NUMERIC_COLUMNS = ("status", "futime", "age", "male", "weight", "height", "bmi")
REQUIRED_COLUMNS = (ID_COLUMN,) + NUMERIC_COLUMNS
BINARY_COLUMNS = ("status", "male")
DEFAULT_NULL_VALUES = ("NA", "")


@dataclass(frozen=True)
class CleaningReport:
    """Row counts of a cleaning pass."""

    source: str
    n_read: int
    n_incomplete: int
    n_malformed: int
    n_kept: int

    @property
    def n_dropped(self) -> int:
        return self.n_incomplete + self.n_malformed

    def as_dict(self) -> Dict:
        result = asdict(self)
        result["n_dropped"] = self.n_dropped
        return result


@dataclass(frozen=True, eq=False)
class SubjectTable:
    """The cleaned subject table and the report of how it was obtained.

    The frame is read-only by convention: downstream steps derive new frames
    (see :func:`nafld.data.binning.annotate`) and never write into it.
    """

    frame: pd.DataFrame
    report: CleaningReport

    def __len__(self) -> int:
        return len(self.frame)


def _as_string_frame(frame: Union[pd.DataFrame, pl.DataFrame]) -> pl.DataFrame:
    """Represent every required column as strings so casts can detect bad values."""
    if isinstance(frame, pl.DataFrame):
        return frame.select(
            [pl.col(c).cast(pl.Utf8, strict=False) for c in REQUIRED_COLUMNS]
        )

    columns = {}
    for col in REQUIRED_COLUMNS:
        columns[col] = pl.Series(
            col,
            [None if pd.isna(v) else str(v) for v in frame[col].tolist()],
            dtype=pl.Utf8,
        )
    return pl.DataFrame(columns)


def _check_schema(columns: Sequence[str], source: str) -> None:
    missing = [c for c in REQUIRED_COLUMNS if c not in columns]
    if missing:
        raise SchemaError(missing, source=source)

    extra = [c for c in columns if c not in REQUIRED_COLUMNS]
    if extra:
        logger.debug(f"Ignoring columns outside the subject schema: {extra}")


def _not_a_number() -> pl.Expr:
    """NaN tokens (``NaN``, ``nan``) and float NaNs are missing values too."""
    return pl.any_horizontal(
        [
            pl.col(c).cast(pl.Float64, strict=False).is_nan().fill_null(False)
            for c in NUMERIC_COLUMNS
        ]
    )


def _invariant_violation() -> pl.Expr:
    violation = pl.col(DURATION_COLUMN) < 0
    for col in BINARY_COLUMNS:
        violation = violation | ~pl.col(col).is_in([0.0, 1.0])
    return violation.fill_null(False)


@log_on_start(DEBUG, "Cleaning subjects from {source}...", logger=logger)
@log_on_error(
    ERROR,
    "Error cleaning subjects: {e!r}",
    logger=logger,
    on_exceptions=Exception,
    reraise=True,
)
@log_on_end(DEBUG, "done!", logger=logger)
def clean_subjects(
    frame: Union[pd.DataFrame, pl.DataFrame], source: str = "input table"
) -> SubjectTable:
    """
    Validate the subject schema and drop incomplete or malformed records.

    Args:
        frame: Raw subject table (pandas or polars)
        source: Name of the table used in log messages and errors

    Returns:
        SubjectTable: cleaned pandas frame with a cleaning report

    Raises:
        SchemaError: if one of the required columns is absent
    """
    _check_schema(list(frame.columns), source)
    raw = _as_string_frame(frame)
    n_read = raw.height

    flagged = (
        raw.with_columns(
            (
                pl.any_horizontal([pl.col(c).is_null() for c in REQUIRED_COLUMNS])
                | _not_a_number()
            ).alias("_incomplete")
        )
        .with_columns(
            [pl.col(c).cast(pl.Float64, strict=False) for c in NUMERIC_COLUMNS]
        )
        .with_columns(
            (
                ~pl.col("_incomplete")
                & (
                    pl.any_horizontal([pl.col(c).is_null() for c in NUMERIC_COLUMNS])
                    | _invariant_violation()
                )
            ).alias("_malformed")
        )
    )

    n_incomplete = int(flagged["_incomplete"].sum())
    n_malformed = int(flagged["_malformed"].sum())

    kept = (
        flagged.filter(~pl.col("_incomplete") & ~pl.col("_malformed"))
        .drop(["_incomplete", "_malformed"])
        .with_columns([pl.col(c).cast(pl.Int64) for c in BINARY_COLUMNS])
    )

    report = CleaningReport(
        source=source,
        n_read=n_read,
        n_incomplete=n_incomplete,
        n_malformed=n_malformed,
        n_kept=kept.height,
    )

    logger.info(f"Read {n_read} subjects from {source}")
    logger.info(f"Dropped {n_incomplete} subjects with missing fields")
    if n_malformed > 0:
        logger.warning(f"Dropped {n_malformed} subjects with malformed values")
    logger.info(f"Kept {report.n_kept} complete subjects")

    result = kept.to_pandas()
    duplicated = result[ID_COLUMN].duplicated()
    if duplicated.any():
        logger.warning(f"{int(duplicated.sum())} subject ids occur more than once")

    return SubjectTable(frame=result, report=report)


@log_on_start(DEBUG, "Load subjects from {path}...", logger=logger)
@log_on_error(
    ERROR,
    "Error loading subjects: {e!r}",
    logger=logger,
    on_exceptions=Exception,
    reraise=True,
)
@log_on_end(DEBUG, "done!", logger=logger)
def load_subjects(
    path: Union[str, Path],
    null_values: Sequence[str] = DEFAULT_NULL_VALUES,
    separator: str = ",",
) -> SubjectTable:
    """
    Read the subject CSV file and clean it.

    All columns are read as strings first, so that values that are not numbers
    are counted as malformed instead of failing the read.

    Args:
        path: CSV file with at least the subject schema columns
        null_values: Tokens read as missing values
        separator: Field separator

    Returns:
        SubjectTable: cleaned table with its cleaning report
    """
    path = Path(path)
    raw = pl.read_csv(
        path,
        separator=separator,
        null_values=list(null_values),
        infer_schema_length=0,
    )
    return clean_subjects(raw, source=str(path))
