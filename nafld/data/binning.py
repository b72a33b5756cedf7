"""Ordered class binning of continuous covariates"""

__authors__ = ["Dominik Dahlem"]
__status__ = "Development"

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from nafld.utils import logging

logger = logging.get_default_logger()


@dataclass(frozen=True)
class BinScheme:
    """Left-closed, right-open intervals starting at ``breaks``.

    ``breaks`` holds the left edge of every class in ascending order; the last
    class is unbounded above. Values below the first edge, NaN and infinite
    values have no class.
    """

    name: str
    source: str
    breaks: Tuple[float, ...]
    labels: Tuple[str, ...]

    def __post_init__(self):
        if len(self.breaks) != len(self.labels):
            raise ValueError(
                f"{self.name}: {len(self.breaks)} breaks for {len(self.labels)} labels"
            )
        if any(lo >= hi for lo, hi in zip(self.breaks, self.breaks[1:])):
            raise ValueError(f"{self.name}: breaks must be strictly increasing")

    @property
    def edges(self) -> Sequence[float]:
        return list(self.breaks) + [np.inf]

    def label_for(self, value) -> Optional[str]:
        """Class label of a single value, or ``None`` when it cannot be binned."""
        try:
            value = float(value)
        except (TypeError, ValueError):
            return None
        if not np.isfinite(value) or value < self.breaks[0]:
            return None

        idx = int(np.searchsorted(self.breaks, value, side="right")) - 1
        return self.labels[idx]

    def apply(self, values: pd.Series) -> pd.Series:
        """Ordered categorical of class labels; unbinnable values are missing."""
        numeric = pd.to_numeric(values, errors="coerce")
        classes = pd.cut(
            numeric,
            bins=self.edges,
            right=False,
            labels=list(self.labels),
            ordered=True,
        )
        n_missing = int(classes.isna().sum() - numeric.isna().sum())
        if n_missing > 0:
            logger.warning(f"{n_missing} values of {self.source} outside {self.name}")
        return classes.rename(self.name)


AGE_CLASSES = BinScheme(
    name="agecl",
    source="age",
    breaks=(0.0, 30.0, 45.0, 60.0, 75.0),
    labels=("[0,30)", "[30,45)", "[45,60)", "[60,75)", "[75,Inf)"),
)

BMI_CLASSES = BinScheme(
    name="bmicl",
    source="bmi",
    breaks=(0.0, 18.5, 25.0, 30.0, 35.0, 40.0),
    labels=("Underweight", "Normal", "Overweight", "Class1", "Class2", "Class3"),
)

DEFAULT_SCHEMES = (AGE_CLASSES, BMI_CLASSES)


def annotate(
    frame: pd.DataFrame, schemes: Sequence[BinScheme] = DEFAULT_SCHEMES
) -> pd.DataFrame:
    """
    Add the class columns of the given schemes.

    Args:
        frame: Cleaned subject table, left untouched
        schemes: Bin schemes to apply

    Returns:
        pd.DataFrame: a new frame with one categorical column per scheme
    """
    return frame.assign(**{s.name: s.apply(frame[s.source]) for s in schemes})
