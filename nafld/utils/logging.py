"""Logging utilities"""

__authors__ = ["Dominik Dahlem"]
__status__ = "Development"

import json
import logging

import numpy as np
import pandas as pd


# Add standard logging levels for convenient access
DEBUG = logging.DEBUG
INFO = logging.INFO
WARNING = logging.WARNING
ERROR = logging.ERROR
CRITICAL = logging.CRITICAL


def get_default_logger(prefix="nafld") -> logging.Logger:
    """
    Get the default logger instance with the given prefix.

    Args:
        prefix: Logger name prefix

    Returns:
        Logger instance
    """
    return logging.getLogger(prefix)


def set_verbosity(level=INFO):
    """
    Set the verbosity level for the default logger.

    Args:
        level: Logging level constant (e.g., logging.DEBUG, logging.INFO)
    """
    logger = get_default_logger()
    logger.setLevel(level)

    # Also set the root logger
    logging.getLogger().setLevel(level)


class NpEncoder(json.JSONEncoder):
    """Encode numpy and pandas types."""

    def default(self, obj):
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, np.bool_):
            return bool(obj)
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, pd.Series):
            return obj.to_dict()
        if isinstance(obj, pd.DataFrame):
            return obj.to_dict(orient="records")
        if hasattr(obj, "item"):
            try:
                return obj.item()
            except ValueError:
                return str(obj)
        return super(NpEncoder, self).default(obj)
