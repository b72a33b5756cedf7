"""Exceptions raised by the NAFLD survival report"""

__authors__ = ["Dominik Dahlem"]
__status__ = "Development"

from typing import Sequence


class NafldError(Exception):
    """Base class of the errors raised by this package."""


class SchemaError(NafldError, ValueError):
    """The input table does not provide the fixed subject schema.

    This is a configuration error: the report cannot run on such a table and
    the load is never retried.
    """

    def __init__(self, missing: Sequence[str], source: str = "input table"):
        self.missing = list(missing)
        self.source = source
        super().__init__(
            f"{source} is missing required column(s): {', '.join(self.missing)}"
        )


class FitError(NafldError, RuntimeError):
    """A likelihood maximisation did not converge.

    Carries the name of the model and the covariate set that was attempted so
    that a report can state which fit failed.
    """

    def __init__(self, model: str, covariates: Sequence[str], detail: str = ""):
        self.model = model
        self.covariates = list(covariates)
        self.detail = detail
        covs = ", ".join(self.covariates) if self.covariates else "no covariates"
        message = f"{model} fit with [{covs}] did not converge"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
