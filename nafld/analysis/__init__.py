"""Analysis modules of the NAFLD survival report.

Descriptive statistics, Kaplan-Meier estimation, stratum comparison tests,
Cox proportional hazards modelling with its diagnostics, fractional
polynomials and parametric survival models.
"""

__authors__ = ["Dominik Dahlem"]
__status__ = "Development"
