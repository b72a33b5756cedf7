"""Survival analysis report for the NAFLD cohort"""

__authors__ = ["Dominik Dahlem"]
__status__ = "Development"

__version__ = "0.1.0"
