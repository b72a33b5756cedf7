"""Figures of the survival report.

Every function renders numeric series produced by the analysis modules and
writes one PNG file. A failing figure is logged and skipped; it never stops
the report.
"""

__authors__ = ["Dominik Dahlem"]
__status__ = "Development"

import os
from typing import Dict, List, Optional, Sequence

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from nafld.analysis.descriptive import ColumnSummary
from nafld.analysis.kaplan_meier import SurvivalCurve
from nafld.utils import logging

logger = logging.get_default_logger()


def _save(path: str) -> str:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    plt.tight_layout()
    plt.savefig(path)
    plt.close()
    logger.debug(f"Saved figure to {path}")
    return path


def plot_column_summaries(
    summaries: Dict[str, ColumnSummary], output_dir: str
) -> List[str]:
    """Histogram or bar chart per column."""
    paths = []
    for name, summary in summaries.items():
        try:
            plt.figure(figsize=(10, 6))
            if summary.kind == "histogram":
                plt.stairs(summary.counts, summary.edges, fill=True, alpha=0.7)
                plt.xlabel(name)
                plt.ylabel("Count")
            else:
                sns.barplot(x=summary.levels, y=summary.counts)
                plt.xticks(rotation=45, ha="right")
                plt.ylabel("Count")
            plt.title(f"Distribution of {name} (n={summary.n}, missing={summary.n_missing})")
            paths.append(_save(os.path.join(output_dir, f"dist_{name}.png")))
        except Exception as e:
            logger.error(f"Error plotting distribution of {name}: {str(e)}")
            plt.close()
    return paths


def plot_correlation(corr: pd.DataFrame, path: str) -> Optional[str]:
    try:
        plt.figure(figsize=(10, 8))
        sns.heatmap(
            corr,
            annot=True,
            fmt=".2f",
            cmap="coolwarm",
            vmin=-1,
            vmax=1,
            square=True,
        )
        plt.title("Pearson Correlation Matrix")
        return _save(path)
    except Exception as e:
        logger.error(f"Error plotting correlation matrix: {str(e)}")
        plt.close()
        return None


def plot_survival_curves(
    curves: Dict[str, SurvivalCurve],
    path: str,
    title: str = "Kaplan-Meier Survival",
    confidence: bool = True,
) -> Optional[str]:
    """Step plot of the Kaplan-Meier curves with their confidence bands."""
    try:
        plt.figure(figsize=(10, 6))
        for level, curve in curves.items():
            line = plt.step(
                curve.timeline,
                curve.survival,
                where="post",
                label=f"{level} (n={curve.n}, events={curve.n_events})",
            )[0]
            if confidence:
                plt.fill_between(
                    curve.timeline,
                    curve.lower,
                    curve.upper,
                    step="post",
                    alpha=0.2,
                    color=line.get_color(),
                )
        plt.xlabel("Time")
        plt.ylabel("Survival Probability")
        plt.ylim(0, 1.05)
        plt.title(title)
        plt.legend()
        plt.grid(alpha=0.3)
        return _save(path)
    except Exception as e:
        logger.error(f"Error plotting survival curves: {str(e)}")
        plt.close()
        return None


def plot_cumulative_hazard(
    curves: Dict[str, SurvivalCurve], path: str, title: str = "Cumulative Hazard"
) -> Optional[str]:
    try:
        plt.figure(figsize=(10, 6))
        for level, curve in curves.items():
            hazard = curve.cumulative_hazard
            finite = np.isfinite(hazard)
            plt.step(curve.timeline[finite], hazard[finite], where="post", label=level)
        plt.xlabel("Time")
        plt.ylabel("-log S(t)")
        plt.title(title)
        plt.legend()
        plt.grid(alpha=0.3)
        return _save(path)
    except Exception as e:
        logger.error(f"Error plotting cumulative hazard: {str(e)}")
        plt.close()
        return None


def plot_model_vs_km(
    km: SurvivalCurve,
    models: Dict[str, pd.Series],
    path: str,
    title: str = "Model-Implied vs Kaplan-Meier Survival",
) -> Optional[str]:
    """Overlay of model survival curves (indexed by time) on the KM estimate."""
    try:
        plt.figure(figsize=(10, 6))
        plt.step(km.timeline, km.survival, where="post", color="black", label="Kaplan-Meier")
        plt.fill_between(
            km.timeline, km.lower, km.upper, step="post", color="grey", alpha=0.2
        )
        for name, survival in models.items():
            plt.plot(survival.index, survival.values, linewidth=2, label=name)
        plt.xlabel("Time")
        plt.ylabel("Survival Probability")
        plt.ylim(0, 1.05)
        plt.title(title)
        plt.legend(fontsize=9)
        plt.grid(alpha=0.3)
        return _save(path)
    except Exception as e:
        logger.error(f"Error plotting model survival: {str(e)}")
        plt.close()
        return None


def plot_schoenfeld(
    residuals: pd.DataFrame, covariates: Sequence[str], output_dir: str
) -> List[str]:
    """Scaled Schoenfeld residuals against time, one figure per covariate."""
    paths = []
    for covariate in covariates:
        try:
            plt.figure(figsize=(10, 6))
            sns.regplot(
                x=residuals["time"],
                y=residuals[covariate],
                lowess=True,
                scatter_kws={"alpha": 0.4, "s": 12},
                line_kws={"color": "red"},
            )
            plt.axhline(0, color="grey", linestyle="--")
            plt.xlabel("Time")
            plt.ylabel(f"Scaled Schoenfeld residual of {covariate}")
            plt.title(f"Proportional Hazards Check: {covariate}")
            paths.append(_save(os.path.join(output_dir, f"schoenfeld_{covariate}.png")))
        except Exception as e:
            logger.error(f"Error plotting Schoenfeld residuals of {covariate}: {str(e)}")
            plt.close()
    return paths


def plot_martingale(
    covariates: pd.DataFrame,
    residuals: pd.Series,
    trends: Dict[str, pd.DataFrame],
    output_dir: str,
) -> List[str]:
    """Martingale residuals against each covariate with the LOWESS trend."""
    paths = []
    for covariate, trend in trends.items():
        try:
            plt.figure(figsize=(10, 6))
            plt.scatter(covariates[covariate], residuals, alpha=0.3, s=10)
            plt.plot(trend[covariate], trend["trend"], color="red", linewidth=2)
            plt.axhline(0, color="grey", linestyle="--")
            plt.xlabel(covariate)
            plt.ylabel("Martingale residual")
            plt.title(f"Functional Form Check: {covariate}")
            paths.append(_save(os.path.join(output_dir, f"martingale_{covariate}.png")))
        except Exception as e:
            logger.error(f"Error plotting martingale residuals of {covariate}: {str(e)}")
            plt.close()
    return paths


def plot_information_criteria(ranking: pd.DataFrame, path: str) -> Optional[str]:
    """Grouped AIC and BIC bars of the fitted models; the AIC minimiser in bold."""
    try:
        fitted = ranking.dropna(subset=["aic"])
        x = np.arange(len(fitted))
        width = 0.35
        plt.figure(figsize=(max(8, len(fitted) * 1.2), 6))
        plt.bar(x - width / 2, fitted["aic"], width, label="AIC")
        plt.bar(x + width / 2, fitted["bic"], width, label="BIC")
        plt.xticks(x, fitted["model"], rotation=45, ha="right")
        plt.ylabel("Score (lower is better)")
        plt.title("AIC and BIC of the Parametric Models")
        low = min(fitted["aic"].min(), fitted["bic"].min())
        high = max(fitted["aic"].max(), fitted["bic"].max())
        margin = max((high - low) * 0.2, 1.0)
        plt.ylim(low - margin, high + margin)
        if len(fitted):
            plt.gca().get_xticklabels()[0].set_weight("bold")
        plt.legend()
        return _save(path)
    except Exception as e:
        logger.error(f"Error plotting information criteria: {str(e)}")
        plt.close()
        return None
