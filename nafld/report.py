"""Survival report of the NAFLD cohort

This module runs the whole analysis from a hydra configuration: loading and
cleaning, descriptive statistics, Kaplan-Meier curves with stratum tests, the
Cox model with its diagnostics, fractional polynomials and parametric models.
Results are written as a JSON summary, CSV series and PNG figures.
"""

__authors__ = ["Dominik Dahlem"]
__status__ = "Development"

import json
import os
import re
from logging import DEBUG, ERROR
from typing import Dict, List

import hydra
import pandas as pd
from logdecorator import log_on_end, log_on_error, log_on_start
from omegaconf import DictConfig, OmegaConf

from nafld.analysis import (
    cox,
    descriptive,
    fractional_polynomials,
    kaplan_meier,
    logrank,
    parametric,
    plots,
)
from nafld.data import binning
from nafld.exceptions import SchemaError
from nafld.utils import logging

logger = logging.get_default_logger()

SUMMARY_FILE = "report_summary.json"


def _as_list(value) -> List:
    if value is None:
        return []
    if OmegaConf.is_config(value):
        return OmegaConf.to_container(value, resolve=True)
    return list(value)


def _slug(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.=-]+", "_", name).strip("_")


def _to_csv(frame: pd.DataFrame, path: str, export_csv: bool, index: bool = False):
    if export_csv:
        frame.to_csv(path, index=index)
        logger.debug(f"Saved {path}")


def analyze_descriptive(
    frame: pd.DataFrame, cfg: DictConfig, output_dir: str, export_csv: bool = True
) -> Dict:
    """Column distributions, correlation matrix and follow-up summary."""
    desc_output_dir = os.path.join(output_dir, "descriptive")
    os.makedirs(desc_output_dir, exist_ok=True)

    columns = _as_list(cfg.analysis.get("describe", None)) or [
        c for c in frame.columns if c != "id"
    ]
    summaries = descriptive.describe_columns(
        frame, columns, bins=cfg.plots.get("histogram_bins", 30)
    )
    corr = descriptive.correlation_matrix(frame, columns)

    _to_csv(corr, os.path.join(desc_output_dir, "correlation.csv"), export_csv, index=True)
    for name, summary in summaries.items():
        _to_csv(
            summary.to_frame(),
            os.path.join(desc_output_dir, f"dist_{name}.csv"),
            export_csv,
        )

    if cfg.plots.enabled:
        plots.plot_column_summaries(summaries, desc_output_dir)
        plots.plot_correlation(corr, os.path.join(desc_output_dir, "correlation.png"))

    return {
        "events": descriptive.event_summary(
            frame, cfg.data.duration_col, cfg.data.event_col
        ),
        "columns": {
            name: {
                "kind": s.kind,
                "n": s.n,
                "n_missing": s.n_missing,
                "stats": s.stats,
                "levels": s.levels,
                "counts": s.counts,
            }
            for name, s in summaries.items()
        },
        "correlation": corr.to_dict(),
    }


def analyze_survival_curves(
    frame: pd.DataFrame, cfg: DictConfig, output_dir: str, export_csv: bool = True
) -> Dict:
    """Kaplan-Meier curves overall and per stratum with the stratum tests."""
    km_output_dir = os.path.join(output_dir, "kaplan_meier")
    os.makedirs(km_output_dir, exist_ok=True)

    duration_col = cfg.data.duration_col
    event_col = cfg.data.event_col
    alpha = 1 - cfg.analysis.conf_level
    conf_type = cfg.analysis.conf_type

    results = {}
    for group in [None] + _as_list(cfg.analysis.strata):
        key = group or "all"
        curves = kaplan_meier.kaplan_meier_by(
            frame,
            group,
            duration_col=duration_col,
            event_col=event_col,
            alpha=alpha,
            conf_type=conf_type,
        )
        for level, curve in curves.items():
            _to_csv(
                curve.to_frame(),
                os.path.join(km_output_dir, _slug(f"km_{key}_{level}") + ".csv"),
                export_csv,
            )

        stratum_results = {"curves": {level: c.summary() for level, c in curves.items()}}

        if group is not None:
            tests = {}
            for weight in _as_list(cfg.analysis.weights):
                test = logrank.compare_strata(
                    frame,
                    group,
                    weight=weight,
                    duration_col=duration_col,
                    event_col=event_col,
                )
                tests[weight] = test.as_dict()
                _to_csv(
                    test.to_frame(),
                    os.path.join(km_output_dir, f"{weight}_{group}.csv"),
                    export_csv,
                )
                if cfg.analysis.get("pairwise", False):
                    pairs = logrank.pairwise_logrank(
                        frame,
                        group,
                        weight=weight,
                        duration_col=duration_col,
                        event_col=event_col,
                    )
                    tests[f"{weight}_pairwise"] = pairs.to_dict(orient="records")
                    _to_csv(
                        pairs,
                        os.path.join(km_output_dir, f"{weight}_{group}_pairwise.csv"),
                        export_csv,
                    )
            stratum_results["tests"] = tests

        if cfg.plots.enabled:
            title = "Kaplan-Meier Survival" + (f" by {group}" if group else "")
            plots.plot_survival_curves(
                curves, os.path.join(km_output_dir, f"km_{key}.png"), title=title
            )
            plots.plot_cumulative_hazard(
                curves,
                os.path.join(km_output_dir, f"cumhaz_{key}.png"),
                title="Cumulative Hazard" + (f" by {group}" if group else ""),
            )

        results[key] = stratum_results

    table = kaplan_meier.event_table(frame[duration_col], frame[event_col])
    _to_csv(table, os.path.join(km_output_dir, "event_table.csv"), export_csv, index=True)

    return results


def analyze_cox(
    frame: pd.DataFrame, cfg: DictConfig, output_dir: str, export_csv: bool = True
) -> Dict:
    """Cox model with Schoenfeld and martingale residual diagnostics."""
    cox_output_dir = os.path.join(output_dir, "cox")
    os.makedirs(cox_output_dir, exist_ok=True)

    cox_cfg = cfg.analysis.cox
    covariates = _as_list(cox_cfg.covariates)
    result = cox.fit_cox(
        frame,
        covariates,
        duration_col=cfg.data.duration_col,
        event_col=cfg.data.event_col,
        alpha=1 - cfg.analysis.conf_level,
    )
    _to_csv(result.summary, os.path.join(cox_output_dir, "cox_summary.csv"), export_csv, index=True)

    results = {"model": result.as_dict()}

    schoenfeld = cox.schoenfeld_test(
        result,
        frame,
        transforms=_as_list(cox_cfg.time_transforms),
        alpha=cox_cfg.alpha,
    )
    results["schoenfeld"] = schoenfeld.tests.to_dict(orient="records")
    _to_csv(schoenfeld.tests, os.path.join(cox_output_dir, "schoenfeld_tests.csv"), export_csv)
    _to_csv(
        schoenfeld.residuals,
        os.path.join(cox_output_dir, "schoenfeld_residuals.csv"),
        export_csv,
        index=True,
    )

    continuous = _as_list(cox_cfg.continuous)
    martingale = cox.martingale_residuals(
        result, frame, covariates=continuous, frac=cox_cfg.lowess_frac
    )
    results["martingale"] = {"max_deviation": martingale.max_deviation}
    _to_csv(
        martingale.residuals.to_frame(),
        os.path.join(cox_output_dir, "martingale_residuals.csv"),
        export_csv,
        index=True,
    )

    km = kaplan_meier.kaplan_meier(
        frame[cfg.data.duration_col], frame[cfg.data.event_col], label="all"
    )
    cox_survival = result.survival_at_mean(km.timeline)
    _to_csv(
        pd.DataFrame(
            {"time": km.timeline, "km": km.survival, "cox": cox_survival.to_numpy()}
        ),
        os.path.join(cox_output_dir, "cox_vs_km.csv"),
        export_csv,
    )

    if cfg.plots.enabled:
        plots.plot_schoenfeld(schoenfeld.residuals, result.covariates, cox_output_dir)
        plots.plot_martingale(
            frame.loc[martingale.residuals.index],
            martingale.residuals,
            martingale.trends,
            cox_output_dir,
        )
        plots.plot_model_vs_km(
            km,
            {"Cox (mean covariates)": cox_survival},
            os.path.join(cox_output_dir, "cox_vs_km.png"),
        )

    return results


def analyze_fractional_polynomials(
    frame: pd.DataFrame, cfg: DictConfig, output_dir: str, export_csv: bool = True
) -> Dict:
    fp_output_dir = os.path.join(output_dir, "fractional_polynomials")
    os.makedirs(fp_output_dir, exist_ok=True)

    fp_cfg = cfg.analysis.fp
    model = fractional_polynomials.mfp(
        frame,
        _as_list(cfg.analysis.cox.covariates),
        continuous=_as_list(cfg.analysis.cox.continuous),
        duration_col=cfg.data.duration_col,
        event_col=cfg.data.event_col,
        alpha=fp_cfg.alpha,
        select=fp_cfg.select,
        max_cycles=fp_cfg.max_cycles,
    )
    _to_csv(
        model.fit.summary(), os.path.join(fp_output_dir, "fp_model.csv"), export_csv, index=True
    )
    for covariate, selection in model.selections.items():
        candidates = selection.candidates.assign(
            powers=selection.candidates["powers"].map(fractional_polynomials.format_powers)
        )
        _to_csv(
            candidates,
            os.path.join(fp_output_dir, f"fp_candidates_{covariate}.csv"),
            export_csv,
        )
    return model.as_dict()


def analyze_parametric(
    frame: pd.DataFrame, cfg: DictConfig, output_dir: str, export_csv: bool = True
) -> Dict:
    """Parametric models of every family and covariate set ranked by AIC."""
    par_output_dir = os.path.join(output_dir, "parametric")
    os.makedirs(par_output_dir, exist_ok=True)

    par_cfg = cfg.analysis.parametric
    fitted, failures = parametric.fit_all(
        frame,
        families=_as_list(par_cfg.families),
        covariate_sets=[tuple(s) for s in _as_list(par_cfg.covariate_sets)],
        duration_col=cfg.data.duration_col,
        event_col=cfg.data.event_col,
        grid_points=par_cfg.grid_points,
    )
    ranking = parametric.rank_models(fitted, failures)
    _to_csv(ranking.table, os.path.join(par_output_dir, "model_ranking.csv"), export_csv)
    for result in fitted:
        _to_csv(
            result.curves(),
            os.path.join(par_output_dir, _slug(f"curves_{result.name}") + ".csv"),
            export_csv,
        )

    if cfg.plots.enabled and fitted:
        km = kaplan_meier.kaplan_meier(
            frame[cfg.data.duration_col], frame[cfg.data.event_col], label="all"
        )
        plots.plot_model_vs_km(
            km,
            {r.name: pd.Series(r.survival, index=r.times) for r in fitted},
            os.path.join(par_output_dir, "parametric_vs_km.png"),
            title="Parametric Models vs Kaplan-Meier",
        )
        plots.plot_information_criteria(
            ranking.table, os.path.join(par_output_dir, "information_criteria.png")
        )

    results = ranking.as_dict()
    results["fits"] = {r.name: r.as_dict() for r in fitted}
    results["failures"] = failures
    return results


OPTIONAL_STEPS = (
    ("descriptive", "run_descriptive", analyze_descriptive),
    ("kaplan_meier", "run_kaplan_meier", analyze_survival_curves),
    ("cox", "run_cox", analyze_cox),
    ("fractional_polynomials", "run_fp", analyze_fractional_polynomials),
    ("parametric", "run_parametric", analyze_parametric),
)


def build_report(cfg: DictConfig) -> Dict:
    """Run the report and return the summary written to ``report_summary.json``."""
    output_dir = cfg.outputs.dir
    os.makedirs(output_dir, exist_ok=True)
    export_csv = cfg.get("export_csv", True)

    subjects = hydra.utils.call(cfg.data.load)
    frame = binning.annotate(subjects.frame)
    logger.info(f"Analysing {len(frame)} subjects")

    results = {"data": subjects.report.as_dict()}

    for key, switch, step in OPTIONAL_STEPS:
        if not cfg.analysis.get(switch, True):
            logger.info(f"Skipping {key}")
            continue
        logger.info(f"Running {key} analysis")
        try:
            results[key] = step(frame, cfg, output_dir, export_csv)
        except SchemaError:
            raise
        except Exception as e:
            logger.error(f"Error in {key} analysis: {str(e)}")
            results[key] = {"error": f"Analysis failed: {str(e)}"}

    with open(os.path.join(output_dir, SUMMARY_FILE), "w") as f:
        json.dump(results, f, indent=2, cls=logging.NpEncoder)

    logger.info(f"Report completed. Results saved to {output_dir}")
    return results


@log_on_start(DEBUG, "Starting survival report...", logger=logger)
@log_on_error(
    ERROR,
    "Error during survival report: {e!r}",
    logger=logger,
    on_exceptions=Exception,
    reraise=True,
)
@log_on_end(DEBUG, "Report complete!", logger=logger)
@hydra.main(version_base=None, config_path="../conf", config_name="report.yaml")
def run_report(cfg: DictConfig) -> None:
    """Entry point for the survival report."""
    logging.set_verbosity(logging.DEBUG)
    build_report(cfg)


if __name__ == "__main__":
    run_report()
