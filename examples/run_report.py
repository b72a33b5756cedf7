"""
Example script showing how to run the NAFLD survival report.

The report is configured in conf/report.yaml. It writes a JSON summary, CSV
series and PNG figures to the output directory; this script prints the key
results of a run.
"""

import json
import os

from nafld.report import run_report


def load_and_display_results(output_dir: str) -> None:
    """
    Load and display key results from a report run.

    Args:
        output_dir: Directory containing the report results
    """
    summary_path = os.path.join(output_dir, "report_summary.json")
    if not os.path.exists(summary_path):
        print(f"No summary found in {output_dir}")
        return

    with open(summary_path, "r") as f:
        summary = json.load(f)

    print("\n=== Report Summary ===")

    data = summary.get("data", {})
    print(
        f"\nSubjects: {data.get('n_read')} read, {data.get('n_kept')} kept "
        f"({data.get('n_incomplete')} incomplete, {data.get('n_malformed')} malformed)"
    )

    km = summary.get("kaplan_meier", {})
    if "error" not in km:
        print("\nStratum Tests:")
        for group, results in km.items():
            for weight, test in results.get("tests", {}).items():
                if weight.endswith("_pairwise"):
                    continue
                if test["reliable"]:
                    print(
                        f"  {group} ({weight}): chi2={test['statistic']:.2f}, "
                        f"df={test['df']}, p={test['p_value']:.4g}"
                    )
                else:
                    print(f"  {group} ({weight}): not computed, {test['reason']}")

    cox = summary.get("cox", {})
    if "model" in cox:
        print("\nCox Model:")
        for covariate, row in cox["model"]["coefficients"].items():
            print(
                f"  {covariate}: HR={row['hazard_ratio']:.3f} (p={row['p']:.4g})"
            )
        violations = [t for t in cox.get("schoenfeld", []) if t["rejected"]]
        for t in violations:
            print(
                f"  Proportional hazards rejected for {t['covariate']} "
                f"({t['transform']} time, p={t['p']:.4g})"
            )

    fp = summary.get("fractional_polynomials", {})
    if "powers" in fp:
        print("\nFractional Polynomials:")
        for covariate, powers in fp["powers"].items():
            print(f"  {covariate}: {powers}")

    par = summary.get("parametric", {})
    if "models" in par:
        print("\nParametric Models:")
        for row in par["models"]:
            if row["rank"] is not None:
                print(
                    f"  {int(row['rank'])}. {row['model']} "
                    f"(AIC: {row['aic']:.2f}, BIC: {row['bic']:.2f})"
                )
        print(f"  Best by AIC: {par['best_aic']}, best by BIC: {par['best_bic']}")

    print("\n=== Report Outputs ===")
    print(f"Full results available in: {output_dir}")


def main():
    """Run the report with the default configuration"""
    print("=== NAFLD Survival Report Example ===")
    run_report()

    default_output_dir = "outputs/report"
    load_and_display_results(default_output_dir)


if __name__ == "__main__":
    main()
