#!/usr/bin/env python3
"""
Main Execution Script for the Cause-of-Death Panel Analysis

Loads the primary cause-of-death table and any covariate tables from a
directory of CSV files, runs the full pipeline and exports every artefact
as CSV.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd

from cod_panel.config import AnalysisConfig
from cod_panel.datasets import CsvTableProvider, DatasetSchema
from cod_panel.errors import CodPanelError
from cod_panel.paths import CONFIG_FILE, DATA_DIR, DEFAULT_PRIMARY_TABLE, OUTPUT_DIR, ensure_output_dir
from cod_panel.pipeline import PipelineContext, export_results, run_analysis


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(name)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def load_schemas(path: Optional[Path]) -> Dict[str, DatasetSchema]:
    """Read ``{dataset name: schema fields}`` from a JSON file."""
    if path is None:
        return {}
    with open(path, encoding='utf-8') as fh:
        raw = json.load(fh)
    return {name: DatasetSchema(name=name, **fields) for name, fields in raw.items()}


class PanelAnalysis:
    """Main analysis class that coordinates loading, the pipeline and export"""

    def __init__(self, data_dir: Path = DATA_DIR, output_dir: Path = OUTPUT_DIR,
                 config: Optional[AnalysisConfig] = None,
                 schemas: Optional[Dict[str, DatasetSchema]] = None):
        """
        Initialize the analysis

        Args:
            data_dir: Directory containing <name>.csv tables
            output_dir: Directory for output files
            config: Analysis configuration
            schemas: Dataset name -> schema
        """
        self.provider = CsvTableProvider(data_dir)
        self.output_dir = ensure_output_dir(Path(output_dir))
        self.config = config or AnalysisConfig()
        self.schemas = schemas or {}

    def run(self, primary: str = DEFAULT_PRIMARY_TABLE, covariates: Optional[List[str]] = None,
            with_elbow: bool = False, fail_on_error: bool = False) -> PipelineContext:
        """
        Run the full pipeline and export results.

        Args:
            primary: Name of the primary cause-of-death table
            covariates: Covariate table names (default: every other table)
            with_elbow: Compute elbow curves for both clustering modes
            fail_on_error: Raise if a covariate table cannot be loaded

        Returns:
            Final pipeline context
        """
        if covariates is None:
            covariates = [name for name in self.provider.names() if name != primary]

        print("=" * 80)
        print("CAUSE-OF-DEATH PANEL ANALYSIS")
        print("=" * 80)
        print(f"\nPrimary table: {primary}")
        print(f"Covariate tables ({len(covariates)}): {', '.join(covariates)}\n")

        primary_df = self.provider.load(primary)
        covariate_tables: Dict[str, pd.DataFrame] = {}
        for name in covariates:
            try:
                covariate_tables[name] = self.provider.load(name)
            except FileNotFoundError as e:
                print(f"  Error loading {name}: {e}")
                if fail_on_error:
                    raise

        ctx = run_analysis(primary_df, covariate_tables, self.config, self.schemas,
                           primary_name=primary, with_elbow=with_elbow, progress=True)
        if ctx.failures and fail_on_error:
            raise CodPanelError(f"Covariate datasets failed: {sorted(ctx.failures)}")

        self._summarize(ctx)
        written = export_results(ctx, self.output_dir)

        print("\n" + "=" * 80)
        print("ANALYSIS COMPLETE")
        print("=" * 80)
        print(f"Output: {self.output_dir} ({len(written)} files)")
        return ctx

    @staticmethod
    def _summarize(ctx: PipelineContext) -> None:
        matrix = ctx.matrix
        print(f"\nNormalized matrix: {len(matrix)} records x {len(matrix.causes)} causes "
              f"({len(matrix.excluded)} records excluded)")
        if ctx.failures:
            for name, error in sorted(ctx.failures.items()):
                print(f"  Skipped {name}: {error}")
        if ctx.correlations is not None and ctx.correlations.covariates:
            print("\nStrongest correlations:")
            print(ctx.correlations.strongest(10).to_string(index=False))
        print("\nPCA variance explained (%):")
        print(ctx.pca.variance.head(5).round(2).to_string())
        for mode, result in ctx.clusters.items():
            print(f"\nClusters ({mode}): k-means sizes {result.kmeans.assignment.sizes().to_dict()}, "
                  f"agreement with hierarchical ARI={result.agreement:.3f}")


def main():
    """Main function"""
    parser = argparse.ArgumentParser(description="Cause-of-death panel analysis")
    parser.add_argument("--data-dir", type=Path, default=DATA_DIR, help="Directory of <name>.csv tables")
    parser.add_argument("--output-dir", type=Path, default=OUTPUT_DIR, help="Directory for exported results")
    parser.add_argument("--primary", default=DEFAULT_PRIMARY_TABLE, help="Name of the cause-of-death table")
    parser.add_argument("--covariates", type=str, default=None, help="Comma-separated covariate table names")
    parser.add_argument("--config", type=Path, default=None, help="JSON file with configuration overrides")
    parser.add_argument("--schemas", type=Path, default=None, help="JSON file with dataset schemas")
    parser.add_argument("--k-variables", type=int, default=None, help="Number of cause clusters")
    parser.add_argument("--k-observations", type=int, default=None, help="Number of record clusters")
    parser.add_argument("--seed", type=int, default=None, help="Base random seed for k-means")
    parser.add_argument("--elbow", action="store_true", help="Compute elbow curves for choosing k")
    parser.add_argument("--describe-config", action="store_true", help="Print parameter documentation and exit")
    parser.add_argument("--fail-on-error", action="store_true", help="Fail if any covariate table fails")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    setup_logging(args.verbose)

    config_path = args.config or (CONFIG_FILE if CONFIG_FILE.exists() else None)
    config = AnalysisConfig.from_json(config_path) if config_path else AnalysisConfig()
    overrides = {key: value for key, value in {
        'k_variables': args.k_variables,
        'k_observations': args.k_observations,
        'seed': args.seed,
    }.items() if value is not None}
    if overrides:
        config = config.with_overrides(clustering=overrides)

    if args.describe_config:
        config.describe_all()
        return 0

    analysis = PanelAnalysis(args.data_dir, args.output_dir, config, load_schemas(args.schemas))
    covariates = args.covariates.split(',') if args.covariates else None
    try:
        analysis.run(args.primary, covariates, with_elbow=args.elbow, fail_on_error=args.fail_on_error)
    except CodPanelError as e:
        logging.error("Analysis failed: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
