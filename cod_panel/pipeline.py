#!/usr/bin/env python3
"""
Analysis Pipeline

Chains the stages of a panel analysis run:

    raw tables -> key normalization -> missing-data policy      (every dataset)
    primary    -> compositional normalization -> NormalizedMatrix
    NormalizedMatrix -> correlation with covariates
                     -> PCA
                     -> clustering (variable and observation mode) -> profiles

Each stage receives the previous stage's artefact and returns a new one; the
``PipelineContext`` collecting them is immutable and every stage produces a
fresh context. A covariate dataset that fails key or schema validation is
logged, recorded in ``failures`` and left out; a failure of the primary
dataset ends the run.

Example:
    >>> result = run_analysis(primary_tables=[deaths_df], covariate_tables={'gdp': gdp_df})
    >>> result.correlations.get('Malaria', 'gdp:GDP per capita')
    >>> export_results(result, 'output')
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence, Union

import pandas as pd

from cod_panel.analysis.clustering import (
    ElbowResult, HierarchicalResult, KMeansResult, MODES, choose_k,
    cluster_hierarchical, cluster_kmeans, compare_assignments,
)
from cod_panel.analysis.correlation import CorrelationTable, correlate_many
from cod_panel.analysis.pca import PcaResult, run_pca
from cod_panel.analysis.profiling import ClusterProfileReport, ClusterProfiler
from cod_panel.config import AnalysisConfig
from cod_panel.datasets import Dataset, DatasetSchema
from cod_panel.errors import DataIntegrityError
from cod_panel.preprocess.composition import NormalizedMatrix, normalize_dataset
from cod_panel.preprocess.keys import KeyReport, normalize_keys
from cod_panel.preprocess.missing import MissingnessReport, apply_missing_policy

logger = logging.getLogger(__name__)

RawTables = Union[pd.DataFrame, Sequence[pd.DataFrame]]


@dataclass(frozen=True)
class PreparedDataset:
    """A dataset after key normalization and missing-data policy."""
    dataset: Dataset
    key_report: KeyReport
    missing_report: MissingnessReport


@dataclass(frozen=True)
class ModeClustering:
    """Clustering results for one mode (variables or observations)."""
    mode: str
    hierarchical: HierarchicalResult
    kmeans: KMeansResult
    profile: ClusterProfileReport
    agreement: float
    elbow: Optional[ElbowResult] = None


@dataclass(frozen=True)
class PipelineContext:
    """Artefacts produced so far. Stages return a new context."""
    config: AnalysisConfig
    primary: Optional[PreparedDataset] = None
    covariates: Dict[str, PreparedDataset] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)
    matrix: Optional[NormalizedMatrix] = None
    correlations: Optional[CorrelationTable] = None
    pca: Optional[PcaResult] = None
    clusters: Dict[str, ModeClustering] = field(default_factory=dict)

    def evolve(self, **changes) -> "PipelineContext":
        return dataclasses.replace(self, **changes)


def _as_list(tables: RawTables) -> list:
    return [tables] if isinstance(tables, pd.DataFrame) else list(tables)


def prepare_dataset(tables: RawTables, schema: Union[DatasetSchema, str],
                    config: AnalysisConfig) -> PreparedDataset:
    """Validate, key-normalize and apply the missing-data policy to one dataset."""
    datasets = [Dataset.from_frame(raw, schema) for raw in _as_list(tables)]
    dataset, key_report = normalize_keys(datasets, config.keys)
    dataset, missing_report = apply_missing_policy(dataset, config.missing)
    return PreparedDataset(dataset=dataset, key_report=key_report, missing_report=missing_report)


# ============================================================================
# Stages
# ============================================================================

def stage_prepare(ctx: PipelineContext, primary_tables: RawTables,
                  covariate_tables: Mapping[str, RawTables],
                  schemas: Mapping[str, DatasetSchema], primary_name: str) -> PipelineContext:
    primary = prepare_dataset(primary_tables, schemas.get(primary_name, primary_name), ctx.config)

    covariates, failures = {}, dict(ctx.failures)
    for name, tables in covariate_tables.items():
        try:
            covariates[name] = prepare_dataset(tables, schemas.get(name, name), ctx.config)
        except DataIntegrityError as e:
            logger.warning("Dropping covariate dataset %s: %s", name, e)
            failures[name] = str(e)
    return ctx.evolve(primary=primary, covariates=covariates, failures=failures)


def stage_normalize(ctx: PipelineContext, causes: Optional[Sequence[str]] = None) -> PipelineContext:
    return ctx.evolve(matrix=normalize_dataset(ctx.primary.dataset, causes))


def stage_correlate(ctx: PipelineContext) -> PipelineContext:
    table = correlate_many(
        ctx.matrix,
        {name: prepared.dataset for name, prepared in ctx.covariates.items()},
        ctx.config.correlation,
    )
    failures = {**ctx.failures, **table.failures}
    return ctx.evolve(correlations=table, failures=failures)


def stage_pca(ctx: PipelineContext) -> PipelineContext:
    return ctx.evolve(pca=run_pca(ctx.matrix, ctx.config.pca.n_components))


def stage_cluster(ctx: PipelineContext, with_elbow: bool = False, progress: bool = False) -> PipelineContext:
    params = ctx.config.clustering
    clusters = {}
    for mode in MODES:
        hier = cluster_hierarchical(ctx.matrix, mode, params)
        km = cluster_kmeans(ctx.matrix, mode, params, progress=progress)
        elbow = choose_k(ctx.matrix, mode, params) if with_elbow else None
        clusters[mode] = ModeClustering(
            mode=mode,
            hierarchical=hier,
            kmeans=km,
            profile=ClusterProfiler(km, ctx.matrix).report(),
            agreement=compare_assignments(hier.assignment, km.assignment),
            elbow=elbow,
        )
    return ctx.evolve(clusters=clusters)


def run_analysis(primary_tables: RawTables,
                 covariate_tables: Optional[Mapping[str, RawTables]] = None,
                 config: Optional[AnalysisConfig] = None,
                 schemas: Optional[Mapping[str, DatasetSchema]] = None,
                 primary_name: str = "causes_of_death",
                 causes: Optional[Sequence[str]] = None,
                 with_elbow: bool = False,
                 progress: bool = False) -> PipelineContext:
    """
    Run every stage on fully loaded tables.

    Args:
        primary_tables: Cause-of-death table(s) with Entity, Code, Year and one count column per cause
        covariate_tables: Covariate name -> table(s)
        config: Analysis configuration (defaults to AnalysisConfig())
        schemas: Dataset name -> DatasetSchema; unnamed datasets accept all columns
        primary_name: Name of the primary dataset
        causes: Cause columns to normalize (default: all value columns)
        with_elbow: Also compute the elbow curve for each clustering mode
        progress: Show progress bars over k-means restarts

    Returns:
        Final PipelineContext

    Raises:
        DataIntegrityError: If the primary dataset cannot be keyed
        NormalizationError: If no primary record can be normalized
    """
    ctx = PipelineContext(config=config or AnalysisConfig())
    ctx = stage_prepare(ctx, primary_tables, covariate_tables or {}, schemas or {}, primary_name)
    ctx = stage_normalize(ctx, causes)
    ctx = stage_correlate(ctx)
    ctx = stage_pca(ctx)
    ctx = stage_cluster(ctx, with_elbow=with_elbow, progress=progress)
    return ctx


def export_results(ctx: PipelineContext, output_dir: Union[str, Path]) -> Dict[str, Path]:
    """Write every artefact of a finished run as CSV. Returns name -> path."""
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    written: Dict[str, Path] = {}

    def save(frame: pd.DataFrame, filename: str, index: bool = False) -> None:
        path = out / filename
        frame.to_csv(path, index=index)
        written[filename] = path

    prepared = {ctx.primary.dataset.name: ctx.primary, **ctx.covariates}
    save(pd.concat([p.key_report.to_frame() for p in prepared.values()], ignore_index=True),
         "key_report.csv")
    save(pd.concat([p.missing_report.to_frame() for p in prepared.values()], ignore_index=True),
         "missingness_report.csv")
    if ctx.failures:
        save(pd.DataFrame(sorted(ctx.failures.items()), columns=['dataset', 'error']), "failures.csv")

    save(ctx.matrix.proportions, "normalized_matrix.csv", index=True)
    save(ctx.matrix.excluded, "normalization_excluded.csv", index=True)

    if ctx.correlations is not None and ctx.correlations.covariates:
        save(ctx.correlations.to_frame(), "correlations.csv", index=True)
        save(ctx.correlations.to_long(), "correlations_long.csv")

    if ctx.pca is not None:
        save(ctx.pca.variance, "pca_variance.csv", index=True)
        save(ctx.pca.loadings, "pca_loadings.csv", index=True)

    for mode, result in ctx.clusters.items():
        save(result.hierarchical.assignment.to_frame(), f"clusters_{mode}_hierarchical.csv")
        save(result.kmeans.assignment.to_frame(), f"clusters_{mode}_kmeans.csv")
        save(result.kmeans.restarts, f"kmeans_{mode}_restarts.csv", index=True)
        save(result.profile.relative, f"profile_{mode}_relative.csv")
        save(result.profile.absolute, f"profile_{mode}_absolute.csv")
        if result.elbow is not None:
            save(result.elbow.curve, f"elbow_{mode}.csv")

    logger.info("Exported %d files to %s", len(written), out)
    return written
