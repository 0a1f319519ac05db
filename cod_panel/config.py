#!/usr/bin/env python3
"""Analysis Configuration and Parameter Documentation.

This module centralizes all analysis parameters with their justifications
and default values using Pydantic for validation and documentation.

Key features:
- Type validation and coercion
- Immutable configuration (frozen=True)
- Rich metadata (units, interpretation) on every parameter
- JSON round-trip for configuration files

Parameters are organized by category:
- Keys: Entity exclusion lists used by the key normalizer
- Missing data: Thresholds for the missing-data policy engine
- Correlation: Join size and concurrency for cross-dataset correlation
- PCA: Number of components to report
- Clustering: k per mode, linkage, restarts and seeds

Usage:
    >>> from cod_panel.config import AnalysisConfig
    >>> config = AnalysisConfig()
    >>> print(config.clustering.k_variables)  # 5
    >>> config.missing.describe('max_row_loss')  # Print full documentation
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Literal, Tuple, Union

from pydantic import BaseModel, Field, field_validator


class _DescribedParameters(BaseModel):
    """Base class adding the ``describe`` helper to every parameter category."""

    model_config = {'frozen': True, 'extra': 'forbid'}

    def describe(self, param_name: str) -> None:
        """Print comprehensive documentation for a parameter.

        Args:
            param_name: Name of the parameter to describe
        """
        fields = type(self).model_fields
        if param_name not in fields:
            raise ValueError(f"Unknown parameter: {param_name}")

        field_info = fields[param_name]
        value = getattr(self, param_name)
        extra = field_info.json_schema_extra or {}

        print(f"\n{'=' * 70}")
        print(f"Parameter: {param_name}")
        print(f"{'=' * 70}")
        print(f"Value: {value}")
        if 'units' in extra:
            print(f"Units: {extra['units']}")
        print(f"\nDescription:")
        print(f"  {field_info.description}")
        if 'interpretation' in extra:
            print(f"\nInterpretation:")
            print(f"  {extra['interpretation']}")
        if 'notes' in extra:
            print(f"\nNotes:")
            print(f"  {extra['notes']}")
        print(f"{'=' * 70}\n")


# ============================================================================
# Key Normalization (Entity Exclusions)
# ============================================================================

DEFAULT_AGGREGATE_ENTITIES: Tuple[str, ...] = (
    "World",
    "African Region (WHO)",
    "East Asia & Pacific (WB)",
    "Eastern Mediterranean Region (WHO)",
    "Europe & Central Asia (WB)",
    "European Region (WHO)",
    "G20",
    "Latin America & Caribbean (WB)",
    "Middle East & North Africa (WB)",
    "North America (WB)",
    "OECD Countries",
    "Region of the Americas (WHO)",
    "South Asia (WB)",
    "South-East Asia Region (WHO)",
    "Sub-Saharan Africa (WB)",
    "Western Pacific Region (WHO)",
    "World Bank High Income",
    "World Bank Low Income",
    "World Bank Lower Middle Income",
    "World Bank Upper Middle Income",
)

DEFAULT_PREDECESSOR_ENTITIES: Tuple[str, ...] = (
    "Czechoslovakia",
    "Serbia and Montenegro",
    "Sudan (former)",
    "USSR",
    "Yugoslavia",
)

DEFAULT_SUBDIVISION_ENTITIES: Tuple[str, ...] = (
    "England",
    "Northern Ireland",
    "Scotland",
    "Wales",
)


class KeyParameters(_DescribedParameters):
    """Curated entity lists for the Entity-Year key normalizer.

    None of these are detected automatically: an entity is removed only
    because it is named here.
    """

    aggregate_entities: Tuple[str, ...] = Field(
        default=DEFAULT_AGGREGATE_ENTITIES,
        description="Aggregate or defunct regions. Rows for these entities are dropped when their Code is empty.",
        json_schema_extra={
            'units': 'entity names',
            'interpretation': 'Codeless rows of entities not on this list are kept',
        }
    )

    predecessor_entities: Tuple[str, ...] = Field(
        default=DEFAULT_PREDECESSOR_ENTITIES,
        description="Dissolved predecessor states, removed entirely. Their years are assumed covered by successor entities.",
        json_schema_extra={
            'units': 'entity names',
            'interpretation': 'Predecessors are never merged into successors',
        }
    )

    subdivision_entities: Tuple[str, ...] = Field(
        default=DEFAULT_SUBDIVISION_ENTITIES,
        description="Administrative subdivisions of entities already present in the panel, removed entirely.",
        json_schema_extra={
            'units': 'entity names',
            'interpretation': 'Prevents double counting of e.g. constituent countries',
        }
    )


# ============================================================================
# Missing-Data Policy
# ============================================================================

class MissingDataParameters(_DescribedParameters):
    """Thresholds for the per-dataset, per-column missing-data policy."""

    column_drop_disparity: float = Field(
        default=10.0,
        gt=1.0,
        description="A column is drop-eligible only if its missing rate is at least this many times every other column's rate.",
        json_schema_extra={
            'units': 'ratio',
            'interpretation': '10 means an order of magnitude more missing than any other column',
        }
    )

    column_drop_majority: float = Field(
        default=0.5,
        ge=0.0,
        lt=1.0,
        description="Share of incomplete rows that dropping the worst column must make complete before the column is dropped.",
        json_schema_extra={
            'units': 'fraction of incomplete rows',
            'interpretation': 'Column must be responsible for the majority of row-level missingness',
        }
    )

    max_row_loss: float = Field(
        default=0.05,
        ge=0.0,
        le=1.0,
        description="Maximum share of rows that may be lost by dropping every incomplete row.",
        json_schema_extra={
            'units': 'fraction of rows',
            'interpretation': 'Above this, columns are classified individually instead',
        }
    )

    companion_min_corr: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="Minimum absolute Pearson correlation for a column to be used as a companion when testing missingness.",
        json_schema_extra={
            'units': 'absolute correlation',
            'interpretation': 'If no column qualifies, all other columns are used',
        }
    )

    min_group_size: int = Field(
        default=5,
        ge=2,
        description="Minimum number of values in each of the missing/present groups for a distribution comparison.",
        json_schema_extra={
            'units': 'rows',
        }
    )

    divergence_alpha: float = Field(
        default=0.05,
        gt=0.0,
        lt=1.0,
        description="Significance level of the Bonferroni-adjusted two-sample KS test separating informative from random missingness.",
        json_schema_extra={
            'units': 'p-value',
            'interpretation': 'Below alpha, missingness is treated as informative and flagged',
            'notes': 'There is no universally correct boundary; inspect the MissingnessReport',
        }
    )

    mcar_strategy: Literal['surgical', 'impute'] = Field(
        default='surgical',
        description="Treatment of columns judged missing completely at random: per-column row exclusion or median imputation.",
    )

    untestable_policy: Literal['flag', 'surgical'] = Field(
        default='flag',
        description="Treatment of partially missing columns for which no distribution comparison is possible.",
        json_schema_extra={
            'interpretation': "'flag' keeps an indicator column and assumes missingness may be informative",
        }
    )


# ============================================================================
# Cross-Dataset Correlation
# ============================================================================

class CorrelationParameters(_DescribedParameters):
    """Settings for correlating covariates against cause proportions."""

    min_join_size: int = Field(
        default=10,
        ge=2,
        description="Minimum number of matched rows for a correlation coefficient to be reported.",
        json_schema_extra={
            'units': 'rows',
            'interpretation': 'Smaller joins are reported as insufficient data',
        }
    )

    include_indicators: bool = Field(
        default=False,
        description="Whether missingness indicator columns are correlated like ordinary value columns.",
    )

    n_jobs: int = Field(
        default=1,
        ge=1,
        description="Worker threads used to correlate covariate datasets concurrently.",
    )


# ============================================================================
# PCA
# ============================================================================

class PcaParameters(_DescribedParameters):
    """Settings for the principal component decomposition."""

    n_components: Union[int, None] = Field(
        default=None,
        ge=1,
        description="Number of components to report. None reports all.",
    )


# ============================================================================
# Clustering
# ============================================================================

class ClusteringParameters(_DescribedParameters):
    """Settings for hierarchical and partition clustering."""

    k_variables: int = Field(
        default=5,
        ge=1,
        description="Number of clusters of causes (variable mode).",
        json_schema_extra={
            'interpretation': 'Chosen near the elbow of the within-cluster SS curve',
        }
    )

    k_observations: int = Field(
        default=6,
        ge=1,
        description="Number of clusters of Entity-Year records (observation mode).",
        json_schema_extra={
            'interpretation': 'Chosen near the elbow of the within-cluster SS curve',
        }
    )

    linkage: Literal['single', 'average', 'complete', 'ward'] = Field(
        default='ward',
        description="Linkage rule for agglomerative clustering.",
    )

    n_restarts: int = Field(
        default=100,
        ge=1,
        description="Independent random restarts of k-means. The restart with lowest within-cluster SS is kept.",
    )

    max_iter: int = Field(
        default=300,
        ge=1,
        description="Iteration cap of a single k-means restart.",
    )

    seed: int = Field(
        default=42,
        ge=0,
        description="Base seed. Each restart receives its own seed spawned from it.",
    )

    k_range: Tuple[int, int] = Field(
        default=(2, 12),
        description="Inclusive range of candidate k evaluated by the elbow heuristic.",
    )

    n_jobs: int = Field(
        default=1,
        ge=1,
        description="Worker threads used for k-means restarts.",
    )

    @field_validator('k_range')
    @classmethod
    def validate_k_range(cls, v):
        if v[0] < 1 or v[0] > v[1]:
            raise ValueError(f"k_range must satisfy 1 <= low <= high, got {v}")
        return v


# ============================================================================
# Main Configuration Class
# ============================================================================

class AnalysisConfig(BaseModel):
    """Complete analysis configuration with all parameter categories.

    Usage:
        >>> config = AnalysisConfig()
        >>> config.correlation.min_join_size
        >>> config = AnalysisConfig.from_json("config.json")
    """

    model_config = {'frozen': True, 'extra': 'forbid'}

    keys: KeyParameters = Field(
        default_factory=KeyParameters,
        description="Entity exclusion lists"
    )

    missing: MissingDataParameters = Field(
        default_factory=MissingDataParameters,
        description="Missing-data policy thresholds"
    )

    correlation: CorrelationParameters = Field(
        default_factory=CorrelationParameters,
        description="Cross-dataset correlation settings"
    )

    pca: PcaParameters = Field(
        default_factory=PcaParameters,
        description="PCA settings"
    )

    clustering: ClusteringParameters = Field(
        default_factory=ClusteringParameters,
        description="Clustering settings"
    )

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        """Export all parameters as nested dictionary."""
        return self.model_dump(mode='json')

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> "AnalysisConfig":
        """Load configuration from a JSON file. Missing categories use defaults."""
        with open(path, encoding='utf-8') as fh:
            return cls.model_validate(json.load(fh))

    def with_overrides(self, **sections: Dict[str, Any]) -> "AnalysisConfig":
        """Return a copy with some parameters replaced, e.g. ``clustering={'seed': 1}``."""
        data = self.to_dict()
        for name, values in sections.items():
            if name not in data:
                raise ValueError(f"Unknown configuration category: {name}")
            data[name].update(values)
        return type(self).model_validate(data)

    def describe_all(self) -> None:
        """Print documentation for all parameters in all categories."""
        for category_name in type(self).model_fields:
            category = getattr(self, category_name)
            print(f"\n{'#' * 70}")
            print(f"# {category_name.upper()}")
            print(f"{'#' * 70}")
            for param_name in type(category).model_fields:
                category.describe(param_name)


if __name__ == "__main__":
    config = AnalysisConfig()

    print("=" * 80)
    print("ANALYSIS PARAMETERS")
    print("=" * 80)
    for category_name, values in config.to_dict().items():
        print(f"\n{category_name.upper()}")
        print("-" * 80)
        for param_name, value in values.items():
            print(f"  {param_name:24s} = {value}")
