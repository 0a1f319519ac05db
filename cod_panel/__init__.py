"""Cause-of-death composition and development indicator panel analysis."""

from cod_panel.config import AnalysisConfig
from cod_panel.datasets import CsvTableProvider, Dataset, DatasetSchema
from cod_panel.errors import (
    ConvergenceWarning,
    DataIntegrityError,
    InsufficientJoinDataWarning,
    NormalizationError,
)
from cod_panel.pipeline import PipelineContext, export_results, run_analysis

__version__ = "0.1.0"

__all__ = [
    "AnalysisConfig",
    "ConvergenceWarning",
    "CsvTableProvider",
    "DataIntegrityError",
    "Dataset",
    "DatasetSchema",
    "InsufficientJoinDataWarning",
    "NormalizationError",
    "PipelineContext",
    "export_results",
    "run_analysis",
]
