#!/usr/bin/env python3
"""
Principal Component Analysis of Cause Proportions

Standardizes each cause (zero mean, unit variance) and eigen-decomposes the
resulting correlation matrix. Loadings are correlations between causes and
components, so they are comparable across components.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

import numpy as np
import pandas as pd
from sklearn.preprocessing import StandardScaler

from cod_panel.preprocess.composition import NormalizedMatrix

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PcaResult:
    """Components ordered by explained variance.

    Attributes:
        eigenvalues: Variance of each standardized component
        variance: DataFrame with 'explained' and 'cumulative' percentages
        loadings: Causes x components, correlation of cause with component
        scores: Records x components
    """
    eigenvalues: pd.Series
    variance: pd.DataFrame
    loadings: pd.DataFrame
    scores: pd.DataFrame

    @property
    def n_components(self) -> int:
        return len(self.eigenvalues)

    def top_loadings(self, component: str, n: int = 5) -> pd.Series:
        """Causes with the largest absolute loading on ``component``."""
        column = self.loadings[component]
        order = column.abs().sort_values(ascending=False, kind='mergesort').index
        return column.loc[order].head(n)


def run_pca(matrix: Union[NormalizedMatrix, pd.DataFrame], n_components: Optional[int] = None) -> PcaResult:
    """
    Decompose a records x causes matrix.

    Args:
        matrix: NormalizedMatrix or a plain records x variables frame
        n_components: How many components to report (all if None)

    Returns:
        PcaResult

    Raises:
        ValueError: If the matrix holds undefined values, has fewer than two
            records, or a cause does not vary.
    """
    data = matrix.proportions if isinstance(matrix, NormalizedMatrix) else matrix
    if data.isna().any().any():
        raise ValueError("PCA input contains undefined values; exclude incomplete rows first")
    if len(data) < 2:
        raise ValueError(f"PCA needs at least two records, got {len(data)}")
    constant = data.columns[data.std(ddof=0) == 0].tolist()
    if constant:
        raise ValueError(f"Cannot standardize causes without variation: {constant}")

    n_vars = data.shape[1]
    n_components = n_vars if n_components is None else min(n_components, n_vars)

    standardized = StandardScaler().fit_transform(data.to_numpy(dtype=float))
    correlation = np.corrcoef(standardized, rowvar=False).reshape(n_vars, n_vars)

    # eigh returns ascending eigenvalues of the symmetric matrix
    eigenvalues, eigenvectors = np.linalg.eigh(correlation)
    order = np.argsort(eigenvalues, kind='stable')[::-1]
    eigenvalues = np.clip(eigenvalues[order], 0.0, None)
    eigenvectors = eigenvectors[:, order]

    # Fix signs: largest absolute loading of each component is positive
    pivots = np.argmax(np.abs(eigenvectors), axis=0)
    signs = np.sign(eigenvectors[pivots, np.arange(n_vars)])
    signs[signs == 0] = 1.0
    eigenvectors = eigenvectors * signs

    names = [f"PC{i + 1}" for i in range(n_vars)]
    explained = 100.0 * eigenvalues / eigenvalues.sum()
    variance = pd.DataFrame({
        'eigenvalue': eigenvalues,
        'explained': explained,
        'cumulative': np.cumsum(explained),
    }, index=pd.Index(names, name='component'))

    loadings = pd.DataFrame(eigenvectors * np.sqrt(eigenvalues),
                            index=data.columns, columns=names)
    scores = pd.DataFrame(standardized @ eigenvectors, index=data.index, columns=names)

    keep = names[:n_components]
    logger.info("PCA: first %d components explain %.1f%% of variance",
                n_components, variance['cumulative'].iloc[n_components - 1])
    return PcaResult(
        eigenvalues=variance['eigenvalue'].loc[keep],
        variance=variance.loc[keep, ['explained', 'cumulative']],
        loadings=loadings[keep],
        scores=scores[keep],
    )
