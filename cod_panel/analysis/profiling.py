#!/usr/bin/env python3
"""
Cluster Profiling

Describes k-means clusters by their variables in two deliberately separate
ways:

- ``relative_ranking``: (centroid - global mean) / global spread in the
  scaled space. Answers "which causes are over-represented in this cluster
  compared with everyone else".
- ``absolute_ranking``: mean raw value of the cluster's members. Answers
  "which causes are largest in this cluster".

A cause can top the first list while sitting far down the second one, so the
two are never merged into a single ranking.
"""

from dataclasses import dataclass
from typing import Union

import numpy as np
import pandas as pd

from cod_panel.analysis.clustering import KMeansResult
from cod_panel.preprocess.composition import NormalizedMatrix


@dataclass(frozen=True)
class ClusterProfileReport:
    """Long tables with one row per (cluster, variable, rank)."""
    relative: pd.DataFrame
    absolute: pd.DataFrame


class ClusterProfiler:
    """Rankings of variables for each cluster of a k-means result"""

    def __init__(self, result: KMeansResult, matrix: Union[NormalizedMatrix, pd.DataFrame]):
        """
        Args:
            result: k-means result; its ``points`` are the scaled space
            matrix: Unscaled records x causes data the result was computed from
        """
        data = matrix.proportions if isinstance(matrix, NormalizedMatrix) else matrix
        raw = data.T if result.assignment.mode == 'variables' else data
        assert raw.index.equals(result.points.index), "Matrix does not match clustered points"

        self.result = result
        self.raw = raw
        self.global_mean = result.points.mean()
        self.global_spread = result.points.std(ddof=0)

    @property
    def cluster_ids(self) -> list:
        return list(self.result.centroids.index)

    def relative_deviation(self) -> pd.DataFrame:
        """Clusters x variables matrix of (centroid - mean) / spread."""
        spread = self.global_spread.replace(0.0, np.nan)
        deviation = (self.result.centroids - self.global_mean) / spread
        return deviation.fillna(0.0)

    def relative_ranking(self, cluster_id: int) -> pd.Series:
        """Variables ordered by relative over-representation in the cluster, highest first."""
        scores = self.relative_deviation().loc[cluster_id]
        return scores.sort_values(ascending=False, kind='mergesort').rename('relative_deviation')

    def absolute_ranking(self, cluster_id: int) -> pd.Series:
        """Variables ordered by their raw mean within the cluster, largest first."""
        members = self.result.assignment.members(cluster_id)
        means = self.raw.loc[members].mean()
        return means.sort_values(ascending=False, kind='mergesort').rename('absolute_value')

    def report(self, top: int = None) -> ClusterProfileReport:
        relative, absolute = [], []
        for cid in self.cluster_ids:
            for frame, ranking in ((relative, self.relative_ranking(cid)),
                                   (absolute, self.absolute_ranking(cid))):
                ranking = ranking.head(top) if top else ranking
                frame.append(pd.DataFrame({
                    'cluster': cid,
                    'rank': np.arange(1, len(ranking) + 1),
                    'variable': ranking.index.to_list(),
                    ranking.name: ranking.to_numpy(),
                }))
        return ClusterProfileReport(
            relative=pd.concat(relative, ignore_index=True),
            absolute=pd.concat(absolute, ignore_index=True),
        )
