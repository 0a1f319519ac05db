#!/usr/bin/env python3
"""
Clustering Engine

Clusters either the causes or the Entity-Year records of a normalized
matrix:

- Variable mode: points are causes, dimensions are records. Each record is
  standardized across causes so that countries with high overall mortality
  do not dominate the distances.
- Observation mode: points are records, dimensions are causes. Each cause is
  standardized across records so that no single high-variance cause
  dominates.

Two algorithms share that scaling:

- Agglomerative clustering on Euclidean distances (single, average,
  complete or Ward linkage), cut into k flat clusters. Deterministic.
- k-means with many independent random restarts. Every restart gets its own
  seed spawned from the base seed, so results are reproducible whether the
  restarts run sequentially or in parallel. The restart with the lowest
  within-cluster sum of squares wins.

Cluster ids are renumbered 0..k-1 in order of first appearance of their
members, so identical partitions always carry identical labels.
"""

import logging
import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, FrozenSet, Hashable, List, Literal, Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy.cluster.hierarchy import cophenet, fcluster, linkage
from scipy.spatial.distance import pdist
from sklearn.cluster import KMeans
from sklearn.exceptions import ConvergenceWarning as SklearnConvergenceWarning
from sklearn.metrics import adjusted_rand_score, silhouette_score
from sklearn.preprocessing import StandardScaler
from tqdm import tqdm

from cod_panel.config import ClusteringParameters
from cod_panel.errors import ConvergenceWarning
from cod_panel.preprocess.composition import NormalizedMatrix

logger = logging.getLogger(__name__)

Mode = Literal['variables', 'observations']
MODES = ('variables', 'observations')


# =============================================================================
# Results
# =============================================================================

@dataclass(frozen=True)
class Cluster:
    id: int
    centroid: pd.Series
    members: FrozenSet[Hashable]

    @property
    def size(self) -> int:
        return len(self.members)


@dataclass(frozen=True)
class ClusterAssignment:
    """Member key -> cluster id, covering every clustered point exactly once."""
    labels: pd.Series
    mode: str
    method: str

    @property
    def n_clusters(self) -> int:
        return int(self.labels.nunique())

    def members(self, cluster_id: int) -> List[Hashable]:
        return self.labels.index[(self.labels == cluster_id).to_numpy()].tolist()

    def sizes(self) -> pd.Series:
        return self.labels.value_counts().sort_index()

    def clusters(self, points: pd.DataFrame) -> List[Cluster]:
        """Clusters with centroids computed as member means of ``points``."""
        centroids = points.groupby(self.labels.reindex(points.index).to_numpy()).mean()
        return [
            Cluster(id=int(cid), centroid=centroids.loc[cid], members=frozenset(self.members(cid)))
            for cid in centroids.index
        ]

    def to_frame(self) -> pd.DataFrame:
        return self.labels.rename('cluster').reset_index()


@dataclass(frozen=True)
class HierarchicalResult:
    assignment: ClusterAssignment
    linkage_matrix: np.ndarray
    cophenetic: float
    points: pd.DataFrame


@dataclass(frozen=True)
class KMeansResult:
    """Best of several k-means restarts.

    ``restarts`` lists seed, inertia, iterations and convergence of every
    restart; ``best_restart`` indexes into it.
    """
    assignment: ClusterAssignment
    centroids: pd.DataFrame
    inertia: float
    restarts: pd.DataFrame
    best_restart: int
    points: pd.DataFrame

    @property
    def converged(self) -> bool:
        return bool(self.restarts.loc[self.best_restart, 'converged'])


@dataclass(frozen=True)
class ElbowResult:
    """Within-cluster sum of squares (and silhouette) for candidate k."""
    curve: pd.DataFrame
    elbow_k: int


# =============================================================================
# Scaling
# =============================================================================

def _matrix_frame(matrix: Union[NormalizedMatrix, pd.DataFrame]) -> pd.DataFrame:
    data = matrix.proportions if isinstance(matrix, NormalizedMatrix) else matrix
    if data.isna().any().any():
        raise ValueError("Clustering input contains undefined values")
    return data


def scale_matrix(matrix: Union[NormalizedMatrix, pd.DataFrame], mode: Mode) -> pd.DataFrame:
    """
    Points x dimensions frame for the given mode.

    Variable mode returns causes x records with every record standardized
    across causes; observation mode returns records x causes with every cause
    standardized across records.
    """
    data = _matrix_frame(matrix)
    if mode == 'variables':
        scaled = StandardScaler().fit_transform(data.T.to_numpy(dtype=float))
        return pd.DataFrame(scaled, index=data.columns, columns=data.index)
    if mode == 'observations':
        scaled = StandardScaler().fit_transform(data.to_numpy(dtype=float))
        return pd.DataFrame(scaled, index=data.index, columns=data.columns)
    raise ValueError(f"Unknown clustering mode: {mode!r}; expected one of {MODES}")


def canonical_labels(labels: Sequence[int]) -> np.ndarray:
    """Renumber labels 0..k-1 by order of first appearance."""
    mapping: Dict[int, int] = {}
    out = np.empty(len(labels), dtype=int)
    for i, label in enumerate(labels):
        out[i] = mapping.setdefault(int(label), len(mapping))
    return out


def _check_k(k: int, n_points: int) -> None:
    if k < 1 or k > n_points:
        raise ValueError(f"k must be between 1 and the number of points ({n_points}), got {k}")


# =============================================================================
# Hierarchical
# =============================================================================

def hierarchical(points: pd.DataFrame, k: int, method: str = 'ward', mode: str = 'custom') -> HierarchicalResult:
    """
    Agglomerative clustering of already scaled points.

    Args:
        points: Points x dimensions
        k: Number of flat clusters to cut the tree into
        method: Linkage rule (single, average, complete, ward)
        mode: Label recorded on the assignment

    Returns:
        HierarchicalResult with assignment, scipy linkage matrix and
        cophenetic correlation of the tree
    """
    if len(points) < 2:
        raise ValueError("Hierarchical clustering needs at least two points")
    _check_k(k, len(points))
    condensed = pdist(points.to_numpy(dtype=float), metric='euclidean')
    tree = linkage(condensed, method=method)
    flat = fcluster(tree, t=k, criterion='maxclust')
    coph, _ = cophenet(tree, condensed)

    labels = pd.Series(canonical_labels(flat), index=points.index, name='cluster')
    logger.info("Hierarchical (%s, %s): %d points into %d clusters, cophenetic r=%.3f",
                mode, method, len(points), labels.nunique(), coph)
    return HierarchicalResult(
        assignment=ClusterAssignment(labels=labels, mode=mode, method=f"hierarchical-{method}"),
        linkage_matrix=tree,
        cophenetic=float(coph),
        points=points,
    )


def cluster_hierarchical(matrix: Union[NormalizedMatrix, pd.DataFrame], mode: Mode,
                         params: Optional[ClusteringParameters] = None,
                         k: Optional[int] = None) -> HierarchicalResult:
    """Scale ``matrix`` for ``mode`` and cluster it hierarchically."""
    params = params or ClusteringParameters()
    points = scale_matrix(matrix, mode)
    k = _fit_k(k or _default_k(params, mode), len(points), mode)
    return hierarchical(points, k, method=params.linkage, mode=mode)


# =============================================================================
# k-means
# =============================================================================

def restart_seeds(seed: int, n_restarts: int) -> List[int]:
    """Independent, reproducible seeds for each restart."""
    children = np.random.SeedSequence(seed).spawn(n_restarts)
    return [int(child.generate_state(1)[0]) for child in children]


def _single_restart(X: np.ndarray, k: int, seed: int, max_iter: int) -> dict:
    # One Lloyd run from random initial centroids; tol=0 iterates until no point moves
    model = KMeans(n_clusters=k, init='random', n_init=1, max_iter=max_iter,
                   tol=0.0, algorithm='lloyd', random_state=seed)
    model.fit(X)
    return {
        'seed': seed,
        'inertia': float(model.inertia_),
        'n_iter': int(model.n_iter_),
        'converged': bool(model.n_iter_ < max_iter),
        'labels': model.labels_.copy(),
        'centers': model.cluster_centers_.copy(),
    }


def kmeans(points: pd.DataFrame, k: int, n_restarts: int = 100, max_iter: int = 300,
           seed: int = 42, n_jobs: int = 1, mode: str = 'custom',
           progress: bool = False) -> KMeansResult:
    """
    Best-of-restarts k-means on already scaled points.

    Args:
        points: Points x dimensions
        k: Number of clusters
        n_restarts: Independent random restarts
        max_iter: Iteration cap per restart
        seed: Base seed; restart seeds are spawned from it
        n_jobs: Worker threads running restarts
        mode: Label recorded on the assignment
        progress: Show a progress bar over restarts

    Returns:
        KMeansResult of the restart with lowest within-cluster sum of squares
    """
    _check_k(k, len(points))
    X = points.to_numpy(dtype=float)
    seeds = restart_seeds(seed, n_restarts)

    def run(s: int) -> dict:
        return _single_restart(X, k, s, max_iter)

    # Warning filters are process-wide: set once around the pool, not per worker
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", SklearnConvergenceWarning)
        if n_jobs > 1 and n_restarts > 1:
            with ThreadPoolExecutor(max_workers=n_jobs) as pool:
                runs = list(tqdm(pool.map(run, seeds), total=n_restarts,
                                 desc=f"k-means k={k}", disable=not progress))
        else:
            runs = [run(s) for s in tqdm(seeds, desc=f"k-means k={k}", disable=not progress)]

    restarts = pd.DataFrame(
        [{key: r[key] for key in ('seed', 'inertia', 'n_iter', 'converged')} for r in runs],
        index=pd.RangeIndex(n_restarts, name='restart'),
    )
    not_converged = int((~restarts['converged']).sum())
    if not_converged:
        warnings.warn(
            f"{not_converged}/{n_restarts} k-means restarts (k={k}) hit the iteration cap of "
            f"{max_iter} without stabilizing; they remain eligible",
            ConvergenceWarning,
            stacklevel=2,
        )

    best = int(np.argmin(restarts['inertia'].to_numpy()))
    raw_labels = runs[best]['labels']
    labels = canonical_labels(raw_labels)

    # Reorder centroids to follow the renumbered labels
    order = {new: old for old, new in zip(raw_labels, labels)}
    centers = runs[best]['centers'][[order[i] for i in range(len(order))]]
    centroids = pd.DataFrame(centers, index=pd.RangeIndex(len(order), name='cluster'),
                             columns=points.columns)

    assignment = ClusterAssignment(
        labels=pd.Series(labels, index=points.index, name='cluster'),
        mode=mode,
        method='kmeans',
    )
    logger.info("k-means (%s): k=%d, best of %d restarts (#%d) inertia=%.4f",
                mode, k, n_restarts, best, restarts.loc[best, 'inertia'])
    return KMeansResult(
        assignment=assignment,
        centroids=centroids,
        inertia=float(restarts.loc[best, 'inertia']),
        restarts=restarts,
        best_restart=best,
        points=points,
    )


def cluster_kmeans(matrix: Union[NormalizedMatrix, pd.DataFrame], mode: Mode,
                   params: Optional[ClusteringParameters] = None,
                   k: Optional[int] = None, progress: bool = False) -> KMeansResult:
    """Scale ``matrix`` for ``mode`` and run best-of-restarts k-means."""
    params = params or ClusteringParameters()
    points = scale_matrix(matrix, mode)
    k = _fit_k(k or _default_k(params, mode), len(points), mode)
    return kmeans(points, k, n_restarts=params.n_restarts,
                  max_iter=params.max_iter, seed=params.seed, n_jobs=params.n_jobs,
                  mode=mode, progress=progress)


def _default_k(params: ClusteringParameters, mode: Mode) -> int:
    return params.k_variables if mode == 'variables' else params.k_observations


def _fit_k(k: int, n_points: int, mode: str) -> int:
    """Cap a configured k at the number of points available in this mode."""
    if k > n_points:
        logger.warning("%s: k=%d exceeds the %d points to cluster; using k=%d",
                       mode, k, n_points, n_points)
        return n_points
    return k


# =============================================================================
# Choosing k
# =============================================================================

def find_elbow(ks: Sequence[int], wcss: Sequence[float]) -> int:
    """
    Elbow of a decreasing WCSS curve.

    Both axes are rescaled to [0, 1]; the elbow is the k whose point lies
    furthest below the straight line joining the first and last points.
    """
    ks = np.asarray(ks, dtype=float)
    wcss = np.asarray(wcss, dtype=float)
    if len(ks) < 3 or wcss[0] == wcss[-1]:
        return int(ks[0])
    x = (ks - ks[0]) / (ks[-1] - ks[0])
    y = (wcss - wcss[-1]) / (wcss[0] - wcss[-1])
    gap = (1.0 - x) - y
    return int(ks[int(np.argmax(gap))])


def elbow_curve(points: pd.DataFrame, k_values: Sequence[int], n_restarts: int = 10,
                max_iter: int = 300, seed: int = 42, n_jobs: int = 1) -> ElbowResult:
    """
    Evaluate k-means for each candidate k.

    The curve has columns k, wcss and silhouette (NaN where undefined). The
    suggested elbow only bounds a sensible range; the configured k is what
    the pipeline uses.
    """
    rows = []
    for k in k_values:
        if k < 1 or k > len(points):
            continue
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            result = kmeans(points, k, n_restarts=n_restarts, max_iter=max_iter,
                            seed=seed, n_jobs=n_jobs, mode='elbow')
        labels = result.assignment.labels.to_numpy()
        n_labels = len(np.unique(labels))
        silhouette = (silhouette_score(points.to_numpy(dtype=float), labels)
                      if 2 <= n_labels <= len(points) - 1 else np.nan)
        rows.append({'k': k, 'wcss': result.inertia, 'silhouette': silhouette})

    curve = pd.DataFrame(rows, columns=['k', 'wcss', 'silhouette'])
    if curve.empty:
        raise ValueError(f"No candidate k in {list(k_values)} fits {len(points)} points")
    elbow_k = find_elbow(curve['k'].tolist(), curve['wcss'].tolist())
    logger.info("Elbow heuristic over k=%d..%d suggests k=%d",
                curve['k'].min(), curve['k'].max(), elbow_k)
    return ElbowResult(curve=curve, elbow_k=elbow_k)


def choose_k(matrix: Union[NormalizedMatrix, pd.DataFrame], mode: Mode,
             params: Optional[ClusteringParameters] = None, n_restarts: int = 10) -> ElbowResult:
    """Elbow curve over ``params.k_range`` for the given mode."""
    params = params or ClusteringParameters()
    low, high = params.k_range
    return elbow_curve(scale_matrix(matrix, mode), range(low, high + 1), n_restarts=n_restarts,
                       max_iter=params.max_iter, seed=params.seed, n_jobs=params.n_jobs)


def compare_assignments(a: ClusterAssignment, b: ClusterAssignment) -> float:
    """Adjusted Rand index of two assignments over their shared members."""
    shared = a.labels.index.intersection(b.labels.index)
    if len(shared) == 0:
        raise ValueError("Assignments share no members")
    return float(adjusted_rand_score(a.labels.loc[shared], b.labels.loc[shared]))
