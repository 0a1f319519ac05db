#!/usr/bin/env python3
"""
Cross-Dataset Correlation Module

Correlates covariate tables (GDP, schooling, sanitation, ...) against the
normalized cause-of-death matrix. Every covariate column is inner-joined on
(Entity, Year) with the proportions and correlated with each cause over the
pairwise-complete rows of that join.

Pairs whose join is too small to give a stable estimate are reported with
``Marker.INSUFFICIENT_DATA`` rather than a number.
"""

import logging
import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd
from scipy.stats import pearsonr

from cod_panel.config import CorrelationParameters
from cod_panel.datasets import KEY, Dataset
from cod_panel.errors import DataIntegrityError, InsufficientJoinDataWarning
from cod_panel.preprocess.composition import NormalizedMatrix

logger = logging.getLogger(__name__)


class Marker(str, Enum):
    """Explicit stand-ins for coefficients that were not computed."""
    INSUFFICIENT_DATA = "insufficient-data"
    UNDEFINED = "undefined"


STATUS_OK = "ok"


@dataclass
class CorrelationTable:
    """Cause x covariate Pearson coefficients.

    ``coefficients`` is NaN exactly where ``status`` is not "ok"; use
    ``get`` or ``to_frame`` to see the marker instead of a NaN.
    """
    coefficients: pd.DataFrame
    n_obs: pd.DataFrame
    p_values: pd.DataFrame
    status: pd.DataFrame
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def causes(self) -> List[str]:
        return list(self.coefficients.index)

    @property
    def covariates(self) -> List[str]:
        return list(self.coefficients.columns)

    def get(self, cause: str, covariate: str) -> Union[float, Marker]:
        status = self.status.loc[cause, covariate]
        if status != STATUS_OK:
            return Marker(status)
        return float(self.coefficients.loc[cause, covariate])

    def to_frame(self) -> pd.DataFrame:
        """Coefficients with markers in place of uncomputed values (object dtype)."""
        out = self.coefficients.astype(object)
        return out.where(self.status == STATUS_OK, self.status)

    def to_long(self) -> pd.DataFrame:
        """One row per (cause, covariate) pair."""
        long = pd.DataFrame({
            'r': self.coefficients.stack(future_stack=True),
            'n': self.n_obs.stack(future_stack=True),
            'p_value': self.p_values.stack(future_stack=True),
            'status': self.status.stack(future_stack=True),
        })
        long.index.names = ['cause', 'covariate']
        return long.reset_index()

    def strongest(self, n: int = 10) -> pd.DataFrame:
        """The ``n`` computed pairs with the largest absolute coefficient."""
        long = self.to_long()
        long = long[long['status'] == STATUS_OK]
        order = long['r'].abs().sort_values(ascending=False, kind='mergesort').index
        return long.loc[order].head(n).reset_index(drop=True)

    @classmethod
    def concat(cls, tables: List["CorrelationTable"],
               failures: Optional[Dict[str, str]] = None) -> "CorrelationTable":
        """Merge results for several covariate datasets by column concatenation."""
        failures = dict(failures or {})
        for table in tables:
            failures.update(table.failures)
        if not tables:
            empty = pd.DataFrame()
            return cls(empty, empty, empty, empty, failures)
        return cls(
            coefficients=pd.concat([t.coefficients for t in tables], axis=1),
            n_obs=pd.concat([t.n_obs for t in tables], axis=1),
            p_values=pd.concat([t.p_values for t in tables], axis=1),
            status=pd.concat([t.status for t in tables], axis=1),
            failures=failures,
        )


def pearson_pair(x: np.ndarray, y: np.ndarray, min_obs: int) -> Tuple[float, float, int, str]:
    """
    Pearson correlation over pairwise-complete observations.

    Returns:
        (r, p_value, n, status) where r and p_value are NaN unless status is "ok"
    """
    mask = ~(np.isnan(x) | np.isnan(y))
    n = int(mask.sum())
    if n < min_obs:
        return np.nan, np.nan, n, Marker.INSUFFICIENT_DATA.value
    x, y = x[mask], y[mask]
    if np.ptp(x) == 0 or np.ptp(y) == 0:
        return np.nan, np.nan, n, Marker.UNDEFINED.value
    if n < 3:
        # pearsonr needs 3 points for a p-value; two points are perfectly (anti)correlated
        r = float(np.sign((x[1] - x[0]) * (y[1] - y[0])))
        return r, np.nan, n, STATUS_OK
    result = pearsonr(x, y)
    r = float(np.clip(result.statistic, -1.0, 1.0))
    return r, float(result.pvalue), n, STATUS_OK


def _covariate_frame(covariate: Union[Dataset, pd.DataFrame], include_indicators: bool) -> pd.DataFrame:
    if isinstance(covariate, Dataset):
        return covariate.values(include_indicators=include_indicators)
    frame = covariate
    if all(k in frame.columns for k in KEY):
        frame = frame.set_index(KEY)
    if list(frame.index.names) != KEY:
        raise DataIntegrityError(f"Covariate table must be keyed by {KEY}, got {frame.index.names}")
    return frame


def correlate(matrix: NormalizedMatrix,
              covariate: Union[Dataset, pd.DataFrame],
              params: Optional[CorrelationParameters] = None,
              name: Optional[str] = None) -> CorrelationTable:
    """
    Correlate every value column of one covariate table with every cause.

    Args:
        matrix: Normalized cause proportions
        covariate: Dataset, or frame with Entity/Year columns (or index)
        params: Correlation settings (defaults to CorrelationParameters())
        name: Prefix for covariate labels ("<name>:<column>"); defaults to
            the dataset name for Datasets

    Returns:
        CorrelationTable with one column per covariate value column
    """
    params = params or CorrelationParameters()
    if name is None and isinstance(covariate, Dataset):
        name = covariate.name
    values = _covariate_frame(covariate, params.include_indicators)
    if values.index.duplicated().any():
        raise DataIntegrityError(f"{name or 'covariate'}: duplicate Entity-Year keys")

    proportions = matrix.proportions
    causes = list(proportions.columns)
    coefficients, n_obs, p_values, status = {}, {}, {}, {}
    for column in values.columns:
        label = f"{name}:{column}" if name else str(column)
        # Inner join on the Entity-Year key; only keys present in both survive
        joined = proportions.join(values[[column]].rename(columns={column: "__covariate__"}), how='inner')
        x = pd.to_numeric(joined["__covariate__"], errors='coerce').to_numpy(dtype=float)
        results = [pearson_pair(x, joined[cause].to_numpy(dtype=float), params.min_join_size)
                   for cause in causes]
        coefficients[label] = [r[0] for r in results]
        p_values[label] = [r[1] for r in results]
        n_obs[label] = [r[2] for r in results]
        status[label] = [r[3] for r in results]

        short = sum(s == Marker.INSUFFICIENT_DATA.value for s in status[label])
        if short:
            warnings.warn(
                f"{label}: {short}/{len(causes)} pairs have fewer than "
                f"{params.min_join_size} matched rows (joined {len(joined)})",
                InsufficientJoinDataWarning,
                stacklevel=2,
            )

    index = pd.Index(causes, name='cause')
    return CorrelationTable(
        coefficients=pd.DataFrame(coefficients, index=index, dtype=float),
        n_obs=pd.DataFrame(n_obs, index=index, dtype=int),
        p_values=pd.DataFrame(p_values, index=index, dtype=float),
        status=pd.DataFrame(status, index=index, dtype=object),
    )


def correlate_many(matrix: NormalizedMatrix,
                   covariates: Mapping[str, Union[Dataset, pd.DataFrame]],
                   params: Optional[CorrelationParameters] = None) -> CorrelationTable:
    """
    Correlate several covariate datasets, concurrently when ``params.n_jobs > 1``.

    Datasets that cannot be joined are left out and reported in
    ``CorrelationTable.failures``; the others are unaffected. Columns appear
    in the order of ``covariates``.
    """
    params = params or CorrelationParameters()
    names = list(covariates)

    def run(name: str) -> Union[CorrelationTable, Exception]:
        try:
            return correlate(matrix, covariates[name], params, name=name)
        except DataIntegrityError as e:
            return e

    if params.n_jobs > 1 and len(names) > 1:
        with ThreadPoolExecutor(max_workers=params.n_jobs) as pool:
            outcomes = list(pool.map(run, names))
    else:
        outcomes = [run(name) for name in names]

    tables, failures = [], {}
    for name, outcome in zip(names, outcomes):
        if isinstance(outcome, Exception):
            logger.warning("Skipping covariate %s: %s", name, outcome)
            failures[name] = str(outcome)
        else:
            tables.append(outcome)

    table = CorrelationTable.concat(tables, failures)
    logger.info("Correlated %d covariate columns from %d datasets (%d failed)",
                len(table.covariates), len(tables), len(failures))
    return table
