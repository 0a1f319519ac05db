#!/usr/bin/env python3
"""
Compositional Normalization

Turns absolute cause-of-death counts into the share of each cause in a
record's total. Rows whose total is zero, or that hold an undefined count,
have no composition and are listed in ``NormalizedMatrix.excluded`` instead
of being carried forward as NaN.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from cod_panel.datasets import KEY, Dataset
from cod_panel.errors import NormalizationError

logger = logging.getLogger(__name__)

ROW_SUM_RTOL = 1e-9


@dataclass(frozen=True)
class NormalizedMatrix:
    """Cause proportions indexed by (Entity, Year).

    Attributes:
        proportions: Records x causes, every row summing to 1
        totals: Row totals of the original counts for retained records
        excluded: Records left out, with a ``reason`` column
    """
    proportions: pd.DataFrame
    totals: pd.Series
    excluded: pd.DataFrame

    @property
    def causes(self) -> list:
        return list(self.proportions.columns)

    @property
    def keys(self) -> pd.MultiIndex:
        return self.proportions.index

    def __len__(self) -> int:
        return len(self.proportions)


def normalize_counts(counts: pd.DataFrame) -> NormalizedMatrix:
    """
    Row-normalize a records x causes count matrix.

    Args:
        counts: Non-negative counts; the index identifies records

    Returns:
        NormalizedMatrix with zero-total and incomplete rows excluded

    Raises:
        NormalizationError: If any count is negative or no row has a positive total
    """
    if counts.shape[1] == 0:
        raise NormalizationError("No cause columns to normalize")
    values = counts.astype(float)
    negative = (values < 0).any(axis=1)
    if negative.any():
        raise NormalizationError(
            f"{int(negative.sum())} records hold negative counts, e.g. {list(values.index[negative][:3])}"
        )

    incomplete = values.isna().any(axis=1)
    totals = values.sum(axis=1)
    zero_total = ~incomplete & (totals == 0)
    keep = ~(incomplete | zero_total)

    excluded = pd.DataFrame(
        {'reason': np.where(incomplete, 'incomplete', 'zero_total')},
        index=values.index,
    ).loc[~keep]

    if not keep.any():
        raise NormalizationError("No record has a positive, fully defined total")
    if not keep.all():
        logger.info("Excluded %d records from normalization (%d zero total, %d incomplete)",
                    int((~keep).sum()), int(zero_total.sum()), int(incomplete.sum()))

    proportions = values.loc[keep].div(totals[keep], axis=0)
    row_sums = proportions.sum(axis=1).to_numpy()
    assert np.allclose(row_sums, 1.0, rtol=ROW_SUM_RTOL, atol=0.0), "Proportions do not sum to one"

    return NormalizedMatrix(proportions=proportions, totals=totals[keep], excluded=excluded)


def normalize_dataset(dataset: Dataset, causes: Optional[Sequence[str]] = None) -> NormalizedMatrix:
    """Normalize the cause columns of a key-normalized dataset.

    Missingness indicator columns are never treated as causes.
    """
    causes = list(causes) if causes is not None else list(dataset.value_columns)
    unknown = [c for c in causes if c not in dataset.value_columns]
    if unknown:
        raise NormalizationError(f"{dataset.name}: unknown cause columns {unknown}")
    counts = dataset.frame.set_index(KEY)[causes]
    matrix = normalize_counts(counts)
    logger.info("%s: normalized %d records over %d causes", dataset.name, len(matrix), len(causes))
    return matrix
