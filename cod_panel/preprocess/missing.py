#!/usr/bin/env python3
"""Missing-Data Policy Engine.

Decides, per dataset and per column, what happens to missing values:

1. Drop a column whose missing rate dwarfs all others when it is
   responsible for most incomplete rows and dropping rows would cost too
   much.
2. Drop every incomplete row when that loses few enough rows.
3. Otherwise classify each partially missing column on its own. The
   distribution of correlated companion columns is compared between rows
   where the column is missing and rows where it is present:
     - diverging distributions mean the missingness is informative, so a
       ``<column>_missing`` indicator is added and values stay undefined;
     - indistinguishable distributions mean the column is treated as
       missing completely at random, and its rows are excluded for that
       column alone (or imputed, if configured).

The classification in step 3 has no universally correct threshold. Every
decision is therefore returned in a ``MissingnessReport`` together with the
statistic it was based on, and the comparison itself can be swapped out via
the ``divergence`` argument of ``apply_missing_policy``.

Example:
    >>> dataset, report = apply_missing_policy(dataset, MissingDataParameters())
    >>> report.to_frame()[['column', 'policy', 'p_value']]
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy.stats import ks_2samp

from cod_panel.config import MissingDataParameters
from cod_panel.datasets import Dataset
from cod_panel.errors import DataIntegrityError

logger = logging.getLogger(__name__)

INDICATOR_SUFFIX = "_missing"


class ColumnPolicy(str, Enum):
    """What the engine decided for one column."""
    KEEP = "keep"
    DROP_COLUMN = "drop-column"
    DROP_ROW = "drop-row"
    IMPUTE = "impute"
    FLAG = "flag"
    SURGICAL_DROP = "surgical-drop"


@dataclass(frozen=True)
class DivergenceResult:
    """Outcome of comparing companion distributions for one target column.

    ``p_value`` is NaN when no comparison was possible.
    """
    statistic: float
    p_value: float
    companions: Tuple[str, ...] = ()

    @property
    def testable(self) -> bool:
        return not np.isnan(self.p_value)


@dataclass(frozen=True)
class ColumnDecision:
    column: str
    missing_rate: float
    policy: ColumnPolicy
    reason: str
    statistic: float = np.nan
    p_value: float = np.nan
    companions: Tuple[str, ...] = ()


@dataclass
class MissingnessReport:
    """Inspectable record of every missing-data decision for one dataset."""
    dataset: str
    rows_in: int
    rows_out: int
    decisions: Dict[str, ColumnDecision] = field(default_factory=dict)

    def policy(self, column: str) -> ColumnPolicy:
        return self.decisions[column].policy

    def columns_with(self, policy: ColumnPolicy) -> List[str]:
        return [c for c, d in self.decisions.items() if d.policy == policy]

    def to_frame(self) -> pd.DataFrame:
        rows = [
            {
                'dataset': self.dataset,
                'column': d.column,
                'missing_rate': d.missing_rate,
                'policy': d.policy.value,
                'reason': d.reason,
                'statistic': d.statistic,
                'p_value': d.p_value,
                'companions': ", ".join(d.companions),
            }
            for d in self.decisions.values()
        ]
        return pd.DataFrame(rows, columns=['dataset', 'column', 'missing_rate', 'policy',
                                           'reason', 'statistic', 'p_value', 'companions'])


DivergenceFn = Callable[[pd.DataFrame, str, MissingDataParameters], DivergenceResult]


def missing_rates(values: pd.DataFrame) -> pd.Series:
    """Share of missing values per column."""
    return values.isna().mean()


def column_drop_candidate(values: pd.DataFrame, params: MissingDataParameters) -> Optional[str]:
    """
    Return the column whose removal is justified by step 1, if any.

    The worst column must be missing at least ``column_drop_disparity`` times
    as often as every other column and its removal must make more than
    ``column_drop_majority`` of the incomplete rows complete. Nothing is
    dropped while removing every incomplete row would lose at most
    ``max_row_loss`` of the rows; small gaps are left to the row rule.
    """
    if values.shape[1] < 2:
        return None
    if values.isna().any(axis=1).mean() <= params.max_row_loss:
        return None
    rates = missing_rates(values)
    worst = rates.idxmax()
    if rates[worst] == 0:
        return None

    others = rates.drop(worst).max()
    disparity = np.inf if others == 0 else rates[worst] / others
    if disparity < params.column_drop_disparity:
        return None

    incomplete_before = int(values.isna().any(axis=1).sum())
    incomplete_after = int(values.drop(columns=[worst]).isna().any(axis=1).sum())
    eliminated = (incomplete_before - incomplete_after) / incomplete_before
    logger.debug("Column %s: disparity %.1f, eliminates %.1f%% of incomplete rows",
                 worst, disparity, 100 * eliminated)
    if eliminated <= params.column_drop_majority:
        return None
    return worst


def companion_columns(values: pd.DataFrame, target: str, params: MissingDataParameters) -> List[str]:
    """Columns correlated with ``target`` strongly enough to reveal missingness patterns.

    Falls back to every other column holding data when none qualifies.
    """
    others = [c for c in values.columns if c != target and values[c].notna().any()]
    companions = []
    for column in others:
        pair = values[[target, column]].dropna()
        if len(pair) < 3 or pair[target].std() == 0 or pair[column].std() == 0:
            continue
        r = pair[target].corr(pair[column])
        if abs(r) >= params.companion_min_corr:
            companions.append(column)
    return companions or others


def missingness_divergence(values: pd.DataFrame, target: str,
                           params: MissingDataParameters) -> DivergenceResult:
    """
    Two-sample Kolmogorov-Smirnov comparison of companion columns.

    For each companion, its values in rows where ``target`` is missing are
    compared against its values where ``target`` is present. The statistic
    is the largest KS distance; the p-value is the smallest one, Bonferroni
    adjusted for the number of comparisons.
    """
    missing = values[target].isna()
    statistics, p_values, used = [], [], []
    for column in companion_columns(values, target, params):
        when_missing = values.loc[missing, column].dropna()
        when_present = values.loc[~missing, column].dropna()
        if len(when_missing) < params.min_group_size or len(when_present) < params.min_group_size:
            continue
        result = ks_2samp(when_missing.to_numpy(), when_present.to_numpy())
        statistics.append(float(result.statistic))
        p_values.append(float(result.pvalue))
        used.append(column)

    if not used:
        return DivergenceResult(statistic=np.nan, p_value=np.nan)
    p_value = min(1.0, min(p_values) * len(used))
    return DivergenceResult(statistic=max(statistics), p_value=p_value, companions=tuple(used))


def apply_missing_policy(dataset: Dataset,
                         params: Optional[MissingDataParameters] = None,
                         divergence: DivergenceFn = missingness_divergence
                         ) -> Tuple[Dataset, MissingnessReport]:
    """
    Decide and apply a missing-data policy for every value column.

    Args:
        dataset: Key-normalized dataset
        params: Thresholds (defaults to MissingDataParameters())
        divergence: Function classifying a partially missing column

    Returns:
        (transformed Dataset, MissingnessReport)

    Raises:
        DataIntegrityError: If no value column is left after dropping.
    """
    params = params or MissingDataParameters()
    name = dataset.name
    frame = dataset.frame
    values = frame[list(dataset.value_columns)]
    rates = missing_rates(values)
    report = MissingnessReport(dataset=name, rows_in=len(frame), rows_out=len(frame))
    decisions = report.decisions

    # Step 1: column drops
    for column in values.columns[rates == 1.0]:
        decisions[column] = ColumnDecision(column, 1.0, ColumnPolicy.DROP_COLUMN, "entirely missing")
    remaining = values.drop(columns=list(decisions))
    candidate = column_drop_candidate(remaining, params)
    if candidate is not None:
        others = rates.drop(list(decisions) + [candidate]).max()
        decisions[candidate] = ColumnDecision(
            candidate, float(rates[candidate]), ColumnPolicy.DROP_COLUMN,
            f"missing rate {rates[candidate]:.1%} vs at most {others:.1%} elsewhere",
        )
        remaining = remaining.drop(columns=[candidate])
    if remaining.shape[1] == 0:
        raise DataIntegrityError(f"{name}: every value column was dropped for missing data")

    for column in remaining.columns[remaining.notna().all()]:
        decisions[column] = ColumnDecision(column, 0.0, ColumnPolicy.KEEP, "complete")
    partial = [c for c in remaining.columns if c not in decisions]

    keep_rows = pd.Series(True, index=frame.index)
    imputed: Dict[str, float] = {}
    indicators: List[str] = []

    # Step 2: row drops
    incomplete = remaining.isna().any(axis=1)
    row_loss = float(incomplete.mean())
    if partial and row_loss <= params.max_row_loss:
        for column in partial:
            decisions[column] = ColumnDecision(
                column, float(rates[column]), ColumnPolicy.DROP_ROW,
                f"dropping incomplete rows loses {row_loss:.1%} <= {params.max_row_loss:.1%}",
            )
        keep_rows = ~incomplete
        partial = []

    # Step 3: per-column classification
    for column in partial:
        result = divergence(remaining, column, params)
        rate = float(rates[column])
        if not result.testable:
            policy = ColumnPolicy.FLAG if params.untestable_policy == 'flag' else ColumnPolicy.SURGICAL_DROP
            reason = "no distribution comparison possible"
        elif result.p_value < params.divergence_alpha:
            policy = ColumnPolicy.FLAG
            reason = f"informative missingness (p={result.p_value:.3g} < {params.divergence_alpha})"
        else:
            policy = ColumnPolicy.IMPUTE if params.mcar_strategy == 'impute' else ColumnPolicy.SURGICAL_DROP
            reason = f"consistent with random missingness (p={result.p_value:.3g})"

        decisions[column] = ColumnDecision(column, rate, policy, reason,
                                           result.statistic, result.p_value, result.companions)
        if policy == ColumnPolicy.FLAG:
            indicators.append(column)
        elif policy == ColumnPolicy.IMPUTE:
            imputed[column] = float(remaining[column].median())

    dropped = [c for c, d in decisions.items() if d.policy == ColumnPolicy.DROP_COLUMN]
    out = frame.drop(columns=dropped).loc[keep_rows].copy()
    for column, fill in imputed.items():
        out[column] = out[column].fillna(fill)
    indicator_columns = []
    for column in indicators:
        indicator = f"{column}{INDICATOR_SUFFIX}"
        out[indicator] = out[column].isna().astype(int)
        indicator_columns.append(indicator)
    out = out.reset_index(drop=True)

    # Report columns in their original order
    report.decisions = {c: decisions[c] for c in dataset.value_columns}
    report.rows_out = len(out)
    for decision in report.decisions.values():
        logger.debug("%s.%s: %s (%s)", name, decision.column, decision.policy.value, decision.reason)
    logger.info("%s: %d -> %d rows; %s", name, report.rows_in, report.rows_out,
                ", ".join(f"{p.value}={len(report.columns_with(p))}" for p in ColumnPolicy
                          if report.columns_with(p)))

    value_columns = tuple(c for c in dataset.value_columns if c not in dropped)
    return dataset.replace(
        frame=out,
        value_columns=value_columns,
        indicator_columns=tuple(dataset.indicator_columns) + tuple(indicator_columns),
    ), report
