#!/usr/bin/env python3
"""
Entity-Year Key Normalization

Builds the canonical (Entity, Year) key of a dataset and removes entities
that would double count or do not describe a single present-day country:

1. Aggregate/defunct regions, dropped when their Code is empty
2. Dissolved predecessor states, dropped entirely
3. Administrative subdivisions of entities already in the panel, dropped entirely

Every removal is driven by the curated lists in ``KeyParameters``; nothing is
detected automatically, and codeless rows of unlisted entities are kept.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from cod_panel.config import KeyParameters
from cod_panel.datasets import CODE, ENTITY, KEY, YEAR, Dataset
from cod_panel.errors import DataIntegrityError

logger = logging.getLogger(__name__)


@dataclass
class KeyReport:
    """What the key normalizer did to one dataset."""
    dataset: str
    rows_in: int
    rows_out: int
    removed: Dict[str, int] = field(default_factory=dict)
    removed_entities: Dict[str, List[str]] = field(default_factory=dict)
    codeless_retained: List[str] = field(default_factory=list)
    exact_duplicates: int = 0

    def to_frame(self) -> pd.DataFrame:
        rows = [
            {'dataset': self.dataset, 'reason': reason, 'rows': n,
             'entities': ", ".join(self.removed_entities.get(reason, []))}
            for reason, n in self.removed.items()
        ]
        rows.append({'dataset': self.dataset, 'reason': 'exact_duplicate',
                     'rows': self.exact_duplicates, 'entities': ''})
        rows.append({'dataset': self.dataset, 'reason': 'codeless_retained',
                     'rows': 0, 'entities': ", ".join(self.codeless_retained)})
        return pd.DataFrame(rows, columns=['dataset', 'reason', 'rows', 'entities'])


def combine_tables(tables: Sequence[Dataset]) -> Dataset:
    """Concatenate several tables of the same dataset (e.g. a source split across files)."""
    assert len(tables) > 0, "No tables to combine"
    first = tables[0]
    for other in tables[1:]:
        if tuple(other.value_columns) != tuple(first.value_columns):
            raise DataIntegrityError(
                f"{first.name}: cannot combine tables with columns {list(first.value_columns)} "
                f"and {list(other.value_columns)}"
            )
    frame = pd.concat([t.frame for t in tables], ignore_index=True)
    return first.replace(frame=frame)


def _coerce_years(frame: pd.DataFrame, name: str) -> pd.Series:
    years = pd.to_numeric(frame[YEAR], errors='coerce')
    bad = years.isna() | (years != np.floor(years))
    if bad.any():
        examples = frame.loc[bad, YEAR].unique()[:5].tolist()
        raise DataIntegrityError(f"{name}: Year values are not integers: {examples}")
    return years.astype(int)


def normalize_keys(tables: Union[Dataset, Sequence[Dataset]],
                   params: Optional[KeyParameters] = None) -> Tuple[Dataset, KeyReport]:
    """
    Build a key-unique (Entity, Year) dataset.

    Args:
        tables: One dataset, or several tables of the same dataset to concatenate
        params: Entity exclusion lists (defaults to KeyParameters())

    Returns:
        (normalized Dataset sorted by Entity and Year, KeyReport)

    Raises:
        DataIntegrityError: If key columns are missing, no rows survive, or
            two rows with different values share a key.
    """
    params = params or KeyParameters()
    dataset = combine_tables(list(tables)) if isinstance(tables, (list, tuple)) else tables
    name = dataset.name
    frame = dataset.frame

    missing_keys = [c for c in KEY if c not in frame.columns]
    if missing_keys:
        raise DataIntegrityError(f"{name}: missing required key columns {missing_keys}")

    frame = frame.copy()
    frame[YEAR] = _coerce_years(frame, name)
    report = KeyReport(dataset=name, rows_in=len(frame), rows_out=0)

    if CODE in frame.columns:
        # Frames built without schema validation may carry blank codes
        codeless = frame[CODE].isna() | frame[CODE].astype(str).str.strip().eq("")
    else:
        codeless = pd.Series(True, index=frame.index)

    rules = [
        ('predecessor', frame[ENTITY].isin(params.predecessor_entities)),
        ('subdivision', frame[ENTITY].isin(params.subdivision_entities)),
        ('aggregate', frame[ENTITY].isin(params.aggregate_entities) & codeless),
    ]
    drop = pd.Series(False, index=frame.index)
    for reason, mask in rules:
        mask = mask & ~drop
        report.removed[reason] = int(mask.sum())
        report.removed_entities[reason] = sorted(frame.loc[mask, ENTITY].unique())
        drop |= mask

    frame = frame.loc[~drop]
    report.codeless_retained = sorted(frame.loc[codeless.loc[frame.index], ENTITY].unique())
    if report.codeless_retained:
        logger.info("%s: keeping %d codeless entities not on any exclusion list",
                    name, len(report.codeless_retained))

    if frame.empty:
        raise DataIntegrityError(f"{name}: no rows left after key normalization")

    # Identical rows repeated across source files are one record
    before = len(frame)
    frame = frame.drop_duplicates()
    report.exact_duplicates = before - len(frame)

    collisions = frame.duplicated(subset=KEY, keep=False)
    if collisions.any():
        keys = frame.loc[collisions, KEY].drop_duplicates().head(5)
        listed = ", ".join(f"({e}, {y})" for e, y in keys.itertuples(index=False))
        raise DataIntegrityError(
            f"{name}: {int(collisions.sum())} rows share an Entity-Year key with different values, e.g. {listed}"
        )

    frame = frame.sort_values(KEY).reset_index(drop=True)
    report.rows_out = len(frame)
    logger.info("%s: %d -> %d rows after key normalization (%s)", name, report.rows_in,
                report.rows_out, ", ".join(f"{k}={v}" for k, v in report.removed.items()))
    return dataset.replace(frame=frame), report
