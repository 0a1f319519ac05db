#!/usr/bin/env python3
"""Datasets, Schemas and Table Providers.

A ``Dataset`` is one country-year table in the fixed
``(Entity, [Code], Year, value columns...)`` shape. Raw tables are turned
into datasets through a ``DatasetSchema``: an explicit, named mapping from
source columns to canonical value columns that is validated when the table
is loaded. A table whose columns do not match its schema fails with
``DataIntegrityError`` instead of having labels silently mis-assigned.

Datasets are immutable by convention: every pipeline stage returns a new
``Dataset`` (see ``Dataset.replace``) and never edits a frame it received.

Table providers are the seam to the outside world. The core only needs
``load(name)``; ``CsvTableProvider`` is a minimal implementation reading
``<name>.csv`` files from one directory.
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Tuple, Union

import numpy as np
import pandas as pd
from pydantic import BaseModel, Field, field_validator

from cod_panel.errors import DataIntegrityError

logger = logging.getLogger(__name__)

ENTITY = "Entity"
CODE = "Code"
YEAR = "Year"
KEY = [ENTITY, YEAR]

DEFAULT_MISSING_MARKERS: Tuple[str, ...] = ("", "..", "NA", "N/A", "n/a", "NaN", "-")


class DatasetSchema(BaseModel):
    """Expected layout of one source table.

    Attributes:
        name: Dataset name used in reports and correlation labels
        columns: Source value column -> canonical value column. None accepts
            every non-key column under its own name.
        key_columns: Source column names of Entity, Code and Year
        categories: Canonical category -> canonical columns summed into it
        missing_markers: String values meaning "unknown" (never zero)
        strict: Reject source tables carrying unmapped extra columns
    """

    model_config = {'frozen': True, 'extra': 'forbid'}

    name: str = Field(min_length=1)
    columns: Optional[Dict[str, str]] = None
    key_columns: Dict[str, str] = Field(
        default_factory=lambda: {ENTITY: ENTITY, CODE: CODE, YEAR: YEAR}
    )
    categories: Dict[str, List[str]] = Field(default_factory=dict)
    missing_markers: Tuple[str, ...] = DEFAULT_MISSING_MARKERS
    strict: bool = True

    @field_validator('columns')
    @classmethod
    def validate_columns(cls, v):
        if v is not None:
            if not v:
                raise ValueError("columns mapping must not be empty")
            targets = list(v.values())
            if len(set(targets)) != len(targets):
                raise ValueError(f"columns mapping has duplicate targets: {targets}")
        return v

    @field_validator('key_columns')
    @classmethod
    def validate_key_columns(cls, v):
        unknown = set(v) - {ENTITY, CODE, YEAR}
        if unknown:
            raise ValueError(f"Unknown key roles: {sorted(unknown)}")
        return {ENTITY: ENTITY, CODE: CODE, YEAR: YEAR, **v}


@dataclass(frozen=True)
class Dataset:
    """One country-year table.

    ``frame`` holds Entity, optionally Code, Year, the value columns and any
    missingness indicator columns added by the policy engine.
    """
    name: str
    frame: pd.DataFrame
    value_columns: Tuple[str, ...]
    indicator_columns: Tuple[str, ...] = ()
    categories: Dict[str, Tuple[str, ...]] = field(default_factory=dict)

    def replace(self, **changes) -> "Dataset":
        return dataclasses.replace(self, **changes)

    @property
    def has_code(self) -> bool:
        return CODE in self.frame.columns

    @property
    def n_rows(self) -> int:
        return len(self.frame)

    def values(self, include_indicators: bool = False) -> pd.DataFrame:
        """Value columns indexed by the (Entity, Year) key."""
        cols = list(self.value_columns)
        if include_indicators:
            cols += list(self.indicator_columns)
        return self.frame.set_index(KEY)[cols]

    @classmethod
    def from_frame(cls, raw: pd.DataFrame, schema: Union[DatasetSchema, str]) -> "Dataset":
        """Validate ``raw`` against ``schema`` and build a Dataset."""
        if isinstance(schema, str):
            schema = DatasetSchema(name=schema)
        frame, value_columns = validate_schema(raw, schema)
        frame, value_columns = apply_categories(frame, value_columns, schema.categories, schema.name)
        return cls(
            name=schema.name,
            frame=frame,
            value_columns=tuple(value_columns),
            categories={k: tuple(v) for k, v in schema.categories.items()},
        )


def validate_schema(raw: pd.DataFrame, schema: DatasetSchema) -> Tuple[pd.DataFrame, List[str]]:
    """Rename, type-check and clean a raw table according to its schema.

    Returns:
        (frame with canonical columns, list of canonical value columns)

    Raises:
        DataIntegrityError: If key or value columns are missing, extra
            columns are present in strict mode, or values are not numeric.
    """
    name = schema.name
    entity_src = schema.key_columns[ENTITY]
    code_src = schema.key_columns[CODE]
    year_src = schema.key_columns[YEAR]

    missing_keys = [c for c in (entity_src, year_src) if c not in raw.columns]
    if missing_keys:
        raise DataIntegrityError(f"{name}: missing required key columns {missing_keys}")

    key_sources = [c for c in (entity_src, code_src, year_src) if c in raw.columns]
    other_columns = [c for c in raw.columns if c not in key_sources]

    if schema.columns is None:
        mapping = {c: c for c in other_columns}
    else:
        mapping = dict(schema.columns)
        absent = [c for c in mapping if c not in raw.columns]
        if absent:
            raise DataIntegrityError(
                f"{name}: expected columns {absent} not found; got {list(raw.columns)}"
            )
        extra = [c for c in other_columns if c not in mapping]
        if extra and schema.strict:
            raise DataIntegrityError(
                f"{name}: {len(other_columns)} value columns found but schema maps "
                f"{len(mapping)}; unmapped columns {extra}"
            )
    if not mapping:
        raise DataIntegrityError(f"{name}: no value columns")

    entity = _as_text(raw[entity_src])
    if entity.isna().any():
        raise DataIntegrityError(f"{name}: {int(entity.isna().sum())} rows have no Entity")

    frame = pd.DataFrame({ENTITY: entity.astype(str)}, index=raw.index)
    if code_src in raw.columns:
        frame[CODE] = _as_text(raw[code_src])
    frame[YEAR] = raw[year_src]

    markers = list(schema.missing_markers)
    for source, target in mapping.items():
        column = raw[source]
        if not pd.api.types.is_numeric_dtype(column):
            text = _as_text(column)
            column = text.mask(text.isin(markers), np.nan)
        numeric = pd.to_numeric(column, errors='coerce')
        bad = numeric.isna() & column.notna()
        if bad.any():
            examples = column[bad].unique()[:5].tolist()
            raise DataIntegrityError(f"{name}: non-numeric values in column {source!r}: {examples}")
        frame[target] = numeric.astype(float)

    frame = frame.reset_index(drop=True)

    logger.debug("%s: validated %d rows, %d value columns", name, len(frame), len(mapping))
    return frame, list(mapping.values())


def _as_text(column: pd.Series) -> pd.Series:
    """Stripped strings as an object Series; blanks and nulls become NaN."""
    values = [
        np.nan if pd.isna(v) else str(v).strip()
        for v in column.to_numpy(dtype=object)
    ]
    text = pd.Series(values, index=column.index, dtype=object)
    return text.mask(text == "", np.nan)


def apply_categories(frame: pd.DataFrame, value_columns: List[str],
                     categories: Dict[str, List[str]], name: str = "dataset") -> Tuple[pd.DataFrame, List[str]]:
    """Sum groups of value columns into category columns.

    A category is undefined for a row when any of its members is. Columns
    not named in any category are kept unchanged.
    """
    if not categories:
        return frame, value_columns

    used: List[str] = []
    for category, members in categories.items():
        absent = [m for m in members if m not in value_columns]
        if absent:
            raise DataIntegrityError(f"{name}: category {category!r} refers to unknown columns {absent}")
        overlap = set(members) & set(used)
        if overlap:
            raise DataIntegrityError(f"{name}: columns {sorted(overlap)} assigned to more than one category")
        used.extend(members)
    clashes = [c for c in categories if c in value_columns and c not in used]
    if clashes:
        raise DataIntegrityError(f"{name}: category names {clashes} collide with existing columns")

    # min_count makes a category undefined as soon as one member is
    sums = {
        category: frame[list(members)].sum(axis=1, min_count=len(members))
        for category, members in categories.items()
    }
    frame = frame.drop(columns=used)
    for category, total in sums.items():
        frame[category] = total
    new_columns = [c for c in value_columns if c not in used] + list(categories)
    return frame, new_columns


class TableProvider(Protocol):
    """Anything that can hand out raw tables by name."""

    def names(self) -> List[str]:
        ...

    def load(self, name: str) -> pd.DataFrame:
        ...


class CsvTableProvider:
    """Reads ``<name>.csv`` tables from a single directory."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        assert self.directory.exists(), f"Data directory {self.directory} not found"

    def names(self) -> List[str]:
        return sorted(p.stem for p in self.directory.glob("*.csv"))

    def load(self, name: str) -> pd.DataFrame:
        path = self.directory / f"{name}.csv"
        if not path.exists():
            raise FileNotFoundError(f"Table {name!r} not found at {path}")
        # Keep blank cells as strings so the schema decides what "missing" means
        return pd.read_csv(path, dtype=str, keep_default_na=False)
