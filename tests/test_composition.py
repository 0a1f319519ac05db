import numpy as np
import pandas as pd
import pytest

from cod_panel.datasets import Dataset
from cod_panel.errors import NormalizationError
from cod_panel.preprocess.composition import ROW_SUM_RTOL, normalize_counts, normalize_dataset


def counts(rows, causes=("cause1", "cause2")):
    index = pd.MultiIndex.from_tuples([(r[0], r[1]) for r in rows], names=["Entity", "Year"])
    return pd.DataFrame([r[2:] for r in rows], index=index, columns=list(causes), dtype=float)


def test_two_record_example():
    matrix = normalize_counts(counts([("A", 2000, 10, 90), ("B", 2000, 20, 80)]))

    assert matrix.proportions["cause1"].tolist() == pytest.approx([0.1, 0.2])
    assert matrix.proportions["cause2"].tolist() == pytest.approx([0.9, 0.8])
    assert matrix.totals.tolist() == [100.0, 100.0]
    assert matrix.causes == ["cause1", "cause2"]
    assert len(matrix.excluded) == 0


def test_rows_sum_to_one(deaths_df):
    ds = Dataset.from_frame(deaths_df.drop(columns=["Code"]), "deaths")
    matrix = normalize_dataset(ds)

    sums = matrix.proportions.sum(axis=1).to_numpy()
    np.testing.assert_allclose(sums, 1.0, rtol=ROW_SUM_RTOL, atol=0)
    assert (matrix.proportions.to_numpy() >= 0).all()
    assert len(matrix) == len(deaths_df)


def test_zero_total_rows_are_excluded_not_nan():
    matrix = normalize_counts(counts([("A", 2000, 0, 0), ("B", 2000, 1, 3), ("C", 2000, 0, 5)]))

    assert list(matrix.keys) == [("B", 2000), ("C", 2000)]
    assert not matrix.proportions.isna().any().any()
    assert matrix.excluded.loc[("A", 2000), "reason"] == "zero_total"
    # a zero count is a value: C is a valid record with all deaths from cause2
    assert matrix.proportions.loc[("C", 2000)].tolist() == [0.0, 1.0]


def test_undefined_counts_are_excluded():
    matrix = normalize_counts(counts([("A", 2000, np.nan, 3), ("B", 2000, 1, 3)]))

    assert list(matrix.keys) == [("B", 2000)]
    assert matrix.excluded["reason"].tolist() == ["incomplete"]


def test_negative_counts_raise():
    with pytest.raises(NormalizationError, match="negative"):
        normalize_counts(counts([("A", 2000, -1, 3), ("B", 2000, 1, 3)]))


def test_nothing_left_raises():
    with pytest.raises(NormalizationError):
        normalize_counts(counts([("A", 2000, 0, 0)]))


def test_selected_causes_only(deaths_df):
    ds = Dataset.from_frame(deaths_df, "deaths")
    matrix = normalize_dataset(ds, causes=["Malaria", "Cancer"])

    assert matrix.causes == ["Malaria", "Cancer"]
    with pytest.raises(NormalizationError, match="unknown"):
        normalize_dataset(ds, causes=["Plague"])
