import numpy as np
import pandas as pd
import pytest

from cod_panel.config import KeyParameters
from cod_panel.datasets import Dataset
from cod_panel.errors import DataIntegrityError
from cod_panel.preprocess.keys import normalize_keys


def dataset(rows, name="deaths"):
    return Dataset.from_frame(pd.DataFrame(rows, columns=["Entity", "Code", "Year", "Deaths"]), name)


def test_exclusion_lists():
    ds = dataset([
        ["Aland", "ALA", 2000, 1],
        ["World", None, 2000, 100],          # aggregate without code
        ["USSR", "SUN", 1990, 50],          # dissolved predecessor, even with code
        ["Scotland", None, 2000, 3],        # subdivision
        ["Kosovo", None, 2000, 2],          # codeless but not listed
        ["G20", "OWID_G20", 2000, 60],      # listed aggregate that carries a code
    ])
    out, report = normalize_keys(ds, KeyParameters())

    assert sorted(out.frame["Entity"]) == ["Aland", "G20", "Kosovo"]
    assert report.removed == {"predecessor": 1, "subdivision": 1, "aggregate": 1}
    assert report.codeless_retained == ["Kosovo"]
    assert report.rows_in == 6 and report.rows_out == 3


def test_keys_are_unique_and_sorted():
    ds = dataset([
        ["Borduria", "BOR", 2001, 1],
        ["Aland", "ALA", "2001", 2],
        ["Aland", "ALA", 2000.0, 3],
    ])
    out, _ = normalize_keys(ds)

    keys = list(zip(out.frame["Entity"], out.frame["Year"]))
    assert keys == [("Aland", 2000), ("Aland", 2001), ("Borduria", 2001)]
    assert not out.frame.duplicated(subset=["Entity", "Year"]).any()
    assert out.frame["Year"].dtype.kind == "i"


def test_exact_duplicates_across_files_are_merged():
    a = dataset([["Aland", "ALA", 2000, 1], ["Aland", "ALA", 2001, 2]])
    b = dataset([["Aland", "ALA", 2001, 2], ["Aland", "ALA", 2002, 3]])
    out, report = normalize_keys([a, b])

    assert len(out.frame) == 3
    assert report.exact_duplicates == 1


def test_conflicting_duplicate_raises():
    ds = dataset([["Aland", "ALA", 2000, 1], ["Aland", "ALA", 2000, 2]])
    with pytest.raises(DataIntegrityError, match=r"\(Aland, 2000\)"):
        normalize_keys(ds)


def test_all_rows_excluded_raises():
    ds = dataset([["World", None, 2000, 1]])
    with pytest.raises(DataIntegrityError, match="no rows left"):
        normalize_keys(ds)


def test_non_integer_year_raises():
    ds = dataset([["Aland", "ALA", 2000.5, 1]])
    with pytest.raises(DataIntegrityError, match="Year"):
        normalize_keys(ds)


def test_custom_lists():
    ds = dataset([["Aland", "ALA", 2000, 1], ["Borduria", "BOR", 2000, 2]])
    out, _ = normalize_keys(ds, KeyParameters(subdivision_entities=("Borduria",)))
    assert out.frame["Entity"].tolist() == ["Aland"]


def test_input_not_modified():
    ds = dataset([["World", None, 2000, 1], ["Aland", "ALA", 2000, 2]])
    before = ds.frame.copy()
    normalize_keys(ds)
    pd.testing.assert_frame_equal(ds.frame, before)


def test_blank_code_counts_as_codeless():
    frame = pd.DataFrame({"Entity": ["World", "Aland"], "Code": ["  ", "ALA"],
                          "Year": [2000, 2000], "Deaths": [100.0, 1.0]})
    ds = Dataset(name="deaths", frame=frame, value_columns=("Deaths",))

    out, report = normalize_keys(ds)

    assert out.frame["Entity"].tolist() == ["Aland"]
    assert report.removed["aggregate"] == 1
