import numpy as np
import pandas as pd
import pytest

from cod_panel.datasets import CsvTableProvider, Dataset, DatasetSchema
from cod_panel.errors import DataIntegrityError


def raw_table():
    return pd.DataFrame({
        "Entity": ["Aland", "Aland", "Borduria"],
        "Code": ["ALA", "ALA", ""],
        "Year": ["2000", "2001", "2000"],
        "Deaths - Malaria": ["10", "", "0"],
        "Deaths - Cancer": ["5", "7", ".."],
    })


def test_schema_renames_and_marks_missing():
    schema = DatasetSchema(name="deaths", columns={"Deaths - Malaria": "Malaria", "Deaths - Cancer": "Cancer"})
    ds = Dataset.from_frame(raw_table(), schema)

    assert ds.value_columns == ("Malaria", "Cancer")
    assert ds.frame["Malaria"].tolist()[0] == 10.0
    assert np.isnan(ds.frame["Malaria"].iloc[1])
    # zero deaths is a value, not a missing marker
    assert ds.frame["Malaria"].iloc[2] == 0.0
    assert np.isnan(ds.frame["Cancer"].iloc[2])
    assert pd.isna(ds.frame["Code"].iloc[2])


def test_schema_rejects_unmapped_columns():
    schema = DatasetSchema(name="deaths", columns={"Deaths - Malaria": "Malaria"})
    with pytest.raises(DataIntegrityError, match="unmapped"):
        Dataset.from_frame(raw_table(), schema)


def test_schema_rejects_missing_expected_column():
    schema = DatasetSchema(name="deaths", columns={"Deaths - Malaria": "Malaria", "Deaths - HIV": "HIV"},
                           strict=False)
    with pytest.raises(DataIntegrityError, match="Deaths - HIV"):
        Dataset.from_frame(raw_table(), schema)


def test_missing_key_column():
    with pytest.raises(DataIntegrityError, match="Year"):
        Dataset.from_frame(raw_table().drop(columns=["Year"]), "deaths")


def test_non_numeric_values_fail_fast():
    raw = raw_table()
    raw.loc[0, "Deaths - Cancer"] = "five"
    with pytest.raises(DataIntegrityError, match="non-numeric"):
        Dataset.from_frame(raw, "deaths")


def test_categories_sum_member_columns():
    schema = DatasetSchema(
        name="deaths",
        columns={"Deaths - Malaria": "Malaria", "Deaths - Cancer": "Cancer"},
        categories={"All": ["Malaria", "Cancer"]},
    )
    ds = Dataset.from_frame(raw_table(), schema)

    assert ds.value_columns == ("All",)
    assert ds.frame["All"].iloc[0] == 15.0
    # one undefined member makes the category undefined
    assert np.isnan(ds.frame["All"].iloc[1])


def test_duplicate_target_names_rejected():
    with pytest.raises(ValueError):
        DatasetSchema(name="x", columns={"a": "Same", "b": "Same"})


def test_csv_provider(tmp_path):
    raw_table().to_csv(tmp_path / "deaths.csv", index=False)
    provider = CsvTableProvider(tmp_path)

    assert provider.names() == ["deaths"]
    loaded = provider.load("deaths")
    assert loaded.loc[1, "Deaths - Malaria"] == ""
    with pytest.raises(FileNotFoundError):
        provider.load("gdp")
