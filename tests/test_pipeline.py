import dataclasses

import numpy as np
import pandas as pd
import pytest

from cod_panel.datasets import CsvTableProvider, DatasetSchema
from cod_panel.errors import DataIntegrityError
from cod_panel.pipeline import PipelineContext, export_results, run_analysis


def test_full_run(deaths_df, gdp_df, small_config):
    ctx = run_analysis(deaths_df, {"gdp": gdp_df}, small_config)

    assert isinstance(ctx, PipelineContext)
    assert len(ctx.matrix) == len(deaths_df)
    assert ctx.correlations.covariates == ["gdp:GDP per capita"]
    assert ctx.correlations.get("Malaria", "gdp:GDP per capita") < 0
    assert ctx.pca.variance['cumulative'].iloc[-1] == pytest.approx(100.0)
    assert set(ctx.clusters) == {"variables", "observations"}

    observations = ctx.clusters["observations"]
    assert observations.kmeans.assignment.n_clusters == 2
    assert observations.agreement == pytest.approx(1.0)
    assert set(observations.profile.relative['cluster']) == {0, 1}
    assert observations.elbow is None

    variables = ctx.clusters["variables"]
    assert list(variables.kmeans.assignment.labels.index) == ctx.matrix.causes


def test_context_is_immutable(deaths_df, small_config):
    ctx = run_analysis(deaths_df, config=small_config)
    with pytest.raises(dataclasses.FrozenInstanceError):
        ctx.matrix = None
    assert ctx.evolve(pca=None).pca is None
    assert ctx.pca is not None


def test_failing_covariate_is_recorded(deaths_df, gdp_df, small_config):
    conflicting = pd.concat([gdp_df, gdp_df.head(1).assign(**{"GDP per capita": -1.0})])
    no_year = gdp_df.drop(columns=["Year"])

    ctx = run_analysis(deaths_df, {"gdp": gdp_df, "conflicting": conflicting, "no_year": no_year},
                       small_config)

    assert set(ctx.failures) == {"conflicting", "no_year"}
    assert "(Aland, 2005)" in ctx.failures["conflicting"]
    assert ctx.correlations.covariates == ["gdp:GDP per capita"]


def test_primary_failure_is_fatal(deaths_df, small_config):
    with pytest.raises(DataIntegrityError):
        run_analysis(deaths_df.drop(columns=["Entity"]), config=small_config)


def test_aggregates_and_subdivisions_removed(deaths_df, small_config):
    extra = deaths_df.head(2).copy()
    extra["Entity"] = ["World", "Scotland"]
    extra["Code"] = ["", "GBR-SCT"]
    ctx = run_analysis(pd.concat([deaths_df, extra], ignore_index=True), config=small_config)

    entities = set(ctx.matrix.keys.get_level_values("Entity"))
    assert "World" not in entities and "Scotland" not in entities
    removed = ctx.primary.key_report.removed
    assert removed["aggregate"] == 1 and removed["subdivision"] == 1


def test_schema_and_cause_selection(deaths_df, gdp_df, small_config):
    schemas = {"gdp": DatasetSchema(name="gdp", columns={"GDP per capita": "gdp_pc"})}
    causes = ["Cardiovascular", "Cancer", "Malaria", "Diarrheal"]
    ctx = run_analysis(deaths_df, {"gdp": gdp_df}, small_config, schemas=schemas, causes=causes)

    assert ctx.matrix.causes == causes
    assert ctx.correlations.covariates == ["gdp:gdp_pc"]
    np.testing.assert_allclose(ctx.matrix.proportions.sum(axis=1), 1.0, rtol=1e-9)


def test_missing_primary_counts_excluded_from_matrix(deaths_df, small_config):
    deaths = deaths_df.astype({"Malaria": float, "Cancer": float})
    deaths.loc[:29, "Malaria"] = np.nan
    deaths.loc[30:34, "Cancer"] = np.nan
    ctx = run_analysis(deaths, config=small_config)

    # neither dropping the column nor the rows is acceptable here; values stay undefined
    assert ctx.primary.missing_report.policy("Malaria").value in ("flag", "surgical-drop")
    assert ctx.primary.missing_report.policy("Cancer").value in ("flag", "surgical-drop")
    assert len(ctx.matrix) == len(deaths) - 35
    assert (ctx.matrix.excluded["reason"] == "incomplete").sum() == 35


def test_export_results(tmp_path, deaths_df, gdp_df, small_config):
    ctx = run_analysis(deaths_df, {"gdp": gdp_df}, small_config, with_elbow=True)
    written = export_results(ctx, tmp_path / "out")

    for filename in ["key_report.csv", "missingness_report.csv", "normalized_matrix.csv",
                     "correlations.csv", "correlations_long.csv", "pca_variance.csv", "pca_loadings.csv",
                     "clusters_observations_kmeans.csv", "clusters_variables_hierarchical.csv",
                     "kmeans_observations_restarts.csv", "profile_observations_relative.csv",
                     "profile_observations_absolute.csv", "elbow_variables.csv"]:
        assert (tmp_path / "out" / filename).exists(), filename
    assert "failures.csv" not in written

    matrix = pd.read_csv(written["normalized_matrix.csv"], index_col=[0, 1])
    assert matrix.shape == ctx.matrix.proportions.shape
    restarts = pd.read_csv(written["kmeans_observations_restarts.csv"])
    assert len(restarts) == small_config.clustering.n_restarts


def test_tables_from_csv_provider(tmp_path, deaths_df, gdp_df, small_config):
    deaths_df.to_csv(tmp_path / "causes_of_death.csv", index=False)
    gdp_df.to_csv(tmp_path / "gdp.csv", index=False)
    provider = CsvTableProvider(tmp_path)

    ctx = run_analysis(provider.load("causes_of_death"), {"gdp": provider.load("gdp")}, small_config)

    direct = run_analysis(deaths_df, {"gdp": gdp_df}, small_config)
    pd.testing.assert_frame_equal(ctx.matrix.proportions, direct.matrix.proportions)
    pd.testing.assert_series_equal(ctx.clusters["observations"].kmeans.assignment.labels,
                                   direct.clusters["observations"].kmeans.assignment.labels)


def test_default_config_on_fewer_causes_than_k(deaths_df):
    causes = ["Cardiovascular", "Cancer", "Malaria", "Diarrheal"]
    ctx = run_analysis(deaths_df, causes=causes)

    variables = ctx.clusters["variables"]
    assert variables.hierarchical.assignment.n_clusters == len(causes)
    assert variables.kmeans.assignment.labels.tolist() == [0, 1, 2, 3]
    assert list(variables.kmeans.assignment.labels.index) == causes
