import numpy as np
import pandas as pd
import pytest

from cod_panel.config import AnalysisConfig

CAUSES = ["Cardiovascular", "Cancer", "Respiratory", "Malaria", "Diarrheal", "EnvironmentalExposure"]
COUNTRIES = ["Aland", "Borduria", "Carpania", "Dalmia", "Elbonia", "Freedonia",
             "Genovia", "Hyrkania", "Ixia", "Jaffa", "Krakozhia", "Latveria"]
YEARS = list(range(2000, 2010))


@pytest.fixture
def deaths_df():
    """Cause-of-death counts for 12 countries x 10 years with two development profiles."""
    rng = np.random.default_rng(0)
    rows = []
    for i, country in enumerate(COUNTRIES):
        developed = i % 2 == 0
        base = np.array([400, 300, 100, 5, 10, 20] if developed else [150, 80, 90, 200, 180, 25], dtype=float)
        for year in YEARS:
            counts = rng.poisson(base * (1 + 0.3 * i))
            rows.append({"Entity": country, "Code": country[:3].upper(), "Year": year,
                         **dict(zip(CAUSES, counts))})
    return pd.DataFrame(rows)


@pytest.fixture
def gdp_df(deaths_df):
    """GDP per capita tracking the development profile, with some coverage gaps."""
    rng = np.random.default_rng(1)
    keys = deaths_df[["Entity", "Code", "Year"]].copy()
    developed = keys["Entity"].map({c: i % 2 == 0 for i, c in enumerate(COUNTRIES)})
    keys["GDP per capita"] = np.where(developed, 40000, 3000) + rng.normal(0, 500, len(keys))
    return keys.iloc[5:].reset_index(drop=True)


@pytest.fixture
def small_config():
    return AnalysisConfig().with_overrides(
        clustering={'k_variables': 2, 'k_observations': 2, 'n_restarts': 5, 'k_range': (2, 5)},
    )
