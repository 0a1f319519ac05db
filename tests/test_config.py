import json

import pytest
from pydantic import ValidationError

from cod_panel.config import AnalysisConfig, ClusteringParameters, MissingDataParameters


def test_defaults():
    config = AnalysisConfig()
    assert config.clustering.k_variables == 5
    assert config.clustering.k_observations == 6
    assert config.missing.max_row_loss == 0.05
    assert config.correlation.min_join_size == 10
    assert "World" in config.keys.aggregate_entities


def test_frozen():
    config = AnalysisConfig()
    with pytest.raises(ValidationError):
        config.clustering.seed = 1


def test_validation():
    with pytest.raises(ValidationError):
        ClusteringParameters(k_range=(5, 2))
    with pytest.raises(ValidationError):
        MissingDataParameters(max_row_loss=1.5)
    with pytest.raises(ValidationError):
        MissingDataParameters(mcar_strategy='guess')
    with pytest.raises(ValidationError):
        AnalysisConfig.model_validate({'clustering': {'n_clusters': 3}})


def test_overrides_leave_original_untouched():
    config = AnalysisConfig()
    changed = config.with_overrides(clustering={'seed': 7}, correlation={'n_jobs': 2})

    assert changed.clustering.seed == 7
    assert changed.correlation.n_jobs == 2
    assert config.clustering.seed == 42
    with pytest.raises(ValueError, match="Unknown configuration category"):
        config.with_overrides(plotting={'dpi': 300})


def test_json_round_trip(tmp_path):
    config = AnalysisConfig().with_overrides(missing={'divergence_alpha': 0.01})
    path = tmp_path / "config.json"
    path.write_text(json.dumps(config.to_dict()))

    assert AnalysisConfig.from_json(path) == config


def test_partial_json_uses_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({'clustering': {'k_observations': 4}}))

    config = AnalysisConfig.from_json(path)
    assert config.clustering.k_observations == 4
    assert config.clustering.k_variables == 5


def test_describe(capsys):
    MissingDataParameters().describe('divergence_alpha')
    out = capsys.readouterr().out
    assert "Parameter: divergence_alpha" in out
    assert "Value: 0.05" in out
    with pytest.raises(ValueError):
        MissingDataParameters().describe('nope')
