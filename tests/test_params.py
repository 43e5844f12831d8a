import pytest

from tcga_ov import params


def test_defaults_validate():
    assert params.validate_params()
    assert params.GENE_FILTERS["min_patients"] == 10
    assert params.FEATURE_PARAMS["n_top_genes"] == 5000
    assert params.NMF_PARAMS["rank"] == 4
    assert params.NMF_PARAMS["n_runs"] == 100
    assert params.NMF_PARAMS["min_silhouette"] == 0.3
    assert params.EMBEDDING_PARAMS["n_neighbors"] == 4
    assert params.CONSENSUS_PARAMS["min_probability"] == 0.5


def test_summary_lists_thresholds():
    summary = params.get_param_summary()
    assert "TCGA-OV" in summary
    assert "Min silhouette: 0.3" in summary


def test_subtype_names_must_cover_every_cluster(monkeypatch):
    monkeypatch.setitem(params.SUBTYPE_NAMES, "C5", "Extra")
    with pytest.raises(ValueError, match="SUBTYPE_NAMES"):
        params.validate_params()


def test_probability_threshold_bounds(monkeypatch):
    monkeypatch.setitem(params.CONSENSUS_PARAMS, "min_probability", 1.5)
    with pytest.raises(ValueError, match="min_probability"):
        params.validate_params()
