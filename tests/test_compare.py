"""Tests for parameter and ranking recovery."""

import dataclasses

import numpy as np
import pytest

from hetlmm import ModelFamily, compare_fits, parameter_recovery, rank_recovery
from hetlmm.compare import top_count


@pytest.mark.parametrize("num_genotypes, top_percent, expected", [
    (250, 10, 25),
    (7, 10, 1),
    (10, 25, 3),
    (10, 100, 10),
])
def test_top_count(num_genotypes, top_percent, expected):
    assert top_count(num_genotypes, top_percent) == expected


@pytest.mark.parametrize("top_percent", [0, -5, 101])
def test_top_count_rejects_invalid_percent(top_percent):
    with pytest.raises(ValueError):
        top_count(10, top_percent)


def test_perfect_recovery():
    effects = np.random.default_rng(0).normal(size=50)
    recovery = rank_recovery(effects, 2 * effects + 1, top_percent=20)
    assert recovery.supported
    assert recovery.pearson == pytest.approx(1.0)
    assert recovery.spearman == pytest.approx(1.0)
    assert recovery.top_overlap == recovery.top_count == 10


def test_reversed_ranking_has_no_overlap():
    effects = np.arange(20, dtype=float)
    recovery = rank_recovery(effects, -effects, top_percent=10)
    assert recovery.top_overlap == 0
    assert recovery.spearman == pytest.approx(-1.0)


def test_unsupported_recovery():
    recovery = rank_recovery(np.zeros(30), None)
    assert not recovery.supported
    assert np.isnan(recovery.pearson)
    assert recovery.top_count == 3


def test_shape_mismatch():
    with pytest.raises(ValueError):
        rank_recovery(np.zeros(5), np.zeros(4))


def test_parameter_recovery(trial, fits):
    table = parameter_recovery(trial.truth, fits[ModelFamily.REML_HETERO])
    assert table.columns == ['parameter', 'true', 'estimate', 'error']
    assert len(table) == 2 * 3 + 1
    assert table['parameter'].to_list()[-1] == 'sigma[genotype]'
    np.testing.assert_allclose(
        table['error'].to_numpy(), (table['estimate'] - table['true']).to_numpy()
    )


def test_parameter_recovery_without_genotype_scale(trial, fits):
    table = parameter_recovery(trial.truth, fits[ModelFamily.GLS_HETERO])
    assert table['estimate'][-1] is None


def test_compare_fits(trial, fits):
    table = compare_fits(trial.truth, fits.values())
    assert table['family'].to_list() == ['gls_hetero', 'reml', 'reml_hetero']
    assert table['supports_genotype_effects'].to_list() == [False, True, True]
    assert (table['top_count'] == 25).all()
    for column in ('pearson', 'spearman', 'top_overlap', 'residual_variance', 'genotype_dispersion'):
        assert column in table.columns

    rows = {row['family']: row for row in table.iter_rows(named=True)}
    assert rows['reml_hetero']['pearson'] > 0.6
    # weighting blocks by their precision should not make the ranking worse
    assert rows['reml_hetero']['pearson'] >= rows['reml']['pearson'] - 0.02


def test_compare_fits_warns_about_unconverged(trial, fits, caplog):
    fit = dataclasses.replace(
        fits[ModelFamily.REML_HETERO], converged=False, convergence_messages=("iteration limit",)
    )
    with caplog.at_level("WARNING"):
        table = compare_fits(trial.truth, [fit])
    assert table['converged'].to_list() == [False]
    assert "did not converge" in caplog.text
    assert "iteration limit" in caplog.text
