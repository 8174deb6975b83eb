"""Tests for scaled-residual diagnostics."""

import matplotlib.pyplot as plt
import numpy as np
import pytest

from hetlmm import ModelFamily, SamplerOptions, compute_diagnostics, fit_model, plot_diagnostics, run_simulate


def test_heteroscedastic_reml_equalizes_blocks(fits):
    diagnostics = compute_diagnostics(fits[ModelFamily.REML_HETERO])
    for block, variance in diagnostics.block_variance.items():
        assert abs(variance - 1) < 0.15, block
    assert diagnostics.block_variance_ratio() < 1.4


def test_homoscedastic_reml_leaves_block_structure(fits):
    diagnostics = compute_diagnostics(fits[ModelFamily.REML])
    assert diagnostics.block_variance_ratio() > 4
    assert diagnostics.block_variance['B3'] > diagnostics.block_variance['B1']


def test_genotype_dispersion(fits):
    """Residuals of a fit without genotype effects still carry genotype structure."""
    gls = compute_diagnostics(fits[ModelFamily.GLS_HETERO])
    reml = compute_diagnostics(fits[ModelFamily.REML_HETERO])
    assert gls.genotype_dispersion > 2
    assert reml.genotype_dispersion < 1


def test_outlier_counts(fits):
    fit = fits[ModelFamily.REML_HETERO]
    loose = compute_diagnostics(fit, threshold=2.0)
    strict = compute_diagnostics(fit, threshold=3.0)
    assert loose.num_outliers == sum(loose.block_outliers.values())
    assert strict.num_outliers <= loose.num_outliers
    # roughly 5% of standard normal residuals fall beyond 2
    assert 0.02 < loose.num_outliers / loose.num_observations < 0.09
    assert loose.num_observations == len(fit.observations)


def test_to_dict(fits):
    row = compute_diagnostics(fits[ModelFamily.REML_HETERO]).to_dict()
    for key in ('residual_variance', 'num_outliers', 'genotype_dispersion', 'excess_kurtosis',
                'variance[B1]', 'variance[B2]', 'variance[B3]'):
        assert key in row


def test_pearson_residual_diagnostics(fits):
    """Pearson residuals ignore leverage, so they never exceed the scaled residuals."""
    fit = fits[ModelFamily.REML_HETERO]
    scaled = compute_diagnostics(fit)
    pearson = compute_diagnostics(fit, column='pearson_residual')
    assert pearson.column == 'pearson_residual'
    assert pearson.num_observations == scaled.num_observations
    assert pearson.num_outliers <= scaled.num_outliers
    frame = fit.observations
    assert (frame['pearson_residual'].abs() <= frame['scaled_residual'].abs() + 1e-9).all()
    homoscedastic = compute_diagnostics(fits[ModelFamily.REML], column='pearson_residual')
    assert homoscedastic.block_variance_ratio() > 4


def test_unknown_residual_column(fits):
    with pytest.raises(ValueError, match="column"):
        compute_diagnostics(fits[ModelFamily.REML_HETERO], column='residual')


def test_plot_diagnostics(tmp_path, fits):
    prefix = str(tmp_path / "trial")
    fig = plot_diagnostics(fits[ModelFamily.REML_HETERO], prefix)
    assert len(fig.axes) == 3
    plt.close(fig)
    assert (tmp_path / "trial_diagnostics.png").exists()


@pytest.fixture(scope="module")
def heavy_tailed():
    return run_simulate(num_genotypes=2000, noise_scales=[1.0, 4.0, 8.0], df=5.0, random_seed=77)


@pytest.fixture(scope="module")
def gaussian():
    return run_simulate(num_genotypes=2000, noise_scales=[1.0, 4.0, 8.0], random_seed=77)


def test_heavy_tails_show_in_outliers(heavy_tailed, gaussian):
    heavy = compute_diagnostics(fit_model(ModelFamily.REML_HETERO, heavy_tailed.observations), 3.0)
    normal = compute_diagnostics(fit_model(ModelFamily.REML_HETERO, gaussian.observations), 3.0)
    assert heavy.num_outliers > 1.5 * normal.num_outliers
    assert heavy.excess_kurtosis > normal.excess_kurtosis + 0.5


def test_student_t_fit_absorbs_heavy_tails(heavy_tailed):
    gaussian_fit = fit_model(ModelFamily.REML_HETERO, heavy_tailed.observations)
    options = SamplerOptions(num_chains=2, num_warmup=200, num_draws=300, noise_df=5.0, random_seed=13)
    t_fit = fit_model(ModelFamily.BAYES, heavy_tailed.observations, options)
    assert (compute_diagnostics(t_fit, 3.0).num_outliers
            < compute_diagnostics(gaussian_fit, 3.0).num_outliers)
    assert np.isfinite(compute_diagnostics(t_fit).genotype_dispersion)
