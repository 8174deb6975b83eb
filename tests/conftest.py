"""Shared test fixtures for hetlmm."""

import polars as pl
import pytest

from hetlmm import (
    ModelFamily,
    SamplerOptions,
    fit_model,
    make_observations,
    run_simulate,
)

NOISE_SCALES = (1.0, 4.0, 8.0)


@pytest.fixture
def small_table():
    """Three genotypes in two blocks with one missing response."""
    return pl.DataFrame({
        'genotype': ['g1', 'g2', 'g3', 'g1', 'g2', 'g3'],
        'block': ['b1', 'b1', 'b1', 'b2', 'b2', 'b2'],
        'y': [1.0, 2.0, 3.0, 2.5, None, 4.0],
    })


@pytest.fixture
def small_observations(small_table):
    return make_observations(small_table)


@pytest.fixture(scope="session")
def trial():
    """Balanced trial with known, well separated noise scales."""
    return run_simulate(num_genotypes=250, num_blocks=3, noise_scales=NOISE_SCALES, random_seed=2024)


@pytest.fixture(scope="session")
def trial_1859():
    """Trial with noise scales drawn from 1..8."""
    return run_simulate(num_genotypes=250, num_blocks=3, random_seed=1859)


@pytest.fixture(scope="session")
def fits(trial):
    """Likelihood fits of every non-Bayesian family to the same trial."""
    return {
        family: fit_model(family, trial.observations)
        for family in (ModelFamily.GLS_HETERO, ModelFamily.REML, ModelFamily.REML_HETERO)
    }


@pytest.fixture(scope="session")
def small_trial():
    return run_simulate(num_genotypes=100, num_blocks=3, noise_scales=NOISE_SCALES, random_seed=11)


@pytest.fixture(scope="session")
def bayes_fit(small_trial):
    options = SamplerOptions(num_chains=4, num_warmup=500, num_draws=1000, random_seed=7)
    return fit_model(ModelFamily.BAYES, small_trial.observations, options)

