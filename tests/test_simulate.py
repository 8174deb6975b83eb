"""Test simulation functionality."""

import numpy as np
import polars as pl
import pytest
import scipy.stats as sps

from hetlmm import Simulate, inject_missing, run_simulate
from hetlmm.simulate import read_truth, write_truth


def test_simulate_shape():
    data = run_simulate(num_genotypes=40, num_blocks=4, random_seed=1)
    table = data.observations.table
    assert len(table) == 160
    assert data.observations.genotypes == tuple(f"G{i:02d}" for i in range(1, 41))
    assert data.observations.blocks == ('B1', 'B2', 'B3', 'B4')
    counts = table.group_by('block').agg(pl.col('genotype').n_unique())
    assert counts['genotype'].to_list() == [40] * 4
    assert data.observations.num_missing == 0
    assert len(data.truth.block_offsets) == 3
    assert len(data.truth.fixed_effects) == 4


def test_same_seed_same_table():
    first = run_simulate(num_genotypes=30, random_seed=5)
    second = run_simulate(num_genotypes=30, random_seed=5)
    other = run_simulate(num_genotypes=30, random_seed=6)
    assert first.observations.table.equals(second.observations.table)
    np.testing.assert_array_equal(first.truth.genotype_effects, second.truth.genotype_effects)
    assert not first.observations.table.equals(other.observations.table)


def test_noise_scales_drawn_without_repetition():
    for seed in range(5):
        truth = run_simulate(num_genotypes=10, num_blocks=8, random_seed=seed).truth
        assert sorted(truth.noise_scales.tolist()) == list(np.arange(1.0, 9.0))


def test_given_noise_scales_are_used():
    truth = run_simulate(num_genotypes=10, noise_scales=[1, 4, 8], random_seed=0).truth
    assert truth.noise_scales.tolist() == [1.0, 4.0, 8.0]


def test_response_matches_truth():
    """With one block of tiny noise the response equals intercept plus genotype effect."""
    data = run_simulate(num_genotypes=20, num_blocks=1, noise_scales=[1e-9], random_seed=3)
    y = data.observations.table['y'].to_numpy()
    np.testing.assert_allclose(y, data.truth.intercept + data.truth.genotype_effects, atol=1e-6)


def test_student_t_noise_has_heavy_tails():
    def noise(df):
        data = run_simulate(num_genotypes=4000, num_blocks=1, noise_scales=[1.0], df=df, random_seed=8)
        y = data.observations.table['y'].to_numpy()
        return y - data.truth.intercept - data.truth.genotype_effects

    assert sps.kurtosis(noise(3.0)) > 1.0
    assert abs(sps.kurtosis(noise(np.inf))) < 0.5


def test_missing_fraction():
    data = run_simulate(num_genotypes=50, num_blocks=3, missing_fraction=0.1, random_seed=2)
    assert len(data.observations.table) == 150
    assert data.observations.num_missing == 15


def test_inject_missing_preserves_shape(trial):
    obs = trial.observations
    n = len(obs.table)
    masked = inject_missing(obs, 0.2, np.random.default_rng(4))
    assert masked.table.shape == obs.table.shape
    assert masked.num_missing == int(round(0.2 * n))
    assert masked.genotypes == obs.genotypes
    assert masked.blocks == obs.blocks

    # observed values are untouched
    kept = masked.table['y'].is_not_null()
    assert masked.table.filter(kept)['y'].equals(obs.table.filter(kept)['y'])

    # only observed rows are chosen, so masking again adds exactly the new count
    again = inject_missing(masked, 0.1, 5)
    assert again.num_missing == masked.num_missing + int(round(0.1 * n))


@pytest.mark.parametrize("kwargs", [
    {'noise_scales': [1.0, 2.0]},
    {'noise_scales': [1.0, 0.0, 2.0]},
    {'num_blocks': 9},
    {'df': 0.0},
    {'missing_fraction': 1.0},
    {'num_genotypes': 0},
])
def test_invalid_simulation_parameters(kwargs):
    with pytest.raises(ValueError):
        Simulate(**kwargs)


def test_truth_roundtrip(tmp_path):
    truth = run_simulate(num_genotypes=12, df=5.0, random_seed=9).truth
    prefix = str(tmp_path / "trial")
    write_truth(truth, prefix)
    loaded = read_truth(prefix)
    assert loaded.blocks == truth.blocks
    assert loaded.genotypes == truth.genotypes
    assert loaded.df == 5.0
    np.testing.assert_allclose(loaded.fixed_effects, truth.fixed_effects)
    np.testing.assert_allclose(loaded.noise_scales, truth.noise_scales)
    np.testing.assert_allclose(loaded.genotype_effects, truth.genotype_effects)
