"""Tests for split R-hat and effective sample size."""

import numpy as np
import pytest

from hetlmm import effective_sample_size, split_rhat, summarize_draws


def _ar1(rng, num_chains, num_draws, phi):
    draws = np.zeros((num_chains, num_draws))
    draws[:, 0] = rng.normal(size=num_chains) / np.sqrt(1 - phi ** 2)
    for t in range(1, num_draws):
        draws[:, t] = phi * draws[:, t - 1] + rng.normal(size=num_chains)
    return draws


def test_independent_chains():
    rng = np.random.default_rng(1)
    draws = rng.normal(size=(4, 1000))
    assert split_rhat(draws) < 1.01
    assert 2500 < effective_sample_size(draws) < 6000


def test_shifted_chain_has_large_rhat():
    rng = np.random.default_rng(2)
    draws = rng.normal(size=(4, 500))
    draws[3] += 3.0
    assert split_rhat(draws) > 1.5


def test_trending_chain_has_large_rhat():
    """Splitting catches a single chain that drifts."""
    draws = np.linspace(0, 10, 1000)[None, :] + np.random.default_rng(3).normal(size=(1, 1000))
    assert split_rhat(draws) > 1.5


def test_autocorrelated_chains_have_small_ess():
    rng = np.random.default_rng(4)
    phi = 0.9
    draws = _ar1(rng, 4, 2000, phi)
    expected = draws.size * (1 - phi) / (1 + phi)
    ess = effective_sample_size(draws)
    assert expected / 2 < ess < expected * 2
    assert split_rhat(draws) < 1.05


def test_constant_draws():
    draws = np.ones((2, 100))
    assert np.isnan(split_rhat(draws))
    assert np.isnan(effective_sample_size(draws))


def test_short_chains():
    draws = np.random.default_rng(5).normal(size=(2, 3))
    assert np.isnan(split_rhat(draws))
    assert np.isnan(effective_sample_size(draws))


def test_summarize_draws():
    rng = np.random.default_rng(6)
    draws = {
        'a': rng.normal(1.0, 2.0, size=(4, 2000)),
        'b': rng.normal(size=(4, 2000)) * 0.1,
    }
    summary = summarize_draws(draws, level=0.9)
    assert summary['parameter'].to_list() == ['a', 'b']
    row = summary.row(0, named=True)
    assert row['mean'] == pytest.approx(1.0, abs=0.1)
    assert row['sd'] == pytest.approx(2.0, rel=0.05)
    assert row['lower'] == pytest.approx(1.0 - 1.645 * 2.0, abs=0.2)
    assert row['upper'] == pytest.approx(1.0 + 1.645 * 2.0, abs=0.2)
    assert row['rhat'] < 1.01
