"""Tests for observation tables and file input/output."""

import numpy as np
import polars as pl
import pytest
from filelock import FileLock

from hetlmm import MalformedInputError, make_observations, read_observations, write_observations
import hetlmm.io
from hetlmm.io import list_posterior_draws, read_posterior_draws, write_posterior_draws


def test_make_observations_defaults(small_observations):
    """Declared sets default to the ids in order of appearance."""
    assert small_observations.genotypes == ('g1', 'g2', 'g3')
    assert small_observations.blocks == ('b1', 'b2')
    assert small_observations.num_missing == 1
    assert len(small_observations.observed()) == 5


def test_codes_follow_declaration_order(small_table):
    obs = make_observations(small_table, genotypes=['g3', 'g2', 'g1'], blocks=['b2', 'b1'])
    genotype_codes, block_codes = obs.codes()
    observed = obs.observed()
    assert np.all(block_codes[observed['block'].to_numpy() == 'b2'] == 0)
    assert np.all(genotype_codes[observed['genotype'].to_numpy() == 'g3'] == 0)


def test_unknown_block_rejected(small_table):
    with pytest.raises(MalformedInputError, match="block"):
        make_observations(small_table, blocks=['b1'])


def test_unknown_genotype_rejected(small_table):
    with pytest.raises(MalformedInputError, match="genotype"):
        make_observations(small_table, genotypes=['g1', 'g2'])


def test_missing_column_rejected(small_table):
    with pytest.raises(MalformedInputError, match="Missing required columns"):
        make_observations(small_table.drop('block'))


def test_duplicate_pair_rejected(small_table):
    table = pl.concat([small_table, small_table.head(1)])
    with pytest.raises(MalformedInputError, match="share a"):
        make_observations(table)


def test_non_numeric_response_rejected(small_table):
    table = small_table.with_columns(pl.Series('y', ['x', '1', '2', '3', '4', '5']))
    with pytest.raises(MalformedInputError, match="numeric"):
        make_observations(table)


def test_nan_response_is_missing(small_table):
    table = small_table.with_columns(pl.Series('y', [1.0, np.nan, 3.0, 2.5, None, 4.0]))
    assert make_observations(table).num_missing == 2


@pytest.mark.parametrize("suffix", [".tsv", ".csv"])
def test_write_read_observations(tmp_path, small_observations, suffix):
    path = tmp_path / f"obs{suffix}"
    write_observations(small_observations, path)
    loaded = read_observations(path)
    assert loaded.genotypes == small_observations.genotypes
    assert loaded.blocks == small_observations.blocks
    assert loaded.num_missing == 1
    assert loaded.observed()['y'].to_list() == small_observations.observed()['y'].to_list()


def test_posterior_draws_roundtrip(tmp_path):
    path = str(tmp_path / "draws.h5")
    draws = {
        'fixed_effects': np.arange(24, dtype=float).reshape(2, 4, 3),
        'genotype_scale': np.ones((2, 4)),
    }
    write_posterior_draws(path, 'bayes', draws)
    loaded = read_posterior_draws(path, 'bayes')
    assert set(loaded) == set(draws)
    np.testing.assert_array_equal(loaded['fixed_effects'], draws['fixed_effects'])
    assert list_posterior_draws(path) == ['bayes']

    with pytest.raises(ValueError, match="already exists"):
        write_posterior_draws(path, 'bayes', draws)
    write_posterior_draws(path, 'bayes', {'genotype_scale': np.zeros((1, 2))}, overwrite=True)
    assert set(read_posterior_draws(path, 'bayes')) == {'genotype_scale'}

    with pytest.raises(KeyError):
        read_posterior_draws(path, 'other')


def test_list_posterior_draws_takes_the_file_lock(tmp_path, monkeypatch):
    path = str(tmp_path / "draws.h5")
    write_posterior_draws(path, 'bayes', {'genotype_scale': np.ones((1, 3))})
    locked = []

    def recording_lock(lock_file):
        locked.append(lock_file)
        return FileLock(lock_file)

    monkeypatch.setattr(hetlmm.io, 'FileLock', recording_lock)
    assert list_posterior_draws(path) == ['bayes']
    assert locked == [path + ".lock"]
