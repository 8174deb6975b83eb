"""hetlmm package for heteroscedastic mixed models of genotype x block trials."""

from hetlmm.bayes import SamplerOptions, fit_bayes
from hetlmm.compare import RankRecovery, compare_fits, parameter_recovery, rank_recovery
from hetlmm.convergence import effective_sample_size, split_rhat, summarize_draws
from hetlmm.diagnostics import Diagnostics, compute_diagnostics, plot_diagnostics
from hetlmm.errors import MalformedInputError, UnderdeterminedModelError
from hetlmm.fitting import fit_all, fit_model
from hetlmm.gls import GlsOptions, fit_gls
from hetlmm.io import (
    Observations,
    make_observations,
    read_observations,
    read_posterior_draws,
    write_fit_table,
    write_observations,
    write_posterior_draws,
)
from hetlmm.reml import RemlOptions, fit_reml, fit_reml_heteroscedastic
from hetlmm.results import FittedResult, ModelFamily
from hetlmm.simulate import Simulate, SimulatedData, SimulationTruth, inject_missing, run_simulate
from hetlmm.summarize import plot_exploratory, summarize_blocks, summarize_genotypes

__all__ = [
    'Observations',
    'make_observations',
    'read_observations',
    'write_observations',
    'write_fit_table',
    'write_posterior_draws',
    'read_posterior_draws',
    'MalformedInputError',
    'UnderdeterminedModelError',
    'Simulate',
    'SimulatedData',
    'SimulationTruth',
    'run_simulate',
    'inject_missing',
    'summarize_blocks',
    'summarize_genotypes',
    'plot_exploratory',
    'ModelFamily',
    'FittedResult',
    'GlsOptions',
    'RemlOptions',
    'SamplerOptions',
    'fit_gls',
    'fit_reml',
    'fit_reml_heteroscedastic',
    'fit_bayes',
    'fit_model',
    'fit_all',
    'split_rhat',
    'effective_sample_size',
    'summarize_draws',
    'Diagnostics',
    'compute_diagnostics',
    'plot_diagnostics',
    'RankRecovery',
    'rank_recovery',
    'parameter_recovery',
    'compare_fits',
]
