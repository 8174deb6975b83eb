"""Command line interface: simulate, fit and compare."""

import logging
import sys
import time
from importlib import metadata
from typing import Dict, Optional, Tuple

import click
import matplotlib.pyplot as plt
import numpy as np
import polars as pl

from .bayes import SamplerOptions
from .compare import compare_fits, parameter_recovery
from .diagnostics import compute_diagnostics, plot_diagnostics
from .fitting import default_options, fit_model
from .io import read_observations, write_fit_table, write_observations, write_posterior_draws
from .results import FittedResult, ModelFamily
from .simulate import read_truth, run_simulate, write_truth
from .summarize import plot_exploratory, summarize_blocks

FAMILY_CHOICES = [family.value for family in ModelFamily]


def _setup_logging(out_prefix: Optional[str], verbose: bool):
    """Set up logging configuration."""
    log_format = '%(asctime)s %(levelname)s %(module)s - %(funcName)s: %(message)s'
    date_format = '%Y-%m-%d %H:%M:%S'

    handlers = []
    if out_prefix:
        handlers.append(logging.FileHandler(f"{out_prefix}_hetlmm.log"))
    if verbose:
        handlers.append(logging.StreamHandler(sys.stdout))
    if not handlers:
        handlers.append(logging.NullHandler())

    logging.basicConfig(
        level=logging.INFO,
        format=log_format,
        datefmt=date_format,
        handlers=handlers,
        force=True,
    )


def _version() -> str:
    try:
        return f"v{metadata.version('hetlmm')}"
    except metadata.PackageNotFoundError:
        return "(not installed)"


def _parse_floats(value: Optional[str]) -> Optional[list]:
    if value is None:
        return None
    return [float(v) for v in value.split(',')]


def _sampler_options(num_chains, num_warmup, num_draws, thin, noise_df, seed, num_processes):
    return SamplerOptions(
        num_chains=num_chains,
        num_warmup=num_warmup,
        num_draws=num_draws,
        thin=thin,
        noise_df=noise_df,
        random_seed=seed,
        run_in_serial=num_processes is None,
        num_processes=num_processes,
        verbose=True,
    )


def _write_fit(fit: FittedResult, out_prefix: str) -> None:
    name = f"{out_prefix}_{fit.family.value}"
    write_fit_table(fit.to_table(), f"{name}.tsv")
    write_fit_table(fit.genotype_table(), f"{name}_genotypes.tsv")
    write_fit_table(fit.observations, f"{name}_residuals.tsv")
    if fit.parameter_summary is not None:
        write_fit_table(fit.parameter_summary, f"{name}_summary.tsv")
    if fit.draws is not None:
        write_posterior_draws(f"{out_prefix}_draws.h5", fit.family.value, fit.draws, overwrite=True)


def _fit_families(observations, models: Tuple[str, ...], sampler: SamplerOptions,
                  out_prefix: str, plot: bool) -> Dict[ModelFamily, FittedResult]:
    fits = {}
    for model in models:
        family = ModelFamily(model)
        options = sampler if family is ModelFamily.BAYES else default_options(family)
        start_time = time.time()
        fit = fit_model(family, observations, options)
        logging.info(f"Fit {family.value} in {time.time() - start_time:.2f} seconds")

        _write_fit(fit, out_prefix)
        diagnostics = compute_diagnostics(fit)
        click.echo(
            f"{family.value}: converged={fit.converged}, "
            f"residual variance={diagnostics.residual_variance:.3f}, "
            f"outliers={diagnostics.num_outliers}, "
            f"genotype dispersion={diagnostics.genotype_dispersion:.3f}"
        )
        if plot:
            plt.close(plot_diagnostics(fit, f"{out_prefix}_{family.value}"))
        fits[family] = fit
    return fits


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("-q", "--quiet", is_flag=True, help="Suppress the masthead.")
def cli(quiet):
    """Heteroscedastic mixed-model comparison for genotype x block trials.

    Commands:
        simulate  Simulate a trial with known parameters
        fit       Fit one or more model families to an observation table
        compare   Fit model families to a simulated trial and score recovery
    """
    if not quiet:
        click.echo(f"*** hetlmm {_version()} ***")


@cli.command(name="simulate", context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("out_prefix")
@click.option("-g", "--num-genotypes", type=int, default=250, show_default=True,
              help="Number of genotypes.")
@click.option("-b", "--num-blocks", type=int, default=3, show_default=True,
              help="Number of blocks.")
@click.option("--intercept", type=float, default=50.0, show_default=True,
              help="Mean of the reference block.")
@click.option("--block-offset-scale", type=float, default=3.0, show_default=True,
              help="Standard deviation of the block offsets.")
@click.option("--genotype-scale", type=float, default=4.0, show_default=True,
              help="Standard deviation of the genotype effects.")
@click.option("--noise-scales", default=None,
              help="Comma-separated per-block noise scales (e.g. '1,4,8'). Drawn from 1..8 if omitted.")
@click.option("--df", type=float, default=float("inf"), show_default=True,
              help="Degrees of freedom of the Student-t noise; inf for Gaussian noise.")
@click.option("--missing-fraction", type=float, default=0.0, show_default=True,
              help="Fraction of responses set to missing.")
@click.option("--seed", type=int, default=None, help="Random seed.")
@click.option("--plot", is_flag=True, help="Save an exploratory plot.")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output.")
def simulate(out_prefix, num_genotypes, num_blocks, intercept, block_offset_scale,
             genotype_scale, noise_scales, df, missing_fraction, seed, plot, verbose):
    """Simulate a trial and write OUT_PREFIX.tsv with its truth files."""
    _setup_logging(out_prefix, verbose)
    data = run_simulate(
        num_genotypes=num_genotypes,
        num_blocks=num_blocks,
        intercept=intercept,
        block_offset_scale=block_offset_scale,
        genotype_scale=genotype_scale,
        noise_scales=_parse_floats(noise_scales),
        df=df,
        missing_fraction=missing_fraction,
        random_seed=seed,
    )
    write_observations(data.observations, f"{out_prefix}.tsv")
    write_truth(data.truth, out_prefix)
    click.echo(summarize_blocks(data.observations))
    if plot:
        plt.close(plot_exploratory(data.observations, out_prefix))


@cli.command(name="fit", context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("observations_file", type=click.Path(exists=True))
@click.argument("out_prefix")
@click.option("-m", "--model", "models", type=click.Choice(FAMILY_CHOICES), multiple=True,
              help="Model family to fit; repeat for several. All families if omitted.")
@click.option("--noise-df", type=float, default=float("inf"), show_default=True,
              help="Student-t degrees of freedom of the Bayesian fit; inf for Gaussian noise.")
@click.option("--num-chains", type=int, default=4, show_default=True)
@click.option("--num-warmup", type=int, default=500, show_default=True)
@click.option("--num-draws", type=int, default=1000, show_default=True)
@click.option("--thin", type=int, default=1, show_default=True)
@click.option("--num-processes", type=int, default=None,
              help="Run the chains in this many processes; serial if omitted.")
@click.option("--seed", type=int, default=None, help="Random seed of the sampler.")
@click.option("--plot", is_flag=True, help="Save diagnostic plots.")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output.")
def fit(observations_file, out_prefix, models, noise_df, num_chains, num_warmup, num_draws,
        thin, num_processes, seed, plot, verbose):
    """Fit model families to OBSERVATIONS_FILE and write tables under OUT_PREFIX."""
    _setup_logging(out_prefix, verbose)
    observations = read_observations(observations_file)
    sampler = _sampler_options(num_chains, num_warmup, num_draws, thin, noise_df, seed, num_processes)
    _fit_families(observations, models or tuple(FAMILY_CHOICES), sampler, out_prefix, plot)


@cli.command(name="compare", context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("simulation_prefix")
@click.argument("out_prefix")
@click.option("-m", "--model", "models", type=click.Choice(FAMILY_CHOICES), multiple=True,
              help="Model family to fit; repeat for several. All families if omitted.")
@click.option("--top-percent", type=float, default=10.0, show_default=True,
              help="Percentage of top genotypes for the ranking overlap.")
@click.option("--threshold", type=float, default=2.0, show_default=True,
              help="Outlier threshold on the absolute scaled residual.")
@click.option("--noise-df", type=float, default=float("inf"), show_default=True,
              help="Student-t degrees of freedom of the Bayesian fit; inf for Gaussian noise.")
@click.option("--num-chains", type=int, default=4, show_default=True)
@click.option("--num-warmup", type=int, default=500, show_default=True)
@click.option("--num-draws", type=int, default=1000, show_default=True)
@click.option("--thin", type=int, default=1, show_default=True)
@click.option("--num-processes", type=int, default=None,
              help="Run the chains in this many processes; serial if omitted.")
@click.option("--seed", type=int, default=None, help="Random seed of the sampler.")
@click.option("--plot", is_flag=True, help="Save diagnostic plots.")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output.")
def compare(simulation_prefix, out_prefix, models, top_percent, threshold, noise_df, num_chains,
            num_warmup, num_draws, thin, num_processes, seed, plot, verbose):
    """Fit the trial written by `simulate` under SIMULATION_PREFIX and score recovery."""
    _setup_logging(out_prefix, verbose)
    truth = read_truth(simulation_prefix)
    observations = read_observations(f"{simulation_prefix}.tsv",
                                     genotypes=truth.genotypes, blocks=truth.blocks)
    sampler = _sampler_options(num_chains, num_warmup, num_draws, thin, noise_df, seed, num_processes)
    fits = _fit_families(observations, models or tuple(FAMILY_CHOICES), sampler, out_prefix, plot)

    comparison = compare_fits(truth, fits.values(), top_percent=top_percent, threshold=threshold)
    write_fit_table(comparison, f"{out_prefix}_comparison.tsv")
    recovery = pl.concat([
        parameter_recovery(truth, f).with_columns(pl.lit(f.family.value).alias('family'))
        for f in fits.values()
    ])
    write_fit_table(recovery, f"{out_prefix}_recovery.tsv")

    with pl.Config(tbl_rows=-1, tbl_cols=-1):
        click.echo(comparison.select(
            'family', 'converged', 'pearson', 'spearman', 'top_overlap', 'top_count',
            'residual_variance', 'num_outliers',
        ))
    logging.info(f"Mean absolute parameter error: {np.nanmean(np.abs(recovery['error'].to_numpy())):.3f}")


def main():
    cli()


if __name__ == "__main__":
    main()
