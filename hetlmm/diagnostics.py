"""
Scaled-residual diagnostics of a fitted model.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import polars as pl
import scipy.stats as sps

from .results import FittedResult, ModelFamily


@dataclass(frozen=True)
class Diagnostics:
    """Summary statistics of the scaled residuals of one fit.

    Attributes:
        family: Model family of the fit
        threshold: Absolute scaled residual above which an observation is an outlier
        num_observations: Number of scaled residuals used
        residual_variance: Variance of all scaled residuals
        block_variance: Variance of the scaled residuals of each block
        num_outliers: Scaled residuals beyond +/- threshold
        block_outliers: Outlier count of each block
        genotype_dispersion: One-way F ratio of the between- to within-genotype mean
            squares; well above 1 when genotype effects remain in the residuals
        excess_kurtosis: Sample excess kurtosis of the scaled residuals
        converged: Convergence flag of the fit
        messages: Convergence messages of the fit
        column: Residual column the statistics were computed from
    """
    family: ModelFamily
    threshold: float
    num_observations: int
    residual_variance: float
    block_variance: Dict[str, float]
    num_outliers: int
    block_outliers: Dict[str, int]
    genotype_dispersion: float
    excess_kurtosis: float
    converged: bool
    messages: Tuple[str, ...] = ()
    column: str = 'scaled_residual'

    def block_variance_ratio(self) -> float:
        """Largest over smallest per-block variance."""
        values = np.array(list(self.block_variance.values()), dtype=float)
        return float(np.nanmax(values) / np.nanmin(values))

    def to_dict(self) -> Dict[str, object]:
        row = {
            'residual_variance': self.residual_variance,
            'num_outliers': self.num_outliers,
            'genotype_dispersion': self.genotype_dispersion,
            'excess_kurtosis': self.excess_kurtosis,
        }
        row.update({f"variance[{b}]": v for b, v in self.block_variance.items()})
        return row


RESIDUAL_COLUMNS = ('scaled_residual', 'pearson_residual')


def _genotype_dispersion(frame: pl.DataFrame, column: str = 'scaled_residual') -> float:
    """Between- over within-genotype mean square of a residual column."""
    grand_mean = frame[column].mean()
    per_genotype = (
        frame.with_columns(pl.col(column).mean().over('genotype').alias('genotype_mean'))
        .group_by('genotype')
        .agg(
            pl.len().alias('n'),
            pl.col('genotype_mean').first(),
            ((pl.col(column) - pl.col('genotype_mean')) ** 2).sum().alias('ss_within'),
        )
    )
    num_groups = len(per_genotype)
    n = len(frame)
    if num_groups < 2 or n <= num_groups:
        return np.nan
    ss_between = float((per_genotype['n'] * (per_genotype['genotype_mean'] - grand_mean) ** 2).sum())
    ss_within = float(per_genotype['ss_within'].sum())
    if ss_within == 0:
        return np.nan
    return (ss_between / (num_groups - 1)) / (ss_within / (n - num_groups))


def compute_diagnostics(
    fit: FittedResult,
    threshold: float = 2.0,
    column: str = 'scaled_residual',
) -> Diagnostics:
    """Compute residual diagnostics of a fit.

    Args:
        fit: FittedResult
        threshold: Outlier threshold on the absolute residual
        column: 'scaled_residual' (residual over its exact model SD) or
            'pearson_residual' (residual over the fitted noise scale of its block)

    Returns:
        Diagnostics
    """
    if column not in RESIDUAL_COLUMNS:
        raise ValueError(f"column must be one of {RESIDUAL_COLUMNS}, got {column!r}")
    frame = fit.observations.filter(pl.col(column).is_not_nan())
    is_outlier = pl.col(column).abs() > threshold

    per_block = (
        frame.group_by('block')
        .agg(
            pl.col(column).var().alias('variance'),
            is_outlier.sum().alias('outliers'),
        )
    )
    block_stats = {row['block']: row for row in per_block.iter_rows(named=True)}
    block_variance = {
        b: (block_stats[b]['variance'] if b in block_stats and block_stats[b]['variance'] is not None
            else np.nan)
        for b in fit.blocks
    }
    block_outliers = {b: int(block_stats[b]['outliers']) if b in block_stats else 0 for b in fit.blocks}

    values = frame[column].to_numpy()
    return Diagnostics(
        family=fit.family,
        threshold=threshold,
        num_observations=len(values),
        residual_variance=float(np.var(values, ddof=1)) if len(values) > 1 else np.nan,
        block_variance=block_variance,
        num_outliers=int(np.sum(np.abs(values) > threshold)),
        block_outliers=block_outliers,
        genotype_dispersion=_genotype_dispersion(frame, column),
        excess_kurtosis=float(sps.kurtosis(values)) if len(values) > 3 else np.nan,
        converged=fit.converged,
        messages=fit.convergence_messages,
        column=column,
    )


def plot_diagnostics(
    fit: FittedResult,
    out_prefix: Optional[str] = None,
    threshold: float = 2.0,
) -> plt.Figure:
    """Plot scaled residuals against fitted values, by block, and by genotype.

    Args:
        fit: FittedResult
        out_prefix: If given, the figure is saved to {out_prefix}_diagnostics.png
        threshold: Reference lines at +/- threshold

    Returns:
        The matplotlib figure
    """
    frame = fit.observations.filter(pl.col('scaled_residual').is_not_nan())
    fig, axes = plt.subplots(1, 3, figsize=(13, 3.8))

    ax = axes[0]
    ax.scatter(frame['fitted'].to_numpy(), frame['scaled_residual'].to_numpy(), s=6, alpha=0.6)
    for level in (-threshold, 0.0, threshold):
        ax.axhline(level, color='k', ls='--' if level else '-', lw=0.7)
    ax.set_xlabel("Fitted value")
    ax.set_ylabel("Scaled residual")

    ax = axes[1]
    by_block = [
        frame.filter(pl.col('block') == b)['scaled_residual'].to_numpy() for b in fit.blocks
    ]
    ax.boxplot(by_block)
    ax.set_xticks(range(1, len(fit.blocks) + 1))
    ax.set_xticklabels(fit.blocks)
    ax.set_xlabel("Block")

    ax = axes[2]
    genotype_index = pl.Series(list(fit.genotypes)).to_frame('genotype').with_row_index('index')
    indexed = frame.join(genotype_index, on='genotype', how='left')
    ax.scatter(indexed['index'].to_numpy(), indexed['scaled_residual'].to_numpy(), s=4, alpha=0.6)
    ax.axhline(0.0, color='k', lw=0.7)
    ax.set_xlabel("Genotype")

    fig.suptitle(f"{fit.family.value}: scaled residuals")
    fig.tight_layout()
    if out_prefix is not None:
        fig.savefig(f"{out_prefix}_diagnostics.png", dpi=150)
    return fig
