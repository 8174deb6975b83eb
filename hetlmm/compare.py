"""
Recovery of the generative parameters and genotype ranking by fitted models.
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

import numpy as np
import polars as pl
import scipy.stats as sps

from .diagnostics import compute_diagnostics
from .results import FittedResult
from .simulate import SimulationTruth


@dataclass(frozen=True)
class RankRecovery:
    """Agreement between true and estimated genotype effects.

    Attributes:
        pearson: Pearson correlation, NaN if unsupported
        spearman: Spearman rank correlation, NaN if unsupported
        top_overlap: Genotypes in both the true and estimated top sets
        top_count: Size of each top set, ceil(top_percent/100 * G)
        top_percent: Requested percentage
        supported: False if the fit does not estimate genotype effects
    """
    pearson: float
    spearman: float
    top_overlap: int
    top_count: int
    top_percent: float
    supported: bool


def top_count(num_genotypes: int, top_percent: float) -> int:
    """Number of genotypes in the top top_percent percent, rounded up."""
    if not 0 < top_percent <= 100:
        raise ValueError(f"top_percent must be in (0, 100], got {top_percent}")
    # rounding guards against 10/100*250 evaluating to 25.000000000000004
    return int(math.ceil(round(top_percent * num_genotypes / 100, 9)))


def rank_recovery(
    true_effects: np.ndarray,
    estimated_effects: Optional[np.ndarray],
    top_percent: float = 10.0,
) -> RankRecovery:
    """Compare estimated genotype effects with the truth.

    Args:
        true_effects: True genotype effects
        estimated_effects: Estimated effects in the same order, or None if the
            model does not estimate them
        top_percent: Percentage of genotypes with the largest effects to compare

    Returns:
        RankRecovery
    """
    true_effects = np.asarray(true_effects, dtype=float)
    k = top_count(len(true_effects), top_percent)
    if estimated_effects is None:
        return RankRecovery(np.nan, np.nan, 0, k, top_percent, supported=False)

    estimated_effects = np.asarray(estimated_effects, dtype=float)
    if estimated_effects.shape != true_effects.shape:
        raise ValueError(
            f"Expected {len(true_effects)} estimated effects, got {len(estimated_effects)}"
        )

    pearson = float(sps.pearsonr(true_effects, estimated_effects)[0])
    spearman = float(sps.spearmanr(true_effects, estimated_effects)[0])
    true_top = set(np.argsort(-true_effects, kind='stable')[:k])
    estimated_top = set(np.argsort(-estimated_effects, kind='stable')[:k])
    return RankRecovery(
        pearson=pearson,
        spearman=spearman,
        top_overlap=len(true_top & estimated_top),
        top_count=k,
        top_percent=top_percent,
        supported=True,
    )


def parameter_recovery(truth: SimulationTruth, fit: FittedResult) -> pl.DataFrame:
    """True against estimated intercept, block offsets, noise scales and genotype scale.

    Returns:
        DataFrame with columns parameter, true, estimate, error
    """
    names = list(fit.coefficient_names)
    true_values = list(truth.fixed_effects)
    estimates = list(fit.fixed_effects)

    names += [f"sigma[{b}]" for b in fit.blocks]
    true_values += list(truth.noise_scales)
    estimates += list(fit.noise_scales)

    names.append("sigma[genotype]")
    true_values.append(truth.genotype_scale)
    estimates.append(fit.genotype_scale)

    table = pl.DataFrame({
        'parameter': names,
        'true': pl.Series(true_values, dtype=pl.Float64),
        'estimate': pl.Series(estimates, dtype=pl.Float64),
    })
    return table.with_columns((pl.col('estimate') - pl.col('true')).alias('error'))


def compare_fits(
    truth: SimulationTruth,
    fits: Iterable[FittedResult],
    top_percent: float = 10.0,
    threshold: float = 2.0,
) -> pl.DataFrame:
    """One row per fit with convergence, ranking recovery and residual diagnostics.

    Args:
        truth: Generative parameters
        fits: Fitted results to compare
        top_percent: Percentage of top genotypes for the overlap
        threshold: Outlier threshold of the diagnostics

    Returns:
        DataFrame with one row per fit
    """
    rows = []
    for fit in fits:
        if not fit.converged:
            logging.warning(
                f"{fit.family.value} did not converge, its recovery metrics are unreliable: "
                f"{'; '.join(fit.convergence_messages)}"
            )
        ranking = rank_recovery(truth.genotype_effects, fit.genotype_effects, top_percent)
        diagnostics = compute_diagnostics(fit, threshold)
        row: Dict[str, object] = {
            'family': fit.family.value,
            'converged': fit.converged,
            'supports_genotype_effects': ranking.supported,
            'pearson': ranking.pearson,
            'spearman': ranking.spearman,
            'top_overlap': ranking.top_overlap,
            'top_count': ranking.top_count,
        }
        row.update(diagnostics.to_dict())
        rows.append(row)
    return pl.DataFrame(rows)
