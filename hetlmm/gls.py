"""
Generalized least squares with one residual variance per block.
"""

import logging
from dataclasses import dataclass

import numpy as np
import polars as pl
import statsmodels.api as sm

from .io import Observations
from .likelihood import build_design, check_estimable, solve_mixed_model
from .results import (
    FittedResult,
    ModelFamily,
    coefficient_names,
    log_scale_intervals,
    observation_frame,
    wald_intervals,
)


@dataclass
class GlsOptions:
    """Stores method parameters for feasible GLS.

    Attributes:
        max_iterations: Maximum number of reweighting steps
        tolerance: Convergence tolerance on the relative change of the block noise scales
        level: Coverage of the reported intervals
    """
    max_iterations: int = 50
    tolerance: float = 1e-6
    level: float = 0.95

    def __post_init__(self):
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be positive, got {self.max_iterations}")
        if self.tolerance <= 0:
            raise ValueError(f"tolerance must be positive, got {self.tolerance}")
        if not 0 < self.level < 1:
            raise ValueError(f"level must be in (0, 1), got {self.level}")


def fit_gls(observations: Observations, options: GlsOptions = None) -> FittedResult:
    """Fit block fixed effects by GLS with per-block variance weights.

    Genotype effects are not modelled. The block variances are re-estimated
    from the weighted least squares residuals until they stabilise, each block
    losing its share of the fixed-effect degrees of freedom:
        sigma_b^2 = RSS_b / (n_b * (1 - p/n))

    Args:
        observations: Observation table
        options: GlsOptions

    Returns:
        FittedResult with genotype_effects None

    Raises:
        UnderdeterminedModelError: if a block has fewer than two observations
    """
    options = options or GlsOptions()
    design = build_design(observations)
    check_estimable(design, observations.blocks, observations.genotypes,
                    genotype_effect=False, heteroscedastic=True)

    n, p = design.num_observations, design.num_fixed
    block_codes = design.block_codes
    block_counts = np.bincount(block_codes, minlength=design.num_blocks)
    block_df = block_counts * (1 - p / n)

    block_var = np.full(design.num_blocks, np.var(design.y))
    converged = False
    change = np.inf
    for iteration in range(options.max_iterations):
        wls = sm.WLS(design.y, design.X, weights=1 / block_var[block_codes]).fit()
        rss = np.bincount(block_codes, weights=wls.resid ** 2, minlength=design.num_blocks)
        new_block_var = np.maximum(rss / block_df, np.finfo(float).tiny)
        change = np.max(np.abs(np.sqrt(new_block_var / block_var) - 1))
        block_var = new_block_var
        if change < options.tolerance:
            converged = True
            break

    wls = sm.WLS(design.y, design.X, weights=1 / block_var[block_codes]).fit()
    beta = np.asarray(wls.params)
    # weights are absolute inverse variances, so use the unscaled covariance
    beta_se = np.sqrt(np.diag(wls.normalized_cov_params))

    messages = ()
    if not converged:
        messages = (f"Variance weights did not converge in {options.max_iterations} iterations "
                    f"(last relative change {change:.2e})",)
        logging.warning(f"GLS: {messages[0]}")
    else:
        logging.info(f"GLS converged after {iteration + 1} iterations")

    solution = solve_mixed_model(design, 0.0, block_var, beta=beta)
    noise_scales = np.sqrt(block_var)
    names = coefficient_names(observations.blocks)
    intervals = pl.concat([
        wald_intervals(names, beta, beta_se, options.level),
        log_scale_intervals(
            [f"sigma[{b}]" for b in observations.blocks],
            np.log(block_var),
            np.sqrt(2 / block_df),
            options.level,
        ),
    ])

    return FittedResult(
        family=ModelFamily.GLS_HETERO,
        genotypes=observations.genotypes,
        blocks=observations.blocks,
        coefficient_names=names,
        fixed_effects=beta,
        fixed_effect_se=beta_se,
        genotype_effects=None,
        genotype_scale=None,
        noise_scales=noise_scales,
        noise_df=np.inf,
        observations=observation_frame(observations, design, solution.fitted,
                                       solution.residual, solution.residual_var, noise_scales),
        intervals=intervals,
        noise_scale_se=noise_scales * np.sqrt(2 / block_df) / 2,
        converged=converged,
        convergence_messages=messages,
    )
