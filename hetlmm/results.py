"""Common result shape shared by every model family."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import polars as pl
import scipy.stats as sps

from .io import Observations
from .likelihood import BlockedDesign


class ModelFamily(Enum):
    """Model families, one fitting strategy each."""
    GLS_HETERO = 'gls_hetero'
    REML = 'reml'
    REML_HETERO = 'reml_hetero'
    BAYES = 'bayes'


@dataclass(frozen=True)
class FittedResult:
    """Output of a fitter.

    Attributes:
        family: Model family that produced the fit
        genotypes: Declared genotype ids
        blocks: Declared block ids
        coefficient_names: Names of the fixed effects
        fixed_effects: Intercept followed by the B-1 block offsets
        fixed_effect_se: Standard errors (posterior SDs for Bayesian fits)
        genotype_effects: Predicted genotype effects in declaration order, or None
            if the family does not model them
        genotype_scale: Estimated genotype-effect SD, or None
        noise_scales: Estimated noise scale of each block; the t scale parameter
            when noise_df is finite
        noise_df: Degrees of freedom of the modelled noise, np.inf for Gaussian
        observations: One row per observed response with genotype, block, y,
            fitted, residual, pearson_residual and scaled_residual
        intervals: Flat table with coefficient, estimate, lower, upper
        noise_scale_se: Standard error (posterior SD) of each noise scale, if available
        converged: False if the fitter did not reach a stable solution
        convergence_messages: Reasons the fit is flagged as not converged
        parameter_summary: Per-parameter posterior summary with rhat and ess
            (Bayesian fits only)
        draws: Posterior draws by parameter, arrays of shape (chains, draws, ...)
    """
    family: ModelFamily
    genotypes: Tuple[str, ...]
    blocks: Tuple[str, ...]
    coefficient_names: Tuple[str, ...]
    fixed_effects: np.ndarray
    fixed_effect_se: np.ndarray
    genotype_effects: Optional[np.ndarray]
    genotype_scale: Optional[float]
    noise_scales: np.ndarray
    noise_df: float
    observations: pl.DataFrame
    intervals: pl.DataFrame
    noise_scale_se: Optional[np.ndarray] = None
    converged: bool = True
    convergence_messages: Tuple[str, ...] = ()
    parameter_summary: Optional[pl.DataFrame] = None
    draws: Optional[Dict[str, np.ndarray]] = field(default=None, repr=False)

    @property
    def supports_genotype_effects(self) -> bool:
        return self.genotype_effects is not None

    def to_table(self) -> pl.DataFrame:
        """Flat coefficient table: coefficient, estimate, lower, upper."""
        return self.intervals

    def genotype_table(self) -> pl.DataFrame:
        """Genotype ids with their predicted effects (null if unsupported)."""
        effects = (self.genotype_effects if self.genotype_effects is not None
                   else [None] * len(self.genotypes))
        return pl.DataFrame({
            'genotype': list(self.genotypes),
            'effect': pl.Series(effects, dtype=pl.Float64),
        })


def coefficient_names(blocks: Sequence[str]) -> Tuple[str, ...]:
    """Fixed-effect names for treatment-coded blocks."""
    return ('intercept',) + tuple(f"block[{b}]" for b in blocks[1:])


def noise_sd_factor(df: float) -> float:
    """Ratio of the noise SD to the t scale parameter (1 for Gaussian or df <= 2)."""
    if np.isinf(df) or df <= 2:
        return 1.0
    return float(np.sqrt(df / (df - 2)))


def studentize(residual: np.ndarray, residual_var: np.ndarray, df: float = np.inf) -> np.ndarray:
    """Scale residuals to unit variance, then onto the normal scale for t noise.

    Args:
        residual: Raw residuals
        residual_var: Model variance of each residual
        df: Noise degrees of freedom

    Returns:
        Residuals that are approximately N(0, 1) under the fitted model
    """
    with np.errstate(divide='ignore', invalid='ignore'):
        scaled = np.where(residual_var > 0, residual / np.sqrt(residual_var), np.nan)
    if np.isinf(df):
        return scaled
    t_scaled = np.abs(scaled) * noise_sd_factor(df)
    return np.sign(scaled) * sps.norm.isf(sps.t.sf(t_scaled, df))


def observation_frame(
    observations: Observations,
    design: BlockedDesign,
    fitted: np.ndarray,
    residual: np.ndarray,
    residual_var: np.ndarray,
    noise_scales: np.ndarray,
    noise_df: float = np.inf,
) -> pl.DataFrame:
    """Per-observation fitted values and residuals, in the order of the observed rows."""
    frame = observations.observed()
    return frame.with_columns(
        pl.Series('fitted', fitted),
        pl.Series('residual', residual),
        pl.Series('pearson_residual', residual / noise_scales[design.block_codes]),
        pl.Series('scaled_residual', studentize(residual, residual_var, noise_df)),
    )


def interval_table(
    names: Sequence[str],
    estimates: Sequence[float],
    lower: Sequence[Optional[float]],
    upper: Sequence[Optional[float]],
) -> pl.DataFrame:
    return pl.DataFrame({
        'coefficient': list(names),
        'estimate': pl.Series(list(estimates), dtype=pl.Float64),
        'lower': pl.Series(list(lower), dtype=pl.Float64),
        'upper': pl.Series(list(upper), dtype=pl.Float64),
    })


def wald_intervals(
    names: Sequence[str],
    estimates: np.ndarray,
    se: np.ndarray,
    level: float = 0.95,
) -> pl.DataFrame:
    """Symmetric normal-approximation intervals."""
    z = sps.norm.ppf(0.5 + level / 2)
    return interval_table(names, estimates, estimates - z * se, estimates + z * se)


def log_scale_intervals(
    names: Sequence[str],
    log_variances: np.ndarray,
    log_variance_se: Optional[np.ndarray],
    level: float = 0.95,
) -> pl.DataFrame:
    """Intervals for standard deviations from log-variance estimates and their SEs."""
    sd = np.exp(np.asarray(log_variances) / 2)
    if log_variance_se is None:
        missing: List[Optional[float]] = [None] * len(sd)
        return interval_table(names, sd, missing, missing)
    z = sps.norm.ppf(0.5 + level / 2)
    lower = np.exp((log_variances - z * log_variance_se) / 2)
    upper = np.exp((log_variances + z * log_variance_se) / 2)
    return interval_table(names, sd, lower, upper)
