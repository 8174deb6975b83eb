"""
Convergence statistics for multi-chain posterior draws.

Both statistics follow the rank-free forms of Gelman et al. (BDA3, ch. 11):
chains are split in half before comparing within- and between-chain variance,
and the effective sample size truncates the chain-averaged autocorrelation
with Geyer's initial monotone sequence.
"""

from typing import Dict

import numpy as np
import polars as pl


def _split_chains(draws: np.ndarray) -> np.ndarray:
    """Split each chain in half, dropping the middle draw of odd-length chains."""
    draws = np.atleast_2d(np.asarray(draws, dtype=float))
    n = draws.shape[1]
    half = n // 2
    return np.vstack([draws[:, :half], draws[:, n - half:]])


def _autocovariance(x: np.ndarray) -> np.ndarray:
    """Biased autocovariance of each row, computed by FFT."""
    n = x.shape[-1]
    centered = x - x.mean(axis=-1, keepdims=True)
    size = 2 ** int(np.ceil(np.log2(2 * n - 1)))
    freq = np.fft.rfft(centered, n=size, axis=-1)
    acov = np.fft.irfft(freq * np.conjugate(freq), n=size, axis=-1)[..., :n]
    return acov / n


def split_rhat(draws: np.ndarray) -> float:
    """Split potential scale reduction factor.

    Args:
        draws: Array of shape (chains, draws)

    Returns:
        R-hat; NaN if the draws are constant or too short to split
    """
    chains = _split_chains(draws)
    n = chains.shape[1]
    if n < 2:
        return np.nan
    within = np.mean(np.var(chains, axis=1, ddof=1))
    between = n * np.var(np.mean(chains, axis=1), ddof=1)
    if within == 0:
        return np.nan
    var_plus = (n - 1) / n * within + between / n
    return float(np.sqrt(var_plus / within))


def effective_sample_size(draws: np.ndarray) -> float:
    """Effective sample size of split chains.

    Args:
        draws: Array of shape (chains, draws)

    Returns:
        ESS of the pooled draws; NaN if the draws are constant or too short
    """
    chains = _split_chains(draws)
    m, n = chains.shape
    if n < 5:
        return np.nan

    acov = _autocovariance(chains)
    chain_mean = chains.mean(axis=1)
    mean_var = np.mean(acov[:, 0]) * n / (n - 1)
    var_plus = mean_var * (n - 1) / n
    if m > 1:
        var_plus += np.var(chain_mean, ddof=1)
    if var_plus == 0:
        return np.nan

    rho = np.zeros(n)
    rho[0] = 1.0
    rho[1] = 1.0 - (mean_var - np.mean(acov[:, 1])) / var_plus
    rho_even, rho_odd = rho[0], rho[1]

    # Geyer's initial positive sequence over pairs of lags
    t = 1
    while t < n - 3 and rho_even + rho_odd > 0:
        rho_even = 1.0 - (mean_var - np.mean(acov[:, t + 1])) / var_plus
        rho_odd = 1.0 - (mean_var - np.mean(acov[:, t + 2])) / var_plus
        if rho_even + rho_odd >= 0:
            rho[t + 1] = rho_even
            rho[t + 2] = rho_odd
        t += 2
    max_t = t - 2
    if rho_even > 0:
        rho[max_t + 1] = rho_even

    # initial monotone sequence
    t = 1
    while t <= max_t - 2:
        if rho[t + 1] + rho[t + 2] > rho[t - 1] + rho[t]:
            rho[t + 1] = (rho[t - 1] + rho[t]) / 2
            rho[t + 2] = rho[t + 1]
        t += 2

    tau = -1.0 + 2.0 * np.sum(rho[:max_t + 1]) + rho[max_t + 1]
    tau = max(tau, 1.0 / np.log10(m * n))
    return float(m * n / tau)


def summarize_draws(draws: Dict[str, np.ndarray], level: float = 0.95) -> pl.DataFrame:
    """Posterior summary of each scalar parameter.

    Args:
        draws: Mapping from parameter name to draws of shape (chains, draws)
        level: Probability mass of the central credible interval

    Returns:
        DataFrame with columns parameter, mean, sd, lower, upper, rhat, ess
    """
    alpha = (1 - level) / 2
    rows = []
    for name, values in draws.items():
        values = np.asarray(values, dtype=float)
        flat = values.ravel()
        rows.append({
            'parameter': name,
            'mean': float(np.mean(flat)),
            'sd': float(np.std(flat, ddof=1)) if flat.size > 1 else np.nan,
            'lower': float(np.quantile(flat, alpha)),
            'upper': float(np.quantile(flat, 1 - alpha)),
            'rhat': split_rhat(values),
            'ess': effective_sample_size(values),
        })
    return pl.DataFrame(rows, schema={
        'parameter': pl.Utf8,
        'mean': pl.Float64,
        'sd': pl.Float64,
        'lower': pl.Float64,
        'upper': pl.Float64,
        'rhat': pl.Float64,
        'ess': pl.Float64,
    })
