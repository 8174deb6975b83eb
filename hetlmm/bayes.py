"""
Bayesian fit of the heteroscedastic genotype x block model by Gibbs sampling.

Model:
    y[i] = X[i]*beta + u[genotype[i]] + e[i]
    u[g] ~ N(0, genotype_var)
    e[i] ~ N(0, block_var[block[i]] / lambda[i])
    lambda[i] ~ Gamma(noise_df/2, rate=noise_df/2)
so that e is Student-t with noise_df degrees of freedom and scale
sqrt(block_var); lambda is fixed at 1 for Gaussian noise. Each variance has a
scaled inverse chi-square(prior_df, prior_variance) prior and beta a flat prior.

Each sweep integrates u out wherever it can. The variances are updated by
random walk Metropolis steps on the log scale against the likelihood of
y - X*beta with u integrated out, beta is drawn from its conditional with u
integrated out, and u given beta. Updating the variances given u instead
lets a small block variance stick near zero while u absorbs that block's
residuals.
"""

import logging
from dataclasses import dataclass
from multiprocessing import Pool, cpu_count
from typing import Dict, List, Optional, Tuple

import numpy as np
import polars as pl

from .convergence import summarize_draws
from .io import Observations
from .likelihood import BlockedDesign, build_design, check_estimable, solve_mixed_model
from .results import (
    FittedResult,
    ModelFamily,
    coefficient_names,
    interval_table,
    noise_sd_factor,
    observation_frame,
)

TARGET_ACCEPTANCE = 0.44


@dataclass
class SamplerOptions:
    """Stores method parameters for the Gibbs sampler.

    Attributes:
        num_chains: Number of independent chains
        num_warmup: Iterations discarded at the start of each chain; the
            Metropolis proposal scales are tuned during warm-up
        num_draws: Draws kept per chain after warm-up and thinning
        thin: Keep every thin-th iteration after warm-up
        random_seed: Seed of the SeedSequence that is spawned once per chain
        noise_df: Degrees of freedom of the Student-t noise, np.inf for Gaussian
        prior_df: Degrees of freedom of the scaled inverse chi-square variance priors
        prior_variance: Scale of the variance priors; defaults to a tenth of the
            variance of the observed responses
        proposal_scale: Initial standard deviation of the log-variance proposals
        rhat_threshold: Largest split R-hat accepted as converged
        min_ess: Smallest effective sample size accepted as converged
        credible_level: Probability mass of the reported credible intervals
        run_in_serial: Run the chains one after another in this process
        num_processes: Number of worker processes when not in serial, defaults
            to min(num_chains, cpu_count())
        verbose: Log progress of each chain
    """
    num_chains: int = 4
    num_warmup: int = 500
    num_draws: int = 1000
    thin: int = 1
    random_seed: Optional[int] = None
    noise_df: float = np.inf
    prior_df: float = 4.0
    prior_variance: Optional[float] = None
    proposal_scale: float = 0.5
    rhat_threshold: float = 1.05
    min_ess: float = 100.0
    credible_level: float = 0.95
    run_in_serial: bool = True
    num_processes: Optional[int] = None
    verbose: bool = False

    def __post_init__(self):
        if self.num_chains < 1:
            raise ValueError(f"num_chains must be positive, got {self.num_chains}")
        if self.num_warmup < 0:
            raise ValueError(f"num_warmup must be non-negative, got {self.num_warmup}")
        if self.num_draws < 1:
            raise ValueError(f"num_draws must be positive, got {self.num_draws}")
        if self.thin < 1:
            raise ValueError(f"thin must be positive, got {self.thin}")
        if not self.noise_df > 0:
            raise ValueError(f"noise_df must be positive, got {self.noise_df}")
        if not self.prior_df > 0:
            raise ValueError(f"prior_df must be positive, got {self.prior_df}")
        if self.prior_variance is not None and not self.prior_variance > 0:
            raise ValueError(f"prior_variance must be positive, got {self.prior_variance}")
        if not self.proposal_scale > 0:
            raise ValueError(f"proposal_scale must be positive, got {self.proposal_scale}")
        if not 0 < self.credible_level < 1:
            raise ValueError(f"credible_level must be in (0, 1), got {self.credible_level}")


def _initial_variances(design: BlockedDesign, rng: np.random.Generator) -> Tuple[float, np.ndarray]:
    """Overdispersed starting values of the variances."""
    y_var = np.var(design.y)
    genotype_var = y_var * np.exp(rng.normal())
    block_var = y_var * np.exp(rng.normal(size=design.num_blocks))
    return genotype_var, block_var


def _log_marginal_likelihood(
    r: np.ndarray,
    design: BlockedDesign,
    lam: np.ndarray,
    log_var: np.ndarray,
) -> float:
    """Log-likelihood of r = y - X*beta with the genotype effects integrated out, up to a constant.

    For each genotype V_g = D_g + genotype_var * 11' with D_g = diag(block_var / lambda),
    so by the matrix determinant lemma and the Woodbury identity
        log|V_g| = log|D_g| + log(1 + genotype_var * 1' inv(D_g) 1)
        r' inv(V_g) r = r' inv(D_g) r - genotype_var * (1' inv(D_g) r)^2 / (1 + genotype_var * 1' inv(D_g) 1)
    """
    genotype_var = np.exp(log_var[0])
    w = lam * np.exp(-log_var[1:])[design.block_codes]
    g = design.genotype_codes
    sw = np.bincount(g, weights=w, minlength=design.num_genotypes)
    swr = np.bincount(g, weights=w * r, minlength=design.num_genotypes)
    denominator = 1 + genotype_var * sw
    logdet = np.sum(np.log(denominator)) - np.sum(np.log(w))
    quad = np.sum(w * r ** 2) - genotype_var * np.sum(swr ** 2 / denominator)
    return float(-0.5 * (logdet + quad))


def _log_prior(log_var: np.ndarray, prior_df: float, prior_variance: float) -> float:
    """Scaled inverse chi-square log density of exp(log_var), including the log-scale Jacobian."""
    return float(np.sum(-0.5 * prior_df * (log_var + prior_variance * np.exp(-log_var))))


def _run_chain(
    design: BlockedDesign,
    options: SamplerOptions,
    seed: np.random.SeedSequence,
    chain: int,
) -> Dict[str, np.ndarray]:
    """Run one Gibbs chain.

    Returns:
        Mapping from parameter name to kept draws of shape (num_draws, ...)
    """
    rng = np.random.default_rng(seed)
    y, X = design.y, design.X
    g, b = design.genotype_codes, design.block_codes
    n, p = design.num_observations, design.num_fixed
    G, B = design.num_genotypes, design.num_blocks
    df = options.noise_df
    student = np.isfinite(df)
    prior_variance = options.prior_variance
    if prior_variance is None:
        prior_variance = 0.1 * np.var(y)

    def _log_posterior(r: np.ndarray, lam: np.ndarray, log_var: np.ndarray) -> float:
        return (_log_marginal_likelihood(r, design, lam, log_var)
                + _log_prior(log_var, options.prior_df, prior_variance))

    genotype_var, block_var = _initial_variances(design, rng)
    log_var = np.log(np.concatenate([[genotype_var], block_var]))
    proposal_sd = np.full(B + 1, options.proposal_scale)
    accepted = np.zeros(B + 1)
    lam = np.ones(n)
    beta = np.linalg.lstsq(X, y, rcond=None)[0]

    kept = {
        'fixed_effects': np.zeros((options.num_draws, p)),
        'genotype_effects': np.zeros((options.num_draws, G)),
        'genotype_scale': np.zeros(options.num_draws),
        'noise_scales': np.zeros((options.num_draws, B)),
    }
    num_iterations = options.num_warmup + options.num_draws * options.thin
    for iteration in range(num_iterations):
        warmup = iteration < options.num_warmup

        # variances | beta with u integrated out, one random walk step per component
        r = y - X @ beta
        current = _log_posterior(r, lam, log_var)
        for j in range(B + 1):
            proposal = log_var.copy()
            proposal[j] += proposal_sd[j] * rng.standard_normal()
            candidate = _log_posterior(r, lam, proposal)
            accept = bool(np.log(rng.uniform()) < candidate - current)
            if accept:
                log_var, current = proposal, candidate
            if warmup:
                proposal_sd[j] *= np.exp((accept - TARGET_ACCEPTANCE) / np.sqrt(iteration + 1))
            else:
                accepted[j] += accept
        genotype_var = np.exp(log_var[0])
        block_var = np.exp(log_var[1:])
        weights = lam / block_var[b]

        # beta | variances with u integrated out, using
        # inv(V_g) = W_g - w_g w_g' / (1/genotype_var + sum(w_g)) for each genotype
        c = np.bincount(g, weights=weights, minlength=G) + 1 / genotype_var
        wX = np.column_stack([
            np.bincount(g, weights=weights * X[:, j], minlength=G) for j in range(p)
        ])
        wy = np.bincount(g, weights=weights * y, minlength=G)
        precision = X.T @ (weights[:, None] * X) - (wX / c[:, None]).T @ wX
        cov = np.linalg.inv(precision)
        mean = cov @ (X.T @ (weights * y) - (wX / c[:, None]).T @ wy)
        beta = mean + np.linalg.cholesky(cov) @ rng.standard_normal(p)

        # u | beta, variances
        r = y - X @ beta
        u_mean = np.bincount(g, weights=weights * r, minlength=G) / c
        u = u_mean + rng.standard_normal(G) / np.sqrt(c)

        # mixing weights of the t noise
        if student:
            e = r - u[g]
            lam = rng.gamma((df + 1) / 2, 2 / (df + e ** 2 / block_var[b]))

        kept_index = iteration - options.num_warmup
        if kept_index >= 0 and kept_index % options.thin == 0:
            k = kept_index // options.thin
            kept['fixed_effects'][k] = beta
            kept['genotype_effects'][k] = u
            kept['genotype_scale'][k] = np.sqrt(genotype_var)
            kept['noise_scales'][k] = np.sqrt(block_var)

    if options.verbose:
        num_kept_iterations = num_iterations - options.num_warmup
        logging.info(
            f"Chain {chain}: finished {num_iterations} iterations, Metropolis acceptance "
            f"{np.round(accepted / max(num_kept_iterations, 1), 2).tolist()}"
        )
    return kept


def sample_posterior(design: BlockedDesign, options: SamplerOptions) -> Dict[str, np.ndarray]:
    """Run all chains and stack their draws.

    Args:
        design: BlockedDesign over the observed rows
        options: SamplerOptions

    Returns:
        Mapping from parameter name to draws of shape (num_chains, num_draws, ...)
    """
    seeds = np.random.SeedSequence(options.random_seed).spawn(options.num_chains)
    args = [(design, options, seed, chain) for chain, seed in enumerate(seeds)]
    if options.run_in_serial:
        chains = [_run_chain(*a) for a in args]
    else:
        num_processes = options.num_processes or min(options.num_chains, cpu_count())
        with Pool(num_processes) as pool:
            chains = pool.starmap(_run_chain, args)
    return {key: np.stack([c[key] for c in chains]) for key in chains[0]}


def _scalar_draws(draws: Dict[str, np.ndarray], names: Tuple[str, ...],
                  blocks: Tuple[str, ...], genotypes: Tuple[str, ...]) -> Dict[str, np.ndarray]:
    scalars = {}
    for j, name in enumerate(names):
        scalars[name] = draws['fixed_effects'][..., j]
    for j, block in enumerate(blocks):
        scalars[f"sigma[{block}]"] = draws['noise_scales'][..., j]
    scalars["sigma[genotype]"] = draws['genotype_scale']
    for j, genotype in enumerate(genotypes):
        scalars[f"u[{genotype}]"] = draws['genotype_effects'][..., j]
    return scalars


def _convergence_messages(summary: pl.DataFrame, options: SamplerOptions) -> List[str]:
    messages = []
    not_computable = summary.filter(pl.col('rhat').is_nan() | pl.col('ess').is_nan())
    if len(not_computable) > 0:
        shown = ', '.join(not_computable['parameter'].head(5).to_list())
        messages.append(
            f"{len(not_computable)} parameter(s) have split R-hat or effective sample size "
            f"not computable, the draws are constant or too short ({shown})"
        )
    computable = summary.filter(pl.col('rhat').is_not_nan() & pl.col('ess').is_not_nan())
    high_rhat = computable.filter(pl.col('rhat') > options.rhat_threshold)
    if len(high_rhat) > 0:
        worst = high_rhat.sort('rhat', descending=True).row(0, named=True)
        messages.append(
            f"{len(high_rhat)} parameter(s) have split R-hat above {options.rhat_threshold} "
            f"(worst {worst['parameter']}: {worst['rhat']:.3f})"
        )
    low_ess = computable.filter(pl.col('ess') < options.min_ess)
    if len(low_ess) > 0:
        worst = low_ess.sort('ess').row(0, named=True)
        messages.append(
            f"{len(low_ess)} parameter(s) have effective sample size below {options.min_ess} "
            f"(worst {worst['parameter']}: {worst['ess']:.1f})"
        )
    return messages


def fit_bayes(observations: Observations, options: SamplerOptions = None) -> FittedResult:
    """Fit the heteroscedastic model with a random genotype effect by Gibbs sampling.

    Args:
        observations: Observation table
        options: SamplerOptions

    Returns:
        FittedResult holding posterior means, central credible intervals, the
        per-parameter summary with split R-hat and ESS, and the draws

    Raises:
        UnderdeterminedModelError: if a block has fewer than two observations, a
            genotype has none, or no genotype is observed twice
    """
    options = options or SamplerOptions()
    design = build_design(observations)
    check_estimable(design, observations.blocks, observations.genotypes,
                    genotype_effect=True, heteroscedastic=True)

    logging.info(
        f"Sampling {options.num_chains} chains of {options.num_warmup} warm-up and "
        f"{options.num_draws} kept draws (thin={options.thin}), noise df={options.noise_df}"
    )
    draws = sample_posterior(design, options)

    names = coefficient_names(observations.blocks)
    summary = summarize_draws(
        _scalar_draws(draws, names, observations.blocks, observations.genotypes),
        level=options.credible_level,
    )
    messages = tuple(_convergence_messages(summary, options))
    for message in messages:
        logging.warning(f"Bayes: {message}")

    def _flat_mean(key: str) -> np.ndarray:
        return draws[key].reshape(-1, *draws[key].shape[2:]).mean(axis=0)

    def _flat_sd(key: str) -> np.ndarray:
        return draws[key].reshape(-1, *draws[key].shape[2:]).std(axis=0, ddof=1)

    beta = _flat_mean('fixed_effects')
    genotype_effects = _flat_mean('genotype_effects')
    genotype_scale = float(_flat_mean('genotype_scale'))
    noise_scales = _flat_mean('noise_scales')

    sd_factor = noise_sd_factor(options.noise_df)
    solution = solve_mixed_model(design, genotype_scale ** 2, (noise_scales * sd_factor) ** 2,
                                 beta=beta, genotype_effects=genotype_effects)

    interval_rows = summary.filter(~pl.col('parameter').str.starts_with('u['))
    intervals = interval_table(
        interval_rows['parameter'].to_list(),
        interval_rows['mean'].to_list(),
        interval_rows['lower'].to_list(),
        interval_rows['upper'].to_list(),
    )

    return FittedResult(
        family=ModelFamily.BAYES,
        genotypes=observations.genotypes,
        blocks=observations.blocks,
        coefficient_names=names,
        fixed_effects=beta,
        fixed_effect_se=_flat_sd('fixed_effects'),
        genotype_effects=genotype_effects,
        genotype_scale=genotype_scale,
        noise_scales=noise_scales,
        noise_df=float(options.noise_df),
        observations=observation_frame(observations, design, solution.fitted, solution.residual,
                                       solution.residual_var, noise_scales, options.noise_df),
        intervals=intervals,
        noise_scale_se=_flat_sd('noise_scales'),
        converged=not messages,
        convergence_messages=messages,
        parameter_summary=summary,
        draws=draws,
    )
