"""
Restricted maximum likelihood fits of the genotype x block mixed model.
"""

import logging
import warnings
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import numpy as np
import polars as pl
import statsmodels.api as sm
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from .io import Observations
from .likelihood import (
    BlockedDesign,
    build_design,
    check_estimable,
    reml_average_information,
    reml_log_likelihood,
    reml_score,
    solve_mixed_model,
)
from .results import (
    FittedResult,
    ModelFamily,
    coefficient_names,
    interval_table,
    log_scale_intervals,
    observation_frame,
    wald_intervals,
)

LOG_VARIANCE_BOUNDS = (-30.0, 30.0)


@dataclass
class RemlOptions:
    """Stores method parameters for REML.

    Attributes:
        max_iterations: Optimization steps
        tolerance: Convergence threshold on the log-likelihood increase predicted
            for a full Newton step
        level: Coverage of the reported intervals
        hessian_step: Step size for the finite-difference Hessian of the
            log-variance parameters
        trust_region_size: Initial trust region size parameter
        trust_region_rho_lb: Lower bound for trust region ratio
        trust_region_rho_ub: Upper bound for trust region ratio
        trust_region_scalar: Scaling factor for trust region updates
        max_trust_iterations: Maximum number of trust region iterations per step
        max_step: Largest change of any log variance in one step
    """
    max_iterations: int = 200
    tolerance: float = 1e-6
    level: float = 0.95
    hessian_step: float = 1e-4
    trust_region_size: float = 1e-1
    trust_region_rho_lb: float = 1e-4
    trust_region_rho_ub: float = .99
    trust_region_scalar: float = 5
    max_trust_iterations: int = 30
    max_step: float = 2.0

    def __post_init__(self):
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be positive, got {self.max_iterations}")
        if self.tolerance <= 0:
            raise ValueError(f"tolerance must be positive, got {self.tolerance}")
        if not 0 < self.level < 1:
            raise ValueError(f"level must be in (0, 1), got {self.level}")
        if not self.hessian_step > 0:
            raise ValueError(f"hessian_step must be positive, got {self.hessian_step}")
        if not self.trust_region_size > 0:
            raise ValueError(f"trust_region_size must be positive, got {self.trust_region_size}")
        if not 0 < self.trust_region_rho_lb < self.trust_region_rho_ub < 1:
            raise ValueError("Trust region ratio bounds must satisfy 0 < rho_lb < rho_ub < 1")
        if not self.trust_region_scalar > 1:
            raise ValueError(f"trust_region_scalar must exceed 1, got {self.trust_region_scalar}")
        if self.max_trust_iterations < 1:
            raise ValueError(f"max_trust_iterations must be positive, got {self.max_trust_iterations}")
        if not self.max_step > 0:
            raise ValueError(f"max_step must be positive, got {self.max_step}")


def _converged(fit_obj) -> bool:
    """Checks for convergence in a statsmodels fit object."""
    if hasattr(fit_obj, "mle_retvals") and isinstance(fit_obj.mle_retvals, dict):
        return bool(fit_obj.mle_retvals.get("converged", False))
    return bool(getattr(fit_obj, "converged", False))


def _numerical_hessian(gradient: Callable[[np.ndarray], np.ndarray], x: np.ndarray, step: float) -> np.ndarray:
    """Central differences of the gradient, symmetrized."""
    d = len(x)
    hess = np.zeros((d, d))
    for i in range(d):
        e = np.zeros(d)
        e[i] = step
        hess[:, i] = (gradient(x + e) - gradient(x - e)) / (2 * step)
    return (hess + hess.T) / 2


def _starting_values(design: BlockedDesign) -> np.ndarray:
    """Split each block's variance evenly between genotype and residual."""
    block_var = np.array([
        np.var(design.y[design.block_codes == b]) for b in range(design.num_blocks)
    ])
    block_var = np.maximum(block_var, 1e-8)
    return np.log(np.concatenate([[0.5 * np.mean(block_var)], 0.5 * block_var]))


def fit_reml(observations: Observations, options: RemlOptions = None) -> FittedResult:
    """Fit a random genotype effect with one residual variance for all blocks.

    The fit is delegated to statsmodels MixedLM with REML; any
    ConvergenceWarning it raises marks the result as not converged.

    Args:
        observations: Observation table
        options: RemlOptions

    Returns:
        FittedResult with a single noise scale repeated for every block
    """
    options = options or RemlOptions()
    design = build_design(observations)
    check_estimable(design, observations.blocks, observations.genotypes,
                    genotype_effect=True, heteroscedastic=False)

    model = sm.MixedLM(design.y, design.X, groups=design.genotype_codes)
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always", ConvergenceWarning)
        result = model.fit(reml=True, maxiter=options.max_iterations)

    messages = tuple(str(w.message) for w in caught if issubclass(w.category, ConvergenceWarning))
    converged = _converged(result) and not messages
    if not converged:
        messages = messages or ("MixedLM optimizer did not converge",)
        for message in messages:
            logging.warning(f"REML: {message}")

    beta = np.asarray(result.fe_params, dtype=float)
    beta_se = np.asarray(result.bse_fe, dtype=float)
    genotype_var = float(np.asarray(result.cov_re)[0, 0])
    residual_var = float(result.scale)

    genotype_effects = np.zeros(design.num_genotypes)
    for group, effect in result.random_effects.items():
        genotype_effects[int(group)] = np.asarray(effect, dtype=float).ravel()[0]

    block_var = np.full(design.num_blocks, residual_var)
    solution = solve_mixed_model(design, genotype_var, block_var,
                                 beta=beta, genotype_effects=genotype_effects)
    noise_scales = np.sqrt(block_var)

    names = coefficient_names(observations.blocks)
    sigma_names = [f"sigma[{b}]" for b in observations.blocks] + ["sigma[genotype]"]
    sigma_estimates = list(noise_scales) + [np.sqrt(genotype_var)]
    intervals = pl.concat([
        wald_intervals(names, beta, beta_se, options.level),
        interval_table(sigma_names, sigma_estimates,
                       [None] * len(sigma_names), [None] * len(sigma_names)),
    ])

    logging.info(f"REML: genotype SD {np.sqrt(genotype_var):.3f}, residual SD {np.sqrt(residual_var):.3f}")
    return FittedResult(
        family=ModelFamily.REML,
        genotypes=observations.genotypes,
        blocks=observations.blocks,
        coefficient_names=names,
        fixed_effects=beta,
        fixed_effect_se=beta_se,
        genotype_effects=genotype_effects,
        genotype_scale=float(np.sqrt(genotype_var)),
        noise_scales=noise_scales,
        noise_df=np.inf,
        observations=observation_frame(observations, design, solution.fitted,
                                       solution.residual, solution.residual_var, noise_scales),
        intervals=intervals,
        converged=converged,
        convergence_messages=messages,
    )


def _trust_region_step(
    gradient: np.ndarray,
    information: np.ndarray,
    trust_region_lambda: float,
    max_step: float,
) -> Tuple[np.ndarray, float]:
    """Compute a damped Newton step by solving (AI + lambda*D) x = g, D the diagonal of AI.

    The step is shortened so that no log variance changes by more than max_step.
    """
    damping = np.maximum(np.diag(information), np.finfo(float).eps)
    step = np.linalg.solve(information + trust_region_lambda * np.diag(damping), gradient)
    largest = np.max(np.abs(step))
    if largest > max_step:
        step = step * (max_step / largest)
    predicted_increase = float(step @ gradient - 0.5 * step @ information @ step)
    return step, predicted_increase


def _newton_decrement(gradient: np.ndarray, information: np.ndarray) -> float:
    """Log-likelihood increase predicted for an undamped Newton step."""
    return float(0.5 * gradient @ np.linalg.pinv(information) @ gradient)


def _optimize(design: BlockedDesign, options: RemlOptions) -> Tuple[np.ndarray, bool, str]:
    """Maximise the restricted likelihood over the log variances.

    Trust region iterations on the average information: a step is accepted when
    the actual log-likelihood increase is at least trust_region_rho_lb times the
    predicted increase, otherwise the damping grows and the step is recomputed.
    The fit has converged once the increase predicted for a full Newton step
    falls below the tolerance.

    Returns:
        Tuple of the log variances, a convergence flag and a message
    """
    theta = _starting_values(design)
    log_likelihood, gradient, information = reml_average_information(
        design, np.exp(theta[0]), np.exp(theta[1:])
    )
    if information is None:
        return theta, False, "covariance at the starting values is not positive definite"

    trust_region_lambda = options.trust_region_size
    decrement = _newton_decrement(gradient, information)
    for iteration in range(options.max_iterations):
        if decrement < options.tolerance:
            return theta, True, f"converged after {iteration} iterations"

        for trust_iter in range(options.max_trust_iterations):
            step, predicted_increase = _trust_region_step(
                gradient, information, trust_region_lambda, options.max_step
            )
            proposal = np.clip(theta + step, *LOG_VARIANCE_BOUNDS)
            new_likelihood = reml_log_likelihood(design, np.exp(proposal[0]), np.exp(proposal[1:]))
            rho = (new_likelihood - log_likelihood) / predicted_increase
            if rho < options.trust_region_rho_lb:
                trust_region_lambda *= options.trust_region_scalar
                continue
            if rho > options.trust_region_rho_ub:
                trust_region_lambda /= options.trust_region_scalar
            break
        else:
            return theta, False, (
                f"no step increased the log-likelihood in {options.max_trust_iterations} "
                f"trust region iterations (predicted increase {decrement:.2e})"
            )

        theta = proposal
        log_likelihood, gradient, information = reml_average_information(
            design, np.exp(theta[0]), np.exp(theta[1:])
        )
        decrement = _newton_decrement(gradient, information)
        logging.debug(f"Iteration {iteration}: log-likelihood {log_likelihood:.6f}, "
                      f"predicted increase {decrement:.2e}, trust region lambda {trust_region_lambda:.2e}")

    if decrement < options.tolerance:
        return theta, True, f"converged after {options.max_iterations} iterations"
    return theta, False, (
        f"reached {options.max_iterations} iterations with predicted increase {decrement:.2e} "
        f"and gradient {np.round(gradient, 4).tolist()}"
    )


def fit_reml_heteroscedastic(observations: Observations, options: RemlOptions = None) -> FittedResult:
    """Fit a random genotype effect with one residual variance per block.

    The restricted likelihood is maximised over the log variances
    (log genotype_var, log block_var[0], ..., log block_var[B-1]) by trust region
    Newton steps on the average information.
    Standard errors of the log variances come from a finite-difference Hessian;
    fixed effects and BLUPs are the GLS/BLUP solution at the optimum.

    Args:
        observations: Observation table
        options: RemlOptions

    Returns:
        FittedResult

    Raises:
        UnderdeterminedModelError: if a block has fewer than two observations, a
            genotype has none, or no genotype is observed twice
    """
    options = options or RemlOptions()
    design = build_design(observations)
    check_estimable(design, observations.blocks, observations.genotypes,
                    genotype_effect=True, heteroscedastic=True)

    theta, converged, message = _optimize(design, options)
    messages = ()
    if not converged:
        messages = (f"REML optimization did not converge: {message}",)
        logging.warning(f"REML (heteroscedastic): {messages[0]}")
    if theta[0] <= LOG_VARIANCE_BOUNDS[0] + 1:
        logging.info("REML (heteroscedastic): genotype variance estimate is on the boundary")

    def _gradient(t: np.ndarray) -> np.ndarray:
        return reml_score(design, np.exp(t[0]), np.exp(t[1:]))[1]

    theta_se: Optional[np.ndarray] = None
    hess = _numerical_hessian(_gradient, theta, options.hessian_step)
    try:
        theta_cov = np.linalg.inv(-hess)
        if np.all(np.diag(theta_cov) > 0):
            theta_se = np.sqrt(np.diag(theta_cov))
    except np.linalg.LinAlgError:
        logging.info("REML (heteroscedastic): information matrix is singular, no variance intervals")

    genotype_var = float(np.exp(theta[0]))
    block_var = np.exp(theta[1:])
    solution = solve_mixed_model(design, genotype_var, block_var)
    beta_se = np.sqrt(np.diag(solution.beta_cov))
    noise_scales = np.sqrt(block_var)

    names = coefficient_names(observations.blocks)
    sigma_names = [f"sigma[{b}]" for b in observations.blocks] + ["sigma[genotype]"]
    intervals = pl.concat([
        wald_intervals(names, solution.beta, beta_se, options.level),
        log_scale_intervals(sigma_names, np.concatenate([theta[1:], theta[:1]]),
                            None if theta_se is None else np.concatenate([theta_se[1:], theta_se[:1]]),
                            options.level),
    ])

    logging.info(
        f"REML (heteroscedastic): genotype SD {np.sqrt(genotype_var):.3f}, "
        f"block SDs {np.round(noise_scales, 3).tolist()}, log-likelihood {solution.log_likelihood:.3f}"
    )
    return FittedResult(
        family=ModelFamily.REML_HETERO,
        genotypes=observations.genotypes,
        blocks=observations.blocks,
        coefficient_names=names,
        fixed_effects=solution.beta,
        fixed_effect_se=beta_se,
        genotype_effects=solution.genotype_effects,
        genotype_scale=float(np.sqrt(genotype_var)),
        noise_scales=noise_scales,
        noise_df=np.inf,
        observations=observation_frame(observations, design, solution.fitted,
                                       solution.residual, solution.residual_var, noise_scales),
        intervals=intervals,
        noise_scale_se=None if theta_se is None else noise_scales * theta_se[1:] / 2,
        converged=converged,
        convergence_messages=messages,
    )
