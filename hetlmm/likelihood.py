"""Functions for computing likelihoods in the genotype x block mixed model.

The model is:
    y = X*beta + Z*u + e
    u ~ N(0, genotype_var * I)
    e ~ N(0, R), R = diag(block_var[block of each observation])

Observations of different genotypes are independent, so V = cov(y) is block
diagonal with one small block per genotype:
    V_g = genotype_var * 11' + diag(block_var[blocks observed for g])
Genotypes observed in the same set of blocks share V_g, so everything below
is computed once per observation pattern.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .errors import UnderdeterminedModelError
from .io import Observations


@dataclass
class _Pattern:
    """Genotypes observed in the same ordered set of blocks."""
    blocks: np.ndarray      # (k,) block codes
    rows: np.ndarray        # (m, k) observation indices
    genotypes: np.ndarray   # (m,) genotype codes


@dataclass
class BlockedDesign:
    """Observed rows of an observation table arranged for blocked solves.

    Attributes:
        y: Responses, one per observed row
        X: Fixed-effect design, intercept plus one indicator per non-reference block
        genotype_codes: Genotype code of each observed row
        block_codes: Block code of each observed row
        num_genotypes: Number of declared genotypes
        num_blocks: Number of declared blocks
        patterns: Observation patterns
    """
    y: np.ndarray
    X: np.ndarray
    genotype_codes: np.ndarray
    block_codes: np.ndarray
    num_genotypes: int
    num_blocks: int
    patterns: List[_Pattern]

    @property
    def num_observations(self) -> int:
        return len(self.y)

    @property
    def num_fixed(self) -> int:
        return self.X.shape[1]


@dataclass
class MixedModelSolution:
    """GLS/BLUP solution at fixed variance components."""
    beta: np.ndarray
    beta_cov: np.ndarray
    log_likelihood: float
    genotype_effects: np.ndarray
    fitted: np.ndarray
    residual: np.ndarray
    residual_var: np.ndarray


def fixed_effect_design(block_codes: np.ndarray, num_blocks: int) -> np.ndarray:
    """Intercept column plus treatment-coded indicators for blocks 1, ..., B-1."""
    X = np.zeros((len(block_codes), num_blocks))
    X[:, 0] = 1.0
    for b in range(1, num_blocks):
        X[:, b] = block_codes == b
    return X


def build_design(observations: Observations) -> BlockedDesign:
    """Arrange the observed rows of a table by genotype and observation pattern.

    Args:
        observations: Validated observation table

    Returns:
        BlockedDesign over the non-missing rows
    """
    frame = observations.observed()
    genotype_codes, block_codes = observations.codes(frame)
    y = frame['y'].to_numpy().astype(float)
    X = fixed_effect_design(block_codes, observations.num_blocks)

    order = np.lexsort((block_codes, genotype_codes))
    starts = np.flatnonzero(np.r_[True, np.diff(genotype_codes[order]) != 0])
    chunks = np.split(order, starts[1:]) if len(order) > 0 else []

    grouped = {}
    for chunk in chunks:
        key = tuple(block_codes[chunk])
        grouped.setdefault(key, []).append(chunk)

    patterns = [
        _Pattern(
            blocks=np.array(key, dtype=np.int64),
            rows=np.vstack(chunk_list),
            genotypes=genotype_codes[np.vstack(chunk_list)[:, 0]],
        )
        for key, chunk_list in grouped.items()
    ]

    return BlockedDesign(
        y=y,
        X=X,
        genotype_codes=genotype_codes,
        block_codes=block_codes,
        num_genotypes=observations.num_genotypes,
        num_blocks=observations.num_blocks,
        patterns=patterns,
    )


def check_estimable(
    design: BlockedDesign,
    blocks: Sequence[str],
    genotypes: Sequence[str],
    genotype_effect: bool,
    heteroscedastic: bool,
) -> None:
    """Raise if the observed rows cannot identify the requested model.

    Args:
        design: BlockedDesign over the observed rows
        blocks: Declared block ids
        genotypes: Declared genotype ids
        genotype_effect: Model has a random genotype effect
        heteroscedastic: Model has one residual variance per block

    Raises:
        UnderdeterminedModelError: with the offending ids and the required counts
    """
    block_counts = np.bincount(design.block_codes, minlength=design.num_blocks)
    min_per_block = 2 if heteroscedastic else 1
    short_blocks = [blocks[b] for b in np.flatnonzero(block_counts < min_per_block)]
    if short_blocks:
        raise UnderdeterminedModelError(
            f"Block(s) {short_blocks} have fewer than {min_per_block} observation(s); "
            f"observed counts {dict(zip(blocks, block_counts.tolist()))}"
        )

    if design.num_observations <= design.num_fixed:
        raise UnderdeterminedModelError(
            f"{design.num_observations} observations cannot estimate "
            f"{design.num_fixed} fixed effects and a residual variance"
        )

    if genotype_effect:
        genotype_counts = np.bincount(design.genotype_codes, minlength=design.num_genotypes)
        empty = [genotypes[g] for g in np.flatnonzero(genotype_counts == 0)]
        if empty:
            shown = ', '.join(empty[:5]) + (', ...' if len(empty) > 5 else '')
            raise UnderdeterminedModelError(
                f"{len(empty)} genotype(s) have no observations ({shown}); "
                f"expected at least 1 per genotype"
            )
        if genotype_counts.max() < 2:
            raise UnderdeterminedModelError(
                "Every genotype is observed once, so the genotype variance cannot be "
                "separated from the residual variance; expected at least one genotype "
                "observed in 2 or more blocks"
            )


def _pattern_covariance(pattern: _Pattern, genotype_var: float, block_var: np.ndarray) -> np.ndarray:
    k = len(pattern.blocks)
    return genotype_var * np.ones((k, k)) + np.diag(block_var[pattern.blocks])


@dataclass
class _PatternTerms:
    Vinv: np.ndarray        # (k, k)
    X: np.ndarray           # (m, k, p)
    y: np.ndarray           # (m, k)
    VinvX: np.ndarray       # (m, k, p)


def _accumulate(design: BlockedDesign, genotype_var: float, block_var: np.ndarray):
    """Sum X' inv(V) X, X' inv(V) y, y' inv(V) y and log|V| over patterns.

    Returns None if some V_g is not positive definite.
    """
    p = design.num_fixed
    XtVX = np.zeros((p, p))
    XtVy = np.zeros(p)
    yVy = 0.0
    logdet_V = 0.0
    terms = []
    for pattern in design.patterns:
        V = _pattern_covariance(pattern, genotype_var, block_var)
        sign, logdet = np.linalg.slogdet(V)
        if sign <= 0:
            return None
        Vinv = np.linalg.inv(V)
        logdet_V += pattern.rows.shape[0] * logdet
        Xp = design.X[pattern.rows]
        yp = design.y[pattern.rows]
        VinvX = np.einsum('kl,mlj->mkj', Vinv, Xp)
        XtVX += np.einsum('mki,mkj->ij', Xp, VinvX)
        XtVy += np.einsum('mkj,mk->j', VinvX, yp)
        yVy += np.einsum('mk,kl,ml->', yp, Vinv, yp)
        terms.append(_PatternTerms(Vinv=Vinv, X=Xp, y=yp, VinvX=VinvX))
    return XtVX, XtVy, yVy, logdet_V, terms


def _restricted_log_likelihood(n: int, p: int, logdet_V: float, logdet_XtVX: float, quad: float) -> float:
    return float(-0.5 * ((n - p) * np.log(2 * np.pi) + logdet_V + logdet_XtVX + quad))


def _p_diagonal(terms: _PatternTerms, beta_cov: np.ndarray) -> np.ndarray:
    """Diagonal of P = inv(V) - inv(V) X inv(X' inv(V) X) X' inv(V) for the rows of a pattern."""
    return (np.diag(terms.Vinv)[None, :]
            - np.einsum('mkj,ji,mki->mk', terms.VinvX, beta_cov, terms.VinvX))


def solve_mixed_model(
    design: BlockedDesign,
    genotype_var: float,
    block_var: np.ndarray,
    beta: Optional[np.ndarray] = None,
    genotype_effects: Optional[np.ndarray] = None,
) -> MixedModelSolution:
    """Compute GLS fixed effects, BLUPs and residual variances at fixed variance components.

    Args:
        design: BlockedDesign
        genotype_var: Genotype variance; zero gives a model without genotype effects
        block_var: Residual variance of each block
        beta: Optional fixed effects to use instead of the GLS estimate
        genotype_effects: Optional genotype effects to use instead of the BLUPs

    Returns:
        MixedModelSolution. residual is the conditional residual y - X*beta - Z*u,
        residual_var its variance diag(R P R) under the model, where
        P = inv(V) - inv(V) X inv(X' inv(V) X) X' inv(V).
    """
    block_var = np.asarray(block_var, dtype=float)
    accumulated = _accumulate(design, genotype_var, block_var)
    if accumulated is None:
        raise ValueError("Variance components do not give a positive definite covariance")
    XtVX, XtVy, yVy, logdet_V, terms = accumulated

    beta_cov = np.linalg.inv(XtVX)
    gls_beta = beta_cov @ XtVy
    beta = gls_beta if beta is None else np.asarray(beta, dtype=float)

    n = design.num_observations
    blup = np.zeros(design.num_genotypes)
    fitted = np.zeros(n)
    residual = np.zeros(n)
    residual_var = np.zeros(n)
    for pattern, t in zip(design.patterns, terms):
        marginal = t.y - np.einsum('mkj,j->mk', t.X, beta)
        u = genotype_var * (marginal @ t.Vinv).sum(axis=1)
        if genotype_effects is not None:
            u = genotype_effects[pattern.genotypes]
        blup[pattern.genotypes] = u

        rows = pattern.rows
        fitted[rows] = t.y - marginal + u[:, None]
        residual[rows] = marginal - u[:, None]
        residual_var[rows] = block_var[pattern.blocks][None, :] ** 2 * _p_diagonal(t, beta_cov)

    # r' inv(V) r = y' inv(V) y - y' inv(V) X beta_hat at the GLS estimate
    quad = yVy - XtVy @ gls_beta
    log_likelihood = _restricted_log_likelihood(
        n, design.num_fixed, logdet_V, np.linalg.slogdet(XtVX)[1], quad
    )

    return MixedModelSolution(
        beta=beta,
        beta_cov=beta_cov,
        log_likelihood=log_likelihood,
        genotype_effects=blup,
        fitted=fitted,
        residual=residual,
        residual_var=np.maximum(residual_var, 0.0),
    )


def reml_log_likelihood(design: BlockedDesign, genotype_var: float, block_var: np.ndarray) -> float:
    """Restricted log-likelihood of the variance components.

    Following the usual convention:
        l = -0.5 * ((n-p) * log(2*pi) + log|V| + log|X' inv(V) X| + r' inv(V) r)
    where r is the GLS residual.

    Args:
        design: BlockedDesign
        genotype_var: Genotype variance
        block_var: Residual variance of each block

    Returns:
        REML log-likelihood value, -inf if the covariance is not positive definite
    """
    accumulated = _accumulate(design, genotype_var, np.asarray(block_var, dtype=float))
    if accumulated is None:
        return -np.inf
    XtVX, XtVy, yVy, logdet_V, _ = accumulated
    sign, logdet_XtVX = np.linalg.slogdet(XtVX)
    if sign <= 0:
        return -np.inf
    quad = yVy - XtVy @ np.linalg.solve(XtVX, XtVy)
    return _restricted_log_likelihood(design.num_observations, design.num_fixed,
                                      logdet_V, logdet_XtVX, quad)


def _reml_derivatives(
    design: BlockedDesign,
    genotype_var: float,
    block_var: np.ndarray,
    information: bool,
) -> Tuple[float, np.ndarray, Optional[np.ndarray]]:
    """Log-likelihood, gradient and optionally the average information, all in log variances."""
    block_var = np.asarray(block_var, dtype=float)
    d = design.num_blocks + 1
    gradient = np.full(d, np.nan)
    accumulated = _accumulate(design, genotype_var, block_var)
    if accumulated is None:
        return -np.inf, gradient, None
    XtVX, XtVy, yVy, logdet_V, terms = accumulated
    sign, logdet_XtVX = np.linalg.slogdet(XtVX)
    if sign <= 0:
        return -np.inf, gradient, None

    beta_cov = np.linalg.inv(XtVX)
    beta = beta_cov @ XtVy
    scale = np.concatenate([[genotype_var], block_var])

    genotype_score = 0.0
    block_score = np.zeros(design.num_blocks)
    QVQ = np.zeros((d, d))
    XVQ = np.zeros((design.num_fixed, d))
    for pattern, t in zip(design.patterns, terms):
        Py = (t.y - np.einsum('mkj,j->mk', t.X, beta)) @ t.Vinv
        # 1' P_gg 1 for each genotype of the pattern
        ones_VinvX = t.VinvX.sum(axis=1)
        trace_genotype = (len(pattern.genotypes) * t.Vinv.sum()
                          - np.einsum('mi,ij,mj->', ones_VinvX, beta_cov, ones_VinvX))
        genotype_score += 0.5 * (np.sum(Py.sum(axis=1) ** 2) - trace_genotype)
        # blocks are distinct within a pattern
        block_score[pattern.blocks] += 0.5 * (Py ** 2 - _p_diagonal(t, beta_cov)).sum(axis=0)

        if information:
            # columns of Q are dV/dlog(s) P y
            m, k = Py.shape
            Q = np.zeros((m, k, d))
            Q[:, :, 0] = genotype_var * Py.sum(axis=1, keepdims=True)
            Q[:, np.arange(k), 1 + pattern.blocks] = block_var[pattern.blocks] * Py
            QVQ += np.einsum('mkd,kl,mle->de', Q, t.Vinv, Q)
            XVQ += np.einsum('mkj,mkd->jd', t.VinvX, Q)

    quad = yVy - XtVy @ beta
    log_likelihood = _restricted_log_likelihood(design.num_observations, design.num_fixed,
                                                logdet_V, logdet_XtVX, quad)
    gradient = scale * np.concatenate([[genotype_score], block_score])
    if not information:
        return log_likelihood, gradient, None
    return log_likelihood, gradient, 0.5 * (QVQ - XVQ.T @ beta_cov @ XVQ)


def reml_score(
    design: BlockedDesign,
    genotype_var: float,
    block_var: np.ndarray,
) -> Tuple[float, np.ndarray]:
    """Restricted log-likelihood and its gradient with respect to the log variances.

    For a variance component s with dV/ds = V_s,
        dl/ds = 0.5 * (y' P V_s P y - tr(P V_s))
    with V_s = ZZ' for the genotype variance and the indicator of block b's rows
    for block_var[b]. The chain rule gives dl/dlog(s) = s * dl/ds.

    Args:
        design: BlockedDesign
        genotype_var: Genotype variance
        block_var: Residual variance of each block

    Returns:
        Tuple of the log-likelihood and the gradient with respect to
        (log genotype_var, log block_var[0], ..., log block_var[B-1]); the
        log-likelihood is -inf and the gradient NaN if the covariance is not
        positive definite
    """
    log_likelihood, gradient, _ = _reml_derivatives(design, genotype_var, block_var, information=False)
    return log_likelihood, gradient


def reml_average_information(
    design: BlockedDesign,
    genotype_var: float,
    block_var: np.ndarray,
) -> Tuple[float, np.ndarray, Optional[np.ndarray]]:
    """Restricted log-likelihood, gradient and average information in the log variances.

    The average information is
        AI[i, j] = 0.5 * y' P V_i P V_j P y,
    with V_i = dV/dlog(s_i), the mean of the observed and expected information.
    It is positive semi-definite and approximates the negative Hessian of the
    restricted log-likelihood.

    Returns:
        Tuple of the log-likelihood, the gradient and the (B+1, B+1) average
        information; the information is None if the covariance is not positive
        definite
    """
    return _reml_derivatives(design, genotype_var, block_var, information=True)
