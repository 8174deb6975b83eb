"""
Simulate balanced genotype x block trials with heteroscedastic noise.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

import numpy as np
import polars as pl

from .io import Observations, make_observations


@dataclass
class SimulationSpecification:
    """
    Holds parameters of the generative model.

    The model is:
        y[g, b] = intercept + offset[b] + u[g] + e[g, b]
        offset[0] = 0, offset[b] ~ N(0, block_offset_scale^2) for b > 0
        u[g] ~ N(0, genotype_scale^2)
        e[g, b] ~ noise_scales[b] * t(df), or N(0, noise_scales[b]^2) if df is infinite

    Attributes:
        num_genotypes: Number of genotypes G
        num_blocks: Number of blocks B
        intercept: Mean of the reference block
        block_offset_scale: Standard deviation of the B-1 free block offsets
        genotype_scale: Standard deviation of the genotype effects
        noise_scales: Per-block noise scale. If None, drawn without repetition
            from noise_scale_choices
        noise_scale_choices: Candidate noise scales, defaults to 1, ..., 8
        df: Degrees of freedom of the noise; np.inf gives Gaussian noise
        missing_fraction: Fraction of observations set to missing after simulation
        random_seed: Seed for the random number generator
    """
    num_genotypes: int = 250
    num_blocks: int = 3
    intercept: float = 50.0
    block_offset_scale: float = 3.0
    genotype_scale: float = 4.0
    noise_scales: Optional[Union[np.ndarray, List[float]]] = None
    noise_scale_choices: Optional[Union[np.ndarray, List[float]]] = None
    df: float = np.inf
    missing_fraction: float = 0.0
    random_seed: Optional[int] = None

    def __post_init__(self):
        """Initialize default values and validate inputs."""
        if self.noise_scale_choices is None:
            self.noise_scale_choices = np.arange(1, 9, dtype=float)
        self.noise_scale_choices = np.asarray(self.noise_scale_choices, dtype=float)
        if self.noise_scales is not None:
            self.noise_scales = np.asarray(self.noise_scales, dtype=float)

        if self.num_genotypes < 1 or self.num_blocks < 1:
            raise ValueError("num_genotypes and num_blocks must be positive")
        if self.noise_scales is not None:
            if len(self.noise_scales) != self.num_blocks:
                raise ValueError(
                    f"Expected {self.num_blocks} noise scales, got {len(self.noise_scales)}"
                )
            if np.any(self.noise_scales <= 0):
                raise ValueError("Noise scales must be positive")
        elif len(self.noise_scale_choices) < self.num_blocks:
            raise ValueError(
                f"Cannot draw {self.num_blocks} distinct noise scales from "
                f"{len(self.noise_scale_choices)} choices"
            )
        if not self.df > 0:
            raise ValueError(f"Degrees of freedom must be positive, got {self.df}")
        if not 0 <= self.missing_fraction < 1:
            raise ValueError(f"missing_fraction must be in [0, 1), got {self.missing_fraction}")
        if self.genotype_scale < 0 or self.block_offset_scale < 0:
            raise ValueError("Effect scales must be non-negative")


@dataclass(frozen=True)
class SimulationTruth:
    """Generative parameters of one simulated trial."""
    intercept: float
    block_offsets: np.ndarray
    genotype_effects: np.ndarray
    noise_scales: np.ndarray
    genotype_scale: float
    df: float
    genotypes: Tuple[str, ...]
    blocks: Tuple[str, ...]

    @property
    def fixed_effects(self) -> np.ndarray:
        """Intercept followed by the B-1 block offsets."""
        return np.concatenate([[self.intercept], self.block_offsets])

    def genotype_table(self) -> pl.DataFrame:
        return pl.DataFrame({
            'genotype': list(self.genotypes),
            'effect': self.genotype_effects,
        })


@dataclass(frozen=True)
class SimulatedData:
    truth: SimulationTruth
    observations: Observations


def _ids(prefix: str, n: int) -> List[str]:
    width = len(str(n))
    return [f"{prefix}{i:0{width}d}" for i in range(1, n + 1)]


def _draw_noise(rng: np.random.Generator, scale: float, df: float, size: int) -> np.ndarray:
    if np.isinf(df):
        return rng.normal(0.0, scale, size)
    return scale * rng.standard_t(df, size)


def inject_missing(
    observations: Observations,
    fraction: float,
    rng: Optional[Union[np.random.Generator, int]] = None,
) -> Observations:
    """Set a random subset of responses to missing, keeping every row.

    Args:
        observations: Observation table
        fraction: Fraction of all rows to null out, chosen among rows that are observed
        rng: Generator or seed

    Returns:
        New Observations with the same shape and category sets
    """
    if not 0 <= fraction < 1:
        raise ValueError(f"fraction must be in [0, 1), got {fraction}")
    rng = rng if isinstance(rng, np.random.Generator) else np.random.default_rng(rng)

    y = observations.table['y'].to_numpy().astype(float)
    candidates = np.flatnonzero(~np.isnan(y))
    num_missing = min(int(round(fraction * len(y))), len(candidates))
    y[rng.choice(candidates, size=num_missing, replace=False)] = np.nan

    return observations.with_table(
        observations.table.with_columns(pl.Series('y', y))
    )


class Simulate(SimulationSpecification):
    """Simulates a balanced genotype x block trial."""

    def simulate(self) -> SimulatedData:
        """Draw generative parameters and the observation table.

        Draws are taken in a fixed order from a single generator seeded with
        random_seed: block offsets, genotype effects, noise scales (if not given),
        noise for each block, then the missing-data mask.

        Returns:
            SimulatedData holding the truth and the observations. Rows vary
            genotype fastest within each block.
        """
        rng = np.random.default_rng(self.random_seed)
        genotypes = _ids('G', self.num_genotypes)
        blocks = _ids('B', self.num_blocks)

        block_offsets = rng.normal(0.0, self.block_offset_scale, self.num_blocks - 1)
        genotype_effects = rng.normal(0.0, self.genotype_scale, self.num_genotypes)
        if self.noise_scales is None:
            noise_scales = rng.choice(self.noise_scale_choices, size=self.num_blocks, replace=False)
        else:
            noise_scales = self.noise_scales.copy()

        offsets = np.concatenate([[0.0], block_offsets])
        y = np.concatenate([
            self.intercept + offsets[b] + genotype_effects
            + _draw_noise(rng, noise_scales[b], self.df, self.num_genotypes)
            for b in range(self.num_blocks)
        ])

        table = pl.DataFrame({
            'genotype': genotypes * self.num_blocks,
            'block': np.repeat(blocks, self.num_genotypes).tolist(),
            'y': y,
        })
        observations = make_observations(table, genotypes=genotypes, blocks=blocks)
        if self.missing_fraction > 0:
            observations = inject_missing(observations, self.missing_fraction, rng)

        truth = SimulationTruth(
            intercept=float(self.intercept),
            block_offsets=block_offsets,
            genotype_effects=genotype_effects,
            noise_scales=np.asarray(noise_scales, dtype=float),
            genotype_scale=float(self.genotype_scale),
            df=float(self.df),
            genotypes=tuple(genotypes),
            blocks=tuple(blocks),
        )

        logging.info(
            f"Simulated {len(table)} observations ({observations.num_missing} missing) "
            f"for {self.num_genotypes} genotypes in {self.num_blocks} blocks, "
            f"noise scales {truth.noise_scales.tolist()}, df={self.df}"
        )
        return SimulatedData(truth=truth, observations=observations)


def run_simulate(
    num_genotypes: int = 250,
    num_blocks: int = 3,
    intercept: float = 50.0,
    block_offset_scale: float = 3.0,
    genotype_scale: float = 4.0,
    noise_scales: Optional[Union[np.ndarray, List[float]]] = None,
    noise_scale_choices: Optional[Union[np.ndarray, List[float]]] = None,
    df: float = np.inf,
    missing_fraction: float = 0.0,
    random_seed: Optional[int] = None,
) -> SimulatedData:
    """Run a trial simulation with specified parameters.

    Args:
        num_genotypes: Number of genotypes
        num_blocks: Number of blocks
        intercept: Mean of the reference block
        block_offset_scale: Standard deviation of the block offsets
        genotype_scale: Standard deviation of the genotype effects
        noise_scales: Per-block noise scales, drawn from noise_scale_choices if None
        noise_scale_choices: Candidate noise scales, defaults to 1, ..., 8
        df: Noise degrees of freedom, np.inf for Gaussian noise
        missing_fraction: Fraction of observations set to missing
        random_seed: Random seed

    Returns:
        SimulatedData with truth and observations
    """
    sim = Simulate(
        num_genotypes=num_genotypes,
        num_blocks=num_blocks,
        intercept=intercept,
        block_offset_scale=block_offset_scale,
        genotype_scale=genotype_scale,
        noise_scales=noise_scales,
        noise_scale_choices=noise_scale_choices,
        df=df,
        missing_fraction=missing_fraction,
        random_seed=random_seed,
    )
    return sim.simulate()


def write_truth(truth: SimulationTruth, out_prefix: str) -> None:
    """Write generative parameters to {out_prefix}_truth.tsv and {out_prefix}_genotypes.tsv."""
    names = (['intercept'] + [f"block[{b}]" for b in truth.blocks[1:]]
             + [f"sigma[{b}]" for b in truth.blocks] + ['sigma[genotype]', 'df'])
    values = [float(v) for v in (list(truth.fixed_effects) + list(truth.noise_scales)
                                 + [truth.genotype_scale, truth.df])]
    pl.DataFrame({'parameter': names, 'value': values}).write_csv(
        f"{out_prefix}_truth.tsv", separator='\t'
    )
    truth.genotype_table().write_csv(f"{out_prefix}_genotypes.tsv", separator='\t')


def read_truth(out_prefix: str) -> SimulationTruth:
    """Read generative parameters written by write_truth."""
    params = pl.read_csv(f"{out_prefix}_truth.tsv", separator='\t',
                         schema_overrides={'value': pl.Float64})
    values = dict(zip(params['parameter'].to_list(), params['value'].to_list()))
    blocks = tuple(
        name[len('sigma['):-1] for name in params['parameter']
        if name.startswith('sigma[') and name != 'sigma[genotype]'
    )
    genotype_table = pl.read_csv(f"{out_prefix}_genotypes.tsv", separator='\t',
                                 schema_overrides={'genotype': pl.Utf8})
    return SimulationTruth(
        intercept=float(values['intercept']),
        block_offsets=np.array([values[f"block[{b}]"] for b in blocks[1:]], dtype=float),
        genotype_effects=genotype_table['effect'].to_numpy().astype(float),
        noise_scales=np.array([values[f"sigma[{b}]"] for b in blocks], dtype=float),
        genotype_scale=float(values['sigma[genotype]']),
        df=float(values['df']),
        genotypes=tuple(genotype_table['genotype'].to_list()),
        blocks=blocks,
    )
