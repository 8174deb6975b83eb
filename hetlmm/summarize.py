"""
Descriptive summaries of an observation table.
"""

from typing import Optional

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import polars as pl

from .io import Observations


def summarize_blocks(observations: Observations) -> pl.DataFrame:
    """Per-block count, missing count, mean and variance of the response.

    Returns:
        DataFrame with columns block, n, missing, mean, variance in declared block order
    """
    stats = (
        observations.table.group_by('block')
        .agg(
            pl.col('y').count().alias('n'),
            pl.col('y').null_count().alias('missing'),
            pl.col('y').mean().alias('mean'),
            pl.col('y').var().alias('variance'),
        )
    )
    order = pl.DataFrame({'block': list(observations.blocks)})
    return (
        order.join(stats, on='block', how='left')
        .with_columns(pl.col('n').fill_null(0), pl.col('missing').fill_null(0))
    )


def summarize_genotypes(observations: Observations) -> pl.DataFrame:
    """Per-genotype count and mean of the observed responses, in declared order."""
    stats = (
        observations.table.group_by('genotype')
        .agg(
            pl.col('y').count().alias('n'),
            pl.col('y').mean().alias('mean'),
        )
    )
    order = pl.DataFrame({'genotype': list(observations.genotypes)})
    return order.join(stats, on='genotype', how='left').with_columns(pl.col('n').fill_null(0))


def plot_exploratory(observations: Observations, out_prefix: Optional[str] = None) -> plt.Figure:
    """Boxplot of the response by block and genotype-by-block interaction lines.

    Args:
        observations: Observation table
        out_prefix: If given, the figure is saved to {out_prefix}_exploratory.png

    Returns:
        The matplotlib figure
    """
    frame = observations.observed()
    fig, (box_ax, line_ax) = plt.subplots(1, 2, figsize=(10, 4))

    box_ax.boxplot([
        frame.filter(pl.col('block') == b)['y'].to_numpy() for b in observations.blocks
    ])
    box_ax.set_xticks(range(1, observations.num_blocks + 1))
    box_ax.set_xticklabels(observations.blocks)
    box_ax.set_xlabel("Block")
    box_ax.set_ylabel("Response")

    observed_blocks = set(frame['block'].to_list())
    wide = (
        observations.table
        .pivot(on='block', index='genotype', values='y')
        .select(['genotype'] + [b for b in observations.blocks if b in observed_blocks])
    )
    blocks = wide.columns[1:]
    x = list(range(len(blocks)))
    for row in wide.select(blocks).iter_rows():
        line_ax.plot(x, np.array(row, dtype=float), color='gray', lw=0.5, alpha=0.4)
    line_ax.set_xticks(x)
    line_ax.set_xticklabels(blocks)
    line_ax.set_xlabel("Block")
    line_ax.set_title("Genotype x block interaction")

    fig.tight_layout()
    if out_prefix is not None:
        fig.savefig(f"{out_prefix}_exploratory.png", dpi=150)
    return fig
