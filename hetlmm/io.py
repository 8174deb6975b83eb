"""
Observation tables and input/output for the mixed-model workflow.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import h5py
import numpy as np
import polars as pl
from filelock import FileLock

from .errors import MalformedInputError

REQUIRED_COLUMNS = ('genotype', 'block', 'y')
DRAWS_COMPRESSION_TYPE = 'lzf'


def _preview(ids: Sequence[str], limit: int = 5) -> str:
    shown = ', '.join(repr(i) for i in list(ids)[:limit])
    return shown + (', ...' if len(ids) > limit else '')


@dataclass(frozen=True)
class Observations:
    """Validated genotype x block observation table.

    Attributes:
        table: DataFrame with columns genotype (str), block (str) and y (float, null if missing)
        genotypes: Declared genotype ids, in declaration order
        blocks: Declared block ids, in declaration order. The first block is the
            reference level of the block fixed effect.
    """
    table: pl.DataFrame
    genotypes: Tuple[str, ...]
    blocks: Tuple[str, ...]

    @property
    def num_genotypes(self) -> int:
        return len(self.genotypes)

    @property
    def num_blocks(self) -> int:
        return len(self.blocks)

    @property
    def num_missing(self) -> int:
        return int(self.table['y'].null_count())

    def observed(self) -> pl.DataFrame:
        """Rows with a non-missing response."""
        return self.table.filter(pl.col('y').is_not_null())

    def codes(self, frame: Optional[pl.DataFrame] = None) -> Tuple[np.ndarray, np.ndarray]:
        """Integer genotype and block codes following declaration order."""
        frame = self.observed() if frame is None else frame
        genotype_codes = frame['genotype'].cast(pl.Enum(list(self.genotypes))).to_physical()
        block_codes = frame['block'].cast(pl.Enum(list(self.blocks))).to_physical()
        return (genotype_codes.to_numpy().astype(np.int64),
                block_codes.to_numpy().astype(np.int64))

    def with_table(self, table: pl.DataFrame) -> "Observations":
        """Validated copy with a replacement table and the same category sets."""
        return make_observations(table, genotypes=self.genotypes, blocks=self.blocks)


def _declared(values: Optional[Sequence], column: pl.Series, name: str) -> Tuple[str, ...]:
    if values is None:
        return tuple(column.unique(maintain_order=True).to_list())
    declared = tuple(str(v) for v in values)
    if len(set(declared)) != len(declared):
        raise MalformedInputError(f"Declared {name} ids contain duplicates")
    return declared


def make_observations(
    table: pl.DataFrame,
    genotypes: Optional[Sequence] = None,
    blocks: Optional[Sequence] = None,
) -> Observations:
    """Validate an observation table against declared genotype and block sets.

    Args:
        table: DataFrame with genotype, block and y columns
        genotypes: Declared genotype ids. Defaults to the ids in order of appearance.
        blocks: Declared block ids. Defaults to the ids in order of appearance.

    Returns:
        Observations instance

    Raises:
        MalformedInputError: if a required column is missing, the response is not numeric,
            a (genotype, block) pair occurs twice, or an id is outside the declared set
    """
    missing_cols = [c for c in REQUIRED_COLUMNS if c not in table.columns]
    if missing_cols:
        raise MalformedInputError(
            f"Missing required columns: {missing_cols}; expected {list(REQUIRED_COLUMNS)}"
        )

    try:
        table = table.select(
            pl.col('genotype').cast(pl.Utf8),
            pl.col('block').cast(pl.Utf8),
            pl.col('y').cast(pl.Float64, strict=True).fill_nan(None),
        )
    except pl.exceptions.PolarsError as e:
        raise MalformedInputError(f"Column 'y' must be numeric: {e}") from e

    for col in ('genotype', 'block'):
        if table[col].null_count() > 0:
            raise MalformedInputError(f"Column '{col}' contains {table[col].null_count()} null ids")

    declared_genotypes = _declared(genotypes, table['genotype'], 'genotype')
    declared_blocks = _declared(blocks, table['block'], 'block')

    for col, declared in (('genotype', declared_genotypes), ('block', declared_blocks)):
        unknown = (table.filter(~pl.col(col).is_in(list(declared)))[col]
                   .unique(maintain_order=True).to_list())
        if unknown:
            raise MalformedInputError(
                f"{len(unknown)} {col} id(s) not in the declared set of "
                f"{len(declared)}: {_preview(unknown)}"
            )

    duplicated = table.filter(pl.struct('genotype', 'block').is_duplicated())
    if len(duplicated) > 0:
        first = duplicated.row(0, named=True)
        raise MalformedInputError(
            f"{len(duplicated)} rows share a (genotype, block) pair, e.g. "
            f"({first['genotype']!r}, {first['block']!r}); expected at most one row per pair"
        )

    return Observations(table=table, genotypes=declared_genotypes, blocks=declared_blocks)


def read_observations(
    file: Union[str, Path],
    genotypes: Optional[Sequence] = None,
    blocks: Optional[Sequence] = None,
) -> Observations:
    """Read an observation table from delimited text.

    Args:
        file: Path to a .tsv (tab separated) or other (comma separated) file
        genotypes: Declared genotype ids; defaults to the ids in the file
        blocks: Declared block ids; defaults to the ids in the file

    Returns:
        Validated Observations
    """
    separator = '\t' if str(file).endswith('.tsv') else ','
    table = pl.read_csv(
        file,
        separator=separator,
        schema_overrides={'genotype': pl.Utf8, 'block': pl.Utf8},
        null_values=['NA', ''],
    )
    return make_observations(table, genotypes=genotypes, blocks=blocks)


def write_observations(observations: Observations, file: Union[str, Path]) -> None:
    """Write an observation table as delimited text; missing responses are written as NA."""
    separator = '\t' if str(file).endswith('.tsv') else ','
    observations.table.write_csv(file, separator=separator, null_value='NA')


def write_fit_table(table: pl.DataFrame, file: Union[str, Path]) -> None:
    """Write a flat coefficient table (coefficient, estimate, lower, upper) as TSV."""
    table.write_csv(file, separator='\t', null_value='NA')


def write_posterior_draws(
    hdf5_filename: str,
    name: str,
    draws: Dict[str, np.ndarray],
    overwrite: bool = False,
) -> None:
    """Write posterior draws to the 'fits/<name>' group of an HDF5 file.

    Args:
        hdf5_filename: HDF5 file to create or append to
        name: Name of the fit's subgroup
        draws: Mapping from parameter name to an array of shape (chains, draws, ...)
        overwrite: Replace an existing group of the same name
    """
    lock = FileLock(hdf5_filename + ".lock")
    with lock:
        with h5py.File(hdf5_filename, 'a') as f:
            fits_group = f.require_group('fits')
            if name in fits_group:
                if not overwrite:
                    raise ValueError(f"The group 'fits/{name}' already exists.")
                del fits_group[name]
            group = fits_group.create_group(name)
            for parameter, values in draws.items():
                group.create_dataset(parameter,
                                     data=np.asarray(values),
                                     compression=DRAWS_COMPRESSION_TYPE,
                                     )


def read_posterior_draws(hdf5_filename: str, name: str) -> Dict[str, np.ndarray]:
    """Read the draws written by write_posterior_draws."""
    lock = FileLock(hdf5_filename + ".lock")
    with lock:
        with h5py.File(hdf5_filename, 'r') as f:
            if f'fits/{name}' not in f:
                raise KeyError(f"No group 'fits/{name}' in {hdf5_filename}")
            group = f['fits'][name]
            return {key: group[key][()] for key in group.keys()}


def list_posterior_draws(hdf5_filename: str) -> List[str]:
    """Names of the fits stored in an HDF5 draws file."""
    lock = FileLock(hdf5_filename + ".lock")
    with lock:
        with h5py.File(hdf5_filename, 'r') as f:
            return list(f['fits'].keys()) if 'fits' in f else []
