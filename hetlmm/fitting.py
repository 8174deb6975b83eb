"""
Dispatch from model family to fitter.
"""

import logging
from typing import Dict, Iterable, Optional, Union

from .bayes import SamplerOptions, fit_bayes
from .gls import GlsOptions, fit_gls
from .io import Observations
from .reml import RemlOptions, fit_reml, fit_reml_heteroscedastic
from .results import FittedResult, ModelFamily

FitOptions = Union[GlsOptions, RemlOptions, SamplerOptions]


def default_options(family: ModelFamily) -> FitOptions:
    if family is ModelFamily.GLS_HETERO:
        return GlsOptions()
    if family in (ModelFamily.REML, ModelFamily.REML_HETERO):
        return RemlOptions()
    if family is ModelFamily.BAYES:
        return SamplerOptions()
    raise ValueError(f"Unknown model family: {family}")


def fit_model(
    family: Union[ModelFamily, str],
    observations: Observations,
    options: Optional[FitOptions] = None,
) -> FittedResult:
    """Fit one model family.

    Args:
        family: ModelFamily or its string value
        observations: Observation table
        options: Options of the family's fitter, defaults if None

    Returns:
        FittedResult

    Raises:
        ValueError: if the options do not belong to the family's fitter
    """
    family = ModelFamily(family)
    options = options if options is not None else default_options(family)
    expected = type(default_options(family))
    if not isinstance(options, expected):
        raise ValueError(f"{family.value} expects {expected.__name__}, got {type(options).__name__}")

    logging.info(f"Fitting {family.value} to {len(observations.table)} rows")
    if family is ModelFamily.GLS_HETERO:
        return fit_gls(observations, options)
    elif family is ModelFamily.REML:
        return fit_reml(observations, options)
    elif family is ModelFamily.REML_HETERO:
        return fit_reml_heteroscedastic(observations, options)
    else:
        return fit_bayes(observations, options)


def fit_all(
    observations: Observations,
    families: Iterable[Union[ModelFamily, str]] = tuple(ModelFamily),
    options: Optional[Dict[ModelFamily, FitOptions]] = None,
) -> Dict[ModelFamily, FittedResult]:
    """Fit several model families to the same observations.

    Args:
        observations: Observation table
        families: Families to fit, all by default
        options: Optional options per family

    Returns:
        Dictionary of fits keyed by family, in the order requested
    """
    options = options or {}
    fits = {}
    for family in families:
        family = ModelFamily(family)
        fits[family] = fit_model(family, observations, options.get(family))
    return fits
