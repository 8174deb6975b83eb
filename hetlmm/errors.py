"""Error types raised by the fitting workflow."""


class MalformedInputError(ValueError):
    """Observation table is missing columns or holds ids outside the declared categories."""


class UnderdeterminedModelError(ValueError):
    """Too few observations to estimate the requested model."""
