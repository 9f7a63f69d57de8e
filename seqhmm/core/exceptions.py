"""
Exception types raised by seqhmm.

Both derive from ValueError.
"""


class ConfigurationError(ValueError):
    """Model parameters are malformed (shapes, stochasticity, emission set)."""


class DataShapeError(ValueError):
    """Observation data does not match what the emission models expect."""
