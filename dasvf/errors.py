"""
DASVF Error Types

Errors raised by the transformation engine:
- ConfigurationError: inconsistent lattice/domain attributes or settings
- NumericalDivergenceError: non-finite values produced during integration
- GradientNotImplementedError: a gradient path that has no implementation
"""


class DasvfError(Exception):
    """Base class of all DASVF errors"""


class ConfigurationError(DasvfError, ValueError):
    """Invalid or inconsistent configuration of a lattice, domain or transformation"""


class NumericalDivergenceError(DasvfError, ArithmeticError):
    """Non-finite value encountered while integrating a velocity field"""


class GradientNotImplementedError(DasvfError, NotImplementedError):
    """Requested gradient is not implemented for this transformation or term"""
