"""
dasvf - Diffeomorphic Stationary Velocity Free-Form Deformations

Multi-level transformation engine for image registration: a global rigid or
affine transformation and local stationary velocity fields composed in
log-space and exponentiated by scaling and squaring or forward Euler
integration, with exact adjoint gradients for optimizers.

Key Features:
- World coordinate transformations (physical mm coordinates)
- Cubic B-spline velocity lattices with DOF status flags
- Automatic squaring step count from the maximum scaled velocity
- Parametric gradients by replaying the integration in reverse
- Temporal diffeomorphic FFD for 4D motion
- Thread-parallel voxel sweeps and per-domain displacement cache
"""

__version__ = "1.0.0"
__author__ = "DASVF Team"

from .config import load_config, default_config, EngineConfig
from .data import ImageDomain
from .errors import DasvfError, ConfigurationError, NumericalDivergenceError, GradientNotImplementedError
from .transformation import (
    TransformationKind,
    ControlLattice,
    RigidTransformation,
    AffineTransformation,
    LinearFFD,
    BSplineFFD,
    StationaryVelocityFFD,
    TemporalDiffeomorphicFFD,
    MultiLevelSVFFD,
    TopologyPreservationConstraint,
    save_transformation,
    load_transformation,
)
from .utils import setup_logging, setup_logging_from_config, get_logger

__all__ = [
    # Configuration
    "load_config",
    "default_config",
    "EngineConfig",
    # Data
    "ImageDomain",
    # Errors
    "DasvfError",
    "ConfigurationError",
    "NumericalDivergenceError",
    "GradientNotImplementedError",
    # Transformations
    "TransformationKind",
    "ControlLattice",
    "RigidTransformation",
    "AffineTransformation",
    "LinearFFD",
    "BSplineFFD",
    "StationaryVelocityFFD",
    "TemporalDiffeomorphicFFD",
    "MultiLevelSVFFD",
    "TopologyPreservationConstraint",
    "save_transformation",
    "load_transformation",
    # Logging
    "setup_logging",
    "setup_logging_from_config",
    "get_logger",
]
