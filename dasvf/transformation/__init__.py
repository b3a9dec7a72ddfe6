"""DASVF Transformation Module"""

from .base import (
    Transformation,
    TransformationKind,
    LatticeTransformation,
    TRANSFORMATION_TYPES,
    transformation_class,
)
from .lattice import ControlLattice, DOFStatus
from .interpolation import VelocityEvaluator, LatticeFunction, AffineVelocity, VelocitySum
from .integration import (
    ScalingAndSquaring,
    SquaringTrajectory,
    IntegrationTrajectory,
    squaring_steps,
    integrate_points,
    invert_points,
)
from .adjoint import AdjointGradientEngine, accumulate_gradient
from .cache import DisplacementCache
from .linear import HomogeneousTransformation, RigidTransformation, AffineTransformation
from .ffd import FreeFormTransformation, LinearFFD, BSplineFFD
from .svffd import StationaryVelocityFFD
from .td import TemporalDiffeomorphicFFD
from .multilevel import MultiLevelSVFFD
from .constraints import TopologyPreservationConstraint
from .io import save_transformation, load_transformation

__all__ = [
    # Base
    "Transformation",
    "TransformationKind",
    "LatticeTransformation",
    "TRANSFORMATION_TYPES",
    "transformation_class",
    # Lattice and velocity fields
    "ControlLattice",
    "DOFStatus",
    "VelocityEvaluator",
    "LatticeFunction",
    "AffineVelocity",
    "VelocitySum",
    # Integration
    "ScalingAndSquaring",
    "SquaringTrajectory",
    "IntegrationTrajectory",
    "squaring_steps",
    "integrate_points",
    "invert_points",
    "AdjointGradientEngine",
    "accumulate_gradient",
    "DisplacementCache",
    # Variants
    "HomogeneousTransformation",
    "RigidTransformation",
    "AffineTransformation",
    "FreeFormTransformation",
    "LinearFFD",
    "BSplineFFD",
    "StationaryVelocityFFD",
    "TemporalDiffeomorphicFFD",
    "MultiLevelSVFFD",
    # Constraints and I/O
    "TopologyPreservationConstraint",
    "save_transformation",
    "load_transformation",
]
