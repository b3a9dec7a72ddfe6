"""
DASVF Base Transformation

Uniform capability set of all transformation variants and the type registry
used for deserialization.

Variants (TransformationKind):
- RIGID, AFFINE: homogeneous 4x4 matrices
- LINEAR_FFD, BSPLINE_FFD: displacement free-form deformations
- SVFFD: stationary velocity free-form deformation
- TD_FFD: temporal diffeomorphic free-form deformation
- MULTI_LEVEL_SVFFD: global matrix plus local SVFFDs composed in log-space

Capabilities: transform, inverse, displacement, inverse_displacement,
jacobian, jacobian_determinant, jacobian_dofs, parametric_gradient, DOF access
(get/put/add/update/status) and state_dict.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Type

import numpy as np
import torch

from .cache import DisplacementCache
from .interpolation import LatticeFunction
from .lattice import ControlLattice, DOFStatus
from ..config.config_loader import CacheConfig, IntegrationConfig, ParallelConfig
from ..data.domain import ImageDomain
from ..errors import ConfigurationError, GradientNotImplementedError
from ..utils.logging_config import get_logger

logger = get_logger("transformation")

# Lower bound of the determinant in log-Jacobian maps
MIN_JACOBIAN_DETERMINANT = 1e-4


class TransformationKind(str, Enum):
    """Variant tag of a transformation"""
    RIGID = "rigid"
    AFFINE = "affine"
    LINEAR_FFD = "linear_ffd"
    BSPLINE_FFD = "bspline_ffd"
    SVFFD = "svffd"
    TD_FFD = "td_ffd"
    MULTI_LEVEL_SVFFD = "multi_level_svffd"


TRANSFORMATION_TYPES: Dict[TransformationKind, Type["Transformation"]] = {}


def register_transformation(cls):
    """Class decorator adding a transformation variant to the registry"""
    TRANSFORMATION_TYPES[TransformationKind(cls.kind)] = cls
    return cls


def transformation_class(kind) -> Type["Transformation"]:
    try:
        return TRANSFORMATION_TYPES[TransformationKind(kind)]
    except (KeyError, ValueError):
        raise ConfigurationError(f"Unknown transformation type: {kind}") from None


def as_points(points, dtype: torch.dtype = torch.float64, device=None) -> torch.Tensor:
    """Convert points to a (N, 3) tensor"""
    points = torch.as_tensor(points, dtype=dtype, device=device)
    if points.dim() == 1:
        points = points.unsqueeze(0)
    if points.dim() != 2 or points.shape[-1] != 3:
        raise ConfigurationError(f"Points must have shape (N, 3), got {tuple(points.shape)}")
    return points


class Transformation(ABC):
    """
    Abstract base class of transformation variants

    Args:
        time_unit: Upper integration limit used when t0 == t1
        dtype: Floating point type of points and fields
        device: Device of points and fields
    """

    kind: TransformationKind = None

    def __init__(self, time_unit: float = 1.0, dtype: torch.dtype = torch.float64, device=None):
        self.time_unit = float(time_unit)
        self.dtype = dtype
        self.device = torch.device(device) if device is not None else torch.device("cpu")

    @property
    def name(self) -> str:
        return self.__class__.__name__

    def upper_integration_limit(self, t0: float, t1: float) -> float:
        """Integration interval; the time unit applies if t0 == t1"""
        return self.time_unit if t0 == t1 else float(t1) - float(t0)

    def _points(self, points) -> torch.Tensor:
        return as_points(points, self.dtype, self.device)

    # ------------------------------------------------------------------
    # DOFs
    # ------------------------------------------------------------------

    @abstractmethod
    def dofs(self) -> torch.Tensor:
        """Copy of the DOF values"""

    @abstractmethod
    def put_dofs(self, values: torch.Tensor):
        """Replace all DOF values"""

    @abstractmethod
    def active_mask(self) -> torch.Tensor:
        """Boolean mask of active DOFs"""

    @abstractmethod
    def put_active_mask(self, mask: torch.Tensor):
        """Replace the DOF status flags"""

    @property
    def num_dofs(self) -> int:
        return int(self.dofs().numel())

    @property
    def num_active_dofs(self) -> int:
        return int(self.active_mask().sum())

    def get(self, dof: int) -> float:
        return float(self.dofs()[int(dof)])

    def put(self, dof: int, value: float):
        values = self.dofs()
        values[int(dof)] = float(value)
        self.put_dofs(values)

    def add(self, delta: torch.Tensor):
        self.put_dofs(self.dofs() + torch.as_tensor(delta, dtype=self.dtype, device=self.device).reshape(-1))

    def get_status(self, dof: int) -> DOFStatus:
        return DOFStatus.ACTIVE if bool(self.active_mask()[int(dof)]) else DOFStatus.PASSIVE

    def put_status(self, dof: int, status: DOFStatus):
        mask = self.active_mask()
        mask[int(dof)] = DOFStatus(status) == DOFStatus.ACTIVE
        self.put_active_mask(mask)

    def reset(self):
        self.put_dofs(torch.zeros(self.num_dofs, dtype=self.dtype, device=self.device))

    def update(self, delta: torch.Tensor) -> float:
        """
        Add a step to the active DOFs

        Args:
            delta: Step of length num_dofs; entries of passive DOFs are ignored

        Returns:
            Largest change, measured like dof_gradient_norm()
        """
        delta = torch.as_tensor(delta, dtype=self.dtype, device=self.device).reshape(-1)
        delta = torch.where(self.active_mask().to(delta.device), delta, torch.zeros_like(delta))
        self.put_dofs(self.dofs() + delta)
        return self.dof_gradient_norm(delta)

    def dof_gradient_norm(self, gradient: torch.Tensor) -> float:
        """Largest magnitude of a DOF gradient (max norm of its entries)"""
        gradient = torch.as_tensor(gradient).reshape(-1)
        return float(gradient.abs().max()) if gradient.numel() > 0 else 0.0

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    @abstractmethod
    def transform(self, points, t0: float = 0.0, t1: float = 0.0) -> torch.Tensor:
        """Map world points (N, 3) from time t0 to t1"""

    @abstractmethod
    def inverse(self, points, t0: float = 0.0, t1: float = 0.0) -> Tuple[torch.Tensor, torch.Tensor]:
        """Pre-images of world points and per-point success flags"""

    @abstractmethod
    def jacobian(self, points, t0: float = 0.0, t1: float = 0.0) -> torch.Tensor:
        """Spatial Jacobian of the mapping at world points, shape (N, 3, 3)"""

    @abstractmethod
    def jacobian_dofs(self, points, dof: int, t0: float = 0.0, t1: float = 0.0) -> torch.Tensor:
        """Derivative of the mapped points with respect to one DOF, shape (N, 3)"""

    def displacement(self, domain: ImageDomain, t0: float = 0.0, t1: float = 0.0) -> torch.Tensor:
        """Dense displacement field on a domain, shape (Z, Y, X, 3)"""
        points = domain.points(dtype=self.dtype, device=self.device).reshape(-1, 3)
        return (self.transform(points, t0, t1) - points).reshape(domain.shape + (3,))

    def inverse_displacement(self, domain: ImageDomain, t0: float = 0.0, t1: float = 0.0) -> torch.Tensor:
        """Dense displacement of the inverse mapping on a domain, shape (Z, Y, X, 3)"""
        points = domain.points(dtype=self.dtype, device=self.device).reshape(-1, 3)
        pre, success = self.inverse(points, t0, t1)
        if not bool(success.all()):
            logger.warning(f"{self.name}: inverse failed at {int((~success).sum())} voxels")
        return (pre - points).reshape(domain.shape + (3,))

    def jacobian_determinant(self, domain: ImageDomain, t0: float = 0.0, t1: float = 0.0) -> torch.Tensor:
        """Local Jacobian determinant at the voxels of a domain, shape (Z, Y, X)"""
        points = domain.points(dtype=self.dtype, device=self.device).reshape(-1, 3)
        return torch.linalg.det(self.jacobian(points, t0, t1)).reshape(domain.shape)

    def log_jacobian_determinant(self, domain: ImageDomain, t0: float = 0.0, t1: float = 0.0) -> torch.Tensor:
        """Logarithm of the Jacobian determinant, clamped below at MIN_JACOBIAN_DETERMINANT"""
        det = self.jacobian_determinant(domain, t0, t1)
        return torch.log(det.clamp(min=MIN_JACOBIAN_DETERMINANT))

    def parametric_gradient(
        self,
        gradient: torch.Tensor,
        domain: ImageDomain,
        out: Optional[torch.Tensor] = None,
        weight: float = 1.0,
        t0: float = 0.0,
        t1: float = 0.0,
        include_passive: bool = False,
    ) -> torch.Tensor:
        """
        Accumulate weight * sum_voxels (d disp / d DOF)^T gradient into out

        Args:
            gradient: dE/d displacement on the domain, shape (Z, Y, X, 3)
            domain: Image domain the gradient is aligned with
            out: Gradient vector of length num_dofs (allocated if None)
            weight: Weight of the energy term
            t0: Source time
            t1: Target time
            include_passive: Whether passive DOFs also receive contributions

        Returns:
            The gradient vector
        """
        raise GradientNotImplementedError(f"{self.name} does not implement a parametric gradient")

    def _check_gradient(self, gradient: torch.Tensor, domain: ImageDomain) -> torch.Tensor:
        gradient = torch.as_tensor(gradient, dtype=self.dtype, device=self.device)
        if tuple(gradient.shape) != tuple(domain.shape) + (3,):
            raise ConfigurationError(
                f"Gradient shape {tuple(gradient.shape)} does not match domain {tuple(domain.shape) + (3,)}"
            )
        return gradient

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    @abstractmethod
    def state_dict(self) -> Dict[str, Any]:
        """Serializable state: type tag, attributes, DOFs, then status flags"""

    @classmethod
    def from_state_dict(cls, state: Dict[str, Any]) -> "Transformation":
        """Create a transformation of the variant named by state['type']"""
        target = transformation_class(state.get("type"))
        if target is cls or cls is Transformation:
            return target._from_state(state)
        raise ConfigurationError(f"State of type {state.get('type')} cannot be loaded as {cls.__name__}")

    @classmethod
    @abstractmethod
    def _from_state(cls, state: Dict[str, Any]) -> "Transformation":
        """Variant specific construction from a state dictionary"""


class LatticeTransformation(Transformation):
    """
    Transformation parameterized by a ControlLattice

    Args:
        lattice: Control point lattice (owned by this transformation)
        kernel: Interpolation kernel ("bspline" or "linear")
        integration: Integration and inversion settings
        parallel: Voxel sweep parallelization
        cache: Displacement cache settings
        time_unit: Upper integration limit used when t0 == t1
    """

    def __init__(
        self,
        lattice: ControlLattice,
        kernel: str = "bspline",
        integration: Optional[IntegrationConfig] = None,
        parallel: Optional[ParallelConfig] = None,
        cache: Optional[CacheConfig] = None,
        time_unit: Optional[float] = None,
    ):
        self.integration = integration or IntegrationConfig()
        self.parallel = parallel or ParallelConfig()
        if time_unit is None:
            time_unit = self.integration.upper_integration_limit
        super().__init__(time_unit=time_unit, dtype=lattice.dtype, device=lattice.device)
        self.lattice = lattice
        self.kernel = kernel.lower()
        cache = cache or CacheConfig()
        self._cache = DisplacementCache(enabled=cache.enabled, max_entries=cache.max_entries)

    @property
    def version(self) -> int:
        return self.lattice.version

    def evaluator(self) -> LatticeFunction:
        return LatticeFunction(
            self.lattice,
            self.kernel,
            num_threads=self.parallel.num_threads,
            min_chunk_size=self.parallel.min_chunk_size,
        )

    def changed(self):
        """Invalidate state derived from the DOFs"""
        self._cache.clear()

    # DOFs

    def dofs(self) -> torch.Tensor:
        return self.lattice.dofs()

    def put_dofs(self, values: torch.Tensor):
        self.lattice.put_dofs(values)
        self.changed()

    def get(self, dof: int) -> float:
        return self.lattice.get(dof)

    def put(self, dof: int, value: float):
        self.lattice.put(dof, value)
        self.changed()

    def add(self, delta: torch.Tensor):
        self.lattice.add(delta)
        self.changed()

    def reset(self):
        self.lattice.reset()
        self.changed()

    def active_mask(self) -> torch.Tensor:
        return self.lattice.active_mask()

    def put_active_mask(self, mask: torch.Tensor):
        self.lattice.put_active_mask(mask)

    @property
    def num_dofs(self) -> int:
        return self.lattice.num_dofs

    def dof_gradient_norm(self, gradient: torch.Tensor) -> float:
        """Largest norm of the gradient vector of a control point"""
        gradient = torch.as_tensor(gradient).reshape(-1, 3)
        return float(gradient.norm(dim=-1).max()) if gradient.numel() > 0 else 0.0

    # Serialization

    def _lattice_state(self) -> Dict[str, Any]:
        domain = self.lattice.domain
        return {
            "type": TransformationKind(self.kind).value,
            "kernel": self.kernel,
            "time_unit": self.time_unit,
            "size": list(domain.size),
            "spacing": list(domain.spacing),
            "origin": list(domain.origin),
            "direction": domain.direction.tolist(),
            "num_frames": self.lattice.num_frames,
            "temporal_origin": self.lattice.temporal_origin,
            "temporal_spacing": self.lattice.temporal_spacing,
            "dofs": self.lattice.dofs().cpu(),
            "status": self.lattice.active_mask().cpu(),
        }

    @staticmethod
    def _lattice_from_state(state: Dict[str, Any]) -> ControlLattice:
        domain = ImageDomain(
            state["size"], state["spacing"], state["origin"], np.asarray(state["direction"], dtype=np.float64)
        )
        dofs = torch.as_tensor(state["dofs"])
        lattice = ControlLattice(
            domain,
            num_frames=int(state.get("num_frames", 1)),
            temporal_origin=float(state.get("temporal_origin", 0.0)),
            temporal_spacing=float(state.get("temporal_spacing", 1.0)),
            dtype=dofs.dtype if dofs.is_floating_point() else torch.float64,
        )
        lattice.put_dofs(dofs)
        if "status" in state:
            lattice.put_active_mask(torch.as_tensor(state["status"]))
        return lattice
