"""
DASVF Stationary Velocity Free-Form Deformation

Diffeomorphic transformation T(x) = exp(T v)(x) of a stationary velocity field
v given by a cubic B-spline control lattice.

Features:
- Dense displacement and inverse displacement by scaling and squaring ("ss")
  or per-voxel forward Euler integration ("rke1"), cached per image domain
- Jacobian determinant propagated through the squarings
- Point transformation, spatial Jacobian and DOF derivative by forward Euler
  integration with the point-independent step count
- Newton inverse started from backward integration
- Parametric gradient by reverse replay of the forward integration path
- Inversion by negating the velocity field
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Hashable, List, Optional, Sequence, Tuple, Union

import torch

from .adjoint import AdjointGradientEngine, accumulate_gradient
from .base import LatticeTransformation, TransformationKind, register_transformation
from .integration import ScalingAndSquaring, integrate_points, invert_points
from .interpolation import LatticeFunction, VelocityEvaluator
from .lattice import ControlLattice
from ..config.config_loader import CacheConfig, EngineConfig, IntegrationConfig, ParallelConfig
from ..data.domain import ImageDomain
from ..errors import ConfigurationError
from ..utils.device import get_device, resolve_dtype
from ..utils.logging_config import get_logger

logger = get_logger("svffd")


class StationaryVelocityMixin(ABC):
    """
    Shared integration logic of transformations given by a stationary velocity

    Implementations provide velocity_field(), gradient_targets(),
    dof_velocity(), velocity_version() and assemble_gradient(), and the
    attributes integration, parallel, dtype, device and _cache.
    """

    @property
    def method(self) -> str:
        return self.integration.method.lower()

    @abstractmethod
    def velocity_field(self) -> VelocityEvaluator:
        """Velocity field (sum of generators) to exponentiate"""

    @abstractmethod
    def gradient_targets(self) -> List[LatticeFunction]:
        """Lattice functions receiving a parametric gradient"""

    @abstractmethod
    def dof_velocity(self, points: torch.Tensor, dof: int) -> torch.Tensor:
        """Derivative of the velocity at points with respect to one DOF"""

    @abstractmethod
    def velocity_version(self) -> Hashable:
        """Identifier of the current DOF values (displacement cache tag)"""

    @abstractmethod
    def assemble_gradient(
        self, grads: List[torch.Tensor], out: Optional[torch.Tensor], weight: float, include_passive: bool
    ) -> torch.Tensor:
        """Add per-target lattice gradients into the DOF gradient vector"""

    def _scaling_and_squaring(self) -> ScalingAndSquaring:
        return ScalingAndSquaring(
            self.integration, num_threads=self.parallel.num_threads, min_chunk_size=self.parallel.min_chunk_size
        )

    def _engine(self) -> AdjointGradientEngine:
        return AdjointGradientEngine(num_threads=self.parallel.num_threads, min_chunk_size=self.parallel.min_chunk_size)

    # Mapping

    def transform(self, points, t0: float = 0.0, t1: float = 0.0) -> torch.Tensor:
        points = self._points(points)
        T = self.upper_integration_limit(t0, t1)
        x, _, _ = integrate_points(self.velocity_field(), points, T, self.integration)
        return x

    def inverse(self, points, t0: float = 0.0, t1: float = 0.0) -> Tuple[torch.Tensor, torch.Tensor]:
        points = self._points(points)
        T = self.upper_integration_limit(t0, t1)
        return invert_points(self.velocity_field(), points, T, self.integration)

    def jacobian(self, points, t0: float = 0.0, t1: float = 0.0) -> torch.Tensor:
        points = self._points(points)
        T = self.upper_integration_limit(t0, t1)
        _, J, _ = integrate_points(self.velocity_field(), points, T, self.integration, jacobian=True)
        return J

    def _integrated_displacement(self, domain: ImageDomain, T: float) -> torch.Tensor:
        version = self.velocity_version()
        cached = self._cache.get(domain, T, version)
        if cached is not None:
            return cached

        evaluator = self.velocity_field()
        if self.method == "ss":
            disp, _ = self._scaling_and_squaring().run(evaluator, domain, T, dtype=self.dtype, device=self.device)
        else:
            points = domain.points(dtype=self.dtype, device=self.device).reshape(-1, 3)
            x, _, _ = integrate_points(evaluator, points, T, self.integration)
            disp = (x - points).reshape(domain.shape + (3,))

        self._cache.put(domain, T, version, disp)
        return disp

    def displacement(self, domain: ImageDomain, t0: float = 0.0, t1: float = 0.0) -> torch.Tensor:
        return self._integrated_displacement(domain, self.upper_integration_limit(t0, t1))

    def inverse_displacement(self, domain: ImageDomain, t0: float = 0.0, t1: float = 0.0) -> torch.Tensor:
        """
        Dense displacement of the inverse mapping, exp(-T v) - id

        Integrated like displacement() with the negated limit, so no Newton
        iterations are involved.
        """
        return self._integrated_displacement(domain, -self.upper_integration_limit(t0, t1))

    def jacobian_determinant(self, domain: ImageDomain, t0: float = 0.0, t1: float = 0.0) -> torch.Tensor:
        if self.method != "ss":
            return super().jacobian_determinant(domain, t0, t1)
        T = self.upper_integration_limit(t0, t1)
        _, J = self._scaling_and_squaring().run_jacobian(
            self.velocity_field(), domain, T, dtype=self.dtype, device=self.device
        )
        return torch.linalg.det(J)

    def jacobian_dofs(self, points, dof: int, t0: float = 0.0, t1: float = 0.0) -> torch.Tensor:
        """
        Derivative of the transformed points with respect to one DOF

        Propagates the tangent d x_k / d c along the forward Euler path:
            d_{k+1} = d_k + dt * (J_v(x_k) d_k + dv(x_k)/dc)
        """
        points = self._points(points)
        T = self.upper_integration_limit(t0, t1)
        _, _, trajectory = integrate_points(self.velocity_field(), points, T, self.integration, record=True)
        tangent = torch.zeros_like(points)
        for x, Jv, dt in zip(trajectory.points, trajectory.jacobians, trajectory.steps):
            tangent = tangent + dt * (torch.einsum("nad,nd->na", Jv, tangent) + self.dof_velocity(x, dof))
        return tangent

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
        gradient = self._check_gradient(gradient, domain)
        T = self.upper_integration_limit(t0, t1)
        evaluator = self.velocity_field()
        targets = self.gradient_targets()
        engine = self._engine()

        if self.method == "ss":
            _, trajectory = self._scaling_and_squaring().run(
                evaluator, domain, T, record=True, dtype=self.dtype, device=self.device
            )
            grads = engine.squaring_gradient(trajectory, gradient, targets)
        else:
            points = domain.points(dtype=self.dtype, device=self.device).reshape(-1, 3)
            _, _, trajectory = integrate_points(evaluator, points, T, self.integration, record=True)
            grads = engine.trajectory_gradient(trajectory, gradient.reshape(-1, 3), targets)

        return self.assemble_gradient(grads, out, weight, include_passive)


@register_transformation
class StationaryVelocityFFD(StationaryVelocityMixin, LatticeTransformation):
    """
    SVFFD (Stationary Velocity Free-Form Deformation)

    Args:
        lattice: Velocity control point lattice (stationary)
        integration: Integration method and step count policy
        parallel: Voxel sweep parallelization
        cache: Displacement cache settings
        time_unit: Upper integration limit used when t0 == t1
    """

    kind = TransformationKind.SVFFD

    def __init__(
        self,
        lattice: ControlLattice,
        integration: Optional[IntegrationConfig] = None,
        parallel: Optional[ParallelConfig] = None,
        cache: Optional[CacheConfig] = None,
        time_unit: Optional[float] = None,
    ):
        if lattice.num_frames != 1:
            raise ConfigurationError("StationaryVelocityFFD requires a stationary (3D) lattice")
        super().__init__(
            lattice, kernel="bspline", integration=integration, parallel=parallel, cache=cache, time_unit=time_unit
        )
        if self.method not in ("ss", "rke1"):
            raise ConfigurationError(f"Unknown integration method: {self.integration.method}")

    @classmethod
    def from_domain(
        cls,
        domain: ImageDomain,
        spacing: Union[float, Sequence[float], None] = None,
        config: Optional[EngineConfig] = None,
    ) -> "StationaryVelocityFFD":
        """
        Create an identity SVFFD whose lattice covers an image domain

        Args:
            domain: Image domain to cover
            spacing: Control point spacing (default: config.lattice.control_point_spacing)
            config: Engine configuration
        """
        config = config or EngineConfig()
        spacing = config.lattice.control_point_spacing if spacing is None else spacing
        lattice = ControlLattice.from_domain(
            domain, spacing, dtype=resolve_dtype(config.dtype), device=get_device(config.device)
        )
        logger.info(f"Created SVFFD lattice {lattice.domain.size} with spacing {lattice.domain.spacing}")
        return cls(lattice, integration=config.integration, parallel=config.parallel, cache=config.cache)

    def velocity_field(self) -> LatticeFunction:
        return self.evaluator()

    def gradient_targets(self) -> List[LatticeFunction]:
        return [self.evaluator()]

    def dof_velocity(self, points: torch.Tensor, dof: int) -> torch.Tensor:
        return self.evaluator().node_velocity(points, dof)

    def velocity_version(self) -> Hashable:
        return self.lattice.version

    def assemble_gradient(
        self, grads: List[torch.Tensor], out: Optional[torch.Tensor], weight: float, include_passive: bool
    ) -> torch.Tensor:
        return accumulate_gradient(grads[0], out, weight, None if include_passive else self.lattice.active_mask())

    def invert(self):
        """Replace the transformation by its inverse (negated velocity)"""
        self.put_dofs(-self.dofs())

    def state_dict(self) -> Dict[str, Any]:
        state = self._lattice_state()
        state["integration"] = {
            "method": self.integration.method,
            "min_steps": self.integration.min_steps,
            "max_scaled_velocity": self.integration.max_scaled_velocity,
        }
        return state

    @classmethod
    def _from_state(cls, state: Dict[str, Any]) -> "StationaryVelocityFFD":
        integration = IntegrationConfig(**state.get("integration", {}))
        return cls(cls._lattice_from_state(state), integration=integration, time_unit=state.get("time_unit"))
