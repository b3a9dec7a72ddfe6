"""
DASVF Displacement Free-Form Deformations

Free-form deformations whose control points store displacements directly:
    T(x) = x + sum_j w_j(x) c_j

Variants:
- LinearFFD: trilinear interpolation of the control point displacements
- BSplineFFD: cubic B-spline interpolation of the control point displacements

Inverse by Newton iterations; parametric gradient by splatting the voxel-wise
gradient onto the lattice.
"""

from typing import Any, Dict, Optional, Sequence, Tuple, Union

import torch

from .adjoint import accumulate_gradient
from .base import LatticeTransformation, TransformationKind, register_transformation
from .integration import newton_inverse
from .lattice import ControlLattice
from ..config.config_loader import CacheConfig, IntegrationConfig, ParallelConfig
from ..data.domain import ImageDomain
from ..errors import ConfigurationError
from ..utils.logging_config import get_logger

logger = get_logger("ffd")


class FreeFormTransformation(LatticeTransformation):
    """Displacement free-form deformation on a stationary control lattice"""

    kernel_name = "bspline"

    def __init__(
        self,
        lattice: ControlLattice,
        integration: Optional[IntegrationConfig] = None,
        parallel: Optional[ParallelConfig] = None,
        cache: Optional[CacheConfig] = None,
    ):
        if lattice.num_frames != 1:
            raise ConfigurationError(f"{self.__class__.__name__} requires a stationary (3D) lattice")
        super().__init__(lattice, kernel=self.kernel_name, integration=integration, parallel=parallel, cache=cache)

    @classmethod
    def from_domain(cls, domain: ImageDomain, spacing: Union[float, Sequence[float]], **kwargs) -> "FreeFormTransformation":
        """Create an identity FFD whose lattice covers an image domain"""
        return cls(ControlLattice.from_domain(domain, spacing), **kwargs)

    def transform(self, points, t0: float = 0.0, t1: float = 0.0) -> torch.Tensor:
        points = self._points(points)
        return points + self.evaluator().velocity(points)

    def displacement(self, domain: ImageDomain, t0: float = 0.0, t1: float = 0.0) -> torch.Tensor:
        cached = self._cache.get(domain, 0.0, self.version)
        if cached is not None:
            return cached
        points = domain.points(dtype=self.dtype, device=self.device).reshape(-1, 3)
        disp = self.evaluator().velocity(points).reshape(domain.shape + (3,))
        self._cache.put(domain, 0.0, self.version, disp)
        return disp

    def jacobian(self, points, t0: float = 0.0, t1: float = 0.0) -> torch.Tensor:
        points = self._points(points)
        eye = torch.eye(3, dtype=self.dtype, device=self.device)
        return eye + self.evaluator().jacobian(points)

    def inverse(self, points, t0: float = 0.0, t1: float = 0.0) -> Tuple[torch.Tensor, torch.Tensor]:
        points = self._points(points)
        evaluator = self.evaluator()
        eye = torch.eye(3, dtype=self.dtype, device=self.device)

        def forward(x: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
            d, J = evaluator.velocity_and_jacobian(x)
            return x + d, eye + J

        initial = points - evaluator.velocity(points)
        return newton_inverse(forward, points, initial, self.integration)

    def jacobian_dofs(self, points, dof: int, t0: float = 0.0, t1: float = 0.0) -> torch.Tensor:
        points = self._points(points)
        return self.evaluator().node_velocity(points, dof)

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
        gradient = self._check_gradient(gradient, domain).reshape(-1, 3)
        points = domain.points(dtype=self.dtype, device=self.device).reshape(-1, 3)
        grad = self.evaluator().adjoint(points, gradient)
        return accumulate_gradient(grad, out, weight, None if include_passive else self.lattice.active_mask())

    def state_dict(self) -> Dict[str, Any]:
        return self._lattice_state()

    @classmethod
    def _from_state(cls, state: Dict[str, Any]) -> "FreeFormTransformation":
        return cls(cls._lattice_from_state(state))


@register_transformation
class LinearFFD(FreeFormTransformation):
    """Free-form deformation with trilinear interpolation of control point displacements"""

    kind = TransformationKind.LINEAR_FFD
    kernel_name = "linear"


@register_transformation
class BSplineFFD(FreeFormTransformation):
    """Free-form deformation with cubic B-spline interpolation of control point displacements"""

    kind = TransformationKind.BSPLINE_FFD
    kernel_name = "bspline"
