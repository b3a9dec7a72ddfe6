"""
DASVF Temporal Diffeomorphic Free-Form Deformation

Time-varying velocity field on a linear 4D control lattice, integrated from
t0 to t1 by forward Euler steps (De Craene et al., 2012).

Step control:
- the nominal step is (t1 - t0) / N with N = max(2, round(|t1 - t0| / max_time_step))
- a point halves its step, down to (t1 - t0) / max(2, round(|t1 - t0| / min_time_step)),
  while det(I + dt J_v) < 0 at its current position
- the last step of each point is truncated so every point ends exactly at t1

The inverse integrates backward from t1 to t0.
"""

from typing import Any, Dict, Optional, Sequence, Tuple, Union

import torch

from .adjoint import AdjointGradientEngine, accumulate_gradient
from .base import LatticeTransformation, TransformationKind, register_transformation
from .integration import IntegrationTrajectory, check_finite
from .lattice import ControlLattice
from ..config.config_loader import CacheConfig, EngineConfig, IntegrationConfig, ParallelConfig, TemporalConfig
from ..data.domain import ImageDomain
from ..errors import ConfigurationError
from ..utils.device import get_device, resolve_dtype
from ..utils.logging_config import get_logger

logger = get_logger("td")


@register_transformation
class TemporalDiffeomorphicFFD(LatticeTransformation):
    """
    TD FFD (Temporal Diffeomorphic Free-Form Deformation)

    Args:
        lattice: 4D velocity lattice (linear interpolation in space and time)
        temporal: Minimum and maximum integration time steps
        integration: Integration settings
        parallel: Voxel sweep parallelization
        cache: Displacement cache settings
    """

    kind = TransformationKind.TD_FFD

    def __init__(
        self,
        lattice: ControlLattice,
        temporal: Optional[TemporalConfig] = None,
        integration: Optional[IntegrationConfig] = None,
        parallel: Optional[ParallelConfig] = None,
        cache: Optional[CacheConfig] = None,
    ):
        super().__init__(lattice, kernel="linear", integration=integration, parallel=parallel, cache=cache)
        self.temporal = temporal or TemporalConfig()
        if not 0 < self.temporal.min_time_step <= self.temporal.max_time_step:
            raise ConfigurationError(
                f"Invalid time steps: min={self.temporal.min_time_step}, max={self.temporal.max_time_step}"
            )

    @classmethod
    def from_domain(
        cls,
        domain: ImageDomain,
        spacing: Union[float, Sequence[float], None] = None,
        num_frames: int = 2,
        temporal_origin: float = 0.0,
        temporal_spacing: float = 1.0,
        config: Optional[EngineConfig] = None,
    ) -> "TemporalDiffeomorphicFFD":
        """Create an identity TD FFD whose lattice covers an image domain"""
        config = config or EngineConfig()
        spacing = config.lattice.control_point_spacing if spacing is None else spacing
        lattice = ControlLattice.from_domain(
            domain,
            spacing,
            num_frames=num_frames,
            temporal_origin=temporal_origin,
            temporal_spacing=temporal_spacing,
            dtype=resolve_dtype(config.dtype),
            device=get_device(config.device),
        )
        return cls(
            lattice, temporal=config.temporal, integration=config.integration, parallel=config.parallel, cache=config.cache
        )

    def step_limits(self, t0: float, t1: float) -> Tuple[float, float]:
        """Nominal and smallest signed time step for the interval [t0, t1]"""
        span = float(t1) - float(t0)
        min_steps = max(2, int(round(abs(span) / self.temporal.max_time_step)))
        max_steps = max(2, int(round(abs(span) / self.temporal.min_time_step)))
        return span / min_steps, span / max_steps

    def integrate(
        self,
        points: torch.Tensor,
        t0: float,
        t1: float,
        jacobian: bool = False,
        record: bool = False,
    ) -> Tuple[torch.Tensor, Optional[torch.Tensor], Optional[IntegrationTrajectory]]:
        """
        Integrate points from time t0 to t1

        Returns:
            Transformed points, spatial Jacobians (if requested) and the
            trajectory with per-point steps and times (if requested)
        """
        n = points.shape[0]
        x = points.clone()
        J = torch.eye(3, dtype=self.dtype, device=self.device).expand(n, 3, 3).clone() if jacobian else None
        trajectory = IntegrationTrajectory() if record else None
        span = float(t1) - float(t0)
        if span == 0 or n == 0:
            return x, J, trajectory

        evaluator = self.evaluator()
        nominal, smallest = self.step_limits(t0, t1)
        sign = 1.0 if span > 0 else -1.0
        eps = 1e-12 * abs(span)
        eye = torch.eye(3, dtype=self.dtype, device=self.device)

        t = torch.full((n,), float(t0), dtype=self.dtype, device=self.device)
        step_size = torch.full((n,), abs(nominal), dtype=self.dtype, device=self.device)
        num_steps = 0
        while True:
            remaining = (float(t1) - t) * sign
            done = remaining <= eps
            if bool(done.all()):
                break

            v, Jv = evaluator.velocity_and_jacobian(x, t)
            while True:
                dt = sign * torch.where(done, torch.zeros_like(remaining), torch.minimum(step_size, remaining))
                det = torch.linalg.det(eye + dt[:, None, None] * Jv)
                shrink = (det < 0) & (step_size > abs(smallest) * (1.0 + 1e-9)) & ~done
                if not bool(shrink.any()):
                    break
                step_size = torch.where(shrink, torch.clamp(step_size / 2.0, min=abs(smallest)), step_size)

            if trajectory is not None:
                trajectory.points.append(x)
                trajectory.jacobians.append(Jv)
                trajectory.times.append(t)
                trajectory.steps.append(dt)
            if J is not None:
                J = J + dt[:, None, None] * (Jv @ J)
            x = x + dt[:, None] * v
            check_finite(x, "point position")
            # Points whose step reaches t1 land on it exactly
            t = torch.where(remaining - dt.abs() <= eps, torch.full_like(t, float(t1)), t + dt)
            num_steps += 1

        logger.debug(f"TD integration [{t0}, {t1}]: {num_steps} steps")
        return x, J, trajectory

    # Mapping

    def transform(self, points, t0: float = 0.0, t1: float = 0.0) -> torch.Tensor:
        return self.integrate(self._points(points), t0, t1)[0]

    def inverse(self, points, t0: float = 0.0, t1: float = 0.0) -> Tuple[torch.Tensor, torch.Tensor]:
        points = self._points(points)
        x, _, _ = self.integrate(points, t1, t0)
        return x, torch.ones(points.shape[0], dtype=torch.bool, device=points.device)

    def jacobian(self, points, t0: float = 0.0, t1: float = 0.0) -> torch.Tensor:
        return self.integrate(self._points(points), t0, t1, jacobian=True)[1]

    def displacement(self, domain: ImageDomain, t0: float = 0.0, t1: float = 0.0) -> torch.Tensor:
        version = (self.lattice.version, float(t0))
        T = float(t1) - float(t0)
        cached = self._cache.get(domain, T, version)
        if cached is not None:
            return cached
        points = domain.points(dtype=self.dtype, device=self.device).reshape(-1, 3)
        disp = (self.integrate(points, t0, t1)[0] - points).reshape(domain.shape + (3,))
        self._cache.put(domain, T, version, disp)
        return disp

    def jacobian_dofs(self, points, dof: int, t0: float = 0.0, t1: float = 0.0) -> torch.Tensor:
        points = self._points(points)
        _, _, trajectory = self.integrate(points, t0, t1, record=True)
        evaluator = self.evaluator()
        tangent = torch.zeros_like(points)
        for x, Jv, t, dt in zip(trajectory.points, trajectory.jacobians, trajectory.times, trajectory.steps):
            dv = evaluator.node_velocity(x, dof, t)
            tangent = tangent + dt[:, None] * (torch.einsum("nad,nd->na", Jv, tangent) + dv)
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
        points = domain.points(dtype=self.dtype, device=self.device).reshape(-1, 3)
        _, _, trajectory = self.integrate(points, t0, t1, record=True)
        engine = AdjointGradientEngine(num_threads=self.parallel.num_threads, min_chunk_size=self.parallel.min_chunk_size)
        grad = engine.trajectory_gradient(trajectory, gradient.reshape(-1, 3), [self.evaluator()])[0]
        return accumulate_gradient(grad, out, weight, None if include_passive else self.lattice.active_mask())

    # Serialization

    def state_dict(self) -> Dict[str, Any]:
        state = self._lattice_state()
        state["min_time_step"] = self.temporal.min_time_step
        state["max_time_step"] = self.temporal.max_time_step
        return state

    @classmethod
    def _from_state(cls, state: Dict[str, Any]) -> "TemporalDiffeomorphicFFD":
        temporal = TemporalConfig(
            min_time_step=float(state.get("min_time_step", TemporalConfig.min_time_step)),
            max_time_step=float(state.get("max_time_step", TemporalConfig.max_time_step)),
        )
        return cls(cls._lattice_from_state(state), temporal=temporal)
