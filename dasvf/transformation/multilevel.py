"""
DASVF Multi-Level SVFFD

Global homogeneous transformation and a stack of local SVFFDs summed in the
log space before a single exponentiation:

    T(x) = exp(log(A) + sum_i v_i)(x)

Features:
- Cached matrix logarithm of the global transformation, recomputed lazily
  when the global version counter changes
- DOF vector [global parameters, level 0, level 1, ...]; global DOFs are
  passive after construction
- Levels with an inactive flag contribute to the mapping but receive no
  gradient
- combine_local_transformation / merge_global_into_local_displacement redistribute
  parameters between levels
- Inversion by inverting the global matrix and negating local velocities;
  dense inverse displacement by integrating the negated log-space sum
"""

from typing import Any, Dict, Hashable, List, Optional, Sequence, Tuple, Union

import numpy as np
import torch
from scipy.linalg import expm

from .adjoint import accumulate_gradient
from .base import Transformation, TransformationKind, register_transformation, transformation_class
from .cache import DisplacementCache
from .interpolation import AffineVelocity, LatticeFunction, VelocityEvaluator, VelocitySum
from .linear import AffineTransformation, HomogeneousTransformation
from .svffd import StationaryVelocityFFD, StationaryVelocityMixin
from ..config.config_loader import CacheConfig, EngineConfig, IntegrationConfig, ParallelConfig
from ..data.domain import ImageDomain
from ..errors import ConfigurationError, GradientNotImplementedError
from ..utils.logging_config import get_logger

logger = get_logger("multilevel")


@register_transformation
class MultiLevelSVFFD(StationaryVelocityMixin, Transformation):
    """
    Multi-level stationary velocity transformation composed in log-space

    Args:
        global_transformation: Rigid or affine global transformation (identity affine if None)
        levels: Local SVFFDs, owned by this transformation
        integration: Integration settings (default: those of the active level)
        parallel: Voxel sweep parallelization
        cache: Displacement cache settings
        time_unit: Upper integration limit used when t0 == t1
    """

    kind = TransformationKind.MULTI_LEVEL_SVFFD

    def __init__(
        self,
        global_transformation: Optional[HomogeneousTransformation] = None,
        levels: Optional[Sequence[StationaryVelocityFFD]] = None,
        integration: Optional[IntegrationConfig] = None,
        parallel: Optional[ParallelConfig] = None,
        cache: Optional[CacheConfig] = None,
        time_unit: Optional[float] = None,
    ):
        global_transformation = global_transformation or AffineTransformation()
        if time_unit is None:
            time_unit = (integration or IntegrationConfig()).upper_integration_limit
        super().__init__(time_unit=time_unit, dtype=global_transformation.dtype, device=global_transformation.device)
        self._integration = integration
        self.parallel = parallel or ParallelConfig()
        cache = cache or CacheConfig()
        self._cache = DisplacementCache(enabled=cache.enabled, max_entries=cache.max_entries)

        self.global_transformation = global_transformation
        self.global_transformation.put_active_mask(
            torch.zeros(self.global_transformation.num_dofs, dtype=torch.bool)
        )
        self._log_matrix: Optional[torch.Tensor] = None
        self._log_version: Optional[int] = None

        self.levels: List[StationaryVelocityFFD] = []
        self._level_active: List[bool] = []
        for level in levels or []:
            self.push_local_transformation(level)

    @classmethod
    def from_domain(
        cls,
        domain: ImageDomain,
        spacing: Union[float, Sequence[float], None] = None,
        global_transformation: Optional[HomogeneousTransformation] = None,
        config: Optional[EngineConfig] = None,
    ) -> "MultiLevelSVFFD":
        """Create a multi-level transformation with one SVFFD level covering a domain"""
        config = config or EngineConfig()
        level = StationaryVelocityFFD.from_domain(domain, spacing, config)
        if global_transformation is None:
            global_transformation = AffineTransformation(dtype=level.dtype, device=level.device)
        return cls(
            global_transformation, [level], integration=config.integration, parallel=config.parallel, cache=config.cache
        )

    @property
    def integration(self) -> IntegrationConfig:
        if self._integration is not None:
            return self._integration
        active = self.active_level()
        if active is not None:
            return self.levels[active].integration
        return IntegrationConfig()

    # ------------------------------------------------------------------
    # Levels
    # ------------------------------------------------------------------

    @property
    def num_levels(self) -> int:
        return len(self.levels)

    def local_transformation(self, index: int) -> StationaryVelocityFFD:
        return self.levels[index]

    def push_local_transformation(self, level: StationaryVelocityFFD, active: bool = True):
        if not isinstance(level, StationaryVelocityFFD):
            raise ConfigurationError(f"Local levels must be StationaryVelocityFFD, got {type(level).__name__}")
        if level.dtype != self.dtype:
            raise ConfigurationError(f"Level dtype {level.dtype} does not match {self.dtype}")
        self.levels.append(level)
        self._level_active.append(bool(active))
        self.changed()

    def pop_local_transformation(self) -> StationaryVelocityFFD:
        level = self.levels.pop()
        self._level_active.pop()
        self.changed()
        return level

    def level_active(self, index: int) -> bool:
        return self._level_active[index]

    def set_level_active(self, index: int, active: bool):
        self._level_active[index] = bool(active)

    def active_level(self) -> Optional[int]:
        """Index of the last active level (whose parameters are being optimized)"""
        for index in reversed(range(len(self.levels))):
            if self._level_active[index]:
                return index
        return None

    def changed(self):
        self._cache.clear()

    # ------------------------------------------------------------------
    # Global logarithm
    # ------------------------------------------------------------------

    def log_matrix(self) -> torch.Tensor:
        """Matrix logarithm of the global transformation (cached by version)"""
        version = self.global_transformation.version
        if self._log_matrix is None or self._log_version != version:
            self._log_matrix = self.global_transformation.log_matrix()
            self._log_version = version
            logger.debug(f"Updated logarithm of global transformation (version {version})")
        return self._log_matrix

    def _global_exp(self, T: float) -> torch.Tensor:
        M = expm(float(T) * self.log_matrix().cpu().numpy())
        return torch.as_tensor(M, dtype=self.dtype, device=self.device)

    def _support(self) -> torch.Tensor:
        corners = [np.asarray(level.lattice.domain.corners()) for level in self.levels]
        return torch.as_tensor(np.concatenate(corners, axis=0), dtype=self.dtype, device=self.device)

    # ------------------------------------------------------------------
    # Velocity
    # ------------------------------------------------------------------

    def velocity_field(self) -> VelocityEvaluator:
        terms: List[VelocityEvaluator] = []
        logA = self.log_matrix()
        if bool(logA.abs().max() > 0):
            terms.append(AffineVelocity(logA, support=self._support() if self.levels else None))
        terms.extend(level.evaluator() for level in self.levels)
        return VelocitySum(terms)

    def gradient_targets(self) -> List[LatticeFunction]:
        return [level.evaluator() for level in self.levels]

    def velocity_version(self) -> Hashable:
        return (
            self.global_transformation.version,
            tuple(id(level) for level in self.levels),
            tuple(level.version for level in self.levels),
        )

    def _locate(self, dof: int) -> Tuple[int, int]:
        """(level index or -1 for the global transformation, local DOF index)"""
        dof = int(dof)
        if dof < 0 or dof >= self.num_dofs:
            raise IndexError(f"DOF index {dof} out of range [0, {self.num_dofs})")
        offset = self.global_transformation.num_dofs
        if dof < offset:
            return -1, dof
        dof -= offset
        for index, level in enumerate(self.levels):
            if dof < level.num_dofs:
                return index, dof
            dof -= level.num_dofs
        raise IndexError(f"DOF index {dof} out of range")

    def dof_velocity(self, points: torch.Tensor, dof: int) -> torch.Tensor:
        index, local = self._locate(dof)
        if index < 0:
            raise GradientNotImplementedError("Derivative with respect to global DOFs of MultiLevelSVFFD")
        return self.levels[index].evaluator().node_velocity(points, local)

    def assemble_gradient(
        self, grads: List[torch.Tensor], out: Optional[torch.Tensor], weight: float, include_passive: bool
    ) -> torch.Tensor:
        mask = self.active_mask()
        num_global = self.global_transformation.num_dofs
        if bool(mask[:num_global].any()):
            raise GradientNotImplementedError("Parametric gradient with respect to active global DOFs of MultiLevelSVFFD")
        if include_passive:
            mask[num_global:] = True
        zeros = torch.zeros(num_global, dtype=self.dtype, device=self.device)
        grad = torch.cat([zeros] + [g.reshape(-1) for g in grads])
        return accumulate_gradient(grad, out, weight, mask)

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    def transform(self, points, t0: float = 0.0, t1: float = 0.0) -> torch.Tensor:
        if self.levels:
            return super().transform(points, t0, t1)
        points = self._points(points)
        M = self._global_exp(self.upper_integration_limit(t0, t1))
        return points @ M[:3, :3].T + M[:3, 3]

    def inverse(self, points, t0: float = 0.0, t1: float = 0.0) -> Tuple[torch.Tensor, torch.Tensor]:
        if self.levels:
            return super().inverse(points, t0, t1)
        points = self._points(points)
        M = self._global_exp(-self.upper_integration_limit(t0, t1))
        result = points @ M[:3, :3].T + M[:3, 3]
        return result, torch.ones(points.shape[0], dtype=torch.bool, device=points.device)

    def jacobian(self, points, t0: float = 0.0, t1: float = 0.0) -> torch.Tensor:
        if self.levels:
            return super().jacobian(points, t0, t1)
        points = self._points(points)
        M = self._global_exp(self.upper_integration_limit(t0, t1))
        return M[:3, :3].expand(points.shape[0], 3, 3).clone()

    def displacement(self, domain: ImageDomain, t0: float = 0.0, t1: float = 0.0) -> torch.Tensor:
        if self.levels:
            return super().displacement(domain, t0, t1)
        return Transformation.displacement(self, domain, t0, t1)

    def inverse_displacement(self, domain: ImageDomain, t0: float = 0.0, t1: float = 0.0) -> torch.Tensor:
        if self.levels:
            return super().inverse_displacement(domain, t0, t1)
        return Transformation.inverse_displacement(self, domain, t0, t1)

    def jacobian_determinant(self, domain: ImageDomain, t0: float = 0.0, t1: float = 0.0) -> torch.Tensor:
        if self.levels:
            return super().jacobian_determinant(domain, t0, t1)
        return Transformation.jacobian_determinant(self, domain, t0, t1)

    # ------------------------------------------------------------------
    # DOFs
    # ------------------------------------------------------------------

    def dofs(self) -> torch.Tensor:
        parts = [self.global_transformation.dofs()] + [level.dofs() for level in self.levels]
        return torch.cat([p.to(self.dtype) for p in parts])

    def put_dofs(self, values: torch.Tensor):
        values = torch.as_tensor(values, dtype=self.dtype, device=self.device).reshape(-1)
        if values.numel() != self.num_dofs:
            raise ConfigurationError(f"Expected {self.num_dofs} DOF values, got {values.numel()}")
        offset = self.global_transformation.num_dofs
        if not torch.equal(values[:offset], self.global_transformation.dofs()):
            self.global_transformation.put_dofs(values[:offset])
        for level in self.levels:
            level.put_dofs(values[offset:offset + level.num_dofs])
            offset += level.num_dofs
        self.changed()

    @property
    def num_dofs(self) -> int:
        return self.global_transformation.num_dofs + sum(level.num_dofs for level in self.levels)

    def dof_gradient_norm(self, gradient: torch.Tensor) -> float:
        """Largest gradient magnitude over the global parameters and all levels"""
        gradient = torch.as_tensor(gradient).reshape(-1)
        offset = self.global_transformation.num_dofs
        norms = [self.global_transformation.dof_gradient_norm(gradient[:offset])]
        for level in self.levels:
            norms.append(level.dof_gradient_norm(gradient[offset:offset + level.num_dofs]))
            offset += level.num_dofs
        return max(norms)

    def get(self, dof: int) -> float:
        index, local = self._locate(dof)
        if index < 0:
            return self.global_transformation.get(local)
        return self.levels[index].get(local)

    def put(self, dof: int, value: float):
        index, local = self._locate(dof)
        if index < 0:
            self.global_transformation.put(local, value)
        else:
            self.levels[index].put(local, value)
        self.changed()

    def active_mask(self) -> torch.Tensor:
        masks = [self.global_transformation.active_mask()]
        for level, active in zip(self.levels, self._level_active):
            mask = level.active_mask()
            masks.append(mask if active else torch.zeros_like(mask))
        return torch.cat(masks)

    def put_active_mask(self, mask: torch.Tensor):
        mask = torch.as_tensor(mask, dtype=torch.bool).reshape(-1)
        if mask.numel() != self.num_dofs:
            raise ConfigurationError(f"Expected {self.num_dofs} status flags, got {mask.numel()}")
        offset = self.global_transformation.num_dofs
        self.global_transformation.put_active_mask(mask[:offset])
        for level in self.levels:
            level.put_active_mask(mask[offset:offset + level.num_dofs])
            offset += level.num_dofs

    def reset(self):
        self.global_transformation.reset()
        for level in self.levels:
            level.reset()
        self.changed()

    # ------------------------------------------------------------------
    # Level operations
    # ------------------------------------------------------------------

    def combine_local_transformation(self):
        """
        Sum all local velocity fields into the first level

        Levels with the lattice geometry of the first level are added exactly;
        others are sampled at its control points.
        """
        if len(self.levels) < 2:
            return
        target = self.levels[0]
        points = target.lattice.domain.points(dtype=self.dtype, device=self.device).reshape(-1, 3)
        for level in self.levels[1:]:
            if level.lattice.same_geometry(target.lattice):
                target.add(level.dofs())
            else:
                logger.warning(
                    f"Approximating level {level.lattice.domain.size} on lattice {target.lattice.domain.size}"
                )
                target.add(level.evaluator().velocity(points))
        active = any(self._level_active)
        del self.levels[1:]
        self._level_active = [active]
        self.changed()
        logger.info("Combined local transformations into a single level")

    def merge_global_into_local_displacement(self):
        """
        Move the global logarithm into the velocity of the first level

        Cubic B-splines reproduce linear fields, so the mapping is unchanged
        wherever the lattice support is complete; the global transformation is
        reset to the identity.
        """
        if not self.levels:
            raise ConfigurationError("merge_global_into_local_displacement requires at least one local level")
        logA = self.log_matrix()
        target = self.levels[0]
        points = target.lattice.domain.points(dtype=self.dtype, device=self.device).reshape(-1, 3)
        target.add(AffineVelocity(logA).velocity(points))
        self.global_transformation.reset()
        self.changed()
        logger.info("Merged global transformation into local velocity field")

    def invert(self):
        """Replace the transformation by its inverse"""
        M = self.global_transformation.matrix().detach()
        self.global_transformation.put_matrix(torch.linalg.inv(M))
        for level in self.levels:
            level.invert()
        self.changed()

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def state_dict(self) -> Dict[str, Any]:
        integration = self._integration
        return {
            "type": TransformationKind(self.kind).value,
            "time_unit": self.time_unit,
            "integration": None if integration is None else {
                "method": integration.method,
                "min_steps": integration.min_steps,
                "max_scaled_velocity": integration.max_scaled_velocity,
            },
            "global": self.global_transformation.state_dict(),
            "levels": [level.state_dict() for level in self.levels],
            "level_active": list(self._level_active),
        }

    @classmethod
    def _from_state(cls, state: Dict[str, Any]) -> "MultiLevelSVFFD":
        global_state = state["global"]
        global_transformation = transformation_class(global_state["type"])._from_state(global_state)
        integration = state.get("integration")
        transform = cls(
            global_transformation,
            integration=IntegrationConfig(**integration) if integration else None,
            time_unit=state.get("time_unit"),
        )
        # Restore the stored global status after the constructor made it passive
        if "status" in global_state:
            global_transformation.put_active_mask(torch.as_tensor(global_state["status"]))
        for level_state, active in zip(state.get("levels", []), state.get("level_active", [])):
            transform.push_local_transformation(StationaryVelocityFFD._from_state(level_state), active)
        return transform
