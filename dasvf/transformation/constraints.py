"""
DASVF Transformation Constraints

Penalty terms evaluated directly on transformation parameters.

Features:
- TopologyPreservationConstraint: barrier on small local Jacobian
  determinants sampled at the centres of the control point cells
"""

from typing import Optional

import torch

from .base import LatticeTransformation, Transformation
from .multilevel import MultiLevelSVFFD
from ..errors import GradientNotImplementedError
from ..utils.logging_config import get_logger

logger = get_logger("constraints")


class TopologyPreservationConstraint:
    """
    Topology preservation penalty

    For every cell centre with det(J) < threshold the penalty
        10 det(J)^2 + 1 / (10 det(J)^2) - 2
    is added; the sum is averaged over all evaluated cells. Cells include the
    half cells outside the lattice boundary.

    Args:
        transformation: Deformable transformation (lattice based or multi-level)
        weight: Weight of the term in an energy function
        threshold: Determinant below which the penalty applies
        constrain_passive: Whether cells of passive control points are evaluated
        t0: Source time of the Jacobian evaluation
        t1: Target time of the Jacobian evaluation
    """

    name = "TopologyPreservation"

    def __init__(
        self,
        transformation: Transformation,
        weight: float = 1.0,
        threshold: float = 0.3,
        constrain_passive: bool = True,
        t0: float = 0.0,
        t1: float = 0.0,
    ):
        self.transformation = transformation
        self.weight = float(weight)
        self.threshold = float(threshold)
        self.constrain_passive = constrain_passive
        self.t0 = t0
        self.t1 = t1

    def _deformable(self) -> Optional[LatticeTransformation]:
        transform = self.transformation
        if isinstance(transform, MultiLevelSVFFD):
            active = transform.active_level()
            return None if active is None else transform.local_transformation(active)
        if isinstance(transform, LatticeTransformation):
            return transform
        return None

    def cell_centres(self, transform: LatticeTransformation) -> torch.Tensor:
        """World coordinates (N, 3) of the cell centres to evaluate"""
        lattice = transform.lattice
        domain = lattice.domain
        nx, ny, nz = domain.size
        dtype, device = transform.dtype, transform.device
        k, j, i = torch.meshgrid(
            torch.arange(-1, nz, dtype=dtype, device=device),
            torch.arange(-1, ny, dtype=dtype, device=device),
            torch.arange(-1, nx, dtype=dtype, device=device),
            indexing="ij",
        )
        indices = torch.stack([i, j, k], dim=-1).reshape(-1, 3)
        if not self.constrain_passive:
            inside = (indices >= 0).all(dim=-1)
            indices = indices[inside]
            node = indices.long()
            # Node is active if any component in any frame is active
            active = lattice.active_mask().reshape(lattice.data.shape).any(dim=-1).any(dim=0)
            indices = indices[active[node[:, 2], node[:, 1], node[:, 0]]]
        return domain.lattice_to_world(indices + 0.5)

    def evaluate(self) -> float:
        """Unweighted penalty value"""
        transform = self._deformable()
        if transform is None:
            return 0.0
        points = self.cell_centres(transform)
        if points.shape[0] == 0:
            return 0.0
        det = torch.linalg.det(transform.jacobian(points, self.t0, self.t1))
        small = det[det < self.threshold]
        # Non-positive determinants are penalized through the squared term
        small = 10.0 * small * small
        penalty = (small + 1.0 / small - 2.0).sum() / points.shape[0]
        value = float(penalty)
        logger.debug(f"{self.name}: {value:.6f} ({int((det < self.threshold).sum())} of {points.shape[0]} cells)")
        return value

    def value(self) -> float:
        """Weighted penalty value"""
        return self.weight * self.evaluate()

    def evaluate_gradient(self, gradient: torch.Tensor, step: float = 1.0, weight: float = 1.0):
        raise GradientNotImplementedError(f"{self.name} constraint does not implement a gradient")
