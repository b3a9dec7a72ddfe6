"""
DASVF Adjoint Gradient Engine

Converts a voxel-wise gradient of an energy with respect to the displacement
into a gradient with respect to the lattice DOFs by replaying the forward
integration path in reverse.

Scaling and squaring path, for u_{k+1}(i) = u_k(i) + u_k(i + u_k(i)):
    lambda_k = lambda_{k+1} + S_k^T lambda_{k+1} + (grad u_k)^T lambda_{k+1}
where S_k^T splats lambda_{k+1} at the sample positions i + u_k(i). Both
terms are the vector-Jacobian product of the trilinear lookup. The
velocity adjoint scale * A^T lambda_0 is then splatted onto the lattice.

Forward Euler path, for x_{k+1} = x_k + dt_k v(x_k, t_k) (dt_k may differ per point):
    dE/dc   += dt_k * B(x_k)^T lambda_{k+1}
    lambda_k = lambda_{k+1} + dt_k * J_v(x_k)^T lambda_{k+1}

Reductions use per-worker partial accumulators merged after each sweep; the
summation order across voxels is unspecified.
"""

from typing import List, Optional, Sequence

import torch

from .integration import IntegrationTrajectory, SquaringTrajectory
from .interpolation import LatticeFunction, sample_field_vjp
from ..utils.logging_config import get_logger, Timer
from ..utils.parallel import DEFAULT_MIN_CHUNK_SIZE, parallel_for

logger = get_logger("adjoint")


def accumulate_gradient(
    gradient: torch.Tensor,
    out: Optional[torch.Tensor] = None,
    weight: float = 1.0,
    active: Optional[torch.Tensor] = None,
) -> torch.Tensor:
    """
    Add weight * gradient to out, skipping passive DOFs

    Args:
        gradient: DOF gradient (any shape, flattened in lattice-major order)
        out: Output gradient vector (allocated if None), updated in place
        weight: Scalar weight of the energy term
        active: Boolean mask of DOFs receiving a contribution (None = all)

    Returns:
        The output gradient vector
    """
    gradient = gradient.reshape(-1)
    if active is not None:
        gradient = torch.where(active.to(gradient.device), gradient, torch.zeros_like(gradient))
    if out is None:
        out = torch.zeros_like(gradient)
    out.add_(gradient.to(out.dtype), alpha=weight)
    return out


class AdjointGradientEngine:
    """
    Reverse replay of integration trajectories

    Args:
        num_threads: Worker threads for voxel sweeps (0 = one per core)
        min_chunk_size: Voxels per worker below which sweeps run inline
    """

    def __init__(self, num_threads: int = 0, min_chunk_size: int = DEFAULT_MIN_CHUNK_SIZE):
        self.num_threads = num_threads
        self.min_chunk_size = min_chunk_size

    def velocity_adjoint(self, trajectory: SquaringTrajectory, gradient: torch.Tensor) -> torch.Tensor:
        """
        Gradient of the energy with respect to the velocity at each voxel

        Args:
            trajectory: Recorded scaling and squaring trajectory
            gradient: dE/d displacement in world units, shape (Z, Y, X, 3)

        Returns:
            dE/dv at trajectory.points in world units, shape (N, 3)
        """
        domain = trajectory.domain
        points = trajectory.points
        dtype, device = points.dtype, points.device
        shape = domain.shape

        L = domain.lattice_to_world_linear(dtype=dtype, device=device)
        A = domain.world_to_lattice_linear(dtype=dtype, device=device)
        lam = gradient.reshape(-1, 3).to(dtype) @ L
        indices = domain.indices(dtype=dtype, device=device).reshape(-1, 3)

        with Timer("squaring adjoint", logger, detail=f"{len(trajectory.fields)} squarings"):
            for u in reversed(trajectory.fields):
                field_ = u.reshape(tuple(shape) + (3,))
                lam_next = lam

                def step(start: int, stop: int):
                    y = indices[start:stop] + u[start:stop]
                    lk = lam_next[start:stop]
                    splat, grad_y = sample_field_vjp(field_, y, lk)
                    return lk + grad_y, splat.reshape(-1, 3)

                results = parallel_for(step, lam.shape[0], num_threads=self.num_threads, min_chunk_size=self.min_chunk_size)
                lam = torch.cat([own for own, _ in results], dim=0)
                for _, partial in results:
                    lam = lam + partial

        return trajectory.scale * (lam @ A)

    def squaring_gradient(
        self,
        trajectory: SquaringTrajectory,
        gradient: torch.Tensor,
        targets: Sequence[LatticeFunction],
    ) -> List[torch.Tensor]:
        """
        DOF gradients of lattices whose velocities sum to the integrated field

        Returns:
            One tensor of the lattice data shape per target
        """
        if trajectory.num_squarings == 0 and not trajectory.fields:
            if trajectory.scale == 0:
                return [torch.zeros_like(target.lattice.data) for target in targets]
            # Without squarings the displacement is exactly T v
            mu = trajectory.scale * gradient.reshape(-1, 3).to(trajectory.points.dtype)
        else:
            mu = self.velocity_adjoint(trajectory, gradient)
        return [target.adjoint(trajectory.points, mu) for target in targets]

    def trajectory_gradient(
        self,
        trajectory: IntegrationTrajectory,
        gradient: torch.Tensor,
        targets: Sequence[LatticeFunction],
        time_offset: float = 0.0,
    ) -> List[torch.Tensor]:
        """
        DOF gradients along a recorded forward Euler path

        Args:
            trajectory: Recorded point trajectory (with velocity Jacobians)
            gradient: dE/d final position, shape (N, 3)
            targets: Lattices whose velocities sum to the integrated field
            time_offset: Added to the recorded step times for temporal lattices

        Returns:
            One tensor of the lattice data shape per target
        """
        lam = gradient.reshape(-1, 3).clone()
        outs = [torch.zeros_like(target.lattice.data) for target in targets]
        with Timer("trajectory adjoint", logger, detail=f"{trajectory.num_steps} steps"):
            for k in reversed(range(trajectory.num_steps)):
                x = trajectory.points[k]
                dt = trajectory.steps[k]
                if torch.is_tensor(dt):
                    dt = dt.unsqueeze(-1)
                t = trajectory.times[k] + time_offset
                for target, out in zip(targets, outs):
                    out.add_(target.adjoint(x, dt * lam, t))
                lam = lam + dt * torch.einsum("nad,na->nd", trajectory.jacobians[k], lam)
        return outs
