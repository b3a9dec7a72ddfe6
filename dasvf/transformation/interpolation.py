"""
DASVF Velocity Evaluation

Continuous evaluation of vector fields and of their spatial Jacobians.

Features:
- VelocityEvaluator contract consumed by the integrators
- LatticeFunction: cubic B-spline or linear interpolation of a ControlLattice,
  with linear interpolation between temporal frames
- Adjoint (transpose) of lattice evaluation with respect to the coefficients
- AffineVelocity: velocity of a matrix logarithm, v(x) = L x + b
- VelocitySum: sum of generators (log-space composition)
- Trilinear sampling of dense fields in voxel units with border padding, and
  its vector-Jacobian product (transposed sampling)

All lookups go through deepali's grid_sample with align_corners=True, so node
i of an axis with n nodes sits at the normalized coordinate 2 i / (n - 1) - 1.
A cubic B-spline is evaluated with eight trilinear fetches. Along each axis
the weights w0..w3 of nodes i-1..i+2 fold into two linear lookups:

    w0 c[i-1] + w1 c[i]   = g0 * lerp(c[i-1], c[i], w1 / g0),    g0 = w0 + w1
    w2 c[i+1] + w3 c[i+2] = g1 * lerp(c[i+1], c[i+2], w3 / g1),  g1 = w2 + w3

Coefficients outside the lattice are zero. Lattice coordinates are (X, Y, Z);
dense fields are stored in (Z, Y, X, C) order. Derivatives (spatial Jacobian,
coefficient adjoint, transposed sampling) are taken with torch.autograd, which
is exact since every lookup is piecewise linear in both coefficients and
sample positions.
"""

from abc import ABC, abstractmethod
from typing import Optional, Sequence, Tuple

import torch
import torch.nn.functional as F
from deepali.core import PaddingMode, Sampling
from deepali.core import functional as U

from .lattice import ControlLattice
from ..errors import ConfigurationError, GradientNotImplementedError
from ..utils.parallel import DEFAULT_MIN_CHUNK_SIZE, parallel_for, parallel_reduce


# ----------------------------------------------------------------------
# Lookups
# ----------------------------------------------------------------------

def cubic_bspline_weights(t: torch.Tensor) -> torch.Tensor:
    """
    Cubic B-spline weights of the nodes i-1, i, i+1, i+2 at u = i + t

    Same polynomials as deepali's cubic_bspline_interpolation_weights, but
    evaluated at arbitrary offsets t in [0, 1) rather than at a fixed stride.

    Returns:
        Weights of shape t.shape + (4,), summing to one
    """
    w3 = t.pow(3) / 6.0
    w0 = t * (t - 1.0) / 2.0 + 1.0 / 6.0 - w3
    w2 = t + w0 - 2.0 * w3
    w1 = 1.0 - w0 - w2 - w3
    return torch.stack([w0, w1, w2, w3], dim=-1)


def normalize_coordinates(q: torch.Tensor, size: Sequence[int]) -> torch.Tensor:
    """
    Map node coordinates (X, Y, Z) to grid_sample coordinates

    Args:
        q: Continuous node coordinates, shape (..., 3)
        size: Number of nodes (X, Y, Z)

    Returns:
        Normalized coordinates in [-1, 1] for points inside the grid; singleton
        axes map to 0
    """
    n = torch.tensor(list(size), dtype=q.dtype, device=q.device)
    extent = (n > 1).to(q.dtype)
    return q * (2.0 * extent / (n - 1).clamp(min=1)) - extent


def _fetch(data: torch.Tensor, grid: torch.Tensor, padding: PaddingMode) -> torch.Tensor:
    """
    Trilinear lookups

    Args:
        data: Values (B, C, Z, Y, X)
        grid: Normalized positions (1 or B, K, M, 3)

    Returns:
        Sampled values (B, C, K, M)
    """
    out = U.grid_sample(data, grid.unsqueeze(1), mode=Sampling.LINEAR, padding=padding, align_corners=True)
    return out.squeeze(2)


# ----------------------------------------------------------------------
# Dense fields in voxel units
# ----------------------------------------------------------------------

def sample_field(field: torch.Tensor, y: torch.Tensor) -> torch.Tensor:
    """
    Trilinear interpolation of a dense field with border padding

    Args:
        field: Field values, shape (Z, Y, X, C)
        y: Sample positions in voxel units (X, Y, Z), shape (N, 3)

    Returns:
        Interpolated values, shape (N, C)
    """
    nz, ny, nx, c = field.shape
    data = field.permute(3, 0, 1, 2).unsqueeze(0)
    grid = normalize_coordinates(y, (nx, ny, nz)).reshape(1, 1, -1, 3)
    return _fetch(data, grid, PaddingMode.BORDER).reshape(c, -1).T


def sample_field_vjp(
    field: torch.Tensor, y: torch.Tensor, vectors: torch.Tensor
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Vector-Jacobian products of sample_field

    For s = sample_field(field, y) and adjoint vectors w, returns the
    derivatives of <s, w> with respect to the field (the transposed sampling,
    which splats w onto the grid) and with respect to the positions
    (J(y)^T w, zero where the border padding clips).

    Args:
        field: Field values, shape (Z, Y, X, C)
        y: Sample positions in voxel units (X, Y, Z), shape (N, 3)
        vectors: Adjoint vectors, shape (N, C)

    Returns:
        (splat, shape (Z, Y, X, C), position gradient, shape (N, 3))
    """
    with torch.enable_grad():
        field = field.detach().requires_grad_(True)
        y = y.detach().requires_grad_(True)
        values = sample_field(field, y)
        splat, grad_y = torch.autograd.grad(values, (field, y), grad_outputs=vectors.to(values.dtype))
    return splat, grad_y


# ----------------------------------------------------------------------
# Velocity evaluators
# ----------------------------------------------------------------------

class VelocityEvaluator(ABC):
    """
    Continuous velocity field contract

    velocity() and jacobian() are defined for any world point; how values
    outside the support are extrapolated is up to the implementation.
    """

    time_dependent = False

    @abstractmethod
    def velocity(self, points: torch.Tensor, t: Optional[float] = None) -> torch.Tensor:
        """Velocity at world points (N, 3), returns (N, 3)"""

    @abstractmethod
    def jacobian(self, points: torch.Tensor, t: Optional[float] = None) -> torch.Tensor:
        """Spatial Jacobian of the velocity at world points, returns (N, 3, 3)"""

    @abstractmethod
    def max_norm_bound(self) -> float:
        """Upper bound of the velocity norm that does not depend on query points"""

    @property
    def cell_size(self) -> Optional[float]:
        """Reference length of the discretization, if any"""
        return None


class LatticeFunction(VelocityEvaluator):
    """
    Interpolated vector field of a ControlLattice

    Temporal lattices are interpolated linearly between frames (clamped at the
    first and last frame); the time argument may be a scalar or one time per
    point.

    Args:
        lattice: Control point lattice (read only)
        kernel: "bspline" (cubic B-spline) or "linear"
        num_threads: Worker threads for large point sets (0 = one per core)
        min_chunk_size: Points per worker below which evaluation runs inline
    """

    def __init__(
        self,
        lattice: ControlLattice,
        kernel: str = "bspline",
        num_threads: int = 0,
        min_chunk_size: int = DEFAULT_MIN_CHUNK_SIZE,
    ):
        kernel = kernel.lower()
        if kernel not in ("bspline", "linear"):
            raise ConfigurationError(f"Unknown lattice kernel: {kernel}")
        self.lattice = lattice
        self.kernel = kernel
        self.num_threads = num_threads
        self.min_chunk_size = min_chunk_size
        self.time_dependent = lattice.num_frames > 1

    @property
    def cell_size(self) -> float:
        return self.lattice.cell_size

    def max_norm_bound(self) -> float:
        # Non-negative weights with partition of unity (convex hull property)
        return float(self.lattice.data.norm(dim=-1).max())

    def _frames(self, t, n: int, dtype: torch.dtype, device) -> Tuple[torch.Tensor, torch.Tensor]:
        """Frame indices (N, 2) and weights (N, 2) of linear interpolation in time"""
        lattice = self.lattice
        if t is None:
            raise ConfigurationError("A time-dependent lattice requires a time argument")
        u = (torch.as_tensor(t, dtype=dtype, device=device) - lattice.temporal_origin) / lattice.temporal_spacing
        if u.dim() == 0:
            u = u.expand(n)
        u = u.clamp(0, lattice.num_frames - 1)
        f = torch.floor(u).clamp(max=lattice.num_frames - 2)
        a = u - f
        f = f.long()
        return torch.stack([f, f + 1], dim=-1), torch.stack([1.0 - a, a], dim=-1)

    def _padded(self, data: Optional[torch.Tensor] = None) -> torch.Tensor:
        """Coefficients as (T, 3, Z + 2, Y + 2, X + 2), surrounded by zero nodes"""
        data = self.lattice.data if data is None else data
        return F.pad(data.permute(0, 4, 1, 2, 3), (1, 1, 1, 1, 1, 1))

    def _lookups(self, u: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Normalized lookup positions and weights at lattice coordinates

        Args:
            u: Continuous lattice coordinates (X, Y, Z), shape (M, 3)

        Returns:
            Positions (K, M, 3) in the padded lattice and weights (K, M), with
            K = 8 for the cubic B-spline and K = 1 for the linear kernel
        """
        size = [n + 2 for n in self.lattice.domain.size]
        q = u + 1.0
        if self.kernel == "linear":
            return normalize_coordinates(q, size).unsqueeze(0), torch.ones_like(q[:, :1]).T
        i = torch.floor(q)
        w = cubic_bspline_weights(q - i)
        g = torch.stack([w[..., 0] + w[..., 1], w[..., 2] + w[..., 3]])
        p = torch.stack([i - 1.0 + w[..., 1] / g[0], i + 1.0 + w[..., 3] / g[1]])
        corners = [(a, b, c) for c in (0, 1) for b in (0, 1) for a in (0, 1)]
        positions = torch.stack([torch.stack([p[a, :, 0], p[b, :, 1], p[c, :, 2]], dim=-1) for a, b, c in corners])
        weights = torch.stack([g[a, :, 0] * g[b, :, 1] * g[c, :, 2] for a, b, c in corners])
        return normalize_coordinates(positions, size), weights

    def _evaluate(self, coeffs: torch.Tensor, u: torch.Tensor, t) -> torch.Tensor:
        """Velocity (M, 3) at lattice coordinates u from padded coefficients"""
        positions, weights = self._lookups(u)
        values = (_fetch(coeffs, positions.unsqueeze(0), PaddingMode.ZEROS) * weights).sum(dim=2)
        if self.lattice.num_frames == 1:
            return values[0].T
        frames, fw = self._frames(t, u.shape[0], u.dtype, u.device)
        per_frame = values.permute(2, 0, 1)
        picked = torch.gather(per_frame, 1, frames.unsqueeze(-1).expand(-1, -1, 3))
        return (fw.unsqueeze(-1) * picked).sum(dim=1)

    @staticmethod
    def _time_slice(t, start: int, stop: int):
        if torch.is_tensor(t) and t.dim() > 0:
            return t[start:stop]
        return t

    def _map_chunks(self, fn, points: torch.Tensor, width: Tuple[int, ...]) -> torch.Tensor:
        n = points.shape[0]
        if n == 0:
            return torch.zeros((0,) + width, dtype=points.dtype, device=points.device)
        parts = parallel_for(fn, n, num_threads=self.num_threads, min_chunk_size=self.min_chunk_size)
        return torch.cat(parts, dim=0)

    def velocity(self, points: torch.Tensor, t=None, data: Optional[torch.Tensor] = None) -> torch.Tensor:
        coeffs = self._padded(data)
        to_lattice = self.lattice.domain.world_to_lattice

        def evaluate(start: int, stop: int) -> torch.Tensor:
            return self._evaluate(coeffs, to_lattice(points[start:stop]), self._time_slice(t, start, stop))

        return self._map_chunks(evaluate, points, (3,))

    def jacobian(self, points: torch.Tensor, t=None) -> torch.Tensor:
        return self.velocity_and_jacobian(points, t)[1]

    def velocity_and_jacobian(self, points: torch.Tensor, t=None) -> Tuple[torch.Tensor, torch.Tensor]:
        coeffs = self._padded().detach()
        to_lattice = self.lattice.domain.world_to_lattice
        A = self.lattice.domain.world_to_lattice_linear(dtype=points.dtype, device=points.device)

        def evaluate(start: int, stop: int) -> torch.Tensor:
            # grad mode is thread-local
            with torch.enable_grad():
                u = to_lattice(points[start:stop]).detach().requires_grad_(True)
                v = self._evaluate(coeffs, u, self._time_slice(t, start, stop))
                rows = [torch.autograd.grad(v[:, c].sum(), u, retain_graph=c < 2)[0] for c in range(3)]
            J = torch.stack(rows, dim=1) @ A
            return torch.cat([v.detach().unsqueeze(-1), J], dim=-1)

        packed = self._map_chunks(evaluate, points, (3, 4))
        return packed[..., 0], packed[..., 1:]

    def node_velocity(self, points: torch.Tensor, dof: int, t=None) -> torch.Tensor:
        """Derivative of the velocity at points with respect to one DOF"""
        onehot = torch.zeros_like(self.lattice.data)
        onehot.view(-1)[int(dof)] = 1.0
        return self.velocity(points, t, data=onehot)

    def adjoint(self, points: torch.Tensor, vectors: torch.Tensor, t=None) -> torch.Tensor:
        """
        Transpose of the evaluation with respect to the lattice coefficients

        Accumulates sum_i w_j(x_i) * vectors_i for every control point j.

        Args:
            points: World points, shape (N, 3)
            vectors: Adjoint vectors at the points, shape (N, 3)
            t: Time of evaluation for temporal lattices

        Returns:
            Tensor of the lattice data shape (T, Z, Y, X, 3)
        """
        lattice = self.lattice
        if points.shape[0] == 0:
            return torch.zeros_like(lattice.data)
        to_lattice = lattice.domain.world_to_lattice

        def accumulate(start: int, stop: int) -> torch.Tensor:
            with torch.enable_grad():
                data = torch.zeros_like(lattice.data, requires_grad=True)
                u = to_lattice(points[start:stop].detach())
                v = self._evaluate(self._padded(data), u, self._time_slice(t, start, stop))
                (grad,) = torch.autograd.grad(v, data, grad_outputs=vectors[start:stop].to(v.dtype))
            return grad

        return parallel_reduce(accumulate, points.shape[0], num_threads=self.num_threads, min_chunk_size=self.min_chunk_size)


class AffineVelocity(VelocityEvaluator):
    """
    Stationary velocity of a matrix logarithm: v(x) = L x + b

    Args:
        generator: 4x4 (or 3x4) matrix logarithm [L b]
        support: Optional world points (M, 3) whose convex hull bounds the
            region of interest; used for the velocity norm bound
    """

    def __init__(self, generator: torch.Tensor, support: Optional[torch.Tensor] = None):
        generator = torch.as_tensor(generator)
        self.linear = generator[:3, :3]
        self.offset = generator[:3, 3]
        self.support = support

    def velocity(self, points: torch.Tensor, t: Optional[float] = None) -> torch.Tensor:
        L = self.linear.to(dtype=points.dtype, device=points.device)
        b = self.offset.to(dtype=points.dtype, device=points.device)
        return points @ L.T + b

    def jacobian(self, points: torch.Tensor, t: Optional[float] = None) -> torch.Tensor:
        L = self.linear.to(dtype=points.dtype, device=points.device)
        return L.expand(points.shape[0], 3, 3).clone()

    def max_norm_bound(self) -> float:
        if not bool(self.linear.abs().max() > 0):
            return float(self.offset.norm())
        if self.support is None:
            raise ConfigurationError("Velocity bound of a non-translational affine generator requires support points")
        # |L x + b| is convex, so its maximum over a convex hull is at a vertex
        return float(self.velocity(self.support.to(self.linear.dtype)).norm(dim=-1).max())

    def adjoint(self, points: torch.Tensor, vectors: torch.Tensor, t: Optional[float] = None) -> torch.Tensor:
        raise GradientNotImplementedError("Affine velocity has no lattice coefficients")


class VelocitySum(VelocityEvaluator):
    """Sum of velocity fields (generators composed in log-space)"""

    def __init__(self, terms: Sequence[VelocityEvaluator]):
        self.terms = list(terms)
        self.time_dependent = any(term.time_dependent for term in self.terms)

    def velocity(self, points: torch.Tensor, t: Optional[float] = None) -> torch.Tensor:
        v = torch.zeros_like(points)
        for term in self.terms:
            v = v + term.velocity(points, t)
        return v

    def jacobian(self, points: torch.Tensor, t: Optional[float] = None) -> torch.Tensor:
        J = torch.zeros(points.shape[0], 3, 3, dtype=points.dtype, device=points.device)
        for term in self.terms:
            J = J + term.jacobian(points, t)
        return J

    def velocity_and_jacobian(self, points: torch.Tensor, t: Optional[float] = None) -> Tuple[torch.Tensor, torch.Tensor]:
        return self.velocity(points, t), self.jacobian(points, t)

    def max_norm_bound(self) -> float:
        return sum(term.max_norm_bound() for term in self.terms)

    @property
    def cell_size(self) -> Optional[float]:
        sizes = [term.cell_size for term in self.terms if term.cell_size is not None]
        return min(sizes) if sizes else None


def velocity_and_jacobian(
    evaluator: VelocityEvaluator, points: torch.Tensor, t: Optional[float] = None
) -> Tuple[torch.Tensor, torch.Tensor]:
    """Velocity and spatial Jacobian, fused where the evaluator supports it"""
    fused = getattr(evaluator, "velocity_and_jacobian", None)
    if fused is not None:
        return fused(points, t)
    return evaluator.velocity(points, t), evaluator.jacobian(points, t)
