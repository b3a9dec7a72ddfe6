"""
DASVF Image Domain

Regular sampling grid attributes shared by image domains and control lattices.

All vectors are in (X, Y, Z) order; dense arrays sampled on a domain are stored
in (Z, Y, X, C) order so that array[k, j, i] is the value at index (i, j, k).

World <-> lattice conversion:
    lattice = S^-1 @ R^T @ (world - origin)
    world   = origin + R @ S @ lattice
where R is the direction cosine matrix (columns are axis vectors) and S the
diagonal spacing matrix.
"""

from typing import Optional, Sequence, Tuple

import numpy as np
import torch
from deepali.core import Grid

from ..errors import ConfigurationError


def _as_xyz(values, name: str, dtype=float) -> Tuple:
    if hasattr(values, "tolist"):
        values = values.tolist()
    values = tuple(dtype(v) for v in values)
    if len(values) != 3:
        raise ConfigurationError(f"{name} must have 3 components (X, Y, Z), got {len(values)}")
    return values


class ImageDomain:
    """
    Geometry of a regular 3D sampling grid

    Attributes:
        size: Number of samples (X, Y, Z)
        spacing: Sample spacing in mm (X, Y, Z)
        origin: World coordinates of the sample with index (0, 0, 0)
        direction: 3x3 direction cosine matrix (columns are axis vectors)
    """

    def __init__(
        self,
        size: Sequence[int],
        spacing: Optional[Sequence[float]] = None,
        origin: Optional[Sequence[float]] = None,
        direction: Optional[np.ndarray] = None,
    ):
        self.size = _as_xyz(size, "size", int)
        self.spacing = _as_xyz(spacing if spacing is not None else (1.0, 1.0, 1.0), "spacing")
        self.origin = _as_xyz(origin if origin is not None else (0.0, 0.0, 0.0), "origin")
        direction = np.eye(3) if direction is None else np.asarray(direction, dtype=np.float64)
        if direction.shape == (9,):
            direction = direction.reshape(3, 3)
        if direction.shape != (3, 3):
            raise ConfigurationError(f"direction must be a 3x3 matrix, got shape {direction.shape}")
        self.direction = direction

        if any(n < 1 for n in self.size):
            raise ConfigurationError(f"Domain size must be positive, got {self.size}")
        if any(not s > 0 for s in self.spacing):
            raise ConfigurationError(f"Domain spacing must be positive, got {self.spacing}")
        if not np.all(np.isfinite(self.direction)) or abs(np.linalg.det(self.direction)) < 1e-12:
            raise ConfigurationError("Domain direction matrix must be finite and non-singular")

    # ------------------------------------------------------------------
    # Attributes
    # ------------------------------------------------------------------

    @property
    def shape(self) -> Tuple[int, int, int]:
        """Array shape (Z, Y, X)"""
        return (self.size[2], self.size[1], self.size[0])

    @property
    def num_voxels(self) -> int:
        return self.size[0] * self.size[1] * self.size[2]

    @property
    def min_spacing(self) -> float:
        return min(self.spacing)

    def key(self) -> Tuple:
        """Hashable identity of the sampling grid"""
        return (
            self.size,
            tuple(round(v, 9) for v in self.spacing),
            tuple(round(v, 9) for v in self.origin),
            tuple(round(float(v), 9) for v in self.direction.flatten()),
        )

    def __eq__(self, other) -> bool:
        if not isinstance(other, ImageDomain):
            return NotImplemented
        return self.key() == other.key()

    def __hash__(self) -> int:
        return hash(self.key())

    def __repr__(self) -> str:
        return (
            f"ImageDomain(size={self.size}, spacing={self.spacing}, origin={self.origin})"
        )

    def copy(self) -> "ImageDomain":
        return ImageDomain(self.size, self.spacing, self.origin, self.direction.copy())

    # ------------------------------------------------------------------
    # Coordinate maps
    # ------------------------------------------------------------------

    def lattice_to_world_matrix(self) -> np.ndarray:
        """4x4 matrix mapping lattice indices (X, Y, Z) to world coordinates"""
        l2w = np.eye(4)
        l2w[:3, :3] = self.direction @ np.diag(self.spacing)
        l2w[:3, 3] = self.origin
        return l2w

    def world_to_lattice_matrix(self) -> np.ndarray:
        """4x4 matrix mapping world coordinates to lattice indices (X, Y, Z)"""
        T_inv = np.eye(4)
        T_inv[:3, 3] = -np.asarray(self.origin)

        R_inv = np.eye(4)
        R_inv[:3, :3] = np.linalg.inv(self.direction)

        S_inv = np.eye(4)
        S_inv[0, 0] = 1.0 / self.spacing[0]
        S_inv[1, 1] = 1.0 / self.spacing[1]
        S_inv[2, 2] = 1.0 / self.spacing[2]

        return S_inv @ R_inv @ T_inv

    def world_to_lattice(self, points: torch.Tensor) -> torch.Tensor:
        """Map world points [..., 3] to continuous lattice coordinates [..., 3]"""
        w2l = torch.as_tensor(self.world_to_lattice_matrix(), dtype=points.dtype, device=points.device)
        return points @ w2l[:3, :3].T + w2l[:3, 3]

    def lattice_to_world(self, indices: torch.Tensor) -> torch.Tensor:
        """Map continuous lattice coordinates [..., 3] to world points [..., 3]"""
        l2w = torch.as_tensor(self.lattice_to_world_matrix(), dtype=indices.dtype, device=indices.device)
        return indices @ l2w[:3, :3].T + l2w[:3, 3]

    def world_to_lattice_linear(self, dtype=torch.float64, device=None) -> torch.Tensor:
        """Linear part A of the world to lattice map (d lattice / d world)"""
        return torch.as_tensor(self.world_to_lattice_matrix()[:3, :3], dtype=dtype, device=device)

    def lattice_to_world_linear(self, dtype=torch.float64, device=None) -> torch.Tensor:
        """Linear part of the lattice to world map (d world / d lattice)"""
        return torch.as_tensor(self.lattice_to_world_matrix()[:3, :3], dtype=dtype, device=device)

    # ------------------------------------------------------------------
    # Sample coordinates
    # ------------------------------------------------------------------

    def indices(self, dtype=torch.float64, device=None) -> torch.Tensor:
        """Lattice indices (X, Y, Z) of all samples, shape (Z, Y, X, 3)"""
        nx, ny, nz = self.size
        k, j, i = torch.meshgrid(
            torch.arange(nz, dtype=dtype, device=device),
            torch.arange(ny, dtype=dtype, device=device),
            torch.arange(nx, dtype=dtype, device=device),
            indexing="ij",
        )
        return torch.stack([i, j, k], dim=-1)

    def points(self, dtype=torch.float64, device=None) -> torch.Tensor:
        """World coordinates of all samples, shape (Z, Y, X, 3)"""
        return self.lattice_to_world(self.indices(dtype=dtype, device=device))

    def corners(self) -> np.ndarray:
        """World coordinates of the 8 corner samples, shape (8, 3)"""
        nx, ny, nz = self.size
        idx = np.array(
            [[i, j, k] for k in (0, nz - 1) for j in (0, ny - 1) for i in (0, nx - 1)],
            dtype=np.float64,
        )
        l2w = self.lattice_to_world_matrix()
        return idx @ l2w[:3, :3].T + l2w[:3, 3]

    def center(self) -> np.ndarray:
        """World coordinates of the domain centre"""
        l2w = self.lattice_to_world_matrix()
        idx = (np.asarray(self.size, dtype=np.float64) - 1.0) / 2.0
        return l2w[:3, :3] @ idx + l2w[:3, 3]

    # ------------------------------------------------------------------
    # deepali interop
    # ------------------------------------------------------------------

    @classmethod
    def from_grid(cls, grid: Grid) -> "ImageDomain":
        """
        Create domain from a deepali Grid

        deepali returns size/spacing/origin in (X, Y, Z) order; size() may be
        a torch.Size (no .tolist()) or a tensor.
        """
        if grid.ndim != 3:
            raise ConfigurationError(f"Only 3D grids are supported, got {grid.ndim}D")
        size_val = grid.size()
        size = tuple(int(s) for s in (size_val.tolist() if hasattr(size_val, "tolist") else size_val))
        spacing = grid.spacing().detach().cpu().tolist()
        origin = grid.origin().detach().cpu().tolist()
        direction = grid.direction().detach().cpu().numpy().astype(np.float64)
        return cls(size, spacing, origin, direction)

    def to_grid(self) -> Grid:
        """Create an equivalent deepali Grid (align_corners=True)"""
        return Grid(
            size=self.size,
            spacing=self.spacing,
            origin=self.origin,
            direction=torch.as_tensor(self.direction, dtype=torch.float64),
            align_corners=True,
        )
