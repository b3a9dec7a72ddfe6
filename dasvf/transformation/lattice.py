"""
DASVF Control Lattice

Regular grid of vector-valued degrees of freedom (DOFs) with per-DOF
active/passive status and a version counter.

Layout:
- data: tensor of shape (T, Z, Y, X, 3); T = 1 for a stationary lattice
- flat DOF index = node * 3 + component,
  node = ((t * Z + z) * Y + y) * X + x   (lattice-major order)

Every mutation increments `version`, so dependent caches are invalidated
lazily when they next compare against it.
"""

import math
from enum import IntEnum
from typing import Optional, Sequence, Tuple, Union

import numpy as np
import torch

from ..data.domain import ImageDomain
from ..errors import ConfigurationError


class DOFStatus(IntEnum):
    """Optimization status of a single DOF"""
    ACTIVE = 0
    PASSIVE = 1


class ControlLattice:
    """
    Control point lattice owning the DOF values of one transformation

    Args:
        domain: Spatial geometry of the control points
        num_frames: Number of temporal frames (1 = stationary)
        temporal_origin: Time of the first frame
        temporal_spacing: Time between frames
        data: Optional initial DOF values, shape (T, Z, Y, X, 3) or (Z, Y, X, 3)
        dtype: Floating point type of the DOF tensor
        device: Device of the DOF tensor
    """

    def __init__(
        self,
        domain: ImageDomain,
        num_frames: int = 1,
        temporal_origin: float = 0.0,
        temporal_spacing: float = 1.0,
        data: Optional[torch.Tensor] = None,
        dtype: torch.dtype = torch.float64,
        device: Optional[Union[str, torch.device]] = None,
    ):
        if num_frames < 1:
            raise ConfigurationError(f"Number of lattice frames must be >= 1, got {num_frames}")
        if num_frames > 1 and not temporal_spacing > 0:
            raise ConfigurationError(f"Temporal lattice spacing must be positive, got {temporal_spacing}")

        self.domain = domain
        self.num_frames = int(num_frames)
        self.temporal_origin = float(temporal_origin)
        self.temporal_spacing = float(temporal_spacing)

        nz, ny, nx = domain.shape
        shape = (self.num_frames, nz, ny, nx, 3)
        if data is None:
            self.data = torch.zeros(shape, dtype=dtype, device=device)
        else:
            data = torch.as_tensor(data, dtype=dtype, device=device)
            if data.dim() == 4 and self.num_frames == 1:
                data = data.unsqueeze(0)
            if tuple(data.shape) != shape:
                raise ConfigurationError(
                    f"Lattice data shape {tuple(data.shape)} does not match lattice attributes {shape}"
                )
            self.data = data.clone()

        self._active = torch.ones(self.num_dofs, dtype=torch.bool, device=self.data.device)
        self.version = 0

    @classmethod
    def from_domain(
        cls,
        domain: ImageDomain,
        spacing: Union[float, Sequence[float]],
        num_frames: int = 1,
        temporal_origin: float = 0.0,
        temporal_spacing: float = 1.0,
        dtype: torch.dtype = torch.float64,
        device: Optional[Union[str, torch.device]] = None,
    ) -> "ControlLattice":
        """
        Create a lattice covering an image domain

        The lattice has the orientation of the domain, is centred on the
        domain centre, and has enough control points to span the domain extent
        with the given control point spacing.
        """
        if isinstance(spacing, (int, float)):
            spacing = (float(spacing),) * 3
        spacing = tuple(float(s) for s in spacing)
        if len(spacing) != 3 or any(not s > 0 for s in spacing):
            raise ConfigurationError(f"Control point spacing must be 3 positive values, got {spacing}")

        size = []
        for n, ds, cs in zip(domain.size, domain.spacing, spacing):
            extent = (n - 1) * ds
            size.append(int(math.ceil(extent / cs - 1e-6)) + 1)

        offset = domain.direction @ (np.asarray(spacing) * (np.asarray(size, dtype=np.float64) - 1.0) / 2.0)
        origin = domain.center() - offset
        lattice_domain = ImageDomain(size, spacing, origin, domain.direction.copy())
        return cls(
            lattice_domain,
            num_frames=num_frames,
            temporal_origin=temporal_origin,
            temporal_spacing=temporal_spacing,
            dtype=dtype,
            device=device,
        )

    # ------------------------------------------------------------------
    # Attributes
    # ------------------------------------------------------------------

    @property
    def dtype(self) -> torch.dtype:
        return self.data.dtype

    @property
    def device(self) -> torch.device:
        return self.data.device

    @property
    def num_nodes(self) -> int:
        return self.num_frames * self.domain.num_voxels

    @property
    def num_dofs(self) -> int:
        return self.num_nodes * 3

    @property
    def cell_size(self) -> float:
        """Smallest control point spacing"""
        return self.domain.min_spacing

    def dof_index(self, x: int, y: int, z: int, component: int, t: int = 0) -> int:
        """Flat DOF index of a node component"""
        nx, ny, nz = self.domain.size
        node = ((t * nz + z) * ny + y) * nx + x
        return node * 3 + component

    def node_of(self, dof: int) -> Tuple[int, int, int, int, int]:
        """Lattice coordinates (x, y, z, t, component) of a flat DOF index"""
        nx, ny, nz = self.domain.size
        node, component = divmod(int(dof), 3)
        node, x = divmod(node, nx)
        node, y = divmod(node, ny)
        t, z = divmod(node, nz)
        return x, y, z, t, component

    # ------------------------------------------------------------------
    # DOF access
    # ------------------------------------------------------------------

    def _check_dof(self, dof: int) -> int:
        dof = int(dof)
        if dof < 0 or dof >= self.num_dofs:
            raise IndexError(f"DOF index {dof} out of range [0, {self.num_dofs})")
        return dof

    def get(self, dof: int) -> float:
        return float(self.data.view(-1)[self._check_dof(dof)])

    def put(self, dof: int, value: float):
        self.data.view(-1)[self._check_dof(dof)] = float(value)
        self.version += 1

    def dofs(self) -> torch.Tensor:
        """Copy of all DOF values in lattice-major order"""
        return self.data.reshape(-1).clone()

    def put_dofs(self, values: torch.Tensor):
        values = torch.as_tensor(values, dtype=self.dtype, device=self.device).reshape(-1)
        if values.numel() != self.num_dofs:
            raise ConfigurationError(f"Expected {self.num_dofs} DOF values, got {values.numel()}")
        self.data.copy_(values.view(self.data.shape))
        self.version += 1

    def add(self, delta: torch.Tensor):
        """Add a DOF update (flat vector or lattice-shaped tensor)"""
        delta = torch.as_tensor(delta, dtype=self.dtype, device=self.device).reshape(-1)
        if delta.numel() != self.num_dofs:
            raise ConfigurationError(f"Expected {self.num_dofs} DOF values, got {delta.numel()}")
        self.data.add_(delta.view(self.data.shape))
        self.version += 1

    def reset(self):
        self.data.zero_()
        self.version += 1

    # ------------------------------------------------------------------
    # DOF status
    # ------------------------------------------------------------------

    def get_status(self, dof: int) -> DOFStatus:
        return DOFStatus.ACTIVE if bool(self._active[self._check_dof(dof)]) else DOFStatus.PASSIVE

    def put_status(self, dof: int, status: DOFStatus):
        self._active[self._check_dof(dof)] = DOFStatus(status) == DOFStatus.ACTIVE

    def active_mask(self) -> torch.Tensor:
        """Boolean mask of active DOFs"""
        return self._active.clone()

    def put_active_mask(self, mask: torch.Tensor):
        mask = torch.as_tensor(mask, dtype=torch.bool, device=self.device).reshape(-1)
        if mask.numel() != self.num_dofs:
            raise ConfigurationError(f"Expected {self.num_dofs} status flags, got {mask.numel()}")
        self._active.copy_(mask)

    @property
    def num_active_dofs(self) -> int:
        return int(self._active.sum())

    # ------------------------------------------------------------------
    # Copies
    # ------------------------------------------------------------------

    def same_geometry(self, other: "ControlLattice") -> bool:
        return (
            self.domain == other.domain
            and self.num_frames == other.num_frames
            and math.isclose(self.temporal_origin, other.temporal_origin)
            and math.isclose(self.temporal_spacing, other.temporal_spacing)
        )

    def copy(self) -> "ControlLattice":
        lattice = ControlLattice(
            self.domain.copy(),
            num_frames=self.num_frames,
            temporal_origin=self.temporal_origin,
            temporal_spacing=self.temporal_spacing,
            data=self.data,
            dtype=self.dtype,
            device=self.device,
        )
        lattice.put_active_mask(self._active)
        return lattice

    def __repr__(self) -> str:
        return (
            f"ControlLattice(size={self.domain.size}, spacing={self.domain.spacing}, "
            f"frames={self.num_frames}, dofs={self.num_dofs})"
        )
