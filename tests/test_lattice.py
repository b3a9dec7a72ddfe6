"""Tests for control point lattices"""

import numpy as np
import pytest
import torch

from dasvf.data import ImageDomain
from dasvf.errors import ConfigurationError
from dasvf.transformation import ControlLattice, DOFStatus


def test_from_domain_covers_domain():
    domain = ImageDomain((10, 10, 7), (1.0, 1.0, 1.5), (5.0, -2.0, 3.0))
    lattice = ControlLattice.from_domain(domain, 4.0)
    assert lattice.domain.size == (4, 4, 4)
    assert np.allclose(lattice.domain.center(), domain.center())
    corners = torch.as_tensor(domain.corners())
    indices = lattice.domain.world_to_lattice(corners)
    assert bool((indices >= -1e-9).all())
    assert bool((indices <= torch.tensor(lattice.domain.size, dtype=torch.float64) - 1 + 1e-9).all())


def test_data_shape_and_counts():
    lattice = ControlLattice(ImageDomain((4, 3, 2)), num_frames=3)
    assert lattice.data.shape == (3, 2, 3, 4, 3)
    assert lattice.num_nodes == 72
    assert lattice.num_dofs == 216
    assert lattice.num_active_dofs == 216


def test_dof_index_round_trip():
    lattice = ControlLattice(ImageDomain((4, 3, 2)), num_frames=2)
    for dof in (0, 5, 17, 100, lattice.num_dofs - 1):
        x, y, z, t, c = lattice.node_of(dof)
        assert lattice.dof_index(x, y, z, c, t) == dof
    dof = lattice.dof_index(3, 1, 0, 2, 1)
    lattice.put(dof, 7.0)
    assert lattice.data[1, 0, 1, 3, 2] == 7.0


def test_writes_bump_version():
    lattice = ControlLattice(ImageDomain((3, 3, 3)))
    version = lattice.version
    lattice.put(4, 1.0)
    lattice.add(torch.ones(lattice.num_dofs, dtype=torch.float64))
    lattice.put_dofs(torch.zeros(lattice.num_dofs))
    lattice.reset()
    assert lattice.version == version + 4
    assert lattice.get(4) == 0.0


def test_status_flags():
    lattice = ControlLattice(ImageDomain((3, 3, 3)))
    lattice.put_status(5, DOFStatus.PASSIVE)
    assert lattice.get_status(5) == DOFStatus.PASSIVE
    assert lattice.get_status(6) == DOFStatus.ACTIVE
    assert lattice.num_active_dofs == lattice.num_dofs - 1
    mask = lattice.active_mask()
    mask[:] = False
    assert lattice.num_active_dofs == lattice.num_dofs - 1


def test_invalid_data_raises():
    with pytest.raises(ConfigurationError):
        ControlLattice(ImageDomain((3, 3, 3)), data=torch.zeros(3, 3, 2, 3))
    with pytest.raises(ConfigurationError):
        ControlLattice(ImageDomain((3, 3, 3)), num_frames=0)
    lattice = ControlLattice(ImageDomain((3, 3, 3)))
    with pytest.raises(ConfigurationError):
        lattice.put_dofs(torch.zeros(5))
    with pytest.raises(IndexError):
        lattice.get(lattice.num_dofs)


def test_copy_and_geometry():
    lattice = ControlLattice(ImageDomain((3, 3, 3)))
    lattice.put(0, 2.0)
    lattice.put_status(1, DOFStatus.PASSIVE)
    other = lattice.copy()
    assert other.same_geometry(lattice)
    assert other.get(0) == 2.0
    assert other.get_status(1) == DOFStatus.PASSIVE
    other.put(0, 3.0)
    assert lattice.get(0) == 2.0
    assert not lattice.same_geometry(ControlLattice(ImageDomain((3, 3, 4))))
