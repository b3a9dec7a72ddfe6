"""Shared fixtures for dasvf tests"""

import pytest
import torch

from dasvf.config import ParallelConfig
from dasvf.data import ImageDomain
from dasvf.transformation import ControlLattice, StationaryVelocityFFD


@pytest.fixture
def lattice_domain():
    """5x5x5 control point lattice with 2 mm spacing centred at the origin"""
    return ImageDomain((5, 5, 5), (2.0, 2.0, 2.0), (-4.0, -4.0, -4.0))


@pytest.fixture
def image_domain():
    """Small anisotropic image domain inside the lattice interior"""
    return ImageDomain((4, 4, 3), (1.0, 1.0, 1.5), (-1.5, -1.5, -1.5))


@pytest.fixture
def random_values():
    """Factory of reproducible uniform values in [-scale, scale]"""

    def make(shape, scale=1.0, seed=0):
        generator = torch.Generator().manual_seed(seed)
        if isinstance(shape, int):
            shape = (shape,)
        return scale * (2.0 * torch.rand(shape, generator=generator, dtype=torch.float64) - 1.0)

    return make


@pytest.fixture
def svffd(lattice_domain, random_values):
    """SVFFD with small random velocities"""
    transform = StationaryVelocityFFD(ControlLattice(lattice_domain), parallel=ParallelConfig(num_threads=1))
    transform.put_dofs(random_values(transform.num_dofs, 0.3))
    return transform


@pytest.fixture
def finite_difference():
    """Central differences of an energy with respect to selected DOFs"""

    def compute(energy, transform, dofs, h=1e-6):
        values = []
        for dof in dofs:
            value = transform.get(dof)
            transform.put(dof, value + h)
            upper = energy()
            transform.put(dof, value - h)
            lower = energy()
            transform.put(dof, value)
            values.append((upper - lower) / (2.0 * h))
        return torch.tensor(values, dtype=torch.float64)

    return compute
