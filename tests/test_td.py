"""Tests for the temporal diffeomorphic free-form deformation"""

import pytest
import torch

from dasvf.config import TemporalConfig
from dasvf.data import ImageDomain
from dasvf.errors import ConfigurationError
from dasvf.transformation import ControlLattice, TemporalDiffeomorphicFFD


def make_td(domain, num_frames=2, values=None):
    lattice = ControlLattice(domain, num_frames=num_frames, temporal_origin=0.0, temporal_spacing=1.0)
    transform = TemporalDiffeomorphicFFD(lattice)
    if values is not None:
        transform.put_dofs(values)
    return transform


def test_step_limits(lattice_domain):
    transform = make_td(lattice_domain)
    nominal, smallest = transform.step_limits(0.0, 1.0)
    assert nominal == pytest.approx(0.1)
    assert smallest == pytest.approx(0.01)
    nominal, smallest = transform.step_limits(1.0, 0.9)
    assert nominal == pytest.approx(-0.05)
    assert smallest == pytest.approx(-0.01)


def test_equal_times_is_identity(lattice_domain, random_values):
    transform = make_td(lattice_domain, values=random_values(750, 0.3))
    points = torch.tensor([[0.3, 0.1, -0.2]], dtype=torch.float64)
    assert torch.equal(transform.transform(points, 0.5, 0.5), points)


def test_uniform_velocity():
    domain = ImageDomain((8, 8, 8))
    transform = make_td(domain)
    transform.lattice.data[0] = torch.tensor([0.5, 0.0, -0.25], dtype=torch.float64)
    transform.lattice.data[1] = torch.tensor([0.5, 0.0, -0.25], dtype=torch.float64)
    transform.changed()
    points = torch.tensor([[3.0, 3.0, 3.0], [2.5, 4.0, 3.5]], dtype=torch.float64)
    expected = points + torch.tensor([0.5, 0.0, -0.25], dtype=torch.float64)
    assert torch.allclose(transform.transform(points, 0.0, 1.0), expected, atol=1e-12)
    inverse, success = transform.inverse(expected, 0.0, 1.0)
    assert bool(success.all())
    assert torch.allclose(inverse, points, atol=1e-12)


def test_time_varying_velocity():
    domain = ImageDomain((8, 8, 8))
    transform = make_td(domain)
    transform.lattice.data[1, ..., 0] = 1.0
    transform.changed()
    points = torch.tensor([[3.0, 3.0, 3.0]], dtype=torch.float64)
    # v(t) = t along x; forward Euler sums t_k * dt over the step start times
    assert float(transform.transform(points, 0.0, 1.0)[0, 0]) == pytest.approx(3.45, abs=1e-9)
    assert float(transform.transform(points, 0.0, 0.5)[0, 0]) == pytest.approx(3.1, abs=1e-9)


def test_inverse_approximates_forward(lattice_domain, image_domain, random_values):
    transform = make_td(lattice_domain, values=random_values(750, 0.2))
    points = image_domain.points().reshape(-1, 3)
    mapped = transform.transform(points, 0.0, 1.0)
    inverse, _ = transform.inverse(mapped, 0.0, 1.0)
    assert torch.allclose(inverse, points, atol=5e-2)


def test_jacobian_matches_finite_differences(lattice_domain, random_values):
    transform = make_td(lattice_domain, values=random_values(750, 0.2))
    points = torch.tensor([[0.3, 0.1, -0.7], [-1.1, 0.9, 0.5]], dtype=torch.float64)
    J = transform.jacobian(points, 0.0, 1.0)
    h = 1e-6
    for d in range(3):
        offset = torch.zeros(3, dtype=torch.float64)
        offset[d] = h
        upper = transform.transform(points + offset, 0.0, 1.0)
        lower = transform.transform(points - offset, 0.0, 1.0)
        assert torch.allclose(J[:, :, d], (upper - lower) / (2 * h), atol=1e-6)


def test_parametric_gradient_matches_finite_differences(lattice_domain, image_domain, random_values, finite_difference):
    transform = make_td(lattice_domain, values=random_values(750, 0.2))
    gradient = random_values(image_domain.shape + (3,), seed=7)

    def energy():
        return float((transform.displacement(image_domain, 0.0, 1.0) * gradient).sum())

    lattice = transform.lattice
    dofs = [
        lattice.dof_index(2, 2, 2, 0, 0),
        lattice.dof_index(2, 2, 2, 1, 1),
        lattice.dof_index(1, 2, 2, 2, 0),
        lattice.dof_index(2, 1, 1, 0, 1),
    ]
    analytic = transform.parametric_gradient(gradient, image_domain, t0=0.0, t1=1.0)
    numeric = finite_difference(energy, transform, dofs)
    assert torch.allclose(analytic[dofs], numeric, rtol=1e-4, atol=1e-7)


def test_displacement_cache_depends_on_times(lattice_domain, image_domain, random_values):
    transform = make_td(lattice_domain, values=random_values(750, 0.2))
    first = transform.displacement(image_domain, 0.0, 1.0)
    assert torch.equal(transform.displacement(image_domain, 0.0, 1.0), first)
    assert not torch.equal(transform.displacement(image_domain, 0.5, 1.5), first)


def test_invalid_time_steps(lattice_domain):
    lattice = ControlLattice(lattice_domain, num_frames=2)
    with pytest.raises(ConfigurationError):
        TemporalDiffeomorphicFFD(lattice, temporal=TemporalConfig(min_time_step=0.5, max_time_step=0.1))


def test_from_domain(image_domain):
    transform = TemporalDiffeomorphicFFD.from_domain(image_domain, 2.0, num_frames=3, temporal_spacing=0.5)
    assert transform.lattice.num_frames == 3
    assert transform.lattice.temporal_spacing == 0.5
    assert transform.kernel == "linear"
    assert transform.temporal.max_time_step == 0.1
