"""Tests for displacement free-form deformations"""

import torch

from dasvf.data import ImageDomain
from dasvf.transformation import BSplineFFD, ControlLattice, LinearFFD


def test_linear_ffd_moves_nodes_by_coefficients():
    domain = ImageDomain((4, 4, 4), (2.0, 2.0, 2.0))
    transform = LinearFFD(ControlLattice(domain))
    transform.lattice.data[0, 1, 2, 3] = torch.tensor([0.5, -0.25, 1.0], dtype=torch.float64)
    transform.changed()
    node = torch.tensor([[6.0, 4.0, 2.0]], dtype=torch.float64)
    expected = node + torch.tensor([0.5, -0.25, 1.0], dtype=torch.float64)
    assert torch.allclose(transform.transform(node), expected)


def test_bspline_ffd_inverse_round_trip(lattice_domain, image_domain, random_values):
    transform = BSplineFFD(ControlLattice(lattice_domain))
    transform.put_dofs(random_values(transform.num_dofs, 0.2))
    points = image_domain.points().reshape(-1, 3)
    inverse, success = transform.inverse(transform.transform(points))
    assert bool(success.all())
    assert torch.allclose(inverse, points, atol=1e-6)


def test_displacement_matches_transform(lattice_domain, image_domain, random_values):
    transform = BSplineFFD(ControlLattice(lattice_domain))
    transform.put_dofs(random_values(transform.num_dofs, 0.2))
    points = image_domain.points().reshape(-1, 3)
    disp = transform.displacement(image_domain).reshape(-1, 3)
    assert torch.allclose(disp, transform.transform(points) - points)


def test_jacobian_and_determinant(lattice_domain, image_domain, random_values):
    transform = BSplineFFD(ControlLattice(lattice_domain))
    transform.put_dofs(random_values(transform.num_dofs, 0.2))
    points = image_domain.points().reshape(-1, 3)
    J = transform.jacobian(points)
    h = 1e-6
    for d in range(3):
        offset = torch.zeros(3, dtype=torch.float64)
        offset[d] = h
        column = (transform.transform(points + offset) - transform.transform(points - offset)) / (2 * h)
        assert torch.allclose(J[:, :, d], column, atol=1e-7)
    det = transform.jacobian_determinant(image_domain)
    assert torch.allclose(det.reshape(-1), torch.linalg.det(J))


def test_parametric_gradient_matches_finite_differences(lattice_domain, image_domain, random_values, finite_difference):
    transform = LinearFFD(ControlLattice(lattice_domain))
    transform.put_dofs(random_values(transform.num_dofs, 0.2))
    gradient = random_values(image_domain.shape + (3,), seed=6)

    def energy():
        return float((transform.displacement(image_domain) * gradient).sum())

    lattice = transform.lattice
    dofs = [lattice.dof_index(2, 2, 2, 0), lattice.dof_index(1, 2, 2, 1), lattice.dof_index(2, 1, 1, 2)]
    analytic = transform.parametric_gradient(gradient, image_domain)
    numeric = finite_difference(energy, transform, dofs)
    assert torch.allclose(analytic[dofs], numeric, rtol=1e-6, atol=1e-8)


def test_jacobian_dofs_is_node_weight(lattice_domain):
    transform = BSplineFFD(ControlLattice(lattice_domain))
    node = torch.tensor([[0.0, 0.0, 0.0]], dtype=torch.float64)
    dof = transform.lattice.dof_index(2, 2, 2, 1)
    derivative = transform.jacobian_dofs(node, dof)
    expected = torch.tensor([[0.0, (2.0 / 3.0) ** 3, 0.0]], dtype=torch.float64)
    assert torch.allclose(derivative, expected)
