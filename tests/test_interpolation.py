"""Tests for lattice interpolation and dense field sampling"""

import pytest
import torch
from deepali.core.bspline import cubic_bspline_interpolation_weights

from dasvf.data import ImageDomain
from dasvf.errors import ConfigurationError
from dasvf.transformation import AffineVelocity, ControlLattice, LatticeFunction, VelocitySum
from dasvf.transformation.interpolation import cubic_bspline_weights, sample_field, sample_field_vjp


def test_bspline_partition_of_unity():
    t = torch.linspace(0.0, 0.999, 50, dtype=torch.float64)
    weight = cubic_bspline_weights(t)
    assert bool((weight >= 0).all())
    assert torch.allclose(weight.sum(dim=-1), torch.ones_like(t))


def test_bspline_weights_match_deepali_kernel():
    kernel = cubic_bspline_interpolation_weights(5, dtype=torch.float64)
    t = torch.arange(0, 1, 1 / 5, dtype=torch.float64)
    assert torch.allclose(cubic_bspline_weights(t), kernel)


def test_bspline_matches_direct_sum(lattice_domain, random_values):
    lattice = ControlLattice(lattice_domain, data=random_values((1, 5, 5, 5, 3), seed=16))
    f = LatticeFunction(lattice)
    points = random_values((12, 3), 3.0, seed=17)
    u = lattice_domain.world_to_lattice(points)
    i = torch.floor(u).long()
    w = cubic_bspline_weights(u - i)
    expected = torch.zeros(12, 3, dtype=torch.float64)
    for n in range(12):
        for a in range(4):
            for b in range(4):
                for c in range(4):
                    x, y, z = int(i[n, 0]) - 1 + a, int(i[n, 1]) - 1 + b, int(i[n, 2]) - 1 + c
                    if 0 <= x < 5 and 0 <= y < 5 and 0 <= z < 5:
                        weight = w[n, 0, a] * w[n, 1, b] * w[n, 2, c]
                        expected[n] += weight * lattice.data[0, z, y, x]
    assert torch.allclose(f.velocity(points), expected)


def test_uniform_lattice_is_uniform_in_interior():
    lattice = ControlLattice(ImageDomain((6, 6, 6)))
    lattice.data[..., :] = torch.tensor([0.3, -0.2, 0.1], dtype=torch.float64)
    f = LatticeFunction(lattice)
    points = 1.0 + 2.9 * torch.rand(30, 3, dtype=torch.float64)
    expected = torch.tensor([0.3, -0.2, 0.1], dtype=torch.float64).expand(30, 3)
    assert torch.allclose(f.velocity(points), expected)
    assert torch.allclose(f.jacobian(points), torch.zeros(30, 3, 3, dtype=torch.float64), atol=1e-12)


def test_zero_outside_lattice():
    lattice = ControlLattice(ImageDomain((4, 4, 4)))
    lattice.data.fill_(1.0)
    f = LatticeFunction(lattice)
    far = torch.tensor([[-10.0, 1.0, 1.0], [1.0, 20.0, 1.0]], dtype=torch.float64)
    assert torch.allclose(f.velocity(far), torch.zeros(2, 3, dtype=torch.float64))


@pytest.mark.parametrize("kernel", ["bspline", "linear"])
def test_jacobian_matches_finite_differences(lattice_domain, random_values, kernel):
    lattice = ControlLattice(lattice_domain, data=random_values((1, 5, 5, 5, 3), seed=3))
    f = LatticeFunction(lattice, kernel)
    points = random_values((10, 3), 2.7, seed=4)
    J = f.jacobian(points)
    h = 1e-6
    for d in range(3):
        offset = torch.zeros(3, dtype=torch.float64)
        offset[d] = h
        column = (f.velocity(points + offset) - f.velocity(points - offset)) / (2 * h)
        assert torch.allclose(J[:, :, d], column, atol=1e-6)


def test_adjoint_is_transpose_of_evaluation(lattice_domain, random_values):
    lattice = ControlLattice(lattice_domain)
    f = LatticeFunction(lattice)
    coeffs = random_values(lattice.data.shape, seed=1)
    points = random_values((25, 3), 5.0, seed=2)
    vectors = random_values((25, 3), seed=5)
    lhs = (f.velocity(points, data=coeffs) * vectors).sum()
    rhs = (f.adjoint(points, vectors) * coeffs).sum()
    assert torch.allclose(lhs, rhs)


def test_node_velocity_is_derivative(lattice_domain, random_values):
    lattice = ControlLattice(lattice_domain, data=random_values((1, 5, 5, 5, 3), seed=6))
    f = LatticeFunction(lattice)
    points = random_values((8, 3), 3.0, seed=7)
    dof = lattice.dof_index(2, 1, 3, 1)
    dv = f.node_velocity(points, dof)
    before = f.velocity(points)
    lattice.put(dof, lattice.get(dof) + 1.0)
    assert torch.allclose(f.velocity(points) - before, dv)


def test_linear_kernel_interpolates_nodes():
    lattice = ControlLattice(ImageDomain((3, 3, 3), (2.0, 2.0, 2.0)))
    lattice.data[0, 1, 2, 0] = torch.tensor([1.0, 2.0, 3.0], dtype=torch.float64)
    f = LatticeFunction(lattice, "linear")
    node = torch.tensor([[0.0, 4.0, 2.0]], dtype=torch.float64)
    assert torch.allclose(f.velocity(node), torch.tensor([[1.0, 2.0, 3.0]], dtype=torch.float64))


def test_temporal_interpolation():
    lattice = ControlLattice(ImageDomain((3, 3, 3)), num_frames=2, temporal_origin=0.0, temporal_spacing=1.0)
    lattice.data[0] = 1.0
    lattice.data[1] = 3.0
    f = LatticeFunction(lattice, "linear")
    assert f.time_dependent
    points = torch.tensor([[1.0, 1.0, 1.0], [0.5, 1.5, 1.0]], dtype=torch.float64)
    assert torch.allclose(f.velocity(points, 0.25), torch.full((2, 3), 1.5, dtype=torch.float64))
    per_point = torch.tensor([0.0, 1.0], dtype=torch.float64)
    v = f.velocity(points, per_point)
    assert torch.allclose(v[0], torch.full((3,), 1.0, dtype=torch.float64))
    assert torch.allclose(v[1], torch.full((3,), 3.0, dtype=torch.float64))
    with pytest.raises(ConfigurationError):
        f.velocity(points)


def test_threaded_evaluation_matches_inline(lattice_domain, random_values):
    lattice = ControlLattice(lattice_domain, data=random_values((1, 5, 5, 5, 3), seed=8))
    points = random_values((200, 3), 4.0, seed=9)
    inline = LatticeFunction(lattice, num_threads=1)
    threaded = LatticeFunction(lattice, num_threads=4, min_chunk_size=16)
    assert torch.allclose(inline.velocity(points), threaded.velocity(points))
    vectors = random_values((200, 3), seed=10)
    assert torch.allclose(inline.adjoint(points, vectors), threaded.adjoint(points, vectors))


def test_affine_velocity_bound_requires_support():
    generator = torch.zeros(4, 4, dtype=torch.float64)
    generator[0, 3] = 2.0
    assert AffineVelocity(generator).max_norm_bound() == pytest.approx(2.0)
    generator[0, 1] = 0.1
    with pytest.raises(ConfigurationError):
        AffineVelocity(generator).max_norm_bound()
    support = torch.tensor([[0.0, 10.0, 0.0], [0.0, -10.0, 0.0]], dtype=torch.float64)
    assert AffineVelocity(generator, support).max_norm_bound() == pytest.approx(3.0)


def test_velocity_sum(lattice_domain, random_values):
    lattice = ControlLattice(lattice_domain, data=random_values((1, 5, 5, 5, 3), seed=11))
    f = LatticeFunction(lattice)
    generator = torch.zeros(4, 4, dtype=torch.float64)
    generator[:3, 3] = torch.tensor([1.0, 0.0, -1.0])
    total = VelocitySum([f, AffineVelocity(generator)])
    points = random_values((5, 3), 3.0, seed=12)
    assert torch.allclose(total.velocity(points), f.velocity(points) + generator[:3, 3])
    assert torch.allclose(total.jacobian(points), f.jacobian(points))
    assert total.cell_size == 2.0


def test_splat_is_transpose_of_sampling(random_values):
    field = random_values((3, 4, 5, 3), seed=13)
    y = random_values((40, 3), 3.0, seed=14) + 2.0
    w = random_values((40, 3), seed=15)
    splat, _ = sample_field_vjp(torch.zeros_like(field), y, w)
    lhs = (sample_field(field, y) * w).sum()
    rhs = (splat * field).sum()
    assert torch.allclose(lhs, rhs)


def test_sample_field_matches_grid_sample(random_values):
    field = random_values((5, 6, 7, 3), seed=18)
    y = random_values((60, 3), 5.0, seed=19) + 3.0
    data = field.permute(3, 0, 1, 2).unsqueeze(0)
    size = torch.tensor([7.0, 6.0, 5.0], dtype=torch.float64)
    grid = (2.0 * y / (size - 1) - 1.0).reshape(1, 1, 1, -1, 3)
    expected = torch.nn.functional.grid_sample(data, grid, padding_mode="border", align_corners=True)
    assert torch.allclose(sample_field(field, y), expected.reshape(3, -1).T)


def test_sample_field_position_gradient(random_values):
    field = random_values((4, 5, 6, 2), seed=20)
    y = random_values((10, 3), 1.2, seed=21) + 2.0
    w = random_values((10, 2), seed=22)
    _, grad_y = sample_field_vjp(field, y, w)
    h = 1e-6
    for d in range(3):
        offset = torch.zeros(3, dtype=torch.float64)
        offset[d] = h
        column = ((sample_field(field, y + offset) - sample_field(field, y - offset)) * w).sum(dim=1) / (2 * h)
        assert torch.allclose(grad_y[:, d], column, atol=1e-6)


def test_sample_field_clamps_at_border():
    field = torch.zeros(2, 2, 2, 1, dtype=torch.float64)
    field[:, :, 1] = 1.0
    y = torch.tensor([[5.0, 0.5, 0.5], [-3.0, 0.5, 0.5], [0.25, 0.0, 0.0]], dtype=torch.float64)
    assert torch.allclose(sample_field(field, y)[:, 0], torch.tensor([1.0, 0.0, 0.25], dtype=torch.float64))
