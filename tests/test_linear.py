"""Tests for rigid and affine transformations"""

import numpy as np
import pytest
import torch
from scipy.linalg import expm

from dasvf.errors import ConfigurationError
from dasvf.transformation import AffineTransformation, DOFStatus, RigidTransformation
from dasvf.transformation.linear import HomogeneousTransformation

AFFINE_PARAMS = [1.5, -2.0, 0.5, 10.0, -20.0, 30.0, 110.0, 90.0, 105.0, 5.0, -3.0, 8.0]


def test_rigid_rotation_about_z():
    rigid = RigidTransformation(torch.tensor([0.0, 0.0, 0.0, 0.0, 0.0, 90.0], dtype=torch.float64))
    point = torch.tensor([[1.0, 0.0, 0.0]], dtype=torch.float64)
    assert torch.allclose(rigid.transform(point), torch.tensor([[0.0, 1.0, 0.0]], dtype=torch.float64), atol=1e-12)


def test_identity_parameters():
    assert RigidTransformation().is_identity()
    affine = AffineTransformation()
    assert affine.is_identity()
    assert affine.get(6) == 100.0
    affine.put(0, 1.0)
    assert not affine.is_identity()
    affine.reset()
    assert affine.is_identity()


def test_rigid_put_matrix_round_trip():
    params = torch.tensor([1.0, 2.0, 3.0, 15.0, -25.0, 40.0], dtype=torch.float64)
    rigid = RigidTransformation()
    rigid.put_matrix(RigidTransformation(params).matrix())
    assert torch.allclose(rigid.dofs(), params, atol=1e-9)
    with pytest.raises(ConfigurationError):
        rigid.put_matrix(torch.diag(torch.tensor([2.0, 1.0, 1.0, 1.0])))


def test_affine_put_matrix_round_trip():
    params = torch.tensor(AFFINE_PARAMS, dtype=torch.float64)
    affine = AffineTransformation()
    affine.put_matrix(AffineTransformation(params).matrix())
    assert torch.allclose(affine.dofs(), params, atol=1e-8)


def test_inverse_round_trip():
    affine = AffineTransformation(torch.tensor(AFFINE_PARAMS, dtype=torch.float64))
    points = torch.randn(10, 3, dtype=torch.float64)
    inverse, success = affine.inverse(affine.transform(points))
    assert bool(success.all())
    assert torch.allclose(inverse, points, atol=1e-10)


def test_log_matrix_exponentiates_back():
    affine = AffineTransformation(torch.tensor(AFFINE_PARAMS, dtype=torch.float64))
    log = affine.log_matrix().numpy()
    assert np.allclose(expm(log), affine.matrix().numpy(), atol=1e-10)
    assert np.allclose(log[3], 0.0, atol=1e-12)


def test_jacobian_is_linear_part():
    affine = AffineTransformation(torch.tensor(AFFINE_PARAMS, dtype=torch.float64))
    J = affine.jacobian(torch.zeros(4, 3, dtype=torch.float64))
    assert J.shape == (4, 3, 3)
    assert torch.allclose(J[2], affine.matrix()[:3, :3])


def test_jacobian_dofs_matches_finite_differences():
    affine = AffineTransformation(torch.tensor(AFFINE_PARAMS, dtype=torch.float64))
    points = torch.tensor([[1.0, 2.0, -1.0], [0.5, -3.0, 2.0]], dtype=torch.float64)
    h = 1e-5
    for dof in range(affine.num_dofs):
        value = affine.get(dof)
        affine.put(dof, value + h)
        upper = affine.transform(points)
        affine.put(dof, value - h)
        lower = affine.transform(points)
        affine.put(dof, value)
        assert torch.allclose(affine.jacobian_dofs(points, dof), (upper - lower) / (2 * h), atol=1e-7)


def test_parametric_gradient_matches_finite_differences(image_domain, random_values, finite_difference):
    affine = AffineTransformation(torch.tensor(AFFINE_PARAMS, dtype=torch.float64))
    gradient = random_values(image_domain.shape + (3,), seed=4)

    def energy():
        return float((affine.displacement(image_domain) * gradient).sum())

    dofs = list(range(affine.num_dofs))
    analytic = affine.parametric_gradient(gradient, image_domain)
    numeric = finite_difference(energy, affine, dofs, h=1e-5)
    assert torch.allclose(analytic, numeric, rtol=1e-5, atol=1e-7)


def test_passive_parameters_receive_no_gradient(image_domain, random_values):
    rigid = RigidTransformation(torch.tensor([1.0, 0.0, 0.0, 0.0, 10.0, 0.0], dtype=torch.float64))
    mask = rigid.active_mask()
    mask[3:] = False
    rigid.put_active_mask(mask)
    gradient = random_values(image_domain.shape + (3,), seed=5)
    grad = rigid.parametric_gradient(gradient, image_domain)
    assert torch.count_nonzero(grad[3:]) == 0
    assert torch.count_nonzero(grad[:3]) == 3


def test_wrong_parameter_count_raises():
    with pytest.raises(ConfigurationError):
        RigidTransformation(torch.zeros(5))


def test_homogeneous_base_is_abstract():
    with pytest.raises(TypeError):
        HomogeneousTransformation()


def test_version_counts_parameter_writes():
    assert RigidTransformation().version == 0
    rigid = RigidTransformation(torch.zeros(6, dtype=torch.float64))
    assert rigid.version == 1
    rigid.put(3, 5.0)
    rigid.reset()
    assert rigid.version == 3


def test_update_skips_passive_parameters():
    affine = AffineTransformation()
    affine.put_status(0, DOFStatus.PASSIVE)
    delta = torch.zeros(12, dtype=torch.float64)
    delta[0] = 4.0
    delta[1] = -0.5
    delta[6] = 0.25
    assert affine.dof_gradient_norm(delta) == pytest.approx(4.0)
    assert affine.update(delta) == pytest.approx(0.5)
    assert affine.get(0) == 0.0
    assert affine.get(1) == pytest.approx(-0.5)
    assert affine.get(6) == pytest.approx(100.25)


def test_log_jacobian_determinant_is_clamped(image_domain):
    affine = AffineTransformation()
    affine.put(6, 0.001)
    det = affine.jacobian_determinant(image_domain)
    assert torch.allclose(det, torch.full(image_domain.shape, 1e-5, dtype=torch.float64))
    log_det = affine.log_jacobian_determinant(image_domain)
    assert torch.allclose(log_det, torch.full(image_domain.shape, float(np.log(1e-4)), dtype=torch.float64))


def test_inverse_displacement_of_translation(image_domain):
    rigid = RigidTransformation(torch.tensor([1.0, -2.0, 0.5, 0.0, 0.0, 0.0], dtype=torch.float64))
    expected = torch.tensor([-1.0, 2.0, -0.5], dtype=torch.float64).expand(image_domain.shape + (3,))
    assert torch.allclose(rigid.inverse_displacement(image_domain), expected)
