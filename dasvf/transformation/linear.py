"""
DASVF Homogeneous Transformations

Rigid and affine transformations represented by 4x4 homogeneous matrices.

Parameters:
- Rigid (6 DOF): tx, ty, tz (mm), rx, ry, rz (degrees)
- Affine (12 DOF): rigid parameters, sx, sy, sz (percent), sxy, sxz, syz (degrees)

Matrix: M = T @ Rz @ Ry @ Rx @ Shear @ Scale

The parameter-to-matrix derivative dM/dp is obtained with torch.autograd and
drives jacobian_dofs and the closed-form parametric gradient
    grad_k = < dM_k[:3, :], sum_i g_i [x_i; 1]^T >
"""

import math
from abc import abstractmethod
from typing import Any, Dict, Optional, Tuple

import numpy as np
import torch
from scipy.linalg import logm

from .base import Transformation, TransformationKind, register_transformation
from .adjoint import accumulate_gradient
from ..data.domain import ImageDomain
from ..errors import ConfigurationError
from ..utils.logging_config import get_logger

logger = get_logger("linear")

DEG2RAD = math.pi / 180.0


def _rotation_matrix(rx: torch.Tensor, ry: torch.Tensor, rz: torch.Tensor) -> torch.Tensor:
    """Rotation Rz @ Ry @ Rx from angles in radians"""
    one, zero = torch.ones_like(rx), torch.zeros_like(rx)
    cx, sx = torch.cos(rx), torch.sin(rx)
    cy, sy = torch.cos(ry), torch.sin(ry)
    cz, sz = torch.cos(rz), torch.sin(rz)
    Rx = torch.stack([torch.stack([one, zero, zero]), torch.stack([zero, cx, -sx]), torch.stack([zero, sx, cx])])
    Ry = torch.stack([torch.stack([cy, zero, sy]), torch.stack([zero, one, zero]), torch.stack([-sy, zero, cy])])
    Rz = torch.stack([torch.stack([cz, -sz, zero]), torch.stack([sz, cz, zero]), torch.stack([zero, zero, one])])
    return Rz @ Ry @ Rx


def _euler_angles(R: np.ndarray) -> Tuple[float, float, float]:
    """Angles (rx, ry, rz) in degrees of a rotation R = Rz @ Ry @ Rx"""
    ry = math.asin(float(np.clip(-R[2, 0], -1.0, 1.0)))
    rx = math.atan2(R[2, 1], R[2, 2])
    rz = math.atan2(R[1, 0], R[0, 0])
    return rx / DEG2RAD, ry / DEG2RAD, rz / DEG2RAD


def _homogeneous(linear: torch.Tensor, translation: torch.Tensor) -> torch.Tensor:
    top = torch.cat([linear, translation.unsqueeze(1)], dim=1)
    bottom = torch.zeros(1, 4, dtype=linear.dtype, device=linear.device)
    bottom[0, 3] = 1.0
    return torch.cat([top, bottom], dim=0)


class HomogeneousTransformation(Transformation):
    """
    Transformation given by a 4x4 matrix computed from a parameter vector

    Args:
        params: Initial parameters (identity if None)
        dtype: Floating point type
        device: Device of parameters and points
    """

    num_params: int = 0

    def __init__(self, params: Optional[torch.Tensor] = None, dtype: torch.dtype = torch.float64, device=None):
        super().__init__(time_unit=1.0, dtype=dtype, device=device)
        self.version = 0
        self._params = self.identity_params()
        if params is not None:
            self.put_dofs(params)
        self._active = torch.ones(self.num_params, dtype=torch.bool, device=self.device)

    def identity_params(self) -> torch.Tensor:
        return torch.zeros(self.num_params, dtype=self.dtype, device=self.device)

    @staticmethod
    @abstractmethod
    def params_to_matrix(params: torch.Tensor) -> torch.Tensor:
        """4x4 matrix of a parameter vector, differentiable with torch.autograd"""

    def matrix(self) -> torch.Tensor:
        return self.params_to_matrix(self._params)

    def matrix_jacobian(self) -> torch.Tensor:
        """Derivative of the matrix with respect to the parameters, shape (4, 4, P)"""
        return torch.autograd.functional.jacobian(self.params_to_matrix, self._params.clone())

    def log_matrix(self) -> torch.Tensor:
        """Real matrix logarithm of the 4x4 matrix"""
        M = self.matrix().detach().cpu().numpy()
        L = logm(M)
        if np.iscomplexobj(L):
            if np.abs(L.imag).max() > 1e-9:
                raise ConfigurationError("Global transformation matrix has no real logarithm")
            L = L.real
        if not np.all(np.isfinite(L)):
            raise ConfigurationError("Matrix logarithm of the global transformation is not finite")
        return torch.as_tensor(L, dtype=self.dtype, device=self.device)

    # DOFs

    def dofs(self) -> torch.Tensor:
        return self._params.clone()

    def put_dofs(self, values: torch.Tensor):
        values = torch.as_tensor(values, dtype=self.dtype, device=self.device).reshape(-1)
        if values.numel() != self.num_params:
            raise ConfigurationError(f"{self.name} expects {self.num_params} parameters, got {values.numel()}")
        self._params = values.clone()
        self.version += 1

    def active_mask(self) -> torch.Tensor:
        return self._active.clone()

    def put_active_mask(self, mask: torch.Tensor):
        mask = torch.as_tensor(mask, dtype=torch.bool, device=self.device).reshape(-1)
        if mask.numel() != self.num_params:
            raise ConfigurationError(f"{self.name} expects {self.num_params} status flags, got {mask.numel()}")
        self._active = mask.clone()

    def reset(self):
        self.put_dofs(self.identity_params())

    def is_identity(self) -> bool:
        return bool(torch.allclose(self.matrix(), torch.eye(4, dtype=self.dtype, device=self.device)))

    # Mapping (time independent)

    def transform(self, points, t0: float = 0.0, t1: float = 0.0) -> torch.Tensor:
        points = self._points(points)
        M = self.matrix()
        return points @ M[:3, :3].T + M[:3, 3]

    def inverse(self, points, t0: float = 0.0, t1: float = 0.0) -> Tuple[torch.Tensor, torch.Tensor]:
        points = self._points(points)
        M_inv = torch.linalg.inv(self.matrix())
        result = points @ M_inv[:3, :3].T + M_inv[:3, 3]
        return result, torch.ones(points.shape[0], dtype=torch.bool, device=points.device)

    def jacobian(self, points, t0: float = 0.0, t1: float = 0.0) -> torch.Tensor:
        points = self._points(points)
        return self.matrix()[:3, :3].expand(points.shape[0], 3, 3).clone()

    def jacobian_dofs(self, points, dof: int, t0: float = 0.0, t1: float = 0.0) -> torch.Tensor:
        points = self._points(points)
        dM = self.matrix_jacobian()[..., int(dof)]
        return points @ dM[:3, :3].T + dM[:3, 3]

    def parametric_gradient(
        self,
        gradient: torch.Tensor,
        domain: ImageDomain,
        out: Optional[torch.Tensor] = None,
        weight: float = 1.0,
        t0: float = 0.0,
        t1: float = 0.0,
        include_passive: bool = False,
    ) -> torch.Tensor:
        gradient = self._check_gradient(gradient, domain).reshape(-1, 3)
        points = domain.points(dtype=self.dtype, device=self.device).reshape(-1, 3)
        points_h = torch.cat([points, torch.ones_like(points[:, :1])], dim=1)
        G = gradient.T @ points_h
        dM = self.matrix_jacobian()
        grad = torch.einsum("ijk,ij->k", dM[:3, :, :], G)
        return accumulate_gradient(grad, out, weight, None if include_passive else self._active)

    # Serialization

    def state_dict(self) -> Dict[str, Any]:
        return {
            "type": TransformationKind(self.kind).value,
            "dofs": self._params.cpu(),
            "status": self._active.cpu(),
        }

    @classmethod
    def _from_state(cls, state: Dict[str, Any]) -> "HomogeneousTransformation":
        dofs = torch.as_tensor(state["dofs"])
        transform = cls(params=dofs, dtype=dofs.dtype)
        if "status" in state:
            transform.put_active_mask(torch.as_tensor(state["status"]))
        return transform


@register_transformation
class RigidTransformation(HomogeneousTransformation):
    """Rigid transformation: 3 translations (mm) and 3 rotations (degrees)"""

    kind = TransformationKind.RIGID
    num_params = 6

    @staticmethod
    def params_to_matrix(params: torch.Tensor) -> torch.Tensor:
        R = _rotation_matrix(params[3] * DEG2RAD, params[4] * DEG2RAD, params[5] * DEG2RAD)
        return _homogeneous(R, params[:3])

    def put_matrix(self, matrix):
        """Set the parameters from a 4x4 rigid matrix"""
        M = torch.as_tensor(matrix, dtype=torch.float64).cpu().numpy()
        R = M[:3, :3]
        if not np.allclose(R @ R.T, np.eye(3), atol=1e-6) or np.linalg.det(R) < 0:
            raise ConfigurationError("Matrix is not a proper rigid transformation")
        rx, ry, rz = _euler_angles(R)
        self.put_dofs(torch.tensor([M[0, 3], M[1, 3], M[2, 3], rx, ry, rz], dtype=self.dtype))


@register_transformation
class AffineTransformation(HomogeneousTransformation):
    """
    Affine transformation with 12 parameters

    Scales are given in percent (100 = identity) and shears as angles in
    degrees, following the MIRTK/IRTK parameterization.
    """

    kind = TransformationKind.AFFINE
    num_params = 12

    def identity_params(self) -> torch.Tensor:
        params = torch.zeros(self.num_params, dtype=self.dtype, device=self.device)
        params[6:9] = 100.0
        return params

    @staticmethod
    def params_to_matrix(params: torch.Tensor) -> torch.Tensor:
        R = _rotation_matrix(params[3] * DEG2RAD, params[4] * DEG2RAD, params[5] * DEG2RAD)
        one, zero = torch.ones_like(params[0]), torch.zeros_like(params[0])
        txy = torch.tan(params[9] * DEG2RAD)
        txz = torch.tan(params[10] * DEG2RAD)
        tyz = torch.tan(params[11] * DEG2RAD)
        shear = torch.stack([torch.stack([one, txy, txz]), torch.stack([zero, one, tyz]), torch.stack([zero, zero, one])])
        scale = torch.diag(params[6:9] / 100.0)
        return _homogeneous(R @ shear @ scale, params[:3])

    def put_matrix(self, matrix):
        """
        Set the parameters from a 4x4 affine matrix

        The linear part is decomposed as R @ U (QR decomposition), where the
        upper triangular U = Shear @ Scale has a positive diagonal.
        """
        M = torch.as_tensor(matrix, dtype=torch.float64).cpu().numpy()
        Q, U = np.linalg.qr(M[:3, :3])
        signs = np.sign(np.diag(U))
        signs[signs == 0] = 1.0
        Q = Q * signs
        U = signs[:, None] * U
        if np.linalg.det(Q) < 0 or np.any(np.diag(U) <= 0):
            raise ConfigurationError("Affine matrix with reflection cannot be parameterized")
        sx, sy, sz = U[0, 0], U[1, 1], U[2, 2]
        rx, ry, rz = _euler_angles(Q)
        params = [
            M[0, 3], M[1, 3], M[2, 3],
            rx, ry, rz,
            100.0 * sx, 100.0 * sy, 100.0 * sz,
            math.atan(U[0, 1] / sy) / DEG2RAD,
            math.atan(U[0, 2] / sz) / DEG2RAD,
            math.atan(U[1, 2] / sz) / DEG2RAD,
        ]
        self.put_dofs(torch.tensor(params, dtype=self.dtype))
