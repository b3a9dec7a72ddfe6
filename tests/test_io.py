"""Tests for transformation serialization"""

import pytest
import torch

from dasvf.config import IntegrationConfig
from dasvf.errors import ConfigurationError
from dasvf.transformation import (
    AffineTransformation,
    BSplineFFD,
    ControlLattice,
    DOFStatus,
    MultiLevelSVFFD,
    StationaryVelocityFFD,
    TemporalDiffeomorphicFFD,
    Transformation,
    TransformationKind,
    load_transformation,
    save_transformation,
)

POINTS = torch.tensor([[0.3, 0.1, -0.2], [-1.0, 1.0, 0.5]], dtype=torch.float64)


def test_svffd_round_trip(tmp_path, lattice_domain, random_values):
    transform = StationaryVelocityFFD(ControlLattice(lattice_domain), integration=IntegrationConfig(method="rke1"))
    transform.put_dofs(random_values(transform.num_dofs, 0.2))
    transform.put_status(3, DOFStatus.PASSIVE)
    path = save_transformation(transform, tmp_path / "out" / "svffd.pth")
    loaded = load_transformation(path)
    assert isinstance(loaded, StationaryVelocityFFD)
    assert loaded.method == "rke1"
    assert loaded.lattice.same_geometry(transform.lattice)
    assert torch.equal(loaded.dofs(), transform.dofs())
    assert loaded.get_status(3) == DOFStatus.PASSIVE
    assert torch.allclose(loaded.transform(POINTS), transform.transform(POINTS))


def test_state_dict_order(lattice_domain):
    state = StationaryVelocityFFD(ControlLattice(lattice_domain)).state_dict()
    keys = list(state)
    assert keys[0] == "type"
    assert state["type"] == TransformationKind.SVFFD.value
    assert keys.index("size") < keys.index("dofs") < keys.index("status")


def test_affine_round_trip(tmp_path):
    params = torch.tensor([1.0, 2.0, 3.0, 5.0, 10.0, 15.0, 95.0, 105.0, 100.0, 2.0, 0.0, -1.0], dtype=torch.float64)
    transform = AffineTransformation(params)
    loaded = load_transformation(save_transformation(transform, tmp_path / "affine.pth"))
    assert isinstance(loaded, AffineTransformation)
    assert torch.allclose(loaded.matrix(), transform.matrix())


def test_bspline_ffd_round_trip(tmp_path, lattice_domain, random_values):
    transform = BSplineFFD(ControlLattice(lattice_domain))
    transform.put_dofs(random_values(transform.num_dofs, 0.2))
    loaded = load_transformation(save_transformation(transform, tmp_path / "ffd.pth"))
    assert isinstance(loaded, BSplineFFD)
    assert torch.allclose(loaded.transform(POINTS), transform.transform(POINTS))


def test_td_round_trip(tmp_path, lattice_domain, random_values):
    lattice = ControlLattice(lattice_domain, num_frames=3, temporal_origin=-1.0, temporal_spacing=0.5)
    transform = TemporalDiffeomorphicFFD(lattice)
    transform.put_dofs(random_values(transform.num_dofs, 0.2))
    loaded = load_transformation(save_transformation(transform, tmp_path / "td.pth"))
    assert isinstance(loaded, TemporalDiffeomorphicFFD)
    assert loaded.lattice.num_frames == 3
    assert loaded.lattice.temporal_origin == -1.0
    assert torch.allclose(loaded.transform(POINTS, -1.0, 0.0), transform.transform(POINTS, -1.0, 0.0))


def test_multilevel_round_trip(tmp_path, lattice_domain, random_values):
    level = StationaryVelocityFFD(ControlLattice(lattice_domain))
    level.put_dofs(random_values(level.num_dofs, 0.2))
    affine = AffineTransformation(torch.tensor([1.0, 0, 0, 0, 0, 5.0, 100, 100, 100, 0, 0, 0], dtype=torch.float64))
    transform = MultiLevelSVFFD(affine, [level])
    transform.push_local_transformation(StationaryVelocityFFD(ControlLattice(lattice_domain)), active=False)
    loaded = load_transformation(save_transformation(transform, tmp_path / "mffd.pth"))
    assert isinstance(loaded, MultiLevelSVFFD)
    assert loaded.num_levels == 2
    assert not loaded.level_active(1)
    assert torch.equal(loaded.active_mask(), transform.active_mask())
    assert torch.allclose(loaded.dofs(), transform.dofs())
    assert torch.allclose(loaded.transform(POINTS), transform.transform(POINTS))


def test_load_errors(tmp_path, lattice_domain):
    with pytest.raises(FileNotFoundError):
        load_transformation(tmp_path / "missing.pth")
    path = tmp_path / "other.pth"
    torch.save({"weights": torch.zeros(3)}, path)
    with pytest.raises(ConfigurationError):
        load_transformation(path)
    with pytest.raises(ConfigurationError):
        Transformation.from_state_dict({"type": "unknown"})
    with pytest.raises(ConfigurationError):
        AffineTransformation.from_state_dict(StationaryVelocityFFD(ControlLattice(lattice_domain)).state_dict())
