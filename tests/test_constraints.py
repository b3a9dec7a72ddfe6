"""Tests for the topology preservation constraint"""

import pytest
import torch

from dasvf.data import ImageDomain
from dasvf.errors import GradientNotImplementedError
from dasvf.transformation import (
    AffineTransformation,
    BSplineFFD,
    ControlLattice,
    MultiLevelSVFFD,
    StationaryVelocityFFD,
    TopologyPreservationConstraint,
)


def test_identity_has_no_penalty(lattice_domain):
    constraint = TopologyPreservationConstraint(BSplineFFD(ControlLattice(lattice_domain)))
    assert constraint.evaluate() == 0.0
    assert constraint.cell_centres(constraint.transformation).shape == (216, 3)


def test_folding_is_penalized():
    domain = ImageDomain((6, 6, 6))
    transform = BSplineFFD(ControlLattice(domain))
    nodes = domain.points()
    transform.lattice.data[0, ..., 0] = -2.0 * nodes[..., 0]
    transform.changed()
    constraint = TopologyPreservationConstraint(transform, weight=0.5)
    value = constraint.evaluate()
    assert value > 0.0
    assert constraint.value() == pytest.approx(0.5 * value)


def test_linear_transformation_has_no_penalty():
    assert TopologyPreservationConstraint(AffineTransformation()).evaluate() == 0.0


def test_passive_cells_can_be_skipped(lattice_domain):
    transform = BSplineFFD(ControlLattice(lattice_domain))
    transform.put_active_mask(torch.zeros(transform.num_dofs, dtype=torch.bool))
    constraint = TopologyPreservationConstraint(transform, constrain_passive=False)
    assert constraint.cell_centres(transform).shape == (0, 3)
    assert constraint.evaluate() == 0.0


def test_multilevel_uses_active_level(lattice_domain):
    level = StationaryVelocityFFD(ControlLattice(lattice_domain))
    constraint = TopologyPreservationConstraint(MultiLevelSVFFD(None, [level]))
    assert constraint.evaluate() == 0.0
    assert TopologyPreservationConstraint(MultiLevelSVFFD()).evaluate() == 0.0


def test_gradient_is_not_implemented(lattice_domain):
    constraint = TopologyPreservationConstraint(BSplineFFD(ControlLattice(lattice_domain)))
    with pytest.raises(GradientNotImplementedError):
        constraint.evaluate_gradient(torch.zeros(375))
