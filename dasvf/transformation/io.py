"""
DASVF Transformation I/O

Save and load transformations as torch archives of their state dictionaries.

Archive layout: type tag, variant attributes (lattice geometry, integration
settings), DOF values in lattice-major order, then DOF status flags. Multi-level
transformations nest the states of their global transformation and levels.
"""

from pathlib import Path
from typing import Union

import torch

from .base import Transformation
from ..errors import ConfigurationError
from ..utils.logging_config import get_logger

logger = get_logger("io")


def save_transformation(transformation: Transformation, path: Union[str, Path]) -> Path:
    """
    Save a transformation to a .pth archive

    Args:
        transformation: Transformation to save
        path: Output file path (parent directories are created)

    Returns:
        Path of the written file
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    state = transformation.state_dict()
    torch.save(state, path)
    logger.info(f"Saved {transformation.name} ({transformation.num_dofs} DOFs) to {path}")
    return path


def load_transformation(path: Union[str, Path], device: Union[str, torch.device] = "cpu") -> Transformation:
    """
    Load a transformation saved by save_transformation

    Args:
        path: Archive path
        device: Device to map stored tensors to

    Returns:
        Transformation of the variant named by the stored type tag
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Transformation file not found: {path}")
    state = torch.load(path, map_location=device, weights_only=True)
    if not isinstance(state, dict) or "type" not in state:
        raise ConfigurationError(f"Not a transformation archive: {path}")
    transformation = Transformation.from_state_dict(state)
    logger.info(f"Loaded {transformation.name} ({transformation.num_dofs} DOFs) from {path}")
    return transformation
