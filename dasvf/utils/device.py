"""
DASVF Device Management

Device and dtype selection for lattice and field tensors:
- "auto": CUDA GPU if available, fallback to CPU
- explicit device strings are passed through to torch
"""

import torch
from typing import Optional, Union

from .logging_config import get_logger
from ..errors import ConfigurationError

logger = get_logger("device")

_DTYPES = {
    "float32": torch.float32,
    "float": torch.float32,
    "float64": torch.float64,
    "double": torch.float64,
}


def get_device(device: Optional[str] = None, verbose: bool = False) -> torch.device:
    """
    Get computation device

    Args:
        device: Explicit device string ("cuda", "cpu"), "auto" or None for auto
        verbose: Whether to log device selection

    Returns:
        torch.device instance
    """
    if device is not None and device != "auto":
        selected = torch.device(device)
    elif torch.cuda.is_available():
        selected = torch.device("cuda")
    else:
        selected = torch.device("cpu")

    if verbose:
        logger.info(f"Using device: {selected}")
    return selected


def resolve_dtype(dtype: Union[str, torch.dtype, None]) -> torch.dtype:
    """Map a configuration dtype name to a torch floating point dtype"""
    if dtype is None:
        return torch.float64
    if isinstance(dtype, torch.dtype):
        return dtype
    try:
        return _DTYPES[str(dtype).lower()]
    except KeyError:
        raise ConfigurationError(f"Unsupported dtype: {dtype}. Must be one of {sorted(_DTYPES)}") from None
