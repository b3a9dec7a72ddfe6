"""
DASVF Configuration Loader

Handles loading, validation, and merging of engine configuration files.
Supports YAML configuration with a preset system and config hierarchy.

Config Hierarchy (highest to lowest priority):
1. overrides dict
2. User config file
3. Config preset (e.g. "rke1")
4. Package defaults (dasvf/configs/default.yaml)
"""

import yaml
from pathlib import Path
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Union
from copy import deepcopy

from ..errors import ConfigurationError
from ..utils.logging_config import get_logger

logger = get_logger("config")

# Paths to config directories
DASVF_ROOT = Path(__file__).parent.parent
CONFIGS_DIR = DASVF_ROOT / "configs"
DEFAULT_CONFIG_PATH = CONFIGS_DIR / "default.yaml"

INTEGRATION_METHODS = ("ss", "rke1")
LATTICE_KERNELS = ("bspline", "linear")


@dataclass
class IntegrationConfig:
    """Velocity field integration settings"""
    method: str = "ss"                  # "ss" (scaling and squaring) or "rke1" (forward Euler)
    min_steps: int = 32                 # Lower bound on the number of integration steps
    max_scaled_velocity: float = 0.5    # Max substep displacement in units of the cell size
    upper_integration_limit: float = 1.0
    inverse_max_iterations: int = 20
    inverse_tolerance: float = 1e-9


@dataclass
class LatticeConfig:
    """Control point lattice settings"""
    control_point_spacing: float = 4.0  # mm
    kernel: str = "bspline"


@dataclass
class TemporalConfig:
    """Time-varying velocity integration settings"""
    min_time_step: float = 0.01
    max_time_step: float = 0.1


@dataclass
class ParallelConfig:
    """Voxel sweep parallelization"""
    num_threads: int = 0                # 0 = one per CPU core
    min_chunk_size: int = 4096


@dataclass
class CacheConfig:
    """Dense displacement cache"""
    enabled: bool = True
    max_entries: int = 4                # fields kept per transformation (LRU)


@dataclass
class LoggingConfig:
    """Logging settings"""
    level: str = "INFO"
    log_file: Optional[str] = None


@dataclass
class EngineConfig:
    """Complete transformation engine configuration"""
    integration: IntegrationConfig = field(default_factory=IntegrationConfig)
    lattice: LatticeConfig = field(default_factory=LatticeConfig)
    temporal: TemporalConfig = field(default_factory=TemporalConfig)
    parallel: ParallelConfig = field(default_factory=ParallelConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    device: str = "cpu"
    dtype: str = "float64"


def _deep_merge(base: Dict, override: Dict) -> Dict:
    """
    Deep merge two dictionaries, with override taking precedence

    Args:
        base: Base dictionary
        override: Override dictionary

    Returns:
        Merged dictionary
    """
    result = deepcopy(base)

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = deepcopy(value)

    return result


def _coerce_type(value: Any, target_type: type) -> Any:
    """Coerce value to target type (handles YAML string parsing issues)"""
    if value is None:
        return value

    origin = getattr(target_type, '__origin__', None)
    if origin is not None:
        # Optional[X] is Union[X, None]
        args = getattr(target_type, '__args__', ())
        if type(None) in args:
            for arg in args:
                if arg is not type(None):
                    return _coerce_type(value, arg)
        return value

    if target_type == float and isinstance(value, (str, int)) and not isinstance(value, bool):
        try:
            return float(value)
        except ValueError:
            return value
    elif target_type == int and isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return value
    elif target_type == bool and isinstance(value, str):
        return value.lower() in ('true', '1', 'yes')

    return value


def _dict_to_dataclass(data: Dict, cls: type) -> Any:
    """
    Convert dictionary to dataclass instance

    Args:
        data: Dictionary with configuration values
        cls: Dataclass type

    Returns:
        Dataclass instance
    """
    if not hasattr(cls, "__dataclass_fields__"):
        return data

    field_values = {}
    for field_name, field_info in cls.__dataclass_fields__.items():
        if field_name in data:
            value = data[field_name]
            if hasattr(field_info.type, "__dataclass_fields__") and isinstance(value, dict):
                value = _dict_to_dataclass(value, field_info.type)
            else:
                value = _coerce_type(value, field_info.type)
            field_values[field_name] = value

    unknown = set(data) - set(cls.__dataclass_fields__)
    if unknown:
        logger.warning(f"Ignoring unknown {cls.__name__} keys: {sorted(unknown)}")

    return cls(**field_values)


def load_yaml_config(path: Path) -> Dict:
    """Load a YAML configuration file"""
    if path.exists():
        with open(path, "r") as f:
            return yaml.safe_load(f) or {}
    return {}


def load_default_config() -> Dict:
    """Load the default configuration from YAML file"""
    if DEFAULT_CONFIG_PATH.exists():
        return load_yaml_config(DEFAULT_CONFIG_PATH)
    else:
        logger.warning(f"Default config not found at {DEFAULT_CONFIG_PATH}")
        return {}


def load_preset(preset_name: str) -> Dict:
    """
    Load a configuration preset from dasvf/configs/

    Args:
        preset_name: Name of preset (e.g., 'rke1'), with or without .yaml extension

    Returns:
        Configuration dictionary from preset file

    Raises:
        FileNotFoundError: If preset file doesn't exist
    """
    if not preset_name.endswith('.yaml'):
        preset_name = f"{preset_name}.yaml"

    preset_path = CONFIGS_DIR / preset_name

    if not preset_path.exists():
        raise FileNotFoundError(
            f"Config preset '{preset_name}' not found in {CONFIGS_DIR}. "
            f"Available presets: {list_available_presets()}"
        )

    logger.info(f"Loading config preset: {preset_name}")
    return load_yaml_config(preset_path)


def default_config() -> EngineConfig:
    """
    Get the default engine configuration

    Returns:
        EngineConfig with default values
    """
    config_dict = load_default_config()
    return _dict_to_dataclass(config_dict, EngineConfig)


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    preset: Optional[str] = None,
    overrides: Optional[Dict] = None
) -> EngineConfig:
    """
    Load engine configuration with hierarchy support

    Args:
        config_path: Optional path to user configuration YAML
        preset: Optional preset name (e.g., 'rke1')
        overrides: Optional dictionary of override values

    Returns:
        EngineConfig instance

    Raises:
        ConfigurationError: If the merged configuration is invalid
    """
    config_dict = load_default_config()
    logger.debug(f"Loaded package defaults from {DEFAULT_CONFIG_PATH}")

    if preset:
        preset_config = load_preset(preset)
        config_dict = _deep_merge(config_dict, preset_config)

    if config_path:
        config_path = Path(config_path)
        if config_path.exists():
            logger.info(f"Loading user config from: {config_path}")
            user_config = load_yaml_config(config_path)
            config_dict = _deep_merge(config_dict, user_config)
        else:
            logger.warning(f"Config file not found: {config_path}")

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)

    config = _dict_to_dataclass(config_dict, EngineConfig)
    _validate_config(config)

    return config


def _validate_config(config: EngineConfig):
    """
    Validate configuration

    Args:
        config: Configuration to validate

    Raises:
        ConfigurationError: If configuration is invalid
    """
    integration = config.integration
    if integration.method.lower() not in INTEGRATION_METHODS:
        raise ConfigurationError(
            f"Invalid integration method: {integration.method}. Must be one of {list(INTEGRATION_METHODS)}"
        )
    if integration.min_steps < 1:
        raise ConfigurationError(f"integration.min_steps must be >= 1, got {integration.min_steps}")
    if integration.max_scaled_velocity <= 0:
        raise ConfigurationError(
            f"integration.max_scaled_velocity must be > 0, got {integration.max_scaled_velocity}"
        )
    if integration.upper_integration_limit == 0:
        raise ConfigurationError("integration.upper_integration_limit must be non-zero")
    if integration.inverse_max_iterations < 1:
        raise ConfigurationError(
            f"integration.inverse_max_iterations must be >= 1, got {integration.inverse_max_iterations}"
        )
    if integration.inverse_tolerance <= 0:
        raise ConfigurationError(
            f"integration.inverse_tolerance must be > 0, got {integration.inverse_tolerance}"
        )

    if config.lattice.kernel.lower() not in LATTICE_KERNELS:
        raise ConfigurationError(
            f"Invalid lattice kernel: {config.lattice.kernel}. Must be one of {list(LATTICE_KERNELS)}"
        )
    if config.lattice.control_point_spacing <= 0:
        raise ConfigurationError(
            f"lattice.control_point_spacing must be > 0, got {config.lattice.control_point_spacing}"
        )

    temporal = config.temporal
    if temporal.min_time_step <= 0 or temporal.max_time_step < temporal.min_time_step:
        raise ConfigurationError(
            f"Invalid temporal steps: min={temporal.min_time_step}, max={temporal.max_time_step}"
        )

    if config.parallel.min_chunk_size < 1:
        raise ConfigurationError(
            f"parallel.min_chunk_size must be >= 1, got {config.parallel.min_chunk_size}"
        )

    if config.cache.max_entries < 1:
        raise ConfigurationError(f"cache.max_entries must be >= 1, got {config.cache.max_entries}")

    if config.dtype.lower() not in ("float32", "float64", "float", "double"):
        raise ConfigurationError(f"Invalid dtype: {config.dtype}")

    logger.debug("Configuration validated successfully")


def list_available_presets() -> List[str]:
    """
    List available configuration presets

    Returns:
        List of preset names (without .yaml extension)
    """
    if not CONFIGS_DIR.exists():
        return []
    return sorted(f.stem for f in CONFIGS_DIR.glob("*.yaml") if f.stem != "default")
