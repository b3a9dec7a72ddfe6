"""DASVF Configuration Module"""

from .config_loader import (
    load_config,
    default_config,
    list_available_presets,
    load_preset,
    EngineConfig,
    IntegrationConfig,
    LatticeConfig,
    TemporalConfig,
    ParallelConfig,
    CacheConfig,
    LoggingConfig,
)

__all__ = [
    "load_config",
    "default_config",
    "list_available_presets",
    "load_preset",
    "EngineConfig",
    "IntegrationConfig",
    "LatticeConfig",
    "TemporalConfig",
    "ParallelConfig",
    "CacheConfig",
    "LoggingConfig",
]
