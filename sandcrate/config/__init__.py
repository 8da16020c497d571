"""
Configuration module for Sandcrate.
"""
from sandcrate.config.logging import setup_logging
from sandcrate.config.defaults import (
    SandboxDefaults,
    PoolDefaults,
    SANDBOX_DEFAULTS,
    POOL_DEFAULTS,
    get_default_pool_config,
)

__all__ = [
    "setup_logging",
    "SandboxDefaults",
    "PoolDefaults",
    "SANDBOX_DEFAULTS",
    "POOL_DEFAULTS",
    "get_default_pool_config",
]
