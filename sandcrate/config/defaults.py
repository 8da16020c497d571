"""
Centralized configuration defaults for Sandcrate.

This module provides a single source of truth for the default values used by
the sandbox manager, the executors and the container pool.
"""
from dataclasses import dataclass
from typing import Dict, Any


@dataclass(frozen=True)
class SandboxDefaults:
    """Default execution settings shared by every backend."""
    timeout_ms: int = 30_000
    max_output_size: int = 50_000  # characters, per stream
    working_dir: str = "/workspace"
    pids_limit: int = 100
    timeout_exit_code: int = 124
    cancelled_exit_code: int = 130
    wasm_function: str = "run"
    wasm_cache_size: int = 10
    wasm_max_workers: int = 8  # concurrent plugin calls, including abandoned ones


@dataclass(frozen=True)
class PoolDefaults:
    """Default container pool configuration."""
    max_size: int = 5
    idle_timeout_ms: int = 60_000
    availability_ttl_ms: int = 5_000  # how long a daemon ping result is trusted
    stop_timeout_s: int = 1
    exec_workers_per_slot: int = 2  # exec threads per pool slot; killed execs may linger briefly


# Global default instances
SANDBOX_DEFAULTS = SandboxDefaults()
POOL_DEFAULTS = PoolDefaults()


def get_default_pool_config() -> Dict[str, Any]:
    """Get default pool configuration as a dictionary."""
    return {
        "max_size": POOL_DEFAULTS.max_size,
        "idle_timeout_ms": POOL_DEFAULTS.idle_timeout_ms,
    }
