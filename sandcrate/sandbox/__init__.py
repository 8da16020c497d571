"""
Sandboxed command execution over interchangeable isolation backends.

Backends:
- NATIVE: host process in its own session (trusted/internal execution)
- CONTAINER: exec inside pooled, hardened containers
- WASM: precompiled module run by the Extism runtime

SandboxManager is the entry point; it merges policies, picks a backend
and falls back along the configured chain when one is unavailable.
"""

# Core types
from sandcrate.sandbox.types import (
    SandboxType,
    NetworkMode,
    ErrorKind,
    ResourceLimits,
    NetworkPolicy,
    Mount,
    IsolationPolicy,
    ExecutionRequest,
    ExecutionResult,
    SandboxResult,
    CancellationToken,
    parse_memory,
)
from sandcrate.sandbox.base import BaseSandboxExecutor, merge_policies

# Executors
from sandcrate.sandbox.native import NativeExecutor
from sandcrate.sandbox.docker import ContainerExecutor
from sandcrate.sandbox.wasm import WasmExecutor

# Container pool
from sandcrate.sandbox.runtime import ContainerRuntime, ContainerCreateOptions, DockerRuntime
from sandcrate.sandbox.pool import ContainerPool, ContainerState, PooledContainer

# Manager
from sandcrate.sandbox.manager import (
    SandboxManager,
    SandboxManagerConfig,
    PoolConfig,
    DockerConfig,
    WasmConfig,
    set_sandbox_manager_config,
    get_sandbox_manager,
)

__all__ = [
    # Core types
    "SandboxType",
    "NetworkMode",
    "ErrorKind",
    "ResourceLimits",
    "NetworkPolicy",
    "Mount",
    "IsolationPolicy",
    "ExecutionRequest",
    "ExecutionResult",
    "SandboxResult",
    "CancellationToken",
    "parse_memory",
    "BaseSandboxExecutor",
    "merge_policies",
    # Executors
    "NativeExecutor",
    "ContainerExecutor",
    "WasmExecutor",
    # Container pool
    "ContainerRuntime",
    "ContainerCreateOptions",
    "DockerRuntime",
    "ContainerPool",
    "ContainerState",
    "PooledContainer",
    # Manager
    "SandboxManager",
    "SandboxManagerConfig",
    "PoolConfig",
    "DockerConfig",
    "WasmConfig",
    "set_sandbox_manager_config",
    "get_sandbox_manager",
]
