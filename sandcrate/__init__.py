"""
Sandcrate - sandboxed command execution for agent runtimes.
"""
from sandcrate.sandbox import (
    SandboxManager,
    SandboxManagerConfig,
    IsolationPolicy,
    ExecutionRequest,
    ExecutionResult,
    SandboxResult,
    SandboxType,
    CancellationToken,
    get_sandbox_manager,
)

__version__ = "0.1.0"

__all__ = [
    "SandboxManager",
    "SandboxManagerConfig",
    "IsolationPolicy",
    "ExecutionRequest",
    "ExecutionResult",
    "SandboxResult",
    "SandboxType",
    "CancellationToken",
    "get_sandbox_manager",
]
