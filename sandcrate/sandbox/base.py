"""
Base types and helpers for sandbox executors.

Every backend (native process, container, WASM module) implements
BaseSandboxExecutor so the manager can drive them interchangeably.
"""
import logging
import shlex
from abc import ABC, abstractmethod
from dataclasses import fields, is_dataclass
from typing import Dict, List, Optional

from sandcrate.config.defaults import SANDBOX_DEFAULTS
from sandcrate.sandbox.types import (
    CancellationToken,
    ErrorKind,
    ExecutionRequest,
    ExecutionResult,
    IsolationPolicy,
    SandboxResult,
    SandboxType,
    parse_memory,
)

logger = logging.getLogger(__name__)

SHELL = "/bin/sh"


def merge_policies(
    defaults: Optional[IsolationPolicy],
    override: Optional[IsolationPolicy],
) -> IsolationPolicy:
    """Layer ``override`` over ``defaults`` field by field.

    Unset (None) override fields inherit the default. Nested dataclasses
    merge recursively, mappings merge key by key, sequences replace wholesale.
    """
    if defaults is None:
        return override or IsolationPolicy()
    if override is None:
        return defaults
    return _merge_dataclass(defaults, override)


def _merge_dataclass(base, override):
    values = {}
    for f in fields(base):
        base_value = getattr(base, f.name)
        override_value = getattr(override, f.name)
        if override_value is None:
            values[f.name] = base_value
        elif base_value is None:
            values[f.name] = override_value
        elif is_dataclass(base_value) and is_dataclass(override_value):
            values[f.name] = _merge_dataclass(base_value, override_value)
        elif isinstance(base_value, dict) and isinstance(override_value, dict):
            values[f.name] = {**base_value, **override_value}
        else:
            values[f.name] = override_value
    return type(base)(**values)


def build_shell_command(command) -> List[str]:
    """Turn request tokens into an argv run by the POSIX shell.

    A single token is taken as a shell script (so "exit 3" or "echo $X" work);
    several tokens are quoted and joined so each keeps its argv boundary.
    """
    if len(command) == 1:
        script = command[0]
    else:
        script = shlex.join(command)
    return [SHELL, "-c", script]


def truncate_output(text: str, limit: int = SANDBOX_DEFAULTS.max_output_size) -> str:
    if len(text) <= limit:
        return text
    return text[:limit]


def memory_bytes(policy: IsolationPolicy) -> Optional[int]:
    if policy.resources is None or policy.resources.memory is None:
        return None
    return parse_memory(policy.resources.memory)


class BaseSandboxExecutor(ABC):
    """Common contract for every isolation backend.

    None of these methods raise for expected conditions: availability is a
    boolean and everything else reports through SandboxResult.
    """

    sandbox_type: SandboxType

    @abstractmethod
    def connect(self) -> SandboxResult[None]:
        """Probe and initialize the backend; failure is not fatal."""
        pass

    @abstractmethod
    def disconnect(self) -> SandboxResult[None]:
        """Release every resource the backend holds. Idempotent."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Whether execute() can currently reach the backend. Never raises."""
        pass

    @abstractmethod
    def execute(
        self,
        request: ExecutionRequest,
        policy: IsolationPolicy,
        cancel_token: Optional[CancellationToken] = None,
    ) -> SandboxResult[ExecutionResult]:
        """Run one request under ``policy`` and normalize the outcome."""
        pass

    def _success(self, data=None) -> SandboxResult:
        return SandboxResult.ok(data)

    def _failure(self, error: str, kind: ErrorKind = ErrorKind.EXECUTION_FAILED) -> SandboxResult:
        return SandboxResult.failure(error, kind)

    def _check_request(self, request: ExecutionRequest) -> Optional[SandboxResult]:
        if not request.command:
            return self._failure("Command array is empty", ErrorKind.INVALID_REQUEST)
        return None

    @staticmethod
    def resolve_timeout(request: ExecutionRequest, policy: IsolationPolicy) -> int:
        """Timeout in milliseconds: request, then policy, then the global default."""
        if request.timeout is not None:
            return request.timeout
        if policy.timeout is not None:
            return policy.timeout
        return SANDBOX_DEFAULTS.timeout_ms

    @staticmethod
    def build_env(request: ExecutionRequest, policy: IsolationPolicy) -> Dict[str, str]:
        """Declared variables; request values win over policy values."""
        env = dict(policy.env or {})
        env.update(request.env)
        return {str(k): str(v) for k, v in env.items()}
