"""
Value types shared by the sandbox manager and every executor backend.

Policies and requests are frozen: the manager builds a fresh merged policy
for each call instead of mutating the caller's object.
"""
import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, List, Mapping, Optional, Tuple, TypeVar, Union

from sandcrate.exceptions import SandboxError

T = TypeVar("T")


class SandboxType(str, Enum):
    """Isolation mechanisms a command can run under."""
    NATIVE = "native"
    CONTAINER = "container"
    WASM = "wasm"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str) and value.lower() == "docker":
            return cls.CONTAINER
        return None


class NetworkMode(str, Enum):
    NONE = "none"
    BRIDGE = "bridge"


class ErrorKind(str, Enum):
    """Why no execution could be attempted."""
    BACKEND_UNAVAILABLE = "backend_unavailable"
    INVALID_POLICY = "invalid_policy"
    INVALID_REQUEST = "invalid_request"
    POOL_EXHAUSTED = "pool_exhausted"
    EXECUTION_FAILED = "execution_failed"


_MEMORY_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kmgt]?)i?b?\s*$", re.IGNORECASE)
_MEMORY_UNITS = {"": 1, "k": 1024, "m": 1024 ** 2, "g": 1024 ** 3, "t": 1024 ** 4}


def parse_memory(value: Union[int, str]) -> int:
    """Convert a byte quantity ("512m", "1g", "2GiB", 1048576) to bytes."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid memory quantity: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    match = _MEMORY_PATTERN.match(str(value))
    if match is None:
        raise ValueError(f"Invalid memory quantity: {value!r}")
    number, unit = match.groups()
    return int(float(number) * _MEMORY_UNITS[unit.lower()])


@dataclass(frozen=True)
class ResourceLimits:
    # bytes, or a docker-style quantity such as "512m"
    memory: Optional[Union[int, str]] = None
    cpus: Optional[float] = None
    pids_limit: Optional[int] = None


@dataclass(frozen=True)
class NetworkPolicy:
    mode: Optional[NetworkMode] = None

    def __post_init__(self):
        if isinstance(self.mode, str) and not isinstance(self.mode, NetworkMode):
            object.__setattr__(self, "mode", NetworkMode(self.mode))


@dataclass(frozen=True)
class Mount:
    host_path: str
    container_path: str
    readonly: bool = True


@dataclass(frozen=True)
class IsolationPolicy:
    """Declarative isolation contract for one execution.

    Every field is optional so that a caller's policy can be layered over
    the manager defaults; ``None`` always means "inherit".
    """
    type: Optional[SandboxType] = None
    image: Optional[str] = None
    resources: Optional[ResourceLimits] = None
    network: Optional[NetworkPolicy] = None
    mounts: Optional[Tuple[Mount, ...]] = None
    env: Optional[Dict[str, str]] = None
    timeout: Optional[int] = None  # milliseconds
    user: Optional[str] = None
    working_dir: Optional[str] = None
    wasm_module: Optional[str] = None
    wasm_function: Optional[str] = None
    wasi: Optional[bool] = None

    def __post_init__(self):
        if isinstance(self.type, str) and not isinstance(self.type, SandboxType):
            object.__setattr__(self, "type", SandboxType(self.type))
        if self.mounts is not None and not isinstance(self.mounts, tuple):
            object.__setattr__(self, "mounts", tuple(self.mounts))
        if self.env is not None:
            object.__setattr__(self, "env", dict(self.env))

    @property
    def sandbox_type(self) -> SandboxType:
        return self.type or SandboxType.NATIVE

    @property
    def network_mode(self) -> NetworkMode:
        if self.network is None or self.network.mode is None:
            return NetworkMode.NONE
        return self.network.mode

    def validate(self) -> List[str]:
        """Return the list of problems with this policy; empty when valid."""
        problems = []
        if self.sandbox_type == SandboxType.CONTAINER and not self.image:
            problems.append("image is required for container sandboxes")
        if self.sandbox_type == SandboxType.WASM and not self.wasm_module:
            problems.append("wasm_module is required for wasm sandboxes")
        if self.timeout is not None and self.timeout <= 0:
            problems.append(f"timeout must be positive, got {self.timeout}")

        resources = self.resources
        if resources is not None:
            if resources.memory is not None:
                try:
                    if parse_memory(resources.memory) <= 0:
                        problems.append("resources.memory must be positive")
                except ValueError as e:
                    problems.append(str(e))
            if resources.cpus is not None and resources.cpus <= 0:
                problems.append(f"resources.cpus must be positive, got {resources.cpus}")
            if resources.pids_limit is not None and resources.pids_limit <= 0:
                problems.append(f"resources.pids_limit must be positive, got {resources.pids_limit}")

        for mount in self.mounts or ():
            if not mount.host_path or not mount.container_path:
                problems.append("mounts need both host_path and container_path")
            elif not mount.container_path.startswith("/"):
                problems.append(f"mount target must be absolute: {mount.container_path}")
        return problems

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "IsolationPolicy":
        """Build a policy from a config mapping (camelCase or snake_case keys)."""
        def pick(mapping, *keys):
            for key in keys:
                if key in mapping:
                    return mapping[key]
            return None

        resources = None
        raw_resources = data.get("resources")
        if raw_resources is not None:
            resources = ResourceLimits(
                memory=pick(raw_resources, "memory", "memoryLimit", "memory_limit"),
                cpus=pick(raw_resources, "cpus", "cpuQuota", "cpu_quota"),
                pids_limit=pick(raw_resources, "pidsLimit", "pids_limit"),
            )

        network = None
        if data.get("network") is not None:
            network = NetworkPolicy(mode=data["network"].get("mode"))

        mounts = None
        if data.get("mounts") is not None:
            mounts = tuple(
                Mount(
                    host_path=pick(m, "hostPath", "host_path", "source"),
                    container_path=pick(m, "containerPath", "container_path", "target"),
                    readonly=bool(pick(m, "readonly", "readOnly") or False),
                )
                for m in data["mounts"]
            )

        return cls(
            type=data.get("type"),
            image=data.get("image"),
            resources=resources,
            network=network,
            mounts=mounts,
            env=data.get("env"),
            timeout=data.get("timeout"),
            user=data.get("user"),
            working_dir=pick(data, "workingDir", "working_dir", "workdir"),
            wasm_module=pick(data, "wasmModule", "wasm_module"),
            wasm_function=pick(data, "wasmFunction", "wasm_function"),
            wasi=data.get("wasi"),
        )


@dataclass(frozen=True)
class ExecutionRequest:
    """One command to run. A request produces exactly one result."""
    command: Tuple[str, ...]
    env: Dict[str, str] = field(default_factory=dict)
    timeout: Optional[int] = None  # milliseconds
    working_dir: Optional[str] = None
    stdin: Optional[str] = None

    def __post_init__(self):
        command = self.command
        if isinstance(command, str):
            command = (command,)
        object.__setattr__(self, "command", tuple(command))
        object.__setattr__(self, "env", dict(self.env or {}))


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of a command that was actually run.

    Non-zero exits, timeouts and cancellations are valid results, not errors.
    """
    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False
    cancelled: bool = False
    duration_ms: int = 0

    @property
    def is_success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled

    @property
    def outcome(self) -> str:
        if self.timed_out:
            return "timeout"
        if self.cancelled:
            return "cancelled"
        return "ok" if self.exit_code == 0 else "nonzero_exit"


@dataclass(frozen=True)
class SandboxResult(Generic[T]):
    """Tagged success/error value returned by every manager and executor call."""
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    kind: Optional[ErrorKind] = None

    @classmethod
    def ok(cls, data: T = None) -> "SandboxResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def failure(cls, error: str, kind: ErrorKind = ErrorKind.EXECUTION_FAILED) -> "SandboxResult[T]":
        return cls(success=False, error=error, kind=kind)

    def unwrap(self) -> T:
        if not self.success:
            raise SandboxError(self.error or "Sandbox operation failed", {"kind": self.kind.value if self.kind else None})
        return self.data


class CancellationToken:
    """Caller-side handle for abandoning a running execution.

    Executors poll the token; a cancelled execution is killed the same way
    a timed-out one is.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

