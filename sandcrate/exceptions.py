"""
Custom exception hierarchy for Sandcrate.

None of these cross SandboxManager.execute(): executors translate them into
SandboxResult failures. ConfigurationError is the one exception callers see,
raised from SandboxManager.initialize() when no valid manager can exist.
"""
from typing import Optional, Dict, Any, List


class SandcrateError(Exception):
    """Base exception for all Sandcrate errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - Details: {self.details}"
        return self.message


class ConfigurationError(SandcrateError):
    """Raised for configuration that no manager instance can be built from."""
    pass


class SandboxError(SandcrateError):
    """Base exception for sandbox backend errors."""
    pass


class PolicyValidationError(SandboxError):
    def __init__(self, problems: List[str]):
        super().__init__(
            f"Invalid isolation policy: {'; '.join(problems)}",
            {"problems": problems},
        )
        self.problems = problems


class BackendUnavailableError(SandboxError):
    def __init__(self, backend: str, cause: Optional[str] = None):
        message = f"Sandbox backend '{backend}' is not available"
        if cause:
            message = f"{message} - {cause}"
        super().__init__(message, {"backend": backend, "cause": cause})
        self.backend = backend
        self.cause = cause


class ContainerRuntimeError(SandboxError):
    """Normalized failure from the container engine client.

    ``connectivity`` is True when the daemon itself could not be reached,
    as opposed to a request the daemon rejected.
    """

    def __init__(self, message: str, connectivity: bool = False):
        super().__init__(message, {"connectivity": connectivity} if connectivity else None)
        self.connectivity = connectivity


class PoolExhaustedError(SandboxError):
    def __init__(
        self,
        image: str,
        max_size: int = 0,
        current_size: int = 0,
        waited_ms: Optional[int] = None,
    ):
        utilization = current_size / max_size if max_size > 0 else 1.0
        message = f"Container pool exhausted while acquiring '{image}'"
        if waited_ms is not None:
            message = f"{message} after waiting {waited_ms}ms"
        super().__init__(
            message,
            {
                "image": image,
                "current_size": current_size,
                "max_size": max_size,
                "utilization": utilization,
            },
        )
        self.image = image
        self.max_size = max_size
        self.current_size = current_size
        self.waited_ms = waited_ms


class InvalidStateTransitionError(SandboxError):
    def __init__(self, container_id: str, current: str, target: str):
        super().__init__(
            f"Container {container_id[:12]} cannot move from {current} to {target}",
            {"container_id": container_id, "current": current, "target": target},
        )
        self.container_id = container_id
        self.current = current
        self.target = target
