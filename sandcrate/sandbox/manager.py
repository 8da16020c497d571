"""
Sandbox manager: the single entry point for sandboxed execution.

The manager owns the default isolation policy and one executor per backend.
Each call merges the caller's policy over the defaults, resolves the
executor for the merged type and, when that backend is unavailable, walks
the configured fallback chain. A fallback keeps the caller's resources and
network policy; only the isolation mechanism is substituted.
"""
import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional, Tuple

from sandcrate.config.defaults import POOL_DEFAULTS, SANDBOX_DEFAULTS
from sandcrate.exceptions import ConfigurationError, PolicyValidationError
from sandcrate.observability.metrics import ExecutionTimer, record_fallback
from sandcrate.sandbox.base import BaseSandboxExecutor, merge_policies
from sandcrate.sandbox.docker import ContainerExecutor
from sandcrate.sandbox.native import NativeExecutor
from sandcrate.sandbox.runtime import DockerRuntime
from sandcrate.sandbox.types import (
    CancellationToken,
    ErrorKind,
    ExecutionRequest,
    ExecutionResult,
    IsolationPolicy,
    NetworkMode,
    NetworkPolicy,
    SandboxResult,
    SandboxType,
)
from sandcrate.sandbox.wasm import WasmExecutor

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK: Dict[SandboxType, Tuple[SandboxType, ...]] = {
    SandboxType.NATIVE: (),
    SandboxType.CONTAINER: (SandboxType.NATIVE,),
    SandboxType.WASM: (SandboxType.CONTAINER, SandboxType.NATIVE),
}


def _pick(mapping: Mapping[str, Any], *keys: str, default=None):
    for key in keys:
        if key in mapping:
            return mapping[key]
    return default


@dataclass
class PoolConfig:
    max_size: int = POOL_DEFAULTS.max_size
    idle_timeout_ms: int = POOL_DEFAULTS.idle_timeout_ms

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PoolConfig":
        return cls(
            max_size=_pick(data, "maxSize", "max_size", default=POOL_DEFAULTS.max_size),
            idle_timeout_ms=_pick(data, "idleTimeoutMs", "idle_timeout_ms", default=POOL_DEFAULTS.idle_timeout_ms),
        )


@dataclass
class DockerConfig:
    base_url: Optional[str] = None  # None: DOCKER_HOST or the local socket
    timeout: int = 60
    availability_ttl_ms: int = POOL_DEFAULTS.availability_ttl_ms

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DockerConfig":
        return cls(
            base_url=_pick(data, "baseUrl", "base_url"),
            timeout=_pick(data, "timeout", default=60),
            availability_ttl_ms=_pick(
                data, "availabilityTtlMs", "availability_ttl_ms", default=POOL_DEFAULTS.availability_ttl_ms
            ),
        )


@dataclass
class WasmConfig:
    enabled: bool = True
    cache_size: int = SANDBOX_DEFAULTS.wasm_cache_size
    max_workers: int = SANDBOX_DEFAULTS.wasm_max_workers

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WasmConfig":
        return cls(
            enabled=bool(_pick(data, "enabled", default=True)),
            cache_size=_pick(data, "cacheSize", "cache_size", default=SANDBOX_DEFAULTS.wasm_cache_size),
            max_workers=_pick(data, "maxWorkers", "max_workers", default=SANDBOX_DEFAULTS.wasm_max_workers),
        )


def _default_policy() -> IsolationPolicy:
    return IsolationPolicy(
        type=SandboxType.NATIVE,
        network=NetworkPolicy(mode=NetworkMode.NONE),
        timeout=SANDBOX_DEFAULTS.timeout_ms,
    )


@dataclass
class SandboxManagerConfig:
    defaults: IsolationPolicy = field(default_factory=_default_policy)
    pool: PoolConfig = field(default_factory=PoolConfig)
    docker: DockerConfig = field(default_factory=DockerConfig)
    wasm: WasmConfig = field(default_factory=WasmConfig)
    fallback: Dict[SandboxType, Tuple[SandboxType, ...]] = field(
        default_factory=lambda: dict(DEFAULT_FALLBACK)
    )
    max_output_size: int = SANDBOX_DEFAULTS.max_output_size
    native_network_isolation: bool = True

    def validate(self) -> None:
        """Raise ConfigurationError if no manager can be built from this config."""
        problems = []
        if self.pool.max_size < 1:
            problems.append(f"pool.max_size must be at least 1, got {self.pool.max_size}")
        if self.pool.idle_timeout_ms < 0:
            problems.append(f"pool.idle_timeout_ms must not be negative, got {self.pool.idle_timeout_ms}")
        if self.docker.availability_ttl_ms < 0:
            problems.append("docker.availability_ttl_ms must not be negative")
        if self.wasm.cache_size < 1:
            problems.append(f"wasm.cache_size must be at least 1, got {self.wasm.cache_size}")
        if self.wasm.max_workers < 1:
            problems.append(f"wasm.max_workers must be at least 1, got {self.wasm.max_workers}")
        if self.max_output_size < 1:
            problems.append("max_output_size must be positive")
        problems.extend(f"defaults: {p}" for p in self.defaults.validate())
        if problems:
            raise ConfigurationError(
                f"Invalid sandbox configuration: {'; '.join(problems)}",
                {"problems": problems},
            )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SandboxManagerConfig":
        """Build a config from the loader mapping ``{defaults, pool, docker, wasm, fallback}``."""
        try:
            defaults = _default_policy()
            if data.get("defaults") is not None:
                defaults = merge_policies(defaults, IsolationPolicy.from_dict(data["defaults"]))
            fallback = dict(DEFAULT_FALLBACK)
            for source, chain in (data.get("fallback") or {}).items():
                fallback[SandboxType(source)] = tuple(SandboxType(t) for t in chain)
        except (ValueError, TypeError, AttributeError) as e:
            raise ConfigurationError(f"Invalid sandbox configuration: {e}") from e

        return cls(
            defaults=defaults,
            pool=PoolConfig.from_dict(data.get("pool") or {}),
            docker=DockerConfig.from_dict(data.get("docker") or {}),
            wasm=WasmConfig.from_dict(data.get("wasm") or {}),
            fallback=fallback,
            max_output_size=_pick(data, "maxOutputSize", "max_output_size", default=SANDBOX_DEFAULTS.max_output_size),
            native_network_isolation=bool(
                _pick(data, "nativeNetworkIsolation", "native_network_isolation", default=True)
            ),
        )


class SandboxManager:
    """Selects a backend per call and falls back when it is unavailable.

    ``executors`` replaces the default executor for the given backends,
    e.g. a ContainerExecutor over a different ContainerRuntime.
    """

    def __init__(
        self,
        config: Optional[SandboxManagerConfig] = None,
        executors: Optional[Mapping[SandboxType, BaseSandboxExecutor]] = None,
    ):
        self._config = config or SandboxManagerConfig()
        self._custom_executors = dict(executors or {})
        self._executors: Dict[SandboxType, BaseSandboxExecutor] = {}
        self._initialized = False
        self._lock = threading.RLock()

    @property
    def config(self) -> SandboxManagerConfig:
        return self._config

    @property
    def initialized(self) -> bool:
        return self._initialized

    def get_executor(self, sandbox_type: SandboxType) -> Optional[BaseSandboxExecutor]:
        return self._executors.get(SandboxType(sandbox_type))

    def initialize(self) -> None:
        """Build and connect every executor. Idempotent.

        Raises ConfigurationError for invalid configuration; an unreachable
        backend is logged and left for fallback.
        """
        with self._lock:
            if self._initialized:
                return
            self._config.validate()
            executors = self._create_executors()
            for sandbox_type, executor in executors.items():
                result = executor.connect()
                if not result.success:
                    logger.warning(f"Sandbox backend '{sandbox_type.value}' not available: {result.error}")
            self._executors = executors
            self._initialized = True
            available = [t.value for t, e in executors.items() if e.is_available()]
            logger.info(f"Sandbox manager initialized, available backends: {available}")

    def _create_executors(self) -> Dict[SandboxType, BaseSandboxExecutor]:
        config = self._config
        executors: Dict[SandboxType, BaseSandboxExecutor] = {
            SandboxType.NATIVE: NativeExecutor(
                isolate_network=config.native_network_isolation,
                max_output_size=config.max_output_size,
            ),
            SandboxType.CONTAINER: self._create_container_executor(),
        }
        if config.wasm.enabled:
            executors[SandboxType.WASM] = WasmExecutor(
                cache_size=config.wasm.cache_size,
                max_workers=config.wasm.max_workers,
                max_output_size=config.max_output_size,
            )
        executors.update(self._custom_executors)
        return executors

    def _create_container_executor(self) -> ContainerExecutor:
        config = self._config
        return ContainerExecutor(
            runtime_factory=lambda: DockerRuntime(
                base_url=config.docker.base_url,
                timeout=config.docker.timeout,
            ),
            max_size=config.pool.max_size,
            idle_timeout_ms=config.pool.idle_timeout_ms,
            availability_ttl_ms=config.docker.availability_ttl_ms,
            max_output_size=config.max_output_size,
        )

    def execute(
        self,
        request: ExecutionRequest,
        policy: Optional[IsolationPolicy] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> SandboxResult[ExecutionResult]:
        """Run ``request`` under ``policy`` merged over the configured defaults.

        Never raises for expected conditions: a non-zero exit or timeout is
        a successful result, and anything that prevented execution is a
        failure carrying an ErrorKind.
        """
        if not self._initialized:
            self.initialize()

        merged = merge_policies(self._config.defaults, policy)
        problems = merged.validate()
        if problems:
            return SandboxResult.failure(PolicyValidationError(problems).message, ErrorKind.INVALID_POLICY)
        if not request.command:
            return SandboxResult.failure("Command array is empty", ErrorKind.INVALID_REQUEST)

        requested = merged.sandbox_type
        chain = (requested, *self._config.fallback.get(requested, ()))
        unavailable = []
        for backend in chain:
            candidate = merged
            if backend != requested:
                candidate = replace(merged, type=backend)
                if candidate.validate():
                    logger.debug(f"Skipping fallback '{backend.value}': policy not valid for it")
                    continue

            executor = self._executors.get(backend)
            if executor is None or not executor.is_available():
                unavailable.append(f"{backend.value}: not available")
                continue

            with ExecutionTimer(backend.value) as timer:
                try:
                    result = executor.execute(request, candidate, cancel_token)
                except Exception as e:
                    logger.exception(f"Sandbox backend '{backend.value}' raised during execution")
                    result = SandboxResult.failure(
                        f"Execution on '{backend.value}' failed: {e}",
                        ErrorKind.EXECUTION_FAILED,
                    )
                timer.outcome = result.data.outcome if result.success else "error"

            if not result.success and result.kind == ErrorKind.BACKEND_UNAVAILABLE:
                unavailable.append(f"{backend.value}: {result.error}")
                continue
            if backend != requested:
                logger.warning(f"Sandbox backend '{requested.value}' unavailable, ran on '{backend.value}'")
                record_fallback(requested.value, backend.value)
            return result

        return SandboxResult.failure(
            f"No sandbox backend available for '{requested.value}' ({'; '.join(unavailable)})",
            ErrorKind.BACKEND_UNAVAILABLE,
        )

    def is_docker_available(self) -> bool:
        """Best-effort container runtime check. Never raises."""
        executor = self._executors.get(SandboxType.CONTAINER)
        if executor is None:
            executor = self._custom_executors.get(SandboxType.CONTAINER)
            if executor is not None:
                # Caller-owned; leave its pool alone.
                return executor.is_available()
            executor = self._create_container_executor()
            try:
                return executor.is_available()
            finally:
                executor.disconnect()
        return executor.is_available()

    def is_wasm_available(self) -> bool:
        """Whether the WASM runtime can be loaded. Never raises."""
        executor = self._executors.get(SandboxType.WASM)
        if executor is None:
            if not self._config.wasm.enabled:
                return False
            executor = WasmExecutor()
            executor.connect()
        return executor.is_available()

    def shutdown(self) -> None:
        """Disconnect every executor. Safe to call repeatedly or before initialize()."""
        with self._lock:
            executors = self._executors
            self._executors = {}
            self._initialized = False
        for sandbox_type, executor in executors.items():
            result = executor.disconnect()
            if not result.success:
                logger.warning(f"Error disconnecting '{sandbox_type.value}' sandbox: {result.error}")
        if executors:
            logger.info("Sandbox manager shut down")


# Global sandbox manager
_global_manager_config: Optional[SandboxManagerConfig] = None
_global_manager: Optional[SandboxManager] = None
_global_lock = threading.Lock()


def set_sandbox_manager_config(config: SandboxManagerConfig) -> None:
    """Set the global manager configuration; the next get_sandbox_manager() uses it."""
    global _global_manager_config, _global_manager
    config.validate()
    with _global_lock:
        previous = _global_manager
        _global_manager_config = config
        _global_manager = None
    if previous is not None:
        previous.shutdown()
    logger.info(f"Sandbox configured: default={config.defaults.sandbox_type.value}, pool={config.pool.max_size}")


def get_sandbox_manager() -> SandboxManager:
    """Get the global SandboxManager, creating it from the global config if needed."""
    global _global_manager
    with _global_lock:
        if _global_manager is None:
            _global_manager = SandboxManager(_global_manager_config)
        return _global_manager
