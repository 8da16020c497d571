"""
Container sandbox execution.

Commands run via exec inside warm containers borrowed from a ContainerPool.
A container whose command was killed (timeout, cancellation) or whose exec
failed is destroyed rather than returned to the pool, so nothing a killed
process left behind reaches the next tenant.
"""
import time
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from concurrent.futures import wait as wait_futures
from typing import Callable, Optional

from sandcrate.config.defaults import POOL_DEFAULTS, SANDBOX_DEFAULTS
from sandcrate.exceptions import (
    BackendUnavailableError,
    ContainerRuntimeError,
    PoolExhaustedError,
    SandboxError,
)
from sandcrate.sandbox.base import (
    BaseSandboxExecutor,
    build_shell_command,
    memory_bytes,
    truncate_output,
)
from sandcrate.sandbox.pool import ContainerPool
from sandcrate.sandbox.runtime import ContainerCreateOptions, ContainerRuntime, DockerRuntime
from sandcrate.sandbox.types import (
    CancellationToken,
    ErrorKind,
    ExecutionRequest,
    ExecutionResult,
    IsolationPolicy,
    SandboxResult,
    SandboxType,
)

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.05
# How long to wait for the exec stream to close after its container is destroyed.
KILL_GRACE = 2.0


class _OutputBuffer:
    """Thread-safe stdout/stderr accumulator fed by the exec stream."""

    def __init__(self, max_chars: int):
        # Worst case four UTF-8 bytes per character.
        self._max_bytes = max_chars * 4
        self._stdout = bytearray()
        self._stderr = bytearray()
        self._lock = threading.Lock()

    def __call__(self, stdout: Optional[bytes], stderr: Optional[bytes]) -> None:
        with self._lock:
            if stdout and len(self._stdout) < self._max_bytes:
                self._stdout.extend(stdout[: self._max_bytes - len(self._stdout)])
            if stderr and len(self._stderr) < self._max_bytes:
                self._stderr.extend(stderr[: self._max_bytes - len(self._stderr)])

    def snapshot(self):
        with self._lock:
            return (
                bytes(self._stdout).decode(errors="replace"),
                bytes(self._stderr).decode(errors="replace"),
            )


class ContainerExecutor(BaseSandboxExecutor):
    """Execute commands inside pooled containers."""

    sandbox_type = SandboxType.CONTAINER

    def __init__(
        self,
        runtime: Optional[ContainerRuntime] = None,
        runtime_factory: Callable[[], ContainerRuntime] = DockerRuntime,
        max_size: int = POOL_DEFAULTS.max_size,
        idle_timeout_ms: int = POOL_DEFAULTS.idle_timeout_ms,
        availability_ttl_ms: int = POOL_DEFAULTS.availability_ttl_ms,
        max_output_size: int = SANDBOX_DEFAULTS.max_output_size,
    ):
        self._runtime = runtime
        self._runtime_factory = runtime_factory
        self._max_size = max_size
        self._idle_timeout_ms = idle_timeout_ms
        self._availability_ttl = availability_ttl_ms / 1000
        self._max_output_size = max_output_size

        self._pool: Optional[ContainerPool] = None
        self._workers: Optional[ThreadPoolExecutor] = None
        self._available: Optional[bool] = None
        self._checked_at = 0.0
        self._lock = threading.Lock()

    @property
    def runtime(self) -> ContainerRuntime:
        with self._lock:
            return self._runtime_unlocked()

    @property
    def pool(self) -> ContainerPool:
        """The container pool, created on first use."""
        with self._lock:
            if self._pool is None:
                self._pool = ContainerPool(
                    self._runtime_unlocked(),
                    max_size=self._max_size,
                    idle_timeout_ms=self._idle_timeout_ms,
                )
            return self._pool

    @property
    def max_workers(self) -> int:
        """Upper bound on concurrently running exec streams."""
        return self._max_size * POOL_DEFAULTS.exec_workers_per_slot

    def _runtime_unlocked(self) -> ContainerRuntime:
        if self._runtime is None:
            self._runtime = self._runtime_factory()
        return self._runtime

    def _ping(self) -> None:
        """Ping the container runtime, raising BackendUnavailableError if it cannot be reached."""
        try:
            self.runtime.ping()
        except ContainerRuntimeError as e:
            self._record_availability(False)
            raise BackendUnavailableError(SandboxType.CONTAINER.value, e.message) from e
        self._record_availability(True)

    def connect(self) -> SandboxResult[None]:
        try:
            self._ping()
        except BackendUnavailableError as e:
            logger.warning(f"Container sandbox unavailable: {e}")
            return self._failure(e.message, ErrorKind.BACKEND_UNAVAILABLE)
        logger.info("Container sandbox connected")
        return self._success()

    def disconnect(self) -> SandboxResult[None]:
        with self._lock:
            pool, self._pool = self._pool, None
            workers, self._workers = self._workers, None
            runtime = self._runtime
            self._available = None
        if pool is not None:
            pool.destroy_all()
        if workers is not None:
            workers.shutdown(wait=False)
        if runtime is not None:
            runtime.close()
        return self._success()

    def is_available(self) -> bool:
        with self._lock:
            fresh = time.monotonic() - self._checked_at < self._availability_ttl
            if self._available is not None and fresh:
                return self._available
        try:
            self._ping()
        except BackendUnavailableError as e:
            logger.debug(e.message)
            return False
        return True

    def invalidate_availability(self) -> None:
        with self._lock:
            self._available = None

    def _record_availability(self, available: bool) -> None:
        with self._lock:
            self._available = available
            self._checked_at = time.monotonic()

    @staticmethod
    def create_options(policy: IsolationPolicy) -> ContainerCreateOptions:
        """Translate an isolation policy into container creation parameters."""
        resources = policy.resources
        nano_cpus = None
        pids_limit = SANDBOX_DEFAULTS.pids_limit
        if resources is not None:
            if resources.cpus is not None:
                nano_cpus = int(resources.cpus * 1_000_000_000)
            if resources.pids_limit is not None:
                pids_limit = resources.pids_limit
        return ContainerCreateOptions(
            memory=memory_bytes(policy),
            nano_cpus=nano_cpus,
            pids_limit=pids_limit,
            network_mode=policy.network_mode.value,
            mounts=tuple(policy.mounts or ()),
            user=policy.user,
            working_dir=policy.working_dir or SANDBOX_DEFAULTS.working_dir,
        )

    def execute(
        self,
        request: ExecutionRequest,
        policy: IsolationPolicy,
        cancel_token: Optional[CancellationToken] = None,
    ) -> SandboxResult[ExecutionResult]:
        invalid = self._check_request(request)
        if invalid is not None:
            return invalid
        if not policy.image:
            return self._failure("image is required for container sandboxes", ErrorKind.INVALID_POLICY)
        if not self.is_available():
            return self._failure("Container runtime is not reachable", ErrorKind.BACKEND_UNAVAILABLE)

        timeout_ms = self.resolve_timeout(request, policy)
        start = time.monotonic()
        deadline = start + timeout_ms / 1000
        pool = self.pool

        try:
            container = pool.acquire(policy.image, self.create_options(policy), timeout_ms=timeout_ms)
        except PoolExhaustedError as e:
            return self._failure(str(e), ErrorKind.POOL_EXHAUSTED)
        except ContainerRuntimeError as e:
            return self._runtime_failure(e)
        except SandboxError as e:
            return self._failure(str(e), ErrorKind.EXECUTION_FAILED)

        output = _OutputBuffer(self._max_output_size)
        future = self._get_workers().submit(
            self.runtime.exec,
            container.id,
            build_shell_command(request.command),
            self.build_env(request, policy),
            request.working_dir or policy.working_dir or SANDBOX_DEFAULTS.working_dir,
            policy.user,
            request.stdin,
            output,
        )

        timed_out = False
        cancelled = False
        exit_code = None
        while exit_code is None:
            wait = max(0.0, min(POLL_INTERVAL, deadline - time.monotonic()))
            try:
                exit_code = future.result(timeout=wait)
            except FutureTimeoutError:
                if cancel_token is not None and cancel_token.cancelled:
                    cancelled = True
                elif time.monotonic() >= deadline:
                    timed_out = True
                else:
                    continue
                # Destroying the container kills the command and ends the exec stream.
                future.cancel()
                pool.release(container, corrupted=True)
                wait_futures([future], timeout=KILL_GRACE)
                if not future.done():
                    logger.warning(
                        f"Exec stream for {container.id[:12]} still open after the container was destroyed, "
                        f"abandoning its worker thread"
                    )
                break
            except ContainerRuntimeError as e:
                pool.release(container, corrupted=True)
                return self._runtime_failure(e)
            except Exception as e:
                pool.release(container, corrupted=True)
                logger.exception(f"Unexpected error executing in container {container.id[:12]}")
                return self._failure(f"Container execution failed: {e}", ErrorKind.EXECUTION_FAILED)

        duration_ms = int((time.monotonic() - start) * 1000)
        if timed_out:
            logger.warning(f"Container execution timed out after {timeout_ms}ms in {container.id[:12]}")
            exit_code = SANDBOX_DEFAULTS.timeout_exit_code
        elif cancelled:
            logger.info(f"Container execution cancelled after {duration_ms}ms in {container.id[:12]}")
            exit_code = SANDBOX_DEFAULTS.cancelled_exit_code
        else:
            # Killed by a signal inside the container; don't hand it to the next caller.
            pool.release(container, corrupted=exit_code >= 128)

        stdout, stderr = output.snapshot()
        return self._success(ExecutionResult(
            stdout=truncate_output(stdout, self._max_output_size),
            stderr=truncate_output(stderr, self._max_output_size),
            exit_code=exit_code,
            timed_out=timed_out,
            cancelled=cancelled,
            duration_ms=duration_ms,
        ))

    def _get_workers(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._workers is None:
                self._workers = ThreadPoolExecutor(
                    max_workers=self.max_workers,
                    thread_name_prefix="sandcrate-exec",
                )
            return self._workers

    def _runtime_failure(self, error: ContainerRuntimeError) -> SandboxResult:
        if error.connectivity:
            self.invalidate_availability()
            return self._failure(str(error), ErrorKind.BACKEND_UNAVAILABLE)
        return self._failure(str(error), ErrorKind.EXECUTION_FAILED)
