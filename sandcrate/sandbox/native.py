"""
Native process sandbox execution.

Runs each command as a host process in its own session, so a timeout or
cancellation can kill the whole process group rather than just the shell.

Native execution is trusted/internal execution. Isolation is best effort:
- network.mode=none is enforced only when the host allows unprivileged
  network namespaces (probed once at connect()); otherwise it is logged as
  unenforced.
- resources.memory is applied as RLIMIT_AS where the platform has prlimit.
- resources.cpus has no native equivalent and is never enforced.
"""
import os
import sys
import time
import shutil
import signal
import logging
import threading
import subprocess
from typing import List, Optional

from sandcrate.config.defaults import SANDBOX_DEFAULTS
from sandcrate.sandbox.base import (
    SHELL,
    BaseSandboxExecutor,
    build_shell_command,
    memory_bytes,
    truncate_output,
)
from sandcrate.sandbox.types import (
    CancellationToken,
    ErrorKind,
    ExecutionRequest,
    ExecutionResult,
    IsolationPolicy,
    NetworkMode,
    SandboxResult,
    SandboxType,
)

if sys.platform != "win32":
    import resource
else:
    resource = None

logger = logging.getLogger(__name__)

# How often a running process is checked against its deadline and cancel token.
POLL_INTERVAL = 0.05
# How long to wait for pipes to drain once the process group has been killed.
KILL_GRACE = 2.0


def _netns_candidates() -> List[List[str]]:
    unshare = shutil.which("unshare")
    if unshare is None:
        return []
    candidates = [
        [unshare, "--net", "--map-current-user"],
        [unshare, "--net", "--map-root-user"],
    ]
    if hasattr(os, "geteuid") and os.geteuid() == 0:
        candidates.insert(0, [unshare, "--net"])
    return candidates


def probe_network_namespace() -> Optional[List[str]]:
    """Find an argv prefix that runs a command in an empty network namespace.

    Returns None when the host does not permit it.
    """
    if not sys.platform.startswith("linux"):
        return None
    for prefix in _netns_candidates():
        try:
            completed = subprocess.run(
                [*prefix, SHELL, "-c", "exit 0"],
                capture_output=True,
                timeout=5,
            )
        except (subprocess.SubprocessError, OSError):
            continue
        if completed.returncode == 0:
            return prefix
    return None


class NativeExecutor(BaseSandboxExecutor):
    """Execute commands as host processes with timeout and best-effort limits."""

    sandbox_type = SandboxType.NATIVE

    def __init__(
        self,
        isolate_network: bool = True,
        max_output_size: int = SANDBOX_DEFAULTS.max_output_size,
    ):
        self._isolate_network = isolate_network
        self._max_output_size = max_output_size
        self._netns_prefix: Optional[List[str]] = None
        self._probed = False
        self._warned: set = set()
        self._lock = threading.Lock()

    @property
    def network_isolation(self) -> bool:
        """Whether network.mode=none is actually enforced on this host."""
        return self._netns_prefix is not None

    def connect(self) -> SandboxResult[None]:
        with self._lock:
            if not self._probed:
                if self._isolate_network:
                    self._netns_prefix = probe_network_namespace()
                self._probed = True
                if self._netns_prefix:
                    logger.info(f"Native sandbox: network isolation via {' '.join(self._netns_prefix)}")
                else:
                    logger.info("Native sandbox: no network namespace support, running as trusted execution")
        return self._success()

    def disconnect(self) -> SandboxResult[None]:
        return self._success()

    def is_available(self) -> bool:
        return True

    def execute(
        self,
        request: ExecutionRequest,
        policy: IsolationPolicy,
        cancel_token: Optional[CancellationToken] = None,
    ) -> SandboxResult[ExecutionResult]:
        invalid = self._check_request(request)
        if invalid is not None:
            return invalid
        if not self._probed:
            self.connect()

        timeout_ms = self.resolve_timeout(request, policy)
        env = os.environ.copy()
        env.update(self.build_env(request, policy))
        argv = self._build_argv(request, policy)
        stdin_data = request.stdin.encode() if request.stdin is not None else None

        start = time.monotonic()
        try:
            process = subprocess.Popen(
                argv,
                cwd=request.working_dir,
                env=env,
                stdin=subprocess.PIPE if stdin_data is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            return self._failure(f"Failed to start process: {e}", ErrorKind.EXECUTION_FAILED)

        self._apply_limits(process.pid, policy)

        deadline = start + timeout_ms / 1000
        timed_out = False
        cancelled = False
        pending_input = stdin_data
        while True:
            remaining = max(0.0, deadline - time.monotonic())
            wait = min(POLL_INTERVAL, remaining) if cancel_token is not None else remaining
            try:
                stdout, stderr = process.communicate(input=pending_input, timeout=wait)
                break
            except subprocess.TimeoutExpired:
                # communicate() keeps feeding the input it was first given.
                pending_input = None
                if cancel_token is not None and cancel_token.cancelled:
                    cancelled = True
                elif time.monotonic() >= deadline:
                    timed_out = True
                else:
                    continue
            stdout, stderr = self._kill(process)
            break

        duration_ms = int((time.monotonic() - start) * 1000)
        if timed_out:
            logger.warning(f"Native execution timed out after {timeout_ms}ms: {request.command[0][:80]}")
            exit_code = SANDBOX_DEFAULTS.timeout_exit_code
        elif cancelled:
            logger.info(f"Native execution cancelled after {duration_ms}ms")
            exit_code = SANDBOX_DEFAULTS.cancelled_exit_code
        else:
            exit_code = process.returncode
            if exit_code < 0:
                exit_code = 128 - exit_code

        return self._success(ExecutionResult(
            stdout=truncate_output(stdout.decode(errors="replace"), self._max_output_size),
            stderr=truncate_output(stderr.decode(errors="replace"), self._max_output_size),
            exit_code=exit_code,
            timed_out=timed_out,
            cancelled=cancelled,
            duration_ms=duration_ms,
        ))

    def _build_argv(self, request: ExecutionRequest, policy: IsolationPolicy) -> List[str]:
        argv = build_shell_command(request.command)
        if policy.network_mode != NetworkMode.NONE:
            return argv
        if self._netns_prefix is not None:
            return [*self._netns_prefix, *argv]
        self._warn_once(
            "network",
            "network.mode=none is not enforced for native execution on this host; "
            "native commands must be trusted",
        )
        return argv

    def _apply_limits(self, pid: int, policy: IsolationPolicy) -> None:
        memory = memory_bytes(policy)
        if memory is not None:
            if resource is None or not hasattr(resource, "prlimit"):
                self._warn_once("memory", "resources.memory is not enforced for native execution on this platform")
            else:
                try:
                    resource.prlimit(pid, resource.RLIMIT_AS, (memory, memory))
                except (ValueError, OSError) as e:
                    logger.debug(f"Could not apply memory limit to pid {pid}: {e}")
        if policy.resources is not None and policy.resources.cpus is not None:
            self._warn_once("cpus", "resources.cpus is not enforced for native execution")

    def _kill(self, process: subprocess.Popen):
        """Kill the process group and collect whatever output was produced."""
        try:
            if hasattr(os, "killpg"):
                os.killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
        except (ProcessLookupError, PermissionError):
            process.kill()
        try:
            return process.communicate(timeout=KILL_GRACE)
        except subprocess.TimeoutExpired:
            # A descendant escaped the group and still holds the pipes open.
            for stream in (process.stdout, process.stderr):
                if stream is not None:
                    stream.close()
            process.wait()
            return b"", b""

    def _warn_once(self, key: str, message: str) -> None:
        with self._lock:
            if key in self._warned:
                return
            self._warned.add(key)
        logger.warning(message)
