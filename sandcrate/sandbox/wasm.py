"""
WASM sandbox execution via Extism.

The module gets no filesystem, network or process access beyond what WASI
grants; the request reaches it through the entry point's input and the
result comes back through its output. Timeouts are enforced by a host-side
watchdog, and a plugin instance that timed out is never reused.
"""
import json
import math
import time
import logging
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Any, Dict, Optional, Tuple

from sandcrate.config.defaults import SANDBOX_DEFAULTS
from sandcrate.exceptions import BackendUnavailableError
from sandcrate.sandbox.base import BaseSandboxExecutor, memory_bytes, truncate_output
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

WASM_PAGE_SIZE = 65536
POLL_INTERVAL = 0.05


def build_manifest(module: str, policy: IsolationPolicy) -> Dict[str, Any]:
    """Extism manifest for a module given as a file path or an http(s) URL."""
    if module.startswith(("http://", "https://")):
        source = {"url": module}
    else:
        source = {"path": module}
    manifest: Dict[str, Any] = {"wasm": [source]}
    memory = memory_bytes(policy)
    if memory is not None:
        manifest["memory"] = {"max_pages": max(1, math.ceil(memory / WASM_PAGE_SIZE))}
    return manifest


def build_input(request: ExecutionRequest) -> bytes:
    if request.stdin is not None:
        return request.stdin.encode()
    return json.dumps({
        "command": list(request.command),
        "cwd": request.working_dir,
        "env": request.env,
    }).encode()


def parse_output(raw: bytes) -> Tuple[str, str, int]:
    """Read a module's output as JSON {stdout, stderr, exitCode} or as plain stdout."""
    text = raw.decode(errors="replace")
    try:
        data = json.loads(text)
    except ValueError:
        return text, "", 0
    if not isinstance(data, dict) or not {"stdout", "stderr", "exitCode", "exit_code"} & data.keys():
        return text, "", 0
    exit_code = data.get("exitCode", data.get("exit_code", 0))
    return str(data.get("stdout") or ""), str(data.get("stderr") or ""), int(exit_code or 0)


class WasmExecutor(BaseSandboxExecutor):
    """Invoke precompiled WASM modules through the Extism runtime."""

    sandbox_type = SandboxType.WASM

    def __init__(
        self,
        cache_size: int = SANDBOX_DEFAULTS.wasm_cache_size,
        max_output_size: int = SANDBOX_DEFAULTS.max_output_size,
        max_workers: int = SANDBOX_DEFAULTS.wasm_max_workers,
    ):
        self._cache_size = cache_size
        self._max_workers = max_workers
        self._max_output_size = max_output_size
        self._extism = None
        # Idle plugin instances; an instance is checked out while it runs.
        self._plugins: "OrderedDict[str, Any]" = OrderedDict()
        self._workers: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()

    def _load_runtime(self):
        try:
            import extism
        except ImportError as e:
            raise BackendUnavailableError(
                SandboxType.WASM.value,
                f"extism is not installed, install sandcrate[wasm] ({e})",
            ) from e
        return extism

    def connect(self) -> SandboxResult[None]:
        if self._extism is not None:
            return self._success()
        try:
            self._extism = self._load_runtime()
        except BackendUnavailableError as e:
            logger.warning(f"WASM sandbox unavailable: {e}")
            return self._failure(e.message, ErrorKind.BACKEND_UNAVAILABLE)
        logger.info("WASM sandbox connected")
        return self._success()

    def disconnect(self) -> SandboxResult[None]:
        with self._lock:
            plugins = list(self._plugins.values())
            self._plugins.clear()
            workers, self._workers = self._workers, None
        for plugin in plugins:
            self._close(plugin)
        if workers is not None:
            workers.shutdown(wait=False)
        return self._success()

    def is_available(self) -> bool:
        return self._extism is not None

    @property
    def cached_plugins(self) -> int:
        with self._lock:
            return len(self._plugins)

    def execute(
        self,
        request: ExecutionRequest,
        policy: IsolationPolicy,
        cancel_token: Optional[CancellationToken] = None,
    ) -> SandboxResult[ExecutionResult]:
        invalid = self._check_request(request)
        if invalid is not None:
            return invalid
        if not policy.wasm_module:
            return self._failure("wasm_module is required for wasm sandboxes", ErrorKind.INVALID_POLICY)
        if not self.is_available():
            return self._failure("WASM runtime not available", ErrorKind.BACKEND_UNAVAILABLE)

        timeout_ms = self.resolve_timeout(request, policy)
        function = policy.wasm_function or SANDBOX_DEFAULTS.wasm_function
        key = f"{policy.wasm_module}:{bool(policy.wasi)}:{memory_bytes(policy)}"
        start = time.monotonic()

        try:
            plugin = self._checkout(key, policy)
        except (self._extism.Error, OSError, ValueError) as e:
            return self._failure(f"Failed to load WASM module {policy.wasm_module}: {e}")

        deadline = start + timeout_ms / 1000
        future = self._get_workers().submit(plugin.call, function, build_input(request))
        timed_out = False
        cancelled = False
        while True:
            wait = max(0.0, min(POLL_INTERVAL, deadline - time.monotonic()))
            try:
                raw = future.result(timeout=wait)
            except FutureTimeoutError:
                if cancel_token is not None and cancel_token.cancelled:
                    cancelled = True
                elif time.monotonic() >= deadline:
                    timed_out = True
                else:
                    continue
                self._abandon(plugin, future)
                duration_ms = int((time.monotonic() - start) * 1000)
                if timed_out:
                    logger.warning(f"WASM execution timed out after {timeout_ms}ms: {policy.wasm_module}")
                return self._success(ExecutionResult(
                    stdout="",
                    stderr="",
                    exit_code=(SANDBOX_DEFAULTS.timeout_exit_code if timed_out
                               else SANDBOX_DEFAULTS.cancelled_exit_code),
                    timed_out=timed_out,
                    cancelled=cancelled,
                    duration_ms=duration_ms,
                ))
            except self._extism.Error as e:
                # A trap leaves the instance in an unknown state.
                self._close(plugin)
                stdout, stderr, exit_code = "", str(e), 1
            else:
                self._checkin(key, plugin)
                stdout, stderr, exit_code = parse_output(bytes(raw))
            break

        return self._success(ExecutionResult(
            stdout=truncate_output(stdout, self._max_output_size),
            stderr=truncate_output(stderr, self._max_output_size),
            exit_code=exit_code,
            duration_ms=int((time.monotonic() - start) * 1000),
        ))

    def _checkout(self, key: str, policy: IsolationPolicy):
        with self._lock:
            plugin = self._plugins.pop(key, None)
        if plugin is not None:
            return plugin
        manifest = build_manifest(policy.wasm_module, policy)
        logger.debug(f"Loading WASM module {policy.wasm_module}")
        return self._extism.Plugin(manifest, wasi=bool(policy.wasi))

    def _checkin(self, key: str, plugin) -> None:
        evicted = []
        with self._lock:
            if key in self._plugins:
                evicted.append(plugin)
            else:
                self._plugins[key] = plugin
                self._plugins.move_to_end(key)
                while len(self._plugins) > self._cache_size:
                    _, old = self._plugins.popitem(last=False)
                    evicted.append(old)
        for old in evicted:
            self._close(old)

    def _abandon(self, plugin, future) -> None:
        """Stop a running call and drop its instance."""
        future.add_done_callback(lambda _: self._close(plugin))
        if future.cancel():
            # Never started; the worker is free.
            return
        cancel_handle = getattr(plugin, "cancel_handle", None)
        if cancel_handle is not None:
            try:
                cancel_handle().cancel()
                return
            except self._extism.Error as e:
                logger.debug(f"Could not cancel WASM call: {e}")
        logger.warning(
            f"WASM call could not be interrupted, its worker stays busy until it returns "
            f"(pool of {self._max_workers})"
        )

    def _close(self, plugin) -> None:
        close = getattr(plugin, "close", None)
        if close is None:
            return
        try:
            close()
        except self._extism.Error as e:
            logger.debug(f"Error closing WASM plugin: {e}")

    def _get_workers(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._workers is None:
                self._workers = ThreadPoolExecutor(
                    max_workers=self._max_workers,
                    thread_name_prefix="sandcrate-wasm",
                )
            return self._workers
