"""
Unit tests for SandboxManager: lifecycle, policy merging and fallback.
"""
import sys
import threading
from unittest.mock import MagicMock, patch

import pytest
from docker.errors import DockerException

from sandcrate.exceptions import ConfigurationError, ContainerRuntimeError
from sandcrate.sandbox.docker import ContainerExecutor
from sandcrate.sandbox.manager import (
    PoolConfig,
    SandboxManager,
    SandboxManagerConfig,
    WasmConfig,
    get_sandbox_manager,
    set_sandbox_manager_config,
)
from sandcrate.sandbox.native import NativeExecutor
from sandcrate.sandbox.types import (
    CancellationToken,
    ErrorKind,
    ExecutionRequest,
    IsolationPolicy,
    NetworkMode,
    NetworkPolicy,
    ResourceLimits,
    SandboxType,
)

CONTAINER = IsolationPolicy(type=SandboxType.CONTAINER, image="alpine:3.19")


class RecordingNativeExecutor(NativeExecutor):
    def __init__(self):
        super().__init__(isolate_network=False)
        self.policies = []

    def execute(self, request, policy, cancel_token=None):
        self.policies.append(policy)
        return super().execute(request, policy, cancel_token)


@pytest.fixture
def native():
    return RecordingNativeExecutor()


@pytest.fixture
def make_manager(fake_runtime, native):
    managers = []

    def make(config=None, **executors):
        config = config or SandboxManagerConfig(wasm=WasmConfig(enabled=False))
        overrides = {
            SandboxType.NATIVE: native,
            SandboxType.CONTAINER: ContainerExecutor(runtime=fake_runtime),
        }
        overrides.update({SandboxType(k): v for k, v in executors.items()})
        manager = SandboxManager(config, executors=overrides)
        managers.append(manager)
        return manager

    yield make
    for manager in managers:
        manager.shutdown()


def ok(result):
    assert result.success, result.error
    return result.data


class TestLifecycle:
    def test_initialize_twice(self, make_manager):
        manager = make_manager()
        manager.initialize()
        executor = manager.get_executor(SandboxType.NATIVE)
        manager.initialize()
        assert manager.initialized
        assert manager.get_executor(SandboxType.NATIVE) is executor

    def test_shutdown_twice(self, make_manager):
        manager = make_manager()
        manager.initialize()
        manager.shutdown()
        manager.shutdown()
        assert not manager.initialized
        assert manager.get_executor(SandboxType.NATIVE) is None

    def test_shutdown_without_initialize(self):
        manager = SandboxManager()
        manager.shutdown()
        assert not manager.initialized

    def test_reinitialize_after_shutdown(self, make_manager):
        manager = make_manager()
        manager.initialize()
        manager.shutdown()
        manager.initialize()
        assert ok(manager.execute(ExecutionRequest(command=["echo back"]))).stdout.strip() == "back"

    def test_execute_initializes_lazily(self, make_manager):
        manager = make_manager()
        ok(manager.execute(ExecutionRequest(command=["true"])))
        assert manager.initialized

    def test_unavailable_backend_is_not_fatal(self, make_manager, fake_runtime):
        fake_runtime.reachable = False
        manager = make_manager()
        manager.initialize()
        assert manager.initialized
        assert not manager.is_docker_available()

    def test_concurrent_initialize(self, make_manager):
        manager = make_manager()
        threads = [threading.Thread(target=manager.initialize) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert manager.initialized

    @pytest.mark.parametrize("config", [
        SandboxManagerConfig(pool=PoolConfig(max_size=0)),
        SandboxManagerConfig(pool=PoolConfig(max_size=-1)),
        SandboxManagerConfig(pool=PoolConfig(idle_timeout_ms=-5)),
        SandboxManagerConfig(defaults=IsolationPolicy(type=SandboxType.CONTAINER)),
        SandboxManagerConfig(defaults=IsolationPolicy(resources=ResourceLimits(memory="plenty"))),
    ])
    def test_invalid_configuration_is_fatal(self, config):
        manager = SandboxManager(config)
        with pytest.raises(ConfigurationError):
            manager.initialize()
        assert not manager.initialized


class TestExecute:
    def test_echo(self, make_manager):
        data = ok(make_manager().execute(ExecutionRequest(command=["echo hello"])))
        assert data.stdout.strip() == "hello"
        assert data.exit_code == 0

    def test_exit_code_passthrough(self, make_manager):
        result = make_manager().execute(ExecutionRequest(command=["exit 1"]))
        assert result.success
        assert result.data.exit_code == 1

    def test_env_merge(self, native):
        config = SandboxManagerConfig(
            defaults=IsolationPolicy(type=SandboxType.NATIVE, env={"A": "1"}),
            wasm=WasmConfig(enabled=False),
        )
        manager = SandboxManager(config, executors={SandboxType.NATIVE: native})
        result = manager.execute(ExecutionRequest(command=['echo "A=$A B=$B"']), IsolationPolicy(env={"B": "2"}))
        assert ok(result).stdout.strip() == "A=1 B=2"
        manager.shutdown()

    def test_timeout(self, make_manager):
        data = ok(make_manager().execute(ExecutionRequest(command=["sleep 10"]), IsolationPolicy(timeout=100)))
        assert data.timed_out
        assert data.exit_code == 124

    def test_invalid_policy(self, make_manager):
        result = make_manager().execute(
            ExecutionRequest(command=["echo hi"]),
            IsolationPolicy(type=SandboxType.CONTAINER),
        )
        assert not result.success
        assert result.kind is ErrorKind.INVALID_POLICY
        assert "image is required" in result.error

    def test_empty_command(self, make_manager):
        result = make_manager().execute(ExecutionRequest(command=[]))
        assert result.kind is ErrorKind.INVALID_REQUEST

    def test_container_backend(self, make_manager, fake_runtime, native):
        data = ok(make_manager().execute(ExecutionRequest(command=["echo from container"]), CONTAINER))
        assert data.stdout.strip() == "from container"
        assert len(fake_runtime.execs) == 1
        assert native.policies == []

    def test_records_metrics(self, make_manager):
        with patch("sandcrate.observability.metrics.record_execution") as record:
            make_manager().execute(ExecutionRequest(command=["exit 3"]))
        backend, outcome, duration = record.call_args[0]
        assert (backend, outcome) == ("native", "nonzero_exit")
        assert duration >= 0

    def test_concurrent_executions(self, make_manager):
        manager = make_manager()
        results = {}

        def work(i):
            results[i] = manager.execute(ExecutionRequest(command=[f"echo {i}"]))

        threads = [threading.Thread(target=work, args=(i,)) for i in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)
        assert {i: ok(r).stdout.strip() for i, r in results.items()} == {i: str(i) for i in range(10)}


    def test_stdin_with_cancel_token(self, make_manager):
        request = ExecutionRequest(command=["sleep 0.3; cat"], stdin="payload", timeout=5000)
        data = ok(make_manager().execute(request, IsolationPolicy(type=SandboxType.NATIVE), CancellationToken()))
        assert data.stdout == "payload"
        assert data.exit_code == 0

    def test_executor_exception_becomes_failure(self, make_manager):
        class BrokenExecutor(NativeExecutor):
            def execute(self, request, policy, cancel_token=None):
                raise RuntimeError("backend bug")

        manager = make_manager(native=BrokenExecutor(isolate_network=False))
        result = manager.execute(ExecutionRequest(command=["echo hi"]))
        assert not result.success
        assert result.kind is ErrorKind.EXECUTION_FAILED
        assert "backend bug" in result.error

    def test_container_exec_exception_frees_pool_slot(self, fake_runtime):
        container = ContainerExecutor(runtime=fake_runtime, max_size=1)
        config = SandboxManagerConfig(wasm=WasmConfig(enabled=False))
        manager = SandboxManager(config, executors={SandboxType.CONTAINER: container})
        fake_runtime.exec_error = ValueError("garbled stream")
        result = manager.execute(ExecutionRequest(command=["echo hi"]), CONTAINER)
        assert result.kind is ErrorKind.EXECUTION_FAILED
        assert container.pool.stats()["in_use"] == 0

        fake_runtime.exec_error = None
        assert ok(manager.execute(ExecutionRequest(command=["echo hi"]), CONTAINER)).stdout.strip() == "hi"
        manager.shutdown()


class TestFallback:
    def test_container_unavailable_falls_back_to_native(self, make_manager, fake_runtime, native):
        fake_runtime.reachable = False
        with patch("sandcrate.sandbox.manager.record_fallback") as record_fallback:
            result = make_manager().execute(ExecutionRequest(command=["echo hello"]), CONTAINER)
        assert ok(result).stdout.strip() == "hello"
        record_fallback.assert_called_once_with("container", "native")

    def test_fallback_keeps_resources_and_network(self, make_manager, fake_runtime, native):
        fake_runtime.reachable = False
        policy = IsolationPolicy(
            type=SandboxType.CONTAINER,
            image="alpine",
            resources=ResourceLimits(memory="1g"),
            network=NetworkPolicy(mode=NetworkMode.NONE),
        )
        ok(make_manager().execute(ExecutionRequest(command=["true"]), policy))
        used = native.policies[0]
        assert used.type is SandboxType.NATIVE
        assert used.resources == ResourceLimits(memory="1g")
        assert used.network_mode is NetworkMode.NONE

    def test_connectivity_failure_during_execute_falls_back(self, make_manager, fake_runtime):
        fake_runtime.exec_error = ContainerRuntimeError("connection reset", connectivity=True)
        result = make_manager().execute(ExecutionRequest(command=["echo rescued"]), CONTAINER)
        assert ok(result).stdout.strip() == "rescued"

    def test_command_failure_is_not_retried(self, make_manager, native):
        result = make_manager().execute(ExecutionRequest(command=["exit 1"]), CONTAINER)
        assert ok(result).exit_code == 1
        assert native.policies == []

    def test_execution_failure_is_not_retried(self, make_manager, fake_runtime, native):
        fake_runtime.exec_error = ContainerRuntimeError("exec rejected")
        result = make_manager().execute(ExecutionRequest(command=["true"]), CONTAINER)
        assert result.kind is ErrorKind.EXECUTION_FAILED
        assert native.policies == []

    def test_chain_exhausted(self, make_manager, fake_runtime):
        fake_runtime.reachable = False
        config = SandboxManagerConfig(wasm=WasmConfig(enabled=False), fallback={SandboxType.CONTAINER: ()})
        result = make_manager(config).execute(ExecutionRequest(command=["true"]), CONTAINER)
        assert not result.success
        assert result.kind is ErrorKind.BACKEND_UNAVAILABLE

    def test_wasm_falls_back_past_invalid_container(self, make_manager, fake_runtime, native):
        policy = IsolationPolicy(type=SandboxType.WASM, wasm_module="/plugins/tool.wasm")
        result = make_manager().execute(ExecutionRequest(command=["echo native"]), policy)
        assert ok(result).stdout.strip() == "native"
        assert fake_runtime.execs == []
        assert native.policies[0].type is SandboxType.NATIVE

    def test_wasm_falls_back_to_container(self, make_manager, fake_runtime):
        policy = IsolationPolicy(type=SandboxType.WASM, wasm_module="/plugins/tool.wasm", image="alpine")
        result = make_manager().execute(ExecutionRequest(command=["echo contained"]), policy)
        assert ok(result).stdout.strip() == "contained"
        assert len(fake_runtime.execs) == 1


class TestAvailabilityProbes:
    def test_is_docker_available(self, make_manager, fake_runtime):
        manager = make_manager()
        manager.initialize()
        assert manager.is_docker_available()
        fake_runtime.reachable = False
        manager.get_executor(SandboxType.CONTAINER).invalidate_availability()
        assert not manager.is_docker_available()

    def test_check_before_initialize_keeps_caller_executor(self, fake_runtime):
        container = ContainerExecutor(runtime=fake_runtime)
        container.connect()
        assert ok(container.execute(ExecutionRequest(command=["echo warm"]), CONTAINER)).exit_code == 0
        warm = list(fake_runtime.live)

        manager = SandboxManager(executors={SandboxType.CONTAINER: container})
        assert manager.is_docker_available()
        assert not manager.initialized
        assert fake_runtime.live == warm
        assert not fake_runtime.closed
        assert container.pool.stats()["idle"] == 1
        container.disconnect()

    def test_is_docker_available_without_daemon(self):
        config = SandboxManagerConfig()
        with patch("sandcrate.sandbox.runtime.docker.from_env", side_effect=DockerException("no socket")):
            assert SandboxManager(config).is_docker_available() is False

    def test_is_wasm_available(self):
        module = MagicMock()
        with patch.dict(sys.modules, {"extism": module}):
            assert SandboxManager().is_wasm_available()
        with patch.dict(sys.modules, {"extism": None}):
            assert not SandboxManager().is_wasm_available()

    def test_wasm_disabled(self):
        config = SandboxManagerConfig(wasm=WasmConfig(enabled=False))
        assert not SandboxManager(config).is_wasm_available()


class TestGlobalManager:
    def test_global_manager(self, native):
        config = SandboxManagerConfig(pool=PoolConfig(max_size=3), wasm=WasmConfig(enabled=False))
        set_sandbox_manager_config(config)
        manager = get_sandbox_manager()
        assert get_sandbox_manager() is manager
        assert manager.config is config

        set_sandbox_manager_config(SandboxManagerConfig())
        assert get_sandbox_manager() is not manager

    def test_invalid_global_config(self):
        with pytest.raises(ConfigurationError):
            set_sandbox_manager_config(SandboxManagerConfig(pool=PoolConfig(max_size=0)))
