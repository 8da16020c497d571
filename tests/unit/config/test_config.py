"""
Unit tests for configuration defaults, manager config and logging setup.
"""
import logging
from unittest.mock import patch

import pytest

from sandcrate.config import (
    POOL_DEFAULTS,
    SANDBOX_DEFAULTS,
    get_default_pool_config,
    setup_logging,
)
from sandcrate.exceptions import ConfigurationError
from sandcrate.sandbox.manager import (
    DEFAULT_FALLBACK,
    DockerConfig,
    PoolConfig,
    SandboxManagerConfig,
    WasmConfig,
)
from sandcrate.sandbox.types import NetworkMode, ResourceLimits, SandboxType


class TestDefaults:
    def test_sandbox_defaults(self):
        assert SANDBOX_DEFAULTS.timeout_ms == 30_000
        assert SANDBOX_DEFAULTS.max_output_size == 50_000
        assert SANDBOX_DEFAULTS.timeout_exit_code == 124
        assert SANDBOX_DEFAULTS.wasm_function == "run"
        assert SANDBOX_DEFAULTS.wasm_cache_size == 10
        assert SANDBOX_DEFAULTS.wasm_max_workers == 8

    def test_pool_defaults(self):
        assert POOL_DEFAULTS.max_size == 5
        assert POOL_DEFAULTS.idle_timeout_ms == 60_000
        assert POOL_DEFAULTS.exec_workers_per_slot == 2
        assert get_default_pool_config() == {"max_size": 5, "idle_timeout_ms": 60_000}

    def test_defaults_are_frozen(self):
        with pytest.raises(AttributeError):
            SANDBOX_DEFAULTS.timeout_ms = 1


class TestSandboxManagerConfig:
    def test_default_config(self):
        config = SandboxManagerConfig()
        config.validate()
        assert config.defaults.sandbox_type is SandboxType.NATIVE
        assert config.defaults.network_mode is NetworkMode.NONE
        assert config.defaults.timeout == 30_000
        assert config.pool == PoolConfig(max_size=5, idle_timeout_ms=60_000)
        assert config.fallback == DEFAULT_FALLBACK
        assert config.fallback[SandboxType.WASM] == (SandboxType.CONTAINER, SandboxType.NATIVE)

    def test_from_dict_camel_case(self):
        config = SandboxManagerConfig.from_dict({
            "defaults": {"type": "container", "image": "python:3.12-slim", "resources": {"memoryLimit": "256m"}},
            "pool": {"maxSize": 10, "idleTimeoutMs": 5000},
            "docker": {"baseUrl": "unix:///var/run/docker.sock", "availabilityTtlMs": 1000},
            "wasm": {"enabled": False, "cacheSize": 3},
        })
        assert config.defaults.type is SandboxType.CONTAINER
        assert config.defaults.image == "python:3.12-slim"
        assert config.defaults.resources == ResourceLimits(memory="256m")
        # Unset fields keep the built-in defaults.
        assert config.defaults.timeout == 30_000
        assert config.defaults.network_mode is NetworkMode.NONE
        assert config.pool == PoolConfig(max_size=10, idle_timeout_ms=5000)
        assert config.docker == DockerConfig(base_url="unix:///var/run/docker.sock", availability_ttl_ms=1000)
        assert config.wasm == WasmConfig(enabled=False, cache_size=3)
        config.validate()

    def test_from_dict_snake_case(self):
        config = SandboxManagerConfig.from_dict({"pool": {"max_size": 2, "idle_timeout_ms": 0}})
        assert config.pool == PoolConfig(max_size=2, idle_timeout_ms=0)

    def test_from_dict_fallback(self):
        config = SandboxManagerConfig.from_dict({"fallback": {"container": []}})
        assert config.fallback[SandboxType.CONTAINER] == ()
        assert config.fallback[SandboxType.WASM] == DEFAULT_FALLBACK[SandboxType.WASM]

    def test_from_dict_empty(self):
        assert SandboxManagerConfig.from_dict({}) == SandboxManagerConfig()

    def test_from_dict_bad_type(self):
        with pytest.raises(ConfigurationError):
            SandboxManagerConfig.from_dict({"defaults": {"type": "hypervisor"}})

    @pytest.mark.parametrize("config,message", [
        (SandboxManagerConfig(pool=PoolConfig(max_size=0)), "max_size"),
        (SandboxManagerConfig(pool=PoolConfig(idle_timeout_ms=-1)), "idle_timeout_ms"),
        (SandboxManagerConfig(wasm=WasmConfig(cache_size=0)), "cache_size"),
        (SandboxManagerConfig(wasm=WasmConfig(max_workers=0)), "max_workers"),
        (SandboxManagerConfig.from_dict({"defaults": {"type": "container"}}), "image is required"),
    ])
    def test_validate(self, config, message):
        with pytest.raises(ConfigurationError, match=message) as exc_info:
            config.validate()
        assert exc_info.value.details["problems"]


class TestSetupLogging:
    def test_levels(self):
        setup_logging(level="DEBUG")
        assert logging.getLogger("sandcrate").level == logging.DEBUG
        assert logging.getLogger("docker").level == logging.WARNING
        assert logging.getLogger("urllib3").level == logging.WARNING

    def test_unknown_level_defaults_to_info(self):
        setup_logging(level="chatty")
        assert logging.getLogger("sandcrate").level == logging.INFO

    def test_engine_level_override(self):
        setup_logging(level="INFO", engine_level="ERROR")
        assert logging.getLogger("sandcrate").level == logging.INFO
        assert logging.getLogger("docker").level == logging.ERROR
        assert logging.getLogger("urllib3").level == logging.ERROR
        setup_logging()
        assert logging.getLogger("docker").level == logging.WARNING

    def test_root_stays_quiet(self):
        with patch("sandcrate.config.logging.logging.basicConfig") as basic_config:
            setup_logging(level="DEBUG")
        kwargs = basic_config.call_args.kwargs
        assert kwargs["level"] == logging.WARNING
        assert "%(threadName)s" in kwargs["format"]
        assert logging.getLogger("sandcrate.sandbox.pool").getEffectiveLevel() == logging.DEBUG
