"""
Shared test fixtures for sandcrate tests.
"""
import itertools
import re
import threading
from typing import Callable, Dict, List, Optional

import pytest

from sandcrate.exceptions import ContainerRuntimeError
from sandcrate.sandbox.runtime import ContainerCreateOptions, ContainerRuntime


class FakeContainerRuntime(ContainerRuntime):
    """In-memory ContainerRuntime.

    exec understands a tiny command language: ``echo TEXT``, ``exit N``,
    ``sleep SECONDS`` (interrupted when the container is stopped/removed) and
    ``printenv NAME``. Anything else succeeds silently. Set ``exec_handler``
    to take over completely.
    """

    def __init__(self):
        self.reachable = True
        self.create_error: Optional[Exception] = None
        self.exec_error: Optional[Exception] = None
        self.exec_handler: Optional[Callable[..., int]] = None
        self.create_delay = 0.0
        self.created: List[Dict] = []
        self.stopped: List[str] = []
        self.removed: List[str] = []
        self.execs: List[Dict] = []
        self.ping_calls = 0
        self.closed = False
        self._ids = itertools.count(1)
        self._killed: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    @property
    def live(self) -> List[str]:
        with self._lock:
            return [c["id"] for c in self.created if c["id"] not in self.removed]

    def ping(self) -> None:
        self.ping_calls += 1
        if not self.reachable:
            raise ContainerRuntimeError("Cannot connect to the Docker daemon", connectivity=True)

    def create_container(self, image: str, options: ContainerCreateOptions) -> str:
        if not self.reachable:
            raise ContainerRuntimeError("Cannot connect to the Docker daemon", connectivity=True)
        if self.create_error is not None:
            raise self.create_error
        if self.create_delay:
            threading.Event().wait(self.create_delay)
        with self._lock:
            container_id = f"fake{next(self._ids):012d}"
            self.created.append({"id": container_id, "image": image, "options": options})
            self._killed[container_id] = threading.Event()
        return container_id

    def exec(self, container_id, command, env, working_dir=None, user=None, stdin=None, on_output=None):
        self.execs.append({
            "container_id": container_id,
            "command": list(command),
            "env": dict(env),
            "working_dir": working_dir,
            "user": user,
            "stdin": stdin,
        })
        if self.exec_error is not None:
            raise self.exec_error
        if self.exec_handler is not None:
            return self.exec_handler(container_id, command, env, working_dir, user, stdin, on_output)

        script = command[-1]
        emit = on_output or (lambda out, err: None)
        if script.startswith("echo "):
            emit(script[len("echo "):].encode() + b"\n", None)
            return 0
        match = re.match(r"exit (\d+)$", script)
        if match:
            return int(match.group(1))
        match = re.match(r"printenv (\w+)$", script)
        if match:
            if match.group(1) not in env:
                return 1
            emit(env[match.group(1)].encode() + b"\n", None)
            return 0
        match = re.match(r"sleep (\d+(?:\.\d+)?)$", script)
        if match:
            emit(b"started\n", None)
            if self._killed[container_id].wait(float(match.group(1))):
                raise ContainerRuntimeError(f"Container {container_id} was removed")
            return 0
        return 0

    def stop_container(self, container_id: str, timeout: int = 1) -> None:
        self.stopped.append(container_id)
        self._killed[container_id].set()

    def remove_container(self, container_id: str) -> None:
        with self._lock:
            self.removed.append(container_id)
        self._killed[container_id].set()

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_runtime():
    return FakeContainerRuntime()
