"""
Container engine clients.

ContainerRuntime is the narrow create/start/exec/stop/remove/ping surface
the pool and the container executor need. DockerRuntime implements it on
top of the docker SDK and translates every SDK or transport failure into
ContainerRuntimeError, flagging daemon-unreachable conditions as
connectivity errors so callers can fall back to another backend.
"""
import socket
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import docker
import requests
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.utils.socket import STDERR, STDOUT, frames_iter

from sandcrate.config.defaults import SANDBOX_DEFAULTS
from sandcrate.exceptions import ContainerRuntimeError
from sandcrate.sandbox.types import Mount

logger = logging.getLogger(__name__)

POOL_LABEL = "sandcrate.pool"

OutputCallback = Callable[[Optional[bytes], Optional[bytes]], None]


@dataclass(frozen=True)
class ContainerCreateOptions:
    """Creation-time isolation settings; part of a pooled container's identity."""
    memory: Optional[int] = None  # bytes
    nano_cpus: Optional[int] = None
    pids_limit: int = SANDBOX_DEFAULTS.pids_limit
    network_mode: str = "none"
    mounts: Tuple[Mount, ...] = ()
    user: Optional[str] = None
    working_dir: str = SANDBOX_DEFAULTS.working_dir

    def binds(self) -> Dict[str, Dict[str, str]]:
        return {
            m.host_path: {"bind": m.container_path, "mode": "ro" if m.readonly else "rw"}
            for m in self.mounts
        }


class ContainerRuntime(ABC):
    """Minimal container engine capability used by the pool and executor."""

    @abstractmethod
    def ping(self) -> None:
        """Raise ContainerRuntimeError(connectivity=True) if the engine is unreachable."""
        pass

    @abstractmethod
    def create_container(self, image: str, options: ContainerCreateOptions) -> str:
        """Create and start a long-lived container; return its id."""
        pass

    @abstractmethod
    def exec(
        self,
        container_id: str,
        command: List[str],
        env: Dict[str, str],
        working_dir: Optional[str] = None,
        user: Optional[str] = None,
        stdin: Optional[str] = None,
        on_output: Optional[OutputCallback] = None,
    ) -> int:
        """Run ``command`` inside the container, blocking until it exits.

        Output is streamed to ``on_output(stdout_chunk, stderr_chunk)`` as it
        arrives; the exit code is returned.
        """
        pass

    @abstractmethod
    def stop_container(self, container_id: str, timeout: int = 1) -> None:
        pass

    @abstractmethod
    def remove_container(self, container_id: str) -> None:
        pass

    def close(self) -> None:
        pass


def _is_connectivity_error(error: Exception) -> bool:
    if isinstance(error, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
        return True
    if isinstance(error, (ConnectionError, socket.timeout, FileNotFoundError)):
        return True
    # docker.from_env() raises a bare DockerException when no daemon socket exists
    return isinstance(error, DockerException) and not isinstance(error, APIError)


def _translate(action: str, error: Exception) -> ContainerRuntimeError:
    connectivity = _is_connectivity_error(error)
    return ContainerRuntimeError(f"Docker {action} failed: {error}", connectivity=connectivity)


class DockerRuntime(ContainerRuntime):
    """ContainerRuntime backed by the docker SDK."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: int = 60,
        client: Optional[docker.DockerClient] = None,
    ):
        self._base_url = base_url
        self._timeout = timeout
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        """Lazy initialization of Docker client."""
        if self._client is None:
            try:
                if self._base_url:
                    self._client = docker.DockerClient(base_url=self._base_url, timeout=self._timeout)
                else:
                    self._client = docker.from_env(timeout=self._timeout)
            except DockerException as e:
                raise _translate("client setup", e) from e
        return self._client

    def ping(self) -> None:
        try:
            self.client.ping()
        except ContainerRuntimeError:
            raise
        except (DockerException, requests.exceptions.RequestException, OSError) as e:
            raise ContainerRuntimeError(f"Docker daemon unreachable: {e}", connectivity=True) from e

    def ensure_image(self, image: str) -> None:
        try:
            self.client.images.get(image)
            return
        except ImageNotFound:
            pass
        except (DockerException, requests.exceptions.RequestException, OSError) as e:
            raise _translate("image inspect", e) from e

        logger.info(f"Pulling image {image}")
        try:
            self.client.images.pull(image)
        except (DockerException, requests.exceptions.RequestException, OSError) as e:
            raise _translate(f"pull of {image}", e) from e

    def create_container(self, image: str, options: ContainerCreateOptions) -> str:
        self.ensure_image(image)
        try:
            container = self.client.containers.create(
                image,
                command=["sleep", "infinity"],
                detach=True,
                user=options.user,
                working_dir=options.working_dir,
                mem_limit=options.memory,
                nano_cpus=options.nano_cpus,
                pids_limit=options.pids_limit,
                network_mode=options.network_mode,
                volumes=options.binds() or None,
                security_opt=["no-new-privileges"],
                cap_drop=["ALL"],
                read_only=False,
                labels={POOL_LABEL: "true"},
            )
        except (DockerException, requests.exceptions.RequestException, OSError) as e:
            raise _translate(f"create of {image}", e) from e

        try:
            container.start()
        except (DockerException, requests.exceptions.RequestException, OSError) as e:
            self._force_remove(container.id)
            raise _translate(f"start of {container.id[:12]}", e) from e

        logger.debug(f"Started container {container.id[:12]} from {image}")
        return container.id

    def exec(
        self,
        container_id: str,
        command: List[str],
        env: Dict[str, str],
        working_dir: Optional[str] = None,
        user: Optional[str] = None,
        stdin: Optional[str] = None,
        on_output: Optional[OutputCallback] = None,
    ) -> int:
        api = self.client.api
        try:
            exec_id = api.exec_create(
                container_id,
                command,
                stdout=True,
                stderr=True,
                stdin=stdin is not None,
                environment=env or None,
                workdir=working_dir,
                user=user or "",
            )["Id"]
            sock = api.exec_start(exec_id, socket=True)
        except (DockerException, requests.exceptions.RequestException, OSError) as e:
            raise _translate("exec", e) from e

        raw = getattr(sock, "_sock", sock)
        try:
            if stdin is not None:
                raw.sendall(stdin.encode())
                raw.shutdown(socket.SHUT_WR)
            for stream, data in frames_iter(sock, tty=False):
                if on_output is None:
                    continue
                if stream == STDOUT:
                    on_output(data, None)
                elif stream == STDERR:
                    on_output(None, data)
        except OSError as e:
            raise _translate("exec stream", e) from e
        finally:
            try:
                sock.close()
            except OSError:
                pass

        try:
            exit_code = api.exec_inspect(exec_id).get("ExitCode")
        except (DockerException, requests.exceptions.RequestException, OSError) as e:
            raise _translate("exec inspect", e) from e
        return 1 if exit_code is None else exit_code

    def stop_container(self, container_id: str, timeout: int = 1) -> None:
        try:
            self.client.api.stop(container_id, timeout=timeout)
        except NotFound:
            pass
        except (DockerException, requests.exceptions.RequestException, OSError) as e:
            raise _translate(f"stop of {container_id[:12]}", e) from e

    def remove_container(self, container_id: str) -> None:
        try:
            self.client.api.remove_container(container_id, force=True)
        except NotFound:
            pass
        except (DockerException, requests.exceptions.RequestException, OSError) as e:
            raise _translate(f"remove of {container_id[:12]}", e) from e

    def _force_remove(self, container_id: str) -> None:
        try:
            self.remove_container(container_id)
        except ContainerRuntimeError as e:
            logger.warning(f"Failed to remove container {container_id[:12]}: {e}")

    def close(self) -> None:
        if self._client is not None:
            try:
                self._client.close()
            except (DockerException, OSError) as e:
                logger.debug(f"Error closing docker client: {e}")
            self._client = None
