"""
Bounded pool of warm, reusable containers.

Containers are keyed by image family (image + creation options), so a
container is only ever handed to a policy that would have created an
identical one. The aggregate number of live containers, including those
still being created, never exceeds ``max_size``: acquire() reuses an idle
container of the same family, creates one if there is room, evicts the
least-recently-used idle container of another family, or waits.

All bookkeeping happens under one condition variable; engine calls
(create/stop/remove) are made outside it.
"""
import time
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from sandcrate.config.defaults import POOL_DEFAULTS
from sandcrate.exceptions import (
    ContainerRuntimeError,
    InvalidStateTransitionError,
    PoolExhaustedError,
    SandboxError,
)
from sandcrate.observability.metrics import update_pool_size
from sandcrate.sandbox.runtime import ContainerCreateOptions, ContainerRuntime

logger = logging.getLogger(__name__)


class ContainerState(str, Enum):
    CREATED = "created"
    IDLE = "idle"
    IN_USE = "in_use"
    DESTROYED = "destroyed"


_TRANSITIONS = {
    ContainerState.CREATED: {ContainerState.IDLE, ContainerState.IN_USE, ContainerState.DESTROYED},
    ContainerState.IDLE: {ContainerState.IN_USE, ContainerState.DESTROYED},
    ContainerState.IN_USE: {ContainerState.IDLE, ContainerState.DESTROYED},
    ContainerState.DESTROYED: set(),
}


@dataclass(eq=False)
class PooledContainer:
    id: str
    image: str
    options: ContainerCreateOptions = field(default_factory=ContainerCreateOptions)
    state: ContainerState = ContainerState.CREATED
    created_at: float = 0.0
    last_used_at: float = 0.0

    @property
    def family(self) -> Tuple[str, ContainerCreateOptions]:
        return self.image, self.options

    def transition(self, target: ContainerState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidStateTransitionError(self.id, self.state.value, target.value)
        self.state = target


class ContainerPool:
    """Thread-safe pool of containers shared by concurrent executions."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        max_size: int = POOL_DEFAULTS.max_size,
        idle_timeout_ms: int = POOL_DEFAULTS.idle_timeout_ms,
        stop_timeout_s: int = POOL_DEFAULTS.stop_timeout_s,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: Optional[float] = None,
    ):
        if max_size < 1:
            raise ValueError(f"max_size must be at least 1, got {max_size}")
        self._runtime = runtime
        self._max_size = max_size
        self._idle_timeout_ms = idle_timeout_ms
        self._stop_timeout_s = stop_timeout_s
        self._clock = clock
        if sweep_interval is None:
            sweep_interval = max(idle_timeout_ms / 2000, 0.5)
        self._sweep_interval = sweep_interval

        self._containers: Dict[str, PooledContainer] = {}
        self._creating = 0
        # Bumped by destroy_all(); creations that straddle it are discarded.
        self._generation = 0
        self._cond = threading.Condition()

        self._sweeper: Optional[threading.Thread] = None
        self._stop_sweeper = threading.Event()

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def size(self) -> int:
        with self._cond:
            return len(self._containers) + self._creating

    def acquire(
        self,
        image: str,
        options: Optional[ContainerCreateOptions] = None,
        timeout_ms: Optional[int] = None,
    ) -> PooledContainer:
        """Borrow a container of the given family, marked in-use.

        Blocks while the pool is full and nothing can be evicted. With
        ``timeout_ms`` set, raises PoolExhaustedError once the wait expires;
        ContainerRuntimeError propagates if a new container cannot be created.
        """
        options = options or ContainerCreateOptions()
        family = (image, options)
        start = self._clock()
        deadline = start + timeout_ms / 1000 if timeout_ms is not None else None
        victim: Optional[PooledContainer] = None

        with self._cond:
            while True:
                idle = self._find_idle(family)
                if idle is not None:
                    idle.transition(ContainerState.IN_USE)
                    idle.last_used_at = self._clock()
                    self._publish_sizes()
                    logger.debug(f"Reusing container {idle.id[:12]} for {image}")
                    return idle

                if len(self._containers) + self._creating < self._max_size:
                    break

                victim = self._least_recently_used_idle()
                if victim is not None:
                    self._forget(victim)
                    logger.info(
                        f"Pool full, evicting idle container {victim.id[:12]} ({victim.image}) for {image}"
                    )
                    break

                remaining = None
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        raise PoolExhaustedError(
                            image,
                            max_size=self._max_size,
                            current_size=len(self._containers) + self._creating,
                            waited_ms=int((self._clock() - start) * 1000),
                        )
                self._cond.wait(remaining)

            self._creating += 1
            generation = self._generation

        if victim is not None:
            self._destroy(victim.id)

        container_id = None
        container = None
        try:
            container_id = self._runtime.create_container(image, options)
        finally:
            with self._cond:
                self._creating -= 1
                if container_id is not None and generation == self._generation:
                    now = self._clock()
                    container = PooledContainer(
                        id=container_id,
                        image=image,
                        options=options,
                        created_at=now,
                        last_used_at=now,
                    )
                    container.transition(ContainerState.IN_USE)
                    self._containers[container_id] = container
                    self._publish_sizes()
                self._cond.notify_all()

        if container is None:
            self._destroy(container_id)
            raise SandboxError(
                f"Container pool was shut down while creating a container for '{image}'",
                {"image": image},
            )

        logger.info(f"Created container {container_id[:12]} for {image}")
        self._ensure_sweeper()
        return container

    def release(self, container: PooledContainer, corrupted: bool = False) -> None:
        """Return a borrowed container.

        A corrupted container (killed command, crashed exec) is destroyed
        instead of being made available to the next tenant.
        """
        destroy = False
        with self._cond:
            if container.state == ContainerState.DESTROYED:
                return
            tracked = self._containers.get(container.id)
            if tracked is not container:
                logger.warning(f"Releasing untracked container {container.id[:12]}, destroying it")
                container.transition(ContainerState.DESTROYED)
                destroy = True
            elif container.state != ContainerState.IN_USE:
                logger.warning(f"Container {container.id[:12]} released while {container.state.value}")
                return
            elif corrupted:
                self._forget(container)
                destroy = True
            else:
                container.transition(ContainerState.IDLE)
                container.last_used_at = self._clock()
            self._publish_sizes()
            self._cond.notify_all()

        if destroy:
            self._destroy(container.id)

    def sweep(self) -> int:
        """Destroy containers idle longer than the idle timeout. Returns the count."""
        now = self._clock()
        expired: List[PooledContainer] = []
        with self._cond:
            for container in list(self._containers.values()):
                idle_ms = (now - container.last_used_at) * 1000
                if container.state == ContainerState.IDLE and idle_ms >= self._idle_timeout_ms:
                    self._forget(container)
                    expired.append(container)
            if expired:
                self._publish_sizes()
                self._cond.notify_all()

        for container in expired:
            logger.info(f"Evicting idle container {container.id[:12]} ({container.image})")
            self._destroy(container.id)
        return len(expired)

    def destroy_all(self) -> None:
        """Force-stop and remove every tracked container, idle or in-use."""
        with self._cond:
            self._generation += 1
            containers = list(self._containers.values())
            for container in containers:
                container.transition(ContainerState.DESTROYED)
            self._containers.clear()
            self._publish_sizes()
            self._cond.notify_all()
            sweeper = self._sweeper
            self._sweeper = None
            self._stop_sweeper.set()

        if sweeper is not None and sweeper is not threading.current_thread():
            sweeper.join(timeout=self._sweep_interval + 1)

        for container in containers:
            self._destroy(container.id)
        if containers:
            logger.info(f"Destroyed {len(containers)} pooled containers")

    def stats(self) -> Dict[str, float]:
        with self._cond:
            idle = sum(1 for c in self._containers.values() if c.state == ContainerState.IDLE)
            in_use = sum(1 for c in self._containers.values() if c.state == ContainerState.IN_USE)
            size = len(self._containers) + self._creating
            return {
                "size": size,
                "idle": idle,
                "in_use": in_use,
                "creating": self._creating,
                "capacity": self._max_size,
                "utilization": size / self._max_size,
            }

    def _find_idle(self, family) -> Optional[PooledContainer]:
        for container in self._containers.values():
            if container.state == ContainerState.IDLE and container.family == family:
                return container
        return None

    def _least_recently_used_idle(self) -> Optional[PooledContainer]:
        idle = [c for c in self._containers.values() if c.state == ContainerState.IDLE]
        if not idle:
            return None
        return min(idle, key=lambda c: c.last_used_at)

    def _forget(self, container: PooledContainer) -> None:
        container.transition(ContainerState.DESTROYED)
        self._containers.pop(container.id, None)

    def _publish_sizes(self) -> None:
        idle = sum(1 for c in self._containers.values() if c.state == ContainerState.IDLE)
        update_pool_size(idle=idle, in_use=len(self._containers) - idle)

    def _destroy(self, container_id: str) -> None:
        try:
            self._runtime.stop_container(container_id, timeout=self._stop_timeout_s)
        except ContainerRuntimeError as e:
            logger.debug(f"Stop of container {container_id[:12]} failed: {e}")
        try:
            self._runtime.remove_container(container_id)
            logger.debug(f"Removed container {container_id[:12]}")
        except ContainerRuntimeError as e:
            logger.warning(f"Failed to remove container {container_id[:12]}: {e}")

    def _ensure_sweeper(self) -> None:
        if self._idle_timeout_ms <= 0:
            return
        with self._cond:
            if self._sweeper is not None and self._sweeper.is_alive():
                return
            self._stop_sweeper = threading.Event()
            self._sweeper = threading.Thread(
                target=self._sweep_loop,
                args=(self._stop_sweeper,),
                name="ContainerPoolSweeper",
                daemon=True,
            )
            self._sweeper.start()

    def _sweep_loop(self, stop: threading.Event) -> None:
        while not stop.wait(self._sweep_interval):
            try:
                self.sweep()
            except SandboxError as e:
                logger.error(f"Container pool sweep failed: {e}")
