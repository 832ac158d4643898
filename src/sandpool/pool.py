"""Warm container pool — pre-started idle containers per execution environment.

Container creation dominates execution latency, so each environment with a
``pool_size`` keeps that many started containers idle.  ``borrow`` hands
one out (or creates one on the spot when none is idle) and never waits for
capacity.  A background task refills every environment on a fixed interval;
a refill run that exceeds its time budget is abandoned and left to finish on
its own while the next run is scheduled on time.

Idle collections and in-flight counts are mutated under one lock that is
never held across an ``await``.  Containers being created count toward the
target, so overlapping refill runs cannot overshoot ``pool_size``.
"""

from __future__ import annotations

import asyncio
import contextlib
import threading
from collections import deque
from collections.abc import Iterable
from typing import TYPE_CHECKING

from sandpool.logger import logger
from sandpool.types import Container, ExecutionEnvironment

if TYPE_CHECKING:
    from sandpool.config import Settings
    from sandpool.containers import ContainerManager


class ContainerPool:
    def __init__(
        self,
        manager: ContainerManager,
        *,
        active: bool = True,
        batch_size: int = 8,
        interval: float = 10.0,
        timeout: float = 60.0,
        concurrent: bool = True,
    ) -> None:
        self.manager = manager
        self.active = active
        self.batch_size = batch_size
        self.interval = interval
        self.timeout = timeout
        self.concurrent = concurrent
        self._environments: dict[str, ExecutionEnvironment] = {}
        self._idle: dict[str, deque[Container]] = {}
        self._in_flight: dict[str, int] = {}
        self._lock = threading.Lock()
        self._closed = False
        self._refill_task: asyncio.Task[None] | None = None
        self._abandoned: set[asyncio.Task[None]] = set()

    @classmethod
    def from_settings(cls, settings: Settings, manager: ContainerManager) -> ContainerPool:
        refill = settings.pool.refill
        return cls(
            manager,
            active=settings.pool.active,
            batch_size=refill.batch_size,
            interval=refill.interval,
            timeout=refill.timeout,
            concurrent=refill.async_,
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def initialize(self, environments: Iterable[ExecutionEnvironment]) -> None:
        """Register the known environments, each with an empty idle collection."""
        with self._lock:
            self._closed = False
            for env in environments:
                self._environments[env.id] = env
                self._idle.setdefault(env.id, deque())
                self._in_flight.setdefault(env.id, 0)
        logger.info("Container pool initialized", environments=len(self._environments))

    def quantities(self) -> dict[str, int]:
        """Idle container count per environment id."""
        with self._lock:
            return {env_id: len(idle) for env_id, idle in self._idle.items()}

    def _take(self, env_id: str) -> Container | None:
        with self._lock:
            idle = self._idle.get(env_id)
            return idle.popleft() if idle else None

    def _put(self, env_id: str, container: Container) -> bool:
        """Append a freshly created container; False once the pool is closed."""
        with self._lock:
            self._in_flight[env_id] = max(0, self._in_flight.get(env_id, 0) - 1)
            if self._closed:
                return False
            self._idle.setdefault(env_id, deque()).append(container)
            return True

    # ------------------------------------------------------------------
    # Borrow / refill
    # ------------------------------------------------------------------

    async def borrow(self, env: ExecutionEnvironment) -> Container:
        """Hand out an idle container for *env*, or create one immediately.

        The caller owns the returned container and must destroy it.
        """
        if self.active:
            container = self._take(env.id)
            if container is not None:
                logger.debug("Borrowed idle container", container=container.name, environment=env.id)
                return container
        return await self.manager.create_container(env)

    async def refill(self) -> None:
        """Top up every environment with ``pool_size > 0``."""
        if not self.active:
            return
        environments = [env for env in list(self._environments.values()) if env.pool_size > 0]
        if self.concurrent:
            await asyncio.gather(*(self.refill_for_environment(env) for env in environments))
        else:
            for env in environments:
                await self.refill_for_environment(env)

    async def refill_for_environment(self, env: ExecutionEnvironment) -> int:
        """Create up to ``batch_size`` containers toward *env*'s target.

        Returns the number of containers added.  Creation failures are
        logged and end this environment's run without affecting others.
        """
        with self._lock:
            if self._closed:
                return 0
            idle = len(self._idle.setdefault(env.id, deque()))
            in_flight = self._in_flight.get(env.id, 0)
            count = max(0, min(env.pool_size - idle - in_flight, self.batch_size))
            self._in_flight[env.id] = in_flight + count
        if count == 0:
            return 0

        added = 0
        settled = 0
        try:
            for _ in range(count):
                container = await self.manager.create_container(env)
                settled += 1
                if self._put(env.id, container):
                    added += 1
                else:
                    await self.manager.destroy_container(container)
        except Exception:
            logger.exception("Pool refill failed", environment=env.id, added=added)
        finally:
            # _put already settled the completed creations; release the rest.
            with self._lock:
                self._in_flight[env.id] = max(
                    0, self._in_flight.get(env.id, 0) - (count - settled)
                )

        logger.debug("Pool refilled", environment=env.id, added=added, target=env.pool_size)
        return added

    # ------------------------------------------------------------------
    # Background refill task
    # ------------------------------------------------------------------

    def start_refill_task(self) -> None:
        """Start refilling every ``interval`` seconds (first run after one interval)."""
        if self._refill_task is not None and not self._refill_task.done():
            logger.debug("Refill task already running, skipping duplicate start")
            return
        self._refill_task = asyncio.create_task(self._refill_loop(), name="pool-refill")
        logger.info("Pool refill task started", interval=self.interval, timeout=self.timeout)

    async def _refill_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            run = asyncio.create_task(self.refill(), name="pool-refill-run")
            try:
                done, _ = await asyncio.wait({run}, timeout=self.timeout)
            except asyncio.CancelledError:
                run.cancel()
                raise
            if run not in done:
                logger.warning("Pool refill exceeded its budget, abandoning run", timeout=self.timeout)
                self._abandoned.add(run)
                run.add_done_callback(self._abandoned.discard)
            elif not run.cancelled() and run.exception() is not None:
                logger.error("Error in pool refill", exc_info=run.exception())
            else:
                logger.debug("Pool quantities", quantities=self.quantities())

    async def stop_refill_task(self) -> None:
        """Stop the periodic task and cancel any abandoned runs still going."""
        tasks = list(self._abandoned)
        if self._refill_task is not None:
            tasks.append(self._refill_task)
            self._refill_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def drain(self) -> None:
        """Shutdown: stop refilling, then destroy every idle container."""
        with self._lock:
            self._closed = True
        await self.stop_refill_task()
        with self._lock:
            containers = [c for idle in self._idle.values() for c in idle]
            for idle in self._idle.values():
                idle.clear()
        for container in containers:
            await self.manager.destroy_container(container)
        logger.info("Container pool drained", destroyed=len(containers))
