"""Service lifecycle — wires the runtime, port allocator, manager and pool.

Startup validates configuration and refuses to serve if the container
runtime is unreachable.  Shutdown drains the pool and waits for pending
teardowns so no container outlives the process.

Usage::

    async with Service() as service:
        env = service.environment("python")
        result = await service.manager.execute_arbitrary_command("echo hello", env)
"""

from __future__ import annotations

import asyncio
import os
import signal

from sandpool.config import Settings, get_settings
from sandpool.containers import ContainerManager
from sandpool.errors import ConfigurationError
from sandpool.logger import configure as configure_logging
from sandpool.logger import logger
from sandpool.pool import ContainerPool
from sandpool.ports import PortAllocator
from sandpool.runtime import DockerRuntime
from sandpool.types import ExecutionEnvironment


class Service:
    def __init__(
        self,
        settings: Settings | None = None,
        runtime: DockerRuntime | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.runtime = runtime or DockerRuntime(host=self.settings.docker.host)
        self.ports = PortAllocator(self.settings.ports.range_start, self.settings.ports.range_end)
        self.manager = ContainerManager.from_settings(self.settings, self.runtime, self.ports)
        self.pool = ContainerPool.from_settings(self.settings, self.manager)
        self.manager.pool = self.pool
        self.environments: dict[str, ExecutionEnvironment] = {}
        self._started = False
        self._shutting_down = False

    def environment(self, name: str) -> ExecutionEnvironment:
        try:
            return self.environments[name]
        except KeyError:
            known = ", ".join(sorted(self.environments)) or "none"
            raise KeyError(f"Unknown environment {name!r} (known: {known})") from None

    async def initialize_environment(self) -> None:
        """Validate settings, check the runtime, and create the workspace root.

        Raises ConfigurationError if anything required is missing.
        """
        s = self.settings
        if s.docker.connection_timeout is None or not str(s.workspace_root):
            raise ConfigurationError("Docker configuration missing!")
        if not self.runtime.is_available():
            raise ConfigurationError(f"Container runtime CLI {self.runtime.cli!r} is not on PATH")
        await self.runtime.check_availability(s.docker.connection_timeout)
        s.local_workspace_root.mkdir(parents=True, exist_ok=True)

    async def start(self) -> None:
        """Initialize the runtime and the pool, then start background refill."""
        if self._started:
            return
        configure_logging(
            self.settings.logging.level,
            json_output=self.settings.logging.format == "json",
        )
        await self.initialize_environment()

        try:
            self.environments = self.settings.execution_environments()
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        if not self.environments:
            logger.warning("No execution environments configured")

        self.pool.initialize(self.environments.values())
        if self.pool.active:
            self.pool.start_refill_task()
        self._started = True
        logger.info(
            "Service started",
            environments=sorted(self.environments),
            pool_active=self.pool.active,
            workspace_root=str(self.settings.local_workspace_root),
        )

    async def stop(self) -> None:
        """Drain the pool and wait for every pending teardown."""
        if not self._started:
            return
        await self.pool.drain()
        await self.manager.wait_for_background_tasks()
        self._started = False
        logger.info("Service stopped", leased_ports=len(self.ports.leased))

    async def __aenter__(self) -> Service:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def run_forever(self) -> None:
        """Serve until SIGINT/SIGTERM, then shut down gracefully.

        A second signal force-exits.
        """
        await self.start()
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()

        def _on_signal(sig_name: str) -> None:
            if self._shutting_down:
                logger.info("Force shutdown")
                os._exit(1)
            self._shutting_down = True
            logger.info("Shutdown signal received", signal=sig_name)
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _on_signal, sig.name)
        try:
            await stop_event.wait()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
            await self.stop()
