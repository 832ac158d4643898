"""Container runtime wrapper — async helpers over the ``docker`` CLI.

All public methods are async so they don't block the event loop.  One-shot
CLI calls run in a thread via ``asyncio.to_thread``; the interactive exec
used to run commands is an asyncio subprocess with piped standard streams.

Failed calls raise a :class:`~sandpool.errors.RuntimeCommandError` subclass
chosen by :func:`~sandpool.errors.classify_runtime_error`, so callers can
retry "not found" races and dropped connections selectively.
"""

from __future__ import annotations

import asyncio
import json
import os
import shutil
import subprocess
import time
from collections.abc import Mapping, Sequence
from pathlib import Path

from sandpool.errors import (
    ConfigurationError,
    ContainerNotFoundError,
    RuntimeCommandError,
    RuntimeConnectionError,
    classify_runtime_error,
)
from sandpool.logger import logger

CONTAINER_WORKSPACE_PATH = "/workspace"
ENVIRONMENT_LABEL = "sandpool.environment"


class DockerRuntime:
    """Thin async facade over the ``docker`` CLI.

    ``host`` is exported as ``DOCKER_HOST`` for every call, so one process
    can drive a remote daemon without touching its own environment.
    """

    def __init__(self, *, cli: str = "docker", host: str | None = None) -> None:
        self.cli = cli
        self.host = host

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def is_available(self) -> bool:
        """Check if the CLI binary is on PATH."""
        return shutil.which(self.cli) is not None

    def _env(self) -> dict[str, str] | None:
        if not self.host:
            return None
        return {**os.environ, "DOCKER_HOST": self.host}

    def _run_sync(
        self,
        args: Sequence[str],
        check: bool,
        timeout: float,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(
                [self.cli, *args],
                capture_output=True,
                text=True,
                timeout=timeout,
                env=self._env(),
            )
        except subprocess.TimeoutExpired as exc:
            raise RuntimeConnectionError(args, None, f"timed out after {timeout}s") from exc
        except FileNotFoundError as exc:
            raise ConfigurationError(f"Container runtime CLI {self.cli!r} not found") from exc
        if check and result.returncode != 0:
            raise classify_runtime_error(args, result.returncode, result.stderr)
        return result

    async def run(
        self,
        *args: str,
        check: bool = True,
        timeout: float = 30,
    ) -> subprocess.CompletedProcess[str]:
        """Run a CLI command without blocking the event loop."""
        return await asyncio.to_thread(self._run_sync, args, check, timeout)

    # ------------------------------------------------------------------
    # Daemon and images
    # ------------------------------------------------------------------

    async def version(self, *, timeout: float = 30) -> str:
        result = await self.run(
            "version", "--format", "{{.Server.Version}}", timeout=timeout
        )
        return result.stdout.strip()

    async def check_availability(self, timeout: float) -> str:
        """Return the daemon version, or raise ConfigurationError if unreachable."""
        start = time.monotonic()
        try:
            version = await asyncio.wait_for(self.version(timeout=timeout), timeout=timeout)
        except (TimeoutError, RuntimeCommandError) as exc:
            where = self.host or "the default Docker host"
            raise ConfigurationError(f"The Docker host at {where} is not reachable!") from exc
        logger.info(
            "Container runtime reachable",
            version=version,
            host=self.host,
            elapsed_ms=round((time.monotonic() - start) * 1000),
        )
        return version

    async def image_tags(self) -> list[str]:
        """All local ``repository:tag`` names, excluding dangling ``<none>`` images."""
        result = await self.run("image", "ls", "--format", "{{json .}}")
        tags: list[str] = []
        for line in result.stdout.strip().splitlines():
            if not line:
                continue
            image = json.loads(line)
            tag = f"{image.get('Repository', '')}:{image.get('Tag', '')}"
            if "<none>" not in tag:
                tags.append(tag)
        return tags

    async def find_image_by_tag(self, tag: str) -> str:
        """Resolve an image reference to the image's first repo tag.

        Raises ContainerNotFoundError if no local image carries the tag.
        """
        result = await self.run("image", "inspect", "--format", "{{json .RepoTags}}", tag)
        repo_tags = json.loads(result.stdout.strip() or "[]") or []
        if not repo_tags:
            raise ContainerNotFoundError(["image", "inspect", tag], 1, f"No such image: {tag}")
        return repo_tags[0]

    async def pull(self, image: str) -> None:
        logger.info("Pulling image", image=image)
        await self.run("pull", image, timeout=600)
        logger.info("Image pulled", image=image)

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    async def create_container(
        self,
        *,
        name: str,
        image: str,
        memory_mb: int,
        network_enabled: bool,
        binds: Mapping[Path | str, str],
        port_bindings: Mapping[int, int],
        labels: Mapping[str, str] | None = None,
    ) -> str:
        """``docker create`` with stdin held open; returns the container id."""
        args = ["create", "--interactive", "--name", name, "--memory", f"{memory_mb}m"]
        if not network_enabled:
            args += ["--network", "none"]
        for source, target in binds.items():
            args += ["--volume", f"{source}:{target}"]
        for container_port, host_port in port_bindings.items():
            args += ["--publish", f"{host_port}:{container_port}/tcp"]
        for key, value in (labels or {}).items():
            args += ["--label", f"{key}={value}"]
        args.append(image)
        result = await self.run(*args)
        return result.stdout.strip()

    async def is_running(self, container_id: str, *, timeout: float = 10) -> bool:
        """Whether the container is running; RuntimeConnectionError if the daemon is unreachable."""
        result = await self.run(
            "inspect", "--format", "{{.State.Running}}", container_id, timeout=timeout
        )
        return result.stdout.strip() == "true"

    async def start(self, container_id: str) -> None:
        await self.run("start", container_id)

    async def exec_interactive(
        self,
        container_id: str,
        shell: str,
    ) -> asyncio.subprocess.Process:
        """Open ``docker exec --interactive`` with stdin, stdout and stderr piped."""
        try:
            return await asyncio.create_subprocess_exec(
                self.cli,
                "exec",
                "--interactive",
                "--workdir",
                CONTAINER_WORKSPACE_PATH,
                container_id,
                shell,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env(),
            )
        except OSError as exc:
            raise RuntimeConnectionError(["exec", container_id], None, str(exc)) from exc

    async def stop(self, container_id: str, *, timeout: int = 1) -> None:
        await self.run("stop", "--time", str(timeout), container_id)

    async def kill(self, container_id: str) -> None:
        await self.run("kill", container_id)

    async def remove(self, container_id: str) -> None:
        await self.run("rm", "--force", container_id)
