"""Container lifecycle — create, execute against, and destroy single-use containers.

A container is created from an :class:`ExecutionEnvironment` with a fresh
host workspace bound at ``/workspace`` and one leased host port per exposed
port.  A command is executed by opening an interactive exec session,
writing the command to the shell's stdin and collecting stdout and stderr
until the shell exits or the environment's permitted execution time runs
out.  Whatever happens, the container is then destroyed in a background
task; callers get their result before teardown finishes.

Two retry loops, both without backoff:
  create_container  — retries "not found" races (image or container vanished)
  execute_command   — retries dropped runtime connections, each attempt on a
                      newly acquired container
"""

from __future__ import annotations

import asyncio
import contextlib
import re
import shutil
import time
import uuid
from collections.abc import Awaitable, Callable, Iterator
from pathlib import Path
from typing import TYPE_CHECKING

from sandpool.errors import (
    ContainerNotFoundError,
    RuntimeCommandError,
    RuntimeConnectionError,
    SandpoolError,
    is_daemon_failure,
)
from sandpool.logger import logger
from sandpool.ports import PortAllocator
from sandpool.runtime import CONTAINER_WORKSPACE_PATH, ENVIRONMENT_LABEL, DockerRuntime
from sandpool.types import (
    Cause,
    Container,
    ExecutionEnvironment,
    ExecutionResult,
    Submission,
)
from sandpool.utils import camelize, create_background_task, retry_async, underscore
from sandpool.workspace import WorkspaceLayout, stage_submission

if TYPE_CHECKING:
    from sandpool.config import Settings
    from sandpool.pool import ContainerPool

OnOutput = Callable[[str, str], Awaitable[None]]  # (stream, chunk) -> None
BeforeExecute = Callable[[Container], Awaitable[None]]

_PLACEHOLDER = re.compile(r"%(%|\{(\w+)\})")


def command_substitutions(filename: str) -> dict[str, str]:
    """Values for the ``%{...}`` placeholders of a command template."""
    base = Path(filename).stem
    return {
        "class_name": camelize(base),
        "filename": filename,
        "module_name": underscore(base),
    }


def substitute_command(template: str, filename: str) -> str:
    """Expand ``%{class_name}``, ``%{module_name}`` and ``%{filename}``.

    ``%%`` yields a literal ``%``.  Unknown placeholders raise ValueError so a
    mistyped template fails loudly instead of running a half-expanded command.
    """
    values = command_substitutions(filename)

    def _replace(match: re.Match[str]) -> str:
        if match.group(1) == "%":
            return "%"
        key = match.group(2)
        if key not in values:
            raise ValueError(f"Unknown placeholder %{{{key}}} in command template")
        return values[key]

    return _PLACEHOLDER.sub(_replace, template)


class ContainerManager:
    """Creates, runs commands in, and tears down containers.

    When a :class:`~sandpool.pool.ContainerPool` is attached (``pool``),
    executions borrow from it; otherwise every execution creates a fresh
    container.
    """

    def __init__(
        self,
        runtime: DockerRuntime,
        ports: PortAllocator,
        layout: WorkspaceLayout,
        *,
        retry_count: int = 2,
        stop_timeout: int = 1,
        shell: str = "/bin/sh",
        validation_command: str = "whoami",
    ) -> None:
        self.runtime = runtime
        self.ports = ports
        self.layout = layout
        self.retry_count = retry_count
        self.stop_timeout = stop_timeout
        self.shell = shell
        self.validation_command = validation_command
        self.pool: ContainerPool | None = None
        self._teardowns: set[asyncio.Task[None]] = set()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        runtime: DockerRuntime,
        ports: PortAllocator,
    ) -> ContainerManager:
        return cls(
            runtime,
            ports,
            WorkspaceLayout(settings.local_workspace_root, settings.workspace_root),
            retry_count=settings.docker.retry_count,
            stop_timeout=settings.docker.stop_timeout,
            shell=settings.docker.shell,
            validation_command=settings.docker.validation_command,
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_container(self, env: ExecutionEnvironment) -> Container:
        """Create and start a container for *env*.

        "Not found" failures destroy the partial container and are retried
        up to ``retry_count`` more times; anything else propagates at once.
        """
        return await retry_async(
            lambda: self._create_once(env),
            retries=self.retry_count,
            on=(ContainerNotFoundError,),
            description=f"create container for {env.id}",
        )

    async def _create_once(self, env: ExecutionEnvironment) -> Container:
        start = time.monotonic()
        image = await self.runtime.find_image_by_tag(env.image)
        workspace = self.layout.generate_local_workspace_path()
        container = Container(
            id="",
            name=f"sandpool-{uuid.uuid4().hex}",
            environment_id=env.id,
            workspace=workspace,
        )
        try:
            await asyncio.to_thread(workspace.mkdir, parents=True)
            for port in env.exposed_ports:
                container.port_bindings[port] = self.ports.acquire()
            container.id = await self.runtime.create_container(
                name=container.name,
                image=image,
                memory_mb=env.memory_limit,
                network_enabled=env.network_enabled,
                binds={self.layout.remote_workspace_path(workspace): CONTAINER_WORKSPACE_PATH},
                port_bindings=container.port_bindings,
                labels={ENVIRONMENT_LABEL: env.id},
            )
            await self.runtime.start(container.id)
        except BaseException:
            # Cancellation included: a half-built container must not leak.
            await self.destroy_container(container)
            raise

        logger.info(
            "Container created",
            container=container.name,
            environment=env.id,
            image=image,
            ports=container.port_bindings or None,
            elapsed_ms=round((time.monotonic() - start) * 1000),
        )
        return container

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def destroy_container(self, container: Container) -> None:
        """Stop, release ports, remove the workspace, delete the container.

        Best-effort and idempotent: every step runs even if an earlier one
        failed, failures are logged, nothing is raised, and a second call
        for the same container is a no-op.
        """
        if container.destroyed:
            return
        container.destroyed = True
        ref = container.id or container.name

        stopped = False
        if container.id:
            with _best_effort("stop", container):
                await self.runtime.stop(ref, timeout=self.stop_timeout)
                stopped = True
            if not stopped:
                with _best_effort("kill", container):
                    await self.runtime.kill(ref)

        for host_port in container.port_bindings.values():
            self.ports.release(host_port)

        if container.workspace is not None:
            with _best_effort("remove workspace", container):
                await asyncio.to_thread(_remove_tree, container.workspace)

        if container.id:
            with _best_effort("delete", container):
                await self.runtime.remove(ref)

        logger.debug("Container destroyed", container=container.name)

    def _schedule_destroy(self, container: Container) -> None:
        """Destroy *container* in the background without awaiting it."""
        task = create_background_task(
            self.destroy_container(container),
            name=f"destroy-{container.name}",
        )
        self._teardowns.add(task)
        task.add_done_callback(self._teardowns.discard)

    async def wait_for_background_tasks(self) -> None:
        """Wait until every scheduled teardown has finished."""
        while self._teardowns:
            await asyncio.gather(*list(self._teardowns), return_exceptions=True)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def acquire(self, env: ExecutionEnvironment) -> Container:
        if self.pool is not None:
            return await self.pool.borrow(env)
        return await self.create_container(env)

    async def execute_command(
        self,
        command: str,
        env: ExecutionEnvironment,
        before_execute: BeforeExecute | None = None,
        on_output: OnOutput | None = None,
    ) -> ExecutionResult:
        """Run *command* in a container for *env* and return its output.

        Each attempt acquires a container, runs *before_execute* against it,
        then sends the command.  The container is destroyed in the
        background after every attempt, including failed ones.  Dropped
        runtime connections retry the whole attempt on a new container.
        """

        async def _attempt() -> ExecutionResult:
            container = await self.acquire(env)
            try:
                if before_execute is not None:
                    await before_execute(container)
                return await self._send_command(command, container, env, on_output)
            finally:
                self._schedule_destroy(container)

        return await retry_async(
            _attempt,
            retries=self.retry_count,
            on=(RuntimeConnectionError,),
            description=f"execute command in {env.id}",
        )

    async def execute_arbitrary_command(
        self,
        command: str,
        env: ExecutionEnvironment,
        on_output: OnOutput | None = None,
    ) -> ExecutionResult:
        return await self.execute_command(command, env, on_output=on_output)

    async def execute_for_submission(
        self,
        cause: Cause,
        submission: Submission,
        filename: str,
        on_output: OnOutput | None = None,
    ) -> ExecutionResult:
        """Run the environment's run or test command against a staged submission."""
        env = submission.environment
        command = substitute_command(env.command_for(cause), filename)

        async def _stage(container: Container) -> None:
            await asyncio.to_thread(stage_submission, container, submission)

        return await self.execute_command(
            command, env, before_execute=_stage, on_output=on_output
        )

    async def execute_run_command(
        self,
        submission: Submission,
        filename: str,
        on_output: OnOutput | None = None,
    ) -> ExecutionResult:
        return await self.execute_for_submission(Cause.RUN, submission, filename, on_output)

    async def execute_test_command(
        self,
        submission: Submission,
        filename: str,
        on_output: OnOutput | None = None,
    ) -> ExecutionResult:
        return await self.execute_for_submission(Cause.TEST, submission, filename, on_output)

    async def check_image(self, env: ExecutionEnvironment) -> bool:
        """Whether *env*'s image can run the validation command cleanly.

        Runs like any other execution, so it consumes a warm pooled container
        when one is idle.
        """
        try:
            result = await self.execute_arbitrary_command(self.validation_command, env)
        except SandpoolError as exc:
            logger.warning("Image check failed", environment=env.id, image=env.image, err=str(exc))
            return False
        return not result.timed_out and not result.stderr

    async def _send_command(
        self,
        command: str,
        container: Container,
        env: ExecutionEnvironment,
        on_output: OnOutput | None,
    ) -> ExecutionResult:
        timeout = int(env.permitted_execution_time)
        if timeout <= 0:
            logger.info("Non-positive execution time, timing out", environment=env.id)
            return ExecutionResult.timeout()

        proc = await self.runtime.exec_interactive(container.id, self.shell)
        start = time.monotonic()
        try:
            stdout, stderr = await asyncio.wait_for(
                _communicate(proc, command, on_output), timeout=timeout
            )
        except TimeoutError:
            logger.info(
                "Command timed out",
                container=container.name,
                environment=env.id,
                timeout=timeout,
            )
            return ExecutionResult.timeout()
        finally:
            if proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(proc.wait(), timeout=self.stop_timeout + 1)

        if proc.returncode and is_daemon_failure(stderr):
            await self._confirm_connection_lost(container, proc.returncode, stderr)

        logger.info(
            "Command finished",
            container=container.name,
            environment=env.id,
            exit_code=proc.returncode,
            elapsed_ms=round((time.monotonic() - start) * 1000),
        )
        return ExecutionResult.ok(stdout, stderr)

    async def _confirm_connection_lost(
        self,
        container: Container,
        returncode: int,
        stderr: str,
    ) -> None:
        """Raise RuntimeConnectionError if the daemon is really gone.

        A program can print a daemon error itself, so the failure only counts
        when a fresh CLI call cannot reach the daemon either.
        """
        try:
            await self.runtime.is_running(container.id)
        except RuntimeConnectionError as exc:
            raise RuntimeConnectionError(["exec", container.id], returncode, stderr) from exc
        except RuntimeCommandError as exc:
            logger.debug(
                "Container inspect failed after exec",
                container=container.name,
                err=str(exc),
            )


async def _communicate(
    proc: asyncio.subprocess.Process,
    command: str,
    on_output: OnOutput | None,
) -> tuple[str, str]:
    """Write *command* to stdin, then collect stdout/stderr until the process exits."""
    assert proc.stdin is not None
    assert proc.stdout is not None
    assert proc.stderr is not None
    try:
        proc.stdin.write(command.encode() + b"\n")
        await proc.stdin.drain()
        proc.stdin.close()
    except (BrokenPipeError, ConnectionResetError) as exc:
        raise RuntimeConnectionError(["exec"], proc.returncode, str(exc)) from exc

    stdout, stderr = await asyncio.gather(
        _read_stream(proc.stdout, "stdout", on_output),
        _read_stream(proc.stderr, "stderr", on_output),
    )
    await proc.wait()
    return stdout, stderr


async def _read_stream(
    stream: asyncio.StreamReader,
    name: str,
    on_output: OnOutput | None,
) -> str:
    chunks: list[bytes] = []
    while True:
        chunk = await stream.read(8192)
        if not chunk:
            break
        chunks.append(chunk)
        if on_output is not None:
            try:
                await on_output(name, chunk.decode(errors="replace"))
            except Exception as exc:
                logger.error("Output callback failed", stream=name, error=str(exc))
    return b"".join(chunks).decode(errors="replace")


def _remove_tree(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path)


@contextlib.contextmanager
def _best_effort(step: str, container: Container) -> Iterator[None]:
    """Log and swallow a failing teardown step so the next one still runs."""
    try:
        yield
    except Exception as exc:
        logger.warning(
            "Container cleanup step failed",
            step=step,
            container=container.name,
            err=str(exc),
        )
