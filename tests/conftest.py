"""Shared test fixtures for sandpool.

No Docker daemon is needed: ``FakeRuntime`` stands in for
:class:`sandpool.runtime.DockerRuntime` and ``FakeProcess`` for the
interactive exec subprocess.  Commands sent to a fake container are
interpreted by a tiny shell emulator (``echo``, ``sleep``, ``cat``, ``warn``,
``refused``, ``disconnect``).
"""

from __future__ import annotations

import asyncio
import itertools
import shlex
from pathlib import Path

import pytest

from sandpool.containers import ContainerManager
from sandpool.errors import ContainerNotFoundError, RuntimeConnectionError
from sandpool.ports import PortAllocator
from sandpool.types import ExecutionEnvironment
from sandpool.workspace import WorkspaceLayout

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures — importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset({"project_root", "workspace_root", "local_workspace_root"})


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (docker, pool, environments, ...) and cached
    property overrides (project_root, workspace_root, local_workspace_root).

    Usage::

        s = make_settings(workspace_root=tmp_path)
        s = make_settings(pool=PoolConfig(active=False))
    """
    from sandpool.config import (
        DockerConfig,
        LoggingConfig,
        PoolConfig,
        PortsConfig,
        Settings,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "docker": DockerConfig(),
        "ports": PortsConfig(),
        "pool": PoolConfig(),
        "logging": LoggingConfig(),
        "environments": {},
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


def make_env(**overrides) -> ExecutionEnvironment:
    defaults = {
        "id": "python",
        "name": "Python",
        "image": "python:3.12-slim",
        "run_command": "python %{filename}",
        "test_command": "pytest %{module_name}_test.py",
        "permitted_execution_time": 5,
    }
    defaults.update(overrides)
    return ExecutionEnvironment(**defaults)


class FakeStdin:
    def __init__(self, proc: FakeProcess) -> None:
        self._proc = proc
        self.data = b""
        self.closed = False

    def write(self, data: bytes) -> None:
        self.data += data

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True
        self._proc._on_stdin_closed(self.data.decode())


class FakeProcess:
    """Simulates the ``docker exec -i <id> sh`` subprocess.

    When stdin closes, the written script is interpreted line by line and
    the output fed to stdout/stderr before the process exits.
    """

    def __init__(self, runtime: FakeRuntime, container_id: str) -> None:
        self.runtime = runtime
        self.container_id = container_id
        self.stdin = FakeStdin(self)
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self._returncode: int | None = None
        self._wait_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.killed = False

    def _on_stdin_closed(self, script: str) -> None:
        self.runtime.commands.append((self.container_id, script))
        self._task = asyncio.get_running_loop().create_task(self._interpret(script))

    async def _interpret(self, script: str) -> None:
        code = 0
        for line in script.splitlines():
            words = shlex.split(line)
            if not words:
                continue
            match words[0]:
                case "echo":
                    self.stdout.feed_data((" ".join(words[1:]) + "\n").encode())
                case "sleep":
                    await asyncio.sleep(float(words[1]))
                case "cat":
                    workspace = self.runtime.workspaces[self.container_id]
                    self.stdout.feed_data((workspace / words[1]).read_bytes())
                case "warn":
                    self.stderr.feed_data((" ".join(words[1:]) + "\n").encode())
                case "whoami":
                    self.stdout.feed_data(b"root\n")
                case "refused":
                    self.stderr.feed_data(
                        b"ConnectionRefusedError: [Errno 111] Connection refused\n"
                    )
                    code = 1
                case "disconnect":
                    self.stderr.feed_data(b"Cannot connect to the Docker daemon\n")
                    code = 1
                case _:
                    self.stderr.feed_data(f"sh: {words[0]}: not found\n".encode())
                    code = 127
        self.close(code)

    def close(self, code: int = 0) -> None:
        if self._returncode is not None:
            return
        self._returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._wait_event.set()

    async def wait(self) -> int:
        await self._wait_event.wait()
        return self._returncode  # type: ignore[return-value]

    def kill(self) -> None:
        self.killed = True
        if self._task is not None:
            self._task.cancel()
        self.close(-9)

    @property
    def returncode(self) -> int | None:
        return self._returncode


class FakeRuntime:
    """Records container runtime calls instead of shelling out to docker."""

    def __init__(self, images: dict[str, str] | None = None) -> None:
        self.cli = "docker"
        self.host = None
        self.images = images if images is not None else {"python:3.12-slim": "python:3.12-slim"}
        self.calls: list[tuple] = []
        self.commands: list[tuple[str, str]] = []
        self.processes: list[FakeProcess] = []
        self.running: set[str] = set()
        self.created: dict[str, dict] = {}
        self.workspaces: dict[str, Path] = {}
        self.local_root: Path | None = None
        self.remote_root: Path | None = None
        self.create_errors: list[Exception] = []
        self.exec_errors: list[Exception] = []
        self.stop_error: Exception | None = None
        self.remove_error: Exception | None = None
        self.daemon_down = False
        self._ids = itertools.count(1)

    def is_available(self) -> bool:
        return True

    async def check_availability(self, timeout: float) -> str:
        self.calls.append(("version",))
        return "27.0.0"

    async def image_tags(self) -> list[str]:
        return list(self.images)

    async def find_image_by_tag(self, tag: str) -> str:
        self.calls.append(("find_image", tag))
        if tag not in self.images:
            raise ContainerNotFoundError(["image", "inspect", tag], 1, f"No such image: {tag}")
        return self.images[tag]

    async def create_container(self, *, name, image, memory_mb, network_enabled, binds,
                               port_bindings, labels=None) -> str:
        self.calls.append(("create", name))
        if self.create_errors:
            raise self.create_errors.pop(0)
        container_id = f"{next(self._ids):064x}"
        self.created[container_id] = {
            "name": name,
            "image": image,
            "memory_mb": memory_mb,
            "network_enabled": network_enabled,
            "binds": dict(binds),
            "port_bindings": dict(port_bindings),
            "labels": dict(labels or {}),
        }
        remote = next(iter(binds))
        if self.local_root is not None and self.remote_root is not None:
            self.workspaces[container_id] = self.local_root / Path(remote).relative_to(
                self.remote_root
            )
        return container_id

    async def is_running(self, container_id: str, *, timeout: float = 10) -> bool:
        self.calls.append(("inspect", container_id))
        if self.daemon_down:
            raise RuntimeConnectionError(
                ["inspect", container_id], 1, "Cannot connect to the Docker daemon"
            )
        return container_id in self.running

    async def start(self, container_id: str) -> None:
        self.calls.append(("start", container_id))
        self.running.add(container_id)

    async def exec_interactive(self, container_id: str, shell: str) -> FakeProcess:
        self.calls.append(("exec", container_id, shell))
        if self.exec_errors:
            raise self.exec_errors.pop(0)
        proc = FakeProcess(self, container_id)
        self.processes.append(proc)
        return proc

    async def stop(self, container_id: str, *, timeout: int = 1) -> None:
        self.calls.append(("stop", container_id))
        if self.stop_error is not None:
            raise self.stop_error
        self.running.discard(container_id)

    async def kill(self, container_id: str) -> None:
        self.calls.append(("kill", container_id))
        self.running.discard(container_id)

    async def remove(self, container_id: str) -> None:
        self.calls.append(("remove", container_id))
        if self.remove_error is not None:
            raise self.remove_error
        self.running.discard(container_id)
        self.created.pop(container_id, None)

    def count(self, op: str) -> int:
        return sum(1 for call in self.calls if call[0] == op)


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Ensure each test starts from default Settings — no config.toml, no .env."""
    monkeypatch.setattr("sandpool.config._settings", make_settings())


@pytest.fixture
def layout(tmp_path: Path) -> WorkspaceLayout:
    return WorkspaceLayout(tmp_path / "local", tmp_path / "remote")


@pytest.fixture
def runtime(layout: WorkspaceLayout) -> FakeRuntime:
    rt = FakeRuntime()
    rt.local_root = layout.local_root
    rt.remote_root = layout.remote_root
    return rt


@pytest.fixture
def ports() -> PortAllocator:
    return PortAllocator(4500, 4599)


@pytest.fixture
def manager(runtime: FakeRuntime, ports: PortAllocator, layout: WorkspaceLayout) -> ContainerManager:
    return ContainerManager(runtime, ports, layout, retry_count=2)  # type: ignore[arg-type]
