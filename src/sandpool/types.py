"""Data models for sandpool."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from pathlib import Path


def parse_exposed_ports(raw: str | None) -> tuple[int, ...]:
    """Parse a comma-separated port list ("3000, 3001") into container ports.

    Whitespace is ignored and empty entries are skipped.  Raises ValueError
    for anything that is not a TCP port number.
    """
    ports: list[int] = []
    for item in "".join((raw or "").split()).split(","):
        if not item:
            continue
        port = int(item)
        if not 1 <= port <= 65535:
            raise ValueError(f"Invalid exposed port: {item}")
        ports.append(port)
    return tuple(ports)


class Cause(enum.Enum):
    """Which command template of an environment to execute."""

    RUN = "run"
    TEST = "test"


class Status(enum.Enum):
    OK = "ok"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class ExecutionEnvironment:
    id: str
    image: str  # image reference (repo tag)
    run_command: str  # template with %{class_name}, %{module_name}, %{filename}
    permitted_execution_time: int  # seconds; <= 0 times out immediately
    name: str = ""
    test_command: str = ""
    memory_limit: int = 256  # MB
    network_enabled: bool = False
    exposed_ports: tuple[int, ...] = ()  # container-internal ports
    pool_size: int = 0  # target idle containers
    minimum_memory_limit: int = field(default=4, repr=False, compare=False)

    def __post_init__(self) -> None:
        if isinstance(self.permitted_execution_time, bool) or not isinstance(
            self.permitted_execution_time, int
        ):
            raise ValueError("permitted_execution_time must be an integer")
        if self.memory_limit < self.minimum_memory_limit:
            raise ValueError(
                f"memory_limit {self.memory_limit} is below the "
                f"{self.minimum_memory_limit} MB minimum"
            )
        if self.pool_size < 0:
            raise ValueError("pool_size must not be negative")

    def command_for(self, cause: Cause) -> str:
        return self.test_command if cause is Cause.TEST else self.run_command


@dataclass(frozen=True)
class SubmissionFile:
    name: str  # basename without extension
    extension: str = ""  # ".py"; empty for extensionless files
    path: str | None = None  # directory relative to the workspace root
    binary: bool = False
    content: str = ""  # text files
    native_path: Path | None = None  # binary files: where the bytes live on the host

    @property
    def name_with_extension(self) -> str:
        return f"{self.name}{self.extension}"

    @property
    def relative_path(self) -> Path:
        return Path(self.path or "") / self.name_with_extension


@dataclass(frozen=True)
class Submission:
    environment: ExecutionEnvironment
    files: tuple[SubmissionFile, ...] = ()


@dataclass
class Container:
    """An ephemeral, single-use container and the host resources it holds.

    Owned by the pool while idle, by the borrower while executing, and
    destroyed exactly once by whoever holds it last.
    """

    id: str
    name: str
    environment_id: str
    workspace: Path | None = None  # host-visible workspace directory
    port_bindings: dict[int, int] = field(default_factory=dict)  # container port -> host port
    created_at: float = field(default_factory=time.monotonic)
    destroyed: bool = False

    @property
    def short_id(self) -> str:
        return self.id[:12]


@dataclass(frozen=True)
class ExecutionResult:
    status: Status
    stdout: str = ""
    stderr: str = ""

    @classmethod
    def ok(cls, stdout: str, stderr: str) -> ExecutionResult:
        return cls(Status.OK, stdout, stderr)

    @classmethod
    def timeout(cls) -> ExecutionResult:
        return cls(Status.TIMEOUT)

    @property
    def timed_out(self) -> bool:
        return self.status is Status.TIMEOUT

    def to_dict(self) -> dict[str, str]:
        if self.timed_out:
            return {"status": self.status.value}
        return {"status": self.status.value, "stdout": self.stdout, "stderr": self.stderr}
