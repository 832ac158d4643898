"""Exception hierarchy.

Timeouts are not errors: an execution that exceeds its permitted time
returns ``ExecutionResult.timeout()``.
"""

from __future__ import annotations

from collections.abc import Sequence


class SandpoolError(Exception):
    """Base class for all sandpool errors."""


class ConfigurationError(SandpoolError):
    """Required settings are missing or the container runtime is unreachable."""


class ExhaustedError(SandpoolError):
    """No host port in the configured range is free."""


class StagingError(SandpoolError):
    """A submission file could not be written into a container workspace."""


class RuntimeCommandError(SandpoolError):
    """A container runtime CLI call exited non-zero."""

    def __init__(
        self,
        args: Sequence[str],
        returncode: int | None,
        stderr: str = "",
    ) -> None:
        self.command = list(args)
        self.returncode = returncode
        self.stderr = stderr.strip()
        detail = self.stderr or f"exit code {returncode}"
        super().__init__(f"docker {' '.join(self.command[:2])} failed: {detail}")


class ContainerNotFoundError(RuntimeCommandError):
    """The runtime could not find a container or image — usually a transient race."""


class RuntimeConnectionError(RuntimeCommandError):
    """The runtime daemon could not be reached or dropped the connection."""


_NOT_FOUND_MARKERS = ("no such container", "no such image", "not found", "no such object")
_CONNECTION_MARKERS = (
    "cannot connect to the docker daemon",
    "connection refused",
    "connection reset",
    "broken pipe",
    "error during connect",
    "i/o timeout",
)


_DAEMON_FAILURE_PREFIXES = ("cannot connect to the docker daemon", "error during connect")


def is_daemon_failure(stderr: str) -> bool:
    """Whether *stderr* opens with a docker CLI daemon-connection error.

    Only the start of the stream is checked: an exec session's stderr is
    the executed program's own output, which may mention connections freely.
    """
    return stderr.lstrip().lower().startswith(_DAEMON_FAILURE_PREFIXES)


def classify_runtime_error(
    args: Sequence[str],
    returncode: int | None,
    stderr: str,
) -> RuntimeCommandError:
    """Map a failed CLI call to the most specific RuntimeCommandError subclass."""
    lowered = stderr.lower()
    if any(marker in lowered for marker in _CONNECTION_MARKERS):
        return RuntimeConnectionError(args, returncode, stderr)
    if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
        return ContainerNotFoundError(args, returncode, stderr)
    return RuntimeCommandError(args, returncode, stderr)
