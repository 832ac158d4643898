"""Workspace staging — materialize submission files into a container's bind mount.

Each container gets a fresh host directory bound at ``/workspace``.  The
directory can be visible under two different roots: the path this process
writes to (``local_root``) and the path the container runtime mounts from
(``remote_root``).  They differ when the daemon runs inside a VM or a
sibling container that sees the host filesystem elsewhere.
"""

from __future__ import annotations

import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path

from sandpool.errors import StagingError
from sandpool.logger import logger
from sandpool.types import Container, Submission, SubmissionFile


@dataclass(frozen=True)
class WorkspaceLayout:
    local_root: Path
    remote_root: Path

    def generate_local_workspace_path(self) -> Path:
        """A fresh, uniquely named workspace directory path (not created)."""
        return self.local_root / str(uuid.uuid4())

    def remote_workspace_path(self, local_path: Path) -> Path:
        return self.remote_root / local_path.relative_to(self.local_root)

    def local_workspace_path(self, remote_path: Path) -> Path:
        return self.local_root / remote_path.relative_to(self.remote_root)


def local_file_path(container: Container, file: SubmissionFile) -> Path:
    """Host path a submission file is staged to inside *container*'s workspace.

    Raises StagingError if the container has no workspace or the file's
    path would escape it.
    """
    if container.workspace is None:
        raise StagingError(f"Container {container.name} has no bound workspace")
    root = container.workspace.resolve()
    target = (root / file.relative_path).resolve()
    if not target.is_relative_to(root):
        raise StagingError(f"File {file.relative_path} escapes the workspace")
    return target


def stage_submission(container: Container, submission: Submission) -> list[Path]:
    """Write every file of *submission* into *container*'s host workspace.

    Directories are created as needed.  Binary files are copied from their
    ``native_path``; text files are written from ``content``, overwriting
    anything already there, so staging the same submission twice yields the
    same tree.  Returns the staged paths in submission order.
    """
    targets = [local_file_path(container, f) for f in submission.files]
    if len(set(targets)) != len(targets):
        raise StagingError("Submission contains two files with the same path")

    for file, target in zip(submission.files, targets):
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            if file.binary:
                if file.native_path is None:
                    raise StagingError(f"Binary file {file.relative_path} has no source path")
                shutil.copyfile(file.native_path, target)
            else:
                target.write_text(file.content, encoding="utf-8")
        except OSError as exc:
            raise StagingError(f"Cannot stage {file.relative_path}: {exc}") from exc

    logger.debug(
        "Submission staged",
        container=container.name,
        files=len(targets),
    )
    return targets
