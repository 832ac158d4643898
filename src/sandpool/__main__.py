"""Entry point for `python -m sandpool` / `sandpool`.

Subcommands:
    sandpool serve                          Keep warm pools filled until interrupted
    sandpool check                          Verify configuration and runtime reachability
    sandpool images                         List local image tags
    sandpool pull IMAGE                     Pull an image
    sandpool exec ENV COMMAND               Run a command in a fresh container
    sandpool run ENV FILE... [--test]       Stage files and run the run/test command
    sandpool validate ENV                   Check that ENV's image runs the validation command
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from sandpool.types import Cause, Submission, SubmissionFile

_TEXT_CHUNK = 8192


def _print_result(result: dict) -> None:
    print(json.dumps(result, indent=2))


def _file_from_path(path: Path, root: Path) -> SubmissionFile:
    relative = path.resolve().relative_to(root.resolve())
    data = path.read_bytes()
    try:
        content = data.decode()
        binary = b"\0" in data[:_TEXT_CHUNK]
    except UnicodeDecodeError:
        content, binary = "", True
    parent = relative.parent.as_posix()
    return SubmissionFile(
        name=path.stem,
        extension=path.suffix,
        path=None if parent == "." else parent,
        binary=binary,
        content="" if binary else content,
        native_path=path if binary else None,
    )


async def _serve() -> None:
    from sandpool.service import Service

    await Service().run_forever()


async def _check() -> None:
    from sandpool.service import Service

    service = Service()
    await service.initialize_environment()
    print(f"Runtime reachable; workspace root {service.settings.local_workspace_root}")


async def _images() -> None:
    from sandpool.service import Service

    for tag in sorted(await Service().runtime.image_tags()):
        print(tag)


async def _pull(image: str) -> None:
    from sandpool.service import Service

    await Service().runtime.pull(image)


async def _exec(env_name: str, command: str) -> None:
    from sandpool.service import Service

    async with Service() as service:
        result = await service.manager.execute_arbitrary_command(
            command, service.environment(env_name)
        )
    _print_result(result.to_dict())


async def _run(env_name: str, files: list[Path], root: Path, main: str | None, test: bool) -> None:
    from sandpool.service import Service

    async with Service() as service:
        env = service.environment(env_name)
        submission = Submission(
            environment=env,
            files=tuple(_file_from_path(p, root) for p in files),
        )
        filename = main or files[0].name
        cause = Cause.TEST if test else Cause.RUN
        result = await service.manager.execute_for_submission(cause, submission, filename)
    _print_result(result.to_dict())


async def _validate(env_name: str) -> None:
    from sandpool.service import Service

    async with Service() as service:
        ok = await service.manager.check_image(service.environment(env_name))
    print("ok" if ok else "image check failed")
    if not ok:
        sys.exit(1)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="sandpool",
        description="Run untrusted code in pooled, single-use containers",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="Keep warm pools filled until interrupted")
    sub.add_parser("check", help="Verify configuration and runtime reachability")
    sub.add_parser("images", help="List local image tags")

    pull = sub.add_parser("pull", help="Pull an image")
    pull.add_argument("image")

    exec_ = sub.add_parser("exec", help="Run a command in a fresh container")
    exec_.add_argument("environment")
    exec_.add_argument("cmd", metavar="COMMAND")

    run = sub.add_parser("run", help="Stage files and run the environment's command")
    run.add_argument("environment")
    run.add_argument("files", nargs="+", type=Path)
    run.add_argument("--root", type=Path, default=Path.cwd(), help="Workspace-relative root")
    run.add_argument("--main", help="File name substituted into the command template")
    run.add_argument("--test", action="store_true", help="Use the test command")

    validate = sub.add_parser("validate", help="Check an environment's image")
    validate.add_argument("environment")

    args = parser.parse_args()

    match args.command:
        case "check":
            asyncio.run(_check())
        case "images":
            asyncio.run(_images())
        case "pull":
            asyncio.run(_pull(args.image))
        case "exec":
            asyncio.run(_exec(args.environment, args.cmd))
        case "run":
            asyncio.run(_run(args.environment, args.files, args.root, args.main, args.test))
        case "validate":
            asyncio.run(_validate(args.environment))
        case _:
            asyncio.run(_serve())


if __name__ == "__main__":
    main()
