"""Invokes the s2i build tool and prepares the test application source."""

import asyncio
import logging
from asyncio.subprocess import DEVNULL, PIPE, STDOUT
from pathlib import Path
from typing import Optional

from s2icheck.config import VerifyConfig, runtime_testapp_tag, testapp_tag

__all__ = ["COMMAND_NOT_FOUND", "S2IBuilder", "run_command", "runtime_testapp_tag", "testapp_tag"]

logger = logging.getLogger(__name__)

# Shell convention for "command not found"
COMMAND_NOT_FOUND = 127


async def run_command(
    args: list[str],
    cwd: Optional[Path] = None,
    log_output: bool = True,
) -> int:
    """Run a command to completion and return its exit status.

    Combined stdout/stderr is forwarded to the logger line by line, at INFO
    when ``log_output`` is set and at DEBUG otherwise.
    """
    logger.debug(f"$ {' '.join(args)}")
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=DEVNULL,
            stdout=PIPE,
            stderr=STDOUT,
            cwd=str(cwd) if cwd else None,
            limit=1024 * 1024,
        )
    except FileNotFoundError:
        logger.error(f"Command not found: {args[0]}")
        return COMMAND_NOT_FOUND

    level = logging.INFO if log_output else logging.DEBUG
    while True:
        line = await process.stdout.readline()
        if not line:
            break
        logger.log(level, line.decode("utf-8", errors="replace").rstrip())

    return await process.wait()


class S2IBuilder:
    """Wraps the ``s2i`` CLI with the options every build of the run shares."""

    def __init__(self, config: VerifyConfig):
        self.config = config

    @property
    def common_args(self) -> list[str]:
        return ["--pull-policy=never", f"--loglevel={self.config.s2i_loglevel}"]

    def build_args(
        self,
        source: str,
        image: str,
        tag: str,
        incremental: bool = False,
        runtime_image: Optional[str] = None,
    ) -> list[str]:
        args = [self.config.s2i_binary, "build", f"--context-dir={self.config.context_dir}"]
        if incremental:
            args.append("--incremental=true")
        if runtime_image:
            args.append(f"--runtime-image={runtime_image}")
        args.extend(self.common_args)
        args.extend([source, image, tag])
        return args

    async def build(
        self,
        source: str,
        image: str,
        tag: str,
        incremental: bool = False,
        runtime_image: Optional[str] = None,
    ) -> int:
        """Build ``tag`` from ``source`` on top of ``image``.

        Args:
            source: Source URL, e.g. ``file:///path/to/test-app``.
            image: Builder image.
            tag: Name of the resulting application image.
            incremental: Reuse artifacts from a previous build of ``tag``.
            runtime_image: Build a runtime-only image on top of this base.

        Returns:
            Exit status of the build tool.
        """
        mode = "incremental " if incremental else ""
        if runtime_image:
            mode += f"runtime ({runtime_image}) "
        logger.info(f"Running {mode}s2i build of {tag} from {image}")
        return await run_command(self.build_args(source, image, tag, incremental, runtime_image))

    async def usage(self, image: str) -> int:
        """Run the image's usage script through ``s2i usage``."""
        logger.info(f"Testing 's2i usage' for {image}...")
        args = [self.config.s2i_binary, "usage", *self.common_args, image]
        return await run_command(args, log_output=False)

    async def prepare_source(self, path: Path) -> int:
        """Make ``path`` a git repository with one commit, if it is not one.

        s2i only accepts git repositories as ``file://`` sources.
        """
        if (path / ".git").exists():
            return 0

        logger.info(f"Initialising git repository in {path}")
        steps = [
            ["git", "init"],
            ["git", "config", "user.email", "build@localhost"],
            ["git", "config", "user.name", "builder"],
            ["git", "add", "-A"],
            ["git", "commit", "-m", "Sample commit"],
        ]
        for step in steps:
            code = await run_command(step, cwd=path, log_output=False)
            if code != 0:
                logger.error(f"'{' '.join(step)}' failed with exit code {code}")
                return code
        return 0
