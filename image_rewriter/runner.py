# image_rewriter/runner.py
import asyncio
import logging
from typing import Awaitable, Callable, NamedTuple, Sequence

logger = logging.getLogger(__name__)

# 10 MiB, the most scanner output we are willing to hold
MAX_OUTPUT_BYTES = 10 * 1024 * 1024


class CommandResult(NamedTuple):
    returncode: int
    stdout: str
    stderr: str


class CommandNotFound(Exception):
    """The executable is not installed or not on PATH."""


class CommandTimeout(Exception):
    """The command did not finish within its timeout and was killed."""


class OutputTooLarge(Exception):
    """The command produced more output than MAX_OUTPUT_BYTES."""


class CommandFailed(Exception):
    """The executable exists but could not be started (permissions, bad format, ...)."""


# Everything a Runner may raise instead of returning a CommandResult
COMMAND_ERRORS = (CommandNotFound, CommandFailed, CommandTimeout, OutputTooLarge, OSError)


Runner = Callable[[Sequence[str], float], Awaitable[CommandResult]]


async def run_command(argv: Sequence[str], timeout: float) -> CommandResult:
    """Runs argv without a shell and collects its output."""
    logger.debug(f"Running: {' '.join(argv)}")
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise CommandNotFound(argv[0]) from e
    except OSError as e:
        raise CommandFailed(f"could not run {argv[0]}: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        proc.kill()
        await proc.wait()
        raise CommandTimeout(f"{argv[0]} timed out after {timeout}s") from e

    if len(stdout) > MAX_OUTPUT_BYTES:
        raise OutputTooLarge(f"{argv[0]} produced {len(stdout)} bytes of output")
    return CommandResult(
        returncode=proc.returncode,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )
