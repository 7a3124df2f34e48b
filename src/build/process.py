# src/build/process.py — v1
"""Run child processes while streaming their output line by line.

stdout and stderr are drained by two reader tasks feeding one sink; the
caller gets control back only after the process has exited and both
streams hit EOF, so no trailing output is lost.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

from imagebuilder.core.errors import CommandFailed, PrerequisiteMissing
from imagebuilder.core.models import LogSink

logger = logging.getLogger(__name__)

# Build tools can print very long lines (store paths, progress bars).
_STREAM_LIMIT = 1024 * 1024


async def _pump(stream: asyncio.StreamReader, sink: LogSink) -> None:
    while True:
        line = await stream.readline()
        if not line:
            return
        sink(line.decode("utf-8", errors="replace").rstrip("\r\n"))


async def stream_command(
    argv: list[str],
    sink: LogSink,
    cwd: Path | str | None = None,
) -> int:
    """Run argv, forwarding every output line to sink. Returns the exit status.

    Raises:
        PrerequisiteMissing: If the executable does not exist.
        asyncio.CancelledError: If the calling task is cancelled. Here and when
            the sink raises, the child process is killed and reaped first.
    """
    logger.debug("exec: %s", " ".join(argv))
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd) if cwd is not None else None,
            env=os.environ.copy(),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=_STREAM_LIMIT,
        )
    except FileNotFoundError as e:
        raise PrerequisiteMissing(argv[0]) from e

    readers = [
        asyncio.create_task(_pump(proc.stdout, sink)),
        asyncio.create_task(_pump(proc.stderr, sink)),
    ]
    try:
        await asyncio.gather(*readers)
        return await proc.wait()
    except BaseException:
        for reader in readers:
            reader.cancel()
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise


async def run_command(
    argv: list[str],
    sink: LogSink,
    cwd: Path | str | None = None,
) -> None:
    """Like stream_command, but a non-zero exit raises CommandFailed."""
    returncode = await stream_command(argv, sink, cwd=cwd)
    if returncode != 0:
        raise CommandFailed(argv, returncode)
