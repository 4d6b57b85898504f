"""Asyncio subprocess runner with timeout, graceful termination and kill escalation."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

from pi_daemon.engine.backend.base import (
    SPAWN_ERROR_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    ProcessRequest,
    ProcessResult,
)

logger = logging.getLogger(__name__)

_READER_DRAIN_SECONDS = 1.0


class AsyncProcessBackend:
    """Default backend: spawn the process on the running event loop."""

    async def run(self, request: ProcessRequest) -> ProcessResult:
        return await run_process(request)


def command_argv(command: Path) -> list[str]:
    """Argv that executes a workflow or validator command file."""

    suffix = command.suffix.lower()
    if suffix == ".py":
        return [sys.executable, str(command)]
    if suffix == ".ts":
        return ["bun", str(command)]
    if suffix == ".sh":
        return ["sh", str(command)]
    return [str(command)]


async def run_process(request: ProcessRequest) -> ProcessResult:
    """Run ``request.argv`` and capture stdout/stderr.

    On timeout the process receives SIGTERM, then SIGKILL once the grace
    window passes; the result carries exit code 124 and ``"\\nTimeout exceeded"``
    appended to stderr.  A process that cannot be spawned yields exit code 127.
    """

    stdin = asyncio.subprocess.PIPE if request.stdin is not None else asyncio.subprocess.DEVNULL
    try:
        process = await asyncio.create_subprocess_exec(
            *request.argv,
            stdin=stdin,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=request.env,
            cwd=str(request.cwd) if request.cwd is not None else None,
        )
    except OSError as error:
        logger.error("Failed to spawn %s: %s", request.argv[0], error)
        return ProcessResult(
            exit_code=SPAWN_ERROR_EXIT_CODE,
            stderr=str(error),
            argv=list(request.argv),
        )

    stdout_chunks: list[bytes] = []
    stderr_chunks: list[bytes] = []
    pending = [
        asyncio.create_task(_drain(process.stdout, stdout_chunks)),
        asyncio.create_task(_drain(process.stderr, stderr_chunks)),
    ]
    if request.stdin is not None:
        pending.append(asyncio.create_task(_feed(process.stdin, request.stdin)))

    timed_out = False
    try:
        await asyncio.wait_for(process.wait(), timeout=request.timeout_seconds)
    except TimeoutError:
        timed_out = True
        logger.warning(
            "Process %s exceeded %.0fs timeout, terminating",
            request.argv[0],
            request.timeout_seconds,
        )
        await _terminate_process(process, grace_seconds=request.kill_grace_seconds)
    except asyncio.CancelledError:
        await _terminate_process(process, grace_seconds=request.kill_grace_seconds)
        for task in pending:
            task.cancel()
        raise

    # Grandchildren may keep the pipes open after the direct child exits
    _, still_running = await asyncio.wait(pending, timeout=_READER_DRAIN_SECONDS)
    for task in still_running:
        task.cancel()

    stdout = b"".join(stdout_chunks).decode("utf-8", errors="replace")
    stderr = b"".join(stderr_chunks).decode("utf-8", errors="replace")
    if timed_out:
        return ProcessResult(
            exit_code=TIMEOUT_EXIT_CODE,
            stdout=stdout,
            stderr=f"{stderr}\nTimeout exceeded",
            timed_out=True,
            argv=list(request.argv),
        )
    return ProcessResult(
        exit_code=process.returncode if process.returncode is not None else 1,
        stdout=stdout,
        stderr=stderr,
        argv=list(request.argv),
    )


async def _drain(stream: asyncio.StreamReader | None, chunks: list[bytes]) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            return
        chunks.append(chunk)


async def _feed(stream: asyncio.StreamWriter | None, payload: str) -> None:
    if stream is None:
        return
    try:
        if payload:
            stream.write(payload.encode("utf-8"))
            await stream.drain()
        stream.close()
    except (BrokenPipeError, ConnectionResetError):
        # The child exited without reading its input.
        return


async def _terminate_process(
    process: asyncio.subprocess.Process,
    *,
    grace_seconds: float,
) -> None:
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()
