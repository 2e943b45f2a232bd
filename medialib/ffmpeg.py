"""Async wrappers for invoking ffmpeg / ffprobe as subprocesses."""
from __future__ import annotations

import asyncio
import os
import shutil
import subprocess
import time
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from . import config
from .logs import _log, _trim


def ffmpeg_bin() -> str:
    return os.environ.get("FFMPEG") or "ffmpeg"


def ffprobe_bin() -> str:
    return os.environ.get("FFPROBE") or "ffprobe"


def ffmpeg_available() -> bool:
    """
    Return True if an ffmpeg executable is available on PATH (or via FFMPEG env).
    """
    cmd = os.environ.get("FFMPEG") or shutil.which("ffmpeg")
    return bool(cmd)


def ffprobe_available() -> bool:
    """
    Return True if an ffprobe executable is available on PATH (or via FFPROBE env).
    """
    cmd = os.environ.get("FFPROBE") or shutil.which("ffprobe")
    return bool(cmd)


# -----------------------------
# Global ffmpeg concurrency gate
# -----------------------------
# One semaphore per event loop; asyncio primitives must not be shared across loops.
_GATES: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Semaphore]" = weakref.WeakKeyDictionary()


def _gate() -> asyncio.Semaphore:
    loop = asyncio.get_running_loop()
    sem = _GATES.get(loop)
    if sem is None:
        sem = asyncio.Semaphore(config.ffmpeg_concurrency())
        _GATES[loop] = sem
    return sem


@asynccontextmanager
async def tool_slot() -> AsyncIterator[None]:
    """Hold one slot of the global ffmpeg/ffprobe concurrency cap."""
    sem = _gate()
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


async def kill_process(proc: asyncio.subprocess.Process, grace_seconds: float = 2.0) -> None:
    """Terminate a child process, escalating to SIGKILL after a grace period."""
    if proc.returncode is not None:
        return
    try:
        proc.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), grace_seconds)
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()


async def run_tool(cmd: list[str], *, timeout: Optional[float] = None, category: str = "ffmpeg") -> subprocess.CompletedProcess:
    """
    Run a subprocess command under the global concurrency cap.

    The child is killed if `timeout` elapses or the awaiting task is cancelled,
    so no orphaned ffmpeg processes outlive a request.
    """
    async with tool_slot():
        _log(category, f"exec cmd={' '.join(cmd)} timelimit={timeout if timeout else 'none'}")
        t0 = time.time()
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            await kill_process(proc)
            raise RuntimeError(f"subprocess timed out after {timeout}s: {' '.join(cmd[:4])}...")
        except asyncio.CancelledError:
            await kill_process(proc)
            raise
        elapsed = time.time() - t0
    stdout = (out or b"").decode("utf-8", "ignore")
    stderr = (err or b"").decode("utf-8", "ignore")
    if proc.returncode != 0:
        _log(category, f"fail code={proc.returncode} elapsed={elapsed:.3f}s stderr={_trim(stderr)!r}")
    return subprocess.CompletedProcess(cmd, proc.returncode if proc.returncode is not None else -1, stdout, stderr)
