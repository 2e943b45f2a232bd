"""
H.264/AAC MP4 normalization through ffmpeg.

A `TranscodeJob` is a cancellable handle around one ffmpeg process. Output is
written to a hidden temporary file next to the destination and only renamed
into place after ffmpeg exits cleanly, so an interrupted job never leaves a
half-written `.mp4` behind.

    async with TranscodeJob(src, dst) as job:
        async for frac in job.progress():
            ...
        await job.wait()
"""
from __future__ import annotations

import asyncio
import os
import uuid
from collections import deque
from pathlib import Path
from typing import AsyncIterator, Callable, Optional, Union

from . import config
from .errors import ConversionCancelled, ConversionError, DestinationExistsError
from .ffmpeg import _gate, ffmpeg_available, ffmpeg_bin, kill_process
from .logs import _log, _trim
from .probe import extract_metadata

PathLike = Union[str, Path]

# Maximum-compatibility encode settings
VIDEO_ARGS = [
    "-c:v", "libx264",
    "-preset", "medium",
    "-crf", "23",
    "-maxrate", "5000k",
    "-bufsize", "10000k",
    "-pix_fmt", "yuv420p",
]
AUDIO_ARGS = ["-c:a", "aac", "-b:a", "192k", "-ac", "2"]


class TranscodeJob:
    def __init__(self, source: PathLike, destination: PathLike, *, duration: Optional[float] = None):
        self.source = Path(source)
        self.destination = Path(destination)
        self.tmp_path = self.destination.parent / f".{self.destination.stem}.transcode.{uuid.uuid4().hex}.mp4"
        self.duration = duration
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._readers: list[asyncio.Task] = []
        self._queue: asyncio.Queue[Optional[float]] = asyncio.Queue()
        self._stderr: deque[str] = deque(maxlen=60)
        self._slot: Optional[asyncio.Semaphore] = None
        self._cancelled = False
        self._finished = False
        self._last_progress = -1.0

    def command(self) -> list[str]:
        return [
            ffmpeg_bin(), "-hide_banner", "-nostdin", "-nostats", "-loglevel", "error", "-y",
            "-i", str(self.source),
            *VIDEO_ARGS,
            *AUDIO_ARGS,
            "-movflags", "+faststart",
            *config.ffmpeg_threads_flags(),
            "-progress", "pipe:1",
            str(self.tmp_path),
        ]

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def start(self) -> "TranscodeJob":
        if self._proc is not None:
            raise ConversionError("transcode already started")
        if not self.source.is_file():
            raise ConversionError(f"Source not found: {self.source}")
        if self.destination.exists():
            raise DestinationExistsError(f"Destination already exists: {self.destination}")
        if not ffmpeg_available():
            raise ConversionError("ffmpeg is required for conversion. Please install ffmpeg and try again.")
        if self.duration is None:
            self.duration = (await extract_metadata(self.source)).duration
        try:
            self.destination.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConversionError(f"Cannot create output folder {self.destination.parent}: {e}") from e
        self._slot = _gate()
        await self._slot.acquire()
        cmd = self.command()
        _log("transcode", f"transcode start src={self.source} dst={self.destination} dur={self.duration:.3f} cmd={' '.join(cmd)}")
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            self._finish()
            _log("transcode", f"transcode spawn-fail src={self.source} err={e}")
            raise ConversionError(f"Could not start ffmpeg for {self.source.name}: {e}") from e
        except BaseException:
            self._finish()
            raise
        self._readers = [
            asyncio.create_task(self._read_progress()),
            asyncio.create_task(self._read_stderr()),
        ]
        return self

    def _emit(self, frac: float) -> None:
        frac = max(0.0, min(1.0, frac))
        if frac > self._last_progress:
            self._last_progress = frac
            self._queue.put_nowait(frac)

    async def _read_progress(self) -> None:
        assert self._proc is not None and self._proc.stdout is not None
        async for raw in self._proc.stdout:
            line = raw.decode("utf-8", "ignore").strip()
            if not line.startswith("out_time_ms="):
                continue
            try:
                us = int(line.split("=", 1)[1])
            except ValueError:
                continue
            if us < 0 or not self.duration:
                continue
            # Hold back 1.0 until the output is safely renamed into place
            self._emit(min(0.999, (us / 1_000_000.0) / float(self.duration)))

    async def _read_stderr(self) -> None:
        assert self._proc is not None and self._proc.stderr is not None
        async for raw in self._proc.stderr:
            line = raw.decode("utf-8", "ignore").rstrip()
            if line:
                self._stderr.append(line)

    def diagnostics(self) -> str:
        return "\n".join(self._stderr)

    async def progress(self) -> AsyncIterator[float]:
        """Fractional completion values; ends when the job finishes, fails or is cancelled."""
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item

    async def wait(self) -> Path:
        if self._proc is None:
            raise ConversionError("transcode not started")
        try:
            rc = await self._proc.wait()
            await asyncio.gather(*self._readers, return_exceptions=True)
            if self._cancelled:
                raise ConversionCancelled(f"Conversion cancelled: {self.source.name}", self.diagnostics(), rc)
            if rc != 0:
                raise ConversionError(
                    f"ffmpeg exited with code {rc} converting {self.source.name}",
                    self.diagnostics(),
                    rc,
                )
            if not self.tmp_path.exists() or self.tmp_path.stat().st_size == 0:
                raise ConversionError(f"ffmpeg produced no output for {self.source.name}", self.diagnostics(), rc)
            if self.destination.exists():
                raise DestinationExistsError(f"Destination already exists: {self.destination}")
            os.replace(self.tmp_path, self.destination)
            self._emit(1.0)
            _log("transcode", f"transcode end src={self.source} dst={self.destination} size={self.destination.stat().st_size}")
            return self.destination
        except ConversionError as e:
            _log("transcode", f"transcode fail src={self.source} err={e} stderr={_trim(e.diagnostics)!r}")
            raise
        finally:
            self._finish()

    async def cancel(self) -> None:
        """Stop the ffmpeg process; the temporary output is removed."""
        self._cancelled = True
        if self._proc is not None:
            await kill_process(self._proc)
            await asyncio.gather(*self._readers, return_exceptions=True)
        self._finish()

    def _finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        try:
            if self.tmp_path.exists():
                self.tmp_path.unlink()
        except OSError:
            pass
        if self._slot is not None:
            self._slot.release()
            self._slot = None
        self._queue.put_nowait(None)

    async def __aenter__(self) -> "TranscodeJob":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self.running:
            self._cancelled = True
            await kill_process(self._proc)  # type: ignore[arg-type]
        for task in self._readers:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._readers, return_exceptions=True)
        self._finish()


async def transcode(source: PathLike, destination: PathLike, *,
                    on_progress: Optional[Callable[[float], None]] = None,
                    duration: Optional[float] = None) -> Path:
    """Run one conversion to completion, forwarding progress to `on_progress`."""
    async with TranscodeJob(source, destination, duration=duration) as job:
        pump: Optional[asyncio.Task] = None
        if on_progress is not None:
            async def _pump() -> None:
                async for frac in job.progress():
                    try:
                        on_progress(frac)
                    except Exception as e:  # noqa: BLE001
                        _log("transcode", f"progress sink error err={e}")
            pump = asyncio.create_task(_pump())
        try:
            return await job.wait()
        finally:
            if pump is not None:
                await pump
