"""Supervises external ffmpeg processes that remux a playlist into one file.

Each call to ``ProcessRunner.start`` owns exactly one process. The caller gets
a ``RunHandle`` back immediately and receives events through an async
callback: zero or more ``Progress`` events with non-decreasing percent,
followed by exactly one terminal event (``Completed``, ``Failed`` or
``Cancelled``). The runner never deletes files; partial output is left for
the artifact manager.
"""

import asyncio
import math
import re
import shutil
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, List, Optional, Sequence, Union

from hlsconvert.config import Settings
from hlsconvert.core.exceptions import ConversionTimeout, ToolUnavailable
from hlsconvert.core.logging import get_logger
from hlsconvert.jobs.models import validate_source_url

logger = get_logger(__name__)

_DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
_TIME_RE = re.compile(r"time=\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
_LINE_SPLIT_RE = re.compile(rb"[\r\n]")

STDERR_TAIL_LINES = 20


@dataclass(frozen=True)
class Progress:
    percent: float


@dataclass(frozen=True)
class Completed:
    pass


@dataclass(frozen=True)
class Failed:
    message: str


@dataclass(frozen=True)
class Cancelled:
    pass


RunEvent = Union[Progress, Completed, Failed, Cancelled]
EventCallback = Callable[[RunEvent], Awaitable[None]]


def is_terminal_event(event: RunEvent) -> bool:
    return isinstance(event, (Completed, Failed, Cancelled))


@dataclass
class RunOptions:
    """Per-run overrides."""
    timeout_seconds: Optional[float] = None
    extra_output_args: Sequence[str] = ()


def _seconds(match) -> float:
    hours, minutes, seconds = match.groups()
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


class ProgressParser:
    """Turns ffmpeg stderr lines into whole-percent progress values.

    The first ``Duration:`` header gives the total length; each status line's
    ``time=`` field gives the position. Returns a value from ``feed`` only
    when the percentage has increased, so callers see a non-decreasing
    sequence. Live playlists report no duration and yield nothing.
    """

    def __init__(self):
        self.duration: Optional[float] = None
        self.last_percent: Optional[float] = None

    def feed(self, line: str) -> Optional[float]:
        if self.duration is None:
            match = _DURATION_RE.search(line)
            if match:
                duration = _seconds(match)
                if duration > 0:
                    self.duration = duration
                return None
        match = _TIME_RE.search(line)
        if match is None or not self.duration:
            return None
        percent = float(math.floor(min(100.0, _seconds(match) / self.duration * 100)))
        if self.last_percent is not None and percent <= self.last_percent:
            return None
        self.last_percent = percent
        return percent

    @staticmethod
    def is_status_line(line: str) -> bool:
        return _TIME_RE.search(line) is not None


class RunHandle:
    """Binding between one conversion request and its process."""

    def __init__(self, source_url: str, output_path: str, on_event: EventCallback):
        self.source_url = source_url
        self.output_path = output_path
        self.on_event = on_event
        self.process: Optional[asyncio.subprocess.Process] = None
        self.task: Optional[asyncio.Task] = None
        self.cancel_requested = False
        self.finished = False
        self.outcome: Optional[RunEvent] = None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None


def resolve_ffmpeg_path(configured: Optional[str] = None) -> str:
    """Resolve the ffmpeg binary.

    Priority: configured path (FFMPEG_PATH env) -> PATH lookup -> bare name.
    A bare name that does not exist surfaces later as "tool unavailable".
    """
    if configured:
        return configured
    return shutil.which("ffmpeg") or "ffmpeg"


class ProcessRunner:
    """Launches and supervises ffmpeg stream-copy conversions."""

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        timeout_seconds: float = 432000,
        grace_seconds: float = 10,
        protocol_whitelist: str = "file,http,https,tcp,tls,crypto",
        audio_bitstream_filter: str = "aac_adtstoasc",
        stderr_excerpt_chars: int = 500,
    ):
        self.ffmpeg_path = resolve_ffmpeg_path(ffmpeg_path)
        self.timeout_seconds = timeout_seconds
        self.grace_seconds = grace_seconds
        self.protocol_whitelist = protocol_whitelist
        self.audio_bitstream_filter = audio_bitstream_filter
        self.stderr_excerpt_chars = stderr_excerpt_chars

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProcessRunner":
        return cls(
            ffmpeg_path=settings.ffmpeg_path,
            timeout_seconds=settings.process_timeout_seconds,
            grace_seconds=settings.termination_grace_seconds,
            protocol_whitelist=settings.protocol_whitelist,
            audio_bitstream_filter=settings.audio_bitstream_filter,
            stderr_excerpt_chars=settings.stderr_excerpt_chars,
        )

    def tool_available(self) -> bool:
        return shutil.which(self.ffmpeg_path) is not None

    def build_command(
        self, source_url: str, output_path: str, options: Optional[RunOptions] = None
    ) -> List[str]:
        cmd = [
            self.ffmpeg_path,
            "-hide_banner",
            "-nostdin",
            "-y",  # Overwrite output file
            "-protocol_whitelist", self.protocol_whitelist,
            "-i", source_url,
            "-bsf:a", self.audio_bitstream_filter,
            "-c", "copy",  # Remux only, no re-encoding
        ]
        if options and options.extra_output_args:
            cmd.extend(options.extra_output_args)
        cmd.append(str(output_path))
        return cmd

    def start(
        self,
        source_url: str,
        output_path: str,
        on_event: EventCallback,
        options: Optional[RunOptions] = None,
    ) -> RunHandle:
        """Schedule a conversion and return without waiting for the process.

        Raises InvalidRequest if ``source_url`` is not an absolute http(s) URL.
        Must be called from a running event loop.
        """
        source_url = validate_source_url(source_url)
        options = options or RunOptions()
        cmd = self.build_command(source_url, output_path, options)
        timeout = (
            options.timeout_seconds
            if options.timeout_seconds is not None
            else self.timeout_seconds
        )
        handle = RunHandle(source_url, str(output_path), on_event)
        handle.task = asyncio.get_running_loop().create_task(
            self._supervise(handle, cmd, timeout)
        )
        return handle

    def request_cancel(self, handle: RunHandle) -> None:
        """Mark the run cancelled and send SIGTERM without waiting.

        No further progress is reported; the terminal ``Cancelled`` event
        follows once the process has exited.
        """
        if handle.finished or handle.cancel_requested:
            return
        handle.cancel_requested = True
        process = handle.process
        if process is not None and process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass

    async def cancel(self, handle: RunHandle) -> None:
        """Terminate the process and wait until ``Cancelled`` has been delivered.

        Escalates to SIGKILL after the grace period. Once the handle has
        reported its terminal event this only waits for the event handler to
        return.
        """
        if not handle.finished:
            self.request_cancel(handle)
            if handle.process is not None:
                await self._terminate(handle.process)
        task = handle.task
        if task is not None and not task.done() and task is not asyncio.current_task():
            await asyncio.shield(task)

    async def _supervise(self, handle: RunHandle, cmd: List[str], timeout: Optional[float]) -> None:
        if handle.cancel_requested:
            await self._emit(handle, Cancelled())
            return

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            if handle.cancel_requested:
                await self._emit(handle, Cancelled())
                return
            logger.error("Conversion tool unavailable", path=cmd[0], error=str(exc))
            await self._emit(handle, Failed(ToolUnavailable.MESSAGE))
            return

        handle.process = process
        logger.info(
            "Conversion process started",
            pid=process.pid,
            source_url=handle.source_url,
            output_path=handle.output_path,
        )
        if handle.cancel_requested:
            await self._terminate(process)

        tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        timed_out = False
        try:
            await asyncio.wait_for(self._watch(handle, process, tail), timeout)
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning("Conversion timed out", pid=process.pid, timeout=timeout)
            await self._terminate(process)
        except asyncio.CancelledError:
            await self._terminate(process)
            raise

        returncode = process.returncode
        if handle.cancel_requested:
            event: RunEvent = Cancelled()
        elif timed_out:
            event = Failed(ConversionTimeout.MESSAGE)
        elif returncode == 0:
            event = Completed()
        else:
            event = Failed(self._excerpt(tail, returncode))
        logger.info(
            "Conversion process exited",
            pid=process.pid,
            returncode=returncode,
            outcome=type(event).__name__,
        )
        await self._emit(handle, event)

    async def _watch(self, handle: RunHandle, process, tail: Deque[str]) -> None:
        parser = ProgressParser()
        buffer = b""
        while True:
            chunk = await process.stderr.read(4096)
            if not chunk:
                break
            *lines, buffer = _LINE_SPLIT_RE.split(buffer + chunk)
            for raw in lines:
                await self._consume_line(handle, parser, tail, raw)
        if buffer:
            await self._consume_line(handle, parser, tail, buffer)
        await process.wait()

    async def _consume_line(self, handle: RunHandle, parser: ProgressParser, tail, raw: bytes) -> None:
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            return
        percent = parser.feed(line)
        if percent is not None:
            if not handle.cancel_requested:
                await self._emit(handle, Progress(percent))
        elif not parser.is_status_line(line):
            tail.append(line)

    async def _terminate(self, process) -> None:
        """SIGTERM, then SIGKILL after the grace period."""
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), self.grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("Process ignored SIGTERM, killing", pid=process.pid)
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    def _excerpt(self, tail: Deque[str], returncode: Optional[int]) -> str:
        text = "\n".join(tail).strip()
        if not text:
            return f"ffmpeg exited with code {returncode}"
        if len(text) > self.stderr_excerpt_chars:
            text = text[-self.stderr_excerpt_chars:]
        return text

    async def _emit(self, handle: RunHandle, event: RunEvent) -> None:
        if handle.finished:
            return
        if is_terminal_event(event):
            handle.finished = True
            handle.outcome = event
        try:
            await handle.on_event(event)
        except Exception:
            logger.exception(
                "Event handler raised", event=type(event).__name__, source_url=handle.source_url
            )
