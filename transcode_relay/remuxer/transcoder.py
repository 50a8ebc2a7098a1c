"""
Streaming transcoder driving an external ffmpeg process.

The source byte stream is written to the engine's stdin, fragmented MP4 is read
from its stdout, and ``-progress`` key/value lines arrive on stderr. Each
``TranscodeSession`` is a single attempt with the lifecycle

    starting -> running -> completed | failed

and publishes ``SessionStarted`` / ``SessionProgress`` / ``SessionEnded`` /
``SessionFailed`` events through ``next_event()``. Progress is advisory only.

Back-pressure: stdin writes wait on ``drain()``, stdout is read one chunk at a
time by the consumer, so neither side buffers more than the pipe limits.
"""

import asyncio
import logging
import shutil
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from transcode_relay.configs import Settings
from transcode_relay.const import PROGRESS_KEYS
from transcode_relay.errors import RelayError, TranscodeFailed
from transcode_relay.remuxer.policy import TranscodeStrategy

logger = logging.getLogger(__name__)

_EVENT_QUEUE_SIZE = 64
_STDERR_TAIL_LINES = 20
_EXIT_WAIT_SECONDS = 5.0


class SessionState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class SessionStarted:
    command_line: str


@dataclass(frozen=True)
class SessionProgress:
    percent: float | None
    time_mark: str
    out_time_seconds: float | None


@dataclass(frozen=True)
class SessionEnded:
    bytes_out: int


@dataclass(frozen=True)
class SessionFailed:
    reason: str


SessionEvent = SessionStarted | SessionProgress | SessionEnded | SessionFailed


def build_ffmpeg_args(strategy: TranscodeStrategy, settings: Settings) -> list[str]:
    """
    Build the ffmpeg arguments (without the executable) for a strategy.

    Input is read from stdin and fragmented MP4 is written to stdout.
    """
    args = [
        "-hide_banner",
        "-loglevel", "error",
        "-nostats",
        "-progress", "pipe:2",
        "-i", "pipe:0",
        "-map", "0:v:0?",
        "-map", "0:a:0?",
    ]  # fmt: skip

    if strategy.copies_video:
        args += ["-c:v", "copy"]
    else:
        args += [
            "-c:v", "libx264",
            "-preset", settings.video_preset,
            "-crf", str(settings.video_crf),
            "-maxrate", settings.video_maxrate,
            "-bufsize", settings.video_bufsize,
            "-g", str(settings.keyframe_interval),
            "-keyint_min", str(settings.keyframe_interval),
            "-sc_threshold", "0",
            "-pix_fmt", "yuv420p",
        ]  # fmt: skip

    args += [
        "-c:a", "aac",
        "-b:a", settings.audio_bitrate,
        "-f", "mp4",
        "-movflags", "frag_keyframe+empty_moov+faststart",
        "-avoid_negative_ts", "make_zero",
        "-max_muxing_queue_size", str(settings.max_muxing_queue_size),
        "pipe:1",
    ]  # fmt: skip
    return args


def _parse_out_time(progress: dict[str, str]) -> float | None:
    # out_time_ms is in microseconds as well (long-standing ffmpeg quirk)
    for key in ("out_time_us", "out_time_ms"):
        value = progress.get(key, "")
        if value.lstrip("-").isdigit():
            return max(int(value), 0) / 1_000_000
    return None


class TranscodeSession:
    """
    A live engine invocation for one request.

    Owns the engine process and, through ``on_close``, the upstream source.
    ``close()`` must be awaited on every exit path.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        source: AsyncIterator[bytes],
        *,
        command: list[str],
        duration_seconds: float | None = None,
        chunk_size: int = 64 * 1024,
        deadline_seconds: float | None = None,
        tag: str = "",
        on_close: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self.process = process
        self.command = command
        self.duration_seconds = duration_seconds
        self.chunk_size = chunk_size
        self.deadline_seconds = deadline_seconds
        self.tag = tag
        self.state = SessionState.STARTING
        self.failure_reason: str | None = None
        self.bytes_out = 0
        self._source = source
        self._on_close = on_close
        self._events: asyncio.Queue = asyncio.Queue(maxsize=_EVENT_QUEUE_SIZE)
        self._stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        self._source_error: Exception | None = None
        self._feeder_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._deadline: float | None = None
        self._closed = False

    @property
    def command_line(self) -> str:
        return " ".join(self.command)

    @property
    def is_terminal(self) -> bool:
        return self.state in (SessionState.COMPLETED, SessionState.FAILED)

    def begin(self) -> None:
        """Acknowledge the spawned engine and start pumping its input and diagnostics."""
        if self.state is not SessionState.STARTING:
            raise RuntimeError(f"Session already {self.state.value}")

        loop = asyncio.get_running_loop()
        if self.deadline_seconds:
            self._deadline = loop.time() + self.deadline_seconds
        self._feeder_task = asyncio.create_task(self._feed_input())
        self._stderr_task = asyncio.create_task(self._read_stderr())
        self.state = SessionState.RUNNING
        self._emit(SessionStarted(self.command_line))
        logger.info(f"[{self.tag}] Engine started: {self.command_line[:100]}...")

    async def next_event(self) -> SessionEvent:
        """
        Wait for the next lifecycle event.

        Progress events may be dropped when nobody is listening; start and
        terminal events are always delivered. Nothing follows a terminal event.
        """
        return await self._events.get()

    async def iter_output(self) -> AsyncIterator[bytes]:
        """
        Yield engine output in production order.

        Raises:
            TranscodeFailed: When the engine (or the source feeding it) fails.
                ``pre_stream`` tells whether any output had been yielded.
        """
        stdout = self.process.stdout
        try:
            while True:
                chunk = await self._read_chunk(stdout)
                if not chunk:
                    break
                self.bytes_out += len(chunk)
                yield chunk
            await self._finish()
        finally:
            if not self.is_terminal:
                self.abort("Output stream closed before completion")

    async def _read_chunk(self, stdout: asyncio.StreamReader) -> bytes:
        if self._deadline is None:
            return await stdout.read(self.chunk_size)

        remaining = max(self._deadline - asyncio.get_running_loop().time(), 0)
        try:
            return await asyncio.wait_for(stdout.read(self.chunk_size), timeout=remaining)
        except asyncio.TimeoutError:
            reason = f"Transcoding exceeded the {self.deadline_seconds:.0f}s deadline"
            self._fail(reason)
            self._kill()
            raise TranscodeFailed(reason, pre_stream=self.bytes_out == 0)

    async def _finish(self) -> None:
        returncode = await self.process.wait()
        if self._stderr_task is not None:
            await asyncio.gather(self._stderr_task, return_exceptions=True)

        reason = None
        if self.state is SessionState.FAILED:
            reason = self.failure_reason
        elif self._source_error is not None:
            detail = self._source_error.message if isinstance(self._source_error, RelayError) else self._source_error
            reason = f"Source stream failed: {detail}"
        elif returncode != 0:
            reason = f"Engine exited with code {returncode}"
            if self._stderr_tail:
                reason = f"{reason}: {self._stderr_tail[-1]}"
        elif self.bytes_out == 0:
            reason = "Engine produced no output"

        if reason is not None:
            self._fail(reason)
            raise TranscodeFailed(reason, pre_stream=self.bytes_out == 0)

        self.state = SessionState.COMPLETED
        self._emit(SessionEnded(self.bytes_out))
        logger.info(f"[{self.tag}] Transcoding completed successfully ({self.bytes_out} bytes)")

    async def _feed_input(self) -> None:
        stdin = self.process.stdin
        try:
            async for chunk in self._source:
                stdin.write(chunk)
                await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # The engine stopped reading; its exit status decides the outcome.
            logger.debug(f"[{self.tag}] Engine closed its input")
        except Exception as e:
            self._source_error = e
            logger.error(f"[{self.tag}] Source stream failed while transcoding: {e}")
            self._kill()
        finally:
            if not stdin.is_closing():
                stdin.close()

    async def _read_stderr(self) -> None:
        progress: dict[str, str] = {}
        async for raw_line in self.process.stderr:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            key, separator, value = line.partition("=")
            if separator and key in PROGRESS_KEYS:
                progress[key] = value
                if key == "progress":
                    self._report_progress(progress)
                continue
            self._stderr_tail.append(line)

    def _report_progress(self, progress: dict[str, str]) -> None:
        out_time = _parse_out_time(progress)
        time_mark = progress.get("out_time", "")
        percent = None
        if self.duration_seconds and out_time is not None:
            percent = min(out_time / self.duration_seconds * 100, 100.0)

        self._emit(SessionProgress(percent=percent, time_mark=time_mark, out_time_seconds=out_time))
        if percent is not None:
            logger.info(f"[{self.tag}] Progress: {percent:.1f}% | Time: {time_mark}")
        else:
            logger.debug(f"[{self.tag}] Progress: time {time_mark}")

    def _emit(self, event: SessionEvent) -> None:
        try:
            self._events.put_nowait(event)
        except asyncio.QueueFull:
            if isinstance(event, SessionProgress):
                return
            self._events.get_nowait()
            self._events.put_nowait(event)

    def _fail(self, reason: str) -> None:
        if self.is_terminal:
            return
        self.state = SessionState.FAILED
        self.failure_reason = reason
        self._emit(SessionFailed(reason))
        logger.error(f"[{self.tag}] Engine error: {reason}")
        if self._stderr_tail:
            logger.error(f"[{self.tag}] Engine stderr: {' | '.join(self._stderr_tail)[-500:]}")

    def _kill(self) -> None:
        if self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass

    def abort(self, reason: str = "Session aborted") -> None:
        """
        Stop the session immediately without waiting.

        Used on client disconnect and early teardown; the session ends in ``failed``.
        """
        for task in (self._feeder_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
        self._kill()
        if not self.is_terminal:
            self.state = SessionState.FAILED
            self.failure_reason = reason
            self._emit(SessionFailed(reason))
            logger.info(f"[{self.tag}] Session aborted: {reason}")

    async def close(self) -> None:
        """
        Release the engine process and the upstream source. Safe to call more than once.
        """
        if self._closed:
            return
        self._closed = True

        if not self.is_terminal:
            self.abort("Session closed before completion")
        else:
            for task in (self._feeder_task, self._stderr_task):
                if task is not None and not task.done():
                    task.cancel()
            self._kill()

        try:
            await asyncio.wait_for(self.process.wait(), timeout=_EXIT_WAIT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning(f"[{self.tag}] Engine did not exit within {_EXIT_WAIT_SECONDS:.0f}s")

        tasks = [task for task in (self._feeder_task, self._stderr_task) if task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._on_close is not None:
            await self._on_close()
        logger.debug(f"[{self.tag}] Session closed ({self.state.value}, {self.bytes_out} bytes out)")


class FFmpegEngine:
    """Starts ffmpeg-backed transcoding sessions."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def is_available(self) -> bool:
        return shutil.which(self.settings.ffmpeg_path) is not None

    def build_command(self, strategy: TranscodeStrategy) -> list[str]:
        return [self.settings.ffmpeg_path, *build_ffmpeg_args(strategy, self.settings)]

    async def start(
        self,
        strategy: TranscodeStrategy,
        source: AsyncIterator[bytes],
        *,
        duration_seconds: float | None = None,
        tag: str = "",
        on_close: Callable[[], Awaitable[None]] | None = None,
    ) -> TranscodeSession:
        """
        Spawn the engine for ``strategy`` and start feeding it ``source``.

        Raises:
            TranscodeFailed: If the engine executable cannot be started.
        """
        if strategy.rejected:
            raise ValueError("Refusing to start a rejected strategy")

        command = self.build_command(strategy)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"[{tag}] Could not start transcoding engine {command[0]!r}: {e}")
            raise TranscodeFailed(f"Could not start transcoding engine: {e.strerror or e}")

        session = TranscodeSession(
            process,
            source,
            command=command,
            duration_seconds=duration_seconds,
            chunk_size=self.settings.output_chunk_size,
            deadline_seconds=self.settings.transcode_timeout or None,
            tag=tag,
            on_close=on_close,
        )
        session.begin()
        return session
