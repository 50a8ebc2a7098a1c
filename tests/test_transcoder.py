"""
Tests for the ffmpeg command line and the transcoding session lifecycle.

Sessions run a small Python script in place of ffmpeg (see conftest.py).
"""

import asyncio

import pytest

from transcode_relay.errors import TranscodeFailed, UpstreamUnavailable
from transcode_relay.remuxer.policy import TranscodeStrategy, VideoAction
from transcode_relay.remuxer.transcoder import (
    FFmpegEngine,
    SessionEnded,
    SessionFailed,
    SessionProgress,
    SessionStarted,
    SessionState,
    build_ffmpeg_args,
)

COPY = TranscodeStrategy(video_action=VideoAction.COPY)
REENCODE = TranscodeStrategy(video_action=VideoAction.REENCODE_H264)


def _option(args, name):
    return args[args.index(name) + 1]


async def _chunks(*chunks):
    for chunk in chunks:
        yield chunk


async def _drain_events(session):
    events = []
    while True:
        event = await asyncio.wait_for(session.next_event(), timeout=5)
        events.append(event)
        if isinstance(event, (SessionEnded, SessionFailed)):
            return events


class TestFFmpegArgs:
    def test_copy_video(self, make_settings):
        args = build_ffmpeg_args(COPY, make_settings())

        assert _option(args, "-i") == "pipe:0"
        assert _option(args, "-c:v") == "copy"
        assert "libx264" not in args
        assert args[-1] == "pipe:1"

    def test_reencode_video(self, make_settings):
        args = build_ffmpeg_args(REENCODE, make_settings())

        assert _option(args, "-c:v") == "libx264"
        assert _option(args, "-preset") == "ultrafast"
        assert _option(args, "-crf") == "23"
        assert _option(args, "-maxrate") == "5M"
        assert _option(args, "-bufsize") == "5M"
        assert _option(args, "-g") == "48"
        assert _option(args, "-keyint_min") == "48"
        assert _option(args, "-sc_threshold") == "0"
        assert _option(args, "-pix_fmt") == "yuv420p"

    @pytest.mark.parametrize("strategy", [COPY, REENCODE])
    def test_common_output_options(self, make_settings, strategy):
        args = build_ffmpeg_args(strategy, make_settings())

        assert _option(args, "-c:a") == "aac"
        assert _option(args, "-b:a") == "192k"
        assert _option(args, "-f") == "mp4"
        assert _option(args, "-movflags") == "frag_keyframe+empty_moov+faststart"
        assert _option(args, "-avoid_negative_ts") == "make_zero"
        assert _option(args, "-max_muxing_queue_size") == "1024"
        assert _option(args, "-progress") == "pipe:2"

    def test_settings_are_applied(self, make_settings):
        settings = make_settings(video_crf=28, audio_bitrate="128k", keyframe_interval=60)

        args = build_ffmpeg_args(REENCODE, settings)

        assert _option(args, "-crf") == "28"
        assert _option(args, "-b:a") == "128k"
        assert _option(args, "-g") == "60"

    def test_engine_command_starts_with_executable(self, make_settings):
        engine = FFmpegEngine(make_settings(ffmpeg_path="/opt/ffmpeg/bin/ffmpeg"))

        assert engine.build_command(COPY)[0] == "/opt/ffmpeg/bin/ffmpeg"


class TestTranscodeSession:
    @pytest.mark.asyncio
    async def test_successful_session(self, make_engine):
        engine = make_engine("cat")
        closed = []

        async def on_close():
            closed.append(True)

        session = await engine.start(COPY, _chunks(b"abc", b"def"), duration_seconds=2.0, on_close=on_close)
        assert session.state is SessionState.RUNNING

        output = b"".join([chunk async for chunk in session.iter_output()])
        assert output == b"abcdef"
        assert session.state is SessionState.COMPLETED
        assert session.bytes_out == 6

        events = await _drain_events(session)
        assert isinstance(events[0], SessionStarted)
        assert isinstance(events[-1], SessionEnded)
        assert events[-1].bytes_out == 6
        progress = [event for event in events if isinstance(event, SessionProgress)]
        assert progress
        assert progress[0].out_time_seconds == 1.0
        assert progress[0].percent == 50.0
        assert progress[0].time_mark == "00:00:01.000000"

        await session.close()
        await session.close()
        assert closed == [True]
        assert session.process.returncode == 0

    @pytest.mark.asyncio
    async def test_progress_without_duration_has_no_percent(self, make_engine):
        engine = make_engine("cat")

        session = await engine.start(COPY, _chunks(b"x"))
        async for _ in session.iter_output():
            pass

        events = await _drain_events(session)
        progress = [event for event in events if isinstance(event, SessionProgress)]
        assert progress
        assert all(event.percent is None for event in progress)
        await session.close()

    @pytest.mark.asyncio
    async def test_engine_failure_before_output(self, make_engine):
        engine = make_engine("fail")

        session = await engine.start(COPY, _chunks(b"not a video"))
        with pytest.raises(TranscodeFailed) as exc_info:
            async for _ in session.iter_output():
                pass

        assert exc_info.value.pre_stream
        assert "code 1" in exc_info.value.message
        assert "Invalid data" in exc_info.value.message
        assert session.state is SessionState.FAILED

        events = await _drain_events(session)
        assert isinstance(events[0], SessionStarted)
        assert isinstance(events[-1], SessionFailed)
        await session.close()

    @pytest.mark.asyncio
    async def test_empty_output_is_a_failure(self, make_engine):
        engine = make_engine("cat")

        session = await engine.start(COPY, _chunks())
        with pytest.raises(TranscodeFailed, match="no output"):
            async for _ in session.iter_output():
                pass
        await session.close()

    @pytest.mark.asyncio
    async def test_source_error_fails_session(self, make_engine):
        engine = make_engine("cat")

        async def broken_source():
            yield b"first"
            raise UpstreamUnavailable("Upstream stream error: ReadError")

        session = await engine.start(COPY, broken_source())
        with pytest.raises(TranscodeFailed, match="Source stream failed"):
            async for _ in session.iter_output():
                pass

        assert session.state is SessionState.FAILED
        await session.close()

    @pytest.mark.asyncio
    async def test_deadline_kills_engine(self, make_engine):
        engine = make_engine("stall", transcode_timeout=0.5)

        session = await engine.start(COPY, _chunks(b"data"))
        with pytest.raises(TranscodeFailed, match="deadline") as exc_info:
            async for _ in session.iter_output():
                pass

        assert exc_info.value.pre_stream
        assert session.state is SessionState.FAILED
        await session.close()
        assert session.process.returncode is not None

    @pytest.mark.asyncio
    async def test_abort_on_disconnect_releases_everything(self, make_engine):
        engine = make_engine("endless")
        closed = []

        async def on_close():
            closed.append(True)

        async def endless_source():
            while True:
                yield b"\x00" * 1024
                await asyncio.sleep(0)

        session = await engine.start(COPY, endless_source(), on_close=on_close)
        output = session.iter_output()
        first = await output.__anext__()
        assert first

        # Consumer goes away mid-stream
        await output.aclose()
        assert session.state is SessionState.FAILED

        await asyncio.wait_for(session.close(), timeout=10)
        assert session.process.returncode is not None
        assert closed == [True]

        events = await _drain_events(session)
        assert isinstance(events[-1], SessionFailed)

    @pytest.mark.asyncio
    async def test_rejected_strategy_is_not_started(self, make_engine):
        engine = make_engine("cat")
        rejected = TranscodeStrategy(video_action=VideoAction.REENCODE_H264, rejected=True, rejection_reason="big")

        with pytest.raises(ValueError):
            await engine.start(rejected, _chunks(b"x"))

    @pytest.mark.asyncio
    async def test_missing_executable(self, make_settings):
        engine = FFmpegEngine(make_settings(ffmpeg_path="/nonexistent/ffmpeg"))

        assert not engine.is_available()
        with pytest.raises(TranscodeFailed, match="Could not start"):
            await engine.start(COPY, _chunks(b"x"))
