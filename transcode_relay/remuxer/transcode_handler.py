"""
Request orchestration for the transcode, audio-remux and info endpoints.

Flow for a transcode request:

  1. Open a single streaming GET against the source URL.
  2. Full transcodes only: refuse sources above the size limit before any
     engine is started, then buffer and probe the stream head.
  3. Select the strategy and start the engine session, replaying the probed
     head in front of the remaining upstream bytes.
  4. Wait for the first output chunk. Failures up to here become structured
     JSON errors; after it, the response is streamed and failures can only
     cut the connection.

The session (and through it the upstream connection) is released on every
exit path: errors, completion, and client disconnect.
"""

import logging
import uuid
from collections.abc import AsyncIterator

import httpx
from starlette.background import BackgroundTask

from transcode_relay.configs import Settings
from transcode_relay.const import STREAM_RESPONSE_HEADERS
from transcode_relay.errors import ProbeFailed, SourceTooLarge
from transcode_relay.remuxer.policy import check_size, select_strategy, size_in_mb
from transcode_relay.remuxer.probe import probe_media, read_head, replay
from transcode_relay.remuxer.transcoder import FFmpegEngine, TranscodeSession
from transcode_relay.schemas import MediaMetadata, TranscodeMode, TranscodeRequest
from transcode_relay.utils.http_utils import (
    EnhancedStreamingResponse,
    SourceStream,
    create_httpx_client,
    format_bytes,
    redact_url,
)

logger = logging.getLogger(__name__)


def new_request_tag() -> str:
    return uuid.uuid4().hex[:8]


async def open_source(
    url: str,
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
    tag: str = "",
) -> SourceStream:
    """Open the upstream stream, releasing the client if the request fails."""
    client = create_httpx_client(settings, transport)
    source = SourceStream(client, settings.user_agent, show_progress=settings.enable_streaming_progress, tag=tag)
    try:
        await source.open(url)
    except BaseException:
        await source.close()
        raise

    size = source.content_length
    logger.info(f"[{tag}] Upstream stream opened, size: {format_bytes(size) if size is not None else 'unknown'}")
    return source


async def _relay(first_chunk: bytes, output: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    yield first_chunk
    async for chunk in output:
        yield chunk


async def handle_transcode(
    request: TranscodeRequest,
    settings: Settings,
    engine: FFmpegEngine,
    transport: httpx.AsyncBaseTransport | None = None,
) -> EnhancedStreamingResponse:
    """
    Fetch, transcode and stream a remote video as fragmented MP4.

    Args:
        request (TranscodeRequest): Source URL and mode (full transcode or audio remux).
        settings (Settings): Service settings.
        engine (FFmpegEngine): Engine used to start the transcoding session.
        transport (httpx.AsyncBaseTransport | None): Optional upstream transport override.

    Returns:
        EnhancedStreamingResponse: The progressive ``video/mp4`` response.

    Raises:
        UpstreamUnavailable, UpstreamHTTPError: The source could not be fetched.
        SourceTooLarge: Full transcode of a source above the size limit.
        TranscodeFailed: The engine failed before producing any output.
    """
    tag = new_request_tag()
    logger.info(f"[{tag}] {request.mode.value} request for {redact_url(request.source_url)}")

    source = await open_source(request.source_url, settings, transport, tag)
    session: TranscodeSession | None = None
    try:
        content_length = source.content_length
        stream: AsyncIterator[bytes] = source.stream_content()
        metadata: MediaMetadata | None = None

        if request.mode is TranscodeMode.FULL_TRANSCODE:
            reason = check_size(content_length, settings.max_source_size_mb)
            if reason is not None:
                logger.error(f"[{tag}] Source too large for transcoding: {reason}")
                raise SourceTooLarge(size_in_mb(content_length), settings.max_source_size_mb, reason)

            head, rest = await read_head(stream, settings.probe_size)
            try:
                metadata = await probe_media(b"".join(head), content_length, tag)
            except ProbeFailed as e:
                logger.warning(f"[{tag}] Probe failed, video will be re-encoded: {e.message}")
            stream = replay(head, rest)

        strategy = select_strategy(request.mode, content_length, metadata, settings.max_source_size_mb)
        if strategy.rejected:
            raise SourceTooLarge(size_in_mb(content_length), settings.max_source_size_mb, strategy.rejection_reason)
        logger.info(f"[{tag}] Strategy: video={strategy.video_action.value}, audio={strategy.audio_action.value}")

        session = await engine.start(
            strategy,
            stream,
            duration_seconds=metadata.duration_seconds if metadata else None,
            tag=tag,
            on_close=source.close,
        )
        output = session.iter_output()
        first_chunk = await output.__anext__()
    except BaseException:
        if session is not None:
            await session.close()
        else:
            await source.close()
        raise

    return EnhancedStreamingResponse(
        _relay(first_chunk, output),
        headers=dict(STREAM_RESPONSE_HEADERS),
        background=BackgroundTask(session.close),
    )


async def handle_info(
    request: TranscodeRequest,
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> MediaMetadata:
    """
    Probe a remote video without transcoding it.

    Only the stream head (up to ``settings.probe_size`` bytes) is read before the
    upstream connection is released.
    """
    tag = new_request_tag()
    logger.info(f"[{tag}] Info request for {redact_url(request.source_url)}")

    source = await open_source(request.source_url, settings, transport, tag)
    try:
        head, _ = await read_head(source.stream_content(), settings.probe_size)
        metadata = await probe_media(b"".join(head), source.content_length, tag)
    finally:
        await source.close()

    logger.info(f"[{tag}] Mobile compatible: {'yes' if metadata.mobile_compatible else 'no'}")
    return metadata
