"""
Metadata probing on the head of a source stream.

The upstream body is a one-shot stream, so the prober buffers a bounded head
(``read_head``), runs PyAV over those bytes in a worker thread, and hands the
head back to the caller. ``replay`` stitches the head in front of the rest of
the stream so the same upstream fetch can feed the transcoder afterwards.
"""

import asyncio
import io
import logging
import math
from collections import deque
from collections.abc import AsyncIterator
from fractions import Fraction

import av

from transcode_relay.errors import ProbeFailed
from transcode_relay.schemas import MediaMetadata

logger = logging.getLogger(__name__)


async def read_head(source: AsyncIterator[bytes], limit: int) -> tuple[list[bytes], AsyncIterator[bytes]]:
    """
    Pull chunks from ``source`` until at least ``limit`` bytes are buffered or it ends.

    Returns:
        The buffered head chunks and the iterator positioned right after them.
    """
    iterator = source.__aiter__()
    head: list[bytes] = []
    size = 0
    while size < limit:
        try:
            chunk = await iterator.__anext__()
        except StopAsyncIteration:
            break
        head.append(chunk)
        size += len(chunk)
    return head, iterator


async def replay(head: list[bytes], rest: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    """Yield the buffered head chunks, then everything left in ``rest``."""
    pending = deque(head)
    head.clear()
    while pending:
        yield pending.popleft()
    async for chunk in rest:
        yield chunk


def parse_frame_rate(value) -> float | None:
    """
    Convert a rational frame rate ("30000/1001", Fraction, or plain number) to fps.

    Only a numerator/denominator split followed by numeric conversion is done;
    the value is never evaluated as an expression.
    """
    if value is None:
        return None

    if isinstance(value, Fraction):
        numerator, denominator = float(value.numerator), float(value.denominator)
    elif isinstance(value, (int, float)):
        numerator, denominator = float(value), 1.0
    else:
        numerator_text, separator, denominator_text = str(value).strip().partition("/")
        try:
            numerator = float(numerator_text)
            denominator = float(denominator_text) if separator else 1.0
        except ValueError:
            return None

    if not (math.isfinite(numerator) and math.isfinite(denominator)) or denominator == 0:
        return None
    rate = numerator / denominator
    if rate <= 0:
        return None
    return round(rate, 3)


def _probe_sync(head: bytes, total_bytes: int | None) -> MediaMetadata:
    try:
        container = av.open(io.BytesIO(head), mode="r", options={"probesize": str(max(len(head), 32))})
    except Exception as e:
        raise ProbeFailed(f"Could not parse container: {e}")

    try:
        video = next(iter(container.streams.video), None)
        audio = next(iter(container.streams.audio), None)
        if video is None and audio is None:
            raise ProbeFailed("No audio or video stream found")

        duration = container.duration / av.time_base if container.duration else None
        if total_bytes and duration:
            bitrate = int(total_bytes * 8 / duration)
        else:
            bitrate = container.bit_rate or None

        fields = {
            "container_format": container.format.name,
            "duration_seconds": round(duration, 3) if duration else None,
            "total_bytes": total_bytes,
            "bitrate": bitrate,
        }

        if video is not None:
            codec_ctx = video.codec_context
            fields.update(
                video_codec=codec_ctx.name,
                width=codec_ctx.width or None,
                height=codec_ctx.height or None,
                frame_rate=parse_frame_rate(video.average_rate or video.guessed_rate),
            )

        if audio is not None:
            codec_ctx = audio.codec_context
            fields.update(
                audio_codec=codec_ctx.name,
                sample_rate=codec_ctx.sample_rate or None,
                channel_count=codec_ctx.channels or None,
            )

        return MediaMetadata(**fields)
    finally:
        container.close()


async def probe_media(head: bytes, total_bytes: int | None = None, tag: str = "") -> MediaMetadata:
    """
    Extract container/codec metadata from the head of a media file.

    Args:
        head: Leading bytes of the source.
        total_bytes: Full source size when advertised upstream.
        tag: Request label used in log lines.

    Raises:
        ProbeFailed: When the bytes cannot be parsed as a media container.
    """
    if not head:
        raise ProbeFailed("Source stream is empty")

    loop = asyncio.get_running_loop()
    metadata = await loop.run_in_executor(None, _probe_sync, head, total_bytes)
    logger.info(
        f"[{tag}] Probed {metadata.container_format}: "
        f"video={metadata.video_codec} {metadata.width}x{metadata.height} @{metadata.frame_rate}fps, "
        f"audio={metadata.audio_codec} {metadata.sample_rate}Hz {metadata.channel_count}ch, "
        f"duration={metadata.duration_seconds}s"
    )
    return metadata
