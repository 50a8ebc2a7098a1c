"""
Codec selection for a transcode request.

Pure decision logic: given the requested mode, the advertised source size and
(optionally) probed metadata, decide whether video is copied or re-encoded and
whether the request is refused outright. Audio is always re-encoded to AAC.
"""

from dataclasses import dataclass
from enum import Enum

from transcode_relay.schemas import MediaMetadata, TranscodeMode


class VideoAction(str, Enum):
    COPY = "copy"
    REENCODE_H264 = "reencode_h264"


class AudioAction(str, Enum):
    REENCODE_AAC = "reencode_aac"


@dataclass(frozen=True)
class TranscodeStrategy:
    video_action: VideoAction
    audio_action: AudioAction = AudioAction.REENCODE_AAC
    rejected: bool = False
    rejection_reason: str | None = None

    @property
    def copies_video(self) -> bool:
        return self.video_action is VideoAction.COPY


def size_in_mb(content_length: int) -> int:
    return round(content_length / 1024 / 1024)


def check_size(content_length: int | None, max_source_size_mb: int) -> str | None:
    """
    Return a rejection reason when the source is known to exceed the limit.

    An unknown content length or a limit of 0 never rejects.
    """
    if content_length is None or max_source_size_mb <= 0:
        return None
    size_mb = size_in_mb(content_length)
    if size_mb <= max_source_size_mb:
        return None
    return (
        f"Source is {size_mb} MB, above the {max_source_size_mb} MB transcoding limit. "
        "Please try a lower-bitrate release (WEB-DL recommended) or play it directly without transcoding."
    )


def select_strategy(
    mode: TranscodeMode,
    content_length: int | None = None,
    metadata: MediaMetadata | None = None,
    max_source_size_mb: int = 30000,
) -> TranscodeStrategy:
    """
    Decide how a source is transcoded.

    Args:
        mode: The requested transcode mode.
        content_length: Advertised size of the source in bytes, if known.
        metadata: Probed metadata. Without it, full transcodes re-encode video.
        max_source_size_mb: Size gate for full transcodes (0 disables it).

    Returns:
        TranscodeStrategy: The strategy to hand to the transcoder.
    """
    if mode is TranscodeMode.AUDIO_REMUX_ONLY:
        # Fast path: no size gate here.
        return TranscodeStrategy(video_action=VideoAction.COPY)

    if mode is not TranscodeMode.FULL_TRANSCODE:
        raise ValueError(f"{mode.value} does not transcode")

    reason = check_size(content_length, max_source_size_mb)
    if reason is not None:
        return TranscodeStrategy(video_action=VideoAction.REENCODE_H264, rejected=True, rejection_reason=reason)

    if metadata is not None and metadata.mobile_compatible:
        return TranscodeStrategy(video_action=VideoAction.COPY)
    return TranscodeStrategy(video_action=VideoAction.REENCODE_H264)
