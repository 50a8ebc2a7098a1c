from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel


class TranscodeMode(str, Enum):
    FULL_TRANSCODE = "full_transcode"
    AUDIO_REMUX_ONLY = "audio_remux_only"
    INFO_ONLY = "info_only"


class TranscodeRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    source_url: str = Field(..., description="The URL of the remote video file. Untrusted.")
    mode: TranscodeMode = Field(..., description="What to do with the source.")


class MediaMetadata(BaseModel):
    """Container and codec details extracted from the head of a source stream."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    container_format: str = Field("", description="Demuxer name(s), e.g. 'mov,mp4,m4a,3gp,3g2,mj2'.")
    duration_seconds: Optional[float] = None
    total_bytes: Optional[int] = None
    bitrate: Optional[int] = None
    video_codec: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    frame_rate: Optional[float] = None
    audio_codec: Optional[str] = None
    sample_rate: Optional[int] = None
    channel_count: Optional[int] = None

    @computed_field
    @property
    def mobile_compatible(self) -> bool:
        return self.video_codec == "h264" and "mp4" in (self.container_format or "")


class HealthStatus(BaseModel):
    status: str = "ok"
    service: str
    version: str
    ffmpeg: bool = Field(..., description="Whether the transcoding engine executable was found.")
