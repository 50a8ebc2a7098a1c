from typing import Annotated, Optional

import httpx
from fastapi import APIRouter, Depends, Query, Request

from transcode_relay.configs import Settings
from transcode_relay.errors import MissingParameter
from transcode_relay.remuxer.transcode_handler import handle_info, handle_transcode
from transcode_relay.remuxer.transcoder import FFmpegEngine
from transcode_relay.schemas import MediaMetadata, TranscodeMode, TranscodeRequest


media_router = APIRouter()


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_engine(request: Request) -> FFmpegEngine:
    return request.app.state.engine


def get_upstream_transport(request: Request) -> Optional[httpx.AsyncBaseTransport]:
    return request.app.state.upstream_transport


def build_request(url: str | None, mode: TranscodeMode) -> TranscodeRequest:
    """Validate the ``url`` query parameter before any upstream work happens."""
    if url is None or not url.strip():
        raise MissingParameter("url")
    return TranscodeRequest(source_url=url.strip(), mode=mode)


@media_router.get("/transcode")
async def transcode_endpoint(
    settings: Annotated[Settings, Depends(get_settings)],
    engine: Annotated[FFmpegEngine, Depends(get_engine)],
    transport: Annotated[Optional[httpx.AsyncBaseTransport], Depends(get_upstream_transport)],
    url: str | None = Query(None, description="The URL of the video to transcode."),
):
    """
    Transcode a remote video to browser-compatible fragmented MP4.

    Video is copied when the source is already H.264 in an MP4 container and
    re-encoded to H.264 otherwise; audio is always re-encoded to AAC.

    Args:
        url (str): The URL of the video to transcode.

    Returns:
        Response: A chunked ``video/mp4`` stream.
    """
    request = build_request(url, TranscodeMode.FULL_TRANSCODE)
    return await handle_transcode(request, settings, engine, transport)


@media_router.get("/audio-remux")
async def audio_remux_endpoint(
    settings: Annotated[Settings, Depends(get_settings)],
    engine: Annotated[FFmpegEngine, Depends(get_engine)],
    transport: Annotated[Optional[httpx.AsyncBaseTransport], Depends(get_upstream_transport)],
    url: str | None = Query(None, description="The URL of the video to remux."),
):
    """
    Keep the video stream as-is and only re-encode audio to AAC.

    Much faster than a full transcode. No size limit applies to this endpoint.
    """
    request = build_request(url, TranscodeMode.AUDIO_REMUX_ONLY)
    return await handle_transcode(request, settings, engine, transport)


@media_router.get("/info", response_model=MediaMetadata)
async def info_endpoint(
    settings: Annotated[Settings, Depends(get_settings)],
    transport: Annotated[Optional[httpx.AsyncBaseTransport], Depends(get_upstream_transport)],
    url: str | None = Query(None, description="The URL of the video to inspect."),
):
    """
    Return container and codec metadata for a remote video without transcoding it.
    """
    request = build_request(url, TranscodeMode.INFO_ONLY)
    return await handle_info(request, settings, transport)
