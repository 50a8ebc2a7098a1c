import logging
from typing import Annotated, Literal, Optional
from urllib.parse import quote

import httpx
from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from transcode_relay.configs import Settings
from transcode_relay.errors import InvalidUpstreamResponse, UpstreamUnavailable
from transcode_relay.routes.media import get_settings, get_upstream_transport
from transcode_relay.utils.http_utils import create_httpx_client

logger = logging.getLogger(__name__)

torrentio_router = APIRouter()


@torrentio_router.get("/torrentio/{imdb_id}")
async def torrentio_proxy(
    imdb_id: str,
    settings: Annotated[Settings, Depends(get_settings)],
    transport: Annotated[Optional[httpx.AsyncBaseTransport], Depends(get_upstream_transport)],
    content_type: Literal["movie", "series"] = Query("movie", alias="type", description="Content type."),
):
    """
    Proxy the Torrentio stream listing for an IMDb id.

    Some hosting providers are blocked by Torrentio's edge; relaying through this
    service with a browser user agent works around it.
    """
    url = f"{settings.torrentio_base_url.rstrip('/')}/stream/{content_type}/{quote(imdb_id, safe=':')}.json"
    logger.info(f"Torrentio proxy request: {imdb_id} ({content_type})")

    async with create_httpx_client(settings, transport) as client:
        try:
            response = await client.get(
                url,
                headers={"accept": "application/json", "user-agent": settings.torrentio_user_agent},
            )
        except httpx.RequestError as e:
            logger.error(f"Torrentio proxy error: {type(e).__name__}: {e}")
            raise UpstreamUnavailable(f"Failed to fetch from Torrentio: {type(e).__name__}")

    if not response.is_success:
        logger.error(f"Torrentio responded with HTTP {response.status_code}: {response.text[:200]}")
        return JSONResponse(
            {"error": "Torrentio API error", "status": response.status_code},
            status_code=response.status_code,
        )

    try:
        data = response.json()
    except ValueError as e:
        logger.error(f"Torrentio returned a non-JSON body: {e}")
        raise InvalidUpstreamResponse("Torrentio returned a non-JSON body")

    logger.info(f"Torrentio streams found: {len(data.get('streams') or [])}")
    return data
