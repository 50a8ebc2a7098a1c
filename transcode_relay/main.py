import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from transcode_relay.configs import Settings, settings
from transcode_relay.const import SERVICE_VERSION
from transcode_relay.errors import RelayError
from transcode_relay.remuxer.transcoder import FFmpegEngine
from transcode_relay.routes import media_router, torrentio_router
from transcode_relay.schemas import HealthStatus

logger = logging.getLogger(__name__)


def handle_exceptions(request: Request, exception: Exception) -> JSONResponse:
    """
    Render an exception raised before streaming started as a JSON error response.

    Args:
        request (Request): The request being handled.
        exception (Exception): The exception that was raised.

    Returns:
        JSONResponse: ``{"error": ..., "message": ...}`` with the matching status code.
    """
    if isinstance(exception, RelayError):
        if exception.status_code >= 500:
            logger.error(f"{request.url.path} failed: {exception.error}: {exception.message}")
        else:
            logger.info(f"{request.url.path} rejected: {exception.message}")
        return JSONResponse(exception.to_dict(), status_code=exception.status_code)

    logger.exception(f"Internal server error while handling {request.url.path}: {exception}")
    return JSONResponse({"error": "Internal server error", "message": str(exception)}, status_code=500)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app_settings: Settings = app.state.settings
    logger.info("=" * 40)
    logger.info(f"{app_settings.service_name} v{SERVICE_VERSION}")
    logger.info(f"Listening on port {app_settings.port}")
    logger.info("Endpoints: /health, /transcode?url=, /audio-remux?url=, /info?url=, /torrentio/{imdb_id}")
    if not app.state.engine.is_available():
        logger.warning(f"Transcoding engine {app_settings.ffmpeg_path!r} not found on PATH")
    logger.info("=" * 40)
    yield
    logger.info("Shutting down")


def create_app(
    app_settings: Settings | None = None,
    *,
    engine: FFmpegEngine | None = None,
    upstream_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        app_settings (Settings | None): Service settings. Defaults to the environment-derived settings.
        engine (FFmpegEngine | None): Engine used for transcoding sessions.
        upstream_transport (httpx.AsyncBaseTransport | None): Transport override for upstream requests.

    Returns:
        FastAPI: The configured application.
    """
    app_settings = app_settings or settings
    logging.basicConfig(level=app_settings.log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    app = FastAPI(title=app_settings.service_name, version=SERVICE_VERSION, lifespan=lifespan)
    app.state.settings = app_settings
    app.state.engine = engine or FFmpegEngine(app_settings)
    app.state.upstream_transport = upstream_transport

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "HEAD", "OPTIONS"],
        allow_headers=["*"],
    )
    app.add_exception_handler(RelayError, handle_exceptions)
    app.add_exception_handler(Exception, handle_exceptions)

    @app.get("/health", response_model=HealthStatus)
    async def health_check(request: Request):
        return HealthStatus(
            service=app_settings.service_name,
            version=SERVICE_VERSION,
            ffmpeg=request.app.state.engine.is_available(),
        )

    app.include_router(media_router, tags=["media"])
    app.include_router(torrentio_router, tags=["torrentio"])
    return app


app = create_app()


def run():
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
