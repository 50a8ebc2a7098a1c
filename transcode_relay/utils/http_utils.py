import logging
import typing
from urllib import parse

import anyio
import h11
import httpx
from fastapi import Response
from starlette.background import BackgroundTask
from starlette.types import Receive, Send, Scope
from tqdm.asyncio import tqdm as tqdm_asyncio

from transcode_relay.configs import Settings
from transcode_relay.errors import UpstreamHTTPError, UpstreamUnavailable

logger = logging.getLogger(__name__)


def create_httpx_client(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
    follow_redirects: bool = True,
    **kwargs,
) -> httpx.AsyncClient:
    """
    Create an HTTPX AsyncClient for upstream requests.

    Args:
        settings (Settings): Service settings (timeouts, proxy routes, SSL verification).
        transport (httpx.AsyncBaseTransport | None): Explicit transport. When given, the
            configured proxy mounts are not used.
        follow_redirects (bool): Whether to follow 3xx redirects automatically.
        **kwargs: Additional AsyncClient keyword arguments.

    Returns:
        httpx.AsyncClient: Configured client.
    """
    if settings.upstream_timeout > 0:
        kwargs.setdefault("timeout", httpx.Timeout(settings.upstream_timeout))
    else:
        kwargs.setdefault("timeout", None)

    if transport is not None:
        return httpx.AsyncClient(transport=transport, follow_redirects=follow_redirects, **kwargs)

    transport_config = settings.transport_config
    return httpx.AsyncClient(
        mounts=transport_config.get_mounts(),
        follow_redirects=follow_redirects,
        verify=not transport_config.disable_ssl_verification_globally,
        **kwargs,
    )


def redact_url(url: str, max_path_length: int = 40) -> str:
    """
    Reduce an untrusted URL to something safe to log.

    Credentials, query string and fragment are dropped and long paths are truncated,
    since signed download links usually carry their tokens in those parts.
    """
    try:
        parsed = parse.urlsplit(url)
        host = parsed.hostname or ""
        if parsed.port:
            host = f"{host}:{parsed.port}"
    except ValueError:
        return "<invalid url>"

    path = parsed.path
    if len(path) > max_path_length:
        path = path[:max_path_length] + "..."
    return f"{parsed.scheme}://{host}{path}"


def format_bytes(size) -> str:
    power = 2**10
    n = 0
    units = {0: "B", 1: "KB", 2: "MB", 3: "GB", 4: "TB"}
    while size > power and n < 4:
        size /= power
        n += 1
    return f"{size:.2f} {units[n]}"


class SourceStream:
    """
    A single streaming GET against the upstream media file.

    The stream owns its HTTP client and response; ``close()`` must be awaited on
    every exit path. Nothing here retries: one upstream fetch per request.
    """

    def __init__(self, client: httpx.AsyncClient, user_agent: str, show_progress: bool = False, tag: str = ""):
        """
        Args:
            client (httpx.AsyncClient): The HTTP client to use for streaming. Closed with the stream.
            user_agent (str): Identifying user agent sent upstream.
            show_progress (bool): Render a tqdm progress bar while streaming.
            tag (str): Request label used in log lines.
        """
        self.client = client
        self.user_agent = user_agent
        self.show_progress = show_progress
        self.tag = tag
        self.response: httpx.Response | None = None
        self.progress_bar = None
        self.bytes_transferred = 0
        self.closed = False

    async def open(self, url: str) -> None:
        """
        Send the streaming request and validate the response status.

        Raises:
            UpstreamUnavailable: On connection, DNS, TLS or timeout errors.
            UpstreamHTTPError: On a non-2xx response.
        """
        request = self.client.build_request("GET", url, headers={"user-agent": self.user_agent})
        try:
            self.response = await self.client.send(request, stream=True, follow_redirects=True)
        except httpx.TimeoutException:
            logger.warning(f"[{self.tag}] Timeout while connecting to upstream")
            raise UpstreamUnavailable("Timeout while connecting to upstream")
        except httpx.RequestError as e:
            logger.error(f"[{self.tag}] Error connecting to upstream: {type(e).__name__}: {e}")
            raise UpstreamUnavailable(f"Error connecting to upstream: {type(e).__name__}")

        if not self.response.is_success:
            status = self.response.status_code
            logger.error(f"[{self.tag}] Upstream responded with HTTP {status}")
            await self.response.aclose()
            raise UpstreamHTTPError(status)

    @property
    def content_length(self) -> int | None:
        """Advertised size of the upstream body, or None when unknown."""
        if self.response is None:
            return None
        value = self.response.headers.get("content-length")
        try:
            length = int(value) if value is not None else None
        except ValueError:
            return None
        if length is None or length < 0:
            return None
        return length

    async def stream_content(self) -> typing.AsyncGenerator[bytes, None]:
        """
        Stream response content as an async byte generator.
        """
        if not self.response:
            raise RuntimeError("No response available for streaming")

        try:
            if self.show_progress:
                with tqdm_asyncio(
                    total=self.content_length,
                    unit="B",
                    unit_scale=True,
                    unit_divisor=1024,
                    desc=f"Upstream {self.tag}",
                    ncols=100,
                    mininterval=1,
                ) as self.progress_bar:
                    async for chunk in self.response.aiter_bytes():
                        yield chunk
                        self.bytes_transferred += len(chunk)
                        self.progress_bar.update(len(chunk))
            else:
                async for chunk in self.response.aiter_bytes():
                    yield chunk
                    self.bytes_transferred += len(chunk)
        except httpx.TimeoutException:
            logger.warning(f"[{self.tag}] Timeout while streaming upstream")
            raise UpstreamUnavailable("Timeout while streaming upstream")
        except httpx.HTTPError as e:
            logger.error(f"[{self.tag}] Upstream stream error after {format_bytes(self.bytes_transferred)}: {e}")
            raise UpstreamUnavailable(f"Upstream stream error: {type(e).__name__}")

    async def close(self) -> None:
        """
        Close HTTP response and client resources. Safe to call more than once.
        """
        if self.closed:
            return
        self.closed = True
        if self.response:
            await self.response.aclose()
        if self.progress_bar:
            self.progress_bar.close()
        await self.client.aclose()


class EnhancedStreamingResponse(Response):
    """
    Progressive response that relays transcoder output as it is produced.

    Headers go out once, ahead of the first chunk, and never carry a content
    length. A failure after that point cannot be reported in-band, so the body is
    left unterminated and the server drops the connection. A client disconnect
    cancels the relay. ``background`` runs on every exit path.
    """

    def __init__(
        self,
        content: typing.AsyncIterable[bytes],
        status_code: int = 200,
        headers: typing.Optional[typing.Mapping[str, str]] = None,
        background: typing.Optional[BackgroundTask] = None,
    ) -> None:
        self.body_iterator = content
        self.status_code = status_code
        self.background = background
        self.init_headers(headers)
        self.bytes_sent = 0
        self.completed = False
        self.client_disconnected = False

    async def watch_disconnect(self, receive: Receive, cancel_scope: anyio.CancelScope) -> None:
        """Cancel the relay as soon as the client goes away."""
        try:
            while True:
                message = await receive()
                if message["type"] == "http.disconnect":
                    break
        except Exception as e:
            logger.warning(f"Stopped watching for client disconnect: {e}")
            return

        logger.info(f"Client disconnected after {format_bytes(self.bytes_sent)}")
        self.client_disconnected = True
        cancel_scope.cancel()

    async def relay_body(self, send: Send, cancel_scope: anyio.CancelScope) -> None:
        """Send the headers, then every chunk in order."""
        await send(
            {
                "type": "http.response.start",
                "status": self.status_code,
                "headers": [(name, value) for name, value in self.raw_headers if name != b"content-length"],
            }
        )
        try:
            async for chunk in self.body_iterator:
                await send({"type": "http.response.body", "body": chunk, "more_body": True})
                self.bytes_sent += len(chunk)
            await send({"type": "http.response.body", "body": b"", "more_body": False})
            self.completed = True
        except (ConnectionResetError, anyio.BrokenResourceError):
            logger.info(f"Client connection lost after {format_bytes(self.bytes_sent)}")
            self.client_disconnected = True
        except (httpx.RemoteProtocolError, h11.LocalProtocolError) as e:
            logger.warning(f"Protocol error after {format_bytes(self.bytes_sent)} streamed: {e}")
        except Exception as e:
            # Headers are out; the only signal left is an unterminated body.
            logger.error(f"Stream terminated after {format_bytes(self.bytes_sent)}: {type(e).__name__}: {e}")
        finally:
            cancel_scope.cancel()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            async with anyio.create_task_group() as task_group:
                task_group.start_soon(self.watch_disconnect, receive, task_group.cancel_scope)
                await self.relay_body(send, task_group.cancel_scope)
        finally:
            if self.background is not None:
                with anyio.CancelScope(shield=True):
                    await self.background()
