"""
Live stream outputs.

Each output URL is an independent endpoint with its own ``StreamInfo``
status. Endpoints degrade one at a time; the adapter only gives up when no
endpoint is left ``ACTIVE``.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import aiohttp
from livekit.api import StreamInfo, StreamInfoList, StreamProtocol

from egress_service.errors import ConfigurationError, DeliveryError, FatalDeliveryError
from egress_service.logging_config import get_logger_with_correlation
from egress_service.outputs.base import (
    OutputAdapter,
    OutputContext,
    OutputKind,
    OutputSpec,
    RetryConfig,
    deliver_with_retry,
)
from egress_service.security import redact_url


logger = logging.getLogger(__name__)

PROTOCOL_SCHEMES = {
    StreamProtocol.RTMP: ("rtmp", "rtmps"),
    StreamProtocol.SRT: ("srt",),
}
DEFAULT_STREAM_SCHEMES = ("rtmp", "rtmps", "srt")
WEBSOCKET_SCHEMES = ("ws", "wss")

# Handshake statuses that retrying cannot fix
FATAL_HANDSHAKE_STATUSES = {401, 403, 404}


def allowed_schemes(spec: OutputSpec) -> Tuple[str, ...]:
    """URL schemes an output accepts."""
    if spec.kind == OutputKind.WEBSOCKET:
        return WEBSOCKET_SCHEMES
    return PROTOCOL_SCHEMES.get(spec.config.protocol, DEFAULT_STREAM_SCHEMES)


def url_scheme(url: str) -> str:
    try:
        return urlsplit(url).scheme.lower()
    except ValueError:
        return ""


def stream_urls(spec: OutputSpec) -> List[str]:
    if spec.kind == OutputKind.WEBSOCKET:
        return [spec.config]
    return list(spec.config.urls)


class EndpointWriter(ABC):
    """An open connection to one stream endpoint."""

    @abstractmethod
    async def send(self, data: bytes) -> None:
        """
        Send one chunk.

        Raises:
            DeliveryError: On transient failure (the connection is reopened)
            FatalDeliveryError: When the endpoint refuses the stream
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the connection."""


class EndpointConnector(ABC):
    """Opens connections for one family of URL schemes."""

    @abstractmethod
    async def connect(self, url: str) -> EndpointWriter:
        """
        Connect to ``url``.

        Raises:
            DeliveryError: On transient failure
            FatalDeliveryError: On auth failures and rejected stream keys
        """

    async def close(self) -> None:
        """Release shared resources."""


class WebSocketWriter(EndpointWriter):
    """Sends media as binary websocket frames."""

    def __init__(self, ws: aiohttp.ClientWebSocketResponse):
        self.ws = ws

    async def send(self, data: bytes) -> None:
        if self.ws.closed:
            raise DeliveryError(f"websocket closed (code {self.ws.close_code})")
        try:
            await self.ws.send_bytes(data)
        except (aiohttp.ClientError, ConnectionError) as e:
            raise DeliveryError(f"websocket send failed: {e}")

    async def close(self) -> None:
        if not self.ws.closed:
            await self.ws.close()


class WebSocketConnector(EndpointConnector):
    """Connector for ``ws://`` and ``wss://`` endpoints built on aiohttp."""

    def __init__(self, connect_timeout: float = 10.0, session: Optional[aiohttp.ClientSession] = None):
        self.connect_timeout = connect_timeout
        self._session = session
        self._owns_session = session is None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def connect(self, url: str) -> EndpointWriter:
        session = await self._ensure_session()
        try:
            ws = await asyncio.wait_for(session.ws_connect(url), timeout=self.connect_timeout)
        except aiohttp.WSServerHandshakeError as e:
            if e.status in FATAL_HANDSHAKE_STATUSES:
                raise FatalDeliveryError(f"websocket endpoint rejected connection: HTTP {e.status}")
            raise DeliveryError(f"websocket handshake failed: HTTP {e.status}")
        except asyncio.TimeoutError:
            raise DeliveryError(f"websocket connect timed out after {self.connect_timeout}s")
        except (aiohttp.ClientError, ConnectionError) as e:
            raise DeliveryError(f"websocket connect failed: {e}")
        return WebSocketWriter(ws)

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()


@dataclass
class StreamEndpoint:
    url: str
    info: StreamInfo
    writer: Optional[EndpointWriter] = None
    connecting: bool = False

    @property
    def active(self) -> bool:
        return self.info.status == StreamInfo.ACTIVE


@dataclass
class StreamHandle:
    schemes: Tuple[str, ...]
    log: Any
    endpoints: Dict[str, StreamEndpoint] = field(default_factory=dict)

    @property
    def active_urls(self) -> List[str]:
        return [url for url, endpoint in self.endpoints.items() if endpoint.active]


class StreamOutputAdapter(OutputAdapter[StreamHandle]):
    """Restreams to any number of URLs, each with independent status."""

    def __init__(self, kind: OutputKind, connectors: Dict[str, EndpointConnector], retry_config: RetryConfig):
        self.kind = kind
        self.connectors = connectors
        self.retry_config = retry_config

    def check_url(self, handle_or_spec: Any, url: str) -> None:
        """
        Check that ``url`` fits the output's protocol and has a connector.

        Raises:
            ConfigurationError: If the URL cannot be streamed to
        """
        if isinstance(handle_or_spec, StreamHandle):
            schemes = handle_or_spec.schemes
        else:
            schemes = allowed_schemes(handle_or_spec)

        scheme = url_scheme(url)
        if scheme not in schemes:
            raise ConfigurationError(
                f"url {redact_url(url)} does not match the output protocol ({', '.join(schemes)})"
            )
        if scheme not in self.connectors:
            raise ConfigurationError(f"no stream connector registered for {scheme}://")

    async def open(self, spec: OutputSpec, context: OutputContext) -> StreamHandle:
        urls = stream_urls(spec)
        for url in urls:
            self.check_url(spec, url)

        handle = StreamHandle(
            schemes=allowed_schemes(spec),
            log=get_logger_with_correlation(__name__, context.egress_id),
        )
        await asyncio.gather(*(self._start_endpoint(handle, url) for url in dict.fromkeys(urls)))

        if not handle.active_urls:
            await self.abort(handle)
            errors = "; ".join(e.info.error for e in handle.endpoints.values())
            raise FatalDeliveryError(f"no stream output could be connected: {errors}")

        handle.log.info(f"Opened stream output with {len(handle.active_urls)} endpoint(s)")
        return handle

    async def write(self, handle: StreamHandle, chunk) -> None:
        endpoints = [e for e in handle.endpoints.values() if e.active and not e.connecting]
        await asyncio.gather(*(self._send(handle, endpoint, chunk.data) for endpoint in endpoints))

        if not handle.active_urls:
            raise FatalDeliveryError("all stream outputs failed")

    async def add_url(self, handle: StreamHandle, url: str) -> None:
        """Start streaming to ``url``. No-op if it is already active."""
        self.check_url(handle, url)
        existing = handle.endpoints.get(url)
        if existing is not None and existing.active:
            return
        handle.endpoints.pop(url, None)
        await self._start_endpoint(handle, url)

    async def remove_url(self, handle: StreamHandle, url: str) -> None:
        """Stop streaming to ``url``. No-op if it is absent or already stopped."""
        endpoint = handle.endpoints.get(url)
        if endpoint is None or not endpoint.active:
            return
        await self._finish(handle, endpoint, StreamInfo.FINISHED)
        handle.log.info(f"Removed stream output {redact_url(url)}")

    async def finalize(self, handle: StreamHandle) -> StreamInfoList:
        for endpoint in list(handle.endpoints.values()):
            if endpoint.active:
                await self._finish(handle, endpoint, StreamInfo.FINISHED)
        return self._snapshot(handle)

    async def abort(self, handle: StreamHandle) -> None:
        for endpoint in list(handle.endpoints.values()):
            if endpoint.active:
                await self._finish(handle, endpoint, StreamInfo.FINISHED)
            else:
                await self._close_writer(handle, endpoint)

    def live_result(self, handle: StreamHandle) -> StreamInfoList:
        return self._snapshot(handle)

    def describe(self, handle: StreamHandle) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "urls": [redact_url(url) for url in handle.endpoints],
            "active": len(handle.active_urls),
        }

    @staticmethod
    def _snapshot(handle: StreamHandle) -> StreamInfoList:
        return StreamInfoList(info=[endpoint.info for endpoint in handle.endpoints.values()])

    async def _connect(self, url: str) -> EndpointWriter:
        return await self.connectors[url_scheme(url)].connect(url)

    async def _start_endpoint(self, handle: StreamHandle, url: str) -> None:
        endpoint = StreamEndpoint(
            url=url,
            info=StreamInfo(url=url, started_at=time.time_ns(), status=StreamInfo.ACTIVE),
            connecting=True,
        )
        handle.endpoints[url] = endpoint

        async def attempt() -> EndpointWriter:
            return await self._connect(url)

        try:
            writer = await deliver_with_retry(attempt, self.retry_config, f"connect to {redact_url(url)}", handle.log)
        except FatalDeliveryError as e:
            endpoint.connecting = False
            if endpoint.active:
                await self._finish(handle, endpoint, StreamInfo.FAILED, str(e))
            return
        endpoint.connecting = False

        if handle.endpoints.get(url) is endpoint and endpoint.active:
            endpoint.writer = writer
            handle.log.info(f"Stream output {redact_url(url)} connected")
        else:
            # Removed while connecting
            await writer.close()

    async def _send(self, handle: StreamHandle, endpoint: StreamEndpoint, data: bytes) -> None:
        async def attempt() -> None:
            if not endpoint.active:
                return
            if endpoint.writer is None:
                endpoint.writer = await self._connect(endpoint.url)
            try:
                await endpoint.writer.send(data)
            except DeliveryError:
                await self._close_writer(handle, endpoint)
                raise

        try:
            await deliver_with_retry(attempt, self.retry_config, f"stream {redact_url(endpoint.url)}", handle.log)
        except FatalDeliveryError as e:
            if endpoint.active:
                await self._finish(handle, endpoint, StreamInfo.FAILED, str(e))

    async def _finish(self, handle: StreamHandle, endpoint: StreamEndpoint, status: int, error: str = "") -> None:
        ended_at = time.time_ns()
        endpoint.info.status = status
        endpoint.info.ended_at = ended_at
        endpoint.info.duration = ended_at - endpoint.info.started_at
        if error:
            endpoint.info.error = error
            handle.log.warning(f"Stream output {redact_url(endpoint.url)} failed: {error}")
        await self._close_writer(handle, endpoint)

    @staticmethod
    async def _close_writer(handle: StreamHandle, endpoint: StreamEndpoint) -> None:
        writer, endpoint.writer = endpoint.writer, None
        if writer is None:
            return
        try:
            await writer.close()
        except (DeliveryError, FatalDeliveryError, aiohttp.ClientError, ConnectionError) as e:
            handle.log.debug(f"Error closing stream output {redact_url(endpoint.url)}: {e}")
