# keyproxy/proxy.py
import asyncio
import enum
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator

import httpx
from fastapi import Request
from fastapi.responses import Response, StreamingResponse

from errors import InternalError, ProxyError, UpstreamBodyError, UpstreamConnectError
from metrics import MetricsLog, UsageRecord
from upstream import UpstreamClient, outbound_body, wants_stream
from usage import UsageExtractor, is_event_stream

logger = logging.getLogger(__name__)

# Framing headers are regenerated by the ASGI server for the relayed body.
_STRIP_RESPONSE_HEADERS = {"content-encoding", "content-length", "transfer-encoding", "connection"}
_SSE_HEADERS = [
    ("content-type", "text/event-stream; charset=utf-8"),
    ("cache-control", "no-cache, no-transform"),
    ("connection", "keep-alive"),
]

# Never seen by anyone: the client has already gone away.
_CLIENT_CLOSED_REQUEST = 499


class Phase(enum.Enum):
    AUTHENTICATING = "authenticating"
    DISPATCHING = "dispatching"
    RELAYING = "relaying"
    COMPLETED = "completed"
    ABORTED = "aborted"


def _iso_now() -> str:
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class Arrival:
    """When a request reached the proxy: wall-clock for logs, monotonic for timing."""

    timestamp: str = field(default_factory=_iso_now)
    started: float = field(default_factory=time.monotonic)


async def arrival() -> Arrival:
    """FastAPI dependency stamping the request before authentication runs."""
    return Arrival()


def relay_headers(headers: httpx.Headers, streaming: bool) -> list[tuple[str, str]]:
    """Upstream response headers as they should reach the client."""
    drop = set(_STRIP_RESPONSE_HEADERS)
    if streaming:
        drop.update(name for name, _ in _SSE_HEADERS)
    relayed = [(k, v) for k, v in headers.multi_items() if k.lower() not in drop]
    if streaming:
        relayed.extend(_SSE_HEADERS)
    return relayed


async def wait_for_disconnect(request: Request) -> None:
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


class Exchange:
    """State of one proxied request, from dispatch to the last relayed byte."""

    def __init__(
        self,
        api_key: str,
        arrived: Arrival,
        upstream: UpstreamClient,
        metrics: MetricsLog,
    ) -> None:
        self.api_key = api_key
        self.arrived = arrived
        self.phase = Phase.AUTHENTICATING
        self.streaming = False
        self._upstream = upstream
        self._metrics = metrics
        self._response: httpx.Response | None = None
        self.extractor: UsageExtractor | None = None

    @property
    def finished(self) -> bool:
        return self.phase in (Phase.COMPLETED, Phase.ABORTED)

    async def dispatch(
        self,
        request: Request,
        url: str,
        headers: dict[str, str],
        body: bytes | None,
    ) -> httpx.Response | None:
        """Send upstream while watching for the client to hang up.

        Returns None, with the outbound request cancelled, when the client
        disconnects before the upstream headers arrive.
        """
        self.phase = Phase.DISPATCHING
        sending = asyncio.ensure_future(self._upstream.send(request.method, url, headers, body))
        watching = asyncio.ensure_future(wait_for_disconnect(request))
        try:
            done, _ = await asyncio.wait({sending, watching}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            watching.cancel()
            if not sending.done():
                sending.cancel()

        if sending not in done:
            await self.on_client_disconnect()
            return None

        self._response = sending.result()
        self.streaming = is_event_stream(self._response.headers.get("content-type"))
        self.extractor = UsageExtractor(self.streaming)
        return self._response

    async def relay(self) -> AsyncIterator[bytes]:
        """Yield the upstream body to the client and account for it at the end."""
        if self.finished:
            return
        self.phase = Phase.RELAYING
        try:
            async with aclosing(self._upstream.iter_body(self._response)) as chunks:
                async for chunk in chunks:
                    if self.finished:
                        break
                    self.extractor.feed(chunk)
                    yield chunk
        except UpstreamBodyError as exc:
            if not self.finished:
                logger.error("Upstream response error: %s", exc.message)
                self.phase = Phase.ABORTED
                if self.streaming:
                    yield exc.to_sse_frame()
        except Exception:
            if not self.finished:
                logger.exception("Relay from %s failed", self._response.url)
                self.phase = Phase.ABORTED
        else:
            if not self.finished:
                try:
                    self.complete()
                except Exception:
                    logger.exception("Usage accounting for %s failed", self._response.url)
        finally:
            # Still relaying here means the client stopped reading.
            if not self.finished:
                await self.on_client_disconnect()

    def complete(self) -> UsageRecord | None:
        """Mark the exchange done and log its usage, if the upstream reported any."""
        self.phase = Phase.COMPLETED
        usage = self.extractor.finish()
        if usage is None:
            return None
        record = UsageRecord.build(
            apikey=self.api_key,
            timestamp=self.arrived.timestamp,
            request_seconds=time.monotonic() - self.arrived.started,
            usage=usage,
        )
        self._metrics.append(record)
        return record

    async def on_client_disconnect(self) -> None:
        """Stop relaying and drop the upstream exchange. Safe to call repeatedly."""
        if not self.finished:
            logger.debug("Client disconnected while %s", self.phase.value)
            self.phase = Phase.ABORTED
        await self.close()

    async def close(self) -> None:
        if self._response is not None and not self._response.is_closed:
            await self._response.aclose()


async def forward(request: Request, api_key: str, arrived: Arrival) -> Response:
    upstream: UpstreamClient = request.app.state.upstream
    exchange = Exchange(api_key, arrived, upstream, request.app.state.metrics)

    try:
        raw = None if request.method in ("GET", "HEAD") else await request.body()
        body = outbound_body(request.method, raw)
        url = upstream.url_for(request.url.path, request.url.query)
        headers = upstream.build_headers(request.headers, wants_stream(raw), body is not None)
        logger.debug("Proxying request to: %s", url)

        upstream_resp = await exchange.dispatch(request, url, headers, body)
        if upstream_resp is None:
            return Response(status_code=_CLIENT_CLOSED_REQUEST)

        response = StreamingResponse(exchange.relay(), status_code=upstream_resp.status_code)
        for name, value in relay_headers(upstream_resp.headers, exchange.streaming):
            response.headers.append(name, value)
        return response
    except UpstreamConnectError as exc:
        logger.error("Upstream request error for %s %s: %s", request.method, request.url.path, exc.message)
        return exc.to_response()
    except ProxyError as exc:
        return exc.to_response()
    except Exception as exc:
        logger.exception("Unhandled error proxying %s %s", request.method, request.url.path)
        await exchange.close()
        return InternalError(str(exc) or "Internal server error").to_response()
