# keyproxy/upstream.py
import json
import logging
from typing import AsyncIterator, Mapping

import httpx

from errors import UpstreamBodyError, UpstreamConnectError, UpstreamTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "keyproxy"
_BODYLESS_METHODS = {"GET", "HEAD"}


def wants_stream(body: bytes | None) -> bool:
    """True when the inbound JSON body asks for a streamed completion."""
    if not body:
        return False
    try:
        data = json.loads(body)
    except ValueError:
        return False
    return isinstance(data, dict) and data.get("stream") is True


def outbound_body(method: str, body: bytes | None) -> bytes | None:
    if method.upper() in _BODYLESS_METHODS:
        return None
    return body or b"{}"


class UpstreamClient:
    """Sends requests to the single upstream API with the shared credential.

    One instance (and one pooled ``httpx.AsyncClient``) is shared by every
    request the app serves. Responses are returned unread so the caller can
    relay the body as it arrives.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self.timeout = httpx.Timeout(timeout)
        self._client = httpx.AsyncClient(timeout=self.timeout, transport=transport)

    def url_for(self, path: str, query: str = "") -> str:
        url = self.base_url + path
        if query:
            url += f"?{query}"
        return url

    def build_headers(
        self,
        client_headers: Mapping[str, str],
        stream: bool,
        has_body: bool,
    ) -> dict[str, str]:
        headers = {
            "accept": "text/event-stream" if stream else client_headers.get("accept", "application/json"),
            "authorization": f"Bearer {self._api_key}",
            # Compressed bodies would be decoded anyway; ask for them plain.
            "accept-encoding": "identity",
            "user-agent": client_headers.get("user-agent", DEFAULT_USER_AGENT),
        }
        if has_body:
            headers["content-type"] = client_headers.get("content-type", "application/json")
        return headers

    async def send(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: bytes | None,
    ) -> httpx.Response:
        """Send the request and return once the upstream headers have arrived."""
        request = self._client.build_request(
            method, url, headers=headers, content=body, timeout=self.timeout
        )
        try:
            return await self._client.send(request, stream=True)
        except httpx.TimeoutException as exc:
            raise UpstreamTimeoutError() from exc
        except httpx.HTTPError as exc:
            raise UpstreamConnectError(str(exc) or "Upstream request error") from exc

    async def iter_body(self, response: httpx.Response) -> AsyncIterator[bytes]:
        """Yield body chunks in arrival order, then close the response."""
        try:
            async for chunk in response.aiter_bytes():
                yield chunk
        except httpx.TimeoutException as exc:
            raise UpstreamBodyError("upstream-timeout") from exc
        except httpx.HTTPError as exc:
            raise UpstreamBodyError(str(exc) or "Upstream response error") from exc
        finally:
            await response.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()
