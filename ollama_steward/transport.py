"""
Thin HTTP primitives for the Ollama API: JSON GET/POST and NDJSON streams.

No retry or availability policy lives here. Every httpx failure is mapped
onto the errors.TransportError taxonomy before it leaves this module.
"""

import json
import logging
from typing import TYPE_CHECKING, Any, AsyncGenerator, Optional, Union

import httpx

from ollama_steward.errors import (
    MalformedResponse,
    ServerError,
    classify_httpx_error,
    parse_server_error,
)

if TYPE_CHECKING:
    from ollama_steward.tracker import CancelToken

logger = logging.getLogger(__name__)

Timeout = Union[float, httpx.Timeout]

DEFAULT_HEADERS = {
    "Accept": "application/json",
    "Cache-Control": "no-cache",
}


class Transport:
    """
    HTTP access to one Ollama server.

    A fresh httpx.AsyncClient is opened per call. Proxy environment
    variables are ignored (trust_env=False); the server is local.
    """

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")

    def url(self, path: str) -> str:
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.base_url}{path}"

    def _client(self, timeout: Timeout) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, headers=DEFAULT_HEADERS, trust_env=False)

    async def probe(self, path: str = "/api/tags", timeout: Timeout = 5.0) -> int:
        """
        GET a path and return the status code without interpreting the body.

        Raises:
            TransportError subclass on connection failure or timeout
        """
        try:
            async with self._client(timeout) as client:
                response = await client.get(self.url(path))
                return response.status_code
        except httpx.HTTPError as e:
            raise classify_httpx_error(e) from e

    async def get_json(self, path: str, timeout: Timeout = 5.0) -> Any:
        """GET a path and decode its JSON body. Non-200 raises ServerError."""
        try:
            async with self._client(timeout) as client:
                response = await client.get(self.url(path))
        except httpx.HTTPError as e:
            raise classify_httpx_error(e) from e
        return _decode(response)

    async def post_json(self, path: str, payload: dict, timeout: Timeout = 30.0) -> Any:
        """POST a JSON payload and decode the JSON body. Non-200 raises ServerError."""
        try:
            async with self._client(timeout) as client:
                response = await client.post(self.url(path), json=payload)
        except httpx.HTTPError as e:
            raise classify_httpx_error(e) from e
        return _decode(response)

    async def stream_ndjson(
        self,
        path: str,
        payload: dict,
        timeout: Timeout,
        token: Optional["CancelToken"] = None,
    ) -> AsyncGenerator[dict, None]:
        """
        POST a payload and yield each NDJSON line of the response as a dict.

        Lines that fail to parse (or are not JSON objects) are logged and
        skipped. If the token is cancelled, the line already read is
        discarded and the stream is closed.

        Raises:
            ServerError: HTTP status >= 400 (body's error message attached)
            TransportError subclass on connection failure or timeout
        """
        try:
            async with self._client(timeout) as client:
                async with client.stream("POST", self.url(path), json=payload) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        raise ServerError(response.status_code, parse_server_error(response))

                    async for line in response.aiter_lines():
                        if token is not None and token.is_cancelled():
                            logger.debug(f"Stream {path} cancelled, discarding remaining lines")
                            return
                        line = line.strip()
                        if not line:
                            continue
                        try:
                            data = json.loads(line)
                        except json.JSONDecodeError:
                            logger.warning(f"Skipping unparsable NDJSON line from {path}: {line[:80]!r}")
                            continue
                        if not isinstance(data, dict):
                            logger.warning(f"Skipping non-object NDJSON line from {path}: {line[:80]!r}")
                            continue
                        yield data
        except httpx.HTTPError as e:
            raise classify_httpx_error(e) from e


def _decode(response: httpx.Response) -> Any:
    if response.status_code != 200:
        raise ServerError(response.status_code, parse_server_error(response))
    try:
        return response.json()
    except ValueError as e:
        raise MalformedResponse(f"invalid JSON body: {response.text[:200]}") from e
