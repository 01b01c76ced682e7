"""
OpenRouter backend: OpenAI-compatible chat completions on hosted models.

complete() is the buffered call (titles, demo chat). stream() opens one
streaming request per turn and yields text fragments as they arrive.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncIterator

import httpx

from chatdesk.backends.base import BaseBackend, BackendResponse, CancelToken
from chatdesk.backends.sse import SSEDecoder, SSEEvent
from chatdesk.errors import UpstreamHandshakeError, UpstreamStreamError

logger = logging.getLogger(__name__)


class OpenRouterBackend(BaseBackend):
    """Backend for the OpenRouter API."""

    def __init__(
        self,
        name: str,
        url: str,
        timeout: int = 120,
        referer: str = "",
        app_title: str = "chatdesk",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(name=name, url=url, timeout=timeout)
        self.referer = referer
        self.app_title = app_title
        # Tests inject httpx.MockTransport here
        self.transport = transport

    def _headers(self, api_key: str) -> dict:
        """Build request headers with auth."""
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
        }
        if self.referer:
            headers["HTTP-Referer"] = self.referer
        if self.app_title:
            headers["X-Title"] = self.app_title
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def complete(self, messages: list[dict], model: str, api_key: str) -> BackendResponse:
        """Send a non-streaming request and return the whole answer."""
        if not api_key:
            return BackendResponse(
                ok=False, status_code=0, backend_name=self.name,
                error="No API key configured for OpenRouter",
            )

        body = {"model": model, "messages": messages}
        t0 = time.monotonic()
        try:
            async with self._client() as client:
                resp = await client.post(
                    f"{self.url}/chat/completions",
                    headers=self._headers(api_key),
                    json=body,
                )
                latency = (time.monotonic() - t0) * 1000

                if resp.status_code >= 400:
                    return BackendResponse(
                        ok=False,
                        status_code=resp.status_code,
                        backend_name=self.name,
                        latency_ms=latency,
                        error=f"HTTP {resp.status_code}: {resp.text[:200]}",
                    )

                return BackendResponse(
                    ok=True,
                    status_code=resp.status_code,
                    data=resp.json(),
                    backend_name=self.name,
                    latency_ms=latency,
                )
        except httpx.TimeoutException:
            latency = (time.monotonic() - t0) * 1000
            logger.warning("OpenRouter backend '%s' timed out after %.0fms", self.name, latency)
            return BackendResponse(
                ok=False, status_code=0, backend_name=self.name, latency_ms=latency,
                error=f"Timeout after {self.timeout}s",
            )
        except Exception as e:
            latency = (time.monotonic() - t0) * 1000
            logger.warning("OpenRouter backend '%s' failed: %s", self.name, e)
            return BackendResponse(
                ok=False, status_code=0, backend_name=self.name, latency_ms=latency,
                error=str(e),
            )

    async def stream(
        self,
        messages: list[dict],
        model: str,
        api_key: str,
        cancel: CancelToken | None = None,
    ) -> AsyncIterator[str]:
        """
        Stream a completion, yielding content fragments.

        The response is closed on every exit: normal end, [DONE], error,
        cancellation through the token, or the consumer closing this generator.
        """
        if not api_key:
            raise UpstreamHandshakeError("No API key configured for OpenRouter")

        body = {"model": model, "messages": messages, "stream": True}
        decoder = SSEDecoder()

        async with self._client() as client:
            request = client.build_request(
                "POST",
                f"{self.url}/chat/completions",
                headers=self._headers(api_key),
                json=body,
            )
            try:
                resp = await client.send(request, stream=True)
            except httpx.HTTPError as e:
                logger.warning("OpenRouter backend '%s' unreachable: %s", self.name, e)
                raise UpstreamHandshakeError(f"Could not reach provider: {e}") from e

            try:
                if resp.status_code >= 400:
                    detail = (await resp.aread()).decode("utf-8", errors="replace")[:200]
                    logger.warning(
                        "OpenRouter backend '%s' rejected stream: HTTP %d %s",
                        self.name, resp.status_code, detail,
                    )
                    raise UpstreamHandshakeError(
                        f"Provider returned HTTP {resp.status_code}: {detail}",
                        upstream_status=resp.status_code,
                    )

                chunks = resp.aiter_bytes()
                while True:
                    if cancel is not None and cancel.cancelled:
                        logger.debug("Stream cancelled before next read")
                        return
                    try:
                        chunk = await self._next_chunk(chunks, cancel)
                    except StopAsyncIteration:
                        break
                    except httpx.HTTPError as e:
                        logger.warning("OpenRouter stream '%s' broke: %s", self.name, e)
                        raise UpstreamStreamError(f"Provider stream interrupted: {e}") from e
                    if chunk is None:
                        logger.debug("Stream cancelled while waiting for data")
                        return

                    fragments, done = self._collect(decoder.feed(chunk))
                    for fragment in fragments:
                        yield fragment
                    if done:
                        return

                fragments, _ = self._collect(decoder.flush())
                for fragment in fragments:
                    yield fragment
            finally:
                await resp.aclose()
                if decoder.skipped:
                    logger.info("Skipped %d malformed stream events", decoder.skipped)

    @staticmethod
    async def _next_chunk(chunks, cancel: CancelToken | None) -> bytes | None:
        """
        Read the next body chunk, or return None if the token fires first.
        StopAsyncIteration propagates at end of body.
        """
        if cancel is None:
            return await chunks.__anext__()

        async def _read():
            return await chunks.__anext__()

        read = asyncio.create_task(_read())
        stop = asyncio.create_task(cancel.wait())
        try:
            done, _ = await asyncio.wait({read, stop}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            read.cancel()
            raise
        finally:
            stop.cancel()
        if read in done:
            return read.result()

        read.cancel()
        try:
            await read
        except (asyncio.CancelledError, StopAsyncIteration, httpx.HTTPError):
            pass
        return None

    @staticmethod
    def _collect(events: list[SSEEvent]) -> tuple[list[str], bool]:
        """Fragments from a batch of events, and whether [DONE] was seen."""
        fragments = []
        for event in events:
            if event.done:
                return fragments, True
            if event.error:
                raise UpstreamStreamError(f"Provider error: {event.error}")
            if event.content:
                fragments.append(event.content)
        return fragments, False
