"""
HttpAction — call the job's target URL.

Sends the configured method and headers with the body template as JSON
(when there is one), reads at most a bounded prefix of the response body,
and reports the status code. Any 2xx counts as success.
"""

from __future__ import annotations

import logging

import httpx

from cronpipe.actions.base import Action, ActionResult
from cronpipe.core.errors import ActionError, ActionTimeout, ActionTransportError
from cronpipe.scheduling.models import ActionKind, ExecutionTask

logger = logging.getLogger(__name__)

# UTF-8 needs at most 4 bytes per character.
_BYTES_PER_CHAR = 4


class HttpAction(Action):
    """
    Performs http jobs with a shared httpx.AsyncClient.

    Pass a client to control transport (tests use httpx.MockTransport).
    """

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client
        self._owns_client = client is None

    @property
    def kind(self) -> ActionKind:
        return ActionKind.HTTP

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(follow_redirects=True)
            self._owns_client = True
        return self._client

    async def perform(self, task: ExecutionTask, excerpt_limit: int) -> ActionResult:
        if not task.target:
            raise ActionError("http job has no target URL", kind="http")

        client = await self._get_client()
        method = (task.method or "GET").upper()
        request_kwargs: dict = {"headers": task.headers or {}}
        if task.body is not None:
            request_kwargs["json"] = task.body
        # Backstop only: the executor's own timeout cancels us first.
        request_kwargs["timeout"] = task.timeout_ms / 1000

        try:
            async with client.stream(method, task.target, **request_kwargs) as response:
                excerpt = await _read_excerpt(response, excerpt_limit)
        except httpx.TimeoutException as e:
            raise ActionTimeout(f"HTTP {method} {task.target} timed out: {e}", kind="http") from e
        except httpx.TransportError as e:
            raise ActionTransportError(
                f"HTTP {method} {task.target} failed: {type(e).__name__}: {e}", kind="http"
            ) from e
        except httpx.InvalidURL as e:
            raise ActionError(f"Invalid target URL {task.target!r}: {e}", kind="http") from e

        ok = response.is_success
        return ActionResult(
            ok=ok,
            status_code=response.status_code,
            excerpt=excerpt,
            detail=None if ok else f"HTTP {response.status_code}",
        )

    async def close(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()


async def _read_excerpt(response: httpx.Response, limit: int) -> str:
    """Read at most enough of the body for *limit* characters, then stop."""
    if limit <= 0:
        return ""
    budget = limit * _BYTES_PER_CHAR
    buf = bytearray()
    async for chunk in response.aiter_bytes():
        buf.extend(chunk)
        if len(buf) >= budget:
            break
    encoding = response.encoding or "utf-8"
    try:
        text = bytes(buf[:budget]).decode(encoding, errors="replace")
    except LookupError:
        text = bytes(buf[:budget]).decode("utf-8", errors="replace")
    return text[:limit]
