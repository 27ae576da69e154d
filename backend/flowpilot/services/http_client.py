"""Async HTTP client for workflow webhook nodes."""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx

from flowpilot.config import get_settings

logger = logging.getLogger(__name__)


@dataclass
class WebhookResponse:
    """Outcome of a webhook call, including transport failures."""
    status_code: int
    body: str
    elapsed_ms: int
    attempts: int = 1
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and 200 <= self.status_code < 400

    def to_dict(self) -> dict:
        return {
            "status": self.status_code,
            "body": self.body,
            "elapsed_ms": self.elapsed_ms,
            "attempts": self.attempts,
            "error": self.error,
        }


class WebhookClient:
    """
    Sends the workflow context to an external URL.

    GET requests carry no body. Transport errors and 5xx responses are
    retried up to ``retries`` extra times; other statuses are returned
    as-is. Never raises for network problems: the error is on the response.
    """

    def __init__(
        self,
        timeout: float | None = None,
        retry_backoff: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
        max_body_size: int = 64 * 1024,
    ):
        self.timeout = timeout or get_settings().webhook_timeout
        self.retry_backoff = retry_backoff
        self.transport = transport
        self.max_body_size = max_body_size
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                transport=self.transport,
            )
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def send(
        self,
        method: str,
        url: str,
        payload: Any = None,
        headers: dict[str, str] | None = None,
        retries: int = 0,
    ) -> WebhookResponse:
        client = await self._get_client()
        method = method.upper()

        kwargs: dict[str, Any] = {"method": method, "url": url, "headers": headers or {}}
        if method != "GET" and payload is not None:
            # Context values are not always JSON types (datetimes, UUIDs)
            kwargs["content"] = json.dumps(payload, default=str).encode()
            kwargs["headers"] = {"Content-Type": "application/json", **kwargs["headers"]}

        attempts = 0
        response: WebhookResponse | None = None
        while attempts <= max(0, retries):
            if attempts:
                await asyncio.sleep(self.retry_backoff * attempts)
            attempts += 1
            response = await self._attempt(client, kwargs)
            response.attempts = attempts
            if response.error is None and response.status_code < 500:
                break
            logger.info(
                "Webhook %s %s attempt %d failed: %s",
                method, url, attempts, response.error or response.status_code,
            )
        return response

    async def _attempt(self, client: httpx.AsyncClient, kwargs: dict) -> WebhookResponse:
        start_time = time.perf_counter()
        try:
            response = await client.request(**kwargs)
        except httpx.TimeoutException as e:
            return self._failed(start_time, f"Timeout: {e}")
        except httpx.HTTPError as e:
            return self._failed(start_time, f"Request error: {e}")

        body = response.text
        if len(body) > self.max_body_size:
            body = body[:self.max_body_size]
        return WebhookResponse(
            status_code=response.status_code,
            body=body,
            elapsed_ms=int((time.perf_counter() - start_time) * 1000),
        )

    def _failed(self, start_time: float, error: str) -> WebhookResponse:
        return WebhookResponse(
            status_code=0,
            body="",
            elapsed_ms=int((time.perf_counter() - start_time) * 1000),
            error=error,
        )
