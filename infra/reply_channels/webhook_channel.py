from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from core.config_defaults import DEFAULT_WEBHOOK_TIMEOUT_SECONDS
from core.errors import ChannelResolutionError, DeliveryError
from infra.observability.otel import get_tracer, inject_context_to_headers, mark_span_error, traced

from .base import ReplyChannel, ReplyPayload, scheme_matches, serialize_message

logger = logging.getLogger("ReplyChannels")
_TRACER = get_tracer("infra.reply_channels.webhook")

WEBHOOK_SCHEME = "webhook"
_BODY_EXCERPT_LIMIT = 2000


class WebhookReplyChannel(ReplyChannel):
    """POSTs the JSON reply to the URL embedded in ``webhook://<url>``.

    Default headers always include ``Content-Type: application/json``; headers
    given to the factory are merged on top. Non-2xx responses and timeouts raise
    ``DeliveryError``.
    """

    scheme = WEBHOOK_SCHEME

    def __init__(
        self,
        uri: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        timeout_seconds: float = DEFAULT_WEBHOOK_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        prefix = f"{WEBHOOK_SCHEME}://"
        raw = str(uri or "")
        self.url = raw[len(prefix):] if raw.lower().startswith(prefix) else ""
        if not self.url:
            raise ChannelResolutionError("Webhook URL is required in webhook:// URI", detail={"reply_to": uri})
        self.headers: Dict[str, str] = {"Content-Type": "application/json", **dict(headers or {})}
        self.timeout_seconds = float(timeout_seconds)
        self._client = client

    @property
    def target(self) -> str:
        return self.url

    @traced(_TRACER, "webhook.deliver", span_arg="_span")
    async def send(self, message: ReplyPayload, *, _span: Any = None) -> None:
        span = _span
        span.set_attribute("http.method", "POST")
        span.set_attribute("url.full", self.url)
        headers = dict(self.headers)
        inject_context_to_headers(headers)
        logger.debug("Sending reply to webhook %s", self.url)
        try:
            if self._client is not None:
                response = await self._post(self._client, message, headers)
            else:
                async with httpx.AsyncClient() as client:
                    response = await self._post(client, message, headers)
        except httpx.TimeoutException as exc:
            mark_span_error(span, exc)
            timeout_ms = int(self.timeout_seconds * 1000)
            raise DeliveryError(
                f"Webhook request timed out after {timeout_ms}ms",
                detail={"url": self.url},
            ) from exc
        except httpx.HTTPError as exc:
            mark_span_error(span, exc)
            raise DeliveryError(f"Webhook request failed: {exc}", detail={"url": self.url}) from exc

        span.set_attribute("http.status_code", int(response.status_code))
        if not response.is_success:
            body = response.text[:_BODY_EXCERPT_LIMIT] or "Unknown error"
            error = DeliveryError(
                f"Webhook request failed: {response.status_code} {response.reason_phrase} - {body}",
                detail={"url": self.url, "status_code": response.status_code},
            )
            mark_span_error(span, error)
            raise error
        logger.debug("Webhook response %s %s", response.status_code, response.reason_phrase)

    async def _post(
        self,
        client: httpx.AsyncClient,
        message: ReplyPayload,
        headers: Dict[str, str],
    ) -> httpx.Response:
        return await client.post(
            self.url,
            json=serialize_message(message),
            headers=headers,
            timeout=self.timeout_seconds,
        )


class WebhookReplyChannelFactory:
    def __init__(
        self,
        *,
        timeout_seconds: float = DEFAULT_WEBHOOK_TIMEOUT_SECONDS,
        headers: Optional[Mapping[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.timeout_seconds = float(timeout_seconds)
        self.headers = dict(headers or {})
        self.client = client

    def matches(self, uri: str) -> bool:
        return scheme_matches(uri, WEBHOOK_SCHEME)

    def create(self, uri: str) -> WebhookReplyChannel:
        return WebhookReplyChannel(
            uri,
            headers=self.headers,
            timeout_seconds=self.timeout_seconds,
            client=self.client,
        )
