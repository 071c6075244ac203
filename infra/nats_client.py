import json
import logging
import os
import ssl
import time
from typing import Any, Dict, Optional

from nats.aio.client import Client as NATS

from core.app_config import NatsConfig
from infra.observability.otel import (
    get_tracer,
    inject_context_to_headers,
    mark_span_error,
    traced,
)


logger = logging.getLogger("NATSClient")
_TRACER = get_tracer("infra.nats_client")

# Replies nobody consumed are dropped from the stream after a week.
REPLY_STREAM_MAX_AGE_SECONDS = 7 * 24 * 60 * 60


class NATSClient:
    """Publish-side wrapper around NATS/JetStream with optional TLS.

    With ``jetstream`` enabled, replies are persisted in one stream
    (``reply_stream``) covering ``reply_subjects``; otherwise they go out as
    core NATS messages.
    """

    def __init__(self, settings: Optional[NatsConfig] = None):
        self.settings = settings or NatsConfig()
        self.servers = [s.strip() for s in self.settings.servers if s.strip()]
        self.nc = NATS()
        self.js = None
        self._stream_ready = False

    def _tls_context(self) -> Optional[ssl.SSLContext]:
        if not self.settings.tls_enabled:
            return None
        cert_dir = self.settings.cert_dir
        ctx = ssl.create_default_context(purpose=ssl.Purpose.SERVER_AUTH)
        try:
            ctx.load_verify_locations(os.path.join(cert_dir, "ca.crt"))
            ctx.load_cert_chain(
                certfile=os.path.join(cert_dir, "client.crt"),
                keyfile=os.path.join(cert_dir, "client.key"),
            )
        except FileNotFoundError:
            logger.warning("TLS files not found in %s, connecting without TLS", cert_dir)
            return None
        ctx.check_hostname = False
        return ctx

    async def _ensure_reply_stream(self) -> None:
        if self._stream_ready:
            return
        if self.js is None:
            raise RuntimeError("NATS JetStream not connected")
        stream = self.settings.reply_stream
        subjects = list(self.settings.reply_subjects)
        try:
            await self.js.stream_info(stream)
        except Exception:  # noqa: BLE001
            try:
                await self.js.add_stream(name=stream, subjects=subjects, max_age=REPLY_STREAM_MAX_AGE_SECONDS)
            except Exception as exc:
                raise RuntimeError(f"Failed to create JetStream stream {stream!r} for subjects {subjects}") from exc
            logger.info("Created reply stream %s subjects=%s", stream, subjects)
        self._stream_ready = True

    async def connect(self) -> None:
        tls = self._tls_context()
        await self.nc.connect(servers=self.servers, tls=tls)
        if self.settings.jetstream:
            self.js = self.nc.jetstream()
            await self._ensure_reply_stream()
        logger.info(
            "Connected to %s (%s, jetstream=%s)",
            self.servers,
            "tls" if tls else "plain",
            self.settings.jetstream,
        )

    @traced(_TRACER, "nats.publish", span_arg="_span")
    async def publish_json(
        self,
        subject: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
        *,
        _span: Any = None,
    ) -> None:
        if not self.nc.is_connected:
            raise RuntimeError("NATS not connected")
        _span.set_attribute("messaging.system", "nats")
        _span.set_attribute("messaging.destination", subject)

        final_headers: Dict[str, str] = dict(headers or {})
        inject_context_to_headers(final_headers)
        final_headers.setdefault("AQ-Timestamp", str(int(time.time() * 1000)))
        data = json.dumps(payload, default=str).encode("utf-8")
        try:
            if self.js is not None:
                await self._ensure_reply_stream()
                await self.js.publish(subject, data, headers=final_headers)
            else:
                await self.nc.publish(subject, data, headers=final_headers)
        except Exception as exc:
            mark_span_error(_span, exc)
            logger.error("Publish failed subject=%s: %s", subject, exc)
            raise

    async def close(self) -> None:
        if self.nc.is_connected:
            await self.nc.drain()
        else:
            await self.nc.close()
