"""Inbound message pass-through."""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import httpx

from .metrics import WEBHOOK_ERRORS_TOTAL
from .transport import MessageBatch

LOGGER = logging.getLogger("waworker.delivery")

DeliverySink = Callable[[str, MessageBatch], Awaitable[None]]


def _message_summary(message: Mapping[str, Any]) -> Dict[str, Any]:
    key = message.get("key") or {}
    content = message.get("message") or {}
    text = None
    if isinstance(content, Mapping):
        text = content.get("conversation")
        if text is None:
            extended = content.get("extendedTextMessage") or {}
            if isinstance(extended, Mapping):
                text = extended.get("text")
    return {
        "from": key.get("remoteJid") if isinstance(key, Mapping) else None,
        "id": key.get("id") if isinstance(key, Mapping) else None,
        "text": text,
    }


def inbound_messages(batch: MessageBatch) -> List[Mapping[str, Any]]:
    """Messages of ``batch`` that were not sent by this session itself."""

    inbound = []
    for message in batch.messages:
        key = message.get("key") or {}
        if isinstance(key, Mapping) and key.get("fromMe"):
            continue
        inbound.append(message)
    return inbound


async def log_delivery(key: str, batch: MessageBatch) -> None:
    for message in inbound_messages(batch):
        summary = _message_summary(message)
        LOGGER.info(
            "stage=incoming key=%s from=%s has_text=%s",
            key,
            summary["from"],
            "true" if summary["text"] else "false",
        )


class WebhookDelivery:
    """POSTs inbound batches to a webhook. Failures are logged and counted."""

    def __init__(
        self,
        url: Optional[str],
        *,
        token: Optional[str] = None,
        http_timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = (url or "").strip().rstrip("/") or None
        self._token = (token or "").strip() or None
        self._http = client or httpx.AsyncClient(timeout=http_timeout)

    @property
    def enabled(self) -> bool:
        return self._url is not None

    async def __call__(self, key: str, batch: MessageBatch) -> None:
        await log_delivery(key, batch)
        if self._url is None:
            return
        messages = inbound_messages(batch)
        if not messages:
            return
        payload = {
            "key": key,
            "kind": batch.kind,
            "received_at": int(time.time() * 1000),
            "messages": [_message_summary(message) for message in messages],
        }
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["X-Webhook-Token"] = self._token
        try:
            response = await self._http.post(self._url, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            WEBHOOK_ERRORS_TOTAL.inc()
            LOGGER.error("stage=send_fail key=%s error=%s", key, exc)

    async def aclose(self) -> None:
        await self._http.aclose()


__all__ = ["DeliverySink", "WebhookDelivery", "inbound_messages", "log_delivery"]
