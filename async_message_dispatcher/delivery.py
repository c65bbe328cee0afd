"""Outbound webhook used to hand scheduled messages over for delivery."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional, Protocol

import aiohttp

from .logger import get_logger
from .models import DeliveryError, DeliveryResult

AUTH_HEADER_NAME = "x-ins-auth-key"
ACCEPTED_DELIVERY_ID = "accepted"
ACCEPTED_MESSAGE = "Message accepted"


class DeliveryChannel(Protocol):
    """Anything able to deliver ``content`` to ``destination``."""

    async def send(self, destination: str, content: str) -> DeliveryResult:
        ...


class WebhookClient:
    """POST messages to a webhook and interpret its answer.

    Any 2xx response is a success. ``202 Accepted`` carries no body and
    gets the placeholder delivery id ``"accepted"``; other 2xx responses
    must return ``{"message": ..., "messageId": ...}``. Everything else
    (non-2xx status, transport error, timeout, malformed body) raises
    :class:`DeliveryError`.
    """

    def __init__(
        self,
        url: str,
        auth_key: Optional[str] = None,
        *,
        timeout: float = 30.0,
        logger=None,
    ):
        if not url:
            raise ValueError("Webhook URL is not configured")
        self.url = url
        self.auth_key = auth_key
        self.timeout = aiohttp.ClientTimeout(total=float(timeout))
        self.logger = logger or get_logger()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.auth_key:
            headers[AUTH_HEADER_NAME] = self.auth_key
        return headers

    async def send(self, destination: str, content: str) -> DeliveryResult:
        """Deliver one message and return the remote delivery identifier."""
        payload = {"to": destination, "content": content}
        self.logger.debug("Posting message for %s to webhook %s", destination, self.url)
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(self.url, json=payload, headers=self._headers()) as resp:
                    self.logger.debug("Webhook response status: %s", resp.status)
                    if resp.status < 200 or resp.status >= 300:
                        raise DeliveryError(
                            f"unexpected response status: {resp.status} {resp.reason or ''}".strip(),
                            status_code=resp.status,
                        )
                    if resp.status == 202:
                        return DeliveryResult(delivery_id=ACCEPTED_DELIVERY_ID, message=ACCEPTED_MESSAGE)
                    try:
                        body = await resp.json(content_type=None)
                    except ValueError as exc:
                        raise DeliveryError(
                            f"malformed webhook response: {exc}", status_code=resp.status
                        ) from exc
                    return self._parse_body(body, resp.status)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise DeliveryError(f"webhook request failed: {str(exc) or type(exc).__name__}") from exc

    @staticmethod
    def _parse_body(body: Any, status: int) -> DeliveryResult:
        if not isinstance(body, dict):
            raise DeliveryError("malformed webhook response: expected a JSON object", status_code=status)
        delivery_id = body.get("messageId")
        if not delivery_id:
            raise DeliveryError("malformed webhook response: missing messageId", status_code=status)
        return DeliveryResult(delivery_id=str(delivery_id), message=str(body.get("message") or ""))
