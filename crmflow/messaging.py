"""Outbound message senders used by action steps."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional, Protocol

import httpx
from pydantic import BaseModel, Field

from .config import CrmflowConfig, load_config
from .errors import TransientExecutionFailure, UnrecoverableExecutionFailure

logger = logging.getLogger(__name__)


class SendResult(BaseModel):
    success: bool
    id: Optional[str] = None
    error: Optional[str] = None


class OutboundMessage(BaseModel):
    channel: str
    target: str
    content: Dict[str, Any] = Field(default_factory=dict)
    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))


class MessageSender(Protocol):
    """Delivers email/SMS/notification payloads to a provider."""

    async def send(
        self, channel: str, target: str, content: Dict[str, Any]
    ) -> SendResult:
        """Send ``content`` to ``target`` over ``channel``."""


class InMemoryMessageSender:
    """Keep sent messages in an outbox list.

    Used in tests and local development where no provider is configured.
    """

    def __init__(self) -> None:
        self.outbox: List[OutboundMessage] = []
        self._lock = asyncio.Lock()

    async def send(
        self, channel: str, target: str, content: Dict[str, Any]
    ) -> SendResult:
        message = OutboundMessage(channel=channel, target=target, content=content)
        async with self._lock:
            self.outbox.append(message)
        logger.info(f"Queued {channel} message {message.message_id} for {target}")
        return SendResult(success=True, id=message.message_id)


def _response_id(response: httpx.Response) -> Optional[str]:
    """Return the ``id`` from a JSON object reply, or ``None`` for any other body."""
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict) or body.get("id") is None:
        return None
    return str(body["id"])


class HttpMessageSender:
    """POST messages to a delivery webhook.

    Timeouts, connection errors and 5xx responses are retryable; any other
    error response is not.
    """

    def __init__(
        self,
        webhook_url: str,
        timeout: float = 10.0,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client

    async def send(
        self, channel: str, target: str, content: Dict[str, Any]
    ) -> SendResult:
        payload = {"channel": channel, "target": target, "content": content}
        try:
            if self._client is not None:
                response = await self._client.post(
                    self.webhook_url, json=payload, headers=self._headers
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(
                        self.webhook_url, json=payload, headers=self._headers
                    )
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise TransientExecutionFailure(
                f"{channel} delivery to {target} failed: {exc}"
            ) from exc

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientExecutionFailure(
                f"{channel} provider returned {response.status_code}"
            )
        if response.status_code >= 400:
            raise UnrecoverableExecutionFailure(
                f"{channel} provider rejected message: {response.status_code} {response.text}"
            )
        message_id = _response_id(response)
        return SendResult(success=True, id=message_id)


def get_message_sender(config: Optional[CrmflowConfig] = None) -> MessageSender:
    """Build the sender selected by ``messaging.backend``."""
    config = config or load_config()
    messaging = config.messaging
    if messaging.backend == "inmemory":
        return InMemoryMessageSender()
    if messaging.backend == "http":
        if not messaging.webhook_url:
            raise ValueError("messaging.webhook_url is required for the http backend")
        return HttpMessageSender(
            messaging.webhook_url, timeout=messaging.timeout, api_key=messaging.api_key
        )
    raise ValueError(f"Unsupported messaging backend: {messaging.backend}")
