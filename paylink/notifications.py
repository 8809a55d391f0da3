"""
Payment event notifications

Events are emitted after the state change they describe has been committed.
Delivery is at-most-once: a sink failure is logged and never rolls back or
fails the operation that produced the event.
"""

import asyncio
import hashlib
import hmac
import json
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Set

import httpx
import structlog

from paylink.models import FeeTransaction, PaymentRequest, utcnow

logger = structlog.get_logger()


class PaymentEvent(str, Enum):
    CREATED = "payment.created"
    PAID = "payment.paid"
    CANCELLED = "payment.cancelled"
    EXPIRED = "payment.expired"


def event_payload(
    event: PaymentEvent,
    request: PaymentRequest,
    fee_transaction: Optional[FeeTransaction] = None,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "event": event.value,
        "payment": {
            "id": request.id,
            "amount": str(request.amount),
            "token": request.token,
            "network": request.network,
            "status": request.status.value,
            "receiver": request.receiver,
            "tx_hash": request.tx_hash,
            "fee_tx_hash": request.fee_tx_hash,
            "creator_reward_tx_hash": request.creator_reward_tx_hash,
            "creator_agent_id": request.creator_agent_id,
            "payer_agent_id": request.payer_agent_id,
            "paid_at": request.paid_at.isoformat() if request.paid_at else None,
        },
        "timestamp": utcnow().isoformat(),
    }
    if fee_transaction is not None:
        quote = fee_transaction.quote
        payload["fee"] = {
            "fee_transaction_id": fee_transaction.id,
            "fee_token": quote.fee_token,
            "fee_total": str(quote.fee_total),
            "platform_share": str(quote.platform_share),
            "creator_reward": str(quote.creator_reward),
            "payer": fee_transaction.payer_wallet,
        }
    return payload


class NotificationSink(Protocol):
    async def notify(self, event: str, payload: Dict[str, Any]) -> None: ...


class LogNotificationSink:
    """Writes every event to the structured log"""

    async def notify(self, event: str, payload: Dict[str, Any]) -> None:
        logger.info("payment_event", event_type=event, request_id=payload["payment"]["id"])


class WebhookNotificationSink:
    """
    POSTs each event to a single URL

    Delivery runs in a background task so the caller never waits on the
    receiving end. One attempt per event, no retry.
    """

    def __init__(
        self,
        url: str,
        secret: str = "",
        client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 10.0,
    ):
        self.url = url
        self.secret = secret
        self.client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._pending: Set[asyncio.Task] = set()

    def sign(self, body: bytes) -> str:
        return hmac.new(self.secret.encode(), body, hashlib.sha256).hexdigest()

    async def notify(self, event: str, payload: Dict[str, Any]) -> None:
        task = asyncio.create_task(self._deliver(event, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, event: str, payload: Dict[str, Any]) -> None:
        body = json.dumps(payload, separators=(",", ":")).encode()
        headers = {
            "Content-Type": "application/json",
            "X-PayLink-Event": event,
        }
        if self.secret:
            headers["X-PayLink-Signature"] = f"sha256={self.sign(body)}"

        try:
            response = await self.client.post(self.url, content=body, headers=headers)
            response.raise_for_status()
            logger.debug("webhook_delivered", event_type=event, status_code=response.status_code)
        except httpx.HTTPError as e:
            logger.warning("webhook_delivery_failed", event_type=event, url=self.url, error=str(e))

    async def drain(self) -> None:
        """Wait for in-flight deliveries"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        await self.client.aclose()


class Notifier:
    """Fans an event out to every configured sink"""

    def __init__(self, sinks: Optional[List[NotificationSink]] = None):
        self.sinks: List[NotificationSink] = list(sinks) if sinks is not None else [LogNotificationSink()]

    async def emit(
        self,
        event: PaymentEvent,
        request: PaymentRequest,
        fee_transaction: Optional[FeeTransaction] = None,
    ) -> None:
        payload = event_payload(event, request, fee_transaction)
        for sink in self.sinks:
            try:
                await sink.notify(event.value, payload)
            except Exception as e:
                logger.error(
                    "notification_failed",
                    event_type=event.value,
                    request_id=request.id,
                    sink=type(sink).__name__,
                    error=str(e),
                )

    async def close(self) -> None:
        for sink in self.sinks:
            close = getattr(sink, "close", None)
            if close is not None:
                await close()
