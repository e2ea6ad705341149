import logging
from typing import Any, Dict

import httpx

from .errors import DeliveryError
from .schemas import DeliveryOutcome


logger = logging.getLogger("uvicorn.error")


class WebhookDeliveryAdapter:
    """POSTs the outcome as JSON to the URL held in the notification target."""

    platform = "webhook"

    def __init__(self, timeout: float = 15.0):
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )

    async def deliver(self, target: str, outcome: DeliveryOutcome) -> None:
        """Hand the outcome off.

        Raises:
            DeliveryError: ``retryable`` for 5xx, 429 and transport errors; not
                retryable for a missing target or another 4xx.
        """
        if not target or not str(target).startswith(("http://", "https://")):
            raise DeliveryError(f"Invalid webhook target: {target!r}", retryable=False)
        payload: Dict[str, Any] = outcome.model_dump(mode="json")
        try:
            resp = await self.client.post(target, json=payload, headers={"Content-Type": "application/json"})
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            code = e.response.status_code
            retryable = code >= 500 or code == 429
            raise DeliveryError(f"Webhook target returned HTTP {code}", retryable=retryable) from e
        except httpx.RequestError as e:
            raise DeliveryError(f"Webhook delivery failed: {e}") from e

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


class LogDeliveryAdapter:
    """Writes outcomes to the service log; for local development."""

    platform = "log"

    async def deliver(self, target: str, outcome: DeliveryOutcome) -> None:
        logger.info("Delivery to %s: %s", target, outcome.model_dump(mode="json"))

    async def close(self) -> None:
        return None


def default_adapters() -> Dict[str, Any]:
    adapters = [WebhookDeliveryAdapter(), LogDeliveryAdapter()]
    return {adapter.platform: adapter for adapter in adapters}
