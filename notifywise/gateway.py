from dataclasses import dataclass
from typing import Protocol

import httpx
import structlog

from .config import settings
from .errors import GatewayError

logger = structlog.get_logger("notifywise.gateway")


@dataclass(frozen=True)
class GatewayResult:
    ok: bool
    provider_id: str | None = None
    error_text: str | None = None


class MessagingGateway(Protocol):
    def send_text(self, destination: str, content: str) -> GatewayResult:
        ...


class UnconfiguredGateway:
    """Used when no provider credentials are set: every send fails without I/O."""

    def send_text(self, destination: str, content: str) -> GatewayResult:
        logger.warning("gateway_not_configured", destination=destination)
        return GatewayResult(ok=False, error_text="WhatsApp API key not configured")


class OneConfirmedGateway:
    def __init__(self, config=settings, client: httpx.Client | None = None):
        self.config = config
        self._client = client or httpx.Client(
            base_url=config.WHATSAPP_API_URL,
            timeout=config.WHATSAPP_TIMEOUT_SECONDS,
            headers={
                "Authorization": f"Bearer {config.WHATSAPP_API_KEY}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )

    def close(self) -> None:
        self._client.close()

    def _payload(self, destination: str, content: str) -> dict:
        return {
            "language_id": self.config.WHATSAPP_LANGUAGE_ID,
            "template_id": self.config.WHATSAPP_TEMPLATE_ID,
            "phone": destination,
            "data": {
                "broadcast_template_image": self.config.WHATSAPP_TEMPLATE_IMAGE_URL,
                "phone": destination,
                "message": content,
            },
        }

    def send_text(self, destination: str, content: str) -> GatewayResult:
        try:
            response = self._client.post("/messages", json=self._payload(destination, content))
        except httpx.TimeoutException as exc:
            logger.error("gateway_request_timeout", destination=destination)
            raise GatewayError("WhatsApp gateway timed out") from exc
        except httpx.HTTPError as exc:
            logger.error(
                "gateway_request_failed",
                destination=destination,
                error=str(exc),
            )
            raise GatewayError(f"WhatsApp gateway unreachable: {exc}") from exc

        if response.status_code // 100 != 2:
            error_text = _error_text(response)
            logger.error(
                "gateway_request_rejected",
                destination=destination,
                status=response.status_code,
                error=error_text,
            )
            return GatewayResult(ok=False, error_text=error_text)

        body = _json_or_empty(response)
        raw_id = body.get("id") or body.get("message_id")
        provider_id = str(raw_id) if raw_id else None
        logger.info("gateway_request_ok", destination=destination, provider_id=provider_id)
        return GatewayResult(ok=True, provider_id=provider_id)


def _json_or_empty(response: httpx.Response) -> dict:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _error_text(response: httpx.Response) -> str:
    body = _json_or_empty(response)
    return str(
        body.get("message")
        or body.get("error")
        or f"Unexpected response status: {response.status_code}"
    )


def build_gateway(config=settings) -> MessagingGateway:
    if not config.WHATSAPP_API_KEY:
        return UnconfiguredGateway()
    return OneConfirmedGateway(config)
