import json
from types import SimpleNamespace

import httpx
import pytest

from notifywise.errors import GatewayError
from notifywise.gateway import OneConfirmedGateway, UnconfiguredGateway, build_gateway


def make_config(**overrides):
    values = dict(
        WHATSAPP_API_KEY="test-key",
        WHATSAPP_API_URL="https://gateway.test/api/v1",
        WHATSAPP_TIMEOUT_SECONDS=30.0,
        WHATSAPP_LANGUAGE_ID=3,
        WHATSAPP_TEMPLATE_ID=97,
        WHATSAPP_TEMPLATE_IMAGE_URL="https://gateway.test/img.jpeg",
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def make_gateway(handler, config=None):
    config = config or make_config()
    client = httpx.Client(
        base_url=config.WHATSAPP_API_URL,
        transport=httpx.MockTransport(handler),
        headers={"Authorization": f"Bearer {config.WHATSAPP_API_KEY}"},
    )
    return OneConfirmedGateway(config, client=client)


def test_send_text_posts_template_payload():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "wamid-42"})

    result = make_gateway(handler).send_text("212612345678", "Hello Sara")

    assert result.ok is True
    assert result.provider_id == "wamid-42"
    assert seen["url"] == "https://gateway.test/api/v1/messages"
    assert seen["auth"] == "Bearer test-key"
    assert seen["body"] == {
        "language_id": 3,
        "template_id": 97,
        "phone": "212612345678",
        "data": {
            "broadcast_template_image": "https://gateway.test/img.jpeg",
            "phone": "212612345678",
            "message": "Hello Sara",
        },
    }


def test_missing_provider_id_is_stored_as_none():
    result = make_gateway(lambda request: httpx.Response(201, json={"ok": True})).send_text("1", "x")
    assert result.ok is True
    assert result.provider_id is None

    result = make_gateway(lambda request: httpx.Response(200, json={"message_id": 77})).send_text("1", "x")
    assert result.provider_id == "77"


def test_non_2xx_returns_failure_with_provider_text():
    result = make_gateway(
        lambda request: httpx.Response(400, json={"message": "Invalid phone"})
    ).send_text("1", "x")
    assert result.ok is False
    assert result.error_text == "Invalid phone"

    result = make_gateway(lambda request: httpx.Response(503, text="busy")).send_text("1", "x")
    assert result.error_text == "Unexpected response status: 503"


def test_timeout_raises_gateway_error():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(GatewayError) as exc_info:
        make_gateway(handler).send_text("1", "x")
    assert "timed out" in exc_info.value.message


def test_connection_error_raises_gateway_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(GatewayError):
        make_gateway(handler).send_text("1", "x")


def test_build_gateway_without_key_never_sends():
    gateway = build_gateway(make_config(WHATSAPP_API_KEY=""))

    assert isinstance(gateway, UnconfiguredGateway)
    result = gateway.send_text("212612345678", "x")
    assert result.ok is False
    assert result.error_text == "WhatsApp API key not configured"
