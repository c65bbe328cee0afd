import asyncio

import aiohttp
import pytest
from aioresponses import aioresponses

from async_message_dispatcher.delivery import (
    ACCEPTED_DELIVERY_ID,
    AUTH_HEADER_NAME,
    WebhookClient,
)
from async_message_dispatcher.models import DeliveryError

WEBHOOK_URL = "https://webhook.example.com/send"


def recorded_calls(mocked):
    return [call for calls in mocked.requests.values() for call in calls]


def test_requires_url():
    with pytest.raises(ValueError):
        WebhookClient("")


@pytest.mark.asyncio
async def test_success_returns_message_id_and_sends_auth_header():
    client = WebhookClient(WEBHOOK_URL, auth_key="secret-key")
    with aioresponses() as m:
        m.post(WEBHOOK_URL, status=200, payload={"message": "Accepted", "messageId": "abc-123"})
        result = await client.send("+905551111111", "hello")

        calls = recorded_calls(m)
        assert len(calls) == 1
        assert calls[0].kwargs["json"] == {"to": "+905551111111", "content": "hello"}
        assert calls[0].kwargs["headers"][AUTH_HEADER_NAME] == "secret-key"

    assert result.delivery_id == "abc-123"
    assert result.message == "Accepted"


@pytest.mark.asyncio
async def test_no_auth_header_without_key():
    client = WebhookClient(WEBHOOK_URL)
    with aioresponses() as m:
        m.post(WEBHOOK_URL, status=201, payload={"messageId": "m-9"})
        result = await client.send("+1", "hi")
        assert AUTH_HEADER_NAME not in recorded_calls(m)[0].kwargs["headers"]
    assert result.delivery_id == "m-9"


@pytest.mark.asyncio
async def test_accepted_without_body_uses_placeholder():
    client = WebhookClient(WEBHOOK_URL)
    with aioresponses() as m:
        m.post(WEBHOOK_URL, status=202)
        result = await client.send("+1", "hi")
    assert result.delivery_id == ACCEPTED_DELIVERY_ID
    assert result.message == "Message accepted"


@pytest.mark.asyncio
async def test_non_2xx_is_delivery_error():
    client = WebhookClient(WEBHOOK_URL)
    with aioresponses() as m:
        m.post(WEBHOOK_URL, status=500)
        with pytest.raises(DeliveryError) as excinfo:
            await client.send("+1", "hi")
    assert excinfo.value.status_code == 500
    assert str(excinfo.value).startswith("unexpected response status: 500")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kwargs",
    [
        {"body": "not json"},
        {"payload": ["abc"]},
        {"payload": {"message": "ok"}},
        {"payload": {"message": "ok", "messageId": ""}},
    ],
)
async def test_malformed_success_body_is_delivery_error(kwargs):
    client = WebhookClient(WEBHOOK_URL)
    with aioresponses() as m:
        m.post(WEBHOOK_URL, status=200, **kwargs)
        with pytest.raises(DeliveryError) as excinfo:
            await client.send("+1", "hi")
    assert "malformed webhook response" in str(excinfo.value)


@pytest.mark.asyncio
@pytest.mark.parametrize("exc", [aiohttp.ClientConnectionError("refused"), asyncio.TimeoutError()])
async def test_transport_errors_are_delivery_errors(exc):
    client = WebhookClient(WEBHOOK_URL, timeout=0.5)
    with aioresponses() as m:
        m.post(WEBHOOK_URL, exception=exc)
        with pytest.raises(DeliveryError) as excinfo:
            await client.send("+1", "hi")
    assert excinfo.value.status_code is None
    assert str(excinfo.value).startswith("webhook request failed")
