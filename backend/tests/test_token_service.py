"""Tests for the RTC token service client."""

import json

import httpx
import pytest

from core.errors import RtcConnectionError
from services import TokenService

URL = "https://tokens.example.com/generate"


def service_with(handler, **kwargs):
    return TokenService(base_url=URL, transport=httpx.MockTransport(handler), **kwargs)


@pytest.mark.asyncio
async def test_fetch_token_posts_publisher_request():
    requests = []

    def handler(request: httpx.Request):
        requests.append(request)
        return httpx.Response(200, json={"token": "signed-token"})

    service = service_with(handler, expire_seconds=1800)

    token = await service.fetch_token("ventbox_abc_123", uid=5)

    assert token == "signed-token"
    assert len(requests) == 1
    assert requests[0].method == "POST"
    assert str(requests[0].url) == URL
    assert json.loads(requests[0].content) == {
        "channelName": "ventbox_abc_123",
        "uid": 5,
        "role": "publisher",
        "expireTime": 1800,
    }


@pytest.mark.asyncio
async def test_timeout_is_transient():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(RtcConnectionError) as info:
        await service_with(handler).fetch_token("ventbox_abc_123")

    assert info.value.transient
    assert "timed out" in str(info.value)


@pytest.mark.parametrize("status,transient", [(503, True), (403, False)])
@pytest.mark.asyncio
async def test_error_status_classification(status, transient):
    service = service_with(lambda request: httpx.Response(status, json={"error": "nope"}))

    with pytest.raises(RtcConnectionError) as info:
        await service.fetch_token("ventbox_abc_123")

    assert info.value.transient is transient
    assert str(status) in str(info.value)


@pytest.mark.asyncio
async def test_response_without_token():
    service = service_with(lambda request: httpx.Response(200, json={"ok": True}))

    with pytest.raises(RtcConnectionError) as info:
        await service.fetch_token("ventbox_abc_123")

    assert not info.value.transient


@pytest.mark.asyncio
async def test_unconfigured_service_refuses():
    service = TokenService()
    service.base_url = None

    assert not service.is_configured
    with pytest.raises(RtcConnectionError):
        await service.fetch_token("ventbox_abc_123")
