import json

import httpx
import pytest

from groupcast.channels.base import (
    ChannelNotFoundError, GatewayRateLimitedError, GatewayRequestError, GatewayUnavailableError,
    PairingCodeUnavailableError,
)
from groupcast.channels.whapi import WhapiClient
from groupcast.core.retry import TransientError


def client_for(handler):
    return WhapiClient("partner", manager_url="https://manager.test", gate_url="https://gate.test",
                       transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
@pytest.mark.parametrize("code,exc", [
    (404, ChannelNotFoundError),
    (429, GatewayRateLimitedError),
    (500, GatewayUnavailableError),
    (503, GatewayUnavailableError),
    (400, GatewayRequestError),
    (401, GatewayRequestError),
])
async def test_http_errors_are_classified(code, exc):
    c = client_for(lambda req: httpx.Response(code, text="nope"))
    with pytest.raises(exc) as info:
        await c.get_channel("CH1")
    assert info.value.status_code == code
    await c.aclose()


@pytest.mark.asyncio
async def test_network_errors_are_transient():
    def handler(req):
        raise httpx.ConnectError("refused", request=req)

    c = client_for(handler)
    with pytest.raises(GatewayUnavailableError) as info:
        await c.health("tok")
    assert isinstance(info.value, TransientError)
    await c.aclose()


@pytest.mark.asyncio
async def test_non_json_body_is_a_request_error():
    c = client_for(lambda req: httpx.Response(200, text="<html>"))
    with pytest.raises(GatewayRequestError):
        await c.health("tok")
    await c.aclose()


@pytest.mark.asyncio
async def test_create_channel_uses_partner_token():
    seen = {}

    def handler(req):
        seen["method"] = req.method
        seen["url"] = str(req.url)
        seen["auth"] = req.headers["authorization"]
        seen["body"] = json.loads(req.content)
        return httpx.Response(200, json={"id": "CH9", "token": "secret", "status": "launched"})

    c = client_for(handler)
    created = await c.create_channel("groupcast_u1", "proj-1")
    assert created.channel_id == "CH9"
    assert created.credential == "secret"
    assert seen == {
        "method": "PUT",
        "url": "https://manager.test/channels",
        "auth": "Bearer partner",
        "body": {"name": "groupcast_u1", "projectId": "proj-1"},
    }
    await c.aclose()


@pytest.mark.asyncio
async def test_create_channel_without_token_is_rejected():
    c = client_for(lambda req: httpx.Response(200, json={"id": "CH9"}))
    with pytest.raises(GatewayRequestError):
        await c.create_channel("n", "p")
    await c.aclose()


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [[{"id": "p1"}, {"id": "p2"}], {"projects": [{"id": "p1"}]}])
async def test_resolve_project_id_takes_first_project(body):
    c = client_for(lambda req: httpx.Response(200, json=body))
    assert await c.resolve_project_id() == "p1"
    await c.aclose()


@pytest.mark.asyncio
async def test_resolve_project_id_without_projects():
    c = client_for(lambda req: httpx.Response(200, json=[]))
    with pytest.raises(GatewayRequestError):
        await c.resolve_project_id()
    await c.aclose()


@pytest.mark.asyncio
@pytest.mark.parametrize("body,expected", [
    ({"status": "AUTH"}, "AUTH"),
    ({"status": {"code": 4, "text": "AUTH"}}, "AUTH"),
])
async def test_health_status_shapes(body, expected):
    def handler(req):
        assert req.url.path == "/health"
        assert req.headers["authorization"] == "Bearer chan-token"
        return httpx.Response(200, json=body)

    c = client_for(handler)
    assert await c.health("chan-token") == expected
    await c.aclose()


@pytest.mark.asyncio
async def test_pairing_code_from_login_endpoint():
    def handler(req):
        assert req.url.path == "/users/login"
        return httpx.Response(200, json={"status": "OK", "base64": "data:image/png;base64,AAAA"})

    c = client_for(handler)
    assert await c.get_pairing_code("tok") == "data:image/png;base64,AAAA"
    await c.aclose()


@pytest.mark.asyncio
async def test_pairing_code_missing_is_transient():
    c = client_for(lambda req: httpx.Response(200, json={"status": "OK"}))
    with pytest.raises(PairingCodeUnavailableError) as info:
        await c.get_pairing_code("tok")
    assert isinstance(info.value, TransientError)
    await c.aclose()


@pytest.mark.asyncio
async def test_send_text_and_media():
    calls = []

    def handler(req):
        calls.append((req.url.path, json.loads(req.content)))
        if req.url.path == "/messages/text":
            return httpx.Response(200, json={"sent": True, "message": {"id": "m-1"}})
        return httpx.Response(200, json={"sent": True, "id": "m-2"})

    c = client_for(handler)
    assert await c.send_message("tok", "g1@g.us", "hello") == "m-1"
    assert await c.send_message("tok", "g1@g.us", "look", media_ref="https://x/a.png") == "m-2"
    assert calls == [
        ("/messages/text", {"to": "g1@g.us", "body": "hello"}),
        ("/messages/image", {"to": "g1@g.us", "media": "https://x/a.png", "caption": "look"}),
    ]
    await c.aclose()


@pytest.mark.asyncio
async def test_send_reported_not_sent_is_an_error():
    c = client_for(lambda req: httpx.Response(200, json={"sent": False}))
    with pytest.raises(GatewayRequestError):
        await c.send_message("tok", "g1", "hello")
    await c.aclose()


@pytest.mark.asyncio
async def test_list_groups_maps_fields():
    body = {"groups": [
        {"id": "g1@g.us", "name": "Team", "participants": [{"id": "a"}, {"id": "b"}], "isAdmin": True},
        {"id": "g2@g.us", "subject": "Old style", "size": 7, "chat_pic": "https://pic"},
        {"name": "no id"},
    ]}
    c = client_for(lambda req: httpx.Response(200, json=body))
    groups = await c.list_groups("tok")
    assert [(g.group_id, g.name, g.participants_count, g.is_admin) for g in groups] == [
        ("g1@g.us", "Team", 2, True),
        ("g2@g.us", "Old style", 7, False),
    ]
    assert groups[1].avatar_url == "https://pic"
    await c.aclose()


@pytest.mark.asyncio
async def test_configure_webhook_payload():
    seen = {}

    def handler(req):
        seen["method"] = req.method
        seen["body"] = json.loads(req.content)
        return httpx.Response(200, json={})

    c = client_for(handler)
    await c.configure_webhook("tok", "https://example.test/webhooks/whapi", ["channel"])
    assert seen["method"] == "PATCH"
    assert seen["body"] == {"webhooks": [{"url": "https://example.test/webhooks/whapi", "events": ["channel"], "mode": "body"}]}
    await c.aclose()
