from __future__ import annotations
from typing import Any
import httpx
from groupcast.channels.base import (
    ChannelInfo, ChannelNotFoundError, CreatedChannel, GatewayClient,
    GatewayRateLimitedError, GatewayRequestError, GatewayUnavailableError,
    PairingCodeUnavailableError, RemoteGroup,
)
from groupcast.config import Settings
from groupcast.observability.logging import get_logger
from groupcast.observability import metrics

log = get_logger("whapi")

class WhapiClient(GatewayClient):
    """httpx client for the Whapi management (partner) and gate (session) APIs.

    Pairing codes come from the documented ``GET /users/login`` endpoint only.
    """
    def __init__(
        self,
        partner_token: str,
        manager_url: str = "https://manager.whapi.cloud",
        gate_url: str = "https://gate.whapi.cloud",
        timeout_s: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._partner_token = partner_token
        self._manager_url = manager_url.rstrip("/")
        self._gate_url = gate_url.rstrip("/")
        self._http = httpx.AsyncClient(timeout=timeout_s, transport=transport)

    @classmethod
    def from_settings(cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> "WhapiClient":
        return cls(
            partner_token=settings.whapi_partner_token,
            manager_url=settings.whapi_manager_url,
            gate_url=settings.whapi_gate_url,
            timeout_s=settings.http_timeout_s,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, op: str, method: str, url: str, token: str, json: dict[str, Any] | None = None,
                       params: dict[str, Any] | None = None) -> Any:
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        try:
            resp = await self._http.request(method, url, headers=headers, json=json, params=params)
        except httpx.TimeoutException as e:
            metrics.gateway_calls.labels(op=op, outcome="timeout").inc()
            raise GatewayUnavailableError(f"{op}: timeout") from e
        except httpx.HTTPError as e:
            metrics.gateway_calls.labels(op=op, outcome="network").inc()
            raise GatewayUnavailableError(f"{op}: {type(e).__name__}: {e}") from e

        code = resp.status_code
        if code >= 400:
            detail = resp.text[:500]
            metrics.gateway_calls.labels(op=op, outcome=str(code)).inc()
            log.warning("gateway_call_failed", op=op, status=code, detail=detail)
            if code == 404:
                raise ChannelNotFoundError(f"{op}: not found", status_code=code)
            if code == 429:
                raise GatewayRateLimitedError(f"{op}: rate limited", status_code=code)
            if code >= 500:
                raise GatewayUnavailableError(f"{op}: HTTP {code}: {detail}", status_code=code)
            raise GatewayRequestError(f"{op}: HTTP {code}: {detail}", status_code=code)

        metrics.gateway_calls.labels(op=op, outcome="ok").inc()
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise GatewayRequestError(f"{op}: response is not JSON", status_code=code) from e

    async def _object(self, op: str, method: str, url: str, token: str, **kw: Any) -> dict[str, Any]:
        data = await self._request(op, method, url, token, **kw)
        if not isinstance(data, dict):
            raise GatewayRequestError(f"{op}: expected a JSON object")
        return data

    def _manager(self, path: str) -> str:
        return f"{self._manager_url}{path}"

    def _gate(self, path: str) -> str:
        return f"{self._gate_url}{path}"

    # management surface

    async def resolve_project_id(self) -> str:
        data = await self._request("projects.list", "GET", self._manager("/projects"), self._partner_token)
        projects = data.get("projects", []) if isinstance(data, dict) else data
        first = projects[0] if isinstance(projects, list) and projects else None
        if not isinstance(first, dict) or not first.get("id"):
            raise GatewayRequestError("projects.list: no projects in partner account")
        return str(first["id"])

    async def create_channel(self, name: str, project_id: str) -> CreatedChannel:
        data = await self._object("channel.create", "PUT", self._manager("/channels"), self._partner_token,
                                  json={"name": name, "projectId": project_id})
        channel_id, token = data.get("id"), data.get("token")
        if not channel_id or not token:
            raise GatewayRequestError("channel.create: response carries no id or token")
        return CreatedChannel(channel_id=str(channel_id), credential=str(token), status=data.get("status"))

    async def get_channel(self, channel_id: str) -> ChannelInfo:
        data = await self._object("channel.get", "GET", self._manager(f"/channels/{channel_id}"), self._partner_token)
        return ChannelInfo(channel_id=str(data.get("id") or channel_id), status=data.get("status"), name=data.get("name"))

    async def delete_channel(self, channel_id: str) -> None:
        await self._request("channel.delete", "DELETE", self._manager(f"/channels/{channel_id}"), self._partner_token)

    # session surface

    async def health(self, credential: str) -> str:
        data = await self._object("health", "GET", self._gate("/health"), credential)
        status = data.get("status")
        # newer gate versions report {"code": n, "text": "..."}
        if isinstance(status, dict):
            status = status.get("text")
        if not status:
            raise GatewayRequestError("health: response carries no status")
        return str(status)

    async def get_pairing_code(self, credential: str) -> str:
        data = await self._object("pairing_code", "GET", self._gate("/users/login"), credential)
        code = data.get("base64") or data.get("qr")
        if not code:
            raise PairingCodeUnavailableError("pairing_code: no code in response")
        return str(code)

    async def configure_webhook(self, credential: str, url: str, events: list[str]) -> None:
        await self._request("settings.webhook", "PATCH", self._gate("/settings"), credential,
                            json={"webhooks": [{"url": url, "events": events, "mode": "body"}]})

    async def send_message(self, credential: str, to: str, body: str, media_ref: str | None = None,
                           media_type: str | None = None) -> str | None:
        if media_ref:
            kind = media_type or "image"
            data = await self._object(f"messages.{kind}", "POST", self._gate(f"/messages/{kind}"), credential,
                                       json={"to": to, "media": media_ref, "caption": body})
        else:
            data = await self._object("messages.text", "POST", self._gate("/messages/text"), credential,
                                       json={"to": to, "body": body})
        if data.get("sent") is False:
            raise GatewayRequestError(f"send to {to}: gateway reported not sent")
        msg = data.get("message") or {}
        mid = msg.get("id") if isinstance(msg, dict) else None
        return mid or data.get("id")

    async def list_groups(self, credential: str) -> list[RemoteGroup]:
        data = await self._object("groups.list", "GET", self._gate("/groups"), credential, params={"count": 500})
        out: list[RemoteGroup] = []
        for g in data.get("groups", []):
            gid = g.get("id")
            if not gid:
                continue
            out.append(RemoteGroup(
                group_id=str(gid),
                name=g.get("name") or g.get("subject") or "Unknown Group",
                description=g.get("description"),
                participants_count=len(g.get("participants") or []) or int(g.get("size") or 0),
                is_admin=bool(g.get("isAdmin") or g.get("is_admin")),
                avatar_url=g.get("chat_pic") or g.get("avatar"),
            ))
        return out
