from __future__ import annotations
from datetime import datetime, timedelta

import pytest
import pytest_asyncio

from groupcast.channels.base import (
    ChannelInfo, ChannelNotFoundError, CreatedChannel, GatewayClient, GatewayRequestError,
    GatewayUnavailableError, PairingCodeUnavailableError, RemoteGroup,
)
from groupcast.config import Settings
from groupcast.core.dispatch import DispatchEngine
from groupcast.core.orchestrator import ChannelOrchestrator
from groupcast.domain.models import ConnectionStatus
from groupcast.persistence.db import make_engine, make_session_factory
from groupcast.persistence.migrations import init_db
from groupcast.persistence.repo import Repo


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingSleep:
    """Records backoff delays and moves the fake clock instead of waiting."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self.clock.advance(seconds)


class FakeGateway(GatewayClient):
    """In-memory gateway. Channels are keyed by id; credentials are 'tok-<id>'."""

    def __init__(self):
        self.channels: dict[str, dict] = {}
        self.project_id = "proj-1"
        self.project_calls = 0
        self.created: list[str] = []
        self.deleted: list[str] = []
        self.webhooks: list[tuple[str, str, list[str]]] = []
        self.sent: list[tuple[str, str]] = []
        self.groups: list[RemoteGroup] = []
        self.pairing_code = "iVBORw0KGgoAAAANSUhEUg"
        self.pairing_failures = 0
        self.pairing_gone = False
        self.pairing_calls = 0
        self.health_calls = 0
        self.health_error: Exception | None = None
        self.fail_delete = False
        self.fail_webhook = False
        self.send_failures: set[str] = set()

    def add_channel(self, channel_id: str, status: str) -> str:
        token = f"tok-{channel_id}"
        self.channels[channel_id] = {"token": token, "status": status}
        return token

    def _by_token(self, credential: str) -> str:
        for cid, ch in self.channels.items():
            if ch["token"] == credential:
                return cid
        raise ChannelNotFoundError("channel not found", status_code=404)

    async def resolve_project_id(self) -> str:
        self.project_calls += 1
        return self.project_id

    async def create_channel(self, name: str, project_id: str) -> CreatedChannel:
        cid = f"CH{len(self.created) + 1}"
        token = self.add_channel(cid, "launched")
        self.channels[cid]["name"] = name
        self.channels[cid]["project_id"] = project_id
        self.created.append(cid)
        return CreatedChannel(channel_id=cid, credential=token, status="launched")

    async def get_channel(self, channel_id: str) -> ChannelInfo:
        if channel_id not in self.channels:
            raise ChannelNotFoundError("channel not found", status_code=404)
        return ChannelInfo(channel_id=channel_id, status=self.channels[channel_id]["status"])

    async def delete_channel(self, channel_id: str) -> None:
        if self.fail_delete:
            raise GatewayUnavailableError("delete failed", status_code=503)
        if channel_id not in self.channels:
            raise ChannelNotFoundError("channel not found", status_code=404)
        self.deleted.append(channel_id)
        del self.channels[channel_id]

    async def health(self, credential: str) -> str:
        self.health_calls += 1
        if self.health_error is not None:
            raise self.health_error
        return self.channels[self._by_token(credential)]["status"]

    async def get_pairing_code(self, credential: str) -> str:
        self.pairing_calls += 1
        if self.pairing_gone:
            raise ChannelNotFoundError("channel not found", status_code=404)
        self._by_token(credential)
        if self.pairing_failures > 0:
            self.pairing_failures -= 1
            raise PairingCodeUnavailableError("no code yet")
        return self.pairing_code

    async def configure_webhook(self, credential: str, url: str, events: list[str]) -> None:
        if self.fail_webhook:
            raise GatewayRequestError("settings rejected", status_code=400)
        self.webhooks.append((self._by_token(credential), url, events))

    async def send_message(self, credential, to, body, media_ref=None, media_type=None):
        self._by_token(credential)
        self.sent.append((to, body))
        if to in self.send_failures:
            raise GatewayUnavailableError(f"send to {to} failed", status_code=503)
        return f"msg-{len(self.sent)}"

    async def list_groups(self, credential: str) -> list[RemoteGroup]:
        self._by_token(credential)
        return list(self.groups)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        data_dir=str(tmp_path),
        sqlite_path=str(tmp_path / "groupcast.sqlite"),
        whapi_partner_token="partner-token",
        public_base_url="https://example.test",
        client_api_keys=["k1"],
        dispatch_enabled=False,
        json_logs=False,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep(clock):
    return RecordingSleep(clock)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest_asyncio.fixture
async def engine(settings):
    eng = make_engine(settings)
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def orchestrator(settings, session_factory, gateway, clock, sleep):
    return ChannelOrchestrator(settings, session_factory, gateway, clock=clock, sleep=sleep)


@pytest.fixture
def dispatcher(settings, session_factory, gateway, clock):
    return DispatchEngine(settings, session_factory, gateway, clock=clock)


@pytest.fixture
def seed_channel(session_factory, gateway, clock):
    """Give a user a channel on the fake gateway and a matching local record."""

    async def _seed(user_id: str, channel_id: str = "CH-SEED", remote_status: str = "authenticated",
                    local_status: str = ConnectionStatus.connected.value, age_s: float = 3600):
        token = gateway.add_channel(channel_id, remote_status)
        async with session_factory() as s:
            repo = Repo(s)
            await repo.ensure_connection(user_id, clock(), 3)
            created_at = clock() - timedelta(seconds=age_s)
            await repo.attach_channel(user_id, channel_id, token, local_status, created_at)
            await s.commit()
        return token

    return _seed


@pytest.fixture
def load_record():
    async def _load(session_factory, user_id: str):
        async with session_factory() as s:
            return await Repo(s).get_connection(user_id)

    return _load
