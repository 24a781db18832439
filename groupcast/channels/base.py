from __future__ import annotations
import abc
from dataclasses import dataclass
from typing import Optional
from groupcast.core.retry import RateLimitError, TransientError

class GatewayError(Exception):
    """Root of every failure raised by a gateway client."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

class GatewayUnavailableError(GatewayError, TransientError):
    """Network error, timeout or 5xx."""

class GatewayRateLimitedError(GatewayError, RateLimitError):
    """429 from either surface."""

class ChannelNotFoundError(GatewayError):
    """The remote channel no longer exists."""

class GatewayRequestError(GatewayError):
    """Permanent rejection (4xx other than 404/429) or a malformed response."""

class PairingCodeUnavailableError(GatewayError, TransientError):
    """The gateway answered but carried no pairing code yet."""

@dataclass
class CreatedChannel:
    channel_id: str
    credential: str
    status: str | None = None

@dataclass
class ChannelInfo:
    channel_id: str
    status: str | None = None
    name: str | None = None

@dataclass
class RemoteGroup:
    group_id: str
    name: str
    description: Optional[str] = None
    participants_count: int = 0
    is_admin: bool = False
    avatar_url: Optional[str] = None

class GatewayClient(abc.ABC):
    """Remote messaging gateway.

    Management calls are keyed by the partner credential given at
    construction; session calls take the per-channel credential.
    Every call may fail with a GatewayError subclass and nothing else.
    """

    # management surface
    @abc.abstractmethod
    async def resolve_project_id(self) -> str:
        ...

    @abc.abstractmethod
    async def create_channel(self, name: str, project_id: str) -> CreatedChannel:
        ...

    @abc.abstractmethod
    async def get_channel(self, channel_id: str) -> ChannelInfo:
        ...

    @abc.abstractmethod
    async def delete_channel(self, channel_id: str) -> None:
        ...

    # session surface
    @abc.abstractmethod
    async def health(self, credential: str) -> str:
        """Raw remote status string."""
        ...

    @abc.abstractmethod
    async def get_pairing_code(self, credential: str) -> str:
        """Pairing code image, raw base64 or already a data URI."""
        ...

    @abc.abstractmethod
    async def configure_webhook(self, credential: str, url: str, events: list[str]) -> None:
        ...

    @abc.abstractmethod
    async def send_message(
        self,
        credential: str,
        to: str,
        body: str,
        media_ref: str | None = None,
        media_type: str | None = None,
    ) -> str | None:
        """Returns the remote message id when the gateway reports one."""
        ...

    @abc.abstractmethod
    async def list_groups(self, credential: str) -> list[RemoteGroup]:
        ...

    async def aclose(self) -> None:
        return
