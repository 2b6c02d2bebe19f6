"""Pydantic models for the relay wire protocol."""

from typing import Any, Protocol

from pydantic import BaseModel, Field


class ClientEvent:
    """Event names sent by peers to the relay."""
    REGISTER = "register"
    GET_DEVICES = "getDevices"
    CONNECT_TO_DEVICE = "connectToDevice"
    SIGNAL = "signal"
    DISCONNECT_PEER = "disconnectPeer"


class ServerEvent:
    """Event names sent by the relay to peers."""
    DEVICE_LIST = "deviceList"
    PEER_CONNECTED = "peerConnected"
    PEER_DISCONNECTED = "peerDisconnected"
    SIGNAL = "signal"
    ERROR = "error"


class RelayError:
    """Error strings reported to the initiating client."""
    DEVICE_NOT_FOUND = "Device not found"
    CANNOT_CONNECT_TO_SELF = "Cannot connect to yourself"
    NOT_REGISTERED = "Device not registered"
    INVALID_DEVICE_ID = "Invalid device ID"
    INVALID_MESSAGE = "Invalid message"
    UNKNOWN_EVENT = "Unknown event"


class RelayMessage(BaseModel):
    """A single websocket frame in either direction."""
    event: str
    data: Any = None


class DeviceInfo(BaseModel):
    """One entry of the broadcast device list."""
    id: str
    connected: bool = False


class SignalRequest(BaseModel):
    """Client → relay signal payload."""
    to: str
    data: Any = None


class SignalEnvelope(BaseModel):
    """Relay → client signal payload."""
    from_: str = Field(alias="from")
    data: Any = None

    model_config = {"populate_by_name": True}

    def wire(self) -> dict:
        return self.model_dump(by_alias=True)


class ConnectionHandle(Protocol):
    """What the relay needs from a live client connection."""

    device_id: str | None

    @property
    def is_connected(self) -> bool: ...

    async def send(self, event: str, data: Any = None) -> None: ...
