"""In-memory registry of live devices and their pairings."""

import logging

from signaling.models import ConnectionHandle, DeviceInfo

logger = logging.getLogger(__name__)


class DeviceRegistry:
    """
    Maps device identifiers to connection handles and tracks pairings.

    Pairings are stored as two directed entries so that either side can look
    up its peer. A device appears in at most one pairing at a time.
    Nothing is persisted; the registry lives exactly as long as the relay.
    """

    def __init__(self) -> None:
        self._devices: dict[str, ConnectionHandle] = {}
        self._pairings: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._devices)

    def __contains__(self, device_id: str) -> bool:
        return device_id in self._devices

    # --- Devices ---

    def register(
        self, device_id: str, handle: ConnectionHandle
    ) -> ConnectionHandle | None:
        """Bind device_id to handle (last write wins). Returns the replaced handle."""
        previous = self._devices.get(device_id)
        self._devices[device_id] = handle
        if previous is not None and previous is not handle:
            logger.info(f"Device {device_id} re-registered from a new connection")
            return previous
        return None

    def unregister(
        self, device_id: str, handle: ConnectionHandle | None = None
    ) -> bool:
        """
        Remove device_id. When handle is given, only remove the entry if it
        still belongs to that handle (a newer registration wins).
        """
        current = self._devices.get(device_id)
        if current is None:
            return False
        if handle is not None and current is not handle:
            return False
        del self._devices[device_id]
        return True

    def get(self, device_id: str) -> ConnectionHandle | None:
        return self._devices.get(device_id)

    def handles(self) -> list[ConnectionHandle]:
        return list(self._devices.values())

    def list_devices(self) -> list[DeviceInfo]:
        """Every registered device and whether it currently has a pairing."""
        return [
            DeviceInfo(id=device_id, connected=device_id in self._pairings)
            for device_id in self._devices
        ]

    def stale_devices(self) -> list[tuple[str, ConnectionHandle]]:
        """Entries whose handle no longer reports itself connected."""
        return [
            (device_id, handle)
            for device_id, handle in self._devices.items()
            if not handle.is_connected
        ]

    # --- Pairings ---

    def peer_of(self, device_id: str) -> str | None:
        return self._pairings.get(device_id)

    def is_paired(self, device_id: str) -> bool:
        return device_id in self._pairings

    def pair(self, a: str, b: str) -> list[tuple[str, str]]:
        """
        Pair a with b, first dissolving any pairing either side was in.
        Returns the dissolved (device, former_peer) pairs.
        """
        if a == b:
            raise ValueError("cannot pair a device with itself")

        dissolved = []
        for device_id in (a, b):
            former = self.unpair(device_id)
            if former is not None:
                dissolved.append((device_id, former))

        self._pairings[a] = b
        self._pairings[b] = a
        return dissolved

    def unpair(self, device_id: str) -> str | None:
        """Remove both directed entries of device_id's pairing. Returns the former peer."""
        peer_id = self._pairings.pop(device_id, None)
        if peer_id is None:
            return None
        if self._pairings.get(peer_id) == device_id:
            del self._pairings[peer_id]
        return peer_id

    def clear(self) -> None:
        self._devices.clear()
        self._pairings.clear()
