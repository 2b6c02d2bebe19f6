"""ICE configuration and candidate helpers built on aiortc."""

import ipaddress
import logging
from urllib.parse import urlparse

from aiortc import RTCConfiguration, RTCIceCandidate, RTCIceServer
from aiortc.sdp import candidate_from_sdp

from config import ICE_SERVERS, LAN_FAST_PATH

logger = logging.getLogger(__name__)


def is_private_host(host: str | None) -> bool:
    """True for localhost and loopback/private/link-local addresses."""
    if not host:
        return False
    if host.lower() in ("localhost", "localhost.localdomain") or host.endswith(".local"):
        return True
    try:
        address = ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return False
    return address.is_private or address.is_loopback or address.is_link_local


def select_ice_servers(
    relay_url: str | None,
    ice_servers: list[dict] | None = None,
    lan_fast_path: bool = LAN_FAST_PATH,
) -> list[dict]:
    """
    Pick the ICE servers for a session.

    When the relay itself sits on a private address both peers are most
    likely on the same LAN, so host candidates suffice and STUN round-trips
    only slow gathering down.
    """
    servers = ICE_SERVERS if ice_servers is None else ice_servers
    host = urlparse(relay_url).hostname if relay_url else None
    if lan_fast_path and is_private_host(host):
        logger.info(f"Relay {host} is on a private network, using host candidates only")
        return []
    return list(servers)


def build_rtc_configuration(ice_servers: list[dict]) -> RTCConfiguration:
    """Create RTCConfiguration from ICE server dicts."""
    return RTCConfiguration(
        iceServers=[
            RTCIceServer(
                urls=s["urls"],
                username=s.get("username"),
                credential=s.get("credential"),
            )
            for s in ice_servers
        ]
    )


def parse_candidate(payload: dict) -> RTCIceCandidate | None:
    """
    Convert a browser-style candidate dict
    ({"candidate": "candidate:...", "sdpMid": ..., "sdpMLineIndex": ...})
    into an RTCIceCandidate. Returns None for end-of-candidates.
    """
    line = (payload or {}).get("candidate") or ""
    if not line:
        return None
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]
    candidate = candidate_from_sdp(line)
    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    return candidate
