"""Wake-on-LAN - powers on devices that are off or asleep."""

import asyncio
import logging
import socket

from bootherd.config import normalize_mac

logger = logging.getLogger(__name__)


def build_magic_packet(mac_address: str) -> bytes:
    """Six 0xFF bytes followed by the MAC address repeated 16 times."""
    mac = bytes.fromhex(normalize_mac(mac_address).replace(":", ""))
    return b"\xff" * 6 + mac * 16


class Waker:
    """Sends Wake-on-LAN magic packets as UDP broadcasts."""

    def __init__(self, broadcast_address: str = "255.255.255.255", port: int = 9):
        self.broadcast_address = broadcast_address
        self.port = port

    def _send(self, packet: bytes):
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.sendto(packet, (self.broadcast_address, self.port))

    async def wake(self, mac_address: str):
        """Send a magic packet for the given MAC address. Raises OSError if sending fails."""
        packet = build_magic_packet(mac_address)
        await asyncio.to_thread(self._send, packet)
        logger.info(f"Sent Wake-on-LAN packet to {mac_address} via {self.broadcast_address}:{self.port}")
