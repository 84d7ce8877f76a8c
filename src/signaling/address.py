from __future__ import annotations

import ipaddress
import logging
import socket
from dataclasses import dataclass

from signaling.errors import AddressParseError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PeerAddress:
    host: str
    port: int

    @classmethod
    def parse(cls, text: str) -> PeerAddress:
        """Parse ``host:port`` (or ``[v6-host]:port``).

        Raises:
            AddressParseError: if the text is not ASCII, the host is empty or the
                port is not a decimal number in 1..65535.
        """

        if not isinstance(text, str) or not text.isascii():
            raise AddressParseError(f"Peer address must be ASCII host:port, got {text!r}")

        value = text.strip()
        if value.startswith("["):
            host, sep, port_text = value[1:].partition("]:")
            if not sep:
                raise AddressParseError(f"Malformed IPv6 peer address {text!r}")
        else:
            host, sep, port_text = value.rpartition(":")
            if not sep:
                raise AddressParseError(f"Peer address {text!r} has no port")
            if ":" in host:
                raise AddressParseError(f"IPv6 hosts must be bracketed, got {text!r}")

        if not host or any(ch.isspace() for ch in host):
            raise AddressParseError(f"Peer address {text!r} has no valid host")
        if not port_text.isdecimal():
            raise AddressParseError(f"Port must be a decimal number, got {port_text!r}")

        port = int(port_text)
        if not 1 <= port <= 65535:
            raise AddressParseError(f"Port out of range: {port}")

        return cls(host=host, port=port)

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


def local_ip_address() -> str:
    """Best-effort site-local IPv4 address of this host, or ``"N/A"``."""

    # A UDP connect sends nothing; it only asks the kernel which interface routes outward.
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect(("10.255.255.255", 1))
        candidate = sock.getsockname()[0]
    except OSError:
        LOGGER.debug("Could not determine local IP address", exc_info=True)
        return "N/A"
    finally:
        sock.close()

    try:
        addr = ipaddress.ip_address(candidate)
    except ValueError:
        return "N/A"
    if addr.is_loopback or addr.is_unspecified:
        return "N/A"
    return candidate
