"""
Minimal NAT-PMP client (RFC 6886) over a raw UDP socket.

Request:  version(1)=0 | opcode(1) | reserved(2) | internal(2) | external(2) | lifetime(4)
Response: version(1) | opcode+128(1) | result(2) | ...
"""

from __future__ import annotations
import ipaddress
import socket
import struct
from typing import Callable, List, Optional

from ..errors import NetworkUnavailableError
from ..logging_setup import get_logger
from .port import Port

log = get_logger("quiver.netbridge.natpmp")

NATPMP_PORT = 5351
NATPMP_VERSION = 0
OP_EXTERNAL_IP = 0
OP_MAP_UDP = 1
OP_MAP_TCP = 2
RESPONSE_OFFSET = 128

READ_TIMEOUT = 5.0
GATEWAY_TIMEOUT = 2.0
DEFAULT_LIFETIME = 86400

RESULT_CODES = {
    0: "success",
    1: "unsupported version",
    2: "not authorized",
    3: "network failure",
    4: "out of resources",
    5: "unsupported opcode",
}


class NATPMPError(NetworkUnavailableError):
    pass


def opcode_for(protocol: str) -> int:
    if protocol == "tcp":
        return OP_MAP_TCP
    if protocol == "udp":
        return OP_MAP_UDP
    raise NATPMPError(f"unsupported protocol: {protocol}")


def build_external_ip_request() -> bytes:
    return struct.pack(">BB", NATPMP_VERSION, OP_EXTERNAL_IP)


def build_mapping_request(opcode: int, internal_port: int, external_port: int, lifetime: int) -> bytes:
    return struct.pack(">BBHHHI", NATPMP_VERSION, opcode, 0, internal_port, external_port, lifetime)


def check_response(data: bytes, opcode: int, min_len: int) -> None:
    if len(data) < min_len:
        raise NATPMPError(f"invalid NAT-PMP response length: {len(data)}")
    version, resp_op, result = struct.unpack(">BBH", data[:4])
    if version != NATPMP_VERSION:
        raise NATPMPError(f"invalid NAT-PMP version: {version}")
    if resp_op != opcode + RESPONSE_OFFSET:
        raise NATPMPError(f"invalid NAT-PMP response opcode: {resp_op}")
    if result != 0:
        raise NATPMPError(f"NAT-PMP error {result}: {RESULT_CODES.get(result, 'unknown')}")


def parse_external_ip(data: bytes) -> str:
    check_response(data, OP_EXTERNAL_IP, 12)
    return str(ipaddress.IPv4Address(data[8:12]))


SocketFactory = Callable[[], socket.socket]


def _udp_socket() -> socket.socket:
    return socket.socket(socket.AF_INET, socket.SOCK_DGRAM)


class NATPMPClient:
    def __init__(self, gateway: str, socket_factory: Optional[SocketFactory] = None,
                 timeout: float = READ_TIMEOUT):
        self.gateway = gateway
        self.timeout = timeout
        self._socket_factory = socket_factory or _udp_socket

    def _request(self, payload: bytes, bufsize: int) -> bytes:
        sock = self._socket_factory()
        try:
            sock.settimeout(self.timeout)
            sock.sendto(payload, (self.gateway, NATPMP_PORT))
            data, _ = sock.recvfrom(bufsize)
            return data
        except OSError as e:
            raise NATPMPError(f"NAT-PMP request to {self.gateway} failed: {e}") from e
        finally:
            sock.close()

    def get_external_ip(self) -> str:
        return parse_external_ip(self._request(build_external_ip_request(), 12))

    def add_port_mapping(self, protocol: str, internal_port: int, external_port: int,
                         lifetime: int = DEFAULT_LIFETIME) -> None:
        opcode = opcode_for(protocol)
        data = self._request(build_mapping_request(opcode, internal_port, external_port, lifetime), 16)
        check_response(data, opcode, 16)

    def remove_port_mapping(self, protocol: str, external_port: int) -> None:
        # lifetime 0 deletes the mapping
        self.add_port_mapping(protocol, 0, external_port, 0)

    def forward_port(self, port: Port) -> None:
        self.add_port_mapping(port.protocol, port.port, port.port, DEFAULT_LIFETIME)
        log.info("NAT-PMP mapping added for %s", port)

    def close_port(self, port: Port) -> None:
        self.remove_port_mapping(port.protocol, port.port)
        log.info("NAT-PMP mapping removed for %s", port)

    @classmethod
    def create(cls, socket_factory: Optional[SocketFactory] = None) -> "NATPMPClient":
        """Locate a responsive gateway and confirm it speaks NAT-PMP."""
        gateway = find_default_gateway(socket_factory=socket_factory)
        client = cls(gateway, socket_factory=socket_factory)
        client.get_external_ip()
        return client


def local_ipv4() -> Optional[str]:
    sock = _udp_socket()
    try:
        sock.connect(("8.8.8.8", 80))
        return sock.getsockname()[0]
    except OSError:
        return None
    finally:
        sock.close()


def gateway_candidates(local_ip: str) -> List[str]:
    octets = local_ip.split(".")
    if len(octets) != 4:
        return []
    prefix = ".".join(octets[:3])
    return [f"{prefix}.1", f"{prefix}.254"]


def find_default_gateway(local_ip: Optional[str] = None,
                         socket_factory: Optional[SocketFactory] = None) -> str:
    local_ip = local_ip or local_ipv4()
    if not local_ip:
        raise NATPMPError("failed to determine local address to find gateway")
    for candidate in gateway_candidates(local_ip):
        client = NATPMPClient(candidate, socket_factory=socket_factory, timeout=GATEWAY_TIMEOUT)
        try:
            client.get_external_ip()
        except NATPMPError as e:
            log.debug("Gateway %s did not answer NAT-PMP: %s", candidate, e)
            continue
        return candidate
    raise NATPMPError("no responsive NAT-PMP gateway found")
