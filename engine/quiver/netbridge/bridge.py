"""
Port forwarding front end.

Forwarding is advisory: every open/close returns a PortForwardingResult
rather than raising, so callers can fall back to manual forwarding. Only
malformed input (unknown protocol) raises.
"""

from __future__ import annotations
import socket
import threading
from typing import Dict, List, Optional, Protocol, Set

from ..errors import NetworkUnavailableError, NotFoundError, QuiverError
from ..logging_setup import get_logger
from .natpmp import NATPMPClient
from .port import ForwardingMethod, Port, PortForwardingResult, parse_port, port_key, split_protocols
from .upnp import UPnPManager

log = get_logger("quiver.netbridge")

FORWARD_FAILED = "Port forwarding failed: UPnP and NAT-PMP methods unsuccessful"
CLOSE_FAILED = "Port closing failed: UPnP and NAT-PMP methods unsuccessful"


class ForwardingStrategy(Protocol):
    method: ForwardingMethod

    def forward_port(self, port: Port) -> None: ...

    def close_port(self, port: Port) -> None: ...

    def get_public_ip(self) -> str: ...


class UPnPStrategy:
    method = ForwardingMethod.UPNP

    def __init__(self, manager: UPnPManager):
        self.manager = manager

    def forward_port(self, port: Port) -> None:
        self.manager.forward_port(port)

    def close_port(self, port: Port) -> None:
        self.manager.close_port(port)

    def get_public_ip(self) -> str:
        return self.manager.get_public_ip()


class NATPMPStrategy:
    method = ForwardingMethod.NATPMP

    def __init__(self, client: NATPMPClient):
        self.client = client

    def forward_port(self, port: Port) -> None:
        self.client.forward_port(port)

    def close_port(self, port: Port) -> None:
        self.client.close_port(port)

    def get_public_ip(self) -> str:
        return self.client.get_external_ip()


def get_local_ip() -> str:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect(("8.8.8.8", 80))
        return sock.getsockname()[0]
    except OSError:
        return "127.0.0.1"
    finally:
        sock.close()


def is_port_available(port: int, protocol: str = "tcp") -> bool:
    """Bind-and-release test on all interfaces."""
    kind = socket.SOCK_DGRAM if protocol == "udp" else socket.SOCK_STREAM
    sock = socket.socket(socket.AF_INET, kind)
    try:
        sock.bind(("", port))
        return True
    except OSError:
        return False
    finally:
        sock.close()


def find_free_port(start: int, end: int, skip: Optional[Set[int]] = None) -> Optional[int]:
    skip = skip or set()
    for candidate in range(start, end + 1):
        if candidate in skip:
            continue
        if is_port_available(candidate, "tcp"):
            return candidate
    return None


def manual_assignment(user_value: Optional[str], protocol: str, start: int, end: int,
                      reason: str = "Netbridge not available",
                      skip: Optional[Set[int]] = None) -> PortForwardingResult:
    """Port number for a variable when no forwarding is attempted at all."""
    num = parse_port(user_value)
    if num is None:
        num = find_free_port(start, end, skip) or end
    return PortForwardingResult(
        port=Port(name=f"port-{num}", port=num, protocol=protocol),
        method=ForwardingMethod.MANUAL,
        success=False,
        error=reason,
    )


class Netbridge:
    def __init__(self, strategies: List[ForwardingStrategy], *,
                 port_range_start: int = 8000, port_range_end: int = 9000,
                 local_ip: Optional[str] = None):
        self.strategies = list(strategies)
        self.port_range_start = port_range_start
        self.port_range_end = port_range_end
        self._local_ip = local_ip
        self._lock = threading.RLock()
        self._ports: Dict[int, Port] = {}
        self._reserved: Set[int] = set()
        self.public_ip = "0.0.0.0"

    @classmethod
    def create(cls, port_range_start: int = 8000, port_range_end: int = 9000,
               upnp: Optional[UPnPManager] = None) -> "Netbridge":
        """UPnP first; NAT-PMP joins the chain only if it answers. Raises when neither works."""
        upnp = upnp or UPnPManager()
        strategies: List[ForwardingStrategy] = [UPnPStrategy(upnp)]
        try:
            public_ip = upnp.get_public_ip()
        except QuiverError as upnp_err:
            try:
                client = NATPMPClient.create()
                public_ip = client.get_external_ip()
            except QuiverError as nat_err:
                raise NetworkUnavailableError(
                    f"both UPnP and NAT-PMP failed: UPnP: {upnp_err}, NAT-PMP: {nat_err}"
                ) from nat_err
            strategies.append(NATPMPStrategy(client))

        bridge = cls(strategies, port_range_start=port_range_start, port_range_end=port_range_end)
        bridge.public_ip = public_ip
        log.info("Netbridge ready, public IP %s, methods %s", public_ip, [s.method.value for s in strategies])
        return bridge

    @property
    def local_ip(self) -> str:
        if self._local_ip is None:
            self._local_ip = get_local_ip()
        return self._local_ip

    # --- open / close -----------------------------------------------------------

    def _run_chain(self, port: Port, closing: bool) -> PortForwardingResult:
        for strategy in self.strategies:
            try:
                if closing:
                    strategy.close_port(port)
                else:
                    strategy.forward_port(port)
            except QuiverError as e:
                log.debug("%s failed for %s: %s", strategy.method.value, port, e)
                continue
            return PortForwardingResult(port=port, method=strategy.method, success=True)
        return PortForwardingResult(
            port=port,
            method=ForwardingMethod.UPNP,
            success=False,
            error=CLOSE_FAILED if closing else FORWARD_FAILED,
        )

    def _single(self, port_num: int, protocol: str, closing: bool) -> PortForwardingResult:
        verb = "closed" if closing else "opened"
        port = Port(
            name=f"port-{port_num}-{protocol}",
            port=port_num,
            host=self.local_ip,
            protocol=protocol,
            description=f"Port {port_num}/{protocol} {verb} via Quiver netbridge",
        )
        result = self._run_chain(port, closing)
        if result.success:
            with self._lock:
                if closing:
                    self._ports.pop(port_key(port_num, protocol), None)
                else:
                    self._ports[port_key(port_num, protocol)] = port
        return result

    def _apply(self, port_num: int, protocol: str, closing: bool) -> PortForwardingResult:
        protocols = split_protocols(protocol)
        results = [self._single(port_num, p, closing) for p in protocols]
        if len(results) == 1:
            return results[0]

        success = any(r.success for r in results)
        combined = PortForwardingResult(
            port=Port(name=f"port-{port_num}", port=port_num, protocol="/".join(protocols)),
            method=next((r.method for r in results if r.success), ForwardingMethod.UPNP),
            success=success,
        )
        if not success:
            combined.error = "; ".join(f"{r.port.protocol}: {r.error}" for r in results)
        return combined

    def open_port(self, port_num: int, protocol: str = "tcp") -> PortForwardingResult:
        result = self._apply(port_num, protocol, closing=False)
        if result.success:
            log.info("Opened port %d/%s via %s", port_num, protocol, result.method.value)
        else:
            log.warning("Could not open port %d/%s: %s", port_num, protocol, result.error)
        return result

    def close_port(self, port_num: int, protocol: str = "tcp") -> PortForwardingResult:
        result = self._apply(port_num, protocol, closing=True)
        if not result.success:
            log.warning("Could not close port %d/%s: %s", port_num, protocol, result.error)
        return result

    def find_available_port(self, skip: Optional[Set[int]] = None) -> int:
        with self._lock:
            taken = {abs(k) for k in self._ports} | self._reserved | set(skip or ())
            port = find_free_port(self.port_range_start, self.port_range_end, taken)
        if port is None:
            raise NotFoundError(
                f"no available ports found in range {self.port_range_start}-{self.port_range_end}"
            )
        return port

    def open_port_auto(self, protocol: str = "tcp", skip: Optional[Set[int]] = None) -> PortForwardingResult:
        split_protocols(protocol)
        # the candidate stays reserved until open_port has recorded it
        with self._lock:
            port = self.find_available_port(skip)
            self._reserved.add(port)
        try:
            return self.open_port(port, protocol)
        finally:
            with self._lock:
                self._reserved.discard(port)

    def list_open_ports(self) -> List[Port]:
        with self._lock:
            return [self._ports[k] for k in sorted(self._ports, key=lambda k: (abs(k), k < 0))]

    # --- public ip ----------------------------------------------------------------

    def get_public_ip(self) -> str:
        return self.public_ip

    def refresh_public_ip(self) -> str:
        errors = []
        for strategy in self.strategies:
            try:
                ip = strategy.get_public_ip()
            except QuiverError as e:
                errors.append(f"{strategy.method.value}: {e}")
                continue
            if ip:
                self.public_ip = ip
                return ip
        raise NetworkUnavailableError(f"failed to refresh public IP: {'; '.join(errors)}")

    # --- variable assignment ------------------------------------------------------

    def assign_port_variable(self, user_value: Optional[str], protocol: str = "tcp",
                             skip: Optional[Set[int]] = None) -> PortForwardingResult:
        """
        Port for a netbridge variable: the user's value when it is a valid
        port, otherwise a free port from the range that is not in `skip`.
        Always carries a port number, even when forwarding itself failed.
        """
        num = parse_port(user_value)
        if num is not None:
            return self.open_port(num, protocol)

        try:
            return self.open_port_auto(protocol, skip)
        except NotFoundError as e:
            return PortForwardingResult(
                port=Port(name=f"port-{self.port_range_end}", port=self.port_range_end, protocol=protocol),
                method=ForwardingMethod.MANUAL,
                success=False,
                error=f"Auto-assignment failed and no available port found: {e}",
            )
