"""
UPnP Internet Gateway Device control.

Discovery runs once and is memoized; every operation walks the discovered
WAN connection services in order until one accepts the request.
"""

from __future__ import annotations
import threading
from typing import Any, Callable, List, Optional, Tuple

import upnpclient

from ..errors import NetworkUnavailableError, NoUPnPServiceError
from ..logging_setup import get_logger
from .port import Port

log = get_logger("quiver.netbridge.upnp")

# IGD v1 / v2 connection services, queried in this order
WAN_SERVICE_TYPES = (
    "urn:schemas-upnp-org:service:WANIPConnection:1",
    "urn:schemas-upnp-org:service:WANPPPConnection:1",
    "urn:schemas-upnp-org:service:WANIPConnection:2",
)

LEASE_DURATION = 86400


class UPnPServiceClient:
    """Thin adapter over one upnpclient WAN connection service."""

    def __init__(self, service: Any):
        self.service = service

    def add_port_mapping(self, external_port: int, protocol: str, internal_port: int,
                         internal_client: str, description: str, lease_duration: int) -> None:
        self.service.AddPortMapping(
            NewRemoteHost="",
            NewExternalPort=external_port,
            NewProtocol=protocol.upper(),
            NewInternalPort=internal_port,
            NewInternalClient=internal_client,
            NewEnabled="1",
            NewPortMappingDescription=description,
            NewLeaseDuration=lease_duration,
        )

    def delete_port_mapping(self, external_port: int, protocol: str) -> None:
        self.service.DeletePortMapping(
            NewRemoteHost="",
            NewExternalPort=external_port,
            NewProtocol=protocol.upper(),
        )

    def get_external_ip(self) -> str:
        resp = self.service.GetExternalIPAddress()
        return (resp or {}).get("NewExternalIPAddress", "")


def discover_clients(timeout: int = 2) -> Tuple[List[UPnPServiceClient], List[str]]:
    """SSDP discovery; returns (clients, per-variant errors)."""
    try:
        devices = upnpclient.discover(timeout=timeout)
    except Exception as e:
        return [], [f"ssdp discovery: {e}"]

    clients: List[UPnPServiceClient] = []
    errors: List[str] = []
    for service_type in WAN_SERVICE_TYPES:
        found = 0
        for device in devices:
            try:
                services = list(device.services)
            except Exception as e:
                errors.append(f"{service_type}: {e}")
                continue
            for svc in services:
                if getattr(svc, "service_type", "") == service_type:
                    clients.append(UPnPServiceClient(svc))
                    found += 1
        log.debug("UPnP %s: %d services", service_type, found)
    return clients, errors


class UPnPManager:
    def __init__(self, discover: Optional[Callable[[], Tuple[List[Any], List[str]]]] = None):
        self._discover = discover or discover_clients
        self._lock = threading.Lock()
        self._clients: List[Any] = []
        self._discovered = False
        self._discovery_error: Optional[NoUPnPServiceError] = None

    def _ensure_discovered(self) -> List[Any]:
        with self._lock:
            if not self._discovered:
                clients, errors = self._discover()
                self._clients = list(clients)
                self._discovered = True
                self._discovery_error = None if self._clients else NoUPnPServiceError(errors)
                log.info("UPnP discovery found %d services", len(self._clients))
            if self._discovery_error is not None:
                raise self._discovery_error
            return list(self._clients)

    def refresh_services(self) -> None:
        with self._lock:
            self._discovered = False
        self._ensure_discovered()

    def forward_port(self, port: Port) -> None:
        description = port.description or f"Quiver|{port.host}:{port.port} ({port.protocol})"
        for client in self._ensure_discovered():
            try:
                client.add_port_mapping(port.port, port.protocol, port.port, port.host,
                                        description, LEASE_DURATION)
                log.info("UPnP mapping added for %s", port)
                return
            except Exception as e:
                log.debug("UPnP AddPortMapping failed on %r: %s", client, e)
        raise NetworkUnavailableError("failed to add port mapping on all available UPnP services")

    def close_port(self, port: Port) -> None:
        for client in self._ensure_discovered():
            try:
                client.delete_port_mapping(port.port, port.protocol)
                log.info("UPnP mapping removed for %s", port)
                return
            except Exception as e:
                log.debug("UPnP DeletePortMapping failed on %r: %s", client, e)
        raise NetworkUnavailableError("failed to remove port mapping on all available UPnP services")

    def get_public_ip(self) -> str:
        for client in self._ensure_discovered():
            try:
                ip = client.get_external_ip()
            except Exception as e:
                log.debug("UPnP GetExternalIPAddress failed on %r: %s", client, e)
                continue
            if ip:
                return ip
        raise NetworkUnavailableError("failed to get public IP address from any UPnP service")
