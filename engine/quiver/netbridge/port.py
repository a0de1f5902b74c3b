from __future__ import annotations
from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field

from ..errors import ValidationFailedError
from ..models import utcnow

PROTOCOLS = ("tcp", "udp")


class ForwardingMethod(str, Enum):
    UPNP = "upnp"
    NATPMP = "natpmp"
    MANUAL = "manual"


class Port(BaseModel):
    name: str
    port: int = Field(ge=0, le=65535)
    host: str = ""
    protocol: str = "tcp"
    description: str = ""
    created_at: datetime = Field(default_factory=utcnow)

    def __str__(self) -> str:
        return f"{self.host}:{self.port}/{self.protocol}"


class PortForwardingResult(BaseModel):
    port: Port
    method: ForwardingMethod = ForwardingMethod.UPNP
    success: bool = False
    error: Optional[str] = None


def split_protocols(protocol: str) -> List[str]:
    """'tcp', 'udp', 'tcp/udp' or 'tcp+udp' -> list of single protocols."""
    normalized = protocol.strip().lower().replace("+", "/")
    parts = [p.strip() for p in normalized.split("/") if p.strip()]
    if not parts:
        raise ValidationFailedError("empty protocol")
    for p in parts:
        if p not in PROTOCOLS:
            raise ValidationFailedError(f"unsupported protocol: {p} (must be tcp, udp, or tcp/udp)")
    return parts


def port_key(port: int, protocol: str) -> int:
    """Open-port table key: +port for tcp, -port for udp."""
    return -port if protocol == "udp" else port


def parse_port(value: Optional[str]) -> Optional[int]:
    """A user supplied port value, or None when it is not a valid port number."""
    if value is None:
        return None
    try:
        num = int(str(value).strip())
    except ValueError:
        return None
    if 0 < num <= 65535:
        return num
    return None
