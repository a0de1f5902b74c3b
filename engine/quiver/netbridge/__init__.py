from .port import ForwardingMethod, Port, PortForwardingResult, split_protocols
from .upnp import UPnPManager
from .natpmp import NATPMPClient, NATPMPError
from .bridge import Netbridge, NATPMPStrategy, UPnPStrategy, manual_assignment

__all__ = [
    "ForwardingMethod",
    "Port",
    "PortForwardingResult",
    "split_protocols",
    "UPnPManager",
    "NATPMPClient",
    "NATPMPError",
    "Netbridge",
    "NATPMPStrategy",
    "UPnPStrategy",
    "manual_assignment",
]
