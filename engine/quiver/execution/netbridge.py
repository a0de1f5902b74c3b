from __future__ import annotations
import threading
from dataclasses import dataclass, asdict
from typing import Callable, List, Optional, Set

from ..errors import QuiverError
from ..logging_setup import get_logger
from ..manifest.base import Manifest
from ..models import ExecutionContext
from ..netbridge.bridge import Netbridge, manual_assignment
from ..netbridge.port import PortForwardingResult

log = get_logger("quiver.execution.netbridge")


@dataclass
class NetbridgeIdentification:
    variable_name: str
    protocol: str
    user_specified: bool = False
    user_value: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class NetbridgeResult:
    variable_name: str
    port: int
    protocol: str
    success: bool
    error: Optional[str] = None
    result: Optional[PortForwardingResult] = None

    def to_dict(self) -> dict:
        d = {
            "variable_name": self.variable_name,
            "port": self.port,
            "protocol": self.protocol,
            "success": self.success,
            "error": self.error,
        }
        if self.result is not None:
            d["method"] = self.result.method.value
        return d


class NetbridgeProcessor:
    """
    Resolves a manifest's netbridge entries into concrete port variables.

    The bridge is created on first use through `bridge_factory`; when that
    fails (or forwarding is disabled) ports are still assigned, marked as
    manual.
    """

    def __init__(self, bridge_factory: Optional[Callable[[], Netbridge]] = None, *,
                 enabled: bool = True, port_range_start: int = 8000, port_range_end: int = 9000):
        self._factory = bridge_factory
        self.enabled = enabled and bridge_factory is not None
        self.port_range_start = port_range_start
        self.port_range_end = port_range_end
        self._bridge: Optional[Netbridge] = None
        self._init_done = False
        self._lock = threading.Lock()

    @property
    def bridge(self) -> Optional[Netbridge]:
        with self._lock:
            if not self._init_done:
                self._init_done = True
                if self.enabled:
                    try:
                        self._bridge = self._factory()
                    except QuiverError as e:
                        log.warning("Netbridge initialization failed: %s (port forwarding disabled)", e)
                        self._bridge = None
            return self._bridge

    def is_available(self) -> bool:
        return self.bridge is not None

    def identify_variables(self, manifest: Manifest, ctx: ExecutionContext) -> List[NetbridgeIdentification]:
        specs = manifest.get_netbridge()
        out: List[NetbridgeIdentification] = []
        for spec in specs:
            value = ctx.variables.get(spec.name, "")
            out.append(NetbridgeIdentification(
                variable_name=spec.name,
                protocol=spec.protocol,
                user_specified=bool(value),
                user_value=value,
            ))
        if out:
            log.info("Identified %d netbridge variables for arrow %s", len(out), manifest.name())
        return out

    def process_variables_runtime(self, manifest: Manifest, ctx: ExecutionContext) -> List[NetbridgeResult]:
        """Assign (and try to forward) a port for every netbridge entry, writing it into ctx.variables."""
        specs = manifest.get_netbridge()
        if not specs:
            return []

        log.info("Assigning %d netbridge ports for arrow %s", len(specs), manifest.name())
        bridge = self.bridge
        results: List[NetbridgeResult] = []
        assigned: Set[int] = set()
        for spec in specs:
            user_value = ctx.variables.get(spec.name)
            if bridge is not None:
                fwd = bridge.assign_port_variable(user_value, spec.protocol, assigned)
            else:
                fwd = manual_assignment(user_value, spec.protocol, self.port_range_start,
                                        self.port_range_end, skip=assigned)
            assigned.add(fwd.port.port)
            ctx.variables[spec.name] = str(fwd.port.port)
            results.append(NetbridgeResult(
                variable_name=spec.name,
                port=fwd.port.port,
                protocol=spec.protocol,
                success=fwd.success,
                error=fwd.error,
                result=fwd,
            ))
        return results

    @staticmethod
    def log_results(results: List[NetbridgeResult]) -> None:
        for r in results:
            if r.success:
                log.info("%s: port %d/%s opened", r.variable_name, r.port, r.protocol)
            else:
                log.warning("%s: port %d/%s not forwarded (%s); configure it manually",
                            r.variable_name, r.port, r.protocol, r.error)
