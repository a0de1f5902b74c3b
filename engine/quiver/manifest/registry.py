from __future__ import annotations
import threading
from typing import Dict, List, Optional, Protocol
import yaml

from ..errors import MissingVersionError, UnsupportedVersionError, ValidationFailedError
from ..logging_setup import get_logger
from .base import Manifest

log = get_logger("quiver.manifest.registry")


class ArrowFactory(Protocol):
    def create_arrow(self, version: str, data: bytes) -> Manifest: ...

    def supported_versions(self) -> List[str]: ...


class VersionRegistry:
    """Maps a manifest `version` tag to the factory that decodes it."""

    def __init__(self):
        self._factories: Dict[str, ArrowFactory] = {}
        self._lock = threading.RLock()

    def register_factory(self, version: str, factory: ArrowFactory) -> None:
        with self._lock:
            self._factories[version] = factory
        log.debug("Registered manifest factory for version %s", version)

    def load_from_data(self, data: bytes) -> Manifest:
        version = self.parse_version(data)
        with self._lock:
            factory = self._factories.get(version)
        if factory is None:
            raise UnsupportedVersionError(version)
        return factory.create_arrow(version, data)

    def parse_version(self, data: bytes) -> str:
        try:
            raw = yaml.safe_load(data)
        except yaml.YAMLError as e:
            raise ValidationFailedError(f"failed to parse version: {e}") from e
        if not isinstance(raw, dict):
            raise ValidationFailedError("arrow manifest root must be a mapping")
        version = raw.get("version", raw.get("manifest_version"))
        if version is None or str(version).strip() == "":
            raise MissingVersionError()
        return str(version).strip()

    def supported_versions(self) -> List[str]:
        with self._lock:
            return sorted(self._factories)

    def has_version(self, version: str) -> bool:
        with self._lock:
            return version in self._factories


default_registry = VersionRegistry()


def register_default_factories(registry: Optional[VersionRegistry] = None) -> VersionRegistry:
    """Register every built-in schema version. Safe to call more than once."""
    from .v0_1 import VERSION as V01, FactoryV01
    from .v0_2 import VERSION as V02, FactoryV02

    registry = registry or default_registry
    registry.register_factory(V01, FactoryV01())
    registry.register_factory(V02, FactoryV02())
    return registry
