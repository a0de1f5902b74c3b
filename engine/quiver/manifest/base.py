"""
Version-agnostic arrow manifest contract.

Every schema version decodes into a model implementing `Manifest`; callers
only ever see this contract. Methods are always exposed as
OS -> arch -> [commands], whatever the on-disk layout of the version is.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from ..errors import UnsupportedPlatformError
from ..logging_setup import get_logger
from ..platform_info import ANY_ARCH, normalize_arch

log = get_logger("quiver.manifest")

MethodMap = Dict[str, Dict[str, List[str]]]


class _SchemaModel(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True, populate_by_name=True)


class Requirement(_SchemaModel):
    cpu_cores: int = 0
    ram_gb: int = 0
    disk_gb: int = 0
    network_mbps: int = 0


class Requirements(_SchemaModel):
    minimum: Requirement = Field(default_factory=Requirement)
    recommended: Requirement = Field(default_factory=Requirement)
    compatible: Dict[str, List[str]] = Field(default_factory=dict)

    def get_compatible(self) -> Dict[str, List[str]]:
        return self.compatible


class NetbridgeSpec(_SchemaModel):
    name: str
    protocol: str = "tcp"


class VariableSpec(_SchemaModel):
    name: str = ""
    default: Any = None
    allowed_values: List[str] = Field(default_factory=list, validation_alias=AliasChoices("values", "allowed_values"))
    min: Optional[int] = None
    max: Optional[int] = None
    sensitive: bool = False

    def default_str(self) -> str:
        if self.default is None:
            return ""
        if isinstance(self.default, bool):
            return "true" if self.default else "false"
        return str(self.default)


class ArrowMetadata(_SchemaModel):
    name: str = ""
    description: str = ""
    maintainers: List[str] = Field(default_factory=list)
    credits: List[str] = Field(default_factory=list)
    license: str = ""
    repository: str = ""
    documentation: str = ""
    version: str = ""


class ArchPolicy(str, Enum):
    """What to do when a method covers the host OS but not the host arch."""
    STRICT = "strict"
    LENIENT = "lenient"


class Manifest(ABC):
    @abstractmethod
    def manifest_version(self) -> str: ...

    @abstractmethod
    def get_metadata(self) -> ArrowMetadata: ...

    @abstractmethod
    def get_requirements(self) -> Requirements: ...

    @abstractmethod
    def get_dependencies(self) -> List[str]: ...

    @abstractmethod
    def get_netbridge(self) -> List[NetbridgeSpec]: ...

    @abstractmethod
    def get_variables(self) -> List[VariableSpec]: ...

    @abstractmethod
    def get_method(self, method_name: str) -> MethodMap: ...

    @abstractmethod
    def method_names(self) -> List[str]: ...

    # convenience accessors shared by all versions

    def name(self) -> str:
        return self.get_metadata().name

    def description(self) -> str:
        return self.get_metadata().description

    def arrow_version(self) -> str:
        return self.get_metadata().version

    def get_supported_archs(self, os_name: str) -> List[str]:
        return list(self.get_requirements().get_compatible().get(os_name, []))

    def get_variable(self, name: str) -> Optional[VariableSpec]:
        for v in self.get_variables():
            if v.name == name:
                return v
        return None


def resolve_commands(
    manifest: Manifest,
    method_name: str,
    os_name: str,
    arch: str,
    policy: ArchPolicy = ArchPolicy.STRICT,
) -> List[str]:
    """
    Pick the command list of `method_name` for os/arch.

    An exact arch or the synthetic "any" arch always matches. Under LENIENT
    a missing arch falls back to the first compatible arch the method
    defines, with a warning; under STRICT it is an error.
    """
    os_map = manifest.get_method(method_name).get(os_name)
    if not os_map:
        raise UnsupportedPlatformError(method_name, os_name)

    if arch in os_map:
        return list(os_map[arch])
    if ANY_ARCH in os_map:
        return list(os_map[ANY_ARCH])

    if policy is ArchPolicy.STRICT:
        raise UnsupportedPlatformError(method_name, os_name, arch)

    supported = manifest.get_supported_archs(os_name)
    log.debug("Architecture %s not found, supported architectures: %s", arch, supported)
    for candidate in supported:
        candidate = normalize_arch(candidate)
        if candidate in os_map:
            log.warning("Using fallback architecture %s instead of %s for method %s",
                        candidate, arch, method_name)
            return list(os_map[candidate])
    raise UnsupportedPlatformError(method_name, os_name, arch)
