"""
Manifest schema 0.2.

methods are laid out as OS -> arch -> method -> [commands]. Requirements may
list compatible platforms either as a `compatible` map or as `system`
entries of the form "os/arch".
"""

from __future__ import annotations
from typing import Dict, List
import yaml
from pydantic import AliasChoices, Field, ValidationError

from ..errors import UnsupportedVersionError, ValidationFailedError
from ..platform_info import normalize_arch, normalize_os
from .base import (
    ArrowMetadata,
    Manifest,
    MethodMap,
    NetbridgeSpec,
    Requirements,
    VariableSpec,
    _SchemaModel,
)

VERSION = "0.2"


class MetadataV02(_SchemaModel):
    name: str = ""
    description: str = ""
    maintainers: List[str] = Field(default_factory=list, validation_alias=AliasChoices("maintainers", "mainteiners"))
    credits: List[str] = Field(default_factory=list)
    license: str = ""
    repository: str = ""
    documentation: str = ""
    version: str = ""


class RequirementsV02(Requirements):
    system: List[str] = Field(default_factory=list)

    def get_compatible(self) -> Dict[str, List[str]]:
        if self.compatible:
            return self.compatible
        compatible: Dict[str, List[str]] = {}
        for entry in self.system:
            parts = entry.split("/")
            if len(parts) != 2:
                continue
            os_name, arch = parts
            archs = compatible.setdefault(os_name, [])
            if arch not in archs:
                archs.append(arch)
        return compatible


class ArrowV02(_SchemaModel, Manifest):
    version: str = Field(validation_alias=AliasChoices("version", "manifest_version"))
    metadata: MetadataV02 = Field(default_factory=MetadataV02)
    requirements: RequirementsV02 = Field(default_factory=RequirementsV02)
    dependencies: List[str] = Field(default_factory=list)
    netbridge: List[NetbridgeSpec] = Field(default_factory=list)
    variables: List[VariableSpec] = Field(default_factory=list)
    methods: Dict[str, Dict[str, Dict[str, List[str]]]] = Field(default_factory=dict)

    def manifest_version(self) -> str:
        return self.version

    def get_metadata(self) -> ArrowMetadata:
        return ArrowMetadata.model_validate(self.metadata.model_dump())

    def get_requirements(self) -> Requirements:
        return Requirements(
            minimum=self.requirements.minimum,
            recommended=self.requirements.recommended,
            compatible=self.requirements.get_compatible(),
        )

    def get_dependencies(self) -> List[str]:
        return list(self.dependencies)

    def get_netbridge(self) -> List[NetbridgeSpec]:
        return list(self.netbridge)

    def get_variables(self) -> List[VariableSpec]:
        return list(self.variables)

    def get_method(self, method_name: str) -> MethodMap:
        result: MethodMap = {}
        for os_name, archs in self.methods.items():
            for arch, methods in archs.items():
                if method_name in methods:
                    os_key = normalize_os(os_name)
                    result.setdefault(os_key, {})[normalize_arch(arch)] = list(methods[method_name])
        return result

    def method_names(self) -> List[str]:
        names = {m for archs in self.methods.values() for methods in archs.values() for m in methods}
        return sorted(names)


class FactoryV02:
    def create_arrow(self, version: str, data: bytes) -> Manifest:
        if version != VERSION:
            raise UnsupportedVersionError(version)
        try:
            raw = yaml.safe_load(data)
            return ArrowV02.model_validate(raw)
        except (yaml.YAMLError, ValidationError) as e:
            raise ValidationFailedError(f"failed to unmarshal v{VERSION} arrow: {e}") from e

    def supported_versions(self) -> List[str]:
        return [VERSION]
