"""
Manifest schema 0.1.

methods are laid out as OS -> method -> [commands]; there is no arch level,
so every OS entry is exposed under the synthetic "any" arch.
"""

from __future__ import annotations
from typing import Dict, List
import yaml
from pydantic import AliasChoices, Field, ValidationError

from ..errors import UnsupportedVersionError, ValidationFailedError
from ..platform_info import ANY_ARCH, normalize_os
from .base import (
    ArrowMetadata,
    Manifest,
    MethodMap,
    NetbridgeSpec,
    Requirements,
    VariableSpec,
    _SchemaModel,
)

VERSION = "0.1"


class MetadataV01(_SchemaModel):
    name: str = ""
    description: str = ""
    maintainers: List[str] = Field(default_factory=list, validation_alias=AliasChoices("maintainers", "mainteiners"))
    credits: str = ""
    license: str = ""
    repository: str = ""
    documentation: str = ""
    version: str = ""


class ArrowV01(_SchemaModel, Manifest):
    version: str = Field(validation_alias=AliasChoices("version", "manifest_version"))
    metadata: MetadataV01 = Field(default_factory=MetadataV01)
    requirements: Requirements = Field(default_factory=Requirements)
    dependencies: List[str] = Field(default_factory=list)
    netbridge: List[NetbridgeSpec] = Field(default_factory=list)
    variables: List[VariableSpec] = Field(default_factory=list)
    methods: Dict[str, Dict[str, List[str]]] = Field(default_factory=dict)

    def manifest_version(self) -> str:
        return self.version

    def get_metadata(self) -> ArrowMetadata:
        m = self.metadata
        return ArrowMetadata(
            name=m.name,
            description=m.description,
            maintainers=list(m.maintainers),
            credits=[m.credits] if m.credits else [],
            license=m.license,
            repository=m.repository,
            documentation=m.documentation,
            version=m.version,
        )

    def get_requirements(self) -> Requirements:
        return self.requirements

    def get_dependencies(self) -> List[str]:
        return list(self.dependencies)

    def get_netbridge(self) -> List[NetbridgeSpec]:
        return list(self.netbridge)

    def get_variables(self) -> List[VariableSpec]:
        return list(self.variables)

    def get_method(self, method_name: str) -> MethodMap:
        result: MethodMap = {}
        for os_name, methods in self.methods.items():
            if method_name in methods:
                result[normalize_os(os_name)] = {ANY_ARCH: list(methods[method_name])}
        return result

    def method_names(self) -> List[str]:
        names = {m for methods in self.methods.values() for m in methods}
        return sorted(names)


class FactoryV01:
    def create_arrow(self, version: str, data: bytes) -> Manifest:
        if version != VERSION:
            raise UnsupportedVersionError(version)
        try:
            raw = yaml.safe_load(data)
            return ArrowV01.model_validate(raw)
        except (yaml.YAMLError, ValidationError) as e:
            raise ValidationFailedError(f"failed to unmarshal v{VERSION} arrow: {e}") from e

    def supported_versions(self) -> List[str]:
        return [VERSION]
