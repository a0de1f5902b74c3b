from .base import (
    ArchPolicy,
    ArrowMetadata,
    Manifest,
    NetbridgeSpec,
    Requirement,
    Requirements,
    VariableSpec,
    resolve_commands,
)
from .registry import ArrowFactory, VersionRegistry, default_registry, register_default_factories
from .processor import ArrowBasicInfo, ManifestProcessor

__all__ = [
    "ArchPolicy",
    "ArrowMetadata",
    "Manifest",
    "NetbridgeSpec",
    "Requirement",
    "Requirements",
    "VariableSpec",
    "resolve_commands",
    "ArrowFactory",
    "VersionRegistry",
    "default_registry",
    "register_default_factories",
    "ArrowBasicInfo",
    "ManifestProcessor",
]
