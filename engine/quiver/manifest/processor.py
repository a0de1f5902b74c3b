from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from ..errors import NotFoundError, QuiverError, UnsupportedPlatformError, ValidationFailedError
from ..logging_setup import get_logger
from ..platform_info import ANY_ARCH, host_platform, normalize_arch, normalize_os
from .base import ArchPolicy, Manifest, resolve_commands
from .registry import VersionRegistry, default_registry

log = get_logger("quiver.manifest.processor")

MANIFEST_FILENAMES = ("arrow.yaml", "arrow.yml")
REQUIRED_METHODS = ("install", "execute")


@dataclass
class ArrowBasicInfo:
    name: str
    description: str
    version: str
    manifest_version: str
    path: str


class ManifestProcessor:
    def __init__(self, registry: Optional[VersionRegistry] = None):
        self.registry = registry or default_registry

    def load_from_data(self, data: bytes) -> Manifest:
        return self.registry.load_from_data(data)

    def load_from_file(self, path: Path) -> Manifest:
        try:
            data = Path(path).read_bytes()
        except OSError as e:
            raise NotFoundError(f"failed to read arrow file {path}: {e}") from e
        return self.load_from_data(data)

    def manifest_path(self, install_path: Path) -> Path:
        for fname in MANIFEST_FILENAMES:
            candidate = Path(install_path) / fname
            if candidate.exists():
                return candidate
        raise NotFoundError(f"arrow manifest not found in installation directory: {install_path}")

    def load_from_installation(self, install_path: Path) -> Manifest:
        return self.load_from_file(self.manifest_path(install_path))

    def validate_arrow(
        self,
        arrow: Manifest,
        policy: ArchPolicy = ArchPolicy.STRICT,
        os_name: Optional[str] = None,
        arch: Optional[str] = None,
    ) -> None:
        host_os, host_arch = host_platform()
        os_name = normalize_os(os_name or host_os)
        arch = normalize_arch(arch or host_arch)

        if not arrow.name():
            raise ValidationFailedError("arrow name is required")
        if not arrow.arrow_version():
            raise ValidationFailedError("arrow version is required")

        for method in REQUIRED_METHODS:
            try:
                commands = resolve_commands(arrow, method, os_name, arch, policy)
            except UnsupportedPlatformError as e:
                raise ValidationFailedError(f"no {method} method defined for {os_name}/{arch}") from e
            if not commands:
                raise ValidationFailedError(f"no {method} method defined for {os_name}/{arch}")

        compatible = arrow.get_requirements().get_compatible()
        if compatible:
            archs = {normalize_os(k): [normalize_arch(a) for a in v] for k, v in compatible.items()}
            if os_name not in archs:
                raise ValidationFailedError(f"os {os_name} not in compatible list")
            if arch not in archs[os_name] and ANY_ARCH not in archs[os_name]:
                if policy is ArchPolicy.STRICT:
                    raise ValidationFailedError(f"arch {arch} not in compatible list for {os_name}")
                log.warning("Arch %s not in compatible list for %s (arrow %s), continuing",
                            arch, os_name, arrow.name())

        for variable in arrow.get_variables():
            if not variable.name:
                raise ValidationFailedError("variable name is required")

        log.debug("Arrow validation passed for: %s", arrow.name())

    def validate_arrow_file(self, path: Path, policy: ArchPolicy = ArchPolicy.STRICT) -> None:
        self.validate_arrow(self.load_from_file(path), policy)

    def get_arrow_info(self, path: Path) -> ArrowBasicInfo:
        arrow = self.load_from_file(path)
        return ArrowBasicInfo(
            name=arrow.name(),
            description=arrow.description(),
            version=arrow.arrow_version(),
            manifest_version=arrow.manifest_version(),
            path=str(path),
        )

    def is_valid_arrow_file(self, path: Path) -> bool:
        if Path(path).suffix not in (".yaml", ".yml"):
            return False
        try:
            self.validate_arrow_file(path)
        except QuiverError:
            return False
        return True

    def supported_versions(self) -> List[str]:
        return self.registry.supported_versions()

    def has_version(self, version: str) -> bool:
        return self.registry.has_version(version)
