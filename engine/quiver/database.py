"""
Local package database.

Single JSON document keyed by package name, rewritten atomically on every
mutating call. Dependency edges are stored on both ends
(`dependencies` / `dependent_by`) and updated together.
"""

from __future__ import annotations
import json
import threading
from pathlib import Path
from typing import Dict, List, Optional, Set

from pydantic import ValidationError

from .errors import MissingDependencyError, PackageNotInstalledError, QuiverError
from .logging_setup import get_logger
from .models import InstalledPackage, PackageDatabaseModel, PackageStatus, utcnow

log = get_logger("quiver.database")


class DatabaseError(QuiverError):
    pass


class PackageDatabase:
    def __init__(self, path: Path):
        self.path = Path(path)
        self._db = PackageDatabaseModel()
        self._lock = threading.RLock()

    # --- persistence ----------------------------------------------------------

    def load(self) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if not self.path.exists():
                log.info("Database file doesn't exist, creating new one: %s", self.path)
                self._db = PackageDatabaseModel()
                self.save()
                return
            try:
                raw = json.loads(self.path.read_text(encoding="utf-8"))
                self._db = PackageDatabaseModel.model_validate(raw)
            except (json.JSONDecodeError, ValidationError) as e:
                log.error("Failed to load %s: %s", self.path, e)
                raise DatabaseError(f"failed to parse database {self.path}: {e}") from e
            log.info("Loaded database with %d installed packages", len(self._db.installed))

    def save(self) -> None:
        """Writes the whole table atomically: temp file, then rename."""
        with self._lock:
            self._db.updated = utcnow()
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            temp_path.write_text(self._db.model_dump_json(indent=2), encoding="utf-8")
            temp_path.replace(self.path)

    # --- packages -------------------------------------------------------------

    def is_installed(self, name: str) -> bool:
        with self._lock:
            return name in self._db.installed

    def add_package(self, pkg: InstalledPackage) -> None:
        with self._lock:
            self._db.installed[pkg.name] = pkg.model_copy(deep=True)
            self.save()
        log.info("Added package %s (%s) to database", pkg.name, pkg.version)

    def remove_package(self, name: str) -> None:
        with self._lock:
            pkg = self._db.installed.pop(name, None)
            if pkg is not None:
                for dep in pkg.dependencies:
                    other = self._db.installed.get(dep)
                    if other is not None and name in other.dependent_by:
                        other.dependent_by.remove(name)
            self.save()

    def get_package(self, name: str) -> Optional[InstalledPackage]:
        with self._lock:
            pkg = self._db.installed.get(name)
            return pkg.model_copy(deep=True) if pkg is not None else None

    def get_all_packages(self) -> Dict[str, InstalledPackage]:
        with self._lock:
            return {k: v.model_copy(deep=True) for k, v in self._db.installed.items()}

    def update_package(self, pkg: InstalledPackage) -> None:
        with self._lock:
            if pkg.name not in self._db.installed:
                raise PackageNotInstalledError(pkg.name)
            updated = pkg.model_copy(deep=True)
            updated.updated_at = utcnow()
            self._db.installed[pkg.name] = updated
            self.save()

    # --- status ---------------------------------------------------------------

    def update_status(self, name: str, status: PackageStatus) -> None:
        with self._lock:
            pkg = self._db.installed.get(name)
            if pkg is None:
                raise PackageNotInstalledError(name)
            pkg.status = PackageStatus(status)
            pkg.updated_at = utcnow()
            self.save()

    def get_status(self, name: str) -> PackageStatus:
        with self._lock:
            pkg = self._db.installed.get(name)
            if pkg is None:
                raise PackageNotInstalledError(name)
            return pkg.status

    def get_packages_by_status(self, status: PackageStatus) -> List[InstalledPackage]:
        with self._lock:
            return [p.model_copy(deep=True) for p in self._db.installed.values() if p.status == status]

    # --- dependency edges -----------------------------------------------------

    def add_dependency(self, package_name: str, dependency_name: str) -> None:
        with self._lock:
            pkg = self._db.installed.get(package_name)
            if pkg is not None and dependency_name not in pkg.dependencies:
                pkg.dependencies.append(dependency_name)
            dep = self._db.installed.get(dependency_name)
            if dep is not None and package_name not in dep.dependent_by:
                dep.dependent_by.append(package_name)
            self.save()

    def remove_dependency(self, package_name: str, dependency_name: str) -> None:
        with self._lock:
            pkg = self._db.installed.get(package_name)
            if pkg is not None and dependency_name in pkg.dependencies:
                pkg.dependencies.remove(dependency_name)
            dep = self._db.installed.get(dependency_name)
            if dep is not None and package_name in dep.dependent_by:
                dep.dependent_by.remove(package_name)
            self.save()

    def get_dependents(self, name: str) -> List[str]:
        with self._lock:
            pkg = self._db.installed.get(name)
            return list(pkg.dependent_by) if pkg is not None else []

    def get_dependencies(self, name: str) -> List[str]:
        with self._lock:
            pkg = self._db.installed.get(name)
            return list(pkg.dependencies) if pkg is not None else []

    def has_dependents(self, name: str) -> bool:
        return len(self.get_dependents(name)) > 0

    def get_dependency_tree(self, name: str) -> Dict[str, List[str]]:
        """Package -> direct dependencies, for everything reachable from `name`."""
        with self._lock:
            if name not in self._db.installed:
                raise PackageNotInstalledError(name)
            tree: Dict[str, List[str]] = {}
            visited: Set[str] = set()
            self._walk(name, tree, visited)
            return tree

    def _walk(self, name: str, tree: Dict[str, List[str]], visited: Set[str]) -> None:
        if name in visited:
            return
        visited.add(name)
        deps = self.get_dependencies(name)
        tree[name] = deps
        for dep in deps:
            if dep in self._db.installed:
                self._walk(dep, tree, visited)

    def validate_dependencies(self, name: str) -> None:
        for dep in self.get_dependencies(name):
            if not self.is_installed(dep):
                raise MissingDependencyError(dep)

    def get_unused_dependencies(self) -> List[str]:
        """Packages that were installed as a dependency and no longer have dependents."""
        with self._lock:
            required_once: Set[str] = set()
            for pkg in self._db.installed.values():
                required_once.update(pkg.dependencies)
            unused = []
            for name, pkg in self._db.installed.items():
                if not pkg.dependent_by and name in required_once:
                    unused.append(name)
            return sorted(unused)
