"""
Error taxonomy for the arrow lifecycle engine.

Every error raised across module boundaries derives from QuiverError so the
API / CLI layers can translate them without knowing the internals.
"""

from __future__ import annotations
from typing import List, Optional


class QuiverError(Exception):
    """Base class for all engine errors."""


# --- not found --------------------------------------------------------------

class NotFoundError(QuiverError):
    pass


class PackageNotInstalledError(NotFoundError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"arrow {name} is not installed")


class ArrowNotFoundError(NotFoundError):
    def __init__(self, name: str, detail: str = ""):
        self.name = name
        msg = f"arrow {name} not found"
        super().__init__(f"{msg}: {detail}" if detail else msg)


class MissingDependencyError(NotFoundError):
    def __init__(self, dependency: str):
        self.dependency = dependency
        super().__init__(f"dependency {dependency} is not installed")


# --- conflicts ----------------------------------------------------------------

class AlreadyExistsError(QuiverError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"arrow {name} is already installed")


class ExecutionInProgressError(QuiverError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"arrow {name} is already being executed")


class HasDependentsError(QuiverError):
    def __init__(self, name: str, dependents: List[str]):
        self.name = name
        self.dependents = list(dependents)
        super().__init__(f"cannot uninstall {name}: packages {self.dependents} depend on it")


# --- unsupported / validation ---------------------------------------------------

class UnsupportedError(QuiverError):
    pass


class UnsupportedPlatformError(UnsupportedError):
    def __init__(self, method: str, os_name: str, arch: Optional[str] = None):
        self.method = method
        self.os_name = os_name
        self.arch = arch
        where = f"{os_name}/{arch}" if arch else os_name
        super().__init__(f"method {method} not supported on platform {where}")


class UnsupportedVersionError(UnsupportedError):
    def __init__(self, version: str):
        self.version = version
        super().__init__(f"unsupported arrow version: {version}")


class ValidationFailedError(QuiverError):
    pass


class MissingVersionError(ValidationFailedError):
    def __init__(self):
        super().__init__("version field is required in arrow manifest")


# --- safety -------------------------------------------------------------------

class UnsafeError(QuiverError):
    pass


class UnsafePathError(UnsafeError):
    def __init__(self, entry: str):
        self.entry = entry
        super().__init__(f"invalid file path in archive: {entry}")


class RefusedError(UnsafeError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"refusing to remove root directory: {path}")


class InvalidNameError(UnsafeError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"invalid arrow name: {name!r}")


# --- execution ----------------------------------------------------------------

class CommandFailedError(QuiverError):
    def __init__(self, command: str, cause: object):
        self.command = command
        self.cause = cause
        super().__init__(f"command failed: {command} - {cause}")


class DownloadError(CommandFailedError):
    def __init__(self, url: str, reason: object):
        self.url = url
        super().__init__(f"GET:{url}", reason)


# --- network ------------------------------------------------------------------

class NetworkUnavailableError(QuiverError):
    pass


class NoUPnPServiceError(NetworkUnavailableError):
    def __init__(self, errors: Optional[List[str]] = None):
        self.errors = list(errors or [])
        if self.errors:
            super().__init__(f"no UPnP services discovered, errors: {self.errors}")
        else:
            super().__init__("no UPnP services discovered")
