from __future__ import annotations
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PackageStatus(str, Enum):
    INSTALLED = "installed"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


class MethodType(str, Enum):
    INSTALL = "install"
    EXECUTE = "execute"
    UNINSTALL = "uninstall"
    UPDATE = "update"
    VALIDATE = "validate"


class InstalledPackage(BaseModel):
    name: str
    version: str = ""
    repository: str = Field(default="", description="Path or URL the manifest was fetched from")
    install_path: str
    dependencies: List[str] = Field(default_factory=list)
    dependent_by: List[str] = Field(default_factory=list, description="Arrows that depend on this one")
    variables: Dict[str, str] = Field(default_factory=dict)
    status: PackageStatus = PackageStatus.INSTALLED
    installed_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class PackageDatabaseModel(BaseModel):
    installed: Dict[str, InstalledPackage] = Field(default_factory=dict)
    updated: datetime = Field(default_factory=utcnow)


class ExecutionStatus(BaseModel):
    arrow_name: str
    status: str = "running"  # running|completed|failed
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    variables: Dict[str, str] = Field(default_factory=dict)


@dataclass
class ExecutionContext:
    """Per-invocation state handed to the execution engine."""
    arrow_name: str
    install_path: str
    variables: Dict[str, str] = field(default_factory=dict)
    environment: Dict[str, str] = field(default_factory=dict)
    cancel: Optional[threading.Event] = None

    def cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()
