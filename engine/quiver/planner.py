from __future__ import annotations
from dataclasses import dataclass, asdict, field
from typing import Any, Dict, List

@dataclass
class PlanAction:
    action: str   # install-dependency|write-manifest|run-command|skip|error
    target: str
    detail: str = ""
    commands: List[str] = field(default_factory=list)
    will_change: bool = True
    severity: str = "info"  # info|warn|error

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

@dataclass
class Plan:
    ok: bool
    arrow: str
    actions: List[PlanAction] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)

    def add(self, action: PlanAction) -> None:
        self.actions.append(action)
        if action.severity == "error":
            self.ok = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "arrow": self.arrow,
            "actions": [a.to_dict() for a in self.actions],
            "notes": list(self.notes),
        }
