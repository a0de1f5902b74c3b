from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from .errors import InvalidNameError
from .settings import Settings


def validate_arrow_name(name: str) -> str:
    """An arrow name becomes a directory under install_dir, so it must be a single plain segment."""
    if not name or not name.strip() or name in (".", "..") or "/" in name or "\\" in name or "\x00" in name:
        raise InvalidNameError(name)
    return name

@dataclass(frozen=True)
class Layout:
    home: Path
    install_dir: Path
    database: Path
    logs: Path

    def arrow_dir(self, name: str) -> Path:
        return self.install_dir / validate_arrow_name(name)

def build_layout(settings: Settings) -> Layout:
    home = settings.home
    return Layout(
        home=home,
        install_dir=settings.install_dir or home / "arrows",
        database=settings.database_path or home / "database.json",
        logs=settings.logs_dir or home / "logs",
    )

def ensure_dirs(layout: Layout) -> None:
    for p in [layout.home, layout.install_dir, layout.database.parent, layout.logs]:
        p.mkdir(parents=True, exist_ok=True)
