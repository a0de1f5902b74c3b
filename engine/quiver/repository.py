from __future__ import annotations
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from .errors import ArrowNotFoundError, NotFoundError, QuiverError
from .fs_layout import validate_arrow_name
from .logging_setup import get_logger
from .manifest.base import Manifest
from .manifest.processor import ManifestProcessor

log = get_logger("quiver.repository")


def is_url(path: str) -> bool:
    return path.startswith("http://") or path.startswith("https://")


def candidate_paths(repo: str, name: str) -> List[str]:
    if is_url(repo):
        base = repo.rstrip("/")
        return [f"{base}/{name}.yaml", f"{base}/{name}.yml",
                f"{base}/{name}/arrow.yaml", f"{base}/{name}/arrow.yml"]
    base = Path(repo)
    return [str(base / f"{name}.yaml"), str(base / f"{name}.yml"),
            str(base / name / "arrow.yaml"), str(base / name / "arrow.yml")]


@dataclass
class ArrowInfo:
    name: str
    path: str
    repository: str
    description: str = ""
    version: str = ""

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "path": self.path,
            "repository": self.repository,
            "description": self.description,
            "version": self.version,
        }


@dataclass
class FetchedArrow:
    manifest: Manifest
    source: str
    data: bytes = field(repr=False)


class RepositoryManager:
    def __init__(self, repositories: List[str], processor: ManifestProcessor, timeout: float = 30.0):
        self._repositories = list(repositories)
        self.processor = processor
        self.timeout = timeout
        self._lock = threading.Lock()

    # --- repository list ----------------------------------------------------------

    def get_repositories(self) -> List[str]:
        with self._lock:
            return list(self._repositories)

    def add_repository(self, repo: str) -> None:
        with self._lock:
            if repo not in self._repositories:
                self._repositories.append(repo)
                log.info("Added repository: %s", repo)

    def remove_repository(self, repo: str) -> None:
        with self._lock:
            if repo in self._repositories:
                self._repositories.remove(repo)
                log.info("Removed repository: %s", repo)

    @staticmethod
    def parse_repository_spec(spec: str) -> Tuple[str, str, bool]:
        """'repo@name' -> (repo, name, True); 'name' -> ('', name, False)."""
        if "@" in spec:
            repo, name = spec.split("@", 1)
            return repo, name, True
        return "", spec, False

    def find_repository(self, repo: str) -> Optional[str]:
        for candidate in self.get_repositories():
            if candidate == repo or repo in candidate:
                return candidate
        return None

    # --- fetching -----------------------------------------------------------------

    def _read(self, location: str) -> Optional[bytes]:
        if is_url(location):
            try:
                with urllib.request.urlopen(location, timeout=self.timeout) as resp:
                    return resp.read()
            except urllib.error.HTTPError as e:
                log.debug("GET %s -> HTTP %s", location, e.code)
            except (urllib.error.URLError, OSError) as e:
                log.debug("GET %s failed: %s", location, e)
            return None
        path = Path(location)
        if not path.is_file():
            return None
        return path.read_bytes()

    def _fetch_from(self, repo: str, name: str) -> Tuple[Optional[FetchedArrow], List[str]]:
        errors: List[str] = []
        for location in candidate_paths(repo, name):
            data = self._read(location)
            if data is None:
                continue
            try:
                manifest = self.processor.load_from_data(data)
            except QuiverError as e:
                log.debug("Invalid arrow manifest at %s: %s", location, e)
                errors.append(f"{location}: {e}")
                continue
            return FetchedArrow(manifest=manifest, source=location, data=data), errors
        return None, errors

    def fetch(self, spec: str) -> FetchedArrow:
        """Locate and parse an arrow manifest; `spec` is 'name' or 'repo@name'."""
        repo, name, explicit = self.parse_repository_spec(spec)
        validate_arrow_name(name)
        if explicit:
            target = self.find_repository(repo)
            if target is None:
                raise NotFoundError(f"repository {repo} not found")
            repos = [target]
        else:
            repos = self.get_repositories()

        errors: List[str] = []
        for r in repos:
            fetched, errs = self._fetch_from(r, name)
            errors.extend(errs)
            if fetched is not None:
                log.info("Found arrow %s at %s", name, fetched.source)
                return fetched
            log.debug("Arrow %s not found in repository %s", name, r)
        raise ArrowNotFoundError(name, "; ".join(errors) if errors else "not found in any repository")

    @staticmethod
    def write_manifest(fetched: FetchedArrow, target: Path) -> Path:
        target = Path(target)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(fetched.data)
        log.debug("Wrote manifest from %s to %s", fetched.source, target)
        return target

    # --- search -------------------------------------------------------------------

    def _local_names(self, repo: str) -> List[str]:
        base = Path(repo)
        if not base.is_dir():
            return []
        names = set()
        for entry in base.iterdir():
            if entry.is_file() and entry.suffix in (".yaml", ".yml"):
                names.add(entry.stem)
            elif entry.is_dir() and any((entry / f).is_file() for f in ("arrow.yaml", "arrow.yml")):
                names.add(entry.name)
        return sorted(names)

    def search(self, query: str) -> List[ArrowInfo]:
        """
        Exact name lookup in every repository, plus substring matches over
        the contents of local repositories.
        """
        repo, name, explicit = self.parse_repository_spec(query)
        if explicit:
            target = self.find_repository(repo)
            if target is None:
                raise NotFoundError(f"repository {repo} not found")
            repos = [target]
        else:
            repos = self.get_repositories()

        results: List[ArrowInfo] = []
        for r in repos:
            if is_url(r):
                names = [name]
            else:
                names = [n for n in self._local_names(r) if name.lower() in n.lower()]
            for n in names:
                fetched, _ = self._fetch_from(r, n)
                if fetched is None:
                    continue
                results.append(ArrowInfo(
                    name=n,
                    path=fetched.source,
                    repository=r,
                    description=fetched.manifest.description(),
                    version=fetched.manifest.arrow_version(),
                ))
        return results
