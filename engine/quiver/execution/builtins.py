"""
Built-in commands understood by the execution engine.

A command is a built-in when its first whitespace token, uppercased, starts
with one of the prefixes below. The payload is everything after the first
colon of the whole command string.
"""

from __future__ import annotations
import shutil
import threading
import urllib.error
import urllib.parse
import urllib.request
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, Optional, Tuple

from ..errors import CommandFailedError, DownloadError, NotFoundError, RefusedError
from ..logging_setup import get_logger
from .extractors import uncompress

log = get_logger("quiver.execution.builtins")

_CHUNK = 64 * 1024
_ROOTS = ("/", "C:\\", "C:/")


def split_builtin(command: str) -> Optional[Tuple[str, str]]:
    """Return (PREFIX, payload) for a built-in command, None for a shell command."""
    parts = command.split()
    if not parts:
        return None
    head = parts[0].upper()
    for prefix in BUILTINS:
        if head.startswith(prefix + ":"):
            payload = command.split(":", 1)[1].strip()
            return prefix, payload
    return None


def _resolve(path: str, work_dir: Path) -> Path:
    p = Path(path)
    return p if p.is_absolute() else Path(work_dir) / p


# --- GET ------------------------------------------------------------------------

def download_filename(url: str) -> str:
    name = PurePosixPath(urllib.parse.urlparse(url).path).name
    return name or "download"


def handle_get(url: str, work_dir: Path, *, timeout: float = 30.0,
               cancel: Optional[threading.Event] = None) -> Path:
    if not url:
        raise CommandFailedError("GET:", "empty URL in GET command")

    output = Path(work_dir) / download_filename(url)
    log.info("Downloading %s -> %s", url, output)
    req = urllib.request.Request(url, headers={"User-Agent": "quiver"})
    written = 0
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            status = getattr(resp, "status", 200)
            if status < 200 or status >= 300:
                raise DownloadError(url, f"HTTP error {status}")
            length = resp.headers.get("Content-Length")
            if length:
                log.info("Content-Length: %s bytes", length)
            output.parent.mkdir(parents=True, exist_ok=True)
            with open(output, "wb") as out:
                while True:
                    if cancel is not None and cancel.is_set():
                        raise DownloadError(url, "download cancelled")
                    chunk = resp.read(_CHUNK)
                    if not chunk:
                        break
                    out.write(chunk)
                    written += len(chunk)
    except urllib.error.HTTPError as e:
        raise DownloadError(url, f"HTTP error {e.code}") from e
    except (urllib.error.URLError, OSError) as e:
        raise DownloadError(url, e) from e

    log.info("Downloaded %d bytes to %s", written, output)
    return output


# --- MOVE -----------------------------------------------------------------------

def parse_move(payload: str) -> Tuple[str, str]:
    for sep in (" to: ", " to "):
        if sep in payload:
            source, dest = payload.split(sep, 1)
            source, dest = source.strip(), dest.strip()
            if not source or not dest:
                break
            return source, dest
    raise CommandFailedError(f"MOVE:{payload}", "invalid MOVE command format, expected '<source> to <dest>'")


def handle_move(payload: str, work_dir: Path) -> Path:
    source, dest = parse_move(payload)
    src = _resolve(source, work_dir)
    dst = _resolve(dest, work_dir)
    if not src.exists():
        raise NotFoundError(f"source does not exist: {src}")
    dst.parent.mkdir(parents=True, exist_ok=True)
    log.info("Moving %s -> %s", src, dst)
    try:
        src.rename(dst)
    except OSError:
        # rename fails across filesystems
        shutil.move(str(src), str(dst))
    return dst


# --- REMOVE ---------------------------------------------------------------------

def is_root_path(path: str, work_dir: Path) -> bool:
    if path.strip() in _ROOTS:
        return True
    resolved = _resolve(path, work_dir).resolve()
    return resolved == Path(resolved.anchor)


def handle_remove(payload: str, work_dir: Path) -> bool:
    if not payload:
        raise CommandFailedError("REMOVE:", "empty path in REMOVE command")
    if is_root_path(payload, work_dir):
        log.error("Refusing to remove root directory: %s", payload)
        raise RefusedError(payload)

    target = _resolve(payload, work_dir)
    if not target.exists() and not target.is_symlink():
        log.warning("Path does not exist, skipping removal: %s", target)
        return False

    log.info("Removing %s", target)
    if target.is_dir() and not target.is_symlink():
        shutil.rmtree(target)
    else:
        target.unlink()
    return True


# --- UNCOMPRESS -----------------------------------------------------------------

def handle_uncompress(payload: str, work_dir: Path) -> int:
    if not payload:
        raise CommandFailedError("UNCOMPRESS:", "empty filename in UNCOMPRESS command")
    return uncompress(payload, work_dir)


BUILTINS: Dict[str, Callable] = {
    "GET": handle_get,
    "UNCOMPRESS": handle_uncompress,
    "MOVE": handle_move,
    "REMOVE": handle_remove,
}


def run_builtin(prefix: str, payload: str, work_dir: Path, *, timeout: float = 30.0,
                cancel: Optional[threading.Event] = None) -> None:
    log.info("Executing built-in %s: %s", prefix, payload)
    if prefix == "GET":
        handle_get(payload, work_dir, timeout=timeout, cancel=cancel)
    else:
        BUILTINS[prefix](payload, work_dir)
