"""
Archive extraction for the UNCOMPRESS built-in.

Every entry is checked against the working directory before anything is
written; one bad entry aborts the whole extraction.
"""

from __future__ import annotations
import os
import shutil
import tarfile
import zipfile
from pathlib import Path
from typing import Callable, Dict, Iterable

import py7zr
import rarfile

from ..errors import CommandFailedError, NotFoundError, UnsafePathError
from ..logging_setup import get_logger

log = get_logger("quiver.execution.extract")

SUPPORTED_FORMATS = (".zip", ".tar", ".tar.gz", ".tgz", ".rar", ".7z")


def is_path_safe(target: Path, work_dir: Path) -> bool:
    root = Path(work_dir).resolve()
    resolved = Path(target).resolve()
    return resolved == root or root in resolved.parents


def _safe_target(work_dir: Path, entry_name: str) -> Path:
    target = Path(work_dir) / entry_name
    if not is_path_safe(target, work_dir):
        log.error("Security violation: path outside working directory: %s", entry_name)
        raise UnsafePathError(entry_name)
    return target


def _check_all(work_dir: Path, names: Iterable[str]) -> None:
    for name in names:
        _safe_target(work_dir, name)


def detect_format(filename: str) -> str:
    lower = filename.lower()
    if lower.endswith(".tar.gz"):
        return ".tar.gz"
    return os.path.splitext(lower)[1]


def _write_stream(src, target: Path, mode: int = 0) -> int:
    target.parent.mkdir(parents=True, exist_ok=True)
    with open(target, "wb") as out:
        shutil.copyfileobj(src, out)
    if mode:
        os.chmod(target, mode)
    return target.stat().st_size


def extract_zip(archive: Path, work_dir: Path) -> int:
    with zipfile.ZipFile(archive) as zf:
        infos = zf.infolist()
        _check_all(work_dir, (i.filename for i in infos))
        log.info("ZIP archive contains %d entries", len(infos))
        for info in infos:
            target = Path(work_dir) / info.filename
            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            mode = (info.external_attr >> 16) & 0o7777
            with zf.open(info) as src:
                size = _write_stream(src, target, mode)
            log.debug("Extracted %s (%d bytes)", info.filename, size)
        return len(infos)


def extract_tar(archive: Path, work_dir: Path) -> int:
    # "r:*" handles plain and gzip-compressed tarballs alike
    with tarfile.open(archive, "r:*") as tf:
        members = tf.getmembers()
        _check_all(work_dir, (m.name for m in members))
        for member in members:
            target = Path(work_dir) / member.name
            if member.isdir():
                target.mkdir(parents=True, exist_ok=True)
                os.chmod(target, member.mode | 0o700)
            elif member.isfile():
                src = tf.extractfile(member)
                if src is None:
                    continue
                with src:
                    size = _write_stream(src, target, member.mode)
                log.debug("Extracted %s (%d bytes)", member.name, size)
            else:
                log.warning("Skipping unsupported tar entry type: %s", member.name)
        return len(members)


def extract_rar(archive: Path, work_dir: Path) -> int:
    with rarfile.RarFile(str(archive)) as rf:
        infos = rf.infolist()
        _check_all(work_dir, (i.filename for i in infos))
        for info in infos:
            target = Path(work_dir) / info.filename
            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            with rf.open(info) as src:
                size = _write_stream(src, target)
            log.debug("Extracted %s (%d bytes)", info.filename, size)
        return len(infos)


def extract_7z(archive: Path, work_dir: Path) -> int:
    with py7zr.SevenZipFile(archive, mode="r") as zf:
        names = zf.getnames()
        _check_all(work_dir, names)
        zf.extractall(path=work_dir)
        return len(names)


_EXTRACTORS: Dict[str, Callable[[Path, Path], int]] = {
    ".zip": extract_zip,
    ".tar": extract_tar,
    ".tar.gz": extract_tar,
    ".tgz": extract_tar,
    ".rar": extract_rar,
    ".7z": extract_7z,
}


def uncompress(filename: str, work_dir: Path) -> int:
    """Extract `filename` (relative to work_dir) into work_dir; returns the entry count."""
    archive = Path(work_dir) / filename
    if not archive.exists():
        raise NotFoundError(f"archive file does not exist: {archive}")

    fmt = detect_format(filename)
    extractor = _EXTRACTORS.get(fmt)
    if extractor is None:
        raise CommandFailedError(
            f"UNCOMPRESS:{filename}",
            f"unsupported archive format: {fmt} (supported: {', '.join(SUPPORTED_FORMATS)})",
        )

    log.info("Extracting %s (%s, %d bytes) into %s", filename, fmt, archive.stat().st_size, work_dir)
    try:
        count = extractor(archive, Path(work_dir))
    except (zipfile.BadZipFile, tarfile.TarError, rarfile.Error, py7zr.Bad7zFile, OSError) as e:
        raise CommandFailedError(f"UNCOMPRESS:{filename}", e) from e
    log.info("Extracted %d entries from %s", count, filename)
    return count
