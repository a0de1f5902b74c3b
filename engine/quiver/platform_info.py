from __future__ import annotations
import platform
from typing import Tuple

# manifests name platforms like linux/windows/darwin and amd64/arm64
_OS_ALIASES = {
    "linux": "linux",
    "windows": "windows",
    "darwin": "darwin",
    "freebsd": "freebsd",
}

_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "x64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "armv6l": "arm",
    "i386": "386",
    "i686": "386",
    "x86": "386",
}

ANY_ARCH = "any"

def normalize_os(name: str) -> str:
    key = name.strip().lower()
    return _OS_ALIASES.get(key, key)

def normalize_arch(name: str) -> str:
    key = name.strip().lower()
    return _ARCH_ALIASES.get(key, key)

def host_os() -> str:
    return normalize_os(platform.system())

def host_arch() -> str:
    return normalize_arch(platform.machine())

def host_platform() -> Tuple[str, str]:
    return host_os(), host_arch()
