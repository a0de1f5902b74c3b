from __future__ import annotations
import json
import logging
import threading
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterator, Optional, Set
from .settings import Settings
from .fs_layout import build_layout

REDACTED = "***REDACTED***"

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
TEXT_DATEFMT = "%Y-%m-%d %H:%M:%S"


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        arrow = getattr(record, "arrow", None)
        if arrow:
            payload["arrow"] = arrow
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class SecretFilter(logging.Filter):
    """
    Replaces the values of sensitive arrow variables with REDACTED.

    Expanded commands and process output can carry passwords and tokens, so
    every handler quiver installs gets this filter.
    """

    def __init__(self):
        super().__init__()
        self._secrets: Set[str] = set()
        self._lock = threading.Lock()

    def register(self, *values: str) -> None:
        with self._lock:
            self._secrets.update(v for v in values if v and v.strip())

    def clear(self) -> None:
        with self._lock:
            self._secrets.clear()

    def mask(self, text: str) -> str:
        with self._lock:
            secrets = sorted(self._secrets, key=len, reverse=True)
        for secret in secrets:
            text = text.replace(secret, REDACTED)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = self.mask(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


secret_filter = SecretFilter()


def register_secret(*values: str) -> None:
    secret_filter.register(*values)


def _formatter(json_logs: bool) -> logging.Formatter:
    if json_logs:
        return _JsonFormatter()
    return logging.Formatter(fmt=TEXT_FORMAT, datefmt=TEXT_DATEFMT)


def setup_logging(settings: Settings) -> None:
    logs_dir = build_layout(settings).logs
    logs_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(settings.log_level.upper())
    fmt = _formatter(settings.log_json)

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    ch.addFilter(secret_filter)
    root.addHandler(ch)

    quiver_logger = logging.getLogger("quiver")
    for h in list(quiver_logger.handlers):
        if isinstance(h, RotatingFileHandler):
            quiver_logger.removeHandler(h)
            h.close()
    fh = RotatingFileHandler(logs_dir / "quiver.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    fh.setLevel(settings.log_level.upper())
    fh.addFilter(secret_filter)
    quiver_logger.addHandler(fh)
    quiver_logger.propagate = True


class _ThreadFilter(logging.Filter):
    def __init__(self, thread_id: int, arrow: str):
        super().__init__()
        self.thread_id = thread_id
        self.arrow = arrow

    def filter(self, record: logging.LogRecord) -> bool:
        if record.thread != self.thread_id:
            return False
        record.arrow = self.arrow
        return True


def arrow_log_path(logs_dir: Path, name: str) -> Path:
    return Path(logs_dir) / "arrows" / f"{name}.log"


@contextmanager
def arrow_log(logs_dir: Path, name: str, json_logs: bool = False,
              level: Optional[str] = None) -> Iterator[Path]:
    """
    Copy every quiver record emitted by the current thread into
    logs/arrows/<name>.log while the block runs.

    Install and execute run an arrow's commands in one thread, so this
    collects the method's commands and the process output of that arrow only.
    """
    path = arrow_log_path(logs_dir, name)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(_formatter(json_logs))
    if level:
        handler.setLevel(level.upper())
    handler.addFilter(_ThreadFilter(threading.get_ident(), name))
    handler.addFilter(secret_filter)

    quiver_logger = logging.getLogger("quiver")
    quiver_logger.addHandler(handler)
    try:
        yield path
    finally:
        quiver_logger.removeHandler(handler)
        handler.close()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
