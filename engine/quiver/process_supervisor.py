from __future__ import annotations
import os
import signal
import subprocess
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from .logging_setup import get_logger
from .models import utcnow

log = get_logger("quiver.proc")

_POSIX = os.name == "posix"


@dataclass
class ProcessInfo:
    pid: int
    arrow_name: str
    command: str
    proc: subprocess.Popen = field(repr=False)
    start_time: datetime = field(default_factory=utcnow)
    stop_requested: bool = False

    def is_alive(self) -> bool:
        return self.proc.poll() is None

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "arrow_name": self.arrow_name,
            "command": self.command,
            "start_time": self.start_time.isoformat(),
            "returncode": self.proc.poll(),
        }


def popen_group_kwargs() -> dict:
    """Popen kwargs that put the child in its own process group, so the whole shell tree is signaled."""
    if _POSIX:
        return {"start_new_session": True}
    return {"creationflags": getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)}


class ProcessSupervisor:
    def __init__(self):
        self._processes: Dict[str, List[ProcessInfo]] = {}
        self._lock = threading.Lock()
        self._sweeper: Optional[threading.Thread] = None
        self._sweep_stop: Optional[threading.Event] = None

    def track_process(self, arrow_name: str, proc: subprocess.Popen, command: str) -> ProcessInfo:
        info = ProcessInfo(pid=proc.pid, arrow_name=arrow_name, command=command, proc=proc)
        with self._lock:
            self._processes.setdefault(arrow_name, []).append(info)
        log.info("Tracking process pid=%s for arrow %s: %s", proc.pid, arrow_name, command)
        return info

    def get_processes(self, arrow_name: str) -> List[ProcessInfo]:
        with self._lock:
            return list(self._processes.get(arrow_name, []))

    def get_all_processes(self) -> Dict[str, List[ProcessInfo]]:
        with self._lock:
            return {k: list(v) for k, v in self._processes.items()}

    def stop_processes(self, arrow_name: str, graceful: bool = True, timeout: float = 10.0) -> List[str]:
        """
        Stop every process tracked for `arrow_name`.

        Returns the list of per-process failures ("pid N: reason"); processes
        confirmed dead are dropped from tracking either way.
        """
        with self._lock:
            infos = list(self._processes.get(arrow_name, []))
            for info in infos:
                info.stop_requested = True

        if not infos:
            log.info("No processes to stop for arrow %s", arrow_name)
            return []

        log.info("Stopping %d processes for arrow %s (graceful=%s)", len(infos), arrow_name, graceful)
        errors: List[str] = []
        stopped: List[ProcessInfo] = []
        for info in infos:
            try:
                self._stop_one(info, graceful, timeout)
                stopped.append(info)
            except OSError as e:
                log.error("Failed to stop pid=%s: %s", info.pid, e)
                errors.append(f"pid {info.pid}: {e}")

        with self._lock:
            remaining = [i for i in self._processes.get(arrow_name, []) if i not in stopped]
            if remaining:
                self._processes[arrow_name] = remaining
            else:
                self._processes.pop(arrow_name, None)

        if not errors:
            log.info("Stopped all processes for arrow %s", arrow_name)
        return errors

    def _stop_one(self, info: ProcessInfo, graceful: bool, timeout: float) -> None:
        if not info.is_alive():
            log.info("Process pid=%s is already stopped", info.pid)
            return

        if graceful:
            log.info("Sending SIGTERM to pid=%s", info.pid)
            if self._signal(info, signal.SIGTERM):
                try:
                    info.proc.wait(timeout=timeout)
                    log.info("Process pid=%s shut down gracefully", info.pid)
                    return
                except subprocess.TimeoutExpired:
                    log.warning("Graceful shutdown timeout for pid=%s, killing", info.pid)
            elif not info.is_alive():
                return

        log.warning("Killing pid=%s", info.pid)
        self._signal(info, getattr(signal, "SIGKILL", signal.SIGTERM), force=True)
        try:
            info.proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            raise OSError(f"process {info.pid} did not exit after kill")

    def _signal(self, info: ProcessInfo, sig: int, force: bool = False) -> bool:
        """Signal the process group (POSIX) or the process; False if the process is gone."""
        try:
            if _POSIX:
                pgid = os.getpgid(info.pid)
                # never signal our own group when the child was not started in a new session
                if pgid != os.getpgrp():
                    os.killpg(pgid, sig)
                else:
                    os.kill(info.pid, sig)
            elif force:
                info.proc.kill()
            else:
                info.proc.terminate()
            return True
        except ProcessLookupError:
            return False
        except PermissionError as e:
            log.warning("Cannot signal pid=%s: %s", info.pid, e)
            if force:
                info.proc.kill()
                return True
            return False

    def is_alive(self, info: ProcessInfo) -> bool:
        return info.is_alive()

    def has_running_processes(self, arrow_name: str) -> bool:
        return any(i.is_alive() for i in self.get_processes(arrow_name))

    def cleanup_dead_processes(self) -> int:
        removed = 0
        with self._lock:
            for name in list(self._processes):
                alive = []
                for info in self._processes[name]:
                    if info.is_alive():
                        alive.append(info)
                    else:
                        log.debug("Removing dead process pid=%s from tracking", info.pid)
                        removed += 1
                if alive:
                    self._processes[name] = alive
                else:
                    del self._processes[name]
        return removed

    # --- background sweep -----------------------------------------------------

    def run_sweep(self, stop_event: threading.Event, interval: float) -> None:
        log.info("Starting process cleanup routine (interval=%ss)", interval)
        while not stop_event.wait(interval):
            self.cleanup_dead_processes()
        log.info("Process cleanup routine stopped")

    def start_sweep(self, interval: float) -> threading.Event:
        if self._sweeper is not None and self._sweeper.is_alive():
            return self._sweep_stop
        self._sweep_stop = threading.Event()
        self._sweeper = threading.Thread(
            target=self.run_sweep, args=(self._sweep_stop, interval), name="quiver-proc-sweep", daemon=True
        )
        self._sweeper.start()
        return self._sweep_stop

    def stop_sweep(self) -> None:
        if self._sweep_stop is not None:
            self._sweep_stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5)
        self._sweeper = None
        self._sweep_stop = None
