from __future__ import annotations
import os
import re
import signal
import subprocess
import threading
from pathlib import Path
from typing import Dict, List, Optional

from ..errors import CommandFailedError
from ..logging_setup import REDACTED, get_logger, register_secret
from ..manifest.base import ArchPolicy, Manifest, resolve_commands
from ..models import ExecutionContext, MethodType
from ..platform_info import host_platform
from ..process_supervisor import ProcessInfo, ProcessSupervisor, popen_group_kwargs
from .builtins import run_builtin, split_builtin

log = get_logger("quiver.execution")

_PLACEHOLDER = re.compile(r"\$\{([^}]+)\}")


class ExecutionEngine:
    """
    Runs manifest methods command by command.

    Commands run strictly in order; the first failure aborts the method.
    Processes spawned by the `execute` method are handed to the supervisor
    so they can be stopped from another thread.
    """

    def __init__(self, supervisor: Optional[ProcessSupervisor] = None, *,
                 download_timeout: float = 30.0, arch_policy: ArchPolicy = ArchPolicy.LENIENT):
        self.supervisor = supervisor or ProcessSupervisor()
        self.download_timeout = download_timeout
        self.arch_policy = arch_policy

    # --- variables / environment ------------------------------------------------

    def resolve_variables(self, manifest: Manifest, ctx: ExecutionContext) -> Dict[str, str]:
        """Manifest defaults overlaid with caller values, plus the install path aliases."""
        resolved: Dict[str, str] = {}
        for var in manifest.get_variables():
            if var.name in ctx.variables:
                resolved[var.name] = str(ctx.variables[var.name])
            else:
                resolved[var.name] = var.default_str()
        # caller may pass values the manifest does not declare (netbridge ports)
        for name, value in ctx.variables.items():
            resolved.setdefault(name, str(value))
        resolved["INSTALL_PATH"] = str(ctx.install_path)
        resolved["INSTALL_DIR"] = str(ctx.install_path)
        return resolved

    def prepare_environment(self, manifest: Manifest, ctx: ExecutionContext) -> Dict[str, str]:
        env = dict(os.environ)
        resolved = self.resolve_variables(manifest, ctx)
        env.update(resolved)
        env.update(ctx.environment)

        sensitive = {v.name for v in manifest.get_variables() if v.sensitive}
        register_secret(*(resolved[n] for n in sensitive if n in resolved))
        for name, value in resolved.items():
            log.debug("Environment: %s=%s", name, REDACTED if name in sensitive else value)
        return env

    @staticmethod
    def expand_variables(command: str, variables: Dict[str, str]) -> str:
        # one pass: substituted values are never scanned again
        return _PLACEHOLDER.sub(lambda m: variables.get(m.group(1), m.group(0)), command)

    # --- method dispatch ----------------------------------------------------------

    def get_commands(self, manifest: Manifest, method: str, os_name: Optional[str] = None,
                     arch: Optional[str] = None, policy: Optional[ArchPolicy] = None) -> List[str]:
        host_os, host_arch = host_platform()
        return resolve_commands(manifest, method, os_name or host_os, arch or host_arch,
                                policy or self.arch_policy)

    def has_method(self, manifest: Manifest, method: str) -> bool:
        return bool(manifest.get_method(method))

    def execute_method(
        self,
        manifest: Manifest,
        method: str,
        ctx: ExecutionContext,
        *,
        dry_run: bool = False,
        timeout: Optional[float] = None,
        os_name: Optional[str] = None,
        arch: Optional[str] = None,
    ) -> List[str]:
        """
        Run every command of `method` for the host platform.

        Returns the expanded command list. With dry_run nothing is executed,
        the expanded commands are only logged.
        """
        method = method.value if isinstance(method, MethodType) else method
        commands = self.get_commands(manifest, method, os_name, arch)
        log.info("Executing method %s for arrow %s (%d commands)", method, manifest.name(), len(commands))

        variables = self.resolve_variables(manifest, ctx)
        env = self.prepare_environment(manifest, ctx)
        work_dir = Path(ctx.install_path)
        track_as = ctx.arrow_name if method == MethodType.EXECUTE.value else None

        expanded: List[str] = []
        for i, raw in enumerate(commands, start=1):
            command = self.expand_variables(raw, variables)
            expanded.append(command)
            if dry_run:
                log.info("DRY RUN: would execute command %d/%d: %s", i, len(commands), command)
                continue
            if ctx.cancelled():
                raise CommandFailedError(command, "execution cancelled")
            log.info("Executing command %d/%d: %s", i, len(commands), command)
            self.run_command(command, work_dir, env, track_as=track_as, timeout=timeout, cancel=ctx.cancel)

        log.info("Completed method %s for arrow %s", method, manifest.name())
        return expanded

    def run_command(self, command: str, work_dir: Path, env: Dict[str, str], *,
                    track_as: Optional[str] = None, timeout: Optional[float] = None,
                    cancel: Optional[threading.Event] = None) -> None:
        builtin = split_builtin(command)
        if builtin is not None:
            prefix, payload = builtin
            run_builtin(prefix, payload, work_dir, timeout=self.download_timeout, cancel=cancel)
            return
        self._run_shell(command, work_dir, env, track_as=track_as, timeout=timeout)

    def _run_shell(self, command: str, work_dir: Path, env: Dict[str, str], *,
                   track_as: Optional[str], timeout: Optional[float]) -> None:
        if not command.strip():
            return
        work_dir.mkdir(parents=True, exist_ok=True)
        try:
            proc = subprocess.Popen(
                command, shell=True, cwd=str(work_dir), env=env,
                stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                text=True, errors="replace", **popen_group_kwargs(),
            )
        except OSError as e:
            raise CommandFailedError(command, e) from e

        info: Optional[ProcessInfo] = None
        if track_as:
            info = self.supervisor.track_process(track_as, proc, command)

        timed_out = threading.Event()
        timer: Optional[threading.Timer] = None
        if timeout:
            timer = threading.Timer(timeout, self._on_timeout, args=(proc, timed_out))
            timer.daemon = True
            timer.start()

        try:
            assert proc.stdout is not None
            for line in proc.stdout:
                log.info("[%s] %s", track_as or "cmd", line.rstrip())
            rc = proc.wait()
        finally:
            if timer is not None:
                timer.cancel()
            if proc.stdout is not None:
                proc.stdout.close()

        if timed_out.is_set():
            raise CommandFailedError(command, f"timed out after {timeout}s")
        if rc != 0:
            if info is not None and info.stop_requested:
                log.info("Process pid=%s exited with %s after a stop request", proc.pid, rc)
                return
            raise CommandFailedError(command, f"exit status {rc}")

    @staticmethod
    def _on_timeout(proc: subprocess.Popen, flag: threading.Event) -> None:
        if proc.poll() is None:
            log.warning("Command pid=%s exceeded its timeout, killing", proc.pid)
            flag.set()
            if os.name == "posix":
                try:
                    os.killpg(proc.pid, signal.SIGKILL)
                    return
                except ProcessLookupError:
                    return
            proc.kill()
