from __future__ import annotations
import shutil
import threading
from datetime import timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from .database import PackageDatabase
from .errors import (
    AlreadyExistsError,
    CommandFailedError,
    ExecutionInProgressError,
    HasDependentsError,
    NetworkUnavailableError,
    PackageNotInstalledError,
    QuiverError,
)
from .execution.engine import ExecutionEngine
from .execution.netbridge import NetbridgeIdentification, NetbridgeProcessor
from .fs_layout import build_layout, ensure_dirs, validate_arrow_name
from .logging_setup import REDACTED, arrow_log, get_logger
from .manifest.base import ArchPolicy, Manifest
from .manifest.processor import ManifestProcessor
from .manifest.registry import VersionRegistry, register_default_factories
from .models import ExecutionContext, ExecutionStatus, InstalledPackage, MethodType, PackageStatus, utcnow
from .netbridge.bridge import Netbridge
from .netbridge.port import Port, PortForwardingResult
from .planner import Plan, PlanAction
from .process_supervisor import ProcessInfo, ProcessSupervisor
from .repository import ArrowInfo, RepositoryManager
from .settings import Settings

log = get_logger("quiver.orch")

MANIFEST_NAME = "arrow.yaml"


def _stringify(variables: Optional[Dict[str, object]]) -> Dict[str, str]:
    return {k: str(v) for k, v in (variables or {}).items()}


class Orchestrator:
    def __init__(
        self,
        settings: Settings,
        *,
        registry: Optional[VersionRegistry] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        netbridge_factory: Optional[Callable[[], Netbridge]] = None,
        arch_policy: ArchPolicy = ArchPolicy.LENIENT,
    ):
        self.settings = settings
        self.layout = build_layout(settings)
        self.arch_policy = arch_policy

        self.registry = register_default_factories(registry or VersionRegistry())
        self.processor = ManifestProcessor(self.registry)
        self.database = PackageDatabase(self.layout.database)
        self.repository = RepositoryManager(settings.repositories, self.processor, settings.download_timeout)
        self.supervisor = supervisor or ProcessSupervisor()
        self.engine = ExecutionEngine(self.supervisor, download_timeout=settings.download_timeout,
                                      arch_policy=arch_policy)

        if netbridge_factory is None:
            def netbridge_factory() -> Netbridge:
                return Netbridge.create(settings.port_range_start, settings.port_range_end)
        self.netbridge = NetbridgeProcessor(
            netbridge_factory,
            enabled=settings.netbridge_enabled,
            port_range_start=settings.port_range_start,
            port_range_end=settings.port_range_end,
        )

        self._executions: Dict[str, ExecutionStatus] = {}
        self._exec_lock = threading.Lock()
        # install / uninstall / update touch several records at once
        self._lifecycle_lock = threading.RLock()

    def initialize(self) -> None:
        ensure_dirs(self.layout)
        self.database.load()
        self.supervisor.start_sweep(self.settings.process_sweep_interval)
        log.info("Orchestrator ready (install_dir=%s, repositories=%s)",
                 self.layout.install_dir, self.repository.get_repositories())

    def shutdown(self) -> None:
        self.supervisor.stop_sweep()

    # --- helpers ------------------------------------------------------------------

    def _require_package(self, name: str) -> InstalledPackage:
        pkg = self.database.get_package(name)
        if pkg is None:
            raise PackageNotInstalledError(name)
        return pkg

    def _load_installed(self, pkg: InstalledPackage) -> Manifest:
        return self.processor.load_from_installation(Path(pkg.install_path))

    def _context(self, name: str, install_path: Path, variables: Dict[str, str]) -> ExecutionContext:
        return ExecutionContext(arrow_name=name, install_path=str(install_path), variables=dict(variables))

    def _method_timeout(self) -> Optional[float]:
        return self.settings.method_timeout or None

    def _arrow_log(self, name: str):
        return arrow_log(self.layout.logs, name, json_logs=self.settings.log_json)

    # --- install ------------------------------------------------------------------

    def install(self, name: str, variables: Optional[Dict[str, object]] = None) -> InstalledPackage:
        with self._lifecycle_lock:
            return self._install(name, _stringify(variables), set())

    def _install(self, spec: str, variables: Dict[str, str], in_progress: Set[str]) -> InstalledPackage:
        _, name, _ = self.repository.parse_repository_spec(spec)
        validate_arrow_name(name)
        log.info("Installing arrow: %s", spec)
        if self.database.is_installed(name):
            raise AlreadyExistsError(name)

        fetched = self.repository.fetch(spec)
        manifest = fetched.manifest
        self.processor.validate_arrow(manifest, self.arch_policy)

        in_progress = in_progress | {name}
        dependencies = manifest.get_dependencies()
        for dep in dependencies:
            if self.database.is_installed(dep):
                continue
            if dep in in_progress:
                log.warning("Dependency cycle %s -> %s, not recursing", name, dep)
                continue
            log.info("Installing dependency %s of %s", dep, name)
            self._install(dep, {}, in_progress)

        install_path = self.layout.arrow_dir(name)
        self.repository.write_manifest(fetched, install_path / MANIFEST_NAME)

        ctx = self._context(name, install_path, variables)
        try:
            with self._arrow_log(name):
                self.engine.execute_method(manifest, MethodType.INSTALL, ctx, timeout=self._method_timeout())
        except QuiverError:
            log.error("Install method failed for %s, removing %s", name, install_path)
            shutil.rmtree(install_path, ignore_errors=True)
            raise

        self.database.add_package(InstalledPackage(
            name=name,
            version=manifest.arrow_version(),
            repository=fetched.source,
            install_path=str(install_path),
            dependencies=list(dependencies),
            variables=variables,
        ))
        for dep in dependencies:
            self.database.add_dependency(name, dep)
        # cycle members installed earlier in this run could not link to us yet
        for other in self.database.get_all_packages().values():
            if name in other.dependencies and other.name not in self.database.get_dependents(name):
                self.database.add_dependency(other.name, name)

        log.info("Installed arrow %s (%s)", name, manifest.arrow_version())
        return self.database.get_package(name)

    def plan_install(self, name: str, variables: Optional[Dict[str, object]] = None) -> Plan:
        """Everything install() would do, without side effects."""
        plan = Plan(ok=True, arrow=name)
        self._plan(name, _stringify(variables), plan, set())
        return plan

    def _plan(self, spec: str, variables: Dict[str, str], plan: Plan, seen: Set[str]) -> None:
        _, name, _ = self.repository.parse_repository_spec(spec)
        validate_arrow_name(name)
        seen.add(name)
        if self.database.is_installed(name):
            plan.add(PlanAction(action="skip", target=name, detail="already installed", will_change=False))
            return
        try:
            fetched = self.repository.fetch(spec)
            self.processor.validate_arrow(fetched.manifest, self.arch_policy)
        except QuiverError as e:
            plan.add(PlanAction(action="error", target=name, detail=str(e), will_change=False, severity="error"))
            return

        manifest = fetched.manifest
        for dep in manifest.get_dependencies():
            if dep in seen:
                continue
            plan.add(PlanAction(action="install-dependency", target=dep, detail=f"required by {name}"))
            self._plan(dep, {}, plan, seen)

        install_path = self.layout.arrow_dir(name)
        plan.add(PlanAction(action="write-manifest", target=name,
                            detail=f"{fetched.source} -> {install_path / MANIFEST_NAME}"))
        try:
            commands = self.engine.execute_method(
                manifest, MethodType.INSTALL, self._context(name, install_path, variables), dry_run=True
            )
        except QuiverError as e:
            plan.add(PlanAction(action="error", target=name, detail=str(e), will_change=False, severity="error"))
            return
        plan.add(PlanAction(action="run-command", target=name, detail="install", commands=commands))
        if manifest.get_netbridge():
            plan.notes.append(f"{name}: ports for {[n.name for n in manifest.get_netbridge()]} are assigned at execute time")

    # --- uninstall ----------------------------------------------------------------

    def uninstall(self, name: str) -> List[str]:
        """Remove an arrow. Returns dependencies left without any dependents."""
        with self._lifecycle_lock:
            log.info("Uninstalling arrow: %s", name)
            pkg = self._require_package(name)
            dependents = self.database.get_dependents(name)
            if dependents:
                raise HasDependentsError(name, dependents)

            if self.supervisor.has_running_processes(name):
                self.supervisor.stop_processes(name, True, self.settings.stop_timeout)

            try:
                manifest = self._load_installed(pkg)
            except QuiverError as e:
                log.warning("Failed to load arrow for uninstall, proceeding anyway: %s", e)
            else:
                if manifest.get_method(MethodType.UNINSTALL.value):
                    ctx = self._context(name, Path(pkg.install_path), pkg.variables)
                    try:
                        self.engine.execute_method(manifest, MethodType.UNINSTALL, ctx,
                                                   timeout=self._method_timeout())
                    except QuiverError as e:
                        log.warning("Uninstall method failed for %s: %s", name, e)

            try:
                shutil.rmtree(pkg.install_path)
            except FileNotFoundError:
                pass
            except OSError as e:
                log.warning("Failed to remove install directory %s: %s", pkg.install_path, e)

            for dep in pkg.dependencies:
                self.database.remove_dependency(name, dep)
            self.database.remove_package(name)

            orphaned = [d for d in pkg.dependencies
                        if self.database.is_installed(d) and not self.database.has_dependents(d)]
            for dep in orphaned:
                log.info("Dependency %s is no longer needed, consider removing it", dep)
            log.info("Uninstalled arrow: %s", name)
            return orphaned

    # --- execute ------------------------------------------------------------------

    def _begin_execution(self, name: str, variables: Dict[str, str]) -> InstalledPackage:
        pkg = self._require_package(name)
        with self._exec_lock:
            current = self._executions.get(name)
            if current is not None and current.status == "running":
                raise ExecutionInProgressError(name)
            self._executions[name] = ExecutionStatus(arrow_name=name)
        return pkg

    def _finish_execution(self, name: str, error: Optional[Exception]) -> None:
        with self._exec_lock:
            status = self._executions.get(name)
            if status is None:
                return
            status.completed_at = utcnow()
            if error is not None:
                status.status = "failed"
                status.error = str(error)
            else:
                status.status = "completed"

    def _redacted(self, manifest: Manifest, variables: Dict[str, str]) -> Dict[str, str]:
        sensitive = {v.name for v in manifest.get_variables() if v.sensitive}
        return {k: (REDACTED if k in sensitive else v) for k, v in variables.items()}

    def _run_execution(self, name: str, pkg: InstalledPackage, variables: Dict[str, str]) -> ExecutionStatus:
        with self._arrow_log(name):
            return self._execute_logged(name, pkg, variables)

    def _execute_logged(self, name: str, pkg: InstalledPackage, variables: Dict[str, str]) -> ExecutionStatus:
        try:
            manifest = self._load_installed(pkg)
            merged = dict(pkg.variables)
            merged.update(variables)
            ctx = self._context(name, Path(pkg.install_path), merged)

            results = self.netbridge.process_variables_runtime(manifest, ctx)
            self.netbridge.log_results(results)
            with self._exec_lock:
                self._executions[name].variables = self._redacted(manifest, self.engine.resolve_variables(manifest, ctx))

            self.database.update_status(name, PackageStatus.RUNNING)
            self.engine.execute_method(manifest, MethodType.EXECUTE, ctx)
        except QuiverError as e:
            log.error("Execution of %s failed: %s", name, e)
            self._finish_execution(name, e)
            if self.database.is_installed(name):
                self.database.update_status(name, PackageStatus.ERROR)
            raise
        self._finish_execution(name, None)
        self.database.update_status(name, PackageStatus.STOPPED)
        return self.get_execution_status(name)

    def execute(self, name: str, variables: Optional[Dict[str, object]] = None) -> ExecutionStatus:
        """Run the execute method in the calling thread; returns when the process tree exits."""
        log.info("Executing arrow: %s", name)
        variables = _stringify(variables)
        pkg = self._begin_execution(name, variables)
        return self._run_execution(name, pkg, variables)

    def execute_async(self, name: str, variables: Optional[Dict[str, object]] = None) -> ExecutionStatus:
        variables = _stringify(variables)
        pkg = self._begin_execution(name, variables)

        def _worker() -> None:
            try:
                self._run_execution(name, pkg, variables)
                log.info("Async execution of %s completed", name)
            except QuiverError as e:
                log.error("Async execution of %s failed: %s", name, e)

        threading.Thread(target=_worker, name=f"quiver-exec-{name}", daemon=True).start()
        return self.get_execution_status(name)

    def identify_netbridge(self, name: str, variables: Optional[Dict[str, object]] = None) -> List[NetbridgeIdentification]:
        pkg = self._require_package(name)
        manifest = self._load_installed(pkg)
        merged = dict(pkg.variables)
        merged.update(_stringify(variables))
        return self.netbridge.identify_variables(manifest, self._context(name, Path(pkg.install_path), merged))

    # execution tracking

    def get_execution_status(self, name: str) -> Optional[ExecutionStatus]:
        with self._exec_lock:
            status = self._executions.get(name)
            return status.model_copy(deep=True) if status is not None else None

    def is_execution_running(self, name: str) -> bool:
        status = self.get_execution_status(name)
        return status is not None and status.status == "running"

    def get_all_executions(self) -> Dict[str, ExecutionStatus]:
        with self._exec_lock:
            return {k: v.model_copy(deep=True) for k, v in self._executions.items()}

    def cleanup_old_executions(self, max_age: float) -> int:
        cutoff = utcnow() - timedelta(seconds=max_age)
        removed = 0
        with self._exec_lock:
            for name in list(self._executions):
                status = self._executions[name]
                if status.completed_at is not None and status.completed_at < cutoff:
                    del self._executions[name]
                    removed += 1
        return removed

    # --- stop / update / validate -----------------------------------------------------

    def stop(self, name: str, graceful: bool = True, timeout: Optional[float] = None) -> None:
        self._require_package(name)
        timeout = self.settings.stop_timeout if timeout is None else timeout
        log.info("Stopping arrow %s (graceful=%s, timeout=%ss)", name, graceful, timeout)
        errors = self.supervisor.stop_processes(name, graceful, timeout)
        if errors:
            self.database.update_status(name, PackageStatus.ERROR)
            raise CommandFailedError(f"stop {name}", "; ".join(errors))
        self.database.update_status(name, PackageStatus.STOPPED)

    def update(self, spec: str) -> InstalledPackage:
        with self._lifecycle_lock:
            _, name, _ = self.repository.parse_repository_spec(spec)
            validate_arrow_name(name)
            log.info("Updating arrow: %s", name)
            pkg = self._require_package(name)

            fetched = self.repository.fetch(spec)
            manifest = fetched.manifest
            if manifest.arrow_version() == pkg.version:
                log.info("Arrow %s is already up to date (%s)", name, pkg.version)
                return pkg
            self.processor.validate_arrow(manifest, self.arch_policy)

            new_deps = manifest.get_dependencies()
            for dep in new_deps:
                if not self.database.is_installed(dep):
                    self._install(dep, {}, {name})

            if manifest.get_method(MethodType.UPDATE.value):
                ctx = self._context(name, Path(pkg.install_path), pkg.variables)
                self.engine.execute_method(manifest, MethodType.UPDATE, ctx, timeout=self._method_timeout())
            else:
                log.info("Arrow %s defines no update method, refreshing manifest only", name)

            self.repository.write_manifest(fetched, Path(pkg.install_path) / MANIFEST_NAME)

            for dep in pkg.dependencies:
                if dep not in new_deps:
                    self.database.remove_dependency(name, dep)
            previous = pkg.version
            pkg = self._require_package(name)
            pkg.version = manifest.arrow_version()
            pkg.repository = fetched.source
            pkg.dependencies = list(new_deps)
            self.database.update_package(pkg)
            for dep in new_deps:
                self.database.add_dependency(name, dep)

            log.info("Updated arrow %s %s -> %s", name, previous, pkg.version)
            return self._require_package(name)

    def validate(self, name: str) -> Dict[str, object]:
        log.info("Validating arrow: %s", name)
        pkg = self._require_package(name)
        manifest = self._load_installed(pkg)
        self.processor.validate_arrow(manifest, self.arch_policy)
        self.database.validate_dependencies(name)

        ran = False
        if manifest.get_method(MethodType.VALIDATE.value):
            ctx = self._context(name, Path(pkg.install_path), pkg.variables)
            self.engine.execute_method(manifest, MethodType.VALIDATE, ctx, timeout=self._method_timeout())
            ran = True
        return {"name": name, "valid": True, "validate_method": ran}

    # --- queries ------------------------------------------------------------------

    def get_status(self, name: str) -> Dict[str, object]:
        pkg = self._require_package(name)
        execution = self.get_execution_status(name)
        return {
            "name": name,
            "version": pkg.version,
            "status": pkg.status.value,
            "running": self.supervisor.has_running_processes(name),
            "processes": [p.to_dict() for p in self.supervisor.get_processes(name)],
            "execution": execution.model_dump(mode="json") if execution else None,
        }

    def get_processes(self, name: str) -> List[ProcessInfo]:
        self._require_package(name)
        return self.supervisor.get_processes(name)

    def get_dependency_tree(self, name: str) -> Dict[str, List[str]]:
        return self.database.get_dependency_tree(name)

    def list_installed(self) -> Dict[str, InstalledPackage]:
        return self.database.get_all_packages()

    def get_packages_by_status(self, status: PackageStatus) -> List[InstalledPackage]:
        return self.database.get_packages_by_status(status)

    def search(self, query: str) -> List[ArrowInfo]:
        return self.repository.search(query)

    # --- ports --------------------------------------------------------------------

    def _bridge(self) -> Netbridge:
        bridge = self.netbridge.bridge
        if bridge is None:
            raise NetworkUnavailableError("port forwarding is not available (UPnP and NAT-PMP both unavailable)")
        return bridge

    def open_port(self, port: int, protocol: str = "tcp") -> PortForwardingResult:
        return self._bridge().open_port(port, protocol)

    def close_port(self, port: int, protocol: str = "tcp") -> PortForwardingResult:
        return self._bridge().close_port(port, protocol)

    def open_port_auto(self, protocol: str = "tcp") -> PortForwardingResult:
        return self._bridge().open_port_auto(protocol)

    def list_open_ports(self) -> List[Port]:
        return self._bridge().list_open_ports()

    def get_public_ip(self) -> str:
        return self._bridge().get_public_ip()

    def refresh_public_ip(self) -> str:
        return self._bridge().refresh_public_ip()
