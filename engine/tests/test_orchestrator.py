"""
End-to-end lifecycle tests against a local repository directory.
"""

import sys
import time

import pytest

from quiver.errors import (
    AlreadyExistsError,
    ArrowNotFoundError,
    CommandFailedError,
    ExecutionInProgressError,
    HasDependentsError,
    InvalidNameError,
    NetworkUnavailableError,
    PackageNotInstalledError,
)
from quiver.models import PackageStatus
from quiver.netbridge import ForwardingMethod, Netbridge
from quiver.orchestrator import Orchestrator

from conftest import simple_arrow, write_arrow

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="arrows use POSIX shell commands")


def wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


@pytest.fixture
def orch(settings):
    o = Orchestrator(settings)
    o.initialize()
    yield o
    for name in list(o.supervisor.get_all_processes()):
        o.supervisor.stop_processes(name, graceful=False)
    o.shutdown()


@pytest.fixture
def repo(repo_dir):
    write_arrow(repo_dir, "java", simple_arrow("java"))
    write_arrow(repo_dir, "minecraft", simple_arrow("minecraft", dependencies=["java"]))
    return repo_dir


class TestInstall:
    def test_dependency_installed_first(self, orch, repo):
        pkg = orch.install("minecraft")

        assert pkg.dependencies == ["java"]
        assert orch.database.is_installed("java")
        assert orch.database.get_dependents("java") == ["minecraft"]
        java_dir = orch.layout.arrow_dir("java")
        assert (java_dir / "installed.txt").read_text().strip() == "java"
        assert (orch.layout.arrow_dir("minecraft") / "arrow.yaml").exists()

    def test_duplicate_install(self, orch, repo):
        orch.install("java")
        with pytest.raises(AlreadyExistsError):
            orch.install("java")

    def test_unknown_arrow(self, orch, repo):
        with pytest.raises(ArrowNotFoundError):
            orch.install("nope")

    def test_repository_prefix(self, orch, repo):
        pkg = orch.install(f"{repo}@java")
        assert pkg.name == "java"
        assert pkg.repository.endswith("java.yaml")

    def test_failed_install_method_cleans_up(self, orch, repo_dir):
        body = simple_arrow("broken").replace("echo broken > installed.txt", "exit 1")
        write_arrow(repo_dir, "broken", body)
        with pytest.raises(CommandFailedError):
            orch.install("broken")
        assert not orch.database.is_installed("broken")
        assert not orch.layout.arrow_dir("broken").exists()

    def test_cyclic_dependencies(self, orch, repo_dir):
        write_arrow(repo_dir, "a", simple_arrow("a", dependencies=["b"]))
        write_arrow(repo_dir, "b", simple_arrow("b", dependencies=["a"]))
        orch.install("a")

        assert orch.get_dependency_tree("a") == {"a": ["b"], "b": ["a"]}
        assert orch.database.get_dependents("a") == ["b"]
        assert orch.database.get_dependents("b") == ["a"]

    def test_plan_has_no_side_effects(self, orch, repo):
        plan = orch.plan_install("minecraft", {"PORT": "7777"})

        assert plan.ok
        actions = [(a.action, a.target) for a in plan.actions]
        assert ("install-dependency", "java") in actions
        assert ("write-manifest", "minecraft") in actions
        run = [a for a in plan.actions if a.action == "run-command" and a.target == "minecraft"][0]
        assert run.commands == ["echo minecraft > installed.txt"]
        assert orch.list_installed() == {}
        assert not orch.layout.arrow_dir("minecraft").exists()

    def test_plan_reports_missing_arrow(self, orch, repo):
        plan = orch.plan_install("nope")
        assert not plan.ok
        assert plan.actions[0].severity == "error"

    @pytest.mark.parametrize("name", ["../evil", "..", ".", "", "a/b", "a\\b", "repo@../evil"])
    def test_names_that_escape_install_dir_rejected(self, orch, repo_dir, name):
        write_arrow(repo_dir.parent, "evil", simple_arrow("evil"))
        with pytest.raises(InvalidNameError):
            orch.install(name)
        assert not (orch.layout.install_dir.parent / "evil").exists()
        assert orch.list_installed() == {}

    def test_plan_rejects_bad_name(self, orch, repo):
        with pytest.raises(InvalidNameError):
            orch.plan_install("../java")

    def test_bad_dependency_name_aborts_install(self, orch, repo_dir):
        write_arrow(repo_dir, "host", simple_arrow("host", dependencies=["../java"]))
        with pytest.raises(InvalidNameError):
            orch.install("host")
        assert not orch.database.is_installed("host")

    def test_layout_refuses_bad_name(self, orch):
        with pytest.raises(InvalidNameError):
            orch.layout.arrow_dir("..")


class TestUninstall:
    def test_blocked_by_dependents_leaves_database_unchanged(self, orch, repo):
        orch.install("minecraft")
        before = {k: v.model_dump() for k, v in orch.list_installed().items()}

        with pytest.raises(HasDependentsError) as exc:
            orch.uninstall("java")

        assert exc.value.dependents == ["minecraft"]
        assert {k: v.model_dump() for k, v in orch.list_installed().items()} == before
        assert orch.layout.arrow_dir("java").exists()

    def test_uninstall_reports_orphans(self, orch, repo):
        orch.install("minecraft")
        orphaned = orch.uninstall("minecraft")

        assert orphaned == ["java"]
        assert not orch.database.is_installed("minecraft")
        assert orch.database.get_dependents("java") == []
        assert not orch.layout.arrow_dir("minecraft").exists()
        orch.uninstall("java")
        assert orch.list_installed() == {}

    def test_not_installed(self, orch, repo):
        with pytest.raises(PackageNotInstalledError):
            orch.uninstall("java")


class TestExecute:
    def test_default_variables(self, orch, repo):
        orch.install("java")
        status = orch.execute("java")

        assert status.status == "completed"
        assert (orch.layout.arrow_dir("java") / "port.txt").read_text().strip() == "25565"
        assert orch.database.get_status("java") is PackageStatus.STOPPED
        assert status.variables["TOKEN"] == "***REDACTED***"

    def test_user_variables(self, orch, repo):
        orch.install("java", {"PORT": 7777})
        orch.execute("java")
        assert (orch.layout.arrow_dir("java") / "port.txt").read_text().strip() == "7777"

        orch.execute("java", {"PORT": "7778"})
        assert (orch.layout.arrow_dir("java") / "port.txt").read_text().strip() == "7778"

    def test_failure_sets_error(self, orch, repo_dir):
        write_arrow(repo_dir, "crash", simple_arrow("crash", execute="exit 4"))
        orch.install("crash")
        with pytest.raises(CommandFailedError):
            orch.execute("crash")
        assert orch.database.get_status("crash") is PackageStatus.ERROR
        assert orch.get_execution_status("crash").status == "failed"

    def test_async_execute_and_stop(self, orch, repo_dir):
        write_arrow(repo_dir, "server", simple_arrow("server", execute="sleep 30"))
        orch.install("server")

        orch.execute_async("server")
        assert wait_for(lambda: orch.supervisor.has_running_processes("server"))
        assert orch.is_execution_running("server")
        assert orch.database.get_status("server") is PackageStatus.RUNNING
        with pytest.raises(ExecutionInProgressError):
            orch.execute_async("server")

        orch.stop("server", graceful=True, timeout=5)
        assert wait_for(lambda: not orch.is_execution_running("server"))
        assert orch.get_execution_status("server").status == "completed"
        assert orch.database.get_status("server") is PackageStatus.STOPPED
        assert orch.get_status("server")["running"] is False

    def test_cleanup_old_executions(self, orch, repo):
        orch.install("java")
        orch.execute("java")
        assert orch.cleanup_old_executions(3600) == 0
        time.sleep(0.01)
        assert orch.cleanup_old_executions(0) == 1
        assert orch.get_all_executions() == {}

    def test_not_installed(self, orch, repo):
        with pytest.raises(PackageNotInstalledError):
            orch.execute("java")


class TestUpdateValidate:
    def test_update_runs_update_method(self, orch, repo_dir):
        write_arrow(repo_dir, "java", simple_arrow("java"))
        orch.install("java")

        extra = "    update:\n      - echo updated > updated.txt\n"
        write_arrow(repo_dir, "java", simple_arrow("java", version="2.0.0", extra_methods=extra))
        pkg = orch.update("java")

        assert pkg.version == "2.0.0"
        assert (orch.layout.arrow_dir("java") / "updated.txt").exists()
        assert "2.0.0" in (orch.layout.arrow_dir("java") / "arrow.yaml").read_text()

    def test_update_same_version_is_noop(self, orch, repo):
        orch.install("java")
        before = orch.database.get_package("java")
        assert orch.update("java").updated_at == before.updated_at

    def test_validate(self, orch, repo):
        orch.install("java")
        assert orch.validate("java") == {"name": "java", "valid": True, "validate_method": False}


class TestPorts:
    def test_unavailable_when_disabled(self, orch):
        with pytest.raises(NetworkUnavailableError):
            orch.open_port(25565)

    def test_uses_bridge_factory(self, settings):
        class Always:
            method = ForwardingMethod.NATPMP

            def forward_port(self, port):
                pass

            def close_port(self, port):
                pass

            def get_public_ip(self):
                return "203.0.113.1"

        settings.netbridge_enabled = True
        o = Orchestrator(settings, netbridge_factory=lambda: Netbridge([Always()], local_ip="10.0.0.2"))
        result = o.open_port(25565, "tcp/udp")
        assert result.success
        assert len(o.list_open_ports()) == 2
        assert o.refresh_public_ip() == "203.0.113.1"
