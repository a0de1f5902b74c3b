"""
Tests for ProcessSupervisor: tracking, graceful stop, forced kill and the sweep.
"""

import subprocess
import sys
import time

import pytest

from quiver.process_supervisor import ProcessSupervisor, popen_group_kwargs

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")

IGNORE_TERM = (
    "import signal, time\n"
    "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
    "print('ready', flush=True)\n"
    "time.sleep(60)\n"
)


def spawn(code: str) -> subprocess.Popen:
    return subprocess.Popen([sys.executable, "-c", code], stdout=subprocess.PIPE, **popen_group_kwargs())


@pytest.fixture
def supervisor():
    s = ProcessSupervisor()
    yield s
    for infos in s.get_all_processes().values():
        for info in infos:
            if info.is_alive():
                info.proc.kill()
                info.proc.wait()


class TestTracking:
    def test_track_and_list(self, supervisor):
        proc = spawn("import time; time.sleep(60)")
        info = supervisor.track_process("game", proc, "sleep")
        assert info.pid == proc.pid
        assert supervisor.get_processes("game") == [info]
        assert supervisor.has_running_processes("game")
        assert not supervisor.has_running_processes("other")
        assert info.to_dict()["returncode"] is None

    def test_cleanup_dead(self, supervisor):
        proc = spawn("pass")
        proc.wait()
        supervisor.track_process("game", proc, "pass")
        assert supervisor.cleanup_dead_processes() == 1
        assert supervisor.get_processes("game") == []


class TestStop:
    def test_graceful_stop(self, supervisor):
        proc = spawn("import time; time.sleep(60)")
        info = supervisor.track_process("game", proc, "sleep")

        errors = supervisor.stop_processes("game", graceful=True, timeout=5)
        assert errors == []
        assert info.stop_requested
        assert proc.poll() is not None
        assert supervisor.get_processes("game") == []

    def test_sigterm_ignored_is_killed(self, supervisor):
        proc = spawn(IGNORE_TERM)
        # handler must be installed before SIGTERM is sent
        assert proc.stdout.readline().strip() == b"ready"
        supervisor.track_process("game", proc, "stubborn")

        started = time.monotonic()
        errors = supervisor.stop_processes("game", graceful=True, timeout=2)
        elapsed = time.monotonic() - started

        assert errors == []
        assert 2 <= elapsed < 6
        assert not supervisor.has_running_processes("game")
        assert proc.poll() is not None

    def test_force_stop(self, supervisor):
        proc = spawn(IGNORE_TERM)
        supervisor.track_process("game", proc, "stubborn")
        started = time.monotonic()
        assert supervisor.stop_processes("game", graceful=False) == []
        assert time.monotonic() - started < 2
        assert proc.poll() is not None

    def test_stop_nothing(self, supervisor):
        assert supervisor.stop_processes("ghost") == []

    def test_already_exited(self, supervisor):
        proc = spawn("pass")
        proc.wait()
        supervisor.track_process("game", proc, "pass")
        assert supervisor.stop_processes("game") == []
        assert supervisor.get_processes("game") == []


class TestSweep:
    def test_sweep_removes_dead(self, supervisor):
        proc = spawn("pass")
        proc.wait()
        supervisor.track_process("game", proc, "pass")
        supervisor.start_sweep(0.05)
        try:
            deadline = time.monotonic() + 3
            while supervisor.get_processes("game") and time.monotonic() < deadline:
                time.sleep(0.05)
        finally:
            supervisor.stop_sweep()
        assert supervisor.get_processes("game") == []
