import os
import time

import pytest

from fracta import procs
from fracta.errors import CommandFailed, FractaError


class TestRun:
    def test_captures(self):
        code, out, err = procs.run(["sh", "-c", "echo out; echo err >&2; exit 4"])
        assert (code, out, err) == (4, "out\n", "err\n")

    def test_missing_binary(self):
        with pytest.raises(FractaError, match="not found"):
            procs.run(["definitely-not-a-real-binary-xyz"])

    def test_run_checked(self):
        assert procs.run_checked(["echo", "hi"]) == "hi\n"
        with pytest.raises(CommandFailed) as exc:
            procs.run_checked(["sh", "-c", "echo boom >&2; exit 2"])
        assert exc.value.code == 2
        assert "boom" in str(exc.value)


class TestPidAlive:
    def test_self(self):
        assert procs.pid_alive(os.getpid())

    def test_invalid(self):
        assert not procs.pid_alive(0)
        assert not procs.pid_alive(-5)

    def test_exited_child(self):
        handle = procs.ProcessHandle(pid=_spawn_and_exit())
        assert not handle.is_alive()

    def test_terminate_gone_pid_is_ok(self):
        procs.terminate_pid(_spawn_and_exit())


def _spawn_and_exit() -> int:
    import subprocess

    proc = subprocess.Popen(["true"])
    proc.wait()
    return proc.pid


class TestSpawnBackground:
    @pytest.fixture(autouse=True)
    def short_grace(self, monkeypatch):
        monkeypatch.setattr(procs, "SPAWN_GRACE_PERIOD", 0.2)

    def test_long_running(self):
        handle = procs.spawn_background(["sleep", "30"], "sleeper")
        try:
            assert handle.is_alive()
        finally:
            handle.terminate()
        deadline = time.time() + 5
        while handle.is_alive() and time.time() < deadline:
            time.sleep(0.05)
        assert not handle.is_alive()

    def test_exits_immediately(self):
        with pytest.raises(FractaError, match=r"sleeper exited immediately \(exit code 3\)"):
            procs.spawn_background(["sh", "-c", "exit 3"], "sleeper")

    def test_missing_binary(self):
        with pytest.raises(FractaError, match="not found"):
            procs.spawn_background(["definitely-not-a-real-binary-xyz"], "ghost")

    def test_liveness_check_is_injectable(self):
        handle = procs.ProcessHandle(pid=12345, alive=lambda pid: pid == 12345)
        assert handle.is_alive()
