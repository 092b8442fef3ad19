"""Subprocess helpers, pid liveness and owned background processes."""

import logging
import os
import signal
import subprocess
import sys
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from .errors import CommandFailed, FractaError

log = logging.getLogger("fracta")

# How long a freshly spawned tunnel/browser must survive before we trust it
SPAWN_GRACE_PERIOD = float(os.environ.get("FRACTA_SPAWN_GRACE", "0.5"))

# Set by the MCP server: stdout carries the protocol, so streamed child
# output is sent to stderr instead.
STDOUT_RESERVED = False


def stream_target():
    """Where streamed (uncaptured) child output goes."""
    return sys.stderr if STDOUT_RESERVED else None


def run(
    cmd: list[str],
    cwd: Optional[str] = None,
    input_data: Optional[bytes] = None,
    env: Optional[dict[str, str]] = None,
    capture: bool = True,
) -> tuple[int, str, str]:
    """Run a command to completion. No timeout: a hung tool hangs the caller.

    With ``capture=False`` output streams straight to the terminal and the
    returned stdout/stderr are empty.
    """
    log.debug(f"run: {' '.join(cmd)}")
    try:
        proc = subprocess.run(
            cmd,
            cwd=cwd,
            input=input_data,
            env=env,
            stdout=subprocess.PIPE if capture else stream_target(),
            stderr=subprocess.PIPE if capture else None,
        )
    except FileNotFoundError as e:
        raise FractaError(f"{cmd[0]} not found. Is it installed? ({e})") from e
    if not capture:
        return proc.returncode, "", ""
    return (
        proc.returncode,
        proc.stdout.decode(errors="replace"),
        proc.stderr.decode(errors="replace"),
    )


def run_checked(cmd: list[str], **kwargs) -> str:
    code, stdout, stderr = run(cmd, **kwargs)
    if code != 0:
        raise CommandFailed(cmd, code, stderr)
    return stdout


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        # Reap our own exited children so they don't linger as zombies
        reaped, _ = os.waitpid(pid, os.WNOHANG)
        if reaped == pid:
            return False
    except ChildProcessError:
        pass
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, owned by someone else
        return True
    return True


def terminate_pid(pid: int) -> None:
    """SIGTERM a pid; an already-exited process counts as success."""
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    except PermissionError as e:
        raise FractaError(f"Failed to kill process {pid}: {e}") from e


@dataclass
class ProcessHandle:
    """A background process we spawned and only know by pid."""

    pid: int
    alive: Callable[[int], bool] = field(default=pid_alive, repr=False)

    def is_alive(self) -> bool:
        return self.alive(self.pid)

    def terminate(self) -> None:
        terminate_pid(self.pid)


def spawn_background(
    cmd: list[str], what: str, inherit_output: bool = False
) -> ProcessHandle:
    """Fire-and-forget spawn with a short grace-period liveness check.

    The child gets its own session so it outlives this invocation.
    """
    if inherit_output:
        out, err = stream_target(), None
    else:
        out = err = subprocess.DEVNULL
    try:
        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=out,
            stderr=err,
            start_new_session=True,
        )
    except FileNotFoundError as e:
        raise FractaError(f"Failed to start {what}: {cmd[0]} not found ({e})") from e

    time.sleep(SPAWN_GRACE_PERIOD)
    rc = proc.poll()
    if rc is not None:
        raise FractaError(f"{what} exited immediately (exit code {rc})")
    log.info(f"Started {what} (PID {proc.pid})")
    return ProcessHandle(pid=proc.pid)
