from __future__ import annotations

import json
import os
import signal
from pathlib import Path

import pytest

from fracta import procs


# ── Fake command-line tools ──────────────────────────────────────────────
# Each fake appends {"tool": ..., "args": [...], "pid": ...} to $FAKE_LOG and
# keeps whatever it needs in $FAKE_STATE.

_PRELUDE = """#!/usr/bin/env python3
import json
import os
import sys

LOG_PATH = os.environ["FAKE_LOG"]
STATE_PATH = os.environ["FAKE_STATE"]


def record(tool):
    entries = []
    if os.path.exists(LOG_PATH):
        with open(LOG_PATH) as f:
            entries = json.load(f)
    entries.append({"tool": tool, "args": sys.argv[1:], "pid": os.getpid(), "cwd": os.getcwd()})
    with open(LOG_PATH, "w") as f:
        json.dump(entries, f)


def load_state():
    if os.path.exists(STATE_PATH):
        with open(STATE_PATH) as f:
            return json.load(f)
    return {"vms": {}, "templates": {}}


def save_state(state):
    with open(STATE_PATH, "w") as f:
        json.dump(state, f)


def die(msg, code=1):
    print(msg, file=sys.stderr)
    sys.exit(code)
"""

_FAKE_GIT = _PRELUDE + """
import shutil

record("git")
args = sys.argv[1:]

if args[:2] == ["rev-parse", "--git-common-dir"]:
    print(os.environ["FAKE_GIT_COMMON_DIR"])
    sys.exit(0)

if args[:2] == ["worktree", "add"]:
    rest = args[2:]
    if rest and rest[0] == "-b":
        path = rest[2]
    else:
        path = rest[0]
    if os.path.exists(path):
        die(f"fatal: '{path}' already exists", 128)
    os.makedirs(path)
    for entry in os.listdir(os.getcwd()):
        src = os.path.join(os.getcwd(), entry)
        if os.path.isfile(src):
            shutil.copy(src, os.path.join(path, entry))
    sys.exit(0)

if args[:2] == ["worktree", "remove"]:
    if os.environ.get("FAKE_GIT_REMOVE_FAILS"):
        die("fatal: cannot remove worktree", 128)
    path = args[-1]
    shutil.rmtree(path, ignore_errors=True)
    sys.exit(0)

if args[:2] == ["branch", "-D"]:
    sys.exit(0)

die(f"unsupported git command: {args}")
"""

_FAKE_LIMACTL = _PRELUDE + """
record("limactl")
args = sys.argv[1:]
state = load_state()

if args == ["--version"]:
    print("limactl version 1.0.0")
    sys.exit(0)

cmd = args[0]

if cmd == "list":
    name = args[-1]
    if name in state["vms"]:
        print(json.dumps({"name": name, "status": state["vms"][name]}))
    sys.exit(0)

if cmd == "create":
    name = args[args.index("--name") + 1]
    with open(args[-1]) as f:
        state["templates"][name] = f.read()
    state["vms"][name] = "Stopped"
    save_state(state)
    sys.exit(0)

if cmd == "start":
    name = args[-1]
    if name not in state["vms"]:
        die(f"instance {name} does not exist")
    state["vms"][name] = "Running"
    save_state(state)
    ssh_dir = os.path.join(os.environ["HOME"], ".lima", name)
    os.makedirs(ssh_dir, exist_ok=True)
    with open(os.path.join(ssh_dir, "ssh.config"), "w") as f:
        f.write(f"Host lima-{name}\\n  Hostname 127.0.0.1\\n")
    sys.exit(0)

if cmd == "stop":
    state["vms"][args[-1]] = "Stopped"
    save_state(state)
    sys.exit(0)

if cmd == "delete":
    if os.environ.get("FAKE_LIMA_DELETE_FAILS"):
        die("delete failed")
    state["vms"].pop(args[-1], None)
    save_state(state)
    sys.exit(0)

if cmd == "shell":
    script = " ".join(args)
    if "docker image inspect" in script:
        sys.exit(1)
    if "docker compose" in script and script.rstrip().endswith(" ps"):
        print("NAME   STATUS")
        print("web    running")
    sys.exit(0)

die(f"unsupported limactl command: {args}")
"""

_FAKE_DOCKER = _PRELUDE + """
record("docker")
args = sys.argv[1:]

if args[:1] == ["compose"]:
    if "config" in args:
        print(os.environ.get("FAKE_COMPOSE_CONFIG", '{"name": "app", "services": {}}'))
    elif args[-1] == "ps":
        print("NAME   STATUS")
        print("web    running")
    sys.exit(0)

if args[:2] == ["image", "inspect"]:
    sys.exit(1)

die(f"unsupported docker command: {args}")
"""

_FAKE_LONG_RUNNING = _PRELUDE + """
import time

record(os.path.basename(sys.argv[0]))
if os.environ.get("FAKE_SPAWN_FAILS"):
    sys.exit(255)
time.sleep(300)
"""


def _write_tool(bin_dir: Path, name: str, script: str) -> None:
    path = bin_dir / name
    path.write_text(script)
    path.chmod(0o755)


def read_calls(log_file: Path, tool: str | None = None) -> list[dict]:
    if not log_file.exists():
        return []
    calls = json.loads(log_file.read_text())
    if tool is not None:
        calls = [c for c in calls if c["tool"] == tool]
    return calls


@pytest.fixture
def fake_tools(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    tmp_path = tmp_path.resolve()
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    _write_tool(bin_dir, "git", _FAKE_GIT)
    _write_tool(bin_dir, "limactl", _FAKE_LIMACTL)
    _write_tool(bin_dir, "docker", _FAKE_DOCKER)
    _write_tool(bin_dir, "ssh", _FAKE_LONG_RUNNING)
    _write_tool(bin_dir, "node", _FAKE_LONG_RUNNING)

    home_dir = tmp_path / "home"
    home_dir.mkdir()
    main_repo = tmp_path / "projects" / "app"
    (main_repo / ".git").mkdir(parents=True)

    log_file = tmp_path / "fake-log.json"
    state_file = tmp_path / "fake-state.json"

    old_path = os.environ.get("PATH", "")
    monkeypatch.setenv("PATH", f"{bin_dir}:{old_path}")
    monkeypatch.setenv("HOME", str(home_dir))
    monkeypatch.setenv("FAKE_LOG", str(log_file))
    monkeypatch.setenv("FAKE_STATE", str(state_file))
    monkeypatch.setenv("FAKE_GIT_COMMON_DIR", str(main_repo / ".git"))
    monkeypatch.setattr(procs, "SPAWN_GRACE_PERIOD", 0.3)

    paths = {
        "tmp_path": tmp_path,
        "bin_dir": bin_dir,
        "home_dir": home_dir,
        "main_repo": main_repo,
        "log_file": log_file,
        "state_file": state_file,
    }
    yield paths

    # kill every long-running fake (ssh tunnels, node) a test left behind
    for call in read_calls(log_file):
        if call["tool"] in ("ssh", "node"):
            try:
                os.kill(call["pid"], signal.SIGTERM)
            except ProcessLookupError:
                pass
            try:
                os.waitpid(call["pid"], os.WNOHANG)
            except ChildProcessError:
                pass


COMPOSE_BASE = """\
services:
  web:
    image: nginx
    container_name: app-web
    ports:
      - "8080:80"
      - "127.0.0.1:8443:443/tcp"
  db:
    image: postgres
    ports:
      - target: 5432
        published: 5432
"""


@pytest.fixture
def repo(fake_tools):
    """Main repository with a compose base, vm mode (the default)."""
    (fake_tools["main_repo"] / "docker-compose.yml").write_text(COMPOSE_BASE)
    return fake_tools


@pytest.fixture
def offset_repo(repo):
    (repo["main_repo"] / "fracta.toml").write_text('mode = "offset"\n')
    return repo
