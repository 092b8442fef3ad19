"""Lima VM lifecycle, SSH tunnels and the VM template.

Every worktree in vm mode gets its own Lima instance. Host access goes
through SSH port forwards (``-L``) and a SOCKS5 proxy (``-D``) spawned in the
background and tracked by pid.
"""

import enum
import json
import logging
import os
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

import yaml

from . import procs
from .errors import CommandFailed, FractaError
from .utils import runtime_handle_name

log = logging.getLogger("fracta")

LIMACTL = "limactl"


def instance_name(worktree_name: str) -> str:
    return runtime_handle_name(worktree_name)


class InstanceStatus(str, enum.Enum):
    RUNNING = "Running"
    STOPPED = "Stopped"
    NOT_FOUND = "NotFound"

    def __str__(self) -> str:
        return self.value


# ── limactl ──────────────────────────────────────────────────────────────


def parse_status_from_json(output: str, name: str) -> InstanceStatus:
    """``limactl list --json`` prints one JSON object per line."""
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            value = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(value, dict) or value.get("name") != name:
            continue
        if value.get("status") == "Running":
            return InstanceStatus.RUNNING
        return InstanceStatus.STOPPED
    return InstanceStatus.NOT_FOUND


def info(name: str) -> InstanceStatus:
    code, stdout, _ = procs.run([LIMACTL, "list", "--json", name])
    if code != 0:
        return InstanceStatus.NOT_FOUND
    return parse_status_from_json(stdout, name)


def is_available() -> bool:
    try:
        code, _, _ = procs.run([LIMACTL, "--version"])
    except FractaError:
        return False
    return code == 0


def create(template_path: Path, name: str) -> None:
    procs.run_checked([LIMACTL, "create", "--tty=false", "--name", name, str(template_path)])


def start(name: str) -> None:
    cmd = [LIMACTL, "start", "--tty=false", name]
    code, _, _ = procs.run(cmd, capture=False)
    if code != 0:
        raise CommandFailed(cmd, code)


def stop(name: str) -> None:
    procs.run_checked([LIMACTL, "stop", name])


def delete(name: str) -> None:
    procs.run_checked([LIMACTL, "delete", "--force", name])


def shell(name: str, command: list[str], interactive: bool = False) -> tuple[int, str, str]:
    """Run ``command`` inside the VM. Interactive runs stream to the terminal."""
    cmd = [LIMACTL, "shell", "--workdir", "/", name, "--", *command]
    return procs.run(cmd, capture=not interactive)


def shell_args(
    name: str,
    shell: Optional[str] = None,
    workdir: Optional[str] = None,
    tty: Optional[bool] = None,
    command: Optional[list[str]] = None,
) -> list[str]:
    args = [LIMACTL, "shell"]
    if shell:
        args += ["--shell", shell]
    if workdir:
        args += ["--workdir", workdir]
    if tty is not None:
        args += ["--tty", "true" if tty else "false"]
    args.append(name)
    args.extend(command or [])
    return args


def ssh_config_path(name: str) -> Path:
    return Path(os.path.expanduser("~")) / ".lima" / name / "ssh.config"


# ── SSH tunnels ──────────────────────────────────────────────────────────


def _ssh_base(name: str) -> list[str]:
    config = ssh_config_path(name)
    if not config.exists():
        raise FractaError(f"SSH config not found for instance '{name}'. Is the VM running?")
    return ["ssh", "-F", str(config), "-N", "-o", "ExitOnForwardFailure=yes"]


def start_forward(name: str, local_port: int, remote_port: int) -> procs.ProcessHandle:
    cmd = _ssh_base(name) + ["-L", f"{local_port}:localhost:{remote_port}", f"lima-{name}"]
    return procs.spawn_background(cmd, f"port forward localhost:{local_port}")


def start_proxy(name: str, local_port: int) -> procs.ProcessHandle:
    cmd = _ssh_base(name) + ["-D", f"127.0.0.1:{local_port}", f"lima-{name}"]
    return procs.spawn_background(cmd, f"SOCKS5 proxy localhost:{local_port}")


# ── Template ─────────────────────────────────────────────────────────────

_PROVISION_SCRIPT = """\
#!/bin/bash
set -eux -o pipefail

if ! command -v curl &> /dev/null; then
  apt-get update
  apt-get install -y --no-install-recommends curl ca-certificates
fi

if ! command -v docker &> /dev/null; then
  curl -fsSL https://get.docker.com | sh
  usermod -aG docker "{{.User}}"
fi

echo "{{.User}} ALL=(ALL) NOPASSWD:ALL" > /etc/sudoers.d/fracta-user
chmod 0440 /etc/sudoers.d/fracta-user

if ! docker compose version &> /dev/null; then
  apt-get update
  apt-get install -y --no-install-recommends docker-compose-plugin
fi
"""

_MIRROR_SCRIPT = """\
mkdir -p /etc/docker
cat <<'EOF' > /etc/docker/daemon.json
{daemon_json}
EOF
systemctl restart docker
"""


@dataclass
class TemplateConfig:
    worktree_path: str
    cpus: int = 4
    memory: str = "8GiB"
    disk: str = "50GiB"
    registry_mirror: Optional[str] = None


class _TemplateDumper(yaml.SafeDumper):
    pass


def _str_presenter(dumper: yaml.SafeDumper, data: str):
    if "\n" in data:
        return dumper.represent_scalar("tag:yaml.org,2002:str", data, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", data)


_TemplateDumper.add_representer(str, _str_presenter)


def generate(config: TemplateConfig) -> str:
    script = _PROVISION_SCRIPT
    if config.registry_mirror:
        daemon_json = json.dumps({"registry-mirrors": [config.registry_mirror]})
        script += _MIRROR_SCRIPT.format(daemon_json=daemon_json)

    template = {
        "cpus": config.cpus,
        "memory": config.memory,
        "disk": config.disk,
        "images": [
            {
                "location": "https://cloud-images.ubuntu.com/releases/24.04/release/ubuntu-24.04-server-cloudimg-arm64.img",
                "arch": "aarch64",
            },
            {
                "location": "https://cloud-images.ubuntu.com/releases/24.04/release/ubuntu-24.04-server-cloudimg-amd64.img",
                "arch": "x86_64",
            },
        ],
        "mounts": [
            {
                "location": config.worktree_path,
                "writable": True,
                "sshfs": {"cache": True, "followSymlinks": True},
            }
        ],
        "vmType": "vz",
        "rosetta": {"enabled": True, "binfmt": True},
        "networks": [{"vzNAT": True}],
        # host access goes through fracta forward/proxy only
        "portForwards": [{"ignore": True, "proto": "any", "guestIP": "0.0.0.0"}],
        "containerd": {"system": False, "user": False},
        "provision": [{"mode": "system", "script": script}],
    }
    header = "# fracta Lima VM template (generated)\n"
    return header + yaml.dump(template, Dumper=_TemplateDumper, sort_keys=False)


@contextmanager
def temp_template(config: TemplateConfig) -> Iterator[Path]:
    fd = tempfile.NamedTemporaryFile(
        "w", prefix="fracta-lima-", suffix=".yaml", delete=False
    )
    try:
        with fd:
            fd.write(generate(config))
        yield Path(fd.name)
    finally:
        try:
            os.unlink(fd.name)
        except OSError:
            pass
