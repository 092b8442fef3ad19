"""fracta.toml loading.

``fracta.toml`` and then ``fracta.*.toml`` (sorted) are read from the main
repository, then from the worktree when it differs. Later files win key by
key; hooks merge per hook.
"""

import logging
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .errors import ConfigError
from .ports import PROXY_PORT_END, PROXY_PORT_START

log = logging.getLogger("fracta")

CONFIG_FILE = "fracta.toml"
DEFAULT_COMPOSE_BASE = "docker-compose.yml"

MODE_VM = "vm"
MODE_OFFSET = "offset"
MODES = (MODE_VM, MODE_OFFSET)

HOOK_NAMES = (
    "pre_add",
    "post_add",
    "pre_up",
    "post_up",
    "pre_down",
    "post_down",
    "pre_remove",
    "post_remove",
    "pre_restart",
    "post_restart",
)


@dataclass
class VmConfig:
    cpus: int = 4
    memory: str = "8GiB"
    disk: str = "50GiB"


@dataclass
class Config:
    compose_base: str = DEFAULT_COMPOSE_BASE
    mode: str = MODE_VM
    registry_mirror: Optional[str] = None
    vm: VmConfig = field(default_factory=VmConfig)
    proxy_port_start: int = PROXY_PORT_START
    proxy_port_end: int = PROXY_PORT_END
    hooks: dict[str, str] = field(default_factory=dict)

    @property
    def offset_mode(self) -> bool:
        return self.mode == MODE_OFFSET

    def hook_command(self, hook: str) -> Optional[str]:
        return self.hooks.get(hook)


def config_paths_in_dir(directory: Path) -> list[Path]:
    paths = []
    primary = directory / CONFIG_FILE
    if primary.is_file():
        paths.append(primary)
    extra = sorted(
        p
        for p in directory.glob("fracta.*.toml")
        if p.is_file() and p.name != CONFIG_FILE
    )
    return paths + extra


def _expect(value, kind, key: str, path: Path):
    if isinstance(value, bool) or not isinstance(value, kind):
        raise ConfigError(f"{path}: '{key}' must be {kind.__name__}")
    return value


def merge_config(config: Config, incoming: dict, path: Path) -> None:
    if "compose_base" in incoming:
        config.compose_base = _expect(incoming["compose_base"], str, "compose_base", path)
    if "mode" in incoming:
        mode = _expect(incoming["mode"], str, "mode", path)
        if mode not in MODES:
            raise ConfigError(f"{path}: unknown mode '{mode}' (use {' or '.join(MODES)})")
        config.mode = mode
    if "registry_mirror" in incoming:
        config.registry_mirror = _expect(
            incoming["registry_mirror"], str, "registry_mirror", path
        )

    vm = incoming.get("vm")
    if vm is not None:
        _expect(vm, dict, "vm", path)
        if "cpus" in vm:
            config.vm.cpus = _expect(vm["cpus"], int, "vm.cpus", path)
        if "memory" in vm:
            config.vm.memory = _expect(vm["memory"], str, "vm.memory", path)
        if "disk" in vm:
            config.vm.disk = _expect(vm["disk"], str, "vm.disk", path)

    proxy = incoming.get("proxy")
    if proxy is not None:
        _expect(proxy, dict, "proxy", path)
        if "port_start" in proxy:
            config.proxy_port_start = _expect(proxy["port_start"], int, "proxy.port_start", path)
        if "port_end" in proxy:
            config.proxy_port_end = _expect(proxy["port_end"], int, "proxy.port_end", path)
        if config.proxy_port_start > config.proxy_port_end:
            raise ConfigError(f"{path}: proxy.port_start is greater than proxy.port_end")

    hooks = incoming.get("hooks")
    if hooks is not None:
        _expect(hooks, dict, "hooks", path)
        for hook, command in hooks.items():
            if hook not in HOOK_NAMES:
                log.warning(f"{path}: ignoring unknown hook '{hook}'")
                continue
            config.hooks[hook] = _expect(command, str, f"hooks.{hook}", path)


def load_config(main_repo: Path, worktree_path: Optional[Path] = None) -> Config:
    config = Config()
    paths = config_paths_in_dir(main_repo)
    if worktree_path is not None and worktree_path.resolve() != main_repo.resolve():
        paths.extend(config_paths_in_dir(worktree_path))

    for path in paths:
        try:
            with open(path, "rb") as f:
                incoming = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Failed to parse {path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read {path}: {e}") from e
        merge_config(config, incoming, path)
        log.debug(f"Loaded config {path}")

    return config
