"""Lifecycle hooks.

A hook is either a shell command under ``[hooks]`` in fracta.toml or an
executable file at ``<main repo>/.fracta/hooks/<hook>``. The config command
wins when both exist. A failing hook aborts the operation.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from . import procs
from .config import Config
from .errors import HookFailed
from .utils import fracta_dir

log = logging.getLogger("fracta")


@dataclass
class HookContext:
    name: str
    worktree_path: Path
    main_repo: Path
    port_offset: int
    compose_base: Path
    compose_file: Path

    def env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update(
            {
                "FRACTA_NAME": self.name,
                "FRACTA_PATH": str(self.worktree_path),
                "MAIN_REPO": str(self.main_repo),
                "PORT_OFFSET": str(self.port_offset),
                "COMPOSE_BASE": str(self.compose_base),
                "COMPOSE_OVERRIDE": str(self.compose_file),
            }
        )
        return env


def hook_path(main_repo: Path, hook: str) -> Path:
    return fracta_dir(main_repo) / "hooks" / hook


def run_hook(hook: str, working_dir: Path, ctx: HookContext, config: Config) -> bool:
    """Run ``hook`` if configured. Returns whether anything ran."""
    command = config.hook_command(hook)
    if command:
        cmd = ["sh", "-c", command]
    else:
        path = hook_path(ctx.main_repo, hook)
        if not path.is_file():
            return False
        if not os.access(path, os.X_OK):
            log.warning(f"Hook {path} is not executable; skipping")
            return False
        cmd = [str(path)]

    cwd = working_dir if working_dir.is_dir() else ctx.main_repo
    log.info(f"Running hook {hook}")
    code, _, _ = procs.run(cmd, cwd=str(cwd), env=ctx.env(), capture=False)
    if code != 0:
        raise HookFailed(f"Hook {hook} failed (exit {code})")
    return True
