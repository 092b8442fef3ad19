"""Repository resolution, name sanitizing and compose environment loading."""

import os
import re
from pathlib import Path
from typing import Optional

from dotenv import dotenv_values

from . import procs
from .errors import FractaError

STATE_DIR_NAME = ".fracta"
GENERATED_COMPOSE = "compose.generated.yml"

_PROJECT_NAME_RE = re.compile(r"[^a-z0-9_-]+")


def sanitize_name(name: str) -> str:
    """Make a branch-ish name usable as a directory/container suffix.

    ``feature//new-x/`` -> ``feature-new-x``
    """
    sanitized = name.replace("/", "-").replace("\\", "-")
    return "-".join(part for part in sanitized.split("-") if part)


def runtime_handle_name(name: str) -> str:
    """Lima instance name for a worktree: ``feature/x`` -> ``fracta-feature-x``."""
    return f"fracta-{sanitize_name(name)}"


def compose_project_name(name: str) -> str:
    project = _PROJECT_NAME_RE.sub("-", sanitize_name(name).lower())
    return project.strip("-") or "fracta"


def resolve_main_repo(cwd: Optional[Path] = None) -> Path:
    """The main working tree, even when called from inside a linked worktree."""
    code, stdout, stderr = procs.run(
        ["git", "rev-parse", "--git-common-dir"],
        cwd=str(cwd) if cwd else None,
    )
    if code != 0:
        raise FractaError(f"git rev-parse failed: {stderr.strip()}")

    trimmed = stdout.strip()
    if not trimmed:
        raise FractaError("git rev-parse returned empty path")

    common_dir = Path(trimmed)
    if not common_dir.is_absolute():
        common_dir = (cwd or Path.cwd()) / common_dir
    return common_dir.resolve().parent


def fracta_dir(path: Path) -> Path:
    return path / STATE_DIR_NAME


def compose_base_path(compose_base: str, worktree_path: Path) -> Path:
    base = Path(compose_base)
    if base.is_absolute():
        return base
    return worktree_path / base


def compose_generated_path(worktree_path: Path) -> Path:
    return fracta_dir(worktree_path) / GENERATED_COMPOSE


def is_path_within(parent: Path, child: Path) -> bool:
    try:
        parent = parent.resolve(strict=True)
        child = child.resolve(strict=True)
    except OSError:
        return False
    return child == parent or parent in child.parents


# ── dotenv ───────────────────────────────────────────────────────────────


def read_dotenv(dotenv_path: Path) -> dict[str, str]:
    """``KEY=VALUE`` pairs of a ``.env`` file, taken literally (no ``${}`` expansion).

    Bare keys without ``=`` carry no value and are dropped.
    """
    try:
        values = dotenv_values(dotenv_path, interpolate=False)
    except OSError as e:
        raise FractaError(f"Failed to read {dotenv_path}: {e}") from e
    return {key: value for key, value in values.items() if value is not None}


def load_compose_env(
    compose_base: Path, environ: Optional[dict[str, str]] = None
) -> dict[str, str]:
    """Process environment merged with the ``.env`` beside the base document.

    Process variables win on key collision.
    """
    env = dict(os.environ if environ is None else environ)
    dotenv_path = compose_base.parent / ".env"
    if dotenv_path.is_file():
        for key, value in read_dotenv(dotenv_path).items():
            env.setdefault(key, value)
    return env
