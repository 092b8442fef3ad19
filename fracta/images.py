"""Copy locally built/pulled images from the host docker into a worktree VM."""

import json
import logging
import shlex
import subprocess
from pathlib import Path
from typing import Optional

from . import lima, procs
from .errors import FractaError
from .utils import sanitize_name

log = logging.getLogger("fracta")


def compose_config(compose_base: Path, worktree_path: Path) -> dict:
    code, stdout, stderr = procs.run(
        ["docker", "compose", "-f", str(compose_base), "config", "--format", "json"],
        cwd=str(worktree_path),
    )
    if code != 0:
        raise FractaError(f"docker compose config failed: {stderr.strip()}")
    try:
        return json.loads(stdout)
    except json.JSONDecodeError as e:
        raise FractaError(f"Failed to parse compose config JSON: {e}") from e


def collect_compose_images(compose_base: Path, worktree_path: Path) -> list[str]:
    """Images the stack uses; services without ``image`` are ``<project>-<service>``."""
    config = compose_config(compose_base, worktree_path)
    name = config.get("name")
    project = sanitize_name(name if isinstance(name, str) else worktree_path.name)

    services = config.get("services")
    if not isinstance(services, dict):
        raise FractaError("Compose config does not contain services")

    images = set()
    for service_name, service in services.items():
        image = service.get("image") if isinstance(service, dict) else None
        if isinstance(image, str) and image:
            images.add(image)
        else:
            images.add(f"{project}-{service_name}")
    return sorted(images)


def _id_or_none(code: int, stdout: str) -> Optional[str]:
    if code != 0:
        return None
    return stdout.strip() or None


def host_image_id(image: str) -> Optional[str]:
    code, stdout, _ = procs.run(["docker", "image", "inspect", "--format", "{{.Id}}", image])
    return _id_or_none(code, stdout)


def vm_image_id(instance: str, image: str) -> Optional[str]:
    script = f"sudo docker image inspect --format '{{{{.Id}}}}' {shlex.quote(image)}"
    code, stdout, _ = lima.shell(instance, ["bash", "-c", script])
    return _id_or_none(code, stdout)


def sync_image(instance: str, image: str) -> None:
    """``docker save <image> | limactl shell <vm> sudo docker load``."""
    try:
        save = subprocess.Popen(["docker", "save", image], stdout=subprocess.PIPE)
    except FileNotFoundError as e:
        raise FractaError(f"docker not found. Is it installed? ({e})") from e
    try:
        load = subprocess.Popen(
            [lima.LIMACTL, "shell", "--workdir", "/", instance, "--", "sudo", "docker", "load"],
            stdin=save.stdout,
            stdout=procs.stream_target(),
        )
    except FileNotFoundError as e:
        save.kill()
        save.wait()
        raise FractaError(f"limactl not found. Is it installed? ({e})") from e
    # let docker save see SIGPIPE if load dies
    save.stdout.close()

    load_rc = load.wait()
    save_rc = save.wait()
    if save_rc != 0:
        raise FractaError(f"docker save failed for image {image}")
    if load_rc != 0:
        raise FractaError(f"docker load failed in VM for image {image}")


def sync_images_to_vm(instance: str, images: list[str]) -> list[str]:
    """Sync every image whose id differs between host and VM."""
    lines = []
    for image in images:
        host_id = host_image_id(image)
        if host_id is None:
            lines.append(f"Skipping (not found on host): {image}")
            continue
        if vm_image_id(instance, image) == host_id:
            lines.append(f"Already synced: {image}")
            continue
        log.info(f"Syncing image {image} into {instance}")
        sync_image(instance, image)
        lines.append(f"Synced: {image}")
    return lines
