"""fracta over MCP (stdio): the orchestrator operations as tools.

Tools return the operation output, or ``"Error: ..."`` on failure.
"""

import asyncio
import logging
import sys
from typing import Optional

from mcp.server.fastmcp import FastMCP

from . import procs
from .errors import FractaError
from .manager import DEFAULT_BROWSER, DEFAULT_URL, WorktreeManager

log = logging.getLogger("fracta")

mcp_server = FastMCP(
    "fracta",
    instructions=(
        "fracta runs one isolated development environment per git branch. "
        "Use add to create a worktree instance and up/down/restart to drive its "
        "docker compose stack. In vm mode each instance has its own Lima VM: use "
        "forward to reach a VM port from localhost, proxy for a SOCKS5 proxy into "
        "the VM network, and vm_exec to run a command inside the VM. "
        "Use ls, status and ports to inspect instances. "
        "Most tools take an instance name; it defaults to the worktree containing "
        "the server's working directory."
    ),
)

manager = WorktreeManager()


# One operation at a time: each is a load/act/save cycle on the same state file.
_lock = asyncio.Lock()


async def _call(fn, *args, **kwargs) -> str:
    """Run a blocking manager operation off the event loop."""
    async with _lock:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except FractaError as e:
            log.warning(f"{fn.__name__} failed: {e}")
            return f"Error: {e}"


# ── Lifecycle ────────────────────────────────────────────────────────────


@mcp_server.tool()
async def add(name: str, new_branch: bool = False, base: str = "") -> str:
    """
    Create a git worktree instance next to the main repository.

    Args:
        name: Branch / instance name (e.g. "feature/login")
        new_branch: Create the branch instead of checking out an existing one
        base: Base revision for a new branch (default HEAD)
    """
    return await _call(manager.add, name, new_branch=new_branch, base=base or None)


@mcp_server.tool()
async def up(name: Optional[str] = None, sync_images: bool = False) -> str:
    """
    Start the instance's compose stack, creating/starting its VM when needed.

    Args:
        name: Instance name
        sync_images: Copy images from the host docker into the VM first
    """
    return await _call(manager.up, name, sync_images=sync_images)


@mcp_server.tool()
async def down(name: Optional[str] = None, stop_vm: bool = False) -> str:
    """Stop the stack and every forward/proxy/browser of the instance."""
    return await _call(manager.down, name, stop_vm=stop_vm)


@mcp_server.tool()
async def restart(name: Optional[str] = None) -> str:
    """Restart the instance's compose stack."""
    return await _call(manager.restart, name)


@mcp_server.tool()
async def remove(
    name: str, force: bool = False, vm_only: bool = False, worktree_only: bool = False
) -> str:
    """
    Remove an instance.

    Args:
        name: Instance name
        force: Log lifecycle failures as warnings and keep going
        vm_only: Remove the runtime (VM or host stack) but keep the worktree
        worktree_only: Remove the worktree but keep the runtime
    """
    return await _call(
        manager.remove, name, force=force, vm_only=vm_only, worktree_only=worktree_only
    )


# ── Inspection ───────────────────────────────────────────────────────────


@mcp_server.tool()
async def ls() -> str:
    """List every instance with its VM status, offset and forwards."""
    return await _call(manager.ls)


@mcp_server.tool()
async def status(name: Optional[str] = None) -> str:
    """Instance details, containers and published ports."""
    return await _call(manager.status, name)


@mcp_server.tool()
async def ports(name: Optional[str] = None, short: bool = False) -> str:
    """Published ports as a SERVICE/HOST/TARGET/LINK table (tab-separated with short)."""
    return await _call(manager.ports, name, short=short)


# ── Forwards / proxy / browser ───────────────────────────────────────────


@mcp_server.tool()
async def forward(name: str, remote_port: int, local_port: int = 0) -> str:
    """
    Forward localhost:local_port to remote_port inside the instance VM.

    Args:
        name: Instance name
        remote_port: Port inside the VM
        local_port: Local port (0 = same as remote_port)
    """
    return await _call(manager.forward, name, local_port, remote_port)


@mcp_server.tool()
async def unforward(name: str, local_port: int = 0) -> str:
    """Stop the forward on local_port, or every forward of the instance when 0."""
    if not local_port:
        return await _call(manager.unforward_all, name)
    return await _call(manager.unforward, name, local_port)


@mcp_server.tool()
async def proxy(name: Optional[str] = None, port: int = 0) -> str:
    """Start a SOCKS5 proxy into the VM (port 0 = first free in the proxy range)."""
    return await _call(manager.proxy, name, port or None)


@mcp_server.tool()
async def unproxy(name: Optional[str] = None) -> str:
    """Stop the instance's SOCKS5 proxy."""
    return await _call(manager.unproxy, name)


@mcp_server.tool()
async def proxies() -> str:
    """List active SOCKS5 proxies and browser sessions."""
    return await _call(manager.proxies)


@mcp_server.tool()
async def open_browser(
    name: Optional[str] = None, browser: str = DEFAULT_BROWSER, url: str = DEFAULT_URL
) -> str:
    """Launch Playwright through the instance's SOCKS5 proxy (started if needed)."""
    return await _call(manager.open_browser, name, browser, url)


@mcp_server.tool()
async def close_browser(name: Optional[str] = None) -> str:
    """Close the instance's Playwright session."""
    return await _call(manager.close_browser, name)


# ── VM ───────────────────────────────────────────────────────────────────


@mcp_server.tool()
async def vm_start(name: Optional[str] = None) -> str:
    """Create (if needed) and start the instance VM."""
    return await _call(manager.vm_start, name)


@mcp_server.tool()
async def vm_stop(name: Optional[str] = None) -> str:
    """Stop the instance's helper processes, then its VM."""
    return await _call(manager.vm_stop, name)


@mcp_server.tool()
async def vm_list() -> str:
    """List the VMs of this repository's instances."""
    return await _call(manager.vm_list)


@mcp_server.tool()
async def vm_exec(name: str, command: str) -> str:
    """
    Run a shell command inside the instance VM, from the worktree directory.

    Args:
        name: Instance name
        command: Shell command (e.g. "sudo docker ps")
    """
    return await _call(manager.vm_exec, name, command)


# ── Entry point ──────────────────────────────────────────────────────────


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )
    procs.STDOUT_RESERVED = True
    mcp_server.run(transport="stdio")


if __name__ == "__main__":
    main()
