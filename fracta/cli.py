"""fracta command line.

    fracta add feature/x -b        # new branch + worktree (+ overlay in offset mode)
    fracta up feature/x            # start the stack
    fracta forward feature/x 3000  # localhost:3000 -> VM:3000
    fracta ls
"""

import argparse
import logging
import os
import sys

from . import __version__
from .errors import FractaError
from .manager import DEFAULT_BROWSER, DEFAULT_URL, WorktreeManager

log = logging.getLogger("fracta")


def setup_logging(verbosity: int = 0) -> None:
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = getattr(
            logging, os.environ.get("FRACTA_LOG_LEVEL", "WARNING").upper(), logging.WARNING
        )
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )


def _tty(value: str) -> bool:
    value = value.lower()
    if value in ("true", "yes", "1"):
        return True
    if value in ("false", "no", "0"):
        return False
    raise argparse.ArgumentTypeError(f"expected true or false, got '{value}'")


# ── Command handlers ─────────────────────────────────────────────────────


def run_add(m: WorktreeManager, args) -> str:
    return m.add(args.name, new_branch=args.new_branch is not None, base=args.new_branch or None)


def run_up(m, args):
    return m.up(args.name, sync_images=args.sync_images)


def run_down(m, args):
    return m.down(args.name, stop_vm=args.vm)


def run_restart(m, args):
    return m.restart(args.name)


def run_remove(m, args):
    return m.remove(
        args.name, force=args.force, vm_only=args.vm_only, worktree_only=args.worktree_only
    )


def run_ps(m, args):
    return m.ps(args.name)


def run_ports(m, args):
    return m.ports(args.name, short=args.short)


def run_ls(m, args):
    return m.ls()


def run_status(m, args):
    return m.status(args.name)


def run_forward(m, args):
    if args.remote_port is None:
        return m.forward(args.name, 0, args.local_port)
    return m.forward(args.name, args.local_port, args.remote_port)


def run_unforward(m, args):
    if args.all:
        return m.unforward_all(args.name)
    if args.local_port is None:
        raise FractaError("unforward needs a local port (or --all)")
    return m.unforward(args.name, args.local_port)


def run_proxy(m, args):
    return m.proxy(args.name, args.port)


def run_unproxy(m, args):
    return m.unproxy(args.name)


def run_proxies(m, args):
    return m.proxies()


def run_open(m, args):
    return m.open_browser(args.name, args.browser, args.url, args.proxy_port)


def run_close(m, args):
    return m.close_browser(args.name)


def run_vm_start(m, args):
    return m.vm_start(args.name)


def run_vm_stop(m, args):
    return m.vm_stop(args.name)


def run_vm_list(m, args):
    return m.vm_list()


def run_shell(m, args) -> int:
    command = list(args.command or [])
    if command and command[0] == "--":
        command = command[1:]
    return m.shell(args.name, args.shell, args.workdir, args.tty, command)


def run_mcp(m, args) -> int:
    from .mcp_server import main as mcp_main

    mcp_main()
    return 0


# ── Parser ───────────────────────────────────────────────────────────────


def _name_arg(parser, required: bool = False) -> None:
    if required:
        parser.add_argument("name", help="worktree name")
    else:
        parser.add_argument(
            "name", nargs="?", help="worktree name (default: the worktree containing cwd)"
        )


def _add_shell_args(parser) -> None:
    _name_arg(parser)
    parser.add_argument("--shell", help="shell to use inside the VM")
    parser.add_argument("--workdir", help="working directory inside the VM")
    parser.add_argument("--tty", type=_tty, help="force tty allocation (true/false)")
    parser.add_argument("command", nargs=argparse.REMAINDER, help="command to run")
    parser.set_defaults(func=run_shell)


def _add_browser_args(parser) -> None:
    _name_arg(parser)
    parser.add_argument(
        "--browser", default=DEFAULT_BROWSER, help="chrome, chromium or firefox"
    )
    parser.add_argument("--url", default=DEFAULT_URL, help="page to open")
    parser.add_argument("--proxy-port", type=int, help="SOCKS5 port when starting a proxy")
    parser.set_defaults(func=run_open)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fracta",
        description="Run isolated per-branch dev environments side by side.",
    )
    parser.add_argument("--version", action="version", version=f"fracta {__version__}")
    parser.add_argument(
        "-v", "--verbose", action="count", default=0, help="-v for INFO, -vv for DEBUG"
    )
    sub = parser.add_subparsers(dest="cmd", metavar="COMMAND")
    sub.required = True

    p = sub.add_parser("add", help="create a worktree instance")
    _name_arg(p, required=True)
    p.add_argument(
        "-b", "--new-branch",
        nargs="?", const="", default=None, metavar="BASE",
        help="create branch NAME (from BASE, default HEAD)",
    )
    p.set_defaults(func=run_add)

    p = sub.add_parser("up", help="start the stack (creating/starting the VM as needed)")
    _name_arg(p)
    p.add_argument("--sync-images", action="store_true", help="copy host images into the VM")
    p.set_defaults(func=run_up)

    p = sub.add_parser("down", help="stop the stack and every helper process")
    _name_arg(p)
    p.add_argument("--vm", action="store_true", help="also stop the Lima VM")
    p.set_defaults(func=run_down)

    p = sub.add_parser("restart", help="restart the stack")
    _name_arg(p)
    p.set_defaults(func=run_restart)

    p = sub.add_parser("remove", aliases=["rm"], help="remove an instance")
    _name_arg(p)
    p.add_argument("--force", action="store_true", help="continue past lifecycle failures")
    p.add_argument("--vm-only", action="store_true", help="remove the runtime, keep the worktree")
    p.add_argument("--worktree-only", action="store_true", help="remove the worktree, keep the runtime")
    p.set_defaults(func=run_remove)

    p = sub.add_parser("ps", help="show instance details and containers")
    _name_arg(p)
    p.set_defaults(func=run_ps)

    p = sub.add_parser("ports", help="list published ports")
    _name_arg(p)
    p.add_argument("--short", action="store_true", help="tab-separated SERVICE HOST TARGET")
    p.set_defaults(func=run_ports)

    p = sub.add_parser("ls", aliases=["list"], help="list instances")
    p.set_defaults(func=run_ls)

    p = sub.add_parser("status", help="ps followed by ports")
    _name_arg(p)
    p.set_defaults(func=run_status)

    p = sub.add_parser("forward", help="forward localhost:LOCAL to VM:REMOTE over SSH")
    p.add_argument("name", help="worktree name")
    p.add_argument("local_port", type=int, help="local port (0 = same as remote)")
    p.add_argument("remote_port", type=int, nargs="?", help="port inside the VM")
    p.set_defaults(func=run_forward)

    p = sub.add_parser("unforward", help="stop a port forward")
    p.add_argument("name", help="worktree name")
    p.add_argument("local_port", type=int, nargs="?")
    p.add_argument("--all", action="store_true", help="stop every forward of the instance")
    p.set_defaults(func=run_unforward)

    p = sub.add_parser("proxy", help="start a SOCKS5 proxy into the VM")
    _name_arg(p)
    p.add_argument("--port", type=int, help="local port (default: first free in range)")
    p.set_defaults(func=run_proxy)

    p = sub.add_parser("unproxy", help="stop the SOCKS5 proxy")
    _name_arg(p)
    p.set_defaults(func=run_unproxy)

    p = sub.add_parser("proxies", help="list active proxies")
    p.set_defaults(func=run_proxies)

    _add_browser_args(sub.add_parser("open", help="open Playwright through the proxy"))

    p = sub.add_parser("close", help="close the Playwright session")
    _name_arg(p)
    p.set_defaults(func=run_close)

    _add_shell_args(sub.add_parser("shell", help="shell into the VM"))

    vm = sub.add_parser("vm", help="Lima VM management")
    vm_sub = vm.add_subparsers(dest="vm_cmd", metavar="COMMAND")
    vm_sub.required = True
    p = vm_sub.add_parser("start", help="create/start the VM")
    _name_arg(p)
    p.set_defaults(func=run_vm_start)
    p = vm_sub.add_parser("stop", help="stop helpers, then the VM")
    _name_arg(p)
    p.set_defaults(func=run_vm_stop)
    p = vm_sub.add_parser("list", help="list VMs of this repository")
    p.set_defaults(func=run_vm_list)
    _add_shell_args(vm_sub.add_parser("shell", help="shell into the VM"))

    browser = sub.add_parser("browser", help="proxy + Playwright helpers")
    b_sub = browser.add_subparsers(dest="browser_cmd", metavar="COMMAND")
    b_sub.required = True
    _add_browser_args(b_sub.add_parser("open", help="open Playwright through the proxy"))
    p = b_sub.add_parser("close", help="close the Playwright session")
    _name_arg(p)
    p.set_defaults(func=run_close)
    p = b_sub.add_parser("proxy", help="start a SOCKS5 proxy")
    _name_arg(p)
    p.add_argument("--port", type=int)
    p.set_defaults(func=run_proxy)
    p = b_sub.add_parser("unproxy", help="stop the SOCKS5 proxy")
    _name_arg(p)
    p.set_defaults(func=run_unproxy)
    p = b_sub.add_parser("status", help="list active proxies")
    p.set_defaults(func=run_proxies)

    p = sub.add_parser("mcp", help="serve fracta operations over MCP (stdio)")
    p.set_defaults(func=run_mcp)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    manager = WorktreeManager()
    try:
        result = args.func(manager, args)
    except FractaError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130

    if isinstance(result, int):
        return result
    if result:
        print(result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
