"""Worktree orchestration: every user-facing fracta operation.

Each operation loads the state of the managed repository, reconciles the
records it is about to trust, acts, and saves once. Operations return the
text to show the user; fatal problems raise FractaError. Rewriter warnings
are appended to the output as ``Warning:`` lines.
"""

import logging
import shlex
import shutil
from pathlib import Path
from typing import Callable, Optional

from . import images, lima, procs
from .compose import (
    PortEntry,
    extract_ports,
    extract_ports_from_file,
    format_ports_table,
    generate_compose,
    load_document_file,
    published_host_ports,
)
from .config import Config, load_config
from .errors import CommandFailed, FractaError
from .hooks import HookContext, run_hook
from .ports import allocate_local_port, choose_port_offset
from .procs import pid_alive, terminate_pid
from .state import BrowserSession, Instance, PortForward, ProxyForward, State
from .utils import (
    compose_base_path,
    compose_generated_path,
    compose_project_name,
    fracta_dir,
    load_compose_env,
    resolve_main_repo,
    sanitize_name,
)

log = logging.getLogger("fracta")

BROWSERS = {"chrome": "chromium", "chromium": "chromium", "firefox": "firefox"}
DEFAULT_BROWSER = "chrome"
DEFAULT_URL = "http://localhost"


def playwright_script(browser: str, proxy_port: int, url: str) -> str:
    engine = BROWSERS[browser]
    return f"""
const {{ {engine} }} = require('playwright');

(async () => {{
  const browser = await {engine}.launch({{
    headless: false,
    proxy: {{ server: 'socks5://127.0.0.1:{proxy_port}' }}
  }});
  const context = await browser.newContext();
  const page = await context.newPage();
  await page.goto({url!r});
  console.log('Playwright launched with SOCKS5 proxy. Press Ctrl+C to exit.');
  await new Promise(() => {{}});
}})().catch((err) => {{
  console.error(err);
  process.exit(1);
}});
"""


def _with_warnings(lines: list[str], warnings: list[str]) -> str:
    return "\n".join(lines + [f"Warning: {w}" for w in warnings])


class WorktreeManager:
    def __init__(
        self,
        main_repo: Optional[Path] = None,
        cwd: Optional[Path] = None,
        alive: Callable[[int], bool] = pid_alive,
    ):
        self._main_repo = main_repo
        self.cwd = cwd
        self.alive = alive

    @property
    def main_repo(self) -> Path:
        if self._main_repo is None:
            self._main_repo = resolve_main_repo(self.cwd)
        return self._main_repo

    # ── Plumbing ─────────────────────────────────────────────────────

    def _load(self) -> State:
        return State.load(self.main_repo)

    def _save(self, state: State) -> None:
        state.save(self.main_repo)

    def _config(self, inst: Optional[Instance] = None) -> Config:
        worktree = Path(inst.path) if inst is not None else None
        if worktree is not None and not worktree.is_dir():
            worktree = None
        return load_config(self.main_repo, worktree)

    def _instance(self, state: State, name: Optional[str]) -> Instance:
        """Resolve ``name`` (or cwd) and purge its dead helper records."""
        inst = state.resolve_instance(name, self.cwd)
        if state.reconcile(inst.name, self.alive):
            self._save(state)
        return inst

    def _hook_context(self, inst: Instance, config: Config) -> HookContext:
        worktree = Path(inst.path)
        base = compose_base_path(config.compose_base, worktree)
        compose_file = compose_generated_path(worktree) if config.offset_mode else base
        return HookContext(
            name=inst.name,
            worktree_path=worktree,
            main_repo=self.main_repo,
            port_offset=inst.port_offset,
            compose_base=base,
            compose_file=compose_file,
        )

    def _compose_base(self, inst: Instance, config: Config) -> Path:
        base = compose_base_path(config.compose_base, Path(inst.path))
        if not base.exists():
            raise FractaError(f"Compose base not found: {base}")
        return base

    @staticmethod
    def _best_effort(force: bool, what: str, warnings: list[str], fn, *args):
        try:
            return fn(*args)
        except FractaError as e:
            if not force:
                raise
            log.warning(f"{what} failed: {e}")
            warnings.append(f"{what} failed: {e}")
            return None

    def _require_vm_mode(self, config: Config, what: str) -> None:
        if config.offset_mode:
            raise FractaError(
                f"{what} is only available in vm mode; in offset mode published "
                f"ports are reachable on the host directly (see 'fracta ports')"
            )

    def _require_running(self, inst: Instance) -> None:
        status = lima.info(inst.lima_instance)
        if status == lima.InstanceStatus.NOT_FOUND:
            raise FractaError(
                f"Lima VM '{inst.lima_instance}' not found. Run 'fracta up {inst.name}' first."
            )
        if status == lima.InstanceStatus.STOPPED:
            raise FractaError(
                f"Lima VM '{inst.lima_instance}' is not running. "
                f"Start it with 'fracta up {inst.name}'."
            )

    # ── Compose invocation ───────────────────────────────────────────

    def _host_compose(self, inst: Instance, args: list[str], capture: bool = False) -> str:
        overlay = compose_generated_path(Path(inst.path))
        cmd = [
            "docker", "compose",
            "-p", compose_project_name(Path(inst.path).name),
            "-f", str(overlay),
            *args,
        ]
        code, stdout, stderr = procs.run(cmd, cwd=inst.path, capture=capture)
        if code != 0:
            raise CommandFailed(cmd, code, stderr)
        return stdout

    def _vm_compose(
        self, inst: Instance, compose_base: Path, args: list[str], capture: bool = False
    ) -> str:
        worktree = Path(inst.path)
        try:
            rel = compose_base.relative_to(worktree)
        except ValueError:
            rel = compose_base
        script = (
            f"cd {shlex.quote(str(worktree))} && "
            f"sudo docker compose -f {shlex.quote(str(rel))} {' '.join(args)}"
        )
        code, stdout, stderr = lima.shell(
            inst.lima_instance, ["bash", "-c", script], interactive=not capture
        )
        if code != 0:
            detail = f": {stderr.strip()}" if stderr.strip() else ""
            raise FractaError(f"docker compose {args[0]} failed in VM{detail}")
        return stdout

    def _write_overlay(self, state: State, inst: Instance, config: Config) -> list[str]:
        """Regenerate the overlay and re-register its published ports.

        The ledger is checked before the file is written, so a conflict
        leaves the previous overlay in place.
        """
        base = self._compose_base(inst, config)
        env = load_compose_env(base)
        result = generate_compose(base, inst.port_offset, inst.name, env)
        state.set_reserved_ports(
            inst.name, published_host_ports(extract_ports(result.document))
        )

        path = compose_generated_path(Path(inst.path))
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(result.yaml)
        except OSError as e:
            raise FractaError(f"Failed to write compose file {path}: {e}") from e
        log.info(f"Wrote {path} (offset {inst.port_offset})")
        return result.warnings

    # ── Helper processes ─────────────────────────────────────────────

    def _stop_pid(self, pid: int, what: str, warnings: list[str]) -> None:
        if not self.alive(pid):
            return
        try:
            terminate_pid(pid)
        except FractaError as e:
            log.warning(f"Failed to stop {what}: {e}")
            warnings.append(f"Failed to stop {what}: {e}")

    def _stop_helpers(self, state: State, inst: Instance, warnings: list[str]) -> list[str]:
        """Stop forwards, the proxy and the browser session of ``inst``."""
        lines = []
        for fwd in state.clear_forwards(inst.name):
            self._stop_pid(fwd.pid, f"forward localhost:{fwd.local_port}", warnings)
            lines.append(f"Stopped forward localhost:{fwd.local_port} -> VM:{fwd.remote_port}")
        proxy = state.remove_proxy(inst.name)
        if proxy is not None:
            self._stop_pid(proxy.pid, f"SOCKS5 proxy localhost:{proxy.local_port}", warnings)
            lines.append(f"Stopped SOCKS5 proxy localhost:{proxy.local_port}")
        session = state.remove_browser(inst.name)
        if session is not None:
            self._stop_pid(session.pid, "Playwright", warnings)
            lines.append(f"Stopped Playwright (PID {session.pid})")
        return lines

    def _start_proxy(
        self, state: State, inst: Instance, config: Config, port: Optional[int]
    ) -> ProxyForward:
        local_port = allocate_local_port(
            state.port_allocations,
            inst.name,
            port,
            config.proxy_port_start,
            config.proxy_port_end,
        )
        handle = lima.start_proxy(inst.lima_instance, local_port)
        proxy = ProxyForward(local_port=local_port, pid=handle.pid)
        try:
            state.set_proxy(inst.name, proxy)
            self._save(state)
        except FractaError:
            handle.terminate()
            raise
        return proxy

    def _ensure_vm(self, inst: Instance, config: Config) -> list[str]:
        status = lima.info(inst.lima_instance)
        if status == lima.InstanceStatus.RUNNING:
            return [f"Lima VM '{inst.lima_instance}' is already running."]

        lines = []
        if status == lima.InstanceStatus.NOT_FOUND:
            template = lima.TemplateConfig(
                worktree_path=inst.path,
                cpus=config.vm.cpus,
                memory=config.vm.memory,
                disk=config.vm.disk,
                registry_mirror=config.registry_mirror,
            )
            log.info(f"Creating Lima VM {inst.lima_instance}")
            with lima.temp_template(template) as path:
                lima.create(path, inst.lima_instance)
            lines.append(f"Created Lima VM: {inst.lima_instance}")
        log.info(f"Starting Lima VM {inst.lima_instance}")
        lima.start(inst.lima_instance)
        lines.append(f"Started Lima VM: {inst.lima_instance}")
        return lines

    def _discard_worktree(self, worktree: Path, branch: Optional[str] = None) -> None:
        """Undo a ``git worktree add`` whose instance could not be recorded.

        ``branch`` is deleted too when the add created it.
        """
        shutil.rmtree(fracta_dir(worktree), ignore_errors=True)
        cmd = ["git", "worktree", "remove", "--force", str(worktree)]
        code, _, stderr = procs.run(cmd, cwd=str(self.main_repo))
        if code != 0:
            log.warning(f"Failed to remove aborted worktree {worktree}: {stderr.strip()}")
        else:
            log.info(f"Removed aborted worktree {worktree}")
        if branch is not None:
            code, _, stderr = procs.run(["git", "branch", "-D", branch], cwd=str(self.main_repo))
            if code != 0:
                log.warning(f"Failed to delete branch '{branch}': {stderr.strip()}")

    # ── Lifecycle ────────────────────────────────────────────────────

    def add(self, name: str, new_branch: bool = False, base: Optional[str] = None) -> str:
        if not sanitize_name(name):
            raise FractaError(f"Invalid worktree name '{name}'")
        state = self._load()
        if state.lookup_instance(name) is not None:
            raise FractaError(f"Worktree '{name}' already exists")

        main_repo = self.main_repo
        worktree = main_repo.parent / f"{main_repo.name}-{sanitize_name(name)}"
        config = load_config(main_repo)
        offset = (
            choose_port_offset(name, state.used_offsets()) if config.offset_mode else 0
        )
        inst = Instance(
            name=name,
            path=str(worktree),
            branch=name,
            lima_instance=lima.instance_name(name),
            port_offset=offset,
        )
        ctx = self._hook_context(inst, config)
        run_hook("pre_add", main_repo, ctx, config)

        git_args = ["git", "worktree", "add"]
        if new_branch:
            git_args += ["-b", name, str(worktree), base or "HEAD"]
        else:
            git_args += [str(worktree), name]
        code, _, stderr = procs.run(git_args, cwd=str(main_repo))
        if code != 0:
            raise FractaError(f"git worktree add failed: {stderr.strip()}")

        try:
            state.add_instance(inst)
            warnings = []
            if config.offset_mode:
                warnings = self._write_overlay(state, inst, config)
            self._save(state)
        except FractaError:
            self._discard_worktree(worktree, name if new_branch else None)
            raise
        log.info(f"Added worktree '{name}' at {worktree}")

        run_hook("post_add", worktree, ctx, config)

        lines = [f"Worktree added: {worktree}"]
        if config.offset_mode:
            lines.append(f"Port offset: {offset}")
        else:
            lines.append(f"Lima VM: {inst.lima_instance} (created on 'fracta up')")
        return _with_warnings(lines, warnings)

    def up(self, name: Optional[str] = None, sync_images: bool = False) -> str:
        state = self._load()
        inst = self._instance(state, name)
        config = self._config(inst)
        base = self._compose_base(inst, config)
        ctx = self._hook_context(inst, config)
        lines = [f"=== Starting worktree: {inst.name} ==="]
        warnings: list[str] = []

        if config.offset_mode:
            run_hook("pre_up", Path(inst.path), ctx, config)
            warnings = self._write_overlay(state, inst, config)
            self._save(state)
            self._host_compose(inst, ["up", "-d"])
            run_hook("post_up", Path(inst.path), ctx, config)
            entries = extract_ports_from_file(compose_generated_path(Path(inst.path)))
            if entries:
                lines.append(format_ports_table(entries))
            return _with_warnings(lines, warnings)

        lines.extend(self._ensure_vm(inst, config))
        run_hook("pre_up", Path(inst.path), ctx, config)
        if sync_images:
            lines.extend(
                images.sync_images_to_vm(
                    inst.lima_instance, images.collect_compose_images(base, Path(inst.path))
                )
            )
        self._vm_compose(inst, base, ["up", "-d"])
        run_hook("post_up", Path(inst.path), ctx, config)
        lines.append(
            f"Use 'fracta forward {inst.name} <local_port> <remote_port>' to access services"
        )
        return "\n".join(lines)

    def down(self, name: Optional[str] = None, stop_vm: bool = False) -> str:
        state = self._load()
        inst = self._instance(state, name)
        config = self._config(inst)
        base = self._compose_base(inst, config)
        ctx = self._hook_context(inst, config)
        warnings: list[str] = []
        lines = [f"=== Stopping worktree: {inst.name} ==="]

        run_hook("pre_down", Path(inst.path), ctx, config)
        lines.extend(self._stop_helpers(state, inst, warnings))
        self._save(state)

        if config.offset_mode:
            self._host_compose(inst, ["down"])
            lines.append("docker compose down completed")
        elif lima.info(inst.lima_instance) == lima.InstanceStatus.RUNNING:
            self._vm_compose(inst, base, ["down"], capture=True)
            lines.append("docker compose down completed")
            if stop_vm:
                lima.stop(inst.lima_instance)
                lines.append(f"Lima VM stopped: {inst.lima_instance}")
        else:
            lines.append(f"Lima VM '{inst.lima_instance}' is not running.")

        run_hook("post_down", Path(inst.path), ctx, config)
        return _with_warnings(lines, warnings)

    def restart(self, name: Optional[str] = None) -> str:
        state = self._load()
        inst = self._instance(state, name)
        config = self._config(inst)
        base = self._compose_base(inst, config)
        ctx = self._hook_context(inst, config)

        run_hook("pre_restart", Path(inst.path), ctx, config)
        if config.offset_mode:
            self._host_compose(inst, ["restart"])
        else:
            self._require_running(inst)
            self._vm_compose(inst, base, ["restart"])
        run_hook("post_restart", Path(inst.path), ctx, config)
        return f"Restarted worktree: {inst.name}"

    def remove(
        self,
        name: Optional[str] = None,
        force: bool = False,
        vm_only: bool = False,
        worktree_only: bool = False,
    ) -> str:
        if vm_only and worktree_only:
            raise FractaError("Cannot use --vm-only and --worktree-only together")

        state = self._load()
        inst = self._instance(state, name)
        config = self._config(inst)
        worktree = Path(inst.path)
        base = compose_base_path(config.compose_base, worktree)
        ctx = self._hook_context(inst, config)
        remove_runtime = not worktree_only
        remove_worktree = not vm_only
        warnings: list[str] = []
        lines = [f"=== Removing worktree: {inst.name} ==="]

        run_hook("pre_remove", worktree, ctx, config)

        if remove_runtime:
            lines.extend(self._stop_helpers(state, inst, warnings))
            self._save(state)

            if config.offset_mode:
                if compose_generated_path(worktree).exists():
                    self._best_effort(
                        force, "docker compose down", warnings,
                        self._host_compose, inst, ["down"], True,
                    )
            else:
                status = lima.info(inst.lima_instance)
                if status == lima.InstanceStatus.RUNNING and base.exists():
                    self._best_effort(
                        force, "docker compose down", warnings,
                        self._vm_compose, inst, base, ["down"], True,
                    )
                if status != lima.InstanceStatus.NOT_FOUND:
                    failures = len(warnings)
                    self._best_effort(
                        force, "Deleting Lima VM", warnings,
                        lima.delete, inst.lima_instance,
                    )
                    if len(warnings) == failures:
                        lines.append(f"Deleted Lima VM: {inst.lima_instance}")

        run_hook("post_remove", worktree, ctx, config)

        if remove_worktree:
            shutil.rmtree(fracta_dir(worktree), ignore_errors=True)
            cmd = ["git", "worktree", "remove", "--force", str(worktree)]
            code, _, stderr = procs.run(cmd, cwd=str(self.main_repo))
            if code != 0:
                if not force:
                    raise FractaError(f"git worktree remove failed: {stderr.strip()}")
                log.warning(f"git worktree remove failed: {stderr.strip()}")
                warnings.append(f"git worktree remove failed: {stderr.strip()}")
            else:
                lines.append(f"Removed git worktree: {worktree}")

        if remove_runtime and remove_worktree:
            state.remove_instance(inst.name)
            self._save(state)
            log.info(f"Removed instance '{inst.name}'")
            lines.append(f"=== Worktree '{inst.name}' removed ===")
        elif remove_runtime:
            self._save(state)
            lines.append(f"=== Runtime for '{inst.name}' removed (worktree kept) ===")
        else:
            lines.append(f"=== Worktree '{inst.name}' removed (runtime kept) ===")
        return _with_warnings(lines, warnings)

    # ── Inspection ───────────────────────────────────────────────────

    def ps(self, name: Optional[str] = None) -> str:
        state = self._load()
        inst = self._instance(state, name)
        config = self._config(inst)
        lines = [
            f"=== Worktree: {inst.name} ===",
            f"Path:    {inst.path}",
            f"Branch:  {inst.branch}",
        ]

        if config.offset_mode:
            lines.append(f"Offset:  {inst.port_offset}")
        else:
            status = lima.info(inst.lima_instance)
            lines.append(f"Lima VM: {inst.lima_instance} ({status})")

        if inst.active_forwards:
            lines.append("Active forwards:")
            for fwd in inst.active_forwards:
                lines.append(
                    f"  localhost:{fwd.local_port} -> VM:{fwd.remote_port} (PID {fwd.pid})"
                )
        if inst.active_proxy is not None:
            lines.append(
                f"SOCKS5 proxy: localhost:{inst.active_proxy.local_port} "
                f"(PID {inst.active_proxy.pid})"
            )
        if inst.active_browser is not None:
            lines.append(
                f"Playwright: {inst.active_browser.browser} {inst.active_browser.url} "
                f"(PID {inst.active_browser.pid})"
            )

        if config.offset_mode:
            if compose_generated_path(Path(inst.path)).exists():
                lines.append(self._host_compose(inst, ["ps"], capture=True).rstrip())
        elif status == lima.InstanceStatus.RUNNING:
            base = self._compose_base(inst, config)
            lines.append(self._vm_compose(inst, base, ["ps"], capture=True).rstrip())
        return "\n".join(lines)

    def _port_entries(self, inst: Instance, config: Config) -> list[PortEntry]:
        if config.offset_mode:
            overlay = compose_generated_path(Path(inst.path))
            if not overlay.exists():
                raise FractaError(
                    f"Compose file not found: {overlay}. Run 'fracta up {inst.name}' first."
                )
            return extract_ports_from_file(overlay)

        # inside the VM the base document runs unchanged; only forwards reach the host
        entries = extract_ports(load_document_file(self._compose_base(inst, config)))
        for entry in entries:
            entry.link = None
        for fwd in inst.active_forwards:
            entries.append(
                PortEntry(
                    service="(forward)",
                    host=str(fwd.local_port),
                    target=str(fwd.remote_port),
                    link=f"http://localhost:{fwd.local_port}",
                )
            )
        return entries

    def ports(self, name: Optional[str] = None, short: bool = False) -> str:
        state = self._load()
        inst = self._instance(state, name)
        config = self._config(inst)
        entries = self._port_entries(inst, config)

        if short:
            return "\n".join(f"{e.service}\t{e.host}\t{e.target}" for e in entries)

        header = f"=== Ports: {inst.name} (offset {inst.port_offset}) ==="
        if not entries:
            return f"{header}\nNo published ports found."
        return f"{header}\n{format_ports_table(entries)}"

    def status(self, name: Optional[str] = None) -> str:
        return f"{self.ps(name)}\n\n{self.ports(name)}"

    def ls(self) -> str:
        state = self._load()
        if state.reconcile_all(self.alive):
            self._save(state)
        if not state.instances:
            return "No worktrees found."

        config = self._config()
        lines = [
            f"{'NAME':<20} {'LIMA VM':<25} {'STATUS':<10} {'OFFSET':<7} {'FORWARDS':<9} PATH",
            "-" * 100,
        ]
        for inst in state.instances:
            if config.offset_mode:
                status = "-"
            else:
                try:
                    status = str(lima.info(inst.lima_instance))
                except FractaError:
                    status = "Unknown"
            forwards = str(len(inst.active_forwards)) if inst.active_forwards else "-"
            lines.append(
                f"{inst.name:<20} {inst.lima_instance:<25} {status:<10} "
                f"{inst.port_offset:<7} {forwards:<9} {inst.path}"
            )
        return "\n".join(lines)

    # ── Forwards ─────────────────────────────────────────────────────

    def forward(self, name: Optional[str], local_port: int, remote_port: int) -> str:
        if not 0 < remote_port <= 65535:
            raise FractaError(f"Invalid remote port: {remote_port}")
        state = self._load()
        inst = self._instance(state, name)
        self._require_vm_mode(self._config(inst), "forward")

        try:
            local_port = allocate_local_port(
                state.port_allocations, inst.name, local_port or remote_port
            )
        except ValueError as e:
            raise FractaError(str(e)) from e
        if any(f.remote_port == remote_port for f in inst.active_forwards):
            raise FractaError(
                f"Remote port {remote_port} is already being forwarded for instance '{inst.name}'"
            )
        self._require_running(inst)

        handle = lima.start_forward(inst.lima_instance, local_port, remote_port)
        try:
            state.add_forward(inst.name, PortForward(local_port, remote_port, handle.pid))
            self._save(state)
        except FractaError:
            handle.terminate()
            raise
        return (
            f"Forwarding localhost:{local_port} -> VM:{remote_port} (PID {handle.pid})\n"
            f"  URL: http://localhost:{local_port}"
        )

    def unforward(self, name: Optional[str], local_port: int) -> str:
        state = self._load()
        inst = self._instance(state, name)
        fwd = state.remove_forward(inst.name, local_port)
        if fwd is None:
            raise FractaError(
                f"No active forward on localhost:{local_port} for instance '{inst.name}'"
            )
        warnings: list[str] = []
        self._stop_pid(fwd.pid, f"forward localhost:{local_port}", warnings)
        self._save(state)
        return _with_warnings(
            [f"Stopped forward localhost:{fwd.local_port} -> VM:{fwd.remote_port}"], warnings
        )

    def unforward_all(self, name: Optional[str] = None) -> str:
        state = self._load()
        inst = self._instance(state, name)
        forwards = state.clear_forwards(inst.name)
        if not forwards:
            return f"No active forwards for instance '{inst.name}'"
        warnings: list[str] = []
        for fwd in forwards:
            self._stop_pid(fwd.pid, f"forward localhost:{fwd.local_port}", warnings)
        self._save(state)
        return _with_warnings(
            [f"Stopped {len(forwards)} forward(s) for instance '{inst.name}'"], warnings
        )

    # ── Proxy / browser ──────────────────────────────────────────────

    def proxy(self, name: Optional[str] = None, port: Optional[int] = None) -> str:
        state = self._load()
        inst = self._instance(state, name)
        config = self._config(inst)
        self._require_vm_mode(config, "proxy")
        if inst.active_proxy is not None:
            raise FractaError(
                f"SOCKS5 proxy is already running for '{inst.name}' on "
                f"localhost:{inst.active_proxy.local_port} (PID {inst.active_proxy.pid})"
            )
        self._require_running(inst)
        try:
            proxy = self._start_proxy(state, inst, config, port)
        except ValueError as e:
            raise FractaError(str(e)) from e
        return (
            f"SOCKS5 proxy started on localhost:{proxy.local_port} (PID {proxy.pid})\n"
            f"  Proxy: socks5://127.0.0.1:{proxy.local_port}"
        )

    def unproxy(self, name: Optional[str] = None) -> str:
        state = self._load()
        inst = self._instance(state, name)
        proxy = state.remove_proxy(inst.name)
        if proxy is None:
            return f"No active SOCKS5 proxy for instance '{inst.name}'"
        warnings: list[str] = []
        self._stop_pid(proxy.pid, f"SOCKS5 proxy localhost:{proxy.local_port}", warnings)
        self._save(state)
        return _with_warnings(
            [f"Stopped SOCKS5 proxy localhost:{proxy.local_port}"], warnings
        )

    def proxies(self) -> str:
        state = self._load()
        if state.reconcile_all(self.alive):
            self._save(state)
        active = [i for i in state.instances if i.active_proxy is not None]
        if not active:
            return "No active proxies."
        lines = [f"{'NAME':<20} {'PROXY':<22} {'PID':<8} BROWSER", "-" * 70]
        for inst in active:
            browser = (
                f"{inst.active_browser.browser} {inst.active_browser.url}"
                if inst.active_browser
                else "-"
            )
            lines.append(
                f"{inst.name:<20} {'localhost:' + str(inst.active_proxy.local_port):<22} "
                f"{inst.active_proxy.pid:<8} {browser}"
            )
        return "\n".join(lines)

    def open_browser(
        self,
        name: Optional[str] = None,
        browser: str = DEFAULT_BROWSER,
        url: str = DEFAULT_URL,
        proxy_port: Optional[int] = None,
    ) -> str:
        if browser not in BROWSERS:
            raise FractaError(f"Unsupported browser '{browser}'. Use chrome or firefox.")
        state = self._load()
        inst = self._instance(state, name)
        config = self._config(inst)
        self._require_vm_mode(config, "open")

        if inst.active_browser is not None:
            raise FractaError(
                f"Playwright is already running for '{inst.name}' "
                f"(PID {inst.active_browser.pid}). Run 'fracta close {inst.name}' first."
            )

        lines = []
        proxy = inst.active_proxy
        if proxy is None:
            self._require_running(inst)
            try:
                proxy = self._start_proxy(state, inst, config, proxy_port)
            except ValueError as e:
                raise FractaError(str(e)) from e
            lines.append(f"SOCKS5 proxy started on localhost:{proxy.local_port}")
        elif proxy_port and proxy_port != proxy.local_port:
            raise FractaError(
                f"A SOCKS5 proxy is already running on localhost:{proxy.local_port}; "
                f"run 'fracta unproxy {inst.name}' to use port {proxy_port}"
            )

        handle = procs.spawn_background(
            ["node", "-e", playwright_script(browser, proxy.local_port, url)],
            "Playwright",
            inherit_output=True,
        )
        state.set_browser(inst.name, BrowserSession(browser, url, handle.pid))
        self._save(state)
        lines.append(f"Playwright started (PID {handle.pid}) via socks5://127.0.0.1:{proxy.local_port}")
        return "\n".join(lines)

    def close_browser(self, name: Optional[str] = None) -> str:
        state = self._load()
        inst = self._instance(state, name)
        session = state.remove_browser(inst.name)
        if session is None:
            return f"No active Playwright session for instance '{inst.name}'"
        warnings: list[str] = []
        self._stop_pid(session.pid, "Playwright", warnings)
        self._save(state)
        return _with_warnings([f"Stopped Playwright (PID {session.pid})"], warnings)

    # ── VM ───────────────────────────────────────────────────────────

    def vm_start(self, name: Optional[str] = None) -> str:
        state = self._load()
        inst = self._instance(state, name)
        config = self._config(inst)
        self._require_vm_mode(config, "vm start")
        return "\n".join(self._ensure_vm(inst, config))

    def vm_stop(self, name: Optional[str] = None) -> str:
        state = self._load()
        inst = self._instance(state, name)
        self._require_vm_mode(self._config(inst), "vm stop")
        warnings: list[str] = []
        lines = self._stop_helpers(state, inst, warnings)
        self._save(state)

        if lima.info(inst.lima_instance) == lima.InstanceStatus.RUNNING:
            lima.stop(inst.lima_instance)
            lines.append(f"Lima VM stopped: {inst.lima_instance}")
        else:
            lines.append(f"Lima VM '{inst.lima_instance}' is not running.")
        return _with_warnings(lines, warnings)

    def vm_list(self) -> str:
        state = self._load()
        if not state.instances:
            return "No instances found."
        lines = [f"{'NAME':<20} {'LIMA VM':<25} {'VM STATUS':<10} PATH", "-" * 90]
        for inst in state.instances:
            try:
                status = str(lima.info(inst.lima_instance))
            except FractaError:
                status = "Unknown"
            lines.append(f"{inst.name:<20} {inst.lima_instance:<25} {status:<10} {inst.path}")
        return "\n".join(lines)

    def vm_exec(self, name: Optional[str], command: str) -> str:
        """Run a shell command in the VM and return its captured output."""
        state = self._load()
        inst = self._instance(state, name)
        self._require_vm_mode(self._config(inst), "exec")
        self._require_running(inst)
        code, stdout, stderr = lima.shell(
            inst.lima_instance, ["bash", "-c", f"cd {shlex.quote(inst.path)} && {command}"]
        )
        parts = [stdout.rstrip()] if stdout.strip() else []
        if stderr.strip():
            parts.append(f"[stderr] {stderr.rstrip()}")
        if code != 0:
            parts.append(f"[exit code {code}]")
        return "\n".join(parts)

    def shell(
        self,
        name: Optional[str] = None,
        shell: Optional[str] = None,
        workdir: Optional[str] = None,
        tty: Optional[bool] = None,
        command: Optional[list[str]] = None,
    ) -> int:
        """Attach the terminal to ``limactl shell``. Returns the exit code."""
        state = self._load()
        inst = self._instance(state, name)
        self._require_vm_mode(self._config(inst), "shell")
        self._require_running(inst)
        log.info(f"Connecting to Lima VM {inst.lima_instance} ({inst.path})")
        args = lima.shell_args(
            inst.lima_instance,
            shell=shell,
            workdir=workdir or inst.path,
            tty=tty,
            command=command,
        )
        code, _, _ = procs.run(args, capture=False)
        return code
