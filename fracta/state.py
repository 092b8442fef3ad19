"""Instance table and port ledger, persisted per managed repository.

The ledger maps local ports to the instance holding them. An instance holds
a port through exactly one of: an active forward, its SOCKS proxy, or a plain
reservation (overlay-published ports in offset mode). Every mutation below
changes the ledger and the owning record together, so each ledger entry is
backed by its owner's record and each held port has a ledger entry.

Forward/proxy/browser processes are spawned detached and may die at any
time; ``reconcile`` purges records whose pid is gone. Nothing sweeps in the
background, callers reconcile before trusting a record.
"""

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable, Optional

from .errors import InstanceNotFound, LedgerConflict, StateError
from .procs import pid_alive
from .utils import fracta_dir, is_path_within, runtime_handle_name

log = logging.getLogger("fracta")

STATE_VERSION = 2
STATE_FILE_NAME = "state.json"


@dataclass
class PortForward:
    local_port: int
    remote_port: int
    pid: int


@dataclass
class ProxyForward:
    local_port: int
    pid: int


@dataclass
class BrowserSession:
    browser: str
    url: str
    pid: int


@dataclass
class Instance:
    name: str
    path: str
    branch: str
    lima_instance: str
    port_offset: int = 0
    active_forwards: list[PortForward] = field(default_factory=list)
    reserved_ports: list[int] = field(default_factory=list)
    active_proxy: Optional[ProxyForward] = None
    active_browser: Optional[BrowserSession] = None

    def held_ports(self) -> list[int]:
        ports = [f.local_port for f in self.active_forwards]
        if self.active_proxy is not None:
            ports.append(self.active_proxy.local_port)
        ports.extend(self.reserved_ports)
        return ports

    def holds(self, port: int) -> bool:
        return port in self.held_ports()

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, info: dict) -> "Instance":
        name = info["name"]
        proxy = info.get("active_proxy")
        browser = info.get("active_browser")
        return cls(
            name=name,
            path=info["path"],
            branch=info.get("branch", name),
            lima_instance=info.get("lima_instance") or runtime_handle_name(name),
            port_offset=int(info.get("port_offset", 0)),
            active_forwards=[
                PortForward(int(f["local_port"]), int(f["remote_port"]), int(f["pid"]))
                for f in info.get("active_forwards") or []
            ],
            reserved_ports=[int(p) for p in info.get("reserved_ports") or []],
            active_proxy=(
                ProxyForward(int(proxy["local_port"]), int(proxy["pid"])) if proxy else None
            ),
            active_browser=(
                BrowserSession(browser["browser"], browser["url"], int(browser["pid"]))
                if browser
                else None
            ),
        )


def state_file_path(main_repo: Path) -> Path:
    return fracta_dir(main_repo) / STATE_FILE_NAME


class State:
    """In-memory state of one managed repository.

    Mutate freely, then ``save`` once at the end of an operation.
    """

    def __init__(
        self,
        instances: Optional[list[Instance]] = None,
        port_allocations: Optional[dict[int, str]] = None,
    ):
        self.version = STATE_VERSION
        self.instances: list[Instance] = instances or []
        self.port_allocations: dict[int, str] = port_allocations or {}

    # ── Persistence ──────────────────────────────────────────────────

    @classmethod
    def load(cls, main_repo: Path) -> "State":
        path = state_file_path(main_repo)
        if not path.exists():
            return cls()
        try:
            with open(path) as f:
                raw = json.load(f)
        except json.JSONDecodeError as e:
            raise StateError(f"Failed to parse state file {path}: {e}") from e
        except OSError as e:
            raise StateError(f"Failed to read state file {path}: {e}") from e

        state = cls.from_dict(raw)
        for problem in state.repair():
            log.warning(f"State repair: {problem}")
        return state

    @classmethod
    def from_dict(cls, raw) -> "State":
        """Decode either the current shape or the old flat ``worktrees`` list."""
        if not isinstance(raw, dict):
            raise StateError("Failed to parse state file: unsupported format")

        version = raw.get("version")
        if version == STATE_VERSION and isinstance(raw.get("instances"), list):
            try:
                instances = [Instance.from_dict(i) for i in raw["instances"]]
                allocations = {
                    int(port): str(owner)
                    for port, owner in (raw.get("port_allocations") or {}).items()
                }
            except (KeyError, TypeError, ValueError) as e:
                raise StateError(f"Failed to parse state file: {e}") from e
            return cls(instances, allocations)

        if isinstance(version, int) and version > STATE_VERSION:
            raise StateError(
                f"State file version {version} is newer than this fracta supports"
            )

        if version is None and isinstance(raw.get("worktrees"), list):
            return migrate_v1(raw)

        raise StateError("Failed to parse state file: unsupported format")

    def to_dict(self) -> dict:
        return {
            "version": STATE_VERSION,
            "instances": [i.to_dict() for i in self.instances],
            "port_allocations": {
                str(port): owner for port, owner in sorted(self.port_allocations.items())
            },
        }

    def save(self, main_repo: Path) -> None:
        """Persist atomically (tempfile + fsync + os.replace)."""
        path = state_file_path(main_repo)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = tempfile.NamedTemporaryFile(
                "w", dir=path.parent, delete=False, suffix=".tmp"
            )
            try:
                json.dump(self.to_dict(), fd, indent=2)
                fd.write("\n")
                fd.flush()
                os.fsync(fd.fileno())
                fd.close()
                os.replace(fd.name, path)
            except BaseException:
                fd.close()
                try:
                    os.unlink(fd.name)
                except OSError:
                    pass
                raise
        except OSError as e:
            raise StateError(f"Failed to write state file {path}: {e}") from e

    # ── Instances ────────────────────────────────────────────────────

    def lookup_instance(self, name: str) -> Optional[Instance]:
        for inst in self.instances:
            if inst.name == name:
                return inst
        return None

    def get_instance(self, name: str) -> Instance:
        inst = self.lookup_instance(name)
        if inst is None:
            raise InstanceNotFound(f"Instance '{name}' not found")
        return inst

    def resolve_instance(self, name: Optional[str], cwd: Optional[Path] = None) -> Instance:
        """Named instance, or the one whose worktree contains ``cwd``."""
        if name:
            return self.get_instance(name)
        cwd = cwd or Path.cwd()
        for inst in self.instances:
            if is_path_within(Path(inst.path), cwd):
                return inst
        raise InstanceNotFound("No instance found for current directory")

    def add_instance(self, instance: Instance) -> None:
        if self.lookup_instance(instance.name) is not None:
            raise StateError(f"Instance '{instance.name}' already exists")
        held = instance.held_ports()
        for port in held:
            self._check_free(instance.name, port)
        self.instances.append(instance)
        for port in held:
            self.port_allocations[port] = instance.name

    def remove_instance(self, name: str) -> Instance:
        inst = self.get_instance(name)
        self.unregister_all(name)
        self.instances.remove(inst)
        return inst

    def used_offsets(self, exclude: Optional[str] = None) -> set[int]:
        return {
            i.port_offset for i in self.instances if i.name != exclude and i.port_offset
        }

    # ── Ledger ───────────────────────────────────────────────────────

    def lookup_owner(self, port: int) -> Optional[str]:
        return self.port_allocations.get(port)

    def _check_free(self, name: str, port: int) -> None:
        owner = self.port_allocations.get(port)
        if owner is not None and owner != name:
            raise LedgerConflict(port, owner, name)

    def register(self, name: str, port: int) -> None:
        """Reserve ``port`` for ``name``. Idempotent for the current owner."""
        inst = self.get_instance(name)
        self._check_free(name, port)
        if not inst.holds(port):
            inst.reserved_ports.append(port)
        self.port_allocations[port] = name

    def unregister(self, name: str, port: int) -> None:
        """Release ``port`` whichever way ``name`` holds it."""
        inst = self.get_instance(name)
        self._check_free(name, port)
        inst.active_forwards = [f for f in inst.active_forwards if f.local_port != port]
        if inst.active_proxy is not None and inst.active_proxy.local_port == port:
            inst.active_proxy = None
        inst.reserved_ports = [p for p in inst.reserved_ports if p != port]
        self.port_allocations.pop(port, None)

    def unregister_all(self, name: str) -> list[int]:
        """Release every port ``name`` holds. Returns the released ports."""
        inst = self.get_instance(name)
        released = sorted(
            set(inst.held_ports())
            | {p for p, owner in self.port_allocations.items() if owner == name}
        )
        for port in released:
            if self.port_allocations.get(port) == name:
                del self.port_allocations[port]
        inst.active_forwards = []
        inst.active_proxy = None
        inst.reserved_ports = []
        return released

    def set_reserved_ports(self, name: str, ports: list[int]) -> None:
        """Replace the plain reservations of ``name`` (overlay regeneration)."""
        inst = self.get_instance(name)
        wanted = []
        for port in ports:
            if port in wanted:
                continue
            self._check_free(name, port)
            wanted.append(port)
        for port in inst.reserved_ports:
            if port not in wanted and self.port_allocations.get(port) == name:
                del self.port_allocations[port]
        active = {f.local_port for f in inst.active_forwards}
        if inst.active_proxy is not None:
            active.add(inst.active_proxy.local_port)
        inst.reserved_ports = [p for p in wanted if p not in active]
        for port in wanted:
            self.port_allocations[port] = name

    # ── Forwards / proxy / browser ───────────────────────────────────

    def add_forward(self, name: str, forward: PortForward) -> None:
        inst = self.get_instance(name)
        self._check_free(name, forward.local_port)
        if inst.holds(forward.local_port):
            raise LedgerConflict(forward.local_port, name, name)
        inst.active_forwards.append(forward)
        self.port_allocations[forward.local_port] = name

    def remove_forward(self, name: str, local_port: int) -> Optional[PortForward]:
        inst = self.get_instance(name)
        for fwd in inst.active_forwards:
            if fwd.local_port == local_port:
                inst.active_forwards.remove(fwd)
                if self.port_allocations.get(local_port) == name:
                    del self.port_allocations[local_port]
                return fwd
        return None

    def clear_forwards(self, name: str) -> list[PortForward]:
        inst = self.get_instance(name)
        forwards, inst.active_forwards = inst.active_forwards, []
        for fwd in forwards:
            if self.port_allocations.get(fwd.local_port) == name:
                del self.port_allocations[fwd.local_port]
        return forwards

    def set_proxy(self, name: str, proxy: ProxyForward) -> None:
        inst = self.get_instance(name)
        if inst.active_proxy is not None:
            raise StateError(f"Instance '{name}' already has a proxy record")
        self._check_free(name, proxy.local_port)
        if inst.holds(proxy.local_port):
            raise LedgerConflict(proxy.local_port, name, name)
        inst.active_proxy = proxy
        self.port_allocations[proxy.local_port] = name

    def remove_proxy(self, name: str) -> Optional[ProxyForward]:
        inst = self.get_instance(name)
        proxy, inst.active_proxy = inst.active_proxy, None
        if proxy is not None and self.port_allocations.get(proxy.local_port) == name:
            del self.port_allocations[proxy.local_port]
        return proxy

    def set_browser(self, name: str, session: BrowserSession) -> None:
        self.get_instance(name).active_browser = session

    def remove_browser(self, name: str) -> Optional[BrowserSession]:
        inst = self.get_instance(name)
        session, inst.active_browser = inst.active_browser, None
        return session

    # ── Liveness / consistency ───────────────────────────────────────

    def reconcile(
        self, name: str, alive: Callable[[int], bool] = pid_alive
    ) -> list[str]:
        """Purge forward/proxy/browser records whose process is gone."""
        inst = self.get_instance(name)
        purged = []
        for fwd in list(inst.active_forwards):
            if not alive(fwd.pid):
                self.remove_forward(name, fwd.local_port)
                purged.append(
                    f"forward localhost:{fwd.local_port} -> {fwd.remote_port} (PID {fwd.pid})"
                )
        if inst.active_proxy is not None and not alive(inst.active_proxy.pid):
            proxy = self.remove_proxy(name)
            purged.append(f"proxy localhost:{proxy.local_port} (PID {proxy.pid})")
        if inst.active_browser is not None and not alive(inst.active_browser.pid):
            session = self.remove_browser(name)
            purged.append(f"browser session (PID {session.pid})")
        for what in purged:
            log.info(f"Purged stale {what} of '{name}'")
        return purged

    def reconcile_all(self, alive: Callable[[int], bool] = pid_alive) -> list[str]:
        purged = []
        for inst in self.instances:
            purged.extend(f"{inst.name}: {p}" for p in self.reconcile(inst.name, alive))
        return purged

    def check_consistency(self) -> list[str]:
        """Describe every way the ledger and the records disagree."""
        problems = []
        names = {i.name for i in self.instances}
        for port, owner in sorted(self.port_allocations.items()):
            if owner not in names:
                problems.append(f"port {port} owned by unknown instance '{owner}'")
            elif not self.get_instance(owner).holds(port):
                problems.append(f"port {port} owned by '{owner}' without a record")
        for inst in self.instances:
            held = inst.held_ports()
            for port in held:
                owner = self.port_allocations.get(port)
                if owner != inst.name:
                    problems.append(
                        f"'{inst.name}' holds port {port} but ledger says {owner!r}"
                    )
            if len(held) != len(set(held)):
                problems.append(f"'{inst.name}' holds a port twice")
        return problems

    def repair(self) -> list[str]:
        """Bring a hand-edited or raced state file back to a consistent shape."""
        problems = self.check_consistency()
        if not problems:
            return []

        names = {i.name for i in self.instances}
        for port, owner in list(self.port_allocations.items()):
            if owner not in names or not self.get_instance(owner).holds(port):
                del self.port_allocations[port]

        for inst in self.instances:
            seen: set[int] = set()

            def keep(port: int) -> bool:
                owner = self.port_allocations.get(port)
                if port in seen or (owner is not None and owner != inst.name):
                    return False
                seen.add(port)
                self.port_allocations[port] = inst.name
                return True

            inst.active_forwards = [f for f in inst.active_forwards if keep(f.local_port)]
            if inst.active_proxy is not None and not keep(inst.active_proxy.local_port):
                inst.active_proxy = None
            inst.reserved_ports = [p for p in inst.reserved_ports if keep(p)]
        return problems


def migrate_v1(raw: dict) -> State:
    """Upconvert ``{"worktrees": [{name, path, branch, port_offset}]}``.

    Runtime handles are derived from the names; forwards and the ledger
    start empty. The old shape is never written back.
    """
    instances = []
    for wt in raw["worktrees"]:
        if not isinstance(wt, dict) or "name" not in wt or "path" not in wt:
            raise StateError("Failed to parse state file: malformed worktree entry")
        name = wt["name"]
        instances.append(
            Instance(
                name=name,
                path=wt["path"],
                branch=wt.get("branch", name),
                lima_instance=runtime_handle_name(name),
                port_offset=int(wt.get("port_offset", 0)),
            )
        )
    log.info(f"Migrated {len(instances)} instance(s) from the v1 state format")
    return State(instances, {})
