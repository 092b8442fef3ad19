"""Rewrite a compose document into a per-instance overlay.

Published host ports are shifted by the instance's port offset and explicit
container names get a ``-<instance>`` suffix. Everything else passes through
untouched. A port entry we cannot safely transform is left as-is and reported
as a warning; only an unparseable document is fatal.
"""

import copy
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, NamedTuple, Optional

import yaml

from .errors import FractaError, ParseFailure
from .utils import sanitize_name

log = logging.getLogger("fracta")

MAX_PORT = 65535

_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_PORT_RANGE_RE = re.compile(r"^[0-9]+-[0-9]+$")
_DIGITS_RE = re.compile(r"[0-9]+")


def is_digits(value: str) -> bool:
    """ASCII digits only; ``str.isdigit`` also accepts ``²`` and friends."""
    return _DIGITS_RE.fullmatch(value) is not None


# ── YAML flavour ─────────────────────────────────────────────────────────
# Compose files are YAML 1.2: ``22:22`` is a string, not a base-60 integer.


class ComposeLoader(yaml.SafeLoader):
    pass


ComposeLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag != "tag:yaml.org,2002:int"]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}
ComposeLoader.add_implicit_resolver(
    "tag:yaml.org,2002:int",
    re.compile(
        r"""^(?:[-+]?0b[0-1_]+
        |[-+]?0o?[0-7_]+
        |[-+]?(?:0|[1-9][0-9_]*)
        |[-+]?0x[0-9a-fA-F_]+)$""",
        re.X,
    ),
    list("-+0123456789"),
)


def load_document(text: str, source: str = "compose document") -> dict:
    try:
        doc = yaml.load(text, Loader=ComposeLoader)
    except yaml.YAMLError as e:
        raise ParseFailure(f"Failed to parse {source}: {e}") from e
    if not isinstance(doc, dict):
        raise ParseFailure(f"Failed to parse {source}: top level is not a mapping")
    return doc


def load_document_file(path: Path) -> dict:
    try:
        text = path.read_text()
    except OSError as e:
        raise FractaError(f"Failed to read {path}: {e}") from e
    return load_document(text, source=str(path))


def dump_document(doc: dict) -> str:
    return yaml.safe_dump(doc, sort_keys=False, default_flow_style=False)


# ── Environment expressions ──────────────────────────────────────────────


class EnvExpr(NamedTuple):
    name: str
    default: Optional[str] = None
    # ``:-`` also falls back on empty values, ``-`` only on unset ones
    treat_empty: bool = False


def parse_env_expr(value: str) -> Optional[EnvExpr]:
    """Parse ``${NAME}``, ``${NAME-default}`` or ``${NAME:-default}``."""
    if not (value.startswith("${") and value.endswith("}")):
        return None
    inner = value[2:-1]
    if not inner:
        return None

    if ":-" in inner:
        name, _, default = inner.partition(":-")
        treat_empty = True
    elif "-" in inner:
        name, _, default = inner.partition("-")
        treat_empty = False
    else:
        name, default, treat_empty = inner, None, False

    if not _ENV_NAME_RE.match(name):
        return None
    return EnvExpr(name, default, treat_empty)


def resolve_env_expr(expr: EnvExpr, env: dict[str, str]) -> Optional[str]:
    value = env.get(expr.name)
    if expr.default is None:
        return value
    if value is None:
        return expr.default
    if expr.treat_empty and value == "":
        return expr.default
    return value


def resolve_env_number(
    value: str, env: dict[str, str], warnings: list[str]
) -> Optional[int]:
    """Literal digits or an env expression resolving to digits.

    Returns None for anything else; warns only when an expression was
    recognised but did not resolve to a number.
    """
    if is_digits(value):
        return int(value)

    expr = parse_env_expr(value)
    if expr is None:
        return None

    resolved = resolve_env_expr(expr, env)
    if resolved is None:
        warnings.append(f"Unresolved env port: {value}")
        return None
    resolved = resolved.strip()
    if not is_digits(resolved):
        warnings.append(f"Non-numeric env port: {value}")
        return None
    return int(resolved)


def is_port_range(value: str) -> bool:
    return bool(_PORT_RANGE_RE.match(value))


def _resolve_host_port(
    host: str, env: dict[str, str], warnings: list[str]
) -> Optional[int]:
    before = len(warnings)
    num = resolve_env_number(host, env, warnings)
    if num is not None:
        if num > MAX_PORT:
            warnings.append(f"Host port overflow: {host}")
            return None
        return num
    if len(warnings) > before:
        return None
    if is_port_range(host):
        warnings.append(f"Port range not supported: {host}")
    else:
        warnings.append(f"Non-numeric host port: {host}")
    return None


# ── Port rewriting ───────────────────────────────────────────────────────


def rewrite_short_port(
    value: str, offset: int, env: dict[str, str], warnings: list[str]
) -> tuple[str, bool]:
    """``[ip:]host:container[/proto]`` with the host port shifted by offset."""
    main, slash, proto = value.rpartition("/")
    if not slash:
        main, proto = value, ""

    parts = main.split(":")
    if len(parts) == 1:
        return value, False
    if len(parts) == 2:
        ip, host, container = None, parts[0], parts[1]
    elif len(parts) == 3:
        ip, host, container = parts
    else:
        warnings.append(f"Unsupported port format: {value}")
        return value, False

    if host == "":
        # ephemeral host port, nothing to collide with
        return value, False

    host_num = _resolve_host_port(host, env, warnings)
    if host_num is None:
        return value, False

    new_host = host_num + offset
    if new_host > MAX_PORT:
        warnings.append(f"Port overflow: {value}")
        return value, False

    rebuilt = f"{new_host}:{container}"
    if ip is not None:
        rebuilt = f"{ip}:{rebuilt}"
    if slash:
        rebuilt = f"{rebuilt}/{proto}"
    return rebuilt, rebuilt != value


def rewrite_long_port(
    entry: dict, offset: int, env: dict[str, str], warnings: list[str]
) -> tuple[dict, bool]:
    """Shift ``published`` in a long-syntax entry, keeping its int/str type."""
    if "published" not in entry:
        return entry, False

    published = entry["published"]
    if isinstance(published, bool) or not isinstance(published, (int, str)):
        warnings.append(f"Unsupported published port type: {published!r}")
        return entry, False

    if isinstance(published, int):
        base = published
    else:
        base = resolve_env_number(published, env, warnings)
        if base is None:
            if is_port_range(published):
                warnings.append(f"Port range not supported: {published}")
            elif parse_env_expr(published) is None:
                warnings.append(f"Non-numeric published port: {published}")
            return entry, False

    new_published = base + offset
    if new_published > MAX_PORT:
        warnings.append(f"Published port overflow: {published}")
        return entry, False

    new_value: Any = str(new_published) if isinstance(published, str) else new_published
    if new_value == published:
        return entry, False
    new_entry = dict(entry)
    new_entry["published"] = new_value
    return new_entry, True


def rewrite_ports(
    ports: Any, offset: int, env: dict[str, str], warnings: list[str]
) -> tuple[Any, bool]:
    if not isinstance(ports, list):
        warnings.append("ports is not a list; skipping")
        return ports, False

    changed = False
    new_ports = []
    for entry in ports:
        if isinstance(entry, str):
            new_entry, did_change = rewrite_short_port(entry, offset, env, warnings)
        elif isinstance(entry, dict):
            new_entry, did_change = rewrite_long_port(entry, offset, env, warnings)
        elif isinstance(entry, int) and not isinstance(entry, bool):
            # bare container port
            new_entry, did_change = entry, False
        else:
            warnings.append(f"ports entry has unsupported type: {entry!r}")
            new_entry, did_change = entry, False
        new_ports.append(new_entry)
        changed = changed or did_change
    return new_ports, changed


def rewrite_container_name(
    value: Any, instance_id: str, warnings: list[str]
) -> Optional[str]:
    """New container name, or None when it should stay as it is."""
    if not isinstance(value, str):
        warnings.append("container_name is not a string; skipping")
        return None
    suffix_id = sanitize_name(instance_id)
    if not value or not suffix_id:
        return None
    suffix = f"-{suffix_id}"
    if value.endswith(suffix):
        return None
    return f"{value}{suffix}"


@dataclass
class RewriteResult:
    document: dict
    warnings: list[str] = field(default_factory=list)


def rewrite(
    document: dict, offset: int, instance_id: str, env: dict[str, str]
) -> RewriteResult:
    """Pure transform of a parsed compose document. The input is not mutated."""
    if not isinstance(document, dict):
        raise ParseFailure("compose document is not a mapping")
    if offset < 0:
        raise ValueError(f"port offset must be non-negative, got {offset}")

    doc = copy.deepcopy(document)
    warnings: list[str] = []

    services = doc.get("services")
    if not isinstance(services, dict):
        warnings.append("No services found in compose base")
        return RewriteResult(doc, warnings)

    for service_name, service in services.items():
        if not isinstance(service, dict):
            continue
        service_warnings: list[str] = []

        if "ports" in service:
            new_ports, changed = rewrite_ports(
                service["ports"], offset, env, service_warnings
            )
            if changed:
                service["ports"] = new_ports

        if "container_name" in service:
            new_name = rewrite_container_name(
                service["container_name"], instance_id, service_warnings
            )
            if new_name is not None:
                service["container_name"] = new_name

        warnings.extend(f"{service_name}: {w}" for w in service_warnings)

    return RewriteResult(doc, warnings)


@dataclass
class ComposeResult:
    yaml: str
    warnings: list[str] = field(default_factory=list)
    document: dict = field(default_factory=dict, repr=False)


def generate_compose(
    compose_base: Path, offset: int, instance_id: str, env: dict[str, str]
) -> ComposeResult:
    base = load_document_file(compose_base)
    result = rewrite(base, offset, instance_id, env)
    return ComposeResult(
        yaml=dump_document(result.document),
        warnings=result.warnings,
        document=result.document,
    )


# ── Port extraction ──────────────────────────────────────────────────────


@dataclass
class PortEntry:
    service: str
    host: str
    target: str
    link: Optional[str] = None


def parse_short_port_entry(value: str) -> Optional[tuple[str, str]]:
    main, slash, proto = value.rpartition("/")
    if not slash:
        main, proto = value, ""

    parts = main.split(":")
    if len(parts) == 2:
        host, target = parts
    elif len(parts) == 3:
        host, target = f"{parts[0]}:{parts[1]}", parts[2]
    else:
        return None

    if slash:
        target = f"{target}/{proto}"
    return host, target


def _port_text(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        return value
    return None


def parse_long_port_entry(entry: dict) -> Optional[tuple[str, str]]:
    host = _port_text(entry.get("published"))
    target = _port_text(entry.get("target"))
    if host is None or target is None:
        return None

    host_ip = entry.get("host_ip")
    if isinstance(host_ip, str) and host_ip:
        host = f"{host_ip}:{host}"

    proto = entry.get("protocol")
    if isinstance(proto, str) and proto:
        target = f"{target}/{proto}"
    return host, target


def host_to_link(host: str) -> Optional[str]:
    if is_digits(host):
        return f"http://localhost:{host}"

    ip, sep, port = host.rpartition(":")
    if not sep or not is_digits(port):
        return None
    if ip == "0.0.0.0":
        ip = "localhost"
    return f"http://{ip}:{port}"


def extract_ports(document: dict) -> list[PortEntry]:
    services = document.get("services") if isinstance(document, dict) else None
    if not isinstance(services, dict):
        return []

    entries = []
    for service_name, service in services.items():
        if not isinstance(service, dict):
            continue
        ports = service.get("ports")
        if not isinstance(ports, list):
            continue
        for entry in ports:
            if isinstance(entry, str):
                parsed = parse_short_port_entry(entry)
            elif isinstance(entry, dict):
                parsed = parse_long_port_entry(entry)
            else:
                parsed = None
            if parsed is None:
                continue
            host, target = parsed
            entries.append(PortEntry(str(service_name), host, target, host_to_link(host)))
    return entries


def extract_ports_from_file(path: Path) -> list[PortEntry]:
    return extract_ports(load_document_file(path))


def published_host_ports(entries: list[PortEntry]) -> list[int]:
    """Numeric local ports an overlay will bind, in document order."""
    ports: list[int] = []
    for entry in entries:
        _, _, port = entry.host.rpartition(":")
        if is_digits(port) and int(port) not in ports:
            ports.append(int(port))
    return ports


def format_ports_table(entries: list[PortEntry]) -> str:
    lines = [f"{'SERVICE':<22} {'HOST':<18} {'TARGET':<18} LINK", "-" * 80]
    for entry in entries:
        lines.append(
            f"{entry.service:<22} {entry.host:<18} {entry.target:<18} {entry.link or ''}".rstrip()
        )
    return "\n".join(lines)
