"""Local port allocation.

Two strategies:

* offset blocks: every non-main instance gets one of nine blocks
  (1000, 2000, ... 9000) added to each published host port of the overlay;
* reserved range: per-forward tunnels/proxies take the lowest free port of a
  small fixed range (1080-1099 by default).

Both only inspect the used set; recording the choice is the caller's job.
"""

import hashlib
import logging
from collections.abc import Collection, Container
from typing import Optional

from .errors import AllocationExhausted, LedgerConflict

log = logging.getLogger("fracta")

MAIN_INSTANCE = "main"
OFFSET_STEP = 1000
OFFSET_BLOCKS = tuple(i * OFFSET_STEP for i in range(1, 10))

PROXY_PORT_START = 1080
PROXY_PORT_END = 1099


def calculate_port_offset(name: str) -> int:
    """Hashed starting block for ``name``; ``main`` and ``""`` map to 0.

    Stable across runs and interpreters (no ``hash()``, which is salted).
    """
    if name == MAIN_INSTANCE or not name:
        return 0
    digest = hashlib.sha256(name.encode("utf-8")).digest()
    index = int.from_bytes(digest[:8], "big") % len(OFFSET_BLOCKS)
    return OFFSET_BLOCKS[index]


def choose_port_offset(name: str, used_offsets: Container[int]) -> int:
    """First free block, probing cyclically from the hashed one.

    With all nine blocks taken the hashed block is returned anyway: the
    overlay then collides with a sibling, which caps fracta at nine
    concurrent non-main instances in offset mode.
    """
    base = calculate_port_offset(name)
    if base == 0:
        return 0

    start = OFFSET_BLOCKS.index(base)
    for i in range(len(OFFSET_BLOCKS)):
        candidate = OFFSET_BLOCKS[(start + i) % len(OFFSET_BLOCKS)]
        if candidate not in used_offsets:
            return candidate

    log.warning(
        f"All {len(OFFSET_BLOCKS)} port offset blocks are in use; "
        f"'{name}' shares offset {base} with another instance"
    )
    return base


def find_available_port(
    used_ports: Collection[int],
    start: int = PROXY_PORT_START,
    end: int = PROXY_PORT_END,
) -> int:
    for port in range(start, end + 1):
        if port not in used_ports:
            return port
    raise AllocationExhausted(f"No available proxy ports in range {start}-{end}")


def allocate_local_port(
    ledger: dict[int, str],
    instance: str,
    requested: Optional[int] = None,
    start: int = PROXY_PORT_START,
    end: int = PROXY_PORT_END,
) -> int:
    """Honor an explicit port unless something already holds it, else auto-pick."""
    if requested:
        if not 0 < requested <= 65535:
            raise ValueError(f"Invalid port: {requested}")
        owner = ledger.get(requested)
        if owner is not None:
            raise LedgerConflict(requested, owner, instance)
        return requested
    return find_available_port(ledger, start, end)
