"""Error types shared across fracta.

Fatal errors derive from FractaError and propagate to the invoking
operation. Rewrite problems that only affect one entry are reported as
warning strings instead (see compose.RewriteResult).
"""

from typing import Optional


class FractaError(RuntimeError):
    pass


class ParseFailure(FractaError):
    """The service document is unparseable or not a mapping."""


class AllocationExhausted(FractaError):
    pass


class LedgerConflict(FractaError):
    def __init__(self, port: int, owner: str, requester: Optional[str] = None):
        self.port = port
        self.owner = owner
        self.requester = requester
        super().__init__(f"Local port {port} is already in use by instance '{owner}'")


class InstanceNotFound(FractaError):
    pass


class StateError(FractaError):
    pass


class ConfigError(FractaError):
    pass


class HookFailed(FractaError):
    pass


class CommandFailed(FractaError):
    def __init__(self, cmd: list[str], code: int, stderr: str = ""):
        self.cmd = cmd
        self.code = code
        self.stderr = stderr
        what = " ".join(cmd[:3])
        detail = stderr.strip()
        msg = f"{what} failed (exit {code})"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)
