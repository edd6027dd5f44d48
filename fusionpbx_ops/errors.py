"""Exceptions raised by fusionpbx_ops operations.

The CLI turns any OpsError into a logged error and a non-zero exit code.
"""

from typing import Optional, Sequence


class OpsError(Exception):
    """Base class for operational failures that should abort the current command."""

    exit_code = 1


class PreconditionError(OpsError):
    """Environment is not fit to run the operation (not root, docker missing, container down)."""


class CommandError(OpsError):
    """An external command exited non-zero or could not be started."""

    def __init__(
        self,
        message: str,
        args: Optional[Sequence[str]] = None,
        returncode: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
    ):
        super().__init__(message)
        self.cmd = list(args or [])
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    def __str__(self) -> str:
        base = super().__str__()
        detail = (self.stderr or self.stdout or "").strip()
        if detail:
            # keep the last line; docker/psql put the useful part there
            return f"{base}: {detail.splitlines()[-1]}"
        return base


class HealthCheckTimeout(OpsError):
    """A container did not report healthy within its fixed attempt budget."""

    def __init__(self, container: str, attempts: int, last_status: Optional[str] = None):
        super().__init__(
            f"Container {container} did not become healthy after {attempts} attempts"
            + (f" (last status: {last_status})" if last_status else "")
        )
        self.container = container
        self.attempts = attempts
        self.last_status = last_status


class DatabaseError(OpsError):
    """Database unreachable or a query failed."""


class BackupError(OpsError):
    """Backup archive missing, malformed or could not be written."""
