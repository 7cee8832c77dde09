"""Exception types shared by the VM factory and the NocoDB installer."""

from typing import List, Optional


class VMFactoryError(Exception):
    """Base class for every fatal error the wizards report."""


class PreconditionError(VMFactoryError):
    """Required privilege, command or host is missing."""


class ValidationError(VMFactoryError):
    """Operator input rejected for a named field."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(message)


class CommandError(VMFactoryError):
    """External command exited non-zero."""

    def __init__(self, cmd: List[str], returncode: int, stderr: str = ""):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip() or f"exit status {returncode}"
        super().__init__(f"Command failed: {' '.join(cmd)}: {detail}")


class DownloadError(VMFactoryError):
    """Image transfer failed."""

    def __init__(self, url: str, reason: Optional[str] = None):
        self.url = url
        super().__init__(f"Image download failed: {url}" + (f" ({reason})" if reason else ""))


class VMIDExhaustedError(VMFactoryError):
    """Every VMID in the selection window is taken."""

    def __init__(self, start: int, end: int):
        self.start = start
        self.end = end
        super().__init__(
            f"No free VMID found between {start} and {end}. Please free one or expand the range."
        )


class AbortedByUser(VMFactoryError):
    """Operator declined a confirmation prompt."""
