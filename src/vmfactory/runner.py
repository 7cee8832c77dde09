"""
Command execution on the local host or a remote host over SSH.

Every external tool (qm, pvesm, docker, apt-get, cloudflared) is reached
through a runner so the wizards can be exercised against fakes. Arguments may
be ``Secret`` instances: they are revealed only in the argv handed to the
process and stay masked in logs and error messages.
"""

import logging
import os
import shlex
import shutil
import subprocess
import time
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

import paramiko

from vmfactory.errors import CommandError, PreconditionError
from vmfactory.models import Secret

logger = logging.getLogger(__name__)

RECV_SIZE = 32768
POLL_INTERVAL = 0.05


def _argv(args: Sequence[Any]) -> List[str]:
    return [a.reveal() if isinstance(a, Secret) else str(a) for a in args]


def _display(args: Sequence[Any]) -> List[str]:
    return [str(a) for a in args]


@dataclass
class CommandResult:
    """Outcome of one command."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class LocalRunner:
    """Runs commands on this machine via subprocess."""

    def __init__(self, cwd: Optional[str] = None):
        self.cwd = cwd

    def run(
        self,
        args: Sequence[Any],
        check: bool = True,
        input_text: Optional[str] = None,
        cwd: Optional[str] = None,
    ) -> CommandResult:
        shown = _display(args)
        logger.debug(f"$ {' '.join(shown)}")
        try:
            proc = subprocess.run(
                _argv(args),
                capture_output=True,
                text=True,
                input=input_text,
                cwd=cwd or self.cwd,
            )
        except FileNotFoundError:
            raise CommandError(shown, 127, f"{shown[0]}: command not found")

        result = CommandResult(proc.returncode, proc.stdout, proc.stderr)
        if check and not result.ok:
            raise CommandError(shown, result.returncode, result.stderr)
        return result

    def which(self, name: str) -> bool:
        return shutil.which(name) is not None

    def is_root(self) -> bool:
        return os.geteuid() == 0

    def hostname(self) -> str:
        return os.uname().nodename

    def exists(self, path: str) -> bool:
        return os.path.exists(path)

    def listdir(self, path: str) -> List[str]:
        return sorted(os.listdir(path))

    def read_file(self, path: str) -> str:
        with open(path) as f:
            return f.read()

    def write_file(self, path: str, content: str, mode: int = 0o644) -> None:
        """Write ``content`` to a file that already has ``mode`` before any byte lands."""
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        try:
            # Existing files keep their old mode through os.open
            os.fchmod(fd, mode)
        except BaseException:
            os.close(fd)
            raise
        with os.fdopen(fd, "w") as f:
            f.write(content)

    def makedirs(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)


class SSHRunner:
    """Runs commands on a remote host via paramiko.

    Connection is opened lazily and kept for the runner's lifetime; use it as a
    context manager or call ``close()``.
    """

    def __init__(self, host: str, user: Optional[str] = None, key_path: Optional[str] = None):
        self.host = host
        self.user = user or os.getenv("SSH_USER", "root")
        self.key_path = os.path.expanduser(key_path or os.getenv("SSH_KEY_PATH", "~/.ssh/id_rsa"))
        self.cwd: Optional[str] = None
        self._ssh: Optional[paramiko.SSHClient] = None

    def __enter__(self) -> "SSHRunner":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _client(self) -> paramiko.SSHClient:
        if self._ssh is None:
            ssh = paramiko.SSHClient()
            ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            try:
                ssh.connect(hostname=self.host, username=self.user, key_filename=self.key_path)
            except (paramiko.SSHException, OSError) as e:
                ssh.close()
                raise PreconditionError(f"Cannot connect to {self.user}@{self.host}: {e}") from e
            self._ssh = ssh
        return self._ssh

    def close(self) -> None:
        if self._ssh is not None:
            self._ssh.close()
            self._ssh = None

    def run(
        self,
        args: Sequence[Any],
        check: bool = True,
        input_text: Optional[str] = None,
        cwd: Optional[str] = None,
    ) -> CommandResult:
        shown = _display(args)
        command = shlex.join(_argv(args))
        workdir = cwd or self.cwd
        if workdir:
            command = f"cd {shlex.quote(workdir)} && {command}"
        logger.debug(f"[{self.host}]$ {shlex.join(shown)}")

        stdin, stdout, stderr = self._client().exec_command(command)
        if input_text is not None:
            stdin.write(input_text)
            stdin.channel.shutdown_write()
        out, err = self._drain(stdout.channel)
        returncode = stdout.channel.recv_exit_status()

        result = CommandResult(returncode, out, err)
        if check and not result.ok:
            raise CommandError(shown, result.returncode, result.stderr)
        return result

    @staticmethod
    def _drain(channel: Any) -> Tuple[str, str]:
        """Read stdout and stderr side by side until the command exits.

        Neither stream may fill the channel window while the other is read.
        """
        out: List[bytes] = []
        err: List[bytes] = []
        while True:
            exited = channel.exit_status_ready()
            got_data = False
            if channel.recv_ready():
                out.append(channel.recv(RECV_SIZE))
                got_data = True
            if channel.recv_stderr_ready():
                err.append(channel.recv_stderr(RECV_SIZE))
                got_data = True
            if exited and not got_data:
                break
            if not got_data:
                time.sleep(POLL_INTERVAL)
        return b"".join(out).decode(errors="replace"), b"".join(err).decode(errors="replace")

    def which(self, name: str) -> bool:
        return self.run(["sh", "-c", f"command -v {shlex.quote(name)}"], check=False).ok

    def is_root(self) -> bool:
        return self.run(["id", "-u"]).stdout.strip() == "0"

    def hostname(self) -> str:
        return self.run(["hostname"]).stdout.strip()

    def exists(self, path: str) -> bool:
        return self.run(["test", "-e", path], check=False).ok

    def listdir(self, path: str) -> List[str]:
        out = self.run(["ls", "-1", path]).stdout
        return sorted(line for line in out.splitlines() if line.strip())

    def read_file(self, path: str) -> str:
        sftp = self._client().open_sftp()
        try:
            with sftp.open(path, "r") as f:
                return f.read().decode()
        finally:
            sftp.close()

    def write_file(self, path: str, content: str, mode: int = 0o644) -> None:
        self.makedirs(os.path.dirname(path) or ".")
        sftp = self._client().open_sftp()
        try:
            with sftp.open(path, "w") as f:
                f.chmod(mode)
                f.write(content)
        finally:
            sftp.close()

    def makedirs(self, path: str) -> None:
        self.run(["mkdir", "-p", path])
