"""Tests for runner module."""

import os
import stat
import subprocess
from unittest import mock

import paramiko
import pytest

from vmfactory.errors import CommandError, PreconditionError
from vmfactory.models import Secret
from vmfactory.runner import CommandResult, LocalRunner, SSHRunner


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


@mock.patch("vmfactory.runner.subprocess.run")
def test_local_run_success(mock_run):
    mock_run.return_value = completed(0, "status: running\n")

    result = LocalRunner().run(["qm", "status", 100])

    mock_run.assert_called_once_with(
        ["qm", "status", "100"], capture_output=True, text=True, input=None, cwd=None
    )
    assert result == CommandResult(0, "status: running\n", "")
    assert result.ok


@mock.patch("vmfactory.runner.subprocess.run")
def test_local_run_failure_raises(mock_run):
    mock_run.return_value = completed(2, "", "Configuration file 'nodes/pve/qemu-server/101.conf' does not exist\n")

    with pytest.raises(CommandError) as exc:
        LocalRunner().run(["qm", "status", "101"])

    assert exc.value.returncode == 2
    assert "does not exist" in str(exc.value)


@mock.patch("vmfactory.runner.subprocess.run")
def test_local_run_unchecked_returns_result(mock_run):
    mock_run.return_value = completed(1)

    result = LocalRunner().run(["false"], check=False)

    assert not result.ok


@mock.patch("vmfactory.runner.subprocess.run", side_effect=FileNotFoundError())
def test_local_run_missing_binary(mock_run):
    with pytest.raises(CommandError, match="qm: command not found") as exc:
        LocalRunner().run(["qm", "list"])

    assert exc.value.returncode == 127


@mock.patch("vmfactory.runner.subprocess.run")
def test_secret_revealed_to_process_but_masked_in_errors(mock_run, caplog):
    mock_run.return_value = completed(255, "", "bad option")

    with caplog.at_level("DEBUG"), pytest.raises(CommandError) as exc:
        LocalRunner().run(["qm", "set", "5000", "--cipassword", Secret("hunter2")])

    assert mock_run.call_args.args[0][-1] == "hunter2"
    assert "hunter2" not in str(exc.value)
    assert "********" in str(exc.value)
    assert "hunter2" not in caplog.text


@mock.patch("vmfactory.runner.subprocess.run")
def test_local_run_cwd(mock_run):
    mock_run.return_value = completed()

    LocalRunner(cwd="/opt").run(["docker", "compose", "ps"])
    LocalRunner(cwd="/opt").run(["docker", "compose", "ps"], cwd="/opt/nocodb")

    assert [c.kwargs["cwd"] for c in mock_run.call_args_list] == ["/opt", "/opt/nocodb"]


def test_local_file_helpers(tmp_path):
    runner = LocalRunner()
    target = tmp_path / "sub" / "docker-compose.yml"

    runner.write_file(str(target), "services: {}\n", mode=0o600)

    assert runner.exists(str(target))
    assert runner.read_file(str(target)) == "services: {}\n"
    assert target.stat().st_mode & 0o777 == 0o600
    assert runner.listdir(str(tmp_path)) == ["sub"]


class FakeChannel:
    """paramiko Channel stand-in serving queued stdout/stderr chunks."""

    def __init__(self, stdout=(), stderr=(), status=0, polls_before_exit=0):
        self.stdout = list(stdout)
        self.stderr = list(stderr)
        self.status = status
        self.polls_before_exit = polls_before_exit

    def exit_status_ready(self):
        if self.polls_before_exit:
            self.polls_before_exit -= 1
            return False
        return True

    def recv_ready(self):
        return bool(self.stdout)

    def recv(self, size):
        return self.stdout.pop(0)

    def recv_stderr_ready(self):
        return bool(self.stderr)

    def recv_stderr(self, size):
        return self.stderr.pop(0)

    def recv_exit_status(self):
        return self.status


def ssh_channel(stdout=b"", stderr=b"", status=0):
    """Build the (stdin, stdout, stderr) triple paramiko's exec_command returns."""
    channel = FakeChannel([stdout] if stdout else [], [stderr] if stderr else [], status)
    out = mock.MagicMock()
    out.channel = channel
    return mock.MagicMock(), out, mock.MagicMock()


@mock.patch("vmfactory.runner.paramiko.SSHClient")
def test_ssh_run_quotes_and_connects_once(mock_ssh_class):
    client = mock_ssh_class.return_value
    client.exec_command.side_effect = [ssh_channel(b"0\n"), ssh_channel(b"nocodb-vm\n")]
    runner = SSHRunner("192.168.4.50", "pfsadmin", "/tmp/id_test")

    assert runner.is_root() is True
    assert runner.hostname() == "nocodb-vm"

    client.connect.assert_called_once_with(hostname="192.168.4.50", username="pfsadmin", key_filename="/tmp/id_test")
    assert [c.args[0] for c in client.exec_command.call_args_list] == ["id -u", "hostname"]


@mock.patch("vmfactory.runner.paramiko.SSHClient")
def test_ssh_run_with_cwd_and_secret(mock_ssh_class):
    client = mock_ssh_class.return_value
    client.exec_command.return_value = ssh_channel()
    runner = SSHRunner("vm", "root", "/tmp/key")

    runner.run(["cloudflared", "service", "install", Secret("tok 1")], cwd="/opt/nocodb")

    command = client.exec_command.call_args.args[0]
    assert command == "cd /opt/nocodb && cloudflared service install 'tok 1'"


@mock.patch("vmfactory.runner.paramiko.SSHClient")
def test_ssh_run_failure(mock_ssh_class):
    client = mock_ssh_class.return_value
    client.exec_command.return_value = ssh_channel(stderr=b"E: Unable to locate package\n", status=100)

    with pytest.raises(CommandError, match="Unable to locate package"):
        SSHRunner("vm", "root", "/tmp/key").run(["apt-get", "install", "-y", "nope"])


@mock.patch("vmfactory.runner.paramiko.SSHClient")
def test_ssh_exists_and_which(mock_ssh_class):
    client = mock_ssh_class.return_value
    client.exec_command.side_effect = [ssh_channel(status=1), ssh_channel(b"/usr/bin/docker\n")]
    runner = SSHRunner("vm", "root", "/tmp/key")

    assert runner.exists("/opt/nocodb/docker-compose.yml") is False
    assert runner.which("docker") is True


@mock.patch("vmfactory.runner.paramiko.SSHClient")
def test_ssh_write_file_uses_sftp(mock_ssh_class):
    client = mock_ssh_class.return_value
    client.exec_command.return_value = ssh_channel()
    sftp = client.open_sftp.return_value

    with SSHRunner("vm", "root", "/tmp/key") as runner:
        runner.write_file("/opt/nocodb/docker-compose.yml", "services: {}\n", mode=0o600)

    client.exec_command.assert_called_once_with("mkdir -p /opt/nocodb")
    sftp.open.assert_called_once_with("/opt/nocodb/docker-compose.yml", "w")
    handle = sftp.open.return_value.__enter__.return_value
    assert handle.method_calls == [mock.call.chmod(0o600), mock.call.write("services: {}\n")]
    client.close.assert_called_once_with()


def test_local_write_file_mode_set_before_content(tmp_path):
    """Test a secrets file is never readable with a wider mode, even briefly."""
    target = tmp_path / "docker-compose.yml"
    real_fdopen = os.fdopen
    modes_at_write = []

    def spy_fdopen(fd, *args, **kwargs):
        modes_at_write.append((stat.S_IMODE(os.fstat(fd).st_mode), target.read_text()))
        return real_fdopen(fd, *args, **kwargs)

    with mock.patch("vmfactory.runner.os.fdopen", side_effect=spy_fdopen):
        LocalRunner().write_file(str(target), "POSTGRES_PASSWORD: hunter2\n", mode=0o600)

    assert modes_at_write == [(0o600, "")]
    assert target.read_text() == "POSTGRES_PASSWORD: hunter2\n"


def test_local_write_file_tightens_existing_file(tmp_path):
    target = tmp_path / "docker-compose.yml"
    target.write_text("old")
    target.chmod(0o644)

    LocalRunner().write_file(str(target), "new", mode=0o600)

    assert stat.S_IMODE(target.stat().st_mode) == 0o600
    assert target.read_text() == "new"


@mock.patch("vmfactory.runner.time.sleep")
@mock.patch("vmfactory.runner.paramiko.SSHClient")
def test_ssh_run_reads_stdout_and_stderr_together(mock_ssh_class, mock_sleep):
    channel = FakeChannel(
        stdout=[b"Reading package lists...\n", b"Done\n"],
        stderr=[b"W: warning one\n", b"W: warning two\n", b"W: warning three\n"],
        polls_before_exit=6,
    )
    out = mock.MagicMock()
    out.channel = channel
    client = mock_ssh_class.return_value
    client.exec_command.return_value = (mock.MagicMock(), out, mock.MagicMock())

    result = SSHRunner("vm", "root", "/tmp/key").run(["apt-get", "update", "-y"])

    assert result.stdout == "Reading package lists...\nDone\n"
    assert result.stderr == "W: warning one\nW: warning two\nW: warning three\n"
    assert mock_sleep.called


@mock.patch("vmfactory.runner.paramiko.SSHClient")
def test_ssh_connect_failure_is_precondition_error(mock_ssh_class):
    client = mock_ssh_class.return_value
    client.connect.side_effect = paramiko.ssh_exception.NoValidConnectionsError(
        {("192.168.4.50", 22): ConnectionRefusedError(111, "Connection refused")}
    )

    with pytest.raises(PreconditionError, match="Cannot connect to pfsadmin@192.168.4.50"):
        SSHRunner("192.168.4.50", "pfsadmin", "/tmp/key").run(["id", "-u"])

    client.exec_command.assert_not_called()


@mock.patch("vmfactory.runner.paramiko.SSHClient")
def test_ssh_auth_failure_is_precondition_error(mock_ssh_class):
    mock_ssh_class.return_value.connect.side_effect = paramiko.AuthenticationException("Authentication failed.")

    with pytest.raises(PreconditionError, match="Authentication failed"):
        SSHRunner("vm", "root", "/tmp/key").is_root()
