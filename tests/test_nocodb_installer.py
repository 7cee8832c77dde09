"""Tests for nocodb_installer module."""

import io
from unittest import mock

import pytest
import requests
import yaml
from rich.console import Console

from fakes import FakeRunner, ScriptedPrompter
from vmfactory.errors import AbortedByUser, PreconditionError, ValidationError
from vmfactory.models import Secret
from vmfactory.compose import NocoDBSettings
from vmfactory.nocodb_installer import DAEMON_JSON, NocoDBInstaller
from vmfactory.runner import CommandResult

BASE = "/opt/nocodb"
COMPOSE = f"{BASE}/docker-compose.yml"


def settings_answers(admin="adm1n", db="db-pass", dashboard="", cloudflare="", token=None):
    answers = ["", "", "", admin, db, dashboard, cloudflare]
    if token is not None:
        answers.append(token)
    return answers


def make_installer(answers, runner=None, http=None, local=True):
    runner = runner or FakeRunner()
    runner.available.add("docker")
    if http is None:
        http = mock.MagicMock()
        http.get.return_value.status_code = 200
    installer = NocoDBInstaller(
        runner,
        ScriptedPrompter(answers),
        base_dir=BASE,
        default_domain="sales.palforge.it",
        local=local,
        http=http,
    )
    return installer, runner, http


def test_install_happy_path():
    """Test a full local install with defaults and provided passwords."""
    runner = FakeRunner({
        ("docker", "inspect"): CommandResult(0, "172.18.0.5\n", ""),
        ("docker", "compose", "ps"): CommandResult(0, "NAME  STATUS\nnocodb-nocodb  Up\n", ""),
    })
    installer, runner, http = make_installer(settings_answers() + [True], runner=runner)

    settings = installer.install()

    assert settings.domain == "sales.palforge.it"
    assert settings.generated == []
    doc = yaml.safe_load(runner.files[COMPOSE])
    assert doc["services"]["postgres"]["environment"]["POSTGRES_PASSWORD"] == "db-pass"
    assert runner.modes[COMPOSE] == 0o600
    assert f"{BASE}/data/postgres" in runner.dirs
    assert f"{BASE}/data/redis" in runner.dirs
    assert ["docker", "compose", "up", "-d"] in runner.commands
    assert http.get.call_args_list == [
        mock.call("http://172.18.0.5:8080", headers={}, timeout=10),
        mock.call("http://localhost:80", headers={"Host": "sales.palforge.it"}, timeout=10),
    ]


def test_requires_root():
    installer, runner, _ = make_installer([], runner=FakeRunner(root=False))

    with pytest.raises(PreconditionError, match="root"):
        installer.install()

    assert runner.commands == []


def test_docker_installed_when_missing():
    runner = FakeRunner()
    installer = NocoDBInstaller(runner, ScriptedPrompter([]), base_dir=BASE)

    installer.ensure_docker()

    assert runner.commands[0] == ["sh", "-c", "curl -fsSL https://get.docker.com | sh"]
    assert ["systemctl", "enable", "docker"] in runner.commands


def test_docker_present_is_left_alone():
    installer, runner, _ = make_installer([])

    installer.ensure_docker()

    assert runner.commands == []


def test_daemon_json_backed_up_and_written():
    installer, runner, _ = make_installer([])
    runner.files[DAEMON_JSON] = "{}"

    installer.configure_daemon()

    assert runner.commands[0][:2] == ["sh", "-c"]
    assert runner.commands[0][2].startswith(f"cp {DAEMON_JSON} {DAEMON_JSON}.bak.")
    assert '"min-api-version": "1.24"' in runner.files[DAEMON_JSON]
    assert runner.commands[-1] == ["systemctl", "restart", "docker"]


def test_existing_stack_declined_aborts():
    installer, runner, _ = make_installer([False])
    runner.files[COMPOSE] = "labels:\n  - rule=Host(`old.example.org`)\n"

    with pytest.raises(AbortedByUser):
        installer.check_existing_stack()


def test_existing_stack_domain_becomes_default():
    installer, runner, _ = make_installer([True])
    runner.files[COMPOSE] = 'services:\n  nocodb:\n    labels:\n      traefik.http.routers.nocodb.rule: "Host(`old.example.org`)"\n'

    assert installer.check_existing_stack() == "old.example.org"


def test_no_existing_stack_uses_configured_domain():
    installer, _, _ = make_installer([])

    assert installer.check_existing_stack() == "sales.palforge.it"


def test_blank_passwords_are_generated():
    installer, _, _ = make_installer(settings_answers(admin="", db=""))

    settings = installer.collect_settings("sales.palforge.it")

    assert settings.generated == ["admin", "db"]
    assert len(settings.admin_password.reveal()) >= 16
    assert len(settings.db_password.reveal()) >= 24
    assert settings.admin_password != settings.db_password


def test_generated_passwords_not_logged(caplog):
    installer, _, _ = make_installer(settings_answers(admin="", db=""))

    with caplog.at_level("DEBUG"):
        settings = installer.collect_settings("sales.palforge.it")

    assert settings.admin_password.reveal() not in caplog.text
    assert settings.db_password.reveal() not in caplog.text


@pytest.mark.parametrize("port", ["0", "70000", "http"])
def test_invalid_port(port):
    installer, _, _ = make_installer(["", port])

    with pytest.raises(ValidationError, match="HTTP port"):
        installer.collect_settings("sales.palforge.it")


def test_invalid_email():
    installer, _, _ = make_installer(["", "", "not-an-email"])

    with pytest.raises(ValidationError, match="Admin email"):
        installer.collect_settings("sales.palforge.it")


def test_summary_masks_secrets():
    installer, _, _ = make_installer([])
    settings = NocoDBSettings("x.example.org", Secret("adm1n"), Secret("db-pass"))

    installer.show_summary(settings)

    console = Console(file=io.StringIO(), width=120)
    console.print(installer.prompter.output[-1])
    rendered = console.file.getvalue()
    assert "adm1n" not in rendered
    assert "db-pass" not in rendered
    assert "********" in rendered


def test_declining_final_confirmation_writes_nothing():
    installer, runner, _ = make_installer(settings_answers() + [""])

    with pytest.raises(AbortedByUser):
        installer.install()

    assert COMPOSE not in runner.files
    assert not any(cmd[:2] == ["docker", "compose"] for cmd in runner.commands)


def test_cloudflare_installed_with_token():
    installer, runner, _ = make_installer([])
    token = Secret("tok-123")

    installer.setup_cloudflare(token)

    assert ["apt-get", "install", "-y", "cloudflared"] in runner.commands
    install = next(cmd for cmd in runner.commands if cmd[:3] == ["cloudflared", "service", "install"])
    assert install[3] is token
    assert "/etc/apt/sources.list.d/cloudflared.list" in runner.files


def test_cloudflare_without_token_skips_service(caplog):
    installer, runner, _ = make_installer([])
    runner.available.add("cloudflared")

    installer.setup_cloudflare(Secret(""))

    assert runner.commands == []
    assert "no token provided" in caplog.text


def test_install_with_cloudflare_prompts_for_token():
    installer, runner, _ = make_installer(settings_answers(cloudflare=True, token="tok-123") + [True])
    runner.available.add("cloudflared")

    settings = installer.install()

    assert settings.cloudflare is True
    assert settings.cloudflare_token.reveal() == "tok-123"
    assert any(cmd[:3] == ["cloudflared", "service", "install"] for cmd in runner.commands)


def test_health_checks_are_non_fatal():
    http = mock.MagicMock()
    http.get.side_effect = requests.ConnectionError("refused")
    installer, _, _ = make_installer([], http=http, local=False)
    settings = NocoDBSettings("x.example.org", Secret("a"), Secret("b"), http_port=8088)

    results = installer.health_checks(settings)

    assert results == {"direct": None, "traefik": False}
    http.get.assert_called_once_with("http://localhost:8088", headers={"Host": "x.example.org"}, timeout=10)


def test_health_check_non_2xx():
    http = mock.MagicMock()
    http.get.return_value.status_code = 502
    runner = FakeRunner({("docker", "inspect"): CommandResult(1, "", "No such object")})
    installer, _, _ = make_installer([], runner=runner, http=http)
    settings = NocoDBSettings("x.example.org", Secret("a"), Secret("b"))

    assert installer.health_checks(settings) == {"direct": None, "traefik": False}
