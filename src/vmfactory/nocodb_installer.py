#!/usr/bin/env python3
"""
NocoDB + Traefik installer for a freshly provisioned Ubuntu VM.

Steps, in order:
- base packages and Docker Engine (installed only when missing)
- Docker daemon.json with a pinned min-api-version and log rotation
- detection of an existing stack and overwrite confirmation
- settings collection, docker-compose.yml, data directories
- optional Cloudflare Tunnel
- compose up and best-effort HTTP health checks

Works on the local machine or, through an SSH runner, on a remote VM.
"""

import json
import logging
import os
import secrets
from typing import Any, Dict, List, Optional

import requests
from rich.table import Table

from vmfactory.collector import Prompter
from vmfactory.compose import NocoDBSettings, detect_domain, render_compose
from vmfactory.errors import AbortedByUser, PreconditionError
from vmfactory.models import Secret
from vmfactory import validators

logger = logging.getLogger(__name__)

BASE_PACKAGES = ["ca-certificates", "curl", "gnupg", "lsb-release", "jq"]
DAEMON_JSON = "/etc/docker/daemon.json"
DAEMON_SETTINGS: Dict[str, Any] = {
    "min-api-version": "1.24",
    "log-driver": "json-file",
    "log-opts": {"max-size": "10m", "max-file": "3"},
}
CLOUDFLARE_KEYRING = "/usr/share/keyrings/cloudflare-public-v2.gpg"
CLOUDFLARE_SOURCE = (
    f"deb [signed-by={CLOUDFLARE_KEYRING}] https://pkg.cloudflare.com/cloudflared any main"
)


class NocoDBInstaller:
    """Installs the NocoDB Docker Compose stack through a runner."""

    def __init__(
        self,
        runner: Any,
        prompter: Prompter,
        base_dir: str = "/opt/nocodb",
        default_domain: str = "sales.palforge.it",
        http_host: str = "localhost",
        local: bool = True,
        http: Any = requests,
    ):
        self.runner = runner
        self.prompter = prompter
        self.base_dir = base_dir
        self.default_domain = default_domain
        self.http_host = http_host
        self.local = local
        self.http = http

    @property
    def compose_path(self) -> str:
        return os.path.join(self.base_dir, "docker-compose.yml")

    def install(self) -> NocoDBSettings:
        """Run every step; returns the settings the stack was started with."""
        self.check_preconditions()
        self.runner.makedirs(self.base_dir)
        logger.info(f"Working directory: {self.base_dir}")

        self.install_base_packages()
        self.ensure_docker()
        self.configure_daemon()

        default_domain = self.check_existing_stack()
        settings = self.collect_settings(default_domain)
        self.show_summary(settings)
        if not self.prompter.confirm("Proceed with writing docker-compose.yml and starting stack?", False):
            raise AbortedByUser("Aborting by user choice.")

        self.write_stack(settings)
        if settings.cloudflare:
            self.setup_cloudflare(settings.cloudflare_token)
        else:
            logger.info("Cloudflare Tunnel installation skipped.")

        self.start_stack()
        self.health_checks(settings)
        return settings

    def check_preconditions(self) -> None:
        if not self.runner.is_root():
            raise PreconditionError("This installer must be run as root (or via sudo).")

    def install_base_packages(self) -> None:
        logger.info(f"Ensuring base dependencies ({', '.join(BASE_PACKAGES)})...")
        self.runner.run(["apt-get", "update", "-y"])
        self.runner.run(["apt-get", "install", "-y"] + BASE_PACKAGES)

    def ensure_docker(self) -> None:
        if self.runner.which("docker"):
            logger.info("Docker is already installed.")
            return
        logger.info("Docker not found. Installing Docker via get.docker.com...")
        self.runner.run(["sh", "-c", "curl -fsSL https://get.docker.com | sh"])
        self.runner.run(["systemctl", "enable", "docker"])
        self.runner.run(["systemctl", "restart", "docker"])
        logger.info("Docker installed successfully.")

    def configure_daemon(self) -> None:
        """Write daemon.json (keeping a timestamped backup) and restart Docker."""
        logger.info("Configuring Docker daemon JSON for min-api-version compatibility...")
        if self.runner.exists(DAEMON_JSON):
            self.runner.run(["sh", "-c", f"cp {DAEMON_JSON} {DAEMON_JSON}.bak.$(date +%s)"], check=False)
        self.runner.write_file(DAEMON_JSON, json.dumps(DAEMON_SETTINGS, indent=2) + "\n")
        logger.info("Restarting Docker to apply daemon.json...")
        self.runner.run(["systemctl", "restart", "docker"])

    def check_existing_stack(self) -> str:
        """Return the default domain; asks before touching an existing stack."""
        if not self.runner.exists(self.compose_path):
            return self.default_domain

        existing = detect_domain(self.runner.read_file(self.compose_path))
        logger.warning(f"Existing docker-compose.yml detected in {self.base_dir}.")
        self.prompter.say(f"Current configured domain (if detected): {existing or '<none>'}")
        if not self.prompter.confirm("Do you want to overwrite and recreate the stack?", False):
            raise AbortedByUser("Aborting: existing stack left untouched.")
        return existing or self.default_domain

    def collect_settings(self, default_domain: str) -> NocoDBSettings:
        ask = self.prompter.ask
        domain = ask("Enter the domain for NocoDB", default_domain)
        http_port = validators.require_port(ask("External HTTP port for Traefik", "80"), "HTTP port")
        admin_email = validators.require_email(ask("Enter NocoDB admin email", "admin@example.com"), "Admin email")

        generated: List[str] = []
        admin_password = self.prompter.secret("Enter NocoDB admin password (leave blank to auto-generate)")
        if not admin_password:
            admin_password = secrets.token_urlsafe(16)
            generated.append("admin")
            logger.info("Generated random NocoDB admin password")
        db_password = self.prompter.secret("Enter Postgres password for 'nocodb' user (leave blank to auto-generate)")
        if not db_password:
            db_password = secrets.token_urlsafe(24)
            generated.append("db")
            logger.info("Generated random Postgres password")

        expose_dashboard = self.prompter.confirm("Expose Traefik dashboard on port 8080?", False)
        cloudflare = self.prompter.confirm(
            "Do you want to install and configure a Cloudflare Tunnel for this instance?", False
        )
        token = ""
        if cloudflare:
            token = self.prompter.secret("Enter your Cloudflare Tunnel token (from Cloudflare dashboard)")

        return NocoDBSettings(
            domain=domain,
            admin_password=Secret(admin_password),
            db_password=Secret(db_password),
            http_port=http_port,
            admin_email=admin_email,
            expose_dashboard=expose_dashboard,
            cloudflare=cloudflare,
            cloudflare_token=Secret(token),
            generated=generated,
        )

    def show_summary(self, settings: NocoDBSettings) -> None:
        table = Table(title="Summary")
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")
        table.add_row("Domain", settings.domain)
        table.add_row("Public URL", settings.public_url)
        table.add_row("HTTP Port", str(settings.http_port))
        table.add_row("NocoDB Admin Email", settings.admin_email)
        table.add_row("NocoDB Admin Pass", str(settings.admin_password))
        table.add_row("DB Password", str(settings.db_password))
        table.add_row("Traefik Dashboard", "yes" if settings.expose_dashboard else "no")
        table.add_row("Cloudflare Tunnel", "yes" if settings.cloudflare else "no")
        self.prompter.say(table)

    def write_stack(self, settings: NocoDBSettings) -> None:
        logger.info(f"Writing docker-compose stack to {self.compose_path}...")
        # Holds plaintext secrets
        self.runner.write_file(self.compose_path, render_compose(settings), mode=0o600)
        logger.info("Ensuring data directories exist...")
        for sub in ("data/postgres", "data/redis"):
            self.runner.makedirs(os.path.join(self.base_dir, sub))

    def setup_cloudflare(self, token: Secret) -> None:
        if not self.runner.which("cloudflared"):
            logger.info("Installing Cloudflare Tunnel (cloudflared)...")
            self.runner.makedirs(os.path.dirname(CLOUDFLARE_KEYRING))
            self.runner.run(
                ["sh", "-c", f"curl -fsSL https://pkg.cloudflare.com/cloudflare-public-v2.gpg > {CLOUDFLARE_KEYRING}"]
            )
            self.runner.write_file("/etc/apt/sources.list.d/cloudflared.list", CLOUDFLARE_SOURCE + "\n")
            self.runner.run(["apt-get", "update", "-y"])
            self.runner.run(["apt-get", "install", "-y", "cloudflared"])
        else:
            logger.info("cloudflared already installed, skipping install.")

        if not token:
            logger.warning("Cloudflare selected but no token provided. Skipping tunnel configuration.")
            return

        logger.info("Installing Cloudflare Tunnel service with provided token...")
        self.runner.run(["cloudflared", "service", "install", token])
        self.runner.run(["systemctl", "enable", "cloudflared"], check=False)
        self.runner.run(["systemctl", "restart", "cloudflared"], check=False)

    def start_stack(self) -> None:
        logger.info("Bringing NocoDB stack up with Docker Compose...")
        self.runner.run(["docker", "compose", "down"], check=False, cwd=self.base_dir)
        self.runner.run(["docker", "compose", "up", "-d"], cwd=self.base_dir)
        status = self.runner.run(["docker", "compose", "ps"], check=False, cwd=self.base_dir)
        self.prompter.say(status.stdout.rstrip())

    def container_ip(self, name: str = "nocodb-nocodb") -> Optional[str]:
        result = self.runner.run(
            ["docker", "inspect", "-f", "{{range .NetworkSettings.Networks}}{{.IPAddress}}{{end}}", name],
            check=False,
        )
        ip = result.stdout.strip()
        return ip if result.ok and ip else None

    def _http_ok(self, url: str, headers: Optional[Dict[str, str]] = None) -> bool:
        try:
            response = self.http.get(url, headers=headers or {}, timeout=10)
        except requests.RequestException as e:
            logger.debug(f"GET {url} failed: {e}")
            return False
        return 200 <= response.status_code < 300

    def health_checks(self, settings: NocoDBSettings) -> Dict[str, Optional[bool]]:
        """Non-fatal checks; failures only produce warnings."""
        results: Dict[str, Optional[bool]] = {"direct": None, "traefik": None}

        if self.local:
            ip = self.container_ip()
            if ip:
                logger.info(f"Testing direct NocoDB container HTTP ({ip})...")
                results["direct"] = self._http_ok(f"http://{ip}:8080")
                if not results["direct"]:
                    logger.warning("Direct NocoDB HTTP check failed (container might still be starting).")

        url = f"http://{self.http_host}:{settings.http_port}"
        logger.info(f"Testing Traefik routing for Host: {settings.domain}...")
        results["traefik"] = self._http_ok(url, headers={"Host": settings.domain})
        if results["traefik"]:
            logger.info(f"Traefik routing appears OK for Host: {settings.domain}.")
        else:
            logger.warning(
                f"Traefik returned a non-2xx for Host: {settings.domain}. "
                "Check 'docker logs nocodb-traefik --tail=100' and 'docker logs nocodb-nocodb --tail=100'."
            )
        return results
