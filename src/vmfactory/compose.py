"""
Docker Compose definition for the NocoDB stack.

The stack is described by ``NocoDBSettings`` and serialized with PyYAML, so
hostnames and passwords are always quoted correctly no matter what characters
they contain.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from vmfactory.models import Secret

NETWORK = "nocodb-net"
ROUTER_RULE_LABEL = "traefik.http.routers.nocodb.rule"

_HOST_RULE_RE = re.compile(r"Host\(`([^`]+)`\)")


@dataclass
class NocoDBSettings:
    """Operator choices for one NocoDB installation."""

    domain: str
    admin_password: Secret
    db_password: Secret
    http_port: int = 80
    admin_email: str = "admin@example.com"
    expose_dashboard: bool = False
    cloudflare: bool = False
    cloudflare_token: Secret = field(default_factory=lambda: Secret(""))
    generated: List[str] = field(default_factory=list)

    @property
    def public_url(self) -> str:
        return f"https://{self.domain}"


def build_compose(settings: NocoDBSettings) -> Dict[str, Any]:
    """Return the compose document as plain data."""
    traefik_ports = [f"{settings.http_port}:80"]
    traefik_command = [
        "--providers.docker=true",
        "--providers.docker.exposedByDefault=false",
        "--entrypoints.web.address=:80",
    ]
    if settings.expose_dashboard:
        traefik_ports.append("8080:8080")
        traefik_command = ["--api.dashboard=true", "--api.insecure=true"] + traefik_command

    db_password = settings.db_password.reveal()

    return {
        "services": {
            "traefik": {
                "image": "traefik:v3.1",
                "container_name": "nocodb-traefik",
                "command": traefik_command,
                "ports": traefik_ports,
                "volumes": ["/var/run/docker.sock:/var/run/docker.sock:ro"],
                "networks": [NETWORK],
                "restart": "unless-stopped",
            },
            "postgres": {
                "image": "postgres:16-alpine",
                "container_name": "nocodb-postgres",
                "environment": {
                    "POSTGRES_DB": "nocodb",
                    "POSTGRES_USER": "nocodb",
                    "POSTGRES_PASSWORD": db_password,
                },
                "volumes": ["./data/postgres:/var/lib/postgresql/data"],
                "networks": [NETWORK],
                "restart": "unless-stopped",
            },
            "redis": {
                "image": "redis:7-alpine",
                "container_name": "nocodb-redis",
                "command": ["redis-server", "--appendonly", "yes"],
                "volumes": ["./data/redis:/data"],
                "networks": [NETWORK],
                "restart": "unless-stopped",
            },
            "nocodb": {
                "image": "nocodb/nocodb:latest",
                "container_name": "nocodb-nocodb",
                "depends_on": ["postgres", "redis"],
                "environment": {
                    "NC_DB": "pg",
                    "NC_DB_HOST": "postgres",
                    "NC_DB_PORT": "5432",
                    "NC_DB_USER": "nocodb",
                    "NC_DB_PASSWORD": db_password,
                    "NC_DB_NAME": "nocodb",
                    "NC_REDIS_URL": "redis://nocodb-redis:6379",
                    "NC_PUBLIC_URL": settings.public_url,
                    "NC_ADMIN_EMAIL": settings.admin_email,
                    "NC_ADMIN_PASSWORD": settings.admin_password.reveal(),
                },
                "labels": {
                    "traefik.enable": "true",
                    ROUTER_RULE_LABEL: f"Host(`{settings.domain}`)",
                    "traefik.http.routers.nocodb.entrypoints": "web",
                    "traefik.http.routers.nocodb.service": "nocodb-svc",
                    "traefik.http.services.nocodb-svc.loadbalancer.server.port": "8080",
                },
                "networks": [NETWORK],
                "restart": "unless-stopped",
            },
        },
        "networks": {NETWORK: {"driver": "bridge"}},
    }


def render_compose(settings: NocoDBSettings) -> str:
    return yaml.safe_dump(build_compose(settings), sort_keys=False, default_flow_style=False)


def detect_domain(compose_text: str) -> Optional[str]:
    """
    Find the domain of an existing stack from its Traefik router rule.

    Handles both mapping- and list-style labels, and falls back to a plain text
    search for files that are not valid YAML.
    """
    try:
        doc = yaml.safe_load(compose_text)
    except yaml.YAMLError:
        doc = None

    services = doc.get("services") if isinstance(doc, dict) else None
    if isinstance(services, dict):
        service = services.get("nocodb") or {}
        labels = (service.get("labels") or {}) if isinstance(service, dict) else {}
        rule = None
        if isinstance(labels, dict):
            rule = labels.get(ROUTER_RULE_LABEL)
        elif isinstance(labels, list):
            for label in labels:
                key, _, value = str(label).partition("=")
                if key == ROUTER_RULE_LABEL:
                    rule = value
                    break
        if rule:
            match = _HOST_RULE_RE.search(str(rule))
            if match:
                return match.group(1)

    match = _HOST_RULE_RE.search(compose_text)
    return match.group(1) if match else None
