"""Data models for VM provisioning."""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class Secret:
    """String wrapper that never prints its value.

    Use ``reveal()`` at the single point where the plaintext must leave the
    process (a CLI argument, a file written for a service).
    """

    __slots__ = ("_value",)

    def __init__(self, value: str):
        self._value = value

    def reveal(self) -> str:
        return self._value

    def __bool__(self) -> bool:
        return bool(self._value)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Secret):
            return self._value == other._value
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._value)

    def __str__(self) -> str:
        return "********" if self._value else ""

    def __repr__(self) -> str:
        return "Secret('********')"


class AuthMode(Enum):
    """How the cloud-init user authenticates."""

    PASSWORD = "password"
    KEY = "key"
    BOTH = "both"

    @property
    def uses_password(self) -> bool:
        return self in (AuthMode.PASSWORD, AuthMode.BOTH)

    @property
    def uses_key(self) -> bool:
        return self in (AuthMode.KEY, AuthMode.BOTH)

    @property
    def label(self) -> str:
        return {
            AuthMode.PASSWORD: "Password only",
            AuthMode.KEY: "SSH key only",
            AuthMode.BOTH: "SSH key + password",
        }[self]


@dataclass
class NetworkConfig:
    """DHCP or static IPv4 for the first NIC."""

    ip: Optional[str] = None
    cidr: Optional[int] = None
    gateway: Optional[str] = None

    @classmethod
    def dhcp(cls) -> "NetworkConfig":
        return cls()

    @property
    def is_dhcp(self) -> bool:
        return self.ip is None

    @property
    def ipconfig0(self) -> str:
        if self.is_dhcp:
            return "ip=dhcp"
        return f"ip={self.ip}/{self.cidr},gw={self.gateway}"

    @property
    def description(self) -> str:
        if self.is_dhcp:
            return "DHCP"
        return f"Static ({self.ip}/{self.cidr}, gw {self.gateway})"


@dataclass
class OSImage:
    """Cloud image offered by the wizard."""

    key: str
    name: str
    url: str


@dataclass
class StoragePool:
    """One row of ``pvesm status``."""

    name: str
    type: str
    status: str = "active"
    total: int = 0
    used: int = 0
    available: int = 0


@dataclass
class VMSpec:
    """Everything needed to create one VM; exists only until handed to qm."""

    vmid: int
    name: str
    cores: int
    memory_gb: int
    disk_gb: int
    storage: str
    storage_type: str
    bridge: str
    image: OSImage
    user: str
    auth: AuthMode
    network: NetworkConfig = field(default_factory=NetworkConfig.dhcp)
    password: Secret = field(default_factory=lambda: Secret(""))
    ssh_key: str = ""
    node: str = ""
    environment: str = "dev"
    role: str = "nocodb"
    site: str = "den"
    tag_prefix: str = "palforge"

    @property
    def memory_mb(self) -> int:
        return self.memory_gb * 1024

    @property
    def disk_size(self) -> str:
        return f"{self.disk_gb}G"

    @property
    def ssh_pwauth(self) -> bool:
        return self.auth.uses_password

    @property
    def tags(self) -> List[str]:
        return [
            self.tag_prefix,
            f"env-{self.environment}",
            f"role-{self.role}",
            f"site-{self.site}",
        ]
