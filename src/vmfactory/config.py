import os
from typing import Any, Dict, List

from dotenv import load_dotenv


class Config:
    """Loads and manages configuration from environment variables."""

    load_dotenv()

    CACHE_DIR = os.getenv("VMFACTORY_CACHE_DIR", "/var/lib/pf-vmfactory/images")
    CACHE_MAX_AGE_DAYS = int(os.getenv("VMFACTORY_CACHE_MAX_AGE_DAYS", "30"))

    # Inclusive window scanned for the first free VMID
    VMID_START = int(os.getenv("VMFACTORY_VMID_START", "5000"))
    VMID_END = int(os.getenv("VMFACTORY_VMID_END", "5999"))

    NAME_PREFIX = os.getenv("VMFACTORY_NAME_PREFIX", "pfs")
    DEFAULT_SITE = os.getenv("VMFACTORY_DEFAULT_SITE", "den")
    DEFAULT_BRIDGE = os.getenv("VMFACTORY_DEFAULT_BRIDGE", "vmbr0")
    DEFAULT_USER = os.getenv("VMFACTORY_DEFAULT_USER", "pfsadmin")
    TAG_PREFIX = os.getenv("VMFACTORY_TAG_PREFIX", "palforge")
    NODES_DIR = os.getenv("VMFACTORY_NODES_DIR", "/etc/pve/nodes")
    DEFAULT_SSH_PUBKEY = os.getenv("VMFACTORY_SSH_PUBKEY", "~/.ssh/id_rsa.pub")

    DOWNLOAD_TIMEOUT = int(os.getenv("VMFACTORY_DOWNLOAD_TIMEOUT", "60"))

    NOCODB_BASE_DIR = os.getenv("NOCODB_BASE_DIR", "/opt/nocodb")
    NOCODB_DEFAULT_DOMAIN = os.getenv("NOCODB_DEFAULT_DOMAIN", "sales.palforge.it")

    SSH_USER = os.getenv("SSH_USER", "root")
    SSH_KEY_PATH = os.path.expanduser(os.getenv("SSH_KEY_PATH", "~/.ssh/id_rsa"))

    ENVIRONMENTS = ["prod", "dev", "test", "lab"]
    DEFAULT_ENVIRONMENT = "dev"

    ROLES = ["nocodb", "web", "app", "db", "util", "other"]
    DEFAULT_ROLE = "nocodb"

    # (cores, memory GB, disk GB)
    _PROFILES = {
        "prod": (4, 8, 80),
        "dev": (2, 4, 40),
        "test": (2, 2, 30),
        "lab": (2, 2, 30),
    }

    IMAGES: List[Dict[str, str]] = [
        {
            "key": "noble",
            "name": "Ubuntu 24.04 (noble)",
            "url": "https://cloud-images.ubuntu.com/noble/current/noble-server-cloudimg-amd64.img",
        },
        {
            "key": "jammy",
            "name": "Ubuntu 22.04 (jammy)",
            "url": "https://cloud-images.ubuntu.com/jammy/current/jammy-server-cloudimg-amd64.img",
        },
    ]

    @classmethod
    def profile_for(cls, environment: str) -> Dict[str, Any]:
        """Return default sizing for an environment; unknown names get dev sizing."""
        cores, mem_gb, disk_gb = cls._PROFILES.get(environment, cls._PROFILES["dev"])
        return {"cores": cores, "memory_gb": mem_gb, "disk_gb": disk_gb}

    @classmethod
    def required_commands(cls) -> List[str]:
        """External commands the VM factory shells out to."""
        return ["qm", "pvesm"]
