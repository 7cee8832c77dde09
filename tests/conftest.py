"""Shared test fixtures for vmfactory tests."""

from unittest import mock

import pytest

from fakes import FakeHypervisor, FakeRunner
from vmfactory.models import AuthMode, NetworkConfig, OSImage, Secret, VMSpec


@pytest.fixture
def fake_hypervisor() -> FakeHypervisor:
    return FakeHypervisor()


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def noble_image() -> OSImage:
    return OSImage(
        key="noble",
        name="Ubuntu 24.04 (noble)",
        url="https://cloud-images.ubuntu.com/noble/current/noble-server-cloudimg-amd64.img",
    )


@pytest.fixture
def sample_spec(noble_image) -> VMSpec:
    """VM descriptor matching the dev profile on an lvm-thin pool with DHCP."""
    return VMSpec(
        vmid=5000,
        name="pfs-dev-nocodb-den-01",
        cores=2,
        memory_gb=4,
        disk_gb=40,
        storage="local-lvm",
        storage_type="lvm-thin",
        bridge="vmbr0",
        image=noble_image,
        user="pfsadmin",
        auth=AuthMode.PASSWORD,
        network=NetworkConfig.dhcp(),
        password=Secret("s3cret!"),
        node="pve",
    )


@pytest.fixture
def fake_cache(tmp_path):
    """ImageCache stand-in that returns a fixed path without network access."""
    cache = mock.MagicMock()
    cache.resolve.return_value = tmp_path / "noble-server-cloudimg-amd64.img"
    return cache


@pytest.fixture
def temp_ssh_key(tmp_path):
    """Create temporary SSH public key for testing."""
    key_file = tmp_path / "id_rsa.pub"
    key_file.write_text("ssh-rsa AAAAB3NzaC1yc2EAAAADAQABAAABAQ test@example.com")
    return str(key_file)
