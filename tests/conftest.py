import copy
from pathlib import Path

import pytest
import yaml

from garm_provider_incus.builder import InstanceArgsBuilder
from garm_provider_incus.config import ProviderConfig
from garm_provider_incus.images import ImageResolver
from garm_provider_incus.memory import InMemoryServer
from garm_provider_incus.models import (
    BootstrapInstance,
    Image,
    InstanceFull,
    InstanceState,
    NetworkAddress,
    RunnerApplicationDownload,
)
from garm_provider_incus.provider import IncusProvider

DATA_DIR = Path(__file__).resolve().parent / "data"

CONTROLLER_ID = "9c0a6b3e-0e6a-4c55-8f4c-1f1f6d3b7c01"
POOL_ID = "c2f0e1c4-4b4e-4d0d-a1a7-2d5a9f2d6e10"


# ============================================================
# YAML data provider
# ============================================================

def load_yaml_cases(path: str):
    full = Path(path)
    if not full.is_absolute():
        full = DATA_DIR / full
    full = full.expanduser().resolve()
    if not full.exists():
        raise FileNotFoundError(f"Data provider not found: {full}")
    with open(full, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return data.get("cases", [])


def create_case_parametrize(yaml_path: str):
    cases = load_yaml_cases(yaml_path)
    ids = [case.get("name", f"case_{i}") for i, case in enumerate(cases)]
    return pytest.mark.parametrize("case", cases, ids=ids)


# ============================================================
# Builders
# ============================================================

def make_config(**overrides):
    data = {
        "unix_socket_path": "/var/lib/incus/unix.socket",
        "project_name": "garm",
        "include_default_profile": True,
        "instance_type": "container",
        "secure_boot": False,
        "image_remotes": {
            "ubuntu": {
                "addr": "https://cloud-images.ubuntu.com/releases",
                "public": True,
                "protocol": "simplestreams",
            },
        },
    }
    data.update(overrides)
    return ProviderConfig.from_dict(data)


BOOTSTRAP = {
    "name": "test-instance",
    "tools": [
        {
            "os": "linux",
            "architecture": "x64",
            "download_url": "https://example.com/actions-runner-linux-x64-2.311.0.tar.gz",
            "filename": "actions-runner-linux-x64-2.311.0.tar.gz",
        },
        {
            "os": "linux",
            "architecture": "arm64",
            "download_url": "https://example.com/actions-runner-linux-arm64-2.311.0.tar.gz",
            "filename": "actions-runner-linux-arm64-2.311.0.tar.gz",
        },
        {
            "os": "win",
            "architecture": "x64",
            "download_url": "https://example.com/actions-runner-win-x64-2.311.0.zip",
            "filename": "actions-runner-win-x64-2.311.0.zip",
        },
    ],
    "repo_url": "https://github.com/example/repo",
    "callback-url": "https://garm.example.com/api/v1/callbacks",
    "metadata-url": "https://garm.example.com/api/v1/metadata",
    "instance-token": "instance-token",
    "ssh-keys": ["ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAI test@example"],
    "os_type": "linux",
    "arch": "amd64",
    "flavor": "container",
    "image": "ubuntu:22.04",
    "labels": ["self-hosted", "incus"],
    "pool_id": POOL_ID,
}


def make_bootstrap(**overrides):
    data = copy.deepcopy(BOOTSTRAP)
    data.update(overrides)
    return BootstrapInstance.from_dict(data)


def make_instance(name, controller_id=CONTROLLER_ID, pool_id=POOL_ID, status="Running", addresses=None):
    config = {
        "image.os": "ubuntu",
        "image.release": "jammy",
        "user.os-type": "linux",
        "user.os-arch": "amd64",
        "user.runner-pool-id": pool_id,
    }
    if controller_id is not None:
        config["user.runner-controller-id"] = controller_id
    network = {
        "eth0": [NetworkAddress(address=a, family="inet", scope="global") for a in (addresses or [])],
    }
    return InstanceFull(
        name=name,
        architecture="x86_64",
        status=status,
        type="container",
        expanded_config=config,
        state=InstanceState(status=status, network=network),
    )


def stub_renderer(bootstrap, tools, runner_name, specs=None):
    return "#cloud-config"


# ============================================================
# Fixtures
# ============================================================

@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def server():
    srv = InMemoryServer(profiles=["default", "container", "virtual-machine"])
    srv.add_image(
        Image(
            fingerprint="c0ffee01",
            architecture="x86_64",
            type="container",
            properties={"os": "ubuntu", "release": "jammy"},
        ),
        aliases=["22.04"],
    )
    srv.add_image(
        Image(
            fingerprint="c0ffee02",
            architecture="aarch64",
            type="container",
            properties={"os": "ubuntu", "release": "jammy"},
        ),
        aliases=["22.04"],
    )
    srv.add_image(
        Image(
            fingerprint="beef0001",
            architecture="x86_64",
            type="virtual-machine",
            properties={"os": "ubuntu", "release": "jammy"},
        ),
        aliases=["22.04"],
    )
    srv.add_image(
        Image(
            fingerprint="f00d0001",
            architecture="x86_64",
            type="virtual-machine",
            properties={"os": "windows", "release": "2022"},
        ),
        aliases=["windows-2022"],
    )
    return srv


@pytest.fixture
def resolver(config, server):
    return ImageResolver(config.image_remotes, image_server_factory=lambda remote: server)


@pytest.fixture
def builder(server, config):
    return InstanceArgsBuilder(server, config, CONTROLLER_ID, cloud_config_renderer=stub_renderer)


@pytest.fixture
def provider(config, server, resolver, builder):
    return IncusProvider(config, CONTROLLER_ID, server, resolver=resolver, builder=builder)


@pytest.fixture
def tools():
    return [RunnerApplicationDownload.from_dict(t) for t in BOOTSTRAP["tools"]]
