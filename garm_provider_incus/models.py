"""
Typed records exchanged between the orchestrator, the provider and the endpoint.

The flat ``config`` map of an Incus instance is only produced by
:meth:`CreationArgs.to_api` and only read by :meth:`InstanceTags.from_config`
and the state translator; everything in between works with these types.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional


# ==============================================================
# CONSTANTS
# ==============================================================

class InstanceType:
    CONTAINER = "container"
    VIRTUAL_MACHINE = "virtual-machine"
    ANY = ""


class OSType:
    LINUX = "linux"
    WINDOWS = "windows"
    UNKNOWN = "unknown"


class InstanceStatus:
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"
    UNKNOWN = "unknown"


class AddressType:
    PUBLIC = "public"
    PRIVATE = "private"


# Reserved instance config keys
USER_DATA_KEY = "user.user-data"
OS_TYPE_KEY = "user.os-type"
OS_ARCH_KEY = "user.os-arch"
CONTROLLER_ID_KEY = "user.runner-controller-id"
POOL_ID_KEY = "user.runner-pool-id"
SECURE_BOOT_KEY = "security.secureboot"

# Image metadata keys set by the image server
IMAGE_OS_KEY = "image.os"
IMAGE_RELEASE_KEY = "image.release"

INSTANCE_DESCRIPTION = "Github runner provisioned by garm"

# Windows VM first-boot agents expect this marker on the first line
WINDOWS_BOOT_SCRIPT_MARKER = "#ps1_sysnative"

DEFAULT_PROFILE = "default"

# canonical (orchestrator) architecture -> native (kernel) architecture
CANONICAL_TO_NATIVE_ARCH = {
    "amd64": "x86_64",
    "arm64": "aarch64",
    "arm": "armv7l",
    "i386": "i686",
}

NATIVE_TO_CANONICAL_ARCH = {v: k for k, v in CANONICAL_TO_NATIVE_ARCH.items()}


# ==============================================================
# PROVISIONING REQUEST
# ==============================================================

@dataclass
class RunnerApplicationDownload:
    os: str = ""
    architecture: str = ""
    download_url: str = ""
    filename: str = ""
    sha256_checksum: str = ""
    temp_download_token: str = ""

    @classmethod
    def from_dict(cls, data):
        data = data or {}
        return cls(
            os=data.get("os") or "",
            architecture=data.get("architecture") or "",
            download_url=data.get("download_url") or "",
            filename=data.get("filename") or "",
            sha256_checksum=data.get("sha256_checksum") or "",
            temp_download_token=data.get("temp_download_token") or "",
        )


@dataclass
class UserDataOptions:
    disable_updates: bool = False
    extra_packages: List[str] = field(default_factory=list)
    enable_boot_debug: bool = False

    @classmethod
    def from_dict(cls, data):
        data = data or {}
        return cls(
            disable_updates=bool(data.get("disable_updates", False)),
            extra_packages=list(data.get("extra_packages") or []),
            enable_boot_debug=bool(data.get("enable_boot_debug", False)),
        )


@dataclass
class BootstrapInstance:
    """
    Provisioning request sent by the orchestrator on stdin.

    ``extra_specs`` is kept in its raw form (decoded JSON object, JSON text
    or ``None``) and parsed by :func:`garm_provider_incus.specs.parse_extra_specs`.
    """

    name: str = ""
    tools: List[RunnerApplicationDownload] = field(default_factory=list)
    repo_url: str = ""
    callback_url: str = ""
    metadata_url: str = ""
    instance_token: str = ""
    ssh_keys: List[str] = field(default_factory=list)
    extra_specs: Optional[object] = None
    github_runner_group: str = ""
    ca_cert_bundle: str = ""
    os_type: str = ""
    os_arch: str = ""
    flavor: str = ""
    image: str = ""
    labels: List[str] = field(default_factory=list)
    pool_id: str = ""
    user_data_options: UserDataOptions = field(default_factory=UserDataOptions)
    jit_config_enabled: bool = False

    @classmethod
    def from_dict(cls, data):
        data = data or {}
        return cls(
            name=data.get("name") or "",
            tools=[RunnerApplicationDownload.from_dict(t) for t in data.get("tools") or []],
            repo_url=data.get("repo_url") or "",
            callback_url=data.get("callback-url") or "",
            metadata_url=data.get("metadata-url") or "",
            instance_token=data.get("instance-token") or "",
            ssh_keys=list(data.get("ssh-keys") or []),
            extra_specs=data.get("extra_specs"),
            github_runner_group=data.get("github-runner-group") or "",
            ca_cert_bundle=data.get("ca-cert-bundle") or "",
            os_type=data.get("os_type") or "",
            os_arch=data.get("arch") or "",
            flavor=data.get("flavor") or "",
            image=data.get("image") or "",
            labels=list(data.get("labels") or []),
            pool_id=data.get("pool_id") or "",
            user_data_options=UserDataOptions.from_dict(data.get("user_data_options")),
            jit_config_enabled=bool(data.get("jit_config_enabled", False)),
        )


# ==============================================================
# IMAGES
# ==============================================================

@dataclass
class ImageAliasEntry:
    name: str = ""
    type: str = ""
    target: str = ""
    description: str = ""


@dataclass
class Image:
    fingerprint: str
    architecture: str = ""
    type: str = ""
    properties: Dict[str, str] = field(default_factory=dict)
    aliases: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ResolvedImage:
    fingerprint: str
    architecture: str
    remote: object


@dataclass
class InstanceSource:
    type: str = "image"
    fingerprint: str = ""
    server: str = ""
    protocol: str = ""

    def to_api(self):
        source = {"type": self.type, "fingerprint": self.fingerprint}
        if self.server:
            source["mode"] = "pull"
            source["server"] = self.server
            source["protocol"] = self.protocol
        return source


# ==============================================================
# CREATION ARGS
# ==============================================================

@dataclass
class InstanceTags:
    os_type: str = ""
    os_arch: str = ""
    controller_id: str = ""
    pool_id: str = ""

    def to_config(self):
        return {
            OS_TYPE_KEY: self.os_type,
            OS_ARCH_KEY: self.os_arch,
            CONTROLLER_ID_KEY: self.controller_id,
            POOL_ID_KEY: self.pool_id,
        }

    @classmethod
    def from_config(cls, config):
        config = config or {}
        return cls(
            os_type=config.get(OS_TYPE_KEY, ""),
            os_arch=config.get(OS_ARCH_KEY, ""),
            controller_id=config.get(CONTROLLER_ID_KEY, ""),
            pool_id=config.get(POOL_ID_KEY, ""),
        )


@dataclass
class CreationArgs:
    name: str
    architecture: str
    profiles: List[str]
    description: str
    user_data: str
    tags: InstanceTags
    source: InstanceSource
    type: str
    disable_secure_boot: bool = False

    @property
    def config(self):
        config = {USER_DATA_KEY: self.user_data}
        config.update(self.tags.to_config())
        if self.disable_secure_boot:
            config[SECURE_BOOT_KEY] = "false"
        return config

    def to_api(self):
        """Body for ``POST /1.0/instances``."""
        return {
            "name": self.name,
            "architecture": self.architecture,
            "profiles": list(self.profiles),
            "description": self.description,
            "config": self.config,
            "source": self.source.to_api(),
            "type": self.type,
        }


# ==============================================================
# NATIVE SNAPSHOT
# ==============================================================

@dataclass
class NetworkAddress:
    address: str
    family: str = ""
    netmask: str = ""
    scope: str = ""


@dataclass
class InstanceState:
    status: str = ""
    network: Optional[Dict[str, List[NetworkAddress]]] = None

    @classmethod
    def from_api(cls, data):
        if data is None:
            return None
        network = None
        if data.get("network") is not None:
            network = {}
            for iface, details in data["network"].items():
                network[iface] = [
                    NetworkAddress(
                        address=addr.get("address", ""),
                        family=addr.get("family", ""),
                        netmask=addr.get("netmask", ""),
                        scope=addr.get("scope", ""),
                    )
                    for addr in (details or {}).get("addresses") or []
                ]
        return cls(status=data.get("status", ""), network=network)


@dataclass
class InstanceFull:
    name: str
    architecture: str = ""
    status: str = ""
    type: str = ""
    project: str = ""
    expanded_config: Dict[str, str] = field(default_factory=dict)
    state: Optional[InstanceState] = None

    @classmethod
    def from_api(cls, data):
        return cls(
            name=data.get("name", ""),
            architecture=data.get("architecture", ""),
            status=data.get("status", ""),
            type=data.get("type", ""),
            project=data.get("project", ""),
            expanded_config=dict(data.get("expanded_config") or data.get("config") or {}),
            state=InstanceState.from_api(data.get("state")),
        )


# ==============================================================
# CANONICAL INSTANCE
# ==============================================================

@dataclass
class Address:
    address: str
    type: str = AddressType.PUBLIC

    def to_dict(self):
        return {"address": self.address, "type": self.type}


@dataclass
class ProviderInstance:
    provider_id: str
    name: str
    os_type: str = OSType.UNKNOWN
    os_name: str = ""
    os_version: str = ""
    os_arch: str = ""
    addresses: List[Address] = field(default_factory=list)
    status: str = InstanceStatus.UNKNOWN

    def to_dict(self):
        return {
            "provider_id": self.provider_id,
            "name": self.name,
            "os_type": self.os_type,
            "os_name": self.os_name,
            "os_version": self.os_version,
            "os_arch": self.os_arch,
            "addresses": [a.to_dict() for a in self.addresses],
            "status": self.status,
        }
