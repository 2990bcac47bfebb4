"""
Provider configuration.

The provider reads a TOML file whose path is given by the orchestrator:

.. code-block:: toml

    unix_socket_path = "/var/lib/incus/unix.socket"
    # or, for a remote endpoint:
    # url = "https://incus.example.com:8443"
    # client_certificate = "/etc/garm/incus/client.crt"
    # client_key = "/etc/garm/incus/client.key"
    # tls_server_certificate = "/etc/garm/incus/server.crt"
    project_name = "garm"
    include_default_profile = false
    instance_type = "container"
    secure_boot = false

    [image_remotes.ubuntu]
    addr = "https://cloud-images.ubuntu.com/releases"
    public = true
    protocol = "simplestreams"
    skip_verify = false
"""

import copy
import logging
import os
import tomllib
from dataclasses import dataclass, field
from typing import Dict
from urllib.parse import urlparse

from garm_provider_incus.errors import ConfigurationError
from garm_provider_incus.models import InstanceType

log = logging.getLogger(__name__)

SIMPLESTREAMS = "simplestreams"


# ==============================================================
# DEFAULT CONFIG + DEEP MERGE
# ==============================================================

DEFAULT_CFG = {
    "unix_socket_path": "",
    "project_name": "",
    "include_default_profile": False,
    "url": "",
    "client_certificate": "",
    "client_key": "",
    "tls_server_certificate": "",
    "tls_ca": "",
    "secure_boot": False,
    "instance_type": InstanceType.VIRTUAL_MACHINE,
    "image_remotes": {},
}

DEFAULT_REMOTE_CFG = {
    "addr": "",
    "public": False,
    "protocol": SIMPLESTREAMS,
    "skip_verify": False,
}


def deep_merge(base, override):
    """
    Recursively merge override into base.
    """
    for k, v in override.items():
        if (
            k in base
            and isinstance(base[k], dict)
            and isinstance(v, dict)
        ):
            deep_merge(base[k], v)
        else:
            base[k] = v
    return base


def _is_url(address, schemes):
    parsed = urlparse(address)
    return parsed.scheme in schemes and bool(parsed.netloc)


def _bool(merged, key, prefix=""):
    value = merged[key]
    if not isinstance(value, bool):
        raise ConfigurationError(f"{prefix}{key} must be a boolean, got {value!r}")
    return value


# ==============================================================
# MODELS
# ==============================================================

@dataclass(frozen=True)
class RemoteImageSource:
    """A simplestreams server the provider can pull images from."""

    name: str
    address: str
    public: bool = False
    protocol: str = SIMPLESTREAMS
    skip_verify: bool = False

    @classmethod
    def from_dict(cls, name, data):
        merged = deep_merge(copy.deepcopy(DEFAULT_REMOTE_CFG), data or {})
        return cls(
            name=name,
            address=merged["addr"],
            public=_bool(merged, "public", f"image_remotes.{name}."),
            protocol=merged["protocol"],
            skip_verify=_bool(merged, "skip_verify", f"image_remotes.{name}."),
        )

    def validate(self):
        # Only simplestreams remotes are supported for now.
        if self.protocol != SIMPLESTREAMS:
            raise ConfigurationError(
                f"invalid remote protocol {self.protocol}. Supported protocols: {SIMPLESTREAMS}"
            )
        if not self.address:
            raise ConfigurationError("missing address")
        if not _is_url(self.address, ("http", "https")):
            raise ConfigurationError(f"address {self.address} must be http or https")


@dataclass
class ProviderConfig:
    unix_socket_path: str = ""
    project_name: str = ""
    include_default_profile: bool = False
    url: str = ""
    client_certificate: str = ""
    client_key: str = ""
    tls_server_certificate: str = ""
    tls_ca: str = ""
    secure_boot: bool = False
    instance_type: str = InstanceType.VIRTUAL_MACHINE
    image_remotes: Dict[str, RemoteImageSource] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data):
        merged = deep_merge(copy.deepcopy(DEFAULT_CFG), data or {})
        remotes = {
            name: RemoteImageSource.from_dict(name, remote)
            for name, remote in (merged.get("image_remotes") or {}).items()
        }
        return cls(
            unix_socket_path=merged["unix_socket_path"],
            project_name=merged["project_name"],
            include_default_profile=_bool(merged, "include_default_profile"),
            url=merged["url"],
            client_certificate=merged["client_certificate"],
            client_key=merged["client_key"],
            tls_server_certificate=merged["tls_server_certificate"],
            tls_ca=merged["tls_ca"],
            secure_boot=_bool(merged, "secure_boot"),
            instance_type=merged["instance_type"],
            image_remotes=remotes,
        )

    def get_instance_type(self):
        """Configured instance kind; anything unrecognised means virtual machine."""
        if self.instance_type in (InstanceType.CONTAINER, InstanceType.VIRTUAL_MACHINE):
            return self.instance_type
        return InstanceType.VIRTUAL_MACHINE

    def validate(self):
        if self.unix_socket_path:
            if not os.path.exists(self.unix_socket_path):
                raise ConfigurationError(
                    f"could not access unix socket {self.unix_socket_path}"
                )
        else:
            self._validate_https()

        for name, remote in self.image_remotes.items():
            try:
                remote.validate()
            except ConfigurationError as e:
                raise ConfigurationError(f"remote {name} is invalid: {e}") from e

    def _validate_https(self):
        if not self.url:
            raise ConfigurationError("unix_socket_path or url must be specified")
        if not _is_url(self.url, ("https",)):
            raise ConfigurationError(f"url {self.url} must be https")
        if not self.client_certificate or not self.client_key:
            raise ConfigurationError("client_certificate and client_key are mandatory")

        for key in ("client_certificate", "client_key", "tls_server_certificate"):
            path = getattr(self, key)
            if path and not os.path.exists(path):
                raise ConfigurationError(f"failed to access {key} {path}")


def load_config(path):
    """
    Load and validate a provider configuration file.

    :param path: Path to the TOML file
    :return: Validated ProviderConfig
    """
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except OSError as e:
        raise ConfigurationError(f"error reading config {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"error decoding config {path}: {e}") from e

    try:
        cfg = ProviderConfig.from_dict(data)
        cfg.validate()
    except ConfigurationError as e:
        raise ConfigurationError(f"error validating config {path}: {e}") from e

    log.debug("Loaded provider config from %s (%d image remotes)", path, len(cfg.image_remotes))
    return cfg
